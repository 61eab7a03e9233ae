from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from pydantic import ValidationError

from .service_db import KEY_ACTIONS, KEY_PLAYING, KEY_PROGRESS, KEY_RECORDING, PersistentStore
from .service_models import Action, PlaybackProgress

logger = logging.getLogger("service")


class SessionStateManager:
    """
    Owns the session script, the recording/playing flags and the progress slot.

    Reads come from memory; every change is mirrored to the store under one
    lock, so no value is read-modified-written from two paths at once.
    """

    def __init__(self, store: PersistentStore):
        self.store = store
        self._lock = asyncio.Lock()
        self._actions: list[Action] = []
        self.is_recording = False
        self.is_playing = False

    async def initialize(self) -> None:
        raw_actions = await self.store.get(KEY_ACTIONS) or []
        actions: list[Action] = []
        for i, raw in enumerate(raw_actions):
            try:
                actions.append(Action.model_validate(raw))
            except ValidationError as exc:
                logger.warning("[store] dropping unreadable action #%d: %s", i, exc.errors()[:1])
        self._actions = actions
        self.is_recording = bool(await self.store.get(KEY_RECORDING))
        self.is_playing = bool(await self.store.get(KEY_PLAYING))
        logger.info(
            "[store] loaded %d actions (recording=%s playing=%s)", len(actions), self.is_recording, self.is_playing
        )

    @property
    def actions(self) -> tuple[Action, ...]:
        return tuple(self._actions)

    # ----------------------------- flags --------------------------------
    async def set_recording(self, value: bool) -> None:
        async with self._lock:
            self.is_recording = value
            await self.store.set(KEY_RECORDING, value)

    async def set_playing(self, value: bool) -> None:
        async with self._lock:
            self.is_playing = value
            await self.store.set(KEY_PLAYING, value)

    # ----------------------------- script -------------------------------
    async def start_script(self) -> None:
        """Fresh, empty script for a new recording."""
        await self.replace_script(())

    async def append_action(self, action: Action) -> None:
        async with self._lock:
            self._actions.append(action)
            await self._save_actions()

    async def replace_script(self, actions: Iterable[Action]) -> None:
        async with self._lock:
            self._actions = list(actions)
            await self._save_actions()

    async def clear_script(self) -> None:
        async with self._lock:
            self._actions = []
            await self.store.remove(KEY_ACTIONS)

    async def _save_actions(self) -> None:
        await self.store.set(KEY_ACTIONS, [a.model_dump(by_alias=True, exclude_none=True) for a in self._actions])

    # ----------------------------- progress -----------------------------
    async def save_progress(self, progress: PlaybackProgress) -> None:
        async with self._lock:
            await self.store.set(KEY_PROGRESS, progress.model_dump(by_alias=True))

    async def load_progress(self) -> Optional[PlaybackProgress]:
        raw = await self.store.get(KEY_PROGRESS)
        if not raw:
            return None
        try:
            return PlaybackProgress.model_validate(raw)
        except ValidationError as exc:
            logger.warning("[store] unreadable playback progress, ignoring: %s", exc.errors()[:1])
            return None

    async def clear_progress(self) -> None:
        async with self._lock:
            await self.store.remove(KEY_PROGRESS)
