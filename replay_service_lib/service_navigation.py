from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from .service_config import NAVIGATION_DEDUPE_S, NAVIGATION_SETTLE_S

logger = logging.getLogger("service")

LoadCallback = Callable[[str, str], None]


class NavigationHost(Protocol):
    def add_load_listener(self, tab_id: str, callback: LoadCallback) -> Callable[[], None]: ...


@dataclass
class _TabWatch:
    remove: Callable[[], None]
    generation: int = 0
    settled: int = 0
    settled_url: Optional[str] = None
    last_url: Optional[str] = None
    last_at: float = 0.0
    timer: Optional[asyncio.TimerHandle] = None
    waiters: list[tuple[int, asyncio.Future]] = field(default_factory=list)


class NavigationWatcher:
    """
    Turns the host's top-level load signal into one-shot "page ready" waits.

    Every accepted load bumps the tab's generation. A signal repeating the
    previous URL inside the de-dup window is dropped. A generation is "ready"
    once the settle delay passes without a newer load on the same tab.
    There is no timeout: a waiter is only woken by readiness or release().
    """

    def __init__(
        self,
        host: NavigationHost,
        settle_delay: float = NAVIGATION_SETTLE_S,
        dedupe_window: float = NAVIGATION_DEDUPE_S,
    ):
        self.host = host
        self.settle_delay = settle_delay
        self.dedupe_window = dedupe_window
        self._tabs: dict[str, _TabWatch] = {}

    def attach(self, tab_id: str) -> None:
        if tab_id in self._tabs:
            return
        remove = self.host.add_load_listener(tab_id, self._on_load)
        self._tabs[tab_id] = _TabWatch(remove=remove)
        logger.debug("[playback/nav] watching %s", tab_id)

    def attached(self, tab_id: str) -> bool:
        return tab_id in self._tabs

    def generation(self, tab_id: str) -> int:
        watch = self._tabs.get(tab_id)
        return watch.generation if watch else 0

    async def wait_ready(self, tab_id: str, since: int) -> Optional[str]:
        """Wait for a load newer than generation `since` to settle; returns its URL, or None if released."""
        watch = self._tabs.get(tab_id)
        if watch is None:
            return None
        # a newer load still settling supersedes the last settled one
        if watch.settled > since and watch.settled == watch.generation:
            return watch.settled_url
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        watch.waiters.append((since, fut))
        try:
            return await fut
        finally:
            watch.waiters[:] = [(s, f) for s, f in watch.waiters if f is not fut]

    def release(self, tab_id: Optional[str] = None) -> None:
        targets = [tab_id] if tab_id is not None else list(self._tabs)
        for tid in targets:
            watch = self._tabs.pop(tid, None)
            if watch is None:
                continue
            if watch.timer is not None:
                watch.timer.cancel()
            for _, fut in watch.waiters:
                if not fut.done():
                    fut.set_result(None)
            watch.waiters.clear()
            try:
                watch.remove()
            except Exception as exc:
                logger.debug("[playback/nav] listener removal failed for %s: %s", tid, exc)
            logger.debug("[playback/nav] released %s", tid)

    def _on_load(self, tab_id: str, url: str) -> None:
        watch = self._tabs.get(tab_id)
        if watch is None:
            return
        now = time.monotonic()
        if url == watch.last_url and (now - watch.last_at) < self.dedupe_window:
            logger.debug("[playback/nav] duplicate load signal for %s ignored", url)
            return
        watch.last_url = url
        watch.last_at = now
        watch.generation += 1
        logger.info("[playback/nav] load completed on %s: %s", tab_id, url)

        if watch.timer is not None:
            watch.timer.cancel()
        loop = asyncio.get_running_loop()
        watch.timer = loop.call_later(self.settle_delay, self._settle, tab_id, watch.generation, url)

    def _settle(self, tab_id: str, generation: int, url: str) -> None:
        watch = self._tabs.get(tab_id)
        if watch is None or generation != watch.generation:
            return
        watch.timer = None
        watch.settled = generation
        watch.settled_url = url
        for since, fut in list(watch.waiters):
            if generation > since and not fut.done():
                fut.set_result(url)
