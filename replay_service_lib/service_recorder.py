from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .service_dom import DomDocument, DomNode
from .service_errors import MessagingUnavailable
from .service_models import Action, ElementSnapshot, Position, RecorderTimings
from .service_selectors import SelectorResolver, stable_id

logger = logging.getLogger("service")

ActionSink = Callable[[Action], Awaitable[None]]

FREE_TEXT_INPUT_TYPES = frozenset({"", "text", "email", "password", "search", "tel", "url", "number"})
SHADOW_INPUT_TYPES = frozenset({"submit", "button"})


@dataclass
class CaptureEvent:
    """One raw notification from the page capture script."""

    kind: str
    key: str
    snapshot: ElementSnapshot
    url: str
    node: Optional[DomNode] = None
    document: Optional[DomDocument] = None
    client_x: Optional[float] = None
    client_y: Optional[float] = None
    timestamp: Optional[int] = None
    tab_id: Optional[str] = None


@dataclass
class _PendingEdit:
    key: str
    event: CaptureEvent
    selector_task: asyncio.Task
    timer: Optional[asyncio.Task] = None


def is_free_text(snap: ElementSnapshot) -> bool:
    if snap.tag == "textarea" or snap.content_editable:
        return True
    return snap.tag == "input" and snap.input_type.lower() in FREE_TEXT_INPUT_TYPES


def _now_ms() -> int:
    return int(time.time() * 1000)


class ActionRecorder:
    """
    Turns capture events into finalized Actions.

    Free-text edits are debounced per element and flushed on blur/change;
    checkbox, radio and select changes are recorded at once. Every click event
    is recorded. A submit right after a click, or a mousedown whose click
    never arrives, is recorded only when no click was seen for that element.
    """

    def __init__(
        self,
        sink: ActionSink,
        resolver: Optional[SelectorResolver] = None,
        timings: Optional[RecorderTimings] = None,
    ):
        self.sink = sink
        self.resolver = resolver or SelectorResolver()
        self.timings = timings or RecorderTimings()
        self.listening = False
        self.recorded = 0
        self.last_tab_id: Optional[str] = None

        self._lock = asyncio.Lock()
        self._pending: dict[str, _PendingEdit] = {}
        self._committed: dict[str, str] = {}
        self._clicked: dict[str, float] = {}
        self._tasks: set[asyncio.Task] = set()

    # ----------------------------- lifecycle ----------------------------
    def start(self) -> None:
        self._pending.clear()
        self._committed.clear()
        self._clicked.clear()
        self.recorded = 0
        self.listening = True
        logger.info("[record] listening")

    async def stop(self) -> None:
        """Flush every pending edit, then stop accepting events."""
        self.listening = False
        for task in list(self._tasks):
            task.cancel()
        for key in list(self._pending):
            await self._flush(key)
        logger.info("[record] stopped (%d actions this session)", self.recorded)

    # ----------------------------- dispatch -----------------------------
    async def on_event(self, ev: CaptureEvent) -> None:
        if not self.listening:
            return
        if ev.tab_id:
            self.last_tab_id = ev.tab_id

        kind = ev.kind
        if kind == "click":
            await self._on_click(ev)
        elif kind == "mousedown":
            self._on_mousedown(ev)
        elif kind == "submit":
            await self._on_submit(ev)
        elif kind == "input":
            self._on_input(ev)
        elif kind in ("change", "blur"):
            await self._on_commit(ev)
        else:
            logger.debug("[record] ignoring %s event", kind)

    # ----------------------------- clicks -------------------------------
    def _recently_clicked(self, key: str) -> bool:
        seen = self._clicked.get(key)
        return seen is not None and (time.monotonic() - seen) < self.timings.dedupe_window

    def _mark_clicked(self, key: str) -> None:
        self._clicked[key] = time.monotonic()

    async def _on_click(self, ev: CaptureEvent) -> None:
        # every real click is recorded; the flag only gates the mousedown timer and submit
        self._mark_clicked(ev.key)
        await self._record_click(ev)

    def _on_mousedown(self, ev: CaptureEvent) -> None:
        snap = ev.snapshot
        eligible = snap.tag == "button" or (snap.tag == "input" and snap.input_type.lower() in SHADOW_INPUT_TYPES)
        if not eligible:
            return
        task = asyncio.create_task(self._shadow_click(ev, time.monotonic()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _shadow_click(self, ev: CaptureEvent, pressed_at: float) -> None:
        await asyncio.sleep(self.timings.click_window)
        seen = self._clicked.get(ev.key)
        if seen is not None and seen >= pressed_at:
            return
        logger.info("[record] no click followed mousedown on %s, recording it as a click", ev.snapshot.tag_name)
        self._mark_clicked(ev.key)
        await self._record_click(ev)

    async def _on_submit(self, ev: CaptureEvent) -> None:
        if ev.snapshot.input_type.lower() != "submit":
            return
        if self._recently_clicked(ev.key):
            logger.debug("[record] submit from %s already recorded as a click", ev.key)
            return
        self._mark_clicked(ev.key)
        await self._record_click(ev)

    async def _record_click(self, ev: CaptureEvent) -> None:
        async with self._lock:
            snap = ev.snapshot
            selector = await self._selector_for(ev)
            position = None
            if ev.client_x is not None or ev.client_y is not None:
                position = Position(x=ev.client_x, y=ev.client_y)
            action = Action(
                type="click",
                selector=selector,
                tag_name=snap.tag_name,
                url=ev.url,
                timestamp=ev.timestamp or _now_ms(),
                text=snap.text[:100],
                value=snap.value,
                href=snap.href,
                input_type=snap.input_type,
                id=stable_id(snap.id),
                original_id=snap.id,
                name=snap.name,
                class_name=snap.class_name,
                position=position,
            )
            await self._emit(action)

    # ----------------------------- edits --------------------------------
    def _on_input(self, ev: CaptureEvent) -> None:
        # atomic controls fire input and change; they are recorded on change only
        if not is_free_text(ev.snapshot):
            return
        pending = self._pending.get(ev.key)
        if pending is None:
            pending = _PendingEdit(key=ev.key, event=ev, selector_task=asyncio.create_task(self._selector_for(ev)))
            self._pending[ev.key] = pending
        else:
            pending.event = ev
        if pending.timer is not None:
            pending.timer.cancel()
        pending.timer = asyncio.create_task(self._debounce(ev.key))

    async def _debounce(self, key: str) -> None:
        await asyncio.sleep(self.timings.quiet_period)
        await self._flush(key)

    async def _on_commit(self, ev: CaptureEvent) -> None:
        snap = ev.snapshot
        pending = self._pending.get(ev.key)
        if pending is not None:
            # blur/change carry the final value
            pending.event = ev
            await self._flush(ev.key)
            return
        if ev.kind != "change":
            return
        if is_free_text(snap) and self._committed.get(ev.key) == snap.value:
            return
        async with self._lock:
            selector = await self._selector_for(ev)
            await self._emit(self._input_action(ev, selector))

    async def _flush(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        if pending.timer is not None and pending.timer is not asyncio.current_task():
            pending.timer.cancel()
        self._committed[key] = pending.event.snapshot.value
        async with self._lock:
            selector = await pending.selector_task
            await self._emit(self._input_action(pending.event, selector))

    def _input_action(self, ev: CaptureEvent, selector: str) -> Action:
        snap = ev.snapshot
        self._committed[ev.key] = snap.value
        return Action(
            type="input",
            selector=selector,
            tag_name=snap.tag_name,
            url=ev.url,
            timestamp=ev.timestamp or _now_ms(),
            input_type=snap.input_type or "text",
            value=snap.value,
            checked=snap.checked,
            id=stable_id(snap.id),
            original_id=snap.id,
            name=snap.name,
            selected_index=snap.selected_index,
            selected_text=snap.selected_text,
        )

    # ----------------------------- helpers ------------------------------
    async def _selector_for(self, ev: CaptureEvent) -> str:
        if ev.node is None or ev.document is None:
            return self.resolver.fallback(ev.snapshot)
        try:
            return await self.resolver.generate(ev.document, ev.node, ev.snapshot)
        except MessagingUnavailable:
            logger.debug("[record] page went away while building selector, using snapshot")
        except Exception as exc:
            logger.warning("[record] selector generation failed: %s", exc)
        return self.resolver.fallback(ev.snapshot)

    async def _emit(self, action: Action) -> None:
        self.recorded += 1
        logger.info("[record] %s %s on %s", action.type, action.selector, action.url)
        await self.sink(action)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for pending in self._pending.values():
            if pending.timer is not None:
                pending.timer.cancel()
            pending.selector_task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._pending.clear()
