from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .service_config import NAVIGATION_HINT_WORDS
from .service_dom import DomDocument
from .service_errors import (
    ActionSkipped,
    ElementNotFound,
    EmptyScript,
    MessagingUnavailable,
    NoActiveTab,
    NothingToResume,
    PlaybackAlreadyActive,
)
from .service_executor import ActionExecutor
from .service_logging import run_id_ctx
from .service_messaging import NoticeListener, notify_listeners
from .service_models import (
    AT_REST_STATES,
    IN_FLIGHT_STATES,
    Action,
    ExecutionOutcome,
    NoticeKind,
    PlaybackNotice,
    PlaybackProgress,
    PlaybackState,
    PlaybackTimings,
)
from .service_navigation import NavigationHost, NavigationWatcher
from .service_selectors import SelectorResolver
from .service_state import SessionStateManager

logger = logging.getLogger("service")


class PlaybackHost(NavigationHost, Protocol):
    def active_tab_id(self) -> Optional[str]: ...
    def has_tab(self, tab_id: str) -> bool: ...
    def tab_url(self, tab_id: str) -> Optional[str]: ...
    async def navigate(self, tab_id: str, url: str) -> None: ...
    async def inject(self, tab_id: str) -> None: ...
    def document(self, tab_id: str) -> DomDocument: ...


@dataclass
class _Run:
    run_id: str
    tab_id: str
    actions: tuple[Action, ...]
    nav_mark: int = 0
    requested_url: Optional[str] = None
    fallback_url: Optional[str] = None
    cancelled: bool = False
    finished: bool = False
    applied: int = 0
    skipped: list[str] = field(default_factory=list)


class PlaybackOrchestrator:
    """
    Walks the session script across page loads.

    idle -> starting -> awaiting_page <-> executing_page -> complete,
    stopped from any in-flight state. Progress is persisted on every
    transition and after every attempted action; nothing resumes without an
    explicit resume() call.
    """

    def __init__(
        self,
        state_mgr: SessionStateManager,
        host: PlaybackHost,
        resolver: Optional[SelectorResolver] = None,
        executor: Optional[ActionExecutor] = None,
        watcher: Optional[NavigationWatcher] = None,
        timings: Optional[PlaybackTimings] = None,
        hint_words: tuple[str, ...] = NAVIGATION_HINT_WORDS,
    ):
        self.state_mgr = state_mgr
        self.host = host
        self.timings = timings or PlaybackTimings()
        self.resolver = resolver or SelectorResolver()
        self.executor = executor or ActionExecutor(self.timings)
        self.watcher = watcher or NavigationWatcher(host)
        self.hint_words = tuple(w.lower() for w in hint_words)

        self.state: PlaybackState = "idle"
        self.progress: Optional[PlaybackProgress] = None
        self.stale_progress: Optional[PlaybackProgress] = None

        self._run: Optional[_Run] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: list[NoticeListener] = []

    @property
    def run_id(self) -> Optional[str]:
        return self._run.run_id if self._run else None

    @property
    def applied(self) -> int:
        return self._run.applied if self._run else 0

    @property
    def skipped(self) -> list[str]:
        return self._run.skipped if self._run else []

    def add_listener(self, listener: NoticeListener) -> None:
        self._listeners.append(listener)

    # ----------------------------- control ------------------------------
    async def recover(self) -> Optional[PlaybackProgress]:
        """Surface progress left behind by an interrupted process; never resumes it."""
        progress = await self.state_mgr.load_progress()
        if progress is not None and progress.state in IN_FLIGHT_STATES:
            self.stale_progress = progress
            logger.warning(
                "[playback] found interrupted playback (run %s, next action %d); waiting for resume or discard",
                progress.run_id,
                progress.next_index,
            )
        elif progress is not None:
            await self.state_mgr.clear_progress()
        if self.state_mgr.is_playing:
            await self.state_mgr.set_playing(False)
        return self.stale_progress

    async def start(self) -> PlaybackProgress:
        if self.state not in AT_REST_STATES:
            raise PlaybackAlreadyActive(self.state)
        actions = self.state_mgr.actions
        if not actions:
            raise EmptyScript()
        tab_id = self.host.active_tab_id()
        if tab_id is None:
            raise NoActiveTab()
        if self.stale_progress is not None:
            logger.info("[playback] discarding interrupted run %s", self.stale_progress.run_id)
            self.stale_progress = None
        return await self._launch(actions, tab_id, current_index=0, next_index=0)

    async def resume(self) -> PlaybackProgress:
        if self.state not in AT_REST_STATES:
            raise PlaybackAlreadyActive(self.state)
        stale = self.stale_progress
        if stale is None:
            raise NothingToResume()
        actions = self.state_mgr.actions
        if not actions:
            raise EmptyScript()
        if stale.next_index >= len(actions):
            await self.discard()
            raise NothingToResume()

        tab_id = stale.active_tab_id
        if not tab_id or not self.host.has_tab(tab_id):
            tab_id = self.host.active_tab_id()
            logger.info("[playback] original tab is gone, resuming in %s", tab_id)
        if tab_id is None:
            raise NoActiveTab()
        self.stale_progress = None
        logger.info("[playback] resuming run %s at action %d", stale.run_id, stale.next_index)
        return await self._launch(actions, tab_id, current_index=stale.current_index, next_index=stale.next_index)

    async def discard(self) -> bool:
        had = self.stale_progress is not None
        self.stale_progress = None
        await self.state_mgr.clear_progress()
        return had

    async def stop(self) -> bool:
        run = self._run
        if run is None or self.state in AT_REST_STATES:
            return False
        logger.info("[playback] stop requested")
        run.cancelled = True
        # wakes a pending page wait so the loop can exit
        self.watcher.release(run.tab_id)
        await self._finish(run, "stopped")
        return True

    async def wait_until_done(self) -> None:
        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def aclose(self) -> None:
        await self.stop()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        await self.wait_until_done()

    # ----------------------------- run loop -----------------------------
    async def _launch(
        self, actions: tuple[Action, ...], tab_id: str, current_index: int, next_index: int
    ) -> PlaybackProgress:
        # claimed before the first await so a second start is rejected
        self.state = "starting"
        run = _Run(run_id=uuid.uuid4().hex[:10], tab_id=tab_id, actions=actions)
        self._run = run
        self.progress = PlaybackProgress(
            current_index=current_index,
            next_index=next_index,
            active_tab_id=tab_id,
            state="starting",
            run_id=run.run_id,
        )
        logger.info("[playback] run %s: %d actions from #%d on %s", run.run_id, len(actions), next_index, tab_id)

        self.watcher.attach(tab_id)
        await self.state_mgr.set_playing(True)
        await self.state_mgr.save_progress(self.progress)
        await self._notify("state")
        if not self._live(run):
            return self.progress

        self._task = asyncio.create_task(self._main(run), name=f"playback-{run.run_id}")
        return self.progress

    async def _main(self, run: _Run) -> None:
        token = run_id_ctx.set(run.run_id)
        try:
            await self._drive(run)
        except asyncio.CancelledError:
            await self._finish(run, "stopped")
            raise
        except Exception as exc:
            logger.exception("[playback] run %s failed", run.run_id)
            await self._finish(run, "stopped", detail=f"{type(exc).__name__}: {exc}", error=True)
        finally:
            run_id_ctx.reset(token)

    async def _drive(self, run: _Run) -> None:
        if not self._live(run):
            return
        first = run.actions[self.progress.next_index]
        run.nav_mark = self.watcher.generation(run.tab_id)
        if self.host.tab_url(run.tab_id) != first.url:
            await self._request_navigation(run, first.url)
            await self._transition(run, "awaiting_page")
        else:
            await self._enter_page(run)

        while self._live(run):
            if self.state == "awaiting_page":
                if not await self._await_page(run):
                    return
                await self._enter_page(run)
                continue

            outcome = await self._play_page(run)
            if outcome == "complete":
                await self._finish(run, "complete")
                return

    def _live(self, run: _Run) -> bool:
        return not run.cancelled and self._run is run

    async def _play_page(self, run: _Run) -> str:
        actions = run.actions
        start = self.progress.next_index
        url = self.host.tab_url(run.tab_id)
        indices: list[int] = []
        for i in range(start, len(actions)):
            if actions[i].url != url:
                break
            indices.append(i)

        if not indices:
            pending = actions[start]
            if run.requested_url == pending.url:
                logger.warning(
                    "[playback] tab shows %s after navigating to %s; skipping action #%d", url, pending.url, start
                )
                run.requested_url = None
                await self._record_skip(run, start, f"page mismatch after navigation ({url})")
                await self._checkpoint(run, start)
                return "complete" if start >= len(actions) - 1 else "executing_page"
            logger.info("[playback] no actions for %s, moving to %s", url, pending.url)
            await self._request_navigation(run, pending.url)
            await self._transition(run, "awaiting_page")
            return "awaiting_page"

        run.requested_url = None
        doc = self.host.document(run.tab_id)
        last_flagged = False
        for pos, i in enumerate(indices):
            if not self._live(run):
                return "stopped"
            action = actions[i]
            outcome = await self._apply(run, doc, i, action)
            if not self._live(run):
                return "stopped"
            await self._checkpoint(run, i)

            last_flagged = self.might_navigate(action)
            await asyncio.sleep(self._delay_after(action, outcome, last_flagged))
            if not self._live(run):
                return "stopped"

            more_here = pos < len(indices) - 1
            if more_here and self.watcher.generation(run.tab_id) > run.nav_mark:
                logger.info("[playback/nav] page reloaded mid-run after #%d, waiting for it", i)
                await self._transition(run, "awaiting_page")
                return "awaiting_page"

        last = indices[-1]
        if last >= len(actions) - 1:
            return "complete"

        next_url = actions[last + 1].url
        if self.watcher.generation(run.tab_id) > run.nav_mark:
            logger.info("[playback/nav] navigation observed during run, waiting for page ready")
        elif last_flagged:
            logger.info("[playback/nav] last action may navigate, waiting for the page to change")
            run.fallback_url = next_url
        else:
            await self._request_navigation(run, next_url)
        await self._transition(run, "awaiting_page")
        return "awaiting_page"

    async def _apply(self, run: _Run, doc: DomDocument, index: int, action: Action) -> ExecutionOutcome:
        logger.info("[playback] action %d/%d: %s %s", index + 1, len(run.actions), action.type, action.selector)
        try:
            node = await self.resolver.resolve(doc, action.selector, action)
            if node is None:
                raise ElementNotFound(action.selector)
            outcome = await self.executor.apply(doc, node, action)
            run.applied += 1
            return outcome
        except ActionSkipped as exc:
            logger.warning("[playback] skipping action #%d: %s", index, exc)
            await self._record_skip(run, index, str(exc))
        except MessagingUnavailable as exc:
            logger.warning("[playback] page unavailable during action #%d: %s", index, exc)
            await self._record_skip(run, index, f"page unavailable: {exc}")
        except Exception as exc:
            logger.exception("[playback] action #%d failed", index)
            await self._record_skip(run, index, f"{type(exc).__name__}: {exc}")
        return ExecutionOutcome()

    def might_navigate(self, action: Action) -> bool:
        if action.type != "click":
            return False
        if action.tag_name.upper() == "A" or action.href or action.input_type.lower() == "submit":
            return True
        value = action.value.strip().lower()
        text = action.text.lower()
        return any(word == value or word in text for word in self.hint_words)

    def _delay_after(self, action: Action, outcome: ExecutionOutcome, flagged: bool) -> float:
        t = self.timings
        if outcome.toggled_disclosure:
            return t.after_disclosure
        if flagged:
            return t.after_navigation_action
        if action.type == "input":
            return t.after_input
        return t.after_click

    # ----------------------------- page gating --------------------------
    async def _request_navigation(self, run: _Run, url: str) -> None:
        run.nav_mark = self.watcher.generation(run.tab_id)
        run.requested_url = url
        logger.info("[playback/nav] navigating %s to %s", run.tab_id, url)
        await self.host.navigate(run.tab_id, url)

    async def _await_page(self, run: _Run) -> bool:
        waiter = asyncio.ensure_future(self.watcher.wait_ready(run.tab_id, run.nav_mark))
        try:
            if run.fallback_url:
                done, _ = await asyncio.wait({waiter}, timeout=self.timings.navigation_fallback)
                if not done and self._live(run):
                    logger.info(
                        "[playback/nav] no navigation within %.0fs, opening %s",
                        self.timings.navigation_fallback,
                        run.fallback_url,
                    )
                    url = run.fallback_url
                    run.requested_url = url
                    await self.host.navigate(run.tab_id, url)
            ready_url = await waiter
        finally:
            run.fallback_url = None
            if not waiter.done():
                waiter.cancel()
        if ready_url is None or not self._live(run):
            return False
        run.nav_mark = self.watcher.generation(run.tab_id)
        logger.info("[playback/nav] page ready: %s", ready_url)
        return True

    async def _enter_page(self, run: _Run) -> None:
        try:
            await self.host.inject(run.tab_id)
        except MessagingUnavailable as exc:
            logger.debug("[playback] inject skipped, page not available: %s", exc)
        await self._transition(run, "executing_page")
        await asyncio.sleep(self.timings.inject_settle)

    # ----------------------------- bookkeeping --------------------------
    async def _transition(self, run: _Run, state: PlaybackState) -> None:
        if not self._live(run):
            return
        self.state = state
        self.progress = self.progress.model_copy(update={"state": state})
        await self.state_mgr.save_progress(self.progress)
        logger.info("[playback] state -> %s", state)
        await self._notify("state")

    async def _checkpoint(self, run: _Run, index: int) -> None:
        if not self._live(run):
            return
        self.progress = self.progress.model_copy(update={"current_index": index, "next_index": index + 1})
        await self.state_mgr.save_progress(self.progress)

    async def _record_skip(self, run: _Run, index: int, detail: str) -> None:
        run.skipped.append(f"#{index}: {detail}")
        if not self._live(run):
            return
        await self._notify("skipped", index=index, detail=detail)

    async def _finish(self, run: _Run, state: PlaybackState, detail: Optional[str] = None, error: bool = False) -> None:
        if run.finished:
            return
        run.finished = True
        run.cancelled = True
        if self._run is not run:
            return
        self.state = state
        if self.progress is not None:
            self.progress = self.progress.model_copy(update={"state": state})
        self.watcher.release(run.tab_id)
        await self.state_mgr.clear_progress()
        await self.state_mgr.set_playing(False)
        logger.info(
            "[playback] run %s %s (%d applied, %d skipped)", run.run_id, state, run.applied, len(run.skipped)
        )
        kind: NoticeKind = "error" if error else ("complete" if state == "complete" else "stopped")
        await self._notify(kind, detail=detail)

    async def _notify(self, kind: NoticeKind, index: Optional[int] = None, detail: Optional[str] = None) -> None:
        if not self._listeners:
            return
        notice = PlaybackNotice(kind=kind, state=self.state, run_id=self.run_id, index=index, detail=detail)
        await notify_listeners(self._listeners, notice)
