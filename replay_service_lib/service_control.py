from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union, get_args

from .service_errors import SessionBusy
from .service_export import build_export, export_document, parse_import, summarize, write_export
from .service_models import (
    IN_FLIGHT_STATES,
    ClearSession,
    Command,
    CommandResult,
    DiscardProgress,
    ExportedSession,
    ExportSession,
    GetStatus,
    ImportSession,
    PlaybackProgress,
    ResumePlayback,
    StartPlayback,
    StartRecording,
    Status,
    StopPlayback,
    StopRecording,
)
from .service_playback import PlaybackOrchestrator
from .service_recorder import ActionRecorder
from .service_state import SessionStateManager

logger = logging.getLogger("service")


class ReplayController:
    """Session-level operations on top of the recorder, the orchestrator and the owned state."""

    def __init__(self, state_mgr: SessionStateManager, recorder: ActionRecorder, orchestrator: PlaybackOrchestrator):
        self.state_mgr = state_mgr
        self.recorder = recorder
        self.orchestrator = orchestrator

    @property
    def playing(self) -> bool:
        return self.orchestrator.state in IN_FLIGHT_STATES

    def _ensure_idle(self, what: str) -> None:
        if self.state_mgr.is_recording:
            raise SessionBusy(f"Cannot {what} while recording")
        if self.playing:
            raise SessionBusy(f"Cannot {what} while playback is running")

    # ----------------------------- recording ----------------------------
    async def start_recording(self) -> None:
        self._ensure_idle("start recording")
        await self.orchestrator.discard()
        await self.state_mgr.start_script()
        await self.state_mgr.set_recording(True)
        self.recorder.start()

    async def stop_recording(self) -> int:
        if self.recorder.listening:
            await self.recorder.stop()
        if self.state_mgr.is_recording:
            await self.state_mgr.set_recording(False)
        return len(self.state_mgr.actions)

    async def resume_recording(self) -> bool:
        """Re-arm the recorder after a restart that happened mid-recording."""
        if not self.state_mgr.is_recording:
            return False
        self.recorder.start()
        logger.info("[record] resumed after restart with %d actions", len(self.state_mgr.actions))
        return True

    # ----------------------------- playback -----------------------------
    async def start_playback(self) -> PlaybackProgress:
        if self.state_mgr.is_recording:
            raise SessionBusy("Cannot start playback while recording")
        return await self.orchestrator.start()

    async def resume_playback(self) -> PlaybackProgress:
        if self.state_mgr.is_recording:
            raise SessionBusy("Cannot resume playback while recording")
        return await self.orchestrator.resume()

    # ----------------------------- session ------------------------------
    async def import_session(self, document: Union[str, bytes, dict[str, Any]]) -> int:
        self._ensure_idle("import a recording")
        actions = parse_import(document)
        await self.orchestrator.discard()
        await self.state_mgr.replace_script(actions)
        logger.info("[store] imported %d actions", len(actions))
        return len(actions)

    def export_session(self, user_agent: Optional[str] = None) -> ExportedSession:
        return build_export(self.state_mgr.actions, user_agent=user_agent)

    async def export_to_file(self, user_agent: Optional[str] = None) -> Path:
        return await write_export(self.export_session(user_agent))

    async def clear_session(self) -> None:
        self._ensure_idle("clear the recording")
        await self.orchestrator.discard()
        await self.state_mgr.clear_script()
        logger.info("[store] recording cleared")

    def status(self) -> Status:
        actions = self.state_mgr.actions
        orch = self.orchestrator
        return Status(
            recording=self.state_mgr.is_recording,
            playing=self.playing,
            playback_state=orch.state,
            total_actions=len(actions),
            summary=summarize(actions),
            progress=orch.progress,
            stale_progress=orch.stale_progress,
            run_id=orch.run_id,
            applied=orch.applied,
            skipped=list(orch.skipped),
        )


Handler = Callable[[Any], Awaitable[dict[str, Any]]]


def command_kinds() -> set[str]:
    union = get_args(Command)[0]
    return {variant.model_fields["kind"].default for variant in get_args(union)}


class CommandDispatcher:
    """Single entry point for the closed command set; every variant must have a handler."""

    def __init__(self, controller: ReplayController):
        self.controller = controller
        self._handlers: dict[str, Handler] = {
            "start_recording": self._start_recording,
            "stop_recording": self._stop_recording,
            "start_playback": self._start_playback,
            "stop_playback": self._stop_playback,
            "resume_playback": self._resume_playback,
            "discard_progress": self._discard_progress,
            "clear_session": self._clear_session,
            "export_session": self._export_session,
            "import_session": self._import_session,
            "get_status": self._get_status,
        }
        missing = command_kinds() - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for commands: {sorted(missing)}")

    async def dispatch(self, cmd: Command) -> CommandResult:
        handler = self._handlers[cmd.kind]
        data = await handler(cmd)
        return CommandResult(kind=cmd.kind, data=data)

    async def _start_recording(self, cmd: StartRecording) -> dict[str, Any]:
        await self.controller.start_recording()
        return {"recording": True}

    async def _stop_recording(self, cmd: StopRecording) -> dict[str, Any]:
        total = await self.controller.stop_recording()
        return {"recording": False, "totalActions": total}

    async def _start_playback(self, cmd: StartPlayback) -> dict[str, Any]:
        progress = await self.controller.start_playback()
        return progress.model_dump(by_alias=True)

    async def _stop_playback(self, cmd: StopPlayback) -> dict[str, Any]:
        return {"stopped": await self.controller.orchestrator.stop()}

    async def _resume_playback(self, cmd: ResumePlayback) -> dict[str, Any]:
        progress = await self.controller.resume_playback()
        return progress.model_dump(by_alias=True)

    async def _discard_progress(self, cmd: DiscardProgress) -> dict[str, Any]:
        return {"discarded": await self.controller.orchestrator.discard()}

    async def _clear_session(self, cmd: ClearSession) -> dict[str, Any]:
        await self.controller.clear_session()
        return {"cleared": True}

    async def _export_session(self, cmd: ExportSession) -> dict[str, Any]:
        if cmd.to_file:
            path = await self.controller.export_to_file(cmd.user_agent)
            return {"path": str(path)}
        return export_document(self.controller.export_session(cmd.user_agent))

    async def _import_session(self, cmd: ImportSession) -> dict[str, Any]:
        total = await self.controller.import_session(cmd.document)
        return {"totalActions": total}

    async def _get_status(self, cmd: GetStatus) -> dict[str, Any]:
        return self.controller.status().model_dump()
