from __future__ import annotations
"""
FastAPI entrypoint that wires the browser host, the recorder, the playback orchestrator and the state store.

Environment (examples):
  PORT=9000
  BIND=127.0.0.1
  ALLOWED_ORIGINS=*
  API_KEY=                           (optional)
  STATE_DB_URL=sqlite+aiosqlite:///./replay_state.db
  HEADLESS=0
  START_URL=https://example.com/
  BROWSER_CHROME_PATH=/usr/bin/chromium   (optional; bundled chromium otherwise)
  NAVIGATION_HINT_WORDS=save,submit
  EXPORTS_BASE=./recordings
"""

import contextlib
import logging
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from replay_service_lib.service_browser import BrowserHost
from replay_service_lib.service_config import (
    ALLOWED_ORIGINS,
    API_KEY,
    APP_NAME,
    APP_VERSION,
    BIND,
    CHROME_BIN,
    HEADLESS,
    PORT,
    STATE_DB_URL,
)
from replay_service_lib.service_control import CommandDispatcher, ReplayController
from replay_service_lib.service_db import open_store
from replay_service_lib.service_errors import (
    EmptyScript,
    InvalidImportFormat,
    NoActiveTab,
    NothingToResume,
    PlaybackAlreadyActive,
    ReplayError,
    SessionBusy,
)
from replay_service_lib.service_logging import run_log_buffer, setup_logging
from replay_service_lib.service_models import (
    ClearSession,
    Command,
    CommandResult,
    DiscardProgress,
    ExportSession,
    GetStatus,
    ImportSession,
    PlaybackNotice,
    ResumePlayback,
    StartPlayback,
    StartRecording,
    Status,
    StopPlayback,
    StopRecording,
)
from replay_service_lib.service_playback import PlaybackOrchestrator
from replay_service_lib.service_recorder import ActionRecorder
from replay_service_lib.service_state import SessionStateManager

logger = logging.getLogger("service")

_allow_credentials = ALLOWED_ORIGINS != ["*"]

app = FastAPI(title=APP_NAME, version=APP_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if ALLOWED_ORIGINS == ["*"] else ALLOWED_ORIGINS,
    allow_credentials=_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

store = None
host: Optional[BrowserHost] = None
recorder: Optional[ActionRecorder] = None
orchestrator: Optional[PlaybackOrchestrator] = None
dispatcher: Optional[CommandDispatcher] = None

_CONFLICTS = (EmptyScript, PlaybackAlreadyActive, SessionBusy, NothingToResume, NoActiveTab)


def require_api_key(x_api_key: Optional[str] = Header(default=None)):
    if not API_KEY:
        return
    if x_api_key != API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def get_dispatcher() -> CommandDispatcher:
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="service is starting")
    return dispatcher


async def _run(d: CommandDispatcher, cmd: Any) -> CommandResult:
    try:
        return await d.dispatch(cmd)
    except InvalidImportFormat as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except _CONFLICTS as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ReplayError as exc:
        raise HTTPException(status_code=500, detail=str(exc))


def _log_notice(notice: PlaybackNotice) -> None:
    if notice.kind == "error":
        logger.error("[playback] run %s ended with error: %s", notice.run_id, notice.detail)
    elif notice.kind in ("complete", "stopped"):
        logger.info("[playback] run %s %s", notice.run_id, notice.kind)


@app.on_event("startup")
async def on_startup():
    global store, host, recorder, orchestrator, dispatcher

    setup_logging()

    store = await open_store(STATE_DB_URL)
    state_mgr = SessionStateManager(store)
    await state_mgr.initialize()

    recorder = ActionRecorder(state_mgr.append_action)
    host = BrowserHost()
    host.on_capture = recorder.on_event
    await host.start()

    orchestrator = PlaybackOrchestrator(state_mgr, host)
    orchestrator.add_listener(_log_notice)

    controller = ReplayController(state_mgr, recorder, orchestrator)
    dispatcher = CommandDispatcher(controller)

    await controller.resume_recording()
    await orchestrator.recover()


@app.on_event("shutdown")
async def on_shutdown():
    with contextlib.suppress(Exception):
        if orchestrator:
            await orchestrator.aclose()
    with contextlib.suppress(Exception):
        if recorder:
            await recorder.stop()
            await recorder.aclose()
    with contextlib.suppress(Exception):
        if host:
            await host.close()
    with contextlib.suppress(Exception):
        if store:
            await store.close()


@app.get("/", dependencies=[Depends(require_api_key)])
def root():
    return {
        "ok": True,
        "service": APP_NAME,
        "version": APP_VERSION,
        "chrome": CHROME_BIN,
        "headless": HEADLESS,
        "store": STATE_DB_URL or "memory",
        "origins": ALLOWED_ORIGINS,
        "allow_credentials": _allow_credentials,
    }


@app.get("/status", response_model=Status, dependencies=[Depends(require_api_key)])
async def get_status(d: CommandDispatcher = Depends(get_dispatcher)):
    res = await _run(d, GetStatus())
    return Status(**res.data)


@app.post("/recording/start", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def start_recording(d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, StartRecording())


@app.post("/recording/stop", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def stop_recording(d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, StopRecording())


@app.post("/playback/start", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def start_playback(d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, StartPlayback())


@app.post("/playback/stop", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def stop_playback(d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, StopPlayback())


@app.post("/playback/resume", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def resume_playback(d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, ResumePlayback())


@app.post("/playback/discard", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def discard_progress(d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, DiscardProgress())


@app.get("/session/export", dependencies=[Depends(require_api_key)])
async def export_session(user_agent: Optional[str] = None, d: CommandDispatcher = Depends(get_dispatcher)):
    res = await _run(d, ExportSession(user_agent=user_agent))
    return res.data


@app.post("/session/export-file", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def export_session_file(user_agent: Optional[str] = None, d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, ExportSession(to_file=True, user_agent=user_agent))


@app.post("/session/import", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def import_session(document: Any = Body(...), d: CommandDispatcher = Depends(get_dispatcher)):
    if not isinstance(document, (dict, str)):
        raise HTTPException(status_code=400, detail="recording must be a JSON object")
    return await _run(d, ImportSession(document=document))


@app.delete("/session", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def clear_session(d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, ClearSession())


@app.get("/logs/{run_id}", dependencies=[Depends(require_api_key)])
async def get_logs(run_id: str, offset: int = 0, plain: bool = False):
    lines = run_log_buffer.lines(run_id)
    if lines is None:
        raise HTTPException(status_code=404, detail="run not found")
    offset = max(0, int(offset))
    slice_ = lines[offset:]
    if plain:
        text_blob = "\n".join(slice_)
        return PlainTextResponse(text_blob, headers={"X-Log-Size": str(len(lines))})
    return {"count": len(slice_), "lines": slice_}


@app.post("/commands", response_model=CommandResult, dependencies=[Depends(require_api_key)])
async def run_command(cmd: Command, d: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(d, cmd)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=BIND, port=PORT)
