from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import anyio
from pydantic import ValidationError

from .service_config import EXPORTS_BASE
from .service_errors import InvalidImportFormat
from .service_models import Action, ExportedSession, SessionSummary

logger = logging.getLogger("service")

EXPORT_VERSION = "1.0"


def summarize(actions: Iterable[Action]) -> SessionSummary:
    actions = list(actions)
    pages: list[str] = []
    seen: set[str] = set()
    for a in actions:
        if a.url not in seen:
            seen.add(a.url)
            pages.append(a.url)
    return SessionSummary(
        total_actions=len(actions),
        clicks=sum(1 for a in actions if a.type == "click"),
        inputs=sum(1 for a in actions if a.type == "input"),
        pages=pages,
    )


def build_export(actions: Iterable[Action], user_agent: Optional[str] = None) -> ExportedSession:
    actions = list(actions)
    return ExportedSession(
        version=EXPORT_VERSION,
        created=dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        user_agent=user_agent,
        actions=actions,
        metadata=summarize(actions),
    )


def export_document(session: ExportedSession) -> dict[str, Any]:
    return session.model_dump(by_alias=True, exclude_none=True)


def parse_import(document: Union[str, bytes, dict[str, Any]]) -> list[Action]:
    """Validate an exported recording and return its actions; raises InvalidImportFormat."""
    if isinstance(document, (bytes, bytearray)):
        try:
            document = document.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidImportFormat(f"recording is not UTF-8: {exc}") from exc
    if isinstance(document, str):
        try:
            document = json.loads(document)
        except ValueError as exc:
            raise InvalidImportFormat(f"recording is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise InvalidImportFormat("recording must be a JSON object")
    if not isinstance(document.get("actions"), list):
        raise InvalidImportFormat("recording has no actions list")

    try:
        session = ExportedSession.model_validate(document)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise InvalidImportFormat(f"invalid recording at {where or 'root'}: {first.get('msg', exc)}") from exc
    return list(session.actions)


async def write_export(session: ExportedSession, base: Path = EXPORTS_BASE) -> Path:
    stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    target = anyio.Path(base) / f"web-recording-{stamp}.json"
    await anyio.Path(base).mkdir(parents=True, exist_ok=True)
    await target.write_text(json.dumps(export_document(session), indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("[store] exported %d actions to %s", len(session.actions), target)
    return Path(str(target))
