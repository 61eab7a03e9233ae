from __future__ import annotations

import contextvars
import logging
import re
from collections import deque
from typing import Optional

from .service_config import ANSI_RE, COLLAPSE_INTERNAL_SPACES, CTRL_ZW_RE, RUN_LOG_LINES, STRIP_ANSI

run_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(run_id)s] %(message)s"


def _clean_message(msg: str) -> str:
    if STRIP_ANSI:
        msg = ANSI_RE.sub("", msg)
    msg = CTRL_ZW_RE.sub("", msg)
    if COLLAPSE_INTERNAL_SPACES:
        msg = re.sub(r"[ \t\u00A0]{2,}", " ", msg)
    return msg.strip()


def _hijack_library_loggers():
    for name in ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)


class RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        if not getattr(record, "run_id", None):
            setattr(record, "run_id", run_id_ctx.get() or "-")
        return True


class RunLogBuffer(logging.Handler):
    """Keeps the last cleaned log lines of each playback run in memory."""

    def __init__(self, max_lines: int = RUN_LOG_LINES, max_runs: int = 20):
        super().__init__()
        self.max_lines = max_lines
        self.max_runs = max_runs
        self._runs: dict[str, deque[str]] = {}

    def emit(self, record: logging.LogRecord) -> None:
        try:
            run_id = getattr(record, "run_id", None) or run_id_ctx.get()
            if not run_id or run_id == "-":
                return
            try:
                text_line = _clean_message(record.getMessage())
            except Exception:
                text_line = _clean_message(str(record.msg))
            if not text_line:
                return

            lines = self._runs.get(run_id)
            if lines is None:
                if len(self._runs) >= self.max_runs:
                    self._runs.pop(next(iter(self._runs)))
                lines = self._runs[run_id] = deque(maxlen=self.max_lines)
            lines.append(f"{record.levelname} {text_line}")
        except Exception:
            self.handleError(record)

    def lines(self, run_id: str) -> Optional[list[str]]:
        lines = self._runs.get(run_id)
        return list(lines) if lines is not None else None


run_log_buffer = RunLogBuffer()


def setup_logging(level: int = logging.INFO) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) for h in root_logger.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(stream)
    for handler in root_logger.handlers:
        if not any(isinstance(f, RunIdFilter) for f in handler.filters):
            handler.addFilter(RunIdFilter())
    if run_log_buffer not in root_logger.handlers:
        run_log_buffer.addFilter(RunIdFilter())
        root_logger.addHandler(run_log_buffer)

    _hijack_library_loggers()
