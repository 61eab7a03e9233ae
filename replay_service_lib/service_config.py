from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

APP_NAME = "Replay Service"
APP_VERSION = "1.0.0"

PORT = int(os.getenv("PORT", "9000"))
BIND = os.getenv("BIND", "127.0.0.1")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]
API_KEY = os.getenv("API_KEY", "").strip()

STATE_DB_URL = os.getenv("STATE_DB_URL", "sqlite+aiosqlite:///./replay_state.db").strip()

HEADLESS = bool(int(os.getenv("HEADLESS", "0")))
START_URL = os.getenv("START_URL", "about:blank").strip() or "about:blank"
NAVIGATION_TIMEOUT_MS = int(os.getenv("NAVIGATION_TIMEOUT_MS", "30000"))

# Recording
INPUT_QUIET_PERIOD_S = float(os.getenv("INPUT_QUIET_PERIOD_S", "1.0"))
CLICK_SHADOW_WINDOW_S = float(os.getenv("CLICK_SHADOW_WINDOW_S", "0.1"))
CLICK_DEDUPE_WINDOW_S = float(os.getenv("CLICK_DEDUPE_WINDOW_S", "0.5"))

# Playback
NAVIGATION_SETTLE_S = float(os.getenv("NAVIGATION_SETTLE_S", "1.0"))
NAVIGATION_DEDUPE_S = float(os.getenv("NAVIGATION_DEDUPE_S", "0.5"))
NAVIGATION_FALLBACK_S = float(os.getenv("NAVIGATION_FALLBACK_S", "10"))
NAVIGATION_HINT_WORDS = tuple(
    w.strip().lower() for w in os.getenv("NAVIGATION_HINT_WORDS", "save").split(",") if w.strip()
)

STRIP_ANSI = bool(int(os.getenv("STRIP_ANSI_IN_LOGS", "1")))
COLLAPSE_INTERNAL_SPACES = bool(int(os.getenv("COLLAPSE_INTERNAL_SPACES", "0")))
RUN_LOG_LINES = max(50, int(os.getenv("RUN_LOG_LINES", "500")))

EXPORTS_BASE = Path(os.getenv("EXPORTS_BASE", "./recordings")).resolve()
EXPORTS_BASE.mkdir(parents=True, exist_ok=True)

BASE_PROFILE_DIR = Path(os.getenv("PROFILE_DIR", "/tmp/replay-profiles"))
BASE_PROFILE_DIR.mkdir(parents=True, exist_ok=True)


def find_chrome_binary() -> Optional[str]:
    env = os.getenv("BROWSER_CHROME_PATH")
    if env and Path(env).exists():
        return env
    for candidate in (
        "/usr/bin/google-chrome-stable",
        "/usr/bin/google-chrome",
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/snap/bin/chromium",
    ):
        if Path(candidate).exists():
            return candidate
    # Playwright's bundled Chromium is used instead.
    return None


CHROME_BIN = find_chrome_binary()

ANSI_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
CTRL_ZW_RE = re.compile("[" + "\u200B\u200C\u200D\u200E\u200F" + "\u2060" + "\uFEFF" + "]")
