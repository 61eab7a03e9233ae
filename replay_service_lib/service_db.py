from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from .service_config import STATE_DB_URL

logger = logging.getLogger("service")

KEY_ACTIONS = "recordedActions"
KEY_PROGRESS = "playbackProgress"
KEY_RECORDING = "isRecording"
KEY_PLAYING = "isPlaying"

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
  slot   VARCHAR(128) PRIMARY KEY,
  value  TEXT NOT NULL
)
"""


class PersistentStore(Protocol):
    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any) -> None: ...
    async def remove(self, key: str) -> None: ...


class MemoryStore:
    """In-process store. Values are copied through JSON so callers never share references."""

    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        return None


class SqlStore:
    """Key/value slots in one sqlalchemy-async table; survives a service restart."""

    def __init__(self, url: str = STATE_DB_URL, engine: Optional[AsyncEngine] = None):
        self.url = url
        self.engine = engine or create_async_engine(url, pool_pre_ping=True)
        self.SessionLocal = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(text(CREATE_TABLES_SQL))
        logger.info("[store] ready (%s)", self.engine.url.render_as_string(hide_password=True))

    async def get(self, key: str) -> Any:
        async with self.SessionLocal() as db:
            row = await db.execute(text("SELECT value FROM kv_store WHERE slot=:slot"), {"slot": key})
            raw = row.scalar()
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("[store] unreadable value under %s, ignoring it", key)
            return None

    async def set(self, key: str, value: Any) -> None:
        async with self.SessionLocal() as db:
            async with db.begin():
                await db.execute(text("DELETE FROM kv_store WHERE slot=:slot"), {"slot": key})
                await db.execute(
                    text("INSERT INTO kv_store (slot, value) VALUES (:slot, :value)"),
                    {"slot": key, "value": json.dumps(value)},
                )

    async def remove(self, key: str) -> None:
        async with self.SessionLocal() as db:
            async with db.begin():
                await db.execute(text("DELETE FROM kv_store WHERE slot=:slot"), {"slot": key})

    async def close(self) -> None:
        await self.engine.dispose()


async def open_store(url: Optional[str] = STATE_DB_URL):
    """SqlStore for a configured URL, MemoryStore when none is set."""
    if not url:
        logger.warning("[store] STATE_DB_URL empty, state will not survive a restart")
        return MemoryStore()
    store = SqlStore(url)
    await store.init()
    return store
