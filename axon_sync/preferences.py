"""Preference store: simple get/set persistence using aiosqlite.

Values are JSON-encoded into a single key/value table. If the database cannot
be opened, operations log warnings and return defaults: the client must never
crash because its preferences are unavailable.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

import aiosqlite

from axon_sync.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SERVICE_MODE_KEY = "service.mode"
ACTIVE_SESSION_KEY = "chat.active_session_id"
SELECTED_MODEL_KEY = "chat.selected_model"


def resolve_db_path(url: str) -> str:
    """Parse the database URL into a file path (or :memory:)."""
    if url in (":memory:", "sqlite:///:memory:"):
        return ":memory:"
    return url.removeprefix("sqlite:///")


class PreferenceStore:
    def __init__(self, database_url: str | None = None, *, settings: Settings = default_settings):
        self._path = resolve_db_path(database_url or settings.database_url)
        self._available = False
        # A :memory: database lives only as long as its connection
        self._memory_conn: aiosqlite.Connection | None = None

    @property
    def available(self) -> bool:
        return self._available

    async def init(self) -> None:
        """Create the table if needed. Logs a warning if unavailable, does not raise."""
        if self._available:
            return
        try:
            if self._path == ":memory:":
                self._memory_conn = await aiosqlite.connect(":memory:")
            else:
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            async with self._connect() as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS preferences (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                """)
                await db.commit()
            self._available = True
            logger.info("Preferences initialized at %s", self._path)
        except Exception:
            logger.warning("Preferences unavailable at %s, running without persistence", self._path)
            self._available = False

    async def close(self) -> None:
        if self._memory_conn is not None:
            await self._memory_conn.close()
            self._memory_conn = None
        self._available = False

    @asynccontextmanager
    async def _connect(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        if self._memory_conn is not None:
            yield self._memory_conn
            return
        db = await aiosqlite.connect(self._path)
        try:
            yield db
        finally:
            await db.close()

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or default if missing or unavailable."""
        if not self._available:
            return default
        try:
            async with self._connect() as db:
                cursor = await db.execute("SELECT value FROM preferences WHERE key = ?", (key,))
                row = await cursor.fetchone()
            return json.loads(row[0]) if row is not None else default
        except Exception:
            logger.warning("Preference get failed for key %s", key)
            return default

    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value. No-op if unavailable."""
        if not self._available:
            return
        try:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO preferences (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, json.dumps(value)),
                )
                await db.commit()
        except Exception:
            logger.warning("Preference set failed for key %s", key)

    async def delete(self, key: str) -> None:
        if not self._available:
            return
        try:
            async with self._connect() as db:
                await db.execute("DELETE FROM preferences WHERE key = ?", (key,))
                await db.commit()
        except Exception:
            logger.warning("Preference delete failed for key %s", key)
