"""SQLite database connection manager with schema bootstrap."""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import aiosqlite

from localchat.errors import PersistenceError
from localchat.log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chat_sessions (
    id                TEXT PRIMARY KEY,
    user_id           TEXT NOT NULL,
    title             TEXT,
    description       TEXT,
    status            TEXT NOT NULL DEFAULT 'active'
                      CHECK(status IN ('active','archived','deleted')),
    metadata_json     TEXT NOT NULL DEFAULT '{}',
    last_activity_at  TEXT NOT NULL,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user
    ON chat_sessions(user_id, status, last_activity_at);

CREATE TABLE IF NOT EXISTS chat_messages (
    seq               INTEGER PRIMARY KEY AUTOINCREMENT,
    id                TEXT    NOT NULL UNIQUE,
    session_id        TEXT    NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
    role              TEXT    NOT NULL CHECK(role IN ('user','assistant','system')),
    content           TEXT    NOT NULL,
    status            TEXT    NOT NULL DEFAULT 'sent'
                      CHECK(status IN ('sent','processing','delivered','error')),
    metadata_json     TEXT    NOT NULL DEFAULT '{}',
    attachments_json  TEXT    NOT NULL DEFAULT '[]',
    error             TEXT,
    processed_at      TEXT,
    created_at        TEXT    NOT NULL,
    updated_at        TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session
    ON chat_messages(session_id, created_at, seq);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and create tables."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")


def storage_operation(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Re-raise SQLite failures of a store method as PersistenceError."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except aiosqlite.Error as e:
            logger.error("storage_error", operation=func.__qualname__, error=str(e))
            raise PersistenceError(f"{func.__qualname__} failed: {e}") from e

    return wrapper
