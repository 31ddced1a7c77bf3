"""SQLite-backed session store."""

from __future__ import annotations

import json
from datetime import datetime

from localchat.core.types import SessionStatus
from localchat.log import get_logger
from localchat.storage.base import SessionStore
from localchat.storage.database import Database, storage_operation
from localchat.storage.models import Session, utcnow

logger = get_logger(__name__)


class SqliteSessionStore(SessionStore):
    """CRUD over chat_sessions. Deleted sessions stay on disk but leave listings."""

    def __init__(self, db: Database):
        self._db = db

    @storage_operation
    async def create(self, session: Session) -> Session:
        await self._db.conn.execute(
            """INSERT INTO chat_sessions
               (id, user_id, title, description, status, metadata_json,
                last_activity_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session.id,
                session.user_id,
                session.title,
                session.description,
                session.status.value,
                json.dumps(session.metadata),
                session.last_activity_at.isoformat(),
                session.created_at.isoformat(),
                session.updated_at.isoformat(),
            ),
        )
        await self._db.conn.commit()
        logger.debug("session_created", session_id=session.id, user_id=session.user_id)
        return session

    @storage_operation
    async def find_by_id(self, session_id: str) -> Session | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM chat_sessions WHERE id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    @storage_operation
    async def find_by_user_and_id(self, user_id: str, session_id: str) -> Session | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM chat_sessions WHERE id = ? AND user_id = ?",
            (session_id, user_id),
        )
        row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    @storage_operation
    async def list_by_user(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> tuple[list[Session], int]:
        offset = max(page - 1, 0) * limit
        cursor = await self._db.conn.execute(
            """SELECT * FROM chat_sessions
               WHERE user_id = ? AND status != 'deleted'
               ORDER BY last_activity_at DESC
               LIMIT ? OFFSET ?""",
            (user_id, limit, offset),
        )
        rows = await cursor.fetchall()
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*) FROM chat_sessions WHERE user_id = ? AND status != 'deleted'",
            (user_id,),
        )
        (total,) = await cursor.fetchone()
        return [self._row_to_session(row) for row in rows], total

    @storage_operation
    async def update(self, session: Session) -> Session:
        session.updated_at = utcnow()
        await self._db.conn.execute(
            """UPDATE chat_sessions
               SET title = ?, description = ?, status = ?, metadata_json = ?,
                   last_activity_at = ?, updated_at = ?
               WHERE id = ?""",
            (
                session.title,
                session.description,
                session.status.value,
                json.dumps(session.metadata),
                session.last_activity_at.isoformat(),
                session.updated_at.isoformat(),
                session.id,
            ),
        )
        await self._db.conn.commit()
        return session

    async def archive(self, session_id: str) -> None:
        await self._set_status(session_id, SessionStatus.ARCHIVED)

    async def soft_delete(self, session_id: str) -> None:
        await self._set_status(session_id, SessionStatus.DELETED)

    @storage_operation
    async def belongs_to_user(self, session_id: str, user_id: str) -> bool:
        cursor = await self._db.conn.execute(
            "SELECT 1 FROM chat_sessions WHERE id = ? AND user_id = ?",
            (session_id, user_id),
        )
        return await cursor.fetchone() is not None

    @storage_operation
    async def touch(self, session_id: str, when: datetime) -> None:
        await self._db.conn.execute(
            "UPDATE chat_sessions SET last_activity_at = ?, updated_at = ? WHERE id = ?",
            (when.isoformat(), utcnow().isoformat(), session_id),
        )
        await self._db.conn.commit()

    @storage_operation
    async def _set_status(self, session_id: str, status: SessionStatus) -> None:
        # deleted is terminal; the WHERE clause keeps it that way
        await self._db.conn.execute(
            """UPDATE chat_sessions SET status = ?, updated_at = ?
               WHERE id = ? AND status != 'deleted'""",
            (status.value, utcnow().isoformat(), session_id),
        )
        await self._db.conn.commit()
        logger.info("session_status_changed", session_id=session_id, status=status.value)

    @staticmethod
    def _row_to_session(row) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            status=SessionStatus(row["status"]),
            metadata=json.loads(row["metadata_json"]),
            last_activity_at=datetime.fromisoformat(row["last_activity_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
