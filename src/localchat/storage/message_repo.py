"""SQLite-backed message store with attachment round-tripping."""

from __future__ import annotations

import json
from datetime import datetime

from localchat.core.types import MessageRole, MessageStatus
from localchat.log import get_logger
from localchat.storage.base import MessageStore
from localchat.storage.database import Database, storage_operation
from localchat.storage.models import Attachment, Message, utcnow

logger = get_logger(__name__)

SEARCH_LIMIT = 100


def _escape_like(query: str) -> str:
    return query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqliteMessageStore(MessageStore):
    """CRUD + substring search over chat_messages."""

    def __init__(self, db: Database):
        self._db = db

    @storage_operation
    async def create(self, message: Message) -> Message:
        await self._db.conn.execute(
            """INSERT INTO chat_messages
               (id, session_id, role, content, status, metadata_json,
                attachments_json, error, processed_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                message.id,
                message.session_id,
                message.role.value,
                message.content,
                message.status.value,
                json.dumps(message.metadata),
                json.dumps([a.to_dict() for a in message.attachments]),
                message.error,
                message.processed_at.isoformat() if message.processed_at else None,
                message.created_at.isoformat(),
                message.updated_at.isoformat(),
            ),
        )
        await self._db.conn.commit()
        return message

    @storage_operation
    async def find_by_id(self, message_id: str) -> Message | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM chat_messages WHERE id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    @storage_operation
    async def find_by_session(
        self, session_id: str, page: int = 1, limit: int = 50
    ) -> tuple[list[Message], int]:
        offset = max(page - 1, 0) * limit
        cursor = await self._db.conn.execute(
            """SELECT * FROM chat_messages
               WHERE session_id = ?
               ORDER BY created_at ASC, seq ASC
               LIMIT ? OFFSET ?""",
            (session_id, limit, offset),
        )
        rows = await cursor.fetchall()
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*) FROM chat_messages WHERE session_id = ?", (session_id,)
        )
        (total,) = await cursor.fetchone()
        return [self._row_to_message(row) for row in rows], total

    @storage_operation
    async def find_latest_by_session(self, session_id: str, limit: int) -> list[Message]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM chat_messages
               WHERE session_id = ?
               ORDER BY created_at DESC, seq DESC
               LIMIT ?""",
            (session_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    @storage_operation
    async def find_recent_by_user(self, user_id: str, limit: int = 50) -> list[Message]:
        cursor = await self._db.conn.execute(
            """SELECT m.* FROM chat_messages m
               JOIN chat_sessions s ON s.id = m.session_id
               WHERE s.user_id = ? AND s.status = 'active'
               ORDER BY m.created_at DESC, m.seq DESC
               LIMIT ?""",
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    @storage_operation
    async def update(self, message: Message) -> Message:
        # role is immutable after creation
        message.updated_at = utcnow()
        await self._db.conn.execute(
            """UPDATE chat_messages
               SET content = ?, status = ?, metadata_json = ?, attachments_json = ?,
                   error = ?, processed_at = ?, updated_at = ?
               WHERE id = ?""",
            (
                message.content,
                message.status.value,
                json.dumps(message.metadata),
                json.dumps([a.to_dict() for a in message.attachments]),
                message.error,
                message.processed_at.isoformat() if message.processed_at else None,
                message.updated_at.isoformat(),
                message.id,
            ),
        )
        await self._db.conn.commit()
        return message

    @storage_operation
    async def search(self, session_id: str, query: str) -> list[Message]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM chat_messages
               WHERE session_id = ? AND content LIKE ? ESCAPE '\\'
               ORDER BY created_at DESC, seq DESC
               LIMIT ?""",
            (session_id, f"%{_escape_like(query)}%", SEARCH_LIMIT),
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    @storage_operation
    async def delete_by_session(self, session_id: str) -> int:
        cursor = await self._db.conn.execute(
            "DELETE FROM chat_messages WHERE session_id = ?", (session_id,)
        )
        await self._db.conn.commit()
        logger.info("session_messages_cleared", session_id=session_id, count=cursor.rowcount)
        return cursor.rowcount

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            status=MessageStatus(row["status"]),
            metadata=json.loads(row["metadata_json"]),
            attachments=[Attachment.from_dict(a) for a in json.loads(row["attachments_json"])],
            error=row["error"],
            processed_at=datetime.fromisoformat(row["processed_at"]) if row["processed_at"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
