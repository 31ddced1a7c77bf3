"""Abstract session and message store interfaces consumed by the orchestrator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from localchat.storage.models import Message, Session


class SessionStore(ABC):
    """Durable CRUD for sessions; owns uniqueness and ownership facts."""

    @abstractmethod
    async def create(self, session: Session) -> Session:
        ...

    @abstractmethod
    async def find_by_id(self, session_id: str) -> Session | None:
        ...

    @abstractmethod
    async def find_by_user_and_id(self, user_id: str, session_id: str) -> Session | None:
        ...

    @abstractmethod
    async def list_by_user(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> tuple[list[Session], int]:
        """Non-deleted sessions, most recently active first, plus the total count."""
        ...

    @abstractmethod
    async def update(self, session: Session) -> Session:
        ...

    @abstractmethod
    async def archive(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def soft_delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def belongs_to_user(self, session_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    async def touch(self, session_id: str, when: datetime) -> None:
        """Update last-activity time of one session."""
        ...


class MessageStore(ABC):
    """Durable CRUD for messages and their attachments."""

    @abstractmethod
    async def create(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def find_by_id(self, message_id: str) -> Message | None:
        ...

    @abstractmethod
    async def find_by_session(
        self, session_id: str, page: int = 1, limit: int = 50
    ) -> tuple[list[Message], int]:
        """Messages of one session in chronological order plus the total count."""
        ...

    @abstractmethod
    async def find_latest_by_session(self, session_id: str, limit: int) -> list[Message]:
        """The newest ``limit`` messages of one session, oldest first."""
        ...

    @abstractmethod
    async def find_recent_by_user(self, user_id: str, limit: int = 50) -> list[Message]:
        """Latest messages across the user's active sessions, oldest first."""
        ...

    @abstractmethod
    async def update(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def search(self, session_id: str, query: str) -> list[Message]:
        ...

    @abstractmethod
    async def delete_by_session(self, session_id: str) -> int:
        ...
