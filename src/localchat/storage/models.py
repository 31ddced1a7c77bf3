"""Data models for the storage layer: sessions, messages and their attachments."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from localchat.core.types import AttachmentKind, MessageRole, MessageStatus, SessionStatus
from localchat.errors import ValidationError

DEFAULT_SESSION_TITLE = "New Conversation"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Attachment:
    """Artifact owned by exactly one message (currently generated images)."""

    kind: AttachmentKind
    url: str
    filename: str
    original_prompt: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "url": self.url,
            "filename": self.filename,
            "originalPrompt": self.original_prompt,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            kind=AttachmentKind(data.get("type", AttachmentKind.IMAGE)),
            url=data["url"],
            filename=data["filename"],
            original_prompt=data.get("originalPrompt"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Session:
    user_id: str
    title: Optional[str] = DEFAULT_SESSION_TITLE
    status: SessionStatus = SessionStatus.ACTIVE
    description: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    last_activity_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def touch(self, now: datetime | None = None) -> None:
        self.last_activity_at = now or utcnow()

    def has_placeholder_title(self) -> bool:
        return not self.title or self.title == DEFAULT_SESSION_TITLE

    def archive(self) -> None:
        self._transition(SessionStatus.ARCHIVED)

    def activate(self) -> None:
        self._transition(SessionStatus.ACTIVE)

    def soft_delete(self) -> None:
        self._transition(SessionStatus.DELETED)

    def _transition(self, target: SessionStatus) -> None:
        # deleted is terminal
        if self.status == SessionStatus.DELETED and target != SessionStatus.DELETED:
            raise ValidationError(f"Session {self.id} is deleted")
        self.status = target
        self.updated_at = utcnow()


# Allowed forward moves for message status
_STATUS_FLOW: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.SENT: frozenset({MessageStatus.PROCESSING, MessageStatus.DELIVERED, MessageStatus.ERROR}),
    MessageStatus.PROCESSING: frozenset({MessageStatus.DELIVERED, MessageStatus.ERROR}),
    MessageStatus.DELIVERED: frozenset(),
    MessageStatus.ERROR: frozenset(),
}


@dataclass
class Message:
    session_id: str
    role: MessageRole
    content: str
    status: MessageStatus = MessageStatus.SENT
    metadata: dict[str, Any] = field(default_factory=dict)
    attachments: list[Attachment] = field(default_factory=list)
    error: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    @classmethod
    def user(cls, content: str, session_id: str) -> Message:
        message = cls(session_id=session_id, role=MessageRole.USER, content=content)
        message.validate()
        return message

    @classmethod
    def assistant(
        cls,
        content: str,
        session_id: str,
        metadata: dict[str, Any] | None = None,
        attachments: list[Attachment] | None = None,
    ) -> Message:
        return cls(
            session_id=session_id,
            role=MessageRole.ASSISTANT,
            content=content,
            status=MessageStatus.PROCESSING,
            metadata=metadata or {},
            attachments=list(attachments or []),
        )

    @classmethod
    def system(cls, content: str, session_id: str) -> Message:
        message = cls(
            session_id=session_id,
            role=MessageRole.SYSTEM,
            content=content,
            status=MessageStatus.DELIVERED,
        )
        message.validate()
        return message

    def validate(self) -> None:
        if self.role in (MessageRole.USER, MessageRole.SYSTEM) and not self.content.strip():
            raise ValidationError(f"{self.role.value} message content must not be empty")

    def mark_processing(self) -> None:
        self._advance(MessageStatus.PROCESSING)

    def mark_delivered(self) -> None:
        self._advance(MessageStatus.DELIVERED)

    def mark_error(self, error: str) -> None:
        self._advance(MessageStatus.ERROR)
        self.error = error

    def _advance(self, target: MessageStatus) -> None:
        if target not in _STATUS_FLOW[self.status]:
            raise ValidationError(
                f"Message status cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.processed_at = utcnow()
        self.updated_at = self.processed_at

    def add_attachment(self, attachment: Attachment) -> None:
        self.attachments.append(attachment)

    def image_attachments(self) -> list[Attachment]:
        return [a for a in self.attachments if a.kind == AttachmentKind.IMAGE]
