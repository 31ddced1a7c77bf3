"""Convert stored conversation history into provider message formats."""

from __future__ import annotations

from typing import Any

from localchat.core.types import MessageRole, MessageStatus
from localchat.storage.models import Message

_ROLE_LABELS = {
    "system": "System",
    "user": "User",
    "assistant": "Assistant",
}


def build_messages(
    history: list[Message],
    current: str,
    system_prompt: str = "",
    max_history: int = 10,
) -> list[dict[str, Any]]:
    """Build the role-tagged message list for the structured protocol.

    Uses the last *max_history* usable records of *history* (chronological),
    skipping failed assistant turns and empty content, then appends *current*
    as the final user message.
    """
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    usable = [
        m for m in history
        if m.status != MessageStatus.ERROR and m.content.strip()
    ]
    for record in usable[-max_history:] if max_history > 0 else []:
        messages.append({"role": record.role.value, "content": record.content})

    messages.append({"role": MessageRole.USER.value, "content": current})
    return messages


def flatten_messages(messages: list[dict[str, Any]] | str) -> str:
    """Flatten role-tagged messages into one prompt for the legacy protocol."""
    if isinstance(messages, str):
        return messages
    return "\n\n".join(
        f"{_ROLE_LABELS.get(msg.get('role', ''), 'User')}: {msg.get('content', '')}"
        for msg in messages
    )
