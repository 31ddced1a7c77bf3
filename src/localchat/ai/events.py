"""Client-facing stream events and their server-sent-events encoding.

A streamed reply is a sequence of token events followed by exactly one
terminal event (``done`` or ``error``). Image replies produce one image event
before the terminal event.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Iterator, Optional

from localchat.ai.orchestrator import ChatOrchestrator, SendResult
from localchat.errors import LocalChatError
from localchat.log import get_logger

logger = get_logger(__name__)

Event = dict[str, Any]


def token_event(token: str, full_text: str) -> Event:
    return {"token": token, "fullText": full_text, "done": False}


def image_event(content: str, attachments: list[dict[str, Any]]) -> Event:
    return {
        "token": content,
        "fullText": content,
        "attachments": attachments,
        "isImageGeneration": True,
        "done": False,
    }


def done_event(**extra: Any) -> Event:
    return {**extra, "done": True}


def error_event(error: str) -> Event:
    return {"error": error, "done": True}


def terminal_events(result: SendResult) -> Iterator[Event]:
    """Events that close the stream for a finished send."""
    assistant = result.assistant_message
    if result.is_image_generation and assistant.attachments:
        yield image_event(assistant.content, [a.to_dict() for a in assistant.attachments])
    if result.failed:
        yield error_event(assistant.error or "Generation failed")
    else:
        yield done_event(
            messageId=assistant.id,
            sessionId=result.session.id,
        )


def encode_sse(event: Event) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


async def stream_as_events(
    orchestrator: ChatOrchestrator,
    emit: Callable[[str], Any],
    user_id: str,
    content: str,
    session_id: Optional[str] = None,
    **options: Any,
) -> Optional[SendResult]:
    """Run one streamed send and hand every encoded frame to *emit*.

    A request refused before generation (empty content, unknown or foreign
    session) still closes the stream with one error event.
    """
    try:
        result = await orchestrator.send_message_streaming(
            user_id,
            content,
            session_id,
            on_token=lambda token, full: emit(encode_sse(token_event(token, full))),
            **options,
        )
    except LocalChatError as e:
        logger.warning("stream_refused", error=str(e))
        emit(encode_sse(error_event(str(e))))
        return None
    for event in terminal_events(result):
        emit(encode_sse(event))
    return result
