"""Chat orchestrator: session ownership, dispatch (text, streaming, image) and persistence."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from localchat.ai.conversation import build_messages
from localchat.ai.provider import GenerationOptions, ProviderClient, ProviderReply
from localchat.ai.relay import StreamingRelay, TokenSink
from localchat.config import ChatConfig
from localchat.core.types import AttachmentKind, MessageRole, SessionStatus
from localchat.errors import (
    ForbiddenError,
    GenerationFailure,
    NotFoundError,
    ProviderError,
    RendererUnavailableError,
    ValidationError,
)
from localchat.log import get_logger, request_context
from localchat.services.image_dispatcher import GenerationRequest, ImageDispatcher, RendererOverrides
from localchat.storage.base import MessageStore, SessionStore
from localchat.storage.models import (
    DEFAULT_SESSION_TITLE,
    Attachment,
    Message,
    Session,
    utcnow,
)

logger = get_logger(__name__)

IMAGE_CONFIRMATION = "Here's the image I generated for you."
FAILURE_NOTICE = "Sorry, I couldn't generate a response right now. Please try again."
TITLE_WORDS = 5


def derive_title(content: str) -> str:
    """First five words of the message, with an ellipsis when there are more."""
    words = content.split()
    if not words:
        return DEFAULT_SESSION_TITLE
    title = " ".join(words[:TITLE_WORDS])
    return title + "..." if len(words) > TITLE_WORDS else title


@dataclass
class SendResult:
    user_message: Message
    assistant_message: Message
    session: Session
    is_image_generation: bool = False

    @property
    def failed(self) -> bool:
        return self.assistant_message.error is not None


class ChatOrchestrator:
    """Single entry point for sending messages and managing a user's sessions.

    Ownership and not-found checks run before anything is written. Once the
    user message is stored, provider and renderer failures are captured on an
    error-status assistant message instead of being raised.
    """

    def __init__(
        self,
        sessions: SessionStore,
        messages: MessageStore,
        provider: ProviderClient,
        relay: StreamingRelay,
        images: ImageDispatcher | None = None,
        chat_config: ChatConfig | None = None,
    ):
        self._sessions = sessions
        self._messages = messages
        self._provider = provider
        self._relay = relay
        self._images = images
        self._chat = chat_config or ChatConfig()

    # -- sessions ---------------------------------------------------------

    async def _owned_session(self, user_id: str, session_id: str) -> Session:
        session = await self._sessions.find_by_id(session_id)
        if session is None or session.status == SessionStatus.DELETED:
            raise NotFoundError(f"Session {session_id} not found")
        if session.user_id != user_id:
            raise ForbiddenError(f"Session {session_id} belongs to another user")
        return session

    async def _require_ownership(self, user_id: str, session_id: str) -> None:
        if not await self._sessions.belongs_to_user(session_id, user_id):
            raise ForbiddenError(f"Access to session {session_id} denied")

    async def create_session(
        self,
        user_id: str,
        title: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        session = Session(
            user_id=user_id,
            title=title or DEFAULT_SESSION_TITLE,
            description=description,
            metadata=metadata or {},
        )
        await self._sessions.create(session)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    async def create_or_resolve_session(
        self,
        user_id: str,
        session_id: str | None = None,
        first_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Fetch an owned session by id, or create a new one for *user_id*."""
        if session_id:
            return await self._owned_session(user_id, session_id)
        title = derive_title(first_message) if first_message else None
        return await self.create_session(user_id, title=title, metadata=metadata)

    async def list_sessions(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> tuple[list[Session], int]:
        return await self._sessions.list_by_user(user_id, page, limit)

    async def get_session_with_messages(
        self, user_id: str, session_id: str
    ) -> tuple[Session, list[Message]]:
        session = await self._owned_session(user_id, session_id)
        messages, _ = await self._messages.find_by_session(
            session_id, page=1, limit=self._chat.history_limit
        )
        return session, messages

    async def update_session(
        self,
        user_id: str,
        session_id: str,
        title: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        status: SessionStatus | None = None,
    ) -> Session:
        session = await self._owned_session(user_id, session_id)
        if title is not None:
            if not title.strip():
                raise ValidationError("Session title must not be empty")
            session.title = title.strip()
        if description is not None:
            session.description = description
        if metadata is not None:
            session.metadata = {**session.metadata, **metadata}
        match status:
            case SessionStatus.ARCHIVED:
                session.archive()
            case SessionStatus.ACTIVE:
                session.activate()
            case SessionStatus.DELETED:
                session.soft_delete()
        return await self._sessions.update(session)

    async def archive_session(self, user_id: str, session_id: str) -> None:
        await self._require_ownership(user_id, session_id)
        await self._sessions.archive(session_id)
        logger.info("session_archived", user_id=user_id, session_id=session_id)

    async def delete_session(self, user_id: str, session_id: str) -> None:
        await self._require_ownership(user_id, session_id)
        await self._sessions.soft_delete(session_id)
        logger.info("session_deleted", user_id=user_id, session_id=session_id)

    async def clear_session_messages(self, user_id: str, session_id: str) -> int:
        await self._owned_session(user_id, session_id)
        return await self._messages.delete_by_session(session_id)

    # -- messages ---------------------------------------------------------

    async def get_session_messages(
        self, user_id: str, session_id: str, page: int = 1, limit: int = 50
    ) -> tuple[list[Message], int]:
        await self._require_ownership(user_id, session_id)
        return await self._messages.find_by_session(session_id, page, limit)

    async def get_recent_messages(self, user_id: str, limit: int = 50) -> list[Message]:
        return await self._messages.find_recent_by_user(user_id, limit)

    async def search_messages(
        self, user_id: str, query: str, session_id: str | None = None
    ) -> list[Message]:
        if not session_id:
            raise ValidationError("Search across all sessions is not supported; pass a session id")
        await self._require_ownership(user_id, session_id)
        return await self._messages.search(session_id, query)

    async def add_message_to_session(
        self,
        user_id: str,
        session_id: str,
        content: str,
        role: MessageRole = MessageRole.USER,
    ) -> Message:
        """Store a message without generating a reply.

        The first user message added to a session that still has the
        placeholder title gets a model-generated title.
        """
        session = await self._owned_session(user_id, session_id)
        match role:
            case MessageRole.USER:
                message = Message.user(content, session_id)
            case MessageRole.ASSISTANT:
                message = Message.assistant(content, session_id)
                message.mark_delivered()
            case _:
                raise ValidationError("Role must be user or assistant")
        await self._messages.create(message)

        if role == MessageRole.USER and session.has_placeholder_title():
            session.title = await self._provider.generate_conversation_title(content)
            await self._sessions.update(session)
            logger.info("session_titled", session_id=session_id, title=session.title)
        return message

    async def attach_image_to_message(
        self, user_id: str, message_id: str, attachment: Attachment
    ) -> Message:
        message = await self._messages.find_by_id(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        await self._owned_session(user_id, message.session_id)
        message.add_attachment(attachment)
        return await self._messages.update(message)

    # -- send -------------------------------------------------------------

    async def send_message(
        self,
        user_id: str,
        content: str,
        session_id: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        image_overrides: RendererOverrides | None = None,
    ) -> SendResult:
        """Send one message and wait for the complete reply."""
        return await self._send(
            user_id, content, session_id, model, temperature, max_tokens, image_overrides, None
        )

    async def send_message_streaming(
        self,
        user_id: str,
        content: str,
        session_id: str | None,
        on_token: TokenSink,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        image_overrides: RendererOverrides | None = None,
    ) -> SendResult:
        """Like ``send_message`` but text replies are relayed to *on_token* as they arrive.

        Image requests are never streamed; they complete at once.
        """
        return await self._send(
            user_id, content, session_id, model, temperature, max_tokens, image_overrides, on_token
        )

    async def _send(
        self,
        user_id: str,
        content: str,
        session_id: Optional[str],
        model: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        image_overrides: Optional[RendererOverrides],
        on_token: Optional[TokenSink],
    ) -> SendResult:
        if not content or not content.strip():
            raise ValidationError("Message content must not be empty")

        with request_context(user_id=user_id):
            session = await self.create_or_resolve_session(
                user_id,
                session_id,
                first_message=content,
                metadata=_generation_metadata(model, temperature, max_tokens),
            )
            with request_context(session_id=session.id):
                return await self._dispatch(
                    session, content, model, temperature, max_tokens, image_overrides, on_token
                )

    async def _dispatch(
        self,
        session: Session,
        content: str,
        model: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        image_overrides: Optional[RendererOverrides],
        on_token: Optional[TokenSink],
    ) -> SendResult:
        history = await self._load_history(session.id)

        user_message = Message.user(content, session.id)
        await self._messages.create(user_message)
        logger.info("user_message_stored", message_id=user_message.id)

        if session.has_placeholder_title():
            session.title = derive_title(content)
            await self._sessions.update(session)

        is_image = self._provider.is_image_generation_request(content)
        if is_image:
            assistant = await self._generate_image(session, content, image_overrides)
        else:
            options = GenerationOptions(
                model=model or session.metadata.get("model"),
                temperature=temperature if temperature is not None else session.metadata.get("temperature"),
                max_tokens=max_tokens or session.metadata.get("max_tokens"),
            )
            assistant = await self._generate_text(session, history, content, options, on_token)

        await self._messages.create(assistant)
        now = utcnow()
        session.touch(now)
        await self._sessions.touch(session.id, now)

        logger.info(
            "assistant_message_stored",
            message_id=assistant.id,
            status=assistant.status.value,
            image=is_image,
        )
        return SendResult(
            user_message=user_message,
            assistant_message=assistant,
            session=session,
            is_image_generation=is_image,
        )

    async def _load_history(self, session_id: str) -> list[Message]:
        """The most recent ``history_limit`` messages of a session, oldest first."""
        return await self._messages.find_latest_by_session(session_id, self._chat.history_limit)

    async def _generate_text(
        self,
        session: Session,
        history: list[Message],
        content: str,
        options: GenerationOptions,
        on_token: Optional[TokenSink],
    ) -> Message:
        prompt = build_messages(
            history,
            content,
            system_prompt=self._chat.system_prompt,
            max_history=self._chat.context_messages,
        )
        try:
            if on_token is not None:
                reply = await self._relay.stream(prompt, options, on_token)
            else:
                reply = await self._provider.generate(prompt, options)
        except ProviderError as e:
            logger.error("text_generation_failed", error=str(e), partial_chars=len(e.partial_content))
            message = Message.assistant(
                e.partial_content or FAILURE_NOTICE,
                session.id,
                metadata={
                    "model": options.model or self._provider.default_model,
                    "used_history": bool(history),
                    "streamed": on_token is not None,
                },
            )
            message.mark_error(str(e))
            return message

        message = Message.assistant(
            reply.content,
            session.id,
            metadata=_reply_metadata(reply, options, bool(history), on_token is not None),
        )
        message.mark_delivered()
        return message

    async def _generate_image(
        self,
        session: Session,
        content: str,
        overrides: Optional[RendererOverrides],
    ) -> Message:
        try:
            if self._images is None:
                raise RendererUnavailableError("Image generation is not configured")
            image_prompt = await self._provider.generate_image_prompt(content)
            image = await self._images.generate(
                GenerationRequest(
                    prompt=image_prompt.prompt,
                    negative_prompt=image_prompt.negative_prompt,
                    overrides=overrides or RendererOverrides(),
                )
            )
        except GenerationFailure as e:
            logger.error("image_generation_failed", error=str(e))
            message = Message.assistant(
                f"Sorry, I couldn't generate the image: {e}",
                session.id,
                metadata={"image_generation": True},
            )
            message.mark_error(str(e))
            return message

        attachment = Attachment(
            kind=AttachmentKind.IMAGE,
            url=image.url,
            filename=image.filename,
            original_prompt=content,
            metadata=image.metadata(),
        )
        message = Message.assistant(
            IMAGE_CONFIRMATION,
            session.id,
            metadata={
                "image_generation": True,
                "prompt": image.prompt,
                "negative_prompt": image.negative_prompt,
                "model": image.model,
                "processing_time_ms": image.elapsed_ms,
            },
            attachments=[attachment],
        )
        message.mark_delivered()
        return message


def _generation_metadata(
    model: Optional[str], temperature: Optional[float], max_tokens: Optional[int]
) -> dict[str, Any]:
    values = {"model": model, "temperature": temperature, "max_tokens": max_tokens}
    return {k: v for k, v in values.items() if v is not None}


def _reply_metadata(
    reply: ProviderReply, options: GenerationOptions, used_history: bool, streamed: bool
) -> dict[str, Any]:
    return {
        "model": reply.model_used,
        "temperature": options.temperature,
        "tokens": reply.token_count,
        "processing_time_ms": reply.elapsed_ms,
        "used_history": used_history,
        "streamed": streamed,
    }
