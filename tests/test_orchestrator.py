"""End-to-end tests for ChatOrchestrator over SQLite stores and mocked backends."""

from __future__ import annotations

import base64
import json
from typing import AsyncIterator

import httpx
import pytest

from localchat.ai.events import stream_as_events
from localchat.ai.orchestrator import FAILURE_NOTICE, IMAGE_CONFIRMATION, ChatOrchestrator, derive_title
from localchat.ai.provider import ProviderClient
from localchat.ai.relay import StreamingRelay
from localchat.config import ChatConfig
from localchat.core.types import AttachmentKind, MessageRole, MessageStatus, SessionStatus
from localchat.errors import ForbiddenError, NotFoundError, ValidationError
from localchat.services.image_dispatcher import ImageDispatcher
from localchat.storage.models import DEFAULT_SESSION_TITLE, Attachment, Message
from tests.conftest import mock_http, request_json

IMAGE_PROMPT_JSON = '{"prompt": "a tabby cat, studio light", "negativePrompt": "blurry"}'


class FakeLLM:
    """Provider stand-in answering chat, streaming chat and helper prompts."""

    def __init__(self, reply: str = "Hello!", fail: bool = False, break_stream_after: str | None = None):
        self.reply = reply
        self.fail = fail
        self.break_stream_after = break_stream_after
        self.bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = request_json(request)
        self.bodies.append(body)
        if self.fail:
            return httpx.Response(500)
        if body.get("stream"):
            return httpx.Response(200, content=self._stream())
        last = body["messages"][-1]["content"] if "messages" in body else body["prompt"]
        if "Stable Diffusion" in last:
            return httpx.Response(200, json={"message": {"content": IMAGE_PROMPT_JSON}})
        return httpx.Response(200, json={"message": {"content": self.reply}, "eval_count": 7})

    async def _stream(self) -> AsyncIterator[bytes]:
        if self.break_stream_after is not None:
            yield json.dumps({"message": {"content": self.break_stream_after}}).encode() + b"\n"
            raise httpx.ReadError("connection reset")
        for char in self.reply:
            yield json.dumps({"message": {"content": char}}).encode() + b"\n"
        yield json.dumps({"done": True, "eval_count": len(self.reply)}).encode() + b"\n"

    @property
    def chat_bodies(self) -> list[dict]:
        return [b for b in self.bodies if "messages" in b]


def renderer(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/sdapi/v1/txt2img":
        image = base64.b64encode(b"\x89PNG fake").decode()
        return httpx.Response(200, json={"images": [image], "info": "{}"})
    return httpx.Response(200, json=[])


def unreachable(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("refused", request=request)


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def build(provider_config, renderer_config, image_store, session_store, message_store):
    def _build(llm: FakeLLM, renderer_handler=renderer, **chat_settings) -> ChatOrchestrator:
        provider = ProviderClient(provider_config, http=mock_http(llm))
        images = ImageDispatcher(renderer_config, image_store, http=mock_http(renderer_handler))
        return ChatOrchestrator(
            sessions=session_store,
            messages=message_store,
            provider=provider,
            relay=StreamingRelay(provider),
            images=images,
            chat_config=ChatConfig(
                **{"system_prompt": "Be helpful.", "context_messages": 10, **chat_settings}
            ),
        )

    return _build


@pytest.fixture
def orchestrator(build, llm) -> ChatOrchestrator:
    return build(llm)


class TestSendMessage:
    async def test_new_session_created_for_user(self, orchestrator, session_store, message_store):
        result = await orchestrator.send_message("u1", "Hi")

        assert result.session.user_id == "u1"
        assert result.session.title == "Hi"
        assert result.user_message.content == "Hi"
        assert result.user_message.status == MessageStatus.SENT
        assert result.assistant_message.content == "Hello!"
        assert result.assistant_message.status == MessageStatus.DELIVERED
        assert result.assistant_message.metadata["tokens"] == 7
        assert result.assistant_message.metadata["streamed"] is False
        assert result.is_image_generation is False

        stored, total = await message_store.find_by_session(result.session.id)
        assert total == 2
        assert [m.role for m in stored] == [MessageRole.USER, MessageRole.ASSISTANT]

        session = await session_store.find_by_id(result.session.id)
        assert session.title == "Hi"
        assert session.last_activity_at >= stored[0].created_at
        assert session.last_activity_at >= stored[1].created_at

    async def test_other_users_session_is_forbidden(self, orchestrator, llm, message_store):
        session = await orchestrator.create_session("u1")

        with pytest.raises(ForbiddenError):
            await orchestrator.send_message("u2", "Hi", session.id)

        _, total = await message_store.find_by_session(session.id)
        assert total == 0
        assert llm.bodies == []

    async def test_unknown_session_not_found(self, orchestrator, llm):
        with pytest.raises(NotFoundError):
            await orchestrator.send_message("u1", "Hi", "missing")
        assert llm.bodies == []

    async def test_deleted_session_not_found(self, orchestrator):
        session = await orchestrator.create_session("u1")
        await orchestrator.delete_session("u1", session.id)

        with pytest.raises(NotFoundError):
            await orchestrator.send_message("u1", "Hi", session.id)

    async def test_empty_content_rejected_before_any_write(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.send_message("u1", "   ")
        _, total = await orchestrator.list_sessions("u1")
        assert total == 0

    async def test_history_sent_as_context(self, orchestrator, llm):
        first = await orchestrator.send_message("u1", "My name is Ana")
        await orchestrator.send_message("u1", "What is my name?", first.session.id)

        messages = llm.chat_bodies[-1]["messages"]
        assert messages == [
            {"role": "system", "content": "Be helpful."},
            {"role": "user", "content": "My name is Ana"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "What is my name?"},
        ]

    async def test_long_session_sends_newest_turns_in_order(self, build, llm, message_store):
        orchestrator = build(llm, history_limit=3)
        session = await orchestrator.create_session("u1")
        for i in range(1, 8):
            await message_store.create(Message.user(f"turn {i}", session.id))

        await orchestrator.send_message("u1", "latest", session.id)

        contents = [m["content"] for m in llm.chat_bodies[-1]["messages"]]
        assert contents == ["Be helpful.", "turn 5", "turn 6", "turn 7", "latest"]

    async def test_session_generation_settings_reused(self, orchestrator, llm):
        first = await orchestrator.send_message("u1", "Hi", model="mistral", temperature=0.2)
        await orchestrator.send_message("u1", "Again", first.session.id)

        body = llm.chat_bodies[-1]
        assert body["model"] == "mistral"
        assert body["options"]["temperature"] == 0.2

    async def test_provider_failure_persisted_as_error(self, build, message_store):
        orchestrator = build(FakeLLM(fail=True))

        result = await orchestrator.send_message("u1", "Hi")

        assistant = result.assistant_message
        assert result.failed
        assert assistant.status == MessageStatus.ERROR
        assert assistant.content == FAILURE_NOTICE
        assert "Provider error" in assistant.error

        stored, total = await message_store.find_by_session(result.session.id)
        assert total == 2
        assert stored[1].status == MessageStatus.ERROR
        assert stored[1].error == assistant.error

    async def test_failed_turns_left_out_of_context(self, build, llm):
        failing = FakeLLM(fail=True)
        first = await build(failing).send_message("u1", "Hi")

        await build(llm).send_message("u1", "Hello again", first.session.id)
        roles = [m["role"] for m in llm.chat_bodies[-1]["messages"]]
        assert roles == ["system", "user", "user"]


class TestStreaming:
    async def test_tokens_streamed_and_reply_persisted(self, build, message_store):
        orchestrator = build(FakeLLM(reply="Hello"))
        seen: list[str] = []

        result = await orchestrator.send_message_streaming(
            "u1", "Hi", None, on_token=lambda token, full: seen.append(full)
        )

        assert seen == ["H", "He", "Hel", "Hell", "Hello"]
        assert result.assistant_message.content == "Hello"
        assert result.assistant_message.metadata["streamed"] is True
        stored = await message_store.find_by_id(result.assistant_message.id)
        assert stored.content == "Hello"
        assert stored.status == MessageStatus.DELIVERED

    async def test_mid_stream_failure_keeps_partial_text(self, build, message_store):
        orchestrator = build(FakeLLM(break_stream_after="Hel"))
        seen: list[str] = []

        result = await orchestrator.send_message_streaming(
            "u1", "Hi", None, on_token=lambda token, full: seen.append(token)
        )

        assert seen == ["Hel"]
        stored = await message_store.find_by_id(result.assistant_message.id)
        assert stored.status == MessageStatus.ERROR
        assert stored.content == "Hel"
        assert stored.error

    async def test_image_requests_are_not_streamed(self, orchestrator):
        seen: list[str] = []
        result = await orchestrator.send_message_streaming(
            "u1", "generate an image of a cat", None, on_token=lambda token, full: seen.append(token)
        )

        assert seen == []
        assert result.is_image_generation
        assert len(result.assistant_message.attachments) == 1


    async def test_reply_emitted_as_sse_frames(self, build):
        orchestrator = build(FakeLLM(reply="Hi!"))
        frames: list[str] = []

        result = await stream_as_events(orchestrator, frames.append, "u1", "Hello")

        events = [json.loads(frame.removeprefix("data: ")) for frame in frames]
        assert all(frame.endswith("\n\n") for frame in frames)
        assert [e["token"] for e in events[:-1]] == ["H", "i", "!"]
        assert events[-2]["fullText"] == "Hi!"
        assert events[-1] == {
            "messageId": result.assistant_message.id,
            "sessionId": result.session.id,
            "done": True,
        }

    async def test_refused_send_emits_one_error_frame(self, orchestrator):
        session = await orchestrator.create_session("u1")
        frames: list[str] = []

        result = await stream_as_events(orchestrator, frames.append, "u2", "Hello", session.id)

        assert result is None
        assert len(frames) == 1
        event = json.loads(frames[0].removeprefix("data: "))
        assert event["done"] is True
        assert "error" in event

    async def test_image_reply_emits_image_then_done(self, orchestrator):
        frames: list[str] = []

        await stream_as_events(orchestrator, frames.append, "u1", "generate an image of a cat")

        events = [json.loads(frame.removeprefix("data: ")) for frame in frames]
        assert [e["done"] for e in events] == [False, True]
        assert events[0]["isImageGeneration"] is True
        assert events[0]["attachments"][0]["type"] == "image"


class TestImagePath:
    async def test_image_attached_with_confirmation(self, orchestrator, message_store):
        result = await orchestrator.send_message("u1", "generate an image of a cat")

        assistant = result.assistant_message
        assert result.is_image_generation
        assert assistant.status == MessageStatus.DELIVERED
        assert assistant.content == IMAGE_CONFIRMATION
        assert len(assistant.attachments) == 1
        attachment = assistant.attachments[0]
        assert attachment.kind == AttachmentKind.IMAGE
        assert attachment.to_dict()["type"] == "image"
        assert attachment.url.startswith("/images/sd_")
        assert attachment.original_prompt == "generate an image of a cat"
        assert assistant.metadata["image_generation"] is True
        assert assistant.metadata["prompt"] == "a tabby cat, studio light"
        assert assistant.metadata["negative_prompt"] == "blurry"

        stored = await message_store.find_by_id(assistant.id)
        assert stored.attachments == assistant.attachments

    async def test_renderer_down_persisted_as_error(self, build, llm, message_store):
        orchestrator = build(llm, renderer_handler=unreachable)

        result = await orchestrator.send_message("u1", "draw me a castle")

        assistant = result.assistant_message
        assert result.is_image_generation
        assert assistant.status == MessageStatus.ERROR
        assert assistant.attachments == []
        stored = await message_store.find_by_id(assistant.id)
        assert stored.error == assistant.error

    async def test_failed_image_write_persisted_as_error(self, orchestrator, image_store, message_store):
        image_store.directory.rmdir()

        result = await orchestrator.send_message("u1", "draw me a cat picture")

        assistant = result.assistant_message
        assert result.is_image_generation
        assert assistant.status == MessageStatus.ERROR
        assert "Could not save image" in assistant.error
        assert assistant.attachments == []
        stored, _ = await message_store.find_by_session(result.session.id)
        assert [m.role for m in stored] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert stored[1].status == MessageStatus.ERROR


class TestSessions:
    def test_derive_title(self):
        assert derive_title("Hi") == "Hi"
        assert derive_title("one two three four five") == "one two three four five"
        assert derive_title("one two three four five six") == "one two three four five..."

    async def test_create_or_resolve(self, orchestrator):
        created = await orchestrator.create_or_resolve_session("u1")
        assert created.title == DEFAULT_SESSION_TITLE
        resolved = await orchestrator.create_or_resolve_session("u1", created.id)
        assert resolved.id == created.id
        with pytest.raises(ForbiddenError):
            await orchestrator.create_or_resolve_session("u2", created.id)

    async def test_list_archive_delete(self, orchestrator):
        first = await orchestrator.create_session("u1", title="first")
        second = await orchestrator.create_session("u1", title="second")

        await orchestrator.archive_session("u1", first.id)
        await orchestrator.delete_session("u1", second.id)
        sessions, total = await orchestrator.list_sessions("u1")

        assert total == 1
        assert sessions[0].status == SessionStatus.ARCHIVED
        with pytest.raises(ForbiddenError):
            await orchestrator.delete_session("u2", first.id)

    async def test_update_session(self, orchestrator):
        session = await orchestrator.create_session("u1")
        updated = await orchestrator.update_session(
            "u1", session.id, title="Renamed", metadata={"model": "qwen2"}, status=SessionStatus.ARCHIVED
        )
        assert updated.title == "Renamed"
        assert updated.metadata == {"model": "qwen2"}
        assert updated.status == SessionStatus.ARCHIVED

        with pytest.raises(ValidationError):
            await orchestrator.update_session("u1", session.id, title="  ")

    async def test_get_session_with_messages(self, orchestrator):
        result = await orchestrator.send_message("u1", "Hi")
        session, messages = await orchestrator.get_session_with_messages("u1", result.session.id)
        assert session.id == result.session.id
        assert [m.content for m in messages] == ["Hi", "Hello!"]

    async def test_clear_session_messages(self, orchestrator):
        result = await orchestrator.send_message("u1", "Hi")
        assert await orchestrator.clear_session_messages("u1", result.session.id) == 2
        messages, total = await orchestrator.get_session_messages("u1", result.session.id)
        assert (messages, total) == ([], 0)


class TestMessages:
    async def test_search_requires_session(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.search_messages("u1", "hello")

    async def test_search_within_owned_session(self, orchestrator):
        result = await orchestrator.send_message("u1", "Hi")
        found = await orchestrator.search_messages("u1", "hello", result.session.id)
        assert [m.content for m in found] == ["Hello!"]
        with pytest.raises(ForbiddenError):
            await orchestrator.search_messages("u2", "hello", result.session.id)

    async def test_recent_messages(self, orchestrator):
        await orchestrator.send_message("u1", "Hi")
        recent = await orchestrator.get_recent_messages("u1", limit=10)
        assert [m.content for m in recent] == ["Hi", "Hello!"]

    async def test_add_message_generates_title(self, build):
        orchestrator = build(FakeLLM(reply="Weekend Plans"))
        session = await orchestrator.create_session("u1")

        message = await orchestrator.add_message_to_session("u1", session.id, "what should I do on saturday")
        assert message.status == MessageStatus.SENT

        _, reloaded = await orchestrator.get_session_with_messages("u1", session.id)
        resolved = await orchestrator.create_or_resolve_session("u1", session.id)
        assert resolved.title == "Weekend Plans"
        assert [m.id for m in reloaded] == [message.id]

    async def test_add_message_rejects_system_role(self, orchestrator):
        session = await orchestrator.create_session("u1")
        with pytest.raises(ValidationError):
            await orchestrator.add_message_to_session("u1", session.id, "x", role=MessageRole.SYSTEM)

    async def test_attach_image_to_message(self, orchestrator, message_store):
        result = await orchestrator.send_message("u1", "Hi")
        attachment = Attachment(AttachmentKind.IMAGE, "/images/extra.png", "extra.png")

        updated = await orchestrator.attach_image_to_message("u1", result.assistant_message.id, attachment)
        assert updated.attachments == [attachment]
        stored = await message_store.find_by_id(result.assistant_message.id)
        assert stored.attachments == [attachment]

        with pytest.raises(ForbiddenError):
            await orchestrator.attach_image_to_message("u2", result.assistant_message.id, attachment)
        with pytest.raises(NotFoundError):
            await orchestrator.attach_image_to_message("u1", "missing", attachment)
