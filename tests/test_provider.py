"""Tests for ProviderClient protocol negotiation and reply normalization."""

from __future__ import annotations

import httpx
import pytest

from localchat.ai.provider import (
    FALLBACK_TITLE,
    GenerationOptions,
    LegacyReply,
    StructuredReply,
    fallback_image_prompt,
    fallback_title,
    normalize_reply,
    strip_role_prefix,
)
from localchat.errors import ProviderError
from tests.conftest import request_json


class TestProtocolFallback:
    async def test_chat_404_falls_back_to_generate_once(self, make_provider):
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if request.url.path == "/api/chat":
                return httpx.Response(404)
            return httpx.Response(200, json={"response": "ok"})

        provider = make_provider(handler)
        reply = await provider.generate("Hi")

        assert reply.content == "ok"
        assert calls == ["/api/chat", "/api/generate"]
        assert reply.token_count is None
        assert reply.model_used == "llama3.2"

    async def test_structured_reply_used_when_chat_succeeds(self, make_provider):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(request_json(request))
            return httpx.Response(
                200,
                json={"message": {"content": "Assistant: Hello there"}, "eval_count": 12},
            )

        provider = make_provider(handler)
        reply = await provider.generate(
            [{"role": "user", "content": "Hi"}],
            GenerationOptions(model="mistral", top_k=40),
        )

        assert reply.content == "Hello there"
        assert reply.token_count == 12
        assert reply.model_used == "mistral"
        assert len(bodies) == 1
        body = bodies[0]
        assert body["stream"] is False
        assert body["messages"] == [{"role": "user", "content": "Hi"}]
        assert body["options"] == {"temperature": 0.7, "num_predict": 2048, "top_k": 40}

    async def test_legacy_request_flattens_history(self, make_provider):
        legacy_bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/chat":
                return httpx.Response(501)
            legacy_bodies.append(request_json(request))
            return httpx.Response(200, json={"response": "fine"})

        provider = make_provider(handler)
        await provider.generate(
            [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Hi"},
            ]
        )

        assert legacy_bodies[0]["prompt"] == "System: Be brief.\n\nUser: Hi"
        assert legacy_bodies[0]["stream"] is False

    async def test_transport_error_on_chat_counts_as_failure(self, make_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/chat":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"response": "recovered"})

        provider = make_provider(handler)
        reply = await provider.generate("Hi")
        assert reply.content == "recovered"

    @pytest.mark.parametrize("payload", [["a", "list"], "just a string", 42])
    async def test_non_object_chat_body_falls_back(self, make_provider, payload):
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if request.url.path == "/api/chat":
                return httpx.Response(200, json=payload)
            return httpx.Response(200, json={"response": "recovered"})

        reply = await make_provider(handler).generate("Hi")
        assert reply.content == "recovered"
        assert calls == ["/api/chat", "/api/generate"]

    async def test_non_object_legacy_body_is_provider_error(self, make_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/chat":
                return httpx.Response(404)
            return httpx.Response(200, json=["nope"])

        with pytest.raises(ProviderError, match="Unexpected payload"):
            await make_provider(handler).generate("Hi")

    async def test_both_protocols_failing_raises_last_status(self, make_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/chat":
                return httpx.Response(404)
            return httpx.Response(503)

        provider = make_provider(handler)
        with pytest.raises(ProviderError) as exc_info:
            await provider.generate("Hi")
        assert exc_info.value.status == 503

    async def test_legacy_transport_error_keeps_chat_status(self, make_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/chat":
                return httpx.Response(404)
            raise httpx.ConnectError("refused", request=request)

        provider = make_provider(handler)
        with pytest.raises(ProviderError) as exc_info:
            await provider.generate("Hi")
        assert exc_info.value.status == 404

    async def test_empty_content_is_an_error(self, make_provider):
        provider = make_provider(
            lambda request: httpx.Response(200, json={"message": {"content": "   "}})
        )
        with pytest.raises(ProviderError):
            await provider.generate("Hi")


class TestChatRequest:
    def test_defaults_from_config(self, make_provider):
        request = make_provider(lambda r: httpx.Response(200)).build_chat_request("Hi")

        assert request.url == "http://llm.test/api/chat"
        assert request.model == "llama3.2"
        assert request.timeout == 300.0
        assert request.body["messages"] == [{"role": "user", "content": "Hi"}]
        assert request.body["stream"] is False
        assert request.body["options"] == {"temperature": 0.7, "num_predict": 2048}

    def test_options_override_and_unset_knobs_omitted(self, make_provider):
        options = GenerationOptions(
            model="mistral", temperature=0.0, top_p=0.9, base_url="http://other.test/"
        )
        request = make_provider(lambda r: httpx.Response(200)).build_chat_request(
            "Hi", options, stream=True
        )

        assert request.url == "http://other.test/api/chat"
        assert request.body["model"] == "mistral"
        assert request.body["stream"] is True
        assert request.body["options"] == {"temperature": 0.0, "num_predict": 2048, "top_p": 0.9}


class TestNormalization:
    def test_strip_role_prefix(self):
        assert strip_role_prefix("Assistant: hi") == "hi"
        assert strip_role_prefix("  Resposta: olá ") == "olá"
        assert strip_role_prefix("No prefix here") == "No prefix here"

    def test_only_one_prefix_removed(self):
        assert strip_role_prefix("AI: Bot: hello") == "Bot: hello"

    def test_structured_token_count(self):
        reply = normalize_reply(StructuredReply(content="x", eval_count=3), "m", 10)
        assert reply.token_count == 3
        assert reply.elapsed_ms == 10

    def test_legacy_token_count_is_unknown(self):
        reply = normalize_reply(LegacyReply(content="x"), "m", 10)
        assert reply.token_count is None


class TestHelpers:
    async def test_is_available_and_list_models(self, make_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "llama3.2"}, {"name": "qwen2"}]})

        provider = make_provider(handler)
        assert await provider.is_available() is True
        assert await provider.list_models() == ["llama3.2", "qwen2"]

    async def test_unreachable_provider(self, make_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = make_provider(handler)
        assert await provider.is_available() is False
        assert await provider.list_models() == []

    async def test_conversation_title_is_cleaned(self, make_provider):
        provider = make_provider(
            lambda request: httpx.Response(200, json={"message": {"content": '"Trip  to Lisbon"'}})
        )
        assert await provider.generate_conversation_title("plan a trip") == "Trip to Lisbon"

    async def test_conversation_title_falls_back(self, make_provider):
        provider = make_provider(lambda request: httpx.Response(500))
        title = await provider.generate_conversation_title("hello world, how are you today?")
        assert title == "Hello world how are"

    def test_fallback_title_for_empty_message(self):
        assert fallback_title("!!!") == FALLBACK_TITLE

    async def test_image_prompt_parsed_from_json(self, make_provider):
        content = 'Sure! {"prompt": "a red fox, oil painting", "negativePrompt": "blurry"}'
        provider = make_provider(
            lambda request: httpx.Response(200, json={"message": {"content": content}})
        )
        prompt = await provider.generate_image_prompt("draw a fox")
        assert prompt.prompt == "a red fox, oil painting"
        assert prompt.negative_prompt == "blurry"

    async def test_image_prompt_falls_back_on_failure(self, make_provider):
        provider = make_provider(lambda request: httpx.Response(500))
        prompt = await provider.generate_image_prompt("draw a cat")
        assert prompt.prompt.startswith("cat, highly detailed")
        assert prompt.negative_prompt

    def test_fallback_image_prompt_keeps_subject(self):
        assert fallback_image_prompt("Generate an image of a sunset").startswith("sunset,")
