"""Language-model provider client: chat protocol with legacy completion fallback.

The provider speaks two incompatible protocols. The structured chat protocol
(``POST /api/chat``) takes role-tagged history and returns one structured
message; the legacy completion protocol (``POST /api/generate``) takes one
flattened prompt and returns raw text. ``generate`` always tries chat first and
falls back to the legacy endpoint once on any non-success, then reduces
whichever raw reply it got into a single ``ProviderReply``.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

from localchat.ai.conversation import flatten_messages
from localchat.ai.intent import is_image_generation_request
from localchat.config import ProviderConfig
from localchat.errors import ProviderError
from localchat.log import get_logger

logger = get_logger(__name__)

CHAT_PATH = "/api/chat"
GENERATE_PATH = "/api/generate"
TAGS_PATH = "/api/tags"

# Labels models sometimes echo at the start of a reply
ROLE_PREFIXES = (
    "Assistant:", "Assistente:", "Response:", "Resposta:",
    "AI:", "IA:", "Bot:", "Chatbot:", "System:", "Sistema:",
)

FALLBACK_TITLE = "New Conversation"
DEFAULT_NEGATIVE_PROMPT = (
    "blurry, low quality, distorted, deformed, ugly, bad anatomy, watermark, text, signature"
)
IMAGE_PROMPT_INSTRUCTIONS = """You are an expert prompt engineer for Stable Diffusion image generation.
Convert the user request into a detailed, optimized prompt for SDXL.

RULES:
1. Output ONLY a JSON object with "prompt" and "negativePrompt" fields
2. The prompt describes the subject, art style, lighting, quality boosters and composition
3. The negative prompt lists common quality issues to avoid
4. No explanation, just the JSON

User request: "{request}"

JSON:"""
TITLE_INSTRUCTIONS = """Based on this user message, generate a short, descriptive title (maximum 4-5 words) for a conversation. Respond only with the title, no quotes, no explanation:

User message: "{message}"

Title:"""

_IMAGE_REQUEST_WORDS = re.compile(
    r"\b(generate|create|make|draw|produce|render|design|gere|crie|faça|desenhe|"
    r"image|picture|photo|illustration|imagem|foto|ilustração|"
    r"please|a|an|the|um|uma|of|de|for|para|me|i want|eu quero|can you|pode)\b",
    re.IGNORECASE,
)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

Messages = Union[list[dict[str, Any]], str]


@dataclass
class GenerationOptions:
    """Per-call generation knobs; unset fields fall back to provider defaults."""

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    repeat_penalty: Optional[float] = None
    seed: Optional[int] = None
    base_url: Optional[str] = None
    timeout: Optional[float] = None


@dataclass
class ProviderReply:
    """The one reply shape both protocols are reduced to."""

    content: str
    model_used: str
    token_count: Optional[int]  # None when the protocol reports nothing
    elapsed_ms: int


@dataclass
class StructuredReply:
    content: str
    eval_count: Optional[int] = None
    eval_duration: Optional[int] = None


@dataclass
class LegacyReply:
    content: str


RawReply = Union[StructuredReply, LegacyReply]


@dataclass
class ImagePrompt:
    prompt: str
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    style: Optional[str] = None


@dataclass
class ChatRequest:
    url: str
    body: dict[str, Any]
    timeout: float
    model: str = ""


def strip_role_prefix(content: str) -> str:
    """Remove one leading role label such as ``Assistant:``."""
    cleaned = content.strip()
    for prefix in ROLE_PREFIXES:
        if cleaned.startswith(prefix):
            return cleaned[len(prefix):].strip()
    return cleaned


def normalize_reply(raw: RawReply, model: str, elapsed_ms: int) -> ProviderReply:
    """Reduce either raw protocol reply into a ProviderReply."""
    match raw:
        case StructuredReply(eval_count=eval_count):
            token_count = eval_count
        case LegacyReply():
            token_count = None
    content = strip_role_prefix(raw.content)
    if not content:
        raise ProviderError(200, "Empty response from provider")
    return ProviderReply(
        content=content,
        model_used=model,
        token_count=token_count,
        elapsed_ms=elapsed_ms,
    )


def clean_title(title: str) -> str:
    cleaned = re.sub(r"\s+", " ", re.sub(r"['\"]", "", title)).strip()
    if len(cleaned) > 40:
        cleaned = cleaned[:37] + "..."
    return cleaned or FALLBACK_TITLE


def fallback_title(message: str) -> str:
    """Title from the first words of a message when the model cannot help."""
    words = re.sub(r"[^\w\s]", "", message).split()[:4]
    if not words:
        return FALLBACK_TITLE
    title = " ".join(words)
    if len(title) > 30:
        title = title[:27] + "..."
    return title[0].upper() + title[1:].lower()


def fallback_image_prompt(request: str) -> str:
    subject = re.sub(r"\s+", " ", _IMAGE_REQUEST_WORDS.sub("", request.lower())).strip(" ,.!?")
    subject = subject or request.strip()
    return f"{subject}, highly detailed, masterpiece, best quality, professional, 8k uhd, sharp focus, vibrant colors"


class ProviderClient:
    """HTTP client for the local language-model provider."""

    def __init__(self, config: ProviderConfig, http: httpx.AsyncClient | None = None):
        self._config = config
        self._http = http or httpx.AsyncClient(timeout=config.timeout)

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    @property
    def default_model(self) -> str:
        return self._config.default_model

    async def close(self) -> None:
        await self._http.aclose()

    def _base_url(self, override: str | None = None) -> str:
        return (override or self._config.base_url).rstrip("/")

    def _options_payload(self, options: GenerationOptions) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "temperature": (
                options.temperature
                if options.temperature is not None
                else self._config.default_temperature
            ),
            "num_predict": options.max_tokens or self._config.default_max_tokens,
        }
        optional = {
            "top_k": options.top_k,
            "top_p": options.top_p,
            "frequency_penalty": options.frequency_penalty,
            "presence_penalty": options.presence_penalty,
            "repeat_penalty": options.repeat_penalty,
            "seed": options.seed,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload

    def build_chat_request(
        self, messages: Messages, options: GenerationOptions | None = None, stream: bool = False
    ) -> ChatRequest:
        """Assemble the structured-protocol request (also used by the streaming relay)."""
        options = options or GenerationOptions()
        model = options.model or self._config.default_model
        if isinstance(messages, str):
            messages = [{"role": "user", "content": messages}]
        return ChatRequest(
            url=f"{self._base_url(options.base_url)}{CHAT_PATH}",
            body={
                "model": model,
                "messages": messages,
                "stream": stream,
                "options": self._options_payload(options),
            },
            timeout=options.timeout or self._config.timeout,
            model=model,
        )

    async def generate(
        self, messages: Messages, options: GenerationOptions | None = None
    ) -> ProviderReply:
        """Complete a conversation, falling back to the legacy protocol once."""
        options = options or GenerationOptions()
        request = self.build_chat_request(messages, options)
        logger.info("provider_request", model=request.model, url=request.url)

        started = time.perf_counter()
        raw = await self._complete(request, messages, options)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        reply = normalize_reply(raw, request.model, elapsed_ms)
        logger.info(
            "provider_reply",
            model=reply.model_used,
            protocol="chat" if isinstance(raw, StructuredReply) else "generate",
            tokens=reply.token_count,
            elapsed_ms=reply.elapsed_ms,
        )
        return reply

    async def _complete(
        self, request: ChatRequest, messages: Messages, options: GenerationOptions
    ) -> RawReply:
        last_status: Optional[int] = None
        try:
            response = await self._http.post(request.url, json=request.body, timeout=request.timeout)
            if response.is_success:
                data = response.json()
                if isinstance(data, dict):
                    message = data.get("message")
                    if not isinstance(message, dict):
                        message = {}
                    return StructuredReply(
                        content=message.get("content") or data.get("response") or "",
                        eval_count=data.get("eval_count"),
                        eval_duration=data.get("eval_duration"),
                    )
                logger.warning("provider_fallback", reason="chat_payload", payload=type(data).__name__)
            else:
                last_status = response.status_code
                logger.warning("provider_fallback", reason="chat_status", status=response.status_code)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("provider_fallback", reason="chat_failed", error=str(e))

        legacy_body = {
            "model": request.model,
            "prompt": flatten_messages(messages),
            "stream": False,
            "options": request.body["options"],
        }
        url = f"{self._base_url(options.base_url)}{GENERATE_PATH}"
        try:
            response = await self._http.post(url, json=legacy_body, timeout=request.timeout)
        except httpx.HTTPError as e:
            logger.error("provider_failed", status=last_status, error=str(e))
            raise ProviderError(last_status, str(e) or type(e).__name__) from e

        if not response.is_success:
            logger.error("provider_failed", status=response.status_code)
            raise ProviderError(response.status_code, response.reason_phrase)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(response.status_code, "Invalid JSON from provider") from e
        if not isinstance(data, dict):
            raise ProviderError(response.status_code, "Unexpected payload from provider")
        return LegacyReply(content=data.get("response") or "")

    def is_image_generation_request(self, text: str) -> bool:
        return is_image_generation_request(text)

    async def is_available(self, base_url: str | None = None) -> bool:
        try:
            response = await self._http.get(
                f"{self._base_url(base_url)}{TAGS_PATH}", timeout=self._config.probe_timeout
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning("provider_unavailable", url=self._base_url(base_url), error=str(e))
            return False

    async def list_models(self, base_url: str | None = None) -> list[str]:
        try:
            response = await self._http.get(
                f"{self._base_url(base_url)}{TAGS_PATH}", timeout=self._config.probe_timeout
            )
            response.raise_for_status()
            return [m["name"] for m in response.json().get("models", [])]
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("provider_models_failed", error=str(e))
            return []

    async def generate_conversation_title(self, first_message: str) -> str:
        """Ask the model for a short title; never raises."""
        try:
            reply = await self.generate(
                TITLE_INSTRUCTIONS.format(message=first_message),
                GenerationOptions(max_tokens=50, timeout=self._config.helper_timeout),
            )
        except ProviderError as e:
            logger.warning("title_generation_failed", error=str(e))
            return fallback_title(first_message)
        return clean_title(reply.content)

    async def generate_image_prompt(self, request: str) -> ImagePrompt:
        """Turn a natural-language image request into a renderer prompt; never raises."""
        try:
            reply = await self.generate(
                IMAGE_PROMPT_INSTRUCTIONS.format(request=request),
                GenerationOptions(max_tokens=500, timeout=self._config.helper_timeout),
            )
        except ProviderError as e:
            logger.warning("image_prompt_generation_failed", error=str(e))
            return ImagePrompt(prompt=fallback_image_prompt(request))

        match = _JSON_OBJECT.search(reply.content)
        if match:
            try:
                parsed = json.loads(match.group(0))
            except json.JSONDecodeError as e:
                logger.warning("image_prompt_unparseable", error=str(e))
            else:
                if isinstance(parsed, dict) and parsed.get("prompt"):
                    return ImagePrompt(
                        prompt=str(parsed["prompt"]),
                        negative_prompt=parsed.get("negativePrompt") or DEFAULT_NEGATIVE_PROMPT,
                        style=parsed.get("style"),
                    )
        return ImagePrompt(prompt=fallback_image_prompt(request))
