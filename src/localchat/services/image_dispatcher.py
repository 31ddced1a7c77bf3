"""Image generation side channel against a txt2img renderer (Forge / Automatic1111 API).

One generation attempt moves ``idle -> requested -> succeeded | failed`` and is
atomic for callers: there is no partial output. Before posting, the dispatcher
consults its ``AvailabilityState``; a cached "unreachable" triggers one lazy
re-probe on the same request path, and a disabled renderer is refused before
any network traffic.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Callable, Optional

import httpx

from localchat.config import RendererConfig
from localchat.errors import EmptyGenerationResultError, RendererError, RendererUnavailableError
from localchat.log import get_logger
from localchat.services.base import Service
from localchat.services.prompt_extraction import extract_prompt_from_chat_response
from localchat.storage.attachment_store import AttachmentStore
from localchat.storage.models import utcnow

logger = get_logger(__name__)

TXT2IMG_PATH = "/sdapi/v1/txt2img"
MODELS_PATH = "/sdapi/v1/sd-models"
MEMORY_PATH = "/sdapi/v1/memory"
INTERRUPT_PATH = "/sdapi/v1/interrupt"
DOCS_PATH = "/docs"

RESPONSE_NEGATIVE_PROMPT = "low quality, blurry, distorted, text, watermark"


@dataclass
class RendererOverrides:
    """Per-request settings layered over the configured defaults."""

    base_url: Optional[str] = None
    model: Optional[str] = None
    steps: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    cfg_scale: Optional[float] = None
    sampler: Optional[str] = None
    token: Optional[str] = None
    enabled: Optional[bool] = None


@dataclass(frozen=True)
class RenderSettings:
    base_url: str
    model: str
    steps: int
    width: int
    height: int
    cfg_scale: float
    sampler: str
    token: Optional[str]
    is_xl: bool


@dataclass
class GenerationRequest:
    prompt: str
    negative_prompt: Optional[str] = None
    overrides: RendererOverrides = field(default_factory=RendererOverrides)


@dataclass
class AvailabilityState:
    last_checked_at: Optional[datetime] = None
    is_available: bool = False


class GenerationPhase(StrEnum):
    IDLE = "idle"
    REQUESTED = "requested"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_PHASE_FLOW = {
    GenerationPhase.IDLE: {GenerationPhase.REQUESTED, GenerationPhase.FAILED},
    GenerationPhase.REQUESTED: {GenerationPhase.SUCCEEDED, GenerationPhase.FAILED},
    GenerationPhase.SUCCEEDED: set(),
    GenerationPhase.FAILED: set(),
}


@dataclass
class GenerationAttempt:
    prompt: str
    phase: GenerationPhase = GenerationPhase.IDLE
    error: Optional[str] = None

    def advance(self, phase: GenerationPhase, error: str | None = None) -> None:
        if phase not in _PHASE_FLOW[self.phase]:
            raise RuntimeError(f"Illegal generation transition {self.phase} -> {phase}")
        self.phase = phase
        self.error = error


@dataclass
class GeneratedImage:
    url: str
    filename: str
    path: str
    prompt: str
    negative_prompt: str
    model: str
    parameters: dict[str, Any]
    elapsed_ms: int
    info: Optional[dict[str, Any]] = None

    def metadata(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "negativePrompt": self.negative_prompt,
            "model": self.model,
            "parameters": self.parameters,
            "processingTime": self.elapsed_ms,
            "info": self.info,
        }


def resolve_settings(config: RendererConfig, overrides: RendererOverrides | None = None) -> RenderSettings:
    """Merge request overrides over service defaults.

    XL-class models (name contains "xl") default to 1024x1024, 25 steps and
    ``DPM++ 2M Karras``; everything else to 512x512, 20 steps and ``Euler a``.
    """
    overrides = overrides or RendererOverrides()
    model = overrides.model or config.default_model
    is_xl = "xl" in model.lower()
    default_size = 1024 if is_xl else 512
    return RenderSettings(
        base_url=(overrides.base_url or config.base_url).rstrip("/"),
        model=model,
        steps=overrides.steps or (25 if is_xl else 20),
        width=overrides.width or default_size,
        height=overrides.height or default_size,
        cfg_scale=overrides.cfg_scale or 7.0,
        sampler=overrides.sampler or ("DPM++ 2M Karras" if is_xl else "Euler a"),
        token=overrides.token,
        is_xl=is_xl,
    )


class ImageDispatcher(Service):
    """Generates images through the renderer and stores them as attachments."""

    def __init__(
        self,
        config: RendererConfig,
        store: AttachmentStore,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config
        self._store = store
        self._http = http or httpx.AsyncClient()
        self._clock = clock
        self.availability = AvailabilityState()
        self.last_attempt: GenerationAttempt | None = None

    @property
    def service_name(self) -> str:
        return "renderer"

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def start(self) -> None:
        if not self._config.enabled:
            logger.info("renderer_disabled")
            return
        if await self.probe():
            models = await self.list_models()
            logger.info(
                "renderer_ready",
                base_url=self._config.base_url,
                models=[m.get("model_name") for m in models],
            )
        else:
            logger.warning("renderer_unavailable", base_url=self._config.base_url)

    async def stop(self) -> None:
        await self._http.aclose()

    async def health_check(self) -> bool:
        return await self.probe()

    def _auth_headers(self, token: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif self._config.api_user and self._config.api_password:
            credentials = f"{self._config.api_user}:{self._config.api_password}".encode()
            headers["Authorization"] = f"Basic {base64.b64encode(credentials).decode()}"
        return headers

    def _base_url(self, override: str | None = None) -> str:
        return (override or self._config.base_url).rstrip("/")

    async def probe(self, base_url: str | None = None, token: str | None = None) -> bool:
        """Connectivity check; updates the availability cache."""
        url = self._base_url(base_url)
        headers = self._auth_headers(token)
        available = False
        for path in (MODELS_PATH, DOCS_PATH):
            try:
                response = await self._http.get(
                    f"{url}{path}", headers=headers, timeout=self._config.probe_timeout
                )
            except httpx.HTTPError as e:
                logger.warning("renderer_probe_failed", url=url, path=path, error=str(e))
                break
            if response.is_success:
                available = True
                break
        self.availability = AvailabilityState(last_checked_at=self._clock(), is_available=available)
        return available

    async def list_models(self, base_url: str | None = None, token: str | None = None) -> list[dict[str, Any]]:
        try:
            response = await self._http.get(
                f"{self._base_url(base_url)}{MODELS_PATH}",
                headers=self._auth_headers(token),
                timeout=self._config.probe_timeout,
            )
            response.raise_for_status()
            return [
                {
                    "title": m.get("title"),
                    "model_name": m.get("model_name"),
                    "filename": m.get("filename"),
                }
                for m in response.json()
            ]
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.error("renderer_models_failed", error=str(e))
            return []

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        """Run one txt2img call and persist the first returned image."""
        settings = resolve_settings(self._config, request.overrides)
        attempt = GenerationAttempt(prompt=request.prompt)
        self.last_attempt = attempt
        try:
            await self._ensure_available(request.overrides, settings)
            attempt.advance(GenerationPhase.REQUESTED)
            image = await self._render(request, settings)
        except Exception as e:
            attempt.advance(GenerationPhase.FAILED, str(e))
            raise
        attempt.advance(GenerationPhase.SUCCEEDED)
        return image

    async def _ensure_available(self, overrides: RendererOverrides, settings: RenderSettings) -> None:
        enabled = overrides.enabled if overrides.enabled is not None else self._config.enabled
        if not enabled:
            raise RendererUnavailableError("Image generation is disabled")
        if self.availability.is_available:
            return
        if not await self.probe(settings.base_url, settings.token):
            raise RendererUnavailableError(
                f"Image renderer is not reachable at {settings.base_url}. Check that it is running."
            )

    async def _render(self, request: GenerationRequest, settings: RenderSettings) -> GeneratedImage:
        negative_prompt = request.negative_prompt or self._config.default_negative_prompt
        body = {
            "prompt": request.prompt,
            "negative_prompt": negative_prompt,
            "steps": settings.steps,
            "width": settings.width,
            "height": settings.height,
            "cfg_scale": settings.cfg_scale,
            "sampler_name": settings.sampler,
            "batch_size": 1,
            "n_iter": 1,
            "seed": -1,
            "override_settings": {"sd_model_checkpoint": settings.model},
        }
        logger.info(
            "image_generation_started",
            base_url=settings.base_url,
            model=settings.model,
            prompt=request.prompt[:50],
        )
        started = time.perf_counter()
        try:
            response = await self._http.post(
                f"{settings.base_url}{TXT2IMG_PATH}",
                json=body,
                headers=self._auth_headers(settings.token),
                timeout=self._config.timeout,
            )
        except httpx.HTTPError as e:
            self.availability = AvailabilityState(last_checked_at=self._clock(), is_available=False)
            logger.error("image_generation_failed", error=str(e))
            raise RendererUnavailableError(f"Image renderer request failed: {e}") from e

        if not response.is_success:
            logger.error("image_generation_failed", status=response.status_code)
            raise RendererError(
                f"Image generation failed: {response.status_code} {response.reason_phrase} - {response.text[:200]}"
            )
        self.availability = AvailabilityState(last_checked_at=self._clock(), is_available=True)

        try:
            result = response.json()
        except ValueError as e:
            raise RendererError("Image renderer returned invalid JSON") from e
        if not isinstance(result, dict):
            raise RendererError("Image renderer returned an unexpected payload")
        images = result.get("images") or []
        if not images:
            raise EmptyGenerationResultError("The renderer returned no image")
        try:
            data = base64.b64decode(images[0], validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise RendererError("The renderer returned an undecodable image") from e

        stored = await self._store.write(data, suffix=".png")
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info("image_generated", filename=stored.filename, elapsed_ms=elapsed_ms)
        return GeneratedImage(
            url=stored.url,
            filename=stored.filename,
            path=stored.path,
            prompt=request.prompt,
            negative_prompt=negative_prompt,
            model=settings.model,
            parameters=body,
            elapsed_ms=elapsed_ms,
            info=_parse_info(result.get("info")),
        )

    async def generate_from_response(
        self, chat_response: str, overrides: RendererOverrides | None = None
    ) -> GeneratedImage:
        """Render an image from an assistant reply, markdown stripped."""
        return await self.generate(
            GenerationRequest(
                prompt=extract_prompt_from_chat_response(chat_response),
                negative_prompt=RESPONSE_NEGATIVE_PROMPT,
                overrides=overrides or RendererOverrides(),
            )
        )

    async def get_system_info(self, base_url: str | None = None) -> dict[str, Any] | None:
        try:
            response = await self._http.get(
                f"{self._base_url(base_url)}{MEMORY_PATH}",
                headers=self._auth_headers(),
                timeout=self._config.probe_timeout,
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("renderer_system_info_failed", error=str(e))
            return None

    async def interrupt_generation(self, base_url: str | None = None) -> bool:
        """Best-effort cancel of the in-flight render. Never raises."""
        try:
            response = await self._http.post(
                f"{self._base_url(base_url)}{INTERRUPT_PATH}",
                headers=self._auth_headers(),
                timeout=self._config.probe_timeout,
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.error("renderer_interrupt_failed", error=str(e))
            return False

    async def list_saved_images(self) -> list[str]:
        return await self._store.list()

    async def cleanup_old_images(self, max_age_hours: float = 24) -> int:
        return await self._store.delete_older_than(timedelta(hours=max_age_hours))

    def config_status(self) -> dict[str, Any]:
        return {
            "enabled": self._config.enabled,
            "available": self.availability.is_available,
            "last_checked_at": (
                self.availability.last_checked_at.isoformat()
                if self.availability.last_checked_at
                else None
            ),
            "base_url": self._config.base_url,
            "default_model": self._config.default_model,
            "last_attempt": asdict(self.last_attempt) if self.last_attempt else None,
        }


def _parse_info(info: Any) -> dict[str, Any] | None:
    if isinstance(info, dict):
        return info
    if isinstance(info, str) and info:
        try:
            parsed = json.loads(info)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None
