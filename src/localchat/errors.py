"""Error taxonomy shared by the chat pipeline."""

from __future__ import annotations

from typing import Optional


class LocalChatError(Exception):
    """Base class for all localchat errors."""


class NotFoundError(LocalChatError):
    """A session or message does not exist."""


class ForbiddenError(LocalChatError):
    """The session belongs to another user."""


class ValidationError(LocalChatError):
    """Malformed input or an illegal state transition."""


class PersistenceError(LocalChatError):
    """A storage read or write failed."""


class ProviderError(LocalChatError):
    """The language-model provider could not produce a reply.

    ``status`` is the last HTTP status observed (None for transport failures).
    ``partial_content`` holds whatever text was streamed before the failure.
    """

    def __init__(
        self,
        status: Optional[int],
        status_text: str,
        partial_content: str = "",
    ):
        self.status = status
        self.status_text = status_text
        self.partial_content = partial_content
        label = f"{status} {status_text}" if status is not None else status_text
        super().__init__(f"Provider error: {label}")


class ArtifactStorageError(PersistenceError):
    """A generated artifact could not be written to or read from the attachment store."""


class RendererError(LocalChatError):
    """The image renderer answered with a failure."""


class RendererUnavailableError(RendererError):
    """The image renderer is disabled or unreachable."""


class EmptyGenerationResultError(RendererError):
    """The image renderer returned no image."""


# Errors that become an error-status assistant message instead of propagating
GenerationFailure = (ProviderError, RendererError, ArtifactStorageError)
