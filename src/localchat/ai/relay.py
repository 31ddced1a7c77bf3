"""Token-streaming relay over the provider's incremental chat protocol.

The provider answers a streaming chat request with newline-delimited JSON
objects: ``{"message": {"content": <delta>}}`` repeated, then one
``{"done": true, "eval_count": N}``. ``FragmentDecoder`` turns raw byte chunks
into parsed fragments; ``StreamingRelay`` forwards every content delta to a
caller sink as it arrives and reduces the stream into one ``ProviderReply``.
"""

from __future__ import annotations

import codecs
import inspect
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

import httpx

from localchat.ai.provider import GenerationOptions, Messages, ProviderClient, ProviderReply, strip_role_prefix
from localchat.errors import ProviderError
from localchat.log import get_logger

logger = get_logger(__name__)

# on_token(delta, full_text_so_far); may be a plain function or a coroutine function
TokenSink = Callable[[str, str], Union[None, Awaitable[None]]]


class DecoderState(Enum):
    ACCUMULATING_LINE = "accumulating_line"
    TRY_PARSE = "try_parse"
    EMIT_OR_SKIP = "emit_or_skip"


@dataclass
class StreamFragment:
    delta: str = ""
    done: bool = False
    eval_count: Optional[int] = None


class FragmentDecoder:
    """Line-buffered decoder: bytes -> complete lines -> parsed fragments.

    A line that fails to parse is skipped and counted, never fatal. Multi-byte
    characters split across chunks are held back by the incremental decoder.
    """

    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.state = DecoderState.ACCUMULATING_LINE
        self.skipped = 0

    def feed(self, chunk: bytes) -> Iterator[StreamFragment]:
        self._buffer += self._text.decode(chunk)
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            fragment = self._process(line)
            if fragment is not None:
                yield fragment

    def flush(self) -> Iterator[StreamFragment]:
        """Parse whatever remains once the transport has closed."""
        self._buffer += self._text.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        fragment = self._process(line)
        if fragment is not None:
            yield fragment

    def _process(self, line: str) -> StreamFragment | None:
        self.state = DecoderState.TRY_PARSE
        line = line.strip()
        fragment = None
        if line:
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                data = None
            self.state = DecoderState.EMIT_OR_SKIP
            if isinstance(data, dict):
                fragment = self._to_fragment(data)
            else:
                self.skipped += 1
                logger.debug("stream_line_skipped", line=line[:80])
        self.state = DecoderState.ACCUMULATING_LINE
        return fragment

    @staticmethod
    def _to_fragment(data: dict[str, Any]) -> StreamFragment:
        message = data.get("message") or {}
        delta = message.get("content") if isinstance(message, dict) else None
        return StreamFragment(
            delta=delta or "",
            done=bool(data.get("done")),
            eval_count=data.get("eval_count"),
        )


class StreamingRelay:
    """Streams one chat completion to a sink while building the final reply.

    No retry: a transport failure mid-stream raises ``ProviderError`` whose
    ``partial_content`` carries the text already delivered to the sink.
    """

    def __init__(self, provider: ProviderClient):
        self._provider = provider

    async def stream(
        self,
        messages: Messages,
        options: GenerationOptions | None,
        on_token: TokenSink,
    ) -> ProviderReply:
        request = self._provider.build_chat_request(messages, options, stream=True)
        logger.info("stream_request", model=request.model, url=request.url)

        started = time.perf_counter()
        full_text = ""
        eval_count: Optional[int] = None
        decoder = FragmentDecoder()

        async def _emit(fragment: StreamFragment) -> bool:
            nonlocal full_text, eval_count
            if fragment.delta:
                full_text += fragment.delta
                result = on_token(fragment.delta, full_text)
                if inspect.isawaitable(result):
                    await result
            if fragment.done:
                eval_count = fragment.eval_count
            return fragment.done

        try:
            async with self._provider.http.stream(
                "POST", request.url, json=request.body, timeout=request.timeout
            ) as response:
                if not response.is_success:
                    logger.error("stream_rejected", status=response.status_code)
                    raise ProviderError(response.status_code, response.reason_phrase)

                finished = False
                async for chunk in response.aiter_bytes():
                    for fragment in decoder.feed(chunk):
                        if await _emit(fragment):
                            finished = True
                            break
                    if finished:
                        break
                if not finished:
                    for fragment in decoder.flush():
                        await _emit(fragment)
        except httpx.HTTPError as e:
            logger.error("stream_interrupted", error=str(e), received_chars=len(full_text))
            raise ProviderError(None, str(e) or type(e).__name__, partial_content=full_text) from e

        if not full_text:
            raise ProviderError(None, "Stream closed without content")

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "stream_completed",
            model=request.model,
            tokens=eval_count,
            elapsed_ms=elapsed_ms,
            skipped_lines=decoder.skipped,
        )
        return ProviderReply(
            content=strip_role_prefix(full_text) or full_text,
            model_used=request.model,
            token_count=eval_count,
            elapsed_ms=elapsed_ms,
        )
