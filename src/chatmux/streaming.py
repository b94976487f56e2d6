"""Normalization of backend responses into canonical delta chunks.

Adapters hand an open response to one of the normalizers below and wrap
the result in a :class:`DeltaStream`. A response is either a run of
content-only chunks or a single chunk carrying the complete tool-call
batch; partial tool calls are never emitted.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from typing import Any

import httpx

from chatmux.errors import ProviderTimeoutError, StreamConsumedError
from chatmux.retry import request_error
from chatmux.timeouts import CancellationToken, race
from chatmux.tokens import TokenCounter, count_tokens
from chatmux.tools import ToolCallAccumulator, tool_call_from_gemini
from chatmux.types import ChatResponse, DeltaChunk, TokenUsage

_logger = logging.getLogger(__name__)

_EXHAUSTED = object()

CloseCallback = Callable[[], "Awaitable[None] | None"]


async def response_lines(response: httpx.Response, *, provider: str) -> AsyncIterator[str]:
    """Lines of an open streaming response; transport failures are wrapped."""
    try:
        async for line in response.aiter_lines():
            yield line
    except httpx.HTTPError as exc:
        raise request_error(provider, f"Stream interrupted: {str(exc) or type(exc).__name__}", cause=exc) from exc


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode the ``data:`` payloads of a server-sent event stream."""
    async for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            # blank separators, "event:" and ":" keep-alive comments
            continue

        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return

        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            _logger.debug("Skipping non-JSON streaming chunk: %s", data)
            continue
        if isinstance(event, dict):
            yield event


def check_event_error(provider: str, event: Mapping[str, Any]) -> None:
    error = event.get("error")
    if not error:
        return
    if isinstance(error, Mapping):
        message = error.get("message") or json.dumps(error)
        code = error.get("code")
        status = code if isinstance(code, int) else None
    else:
        message, status = str(error), None
    raise request_error(provider, message, status_code=status)


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Mistral may send content as a list of typed chunks.
        return "".join(
            part.get("text", "") for part in content if isinstance(part, Mapping) and part.get("type") == "text"
        )
    return ""


async def openai_deltas(events: AsyncIterator[dict[str, Any]], *, provider: str) -> AsyncIterator[DeltaChunk]:
    """Chat-completions events (OpenAI, OpenRouter, Mistral) to delta chunks.

    Content is emitted as it arrives; tool-call fragments are held until
    the stream ends and then emitted as one batch. The wire format lets a
    model send some text before deciding to call tools, so a response may
    be content deltas followed by that batch; the batch is always last.
    """
    accumulator = ToolCallAccumulator()
    async for event in events:
        check_event_error(provider, event)
        choices = event.get("choices") or []
        if not choices:
            continue
        delta = choices[0].get("delta") or {}
        if delta.get("tool_calls"):
            accumulator.feed(delta["tool_calls"])
        text = _text_of(delta.get("content"))
        if text:
            yield DeltaChunk.content_delta(text)

    if accumulator:
        yield DeltaChunk.tool_call_batch(accumulator.complete())


def gemini_parts(event: Mapping[str, Any]) -> list[dict[str, Any]]:
    candidates = event.get("candidates") or []
    if not candidates:
        return []
    return (candidates[0].get("content") or {}).get("parts") or []


def gemini_function_calls(event: Mapping[str, Any]) -> list[dict[str, Any]]:
    return [part["functionCall"] for part in gemini_parts(event) if part.get("functionCall")]


def gemini_text(event: Mapping[str, Any]) -> str:
    return "".join(part["text"] for part in gemini_parts(event) if isinstance(part.get("text"), str))


def gemini_tool_call_batch(function_calls: Iterable[Mapping[str, Any]]) -> DeltaChunk:
    """One chunk holding every reported call, in reported order."""
    return DeltaChunk.tool_call_batch([tool_call_from_gemini(call, i) for i, call in enumerate(function_calls)])


async def gemini_content_deltas(
    first_event: Mapping[str, Any] | None,
    events: AsyncIterator[dict[str, Any]],
    *,
    provider: str,
) -> AsyncIterator[DeltaChunk]:
    """Text deltas of a Gemini stream whose first event carried no calls.

    Function calls that show up in later events are collected and emitted
    as one batch after the last text delta.
    """
    calls: list[dict[str, Any]] = []
    if first_event is not None:
        text = gemini_text(first_event)
        if text:
            yield DeltaChunk.content_delta(text)
    async for event in events:
        check_event_error(provider, event)
        calls.extend(gemini_function_calls(event))
        text = gemini_text(event)
        if text:
            yield DeltaChunk.content_delta(text)

    if calls:
        yield gemini_tool_call_batch(calls)


async def single_chunk(chunk: DeltaChunk) -> AsyncIterator[DeltaChunk]:
    yield chunk


async def cooperative(
    chunks: AsyncIterator[DeltaChunk],
    token: CancellationToken,
    *,
    provider: str,
    timeout_ms: float | None = None,
) -> AsyncIterator[DeltaChunk]:
    """Check ``token`` before every element instead of aborting the I/O."""
    async for chunk in chunks:
        if token.cancelled:
            if token.reason == "timeout" and timeout_ms is not None:
                raise ProviderTimeoutError(provider, f"Streaming operation timed out after {timeout_ms:g}ms")
            raise ProviderTimeoutError(provider, f"Request was {token.reason or 'cancelled'}")
        yield chunk


class DeltaStream:
    """Pull-based, single-pass sequence of :class:`DeltaChunk`.

    Every pull races the underlying iterator against ``token``; calling
    :meth:`cancel` makes the next pull close the stream and raise
    ``ProviderTimeoutError``. Closing (explicitly, on exhaustion, or on
    error) runs the registered close callbacks exactly once.
    """

    def __init__(
        self,
        provider: str,
        model: str,
        chunks: AsyncIterator[DeltaChunk],
        *,
        token: CancellationToken | None = None,
        on_close: Iterable[CloseCallback] = (),
        input_tokens: int = 0,
        token_counter: TokenCounter = count_tokens,
        timeout_ms: float | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.token = token or CancellationToken()
        self.timeout_ms = timeout_ms
        self._chunks = chunks
        self._on_close = list(on_close)
        self._input_tokens = input_tokens
        self._token_counter = token_counter
        self._output: list[str] = []
        self._output_tokens: int | None = None
        self._started = False
        self._closed = False

    def __aiter__(self) -> DeltaStream:
        if self._started:
            raise StreamConsumedError(self.provider)
        self._started = True
        return self

    async def __anext__(self) -> DeltaChunk:
        self._started = True
        if self._closed:
            raise StopAsyncIteration
        if self.token.cancelled:
            await self.aclose()
            if self.token.reason == "timeout" and self.timeout_ms is not None:
                raise ProviderTimeoutError(self.provider, f"Streaming operation timed out after {self.timeout_ms:g}ms")
            raise ProviderTimeoutError(self.provider, f"Request was {self.token.reason or 'cancelled'}")

        try:
            chunk = await race(self._pull(), self.token, provider=self.provider, timeout_ms=self.timeout_ms)
        except BaseException:
            await self.aclose()
            raise

        if chunk is _EXHAUSTED:
            await self._finish()
            raise StopAsyncIteration
        if chunk.content:
            self._output.append(chunk.content)
        return chunk

    async def __aenter__(self) -> DeltaStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _pull(self) -> Any:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return _EXHAUSTED

    async def _finish(self) -> None:
        self._output_tokens = self._token_counter("".join(self._output), self.model)
        _logger.info("[%s] Output tokens: %d", self.provider, self._output_tokens)
        await self.aclose()

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def usage(self) -> TokenUsage:
        output = self._output_tokens
        if output is None:
            output = self._token_counter("".join(self._output), self.model)
        return TokenUsage(input_tokens=self._input_tokens, output_tokens=output)

    async def aclose(self) -> None:
        """Release the underlying response. Idempotent."""
        if self._closed:
            return
        self._closed = True
        close = getattr(self._chunks, "aclose", None)
        if close is not None:
            await close()
        for callback in self._on_close:
            result = callback()
            if inspect.isawaitable(result):
                await result


async def assemble_stream(
    stream: DeltaStream,
    on_content: Callable[[str], Any] | None = None,
) -> ChatResponse:
    """Consume ``stream`` into one response, reporting content as it arrives."""
    parts: list[str] = []
    tool_calls = []
    async with stream:
        async for chunk in stream:
            if chunk.content:
                parts.append(chunk.content)
                if on_content is not None:
                    result = on_content(chunk.content)
                    if inspect.isawaitable(result):
                        await result
            if chunk.tool_calls:
                tool_calls.extend(chunk.tool_calls)
    return ChatResponse(
        provider=stream.provider,
        model=stream.model,
        content="".join(parts),
        tool_calls=tool_calls,
        usage=stream.usage,
    )
