"""Gemini adapter over the Generative Language REST API.

Gemini never streams partial tool calls: when the model decides to call
functions, the calls arrive complete in the first streamed event. The
adapter therefore peeks at that event inside the bounded call. A
function-call response is drained and returned as a single batch chunk;
anything else is streamed as content, starting with the peeked event,
and calls that only appear after some text follow as one final batch.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from chatmux.config import ApiTimeouts, ProviderConfig, RetryConfig, SecretResolver
from chatmux.errors import ProviderValidationError
from chatmux.providers.base import (
    MessageInput,
    OptionsInput,
    bounded_call,
    client_timeout,
    initialize,
    open_stream,
    prepare_call,
    translate_tools,
)
from chatmux.streaming import (
    DeltaStream,
    check_event_error,
    gemini_content_deltas,
    gemini_function_calls,
    gemini_tool_call_batch,
    iter_sse_events,
    response_lines,
    single_chunk,
)
from chatmux.timeouts import RequestTracker
from chatmux.tokens import TokenCounter, count_tokens
from chatmux.tools import gemini_tool_config, to_gemini_tools
from chatmux.types import DeltaChunk

_logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_NONE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


def gemini_contents(messages: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], dict[str, Any] | None]:
    """Split validated messages into ``contents`` and ``systemInstruction``.

    History is every user/assistant message with text except the last;
    ``assistant`` becomes ``model``. The last message's content is sent as
    the current user turn.
    """
    history = [
        {"role": "model" if message["role"] == "assistant" else "user", "parts": [{"text": message["content"]}]}
        for message in messages[:-1]
        if message["role"] in ("user", "assistant") and message.get("content")
    ]
    current = {"role": "user", "parts": [{"text": messages[-1]["content"]}]}

    system = [message["content"] for message in messages if message["role"] == "system" and message.get("content")]
    instruction = {"parts": [{"text": "\n\n".join(system)}]} if system else None
    return [*history, current], instruction


@dataclass
class _Opened:
    """Outcome of the bounded part of a Gemini call."""

    batch: DeltaChunk | None = None
    response: httpx.Response | None = None
    events: AsyncIterator[dict[str, Any]] | None = None
    first_event: dict[str, Any] | None = None


class GeminiProvider:
    """Gemini streaming with function calls surfaced as one batch."""

    def __init__(
        self,
        provider_name: str,
        config: ProviderConfig | Mapping[str, Any],
        *,
        get_secret: SecretResolver | None = None,
        api_timeouts: ApiTimeouts | None = None,
        retry_config: RetryConfig | None = None,
        token_counter: TokenCounter = count_tokens,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.handle = initialize(
            provider_name,
            config,
            get_secret=get_secret,
            api_timeouts=api_timeouts,
            retry_config=retry_config,
            token_counter=token_counter,
        )
        self.name = provider_name
        self._client = httpx.AsyncClient(
            base_url=(self.handle.config.base_url or "").strip() or GEMINI_BASE_URL,
            headers={"x-goog-api-key": self.handle.api_key, "Content-Type": "application/json"},
            timeout=client_timeout(self.handle),
            transport=transport,
        )

    @property
    def tracker(self) -> RequestTracker:
        return self.handle.tracker

    def _last_turn_check(self, messages: list[dict[str, Any]]) -> None:
        last = messages[-1]
        if not isinstance(last.get("content"), str) or not last["content"]:
            raise ProviderValidationError(
                self.name,
                "Last message must contain text content",
                index=len(messages) - 1,
                field="content",
            )

    async def _open(self, payload: dict[str, Any], model: str) -> _Opened:
        request = self._client.build_request(
            "POST",
            f"/models/{model}:streamGenerateContent",
            params={"alt": "sse"},
            json=payload,
        )
        response = await open_stream(self.name, self._client, request)
        events = iter_sse_events(response_lines(response, provider=self.name))
        try:
            first = await anext(events, None)
            if first is not None:
                check_event_error(self.name, first)
            calls = gemini_function_calls(first) if first is not None else []
            if not calls:
                return _Opened(response=response, events=events, first_event=first)

            async for event in events:
                check_event_error(self.name, event)
                calls.extend(gemini_function_calls(event))
            _logger.debug("[%s] drained function-call stream (%d calls)", self.name, len(calls))
            await response.aclose()
            return _Opened(batch=gemini_tool_call_batch(calls))
        except BaseException:
            await events.aclose()
            await response.aclose()
            raise

    async def get_chat_completion(
        self,
        messages: Sequence[MessageInput],
        options: OptionsInput,
    ) -> DeltaStream:
        """Validate, send, and return the normalized delta stream."""
        call = prepare_call(self.handle, messages, options)
        self._last_turn_check(call.messages)

        with self.handle.tracker.track(call.timeout_ms) as context:
            tools = translate_tools(self.name, to_gemini_tools, call.options.tools)
            contents, instruction = gemini_contents(call.messages)
            payload: dict[str, Any] = {"contents": contents, "safetySettings": SAFETY_SETTINGS}
            if instruction is not None:
                payload["systemInstruction"] = instruction
            if tools:
                payload["tools"] = tools
            tool_config = gemini_tool_config(call.options.tool_choice)
            if tool_config is not None:
                payload["toolConfig"] = tool_config

            opened = await bounded_call(self.handle, context, lambda: self._open(payload, call.model))

        if opened.batch is not None:
            chunks = single_chunk(opened.batch)
            on_close = []
        else:
            chunks = gemini_content_deltas(opened.first_event, opened.events, provider=self.name)
            on_close = [opened.events.aclose, opened.response.aclose]

        return DeltaStream(
            self.name,
            call.model,
            chunks,
            on_close=on_close,
            input_tokens=call.input_tokens,
            token_counter=self.handle.token_counter,
        )

    def cleanup(self) -> None:
        """Cancel live request contexts. Safe to call repeatedly."""
        self.handle.cleanup()

    async def aclose(self) -> None:
        """Cancel live requests and close the underlying HTTP client."""
        self.cleanup()
        await self._client.aclose()
