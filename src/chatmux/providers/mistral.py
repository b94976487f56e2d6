"""Mistral chat completions adapter.

Mistral streams are governed by a cancellation token rather than an
aborted socket: the token is armed with the call's timeout, checked before
every delta is handed to the caller and raced against each pending read
so a stalled stream still ends at the deadline.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from chatmux.config import ApiTimeouts, ProviderConfig, RetryConfig, SecretResolver
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
from chatmux.providers.openai import chat_payload
from chatmux.streaming import DeltaStream, cooperative, iter_sse_events, openai_deltas, response_lines
from chatmux.timeouts import CancellationToken, RequestTracker
from chatmux.tokens import TokenCounter, count_tokens
from chatmux.tools import to_mistral_tools

_logger = logging.getLogger(__name__)

MISTRAL_BASE_URL = "https://api.mistral.ai/v1"
_CHAT_PATH = "/chat/completions"


def mistral_message(message: Mapping[str, Any]) -> dict[str, Any]:
    """Role, content (empty string when absent) and tool-call fields."""
    converted: dict[str, Any] = {"role": message["role"], "content": message.get("content") or ""}
    if message.get("tool_calls"):
        converted["tool_calls"] = message["tool_calls"]
    if message["role"] == "tool":
        converted["tool_call_id"] = message["tool_call_id"]
        converted["name"] = message["name"]
    return converted


class MistralProvider:
    """Mistral chat completions with a token-bound stream deadline."""

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
            base_url=(self.handle.config.base_url or "").strip() or MISTRAL_BASE_URL,
            headers={
                "Authorization": f"Bearer {self.handle.api_key}",
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
            },
            timeout=client_timeout(self.handle),
            transport=transport,
        )

    @property
    def tracker(self) -> RequestTracker:
        return self.handle.tracker

    async def get_chat_completion(
        self,
        messages: Sequence[MessageInput],
        options: OptionsInput,
    ) -> DeltaStream:
        """Validate, send, and return the normalized delta stream."""
        call = prepare_call(self.handle, messages, options)

        with self.handle.tracker.track(call.timeout_ms) as context:
            tools = translate_tools(self.name, to_mistral_tools, call.options.tools)
            payload = chat_payload(
                call.model,
                [mistral_message(message) for message in call.messages],
                tools,
                call.options.tool_choice,
            )

            async def attempt() -> httpx.Response:
                request = self._client.build_request("POST", _CHAT_PATH, json=payload)
                return await open_stream(self.name, self._client, request)

            response = await bounded_call(self.handle, context, attempt)

        stream_token = CancellationToken()
        timer = stream_token.cancel_after(call.timeout_ms)
        _logger.debug("[%s] stream deadline armed (%sms)", self.name, call.timeout_ms)

        deltas = openai_deltas(iter_sse_events(response_lines(response, provider=self.name)), provider=self.name)
        return DeltaStream(
            self.name,
            call.model,
            cooperative(deltas, stream_token, provider=self.name, timeout_ms=call.timeout_ms),
            token=stream_token,
            timeout_ms=call.timeout_ms,
            on_close=[timer.cancel, response.aclose],
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
