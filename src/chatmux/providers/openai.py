"""OpenAI-compatible chat completions adapter.

Serves OpenAI, Groq, any OpenAI-compatible endpoint, and Azure OpenAI
deployments. Azure mode is selected from the configured ``base_url``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from chatmux.config import ApiTimeouts, ProviderConfig, RetryConfig, SecretResolver
from chatmux.errors import ProviderConfigError
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
from chatmux.streaming import DeltaStream, iter_sse_events, openai_deltas, response_lines
from chatmux.timeouts import RequestTracker
from chatmux.tokens import TokenCounter, count_tokens
from chatmux.tools import openai_tool_choice, to_openai_tools

_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
}
_CHAT_PATH = "/chat/completions"

_AZURE_HOST_PATTERNS = (".openai.azure.com", ".cognitiveservices.azure.com")
_AZURE_DEPLOYMENT_PATH = "/openai/deployments/"
_AZURE_DEFAULT_API_VERSION = "2024-12-01-preview"


def is_azure_endpoint(base_url: str | None) -> bool:
    return bool(base_url) and any(pattern in base_url for pattern in _AZURE_HOST_PATTERNS)


def chat_payload(
    model: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]],
    tool_choice: Any,
) -> dict[str, Any]:
    """Streaming chat-completions body; empty tool lists are omitted."""
    payload: dict[str, Any] = {"model": model, "messages": messages, "stream": True}
    if tools:
        payload["tools"] = tools
    choice = openai_tool_choice(tool_choice)
    if choice is not None:
        payload["tool_choice"] = choice
    return payload


class OpenAICompatibleProvider:
    """Streams chat completions from an OpenAI-compatible API."""

    _logger = logging.getLogger(__name__)

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
        config = self.handle.config

        base_url = (config.base_url or "").strip() or _DEFAULT_BASE_URLS.get(provider_name)
        if not base_url:
            raise ProviderConfigError(provider_name, "base_url is required for OpenAI-compatible endpoints")

        headers = {
            "Authorization": f"Bearer {self.handle.api_key}",
            "Content-Type": "application/json",
        }
        params: dict[str, str] = {}
        self.deployment_name: str | None = None
        self.is_azure = is_azure_endpoint(base_url)
        if self.is_azure:
            deployment = (config.deployment_name or "").strip()
            if deployment:
                self.deployment_name = deployment
                base_url = base_url.rstrip("/") + _AZURE_DEPLOYMENT_PATH + deployment
            params["api-version"] = (config.api_version or "").strip() or _AZURE_DEFAULT_API_VERSION
            headers["api-key"] = self.handle.api_key

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            params=params,
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
        model = self.deployment_name if self.is_azure and self.deployment_name else call.model

        with self.handle.tracker.track(call.timeout_ms) as context:
            tools = translate_tools(self.name, to_openai_tools, call.options.tools)
            payload = chat_payload(model, call.messages, tools, call.options.tool_choice)
            self._logger.debug("[%s] %s: model=%s tools=%d", self.name, context.request_id, model, len(tools))

            async def attempt() -> httpx.Response:
                request = self._client.build_request("POST", _CHAT_PATH, json=payload)
                return await open_stream(self.name, self._client, request)

            response = await bounded_call(self.handle, context, attempt)

        events = iter_sse_events(response_lines(response, provider=self.name))
        return DeltaStream(
            self.name,
            call.model,
            openai_deltas(events, provider=self.name),
            on_close=[response.aclose],
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
