"""OpenRouter adapter and model catalogue."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

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
from chatmux.streaming import DeltaStream, iter_sse_events, openai_deltas, response_lines
from chatmux.timeouts import RequestTracker
from chatmux.tokens import TokenCounter, count_tokens
from chatmux.tools import to_openai_tools

_logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
_CHAT_PATH = "/chat/completions"
_DEFAULT_CONTEXT_LENGTH = 32768


class _Pricing(BaseModel):
    prompt: str | None = None
    completion: str | None = None


class _ApiModel(BaseModel):
    id: str
    name: str
    context_length: int | None = None
    pricing: _Pricing | None = None


class _ApiModelList(BaseModel):
    data: list[_ApiModel]


class OpenRouterModel(BaseModel):
    """Catalogue entry with costs per 1k tokens."""

    id: str
    name: str
    capabilities: list[str] = Field(default_factory=lambda: ["text"])
    max_tokens: int = _DEFAULT_CONTEXT_LENGTH
    cost_per_1k_input: float = 0.0
    cost_per_1k_output: float = 0.0
    provider: str = "openrouter"


def _per_thousand(per_million: str | None) -> float:
    try:
        value = float(per_million) if per_million else math.nan
    except ValueError:
        return 0.0
    if math.isnan(value) or value < 0:
        return 0.0
    return value / 1000


async def fetch_openrouter_models(client: httpx.AsyncClient) -> list[OpenRouterModel]:
    """Read ``/models`` through ``client``; any failure yields ``[]``."""
    try:
        response = await client.get("/models")
        response.raise_for_status()
        listing = _ApiModelList.model_validate(response.json())
    except (httpx.HTTPError, ValidationError, ValueError) as exc:
        _logger.error("Error fetching OpenRouter models: %s", exc)
        return []

    return [
        OpenRouterModel(
            id=model.id,
            name=model.name,
            max_tokens=model.context_length or _DEFAULT_CONTEXT_LENGTH,
            cost_per_1k_input=_per_thousand(model.pricing.prompt if model.pricing else None),
            cost_per_1k_output=_per_thousand(model.pricing.completion if model.pricing else None),
        )
        for model in listing.data
    ]


class OpenRouterProvider:
    """OpenAI-compatible streaming against OpenRouter, with retries."""

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
            base_url=(self.handle.config.base_url or "").strip() or OPENROUTER_BASE_URL,
            headers={
                "Authorization": f"Bearer {self.handle.api_key}",
                "Content-Type": "application/json",
            },
            timeout=client_timeout(self.handle),
            transport=transport,
        )

    @property
    def tracker(self) -> RequestTracker:
        return self.handle.tracker

    async def list_models(self) -> list[OpenRouterModel]:
        return await fetch_openrouter_models(self._client)

    async def get_chat_completion(
        self,
        messages: Sequence[MessageInput],
        options: OptionsInput,
    ) -> DeltaStream:
        call = prepare_call(self.handle, messages, options)

        with self.handle.tracker.track(call.timeout_ms) as context:
            tools = translate_tools(self.name, to_openai_tools, call.options.tools)
            payload = chat_payload(call.model, call.messages, tools, call.options.tool_choice)

            async def attempt() -> httpx.Response:
                request = self._client.build_request("POST", _CHAT_PATH, json=payload)
                return await open_stream(self.name, self._client, request)

            response = await bounded_call(self.handle, context, attempt)

        return DeltaStream(
            self.name,
            call.model,
            openai_deltas(iter_sse_events(response_lines(response, provider=self.name)), provider=self.name),
            on_close=[response.aclose],
            input_tokens=call.input_tokens,
            token_counter=self.handle.token_counter,
        )

    def cleanup(self) -> None:
        self.handle.cleanup()

    async def aclose(self) -> None:
        self.cleanup()
        await self._client.aclose()
