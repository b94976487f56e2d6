"""Async client orchestrating provider interactions."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from chatmux.config import ProviderConfig, load_provider_configs
from chatmux.errors import UnsupportedProviderError
from chatmux.providers import GeminiProvider, MistralProvider, OpenAICompatibleProvider, OpenRouterProvider
from chatmux.providers.base import ChatProvider, MessageInput, OptionsInput
from chatmux.streaming import DeltaStream, assemble_stream
from chatmux.types import ChatResponse

_logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., ChatProvider]

DEFAULT_FACTORIES: dict[str, ProviderFactory] = {
    "openai": OpenAICompatibleProvider,
    "azure": OpenAICompatibleProvider,
    "groq": OpenAICompatibleProvider,
    "openaicompatible": OpenAICompatibleProvider,
    "openrouter": OpenRouterProvider,
    "mistral": MistralProvider,
    "gemini": GeminiProvider,
    "google": GeminiProvider,
}

# Display name and default models per provider.
MODEL_REGISTRY: dict[str, tuple[str, list[str]]] = {
    "openai": ("OpenAI", ["gpt-4", "gpt-4-turbo", "gpt-3.5-turbo"]),
    "azure": ("Azure", ["deepseek-chat", "deepseek-reasoner"]),
    "groq": ("Groq", ["llama3-8b-8192", "llama3-70b-8192", "mixtral-8x7b-32768"]),
    "mistral": ("Mistral", ["mistral-large-latest", "mistral-small-latest"]),
    "gemini": ("Gemini", ["gemini-1.5-pro-latest", "gemini-1.0-pro"]),
    "openaicompatible": ("OpenAI-Compatible", ["deepseek-coder", "Qwen/Qwen1.5-72B-Chat", "microsoft/phi-2"]),
}


def available_models(configured: Iterable[str]) -> list[tuple[str, str]]:
    """``(provider, model)`` pairs for every configured provider with known models."""
    pairs = []
    for provider in configured:
        if provider in MODEL_REGISTRY:
            _, models = MODEL_REGISTRY[provider]
            pairs.extend((provider, model) for model in models)
    return pairs


class ProviderRegistry:
    """Maps provider names to adapter factories."""

    def __init__(self, factories: Mapping[str, ProviderFactory] | None = None) -> None:
        self._factories = dict(DEFAULT_FACTORIES if factories is None else factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def names(self) -> list[str]:
        return sorted(self._factories)

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name] = factory

    def create(self, name: str, config: ProviderConfig | Mapping[str, Any], **kwargs: Any) -> ChatProvider:
        """Build the adapter for ``name``; unknown names raise ``UnsupportedProviderError``."""
        try:
            factory = self._factories[name]
        except KeyError as exc:
            raise UnsupportedProviderError(name) from exc
        return factory(name, config, **kwargs)


class ChatClient:
    """High-level coordinator for chatting with configured providers."""

    def __init__(self, providers: Iterable[ChatProvider] = ()) -> None:
        self._providers: dict[str, ChatProvider] = {}
        for provider in providers:
            self.add_provider(provider)

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    def add_provider(self, provider: ChatProvider) -> None:
        self._providers[provider.name] = provider

    def get_provider(self, name: str) -> ChatProvider:
        """Return a provider by its registered name."""
        try:
            return self._providers[name]
        except KeyError as exc:
            raise UnsupportedProviderError(name) from exc

    async def get_chat_completion(
        self,
        provider: str,
        messages: Sequence[MessageInput],
        options: OptionsInput,
    ) -> DeltaStream:
        """Start a streaming completion on ``provider``."""
        return await self.get_provider(provider).get_chat_completion(messages, options)

    async def send_chat(
        self,
        provider: str,
        messages: Sequence[MessageInput],
        options: OptionsInput,
        on_content: Callable[[str], Any] | None = None,
    ) -> ChatResponse:
        """Run a completion to the end and return the assembled response."""
        stream = await self.get_chat_completion(provider, messages, options)
        return await assemble_stream(stream, on_content)

    def cleanup(self) -> None:
        for provider in self._providers.values():
            provider.cleanup()

    async def aclose(self) -> None:
        """Close every provider's HTTP client."""
        for provider in self._providers.values():
            await provider.aclose()


def build_client(
    configs: Mapping[str, ProviderConfig | Mapping[str, Any]],
    *,
    registry: ProviderRegistry | None = None,
    **provider_kwargs: Any,
) -> ChatClient:
    """Construct a client from provider configuration sections.

    Disabled sections are skipped; keyword arguments (``get_secret``,
    ``transport``, ...) are passed to every adapter factory.
    """
    registry = registry or ProviderRegistry()
    client = ChatClient()
    for name, section in configs.items():
        config = section if isinstance(section, ProviderConfig) else load_provider_configs({name: section})[name]
        if not config.enabled:
            _logger.debug("Skipping disabled provider %s", name)
            continue
        client.add_provider(registry.create(name, config, **provider_kwargs))
    return client
