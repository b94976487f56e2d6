"""Backend adapters for chatmux."""

from .base import ChatProvider, ProviderHandle, initialize, validate_messages, validate_options
from .gemini import GeminiProvider
from .mistral import MistralProvider
from .openai import OpenAICompatibleProvider
from .openrouter import OpenRouterProvider, fetch_openrouter_models

__all__ = [
    "ChatProvider",
    "ProviderHandle",
    "initialize",
    "validate_messages",
    "validate_options",
    "OpenAICompatibleProvider",
    "OpenRouterProvider",
    "MistralProvider",
    "GeminiProvider",
    "fetch_openrouter_models",
]
