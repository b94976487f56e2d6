"""Provider configuration records and centrally managed limits.

Limits are read from the environment (``CHATMUX_API_TIMEOUT_*`` and
``CHATMUX_RETRY_*``) the first time they are requested and can be replaced
at runtime with :func:`update_limits`. All durations are milliseconds.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatmux.errors import ProviderConfigError

_logger = logging.getLogger(__name__)

SecretResolver = Callable[[str], str | None]


class ProviderConfig(BaseModel):
    """Resolved configuration for a single provider."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    api_key_env: str | None = None
    base_url: str | None = None
    deployment_name: str | None = None
    api_version: str | None = None
    models: list[str] = Field(default_factory=list)
    enabled: bool = True


class ApiTimeouts(BaseSettings):
    """Bounds applied to caller supplied request timeouts."""

    default: float = 30_000
    min: float = 1_000
    max: float = 600_000

    model_config = SettingsConfigDict(frozen=True, env_prefix="CHATMUX_API_TIMEOUT_")

    @model_validator(mode="after")
    def _check_bounds(self) -> ApiTimeouts:
        if self.min < 1:
            raise ValueError("Minimum API timeout must be at least 1ms")
        if self.max < self.min:
            raise ValueError("Maximum API timeout must be greater than minimum")
        if not self.min <= self.default <= self.max:
            raise ValueError("Default API timeout must be between min and max")
        return self


class RetryConfig(BaseSettings):
    """Capped exponential backoff with jitter."""

    max_retries: int = 3
    initial_delay: float = 1_000
    max_delay: float = 10_000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    model_config = SettingsConfigDict(frozen=True, env_prefix="CHATMUX_RETRY_")

    @model_validator(mode="after")
    def _check_values(self) -> RetryConfig:
        if self.max_retries < 0:
            raise ValueError("Max retries must be non-negative")
        if self.initial_delay < 0:
            raise ValueError("Initial retry delay must be non-negative")
        if self.max_delay < self.initial_delay:
            raise ValueError("Max retry delay must be greater than or equal to initial delay")
        if self.backoff_multiplier <= 1:
            raise ValueError("Backoff multiplier must be greater than 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("Jitter factor must be between 0 and 1")
        return self


_api_timeouts: ApiTimeouts | None = None
_retry_config: RetryConfig | None = None


def get_api_timeouts() -> ApiTimeouts:
    """Return the current timeout bounds, reading the environment once."""
    global _api_timeouts
    if _api_timeouts is None:
        _api_timeouts = ApiTimeouts()
    return _api_timeouts


def get_retry_config() -> RetryConfig:
    """Return the current retry configuration, reading the environment once."""
    global _retry_config
    if _retry_config is None:
        _retry_config = RetryConfig()
    return _retry_config


def update_limits(
    *,
    api: ApiTimeouts | Mapping[str, Any] | None = None,
    retry: RetryConfig | Mapping[str, Any] | None = None,
) -> None:
    """Merge partial updates into the current limits.

    Mappings are merged over the current values and re-validated, so an
    invalid combination raises ``pydantic.ValidationError`` and leaves the
    previous limits untouched.
    """
    global _api_timeouts, _retry_config
    if api is not None:
        if not isinstance(api, ApiTimeouts):
            api = ApiTimeouts(**{**get_api_timeouts().model_dump(), **dict(api)})
        _api_timeouts = api
    if retry is not None:
        if not isinstance(retry, RetryConfig):
            retry = RetryConfig(**{**get_retry_config().model_dump(), **dict(retry)})
        _retry_config = retry


def reset_limits() -> None:
    """Drop runtime overrides; the next access re-reads the environment."""
    global _api_timeouts, _retry_config
    _api_timeouts = None
    _retry_config = None


def load_provider_configs(raw: Mapping[str, Mapping[str, Any]]) -> dict[str, ProviderConfig]:
    """Validate raw provider sections into ``ProviderConfig`` records."""
    configs: dict[str, ProviderConfig] = {}
    for name, section in raw.items():
        try:
            configs[name] = ProviderConfig.model_validate(section)
        except ValidationError as exc:
            raise ProviderConfigError(name, f"Invalid configuration: {exc}") from exc
    return configs


def resolve_api_key(
    provider: str,
    config: ProviderConfig,
    get_secret: SecretResolver | None = None,
) -> str:
    """Look the API key up in the environment, then in the secret store."""
    key_env = config.api_key_env
    if not key_env:
        raise ProviderConfigError(provider, "api_key_env is not configured")

    value = os.environ.get(key_env)
    if not value and get_secret is not None:
        _logger.debug("[%s] %s not in environment, asking secret store", provider, key_env)
        value = get_secret(key_env)
    if not value:
        raise ProviderConfigError(provider, f"API key not configured (expected in {key_env})")
    return value
