"""Error categorization and retry with capped exponential backoff.

Failures are classified into an :class:`~chatmux.types.ErrorCategory`;
only ``NETWORK``, ``RATE_LIMIT`` and ``SERVER_ERROR`` are retried by
default. Retries are driven by tenacity with a wait strategy that mirrors
``initial_delay * multiplier ** attempt`` capped at ``max_delay`` with
symmetric jitter.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from chatmux.config import RetryConfig, get_retry_config
from chatmux.errors import ProviderRequestError, ProviderTimeoutError
from chatmux.types import ErrorCategory

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_AUTH_MARKERS = ("unauthorized", "forbidden", "authentication", "invalid api key", "invalid key", "credential")
_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "quota exceeded")
_NETWORK_MARKERS = (
    "network",
    "connection",
    "econnrefused",
    "enotfound",
    "etimedout",
    "fetch failed",
    "socket",
    "dns",
)
_SERVER_MARKERS = ("internal server error", "bad gateway", "service unavailable", "gateway timeout")
_CLIENT_MARKERS = ("bad request",)
_RETRYABLE = frozenset({ErrorCategory.NETWORK, ErrorCategory.RATE_LIMIT, ErrorCategory.SERVER_ERROR})


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def categorize_error(error: BaseException) -> ErrorCategory:
    """Classify a failure by abort signal, HTTP status, then message."""
    if isinstance(error, ProviderRequestError) and error.category is not None:
        return error.category
    if isinstance(error, (ProviderTimeoutError, asyncio.CancelledError)):
        return ErrorCategory.TIMEOUT

    status = _status_of(error)
    message = str(error).lower()

    if status in (401, 403) or any(marker in message for marker in _AUTH_MARKERS):
        return ErrorCategory.AUTHENTICATION
    if status == 429 or any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorCategory.RATE_LIMIT
    if status is not None and status >= 500:
        return ErrorCategory.SERVER_ERROR
    if isinstance(error, httpx.TransportError):
        return ErrorCategory.NETWORK
    if status is not None and status >= 400:
        return ErrorCategory.CLIENT_ERROR

    if status is None:
        # Errors without a status code only carry their text.
        if any(code in message for code in ("401", "403")):
            return ErrorCategory.AUTHENTICATION
        if "429" in message:
            return ErrorCategory.RATE_LIMIT
        if any(marker in message for marker in _NETWORK_MARKERS):
            return ErrorCategory.NETWORK
        if any(marker in message for marker in _SERVER_MARKERS) or any(
            code in message for code in ("500", "502", "503", "504")
        ):
            return ErrorCategory.SERVER_ERROR
        if any(marker in message for marker in _CLIENT_MARKERS) or "400" in message:
            return ErrorCategory.CLIENT_ERROR

    return ErrorCategory.UNKNOWN


def should_retry(category: ErrorCategory) -> bool:
    """Only transient categories are retried."""
    return category in _RETRYABLE


def request_error(
    provider: str,
    message: str,
    *,
    status_code: int | None = None,
    cause: BaseException | None = None,
) -> ProviderRequestError:
    """Build a provider-qualified in-flight error with its category filled in."""
    error = ProviderRequestError(provider, message, status_code=status_code)
    error.category = categorize_error(cause if cause is not None else error)
    if cause is not None and error.category is ErrorCategory.UNKNOWN:
        error.category = categorize_error(error)
    return error


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> int:
    """Delay in milliseconds before retry number ``attempt`` (0-based)."""
    exponential = config.initial_delay * config.backoff_multiplier**attempt
    capped = min(exponential, config.max_delay)
    jitter_range = capped * config.jitter_factor
    jitter = random.uniform(-jitter_range, jitter_range)
    return int(max(0.0, capped + jitter))


class wait_backoff(wait_base):
    """tenacity wait strategy backed by :func:`calculate_backoff_delay`."""

    def __init__(self, config: RetryConfig) -> None:
        self.config = config

    def __call__(self, retry_state: RetryCallState) -> float:
        return calculate_backoff_delay(retry_state.attempt_number - 1, self.config) / 1000


def _log_retry(provider: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        delay_ms = int((retry_state.next_action.sleep if retry_state.next_action else 0) * 1000)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        _logger.warning(
            "[%s] Retry attempt %d after %dms due to: %s",
            provider,
            retry_state.attempt_number,
            delay_ms,
            error,
        )

    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    provider: str,
    config: RetryConfig | None = None,
    retry_on: Callable[[ErrorCategory], bool] = should_retry,
) -> T:
    """Run ``operation`` until it succeeds or a non-retryable error occurs.

    After ``config.max_retries`` retries the last error is re-raised
    unchanged.
    """
    config = config or get_retry_config()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_retries + 1),
        wait=wait_backoff(config),
        retry=retry_if_exception(lambda exc: retry_on(categorize_error(exc))),
        before_sleep=_log_retry(provider),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise AssertionError("unreachable")  # pragma: no cover
