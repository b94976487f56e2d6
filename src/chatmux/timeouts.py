"""Timeout normalization and per-request cancellation state.

Every call made by an adapter runs inside :meth:`RequestTracker.track`,
which registers a :class:`RequestContext` (id, timer, token) and removes it
again on every exit path. The tracker's table is the only shared mutable
state of an adapter instance; entries are keyed by request id and written
only by the call that owns them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import uuid
from collections.abc import Awaitable, Iterator
from dataclasses import dataclass, field
from typing import Any, TypeVar

from chatmux.errors import InvalidTimeoutError, ProviderTimeoutError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def validate_timeout(requested: Any, min_ms: float, max_ms: float, default_ms: float) -> float:
    """Return ``requested`` if it lies within ``[min_ms, max_ms]``.

    ``None`` selects ``default_ms``. Anything that is not a real number
    raises ``InvalidTimeoutError`` with code ``INVALID_TIMEOUT``; values
    outside the bounds raise ``TIMEOUT_TOO_SHORT`` or ``TIMEOUT_TOO_LONG``.
    """
    if requested is None:
        return default_ms

    if isinstance(requested, bool) or not isinstance(requested, (int, float)) or math.isnan(requested):
        raise InvalidTimeoutError(
            "INVALID_TIMEOUT",
            f"Invalid timeout value: {requested!r}. Must be a number in milliseconds",
        )

    if requested < min_ms:
        raise InvalidTimeoutError(
            "TIMEOUT_TOO_SHORT",
            f"Timeout too short: {requested}ms. Minimum is {min_ms}ms",
        )

    if requested > max_ms:
        raise InvalidTimeoutError(
            "TIMEOUT_TOO_LONG",
            f"Timeout too long: {requested}ms. Maximum is {max_ms}ms",
        )

    return requested


class CancellationToken:
    """Cooperative cancellation flag that can also be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def cancel_after(self, delay_ms: float) -> asyncio.TimerHandle:
        """Arm a timer that cancels the token with reason ``timeout``."""
        loop = asyncio.get_running_loop()
        return loop.call_later(delay_ms / 1000, self.cancel, "timeout")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RequestContext:
    """Ephemeral state of one in-flight call."""

    request_id: str
    timeout_ms: float
    token: CancellationToken = field(default_factory=CancellationToken)
    timer: asyncio.TimerHandle | None = None

    def release(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class RequestTracker:
    """Table of live request contexts for one adapter instance."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        self._active: dict[str, RequestContext] = {}

    def __len__(self) -> int:
        return len(self._active)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._active

    @property
    def active_ids(self) -> list[str]:
        return list(self._active)

    @contextlib.contextmanager
    def track(self, timeout_ms: float) -> Iterator[RequestContext]:
        """Register a context whose token fires after ``timeout_ms``."""
        context = RequestContext(
            request_id=f"{self.provider}-{uuid.uuid4().hex}",
            timeout_ms=timeout_ms,
        )
        context.timer = context.token.cancel_after(timeout_ms)
        self._active[context.request_id] = context
        _logger.debug("[%s] opened request %s (%sms)", self.provider, context.request_id, timeout_ms)
        try:
            yield context
        finally:
            context.release()
            self._active.pop(context.request_id, None)
            _logger.debug("[%s] released request %s", self.provider, context.request_id)

    def cleanup(self) -> None:
        """Clear every live timer and cancel every live token. Idempotent."""
        if self._active:
            _logger.debug("[%s] cleaning up %d live request(s)", self.provider, len(self._active))
        for context in list(self._active.values()):
            context.release()
            context.token.cancel("cleanup")
        self._active.clear()


async def race(
    awaitable: Awaitable[T],
    token: CancellationToken,
    *,
    provider: str,
    timeout_ms: float | None = None,
) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    When the token wins, the pending work is cancelled and awaited so its
    own cleanup (closing an open response) runs before the timeout error
    is raised.
    """
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    finished = False
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finished = task in done
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if finished:
        return task.result()

    if token.reason == "timeout" and timeout_ms is not None:
        raise ProviderTimeoutError(provider, f"API request timed out after {timeout_ms:g}ms")
    raise ProviderTimeoutError(provider, f"Request was {token.reason or 'cancelled'}")
