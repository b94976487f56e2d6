"""Package specific exception hierarchy."""

from __future__ import annotations

from chatmux.types import ErrorCategory


class ChatmuxError(Exception):
    """Base exception for chatmux package."""

    code = "CHATMUX_ERROR"


class RequestValidationError(ChatmuxError):
    """Raised by the pure validators when a request is malformed."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, index: int | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.index = index
        self.field = field


class InvalidTimeoutError(ChatmuxError):
    """Raised by ``validate_timeout``; ``code`` names the violated bound."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class UnsupportedProviderError(ChatmuxError):
    """Raised when a provider has not been configured."""

    code = "CONFIG_ERROR"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider '{provider}' is not available.")
        self.provider = provider


class StreamConsumedError(ChatmuxError):
    """Raised when a delta stream is iterated more than once."""

    code = "STREAM_CONSUMED"

    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider}: stream has already been consumed")
        self.provider = provider


class ProviderError(ChatmuxError):
    """Represents provider-specific errors."""

    code = "PROVIDER_ERROR"

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code
        self.detail = message


class ProviderValidationError(ProviderError):
    """Malformed input; never reaches the network."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        index: int | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(provider, f"Invalid input: {message}")
        self.index = index
        self.field = field


class ProviderConfigError(ProviderError):
    """Missing credentials or a misconfigured endpoint."""

    code = "CONFIG_ERROR"


class ToolTransformError(ProviderError):
    """Tool definitions could not be translated into the backend shape."""

    code = "TOOL_TRANSFORM_ERROR"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(provider, f"Failed to process tools: {message}")


class TimeoutConfigError(ProviderError):
    """The requested timeout is outside the configured bounds."""

    code = "TIMEOUT_CONFIG_ERROR"

    def __init__(self, provider: str, reason: InvalidTimeoutError) -> None:
        super().__init__(provider, f"Timeout configuration error: {reason}")
        self.reason = reason.code


class ProviderRequestError(ProviderError):
    """In-flight failure; ``category`` drives the retry decision."""

    code = "REQUEST_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        category: ErrorCategory | None = None,
    ) -> None:
        super().__init__(provider, message, status_code=status_code)
        self.category = category

    @property
    def retryable(self) -> bool:
        return self.category in (
            ErrorCategory.NETWORK,
            ErrorCategory.RATE_LIMIT,
            ErrorCategory.SERVER_ERROR,
        )


class ProviderTimeoutError(ProviderRequestError):
    """The request deadline fired or the call was cancelled."""

    code = "TIMEOUT"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(provider, message, category=ErrorCategory.TIMEOUT)
