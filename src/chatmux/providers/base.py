"""Provider contract shared by every backend adapter.

Adapters do not derive from a common base class. Each one holds a
:class:`ProviderHandle` and composes the pure validators and the bounded
call helpers below, so validation semantics are identical everywhere.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel

from chatmux.config import (
    ApiTimeouts,
    ProviderConfig,
    RetryConfig,
    SecretResolver,
    get_api_timeouts,
    get_retry_config,
    load_provider_configs,
    resolve_api_key,
)
from chatmux.errors import (
    InvalidTimeoutError,
    ProviderValidationError,
    RequestValidationError,
    TimeoutConfigError,
    ToolTransformError,
)
from chatmux.retry import request_error, with_retry
from chatmux.streaming import DeltaStream
from chatmux.timeouts import RequestContext, RequestTracker, race, validate_timeout
from chatmux.tokens import TokenCounter, count_tokens
from chatmux.types import VALID_ROLES, VALID_TOOL_CHOICES, ChatCompletionOptions, ChatMessage, NamedToolChoice

_logger = logging.getLogger(__name__)

T = TypeVar("T")

MessageInput = ChatMessage | Mapping[str, Any]
OptionsInput = ChatCompletionOptions | Mapping[str, Any]


@dataclass
class ProviderHandle:
    """Provider name, resolved configuration and per-instance call state."""

    name: str
    config: ProviderConfig
    api_key: str
    api_timeouts: ApiTimeouts | None = None
    retry_config: RetryConfig | None = None
    token_counter: TokenCounter = count_tokens
    tracker: RequestTracker = field(init=False)

    def __post_init__(self) -> None:
        self.tracker = RequestTracker(self.name)

    @property
    def timeouts(self) -> ApiTimeouts:
        return self.api_timeouts or get_api_timeouts()

    @property
    def retry(self) -> RetryConfig:
        return self.retry_config or get_retry_config()

    def cleanup(self) -> None:
        self.tracker.cleanup()


class ChatProvider(Protocol):
    """Structural interface every backend adapter satisfies."""

    name: str

    async def get_chat_completion(
        self,
        messages: Sequence[MessageInput],
        options: OptionsInput,
    ) -> DeltaStream: ...

    def cleanup(self) -> None: ...

    async def aclose(self) -> None: ...


def initialize(
    provider_name: str,
    config: ProviderConfig | Mapping[str, Any],
    *,
    get_secret: SecretResolver | None = None,
    api_timeouts: ApiTimeouts | None = None,
    retry_config: RetryConfig | None = None,
    token_counter: TokenCounter = count_tokens,
) -> ProviderHandle:
    """Resolve credentials for ``provider_name``; raises ``ProviderConfigError``."""
    if not isinstance(config, ProviderConfig):
        config = load_provider_configs({provider_name: config})[provider_name]
    api_key = resolve_api_key(provider_name, config, get_secret)
    return ProviderHandle(
        name=provider_name,
        config=config,
        api_key=api_key,
        api_timeouts=api_timeouts,
        retry_config=retry_config,
        token_counter=token_counter,
    )


def _dump_tool_calls(tool_calls: Any) -> Any:
    if not isinstance(tool_calls, (list, tuple)):
        return tool_calls
    return [call.model_dump(exclude={"index"}) if isinstance(call, BaseModel) else call for call in tool_calls]


def validate_messages(messages: Sequence[MessageInput]) -> list[dict[str, Any]]:
    """Check chat-message invariants and return the messages as plain dicts.

    Raises ``RequestValidationError`` naming the offending index and field.
    A ``None`` value counts as absent.
    """
    if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence):
        raise RequestValidationError("Messages must be a list")
    if not messages:
        raise RequestValidationError("Messages list cannot be empty")

    normalized = []
    for i, message in enumerate(messages):
        if isinstance(message, BaseModel):
            message = message.model_dump(exclude_none=True, exclude={"tool_calls": {"__all__": {"index"}}})
        if not isinstance(message, Mapping):
            raise RequestValidationError(f"Message at index {i} is invalid", index=i)
        if message.get("role") is None:
            raise RequestValidationError(f"Message at index {i} is missing required field: role", index=i, field="role")

        role = message["role"]
        if not isinstance(role, str) or not role.strip():
            raise RequestValidationError(f"Message at index {i} has invalid role", index=i, field="role")
        if role not in VALID_ROLES:
            raise RequestValidationError(f"Message at index {i} has unsupported role '{role}'", index=i, field="role")

        if role == "tool":
            missing = [name for name in ("tool_call_id", "name", "content") if message.get(name) is None]
            if missing:
                raise RequestValidationError(
                    f"Tool message at index {i} is missing required fields (tool_call_id, name, content)",
                    index=i,
                    field=missing[0],
                )
        elif role == "assistant" and message.get("tool_calls") is not None:
            if not isinstance(message["tool_calls"], (list, tuple)):
                raise RequestValidationError(
                    f"Assistant message at index {i} has invalid tool_calls (must be a list)",
                    index=i,
                    field="tool_calls",
                )
            if not message["tool_calls"] and message.get("content") is None:
                raise RequestValidationError(
                    f"Assistant message at index {i} needs content or at least one tool call",
                    index=i,
                    field="content",
                )
        elif message.get("content") is None:
            raise RequestValidationError(
                f"Message at index {i} is missing required field: content", index=i, field="content"
            )

        entry = {key: value for key, value in message.items() if value is not None}
        if "tool_calls" in entry:
            entry["tool_calls"] = _dump_tool_calls(entry["tool_calls"])
        normalized.append(entry)
    return normalized


def _valid_tool_choice(choice: Any) -> bool:
    if isinstance(choice, str):
        return choice in VALID_TOOL_CHOICES
    if isinstance(choice, NamedToolChoice):
        return True
    if isinstance(choice, Mapping):
        function = choice.get("function")
        return isinstance(function, Mapping) and isinstance(function.get("name"), str) and bool(function["name"])
    return False


def validate_options(options: OptionsInput) -> ChatCompletionOptions:
    """Check option invariants; the timeout is left for :func:`validate_timeout`."""
    if isinstance(options, ChatCompletionOptions):
        raw: Mapping[str, Any] = dict(options)
    elif isinstance(options, Mapping):
        raw = options
    else:
        raise RequestValidationError("Options must be a mapping or ChatCompletionOptions")

    model = raw.get("model")
    if not isinstance(model, str) or not model.strip():
        raise RequestValidationError("Model must be specified as a non-empty string", field="model")

    tools = raw.get("tools")
    if tools is not None and not isinstance(tools, (list, tuple)):
        raise RequestValidationError("Tools must be a list if provided", field="tools")

    tool_choice = raw.get("tool_choice")
    if tool_choice is not None and not _valid_tool_choice(tool_choice):
        raise RequestValidationError("Invalid tool_choice value", field="tool_choice")

    return ChatCompletionOptions.model_construct(
        model=model,
        tools=list(tools) if tools is not None else None,
        tool_choice=tool_choice,
        timeout=raw.get("timeout"),
    )


@dataclass
class PreparedCall:
    """Validated inputs of one call, ready to be issued."""

    messages: list[dict[str, Any]]
    options: ChatCompletionOptions
    timeout_ms: float
    input_tokens: int

    @property
    def model(self) -> str:
        return self.options.model


def prepare_call(handle: ProviderHandle, messages: Sequence[MessageInput], options: OptionsInput) -> PreparedCall:
    """Validate inputs, normalize the timeout and count input tokens.

    Nothing here touches the network.
    """
    try:
        normalized = validate_messages(messages)
        validated = validate_options(options)
    except RequestValidationError as exc:
        raise ProviderValidationError(handle.name, str(exc), index=exc.index, field=exc.field) from exc

    bounds = handle.timeouts
    try:
        timeout_ms = validate_timeout(validated.timeout, bounds.min, bounds.max, bounds.default)
    except InvalidTimeoutError as exc:
        raise TimeoutConfigError(handle.name, exc) from exc

    input_tokens = sum(
        handle.token_counter(message["content"], validated.model)
        for message in normalized
        if isinstance(message.get("content"), str)
    )
    _logger.info("[%s] Input tokens: %d", handle.name, input_tokens)
    return PreparedCall(normalized, validated, timeout_ms, input_tokens)


def translate_tools(provider: str, translate: Callable[[Any], T], tools: Any) -> T:
    """Run a tool translator, reporting failures as ``ToolTransformError``."""
    try:
        return translate(tools)
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise ToolTransformError(provider, str(exc)) from exc


def error_detail(body: bytes, fallback: str) -> str:
    """Best-effort error message from a backend error body."""
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text or fallback
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, Mapping):
        error = data.get("error", data)
        if isinstance(error, Mapping):
            message = error.get("message") or error.get("detail")
            if isinstance(message, str) and message:
                return message
        elif isinstance(error, str) and error:
            return error
    return text or fallback


async def open_stream(provider: str, client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
    """Send ``request`` and return the open response, or raise a categorized error.

    Error responses are read and closed before raising.
    """
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        raise request_error(provider, f"Request failed: {str(exc) or type(exc).__name__}", cause=exc) from exc

    try:
        if response.status_code >= 400:
            body = await response.aread()
            raise request_error(
                provider,
                error_detail(body, response.reason_phrase),
                status_code=response.status_code,
            )
    except httpx.HTTPError as exc:
        await response.aclose()
        raise request_error(provider, f"Request failed: {str(exc) or type(exc).__name__}", cause=exc) from exc
    except BaseException:
        await response.aclose()
        raise
    return response


async def bounded_call(handle: ProviderHandle, context: RequestContext, attempt: Callable[[], Awaitable[T]]) -> T:
    """Run ``attempt`` under the retry policy, racing the context's deadline."""
    return await race(
        with_retry(attempt, provider=handle.name, config=handle.retry),
        context.token,
        provider=handle.name,
        timeout_ms=context.timeout_ms,
    )


def client_timeout(handle: ProviderHandle) -> httpx.Timeout:
    """Transport timeout; the per-call deadline is enforced by the tracker."""
    return httpx.Timeout(handle.timeouts.max / 1000)
