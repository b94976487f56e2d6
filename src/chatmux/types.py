"""Provider-agnostic request/response models."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]
ToolChoiceMode = Literal["none", "auto"]

VALID_ROLES: tuple[str, ...] = ("system", "user", "assistant", "tool")
VALID_TOOL_CHOICES: tuple[str, ...] = ("none", "auto")


class ErrorCategory(str, Enum):
    """Classification of an in-flight failure, used for retry decisions."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    AUTHENTICATION = "authentication"
    CLIENT_ERROR = "client_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class FunctionCall(BaseModel):
    """Function name plus JSON-encoded arguments."""

    name: str
    arguments: str = "{}"


class ToolCall(BaseModel):
    """Structured function invocation emitted by a backend."""

    index: int = 0
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class ChatMessage(BaseModel):
    """Single chat message."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None


class ToolDefinition(BaseModel):
    """Caller-owned tool: JSON-schema parameters and an optional handler."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    handler: Callable[..., Any] | None = Field(default=None, exclude=True, repr=False)


class NamedFunction(BaseModel):
    name: str


class NamedToolChoice(BaseModel):
    """Forces the backend to call one specific function."""

    type: Literal["function"] = "function"
    function: NamedFunction


class ChatCompletionOptions(BaseModel):
    """Per-call options shared by all adapters."""

    model: str
    # ToolDefinition instances or function-tool mappings; translated per call
    tools: list[Any] | None = None
    tool_choice: ToolChoiceMode | NamedToolChoice | None = None
    # milliseconds
    timeout: float | None = None


class Delta(BaseModel):
    content: str | None = None
    tool_calls: list[ToolCall] | None = None


class DeltaChoice(BaseModel):
    delta: Delta


class DeltaChunk(BaseModel):
    """Canonical unit of the normalized output stream."""

    choices: list[DeltaChoice]

    @classmethod
    def content_delta(cls, text: str) -> DeltaChunk:
        return cls(choices=[DeltaChoice(delta=Delta(content=text))])

    @classmethod
    def tool_call_batch(cls, calls: list[ToolCall]) -> DeltaChunk:
        return cls(choices=[DeltaChoice(delta=Delta(tool_calls=list(calls)))])

    @property
    def content(self) -> str | None:
        return self.choices[0].delta.content if self.choices else None

    @property
    def tool_calls(self) -> list[ToolCall] | None:
        return self.choices[0].delta.tool_calls if self.choices else None


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ChatResponse(BaseModel):
    """Fully assembled response: concatenated content plus any tool calls."""

    provider: str
    model: str
    content: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: TokenUsage | None = None
