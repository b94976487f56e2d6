"""Translation between neutral tool definitions and backend-native shapes.

OpenAI-compatible backends and Mistral share the ``{"type": "function",
"function": {...}}`` tool shape. Gemini expects ``functionDeclarations``
whose parameter schema is an OpenAPI subset with upper-case type names.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Iterable, Mapping
from typing import Any

from chatmux.types import FunctionCall, NamedToolChoice, ToolCall, ToolDefinition

_GEMINI_SCHEMA_KEYS = frozenset(
    {
        "type",
        "format",
        "title",
        "description",
        "nullable",
        "enum",
        "properties",
        "required",
        "items",
        "minItems",
        "maxItems",
        "minimum",
        "maximum",
        "anyOf",
    }
)


def coerce_tool(tool: ToolDefinition | Mapping[str, Any]) -> ToolDefinition:
    """Accept a ``ToolDefinition`` or a flat / nested function-tool mapping."""
    if isinstance(tool, ToolDefinition):
        return tool
    if not isinstance(tool, Mapping):
        raise TypeError(f"Tool must be a mapping or ToolDefinition, got {type(tool).__name__}")

    spec = tool.get("function", tool)
    if not isinstance(spec, Mapping):
        raise TypeError("Tool 'function' entry must be a mapping")
    name = spec.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Tool is missing a function name")
    parameters = spec.get("parameters") or {}
    if not isinstance(parameters, Mapping):
        raise TypeError(f"Parameters of tool '{name}' must be an object")
    return ToolDefinition(
        name=name,
        description=spec.get("description") or "",
        parameters=dict(parameters),
        handler=tool.get("handler"),
    )


def to_openai_tools(tools: Iterable[ToolDefinition | Mapping[str, Any]] | None) -> list[dict[str, Any]]:
    """Function-tool array for OpenAI-compatible chat completions."""
    if not tools:
        return []
    result = []
    for tool in tools:
        definition = coerce_tool(tool)
        result.append(
            {
                "type": "function",
                "function": {
                    "name": definition.name,
                    "description": definition.description,
                    "parameters": copy.deepcopy(definition.parameters),
                },
            }
        )
    return result


# Mistral accepts the OpenAI function-tool shape unchanged.
to_mistral_tools = to_openai_tools


def _to_gemini_schema(schema: Mapping[str, Any]) -> dict[str, Any]:
    converted: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _GEMINI_SCHEMA_KEYS:
            continue
        if key == "type":
            if isinstance(value, list):
                non_null = [t for t in value if t != "null"]
                if len(non_null) != len(value):
                    converted["nullable"] = True
                value = non_null[0] if non_null else "string"
            converted["type"] = str(value).upper()
        elif key == "properties":
            converted["properties"] = {name: _to_gemini_schema(sub) for name, sub in value.items()}
        elif key == "items":
            converted["items"] = _to_gemini_schema(value)
        elif key == "anyOf":
            converted["anyOf"] = [_to_gemini_schema(sub) for sub in value]
        elif key == "required":
            converted["required"] = list(value)
        else:
            converted[key] = value
    return converted


def to_gemini_tools(tools: Iterable[ToolDefinition | Mapping[str, Any]] | None) -> list[dict[str, Any]] | None:
    """``[{"functionDeclarations": [...]}]`` or ``None`` when there are no tools."""
    if not tools:
        return None
    declarations = []
    for tool in tools:
        definition = coerce_tool(tool)
        declaration: dict[str, Any] = {"name": definition.name, "description": definition.description}
        # Gemini rejects OBJECT schemas without properties.
        if definition.parameters.get("properties"):
            declaration["parameters"] = _to_gemini_schema(definition.parameters)
        declarations.append(declaration)
    return [{"functionDeclarations": declarations}]


def _from_gemini_schema(schema: Mapping[str, Any]) -> dict[str, Any]:
    converted: dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type":
            converted["type"] = str(value).lower()
        elif key == "properties":
            converted["properties"] = {name: _from_gemini_schema(sub) for name, sub in value.items()}
        elif key == "items":
            converted["items"] = _from_gemini_schema(value)
        elif key == "anyOf":
            converted["anyOf"] = [_from_gemini_schema(sub) for sub in value]
        else:
            converted[key] = value
    return converted


def tool_from_openai(entry: Mapping[str, Any]) -> ToolDefinition:
    """Rebuild a neutral definition from an OpenAI/Mistral function tool."""
    return coerce_tool(entry)


def tool_from_gemini(declaration: Mapping[str, Any]) -> ToolDefinition:
    """Rebuild a neutral definition from a Gemini function declaration."""
    parameters = declaration.get("parameters")
    return ToolDefinition(
        name=declaration["name"],
        description=declaration.get("description") or "",
        parameters=_from_gemini_schema(parameters) if parameters else {"type": "object", "properties": {}},
    )


def _choice_name(choice: NamedToolChoice | Mapping[str, Any]) -> str:
    if isinstance(choice, NamedToolChoice):
        return choice.function.name
    return choice["function"]["name"]


def openai_tool_choice(choice: str | NamedToolChoice | Mapping[str, Any] | None) -> str | dict[str, Any] | None:
    """``tool_choice`` value for OpenAI-compatible backends and Mistral."""
    if choice is None or isinstance(choice, str):
        return choice
    return {"type": "function", "function": {"name": _choice_name(choice)}}


def gemini_tool_config(choice: str | NamedToolChoice | Mapping[str, Any] | None) -> dict[str, Any] | None:
    """``toolConfig`` for Gemini; ``None`` leaves the backend default."""
    if choice is None:
        return None
    if choice == "none":
        return {"functionCallingConfig": {"mode": "NONE"}}
    if choice == "auto":
        return {"functionCallingConfig": {"mode": "AUTO"}}
    return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [_choice_name(choice)]}}


def tool_call_from_gemini(function_call: Mapping[str, Any], index: int) -> ToolCall:
    """Convert a Gemini ``functionCall`` part.

    Gemini has no call-scoped identifier in most responses, so the function
    name doubles as the id. Two calls to the same function in one response
    therefore share an id.
    """
    name = function_call["name"]
    return ToolCall(
        index=index,
        id=function_call.get("id") or name,
        function=FunctionCall(name=name, arguments=json.dumps(function_call.get("args") or {})),
    )


class ToolCallAccumulator:
    """Assemble OpenAI-style ``delta.tool_calls`` fragments into complete calls.

    Fragments share an ``index``; the first carries the id and name, later
    ones append to ``function.arguments``. Mistral sends each call whole,
    sometimes with ``arguments`` as an object rather than a string.
    """

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, str]] = {}

    def __bool__(self) -> bool:
        return bool(self._calls)

    def feed(self, fragments: Iterable[Mapping[str, Any]]) -> None:
        for position, fragment in enumerate(fragments):
            index = fragment.get("index")
            if not isinstance(index, int):
                index = position
            entry = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if fragment.get("id"):
                entry["id"] = fragment["id"]
            function = fragment.get("function") or {}
            if function.get("name"):
                entry["name"] = function["name"]
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                entry["arguments"] += arguments
            elif arguments is not None:
                entry["arguments"] = json.dumps(arguments)

    def complete(self) -> list[ToolCall]:
        calls = []
        for position, index in enumerate(sorted(self._calls)):
            entry = self._calls[index]
            if not entry["name"]:
                continue
            calls.append(
                ToolCall(
                    index=position,
                    id=entry["id"] or entry["name"],
                    function=FunctionCall(name=entry["name"], arguments=entry["arguments"] or "{}"),
                )
            )
        return calls
