"""OpenAI tool definitions -> Gemini functionDeclarations."""

from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping

from chatbridge.core.errors import UnsupportedToolKindError


LOCAL_SHELL_NAME = "local_shell"
WEB_SEARCH_NAME = "web_search"

_EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

LOCAL_SHELL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Command to execute, provided as an array of arguments.",
        },
        "workdir": {
            "type": "string",
            "description": "Optional working directory for the command.",
        },
        "timeout_ms": {
            "type": "integer",
            "description": "Optional timeout in milliseconds.",
        },
    },
    "required": ["command"],
}

# custom 工具是 freeform：整段输入作为一个字符串传递，不加 required
FREEFORM_INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "input": {
            "type": "string",
            "description": "Freeform input payload.",
        },
    },
}

WEB_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "Query string to search for.",
        },
    },
    "required": ["query"],
}

_FUNCTION_CALLING_MODES = frozenset({"AUTO", "ANY", "NONE"})


def _description(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _declaration(name: object, description: str | None, parameters: Mapping[str, Any], kind: str) -> dict[str, Any]:
    if not isinstance(name, str) or not name.strip():
        raise UnsupportedToolKindError(kind, "tool name is missing")
    declaration: dict[str, Any] = {"name": name}
    if description:
        declaration["description"] = description
    declaration["parameters"] = parameters
    return declaration


def _convert_function(tool: Mapping[str, Any]) -> dict[str, Any]:
    nested = tool.get("function")
    if not isinstance(nested, Mapping):
        raise UnsupportedToolKindError("function", "missing `function` object")
    parameters = nested.get("parameters")
    if not isinstance(parameters, Mapping):
        parameters = copy.deepcopy(_EMPTY_OBJECT_SCHEMA)
    return _declaration(nested.get("name"), _description(nested.get("description")), parameters, "function")


def _convert_local_shell(tool: Mapping[str, Any]) -> dict[str, Any]:
    return _declaration(
        LOCAL_SHELL_NAME,
        _description(tool.get("description"))
        or "Execute a shell command. Provide the command as an array of arguments.",
        copy.deepcopy(LOCAL_SHELL_SCHEMA),
        "local_shell",
    )


def _convert_custom(tool: Mapping[str, Any]) -> dict[str, Any]:
    name = tool.get("name")
    return _declaration(
        name,
        _description(tool.get("description")) or f"Custom tool: {name}",
        copy.deepcopy(FREEFORM_INPUT_SCHEMA),
        "custom",
    )


def _convert_web_search(tool: Mapping[str, Any]) -> dict[str, Any]:
    return _declaration(
        tool.get("name") or WEB_SEARCH_NAME,
        _description(tool.get("description")) or "Search the web for the provided query.",
        copy.deepcopy(WEB_SEARCH_SCHEMA),
        "web_search",
    )


_CONVERTERS = {
    "function": _convert_function,
    "local_shell": _convert_local_shell,
    "custom": _convert_custom,
    "web_search": _convert_web_search,
}


def convert_tool(tool: Mapping[str, Any]) -> dict[str, Any]:
    if not isinstance(tool, Mapping):
        raise UnsupportedToolKindError(type(tool).__name__, "tool must be an object")
    kind = tool.get("type")
    converter = _CONVERTERS.get(kind) if isinstance(kind, str) else None
    if converter is None:
        raise UnsupportedToolKindError(kind)
    return converter(tool)


def convert_tools(tools: Iterable[Mapping[str, Any]] | None) -> list[dict[str, Any]]:
    """One ``{"functionDeclarations": [decl]}`` group per input tool, in order."""
    if not tools:
        return []
    return [{"functionDeclarations": [convert_tool(tool)]} for tool in tools]


def declaration_names(groups: Iterable[Mapping[str, Any]]) -> list[str]:
    names: list[str] = []
    for group in groups:
        for declaration in group.get("functionDeclarations") or []:
            name = declaration.get("name")
            if name:
                names.append(name)
    return names


def build_tool_config(groups: list[dict[str, Any]], mode: str = "AUTO") -> dict[str, Any] | None:
    names = declaration_names(groups)
    if not names:
        return None
    normalized = str(mode or "AUTO").strip().upper()
    if normalized not in _FUNCTION_CALLING_MODES:
        normalized = "AUTO"
    config: dict[str, Any] = {"mode": normalized}
    if normalized == "ANY":
        config["allowedFunctionNames"] = names
    return {"functionCallingConfig": config}


def tool_name(tool: Mapping[str, Any]) -> str:
    """Name a tool will be declared under, or "" when it has none."""
    kind = tool.get("type")
    if kind == "function":
        nested = tool.get("function")
        return str(nested.get("name") or "") if isinstance(nested, Mapping) else ""
    if kind == "local_shell":
        return LOCAL_SHELL_NAME
    if kind == "web_search":
        return str(tool.get("name") or WEB_SEARCH_NAME)
    return str(tool.get("name") or "")
