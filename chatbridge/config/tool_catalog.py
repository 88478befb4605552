"""Default tool catalog merged into requests when enable_default_tools is on."""

from __future__ import annotations

import copy
from pathlib import Path
from threading import Lock
from typing import Any

import yaml

from chatbridge.adapters.openai_compat.tools import LOCAL_SHELL_NAME, tool_name
from chatbridge.config.settings import settings
from chatbridge.core.errors import ChatBridgeError
from chatbridge.util.logger import get_logger

logger = get_logger("tool_catalog")

_PACKAGE_CATALOG = Path(__file__).resolve().parent / "default_tools.yaml"

_SHELL_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {
            "type": "array",
            "items": {"type": "string"},
            "description": "The command to execute",
        },
        "workdir": {"type": "string", "description": "The working directory to execute the command in"},
        "timeout_ms": {"type": "number", "description": "The timeout for the command in milliseconds"},
    },
    "required": ["command"],
}

# 目录文件缺失时使用的内置默认，与 default_tools.yaml 一致
_BUILTIN_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "shell",
            "description": "Runs a shell command and returns its output.",
            "parameters": _SHELL_PARAMETERS,
        },
    },
    {"type": "local_shell", "description": "Runs a shell command and returns its output."},
]


class ToolCatalogError(ChatBridgeError):
    """Raised when the catalog file exists but is malformed."""


class ToolCatalog:
    def __init__(self, path: str | None = None) -> None:
        configured = path or settings.default_tools_path
        self.path = Path(configured) if configured else _PACKAGE_CATALOG
        self._cache_lock = Lock()
        self._cache: tuple[int, list[dict[str, Any]]] | None = None

    def load(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            logger.warning("tool catalog not found, using built-in defaults path=%s", self.path)
            return copy.deepcopy(_BUILTIN_TOOLS)

        mtime_ns = self.path.stat().st_mtime_ns
        with self._cache_lock:
            if self._cache and self._cache[0] == mtime_ns:
                return copy.deepcopy(self._cache[1])

            try:
                loaded = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
            except yaml.YAMLError as exc:
                raise ToolCatalogError(f"invalid tool catalog yaml: {self.path}: {exc}") from exc
            tools = loaded.get("tools") if isinstance(loaded, dict) else None
            if not isinstance(tools, list) or not all(isinstance(item, dict) for item in tools):
                raise ToolCatalogError(f"invalid tool catalog format: {self.path}")
            self._cache = (mtime_ns, tools)
            logger.info("tool catalog loaded path=%s tools=%d", self.path, len(tools))
            return copy.deepcopy(tools)

    def merge(self, provided: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
        """Client tools win by name; catalog tools fill the gaps."""
        catalog = self.load()
        by_name = {tool_name(tool): tool for tool in catalog if tool_name(tool)}
        if not provided:
            return catalog

        merged: dict[str, dict[str, Any]] = {}
        unnamed: list[dict[str, Any]] = []
        for tool in provided:
            name = tool_name(tool)
            if name:
                merged[name] = tool
            else:
                unnamed.append(tool)
        for name, tool in by_name.items():
            merged.setdefault(name, tool)

        # shell 与 local_shell 互为别名，有一个就补齐另一个
        if "shell" in merged and LOCAL_SHELL_NAME not in merged and LOCAL_SHELL_NAME in by_name:
            merged[LOCAL_SHELL_NAME] = by_name[LOCAL_SHELL_NAME]
        if LOCAL_SHELL_NAME in merged and "shell" not in merged and "shell" in by_name:
            merged["shell"] = by_name["shell"]

        # 无名工具交给 converter 报 UnsupportedToolKindError
        return [*merged.values(), *unnamed]


tool_catalog = ToolCatalog()
