"""
日志用的防御式 JSON 序列化：循环引用、不可序列化对象、超长输出都不会抛异常。
只在日志/诊断路径使用，不参与协议转换。
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from chatbridge.config.settings import settings
from chatbridge.core.errors import SerializationFailure

CIRCULAR_MARKER = "[Circular]"
TRUNCATED_SUFFIX = "...(truncated)"


def _function_placeholder(value: Any) -> str:
    name = getattr(value, "__name__", "") or "anonymous"
    return f"[Function {name}]"


def _to_jsonable(value: Any, seen: set[int]) -> Any:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes len={len(value)}>"
    if isinstance(value, BaseModel):
        value = value.model_dump()
    if callable(value) and not isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return _function_placeholder(value)

    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        marker = id(value)
        if marker in seen:
            return CIRCULAR_MARKER
        seen.add(marker)
        if isinstance(value, Mapping):
            return {str(key): _to_jsonable(item, seen) for key, item in value.items()}
        return [_to_jsonable(item, seen) for item in value]

    try:
        return str(value)
    except Exception as exc:
        raise SerializationFailure(str(exc) or type(exc).__name__) from exc


def safe_json_dumps(value: Any) -> str:
    """Render ``value`` as JSON text; on failure return the error message as a JSON string."""
    seen: set[int] = set()
    try:
        return json.dumps(_to_jsonable(value, seen), ensure_ascii=False)
    except (SerializationFailure, RecursionError, TypeError, ValueError) as exc:
        message = str(exc) or "unserializable"
        return json.dumps(message, ensure_ascii=False)


def serialize(value: Any, limit: int | None = None) -> str:
    cap = settings.log_json_limit if limit is None else limit
    text = safe_json_dumps(value)
    if cap < 0 or len(text) <= cap:
        return text
    return f"{text[:cap]}{TRUNCATED_SUFFIX}"
