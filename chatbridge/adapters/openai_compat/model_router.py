"""Requested model name -> backend model, and the fallback-to-fast classifier."""

from __future__ import annotations

from typing import Any, Mapping

from chatbridge.config.settings import settings


_NOT_FOUND_MARKERS = ("requested entity was not found", "not_found", "404")


def map_requested_model(requested: str | None = None) -> str:
    if not requested:
        return settings.default_fast_model
    lowered = requested.lower()
    if "nano" in lowered:
        return settings.default_fast_model
    if lowered.startswith("gpt-"):
        return settings.default_full_model
    return requested


def _field(source: Any, key: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(key)
    return getattr(source, key, None)


def _error_statuses(error: Any) -> set[int]:
    # 兼容 BackendInvocationError.status_code、httpx 的 error.response.status_code
    # 以及 Gemini 错误体 {"error": {"code": 404, "status": "NOT_FOUND"}}
    sources = [error, _field(error, "response"), _field(error, "error")]
    statuses: set[int] = set()
    for source in sources:
        if source is None or isinstance(source, (str, bytes)):
            continue
        for key in ("status_code", "status", "code"):
            value = _field(source, key)
            if isinstance(value, bool):
                continue
            try:
                statuses.add(int(value))
            except (TypeError, ValueError):
                continue
    return statuses


def _error_message(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, Mapping):
        message = error.get("message")
        nested = error.get("error")
        if not message and isinstance(nested, Mapping):
            message = nested.get("message")
        return message if isinstance(message, str) else ""
    return ""


def should_fallback_to_fast(error: Any, current_model: str) -> bool:
    """Whether a failed call on ``current_model`` should be retried once on the default fast model."""
    if current_model == settings.default_fast_model:
        return False
    if 404 in _error_statuses(error):
        return True
    message = _error_message(error).lower()
    if not message:
        return False
    return any(marker in message for marker in _NOT_FOUND_MARKERS)
