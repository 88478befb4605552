"""Structured logging bridge."""

from __future__ import annotations

from chatbridge.util.logger import logger
from chatbridge.util.safe_json import serialize


def log_event(event: str, **payload: object) -> None:
    logger.info("event=%s payload=%s", event, serialize(payload))
