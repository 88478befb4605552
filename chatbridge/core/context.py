"""Per-request runtime context."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from time import time


def make_completion_id() -> str:
    return f"chatcmpl_{uuid.uuid4()}"


@dataclass(slots=True)
class RequestContext:
    request_id: str
    requested_model: str | None
    model: str
    stream: bool = False
    completion_id: str = field(default_factory=make_completion_id)
    created: int = field(default_factory=lambda: int(time()))
    fallback_used: bool = False
    tool_names: list[str] = field(default_factory=list)

    def switch_model(self, model: str) -> None:
        self.model = model
        self.fallback_used = True
