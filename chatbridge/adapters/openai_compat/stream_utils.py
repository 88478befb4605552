"""
流式 SSE 帧构建与 delta 计算。从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Iterable

from fastapi.responses import StreamingResponse

from chatbridge.core.context import RequestContext
from chatbridge.util.logger import get_logger
from chatbridge.util.safe_json import safe_json_dumps

logger = get_logger("stream")


@dataclass(slots=True)
class StreamAccumulator:
    """Text already sent to the client for one streamed request."""

    accumulated_text: str = ""
    first_chunk: bool = True
    emitted_tool_calls: int = 0
    seen_tool_calls: int = 0
    tool_call_signatures: set[str] = field(default_factory=set)

    def advance(self, snapshot_text: str) -> str:
        """Return the unsent suffix of ``snapshot_text`` and record it as sent.

        Backend snapshots are expected to grow monotonically. A snapshot that
        does not extend what was already sent yields no delta.
        """
        if not snapshot_text.startswith(self.accumulated_text):
            return ""
        delta = snapshot_text[len(self.accumulated_text):]
        if delta:
            self.accumulated_text += delta
        return delta

    def take_tool_calls(
        self,
        calls: list[dict[str, Any]],
        *,
        dedup: bool = True,
        max_calls: int = 0,
    ) -> list[tuple[int, dict[str, Any]]]:
        """Pick the not-yet-seen calls of a snapshot that should go to the client.

        Returns ``(index, call)`` pairs, index being the client-facing tool call
        position. A call whose ``name::args`` signature was already emitted is
        skipped when ``dedup`` is on; ``max_calls`` > 0 caps the calls per stream.
        """
        fresh = calls[self.seen_tool_calls:]
        self.seen_tool_calls = max(self.seen_tool_calls, len(calls))
        picked: list[tuple[int, dict[str, Any]]] = []
        for call in fresh:
            if max_calls > 0 and self.emitted_tool_calls >= max_calls:
                logger.warning("tool call cap reached max=%d, dropping %s", max_calls, call.get("name"))
                continue
            signature = f"{call.get('name')}::{safe_json_dumps(call.get('args') or {})}"
            if dedup and signature in self.tool_call_signatures:
                logger.warning("skip duplicate tool call within stream: %s", call.get("name"))
                continue
            self.tool_call_signatures.add(signature)
            picked.append((self.emitted_tool_calls, call))
            self.emitted_tool_calls += 1
        return picked


def _sse(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _chunk_payload(ctx: RequestContext, delta: dict[str, Any], finish_reason: str | None) -> dict[str, Any]:
    return {
        "id": ctx.completion_id,
        "object": "chat.completion.chunk",
        "created": ctx.created,
        "model": ctx.model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def _stream_content_sse_chunk(ctx: RequestContext, acc: StreamAccumulator, content: str) -> bytes:
    delta: dict[str, Any] = {"content": content}
    if acc.first_chunk:
        delta = {"role": "assistant", "content": content}
        acc.first_chunk = False
    return _sse(_chunk_payload(ctx, delta, None))


def _stream_tool_calls_sse_chunk(ctx: RequestContext, acc: StreamAccumulator, tool_calls: list[dict[str, Any]]) -> bytes:
    delta: dict[str, Any] = {"tool_calls": tool_calls}
    if acc.first_chunk:
        delta = {"role": "assistant", "content": None, "tool_calls": tool_calls}
        acc.first_chunk = False
    return _sse(_chunk_payload(ctx, delta, None))


def _stream_stop_sse_chunk(ctx: RequestContext, finish_reason: str = "stop") -> bytes:
    return _sse(_chunk_payload(ctx, {}, finish_reason))


def _stream_usage_sse_chunk(ctx: RequestContext, usage: dict[str, Any]) -> bytes:
    return _sse(
        {
            "id": ctx.completion_id,
            "object": "chat.completion.chunk",
            "created": ctx.created,
            "model": ctx.model,
            "choices": [],
            "usage": usage,
        }
    )


def _stream_error_sse_chunk(message: str) -> bytes:
    detail = (message or "backend_error").strip() or "backend_error"
    return _sse({"error": {"message": detail}})


def _stream_done_sse_chunk() -> bytes:
    return b"data: [DONE]\n\n"


def _extract_sse_data_payload(line: bytes | str) -> str | None:
    if not line:
        return None
    stripped = line.strip() if isinstance(line, str) else line.strip().decode("utf-8", errors="replace")
    if not stripped.startswith("data:"):
        return None
    return stripped[5:].strip()


def _build_streaming_response(generator: Iterable[bytes] | AsyncIterable[bytes]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
