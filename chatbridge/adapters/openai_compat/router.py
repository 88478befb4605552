"""OpenAI-compatible chat completions route backed by Gemini."""

from __future__ import annotations

import logging
import uuid
from contextlib import aclosing
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from chatbridge.adapters.openai_compat.mapper import (
    convert_messages,
    get_function_calls,
    get_response_text,
    map_usage,
    split_history,
    to_chat_response,
    to_openai_tool_call,
)
from chatbridge.adapters.openai_compat.model_router import map_requested_model, should_fallback_to_fast
from chatbridge.adapters.openai_compat.stream_utils import (
    StreamAccumulator,
    _build_streaming_response,
    _stream_content_sse_chunk,
    _stream_done_sse_chunk,
    _stream_error_sse_chunk,
    _stream_stop_sse_chunk,
    _stream_tool_calls_sse_chunk,
    _stream_usage_sse_chunk,
)
from chatbridge.adapters.openai_compat.tools import build_tool_config, convert_tools, declaration_names
from chatbridge.adapters.openai_compat.upstream import StreamEventType, _get_backend_client
from chatbridge.config.settings import settings
from chatbridge.config.tool_catalog import tool_catalog
from chatbridge.core.context import RequestContext
from chatbridge.core.errors import ChatBridgeError
from chatbridge.core.models import ChatCompletionRequest
from chatbridge.observability.logging import log_event
from chatbridge.util.logger import get_logger, request_id_var
from chatbridge.util.safe_json import serialize


router = APIRouter()
logger = get_logger("openai_compat")

_ROUTE = "/v1/chat/completions"
_DEBUG_HEADERS_REDACT = frozenset({"authorization", "x-goog-api-key", "api-key"})


def _log_request_if_debug(request: Request, payload: dict[str, Any]) -> None:
    """CHATBRIDGE_LOG_LEVEL=debug 时打请求概要；正文按 log_full_request_body 决定是否打印。"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    headers_safe = {}
    for key, value in request.headers.items():
        lowered = key.lower()
        if lowered in _DEBUG_HEADERS_REDACT or "key" in lowered or "token" in lowered:
            headers_safe[key] = "***"
        else:
            headers_safe[key] = value
    logger.debug(
        "incoming request method=%s path=%s headers=%s",
        request.method,
        request.url.path,
        headers_safe,
    )
    if settings.log_full_request_body:
        logger.debug("incoming request body=%s", serialize(payload, limit=-1))


def _error_response(status_code: int, message: str) -> JSONResponse:
    detail = (message or "").strip() or "request_failed"
    return JSONResponse(status_code=status_code, content={"error": {"message": detail}})


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(item) for item in first.get("loc", ()))
    return f"invalid request: {loc}: {first.get('msg', 'validation failed')}" if loc else "invalid request"


def _should_stream(body: ChatCompletionRequest, request: Request) -> bool:
    if body.stream is not None:
        return bool(body.stream)
    return str(request.query_params.get("stream", "")).strip().lower() == "true"


def _build_generation_params(body: ChatCompletionRequest, tool_groups: list[dict[str, Any]]) -> dict[str, Any]:
    # 未传的采样参数保持缺省，不填默认值
    params: dict[str, Any] = {}
    if body.temperature is not None:
        params["temperature"] = body.temperature
    if body.top_p is not None:
        params["topP"] = body.top_p
    if body.max_tokens is not None:
        params["maxOutputTokens"] = body.max_tokens
    if tool_groups:
        params["tools"] = tool_groups
        tool_config = build_tool_config(tool_groups, settings.function_calling_mode)
        if tool_config:
            params["toolConfig"] = tool_config
    return params


async def _generate_with_fallback(
    ctx: RequestContext,
    contents: list[dict[str, Any]],
    params: dict[str, Any],
) -> dict[str, Any]:
    client = _get_backend_client()
    try:
        return await client.generate_content(contents, params, ctx.model)
    except Exception as exc:
        if not should_fallback_to_fast(exc, ctx.model):
            raise
        logger.warning(
            "model unavailable, falling back request_id=%s model=%s fallback=%s error=%s",
            ctx.request_id,
            ctx.model,
            settings.default_fast_model,
            exc,
        )
        ctx.switch_model(settings.default_fast_model)
        return await client.generate_content(contents, params, ctx.model)


async def _execute_chat_once(
    *,
    ctx: RequestContext,
    contents: list[dict[str, Any]],
    params: dict[str, Any],
) -> JSONResponse:
    try:
        response = await _generate_with_fallback(ctx, contents, params)
    except Exception as exc:
        detail = str(exc) or "Failed to generate response"
        logger.error("chat backend failure request_id=%s model=%s error=%s", ctx.request_id, ctx.model, detail)
        return _error_response(400, detail)

    output = to_chat_response(ctx, response)
    logger.info(
        "chat completed request_id=%s model=%s fallback=%s usage=%s",
        ctx.request_id,
        ctx.model,
        ctx.fallback_used,
        serialize(output.get("usage")),
    )
    return JSONResponse(status_code=200, content=output)


async def _execute_chat_stream_once(
    *,
    ctx: RequestContext,
    contents: list[dict[str, Any]],
    params: dict[str, Any],
    include_usage: bool = False,
) -> StreamingResponse | JSONResponse:
    try:
        history, current_input = split_history(contents)
    except ChatBridgeError as exc:
        return _error_response(400, str(exc))

    async def chat_stream_generator() -> AsyncGenerator[bytes, None]:
        acc = StreamAccumulator()
        usage: dict[str, Any] | None = None
        try:
            while True:
                chat = _get_backend_client().start_chat(history, params)
                try:
                    async with aclosing(chat.send_message_stream(ctx.model, current_input, prompt_id=ctx.request_id)) as events:
                        async for event in events:
                            if event.type == StreamEventType.RETRY:
                                continue
                            snapshot = event.value or {}

                            delta = acc.advance(get_response_text(snapshot))
                            if delta:
                                yield _stream_content_sse_chunk(ctx, acc, delta)

                            picked = acc.take_tool_calls(
                                get_function_calls(snapshot),
                                dedup=settings.stream_dedup_tool_calls,
                                max_calls=int(settings.stream_max_tool_calls),
                            )
                            if picked:
                                new_calls = [to_openai_tool_call(call, index=index) for index, call in picked]
                                yield _stream_tool_calls_sse_chunk(ctx, acc, new_calls)

                            usage = map_usage(snapshot.get("usageMetadata")) or usage
                    break
                except Exception as exc:
                    # 还没有向客户端写出任何内容帧时，允许一次回退到 fast 模型
                    if acc.first_chunk and not ctx.fallback_used and should_fallback_to_fast(exc, ctx.model):
                        logger.warning(
                            "stream model unavailable, falling back request_id=%s model=%s fallback=%s error=%s",
                            ctx.request_id,
                            ctx.model,
                            settings.default_fast_model,
                            exc,
                        )
                        ctx.switch_model(settings.default_fast_model)
                        continue
                    raise

            finish_reason = "tool_calls" if acc.emitted_tool_calls else "stop"
            yield _stream_stop_sse_chunk(ctx, finish_reason)
            if include_usage and usage is not None:
                yield _stream_usage_sse_chunk(ctx, usage)
            yield _stream_done_sse_chunk()
            logger.info(
                "chat stream completed request_id=%s model=%s chars=%d tool_calls=%d",
                ctx.request_id,
                ctx.model,
                len(acc.accumulated_text),
                acc.emitted_tool_calls,
            )
        except Exception as exc:
            detail = str(exc) or "stream_error"
            logger.error("chat stream backend failure request_id=%s model=%s error=%s", ctx.request_id, ctx.model, detail)
            yield _stream_error_sse_chunk(detail)
            yield _stream_done_sse_chunk()

    return _build_streaming_response(chat_stream_generator())


@router.post("/chat/completions")
async def chat_completions(payload: dict, request: Request):
    request_id = uuid.uuid4().hex
    request_id_var.set(request_id)
    _log_request_if_debug(request, payload)

    try:
        body = ChatCompletionRequest.model_validate(payload)
    except ValidationError as exc:
        logger.warning("invalid chat payload request_id=%s error=%s", request_id, exc.errors()[:3])
        return _error_response(400, _validation_message(exc))

    max_messages = int(settings.max_messages_count)
    if len(body.messages) > max_messages:
        return _error_response(400, f"messages count={len(body.messages)} exceeds max={max_messages}")

    stream = _should_stream(body, request)
    ctx = RequestContext(
        request_id=request_id,
        requested_model=body.model,
        model=map_requested_model(body.model),
        stream=stream,
    )

    try:
        contents = convert_messages(body.messages)
        tools = tool_catalog.merge(body.tools) if settings.enable_default_tools else body.tools
        tool_groups = convert_tools(tools)
    except (ChatBridgeError, ValueError) as exc:
        logger.warning("chat conversion failed request_id=%s error=%s", request_id, exc)
        return _error_response(400, str(exc))

    params = _build_generation_params(body, tool_groups)
    ctx.tool_names = declaration_names(tool_groups)
    log_event(
        "chat_upstream_payload",
        request_id=request_id,
        route=_ROUTE,
        stream=stream,
        requested_model=body.model or "default",
        mapped_model=ctx.model,
        turns=len(contents),
        tool_names=ctx.tool_names,
    )

    if stream:
        include_usage = bool(body.stream_options and body.stream_options.include_usage)
        return await _execute_chat_stream_once(ctx=ctx, contents=contents, params=params, include_usage=include_usage)
    return await _execute_chat_once(ctx=ctx, contents=contents, params=params)
