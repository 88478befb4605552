"""
Gemini 后端客户端：generateContent / streamGenerateContent 的 HTTP 调用与流式快照。
从 router 拆出，便于维护与单测（测试里整体替换 _get_backend_client）。
"""

from __future__ import annotations

import asyncio
import copy
import enum
import json
import random
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Mapping

import httpx

from chatbridge.adapters.openai_compat.stream_utils import _extract_sse_data_payload
from chatbridge.config.settings import settings
from chatbridge.core.errors import BackendInvocationError
from chatbridge.util.logger import get_logger

logger = get_logger("upstream")

_TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})

_backend_async_client: httpx.AsyncClient | None = None
_backend_client_lock: asyncio.Lock | None = None


def _backend_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.backend_max_connections)),
        max_keepalive_connections=max(5, int(settings.backend_max_keepalive_connections)),
    )


def _backend_http_timeout() -> httpx.Timeout:
    timeout = float(settings.backend_timeout_seconds)
    return httpx.Timeout(connect=min(timeout, 30.0), read=timeout, write=timeout, pool=timeout)


async def _get_http_client() -> httpx.AsyncClient:
    global _backend_async_client, _backend_client_lock
    if _backend_async_client is not None:
        return _backend_async_client
    if _backend_client_lock is None:
        _backend_client_lock = asyncio.Lock()
    async with _backend_client_lock:
        if _backend_async_client is None:
            _backend_async_client = httpx.AsyncClient(
                timeout=_backend_http_timeout(),
                limits=_backend_http_limits(),
            )
    return _backend_async_client


async def close_backend_async_client() -> None:
    global _backend_async_client
    if _backend_async_client is not None:
        await _backend_async_client.aclose()
        _backend_async_client = None


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text
    return parsed if isinstance(parsed, dict) else text


def _error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload[:600]
    error = payload.get("error")
    if isinstance(error, Mapping) and isinstance(error.get("message"), str):
        return error["message"][:600]
    if isinstance(error, str):
        return error[:600]
    return json.dumps(payload, ensure_ascii=False)[:600]


def _http_error(status_code: int, body: bytes) -> BackendInvocationError:
    detail = _error_detail(_decode_json_or_text(body))
    return BackendInvocationError(f"backend_http_error:{status_code}: {detail}", status_code=status_code)


def _transport_error(exc: httpx.HTTPError) -> BackendInvocationError:
    detail = (str(exc) or "").strip() or type(exc).__name__
    return BackendInvocationError(f"backend_unreachable: {detail}")


class StreamEventType(str, enum.Enum):
    CHUNK = "chunk"
    RETRY = "retry"


@dataclass(slots=True)
class StreamEvent:
    type: StreamEventType
    value: dict[str, Any] | None = None


def _merge_into_snapshot(state: dict[str, Any], chunk: Mapping[str, Any]) -> dict[str, Any]:
    """Fold one streamed backend chunk into the running snapshot response."""
    candidates = chunk.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], Mapping):
        candidate = candidates[0]
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, Mapping) else None
        for part in parts or []:
            if not isinstance(part, Mapping):
                continue
            if part.get("thought"):
                continue
            if isinstance(part.get("text"), str):
                state["text"] += part["text"]
            elif isinstance(part.get("functionCall"), Mapping):
                state["function_calls"].append(dict(part["functionCall"]))
        if candidate.get("finishReason"):
            state["finish_reason"] = candidate["finishReason"]
    if isinstance(chunk.get("usageMetadata"), Mapping):
        state["usage"] = dict(chunk["usageMetadata"])

    parts_out: list[dict[str, Any]] = []
    if state["text"]:
        parts_out.append({"text": state["text"]})
    parts_out.extend({"functionCall": call} for call in state["function_calls"])
    candidate_out: dict[str, Any] = {"content": {"role": "model", "parts": parts_out}, "index": 0}
    if state["finish_reason"]:
        candidate_out["finishReason"] = state["finish_reason"]
    snapshot: dict[str, Any] = {"candidates": [candidate_out]}
    if state["usage"] is not None:
        snapshot["usageMetadata"] = state["usage"]
    return snapshot


class ChatSession:
    """A multi-turn chat seeded with prior turns; history grows after each completed exchange."""

    def __init__(self, client: "GeminiClient", history: list[dict[str, Any]], params: Mapping[str, Any] | None = None) -> None:
        self._client = client
        self.history = copy.deepcopy(history)
        self.params = dict(params or {})

    async def send_message_stream(
        self,
        model: str,
        message: str | list[dict[str, Any]],
        prompt_id: str,
    ) -> AsyncGenerator[StreamEvent, None]:
        # message 可以是纯文本，也可以是 part 列表（functionResponse 等）
        parts = [{"text": message}] if isinstance(message, str) else copy.deepcopy(list(message))
        user_turn = {"role": "user", "parts": parts}
        body = self._client.build_request_body([*self.history, user_turn], self.params)
        max_attempts = max(1, int(settings.backend_stream_retries))
        base_backoff = max(0, int(settings.backend_stream_backoff_ms)) / 1000.0
        attempt = 0
        snapshot: dict[str, Any] | None = None

        while True:
            attempt += 1
            state: dict[str, Any] = {"text": "", "function_calls": [], "finish_reason": None, "usage": None}
            received = False
            try:
                async for chunk in self._client.stream_generate(model, body, prompt_id):
                    received = True
                    snapshot = _merge_into_snapshot(state, chunk)
                    yield StreamEvent(StreamEventType.CHUNK, snapshot)
                break
            except BackendInvocationError as exc:
                transient = exc.status_code is None or exc.status_code in _TRANSIENT_STATUS
                if received or not transient or attempt >= max_attempts:
                    raise
                backoff = base_backoff * (2 ** (attempt - 1)) * (1 + random.random() * 0.25)
                logger.warning(
                    "stream attempt failed prompt_id=%s attempt=%d/%d error=%s retry_in=%.2fs",
                    prompt_id,
                    attempt,
                    max_attempts,
                    exc,
                    backoff,
                )
                yield StreamEvent(StreamEventType.RETRY)
                await asyncio.sleep(backoff)

        model_parts = snapshot["candidates"][0]["content"]["parts"] if snapshot else []
        self.history.append(user_turn)
        self.history.append({"role": "model", "parts": model_parts or [{"text": ""}]})


class GeminiClient:
    def __init__(self, base_url: str | None = None, api_key: str | None = None) -> None:
        self.base_url = (base_url or settings.backend_base_url).rstrip("/")
        self.api_key = settings.backend_api_key if api_key is None else api_key

    def _headers(self, prompt_id: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers[settings.backend_api_key_header] = self.api_key
        if prompt_id:
            headers["x-request-id"] = prompt_id
        return headers

    def _url(self, model: str, method: str) -> str:
        name = model if model.startswith("models/") else f"models/{model}"
        return f"{self.base_url}/{name}:{method}"

    @staticmethod
    def build_request_body(contents: list[dict[str, Any]], params: Mapping[str, Any] | None) -> dict[str, Any]:
        params = params or {}
        body: dict[str, Any] = {"contents": contents}
        generation_config = {
            key: params[key]
            for key in ("temperature", "topP", "maxOutputTokens")
            if params.get(key) is not None
        }
        if generation_config:
            body["generationConfig"] = generation_config
        for key in ("tools", "toolConfig", "systemInstruction"):
            if params.get(key):
                body[key] = params[key]
        return body

    async def generate_content(
        self,
        contents: list[dict[str, Any]],
        params: Mapping[str, Any] | None,
        model: str,
    ) -> dict[str, Any]:
        url = self._url(model, "generateContent")
        body = json.dumps(self.build_request_body(contents, params), ensure_ascii=False).encode("utf-8")
        logger.debug("generate_content start model=%s payload_bytes=%d", model, len(body))
        client = await _get_http_client()
        try:
            response = await client.post(url, content=body, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("generate_content http_error model=%s error=%s", model, exc)
            raise _transport_error(exc) from exc
        logger.debug("generate_content done model=%s status=%s", model, response.status_code)
        if response.status_code >= 400:
            raise _http_error(response.status_code, response.content)
        decoded = _decode_json_or_text(response.content)
        if not isinstance(decoded, dict):
            raise BackendInvocationError("backend returned a non-JSON response")
        return decoded

    async def stream_generate(
        self,
        model: str,
        body: Mapping[str, Any],
        prompt_id: str,
    ) -> AsyncGenerator[dict[str, Any], None]:
        url = self._url(model, "streamGenerateContent")
        raw = json.dumps(body, ensure_ascii=False).encode("utf-8")
        logger.debug("stream_generate start model=%s payload_bytes=%d", model, len(raw))
        client = await _get_http_client()
        try:
            async with client.stream("POST", url, params={"alt": "sse"}, content=raw, headers=self._headers(prompt_id)) as resp:
                logger.debug("stream_generate connected model=%s status=%s", model, resp.status_code)
                if resp.status_code >= 400:
                    raise _http_error(resp.status_code, await resp.aread())
                async for line in resp.aiter_lines():
                    data = _extract_sse_data_payload(line)
                    if not data:
                        continue
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("stream_generate skip undecodable line model=%s", model)
                        continue
                    if isinstance(chunk, dict):
                        yield chunk
        except httpx.HTTPError as exc:
            logger.warning("stream_generate http_error model=%s error=%s", model, exc)
            raise _transport_error(exc) from exc

    def start_chat(self, history: list[dict[str, Any]], params: Mapping[str, Any] | None = None) -> ChatSession:
        return ChatSession(self, history, params)


_backend_client: GeminiClient | None = None


def _get_backend_client() -> GeminiClient:
    global _backend_client
    if _backend_client is None:
        _backend_client = GeminiClient()
    return _backend_client
