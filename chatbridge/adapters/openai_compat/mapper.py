"""OpenAI <-> Gemini content mapping."""

from __future__ import annotations

import json
import re
import uuid
from typing import Any, Iterable, Mapping

from chatbridge.core.context import RequestContext
from chatbridge.core.errors import InvalidRequestError, UnsupportedRoleError
from chatbridge.core.models import ChatMessage


# external role -> backend role; tool 结果以 functionResponse part 放在 user 轮次
ROLE_MAP: dict[str, str] = {
    "system": "user",
    "user": "user",
    "assistant": "model",
    "tool": "user",
}


def _flatten_part(part: object) -> str:
    if isinstance(part, str):
        return part
    if isinstance(part, Mapping):
        text = part.get("text")
        if isinstance(text, str):
            return text
        return ""
    return str(part)


def _flatten_content(content: object) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(_flatten_part(part) for part in content)
    if isinstance(content, Mapping):
        return json.dumps(content, ensure_ascii=False)
    return str(content)


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"input": raw}
    if isinstance(parsed, dict):
        return parsed
    return {"input": parsed}


_SHELL_FAILURE = re.compile(r"Exit code: [1-9]")
_ERROR_HINT = re.compile(r"(error|failed|not found)", re.IGNORECASE)
_PATCH_RETRY_SUGGESTION = (
    "The patch failed to apply. The file content may have changed. "
    "Please read the file again to get the latest version before creating a new patch."
)


def _structure_tool_output(name: str, text: str) -> dict[str, Any]:
    # 按工具名把纯文本输出整理成结构化 response
    if name in ("apply_patch", "write_file"):
        if "verification failed" in text:
            return {"status": "error", "error": text, "suggestion": _PATCH_RETRY_SUGGESTION}
        return {"status": "success", "summary": text}
    if name in ("shell", "local_shell"):
        if _SHELL_FAILURE.search(text):
            return {"status": "error", "error": text}
        return {"status": "success", "stdout": text}
    if name == "read_file":
        return {"status": "success", "content": text, "bytes": len(text)}
    if name == "list_dir":
        return {"status": "success", "files": [line for line in text.split("\n") if line]}
    if _ERROR_HINT.search(text):
        return {"status": "error", "error": text}
    return {"result": text}


def _tool_response_body(name: str, content: object) -> dict[str, Any]:
    if isinstance(content, Mapping):
        return dict(content)
    text = _flatten_content(content)
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
    return _structure_tool_output(name, text)


def _as_message(item: ChatMessage | Mapping[str, Any]) -> ChatMessage:
    if isinstance(item, ChatMessage):
        return item
    return ChatMessage.model_validate(item)


def convert_messages(messages: Iterable[ChatMessage | Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Convert an OpenAI message list into Gemini content turns.

    Strictly one turn per message, in input order. Nothing is merged or
    dropped: an empty message still yields an empty text part so that the
    last turn always corresponds to the last message.
    """
    contents: list[dict[str, Any]] = []
    call_names: dict[str, str] = {}

    for index, item in enumerate(messages):
        msg = _as_message(item)
        role = msg.role
        if role not in ROLE_MAP:
            raise UnsupportedRoleError(role, index=index)

        if role == "tool":
            name = call_names.get(msg.tool_call_id or "") or msg.name or "unknown"
            parts: list[dict[str, Any]] = [
                {"functionResponse": {"name": name, "response": _tool_response_body(name, msg.content)}}
            ]
        elif role == "assistant" and msg.tool_calls:
            parts = []
            text = _flatten_content(msg.content)
            if text:
                parts.append({"text": text})
            for call in msg.tool_calls:
                call_names[call.id] = call.function.name
                parts.append(
                    {
                        "functionCall": {
                            "name": call.function.name,
                            "args": _parse_arguments(call.function.arguments),
                        }
                    }
                )
        else:
            parts = [{"text": _flatten_content(msg.content)}]

        contents.append({"role": ROLE_MAP[role], "parts": parts})
    return contents


def split_history(contents: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], str | list[dict[str, Any]]]:
    """Split converted turns into chat history and the current user input.

    The input is the last turn's text when that turn is a single text part,
    otherwise its full part list (e.g. a ``functionResponse`` after a tool call).
    """
    if not contents:
        raise InvalidRequestError("`messages` must contain at least one message.")
    last = contents[-1]
    parts = list(last.get("parts", []))
    if len(parts) == 1 and set(parts[0]) == {"text"}:
        return contents[:-1], parts[0]["text"]
    return contents[:-1], parts


def _first_candidate_parts(response: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    if not isinstance(response, Mapping):
        return []
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return []
    first = candidates[0]
    if not isinstance(first, Mapping):
        return []
    content = first.get("content")
    if not isinstance(content, Mapping):
        return []
    parts = content.get("parts")
    return [part for part in parts if isinstance(part, Mapping)] if isinstance(parts, list) else []


def get_response_text(response: Mapping[str, Any] | None) -> str:
    return "".join(
        part["text"]
        for part in _first_candidate_parts(response)
        if isinstance(part.get("text"), str) and not part.get("thought")
    )


def get_function_calls(response: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    return [dict(part["functionCall"]) for part in _first_candidate_parts(response) if isinstance(part.get("functionCall"), Mapping)]


def map_usage(usage_metadata: Mapping[str, Any] | None) -> dict[str, int | None] | None:
    if not isinstance(usage_metadata, Mapping):
        return None
    return {
        "prompt_tokens": usage_metadata.get("promptTokenCount"),
        "completion_tokens": usage_metadata.get("candidatesTokenCount"),
        "total_tokens": usage_metadata.get("totalTokenCount"),
    }


def to_openai_tool_call(call: Mapping[str, Any], index: int | None = None) -> dict[str, Any]:
    output: dict[str, Any] = {
        "id": f"call_{uuid.uuid4().hex}",
        "type": "function",
        "function": {
            "name": str(call.get("name") or ""),
            "arguments": json.dumps(call.get("args") or {}, ensure_ascii=False),
        },
    }
    if index is not None:
        output["index"] = index
    return output


def to_chat_response(ctx: RequestContext, response: Mapping[str, Any]) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": get_response_text(response)}
    finish_reason = "stop"
    function_calls = get_function_calls(response)
    if function_calls:
        message["tool_calls"] = [to_openai_tool_call(call) for call in function_calls]
        finish_reason = "tool_calls"

    output: dict[str, Any] = {
        "id": ctx.completion_id,
        "object": "chat.completion",
        "created": ctx.created,
        "model": ctx.model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
    }
    usage = map_usage(response.get("usageMetadata"))
    if usage is not None:
        output["usage"] = usage
    return output
