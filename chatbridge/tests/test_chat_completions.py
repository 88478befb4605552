import json

import pytest

from chatbridge.adapters.openai_compat import router as openai_router
from chatbridge.config.settings import settings
from chatbridge.config.tool_catalog import ToolCatalog
from chatbridge.core.errors import BackendInvocationError
from chatbridge.tests.fakes import FakeBackend, build_request, text_snapshot


def _json(response) -> dict:
    return json.loads(response.body.decode("utf-8"))


@pytest.mark.asyncio
async def test_non_streaming_chat_returns_assistant_message(monkeypatch):
    usage = {"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6}
    backend = FakeBackend(responses=[text_snapshot("hello there", usage)])
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)

    response = await openai_router.chat_completions(
        {"messages": [{"role": "user", "content": "hi"}], "stream": False},
        build_request(),
    )

    assert response.status_code == 200
    body = _json(response)
    assert body["object"] == "chat.completion"
    assert body["id"].startswith("chatcmpl_")
    assert isinstance(body["created"], int)
    assert body["model"] == settings.default_fast_model
    choice = body["choices"][0]
    assert choice["index"] == 0
    assert choice["message"] == {"role": "assistant", "content": "hello there"}
    assert choice["finish_reason"] == "stop"
    assert body["usage"] == {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}
    assert backend.generate_calls[0]["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]


@pytest.mark.asyncio
async def test_sampling_params_are_left_unset_when_absent(monkeypatch):
    backend = FakeBackend(responses=[text_snapshot("a"), text_snapshot("b")])
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)

    await openai_router.chat_completions({"messages": [{"role": "user", "content": "x"}]}, build_request())
    await openai_router.chat_completions(
        {"messages": [{"role": "user", "content": "x"}], "temperature": 0, "top_p": 0.9, "max_tokens": 10},
        build_request(),
    )

    assert backend.generate_calls[0]["params"] == {}
    assert backend.generate_calls[1]["params"] == {"temperature": 0, "topP": 0.9, "maxOutputTokens": 10}


@pytest.mark.asyncio
async def test_usage_omitted_or_partial(monkeypatch):
    backend = FakeBackend(
        responses=[text_snapshot("no usage"), text_snapshot("partial", {"promptTokenCount": 3})]
    )
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)

    first = _json(await openai_router.chat_completions({"messages": [{"role": "user", "content": "x"}]}, build_request()))
    second = _json(await openai_router.chat_completions({"messages": [{"role": "user", "content": "x"}]}, build_request()))

    assert "usage" not in first
    assert second["usage"] == {"prompt_tokens": 3, "completion_tokens": None, "total_tokens": None}


@pytest.mark.asyncio
async def test_function_call_response_maps_to_tool_calls(monkeypatch):
    response_body = {
        "candidates": [
            {
                "content": {
                    "role": "model",
                    "parts": [
                        {"text": "thinking", "thought": True},
                        {"functionCall": {"name": "local_shell", "args": {"command": ["pwd"]}}},
                    ],
                }
            }
        ]
    }
    backend = FakeBackend(responses=[response_body])
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)

    body = _json(
        await openai_router.chat_completions(
            {"tools": [{"type": "local_shell"}], "messages": [{"role": "user", "content": "where am I"}]},
            build_request(),
        )
    )

    choice = body["choices"][0]
    assert choice["finish_reason"] == "tool_calls"
    assert choice["message"]["content"] == ""
    call = choice["message"]["tool_calls"][0]
    assert call["id"].startswith("call_")
    assert call["function"]["name"] == "local_shell"
    assert json.loads(call["function"]["arguments"]) == {"command": ["pwd"]}

    params = backend.generate_calls[0]["params"]
    declaration = params["tools"][0]["functionDeclarations"][0]
    assert declaration["name"] == "local_shell"
    assert declaration["parameters"]["required"] == ["command"]
    assert params["toolConfig"] == {"functionCallingConfig": {"mode": "AUTO"}}


@pytest.mark.asyncio
async def test_backend_failure_returns_400(monkeypatch):
    backend = FakeBackend(responses=[BackendInvocationError("backend_unreachable: dns lookup failed")])
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)

    response = await openai_router.chat_completions(
        {"model": "gpt-4", "messages": [{"role": "user", "content": "hi"}]},
        build_request(),
    )

    assert response.status_code == 400
    assert _json(response) == {"error": {"message": "backend_unreachable: dns lookup failed"}}
    assert len(backend.generate_calls) == 1


@pytest.mark.asyncio
async def test_not_found_on_full_model_retries_once_on_fast_model(monkeypatch):
    backend = FakeBackend(
        responses=[
            BackendInvocationError("backend_http_error:404: Requested entity was not found.", status_code=404),
            text_snapshot("fallback ok"),
        ]
    )
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)

    response = await openai_router.chat_completions(
        {"model": "gpt-4", "messages": [{"role": "user", "content": "hi"}]},
        build_request(),
    )

    body = _json(response)
    assert response.status_code == 200
    assert [call["model"] for call in backend.generate_calls] == [settings.default_full_model, settings.default_fast_model]
    assert body["model"] == settings.default_fast_model
    assert body["choices"][0]["message"]["content"] == "fallback ok"


@pytest.mark.asyncio
async def test_fallback_happens_only_once(monkeypatch):
    backend = FakeBackend(
        responses=[
            BackendInvocationError("not found", status_code=404),
            BackendInvocationError("still not found", status_code=404),
        ]
    )
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)

    response = await openai_router.chat_completions(
        {"model": "gemini-exp-1206", "messages": [{"role": "user", "content": "hi"}]},
        build_request(),
    )

    assert response.status_code == 400
    assert len(backend.generate_calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload, fragment",
    [
        ({"messages": "hello"}, "messages"),
        ({}, "messages"),
        ({"messages": [{"role": "developer", "content": "x"}]}, "unsupported message role"),
        ({"messages": [{"role": "user", "content": "x"}], "tools": [{"type": "code_interpreter"}]}, "unsupported tool type"),
        ({"messages": [], "stream": True}, "at least one message"),
    ],
)
async def test_invalid_requests_fail_before_backend_call(monkeypatch, payload, fragment):
    backend = FakeBackend()
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)

    response = await openai_router.chat_completions(payload, build_request())

    assert response.status_code == 400
    assert fragment in _json(response)["error"]["message"]
    assert backend.generate_calls == []
    assert backend.chat_calls == []


@pytest.mark.asyncio
async def test_too_many_messages_rejected(monkeypatch):
    monkeypatch.setattr(settings, "max_messages_count", 2)
    response = await openai_router.chat_completions(
        {"messages": [{"role": "user", "content": str(i)} for i in range(3)]},
        build_request(),
    )
    assert response.status_code == 400
    assert "exceeds max=2" in _json(response)["error"]["message"]


@pytest.mark.asyncio
async def test_default_tools_are_merged_when_enabled(monkeypatch):
    backend = FakeBackend(responses=[text_snapshot("ok")])
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)
    monkeypatch.setattr(settings, "enable_default_tools", True)

    await openai_router.chat_completions(
        {"messages": [{"role": "user", "content": "x"}], "tools": [{"type": "custom", "name": "notes"}]},
        build_request(),
    )

    names = [group["functionDeclarations"][0]["name"] for group in backend.generate_calls[0]["params"]["tools"]]
    assert names[0] == "notes"
    assert "local_shell" in names
    assert "shell" in names


@pytest.mark.asyncio
async def test_broken_tool_catalog_is_a_clean_400(monkeypatch, tmp_path):
    catalog_path = tmp_path / "tools.yaml"
    catalog_path.write_text("tools: [shell, local_shell\n", encoding="utf-8")
    backend = FakeBackend()
    monkeypatch.setattr(openai_router, "_get_backend_client", lambda: backend)
    monkeypatch.setattr(openai_router, "tool_catalog", ToolCatalog(str(catalog_path)))
    monkeypatch.setattr(settings, "enable_default_tools", True)

    response = await openai_router.chat_completions({"messages": [{"role": "user", "content": "x"}]}, build_request())

    assert response.status_code == 400
    assert "invalid tool catalog yaml" in _json(response)["error"]["message"]
    assert backend.generate_calls == []
