"""Tests for HttpSessionBackend against httpx.MockTransport."""
from __future__ import annotations

import json

import httpx
import pytest

from agent_dispatch.domain import BackendError, ModelCandidate, SessionState
from agent_dispatch.infrastructure.http_backend import HttpSessionBackend


def _backend(handler, **kwargs) -> HttpSessionBackend:
    return HttpSessionBackend("http://server:4096/", transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_create_session_sends_title_parent_and_directory():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["directory"] = request.url.params.get("directory")
        seen["json"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"id": "ses_42"})

    backend = _backend(handler, api_key="secret")
    assert await backend.create_session("ses_parent", "Fix (@worker subagent)", "/repo") == "ses_42"
    assert seen["method"] == "POST"
    assert seen["path"] == "/session"
    assert seen["directory"] == "/repo"
    assert seen["json"] == {"title": "Fix (@worker subagent)", "parentID": "ses_parent"}
    assert seen["auth"] == "Bearer secret"


@pytest.mark.asyncio
async def test_create_session_envelope_and_missing_id():
    backend = _backend(lambda r: httpx.Response(200, json={"data": {"id": "ses_7"}}))
    assert await backend.create_session(None, "t", "") == "ses_7"

    backend = _backend(lambda r: httpx.Response(200, json={}))
    with pytest.raises(BackendError, match="no id"):
        await backend.create_session(None, "t", "")


@pytest.mark.asyncio
async def test_send_prompt_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["json"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(204)

    await _backend(handler).send_prompt(
        "ses_1",
        agent="worker",
        model=ModelCandidate("openai", "gpt-5.2", "high"),
        variant="high",
        tools={"question": False},
        text="do it",
        system="Be brief.",
    )
    assert seen["path"] == "/session/ses_1/prompt_async"
    assert seen["json"] == {
        "tools": {"question": False},
        "parts": [{"type": "text", "text": "do it"}],
        "agent": "worker",
        "model": {"providerID": "openai", "modelID": "gpt-5.2"},
        "variant": "high",
        "system": "Be brief.",
    }
    assert seen["auth"] is None


@pytest.mark.asyncio
async def test_error_response_keeps_body():
    body = {
        "name": "ProviderModelNotFoundError",
        "data": {"providerID": "openai", "modelID": "gpt-9", "suggestions": ["gpt-5.2"], "message": "Model not found"},
    }
    backend = _backend(lambda r: httpx.Response(400, json=body))
    with pytest.raises(BackendError, match="Model not found") as excinfo:
        await backend.send_prompt("ses_1", agent=None, model=None, variant=None, tools={}, text="x")
    assert excinfo.value.status_code == 400
    assert excinfo.value.body == body


@pytest.mark.asyncio
async def test_error_response_plain_text():
    backend = _backend(lambda r: httpx.Response(500, text="upstream exploded"))
    with pytest.raises(BackendError, match="upstream exploded"):
        await backend.list_messages("ses_1")


@pytest.mark.asyncio
async def test_transport_error_becomes_backend_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendError, match="GET /session/status failed"):
        await _backend(handler).session_status()


@pytest.mark.asyncio
async def test_list_messages_and_status():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/session/status":
            return httpx.Response(200, json={"ses_1": {"type": "busy"}})
        return httpx.Response(
            200,
            json=[
                {"info": {"id": "msg_001", "role": "user"}, "parts": [{"type": "text", "text": "hi"}]},
                {"info": {"id": "msg_002", "role": "assistant", "finish": "stop"}, "parts": []},
            ],
        )

    backend = _backend(handler)
    messages = await backend.list_messages("ses_1")
    assert [(m.id, m.role) for m in messages] == [("msg_001", "user"), ("msg_002", "assistant")]
    assert await backend.session_status() == {"ses_1": SessionState.BUSY}


PROVIDERS = {
    "all": [
        {"id": "anthropic", "models": {"claude-opus-4-6": {}, "claude-haiku-4-5": {}}},
        {"id": "openai", "models": {"gpt-5.2": {}}},
        {"id": "google", "models": [{"id": "gemini-3-pro"}]},
    ],
    "connected": ["anthropic", "google"],
}


@pytest.mark.asyncio
async def test_provider_listing_filters_to_connected():
    backend = _backend(lambda r: httpx.Response(200, json=PROVIDERS))
    assert await backend.list_connected_providers() == ["anthropic", "google"]
    assert await backend.list_models() == [
        "anthropic/claude-haiku-4-5",
        "anthropic/claude-opus-4-6",
        "google/gemini-3-pro",
    ]


@pytest.mark.asyncio
async def test_provider_listing_without_connected_key():
    body = {"all": PROVIDERS["all"][1:2]}
    backend = _backend(lambda r: httpx.Response(200, json=body))
    assert await backend.list_models() == ["openai/gpt-5.2"]
    assert await backend.list_connected_providers() == []
