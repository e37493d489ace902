"""Tests for domain value objects and wire normalisation."""
from __future__ import annotations

import pytest

from agent_dispatch.domain import (
    Availability,
    ModelCandidate,
    SessionMessage,
    SessionState,
    messages_from_wire,
    normalize_model_ref,
    parse_model_string,
    status_map_from_wire,
)


def test_parse_model_string_splits_on_first_slash():
    assert parse_model_string(" openrouter/meta/llama-3 ") == ModelCandidate("openrouter", "meta/llama-3")
    assert parse_model_string("anthropic/claude-opus-4-6").full_name == "anthropic/claude-opus-4-6"


@pytest.mark.parametrize("value", [None, "", "gpt-5.2", "/gpt-5.2", "openai/", " / "])
def test_parse_model_string_rejects(value):
    assert parse_model_string(value) is None


def test_normalize_model_ref_shapes():
    expected = ModelCandidate("openai", "gpt-5.2")
    assert normalize_model_ref("openai/gpt-5.2") == expected
    assert normalize_model_ref({"providerID": "openai", "modelID": "gpt-5.2"}) == expected
    assert normalize_model_ref({"provider": "openai", "id": "gpt-5.2", "variant": "high"}) == expected.with_variant("high")
    assert normalize_model_ref(expected) is expected
    assert normalize_model_ref({"provider": "openai"}) is None
    assert normalize_model_ref(42) is None


def test_availability_tri_state():
    assert not Availability.unknown().is_known
    assert Availability.unknown().connected_providers is None
    empty = Availability.known([])
    assert empty.is_known and empty.models == frozenset()
    cached = Availability.unknown(connected_providers=[])
    assert cached.connected_providers == ()


def test_message_from_wire():
    raw = {
        "info": {
            "id": "msg_002",
            "role": "assistant",
            "time": {"created": 1700000000},
            "finish": "stop",
            "agent": "oracle",
            "providerID": "openai",
            "modelID": "gpt-5.2",
            "variant": "high",
        },
        "parts": [{"type": "text", "text": "hello"}, {"type": "tool", "state": {}}, "junk"],
    }
    msg = SessionMessage.from_wire(raw)
    assert msg.id == "msg_002"
    assert msg.created_at == 1700000000.0
    assert msg.finish_reason == "stop"
    assert msg.model == ModelCandidate("openai", "gpt-5.2")
    assert msg.variant == "high"
    assert len(msg.parts) == 2
    assert msg.text_content() == "hello"


def test_flat_message_with_model_mapping():
    msg = SessionMessage.from_wire(
        {"id": "msg_001", "role": "user", "model": {"providerID": "anthropic", "modelID": "claude-opus-4-6"}}
    )
    assert msg.role == "user"
    assert msg.model.full_name == "anthropic/claude-opus-4-6"
    assert msg.created_at is None
    assert msg.finish_reason is None


def test_messages_from_wire_accepts_envelope():
    raw = [{"info": {"id": "msg_001", "role": "user"}, "parts": []}, "junk"]
    assert [m.id for m in messages_from_wire(raw)] == ["msg_001"]
    assert [m.id for m in messages_from_wire({"data": raw})] == ["msg_001"]
    assert messages_from_wire({"error": "nope"}) == []


def test_status_map_from_wire():
    raw = {"ses_1": {"type": "busy"}, "ses_2": "idle", "ses_3": {"type": "compacting"}}
    assert status_map_from_wire(raw) == {
        "ses_1": SessionState.BUSY,
        "ses_2": SessionState.IDLE,
        "ses_3": SessionState.BUSY,
    }
    assert status_map_from_wire({"data": {"ses_1": {"type": "retry"}}}) == {"ses_1": SessionState.RETRY}
    assert status_map_from_wire(None) == {}
