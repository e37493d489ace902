"""Tests for fuzzy model matching."""
from __future__ import annotations

from agent_dispatch.application.model_matching import (
    fuzzy_match_model,
    is_any_provider_connected,
    is_model_available,
    normalize_model_name,
)
from agent_dispatch.domain import Availability


AVAILABLE = {
    "openai/gpt-5.2",
    "openai/gpt-5.3-codex",
    "anthropic/claude-opus-4-6",
    "anthropic/claude-sonnet-4-5",
    "opencode/gpt-5-nano",
}


def test_normalize_collapses_dash_version():
    assert normalize_model_name("Claude-Opus-4-5") == "claude-opus-4.5"
    assert normalize_model_name("x-y-4-5") == normalize_model_name("x-y-4.5")


def test_normalize_leaves_single_digit_and_dates_alone():
    assert normalize_model_name("gpt-5-nano") == "gpt-5-nano"
    assert normalize_model_name("claude-sonnet-4-5-20250929") == "claude-sonnet-4.5-20250929"


def test_exact_full_match_wins():
    assert fuzzy_match_model("openai/gpt-5.2", AVAILABLE) == "openai/gpt-5.2"


def test_substring_prefers_shortest():
    # "gpt-5" is contained in gpt-5.2, gpt-5.3-codex and gpt-5-nano; shortest wins.
    assert fuzzy_match_model("gpt-5", AVAILABLE) == "openai/gpt-5.2"


def test_version_spelling_variants_match():
    assert fuzzy_match_model("claude-opus-4.6", AVAILABLE) == "anthropic/claude-opus-4-6"
    assert fuzzy_match_model("anthropic/claude-sonnet-4.5", AVAILABLE) == "anthropic/claude-sonnet-4-5"


def test_provider_filter_excludes_other_providers():
    assert fuzzy_match_model("claude", AVAILABLE, ["openai"]) is None
    assert fuzzy_match_model("gpt-5", AVAILABLE, ["opencode"]) == "opencode/gpt-5-nano"


def test_model_id_match_prefers_canonical_over_suffix_variant():
    available = {"github-copilot/claude-opus-4-6-preview", "anthropic/claude-opus-4-6", "proxy-long/claude-opus-4-6"}
    assert fuzzy_match_model("claude-opus-4-6", available) == "anthropic/claude-opus-4-6"


def test_no_match_and_empty_set():
    assert fuzzy_match_model("llama", AVAILABLE) is None
    assert fuzzy_match_model("gpt-5.2", set()) is None
    assert fuzzy_match_model("   ", AVAILABLE) is None


def test_matching_is_idempotent():
    first = fuzzy_match_model("claude", AVAILABLE)
    second = fuzzy_match_model("claude", AVAILABLE)
    assert first == second == "anthropic/claude-opus-4-6"


def test_is_model_available():
    assert is_model_available("gpt-5.3-codex", AVAILABLE)
    assert not is_model_available("gemini-3-pro", AVAILABLE)


def test_is_any_provider_connected():
    known = Availability.known(AVAILABLE)
    assert is_any_provider_connected(["google", "openai"], known)
    assert not is_any_provider_connected(["google"], known)
    cached = Availability.unknown(connected_providers=["google"])
    assert is_any_provider_connected(["google"], cached)
    assert not is_any_provider_connected(["google"], Availability.unknown())
