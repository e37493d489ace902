"""Tests for config loading."""
from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from agent_dispatch.application.execution_resolution import resolve_category_execution
from agent_dispatch.config import DEFAULT_CONFIG, DispatchConfig, get_config, load_config
from agent_dispatch.config import loader as config_loader
from agent_dispatch.config.schema import (
    CategoryConfig,
    FallbackEntryConfig,
    ModelRequirementConfig,
    TimingConfig,
)
from agent_dispatch.domain import Availability, FallbackEntry


def _use_file(monkeypatch, path) -> None:
    monkeypatch.setenv("DISPATCH_CONFIG_PATH", str(path))
    monkeypatch.setattr(config_loader, "_env", None)


def test_get_config_default(monkeypatch):
    monkeypatch.delenv("DISPATCH_CONFIG_PATH", raising=False)
    monkeypatch.setattr(config_loader, "_env", None)
    cfg = get_config()
    assert cfg is DEFAULT_CONFIG
    assert "quick" in cfg.categories
    assert cfg.default_agent == "worker"
    assert cfg.system_default_model is None


def test_missing_file_falls_back_to_default(monkeypatch, tmp_path):
    _use_file(monkeypatch, tmp_path / "absent.json")
    assert load_config() is DEFAULT_CONFIG


def test_get_config_from_file(monkeypatch, tmp_path):
    cfg_file = tmp_path / "dispatch.json"
    cfg_file.write_text(json.dumps({
        "backend": {"base_url": "http://127.0.0.1:9000", "api_key": "k"},
        "timing": {"poll_interval_s": 1.0, "max_poll_time_s": 60},
        "categories": {"docs": {"model": "google/gemini-3-flash", "prompt_append": "Write prose."}},
        "category_requirements": {
            "docs": {"fallback_chain": [{"providers": ["anthropic"], "model": "claude-sonnet-4-5"}]}
        },
        "agents": {"oracle": {"model": "openai/gpt-5.2", "variant": "high"}},
        "system_default_model": "anthropic/claude-sonnet-4-5",
    }))
    _use_file(monkeypatch, cfg_file)

    cfg = get_config()
    assert cfg.backend.base_url == "http://127.0.0.1:9000"
    assert cfg.timing.max_poll_time_s == 60
    assert cfg.timing.stability_polls_required == 3
    assert cfg.categories["docs"].prompt_append == "Write prose."
    assert "quick" in cfg.categories
    assert cfg.category_requirements["docs"].entries() == (
        FallbackEntry(providers=("anthropic",), model="claude-sonnet-4-5"),
    )
    assert cfg.agents["oracle"].variant == "high"
    assert cfg.system_default_model == "anthropic/claude-sonnet-4-5"


def test_legacy_default_model_key(monkeypatch, tmp_path):
    cfg_file = tmp_path / "dispatch.json"
    cfg_file.write_text(json.dumps({"default_model": "openai/gpt-5.2"}))
    _use_file(monkeypatch, cfg_file)
    assert load_config().system_default_model == "openai/gpt-5.2"


def test_load_config_is_cached(monkeypatch):
    monkeypatch.delenv("DISPATCH_CONFIG_PATH", raising=False)
    assert load_config() is load_config()


def test_load_config_cache_clear_forces_reload(monkeypatch, tmp_path):
    cfg_file = tmp_path / "dispatch.json"
    cfg_file.write_text(json.dumps({"default_agent": "builder"}))
    _use_file(monkeypatch, cfg_file)
    first = load_config()
    assert first.default_agent == "builder"

    cfg_file.write_text(json.dumps({"default_agent": "maker"}))
    assert load_config().default_agent == "builder"

    load_config.cache_clear()
    second = load_config()
    assert second.default_agent == "maker"
    assert first is not second


def test_default_config_is_consistent():
    assert set(DEFAULT_CONFIG.category_requirements) <= set(DEFAULT_CONFIG.categories)
    assert DEFAULT_CONFIG.category_requirements["deep"].requires_model == "gpt-5.3-codex"
    for requirement in DEFAULT_CONFIG.category_requirements.values():
        assert requirement.fallback_chain


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("poll_interval_s", 0, "poll_interval_s must be > 0"),
        ("max_poll_time_s", -1, "max_poll_time_s must be > 0"),
        ("min_stability_time_s", -1, "min_stability_time_s must be >= 0"),
        ("stability_polls_required", 0, "stability_polls_required must be >= 1"),
        ("finished_task_ttl_s", 0, "finished_task_ttl_s must be > 0"),
    ],
)
def test_timing_validation(field, value, message):
    with pytest.raises(ValidationError, match=message):
        TimingConfig(**{field: value})


def test_fallback_entry_needs_providers():
    with pytest.raises(ValidationError, match="at least one provider"):
        FallbackEntryConfig(providers=[], model="gpt-5.2")


def test_requirement_for_unknown_category_rejected():
    with pytest.raises(ValidationError, match="unknown categories"):
        DispatchConfig(
            categories={"quick": CategoryConfig(model="anthropic/claude-haiku-4-5")},
            category_requirements={"qiuck": ModelRequirementConfig()},
        )


def test_file_without_categories_keeps_builtin_set(monkeypatch, tmp_path):
    cfg_file = tmp_path / "dispatch.json"
    cfg_file.write_text(json.dumps({"backend": {"base_url": "http://x:1"}}))
    _use_file(monkeypatch, cfg_file)

    cfg = load_config()
    assert cfg.backend.base_url == "http://x:1"
    assert set(cfg.categories) == set(DEFAULT_CONFIG.categories)
    assert cfg.category_requirements == DEFAULT_CONFIG.category_requirements
    assert cfg.agent_requirements == DEFAULT_CONFIG.agent_requirements
    assert cfg.user_categories == {}


def test_file_entries_merge_over_builtin_ones(monkeypatch, tmp_path):
    cfg_file = tmp_path / "dispatch.json"
    cfg_file.write_text(json.dumps({
        "categories": {"quick": {"variant": "low"}, "docs": {"model": "google/gemini-3-flash"}},
        "category_requirements": {"deep": {"requires_model": None}},
        "agent_requirements": {
            "oracle": {"fallback_chain": [{"providers": ["openai"], "model": "gpt-5.2"}]},
        },
    }))
    _use_file(monkeypatch, cfg_file)

    cfg = load_config()
    quick = cfg.categories["quick"]
    assert quick.model == DEFAULT_CONFIG.categories["quick"].model
    assert quick.variant == "low"
    assert cfg.categories["docs"].model == "google/gemini-3-flash"
    assert "ultrabrain" in cfg.categories

    deep = cfg.category_requirements["deep"]
    assert deep.requires_model is None
    assert deep.fallback_chain == DEFAULT_CONFIG.category_requirements["deep"].fallback_chain
    assert cfg.agent_requirements["oracle"].entries() == (FallbackEntry(providers=("openai",), model="gpt-5.2"),)
    assert "explore" in cfg.agent_requirements

    assert set(cfg.user_categories) == {"quick", "docs"}
    assert cfg.user_categories["quick"].model is None
    assert cfg.user_categories["docs"].model == "google/gemini-3-flash"


def test_file_category_model_wins_over_default_agent_model(monkeypatch, tmp_path):
    cfg_file = tmp_path / "dispatch.json"
    cfg_file.write_text(json.dumps({
        "categories": {"ultrabrain": {"model": "openai/gpt-5.3-codex"}},
        "agents": {"worker": {"model": "anthropic/claude-sonnet-4-5"}},
    }))
    _use_file(monkeypatch, cfg_file)

    available = Availability.known({"openai/gpt-5.3-codex", "anthropic/claude-sonnet-4-5"})
    resolved = resolve_category_execution("ultrabrain", load_config(), available)
    assert resolved.actual_model == "openai/gpt-5.3-codex"
