"""Pytest fixtures and helpers for agent-dispatch tests."""
from __future__ import annotations

import pytest

from agent_dispatch.config import DEFAULT_CONFIG, DispatchConfig, TimingConfig


@pytest.fixture(autouse=True)
def _reset_config_cache():
    """Clear the load_config LRU cache and reset _env before (and after) every test.

    Each test gets a fresh config load, so monkeypatching DISPATCH_CONFIG_PATH
    works without tests bleeding into each other.
    """
    from agent_dispatch.config import loader as config_loader
    config_loader.load_config.cache_clear()
    config_loader._env = None
    yield
    config_loader.load_config.cache_clear()
    config_loader._env = None


@pytest.fixture
def fast_timing() -> TimingConfig:
    """Timing small enough that poll loops finish in milliseconds."""
    return TimingConfig(
        poll_interval_s=0.01,
        max_poll_time_s=1.0,
        min_stability_time_s=0.0,
        stability_polls_required=2,
        wait_for_session_interval_s=0.01,
        wait_for_session_timeout_s=0.2,
        prompt_timeout_s=1.0,
    )


@pytest.fixture
def config(fast_timing, tmp_path) -> DispatchConfig:
    """DEFAULT_CONFIG with fast timing and a throwaway cache dir."""
    return DEFAULT_CONFIG.model_copy(
        update={
            "timing": fast_timing,
            "cache": DEFAULT_CONFIG.cache.model_copy(update={"cache_dir": str(tmp_path / "cache")}),
        }
    )
