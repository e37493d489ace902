"""Configuration: schema, loading from env/file, and shared constants."""

from .schema import (
    DEFAULT_CONFIG,
    AgentOverrideConfig,
    BackendConfig,
    CacheConfig,
    CategoryConfig,
    DispatchConfig,
    FallbackEntryConfig,
    ModelRequirementConfig,
    TelemetryConfig,
    TimingConfig,
    ToolPolicyConfig,
)
from .loader import load_config

get_config = load_config  # alias

__all__ = [
    "DEFAULT_CONFIG", "AgentOverrideConfig", "BackendConfig", "CacheConfig", "CategoryConfig",
    "DispatchConfig", "FallbackEntryConfig", "ModelRequirementConfig", "TelemetryConfig",
    "TimingConfig", "ToolPolicyConfig", "load_config", "get_config",
]
