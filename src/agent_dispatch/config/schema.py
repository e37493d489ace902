"""Configuration schema. Defaults describe a local OpenCode-style session server and a standard category set."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from agent_dispatch.domain import FallbackEntry


class BackendConfig(BaseModel):
    """Session/messaging server the dispatcher talks to."""
    base_url: str = Field("http://127.0.0.1:4096", description="Root URL of the session server.")
    api_key: str = Field("", description="Bearer token; empty for local servers (no header sent).")
    timeout_s: float = Field(30.0, description="HTTP timeout for individual backend requests.")
    directory: str = Field(
        "",
        description="Working directory passed to new sessions. Empty = the process working directory.",
    )


class TimingConfig(BaseModel):
    """Polling cadence and budgets, in seconds."""
    poll_interval_s: float = Field(0.5, description="Sleep between completion polls.")
    max_poll_time_s: float = Field(600.0, description="Wall-clock budget for waiting on a synchronous task.")
    min_stability_time_s: float = Field(
        10.0,
        description="Unstable-model path: minimum run time before idle samples count towards stability.",
    )
    stability_polls_required: int = Field(
        3,
        description="Unstable-model path: consecutive idle polls with an unchanged message count required.",
    )
    wait_for_session_interval_s: float = Field(0.1, description="Sleep between checks for a background session id.")
    wait_for_session_timeout_s: float = Field(30.0, description="Budget for a background task to get its session id.")
    prompt_timeout_s: float = Field(120.0, description="Bound on the prompt-send call.")
    finished_task_ttl_s: float = Field(
        1800.0,
        description="How long a finished background task and its result stay queryable before pruning.",
    )

    @model_validator(mode="after")
    def _check_positive(self) -> "TimingConfig":
        for name in (
            "poll_interval_s",
            "max_poll_time_s",
            "wait_for_session_interval_s",
            "wait_for_session_timeout_s",
            "prompt_timeout_s",
            "finished_task_ttl_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"timing.{name} must be > 0, got {getattr(self, name)!r}")
        if self.min_stability_time_s < 0:
            raise ValueError("timing.min_stability_time_s must be >= 0")
        if self.stability_polls_required < 1:
            raise ValueError("timing.stability_polls_required must be >= 1")
        return self


class CategoryConfig(BaseModel):
    """A task category: default model plus presentation/safety flags."""
    model: Optional[str] = Field(None, description="Default 'provider/model' for this category.")
    variant: Optional[str] = None
    description: str = ""
    prompt_append: str = Field("", description="Text appended to the system content for this category.")
    is_unstable_agent: bool = Field(
        False,
        description="Force the background-and-monitor path when a synchronous run is requested.",
    )


class AgentOverrideConfig(BaseModel):
    """User override for a named agent's model."""
    model: Optional[str] = None
    variant: Optional[str] = None


class FallbackEntryConfig(BaseModel):
    providers: List[str]
    model: str
    variant: Optional[str] = None

    @model_validator(mode="after")
    def _providers_not_empty(self) -> "FallbackEntryConfig":
        if not self.providers:
            raise ValueError(f"Fallback entry for model {self.model!r} must list at least one provider.")
        return self

    def to_entry(self) -> FallbackEntry:
        return FallbackEntry(providers=tuple(self.providers), model=self.model, variant=self.variant)


class ModelRequirementConfig(BaseModel):
    """Ordered fallback chain for a category or agent."""
    fallback_chain: List[FallbackEntryConfig] = Field(default_factory=list)
    variant: Optional[str] = Field(None, description="Default variant when the matching entry has none.")
    requires_model: Optional[str] = Field(
        None,
        description="Category is only usable when this model resolves; otherwise dispatch reports why.",
    )

    def entries(self) -> tuple:
        return tuple(e.to_entry() for e in self.fallback_chain)


class ToolPolicyConfig(BaseModel):
    """Tool permissions sent with each prompt."""
    denied_tools: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Per-agent (lower-case name) list of tools switched off for that agent.",
    )
    plan_family: List[str] = Field(
        default_factory=lambda: ["plan", "planner"],
        description="Agents allowed to spawn further tasks via the 'task' tool (substring match).",
    )


class CacheConfig(BaseModel):
    cache_dir: str = Field(
        "",
        description="Directory holding availability caches. Empty = platformdirs user cache path.",
    )


class TelemetryConfig(BaseModel):
    """Optional OpenTelemetry tracing configuration."""
    enabled: bool = False
    service_name: str = "agent-dispatch"
    exporter: str = Field(
        "none",
        description="Span exporter: 'none' (default), 'console' (stdout), or 'otlp' (gRPC endpoint).",
    )
    otlp_endpoint: str = Field("", description="OTLP gRPC endpoint, e.g. 'http://localhost:4317'.")


class DispatchConfig(BaseModel):
    """Root config."""
    backend: BackendConfig = Field(default_factory=BackendConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    categories: Dict[str, CategoryConfig] = Field(default_factory=dict)
    user_categories: Dict[str, CategoryConfig] = Field(
        default_factory=dict,
        description=(
            "Category entries as written in the config file. Their model and variant are explicit "
            "choices that win over the default agent's override; filled in by the loader."
        ),
    )
    agents: Dict[str, AgentOverrideConfig] = Field(
        default_factory=dict,
        description="Per-agent model overrides (keys matched case-insensitively).",
    )
    category_requirements: Dict[str, ModelRequirementConfig] = Field(default_factory=dict)
    agent_requirements: Dict[str, ModelRequirementConfig] = Field(default_factory=dict)
    system_default_model: Optional[str] = Field(
        None,
        description="Last-resort model. None = no opinion; the session server's own default applies.",
    )
    default_agent: str = Field("worker", description="Agent that runs category-based tasks.")
    unstable_model_markers: List[str] = Field(
        default_factory=lambda: ["gemini", "minimax"],
        description="Case-insensitive substrings marking model families unreliable under synchronous polling.",
    )
    tool_policy: ToolPolicyConfig = Field(default_factory=ToolPolicyConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    telemetry: Optional[TelemetryConfig] = None

    @model_validator(mode="after")
    def _requirements_reference_categories(self) -> "DispatchConfig":
        """Every category requirement must belong to a defined category.

        A requirement for an undefined category can never be used and almost
        always means a typo in the config file.
        """
        unknown = sorted(set(self.category_requirements) - set(self.categories))
        if unknown:
            raise ValueError(
                f"category_requirements reference unknown categories: {unknown}. "
                f"Defined categories: {sorted(self.categories)}"
            )
        return self


def _chain(*entries: tuple) -> ModelRequirementConfig:
    return ModelRequirementConfig(
        fallback_chain=[
            FallbackEntryConfig(providers=list(providers), model=model, variant=variant)
            for providers, model, variant in entries
        ]
    )


_MAJOR = ["anthropic", "github-copilot", "opencode"]
_OPENAI = ["openai", "github-copilot", "opencode"]
_GOOGLE = ["google", "github-copilot", "opencode"]


DEFAULT_CONFIG = DispatchConfig(
    categories={
        "visual-engineering": CategoryConfig(
            model="google/gemini-3-pro",
            description="Frontend, UI/UX, design, styling, animation",
        ),
        "ultrabrain": CategoryConfig(
            model="openai/gpt-5.3-codex",
            variant="xhigh",
            description="Genuinely hard, logic-heavy tasks.",
        ),
        "deep": CategoryConfig(
            model="openai/gpt-5.3-codex",
            variant="medium",
            description="Goal-oriented autonomous problem-solving with thorough research.",
        ),
        "quick": CategoryConfig(
            model="anthropic/claude-haiku-4-5",
            description="Trivial tasks: single file changes, typo fixes.",
        ),
        "unspecified-low": CategoryConfig(
            model="anthropic/claude-sonnet-4-5",
            description="Tasks that fit no other category, low effort.",
        ),
        "unspecified-high": CategoryConfig(
            model="anthropic/claude-opus-4-6",
            variant="max",
            description="Tasks that fit no other category, high effort.",
        ),
        "writing": CategoryConfig(
            model="google/gemini-3-flash",
            description="Documentation, prose, technical writing.",
        ),
    },
    category_requirements={
        "visual-engineering": _chain(
            (_GOOGLE, "gemini-3-pro", None),
            (_MAJOR, "claude-opus-4-6", "max"),
            (["zai-coding-plan"], "glm-4.7", None),
        ),
        "ultrabrain": _chain(
            (_OPENAI, "gpt-5.3-codex", "xhigh"),
            (_GOOGLE, "gemini-3-pro", "high"),
            (_MAJOR, "claude-opus-4-6", "max"),
        ),
        "deep": ModelRequirementConfig(
            fallback_chain=_chain(
                (_OPENAI, "gpt-5.3-codex", "medium"),
                (_MAJOR, "claude-opus-4-6", "max"),
                (_GOOGLE, "gemini-3-pro", "high"),
            ).fallback_chain,
            requires_model="gpt-5.3-codex",
        ),
        "quick": _chain(
            (_MAJOR, "claude-haiku-4-5", None),
            (_GOOGLE, "gemini-3-flash", None),
            (["opencode"], "gpt-5-nano", None),
        ),
        "unspecified-low": _chain(
            (_MAJOR, "claude-sonnet-4-5", None),
            (_OPENAI, "gpt-5.3-codex", "medium"),
            (_GOOGLE, "gemini-3-flash", None),
        ),
        "unspecified-high": _chain(
            (_MAJOR, "claude-opus-4-6", "max"),
            (_OPENAI, "gpt-5.2", "high"),
            (_GOOGLE, "gemini-3-pro", None),
        ),
        "writing": _chain(
            (_GOOGLE, "gemini-3-flash", None),
            (_MAJOR, "claude-sonnet-4-5", None),
            (["zai-coding-plan"], "glm-4.7", None),
        ),
    },
    agent_requirements={
        "oracle": _chain(
            (_OPENAI, "gpt-5.2", "high"),
            (_GOOGLE, "gemini-3-pro", "high"),
            (_MAJOR, "claude-opus-4-6", "max"),
        ),
        "explore": _chain(
            (["github-copilot"], "grok-code-fast-1", None),
            (["anthropic", "opencode"], "claude-haiku-4-5", None),
            (["opencode"], "gpt-5-nano", None),
        ),
        "librarian": _chain(
            (["zai-coding-plan"], "glm-4.7", None),
            (["opencode"], "glm-4.7-free", None),
            (_MAJOR, "claude-sonnet-4-5", None),
        ),
    },
    tool_policy=ToolPolicyConfig(
        denied_tools={
            "explore": ["write", "edit", "delegate"],
            "librarian": ["write", "edit", "delegate"],
            "oracle": ["write", "edit", "delegate"],
        },
    ),
)
