"""Turn a category or agent name into a concrete execution target.

Category tasks always run on ``config.default_agent``; the category only picks
the model.  Agent tasks run on the named agent, with the model taken from a
user override or that agent's fallback chain (or left to the host when
neither exists).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from agent_dispatch.config import CategoryConfig, DispatchConfig, ModelRequirementConfig
from agent_dispatch.domain import (
    Availability,
    ModelCandidate,
    Provenance,
    ResolutionError,
    ResolutionRequest,
    parse_model_string,
)
from agent_dispatch.application.model_matching import is_model_available
from agent_dispatch.application.model_resolution import resolve_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedExecution:
    """Agent + model a task will run on.

    ``model is None`` means "no opinion": the session server's own default
    applies.  ``actual_model`` is the resolved ``provider/model`` string used
    for reporting and the unstable-model check.
    """
    agent: str
    model: Optional[ModelCandidate] = None
    actual_model: Optional[str] = None
    provenance: Optional[Provenance] = None
    is_unstable: bool = False
    prompt_append: str = ""
    category: Optional[str] = None


def is_plan_family(agent: Optional[str], plan_family: Sequence[str]) -> bool:
    if not agent:
        return False
    lowered = agent.lower()
    return any(name.lower() in lowered for name in plan_family)


def is_unstable_model(
    model: Optional[str],
    category_cfg: Optional[CategoryConfig],
    markers: Sequence[str],
) -> bool:
    """Explicit category flag, or a marker substring in the model name (case-insensitive)."""
    if category_cfg is not None and category_cfg.is_unstable_agent:
        return True
    if not model:
        return False
    lowered = model.lower()
    return any(marker.lower() in lowered for marker in markers if marker)


def _agent_override(config: DispatchConfig, agent: str):
    wanted = agent.lower()
    for key, override in config.agents.items():
        if key.lower() == wanted:
            return override
    return None


def _check_requires_model(
    category: str,
    requirement: Optional[ModelRequirementConfig],
    availability: Availability,
    config: DispatchConfig,
) -> None:
    if requirement is None or not requirement.requires_model or not availability.is_known:
        return
    if is_model_available(requirement.requires_model, availability.models or ()):
        return
    raise ResolutionError(
        f'Category "{category}" requires model "{requirement.requires_model}" which is not available.\n\n'
        "To use this category:\n"
        f"1. Connect a provider with this model: {requirement.requires_model}\n"
        "2. Or configure an alternative model for this category\n\n"
        f"Available categories: {', '.join(config.categories)}"
    )


def resolve_category_execution(
    category: str,
    config: DispatchConfig,
    availability: Availability,
    inherited_model: Optional[str] = None,
    ui_model: Optional[str] = None,
) -> ResolvedExecution:
    """Resolve the model for a category task.

    Raises:
        ResolutionError: unknown category, unsatisfiable ``requires_model``,
            a resolved model that is not ``provider/model``, or no model at all.
    """
    cat_cfg = config.categories.get(category)
    if cat_cfg is None:
        raise ResolutionError(
            f'Unknown category: "{category}". Available: {", ".join(config.categories)}'
        )

    requirement = config.category_requirements.get(category)
    # An explicit categories.<name>.model beats the default agent's override,
    # which only acts as a global fallback.
    user_cat = config.user_categories.get(category)
    explicit_model = user_cat.model if user_cat else None
    override = _agent_override(config, config.default_agent)
    override_model = override.model if override else None
    user_model = explicit_model or override_model

    if not (ui_model or user_model):
        _check_requires_model(category, requirement, availability, config)

    result = resolve_model(
        ResolutionRequest(
            ui_selected_model=ui_model,
            user_model=user_model,
            category_default_model=cat_cfg.model or inherited_model,
            availability=availability,
            fallback_chain=requirement.entries() if requirement else (),
            system_default_model=config.system_default_model,
        )
    )
    if result is None:
        raise ResolutionError(
            f'Model not configured for category "{category}".\n\n'
            "Configure in one of:\n"
            "1. Set system_default_model in the dispatch config\n"
            f"2. Set categories.{category}.model in the dispatch config\n"
            "3. Connect a provider with available models\n\n"
            f"Current category: {category}\n"
            f"Available categories: {', '.join(config.categories)}"
        )

    parsed = parse_model_string(result.model)
    if parsed is None:
        raise ResolutionError(
            f'Invalid model format "{result.model}". '
            'Expected "provider/model" format (e.g., "anthropic/claude-sonnet-4-5").'
        )

    variant = (
        (user_cat.variant if user_cat else None)
        or (override.variant if override_model and not explicit_model else None)
        or result.variant
        or (requirement.variant if requirement else None)
        or cat_cfg.variant
    )
    unstable = is_unstable_model(result.model, cat_cfg, config.unstable_model_markers)
    logger.debug(
        "Category %s -> %s (variant=%s, provenance=%s, unstable=%s)",
        category, result.model, variant, result.provenance.value, unstable,
    )
    return ResolvedExecution(
        agent=config.default_agent,
        model=parsed.with_variant(variant),
        actual_model=result.model,
        provenance=result.provenance,
        is_unstable=unstable,
        prompt_append=cat_cfg.prompt_append,
        category=category,
    )


def resolve_agent_execution(
    agent_name: str,
    config: DispatchConfig,
    availability: Availability,
    parent_agent: Optional[str] = None,
) -> ResolvedExecution:
    """Resolve the model for a named agent.

    Override model > agent fallback chain.  No system default applies here:
    an agent with neither keeps the server's own model for that agent.
    """
    name = (agent_name or "").strip()
    if not name:
        raise ResolutionError("Agent name cannot be empty.")
    if name.lower() == config.default_agent.lower():
        raise ResolutionError(
            f'Cannot use agent "{config.default_agent}" directly. Use a category instead '
            f"(available: {', '.join(config.categories)})."
        )
    plan_family = config.tool_policy.plan_family
    if is_plan_family(name, plan_family) and is_plan_family(parent_agent, plan_family):
        raise ResolutionError(
            "A plan-family agent cannot delegate to another plan-family agent. "
            "Create the work plan directly."
        )

    override = _agent_override(config, name)
    requirement = config.agent_requirements.get(name.lower())
    if not (override and override.model) and requirement is None:
        logger.debug("Agent %s has no model override or requirement; using server default", name)
        return ResolvedExecution(agent=name)

    result = resolve_model(
        ResolutionRequest(
            user_model=override.model if override else None,
            availability=availability,
            fallback_chain=requirement.entries() if requirement else (),
        )
    )
    if result is None:
        logger.info("No model resolved for agent %s; using server default", name)
        return ResolvedExecution(agent=name)

    parsed = parse_model_string(result.model)
    if parsed is None:
        raise ResolutionError(
            f'Invalid model format "{result.model}" for agent "{name}". Expected "provider/model" format.'
        )
    variant = (
        (override.variant if override else None)
        or result.variant
        or (requirement.variant if requirement else None)
    )
    return ResolvedExecution(
        agent=name,
        model=parsed.with_variant(variant),
        actual_model=result.model,
        provenance=result.provenance,
    )
