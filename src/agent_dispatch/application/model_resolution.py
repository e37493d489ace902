"""Model resolution pipeline.

Pure decision function: given intent (UI selection, user override, category
default), availability constraints and policy (fallback chain, system
default), pick one ``provider/model`` and record which step produced it.

Priority chain, each step short-circuits on success::

    UI selection      -> override
    user override     -> override
    category default  -> category-default   (if available, or optimistic on a cold cache)
    fallback chain    -> provider-fallback  (per provider, then cross-provider)
    system default    -> system-default
    nothing           -> None  ("no opinion": the host's own default applies)
"""

from __future__ import annotations

import logging
from typing import List, Optional

from agent_dispatch.domain import (
    Availability,
    FallbackEntry,
    Provenance,
    ResolutionRequest,
    ResolutionResult,
)
from agent_dispatch.application.model_matching import fuzzy_match_model

logger = logging.getLogger(__name__)


def _clean(value: Optional[str]) -> Optional[str]:
    trimmed = (value or "").strip()
    return trimmed or None


def _resolve_category_default(model: str, availability: Availability) -> Optional[str]:
    provider = model.split("/", 1)[0] if "/" in model else None

    if availability.is_known:
        match = fuzzy_match_model(model, availability.models or (), [provider] if provider else None)
        if match:
            logger.info("Model resolved via category default (matched): %s -> %s", model, match)
        return match

    if availability.connected_providers is None:
        # Nothing has ever been cached: assume the configured default works
        # rather than failing every task on first run.
        logger.info("Model resolved via category default (no cache, first run): %s", model)
        return model

    if provider and provider in availability.connected_providers:
        logger.info("Model resolved via category default (connected provider): %s", model)
        return model
    return None


def _resolve_fallback_chain(
    chain: tuple,
    availability: Availability,
) -> Optional[ResolutionResult]:
    entry: FallbackEntry

    if not availability.is_known:
        connected = availability.connected_providers
        if connected is None:
            logger.info("Fallback chain skipped: availability and provider cache both unknown")
            return None
        connected_set = set(connected)
        for entry in chain:
            for provider in entry.providers:
                if provider in connected_set:
                    model = f"{provider}/{entry.model}"
                    logger.info("Model resolved via fallback chain (connected provider): %s", model)
                    return ResolutionResult(
                        model=model,
                        provenance=Provenance.PROVIDER_FALLBACK,
                        variant=entry.variant,
                    )
        logger.info("No connected provider found in fallback chain")
        return None

    models = availability.models or frozenset()
    for entry in chain:
        for provider in entry.providers:
            match = fuzzy_match_model(f"{provider}/{entry.model}", models, [provider])
            if match:
                logger.info(
                    "Model resolved via fallback chain (availability confirmed): %s/%s -> %s",
                    provider, entry.model, match,
                )
                return ResolutionResult(
                    model=match,
                    provenance=Provenance.PROVIDER_FALLBACK,
                    variant=entry.variant,
                )

        cross = fuzzy_match_model(entry.model, models)
        if cross:
            logger.info("Model resolved via fallback chain (cross-provider match): %s -> %s", entry.model, cross)
            return ResolutionResult(
                model=cross,
                provenance=Provenance.PROVIDER_FALLBACK,
                variant=entry.variant,
            )
    logger.info("No available model found in fallback chain")
    return None


def resolve_model(request: ResolutionRequest) -> Optional[ResolutionResult]:
    """Run the priority chain for ``request``.

    Returns ``None`` when nothing resolves and no system default is
    configured; that is a deliberate "no opinion" outcome, not an error.
    """
    attempted: List[str] = []

    ui_model = _clean(request.ui_selected_model)
    if ui_model:
        logger.info("Model resolved via UI selection: %s", ui_model)
        return ResolutionResult(model=ui_model, provenance=Provenance.OVERRIDE)

    user_model = _clean(request.user_model)
    if user_model:
        logger.info("Model resolved via config override: %s", user_model)
        return ResolutionResult(model=user_model, provenance=Provenance.OVERRIDE)

    category_default = _clean(request.category_default_model)
    if category_default:
        attempted.append(category_default)
        model = _resolve_category_default(category_default, request.availability)
        if model:
            return ResolutionResult(
                model=model,
                provenance=Provenance.CATEGORY_DEFAULT,
                attempted=tuple(attempted),
            )
        logger.info("Category default %s not available; trying fallback chain", category_default)

    if request.fallback_chain:
        attempted.extend(f"{'|'.join(e.providers)}/{e.model}" for e in request.fallback_chain)
        result = _resolve_fallback_chain(request.fallback_chain, request.availability)
        if result:
            return ResolutionResult(
                model=result.model,
                provenance=result.provenance,
                variant=result.variant,
                attempted=tuple(attempted),
            )

    system_default = _clean(request.system_default_model)
    if system_default is None:
        logger.info("No model resolved and no system default configured")
        return None

    logger.info("Model resolved via system default: %s", system_default)
    return ResolutionResult(
        model=system_default,
        provenance=Provenance.SYSTEM_DEFAULT,
        attempted=tuple(attempted),
    )
