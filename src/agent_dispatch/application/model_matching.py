"""Fuzzy matching of a desired model name against the set of available ``provider/model`` strings.

Matching is a case-insensitive substring test after normalisation.  When
several candidates contain the target the tie-break is:

1. exact match of the full normalised string;
2. exact match of the model-id part (after the first ``/``), shortest
   full string first, so ``openai/gpt-5.2`` wins over a longer
   ``some-proxy/gpt-5.2`` and a canonical id over a ``-preview`` variant;
3. otherwise the shortest substring match (least suffixed).

Example::

    available = {"openai/gpt-5.2", "openai/gpt-5.3-codex", "anthropic/claude-opus-4-6"}
    fuzzy_match_model("gpt-5.2", available)                 # "openai/gpt-5.2"
    fuzzy_match_model("claude", available, ["openai"])      # None (provider filter)
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional, Sequence

from agent_dispatch.domain import Availability

logger = logging.getLogger(__name__)

# "claude-opus-4-5" and "claude-opus-4.5" name the same model; so do
# "x-y-4-5" and "x-y-4.5".  Only a dash-separated pair of single digits that
# directly follows an alphabetic word is collapsed, so date suffixes and
# ids like "gpt-5-nano" are left alone.
_VERSION_DASH = re.compile(r"(?<=[a-z])-(\d)-(\d)(?!\d)")


def normalize_model_name(name: str) -> str:
    return _VERSION_DASH.sub(r"-\1.\2", name.lower())


def _model_id(full: str) -> str:
    return full.split("/", 1)[1] if "/" in full else full


def _shortest(values: Sequence[str]) -> str:
    # min() keeps the first of equal-length values; sort first so the
    # result does not depend on set iteration order.
    return min(sorted(values), key=len)


def fuzzy_match_model(
    target: str,
    available: Iterable[str],
    providers: Optional[Sequence[str]] = None,
) -> Optional[str]:
    """Return the best available ``provider/model`` for ``target``, or ``None``.

    ``providers`` restricts candidates to those whose provider prefix is in
    the list.  Pure and deterministic for a given snapshot of ``available``.
    """
    candidates = sorted(set(available))
    if not candidates:
        logger.debug("fuzzy_match_model: empty available set (target=%s)", target)
        return None

    if providers:
        provider_set = set(providers)
        candidates = [m for m in candidates if m.split("/", 1)[0] in provider_set]
        if not candidates:
            logger.debug("fuzzy_match_model: no candidates for providers=%s", list(providers))
            return None

    wanted = normalize_model_name(target.strip())
    if not wanted:
        return None
    matches = [m for m in candidates if wanted in normalize_model_name(m)]
    if not matches:
        return None

    for m in matches:
        if normalize_model_name(m) == wanted:
            logger.debug("fuzzy_match_model: exact match %s", m)
            return m

    id_matches = [m for m in matches if normalize_model_name(_model_id(m)) == wanted]
    if id_matches:
        result = _shortest(id_matches)
        logger.debug("fuzzy_match_model: model-id match %s (of %d)", result, len(id_matches))
        return result

    result = _shortest(matches)
    logger.debug("fuzzy_match_model: shortest substring match %s (of %d)", result, len(matches))
    return result


def is_model_available(target: str, available: Iterable[str]) -> bool:
    """True when ``target`` fuzzy-matches anything in ``available`` (no provider filter)."""
    return fuzzy_match_model(target, available) is not None


def is_any_provider_connected(providers: Sequence[str], availability: Availability) -> bool:
    """True when any of ``providers`` has a known model or appears in the provider cache."""
    wanted = set(providers)
    if availability.models:
        if any(m.split("/", 1)[0] in wanted for m in availability.models):
            return True
    if availability.connected_providers is not None:
        return any(p in wanted for p in availability.connected_providers)
    return False
