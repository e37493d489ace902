"""Domain models: model candidates, resolution values, tasks, session messages. Pure data, no I/O."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import InvalidTransitionError


# ---------------------------------------------------------------------------
# Models and availability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelCandidate:
    """A concrete ``provider/model`` pair, optionally with a variant (e.g. ``max``, ``high``)."""
    provider: str
    model: str
    variant: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.provider}/{self.model}"

    def with_variant(self, variant: Optional[str]) -> "ModelCandidate":
        return replace(self, variant=variant)


def parse_model_string(value: Optional[str]) -> Optional[ModelCandidate]:
    """Parse ``provider/model`` into a ``ModelCandidate``.

    Only the first ``/`` separates the provider; the model id may itself
    contain slashes (``openrouter/meta/llama-3``).  Returns ``None`` for
    blank input, input without a slash, or an empty provider/model half.
    """
    text = (value or "").strip()
    if "/" not in text:
        return None
    provider, _, model = text.partition("/")
    provider, model = provider.strip(), model.strip()
    if not provider or not model:
        return None
    return ModelCandidate(provider=provider, model=model)


def normalize_model_ref(value: Any) -> Optional[ModelCandidate]:
    """Normalise the shapes a backend uses for "a model" into one ``ModelCandidate``.

    Accepted shapes: ``"provider/model"``, ``{"providerID": ..., "modelID": ...}``,
    ``{"provider": ..., "id": ...}`` (either may carry ``variant``), or an
    existing ``ModelCandidate``.  Anything else yields ``None``.
    """
    if value is None:
        return None
    if isinstance(value, ModelCandidate):
        return value
    if isinstance(value, str):
        return parse_model_string(value)
    if isinstance(value, Mapping):
        provider = value.get("providerID") or value.get("provider")
        model = value.get("modelID") or value.get("id") or value.get("model")
        if isinstance(provider, str) and isinstance(model, str) and provider and model:
            variant = value.get("variant")
            return ModelCandidate(provider=provider, model=model, variant=variant or None)
    return None


@dataclass(frozen=True)
class FallbackEntry:
    """Try ``model`` on each of ``providers`` in order."""
    providers: Tuple[str, ...]
    model: str
    variant: Optional[str] = None


@dataclass(frozen=True)
class Availability:
    """What is known about which models can actually run right now.

    Tri-state by construction:

    - ``models is None``  -- availability has not been checked (cold cache).
    - ``models == frozenset()`` -- checked, and nothing is available.
    - otherwise -- the set of ``provider/model`` strings known to be available.

    ``connected_providers`` is separate: ``None`` means there is no provider
    cache at all, a tuple (possibly empty) is the cached list.
    """
    models: Optional[FrozenSet[str]] = None
    connected_providers: Optional[Tuple[str, ...]] = None

    @classmethod
    def unknown(cls, connected_providers: Optional[Iterable[str]] = None) -> "Availability":
        connected = tuple(connected_providers) if connected_providers is not None else None
        return cls(models=None, connected_providers=connected)

    @classmethod
    def known(
        cls,
        models: Iterable[str],
        connected_providers: Optional[Iterable[str]] = None,
    ) -> "Availability":
        connected = tuple(connected_providers) if connected_providers is not None else None
        return cls(models=frozenset(models), connected_providers=connected)

    @property
    def is_known(self) -> bool:
        return self.models is not None


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class Provenance(str, Enum):
    """Which resolution step produced the chosen model."""

    OVERRIDE = "override"
    CATEGORY_DEFAULT = "category-default"
    PROVIDER_FALLBACK = "provider-fallback"
    SYSTEM_DEFAULT = "system-default"


@dataclass(frozen=True)
class ResolutionRequest:
    """Intent, constraints and policy for one model resolution."""
    ui_selected_model: Optional[str] = None
    user_model: Optional[str] = None
    category_default_model: Optional[str] = None
    availability: Availability = field(default_factory=Availability.unknown)
    fallback_chain: Tuple[FallbackEntry, ...] = ()
    system_default_model: Optional[str] = None


@dataclass(frozen=True)
class ResolutionResult:
    model: str
    provenance: Provenance
    variant: Optional[str] = None
    attempted: Tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Delegated tasks
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.CANCELLED)


_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.RUNNING: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.ERROR: 2,
    TaskStatus.CANCELLED: 2,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DelegatedTask:
    """One unit of delegated work.  ``session_id`` may be ``None`` right after a background launch."""
    id: str
    description: str
    agent: str
    session_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime = field(default_factory=_utcnow)
    parent_session_id: Optional[str] = None
    model: Optional[ModelCandidate] = None
    category: Optional[str] = None
    error: Optional[str] = None

    def transition(self, new_status: TaskStatus) -> None:
        """Move to ``new_status``; only forward moves are allowed.

        Re-asserting the current status is a no-op.  Moving between two
        terminal states, or from a terminal state back to pending/running,
        raises ``InvalidTransitionError``.
        """
        if new_status == self.status:
            return
        if _STATUS_RANK[new_status] <= _STATUS_RANK[self.status]:
            raise InvalidTransitionError(
                f"Task {self.id}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status


# ---------------------------------------------------------------------------
# Session messages
# ---------------------------------------------------------------------------


class SessionState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"


@dataclass(frozen=True)
class MessagePart:
    """One content part of a message: ``text``, ``reasoning``, ``tool-call``, ..."""
    type: str
    text: str = ""


@dataclass(frozen=True)
class SessionMessage:
    """A message in a session's history.

    ``id`` values sort in creation order (the backend issues monotonically
    increasing ids), which the completion predicate relies on.
    """
    id: Optional[str]
    role: str
    created_at: Optional[float] = None
    finish_reason: Optional[str] = None
    parts: Tuple[MessagePart, ...] = ()
    agent: Optional[str] = None
    model: Optional[ModelCandidate] = None
    variant: Optional[str] = None

    def text_content(self) -> str:
        """Join non-empty text/reasoning parts with newlines, in order."""
        texts = [p.text for p in self.parts if p.type in ("text", "reasoning") and p.text]
        return "\n".join(texts)

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "SessionMessage":
        """Build from the backend wire shape ``{"info": {...}, "parts": [...]}``.

        A flat dict (fields at top level, no ``info`` key) is accepted too.
        The model may arrive as ``info.model`` (string or mapping) or as
        separate ``info.providerID`` / ``info.modelID`` fields.
        """
        info: Mapping[str, Any] = raw.get("info") if isinstance(raw.get("info"), Mapping) else raw
        time_info = info.get("time") if isinstance(info.get("time"), Mapping) else {}
        created = time_info.get("created", info.get("created_at"))
        model = normalize_model_ref(info.get("model"))
        if model is None and info.get("providerID") and info.get("modelID"):
            model = ModelCandidate(provider=info["providerID"], model=info["modelID"])
        parts: List[MessagePart] = []
        for p in raw.get("parts") or []:
            if isinstance(p, Mapping):
                parts.append(MessagePart(type=str(p.get("type") or ""), text=str(p.get("text") or "")))
        return cls(
            id=info.get("id") or None,
            role=str(info.get("role") or ""),
            created_at=float(created) if isinstance(created, (int, float)) else None,
            finish_reason=info.get("finish") or info.get("finish_reason") or None,
            parts=tuple(parts),
            agent=info.get("agent") or None,
            model=model,
            variant=info.get("variant") or (model.variant if model else None),
        )


def messages_from_wire(raw: Any) -> List[SessionMessage]:
    """Normalise a message-list response (bare list or ``{"data": [...]}``)."""
    data = raw.get("data") if isinstance(raw, Mapping) else raw
    if not isinstance(data, list):
        return []
    return [SessionMessage.from_wire(m) for m in data if isinstance(m, Mapping)]


def status_map_from_wire(raw: Any) -> Dict[str, SessionState]:
    """Normalise a status response into ``{session_id: SessionState}``.

    Values may be ``{"type": "idle"}`` objects or bare strings; unknown
    state names are treated as busy.
    """
    data = raw.get("data", raw) if isinstance(raw, Mapping) else {}
    if not isinstance(data, Mapping):
        return {}
    result: Dict[str, SessionState] = {}
    for session_id, value in data.items():
        name = value.get("type") if isinstance(value, Mapping) else value
        try:
            result[str(session_id)] = SessionState(str(name))
        except ValueError:
            result[str(session_id)] = SessionState.BUSY
    return result
