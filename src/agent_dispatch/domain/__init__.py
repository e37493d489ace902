"""Domain layer: entities and value objects. No I/O."""

from .models import (
    Availability,
    DelegatedTask,
    FallbackEntry,
    MessagePart,
    ModelCandidate,
    Provenance,
    ResolutionRequest,
    ResolutionResult,
    SessionMessage,
    SessionState,
    TaskStatus,
    messages_from_wire,
    normalize_model_ref,
    parse_model_string,
    status_map_from_wire,
)
from .errors import (
    BackendError,
    DispatchError,
    InvalidTransitionError,
    PromptError,
    ResolutionError,
    ResultFetchError,
    SessionCreateError,
    TaskAbortedError,
)

__all__ = [
    "Availability",
    "DelegatedTask",
    "FallbackEntry",
    "MessagePart",
    "ModelCandidate",
    "Provenance",
    "ResolutionRequest",
    "ResolutionResult",
    "SessionMessage",
    "SessionState",
    "TaskStatus",
    "messages_from_wire",
    "normalize_model_ref",
    "parse_model_string",
    "status_map_from_wire",
    "BackendError",
    "DispatchError",
    "InvalidTransitionError",
    "PromptError",
    "ResolutionError",
    "ResultFetchError",
    "SessionCreateError",
    "TaskAbortedError",
]
