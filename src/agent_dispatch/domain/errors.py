"""Domain and application errors."""

from __future__ import annotations

from typing import Any, Optional


class DispatchError(Exception):
    """Base for dispatch errors."""
    pass


class ResolutionError(DispatchError):
    """No usable agent/model could be resolved for the task (a configuration problem)."""
    pass


class SessionCreateError(DispatchError):
    """The backend refused to open a child session."""
    pass


class PromptError(DispatchError):
    """Sending the task prompt to a session failed."""
    pass


class ResultFetchError(DispatchError):
    """The session finished but no usable assistant output could be extracted."""
    pass


class InvalidTransitionError(DispatchError):
    """A task status change would move backwards (e.g. completed -> running)."""
    pass


class BackendError(DispatchError):
    """Transport or server error from the session backend.

    ``body`` keeps the decoded error payload (when the server sent JSON) so
    callers can inspect structured fields such as model suggestions.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TaskAbortedError(DispatchError):
    """The caller's cancellation signal fired while a dispatch step was in flight."""
    pass
