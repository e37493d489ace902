"""Ports (abstract interfaces) used by the application layer.

Each port is a ``Protocol`` so the application depends only on the *shape* of the
collaborator, not on a concrete implementation.  Infrastructure adapters must satisfy
these shapes; the application never imports from infrastructure.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol

from agent_dispatch.domain import (
    Availability,
    DelegatedTask,
    ModelCandidate,
    SessionMessage,
    SessionState,
)


class SessionBackend(Protocol):
    """Session/messaging backend: exactly the four operations the engine needs.

    Implementations raise ``BackendError`` (or any exception) on failure; the
    engine decides per call site whether that is fatal or retried.
    """

    async def create_session(self, parent_id: Optional[str], title: str, directory: str) -> str:
        """Open a child session and return its id."""
        ...

    async def send_prompt(
        self,
        session_id: str,
        *,
        agent: Optional[str],
        model: Optional[ModelCandidate],
        variant: Optional[str],
        tools: Dict[str, bool],
        text: str,
        system: Optional[str] = None,
    ) -> None:
        """Queue ``text`` as a new user turn; returns once the server accepted it."""
        ...

    async def list_messages(self, session_id: str) -> List[SessionMessage]: ...

    async def session_status(self) -> Dict[str, SessionState]:
        """Status of every session the server knows about; idle sessions may be absent."""
        ...


class BackgroundManager(Protocol):
    """Launches and tracks fire-and-forget tasks."""

    async def launch(
        self,
        *,
        description: str,
        prompt: str,
        agent: str,
        parent_session_id: Optional[str],
        model: Optional[ModelCandidate] = None,
        system: Optional[str] = None,
        category: Optional[str] = None,
    ) -> DelegatedTask:
        """Start the task and return immediately; ``session_id`` may still be ``None``."""
        ...

    async def resume(
        self,
        *,
        session_id: str,
        prompt: str,
        parent_session_id: Optional[str],
        description: str = "",
    ) -> DelegatedTask: ...

    def get_task(self, task_id: str) -> Optional[DelegatedTask]: ...


class AvailabilitySource(Protocol):
    """Snapshot of which models can run, as an explicit tri-state ``Availability``."""

    async def get_availability(self) -> Availability: ...
