"""Extension points around a dispatch.

Plain optional callables, called at fixed points.  A hook that raises is
logged and ignored: hooks observe dispatch, they never change its outcome.
Async hooks (coroutine functions) are awaited for ``pre_dispatch``,
``post_dispatch`` and ``on_session_created``; ``on_poll_tick`` runs inside
the poll loop and must be synchronous.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agent_dispatch.domain import SessionState

logger = logging.getLogger(__name__)


@dataclass
class DispatchHooks:
    pre_dispatch: Optional[Callable[..., Any]] = None
    """Called with the ``DispatchRequest`` before anything is resolved."""
    post_dispatch: Optional[Callable[..., Any]] = None
    """Called with ``(request, report)`` after every dispatch, including failures."""
    on_poll_tick: Optional[Callable[[str, int, Optional[SessionState]], None]] = None
    """Called with ``(session_id, poll_count, state)`` on every poll iteration."""
    on_session_created: Optional[Callable[..., Any]] = None
    """Called with ``(session_id, parent_session_id, title)`` after a sync session is created."""

    async def _call(self, name: str, *args: Any) -> None:
        hook = getattr(self, name)
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Dispatch hook %s failed", name)

    async def run_pre_dispatch(self, request: Any) -> None:
        await self._call("pre_dispatch", request)

    async def run_post_dispatch(self, request: Any, report: Any) -> None:
        await self._call("post_dispatch", request, report)

    async def run_session_created(self, session_id: str, parent_session_id: Optional[str], title: str) -> None:
        await self._call("on_session_created", session_id, parent_session_id, title)

    def poll_tick(self, session_id: str, poll_count: int, state: Optional[SessionState]) -> None:
        if self.on_poll_tick is None:
            return
        try:
            self.on_poll_tick(session_id, poll_count, state)
        except Exception:
            logger.exception("Dispatch hook on_poll_tick failed")
