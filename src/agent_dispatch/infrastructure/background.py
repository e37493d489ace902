"""In-process background manager: runs delegated tasks as asyncio tasks.

``launch`` returns at once with a pending ``DelegatedTask``; the session is
created inside the spawned coroutine, so ``session_id`` appears a little
later (callers poll ``get_task``).  Results stay available through
``get_result`` after the task finishes, until ``timing.finished_task_ttl_s``
has passed; finished tasks older than that are pruned on the next launch.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from typing import Dict, Optional

from agent_dispatch.config import DispatchConfig
from agent_dispatch.domain import DelegatedTask, ModelCandidate, TaskAbortedError, TaskStatus
from agent_dispatch.application.completion import PollStatus, poll_session
from agent_dispatch.application.ports import SessionBackend
from agent_dispatch.application.result_fetcher import fetch_result
from agent_dispatch.application.session_ops import (
    compute_tool_permissions,
    create_session,
    resolve_session_identity,
    send_prompt,
)

logger = logging.getLogger(__name__)


class InProcessBackgroundManager:
    """``BackgroundManager`` that drives each task with a coroutine on the running loop."""

    def __init__(self, backend: SessionBackend, config: DispatchConfig, directory: str = ""):
        self._backend = backend
        self._config = config
        self._directory = directory or config.backend.directory
        self._tasks: Dict[str, DelegatedTask] = {}
        self._runners: Dict[str, asyncio.Task] = {}
        self._aborts: Dict[str, asyncio.Event] = {}
        self._results: Dict[str, str] = {}
        self._finished_at: Dict[str, float] = {}

    def _start(self, task: DelegatedTask, coro_factory) -> None:
        self._prune()
        abort = asyncio.Event()
        self._tasks[task.id] = task
        self._aborts[task.id] = abort
        runner = asyncio.ensure_future(coro_factory(task, abort))
        runner.add_done_callback(lambda _f, task_id=task.id: self._on_runner_done(task_id))
        self._runners[task.id] = runner

    def _on_runner_done(self, task_id: str) -> None:
        self._runners.pop(task_id, None)
        self._finished_at[task_id] = time.monotonic()

    def _prune(self) -> None:
        cutoff = time.monotonic() - self._config.timing.finished_task_ttl_s
        for task_id, finished in list(self._finished_at.items()):
            if finished <= cutoff:
                logger.debug("Pruning finished background task %s", task_id)
                self._forget(task_id)

    def _forget(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)
        self._aborts.pop(task_id, None)
        self._results.pop(task_id, None)
        self._finished_at.pop(task_id, None)

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
        task = DelegatedTask(
            id=f"bg_{uuid.uuid4().hex[:12]}",
            description=description,
            agent=agent,
            parent_session_id=parent_session_id,
            model=model,
            category=category,
        )

        async def _run(t: DelegatedTask, abort: asyncio.Event) -> None:
            session_id = await create_session(self._backend, parent_session_id, description, agent, self._directory)
            t.session_id = session_id
            t.transition(TaskStatus.RUNNING)
            t.model = await send_prompt(
                self._backend,
                session_id,
                agent=agent,
                model=model,
                tools=compute_tool_permissions(agent, self._config.tool_policy),
                text=prompt,
                system=system,
                timeout_s=self._config.timing.prompt_timeout_s,
                abort=abort,
            )
            await self._finish(t, abort, anchor_count=None)

        self._start(task, self._guarded(_run))
        logger.info("Launched background task %s (%s, agent=%s)", task.id, description, agent)
        return replace(task)

    async def resume(
        self,
        *,
        session_id: str,
        prompt: str,
        parent_session_id: Optional[str],
        description: str = "",
    ) -> DelegatedTask:
        task = DelegatedTask(
            id=f"bg_{uuid.uuid4().hex[:12]}",
            description=description or f"Continue {session_id}",
            agent="continue",
            session_id=session_id,
            parent_session_id=parent_session_id,
        )

        async def _run(t: DelegatedTask, abort: asyncio.Event) -> None:
            identity = await resolve_session_identity(self._backend, session_id)
            if identity.agent:
                t.agent = identity.agent
            t.transition(TaskStatus.RUNNING)
            await send_prompt(
                self._backend,
                session_id,
                agent=identity.agent,
                model=identity.model,
                tools=compute_tool_permissions(identity.agent, self._config.tool_policy, continuation=True),
                text=prompt,
                timeout_s=self._config.timing.prompt_timeout_s,
                abort=abort,
            )
            await self._finish(t, abort, anchor_count=identity.anchor_count)

        self._start(task, self._guarded(_run))
        logger.info("Resumed session %s as background task %s", session_id, task.id)
        return replace(task)

    async def _finish(self, task: DelegatedTask, abort: asyncio.Event, anchor_count: Optional[int]) -> None:
        outcome = await poll_session(self._backend, task.session_id, self._config.timing, abort=abort, anchor_count=anchor_count)
        if outcome.status is PollStatus.ABORTED:
            task.transition(TaskStatus.CANCELLED)
            return
        if outcome.status is PollStatus.TIMED_OUT:
            task.error = f"Poll timeout reached after {self._config.timing.max_poll_time_s:g}s"
            task.transition(TaskStatus.ERROR)
            return
        self._results[task.id] = await fetch_result(self._backend, task.session_id, anchor_count)
        task.transition(TaskStatus.COMPLETED)
        logger.info("Background task %s completed", task.id)

    def _guarded(self, run):
        async def _wrapper(task: DelegatedTask, abort: asyncio.Event) -> None:
            try:
                await run(task, abort)
            except asyncio.CancelledError:
                if not task.status.is_terminal:
                    task.transition(TaskStatus.CANCELLED)
                raise
            except TaskAbortedError:
                if not task.status.is_terminal:
                    task.transition(TaskStatus.CANCELLED)
            except Exception as exc:
                logger.warning("Background task %s failed: %s", task.id, exc)
                task.error = str(exc) or type(exc).__name__
                if not task.status.is_terminal:
                    task.transition(TaskStatus.ERROR)
        return _wrapper

    def get_task(self, task_id: str) -> Optional[DelegatedTask]:
        task = self._tasks.get(task_id)
        return replace(task) if task is not None else None

    def get_result(self, task_id: str) -> Optional[str]:
        return self._results.get(task_id)

    def remove(self, task_id: str) -> bool:
        """Forget a finished task and its result; False if unknown or still running."""
        task = self._tasks.get(task_id)
        if task is None or task_id in self._runners:
            return False
        self._forget(task_id)
        return True

    async def cancel(self, task_id: str) -> bool:
        """Signal the task to stop and wait for it; False if unknown or already finished."""
        task = self._tasks.get(task_id)
        if task is None or task.status.is_terminal:
            return False
        self._aborts[task_id].set()
        runner = self._runners.get(task_id)
        if runner is not None:
            try:
                await asyncio.wait_for(asyncio.shield(runner), timeout=self._config.timing.poll_interval_s * 4)
            except asyncio.TimeoutError:
                runner.cancel()
        if not task.status.is_terminal:
            task.transition(TaskStatus.CANCELLED)
        return True

    async def wait(self, task_id: str) -> Optional[DelegatedTask]:
        """Wait for a task's coroutine to finish; returns the final task state."""
        runner = self._runners.get(task_id)
        if runner is not None:
            await asyncio.gather(runner, return_exceptions=True)
        return self.get_task(task_id)
