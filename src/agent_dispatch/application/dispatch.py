"""Dispatch use case.

Flow: validate the request → resolve agent and model (category or agent
name) → run one of the execution modes:

- new synchronous task: create session, prompt, poll to completion, fetch result;
- new background task: launch through the background manager, wait briefly
  for its session id, report immediately;
- continuation of an existing session (sync or background), inheriting the
  agent/model last used there;
- unstable-model path: a synchronous request whose model misbehaves under
  tight polling is launched in the background and monitored here until stable.

Every mode returns a ``DispatchReport`` whose text ends with a
``<task_metadata>`` trailer carrying the session id.  Failures of any step
become report text; tracked tasks are removed from the registry on every
exit path.

Dependencies are injected (ports only); the only infrastructure import is
the tracer, which is a no-op unless telemetry is configured.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from agent_dispatch.config import DispatchConfig
from agent_dispatch.domain import (
    Availability,
    DelegatedTask,
    DispatchError,
    ModelCandidate,
    PromptError,
    ResolutionError,
    TaskAbortedError,
    TaskStatus,
)
from agent_dispatch.application.completion import (
    PollOutcome,
    PollStatus,
    poll_session,
    sleep_or_abort,
    wait_for_stability,
)
from agent_dispatch.application.execution_resolution import (
    ResolvedExecution,
    resolve_agent_execution,
    resolve_category_execution,
)
from agent_dispatch.application.hooks import DispatchHooks
from agent_dispatch.application.ports import AvailabilitySource, BackgroundManager, SessionBackend
from agent_dispatch.application.registry import TaskRegistry
from agent_dispatch.application.reporting import (
    aborted_report,
    background_report,
    completed_report,
    continuation_background_report,
    format_detailed_error,
    metadata_block,
    supervised_report,
    timeout_report,
)
from agent_dispatch.application.result_fetcher import fetch_result
from agent_dispatch.application.session_ops import (
    compute_tool_permissions,
    create_session,
    resolve_session_identity,
    send_prompt,
)
from agent_dispatch.infrastructure.telemetry import get_tracer

logger = logging.getLogger(__name__)


def _with_used_model(execution: ResolvedExecution, used: Optional[ModelCandidate]) -> ResolvedExecution:
    """Point ``execution`` at the model that was actually sent after a suggestion retry."""
    if used is None or used == execution.model:
        return execution
    return replace(execution, model=used, actual_model=used.full_name)


@dataclass
class DispatchRequest:
    """One delegation request.

    Exactly one of ``category`` / ``agent`` is required for a new task;
    neither is needed (or used) when ``session_id`` names a session to continue.
    """
    description: str
    prompt: str
    run_in_background: bool = False
    category: Optional[str] = None
    agent: Optional[str] = None
    session_id: Optional[str] = None
    parent_session_id: Optional[str] = None
    directory: str = ""
    ui_model: Optional[str] = None
    parent_agent: Optional[str] = None
    inherited_model: Optional[str] = None


@dataclass
class DispatchReport:
    """Outcome of ``TaskDispatcher.dispatch``.

    ``status`` is one of ``completed``, ``launched``, ``aborted``,
    ``timed_out``, ``error``.
    """
    text: str
    status: str
    session_id: Optional[str] = None
    task_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in ("completed", "launched")


def _new_task_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def validate_request(request: DispatchRequest) -> Optional[str]:
    """Return an error message for an invalid request, or None."""
    if not (request.description or "").strip():
        return "Invalid arguments: 'description' must not be empty."
    if not (request.prompt or "").strip():
        return "Invalid arguments: 'prompt' must not be empty."
    if request.session_id:
        return None
    if request.category and request.agent:
        return "Invalid arguments: provide either 'category' or 'agent', not both."
    if not request.category and not request.agent:
        return "Invalid arguments: must provide either 'category' or 'agent'."
    return None


class TaskDispatcher:
    """Runs delegation requests against a session backend.

    The dispatcher owns its ``TaskRegistry``; hand ``dispatcher.registry`` to
    anything that needs to show in-flight tasks.
    """

    def __init__(
        self,
        backend: SessionBackend,
        background_manager: BackgroundManager,
        config: DispatchConfig,
        availability_source: Optional[AvailabilitySource] = None,
        registry: Optional[TaskRegistry] = None,
        hooks: Optional[DispatchHooks] = None,
    ) -> None:
        self._backend = backend
        self._background = background_manager
        self._config = config
        self._availability_source = availability_source
        self._registry = registry if registry is not None else TaskRegistry()
        self._hooks = hooks or DispatchHooks()

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    async def dispatch(self, request: DispatchRequest, abort: Optional[asyncio.Event] = None) -> DispatchReport:
        await self._hooks.run_pre_dispatch(request)
        report = await self._dispatch(request, abort)
        logger.info(
            "Dispatch %r finished: status=%s session=%s task=%s",
            request.description, report.status, report.session_id, report.task_id,
        )
        await self._hooks.run_post_dispatch(request, report)
        return report

    async def _dispatch(self, request: DispatchRequest, abort: Optional[asyncio.Event]) -> DispatchReport:
        invalid = validate_request(request)
        if invalid:
            return DispatchReport(text=invalid, status="error")

        if request.session_id:
            if request.run_in_background:
                return await self._background_continuation(request)
            return await self._sync_continuation(request, abort)

        availability = await self._availability()
        try:
            if request.category:
                execution = resolve_category_execution(
                    request.category,
                    self._config,
                    availability,
                    inherited_model=request.inherited_model,
                    ui_model=request.ui_model,
                )
            else:
                execution = resolve_agent_execution(
                    request.agent or "",
                    self._config,
                    availability,
                    parent_agent=request.parent_agent,
                )
        except ResolutionError as exc:
            logger.info("Resolution failed for %r: %s", request.description, exc)
            return DispatchReport(text=str(exc), status="error")

        if request.run_in_background:
            return await self._launch_background(request, execution, abort)
        if execution.is_unstable:
            logger.info(
                "Model %s is marked unstable; running %r in monitored background mode",
                execution.actual_model, request.description,
            )
            return await self._run_unstable(request, execution, abort)
        return await self._run_sync(request, execution, abort)

    async def _availability(self) -> Availability:
        if self._availability_source is None:
            return Availability.unknown()
        try:
            return await self._availability_source.get_availability()
        except Exception as exc:
            logger.warning("Availability lookup failed, treating as unknown: %s", exc)
            return Availability.unknown()

    def _metadata(self, execution: ResolvedExecution, **extra: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "agent": execution.agent,
            "category": execution.category,
            "model": execution.actual_model,
            "provenance": execution.provenance.value if execution.provenance else None,
        }
        data.update(extra)
        return data

    def _finish(self, task_id: str, status: TaskStatus, error: Optional[str] = None) -> None:
        if task_id in self._registry:
            self._registry.update_status(task_id, status, error)

    # ------------------------------------------------------------------
    # New synchronous task
    # ------------------------------------------------------------------

    async def _run_sync(
        self,
        request: DispatchRequest,
        execution: ResolvedExecution,
        abort: Optional[asyncio.Event],
    ) -> DispatchReport:
        task_id = _new_task_id("sync")
        session_id: Optional[str] = None
        start = time.monotonic()
        timing = self._config.timing
        tracer = get_tracer()

        with tracer.start_as_current_span("dispatch.sync") as span:
            span.set_attribute("dispatch.agent", execution.agent)
            span.set_attribute("dispatch.model", execution.actual_model or "")
            try:
                if abort is not None and abort.is_set():
                    return DispatchReport(aborted_report(task_id=task_id), "aborted", task_id=task_id)

                session_id = await create_session(
                    self._backend,
                    request.parent_session_id,
                    request.description,
                    execution.agent,
                    request.directory or self._config.backend.directory,
                )
                span.set_attribute("dispatch.session_id", session_id)
                await self._hooks.run_session_created(session_id, request.parent_session_id, request.description)

                self._registry.register(
                    DelegatedTask(
                        id=task_id,
                        description=request.description,
                        agent=execution.agent,
                        session_id=session_id,
                        parent_session_id=request.parent_session_id,
                        model=execution.model,
                        category=execution.category,
                    )
                )
                self._registry.update_status(task_id, TaskStatus.RUNNING)

                used = await send_prompt(
                    self._backend,
                    session_id,
                    agent=execution.agent,
                    model=execution.model,
                    tools=compute_tool_permissions(execution.agent, self._config.tool_policy),
                    text=request.prompt,
                    system=execution.prompt_append or None,
                    timeout_s=timing.prompt_timeout_s,
                    abort=abort,
                )
                execution = _with_used_model(execution, used)
                span.set_attribute("dispatch.model", execution.actual_model or "")

                outcome = await poll_session(
                    self._backend,
                    session_id,
                    timing,
                    abort=abort,
                    on_tick=self._hooks.poll_tick,
                )
                span.set_attribute("dispatch.poll_count", outcome.poll_count)
                early = self._poll_exit(task_id, session_id, outcome)
                if early is not None:
                    return early

                text = await fetch_result(self._backend, session_id)
                self._finish(task_id, TaskStatus.COMPLETED)
                return DispatchReport(
                    text=completed_report(
                        text=text,
                        session_id=session_id,
                        duration_s=time.monotonic() - start,
                        agent=execution.agent,
                        category=execution.category,
                    ),
                    status="completed",
                    session_id=session_id,
                    task_id=task_id,
                    metadata=self._metadata(execution, session_id=session_id),
                )
            except TaskAbortedError:
                self._finish(task_id, TaskStatus.CANCELLED)
                return DispatchReport(aborted_report(session_id, task_id), "aborted", session_id, task_id)
            except Exception as exc:
                span.record_exception(exc)
                self._finish(task_id, TaskStatus.ERROR, str(exc))
                if not isinstance(exc, DispatchError):
                    logger.exception("Unexpected error in sync dispatch %s", task_id)
                return DispatchReport(
                    text=format_detailed_error(
                        exc,
                        operation="Execute task",
                        agent=execution.agent,
                        category=execution.category,
                        session_id=session_id,
                        description=request.description,
                    ),
                    status="error",
                    session_id=session_id,
                    task_id=task_id,
                    metadata=self._metadata(execution, session_id=session_id),
                )
            finally:
                self._registry.remove(task_id)

    def _poll_exit(self, task_id: str, session_id: str, outcome: PollOutcome) -> Optional[DispatchReport]:
        if outcome.status is PollStatus.ABORTED:
            self._finish(task_id, TaskStatus.CANCELLED)
            return DispatchReport(aborted_report(session_id, task_id), "aborted", session_id, task_id)
        if outcome.status is PollStatus.TIMED_OUT:
            budget = self._config.timing.max_poll_time_s
            self._finish(task_id, TaskStatus.ERROR, "timeout")
            return DispatchReport(timeout_report(session_id, budget), "timed_out", session_id, task_id)
        return None

    # ------------------------------------------------------------------
    # Background launch
    # ------------------------------------------------------------------

    async def _wait_for_session(self, task_id: str, session_id: Optional[str], abort: Optional[asyncio.Event]):
        """Poll the background manager for the task's session id.

        Returns ``(session_id, aborted, ended)``.  ``ended`` is the task's last
        state when it finished without ever getting a session (its ``error``
        says why); ``session_id`` stays None then and when the budget runs out.
        """
        timing = self._config.timing
        start = time.monotonic()
        while not session_id and time.monotonic() - start < timing.wait_for_session_timeout_s:
            if abort is not None and abort.is_set():
                return None, True, None
            if await sleep_or_abort(timing.wait_for_session_interval_s, abort):
                return None, True, None
            updated = self._background.get_task(task_id)
            session_id = updated.session_id if updated else None
            if not session_id and updated is not None and updated.status.is_terminal:
                return None, False, updated
        return session_id, False, None

    @staticmethod
    def _start_failure(ended: DelegatedTask) -> DispatchError:
        return DispatchError(
            ended.error or f"Task {ended.id} ended with status {ended.status.value} before its session started"
        )

    async def _launch_background(
        self,
        request: DispatchRequest,
        execution: ResolvedExecution,
        abort: Optional[asyncio.Event],
    ) -> DispatchReport:
        with get_tracer().start_as_current_span("dispatch.background") as span:
            span.set_attribute("dispatch.agent", execution.agent)
            try:
                task = await self._background.launch(
                    description=request.description,
                    prompt=request.prompt,
                    agent=execution.agent,
                    parent_session_id=request.parent_session_id,
                    model=execution.model,
                    system=execution.prompt_append or None,
                    category=execution.category,
                )
            except Exception as exc:
                span.record_exception(exc)
                logger.warning("Background launch failed for %r: %s", request.description, exc)
                return DispatchReport(
                    text=format_detailed_error(
                        exc,
                        operation="Launch background task",
                        agent=execution.agent,
                        category=execution.category,
                        description=request.description,
                    ),
                    status="error",
                )

            session_id, aborted, ended = await self._wait_for_session(task.id, task.session_id, abort)
            if aborted:
                return DispatchReport(
                    aborted_report(task_id=task.id, stage="while waiting for session to start"),
                    "aborted",
                    task_id=task.id,
                )
            if ended is not None:
                logger.warning("Background task %s ended before its session started: %s", task.id, ended.error)
                return DispatchReport(
                    text=format_detailed_error(
                        self._start_failure(ended),
                        operation="Launch background task",
                        agent=execution.agent,
                        category=execution.category,
                        description=request.description,
                    ),
                    status="error",
                    task_id=task.id,
                )
            if session_id is None:
                logger.info("Background task %s has no session after %.1fs", task.id, self._config.timing.wait_for_session_timeout_s)
            span.set_attribute("dispatch.session_id", session_id or "pending")

            current = self._background.get_task(task.id) or task
            return DispatchReport(
                text=background_report(
                    task_id=task.id,
                    description=task.description,
                    agent=task.agent,
                    status=current.status.value,
                    session_id=session_id,
                    category=execution.category,
                    session_wait_s=None if session_id else self._config.timing.wait_for_session_timeout_s,
                ),
                status="launched",
                session_id=session_id,
                task_id=task.id,
                metadata=self._metadata(execution, session_id=session_id or "pending"),
            )

    # ------------------------------------------------------------------
    # Unstable model: background launch, monitored here
    # ------------------------------------------------------------------

    async def _run_unstable(
        self,
        request: DispatchRequest,
        execution: ResolvedExecution,
        abort: Optional[asyncio.Event],
    ) -> DispatchReport:
        timing = self._config.timing
        task_id: Optional[str] = None
        session_id: Optional[str] = None

        def _error(exc: BaseException) -> DispatchReport:
            return DispatchReport(
                text=format_detailed_error(
                    exc,
                    operation="Launch monitored background task",
                    agent=execution.agent,
                    category=execution.category,
                    session_id=session_id,
                    description=request.description,
                ),
                status="error",
                session_id=session_id,
                task_id=task_id,
            )

        with get_tracer().start_as_current_span("dispatch.unstable") as span:
            span.set_attribute("dispatch.model", execution.actual_model or "")
            try:
                task = await self._background.launch(
                    description=request.description,
                    prompt=request.prompt,
                    agent=execution.agent,
                    parent_session_id=request.parent_session_id,
                    model=execution.model,
                    system=execution.prompt_append or None,
                    category=execution.category,
                )
                task_id = task.id
                self._registry.register(
                    DelegatedTask(
                        id=task.id,
                        description=request.description,
                        agent=execution.agent,
                        parent_session_id=request.parent_session_id,
                        model=execution.model,
                        category=execution.category,
                    )
                )

                session_id, aborted, ended = await self._wait_for_session(task.id, task.session_id, abort)
                if aborted:
                    self._finish(task.id, TaskStatus.CANCELLED)
                    return DispatchReport(
                        aborted_report(task_id=task.id, stage="while waiting for session to start"),
                        "aborted",
                        task_id=task.id,
                    )
                if ended is not None:
                    failure = self._start_failure(ended)
                    self._finish(task.id, TaskStatus.ERROR, str(failure))
                    return _error(failure)
                if session_id is None:
                    message = (
                        f"Task failed to start within timeout ({timing.wait_for_session_timeout_s:g}s). "
                        f"Task ID: {task.id}, Status: {task.status.value}"
                    )
                    self._finish(task.id, TaskStatus.ERROR, message)
                    return _error(DispatchError(message))

                self._registry.set_session(task.id, session_id)
                self._registry.update_status(task.id, TaskStatus.RUNNING)
                start = time.monotonic()
                outcome = await wait_for_stability(
                    self._backend, session_id, timing, abort=abort, on_tick=self._hooks.poll_tick
                )
                if outcome.status is PollStatus.ABORTED:
                    self._finish(task.id, TaskStatus.CANCELLED)
                    return DispatchReport(
                        aborted_report(session_id, task.id, stage="(was running in background mode)"),
                        "aborted",
                        session_id,
                        task.id,
                    )
                if outcome.status is PollStatus.TIMED_OUT:
                    self._finish(task.id, TaskStatus.ERROR, "timeout")
                    return DispatchReport(
                        timeout_report(session_id, timing.max_poll_time_s), "timed_out", session_id, task.id
                    )

                text = await fetch_result(self._backend, session_id)
                self._finish(task.id, TaskStatus.COMPLETED)
                current = self._background.get_task(task.id)
                execution = _with_used_model(execution, current.model if current else None)
                return DispatchReport(
                    text=supervised_report(
                        text=text,
                        session_id=session_id,
                        duration_s=time.monotonic() - start,
                        agent=execution.agent,
                        model=execution.actual_model,
                        category=execution.category,
                    ),
                    status="completed",
                    session_id=session_id,
                    task_id=task.id,
                    metadata=self._metadata(execution, session_id=session_id, supervised=True),
                )
            except Exception as exc:
                span.record_exception(exc)
                if task_id is not None:
                    self._finish(task_id, TaskStatus.ERROR, str(exc))
                if not isinstance(exc, DispatchError):
                    logger.exception("Unexpected error in monitored dispatch %s", task_id)
                return _error(exc)
            finally:
                if task_id is not None:
                    self._registry.remove(task_id)

    # ------------------------------------------------------------------
    # Continuation
    # ------------------------------------------------------------------

    async def _sync_continuation(self, request: DispatchRequest, abort: Optional[asyncio.Event]) -> DispatchReport:
        session_id = request.session_id or ""
        task_id = _new_task_id("resume_sync")
        timing = self._config.timing
        start = time.monotonic()

        with get_tracer().start_as_current_span("dispatch.continue") as span:
            span.set_attribute("dispatch.session_id", session_id)
            self._registry.register(
                DelegatedTask(
                    id=task_id,
                    description=request.description,
                    agent="continue",
                    session_id=session_id,
                    status=TaskStatus.RUNNING,
                    parent_session_id=request.parent_session_id,
                )
            )
            try:
                identity = await resolve_session_identity(self._backend, session_id)
                try:
                    used_model = await send_prompt(
                        self._backend,
                        session_id,
                        agent=identity.agent,
                        model=identity.model,
                        tools=compute_tool_permissions(identity.agent, self._config.tool_policy, continuation=True),
                        text=request.prompt,
                        timeout_s=timing.prompt_timeout_s,
                        abort=abort,
                    )
                except PromptError as exc:
                    self._finish(task_id, TaskStatus.ERROR, str(exc))
                    return DispatchReport(
                        text=(
                            f"Failed to send continuation prompt: {exc}\n\nSession ID: {session_id}\n\n"
                            f"{metadata_block({'session_id': session_id})}"
                        ),
                        status="error",
                        session_id=session_id,
                        task_id=task_id,
                    )

                outcome = await poll_session(
                    self._backend,
                    session_id,
                    timing,
                    abort=abort,
                    anchor_count=identity.anchor_count,
                    on_tick=self._hooks.poll_tick,
                )
                early = self._poll_exit(task_id, session_id, outcome)
                if early is not None:
                    return early

                text = await fetch_result(self._backend, session_id, identity.anchor_count)
                self._finish(task_id, TaskStatus.COMPLETED)
                return DispatchReport(
                    text=completed_report(
                        text=text,
                        session_id=session_id,
                        duration_s=time.monotonic() - start,
                        agent=identity.agent or "continue",
                        continued=True,
                    ),
                    status="completed",
                    session_id=session_id,
                    task_id=task_id,
                    metadata={
                        "session_id": session_id,
                        "agent": identity.agent,
                        "model": used_model.full_name if used_model else None,
                    },
                )
            except TaskAbortedError:
                self._finish(task_id, TaskStatus.CANCELLED)
                return DispatchReport(aborted_report(session_id, task_id), "aborted", session_id, task_id)
            except Exception as exc:
                span.record_exception(exc)
                self._finish(task_id, TaskStatus.ERROR, str(exc))
                if not isinstance(exc, DispatchError):
                    logger.exception("Unexpected error continuing session %s", session_id)
                return DispatchReport(
                    text=format_detailed_error(
                        exc,
                        operation="Continue task",
                        session_id=session_id,
                        description=request.description,
                    ),
                    status="error",
                    session_id=session_id,
                    task_id=task_id,
                )
            finally:
                self._registry.remove(task_id)

    async def _background_continuation(self, request: DispatchRequest) -> DispatchReport:
        session_id = request.session_id or ""
        try:
            task = await self._background.resume(
                session_id=session_id,
                prompt=request.prompt,
                parent_session_id=request.parent_session_id,
                description=request.description,
            )
        except Exception as exc:
            logger.warning("Background continuation of %s failed: %s", session_id, exc)
            return DispatchReport(
                text=format_detailed_error(
                    exc,
                    operation="Continue background task",
                    session_id=session_id,
                    description=request.description,
                ),
                status="error",
                session_id=session_id,
            )
        return DispatchReport(
            text=continuation_background_report(
                session_id=session_id,
                task_id=task.id,
                description=task.description or request.description,
                agent=task.agent,
            ),
            status="launched",
            session_id=session_id,
            task_id=task.id,
            metadata={"session_id": session_id, "agent": task.agent},
        )
