"""In-flight task registry.

Owned by a ``TaskDispatcher``; other components (a UI, the CLI) receive the
registry handle and read from it.  Keys are task ids, which are never reused,
so two dispatch calls never touch the same entry.  Readers get copies; only
the dispatch call that registered an entry updates or removes it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from agent_dispatch.domain import DelegatedTask, TaskStatus

logger = logging.getLogger(__name__)


class TaskRegistry:
    def __init__(self) -> None:
        self._tasks: Dict[str, DelegatedTask] = {}

    def register(self, task: DelegatedTask) -> None:
        if task.id in self._tasks:
            raise ValueError(f"Task id already registered: {task.id}")
        self._tasks[task.id] = task
        logger.debug("Registered task %s (%s)", task.id, task.status.value)

    def get(self, task_id: str) -> Optional[DelegatedTask]:
        task = self._tasks.get(task_id)
        return replace(task) if task is not None else None

    def update_status(self, task_id: str, status: TaskStatus, error: Optional[str] = None) -> None:
        """Move a task forward; raises ``InvalidTransitionError`` on a backward move."""
        task = self._tasks.get(task_id)
        if task is None:
            logger.debug("update_status on unknown task %s ignored", task_id)
            return
        task.transition(status)
        if error is not None:
            task.error = error

    def set_session(self, task_id: str, session_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is not None:
            task.session_id = session_id

    def remove(self, task_id: str) -> bool:
        """Drop the entry; returns False if it was already gone."""
        removed = self._tasks.pop(task_id, None) is not None
        if removed:
            logger.debug("Removed task %s", task_id)
        return removed

    def list(self) -> List[DelegatedTask]:
        return [replace(t) for t in self._tasks.values()]

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
