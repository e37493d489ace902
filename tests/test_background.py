"""Tests for InProcessBackgroundManager."""
from __future__ import annotations

import asyncio
import time

import pytest

from agent_dispatch.application.dispatch import DispatchRequest, TaskDispatcher
from agent_dispatch.domain import BackendError, SessionState, TaskStatus
from agent_dispatch.infrastructure.background import InProcessBackgroundManager
from fakes import FakeBackend, assistant, model, user


async def _launch(manager, **kwargs):
    fields = {"description": "Explore repo", "prompt": "List modules", "agent": "explore", "parent_session_id": "ses_parent"}
    fields.update(kwargs)
    return await manager.launch(**fields)


@pytest.mark.asyncio
async def test_launch_returns_pending_then_completes(config):
    backend = FakeBackend(auto_reply="Found 12 modules.")
    manager = InProcessBackgroundManager(backend, config, directory="/repo")
    task = await _launch(manager, model=model("anthropic/claude-haiku-4-5"))

    assert task.id.startswith("bg_")
    assert task.status is TaskStatus.PENDING
    assert task.session_id is None

    final = await manager.wait(task.id)
    assert final.status is TaskStatus.COMPLETED
    assert final.session_id == "ses_1"
    assert manager.get_result(task.id) == "Found 12 modules."
    assert backend.created[0]["directory"] == "/repo"
    assert backend.created[0]["parent_id"] == "ses_parent"
    assert backend.prompts[0]["tools"]["write"] is False


@pytest.mark.asyncio
async def test_launch_create_failure_marks_error(config):
    backend = FakeBackend()
    backend.create_error = BackendError("no such parent")
    manager = InProcessBackgroundManager(backend, config)
    task = await _launch(manager)
    final = await manager.wait(task.id)
    assert final.status is TaskStatus.ERROR
    assert "no such parent" in final.error
    assert manager.get_result(task.id) is None


@pytest.mark.asyncio
async def test_launch_poll_timeout_marks_error(config):
    config = config.model_copy(update={"timing": config.timing.model_copy(update={"max_poll_time_s": 0.05})})
    manager = InProcessBackgroundManager(FakeBackend(auto_reply=None), config)
    task = await _launch(manager)
    final = await manager.wait(task.id)
    assert final.status is TaskStatus.ERROR
    assert final.error.startswith("Poll timeout reached")


@pytest.mark.asyncio
async def test_resume_inherits_agent_and_reads_new_output(config):
    backend = FakeBackend(auto_reply="second answer")
    gpt = model("openai/gpt-5.2")
    backend.add_session(
        "ses_9",
        [
            user(backend.next_msg_id(), agent="oracle", model=gpt),
            assistant(backend.next_msg_id(), text="first answer", agent="oracle", model=gpt),
        ],
    )
    manager = InProcessBackgroundManager(backend, config)
    task = await manager.resume(session_id="ses_9", prompt="And the tests?", parent_session_id=None)
    assert task.agent == "continue"

    final = await manager.wait(task.id)
    assert final.status is TaskStatus.COMPLETED
    assert final.agent == "oracle"
    assert manager.get_result(task.id) == "second answer"
    assert backend.prompts[0]["tools"]["delegate"] is True


@pytest.mark.asyncio
async def test_cancel_running_task(config):
    backend = FakeBackend(auto_reply=None)
    manager = InProcessBackgroundManager(backend, config)
    task = await _launch(manager)
    backend.statuses["ses_1"] = SessionState.BUSY
    for _ in range(50):
        if manager.get_task(task.id).session_id:
            break
        await asyncio.sleep(0.01)

    assert await manager.cancel(task.id) is True
    assert manager.get_task(task.id).status is TaskStatus.CANCELLED
    assert await manager.cancel(task.id) is False
    assert await manager.cancel("bg_unknown") is False


@pytest.mark.asyncio
async def test_dispatcher_background_mode_with_real_manager(config):
    backend = FakeBackend()
    manager = InProcessBackgroundManager(backend, config)
    dispatcher = TaskDispatcher(backend, manager, config)
    report = await dispatcher.dispatch(
        DispatchRequest(description="Explore", prompt="List modules", agent="explore", run_in_background=True)
    )
    assert report.status == "launched"
    assert report.session_id == "ses_1"

    final = await manager.wait(report.task_id)
    assert final.status is TaskStatus.COMPLETED
    assert manager.get_result(report.task_id) == "All done."


@pytest.mark.asyncio
async def test_finished_tasks_are_pruned_after_ttl(config):
    config = config.model_copy(update={"timing": config.timing.model_copy(update={"finished_task_ttl_s": 0.05})})
    manager = InProcessBackgroundManager(FakeBackend(), config)
    first = await _launch(manager)
    await manager.wait(first.id)
    assert manager.get_result(first.id) == "All done."

    await asyncio.sleep(0.1)
    second = await _launch(manager)
    assert manager.get_task(first.id) is None
    assert manager.get_result(first.id) is None
    assert manager.get_task(second.id) is not None


@pytest.mark.asyncio
async def test_remove_only_forgets_finished_tasks(config):
    manager = InProcessBackgroundManager(FakeBackend(auto_reply=None), config)
    task = await _launch(manager)
    assert manager.remove(task.id) is False

    await manager.cancel(task.id)
    await manager.wait(task.id)
    assert manager.remove(task.id) is True
    assert manager.get_task(task.id) is None
    assert manager.remove(task.id) is False


def _slow_session_wait(config):
    return config.model_copy(update={"timing": config.timing.model_copy(update={"wait_for_session_timeout_s": 5.0})})


@pytest.mark.asyncio
async def test_background_dispatch_reports_create_failure_at_once(config):
    config = _slow_session_wait(config)
    backend = FakeBackend()
    backend.create_error = BackendError("provider quota exceeded")
    dispatcher = TaskDispatcher(backend, InProcessBackgroundManager(backend, config), config)

    start = time.monotonic()
    report = await dispatcher.dispatch(
        DispatchRequest(description="Explore", prompt="List modules", agent="explore", run_in_background=True)
    )
    assert time.monotonic() - start < 2.0
    assert report.status == "error"
    assert not report.ok
    assert report.text.startswith("Launch background task failed")
    assert "provider quota exceeded" in report.text
    assert "may still start" not in report.text
    assert report.task_id.startswith("bg_")


@pytest.mark.asyncio
async def test_unstable_dispatch_keeps_create_failure_message(config):
    config = _slow_session_wait(config)
    backend = FakeBackend()
    backend.create_error = BackendError("provider quota exceeded")
    dispatcher = TaskDispatcher(backend, InProcessBackgroundManager(backend, config), config)

    start = time.monotonic()
    report = await dispatcher.dispatch(
        DispatchRequest(description="Restyle header", prompt="Make it blue", category="visual-engineering")
    )
    assert time.monotonic() - start < 2.0
    assert report.status == "error"
    assert "provider quota exceeded" in report.text
    assert "Task failed to start within timeout" not in report.text
    assert len(dispatcher.registry) == 0
