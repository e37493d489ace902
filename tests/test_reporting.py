"""Tests for report text and the metadata trailer."""
from __future__ import annotations

import pytest

from agent_dispatch.application.reporting import (
    aborted_report,
    background_report,
    completed_report,
    format_detailed_error,
    format_duration,
    metadata_block,
    parse_metadata_block,
    supervised_report,
    timeout_report,
)
from agent_dispatch.domain import PromptError


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0s"), (42.9, "42s"), (185, "3m 5s"), (3720, "1h 2m"), (-3, "0s")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_metadata_block_skips_none_and_parses_back():
    block = metadata_block({"session_id": "ses_1", "task_id": None, "agent": "worker"})
    assert block == "<task_metadata>\nsession_id: ses_1\nagent: worker\n</task_metadata>"
    assert parse_metadata_block(f"body\n\n{block}") == {"session_id": "ses_1", "agent": "worker"}
    assert parse_metadata_block("no trailer here") == {}


def test_parse_reads_last_trailer():
    text = f"{metadata_block({'session_id': 'inner'})}\n\nquoted output\n\n{metadata_block({'session_id': 'outer'})}"
    assert parse_metadata_block(text) == {"session_id": "outer"}


def test_completed_report():
    text = completed_report(text="Fixed.", session_id="ses_1", duration_s=65, agent="worker", category="quick")
    assert text.startswith("Task completed in 1m 5s.\n\nAgent: worker (category: quick)\n\n---\n\nFixed.")
    assert text.endswith("<task_metadata>\nsession_id: ses_1\n</task_metadata>")


def test_completed_report_without_text_and_continued():
    text = completed_report(text="", session_id="ses_1", duration_s=3, agent="oracle", continued=True)
    assert text.startswith("Task continued and completed in 3s.")
    assert "(No text output)" in text
    assert "Agent:" not in text


def test_supervised_report_mentions_model():
    text = supervised_report(
        text="ok", session_id="ses_1", duration_s=1, agent="worker", model="google/gemini-3-pro"
    )
    assert text.startswith("SUPERVISED TASK COMPLETED SUCCESSFULLY")
    assert "This model (google/gemini-3-pro)" in text
    assert "RESULT:\n\nok" in text


def test_background_report_pending_session():
    text = background_report(
        task_id="bg_1", description="d", agent="explore", status="pending", session_id=None, session_wait_s=30
    )
    assert "Task ID: bg_1" in text
    assert "Session not assigned within 30s" in text
    assert parse_metadata_block(text) == {"session_id": "pending"}


def test_aborted_and_timeout_reports():
    assert aborted_report(task_id="bg_1", stage="while waiting for session to start").startswith(
        "Task aborted while waiting for session to start.\n\nTask ID: bg_1"
    )
    assert "Session ID: ses_1" in aborted_report("ses_1", "sync_1")
    assert timeout_report("ses_1", 600.0).startswith("Poll timeout reached after 600s for session ses_1")


def test_detailed_error():
    text = format_detailed_error(
        PromptError("rate limited"),
        operation="Execute task",
        agent="worker",
        category="quick",
        session_id="ses_1",
        description="Fix typo",
    )
    lines = text.splitlines()
    assert lines[0] == "Execute task failed"
    assert "**Error**: rate limited" in lines
    assert "**Error Type**: PromptError" in lines
    assert "- Description: Fix typo" in lines
    assert parse_metadata_block(text) == {"session_id": "ses_1"}


def test_detailed_error_without_message_or_session():
    text = format_detailed_error(RuntimeError(), operation="Launch background task")
    assert "**Error**: RuntimeError" in text
    assert "**Arguments**" not in text
    assert "<task_metadata>" not in text
