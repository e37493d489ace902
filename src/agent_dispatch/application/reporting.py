"""Text reports returned to the dispatch caller.

Every report ends with a machine-parseable trailer::

    <task_metadata>
    session_id: ses_123
    </task_metadata>
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from agent_dispatch.config.constants import NO_TEXT_OUTPUT, TASK_METADATA_CLOSE, TASK_METADATA_OPEN

_TRAILER_RE = re.compile(
    re.escape(TASK_METADATA_OPEN) + r"\s*(.*?)\s*" + re.escape(TASK_METADATA_CLOSE),
    re.DOTALL,
)


def format_duration(seconds: float) -> str:
    """``42s``, ``3m 5s``, ``1h 2m``."""
    total = int(max(seconds, 0))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def metadata_block(fields: Mapping[str, Any]) -> str:
    lines = [f"{key}: {value}" for key, value in fields.items() if value is not None]
    return "\n".join([TASK_METADATA_OPEN, *lines, TASK_METADATA_CLOSE])


def parse_metadata_block(text: str) -> dict:
    """Read the last trailer in ``text`` back into a dict (empty if there is none)."""
    matches = _TRAILER_RE.findall(text)
    if not matches:
        return {}
    result = {}
    for line in matches[-1].splitlines():
        key, sep, value = line.partition(":")
        if sep:
            result[key.strip()] = value.strip()
    return result


def _agent_line(agent: str, category: Optional[str]) -> str:
    return f"Agent: {agent}" + (f" (category: {category})" if category else "")


def completed_report(
    *,
    text: str,
    session_id: str,
    duration_s: float,
    agent: str,
    category: Optional[str] = None,
    continued: bool = False,
) -> str:
    head = (
        f"Task continued and completed in {format_duration(duration_s)}."
        if continued
        else f"Task completed in {format_duration(duration_s)}.\n\n{_agent_line(agent, category)}"
    )
    return f"{head}\n\n---\n\n{text or NO_TEXT_OUTPUT}\n\n{metadata_block({'session_id': session_id})}"


def supervised_report(
    *,
    text: str,
    session_id: str,
    duration_s: float,
    agent: str,
    model: Optional[str],
    category: Optional[str] = None,
) -> str:
    return (
        "SUPERVISED TASK COMPLETED SUCCESSFULLY\n\n"
        f"IMPORTANT: This model ({model}) is marked as unstable/experimental.\n"
        "The synchronous request was run in background mode for reliability monitoring.\n\n"
        f"Duration: {format_duration(duration_s)}\n"
        f"{_agent_line(agent, category)}\n\n"
        "---\n\n"
        f"RESULT:\n\n{text or NO_TEXT_OUTPUT}\n\n"
        f"{metadata_block({'session_id': session_id})}"
    )


def background_report(
    *,
    task_id: str,
    description: str,
    agent: str,
    status: str,
    session_id: Optional[str],
    category: Optional[str] = None,
    session_wait_s: Optional[float] = None,
) -> str:
    lines = [
        "Background task launched.",
        "",
        f"Task ID: {task_id}",
        f"Description: {description}",
        _agent_line(agent, category),
        f"Status: {status}",
    ]
    if session_id is None and session_wait_s is not None:
        lines += [
            "",
            f"Session not assigned within {format_duration(session_wait_s)}; "
            "the task may still start. Query the task id for progress.",
        ]
    lines += ["", f'Query task_id="{task_id}" for the result.', ""]
    return "\n".join(lines) + "\n" + metadata_block({"session_id": session_id or "pending"})


def continuation_background_report(*, session_id: str, task_id: str, description: str, agent: Optional[str]) -> str:
    return (
        "Background task continued.\n\n"
        f"Task ID: {task_id}\n"
        f"Description: {description}\n"
        f"Agent: {agent or 'continue'}\n\n"
        "Agent continues with full previous context preserved.\n\n"
        f"{metadata_block({'session_id': session_id})}"
    )


def aborted_report(session_id: Optional[str] = None, task_id: Optional[str] = None, *, stage: str = "") -> str:
    head = f"Task aborted{(' ' + stage) if stage else ''}."
    ref = f"Session ID: {session_id}" if session_id else f"Task ID: {task_id}"
    return f"{head}\n\n{ref}\n\n{metadata_block({'session_id': session_id or 'pending'})}"


def timeout_report(session_id: str, budget_s: float) -> str:
    return (
        f"Poll timeout reached after {budget_s:g}s for session {session_id}\n\n"
        f"{metadata_block({'session_id': session_id})}"
    )


def format_detailed_error(
    error: BaseException,
    *,
    operation: str,
    agent: Optional[str] = None,
    category: Optional[str] = None,
    session_id: Optional[str] = None,
    description: Optional[str] = None,
) -> str:
    """Error report with the failing operation and enough context to reproduce it."""
    lines = [f"{operation} failed", "", f"**Error**: {error}" if str(error) else f"**Error**: {type(error).__name__}"]
    lines.append(f"**Error Type**: {type(error).__name__}")
    details = [
        ("Description", description),
        ("Category", category),
        ("Agent", agent),
        ("Session ID", session_id),
    ]
    present = [(k, v) for k, v in details if v]
    if present:
        lines += ["", "**Arguments**:"]
        lines += [f"- {k}: {v}" for k, v in present]
    if session_id:
        lines += ["", metadata_block({"session_id": session_id})]
    return "\n".join(lines)
