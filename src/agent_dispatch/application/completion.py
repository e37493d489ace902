"""Completion detection for delegated sessions.

A session that is idle at the status layer is not necessarily done: text may
have streamed while the turn still waits on tool results.  ``poll_session``
therefore combines the status map with a check of the message history
(``is_session_complete``) before declaring completion.

Each iteration: check cancellation, sleep (woken early by cancellation),
fetch status (skip while busy), fetch messages (skip until the history has
grown past the anchor), evaluate the predicate.  Status and message fetch
failures are logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from agent_dispatch.config import TimingConfig
from agent_dispatch.config.constants import (
    MIN_POLL_BUDGET_S,
    NON_TERMINAL_FINISH_REASONS,
    POLL_LOG_EVERY,
    TEXT_PART_TYPES,
)
from agent_dispatch.domain import SessionMessage, SessionState
from agent_dispatch.application.ports import SessionBackend

logger = logging.getLogger(__name__)

PollTick = Callable[[str, int, Optional[SessionState]], None]


def _last_with_role(messages: Sequence[SessionMessage], role: str) -> Optional[SessionMessage]:
    for msg in reversed(messages):
        if msg.role == role:
            return msg
    return None


def is_session_complete(messages: Sequence[SessionMessage]) -> bool:
    """True when the latest assistant turn is concluded and answers the latest user message.

    False for: no assistant, no finish reason, a non-terminal finish reason
    (``tool-calls``/``unknown``), no user message, a missing id on either, or
    a user message whose id sorts after the assistant's (the conversation has
    moved on and the reply is still pending).
    """
    last_assistant = _last_with_role(messages, "assistant")
    last_user = _last_with_role(messages, "user")
    if last_assistant is None or not last_assistant.finish_reason:
        return False
    if last_assistant.finish_reason in NON_TERMINAL_FINISH_REASONS:
        return False
    if last_user is None or not last_user.id or not last_assistant.id:
        return False
    return last_user.id < last_assistant.id


def has_assistant_text(messages: Sequence[SessionMessage]) -> bool:
    """True if any assistant message has a non-blank text or reasoning part."""
    return any(
        part.type in TEXT_PART_TYPES and part.text.strip()
        for msg in messages
        if msg.role == "assistant"
        for part in msg.parts
    )


class PollStatus(str, Enum):
    COMPLETE = "complete"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PollOutcome:
    status: PollStatus
    poll_count: int = 0
    elapsed_s: float = 0.0
    message_count: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        return self.status is PollStatus.COMPLETE


async def sleep_or_abort(seconds: float, abort: Optional[asyncio.Event]) -> bool:
    """Sleep ``seconds``; return True early if ``abort`` is set meanwhile."""
    if abort is None:
        await asyncio.sleep(seconds)
        return False
    if abort.is_set():
        return True
    try:
        await asyncio.wait_for(abort.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def poll_session(
    backend: SessionBackend,
    session_id: str,
    timing: TimingConfig,
    *,
    abort: Optional[asyncio.Event] = None,
    anchor_count: Optional[int] = None,
    on_tick: Optional[PollTick] = None,
) -> PollOutcome:
    """Poll ``session_id`` until it completes, ``abort`` is set, or the budget runs out."""
    budget = max(timing.max_poll_time_s, MIN_POLL_BUDGET_S)
    start = time.monotonic()
    poll_count = 0
    logger.debug("Starting poll loop for session %s (budget=%.1fs, anchor=%s)", session_id, budget, anchor_count)

    def _outcome(status: PollStatus, message_count: Optional[int] = None) -> PollOutcome:
        return PollOutcome(status, poll_count, time.monotonic() - start, message_count)

    while time.monotonic() - start < budget:
        if abort is not None and abort.is_set():
            logger.info("Poll aborted for session %s", session_id)
            return _outcome(PollStatus.ABORTED)

        if await sleep_or_abort(timing.poll_interval_s, abort):
            logger.info("Poll aborted for session %s", session_id)
            return _outcome(PollStatus.ABORTED)
        poll_count += 1

        try:
            statuses = await backend.session_status()
        except Exception as exc:
            logger.warning("Poll status fetch failed for %s, retrying: %s", session_id, exc)
            continue
        state = statuses.get(session_id)

        if on_tick is not None:
            on_tick(session_id, poll_count, state)
        if poll_count % POLL_LOG_EVERY == 0:
            logger.debug(
                "Poll %d for %s: %.0fs elapsed, status=%s",
                poll_count, session_id, time.monotonic() - start, state.value if state else "not_in_status",
            )

        if state is not None and state is not SessionState.IDLE:
            continue

        try:
            messages = await backend.list_messages(session_id)
        except Exception as exc:
            logger.warning("Poll message fetch failed for %s, retrying: %s", session_id, exc)
            continue

        if anchor_count is not None and len(messages) <= anchor_count:
            continue

        if is_session_complete(messages):
            logger.debug("Poll complete for %s after %d polls: terminal finish detected", session_id, poll_count)
            return _outcome(PollStatus.COMPLETE, len(messages))

        new_messages = messages[anchor_count:] if anchor_count is not None else messages
        last_assistant = _last_with_role(messages, "assistant")
        if last_assistant is not None and not last_assistant.finish_reason and has_assistant_text(new_messages):
            logger.debug("Poll complete for %s after %d polls: assistant text without finish reason", session_id, poll_count)
            return _outcome(PollStatus.COMPLETE, len(messages))

    logger.info("Poll timeout reached for session %s after %d polls", session_id, poll_count)
    return _outcome(PollStatus.TIMED_OUT)


async def wait_for_stability(
    backend: SessionBackend,
    session_id: str,
    timing: TimingConfig,
    *,
    abort: Optional[asyncio.Event] = None,
    on_tick: Optional[PollTick] = None,
) -> PollOutcome:
    """Debounced completion for models that misreport idleness.

    Done once the session has run for ``min_stability_time_s`` and then shows
    ``stability_polls_required`` consecutive idle polls with an unchanged
    message count.  Any busy sample resets the count.
    """
    budget = max(timing.max_poll_time_s, MIN_POLL_BUDGET_S)
    start = time.monotonic()
    poll_count = 0
    stable_polls = 0
    last_count: Optional[int] = None

    def _outcome(status: PollStatus) -> PollOutcome:
        return PollOutcome(status, poll_count, time.monotonic() - start, last_count)

    while time.monotonic() - start < budget:
        if abort is not None and abort.is_set():
            return _outcome(PollStatus.ABORTED)
        if await sleep_or_abort(timing.poll_interval_s, abort):
            return _outcome(PollStatus.ABORTED)
        poll_count += 1

        try:
            statuses = await backend.session_status()
        except Exception as exc:
            logger.warning("Stability status fetch failed for %s, retrying: %s", session_id, exc)
            continue
        state = statuses.get(session_id)
        if on_tick is not None:
            on_tick(session_id, poll_count, state)

        if state is not None and state is not SessionState.IDLE:
            stable_polls = 0
            last_count = None
            continue

        if time.monotonic() - start < timing.min_stability_time_s:
            continue

        try:
            messages = await backend.list_messages(session_id)
        except Exception as exc:
            logger.warning("Stability message fetch failed for %s, retrying: %s", session_id, exc)
            continue

        if len(messages) == last_count:
            stable_polls += 1
            if stable_polls >= timing.stability_polls_required:
                logger.debug("Session %s stable after %d polls (%d messages)", session_id, poll_count, last_count)
                return _outcome(PollStatus.COMPLETE)
        else:
            stable_polls = 0
            last_count = len(messages)

    logger.info("Stability wait timed out for session %s after %d polls", session_id, poll_count)
    return _outcome(PollStatus.TIMED_OUT)
