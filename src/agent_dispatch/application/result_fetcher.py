"""Extract the final assistant text from a session's history."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from agent_dispatch.domain import ResultFetchError, SessionMessage
from agent_dispatch.application.ports import SessionBackend

logger = logging.getLogger(__name__)


def latest_assistant(messages: Sequence[SessionMessage]) -> Optional[SessionMessage]:
    """Most recent assistant message by creation time (servers do not guarantee list order).

    Messages without a timestamp sort first; among equal timestamps the later
    list position wins.
    """
    best: Optional[SessionMessage] = None
    best_key = None
    for index, msg in enumerate(messages):
        if msg.role != "assistant":
            continue
        key = (msg.created_at if msg.created_at is not None else float("-inf"), index)
        if best_key is None or key > best_key:
            best, best_key = msg, key
    return best


async def fetch_result(
    backend: SessionBackend,
    session_id: str,
    anchor_count: Optional[int] = None,
) -> str:
    """Return the latest assistant text, only considering messages after ``anchor_count`` if given.

    Raises:
        ResultFetchError: no message after the anchor, no assistant message at
            all, or the history could not be read.
    """
    try:
        messages = await backend.list_messages(session_id)
    except Exception as exc:
        raise ResultFetchError(f"Failed to fetch messages: {exc}\n\nSession ID: {session_id}") from exc

    if anchor_count is not None:
        messages = messages[anchor_count:]
        if not messages:
            raise ResultFetchError(
                f"Session completed but no new response was generated. "
                f"The model may have failed silently.\n\nSession ID: {session_id}"
            )

    last = latest_assistant(messages)
    if last is None:
        raise ResultFetchError(f"No assistant response found.\n\nSession ID: {session_id}")

    text = last.text_content()
    logger.debug("Fetched %d chars of assistant output from %s", len(text), session_id)
    return text
