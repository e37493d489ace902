"""Session creation, prompt sending and continuation identity lookup.

All calls go through the ``SessionBackend`` port.  Backend failures are
wrapped in ``SessionCreateError`` / ``PromptError`` carrying the server's
message so the dispatcher can report it verbatim.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from agent_dispatch.config import ToolPolicyConfig
from agent_dispatch.domain import (
    ModelCandidate,
    PromptError,
    SessionCreateError,
    SessionMessage,
    TaskAbortedError,
)
from agent_dispatch.application.ports import SessionBackend
from agent_dispatch.application.execution_resolution import is_plan_family

logger = logging.getLogger(__name__)

_MODEL_NOT_FOUND_RE = re.compile(r"model not found:\s*([^/\s]+)\s*/\s*([^.\s]+)", re.IGNORECASE)
_DID_YOU_MEAN_RE = re.compile(r"did you mean:\s*([^,?]+)", re.IGNORECASE)


async def create_session(
    backend: SessionBackend,
    parent_session_id: Optional[str],
    description: str,
    agent: str,
    directory: str,
) -> str:
    """Open a child session titled after the task; raise ``SessionCreateError`` on failure."""
    title = f"{description} (@{agent} subagent)"
    try:
        session_id = await backend.create_session(parent_session_id, title, directory)
    except Exception as exc:
        logger.warning("Session create failed (parent=%s): %s", parent_session_id, exc)
        raise SessionCreateError(str(exc) or type(exc).__name__) from exc
    if not session_id:
        raise SessionCreateError("Backend returned no session id")
    logger.debug("Created session %s (parent=%s, agent=%s)", session_id, parent_session_id, agent)
    return session_id


def compute_tool_permissions(
    agent: Optional[str],
    policy: ToolPolicyConfig,
    *,
    continuation: bool = False,
) -> Dict[str, bool]:
    """Tool switches sent with a prompt.

    Per-agent denials first, then: ``task`` only for plan-family agents,
    ``question`` never (a delegated session has nobody to ask), and on
    continuation ``delegate`` is switched back on even for restricted agents.
    """
    tools: Dict[str, bool] = {}
    if agent:
        for tool in policy.denied_tools.get(agent.lower(), []):
            tools[tool] = False
    tools["task"] = is_plan_family(agent, policy.plan_family)
    if continuation:
        tools["delegate"] = True
    tools["question"] = False
    return tools


@dataclass(frozen=True)
class ModelSuggestion:
    provider: str
    model: str
    suggestion: str


def _error_message(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, Mapping):
        message = error.get("message")
        if isinstance(message, str):
            return message
    return ""


def parse_model_suggestion(error: Any) -> Optional[ModelSuggestion]:
    """Extract a "model not found, did you mean X" hint from a backend error.

    Understands the structured ``ProviderModelNotFoundError`` payload (with
    ``data.suggestions``), possibly nested under ``data``/``error``/``cause``,
    and the plain-text form ``"Model not found: p/m. Did you mean: x?"``.
    Exceptions carrying a decoded ``body`` are searched through that body first.
    """
    if error is None:
        return None

    body = getattr(error, "body", None)
    if body is not None:
        found = parse_model_suggestion(body)
        if found:
            return found

    if isinstance(error, Mapping):
        if error.get("name") == "ProviderModelNotFoundError" and isinstance(error.get("data"), Mapping):
            data = error["data"]
            suggestions = data.get("suggestions")
            if isinstance(suggestions, list) and suggestions and isinstance(suggestions[0], str):
                return ModelSuggestion(
                    provider=str(data.get("providerID") or ""),
                    model=str(data.get("modelID") or ""),
                    suggestion=suggestions[0],
                )
            return None
        for key in ("data", "error", "cause"):
            nested = error.get(key)
            if isinstance(nested, Mapping):
                found = parse_model_suggestion(nested)
                if found:
                    return found

    message = _error_message(error)
    if not message:
        return None
    model_match = _MODEL_NOT_FOUND_RE.search(message)
    suggestion_match = _DID_YOU_MEAN_RE.search(message)
    if model_match and suggestion_match:
        return ModelSuggestion(
            provider=model_match.group(1).strip(),
            model=model_match.group(2).strip(),
            suggestion=suggestion_match.group(1).strip(),
        )
    return None


async def _bounded(coro, timeout_s: float, abort: Optional[asyncio.Event]) -> None:
    """Await ``coro`` within ``timeout_s``; stop early if ``abort`` fires."""
    if abort is None:
        await asyncio.wait_for(coro, timeout=timeout_s)
        return
    send = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({send, waiter}, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
        if send in done:
            send.result()
            return
        if waiter in done:
            raise TaskAbortedError("Task aborted while sending prompt")
        raise asyncio.TimeoutError()
    finally:
        for fut in (send, waiter):
            if not fut.done():
                fut.cancel()


async def send_prompt(
    backend: SessionBackend,
    session_id: str,
    *,
    agent: Optional[str],
    model: Optional[ModelCandidate],
    tools: Dict[str, bool],
    text: str,
    system: Optional[str] = None,
    timeout_s: float = 120.0,
    abort: Optional[asyncio.Event] = None,
) -> Optional[ModelCandidate]:
    """Send ``text`` to ``session_id``; retry once when the server suggests another model id.

    Returns the model actually used (the suggestion after a retry).

    Raises:
        PromptError: the send failed, timed out, or the retry failed too.
        TaskAbortedError: ``abort`` fired while the send was in flight.
    """

    async def _send(candidate: Optional[ModelCandidate]) -> None:
        await _bounded(
            backend.send_prompt(
                session_id,
                agent=agent,
                model=candidate,
                variant=candidate.variant if candidate else None,
                tools=tools,
                text=text,
                system=system,
            ),
            timeout_s,
            abort,
        )

    try:
        await _send(model)
        return model
    except TaskAbortedError:
        raise
    except asyncio.TimeoutError as exc:
        raise PromptError(f"Prompt send timed out after {timeout_s:g}s") from exc
    except Exception as exc:
        suggestion = parse_model_suggestion(exc)
        if suggestion is None or model is None:
            logger.warning("Prompt send failed for session %s: %s", session_id, exc)
            raise PromptError(str(exc) or type(exc).__name__) from exc
        retry_model = ModelCandidate(
            provider=suggestion.provider or model.provider,
            model=suggestion.suggestion,
            variant=model.variant,
        )
        logger.info(
            "Model not found, retrying with suggestion: %s/%s -> %s",
            suggestion.provider, suggestion.model, retry_model.full_name,
        )

    try:
        await _send(retry_model)
    except TaskAbortedError:
        raise
    except asyncio.TimeoutError as exc:
        raise PromptError(f"Prompt send timed out after {timeout_s:g}s") from exc
    except Exception as exc:
        logger.warning("Prompt retry failed for session %s: %s", session_id, exc)
        raise PromptError(str(exc) or type(exc).__name__) from exc
    return retry_model


@dataclass(frozen=True)
class SessionIdentity:
    """Agent/model/variant last used in a session, plus the message count at lookup time."""
    agent: Optional[str] = None
    model: Optional[ModelCandidate] = None
    variant: Optional[str] = None
    anchor_count: Optional[int] = None


def identity_from_messages(messages: List[SessionMessage]) -> SessionIdentity:
    for msg in reversed(messages):
        if msg.agent or msg.model:
            model = msg.model.with_variant(msg.variant) if msg.model else None
            return SessionIdentity(
                agent=msg.agent,
                model=model,
                variant=msg.variant,
                anchor_count=len(messages),
            )
    return SessionIdentity(anchor_count=len(messages))


async def resolve_session_identity(backend: SessionBackend, session_id: str) -> SessionIdentity:
    """Read the session history once: inherited identity and the anchor count.

    The anchor is captured here, before any new prompt is sent.  When the
    history cannot be read the identity is empty and no anchor is set.
    """
    try:
        messages = await backend.list_messages(session_id)
    except Exception as exc:
        logger.warning("Could not read history of session %s for continuation: %s", session_id, exc)
        return SessionIdentity()
    identity = identity_from_messages(messages)
    logger.debug(
        "Continuation identity for %s: agent=%s model=%s anchor=%s",
        session_id,
        identity.agent,
        identity.model.full_name if identity.model else None,
        identity.anchor_count,
    )
    return identity
