"""HTTP session backend for an OpenCode-style session server.

Endpoints used::

    POST /session                       create a (child) session
    POST /session/{id}/prompt_async     queue a prompt (returns 204 at once)
    GET  /session/{id}/message          message history
    GET  /session/status                status of every busy/retrying session
    GET  /provider                      providers, their models, connected ids

Non-2xx responses raise ``BackendError`` with the server's message; the
decoded JSON body is kept on the exception so callers can read structured
fields (model suggestions, error names).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from agent_dispatch.config.constants import BACKEND_DEFAULT_TIMEOUT_S, DISCOVERY_TIMEOUT_S
from agent_dispatch.domain import (
    BackendError,
    ModelCandidate,
    SessionMessage,
    SessionState,
    messages_from_wire,
    status_map_from_wire,
)

logger = logging.getLogger(__name__)


def _extract_error_message(response: httpx.Response, body: Any) -> str:
    """Human-readable error string from a (likely 4xx/5xx) response."""
    if isinstance(body, dict):
        for candidate in (body.get("data"), body.get("error"), body):
            if isinstance(candidate, dict) and isinstance(candidate.get("message"), str):
                return candidate["message"]
            if isinstance(candidate, str) and candidate:
                return candidate
        if isinstance(body.get("name"), str):
            return body["name"]
    return response.text or f"HTTP {response.status_code}"


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


class HttpSessionBackend:
    """``SessionBackend`` over HTTP with ``httpx``.

    ``transport`` is passed through to ``httpx.AsyncClient`` (tests use
    ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: float = BACKEND_DEFAULT_TIMEOUT_S,
        directory: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_s
        self._directory = directory
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        timeout = httpx.Timeout(timeout_s if timeout_s is not None else self._timeout)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                r = await client.request(method, url, headers=self._headers(), json=json, params=params)
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc
        body = _decode(r)
        if r.status_code >= 400:
            message = _extract_error_message(r, body)
            logger.debug("%s %s -> %d: %s", method, path, r.status_code, message)
            raise BackendError(message, status_code=r.status_code, body=body)
        return body

    async def create_session(self, parent_id: Optional[str], title: str, directory: str) -> str:
        payload: Dict[str, Any] = {"title": title}
        if parent_id:
            payload["parentID"] = parent_id
        params = {"directory": directory or self._directory} if (directory or self._directory) else None
        body = await self._request("POST", "/session", json=payload, params=params)
        data = body.get("data", body) if isinstance(body, dict) else None
        session_id = data.get("id") if isinstance(data, dict) else None
        if not session_id:
            raise BackendError("Session create returned no id", body=body)
        return str(session_id)

    async def send_prompt(
        self,
        session_id: str,
        *,
        agent: Optional[str],
        model: Optional[ModelCandidate],
        variant: Optional[str],
        tools: Dict[str, bool],
        text: str,
        system: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "tools": tools,
            "parts": [{"type": "text", "text": text}],
        }
        if agent:
            payload["agent"] = agent
        if model is not None:
            payload["model"] = {"providerID": model.provider, "modelID": model.model}
        if variant:
            payload["variant"] = variant
        if system:
            payload["system"] = system
        await self._request("POST", f"/session/{session_id}/prompt_async", json=payload)

    async def list_messages(self, session_id: str) -> List[SessionMessage]:
        return messages_from_wire(await self._request("GET", f"/session/{session_id}/message"))

    async def session_status(self) -> Dict[str, SessionState]:
        return status_map_from_wire(await self._request("GET", "/session/status"))

    async def _providers(self) -> Dict[str, Any]:
        body = await self._request("GET", "/provider", timeout_s=DISCOVERY_TIMEOUT_S)
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        return body if isinstance(body, dict) else {}

    async def list_connected_providers(self) -> List[str]:
        """Ids of providers the server has credentials for."""
        connected = (await self._providers()).get("connected") or []
        return [str(p) for p in connected if p]

    async def list_models(self) -> List[str]:
        """``provider/model`` for every model of every connected provider."""
        body = await self._providers()
        # Servers that do not report "connected" list only usable providers.
        connected = set(str(p) for p in body.get("connected") or []) if "connected" in body else None
        result: List[str] = []
        for provider in body.get("all") or []:
            if not isinstance(provider, dict):
                continue
            provider_id = provider.get("id")
            if not provider_id or (connected is not None and provider_id not in connected):
                continue
            models = provider.get("models") or {}
            model_ids = models.keys() if isinstance(models, dict) else [
                m.get("id") for m in models if isinstance(m, dict)
            ]
            result.extend(f"{provider_id}/{m}" for m in model_ids if m)
        return sorted(result)
