"""Availability caches: which providers are connected and which models they serve.

Two JSON files in the cache directory (``platformdirs`` user cache path by
default, e.g. ``~/.cache/agent-dispatch`` on Linux)::

    connected-providers.json  {"connected": ["anthropic", ...], "updatedAt": "..."}
    provider-models.json      {"models": {"anthropic": ["claude-opus-4-6", ...]},
                               "connected": [...], "updatedAt": "..."}

A missing model cache means availability is *unknown* (first run), which
is different from a cache that exists and lists no models.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from platformdirs import user_cache_path

from agent_dispatch.config.constants import CONNECTED_PROVIDERS_CACHE_FILE, PROVIDER_MODELS_CACHE_FILE
from agent_dispatch.domain import Availability

logger = logging.getLogger(__name__)


def default_cache_dir() -> Path:
    return Path(user_cache_path("agent-dispatch"))


def resolve_cache_dir(configured: str = "") -> Path:
    return Path(configured).expanduser() if configured.strip() else default_cache_dir()


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        logger.debug("Cache file not found: %s", path)
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Cache file %s unreadable (%s); ignoring.", path, e)
        return None
    return data if isinstance(data, dict) else None


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(data, updatedAt=datetime.now(timezone.utc).isoformat())
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def read_connected_providers(cache_dir: Path) -> Optional[List[str]]:
    """Connected provider ids, or ``None`` when there is no provider cache."""
    data = _read_json(cache_dir / CONNECTED_PROVIDERS_CACHE_FILE)
    if data is None or not isinstance(data.get("connected"), list):
        return None
    return [str(p) for p in data["connected"]]


def _model_ids(entries: Iterable[Any]) -> List[str]:
    ids: List[str] = []
    for entry in entries:
        if isinstance(entry, str) and entry:
            ids.append(entry)
        elif isinstance(entry, dict) and entry.get("id"):
            ids.append(str(entry["id"]))
    return ids


def read_available_models(cache_dir: Path) -> Optional[frozenset]:
    """``provider/model`` strings from the model cache, or ``None`` when there is no model cache.

    Only providers listed as connected in the same file count; a file
    without a ``connected`` list counts every provider.
    """
    data = _read_json(cache_dir / PROVIDER_MODELS_CACHE_FILE)
    if data is None or not isinstance(data.get("models"), dict):
        return None
    connected = data.get("connected")
    allowed = set(connected) if isinstance(connected, list) else None
    result = set()
    for provider, entries in data["models"].items():
        if allowed is not None and provider not in allowed:
            continue
        if isinstance(entries, list):
            result.update(f"{provider}/{m}" for m in _model_ids(entries))
    return frozenset(result)


def load_availability(cache_dir: Path) -> Availability:
    models = read_available_models(cache_dir)
    connected = read_connected_providers(cache_dir)
    if models is None:
        return Availability.unknown(connected)
    return Availability.known(models, connected)


def write_caches(cache_dir: Path, models: Iterable[str], connected: Iterable[str]) -> None:
    """Persist a live snapshot (``provider/model`` strings + connected ids)."""
    connected_list = sorted(set(connected))
    by_provider: Dict[str, List[str]] = {}
    for full in sorted(set(models)):
        provider, sep, model = full.partition("/")
        if sep and model:
            by_provider.setdefault(provider, []).append(model)
    _write_json(cache_dir / CONNECTED_PROVIDERS_CACHE_FILE, {"connected": connected_list})
    _write_json(cache_dir / PROVIDER_MODELS_CACHE_FILE, {"models": by_provider, "connected": connected_list})
    logger.debug("Availability caches written: %d providers, %d models", len(by_provider), sum(map(len, by_provider.values())))


class ProviderListing(Protocol):
    async def list_models(self) -> List[str]: ...

    async def list_connected_providers(self) -> List[str]: ...


class CachedAvailabilitySource:
    """``AvailabilitySource`` backed by the cache files, optionally refreshed from a live backend.

    With ``live`` set, ``refresh()`` queries the backend and rewrites the
    caches; ``get_availability()`` refreshes once on first use when
    ``refresh_on_first_use`` is set.  A failed refresh keeps the cached view.
    """

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        live: Optional[ProviderListing] = None,
        refresh_on_first_use: bool = False,
    ):
        self._cache_dir = cache_dir or default_cache_dir()
        self._live = live
        self._pending_refresh = refresh_on_first_use and live is not None

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    async def refresh(self) -> Availability:
        if self._live is None:
            return load_availability(self._cache_dir)
        models = await self._live.list_models()
        connected = await self._live.list_connected_providers()
        write_caches(self._cache_dir, models, connected)
        logger.info("Availability refreshed: %d models across %d connected providers", len(models), len(connected))
        return Availability.known(models, connected)

    async def get_availability(self) -> Availability:
        if self._pending_refresh:
            self._pending_refresh = False
            try:
                return await self.refresh()
            except Exception as e:
                logger.warning("Live availability refresh failed (%s); using cached data.", e)
        return load_availability(self._cache_dir)
