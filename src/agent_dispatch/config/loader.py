"""Load config from DISPATCH_CONFIG_PATH or return default.

``load_config()`` is memoised with ``functools.lru_cache`` so the file is read
and parsed at most once per process.  Call ``load_config.cache_clear()`` to
force a re-read (useful in tests and when ``DISPATCH_CONFIG_PATH`` changes at
runtime).
"""

from __future__ import annotations

import functools
import json
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .schema import DispatchConfig, DEFAULT_CONFIG


class _Env(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DISPATCH_", extra="ignore")
    config_path: Optional[str] = None


_env: Optional[_Env] = None


def _get_env() -> _Env:
    global _env
    if _env is None:
        _env = _Env()
    return _env


@functools.lru_cache(maxsize=1)
def load_config() -> DispatchConfig:
    """Load config from DISPATCH_CONFIG_PATH if set and present; else return DEFAULT_CONFIG.

    Result is cached for the lifetime of the process.  Call
    ``load_config.cache_clear()`` to force a reload.
    """
    path = _get_env().config_path
    if not path or not path.strip():
        return DEFAULT_CONFIG
    p = Path(path).expanduser().resolve()
    if not p.is_file():
        return DEFAULT_CONFIG
    data = json.loads(p.read_text(encoding="utf-8"))
    # Accept the older flat "default_model" key for the system default.
    if "default_model" in data and "system_default_model" not in data:
        data["system_default_model"] = data.pop("default_model")
    return DispatchConfig.model_validate(_merge_over_defaults(data))


# Named tables whose file entries extend the built-in ones instead of replacing them.
_MERGED_TABLES = ("categories", "category_requirements", "agent_requirements")


def _merge_over_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    """Lay the file's category and requirement entries over ``DEFAULT_CONFIG``.

    An entry for a built-in name is merged field by field (a ``fallback_chain``
    given in the file replaces the built-in chain as a whole); new names are
    added.  The file's own ``categories`` are kept apart as ``user_categories``
    so resolution can tell an explicit category model from a built-in one.
    """
    data["user_categories"] = data.get("categories") or {}
    for table in _MERGED_TABLES:
        merged = {name: entry.model_dump() for name, entry in getattr(DEFAULT_CONFIG, table).items()}
        for name, value in (data.get(table) or {}).items():
            if isinstance(value, dict) and name in merged:
                merged[name] = {**merged[name], **value}
            else:
                merged[name] = value
        data[table] = merged
    return data
