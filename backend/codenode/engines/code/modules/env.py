"""
Env helper for user code: get, get_int, get_bool, keys.

Only keys in the allow-list are visible; everything else reads as missing,
so secrets in the host environment never reach user code by accident.
"""

import os
from collections.abc import Iterable, Mapping
from types import MappingProxyType, SimpleNamespace
from typing import Any

from codenode.core.config import parse_csv, settings

# Non-secret keys always readable
DEFAULT_ENV_KEYS = frozenset({"PROJECT_NAME", "ENVIRONMENT"})

_TRUTHY = frozenset({"true", "1", "yes", "on"})


def allowed_env_keys() -> frozenset[str]:
    return DEFAULT_ENV_KEYS | frozenset(parse_csv(settings.CODE_ENV_ALLOWED_KEYS))


def make_env_module(
    *,
    source: Mapping[str, Any] | None = None,
    allowed_keys: Iterable[str] | None = None,
) -> Any:
    """
    Build the `env` object over a snapshot of *source* (default: settings
    values overlaid on os.environ), filtered to *allowed_keys*.
    """
    keys = frozenset(allowed_keys) if allowed_keys is not None else allowed_env_keys()
    if source is None:
        source = {
            **os.environ,
            **{k: getattr(settings, k) for k in keys if getattr(settings, k, None) is not None},
        }
    visible = MappingProxyType({k: source[k] for k in keys if k in source})

    def get(key: str, default: Any = None) -> Any:
        return visible.get(key, default)

    def get_int(key: str, default: int = 0) -> int:
        try:
            return int(visible[key])
        except (KeyError, TypeError, ValueError):
            return default

    def get_bool(key: str, default: bool = False) -> bool:
        if key not in visible:
            return default
        v = visible[key]
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in _TRUTHY

    def keys_() -> list[str]:
        return sorted(visible)

    return SimpleNamespace(get=get, get_int=get_int, get_bool=get_bool, keys=keys_)
