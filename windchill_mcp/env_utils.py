"""
Environment helpers: production detection and typed lookups.
"""
from __future__ import annotations

import os
from typing import Mapping, Optional


def is_production_env(env: Optional[Mapping[str, str]] = None) -> bool:
    """
    True when ENVIRONMENT, APP_ENV or NODE_ENV equals "production"
    (case-insensitive, surrounding whitespace ignored).
    """
    env = os.environ if env is None else env
    for name in ("ENVIRONMENT", "APP_ENV", "NODE_ENV"):
        if env.get(name, "").strip().lower() == "production":
            return True
    return False


def env_str(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def env_int(env: Mapping[str, str], name: str) -> Optional[int]:
    value = env_str(env, name)
    if value is None:
        return None
    try:
        return int(value, 10)
    except ValueError:
        return None
