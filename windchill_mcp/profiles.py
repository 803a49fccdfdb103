"""
Backend connection profiles and the store that tracks the active one.

Profiles are immutable. Switching replaces which profile is active; it never
edits a profile in place. Components that cache per-backend state (the
backend client, its CSRF token) subscribe to switches and rebuild.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import DEFAULT_API_PATH, DEFAULT_BACKEND_TIMEOUT, DEFAULT_MAX_SERVERS
from .env_utils import env_int, env_str
from .errors import ConfigurationError, UnknownServer

logger = logging.getLogger("windchill_mcp.profiles")

SwitchListener = Callable[["ServerProfile", "ServerProfile"], None]


@dataclass(frozen=True)
class ServerProfile:
    id: int
    name: str
    base_url: str
    username: str
    password: str
    api_path: str = DEFAULT_API_PATH
    timeout: float = DEFAULT_BACKEND_TIMEOUT

    @property
    def api_url(self) -> str:
        return self.base_url.rstrip("/") + self.api_path

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view without the password."""
        return {
            "id": self.id,
            "name": self.name,
            "url": self.base_url,
            "username": self.username,
        }

    def __repr__(self) -> str:
        return f"ServerProfile(id={self.id!r}, name={self.name!r}, base_url={self.base_url!r})"


class ServerProfileStore:
    def __init__(self, profiles: List[ServerProfile], active_id: Optional[int] = None) -> None:
        if not profiles:
            raise ConfigurationError("No Windchill server configurations found")
        self._profiles: Dict[int, ServerProfile] = {}
        for profile in profiles:
            if profile.id in self._profiles:
                raise ConfigurationError(f"Duplicate server id {profile.id}")
            self._profiles[profile.id] = profile
        if active_id is None:
            active_id = min(self._profiles)
        elif active_id not in self._profiles:
            raise UnknownServer(active_id, self.ids())
        self._active_id = active_id
        self._listeners: List[SwitchListener] = []

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        backend_cfg: Optional[Dict[str, Any]] = None,
    ) -> "ServerProfileStore":
        """
        Load numbered WINDCHILL_URL_<n>/USER/PASSWORD/NAME sets, falling back to
        the unnumbered legacy set. WINDCHILL_ACTIVE_SERVER picks the initial
        profile; an unknown id falls back to the lowest configured id.
        """
        env = os.environ if env is None else env
        backend_cfg = backend_cfg or {}
        api_path = str(backend_cfg.get("api_path", DEFAULT_API_PATH))
        timeout = float(backend_cfg.get("timeout", DEFAULT_BACKEND_TIMEOUT))
        max_servers = int(backend_cfg.get("max_servers", DEFAULT_MAX_SERVERS))

        profiles: List[ServerProfile] = []
        for i in range(1, max_servers + 1):
            url = env_str(env, f"WINDCHILL_URL_{i}")
            user = env_str(env, f"WINDCHILL_USER_{i}")
            password = env.get(f"WINDCHILL_PASSWORD_{i}")
            if url and user and password:
                name = env_str(env, f"WINDCHILL_NAME_{i}") or f"Windchill Server {i}"
                profiles.append(
                    ServerProfile(i, name, url, user, password, api_path, timeout)
                )
                logger.info(f"Loaded server {i}: {name} ({url})")

        if not profiles:
            url = env_str(env, "WINDCHILL_URL")
            user = env_str(env, "WINDCHILL_USER")
            password = env.get("WINDCHILL_PASSWORD")
            if url and user and password:
                profiles.append(
                    ServerProfile(1, "Windchill Server", url, user, password, api_path, timeout)
                )
                logger.info(f"Loaded legacy single-server configuration ({url})")

        if not profiles:
            logger.error("No Windchill server configurations found!")
            raise ConfigurationError(
                "No Windchill server configurations found in environment variables"
            )

        ids = sorted(p.id for p in profiles)
        active_id = env_int(env, "WINDCHILL_ACTIVE_SERVER")
        if active_id is not None and active_id not in ids:
            logger.warning(
                f"WINDCHILL_ACTIVE_SERVER={active_id} not found, defaulting to server {ids[0]}"
            )
            active_id = None
        store = cls(profiles, active_id)
        logger.info(
            f"Successfully loaded {len(profiles)} Windchill server(s), active={store.active_id}"
        )
        return store

    def add_switch_listener(self, listener: SwitchListener) -> None:
        self._listeners.append(listener)

    def all(self) -> List[ServerProfile]:
        return [self._profiles[i] for i in sorted(self._profiles)]

    def ids(self) -> List[int]:
        return sorted(self._profiles)

    def get(self, server_id: int) -> Optional[ServerProfile]:
        return self._profiles.get(server_id)

    def require(self, server_id: Any) -> ServerProfile:
        profile = None
        if isinstance(server_id, float) and server_id.is_integer():
            server_id = int(server_id)
        if isinstance(server_id, int) and not isinstance(server_id, bool):
            profile = self._profiles.get(server_id)
        if profile is None:
            raise UnknownServer(server_id, self.ids())
        return profile

    def has(self, server_id: int) -> bool:
        return server_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    @property
    def active_id(self) -> int:
        return self._active_id

    @property
    def active(self) -> ServerProfile:
        return self._profiles[self._active_id]

    def switch(self, server_id: Any) -> ServerProfile:
        target = self.require(server_id)
        previous = self.active
        self._active_id = target.id
        logger.info(
            f"Switched Windchill server from {previous.id} ({previous.name}) "
            f"to {target.id} ({target.name})",
            extra={"server_id": target.id},
        )
        for listener in list(self._listeners):
            listener(previous, target)
        return target
