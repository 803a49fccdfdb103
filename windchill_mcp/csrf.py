"""
CSRF nonce handling for state-changing OData calls.

One CsrfTokenManager belongs to exactly one backend client instance. The
token is fetched lazily on the first mutating call and reused until it is
invalidated (profile switch, or the backend rejecting it).

    NO_TOKEN -> FETCHING -> HAS_TOKEN | NO_TOKEN_REQUIRED -> (invalidate) -> NO_TOKEN
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Mapping, Optional

from .errors import BackendApiError, CsrfAcquisitionError

logger = logging.getLogger("windchill_mcp.csrf")

CSRF_HEADER = "X-CSRF-Token"
CSRF_FETCH_VALUE = "Fetch"
CSRF_REQUIRED_VALUE = "Required"
CSRF_HEADER_CANDIDATES = (
    "X-CSRF-Token",
    "x-csrf-token",
    "X-Csrf-Token",
    "csrf-token",
    "CSRF-Token",
)
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
CSRF_REJECTION_STATUSES = frozenset({400, 403})

_MARKER_VALUES = {CSRF_FETCH_VALUE.lower(), CSRF_REQUIRED_VALUE.lower()}


class CsrfState(str, Enum):
    NO_TOKEN = "no_token"
    FETCHING = "fetching"
    HAS_TOKEN = "has_token"
    NO_TOKEN_REQUIRED = "no_token_required"


@dataclass(frozen=True)
class CsrfToken:
    value: Optional[str]

    @property
    def required(self) -> bool:
        return self.value is not None

    def headers(self) -> Dict[str, str]:
        return {CSRF_HEADER: self.value} if self.value else {}


NO_CSRF_REQUIRED = CsrfToken(None)

TokenFetcher = Callable[[], Awaitable[CsrfToken]]


def is_mutating(method: str) -> bool:
    return method.upper() in MUTATING_METHODS


def extract_csrf_token(headers: Mapping[str, str]) -> Optional[str]:
    """Return the token from any accepted header spelling, ignoring marker values."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in CSRF_HEADER_CANDIDATES:
        value = lowered.get(name.lower())
        if value and value.strip().lower() not in _MARKER_VALUES:
            return value.strip()
    return None


def is_csrf_rejection(status: int, headers: Mapping[str, str], body: str = "") -> bool:
    if status not in CSRF_REJECTION_STATUSES:
        return False
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in CSRF_HEADER_CANDIDATES:
        value = lowered.get(name.lower())
        if value and value.strip().lower() == CSRF_REQUIRED_VALUE.lower():
            return True
    return "csrf" in (body or "").lower()


def _consume_failure(future: asyncio.Future) -> None:
    # waiters may all be cancelled before the shared fetch settles
    if not future.cancelled():
        future.exception()


class CsrfTokenManager:
    def __init__(self, fetcher: TokenFetcher, max_attempts: int = 2) -> None:
        self._fetcher = fetcher
        self.max_attempts = max_attempts
        self._token: Optional[CsrfToken] = None
        self._pending: Optional[asyncio.Future] = None
        self._generation = 0
        self._state = CsrfState.NO_TOKEN
        self.fetch_count = 0

    @property
    def state(self) -> CsrfState:
        return self._state

    @property
    def cached(self) -> Optional[CsrfToken]:
        return self._token

    async def get(self) -> CsrfToken:
        if self._token is not None:
            return self._token
        # Concurrent callers share one in-flight fetch.
        if self._pending is None or self._pending.done():
            self._pending = asyncio.ensure_future(self._acquire())
            self._pending.add_done_callback(_consume_failure)
        pending = self._pending
        try:
            return await asyncio.shield(pending)
        finally:
            if self._pending is pending and pending.done():
                self._pending = None

    def invalidate(self) -> None:
        if self._token is not None or self._pending is not None:
            logger.debug("CSRF token invalidated")
        self._token = None
        self._pending = None
        self._generation += 1
        self._state = CsrfState.NO_TOKEN

    async def _acquire(self) -> CsrfToken:
        generation = self._generation
        self._state = CsrfState.FETCHING
        attempt = 0
        while True:
            attempt += 1
            self.fetch_count += 1
            try:
                token = await self._fetcher()
            except BackendApiError as exc:
                logger.warning(f"CSRF token fetch attempt {attempt} failed: {exc.message}")
                if attempt < self.max_attempts:
                    continue
                if generation == self._generation:
                    self._state = CsrfState.NO_TOKEN
                raise CsrfAcquisitionError(
                    f"Failed to acquire CSRF token after {attempt} attempts: {exc.message}",
                    status=exc.status,
                    body=exc.body,
                ) from exc
            if generation == self._generation:
                self._token = token
                self._state = (
                    CsrfState.HAS_TOKEN if token.required else CsrfState.NO_TOKEN_REQUIRED
                )
            return token
