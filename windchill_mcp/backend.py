"""
Authenticated HTTP access to the Windchill OData backend.

BackendClientInstance binds one httpx.AsyncClient and one CsrfTokenManager to
exactly one ServerProfile. AuthenticatedBackendClient hands out the instance
for the active profile and replaces it (never mutates it) when the profile
store switches. Each call captures its instance once, so a call that started
before a switch finishes against the old backend.

Outbound calls pass through two ordered interceptor chains of plain
``(CallContext) -> CallContext`` functions, one before and one after the HTTP
exchange.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import httpx

from .csrf import (
    CSRF_FETCH_VALUE,
    CSRF_HEADER,
    NO_CSRF_REQUIRED,
    CsrfToken,
    CsrfTokenManager,
    extract_csrf_token,
    is_csrf_rejection,
    is_mutating,
)
from .errors import BackendApiError, CsrfRejectedError
from .observability import elapsed_ms, redact_headers
from .profiles import ServerProfile, ServerProfileStore
from .trace_context import REQUEST_ID_HEADER, generate_request_id, get_propagation_headers

api_logger = logging.getLogger("windchill_mcp.api")

WILDCARD_SEARCH_HEADER = "PTC-WildcardSearch"


@dataclass(frozen=True)
class RequestTrace:
    id: str
    start_time: float
    method: str
    url: str


@dataclass(frozen=True)
class CallContext:
    profile: ServerProfile
    method: str
    path: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    trace: Optional[RequestTrace] = None
    response: Optional[httpx.Response] = None
    error: Optional[BaseException] = None
    duration_ms: Optional[float] = None


Interceptor = Callable[[CallContext], CallContext]


def stamp_trace(ctx: CallContext) -> CallContext:
    trace = RequestTrace(generate_request_id(), time.perf_counter(), ctx.method, ctx.url)
    headers = {**ctx.headers, **get_propagation_headers(), REQUEST_ID_HEADER: trace.id}
    return replace(ctx, trace=trace, headers=headers)


def basic_auth_header(username: str, password: str) -> str:
    raw = f"{username}:{password}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def apply_basic_auth(ctx: CallContext) -> CallContext:
    auth = basic_auth_header(ctx.profile.username, ctx.profile.password)
    return replace(ctx, headers={**ctx.headers, "Authorization": auth})


def log_request(ctx: CallContext) -> CallContext:
    api_logger.debug(
        f"API request {ctx.method} {ctx.url} headers={redact_headers(ctx.headers)}",
        extra={"request_id": ctx.trace.id if ctx.trace else "", "server_id": ctx.profile.id},
    )
    return ctx


def record_duration(ctx: CallContext) -> CallContext:
    if ctx.trace is None:
        return ctx
    return replace(ctx, duration_ms=elapsed_ms(ctx.trace.start_time))


def log_outcome(ctx: CallContext) -> CallContext:
    extra = {
        "request_id": ctx.trace.id if ctx.trace else "",
        "server_id": ctx.profile.id,
        "duration_ms": round(ctx.duration_ms or 0.0, 1),
    }
    response = ctx.response
    if response is not None and response.is_success:
        api_logger.info(
            f"API request successful {ctx.method} {ctx.url} status={response.status_code} "
            f"size={len(response.content)}",
            extra=extra,
        )
    elif response is not None:
        api_logger.error(
            f"API request failed {ctx.method} {ctx.url} status={response.status_code} "
            f"body={response.text[:2000]}",
            extra=extra,
        )
    else:
        api_logger.error(
            f"API request failed {ctx.method} {ctx.url} error={_describe(ctx.error)}",
            extra=extra,
        )
    return ctx


REQUEST_INTERCEPTORS: Sequence[Interceptor] = (stamp_trace, apply_basic_auth, log_request)
RESPONSE_INTERCEPTORS: Sequence[Interceptor] = (record_duration, log_outcome)


def run_interceptors(chain: Sequence[Interceptor], ctx: CallContext) -> CallContext:
    for interceptor in chain:
        ctx = interceptor(ctx)
    return ctx


def _describe(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "unknown error"
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def _error_message(response: httpx.Response, body: Any) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            message = error["message"]
            if isinstance(message, dict):
                message = message.get("value", message)
            return f"HTTP {response.status_code}: {message}"
        if isinstance(body.get("message"), str):
            return f"HTTP {response.status_code}: {body['message']}"
    return f"HTTP {response.status_code} {response.reason_phrase}".strip()


class BackendClientInstance:
    def __init__(
        self,
        profile: ServerProfile,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[httpx.Timeout] = None,
        limits: Optional[httpx.Limits] = None,
        request_interceptors: Sequence[Interceptor] = REQUEST_INTERCEPTORS,
        response_interceptors: Sequence[Interceptor] = RESPONSE_INTERCEPTORS,
    ) -> None:
        self.profile = profile
        kwargs: Dict[str, Any] = {}
        if transport is not None:
            kwargs["transport"] = transport
        if limits is not None:
            kwargs["limits"] = limits
        self.http = httpx.AsyncClient(
            base_url=profile.api_url,
            timeout=timeout or httpx.Timeout(profile.timeout),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            follow_redirects=False,
            **kwargs,
        )
        self.request_interceptors = tuple(request_interceptors)
        self.response_interceptors = tuple(response_interceptors)
        self.csrf = CsrfTokenManager(self._fetch_csrf_token)
        self.inflight = 0
        self.retired = False

    async def aclose(self) -> None:
        await self.http.aclose()

    async def send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        wildcard: bool = False,
    ) -> httpx.Response:
        method = method.upper()
        extra = dict(headers or {})
        self.inflight += 1
        try:
            if not is_mutating(method):
                if wildcard:
                    extra[WILDCARD_SEARCH_HEADER] = "true"
                return await self._exchange(method, path, params, json, extra)
            return await self._send_mutating(method, path, params, json, extra)
        finally:
            self.inflight -= 1
            if self.retired and self.inflight == 0:
                await self.aclose()

    async def _send_mutating(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        json_body: Any,
        headers: Dict[str, str],
    ) -> httpx.Response:
        token = await self.csrf.get()
        try:
            return await self._exchange(method, path, params, json_body, {**headers, **token.headers()})
        except CsrfRejectedError as exc:
            api_logger.warning(
                f"{method} {path} rejected for CSRF reasons (status={exc.status}), refreshing token once",
                extra={"server_id": self.profile.id},
            )
        self.csrf.invalidate()
        token = await self.csrf.get()
        try:
            return await self._exchange(method, path, params, json_body, {**headers, **token.headers()})
        except CsrfRejectedError as exc:
            raise BackendApiError(exc.message, status=exc.status, body=exc.body) from exc

    async def _roundtrip(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        json_body: Any,
        headers: Dict[str, str],
    ) -> httpx.Response:
        url = f"{self.profile.api_url}/{path.lstrip('/')}"
        ctx = CallContext(self.profile, method, path, url, headers, params, json_body)
        ctx = run_interceptors(self.request_interceptors, ctx)
        try:
            response = await self.http.request(
                method, path, params=params, json=json_body, headers=ctx.headers
            )
        except httpx.HTTPError as exc:
            run_interceptors(self.response_interceptors, replace(ctx, error=exc))
            raise BackendApiError(f"{method} {url} failed: {_describe(exc)}") from exc
        run_interceptors(self.response_interceptors, replace(ctx, response=response))
        return response

    async def _exchange(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        json_body: Any,
        headers: Dict[str, str],
    ) -> httpx.Response:
        response = await self._roundtrip(method, path, params, json_body, headers)
        if response.is_success:
            return response
        body = decode_body(response)
        message = _error_message(response, body)
        if is_mutating(method) and is_csrf_rejection(
            response.status_code, response.headers, response.text
        ):
            raise CsrfRejectedError(message, status=response.status_code, body=body)
        raise BackendApiError(message, status=response.status_code, body=body)

    async def _fetch_csrf_token(self) -> CsrfToken:
        response = await self._roundtrip("GET", "/", None, None, {CSRF_HEADER: CSRF_FETCH_VALUE})
        if response.status_code >= 500:
            raise BackendApiError(
                f"CSRF token fetch failed with HTTP {response.status_code}",
                status=response.status_code,
                body=decode_body(response),
            )
        value = extract_csrf_token(response.headers)
        if value is None:
            api_logger.info(
                "Backend returned no CSRF token, continuing without one",
                extra={"server_id": self.profile.id},
            )
            return NO_CSRF_REQUIRED
        api_logger.debug("CSRF token acquired", extra={"server_id": self.profile.id})
        return CsrfToken(value)


class AuthenticatedBackendClient:
    def __init__(
        self,
        store: ServerProfileStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[httpx.Timeout] = None,
        limits: Optional[httpx.Limits] = None,
        connection_test_path: str = "/servlet/WindchillAuthGW/wt.httpgw.HTTPServer/",
        connection_test_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self._transport = transport
        self._timeout = timeout
        self._limits = limits
        self.connection_test_path = connection_test_path
        self.connection_test_timeout = connection_test_timeout
        self._instance = self._build(store.active)
        self._retired: List[BackendClientInstance] = []
        self._closing: Set[asyncio.Task] = set()
        store.add_switch_listener(self._on_switch)
        api_logger.info(
            f"Backend client initialised for {store.active.api_url} as {store.active.username}",
            extra={"server_id": store.active.id},
        )

    def _build(self, profile: ServerProfile) -> BackendClientInstance:
        return BackendClientInstance(
            profile, transport=self._transport, timeout=self._timeout, limits=self._limits
        )

    @property
    def instance(self) -> BackendClientInstance:
        return self._instance

    @property
    def profile(self) -> ServerProfile:
        return self._instance.profile

    def _on_switch(self, previous: ServerProfile, current: ServerProfile) -> None:
        old = self._instance
        old.csrf.invalidate()
        old.retired = True
        self._instance = self._build(current)
        api_logger.info(
            f"Backend client rebuilt for {current.api_url} (previous server {previous.id}, "
            f"{old.inflight} call(s) still in flight)",
            extra={"server_id": current.id},
        )
        if old.inflight:
            # closes itself once drained
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._retired.append(old)
            return
        task = loop.create_task(old.aclose())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def switch_server(self, server_id: Any) -> ServerProfile:
        return self.store.switch(server_id)

    async def send(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        instance = self._instance
        return await instance.send(method, endpoint, **kwargs)

    async def request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        response = await self.send(method, endpoint, **kwargs)
        return decode_body(response)

    async def get(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        wildcard: bool = False,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        return await self.request("GET", endpoint, params=params, wildcard=wildcard, headers=headers)

    async def post(self, endpoint: str, data: Any = None, *, headers: Optional[Dict[str, str]] = None) -> Any:
        return await self.request("POST", endpoint, json=data, headers=headers)

    async def put(self, endpoint: str, data: Any = None) -> Any:
        return await self.request("PUT", endpoint, json=data)

    async def patch(self, endpoint: str, data: Any = None) -> Any:
        return await self.request("PATCH", endpoint, json=data)

    async def delete(self, endpoint: str) -> Any:
        return await self.request("DELETE", endpoint)

    async def probe(self, profile: ServerProfile, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Check that a profile's server answers, without switching to it.
        Any status below 500 counts as reachable. Never raises for network errors.
        """
        url = profile.base_url.rstrip("/") + self.connection_test_path
        kwargs: Dict[str, Any] = {}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=timeout or self.connection_test_timeout,
                auth=(profile.username, profile.password),
                follow_redirects=False,
                **kwargs,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            api_logger.error(
                f"Connection test to {profile.name} failed: {_describe(exc)}",
                extra={"server_id": profile.id},
            )
            return {"reachable": False, "statusCode": None, "error": _describe(exc)}
        duration = round(elapsed_ms(start), 1)
        reachable = response.status_code < 500
        api_logger.info(
            f"Connection test to {profile.name} answered {response.status_code}",
            extra={"server_id": profile.id, "duration_ms": duration},
        )
        return {
            "reachable": reachable,
            "statusCode": response.status_code,
            "responseTimeMs": duration,
            "error": None if reachable else f"HTTP {response.status_code}",
        }

    async def aclose(self) -> None:
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        for instance in self._retired:
            await instance.aclose()
        self._retired.clear()
        await self._instance.aclose()
