"""
Tests for the authenticated OData client.

These tests validate:
1. Exactly one CSRF fetch per client instance, token reused afterwards
2. A profile switch invalidates the token and rebuilds the client
3. One refresh-and-retry on CSRF rejection, then a plain BackendApiError
4. Basic auth, wildcard header and secret redaction in logs
5. Connectivity probe never raises
"""
from __future__ import annotations

import asyncio
import base64
import logging

import httpx
import pytest

from windchill_mcp.backend import AuthenticatedBackendClient, decode_body
from windchill_mcp.csrf import CsrfState
from windchill_mcp.errors import BackendApiError, CsrfAcquisitionError, CsrfRejectedError


def _basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


class TestCsrfFlow:
    @pytest.mark.asyncio
    async def test_one_fetch_then_cached_token(self, store, windchill):
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            await backend.post("/ProdMgmt/Parts", {"Number": "1"})
            await backend.post("/ProdMgmt/Parts", {"Number": "2"})
        finally:
            await backend.aclose()

        assert len(windchill.fetches) == 1
        assert windchill.fetches[0].url.path == "/servlet/odata/"
        posts = windchill.business_requests()
        assert [r.method for r in posts] == ["POST", "POST"]
        assert all(r.headers["x-csrf-token"] == "tok-1" for r in posts)
        assert backend.instance.csrf.state is CsrfState.HAS_TOKEN

    @pytest.mark.asyncio
    async def test_fetch_happens_before_business_call(self, store, windchill):
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            await backend.put("/ProdMgmt/Parts('1')", {"Name": "x"})
        finally:
            await backend.aclose()

        assert windchill.requests[0] is windchill.fetches[0]
        assert windchill.requests[1].method == "PUT"

    @pytest.mark.asyncio
    async def test_reads_never_fetch_a_token(self, store, windchill):
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            await backend.get("/ProdMgmt/Parts")
        finally:
            await backend.aclose()

        assert windchill.fetches == []
        assert "x-csrf-token" not in windchill.requests[0].headers

    @pytest.mark.asyncio
    async def test_switch_invalidates_token(self, store, windchill):
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            await backend.post("/ProdMgmt/Parts", {})
            old_instance = backend.instance
            await backend.switch_server(2)
            windchill.token = "tok-2"
            await backend.post("/ProdMgmt/Parts", {})
            await backend.post("/ProdMgmt/Parts", {})
        finally:
            await backend.aclose()

        assert backend.instance is not old_instance
        assert old_instance.csrf.cached is None
        assert [r.url.host for r in windchill.fetches] == ["wc1.example", "wc2.example"]
        last = windchill.business_requests()[-1]
        assert last.url.host == "wc2.example"
        assert last.headers["authorization"] == _basic("tester", "secret-two")
        assert last.headers["x-csrf-token"] == "tok-2"

    @pytest.mark.asyncio
    async def test_rejection_triggers_one_refresh_and_retry(self, store, windchill):
        windchill.reject_times = 1
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            result = await backend.post("/ProdMgmt/Parts", {"Number": "1"})
        finally:
            await backend.aclose()

        assert result == {"created": {"Number": "1"}}
        assert len(windchill.fetches) == 2
        assert len(windchill.business_requests()) == 2

    @pytest.mark.asyncio
    async def test_second_rejection_is_a_plain_backend_error(self, store, windchill):
        windchill.reject_times = 5
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            with pytest.raises(BackendApiError) as exc_info:
                await backend.post("/ProdMgmt/Parts", {})
        finally:
            await backend.aclose()

        assert not isinstance(exc_info.value, CsrfRejectedError)
        assert exc_info.value.status == 403
        assert "CSRF token invalid" in exc_info.value.message
        assert len(windchill.fetches) == 2
        assert len(windchill.business_requests()) == 2

    @pytest.mark.asyncio
    async def test_fetch_failing_twice_raises_acquisition_error(self, store):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(503, text="maintenance")

        backend = AuthenticatedBackendClient(store, transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(CsrfAcquisitionError):
                await backend.post("/ProdMgmt/Parts", {})
        finally:
            await backend.aclose()

        assert len(requests) == 2
        assert all(r.method == "GET" for r in requests)

    @pytest.mark.asyncio
    async def test_backend_without_csrf_support(self, store, windchill):
        windchill.token = None
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            await backend.post("/ProdMgmt/Parts", {})
            await backend.post("/ProdMgmt/Parts", {})
        finally:
            await backend.aclose()

        assert len(windchill.fetches) == 1
        assert all("x-csrf-token" not in r.headers for r in windchill.business_requests())
        assert backend.instance.csrf.state is CsrfState.NO_TOKEN_REQUIRED


class TestRequests:
    @pytest.mark.asyncio
    async def test_basic_auth_and_trace_headers(self, store, windchill):
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            await backend.get("/ProdMgmt/Parts", {"$top": 1})
        finally:
            await backend.aclose()

        request = windchill.requests[0]
        assert request.url.path == "/servlet/odata/ProdMgmt/Parts"
        assert request.url.params["$top"] == "1"
        assert request.headers["authorization"] == _basic("wcadmin", "secret-one")
        assert request.headers["x-request-id"].startswith("req_")
        assert "traceparent" in request.headers

    @pytest.mark.asyncio
    async def test_wildcard_header(self, store, windchill):
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            await backend.get("/ProdMgmt/Parts", wildcard=True)
            await backend.get("/ProdMgmt/Parts")
        finally:
            await backend.aclose()

        assert windchill.requests[0].headers["ptc-wildcardsearch"] == "true"
        assert "ptc-wildcardsearch" not in windchill.requests[1].headers

    @pytest.mark.asyncio
    async def test_error_status_carries_odata_message(self, store, windchill):
        windchill.routes["GET /servlet/odata/ProdMgmt/Parts('x')"] = lambda r: httpx.Response(
            404, json={"error": {"code": "404", "message": "Part not found"}}
        )
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            with pytest.raises(BackendApiError) as exc_info:
                await backend.get("/ProdMgmt/Parts('x')")
        finally:
            await backend.aclose()

        assert exc_info.value.status == 404
        assert exc_info.value.message == "HTTP 404: Part not found"
        assert exc_info.value.body == {"error": {"code": "404", "message": "Part not found"}}

    @pytest.mark.asyncio
    async def test_network_failure(self, store):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        backend = AuthenticatedBackendClient(store, transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(BackendApiError) as exc_info:
                await backend.get("/ProdMgmt/Parts")
        finally:
            await backend.aclose()

        assert exc_info.value.status is None
        assert "connection refused" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_credentials_are_redacted_in_logs(self, store, windchill, caplog):
        caplog.set_level(logging.DEBUG, logger="windchill_mcp.api")
        api_logger = logging.getLogger("windchill_mcp.api")
        api_logger.addHandler(caplog.handler)
        backend = AuthenticatedBackendClient(store, transport=windchill.transport())
        try:
            await backend.post("/ProdMgmt/Parts", {})
        finally:
            await backend.aclose()
            api_logger.removeHandler(caplog.handler)

        text = "\n".join(r.getMessage() for r in caplog.records)
        assert "[REDACTED]" in text
        assert "secret-one" not in text
        assert _basic("wcadmin", "secret-one") not in text

    @pytest.mark.asyncio
    async def test_inflight_call_finishes_on_old_profile(self, store):
        entered = asyncio.Event()
        release = asyncio.Event()
        hosts = []

        async def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            entered.set()
            await release.wait()
            return httpx.Response(200, json={"value": []})

        backend = AuthenticatedBackendClient(store, transport=httpx.MockTransport(handler))
        call = asyncio.create_task(backend.get("/ProdMgmt/Parts"))
        await entered.wait()
        old_instance = backend.instance
        await backend.switch_server(2)
        assert old_instance.retired and not old_instance.http.is_closed
        release.set()
        await call
        await backend.get("/ProdMgmt/Parts")
        await backend.aclose()

        assert hosts == ["wc1.example", "wc2.example"]
        assert old_instance.http.is_closed


class TestProbe:
    @pytest.mark.asyncio
    async def test_client_error_status_counts_as_reachable(self, store, profiles):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/servlet/WindchillAuthGW/wt.httpgw.HTTPServer/"
            return httpx.Response(401)

        backend = AuthenticatedBackendClient(store, transport=httpx.MockTransport(handler))
        try:
            outcome = await backend.probe(profiles[1])
        finally:
            await backend.aclose()

        assert outcome["reachable"] is True
        assert outcome["statusCode"] == 401

    @pytest.mark.asyncio
    async def test_server_error_is_unreachable(self, store, profiles):
        backend = AuthenticatedBackendClient(
            store, transport=httpx.MockTransport(lambda r: httpx.Response(502))
        )
        try:
            outcome = await backend.probe(profiles[1])
        finally:
            await backend.aclose()

        assert outcome["reachable"] is False
        assert outcome["error"] == "HTTP 502"

    @pytest.mark.asyncio
    async def test_network_failure_does_not_raise(self, store, profiles):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        backend = AuthenticatedBackendClient(store, transport=httpx.MockTransport(handler))
        try:
            outcome = await backend.probe(profiles[1])
        finally:
            await backend.aclose()

        assert outcome["reachable"] is False
        assert outcome["statusCode"] is None
        assert "timed out" in outcome["error"]


def test_decode_body_variants():
    assert decode_body(httpx.Response(204)) is None
    assert decode_body(httpx.Response(200, json={"a": 1})) == {"a": 1}
    assert decode_body(httpx.Response(200, text="plain")) == "plain"
