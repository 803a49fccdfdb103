from __future__ import annotations

import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from windchill_mcp.profiles import ServerProfile, ServerProfileStore

API = "/servlet/odata"

TEST_CONFIG: Dict[str, Any] = {
    "server": {"name": "windchill-mcp", "version": "1.0.0", "cors_origins": ["*"]},
    "backend": {"api_path": API, "timeout": 5.0, "connection_test_timeout": 2.0},
    "bridge": {"base_url": "http://gateway/api", "call_timeout": 2.0, "list_timeout": 1.0},
}

TEST_ENV = {
    "WINDCHILL_URL_1": "http://wc1.example",
    "WINDCHILL_USER_1": "wcadmin",
    "WINDCHILL_PASSWORD_1": "secret-one",
    "WINDCHILL_NAME_1": "Production",
    "WINDCHILL_URL_2": "http://wc2.example",
    "WINDCHILL_USER_2": "tester",
    "WINDCHILL_PASSWORD_2": "secret-two",
    "WINDCHILL_NAME_2": "Test",
}


class FakeWindchill:
    """
    Scripted OData backend for httpx.MockTransport. Records every request,
    hands out CSRF tokens on ``X-CSRF-Token: Fetch`` and rejects mutating
    calls that do not carry the current token.
    """

    def __init__(self, token: str = "tok-1", reject_times: int = 0) -> None:
        self.token = token
        self.reject_times = reject_times
        self.requests: List[httpx.Request] = []
        self.fetches: List[httpx.Request] = []
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.endswith(API + "/") and request.headers.get("x-csrf-token") == "Fetch":
            self.fetches.append(request)
            headers = {"X-CSRF-Token": self.token} if self.token else {}
            return httpx.Response(200, json={"value": []}, headers=headers)
        if request.method in ("POST", "PUT", "PATCH", "DELETE") and path.startswith(API):
            if self.reject_times > 0 or request.headers.get("x-csrf-token") != self.token:
                self.reject_times = max(0, self.reject_times - 1)
                return httpx.Response(
                    403,
                    json={"error": {"code": "403", "message": "CSRF token invalid"}},
                    headers={"X-CSRF-Token": "Required"},
                )
        route = self.routes.get(f"{request.method} {path}")
        if route is not None:
            return route(request)
        if request.method == "POST":
            return httpx.Response(201, json={"created": json.loads(request.content or b"null")})
        return httpx.Response(200, json={"value": [], "path": path, "host": request.url.host})

    def business_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r not in self.fetches]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def profiles() -> List[ServerProfile]:
    return [
        ServerProfile(1, "Production", "http://wc1.example", "wcadmin", "secret-one", API, 5.0),
        ServerProfile(2, "Test", "http://wc2.example", "tester", "secret-two", API, 5.0),
    ]


@pytest.fixture
def store(profiles: List[ServerProfile]) -> ServerProfileStore:
    return ServerProfileStore(profiles)


@pytest.fixture
def windchill() -> FakeWindchill:
    return FakeWindchill()


@pytest.fixture
def gateway_config() -> Dict[str, Any]:
    return json.loads(json.dumps(TEST_CONFIG))


@pytest.fixture
def gateway_env() -> Dict[str, str]:
    return dict(TEST_ENV)


@pytest.fixture
def app_ctx(gateway_config: Dict[str, Any], gateway_env: Dict[str, str], windchill: FakeWindchill):
    from windchill_mcp.server import build_app_context

    return build_app_context(gateway_config, env=gateway_env, transport=windchill.transport())
