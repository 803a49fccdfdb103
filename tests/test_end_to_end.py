"""
Full path through all three layers, in process:

    ProtocolBridge -> gateway HTTP app -> AuthenticatedBackendClient -> dev OData backend
"""
from __future__ import annotations

import httpx
import pytest

from dev_backend.main import create_app as create_dev_backend
from windchill_mcp.http_app import create_app
from windchill_mcp.bridge import ProtocolBridge
from windchill_mcp.server import build_app_context


@pytest.fixture
def dev_app():
    return create_dev_backend()


@pytest.fixture
def stack(dev_app, gateway_config, gateway_env, monkeypatch):
    monkeypatch.delenv("MCP_SERVER_TOKEN", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    ctx = build_app_context(
        gateway_config, env=gateway_env, transport=httpx.ASGITransport(app=dev_app)
    )
    bridge = ProtocolBridge(
        "http://gateway/api",
        call_timeout=5.0,
        list_timeout=5.0,
        transport=httpx.ASGITransport(app=create_app(ctx)),
    )
    return ctx, bridge


async def _rotate_csrf(dev_app) -> None:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=dev_app), base_url="http://wc1.example", auth=("u", "p")
    ) as client:
        response = await client.post("/_dev/rotate-csrf")
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_list_tools_over_jsonrpc(stack):
    ctx, bridge = stack
    async with bridge:
        tools = await bridge.list_tools()
    await ctx.aclose()

    assert len(tools) == 9
    assert bridge.connection_status == "connected"


@pytest.mark.asyncio
async def test_search_and_get(stack):
    ctx, bridge = stack
    async with bridge:
        found = await bridge.call_tool("part_search", {"name": "BRACKET*"})
        exact = await bridge.call_tool("part_search", {"number": "0000000002"})
        part = await bridge.call_tool("part_get", {"id": "OR:wt.part.WTPart:1"})
        structure = await bridge.call_tool(
            "part_get_structure", {"id": "OR:wt.part.WTPart:2", "levels": 3}
        )
    await ctx.aclose()

    assert [p["Number"] for p in found["value"]] == ["0000000001", "0000000002"]
    assert [p["Name"] for p in exact["value"]] == ["BRACKET ASSEMBLY"]
    assert part["Name"] == "BRACKET"
    assert structure["Levels"] == "3"


@pytest.mark.asyncio
async def test_create_fetches_one_token_and_recovers_from_rotation(stack, dev_app):
    ctx, bridge = stack
    async with bridge:
        first = await bridge.call_tool("part_create", {"number": "0000000003", "name": "PLATE"})
        await bridge.call_tool("part_create", {"number": "0000000004", "name": "BOLT"})
        assert dev_app.state.csrf_fetches == 1

        await _rotate_csrf(dev_app)
        third = await bridge.call_tool("part_create", {"number": "0000000005", "name": "NUT"})
    await ctx.aclose()

    assert first["Number"] == "0000000003"
    assert third["ID"] == "OR:wt.part.WTPart:5"
    assert dev_app.state.csrf_fetches == 2
    assert [p["Number"] for p in dev_app.state.parts][-3:] == ["0000000003", "0000000004", "0000000005"]


@pytest.mark.asyncio
async def test_unknown_part_is_a_protocol_error(stack):
    from windchill_mcp.errors import ProtocolError

    ctx, bridge = stack
    async with bridge:
        with pytest.raises(ProtocolError) as exc_info:
            await bridge.call_tool("part_get", {"id": "OR:missing"})
    await ctx.aclose()

    assert exc_info.value.code == -32603
    assert "Part OR:missing not found" in exc_info.value.message


@pytest.mark.asyncio
async def test_switch_server_through_the_bridge(stack):
    ctx, bridge = stack
    async with bridge:
        outcome = await bridge.switch_server(2)
        current = await bridge.current_server()
        servers = await bridge.list_servers()
    await ctx.aclose()

    assert outcome["success"] is True
    assert current["id"] == 2
    assert [s["isActive"] for s in servers] == [False, True]
    assert ctx.backend.profile.id == 2


class _JsonRpcDown:
    """Gateway transport whose JSON-RPC endpoint is unavailable, so the bridge uses REST."""

    def __init__(self, app) -> None:
        self.asgi = httpx.ASGITransport(app=app)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/api/":
            return httpx.Response(503)
        response = await self.asgi.handle_async_request(request)
        await response.aread()
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [[], {}, 0, {"value": []}])
async def test_both_transports_return_the_same_result(app_ctx, monkeypatch, value):
    from windchill_mcp.registry import ToolDescriptor

    monkeypatch.delenv("MCP_SERVER_TOKEN", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)

    async def constant(params):
        return value

    app_ctx.registry.register("sample", [ToolDescriptor("constant", "Returns a fixed value", constant)])
    gateway = create_app(app_ctx)

    async with ProtocolBridge("http://gateway/api", transport=httpx.ASGITransport(app=gateway)) as bridge:
        via_rpc = await bridge.call_tool("sample_constant", {})
        assert bridge.connection_status == "connected"
    async with ProtocolBridge(
        "http://gateway/api", transport=httpx.MockTransport(_JsonRpcDown(gateway))
    ) as bridge:
        via_rest = await bridge.call_tool("sample_constant", {})
        assert bridge.connection_status == "fallback"
    await app_ctx.aclose()

    assert via_rpc == via_rest == value
