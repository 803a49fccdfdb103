from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

from .backend import AuthenticatedBackendClient
from .config import (
    DEFAULT_BACKEND_TIMEOUT,
    DEFAULT_CONNECTION_TEST_PATH,
    load_config,
    section,
)
from .errors import GatewayError
from .observability import InMemoryMetrics, setup_logger
from .profiles import ServerProfileStore
from .registry import ToolRegistry
from .tools import register_all_tools

NO_RESULT = "No result returned"


@dataclass
class AppContext:
    config: Dict[str, Any]
    store: ServerProfileStore
    backend: AuthenticatedBackendClient
    registry: ToolRegistry
    metrics: InMemoryMetrics
    logger: logging.Logger
    started_at: float = field(default_factory=time.monotonic)

    @property
    def server_cfg(self) -> Dict[str, Any]:
        return section(self.config, "server")

    @property
    def name(self) -> str:
        return str(self.server_cfg.get("name", "windchill-mcp"))

    @property
    def version(self) -> str:
        return str(self.server_cfg.get("version", "1.0.0"))

    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    async def aclose(self) -> None:
        await self.backend.aclose()


def build_http_settings(config: Dict[str, Any]) -> tuple[httpx.Limits, httpx.Timeout]:
    http_limits = section(config, "server").get("http_limits", {}) or {}
    read_default = section(config, "backend").get("timeout", DEFAULT_BACKEND_TIMEOUT)
    limits = httpx.Limits(
        max_connections=int(http_limits.get("max_connections", 100)),
        max_keepalive_connections=int(http_limits.get("max_keepalive_connections", 20)),
    )
    timeout = httpx.Timeout(
        connect=float(http_limits.get("connect_timeout", 5.0)),
        read=float(http_limits.get("read_timeout", read_default)),
        write=float(http_limits.get("write_timeout", 10.0)),
        pool=float(http_limits.get("pool_timeout", 5.0)),
    )
    return limits, timeout


def build_app_context(
    config: Optional[Dict[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AppContext:
    """
    Wire the gateway: profiles from the environment, one backend client,
    the registry with every tool module registered. Raises ConfigurationError
    when no profile is configured or two tools collide.
    """
    config = load_config() if config is None else config
    logger = setup_logger(config)
    backend_cfg = section(config, "backend")

    store = ServerProfileStore.from_env(env, backend_cfg)
    limits, timeout = build_http_settings(config)
    backend = AuthenticatedBackendClient(
        store,
        transport=transport,
        timeout=timeout,
        limits=limits,
        connection_test_path=str(
            backend_cfg.get("connection_test_path", DEFAULT_CONNECTION_TEST_PATH)
        ),
        connection_test_timeout=float(backend_cfg.get("connection_test_timeout", 10.0)),
    )
    metrics = InMemoryMetrics()
    registry = ToolRegistry(metrics=metrics)
    register_all_tools(registry, backend)
    logger.info(f"Registered {len(registry)} tools from agents: {', '.join(registry.agents())}")
    return AppContext(
        config=config,
        store=store,
        backend=backend,
        registry=registry,
        metrics=metrics,
        logger=logger,
    )


def format_tool_result(result: Any) -> str:
    if result is None or result == "":
        return NO_RESULT
    return json.dumps(result, indent=2, ensure_ascii=False, default=str)


def tool_result_content(result: Any) -> Dict[str, Any]:
    """The MCP content envelope for a successful call, as plain JSON."""
    return {"content": [{"type": "text", "text": format_tool_result(result)}]}


def create_mcp_server(ctx: AppContext) -> Server:
    """
    Serve the registry over MCP. Results are one text item holding
    pretty-printed JSON; failures come back as ``isError`` content.
    """
    server = Server(ctx.name, version=ctx.version)
    logger = logging.getLogger("windchill_mcp.server")

    @server.list_tools()
    async def list_tools() -> List[Tool]:
        return [
            Tool(name=t["name"], description=t["description"], inputSchema=t["inputSchema"])
            for t in ctx.registry.list()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: Dict[str, Any]) -> CallToolResult:
        try:
            result = await ctx.registry.invoke(name, arguments or {})
        except GatewayError as exc:
            return CallToolResult(
                content=[TextContent(type="text", text=f"Error: {exc.message}")],
                isError=True,
            )
        except Exception as exc:
            logger.exception(f"Unexpected error in tool {name}", extra={"tool": name})
            return CallToolResult(
                content=[TextContent(type="text", text=f"Error: {exc}")],
                isError=True,
            )
        return CallToolResult(
            content=[TextContent(type="text", text=format_tool_result(result))],
            isError=False,
        )

    return server


async def run_stdio(ctx: AppContext) -> None:
    server = create_mcp_server(ctx)
    ctx.logger.info(
        f"MCP stdio transport ready ({len(ctx.registry)} tools, pid {os.getpid()})"
    )
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())
