"""
Main entry point for the Windchill MCP gateway.

MCP_TRANSPORT selects the surface:
- http (default): FastAPI app under uvicorn
- stdio: MCP over stdin/stdout
- both: stdio in the foreground, HTTP alongside it
"""
from __future__ import annotations

import asyncio
import os
import sys

import uvicorn

from .config import section
from .env_utils import is_production_env
from .errors import ConfigurationError
from .http_app import create_app
from .server import AppContext, build_app_context, run_stdio

TRANSPORTS = ("http", "stdio", "both")


def _uvicorn_config(ctx: AppContext) -> uvicorn.Config:
    server_cfg = section(ctx.config, "server")
    host = os.getenv("MCP_SERVER_HOST", server_cfg.get("host", "127.0.0.1"))
    port = int(os.getenv("MCP_SERVER_PORT", str(server_cfg.get("port", 3000))))
    ctx.logger.info(f"HTTP surface on http://{host}:{port} (JSON-RPC at / and /api)")
    return uvicorn.Config(
        create_app(ctx),
        host=host,
        port=port,
        log_level=str(os.getenv("LOG_LEVEL") or server_cfg.get("log_level", "INFO")).lower(),
        server_header=False,
    )


async def _run_both(ctx: AppContext) -> None:
    http_server = uvicorn.Server(_uvicorn_config(ctx))
    http_task = asyncio.create_task(http_server.serve())
    try:
        await run_stdio(ctx)
    finally:
        http_server.should_exit = True
        await http_task


async def _run_stdio(ctx: AppContext) -> None:
    try:
        await run_stdio(ctx)
    finally:
        await ctx.aclose()


def main() -> None:
    transport = os.getenv("MCP_TRANSPORT", "http").strip().lower()
    if transport not in TRANSPORTS:
        print(f"MCP_TRANSPORT must be one of {', '.join(TRANSPORTS)}, got {transport!r}", file=sys.stderr)
        sys.exit(2)
    if transport != "stdio" and is_production_env() and not os.getenv("MCP_SERVER_TOKEN", "").strip():
        print("MCP_SERVER_TOKEN is required in production.", file=sys.stderr)
        sys.exit(1)

    try:
        ctx = build_app_context()
    except (ConfigurationError, FileNotFoundError, ValueError) as e:
        print(f"Failed to start Windchill MCP gateway: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if transport == "http":
            uvicorn.Server(_uvicorn_config(ctx)).run()
        elif transport == "stdio":
            asyncio.run(_run_stdio(ctx))
        else:
            asyncio.run(_run_both(ctx))
    except KeyboardInterrupt:
        print("\nServer shutdown requested...", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    main()
