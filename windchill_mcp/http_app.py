"""
FastAPI surface of the gateway.

- JSON-RPC 2.0 (tools/list, tools/call) on POST / and POST /tools
- REST fallback: GET /tools, POST /tools/{name}
- Server management: GET /servers, GET /servers/current, POST /servers/switch
- GET /health, GET / and /info, GET /metrics

Every route is mounted twice, at the root and under /api.
"""
from __future__ import annotations

import hmac
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .env_utils import is_production_env
from .errors import GatewayError, ToolNotFound, UnknownServer, ValidationError
from .observability import format_prometheus
from .registry import ToolRegistry
from .server import AppContext, build_app_context, tool_result_content
from .trace_context import (
    CORRELATION_ID_HEADER,
    REQUEST_ID_HEADER,
    generate_request_id,
)

logger = logging.getLogger("windchill_mcp.http_app")

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

SWITCH_PROBE_TIMEOUT = 5.0
PUBLIC_PATHS = frozenset({"/health", "/api/health", "/metrics", "/api/metrics"})


class BearerTokenAuthMiddleware(BaseHTTPMiddleware):
    """Bearer token check for every route except health and metrics."""

    def __init__(self, app: ASGIApp, expected_token: Optional[str] = None):
        super().__init__(app)
        self.expected_token = expected_token or os.getenv("MCP_SERVER_TOKEN", "").strip()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in PUBLIC_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        if is_production_env() and not self.expected_token:
            logger.error("[Auth] MCP_SERVER_TOKEN not set in production")
            return JSONResponse(
                {"success": False, "error": "server_error", "message": "MCP_SERVER_TOKEN not configured"},
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

        if self.expected_token:
            auth_header = request.headers.get("authorization", "")
            if not auth_header.startswith("Bearer "):
                logger.warning(f"[Auth] Missing or invalid Authorization header for {request.method} {path}")
                return JSONResponse(
                    {"success": False, "error": "unauthorized", "message": "Missing or invalid Authorization header"},
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    headers={"WWW-Authenticate": "Bearer"},
                )
            if not hmac.compare_digest(auth_header[7:], self.expected_token):
                logger.warning(f"[Auth] Invalid token for {request.method} {path}")
                return JSONResponse(
                    {"success": False, "error": "unauthorized", "message": "Invalid token"},
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    headers={"WWW-Authenticate": "Bearer"},
                )

        return await call_next(request)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with a request id and echoes it on the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = (
            request.headers.get(REQUEST_ID_HEADER)
            or request.headers.get(CORRELATION_ID_HEADER)
            or generate_request_id()
        ).strip()
        request.state.request_id = request_id
        logger.debug(
            f"{request.method} {request.url.path}",
            extra={"request_id": request_id},
        )
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _rpc_result(msg_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "result": result}


def _rpc_error(msg_id: Any, code: int, message: str, data: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": msg_id, "error": error}


def is_jsonrpc(message: Any) -> bool:
    return isinstance(message, dict) and message.get("jsonrpc") == "2.0" and "method" in message


async def handle_jsonrpc(registry: ToolRegistry, message: Any) -> Dict[str, Any]:
    """Answer one JSON-RPC request. Never raises."""
    if not is_jsonrpc(message) or not isinstance(message.get("method"), str):
        msg_id = message.get("id") if isinstance(message, dict) else None
        return _rpc_error(msg_id, INVALID_REQUEST, "Invalid Request")

    msg_id = message.get("id")
    method = message["method"]
    params = message.get("params") or {}

    if method == "tools/list":
        return _rpc_result(msg_id, {"tools": registry.list()})
    if method != "tools/call":
        return _rpc_error(msg_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    name = params.get("name") if isinstance(params, dict) else None
    if not isinstance(name, str) or not name:
        return _rpc_error(msg_id, INVALID_PARAMS, "tools/call requires params.name")
    try:
        result = await registry.invoke(name, params.get("arguments") or {})
    except ToolNotFound as exc:
        return _rpc_error(msg_id, METHOD_NOT_FOUND, exc.message, exc.to_dict())
    except ValidationError as exc:
        return _rpc_error(msg_id, INVALID_PARAMS, exc.message, exc.to_dict())
    except GatewayError as exc:
        return _rpc_error(msg_id, INTERNAL_ERROR, exc.message, exc.to_dict())
    except Exception as exc:
        logger.exception(f"Unexpected error in tool {name}", extra={"tool": name})
        return _rpc_error(msg_id, INTERNAL_ERROR, str(exc) or "Internal error")
    return _rpc_result(msg_id, tool_result_content(result))


def _error_response(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": error, "message": message, **extra},
        status_code=status_code,
    )


async def read_arguments(request: Request) -> Dict[str, Any]:
    """Tool arguments from a JSON or form-encoded body. Raises ValueError."""
    body = await request.body()
    if not body.strip():
        return {}
    content_type = request.headers.get("content-type", "")
    text = body.decode("utf-8")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text, keep_blank_values=True))
    try:
        parsed = json.loads(text)
    except ValueError:
        if "application/json" in content_type:
            raise ValueError("Request body is not valid JSON") from None
        return dict(parse_qsl(text, keep_blank_values=True))
    if not isinstance(parsed, dict):
        raise ValueError("Request body must be a JSON object")
    return parsed


def _server_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def create_app(ctx: Optional[AppContext] = None) -> FastAPI:
    ctx = ctx or build_app_context()
    registry = ctx.registry
    store = ctx.store

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await ctx.aclose()

    app = FastAPI(
        title="Windchill MCP Gateway",
        description="MCP tool gateway for PTC Windchill OData services",
        version=ctx.version,
        lifespan=lifespan,
    )
    app.state.ctx = ctx

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(BearerTokenAuthMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(ctx.server_cfg.get("cors_origins") or ["*"]),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    router = APIRouter()

    @router.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "service": ctx.name,
            "version": ctx.version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "agents": registry.agents(),
            "tools": len(registry),
        }

    async def info() -> Dict[str, Any]:
        active = store.active
        return {
            "name": ctx.name,
            "version": ctx.version,
            "status": "running",
            "agents": registry.agents(),
            "tools": len(registry),
            "uptime": round(ctx.uptime(), 3),
            "windchillServer": {"id": active.id, "name": active.name, "url": active.base_url},
        }

    async def jsonrpc_endpoint(request: Request) -> JSONResponse:
        try:
            message = json.loads(await request.body() or b"null")
        except ValueError:
            return JSONResponse(_rpc_error(None, PARSE_ERROR, "Parse error"))
        return JSONResponse(jsonable_encoder(await handle_jsonrpc(registry, message)))

    router.add_api_route("/", info, methods=["GET"])
    router.add_api_route("/info", info, methods=["GET"])
    router.add_api_route("/", jsonrpc_endpoint, methods=["POST"])

    @router.get("/tools")
    async def list_tools() -> Dict[str, Any]:
        return {"tools": registry.list()}

    @router.post("/tools")
    async def tools_endpoint(request: Request) -> JSONResponse:
        body = await request.body()
        if body.strip():
            try:
                message = json.loads(body)
            except ValueError:
                message = None
            if is_jsonrpc(message):
                return JSONResponse(jsonable_encoder(await handle_jsonrpc(registry, message)))
        return JSONResponse({"tools": registry.list()})

    @router.post("/tools/{tool_name}")
    async def execute_tool(tool_name: str, request: Request) -> Response:
        request_id = getattr(request.state, "request_id", "")
        try:
            arguments = await read_arguments(request)
        except ValueError as exc:
            return _error_response(400, "Invalid request", str(exc))
        if tool_name not in registry:
            logger.error(f"Tool not found: {tool_name}", extra={"request_id": request_id})
            return _error_response(404, "ToolNotFound", f"Tool '{tool_name}' is not available")
        try:
            result = await registry.invoke(tool_name, arguments)
        except ValidationError as exc:
            return _error_response(400, "ValidationError", exc.message, missing=exc.missing, invalid=exc.invalid)
        except GatewayError as exc:
            extra = {"status": exc.status} if exc.status is not None else {}
            return _error_response(500, type(exc).__name__, exc.message, **extra)
        except Exception as exc:
            logger.exception(f"Unexpected error in tool {tool_name}", extra={"request_id": request_id})
            return _error_response(500, "Tool execution failed", str(exc) or "Internal server error")
        return JSONResponse(jsonable_encoder(result))

    @router.get("/servers")
    async def list_servers() -> Dict[str, Any]:
        active_id = store.active_id
        return {
            "servers": [{**p.public_dict(), "isActive": p.id == active_id} for p in store.all()]
        }

    @router.get("/servers/current")
    async def current_server() -> Dict[str, Any]:
        return store.active.public_dict()

    @router.post("/servers/switch")
    async def switch_server(request: Request) -> Response:
        try:
            payload = json.loads(await request.body() or b"{}")
        except ValueError:
            payload = None
        server_id = _server_id(payload.get("serverId")) if isinstance(payload, dict) else None
        if server_id is None:
            return _error_response(400, "Invalid request", "serverId is required and must be a number")
        try:
            target = store.require(server_id)
        except UnknownServer as exc:
            return _error_response(404, "Server not found", exc.message)

        previous = store.active
        logger.info(f"Testing connectivity to server {target.id} before switch from {previous.id}")
        outcome = await ctx.backend.probe(target, timeout=SWITCH_PROBE_TIMEOUT)
        if not outcome["reachable"]:
            return _error_response(
                503,
                "Server unreachable",
                f"Cannot connect to {target.name} at {target.base_url}",
                details=outcome["error"],
            )

        current = await ctx.backend.switch_server(target.id)
        return JSONResponse(
            {
                "success": True,
                "message": f"Switched to {current.name}",
                "previousServer": {"id": previous.id, "name": previous.name},
                "currentServer": current.public_dict(),
            }
        )

    @router.get("/metrics")
    async def metrics() -> Response:
        return Response(
            content=format_prometheus(ctx.metrics.snapshot()),
            media_type="text/plain; version=0.0.4",
        )

    app.include_router(router)
    app.include_router(router, prefix="/api")
    # bare /api without the trailing slash
    app.add_api_route("/api", info, methods=["GET"], include_in_schema=False)
    app.add_api_route("/api", jsonrpc_endpoint, methods=["POST"], include_in_schema=False)
    return app
