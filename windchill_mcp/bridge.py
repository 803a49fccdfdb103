"""
Client-side protocol bridge.

Talks to a gateway first over JSON-RPC (``POST <base>/``) and, when that
transport fails, once more over plain REST (``GET <base>/tools``,
``POST <base>/tools/<name>``). An explicit JSON-RPC error is final and never
falls back. Each attempt is raced against a fixed deadline.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .errors import (
    BackendError,
    ExecutionFailed,
    GatewayError,
    ProtocolError,
    ToolNotFound,
    TransportError,
)
from .trace_context import generate_request_id

logger = logging.getLogger("windchill_mcp.bridge")

DEFAULT_BASE_URL = "http://127.0.0.1:3000/api"
DEFAULT_CALL_TIMEOUT = 15.0
DEFAULT_LIST_TIMEOUT = 5.0

CONNECTED = "connected"
FALLBACK = "fallback"
DISCONNECTED = "disconnected"


def unwrap_content(result: Any) -> Any:
    """
    Return the payload inside an MCP content envelope.

    ``{"content": [{"type": "text", "text": "<json>"}]}`` becomes the parsed
    JSON value, or the raw text when it is not JSON. Anything else is returned
    untouched.
    """
    if not isinstance(result, dict):
        return result
    content = result.get("content")
    if not isinstance(content, list) or not content:
        return result
    first = content[0]
    if not isinstance(first, dict) or first.get("type") != "text":
        return result
    text = first.get("text")
    if not isinstance(text, str):
        return result
    try:
        return json.loads(text)
    except ValueError:
        return text


def _tool_list(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("tools")
    if not isinstance(payload, list):
        raise TransportError("Malformed tool list")
    return payload


def _server_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


class ProtocolBridge:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        list_timeout: float = DEFAULT_LIST_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.call_timeout = call_timeout
        self.list_timeout = list_timeout
        self.connection_status = DISCONNECTED
        kwargs: Dict[str, Any] = {}
        if transport is not None:
            kwargs["transport"] = transport
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Content-Type": "application/json", **(headers or {})},
            timeout=None,
            **kwargs,
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs: Any) -> "ProtocolBridge":
        cfg = config.get("bridge", {}) or {}
        return cls(
            cfg.get("base_url", DEFAULT_BASE_URL),
            call_timeout=float(cfg.get("call_timeout", DEFAULT_CALL_TIMEOUT)),
            list_timeout=float(cfg.get("list_timeout", DEFAULT_LIST_TIMEOUT)),
            **kwargs,
        )

    async def __aenter__(self) -> "ProtocolBridge":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _race(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        try:
            return await asyncio.wait_for(self._client.request(method, path, **kwargs), timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"{method} {path or '/'} timed out after {timeout:g}s") from None
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path or '/'} failed: {exc or type(exc).__name__}") from exc

    async def _rpc(self, method: str, params: Dict[str, Any], timeout: float) -> Any:
        envelope = {
            "jsonrpc": "2.0",
            "id": generate_request_id(),
            "method": method,
            "params": params,
        }
        response = await self._race("POST", "", timeout, json=envelope)
        if not response.is_success:
            raise TransportError(
                f"JSON-RPC endpoint answered HTTP {response.status_code}",
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError:
            raise TransportError("JSON-RPC endpoint returned malformed JSON") from None
        if not isinstance(payload, dict):
            raise TransportError("JSON-RPC endpoint returned malformed JSON")
        error = payload.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise ProtocolError(
                error.get("code", -32603), error.get("message", "Internal error"), error.get("data")
            )
        if "result" not in payload:
            raise TransportError("JSON-RPC response carries neither result nor error")
        return payload["result"]

    async def list_tools(self) -> List[Dict[str, Any]]:
        try:
            tools = _tool_list(await self._rpc("tools/list", {}, self.list_timeout))
        except TransportError as exc:
            logger.warning(f"MCP protocol failed, falling back to direct HTTP: {exc.message}")
        else:
            self.connection_status = CONNECTED
            return tools

        try:
            response = await self._race("GET", "tools", self.list_timeout)
            if not response.is_success:
                raise TransportError(
                    f"HTTP {response.status_code}: {_server_message(response)}",
                    status=response.status_code,
                )
            try:
                tools = _tool_list(response.json())
            except ValueError:
                raise TransportError("Tool list is not valid JSON") from None
        except TransportError as exc:
            self.connection_status = DISCONNECTED
            raise TransportError(f"Failed to load tools: {exc.message}", status=exc.status) from exc
        self.connection_status = FALLBACK
        return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        arguments = arguments or {}
        try:
            result = await self._rpc(
                "tools/call", {"name": name, "arguments": arguments}, self.call_timeout
            )
        except ProtocolError:
            self.connection_status = CONNECTED
            raise
        except TransportError as exc:
            logger.warning(
                f"MCP protocol failed, falling back to direct HTTP: {exc.message}",
                extra={"tool": name},
            )
        else:
            self.connection_status = CONNECTED
            return unwrap_content(result)

        result = await self._call_rest(name, arguments)
        self.connection_status = FALLBACK
        return result

    async def _call_rest(self, name: str, arguments: Dict[str, Any]) -> Any:
        path = f"tools/{quote(name, safe='')}"
        try:
            response = await self._race("POST", path, self.call_timeout, json=arguments)
        except TransportError as exc:
            self.connection_status = DISCONNECTED
            raise ExecutionFailed(f"Failed to execute tool: {exc.message}") from exc

        status = response.status_code
        if response.is_success:
            try:
                return response.json()
            except ValueError:
                return response.text

        self.connection_status = DISCONNECTED
        if status == 404:
            raise ToolNotFound(name, status=404)
        message = _server_message(response)
        if status == 500:
            raise BackendError(f"Server error executing tool: {message}", status=500)
        raise ExecutionFailed(f"Failed to execute tool: HTTP {status}: {message}", status=status)

    async def list_tools_safe(self) -> List[Dict[str, Any]]:
        try:
            return await self.list_tools()
        except GatewayError as exc:
            logger.error(f"Tool list unavailable: {exc.message}")
            return []

    async def execute(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            result = await self.call_tool(name, arguments)
        except GatewayError as exc:
            logger.error(f"Tool {name} failed: {exc.message}", extra={"tool": name})
            outcome: Dict[str, Any] = {"success": False, "error": exc.message}
            if exc.status is not None:
                outcome["status"] = exc.status
            return outcome
        return {"success": True, "result": result}

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._race(method, path, self.list_timeout, **kwargs)
        if not response.is_success:
            raise TransportError(_server_message(response), status=response.status_code)
        try:
            return response.json()
        except ValueError:
            raise TransportError(f"{method} {path or '/'} returned malformed JSON") from None

    async def health(self) -> Dict[str, Any]:
        return await self._json("GET", "health")

    async def server_info(self) -> Dict[str, Any]:
        return await self._json("GET", "")

    async def list_servers(self) -> List[Dict[str, Any]]:
        payload = await self._json("GET", "servers")
        return payload.get("servers", []) if isinstance(payload, dict) else payload

    async def current_server(self) -> Dict[str, Any]:
        return await self._json("GET", "servers/current")

    async def switch_server(self, server_id: int) -> Dict[str, Any]:
        return await self._json("POST", "servers/switch", json={"serverId": server_id})
