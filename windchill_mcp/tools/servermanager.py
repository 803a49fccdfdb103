from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from ..backend import AuthenticatedBackendClient
from ..profiles import ServerProfile
from ..registry import ToolDescriptor, ToolRegistry

logger = logging.getLogger("windchill_mcp.tools.servermanager")

AGENT_NAME = "servermanager"

_SERVER_ID_SCHEMA = {
    "type": "object",
    "properties": {
        "serverId": {
            "type": "number",
            "description": "Server ID (1, 2, 3, ...). Use list_servers to see available servers.",
        }
    },
    "required": ["serverId"],
}
_NO_ARGS_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}


def _details(profile: ServerProfile) -> Dict[str, Any]:
    return {**profile.public_dict(), "timeout": profile.timeout, "apiPath": profile.api_path}


def register_servermanager_tools(registry: ToolRegistry, backend: AuthenticatedBackendClient) -> None:
    store = backend.store

    async def list_servers(params: Dict[str, Any]) -> Dict[str, Any]:
        active_id = store.active_id
        servers = [
            {**p.public_dict(), "isActive": p.id == active_id} for p in store.all()
        ]
        return {"servers": servers, "totalCount": len(servers), "activeServerId": active_id}

    async def get_current_server(params: Dict[str, Any]) -> Dict[str, Any]:
        return _details(store.active)

    async def switch_server(params: Dict[str, Any]) -> Dict[str, Any]:
        previous = store.active
        current = await backend.switch_server(params["serverId"])
        return {
            "success": True,
            "message": f'Successfully switched from "{previous.name}" to "{current.name}"',
            "previousServer": {"id": previous.id, "name": previous.name, "url": previous.base_url},
            "currentServer": current.public_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def test_connection(params: Dict[str, Any]) -> Dict[str, Any]:
        profile = store.require(params["serverId"])
        outcome = await backend.probe(profile)
        summary = {"id": profile.id, "name": profile.name, "url": profile.base_url}
        if outcome["reachable"]:
            return {
                "success": True,
                "reachable": True,
                "message": f'Server "{profile.name}" is reachable',
                "server": summary,
                "statusCode": outcome["statusCode"],
                "responseTimeMs": outcome.get("responseTimeMs"),
            }
        if outcome["statusCode"] is not None:
            message = f'Server "{profile.name}" returned error status {outcome["statusCode"]}'
        else:
            message = f'Cannot connect to server "{profile.name}": {outcome["error"]}'
        return {
            "success": False,
            "reachable": False,
            "message": message,
            "server": summary,
            "statusCode": outcome["statusCode"],
            "error": outcome["error"],
        }

    async def get_server_info(params: Dict[str, Any]) -> Dict[str, Any]:
        profile = store.require(params["serverId"])
        return {
            **_details(profile),
            "isActive": profile.id == store.active_id,
            "fullApiUrl": profile.api_url,
        }

    registry.register(
        AGENT_NAME,
        [
            ToolDescriptor(
                name="list_servers",
                description="List all configured Windchill servers with their connection details and status",
                handler=list_servers,
                input_schema=_NO_ARGS_SCHEMA,
            ),
            ToolDescriptor(
                name="get_current_server",
                description="Get details about the currently active Windchill server",
                handler=get_current_server,
                input_schema=_NO_ARGS_SCHEMA,
            ),
            ToolDescriptor(
                name="switch_server",
                description=(
                    "Switch to a different Windchill server by its ID. "
                    "All subsequent operations will use the new server."
                ),
                handler=switch_server,
                input_schema=_SERVER_ID_SCHEMA,
            ),
            ToolDescriptor(
                name="test_connection",
                description="Test connectivity to a Windchill server without switching to it",
                handler=test_connection,
                input_schema=_SERVER_ID_SCHEMA,
            ),
            ToolDescriptor(
                name="get_server_info",
                description="Get detailed information about a specific Windchill server by its ID",
                handler=get_server_info,
                input_schema=_SERVER_ID_SCHEMA,
            ),
        ],
    )
