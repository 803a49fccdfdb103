from __future__ import annotations

from typing import Any, Dict, List

from ..backend import AuthenticatedBackendClient
from ..registry import ToolDescriptor, ToolRegistry

AGENT_NAME = "part"
PARTS_ENDPOINT = "/ProdMgmt/Parts"


def _quote(value: Any) -> str:
    return str(value).replace("'", "''")


def build_part_filter(params: Dict[str, Any]) -> str:
    """OData $filter for the part search fields; ``*`` switches to a wildcard match."""
    clauses: List[str] = []
    for field, prop in (("number", "Number"), ("name", "Name"), ("state", "State/Value")):
        value = params.get(field)
        if value in (None, ""):
            continue
        if "*" in str(value):
            clauses.append(f"startswith({prop},'{_quote(str(value).rstrip('*'))}')")
        else:
            clauses.append(f"{prop} eq '{_quote(value)}'")
    return " and ".join(clauses)


def register_part_tools(registry: ToolRegistry, backend: AuthenticatedBackendClient) -> None:
    async def search(params: Dict[str, Any]) -> Any:
        query: Dict[str, Any] = {}
        odata_filter = build_part_filter(params)
        if odata_filter:
            query["$filter"] = odata_filter
        if params.get("limit"):
            query["$top"] = int(params["limit"])
        wildcard = any("*" in str(params.get(f) or "") for f in ("number", "name", "state"))
        return await backend.get(PARTS_ENDPOINT, query or None, wildcard=wildcard)

    async def get(params: Dict[str, Any]) -> Any:
        return await backend.get(f"{PARTS_ENDPOINT}('{_quote(params['id'])}')")

    async def create(params: Dict[str, Any]) -> Any:
        body = {"Number": params["number"], "Name": params["name"]}
        if params.get("description"):
            body["Description"] = params["description"]
        return await backend.post(PARTS_ENDPOINT, body)

    async def get_structure(params: Dict[str, Any]) -> Any:
        levels = int(params.get("levels") or 1)
        return await backend.get(
            f"{PARTS_ENDPOINT}('{_quote(params['id'])}')/Structure", {"levels": levels}
        )

    registry.register(
        AGENT_NAME,
        [
            ToolDescriptor(
                name="search",
                description="Search for parts in Windchill (use * in a value for wildcard search)",
                handler=search,
                input_schema={
                    "type": "object",
                    "properties": {
                        "number": {"type": "string", "description": "Part number"},
                        "name": {"type": "string", "description": "Part name"},
                        "state": {"type": "string", "description": "Part state"},
                        "limit": {"type": "number", "description": "Maximum number of results"},
                    },
                },
            ),
            ToolDescriptor(
                name="get",
                description="Get part details by ID",
                handler=get,
                input_schema={
                    "type": "object",
                    "properties": {"id": {"type": "string", "description": "Part ID"}},
                    "required": ["id"],
                },
            ),
            ToolDescriptor(
                name="create",
                description="Create a new part",
                handler=create,
                input_schema={
                    "type": "object",
                    "properties": {
                        "number": {"type": "string", "description": "Part number"},
                        "name": {"type": "string", "description": "Part name"},
                        "description": {"type": "string", "description": "Part description"},
                    },
                    "required": ["number", "name"],
                },
            ),
            ToolDescriptor(
                name="get_structure",
                description="Get part BOM structure",
                handler=get_structure,
                input_schema={
                    "type": "object",
                    "properties": {
                        "id": {"type": "string", "description": "Part ID"},
                        "levels": {"type": "number", "description": "Number of BOM levels to retrieve"},
                    },
                    "required": ["id"],
                },
            ),
        ],
    )
