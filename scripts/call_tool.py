from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Any, Dict

from windchill_mcp.bridge import ProtocolBridge


MCP_URL = os.getenv("WINDCHILL_MCP_URL", "http://127.0.0.1:3000/api")


async def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: python scripts/call_tool.py <tool_name> ['<json-args>']")
        raise SystemExit(1)

    tool_name = sys.argv[1]
    raw_args = sys.argv[2] if len(sys.argv) > 2 else "{}"

    try:
        params: Dict[str, Any] = json.loads(raw_args)
    except ValueError as exc:
        print("Failed to parse JSON arguments")
        print(repr(exc))
        raise SystemExit(1)

    async with ProtocolBridge(MCP_URL) as bridge:
        outcome = await bridge.execute(tool_name, params)
        if outcome["success"]:
            print(f"Tool call result (via {bridge.connection_status}):")
            print(json.dumps(outcome["result"], indent=2, ensure_ascii=False))
        else:
            print("Tool call failed:")
            print(outcome["error"])
            raise SystemExit(1)


if __name__ == "__main__":
    asyncio.run(main())
