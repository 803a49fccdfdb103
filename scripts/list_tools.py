from __future__ import annotations

import asyncio
import os

from windchill_mcp.bridge import ProtocolBridge


MCP_URL = os.getenv("WINDCHILL_MCP_URL", "http://127.0.0.1:3000/api")


async def main() -> None:
    async with ProtocolBridge(MCP_URL) as bridge:
        tools = await bridge.list_tools_safe()
        print(f"Available tools ({bridge.connection_status}):")
        for tool in tools:
            print(f"- {tool['name']}: {tool.get('description', '')}")


if __name__ == "__main__":
    asyncio.run(main())
