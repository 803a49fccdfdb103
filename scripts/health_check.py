from __future__ import annotations

import asyncio
import os

from windchill_mcp.bridge import ProtocolBridge
from windchill_mcp.errors import GatewayError


MCP_URL = os.getenv("WINDCHILL_MCP_URL", "http://127.0.0.1:3000/api")


async def main() -> None:
    print(f"Connecting to Windchill MCP gateway at {MCP_URL}...")
    async with ProtocolBridge(MCP_URL) as bridge:
        try:
            health = await bridge.health()
        except GatewayError as exc:
            print(f"Health endpoint FAILED: {exc.message}")
            raise SystemExit(1)
        print(f"{health['service']} {health['version']}: {health['status']}, {health['tools']} tools")

        current = await bridge.current_server()
        print(f"Active Windchill server: {current['id']} {current['name']} ({current['url']})")

        print("Calling servermanager_test_connection for the active server...")
        outcome = await bridge.execute("servermanager_test_connection", {"serverId": current["id"]})
        if outcome["success"] and outcome["result"].get("reachable"):
            print("Windchill server reachable")
        else:
            print("Windchill server NOT reachable")
            print(outcome.get("error") or outcome["result"].get("message"))
            raise SystemExit(1)


if __name__ == "__main__":
    asyncio.run(main())
