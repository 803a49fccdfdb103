from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "server.yaml"

DEFAULT_API_PATH = "/servlet/odata"
DEFAULT_BACKEND_TIMEOUT = 30.0
DEFAULT_MAX_SERVERS = 10
DEFAULT_CONNECTION_TEST_PATH = "/servlet/WindchillAuthGW/wt.httpgw.HTTPServer/"


def config_path() -> Path:
    return Path(os.getenv("MCP_SERVER_CONFIG", str(DEFAULT_CONFIG_PATH)))


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    path = path or config_path()
    if not path.exists():
        raise FileNotFoundError(f"MCP server config not found at {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping")
    return data


def section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return value
