"""
Tool modules. Each exposes ``register_<agent>_tools(registry, backend)``;
further domain agents plug in the same way.
"""
from __future__ import annotations

from ..backend import AuthenticatedBackendClient
from ..registry import ToolRegistry
from .part import register_part_tools
from .servermanager import register_servermanager_tools


def register_all_tools(registry: ToolRegistry, backend: AuthenticatedBackendClient) -> None:
    register_part_tools(registry, backend)
    register_servermanager_tools(registry, backend)
