"""
Tool registry and dispatcher.

Agents contribute ToolDescriptors under short names; the registry stores them
under ``<agent>_<tool>`` in one flat namespace. Registration happens once at
startup and a duplicate name is fatal. Invocation validates the arguments
against the schema's required list and the primitive type table below, then
awaits the bound handler. The dispatcher never retries.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import DuplicateToolError, ToolNotFound, ValidationError
from .observability import InMemoryMetrics, elapsed_ms
from .trace_context import create_context, reset_context, set_current_context

logger = logging.getLogger("windchill_mcp.registry")

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    handler: ToolHandler
    input_schema: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    agent: str = ""

    @property
    def required(self) -> List[str]:
        return list(self.input_schema.get("required") or [])

    @property
    def properties(self) -> Mapping[str, Any]:
        return self.input_schema.get("properties") or {}

    def public_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": dict(self.input_schema),
        }


def _coerce_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise ValueError("expected string")


def _coerce_number(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("expected number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 10)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            pass
    raise ValueError("expected number")


def _coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise ValueError("expected boolean")


def _from_json(value: str, kind: type, label: str) -> Any:
    try:
        parsed = json.loads(value)
    except ValueError:
        raise ValueError(f"expected {label}") from None
    if not isinstance(parsed, kind):
        raise ValueError(f"expected {label}")
    return parsed


def _coerce_array(value: Any) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, str):
        return _from_json(value, list, "array")
    raise ValueError("expected array")


def _coerce_object(value: Any) -> dict:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        return _from_json(value, dict, "object")
    raise ValueError("expected object")


COERCERS: Dict[str, Callable[[Any], Any]] = {
    "string": _coerce_string,
    "number": _coerce_number,
    "boolean": _coerce_boolean,
    "array": _coerce_array,
    "object": _coerce_object,
}


def validate_arguments(descriptor: ToolDescriptor, arguments: Any) -> Dict[str, Any]:
    """
    Check required fields and coerce primitive types. Reports every missing
    and every malformed field in one ValidationError.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ValidationError(descriptor.name, invalid={"arguments": "expected object"})

    missing = [
        name for name in descriptor.required if arguments.get(name) in (None, "")
    ]
    invalid: Dict[str, str] = {}
    coerced = dict(arguments)
    for name, value in arguments.items():
        if value is None:
            continue
        spec = descriptor.properties.get(name)
        kind = spec.get("type") if isinstance(spec, dict) else None
        coercer = COERCERS.get(kind) if isinstance(kind, str) else None
        if coercer is None:
            continue
        try:
            coerced[name] = coercer(value)
        except ValueError as exc:
            invalid[name] = str(exc)

    if missing or invalid:
        raise ValidationError(descriptor.name, missing=missing, invalid=invalid)
    return coerced


class ToolRegistry:
    def __init__(self, metrics: Optional[InMemoryMetrics] = None) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}
        self._agents: Dict[str, List[str]] = {}
        self.metrics = metrics

    def register(self, agent_name: str, tools: Iterable[ToolDescriptor]) -> List[str]:
        staged: Dict[str, ToolDescriptor] = {}
        for tool in tools:
            full_name = f"{agent_name}_{tool.name}"
            if full_name in self._tools or full_name in staged:
                raise DuplicateToolError(full_name)
            staged[full_name] = replace(tool, name=full_name, agent=agent_name)
        self._tools.update(staged)
        self._agents.setdefault(agent_name, []).extend(staged)
        logger.debug(f"Registered {len(staged)} tool(s) for agent {agent_name}: {sorted(staged)}")
        return list(staged)

    def list(self) -> List[Dict[str, Any]]:
        return [tool.public_dict() for tool in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools)

    def agents(self) -> List[str]:
        return list(self._agents)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def invoke(self, name: str, arguments: Any = None) -> Any:
        descriptor = self._tools.get(name)
        if descriptor is None:
            logger.error(f"Tool not found: {name}", extra={"tool": name})
            raise ToolNotFound(name)

        ctx = create_context(tool=name)
        token = set_current_context(ctx)
        extra: Dict[str, Any] = {"tool": name, "trace_id": ctx["trace_id"]}
        logger.info(f"Tool execution started: {name}", extra=extra)
        start = time.perf_counter()
        try:
            args = validate_arguments(descriptor, arguments)
            result = await descriptor.handler(args)
        except ValidationError as exc:
            self._record(name, start, error=True)
            logger.warning(f"Tool arguments rejected: {exc.message}", extra=extra)
            raise
        except Exception as exc:
            duration = self._record(name, start, error=True)
            logger.error(
                f"Tool execution failed: {type(exc).__name__}: {exc}",
                extra={**extra, "duration_ms": round(duration, 1)},
            )
            raise
        finally:
            reset_context(token)
        duration = self._record(name, start, error=False)
        logger.info(
            f"Tool execution successful: {name}",
            extra={**extra, "duration_ms": round(duration, 1)},
        )
        return result

    def _record(self, name: str, start: float, error: bool) -> float:
        duration = elapsed_ms(start)
        if self.metrics is not None:
            self.metrics.record(name, duration, error=error)
        return duration
