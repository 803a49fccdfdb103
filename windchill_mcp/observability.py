from __future__ import annotations

import logging
import os
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

REDACTED = "[REDACTED]"
SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie"})

_STRUCTURED_FIELDS = ("tool", "trace_id", "request_id", "server_id", "duration_ms")


class StructuredFormatter(logging.Formatter):
    """Single-line formatter that tolerates records without the structured extras."""

    def format(self, record: logging.LogRecord) -> str:
        for name in _STRUCTURED_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "")
        return super().format(record)


LOG_FORMAT = (
    '{"ts":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","tool":"%(tool)s",'
    '"trace_id":"%(trace_id)s","request_id":"%(request_id)s","server_id":"%(server_id)s",'
    '"duration_ms":"%(duration_ms)s","msg":"%(message)s"}'
)


def setup_logger(config: Dict[str, Any]) -> logging.Logger:
    logger = logging.getLogger("windchill_mcp")
    if logger.handlers:
        return logger
    server_cfg = config.get("server", {}) or {}
    level_name = str(os.getenv("LOG_LEVEL") or server_cfg.get("log_level", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    # stdout belongs to the MCP stdio transport
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        k: (REDACTED if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()
    }


@dataclass
class ToolMetrics:
    calls: int = 0
    errors: int = 0
    total_latency_ms: float = 0.0

    def observe(self, duration_ms: float, error: bool) -> None:
        self.calls += 1
        self.total_latency_ms += float(duration_ms)
        if error:
            self.errors += 1

    @property
    def avg_latency_ms(self) -> float:
        if self.calls == 0:
            return 0.0
        return self.total_latency_ms / self.calls


class InMemoryMetrics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: Dict[str, ToolMetrics] = {}

    def record(self, tool: str, duration_ms: float, error: bool) -> None:
        with self._lock:
            metrics = self._tools.get(tool)
            if metrics is None:
                metrics = ToolMetrics()
                self._tools[tool] = metrics
            metrics.observe(duration_ms, error)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {
                name: {
                    "calls": float(m.calls),
                    "errors": float(m.errors),
                    "avg_latency_ms": float(m.avg_latency_ms),
                }
                for name, m in self._tools.items()
            }


def format_prometheus(snapshot: Dict[str, Dict[str, float]], healthy: bool = True) -> str:
    lines = [
        "# HELP windchill_mcp_healthy Gateway health status",
        "# TYPE windchill_mcp_healthy gauge",
        f"windchill_mcp_healthy {1 if healthy else 0}",
    ]
    series = (
        ("windchill_mcp_tool_calls_total", "counter", "Total number of tool calls", "calls"),
        ("windchill_mcp_tool_errors_total", "counter", "Total number of tool errors", "errors"),
        ("windchill_mcp_tool_avg_latency_ms", "gauge", "Average tool latency in milliseconds", "avg_latency_ms"),
    )
    for metric, kind, help_text, key in series:
        lines.append(f"# HELP {metric} {help_text}")
        lines.append(f"# TYPE {metric} {kind}")
        for tool, values in sorted(snapshot.items()):
            lines.append(f'{metric}{{tool="{tool}"}} {values[key]}')
    return "\n".join(lines) + "\n"


def elapsed_ms(start: float, end: Optional[float] = None) -> float:
    return ((end if end is not None else time.perf_counter()) - start) * 1000.0
