"""
Trace identifiers for tool invocations and backend calls.

Each tool invocation runs inside a trace context (a ContextVar, so concurrent
invocations on the same event loop never see each other's ids). Outbound
backend calls carry a W3C traceparent derived from it plus the correlation id,
so backend logs can be joined with ours.
"""
from __future__ import annotations

import random
import string
import time
import uuid
from contextvars import ContextVar, Token
from typing import Any, Dict, Optional, Tuple

TRACEPARENT_HEADER = "traceparent"
CORRELATION_ID_HEADER = "x-correlation-id"
REQUEST_ID_HEADER = "x-request-id"

TRACE_VERSION = "00"

_trace_context: ContextVar[Dict[str, Any]] = ContextVar("trace_context", default={})

_ALPHABET = string.ascii_lowercase + string.digits


def generate_trace_id() -> str:
    return f"{random.getrandbits(128):032x}"


def generate_span_id() -> str:
    return f"{random.getrandbits(64):016x}"


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def generate_request_id(prefix: str = "req") -> str:
    """Short log-friendly id, e.g. ``req_1718000000000_k3j9x0a1b``."""
    suffix = "".join(random.choice(_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def parse_traceparent(header: str) -> Optional[Tuple[str, str, str, str]]:
    """
    Parse ``{version}-{trace-id}-{parent-id}-{flags}``; None if malformed.
    """
    parts = header.strip().split("-")
    if len(parts) != 4:
        return None
    version, trace_id, parent_id, flags = parts
    if len(version) != 2 or len(flags) != 2:
        return None
    if len(trace_id) != 32 or trace_id == "0" * 32:
        return None
    if len(parent_id) != 16 or parent_id == "0" * 16:
        return None
    try:
        int(trace_id, 16)
        int(parent_id, 16)
    except ValueError:
        return None
    return version, trace_id, parent_id, flags


def create_traceparent(trace_id: str, span_id: str, sampled: bool = True) -> str:
    return f"{TRACE_VERSION}-{trace_id}-{span_id}-{'01' if sampled else '00'}"


def create_context(
    traceparent: Optional[str] = None,
    correlation_id: Optional[str] = None,
    tool: Optional[str] = None,
) -> Dict[str, Any]:
    parsed = parse_traceparent(traceparent) if traceparent else None
    if parsed:
        _, trace_id, _, flags = parsed
        sampled = flags[-1] == "1"
    else:
        trace_id = generate_trace_id()
        sampled = True
    return {
        "trace_id": trace_id,
        "span_id": generate_span_id(),
        "sampled": sampled,
        "correlation_id": correlation_id or generate_correlation_id(),
        "tool": tool,
    }


def get_current_context() -> Dict[str, Any]:
    return _trace_context.get()


def set_current_context(ctx: Dict[str, Any]) -> Token:
    return _trace_context.set(ctx)


def reset_context(token: Token) -> None:
    _trace_context.reset(token)


def get_propagation_headers(ctx: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """Headers for one outgoing call; every call gets a fresh span id."""
    ctx = ctx or get_current_context() or create_context()
    return {
        TRACEPARENT_HEADER: create_traceparent(
            ctx.get("trace_id") or generate_trace_id(),
            generate_span_id(),
            ctx.get("sampled", True),
        ),
        CORRELATION_ID_HEADER: ctx.get("correlation_id") or generate_correlation_id(),
    }
