"""
Error taxonomy for the Windchill MCP gateway.

Every error that can reach a caller derives from GatewayError and carries a
human-readable message plus, where one exists, the backend HTTP status.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": type(self).__name__, "message": self.message}
        if self.status is not None:
            out["status"] = self.status
        if self.data is not None:
            out["data"] = self.data
        return out


class ConfigurationError(GatewayError):
    """Invalid or missing startup configuration."""
    pass


class DuplicateToolError(ConfigurationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' is already registered")
        self.name = name


class ValidationError(GatewayError):
    """Missing or malformed tool arguments. Never reaches the backend."""

    def __init__(
        self,
        tool: str,
        missing: Optional[Iterable[str]] = None,
        invalid: Optional[Dict[str, str]] = None,
    ) -> None:
        self.tool = tool
        self.missing: List[str] = list(missing or [])
        self.invalid: Dict[str, str] = dict(invalid or {})
        parts = []
        if self.missing:
            parts.append(f"missing required field(s): {', '.join(self.missing)}")
        if self.invalid:
            parts.append(
                "invalid field(s): "
                + ", ".join(f"{k} ({v})" for k, v in self.invalid.items())
            )
        super().__init__(
            f"Invalid arguments for {tool}: " + "; ".join(parts),
            status=400,
            data={"missing": self.missing, "invalid": self.invalid},
        )


class ToolNotFound(GatewayError):
    def __init__(self, name: str, status: Optional[int] = None) -> None:
        super().__init__(f"Unknown tool: {name}", status=status)
        self.name = name


class UnknownServer(GatewayError):
    def __init__(self, server_id: Any, available: Iterable[Any] = ()) -> None:
        available = list(available)
        message = f"Server {server_id} not found"
        if available:
            message += f". Available servers: {', '.join(str(a) for a in available)}"
        super().__init__(message, status=404)
        self.server_id = server_id
        self.available = available


class TransportError(GatewayError):
    """Timeout, network failure, non-2xx or undecodable reply on a client transport."""
    pass


class ProtocolError(GatewayError):
    """An explicit JSON-RPC error object. Authoritative, never triggers fallback."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"MCP Error {code}: {message}", data=data)
        self.code = code


class BackendApiError(GatewayError):
    """Non-2xx or transport failure talking to the OData backend."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message, status=status, data=body)
        self.body = body


class CsrfAcquisitionError(BackendApiError):
    pass


class CsrfRejectedError(BackendApiError):
    """The backend refused a mutating call because of its CSRF token."""
    pass


class BackendError(GatewayError):
    """The REST fallback answered 500; carries the server's own message."""
    pass


class ExecutionFailed(GatewayError):
    pass
