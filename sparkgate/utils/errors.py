"""
SparkGate -- Typed error taxonomy.

Every recoverable failure the gateway can surface to the tool-handling
layer is a :class:`GatewayError` carrying a JSON-RPC / MCP error code, so
callers branch on the type and serialise with :meth:`GatewayError.to_jsonrpc`.

    RateLimitExceeded   -- admission denied, back off ``retry_after`` seconds
    CircuitBreakerOpen  -- dependency disabled, back off or use a fallback
    UpstreamTimeout     -- outbound call aborted; counts as a failure
    ServiceUnavailable  -- backend reachable but unhealthy
    BackendError        -- backend answered with a non-2xx status
    AuthenticationRequired -- no credentials for an authenticated call
    InvalidParams       -- tool arguments unusable as given
    InvalidToken        -- discovery token rejected
    ResourceNotFound    -- no acceptable name match

:class:`ConfigurationError` is not a ``GatewayError``; it
aborts startup instead of being reported to a client.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorCode(int, enum.Enum):
    # JSON-RPC 2.0 standard errors
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Implementation-defined range (-32000 .. -32099)
    AUTHENTICATION_REQUIRED = -32001
    RATE_LIMIT_EXCEEDED = -32002
    RESOURCE_NOT_FOUND = -32003
    PERMISSION_DENIED = -32004
    TIMEOUT = -32005
    SERVICE_UNAVAILABLE = -32006
    VALIDATION_ERROR = -32007
    CIRCUIT_BREAKER_OPEN = -32008


class ConfigurationError(Exception):
    """Raised at startup for malformed or missing mandatory configuration."""


class GatewayError(Exception):
    """Base class for expected, typed failures."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, data: dict[str, Any] | None = None) -> None:
        self.message = message
        self.data = data
        super().__init__(message)

    def to_jsonrpc(self, request_id: str | int | None = None) -> dict[str, Any]:
        error: dict[str, Any] = {"code": int(self.code), "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return {"jsonrpc": "2.0", "id": request_id, "error": error}


class RateLimitExceeded(GatewayError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, retry_after: int, limit: int) -> None:
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(
            f"Rate limit exceeded; retry in {retry_after}s",
            {"retryAfter": retry_after, "limit": limit},
        )


class CircuitBreakerOpen(GatewayError):
    """Raised when the circuit is OPEN and calls are rejected."""

    code = ErrorCode.CIRCUIT_BREAKER_OPEN

    def __init__(self, name: str, remaining_seconds: float) -> None:
        self.name = name
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Circuit breaker '{name}' is OPEN; "
            f"retry in {remaining_seconds:.1f}s",
            {"circuit": name, "retryAfter": round(remaining_seconds, 1)},
        )


class UpstreamTimeout(GatewayError):
    code = ErrorCode.TIMEOUT

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"Operation '{operation}' timed out after {timeout:.1f}s",
            {"operation": operation, "timeout": timeout},
        )


class ServiceUnavailable(GatewayError):
    code = ErrorCode.SERVICE_UNAVAILABLE

    def __init__(self, service: str, detail: str | None = None) -> None:
        self.service = service
        message = f"{service} is temporarily unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, {"service": service})


class BackendError(GatewayError):
    """Non-2xx response from the persona backend."""

    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        super().__init__(message, {"status": status})


class AuthenticationRequired(GatewayError):
    code = ErrorCode.AUTHENTICATION_REQUIRED

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class InvalidToken(AuthenticationRequired):
    def __init__(self) -> None:
        super().__init__("Invalid or expired discovery token")


class InvalidParams(GatewayError):
    code = ErrorCode.INVALID_PARAMS


class ResourceNotFound(GatewayError):
    code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, kind: str, query: str, candidates: list[str]) -> None:
        self.kind = kind
        self.query = query
        self.candidates = candidates
        super().__init__(
            f"No {kind} matching '{query}'",
            {"query": query, "candidates": candidates},
        )
