"""RPC types and utilities.

Core types, error codes, and JSON-RPC helpers shared by the MCP endpoint and
the tool layer.
"""

from __future__ import annotations

from typing import Any

# Type alias for JSON-serializable dict
JSON = dict[str, Any]

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"


class RpcError(Exception):
    """JSON-RPC error with code, message, and optional data."""

    def __init__(
        self,
        code: int,
        message: str,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> JSON:
        """Convert to JSON-RPC error object."""
        result: JSON = {"code": self.code, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result


# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Application-specific error codes
AUTH_ERROR = -32002
NOT_FOUND_ERROR = -32003
CONFLICT_ERROR = -32005


def jsonrpc_error(request_id: str | int | None, error: RpcError) -> JSON:
    """Build a JSON-RPC 2.0 error response."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error.to_dict(),
    }


def jsonrpc_result(request_id: str | int | None, result: Any) -> JSON:
    """Build a JSON-RPC 2.0 success response."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "result": result,
    }
