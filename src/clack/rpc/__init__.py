"""JSON-RPC wire types for the Clack MCP endpoint."""

from .types import (
    AUTH_ERROR,
    CONFLICT_ERROR,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    JSON,
    JSONRPC_VERSION,
    MCP_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    NOT_FOUND_ERROR,
    PARSE_ERROR,
    RpcError,
    jsonrpc_error,
    jsonrpc_result,
)

__all__ = [
    "AUTH_ERROR",
    "CONFLICT_ERROR",
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "JSON",
    "JSONRPC_VERSION",
    "MCP_PROTOCOL_VERSION",
    "METHOD_NOT_FOUND",
    "NOT_FOUND_ERROR",
    "PARSE_ERROR",
    "RpcError",
    "jsonrpc_error",
    "jsonrpc_result",
]
