"""MCP-shaped JSON-RPC 2.0 endpoint logic.

Transport-agnostic: takes one decoded request object plus the caller identity
resolved by the transport, and returns the response object (or None when no
response is owed, as for notifications).

Methods:
    initialize       protocol version, server info, capabilities
    ping             empty result
    tools/list       the tool registry
    tools/call       run a tool through the dispatcher
    prompts/list     always empty
    resources/list   always empty
    notifications/*  acknowledged, never answered with an error
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .dispatcher import ToolDispatcher
from .models import CallerIdentity
from .rpc import (
    AUTH_ERROR,
    CONFLICT_ERROR,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    MCP_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    NOT_FOUND_ERROR,
    RpcError,
    jsonrpc_error,
    jsonrpc_result,
)
from .settings import SERVER_NAME, SERVER_VERSION
from . import tools

logger = logging.getLogger(__name__)

_JSON = dict[str, Any]

TOOL_ERROR_CODES: dict[str, int] = {
    tools.UNKNOWN_TOOL: METHOD_NOT_FOUND,
    tools.INVALID_PARAMS: INVALID_PARAMS,
    tools.UNAUTHORIZED: AUTH_ERROR,
    tools.NOT_FOUND: NOT_FOUND_ERROR,
    tools.CONFLICT: CONFLICT_ERROR,
    tools.INTERNAL: INTERNAL_ERROR,
}


def rpc_error_from_tool_error(exc: tools.ToolError) -> RpcError:
    return RpcError(TOOL_ERROR_CODES.get(exc.code, INTERNAL_ERROR), exc.message, exc.data)


def initialize_result() -> _JSON:
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
    }


def tools_list_result(dispatcher: ToolDispatcher) -> _JSON:
    return {"tools": [tool.to_dict() for tool in dispatcher.registry.list()]}


async def _handle_tools_call(
    dispatcher: ToolDispatcher, params: _JSON, caller: CallerIdentity
) -> _JSON:
    name = params.get("name")
    arguments = params.get("arguments")
    if not isinstance(name, str) or not name:
        raise RpcError(INVALID_PARAMS, "name is required")
    if arguments is not None and not isinstance(arguments, dict):
        raise RpcError(INVALID_PARAMS, "arguments must be an object or null")
    try:
        result = await dispatcher.execute(name, arguments, caller)
    except tools.ToolError as exc:
        raise rpc_error_from_tool_error(exc) from exc
    return result.to_wire()


async def _dispatch_method(
    dispatcher: ToolDispatcher, method: str, params: _JSON, caller: CallerIdentity
) -> Any:
    if method == "initialize":
        return initialize_result()
    if method == "ping":
        return {}
    if method == "tools/list":
        return tools_list_result(dispatcher)
    if method == "tools/call":
        return await _handle_tools_call(dispatcher, params, caller)
    if method == "prompts/list":
        return {"prompts": []}
    if method == "resources/list":
        return {"resources": []}
    raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")


async def handle_jsonrpc_request(
    dispatcher: ToolDispatcher,
    request: Any,
    caller: CallerIdentity,
) -> _JSON | None:
    """Process one JSON-RPC request object.

    Returns None for notifications (no `id` member); otherwise a response
    that echoes the request id verbatim.
    """
    if not isinstance(request, dict):
        return jsonrpc_error(None, RpcError(INVALID_REQUEST, "Invalid Request: expected an object"))

    req_id = request.get("id")
    is_notification = "id" not in request
    method = request.get("method")
    correlation_id = uuid.uuid4().hex[:8]

    if request.get("jsonrpc") != JSONRPC_VERSION:
        return jsonrpc_error(
            req_id, RpcError(INVALID_REQUEST, "Invalid Request: jsonrpc must be '2.0'")
        )
    if not isinstance(method, str) or not method:
        return jsonrpc_error(req_id, RpcError(INVALID_REQUEST, "Invalid Request: method is required"))

    logger.debug("[%s] rpc method=%s user=%s", correlation_id, method, caller.user_id)

    if method.startswith("notifications/"):
        logger.debug("[%s] notification %s acknowledged", correlation_id, method)
        return None if is_notification else jsonrpc_result(req_id, {"acknowledged": True})

    params = request.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        if is_notification:
            return None
        return jsonrpc_error(req_id, RpcError(INVALID_PARAMS, "params must be an object"))

    try:
        result = await _dispatch_method(dispatcher, method, params, caller)
    except RpcError as exc:
        if is_notification:
            logger.debug("[%s] notification %s failed: %s", correlation_id, method, exc.message)
            return None
        return jsonrpc_error(req_id, exc)
    except Exception:
        logger.exception("[%s] Unexpected error in method=%s", correlation_id, method)
        if is_notification:
            return None
        return jsonrpc_error(req_id, RpcError(INTERNAL_ERROR, "Internal error"))

    if is_notification:
        return None
    return jsonrpc_result(req_id, result)
