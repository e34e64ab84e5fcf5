"""FastAPI routes for the chat service.

    POST /api/auth/register   create an account, returns a Bearer token
    POST /api/auth/login      exchange username/password for a Bearer token
    POST /api/auth/logout     invalidate the current token
    GET  /api/auth/me         the authenticated user
    POST /api/mcp             JSON-RPC 2.0 (MCP) endpoint
    GET  /api/events          Server-Sent Events change feed

Auth model: the MCP endpoint accepts either `Authorization: Bearer <token>`
or the `X-Username` / `X-Password` header pair, for scripted MCP clients that
cannot hold a session. The event stream accepts the token as a header or as a
`token` query parameter, because browser EventSource cannot set headers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from .auth import Session
from .change_feed import ChangeEvent, Connection, ConnectionRegistry
from .errors import AuthenticationError, ConflictError, ValidationError
from .mcp_server import handle_jsonrpc_request
from .models import CallerIdentity, User
from .rpc import INVALID_REQUEST, PARSE_ERROR, RpcError, jsonrpc_error
from .services import ChatServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_services(request: Request) -> ChatServices:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),  # noqa: B008
) -> str:
    """FastAPI dependency: the raw Bearer token (not yet validated)."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    return credentials.credentials


async def _resolve_token(services: ChatServices, token: str) -> CallerIdentity:
    try:
        return await asyncio.to_thread(services.auth.resolve_token, token)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc


async def require_auth(
    services: ChatServices = Depends(get_services),  # noqa: B008
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),  # noqa: B008
    x_username: str | None = Header(default=None),
    x_password: str | None = Header(default=None),
) -> CallerIdentity:
    """FastAPI dependency: resolve the caller from a Bearer token or header credentials."""
    if credentials is not None and credentials.scheme.lower() == "bearer":
        return await _resolve_token(services, credentials.credentials)
    if x_username and x_password:
        try:
            return await asyncio.to_thread(
                services.auth.resolve_credentials, x_username, x_password
            )
        except AuthenticationError as exc:
            raise HTTPException(status_code=401, detail=exc.message) from exc
    raise HTTPException(status_code=401, detail="Authentication required")


async def require_stream_auth(
    services: ChatServices = Depends(get_services),  # noqa: B008
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),  # noqa: B008
    token: str | None = None,
) -> CallerIdentity:
    """FastAPI dependency for the event stream: header token or ?token=."""
    if credentials is not None and credentials.scheme.lower() == "bearer":
        return await _resolve_token(services, credentials.credentials)
    if token:
        return await _resolve_token(services, token)
    raise HTTPException(status_code=401, detail="Authentication required")


# ---------------------------------------------------------------------------
# Auth endpoints
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    username: str
    password: str


class LoginRequest(BaseModel):
    username: str
    password: str


@router.post("/auth/register")
async def register(
    body: RegisterRequest,
    services: ChatServices = Depends(get_services),  # noqa: B008
) -> dict[str, Any]:
    """Create an account and announce it to every connected client."""

    def work() -> tuple[tuple[User, Session], list[ChangeEvent]]:
        user, session = services.auth.register(body.username, body.password)
        return (user, session), [ChangeEvent.user_registered(user)]

    try:
        user, session = await services.dispatcher.commit(work)
    except (ValidationError, ConflictError) as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc

    return {"success": True, "token": session.token, "user": user.to_dict()}


@router.post("/auth/login")
async def login(
    body: LoginRequest,
    services: ChatServices = Depends(get_services),  # noqa: B008
) -> dict[str, Any]:
    try:
        user, session = await asyncio.to_thread(services.auth.login, body.username, body.password)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc
    return {"success": True, "token": session.token, "user": user.to_dict()}


@router.post("/auth/logout")
async def logout(
    token: str = Depends(require_token),
    services: ChatServices = Depends(get_services),  # noqa: B008
) -> dict[str, Any]:
    """Invalidate the current session."""
    return {"success": services.auth.logout(token)}


@router.get("/auth/me")
async def me(
    caller: CallerIdentity = Depends(require_auth),  # noqa: B008
    services: ChatServices = Depends(get_services),  # noqa: B008
) -> dict[str, Any]:
    user = await asyncio.to_thread(services.store.get_user_by_id, caller.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": user.to_dict(), "isAdmin": caller.is_admin}


# ---------------------------------------------------------------------------
# JSON-RPC 2.0 (MCP)
# ---------------------------------------------------------------------------


@router.post("/mcp", response_model=None)
async def mcp_endpoint(
    request: Request,
    caller: CallerIdentity = Depends(require_auth),  # noqa: B008
    services: ChatServices = Depends(get_services),  # noqa: B008
) -> dict[str, Any] | Response:
    """JSON-RPC 2.0 endpoint. One request object per call; batches are rejected."""
    try:
        body = await request.json()
    except ValueError:
        return jsonrpc_error(None, RpcError(PARSE_ERROR, "Parse error: invalid JSON"))

    if not isinstance(body, dict):
        return jsonrpc_error(None, RpcError(INVALID_REQUEST, "Invalid Request: expected a JSON object"))

    response = await handle_jsonrpc_request(services.dispatcher, body, caller)
    if response is None:
        return Response(status_code=204)
    return response


# ---------------------------------------------------------------------------
# SSE: change feed
# ---------------------------------------------------------------------------


def _sse_frame(data: Any) -> str:
    """Format a single SSE data frame."""
    return f"data: {json.dumps(data)}\n\n"


async def event_stream(
    registry: ConnectionRegistry,
    conn: Connection,
    heartbeat_seconds: float,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames for one subscriber until it disconnects or is pruned.

    The first frame announces the connection; afterwards each frame carries a
    single patch or a patch array. Idle periods produce comment heartbeats.
    """
    try:
        yield _sse_frame(
            {"type": "connected", "user": {"id": conn.user_id, "username": conn.username}}
        )
        while not conn.closed:
            try:
                payload = await asyncio.wait_for(conn.queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue
            yield _sse_frame(payload)
    finally:
        registry.remove(conn)


@router.get("/events")
async def events(
    caller: CallerIdentity = Depends(require_stream_auth),  # noqa: B008
    services: ChatServices = Depends(get_services),  # noqa: B008
) -> StreamingResponse:
    """Server-Sent Events stream of change-feed patches for the caller."""
    conn = services.registry.open(caller.user_id, caller.username)
    return StreamingResponse(
        event_stream(services.registry, conn, services.config.sse_heartbeat_seconds),
        media_type="text/event-stream",
        headers={
            # Prevent proxies and browsers from buffering SSE frames
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
