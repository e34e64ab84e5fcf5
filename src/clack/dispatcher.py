"""Tool dispatcher.

`ToolDispatcher.execute` runs one tool call through a fixed pipeline:

1. Look the tool up in the registry (unknown name -> `unknown_tool`).
2. Validate arguments against its schema (-> `invalid_params`).
3. Apply the tool's authorization rule (-> `unauthorized` / `not_found`).
4. Run the handler against the store.
5. Publish the resulting change events to the injected sink.

Store work runs in a worker thread so one slow call never stalls the event
loop. Mutations hold the commit lock from authorization until their events
are queued, so subscribers receive patches in commit order. A failing sink is
logged and never fails the call.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

from . import guard
from .change_feed import ChangeEvent, EventSink
from .db import ChatStore
from .errors import (
    AuthorizationError,
    ClackError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from .models import CallerIdentity
from .settings import Settings, settings as default_settings
from .tools import (
    CONFLICT,
    INTERNAL,
    INVALID_PARAMS,
    NOT_FOUND,
    UNAUTHORIZED,
    UNKNOWN_TOOL,
    ToolError,
    ToolRegistry,
    ToolResult,
)
from .validation import validate_arguments

logger = logging.getLogger(__name__)

_Args = dict[str, Any]
_Outcome = tuple[dict[str, Any], list[ChangeEvent]]
_Handler = Callable[[_Args, CallerIdentity], _Outcome]
_T = TypeVar("_T")

MUTATING_TOOLS = frozenset(
    {
        "send_message",
        "create_room",
        "join_room",
        "leave_room",
        "send_room_message",
        "change_room_owner",
        "delete_room",
        "delete_user",
    }
)


class NullSink:
    """Event sink that drops everything."""

    async def publish(self, event: ChangeEvent) -> None:
        return None


def _tool_error_from(exc: ClackError) -> ToolError:
    if isinstance(exc, NotFoundError):
        return ToolError(NOT_FOUND, exc.message, exc.to_dict())
    if isinstance(exc, ConflictError):
        return ToolError(CONFLICT, exc.message, exc.to_dict())
    if isinstance(exc, AuthorizationError):
        return ToolError(UNAUTHORIZED, f"Unauthorized: {exc.message}", exc.to_dict())
    if isinstance(exc, ValidationError):
        return ToolError(INVALID_PARAMS, exc.message, exc.to_dict())
    return ToolError(INTERNAL, "Internal error")


class ToolDispatcher:
    def __init__(
        self,
        store: ChatStore,
        sink: EventSink | None = None,
        *,
        registry: ToolRegistry | None = None,
        config: Settings | None = None,
    ) -> None:
        self.store = store
        self.sink: EventSink = sink or NullSink()
        self.registry = registry or ToolRegistry()
        self.config = config or default_settings
        self._commit_lock = asyncio.Lock()
        self._handlers: dict[str, _Handler] = {
            "send_message": self._send_message,
            "create_room": self._create_room,
            "join_room": self._join_room,
            "leave_room": self._leave_room,
            "send_room_message": self._send_room_message,
            "get_users_by_index_range": self._get_users_by_index_range,
            "get_rooms_by_index_range": self._get_rooms_by_index_range,
            "get_messages_by_index_range": self._get_messages_by_index_range,
            "get_messages_between_users_by_index_range": self._get_conversation_by_index_range,
            "get_room_messages_by_index_range": self._get_room_messages_by_index_range,
            "get_users_by_time_range": self._get_users_by_time_range,
            "get_rooms_by_time_range": self._get_rooms_by_time_range,
            "get_messages_by_time_range": self._get_messages_by_time_range,
            "get_room_messages_by_time_range": self._get_room_messages_by_time_range,
            "get_user_rooms": self._get_user_rooms,
            "change_room_owner": self._change_room_owner,
            "delete_room": self._delete_room,
            "delete_user": self._delete_user,
        }

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        caller: CallerIdentity,
    ) -> ToolResult:
        """Run tool `name` for `caller`.

        Raises:
            ToolError: with one of the codes declared in `clack.tools`.
        """
        call_id = uuid.uuid4().hex[:8]
        args = dict(arguments or {})
        logger.debug("[%s] tool=%s caller=%s", call_id, name, caller.user_id)

        tool = self.registry.get(name)
        handler = self._handlers.get(name)
        if tool is None or handler is None:
            raise ToolError(UNKNOWN_TOOL, f"Unknown tool: {name}")

        errors = validate_arguments(tool.input_schema, args)
        if errors:
            raise ToolError(
                INVALID_PARAMS,
                "Invalid arguments: " + "; ".join(e.message for e in errors),
                {"errors": [e.to_dict() for e in errors]},
            )
        self._check_page_span(args)

        if name not in MUTATING_TOOLS:
            payload, _ = await self._run(call_id, name, handler, args, caller)
            return ToolResult(payload=payload)

        async with self._commit_lock:
            payload, events = await self._run(call_id, name, handler, args, caller)
            for event in events:
                await self._publish(event)
        return ToolResult(payload=payload)

    async def commit(self, work: Callable[[], tuple[_T, list[ChangeEvent]]]) -> _T:
        """Run a store mutation made outside a tool call and publish its events.

        `work` runs in a worker thread under the commit lock, so its events
        are ordered with those of concurrent tool calls.
        """
        async with self._commit_lock:
            result, events = await asyncio.to_thread(work)
            for event in events:
                await self._publish(event)
        return result

    async def _run(
        self,
        call_id: str,
        name: str,
        handler: _Handler,
        args: _Args,
        caller: CallerIdentity,
    ) -> _Outcome:
        try:
            await asyncio.to_thread(guard.authorize, self.store, name, args, caller)
            return await asyncio.to_thread(handler, args, caller)
        except ToolError:
            raise
        except ClackError as exc:
            logger.debug("[%s] tool=%s failed: %s", call_id, name, exc.message)
            raise _tool_error_from(exc) from exc
        except Exception as exc:
            logger.exception("[%s] Unexpected error in tool=%s", call_id, name)
            raise ToolError(INTERNAL, "Internal error") from exc

    def _check_page_span(self, args: _Args) -> None:
        if "startIndex" in args and "endIndex" in args:
            span = args["endIndex"] - args["startIndex"]
            if span > self.config.page_size_limit:
                raise ToolError(
                    INVALID_PARAMS,
                    f"Invalid arguments: endIndex - startIndex must be at most "
                    f"{self.config.page_size_limit}",
                )

    async def _publish(self, event: ChangeEvent) -> None:
        try:
            await self.sink.publish(event)
        except Exception:
            logger.exception("Failed to publish change event %s", event.kind.value)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _send_message(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        message = self.store.send_direct_message(
            caller.user_id,
            int(args["otherUserId"]),
            args["content"],
            args.get("clientMessageId"),
        )
        return {"success": True, "message": message}, [ChangeEvent.direct_message(message)]

    def _create_room(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        room = self.store.create_room(args["name"], args.get("description", ""), caller.user_id)
        return {"success": True, "room": room}, [ChangeEvent.room_created(room)]

    def _join_room(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        room = self.store.join_room(int(args["roomId"]), caller.user_id)
        return {"success": True, "room": room}, [ChangeEvent.room_joined(room, caller.user_id)]

    def _leave_room(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        room = self.store.leave_room(int(args["roomId"]), caller.user_id)
        return {"success": True, "room": room}, [ChangeEvent.room_left(room, caller.user_id)]

    def _send_room_message(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        message = self.store.send_room_message(
            int(args["roomId"]),
            caller.user_id,
            args["content"],
            args.get("clientMessageId"),
        )
        return {"success": True, "message": message}, [ChangeEvent.room_message(message)]

    def _change_room_owner(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        room = self.store.change_room_owner(
            int(args["roomId"]), int(args["newOwnerId"]), caller.user_id
        )
        payload = {"success": True, "room": room, "message": "Room ownership transferred"}
        return payload, [ChangeEvent.room_owner_changed(room, caller.user_id)]

    def _delete_room(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        room = self.store.delete_room(int(args["roomId"]), caller.user_id)
        payload = {"success": True, "roomId": room.id, "message": f"Room {room.name} deleted"}
        return payload, [ChangeEvent.room_deleted(room.id, caller.user_id)]

    def _delete_user(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        deleted = self.store.delete_user(int(args["userId"]))
        events = [ChangeEvent.room_deleted(rid, caller.user_id) for rid in deleted.room_ids]
        events.append(ChangeEvent.user_deleted(deleted.user.id, caller.user_id))
        payload = {
            "success": True,
            "userId": deleted.user.id,
            "deletedRoomIds": deleted.room_ids,
        }
        return payload, events

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _get_users_by_index_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        users = self.store.list_users_range(int(args["startIndex"]), int(args["endIndex"]))
        return {"success": True, "users": users}, []

    def _get_rooms_by_index_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        rooms = self.store.list_rooms_range(int(args["startIndex"]), int(args["endIndex"]))
        return {"success": True, "rooms": rooms}, []

    def _get_messages_by_index_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        messages = self.store.list_user_messages_range(
            caller.user_id, int(args["startIndex"]), int(args["endIndex"])
        )
        return {"success": True, "messages": messages}, []

    def _get_conversation_by_index_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        messages = self.store.list_conversation_range(
            int(args["userA"]),
            int(args["userB"]),
            int(args["startIndex"]),
            int(args["endIndex"]),
            latest_first=bool(args.get("latestFirst", False)),
        )
        return {"success": True, "messages": messages}, []

    def _get_room_messages_by_index_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        messages = self.store.list_room_messages_range(
            int(args["roomId"]),
            int(args["startIndex"]),
            int(args["endIndex"]),
            latest_first=bool(args.get("latestFirst", False)),
        )
        return {"success": True, "messages": messages}, []

    def _get_users_by_time_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        users = self.store.list_users_between(args["startTime"], args["endTime"])
        return {"success": True, "users": users}, []

    def _get_rooms_by_time_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        rooms = self.store.list_rooms_between(args["startTime"], args["endTime"])
        return {"success": True, "rooms": rooms}, []

    def _get_messages_by_time_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        messages = self.store.list_user_messages_between(
            caller.user_id, args["startTime"], args["endTime"]
        )
        return {"success": True, "messages": messages}, []

    def _get_room_messages_by_time_range(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        messages = self.store.list_room_messages_between(
            int(args["roomId"]), args["startTime"], args["endTime"]
        )
        return {"success": True, "messages": messages}, []

    def _get_user_rooms(self, args: _Args, caller: CallerIdentity) -> _Outcome:
        return {"success": True, "rooms": self.store.get_user_rooms(caller.user_id)}, []
