"""Per-tool authorization rules.

Runs after argument validation and before any mutation. Identity claims in
arguments (`userId`, `currentOwnerId`, `ownerId`) must match the
authenticated caller; ownership and membership are then checked against a
fresh store read. The store repeats the ownership check inside its write
transaction, so this guard is the fast, descriptive rejection path.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from .db import ChatStore
from .models import CallerIdentity, Room
from .tools import INVALID_PARAMS, NOT_FOUND, UNAUTHORIZED, ToolError

_Rule = Callable[[ChatStore, dict[str, Any], CallerIdentity], None]


def _deny(message: str, **data: Any) -> ToolError:
    return ToolError(UNAUTHORIZED, message, data or None)


def _require_self(args: dict[str, Any], field: str, caller: CallerIdentity) -> None:
    claimed = int(args[field])
    if claimed != caller.user_id:
        raise _deny(
            f"Unauthorized: {field} {claimed} does not match the authenticated user",
            field=field,
        )


def _require_room(store: ChatStore, room_id: int) -> Room:
    room = store.get_room(room_id)
    if room is None:
        raise ToolError(NOT_FOUND, f"Room not found: {room_id}", {"roomId": room_id})
    return room


def _require_member(store: ChatStore, args: dict[str, Any], caller: CallerIdentity) -> None:
    room_id = int(args["roomId"])
    _require_room(store, room_id)
    if not store.is_member(room_id, caller.user_id):
        raise _deny(f"Unauthorized: you are not a member of room {room_id}", roomId=room_id)


def _require_owner(store: ChatStore, room_id: int, caller: CallerIdentity, action: str) -> None:
    room = _require_room(store, room_id)
    if room.created_by != caller.user_id:
        raise _deny(f"Unauthorized: only the room owner can {action}", roomId=room_id)


# -----------------------------------------------------------------------------
# Rules
# -----------------------------------------------------------------------------


def _send_message(store: ChatStore, args: dict[str, Any], caller: CallerIdentity) -> None:
    other = int(args["otherUserId"])
    if other == caller.user_id:
        raise ToolError(INVALID_PARAMS, "otherUserId must differ from the sender")
    if store.get_user_by_id(other) is None:
        raise ToolError(NOT_FOUND, f"User not found: {other}", {"userId": other})


def _own_user_id(store: ChatStore, args: dict[str, Any], caller: CallerIdentity) -> None:
    _require_self(args, "userId", caller)


def _conversation_participant(
    store: ChatStore, args: dict[str, Any], caller: CallerIdentity
) -> None:
    if caller.user_id not in (int(args["userA"]), int(args["userB"])):
        raise _deny("Unauthorized: you are not a participant of this conversation")


def _join_room(store: ChatStore, args: dict[str, Any], caller: CallerIdentity) -> None:
    _require_room(store, int(args["roomId"]))


def _change_room_owner(store: ChatStore, args: dict[str, Any], caller: CallerIdentity) -> None:
    _require_self(args, "currentOwnerId", caller)
    _require_owner(store, int(args["roomId"]), caller, "change ownership")
    new_owner = int(args["newOwnerId"])
    if store.get_user_by_id(new_owner) is None:
        raise ToolError(NOT_FOUND, f"User not found: {new_owner}", {"userId": new_owner})


def _delete_room(store: ChatStore, args: dict[str, Any], caller: CallerIdentity) -> None:
    _require_self(args, "ownerId", caller)
    _require_owner(store, int(args["roomId"]), caller, "delete this room")


def _admin_only(store: ChatStore, args: dict[str, Any], caller: CallerIdentity) -> None:
    if not caller.is_admin:
        raise _deny("Unauthorized: admin privileges required")


def _open(store: ChatStore, args: dict[str, Any], caller: CallerIdentity) -> None:
    """Any authenticated caller may run this tool."""


RULES: dict[str, _Rule] = {
    "send_message": _send_message,
    "create_room": _open,
    "join_room": _join_room,
    "leave_room": _join_room,
    "send_room_message": _require_member,
    "get_users_by_index_range": _open,
    "get_rooms_by_index_range": _open,
    "get_messages_by_index_range": _own_user_id,
    "get_messages_between_users_by_index_range": _conversation_participant,
    "get_room_messages_by_index_range": _require_member,
    "get_users_by_time_range": _open,
    "get_rooms_by_time_range": _open,
    "get_messages_by_time_range": _own_user_id,
    "get_room_messages_by_time_range": _require_member,
    "get_user_rooms": _own_user_id,
    "change_room_owner": _change_room_owner,
    "delete_room": _delete_room,
    "delete_user": _admin_only,
}


def authorize(store: ChatStore, name: str, args: dict[str, Any], caller: CallerIdentity) -> None:
    """Raise ToolError unless `caller` may run tool `name` with `args`.

    Tools without a rule are denied.
    """
    rule = RULES.get(name)
    if rule is None:
        raise _deny(f"Unauthorized: no access rule for tool {name}")
    rule(store, args, caller)
