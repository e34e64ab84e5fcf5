"""Tool catalog for the chat service.

Every operation a client can perform is a named tool with a declared input
schema. The registry is the single source for both argument validation and
`tools/list` discovery. Adding a tool means adding one entry here and one
handler in the dispatcher.

The MCP endpoint wraps tool payloads into MCP's `content` envelope.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .schema import (
    CLIENT_MESSAGE_ID,
    END_INDEX,
    END_TIME,
    INDEX_RANGE,
    LATEST_FIRST,
    MESSAGE_CONTENT,
    START_INDEX,
    START_TIME,
    TIME_RANGE,
    ObjectSchema,
    StringField,
    id_field,
)

_JSON = dict[str, Any]

# ToolError codes
UNKNOWN_TOOL = "unknown_tool"
INVALID_PARAMS = "invalid_params"
UNAUTHORIZED = "unauthorized"
NOT_FOUND = "not_found"
CONFLICT = "conflict"
INTERNAL = "internal"


class ToolError(RuntimeError):
    def __init__(self, code: str, message: str, data: Any | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: ObjectSchema

    def to_dict(self) -> _JSON:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema.to_json(),
        }


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


def to_jsonable(value: Any) -> Any:
    """Convert domain objects (anything with `to_dict`) into plain JSON data."""
    if hasattr(value, "to_dict"):
        return to_jsonable(value.to_dict())
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def is_wrapped_result(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("content"), list)
        and all(isinstance(item, dict) and "type" in item for item in value["content"])
    )


def wrap_tool_result(value: Any, *, is_error: bool = False) -> _JSON:
    """Normalize any tool return value into MCP's `{content, isError}` shape."""
    if is_wrapped_result(value):
        wrapped = dict(value)
        wrapped["isError"] = bool(wrapped.get("isError", False) or is_error)
        return wrapped
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(to_jsonable(value), indent=2)
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


@dataclass(frozen=True)
class ToolResult:
    """Outcome of a tool call.

    `payload` keeps the domain objects for in-process callers; `to_wire`
    renders the text envelope sent over the protocol.
    """

    payload: Any
    is_error: bool = False

    def to_wire(self) -> _JSON:
        return wrap_tool_result(self.payload, is_error=self.is_error)


# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------


def _schema(
    properties: dict[str, Any],
    required: tuple[str, ...],
    ordered: tuple[Any, ...] = (),
) -> ObjectSchema:
    return ObjectSchema(properties=properties, required=required, ordered=ordered)


def _index_range(extra: dict[str, Any], extra_required: tuple[str, ...]) -> ObjectSchema:
    return _schema(
        {"startIndex": START_INDEX, "endIndex": END_INDEX, **extra},
        ("startIndex", "endIndex", *extra_required),
        (INDEX_RANGE,),
    )


def _time_range(extra: dict[str, Any], extra_required: tuple[str, ...]) -> ObjectSchema:
    return _schema(
        {"startTime": START_TIME, "endTime": END_TIME, **extra},
        ("startTime", "endTime", *extra_required),
        (TIME_RANGE,),
    )


_TOOLS: tuple[Tool, ...] = (
    Tool(
        name="send_message",
        description="Send a direct message to another user.",
        input_schema=_schema(
            {
                "otherUserId": id_field("ID of the user to message"),
                "content": MESSAGE_CONTENT,
                "clientMessageId": CLIENT_MESSAGE_ID,
            },
            ("otherUserId", "content"),
        ),
    ),
    Tool(
        name="create_room",
        description="Create a chat room. The caller becomes its owner and first member.",
        input_schema=_schema(
            {
                "name": StringField(description="Room name", min_length=1, max_length=100),
                "description": StringField(description="Room description", max_length=500),
            },
            ("name",),
        ),
    ),
    Tool(
        name="join_room",
        description="Join a chat room.",
        input_schema=_schema({"roomId": id_field("ID of the room to join")}, ("roomId",)),
    ),
    Tool(
        name="leave_room",
        description="Leave a chat room. Owners must transfer ownership first.",
        input_schema=_schema({"roomId": id_field("ID of the room to leave")}, ("roomId",)),
    ),
    Tool(
        name="send_room_message",
        description="Post a message to a room the caller belongs to.",
        input_schema=_schema(
            {
                "roomId": id_field("ID of the room"),
                "content": MESSAGE_CONTENT,
                "clientMessageId": CLIENT_MESSAGE_ID,
            },
            ("roomId", "content"),
        ),
    ),
    Tool(
        name="get_users_by_index_range",
        description="List users in creation order between two indices (end exclusive).",
        input_schema=_index_range({}, ()),
    ),
    Tool(
        name="get_rooms_by_index_range",
        description="List rooms in creation order between two indices (end exclusive).",
        input_schema=_index_range({}, ()),
    ),
    Tool(
        name="get_messages_by_index_range",
        description="List the caller's direct messages between two indices (end exclusive).",
        input_schema=_index_range({"userId": id_field("ID of the caller")}, ("userId",)),
    ),
    Tool(
        name="get_messages_between_users_by_index_range",
        description="List one direct-message conversation between two indices (end exclusive).",
        input_schema=_index_range(
            {
                "userA": id_field("ID of one participant"),
                "userB": id_field("ID of the other participant"),
                "latestFirst": LATEST_FIRST,
            },
            ("userA", "userB"),
        ),
    ),
    Tool(
        name="get_room_messages_by_index_range",
        description="List a room's messages between two indices (end exclusive).",
        input_schema=_index_range(
            {"roomId": id_field("ID of the room"), "latestFirst": LATEST_FIRST},
            ("roomId",),
        ),
    ),
    Tool(
        name="get_users_by_time_range",
        description="List users created within a time window.",
        input_schema=_time_range({}, ()),
    ),
    Tool(
        name="get_rooms_by_time_range",
        description="List rooms created within a time window.",
        input_schema=_time_range({}, ()),
    ),
    Tool(
        name="get_messages_by_time_range",
        description="List the caller's direct messages sent within a time window.",
        input_schema=_time_range({"userId": id_field("ID of the caller")}, ("userId",)),
    ),
    Tool(
        name="get_room_messages_by_time_range",
        description="List a room's messages sent within a time window.",
        input_schema=_time_range({"roomId": id_field("ID of the room")}, ("roomId",)),
    ),
    Tool(
        name="get_user_rooms",
        description="List the rooms the caller is a member of.",
        input_schema=_schema({"userId": id_field("ID of the caller")}, ("userId",)),
    ),
    Tool(
        name="change_room_owner",
        description="Transfer room ownership. Only the current owner may do this.",
        input_schema=_schema(
            {
                "roomId": id_field("ID of the room"),
                "newOwnerId": id_field("ID of the new owner"),
                "currentOwnerId": id_field("ID of the current owner (the caller)"),
            },
            ("roomId", "newOwnerId", "currentOwnerId"),
        ),
    ),
    Tool(
        name="delete_room",
        description="Delete a room with its memberships and messages. Owner only.",
        input_schema=_schema(
            {
                "roomId": id_field("ID of the room"),
                "ownerId": id_field("ID of the room owner (the caller)"),
            },
            ("roomId", "ownerId"),
        ),
    ),
    Tool(
        name="delete_user",
        description="Delete a user and everything they own. Admin only.",
        input_schema=_schema({"userId": id_field("ID of the user to delete")}, ("userId",)),
    ),
)


class ToolRegistry:
    """Ordered, name-indexed collection of tools."""

    def __init__(self, tools: tuple[Tool, ...] | list[Tool] = _TOOLS) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            self._tools[tool.name] = tool

    def list(self) -> list[Tool]:
        return list(self._tools.values())

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def list_tools() -> list[Tool]:
    return ToolRegistry().list()
