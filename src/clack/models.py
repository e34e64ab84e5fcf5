"""Domain entities for the chat service.

Messages are a tagged union: a `DirectMessage` between exactly two users, or a
`RoomMessage` posted to a room. Each variant checks its own invariants at
construction so an inconsistent message can never be built, whatever the
storage layer allows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from .errors import ValidationError

_JSON = dict[str, Any]


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def conversation_key(user_a: int, user_b: int) -> tuple[int, int]:
    """Canonical identity of a DM thread: the sorted participant pair."""
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


@dataclass(frozen=True)
class User:
    id: int
    username: str
    created_at: str

    def to_dict(self) -> _JSON:
        return {"id": self.id, "username": self.username, "created_at": self.created_at}


@dataclass(frozen=True)
class Room:
    id: int
    name: str
    description: str
    created_by: int
    created_by_username: str
    created_at: str
    member_count: int

    def to_dict(self) -> _JSON:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_by": self.created_by,
            "created_by_username": self.created_by_username,
            "created_at": self.created_at,
            "member_count": self.member_count,
        }


@dataclass(frozen=True)
class DirectMessage:
    id: int
    user_a: int
    user_b: int
    sender_id: int
    sender_name: str
    content: str
    created_at: str
    client_message_id: str | None = None

    def __post_init__(self) -> None:
        if self.user_a >= self.user_b:
            raise ValidationError(
                f"Direct message participants must be ordered: {self.user_a} < {self.user_b}",
                field="user_a",
                constraint="canonical_order",
            )
        if self.sender_id not in (self.user_a, self.user_b):
            raise ValidationError(
                f"Sender {self.sender_id} is not a participant of this conversation",
                field="sender_id",
                constraint="participant",
            )

    @property
    def key(self) -> tuple[int, int]:
        return (self.user_a, self.user_b)

    def other_participant(self, user_id: int) -> int:
        return self.user_b if user_id == self.user_a else self.user_a

    def to_dict(self) -> _JSON:
        data: _JSON = {
            "id": self.id,
            "user_a": self.user_a,
            "user_b": self.user_b,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "content": self.content,
            "created_at": self.created_at,
        }
        if self.client_message_id is not None:
            data["client_message_id"] = self.client_message_id
        return data


@dataclass(frozen=True)
class RoomMessage:
    id: int
    room_id: int
    sender_id: int
    sender_name: str
    content: str
    created_at: str
    client_message_id: str | None = None

    def to_dict(self) -> _JSON:
        data: _JSON = {
            "id": self.id,
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "content": self.content,
            "created_at": self.created_at,
        }
        if self.client_message_id is not None:
            data["client_message_id"] = self.client_message_id
        return data


Message = Union[DirectMessage, RoomMessage]


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller, derived per request and never persisted."""

    user_id: int
    username: str
    is_admin: bool = False

    def to_dict(self) -> _JSON:
        return {"id": self.user_id, "username": self.username, "is_admin": self.is_admin}
