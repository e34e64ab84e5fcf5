"""Change feed: domain events to addressed patches, fanned out to live connections.

Patches are `{op, path, value, ...metadata}` with slash-delimited paths into
the client's normalized tree:

    /users/{id}                      user node
    /users/{id}/messages/{msgId}     direct message, one copy per participant
    /rooms/{id}                      room node
    /rooms/{id}/messages/{msgId}     room message

Delivery is targeted. Direct messages reach only their two participants and
room messages reach only current room members. Everything else is broadcast.
A connection that is closed or whose queue is full is pruned and delivery to
the rest continues.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from .db import ChatStore
from .models import DirectMessage, Room, RoomMessage, User

logger = logging.getLogger(__name__)

_JSON = dict[str, Any]
Patch = dict[str, Any]


class ChangeKind(str, Enum):
    USER_REGISTERED = "user_registered"
    USER_DELETED = "user_deleted"
    ROOM_CREATED = "room_created"
    ROOM_UPDATED = "room_updated"
    ROOM_OWNER_CHANGED = "room_owner_changed"
    ROOM_DELETED = "room_deleted"
    DIRECT_MESSAGE = "direct_message"
    ROOM_MESSAGE = "room_message"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    user: User | None = None
    room: Room | None = None
    message: DirectMessage | RoomMessage | None = None
    user_id: int | None = None
    room_id: int | None = None
    joined_user_id: int | None = None
    left_user_id: int | None = None
    previous_owner_id: int | None = None
    actor_id: int | None = None

    @classmethod
    def user_registered(cls, user: User) -> ChangeEvent:
        return cls(ChangeKind.USER_REGISTERED, user=user)

    @classmethod
    def user_deleted(cls, user_id: int, actor_id: int | None = None) -> ChangeEvent:
        return cls(ChangeKind.USER_DELETED, user_id=user_id, actor_id=actor_id)

    @classmethod
    def room_created(cls, room: Room) -> ChangeEvent:
        return cls(ChangeKind.ROOM_CREATED, room=room)

    @classmethod
    def room_joined(cls, room: Room, user_id: int) -> ChangeEvent:
        return cls(ChangeKind.ROOM_UPDATED, room=room, joined_user_id=user_id)

    @classmethod
    def room_left(cls, room: Room, user_id: int) -> ChangeEvent:
        return cls(ChangeKind.ROOM_UPDATED, room=room, left_user_id=user_id)

    @classmethod
    def room_owner_changed(cls, room: Room, previous_owner_id: int) -> ChangeEvent:
        return cls(ChangeKind.ROOM_OWNER_CHANGED, room=room, previous_owner_id=previous_owner_id)

    @classmethod
    def room_deleted(cls, room_id: int, actor_id: int) -> ChangeEvent:
        return cls(ChangeKind.ROOM_DELETED, room_id=room_id, actor_id=actor_id)

    @classmethod
    def direct_message(cls, message: DirectMessage) -> ChangeEvent:
        return cls(ChangeKind.DIRECT_MESSAGE, message=message)

    @classmethod
    def room_message(cls, message: RoomMessage) -> ChangeEvent:
        return cls(ChangeKind.ROOM_MESSAGE, message=message)


class EventSink(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...


# =============================================================================
# Encoding
# =============================================================================


def _room_node(room: Room) -> _JSON:
    return {
        "name": room.name,
        "ownerId": room.created_by,
        "description": room.description,
        "memberCount": room.member_count,
    }


def message_node(message: DirectMessage | RoomMessage) -> _JSON:
    node: _JSON = {
        "id": message.id,
        "timestamp": message.created_at,
        "message": message.content,
        "sender": message.sender_id,
        "senderName": message.sender_name,
        "clientMessageId": message.client_message_id,
    }
    if isinstance(message, DirectMessage):
        node["userA"] = message.user_a
        node["userB"] = message.user_b
    else:
        node["roomId"] = message.room_id
    return node


def encode_event(event: ChangeEvent) -> list[Patch]:
    """Translate one domain event into the patches clients apply."""
    kind = event.kind
    if kind is ChangeKind.USER_REGISTERED:
        user = _need(event.user, kind)
        return [
            {
                "op": "add",
                "path": f"/users/{user.id}",
                "value": {"name": user.username, "messages": {}},
                "user": user.to_dict(),
            }
        ]
    if kind is ChangeKind.USER_DELETED:
        user_id = _need(event.user_id, kind)
        return [{"op": "remove", "path": f"/users/{user_id}", "userId": user_id}]
    if kind is ChangeKind.ROOM_CREATED:
        room = _need(event.room, kind)
        return [
            {
                "op": "add",
                "path": f"/rooms/{room.id}",
                "value": {**_room_node(room), "messages": {}},
                "room": room.to_dict(),
            }
        ]
    if kind is ChangeKind.ROOM_UPDATED:
        room = _need(event.room, kind)
        patch: Patch = {
            "op": "replace",
            "path": f"/rooms/{room.id}",
            "value": _room_node(room),
            "room": room.to_dict(),
        }
        if event.joined_user_id is not None:
            patch["joinedUserId"] = event.joined_user_id
        if event.left_user_id is not None:
            patch["leftUserId"] = event.left_user_id
        return [patch]
    if kind is ChangeKind.ROOM_OWNER_CHANGED:
        room = _need(event.room, kind)
        return [
            {
                "op": "replace",
                "path": f"/rooms/{room.id}",
                "value": _room_node(room),
                "room": room.to_dict(),
                "previousOwnerId": event.previous_owner_id,
            }
        ]
    if kind is ChangeKind.ROOM_DELETED:
        room_id = _need(event.room_id, kind)
        return [
            {
                "op": "remove",
                "path": f"/rooms/{room_id}",
                "roomId": room_id,
                "deletedBy": event.actor_id,
            }
        ]
    if kind is ChangeKind.DIRECT_MESSAGE:
        message = _need(event.message, kind)
        assert isinstance(message, DirectMessage)
        node = message_node(message)
        return [
            {"op": "add", "path": f"/users/{uid}/messages/{message.id}", "value": node}
            for uid in (message.user_a, message.user_b)
        ]
    if kind is ChangeKind.ROOM_MESSAGE:
        message = _need(event.message, kind)
        assert isinstance(message, RoomMessage)
        return [
            {
                "op": "add",
                "path": f"/rooms/{message.room_id}/messages/{message.id}",
                "value": message_node(message),
            }
        ]
    raise ValueError(f"Unhandled change kind: {kind}")


def _need(value: Any, kind: ChangeKind) -> Any:
    if value is None:
        raise ValueError(f"Change event {kind.value} is missing its subject")
    return value


# =============================================================================
# Connections
# =============================================================================

_connection_ids = itertools.count(1)


class Connection:
    """One live subscriber: a bounded queue of outbound payloads."""

    def __init__(self, user_id: int, username: str = "", maxsize: int = 256) -> None:
        self.id = next(_connection_ids)
        self.user_id = user_id
        self.username = username
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, payload: Any) -> bool:
        """Queue a payload without waiting. False means the connection is dead or stalled."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        self.closed = True

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, user_id={self.user_id})"


class ConnectionRegistry:
    """Thread-safe set of live connections.

    Fan-out iterates over a snapshot, so connections may be added or removed
    while a broadcast is in progress.
    """

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._connections: dict[int, Connection] = {}
        self._lock = threading.Lock()

    def open(self, user_id: int, username: str = "") -> Connection:
        conn = Connection(user_id, username, maxsize=self._queue_size)
        self.add(conn)
        return conn

    def add(self, conn: Connection) -> None:
        with self._lock:
            self._connections[conn.id] = conn
        logger.info("Subscriber connected id=%s user=%s", conn.id, conn.user_id)

    def remove(self, conn: Connection) -> bool:
        conn.close()
        with self._lock:
            removed = self._connections.pop(conn.id, None) is not None
        if removed:
            logger.info("Subscriber disconnected id=%s user=%s", conn.id, conn.user_id)
        return removed

    def snapshot(self) -> list[Connection]:
        with self._lock:
            return list(self._connections.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def connected_user_ids(self) -> set[int]:
        return {c.user_id for c in self.snapshot()}

    def broadcast(self, predicate: Callable[[Connection], bool], payload: Any) -> int:
        """Deliver to every connection matching `predicate`; returns delivered count."""
        delivered = 0
        for conn in self.snapshot():
            if not predicate(conn):
                continue
            if conn.offer(payload):
                delivered += 1
            else:
                logger.info("Pruning unresponsive subscriber id=%s user=%s", conn.id, conn.user_id)
                self.remove(conn)
        return delivered

    def send_to_all(self, payload: Any) -> int:
        return self.broadcast(lambda _conn: True, payload)

    def send_to_users(self, user_ids: Iterable[int], payload: Any) -> int:
        targets = set(user_ids)
        return self.broadcast(lambda conn: conn.user_id in targets, payload)


# =============================================================================
# Feed
# =============================================================================


class ChangeFeed:
    """Event sink that encodes events and routes patches to their audience."""

    def __init__(self, registry: ConnectionRegistry, store: ChatStore) -> None:
        self.registry = registry
        self.store = store

    async def audience(self, event: ChangeEvent) -> set[int] | None:
        """User ids that may see this event, or None for everyone."""
        if event.kind is ChangeKind.DIRECT_MESSAGE:
            message = event.message
            assert isinstance(message, DirectMessage)
            return {message.user_a, message.user_b}
        if event.kind is ChangeKind.ROOM_MESSAGE:
            message = event.message
            assert isinstance(message, RoomMessage)
            members = await asyncio.to_thread(self.store.list_room_member_ids, message.room_id)
            return set(members)
        return None

    async def publish(self, event: ChangeEvent) -> None:
        patches = encode_event(event)
        payload: Any = patches[0] if len(patches) == 1 else patches
        targets = await self.audience(event)
        if targets is None:
            delivered = self.registry.send_to_all(payload)
        else:
            delivered = self.registry.send_to_users(targets, payload)
        logger.debug("Published %s to %d subscriber(s)", event.kind.value, delivered)
