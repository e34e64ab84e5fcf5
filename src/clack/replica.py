"""Client-side replica of server state.

A `Replica` keeps two views in step:

- `tree`: the normalized store addressed by change-feed paths,
  `{"users": {id: {name, messages: {msgId: node}}}, "rooms": {id: {...}}}`.
  Ids are string keys, exactly as they appear in patch paths.
- ordered message lists per conversation (DM pair or room), used for
  rendering and for pagination.

Patch application is idempotent: tree writes are keyed assignments, and list
inserts go through a de-duplication step that also reconciles optimistic
local messages with their server confirmation. Two entries are the same
message when they share a server id, share a client message id, or have equal
content and sender with timestamps less than a second apart.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import conversation_key, parse_timestamp, utc_now_iso

logger = logging.getLogger(__name__)

DEDUP_WINDOW_SECONDS = 1.0
DEFAULT_PAGE_SIZE = 10

_JSON = dict[str, Any]


def pair_key(user_a: int, user_b: int) -> str:
    low, high = conversation_key(user_a, user_b)
    return f"{low}-{high}"


def room_key(room_id: int) -> str:
    return f"room:{room_id}"


@dataclass
class ListedMessage:
    """One entry of an ordered conversation list."""

    sender: int
    content: str
    timestamp: str
    id: int | None = None
    sender_name: str | None = None
    client_message_id: str | None = None

    @property
    def pending(self) -> bool:
        """True for an optimistic entry the server has not confirmed yet."""
        return self.id is None

    @property
    def moment(self) -> datetime:
        return parse_timestamp(self.timestamp)

    def node(self) -> _JSON:
        return {
            "timestamp": self.timestamp,
            "message": self.content,
            "sender": self.sender,
            "senderName": self.sender_name,
            "clientMessageId": self.client_message_id,
        }


@dataclass
class PageCursor:
    next_index: int = 0
    has_more: bool = True


@dataclass
class Replica:
    current_user_id: int | None = None
    page_size: int = DEFAULT_PAGE_SIZE
    tree: _JSON = field(default_factory=lambda: {"users": {}, "rooms": {}})
    conversations: dict[str, list[ListedMessage]] = field(default_factory=dict)
    cursors: dict[str, PageCursor] = field(default_factory=dict)
    user_ids_by_name: dict[str, int] = field(default_factory=dict)
    room_ids_by_name: dict[str, int] = field(default_factory=dict)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    @property
    def users(self) -> _JSON:
        return self.tree["users"]

    @property
    def rooms(self) -> _JSON:
        return self.tree["rooms"]

    def user_id_for(self, username: str) -> int | None:
        return self.user_ids_by_name.get(username)

    def room_id_for(self, name: str) -> int | None:
        return self.room_ids_by_name.get(name)

    def messages_for(self, key: str) -> list[ListedMessage]:
        return list(self.conversations.get(key, []))

    def has_more(self, key: str) -> bool:
        cursor = self.cursors.get(key)
        return True if cursor is None else cursor.has_more

    def next_index(self, key: str) -> int:
        cursor = self.cursors.get(key)
        return 0 if cursor is None else cursor.next_index

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def load_users(self, users: list[_JSON]) -> None:
        for user in users:
            self._put_user(str(user["id"]), {"name": user["username"]})

    def load_rooms(self, rooms: list[_JSON]) -> None:
        for room in rooms:
            self._put_room(str(room["id"]), _room_fields(room))

    def load_messages(self, key: str, records: list[_JSON], page_size: int | None = None) -> None:
        """Replace a conversation with its newest page, oldest-first.

        Optimistic entries still awaiting confirmation survive the reload.
        """
        size = page_size or self.page_size
        pending = [e for e in self.conversations.get(key, []) if e.pending]
        self.conversations[key] = []
        for record in records:
            self._merge_record(record, key)
        for entry in pending:
            self._merge_entry(key, entry)
        self.cursors[key] = PageCursor(next_index=len(records), has_more=len(records) == size)

    def prepend_page(
        self, key: str, records: list[_JSON], page_size: int | None = None
    ) -> PageCursor:
        """Merge an older page in front of what is already loaded.

        A page shorter than the page size marks the conversation exhausted.
        """
        size = page_size or self.page_size
        existing = self.conversations.setdefault(key, [])
        fresh: list[ListedMessage] = []
        for record in records:
            entry = _entry_from_record(record)
            self._write_tree_message(record, entry)
            if _find_duplicate(existing, entry) is None and _find_duplicate(fresh, entry) is None:
                fresh.append(entry)
        self.conversations[key] = fresh + existing

        cursor = self.cursors.setdefault(key, PageCursor())
        cursor.next_index += len(records)
        cursor.has_more = len(records) == size
        return cursor

    # -------------------------------------------------------------------------
    # Optimistic writes
    # -------------------------------------------------------------------------

    def add_optimistic(
        self,
        key: str,
        sender: int,
        content: str,
        *,
        client_message_id: str | None = None,
        timestamp: str | None = None,
    ) -> ListedMessage:
        """Show a locally sent message before the server confirms it."""
        entry = ListedMessage(
            sender=sender,
            content=content,
            timestamp=timestamp or utc_now_iso(),
            client_message_id=client_message_id,
        )
        _insert_ordered(self.conversations.setdefault(key, []), entry)
        return entry

    # -------------------------------------------------------------------------
    # Patches
    # -------------------------------------------------------------------------

    def apply(self, payload: _JSON | list[_JSON]) -> int:
        """Apply one patch or a list of patches; returns how many were understood."""
        patches = payload if isinstance(payload, list) else [payload]
        return sum(1 for patch in patches if self.apply_patch(patch))

    def apply_patch(self, patch: _JSON) -> bool:
        op = patch.get("op")
        path = patch.get("path")
        if op not in {"add", "replace", "remove"} or not isinstance(path, str):
            logger.debug("Ignoring unsupported patch: %r", patch)
            return False
        parts = [p for p in path.split("/") if p]
        value = patch.get("value")

        if op == "remove":
            return self._apply_remove(parts)
        if value is None:
            return False

        # Flat forms: the collection path with the record as the value
        if parts == ["users"]:
            self._put_user(str(value["id"]), {"name": value["username"]})
            return True
        if parts == ["rooms"]:
            self._put_room(str(value["id"]), _room_fields(value))
            return True
        if parts == ["messages"] or (len(parts) == 2 and parts[0] == "room_messages"):
            self._merge_record(value)
            return True

        if len(parts) == 2 and parts[0] == "users":
            self._put_user(parts[1], value)
            return True
        if len(parts) == 2 and parts[0] == "rooms":
            self._put_room(parts[1], value)
            return True
        if len(parts) == 4 and parts[2] == "messages" and parts[0] in {"users", "rooms"}:
            self._merge_node(parts[0], parts[1], parts[3], value)
            return True

        logger.debug("Ignoring patch with unknown path: %s", path)
        return False

    def _apply_remove(self, parts: list[str]) -> bool:
        if len(parts) == 2 and parts[0] == "users":
            node = self.users.pop(parts[1], None)
            if node is not None and node.get("name") is not None:
                self.user_ids_by_name.pop(node["name"], None)
            for key in [k for k in self.conversations if parts[1] in k.split("-")]:
                self.conversations.pop(key, None)
                self.cursors.pop(key, None)
            return True
        if len(parts) == 2 and parts[0] == "rooms":
            node = self.rooms.pop(parts[1], None)
            if node is not None and node.get("name") is not None:
                self.room_ids_by_name.pop(node["name"], None)
            key = f"room:{parts[1]}"
            self.conversations.pop(key, None)
            self.cursors.pop(key, None)
            return True
        if len(parts) == 4 and parts[2] == "messages" and parts[0] in {"users", "rooms"}:
            parent = self.tree[parts[0]].get(parts[1])
            if parent is not None:
                parent["messages"].pop(parts[3], None)
            return True
        return False

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _put_user(self, user_id: str, value: _JSON) -> None:
        node = self.users.setdefault(user_id, {"name": None, "messages": {}})
        old_name = node.get("name")
        node.update({k: v for k, v in value.items() if k != "messages"})
        node["messages"].update(value.get("messages") or {})
        if old_name and old_name != node.get("name"):
            self.user_ids_by_name.pop(old_name, None)
        if node.get("name"):
            self.user_ids_by_name[node["name"]] = int(user_id)

    def _put_room(self, room_id: str, value: _JSON) -> None:
        node = self.rooms.setdefault(room_id, {"name": None, "ownerId": None, "messages": {}})
        old_name = node.get("name")
        node.update({k: v for k, v in value.items() if k != "messages"})
        node["messages"].update(value.get("messages") or {})
        if old_name and old_name != node.get("name"):
            self.room_ids_by_name.pop(old_name, None)
        if node.get("name"):
            self.room_ids_by_name[node["name"]] = int(room_id)

    def _merge_node(self, collection: str, owner_id: str, message_id: str, value: _JSON) -> None:
        parent = self.tree[collection].get(owner_id)
        if parent is not None:
            parent["messages"][message_id] = value

        entry = ListedMessage(
            id=int(message_id),
            sender=value["sender"],
            content=value["message"],
            timestamp=value["timestamp"],
            sender_name=value.get("senderName"),
            client_message_id=value.get("clientMessageId"),
        )
        if collection == "rooms":
            key = room_key(int(value.get("roomId", owner_id)))
        elif "userA" in value and "userB" in value:
            key = pair_key(value["userA"], value["userB"])
        else:
            # without both participants the conversation cannot be identified
            return
        self._merge_entry(key, entry)

    def _merge_record(self, record: _JSON, key: str | None = None) -> None:
        entry = _entry_from_record(record)
        self._write_tree_message(record, entry)
        self._merge_entry(key or _record_key(record), entry)

    def _write_tree_message(self, record: _JSON, entry: ListedMessage) -> None:
        node = entry.node()
        mid = str(entry.id)
        if record.get("room_id") is not None:
            room = self.rooms.get(str(record["room_id"]))
            if room is not None:
                room["messages"][mid] = node
            return
        for uid in (record["user_a"], record["user_b"]):
            user = self.users.get(str(uid))
            if user is not None:
                user["messages"][mid] = node

    def _merge_entry(self, key: str, entry: ListedMessage) -> None:
        entries = self.conversations.setdefault(key, [])
        index = _find_duplicate(entries, entry)
        if index is None:
            _insert_ordered(entries, entry)
            return
        if not entry.pending:
            # confirmation replaces the optimistic copy in place
            entries[index] = entry


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _room_fields(room: _JSON) -> _JSON:
    return {
        "name": room["name"],
        "ownerId": room.get("created_by"),
        "description": room.get("description", ""),
        "memberCount": room.get("member_count"),
    }


def _entry_from_record(record: _JSON) -> ListedMessage:
    return ListedMessage(
        id=record.get("id"),
        sender=record["sender_id"],
        content=record["content"],
        timestamp=record["created_at"],
        sender_name=record.get("sender_name"),
        client_message_id=record.get("client_message_id"),
    )


def _record_key(record: _JSON) -> str:
    if record.get("room_id") is not None:
        return room_key(record["room_id"])
    return pair_key(record["user_a"], record["user_b"])


def is_same_message(a: ListedMessage, b: ListedMessage) -> bool:
    """Decide whether two list entries describe the same message.

    Server ids are authoritative when both sides have one, then client message
    ids; otherwise equal content and sender within the time window match.
    """
    if a.id is not None and b.id is not None:
        return a.id == b.id
    if a.client_message_id is not None and b.client_message_id is not None:
        return a.client_message_id == b.client_message_id
    if a.content != b.content or a.sender != b.sender:
        return False
    return abs((a.moment - b.moment).total_seconds()) < DEDUP_WINDOW_SECONDS


def _find_duplicate(entries: list[ListedMessage], entry: ListedMessage) -> int | None:
    for index, existing in enumerate(entries):
        if is_same_message(existing, entry):
            return index
    return None


def _insert_ordered(entries: list[ListedMessage], entry: ListedMessage) -> None:
    """Insert keeping timestamp order; equal timestamps keep arrival order."""
    moment = entry.moment
    index = len(entries)
    while index > 0 and entries[index - 1].moment > moment:
        index -= 1
    entries.insert(index, entry)
