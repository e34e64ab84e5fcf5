"""SQLite-backed chat store.

All reads and writes go through a single connection guarded by a re-entrant
lock, so the store may be called from worker threads (`asyncio.to_thread`).
Each mutation runs in one transaction. Ownership-sensitive writes carry the
expected owner in their WHERE clause, so a transfer that lands between the
authorization check and the write cannot be overridden.

Ordering: rows are returned in id order, which is creation order.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import AuthorizationError, ConflictError, DatabaseError, NotFoundError
from .models import (
    DirectMessage,
    Message,
    Room,
    RoomMessage,
    User,
    conversation_key,
    format_timestamp,
    parse_timestamp,
    utc_now_iso,
)
from .settings import settings

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rooms (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_by INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (created_by) REFERENCES users (id)
);

CREATE TABLE IF NOT EXISTS room_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    joined_at TEXT NOT NULL,
    FOREIGN KEY (room_id) REFERENCES rooms (id),
    FOREIGN KEY (user_id) REFERENCES users (id),
    UNIQUE (room_id, user_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_a INTEGER,
    user_b INTEGER,
    room_id INTEGER,
    sender_id INTEGER NOT NULL,
    content TEXT NOT NULL,
    client_message_id TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_a) REFERENCES users (id),
    FOREIGN KEY (user_b) REFERENCES users (id),
    FOREIGN KEY (room_id) REFERENCES rooms (id),
    FOREIGN KEY (sender_id) REFERENCES users (id),
    CHECK (
        (user_a IS NOT NULL AND user_b IS NOT NULL AND room_id IS NULL AND user_a < user_b) OR
        (user_a IS NULL AND user_b IS NULL AND room_id IS NOT NULL)
    )
);

CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages (user_a, user_b, id);
CREATE INDEX IF NOT EXISTS idx_messages_room ON messages (room_id, id);
CREATE INDEX IF NOT EXISTS idx_room_members_user ON room_members (user_id);
"""

_ROOM_SELECT = """
    SELECT r.id, r.name, r.description, r.created_by, r.created_at,
           u.username AS created_by_username,
           (SELECT COUNT(*) FROM room_members WHERE room_id = r.id) AS member_count
    FROM rooms r
    JOIN users u ON r.created_by = u.id
"""

_MESSAGE_SELECT = """
    SELECT m.id, m.user_a, m.user_b, m.room_id, m.sender_id, m.content,
           m.client_message_id, m.created_at, u.username AS sender_name
    FROM messages m
    JOIN users u ON m.sender_id = u.id
"""


@dataclass(frozen=True)
class DeletedUser:
    user: User
    room_ids: list[int]


class ChatStore(Protocol):
    """Storage capability consumed by the tool dispatcher."""

    def create_user(self, username: str, password_hash: str) -> User: ...
    def get_user_by_id(self, user_id: int) -> User | None: ...
    def get_user_by_username(self, username: str) -> User | None: ...
    def get_password_hash(self, username: str) -> tuple[User, str] | None: ...
    def delete_user(self, user_id: int) -> DeletedUser: ...
    def list_users_range(self, start: int, end: int) -> list[User]: ...
    def list_users_between(self, start_time: str, end_time: str) -> list[User]: ...
    def create_room(self, name: str, description: str, created_by: int) -> Room: ...
    def get_room(self, room_id: int) -> Room | None: ...
    def get_room_by_name(self, name: str) -> Room | None: ...
    def join_room(self, room_id: int, user_id: int) -> Room: ...
    def leave_room(self, room_id: int, user_id: int) -> Room: ...
    def is_member(self, room_id: int, user_id: int) -> bool: ...
    def list_room_member_ids(self, room_id: int) -> list[int]: ...
    def list_rooms_range(self, start: int, end: int) -> list[Room]: ...
    def list_rooms_between(self, start_time: str, end_time: str) -> list[Room]: ...
    def get_user_rooms(self, user_id: int) -> list[Room]: ...
    def change_room_owner(self, room_id: int, new_owner_id: int, expected_owner_id: int) -> Room: ...
    def delete_room(self, room_id: int, expected_owner_id: int) -> Room: ...
    def send_direct_message(
        self, sender_id: int, other_user_id: int, content: str, client_message_id: str | None = None
    ) -> DirectMessage: ...
    def send_room_message(
        self, room_id: int, sender_id: int, content: str, client_message_id: str | None = None
    ) -> RoomMessage: ...
    def list_user_messages_range(self, user_id: int, start: int, end: int) -> list[DirectMessage]: ...
    def list_user_messages_between(
        self, user_id: int, start_time: str, end_time: str
    ) -> list[DirectMessage]: ...
    def list_conversation_range(
        self, user_a: int, user_b: int, start: int, end: int, *, latest_first: bool = False
    ) -> list[DirectMessage]: ...
    def list_room_messages_range(
        self, room_id: int, start: int, end: int, *, latest_first: bool = False
    ) -> list[RoomMessage]: ...
    def list_room_messages_between(
        self, room_id: int, start_time: str, end_time: str
    ) -> list[RoomMessage]: ...


def _user_from_row(row: sqlite3.Row) -> User:
    return User(id=row["id"], username=row["username"], created_at=row["created_at"])


def _room_from_row(row: sqlite3.Row) -> Room:
    return Room(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        created_by=row["created_by"],
        created_by_username=row["created_by_username"],
        created_at=row["created_at"],
        member_count=row["member_count"],
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    if row["room_id"] is not None:
        return RoomMessage(
            id=row["id"],
            room_id=row["room_id"],
            sender_id=row["sender_id"],
            sender_name=row["sender_name"],
            content=row["content"],
            created_at=row["created_at"],
            client_message_id=row["client_message_id"],
        )
    return DirectMessage(
        id=row["id"],
        user_a=row["user_a"],
        user_b=row["user_b"],
        sender_id=row["sender_id"],
        sender_name=row["sender_name"],
        content=row["content"],
        created_at=row["created_at"],
        client_message_id=row["client_message_id"],
    )


def _normalize_time(value: str) -> str:
    """Bring a caller-supplied timestamp into the stored text format."""
    return format_timestamp(parse_timestamp(value))


class Database:
    """SQLite implementation of `ChatStore`."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = Path(db_path) if db_path is not None else settings.db_path
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                if str(self.db_path) != ":memory:":
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                if str(self.db_path) != ":memory:":
                    conn.execute("PRAGMA journal_mode = WAL")
                self._conn = conn
            return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically while holding the store lock."""
        with self._lock:
            conn = self.connect()
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise ConflictError(f"Constraint violated: {exc}") from exc
            except sqlite3.Error as exc:
                conn.rollback()
                logger.exception("Database transaction failed")
                raise DatabaseError(str(exc)) from exc
            except Exception:
                conn.rollback()
                raise

    def migrate(self) -> None:
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)
            row = conn.execute("SELECT version FROM schema_version").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.info("Initialized chat schema v%d at %s", SCHEMA_VERSION, self.db_path)
            elif row["version"] < SCHEMA_VERSION:
                conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def create_user(self, username: str, password_hash: str) -> User:
        with self._transaction() as conn:
            existing = conn.execute("SELECT 1 FROM users WHERE username = ?", (username,)).fetchone()
            if existing is not None:
                raise ConflictError(f"Username already taken: {username}", resource_type="user")
            cur = conn.execute(
                "INSERT INTO users (username, password_hash, created_at) VALUES (?, ?, ?)",
                (username, password_hash, utc_now_iso()),
            )
            row = conn.execute(
                "SELECT id, username, created_at FROM users WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        return _user_from_row(row)

    def get_user_by_id(self, user_id: int) -> User | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, username, created_at FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> User | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, username, created_at FROM users WHERE username = ?", (username,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_password_hash(self, username: str) -> tuple[User, str] | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, username, created_at, password_hash FROM users WHERE username = ?",
                (username,),
            ).fetchone()
        if row is None:
            return None
        return _user_from_row(row), row["password_hash"]

    def delete_user(self, user_id: int) -> DeletedUser:
        """Remove a user along with everything that references them.

        Rooms the user owns are deleted as well; their ids are returned so the
        caller can announce the removals.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, username, created_at FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError("user", user_id)
            room_ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM rooms WHERE created_by = ? ORDER BY id", (user_id,)
                )
            ]
            for room_id in room_ids:
                self._delete_room_rows(conn, room_id)
            conn.execute(
                "DELETE FROM messages WHERE sender_id = ? OR user_a = ? OR user_b = ?",
                (user_id, user_id, user_id),
            )
            conn.execute("DELETE FROM room_members WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return DeletedUser(user=_user_from_row(row), room_ids=room_ids)

    def list_users_range(self, start: int, end: int) -> list[User]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id, username, created_at FROM users ORDER BY id ASC LIMIT ? OFFSET ?",
                (max(end - start, 0), start),
            ).fetchall()
        return [_user_from_row(r) for r in rows]

    def list_users_between(self, start_time: str, end_time: str) -> list[User]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id, username, created_at FROM users "
                "WHERE created_at BETWEEN ? AND ? ORDER BY id ASC",
                (_normalize_time(start_time), _normalize_time(end_time)),
            ).fetchall()
        return [_user_from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Rooms
    # -------------------------------------------------------------------------

    def _fetch_room(self, conn: sqlite3.Connection, room_id: int) -> Room | None:
        row = conn.execute(_ROOM_SELECT + " WHERE r.id = ?", (room_id,)).fetchone()
        return _room_from_row(row) if row else None

    def _require_room(self, conn: sqlite3.Connection, room_id: int) -> Room:
        room = self._fetch_room(conn, room_id)
        if room is None:
            raise NotFoundError("room", room_id)
        return room

    def _is_member(self, conn: sqlite3.Connection, room_id: int, user_id: int) -> bool:
        row = conn.execute(
            "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?", (room_id, user_id)
        ).fetchone()
        return row is not None

    def create_room(self, name: str, description: str, created_by: int) -> Room:
        now = utc_now_iso()
        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM users WHERE id = ?", (created_by,)).fetchone() is None:
                raise NotFoundError("user", created_by)
            cur = conn.execute(
                "INSERT INTO rooms (name, description, created_by, created_at) VALUES (?, ?, ?, ?)",
                (name, description, created_by, now),
            )
            room_id = cur.lastrowid
            conn.execute(
                "INSERT INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
                (room_id, created_by, now),
            )
            return self._require_room(conn, room_id)

    def get_room(self, room_id: int) -> Room | None:
        with self._transaction() as conn:
            return self._fetch_room(conn, room_id)

    def get_room_by_name(self, name: str) -> Room | None:
        with self._transaction() as conn:
            row = conn.execute(
                _ROOM_SELECT + " WHERE r.name = ? ORDER BY r.id LIMIT 1", (name,)
            ).fetchone()
        return _room_from_row(row) if row else None

    def join_room(self, room_id: int, user_id: int) -> Room:
        with self._transaction() as conn:
            self._require_room(conn, room_id)
            if self._is_member(conn, room_id, user_id):
                raise ConflictError(f"Already a member of room {room_id}", resource_type="room")
            conn.execute(
                "INSERT INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
                (room_id, user_id, utc_now_iso()),
            )
            return self._require_room(conn, room_id)

    def leave_room(self, room_id: int, user_id: int) -> Room:
        with self._transaction() as conn:
            room = self._require_room(conn, room_id)
            if not self._is_member(conn, room_id, user_id):
                raise NotFoundError("membership", f"room {room_id} user {user_id}")
            if room.created_by == user_id:
                raise ConflictError(
                    "Room owner must transfer ownership before leaving", resource_type="room"
                )
            conn.execute(
                "DELETE FROM room_members WHERE room_id = ? AND user_id = ?", (room_id, user_id)
            )
            return self._require_room(conn, room_id)

    def is_member(self, room_id: int, user_id: int) -> bool:
        with self._transaction() as conn:
            return self._is_member(conn, room_id, user_id)

    def list_room_member_ids(self, room_id: int) -> list[int]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT user_id FROM room_members WHERE room_id = ? ORDER BY id", (room_id,)
            ).fetchall()
        return [r["user_id"] for r in rows]

    def list_rooms_range(self, start: int, end: int) -> list[Room]:
        with self._transaction() as conn:
            rows = conn.execute(
                _ROOM_SELECT + " ORDER BY r.id ASC LIMIT ? OFFSET ?",
                (max(end - start, 0), start),
            ).fetchall()
        return [_room_from_row(r) for r in rows]

    def list_rooms_between(self, start_time: str, end_time: str) -> list[Room]:
        with self._transaction() as conn:
            rows = conn.execute(
                _ROOM_SELECT + " WHERE r.created_at BETWEEN ? AND ? ORDER BY r.id ASC",
                (_normalize_time(start_time), _normalize_time(end_time)),
            ).fetchall()
        return [_room_from_row(r) for r in rows]

    def get_user_rooms(self, user_id: int) -> list[Room]:
        with self._transaction() as conn:
            rows = conn.execute(
                _ROOM_SELECT
                + " JOIN room_members rm ON r.id = rm.room_id WHERE rm.user_id = ? ORDER BY r.id",
                (user_id,),
            ).fetchall()
        return [_room_from_row(r) for r in rows]

    def change_room_owner(self, room_id: int, new_owner_id: int, expected_owner_id: int) -> Room:
        """Transfer ownership if `expected_owner_id` still owns the room.

        A new owner who is not yet a member is added to the room.
        """
        with self._transaction() as conn:
            room = self._require_room(conn, room_id)
            if conn.execute("SELECT 1 FROM users WHERE id = ?", (new_owner_id,)).fetchone() is None:
                raise NotFoundError("user", new_owner_id)
            cur = conn.execute(
                "UPDATE rooms SET created_by = ? WHERE id = ? AND created_by = ?",
                (new_owner_id, room_id, expected_owner_id),
            )
            if cur.rowcount == 0:
                raise AuthorizationError(
                    f"Only the current owner of room {room.id} can change its owner",
                    action="change_room_owner",
                )
            if not self._is_member(conn, room_id, new_owner_id):
                conn.execute(
                    "INSERT INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
                    (room_id, new_owner_id, utc_now_iso()),
                )
            return self._require_room(conn, room_id)

    def _delete_room_rows(self, conn: sqlite3.Connection, room_id: int) -> None:
        conn.execute("DELETE FROM messages WHERE room_id = ?", (room_id,))
        conn.execute("DELETE FROM room_members WHERE room_id = ?", (room_id,))
        conn.execute("DELETE FROM rooms WHERE id = ?", (room_id,))

    def delete_room(self, room_id: int, expected_owner_id: int) -> Room:
        """Delete a room with its memberships and messages; returns the final snapshot."""
        with self._transaction() as conn:
            room = self._require_room(conn, room_id)
            if room.created_by != expected_owner_id:
                raise AuthorizationError(
                    f"Only the current owner of room {room.id} can delete it",
                    action="delete_room",
                )
            self._delete_room_rows(conn, room_id)
        return room

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _fetch_message(self, conn: sqlite3.Connection, message_id: int) -> Message:
        row = conn.execute(_MESSAGE_SELECT + " WHERE m.id = ?", (message_id,)).fetchone()
        return _message_from_row(row)

    def send_direct_message(
        self,
        sender_id: int,
        other_user_id: int,
        content: str,
        client_message_id: str | None = None,
    ) -> DirectMessage:
        user_a, user_b = conversation_key(sender_id, other_user_id)
        with self._transaction() as conn:
            for uid in (sender_id, other_user_id):
                if conn.execute("SELECT 1 FROM users WHERE id = ?", (uid,)).fetchone() is None:
                    raise NotFoundError("user", uid)
            cur = conn.execute(
                "INSERT INTO messages "
                "(user_a, user_b, sender_id, content, client_message_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (user_a, user_b, sender_id, content, client_message_id, utc_now_iso()),
            )
            message = self._fetch_message(conn, cur.lastrowid)
        assert isinstance(message, DirectMessage)
        return message

    def send_room_message(
        self,
        room_id: int,
        sender_id: int,
        content: str,
        client_message_id: str | None = None,
    ) -> RoomMessage:
        with self._transaction() as conn:
            self._require_room(conn, room_id)
            if not self._is_member(conn, room_id, sender_id):
                raise AuthorizationError(
                    f"User {sender_id} is not a member of room {room_id}",
                    action="send_room_message",
                )
            cur = conn.execute(
                "INSERT INTO messages "
                "(room_id, sender_id, content, client_message_id, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (room_id, sender_id, content, client_message_id, utc_now_iso()),
            )
            message = self._fetch_message(conn, cur.lastrowid)
        assert isinstance(message, RoomMessage)
        return message

    def _page(
        self,
        where: str,
        params: tuple[object, ...],
        start: int,
        end: int,
        latest_first: bool,
    ) -> list[Message]:
        order = "DESC" if latest_first else "ASC"
        with self._transaction() as conn:
            rows = conn.execute(
                _MESSAGE_SELECT + f" WHERE {where} ORDER BY m.id {order} LIMIT ? OFFSET ?",
                (*params, max(end - start, 0), start),
            ).fetchall()
        messages = [_message_from_row(r) for r in rows]
        if latest_first:
            # pages counted from the newest end are still returned oldest-first
            messages.reverse()
        return messages

    def list_user_messages_range(self, user_id: int, start: int, end: int) -> list[DirectMessage]:
        return self._page(  # type: ignore[return-value]
            "(m.user_a = ? OR m.user_b = ?)", (user_id, user_id), start, end, False
        )

    def list_user_messages_between(
        self, user_id: int, start_time: str, end_time: str
    ) -> list[DirectMessage]:
        with self._transaction() as conn:
            rows = conn.execute(
                _MESSAGE_SELECT
                + " WHERE (m.user_a = ? OR m.user_b = ?) AND m.created_at BETWEEN ? AND ?"
                " ORDER BY m.id ASC",
                (user_id, user_id, _normalize_time(start_time), _normalize_time(end_time)),
            ).fetchall()
        return [_message_from_row(r) for r in rows]  # type: ignore[misc]

    def list_conversation_range(
        self,
        user_a: int,
        user_b: int,
        start: int,
        end: int,
        *,
        latest_first: bool = False,
    ) -> list[DirectMessage]:
        low, high = conversation_key(user_a, user_b)
        return self._page(  # type: ignore[return-value]
            "m.user_a = ? AND m.user_b = ?", (low, high), start, end, latest_first
        )

    def list_room_messages_range(
        self,
        room_id: int,
        start: int,
        end: int,
        *,
        latest_first: bool = False,
    ) -> list[RoomMessage]:
        return self._page(  # type: ignore[return-value]
            "m.room_id = ?", (room_id,), start, end, latest_first
        )

    def list_room_messages_between(
        self, room_id: int, start_time: str, end_time: str
    ) -> list[RoomMessage]:
        with self._transaction() as conn:
            rows = conn.execute(
                _MESSAGE_SELECT
                + " WHERE m.room_id = ? AND m.created_at BETWEEN ? AND ? ORDER BY m.id ASC",
                (room_id, _normalize_time(start_time), _normalize_time(end_time)),
            ).fetchall()
        return [_message_from_row(r) for r in rows]  # type: ignore[misc]

