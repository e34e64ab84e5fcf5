"""Python SDK for the Clack chat service.

Wraps the HTTP auth endpoints, the MCP tool-call endpoint and the SSE change
feed. Tool results arrive as MCP text envelopes; the client decodes them back
into plain dicts so callers never unwrap `content[0].text` themselves.

Usage:
    with ClackClient("http://127.0.0.1:3001") as client:
        client.login("alice", "secret1")
        room = client.create_room("general")["room"]
        client.send_room_message(room["id"], "hello")
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any

import httpx

from .replica import Replica, pair_key, room_key
from .rpc import JSONRPC_VERSION, MCP_PROTOCOL_VERSION

logger = logging.getLogger(__name__)

_JSON = dict[str, Any]

DEFAULT_BASE_URL = "http://127.0.0.1:3001"
DEFAULT_BATCH_SIZE = 100
RECONNECT_INTERVAL_SECONDS = 3.0


class ClackClientError(Exception):
    """A request failed: HTTP status, JSON-RPC error, or tool error."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


def decode_tool_result(result: _JSON) -> Any:
    """Turn an MCP tool envelope back into its payload."""
    content = result.get("content") or []
    text = content[0].get("text", "") if content else ""
    try:
        payload = json.loads(text)
    except (TypeError, ValueError):
        payload = text
    if result.get("isError"):
        raise ClackClientError(0, str(payload), payload)
    return payload


def parse_sse_lines(lines: Iterator[str]) -> Iterator[Any]:
    """Decode SSE `data:` frames into JSON values; comments are skipped."""
    buffer: list[str] = []
    for line in lines:
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip())
            continue
        if line == "" and buffer:
            data = "\n".join(buffer)
            buffer = []
            try:
                yield json.loads(data)
            except ValueError:
                logger.warning("Dropping undecodable event frame: %.80s", data)
    if buffer:
        try:
            yield json.loads("\n".join(buffer))
        except ValueError:
            logger.warning("Dropping undecodable trailing event frame")


class ClackClient:
    """HTTP client for a Clack server.

    Pass `http` to reuse an existing `httpx.Client` (for example a test
    client bound to an in-process app).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = 10.0,
        http: httpx.Client | None = None,
        reconnect_interval: float = RECONNECT_INTERVAL_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.reconnect_interval = reconnect_interval
        self.token: str | None = None
        self.user: _JSON | None = None
        self._owns_http = http is None
        self._http = http
        self._ids = itertools.count(1)

    def _get_http(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(base_url=self.base_url, timeout=self.timeout)
        return self._http

    def close(self) -> None:
        if self._http is not None and self._owns_http:
            self._http.close()
            self._http = None

    def __enter__(self) -> ClackClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        if self.token is None:
            raise ClackClientError(401, "Not logged in")
        return {"Authorization": f"Bearer {self.token}"}

    def _post_json(self, path: str, body: _JSON, headers: dict[str, str] | None = None) -> _JSON:
        response = self._get_http().post(path, json=body, headers=headers)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ClackClientError(response.status_code, str(detail))
        return response.json()

    def _remember(self, data: _JSON) -> _JSON:
        self.token = data["token"]
        self.user = data["user"]
        return data

    def register(self, username: str, password: str) -> _JSON:
        data = self._post_json("/api/auth/register", {"username": username, "password": password})
        return self._remember(data)

    def login(self, username: str, password: str) -> _JSON:
        data = self._post_json("/api/auth/login", {"username": username, "password": password})
        return self._remember(data)

    def logout(self) -> None:
        if self.token is None:
            return
        self._post_json("/api/auth/logout", {}, headers=self._auth_headers())
        self.token = None
        self.user = None

    def me(self) -> _JSON:
        response = self._get_http().get("/api/auth/me", headers=self._auth_headers())
        if response.status_code >= 400:
            raise ClackClientError(response.status_code, response.text)
        return response.json()

    @property
    def user_id(self) -> int:
        if self.user is None:
            raise ClackClientError(401, "Not logged in")
        return int(self.user["id"])

    # -------------------------------------------------------------------------
    # MCP
    # -------------------------------------------------------------------------

    def rpc(self, method: str, params: _JSON | None = None) -> Any:
        body: _JSON = {"jsonrpc": JSONRPC_VERSION, "id": next(self._ids), "method": method}
        if params is not None:
            body["params"] = params
        data = self._post_json("/api/mcp", body, headers=self._auth_headers())
        if "error" in data:
            err = data["error"]
            raise ClackClientError(err["code"], err["message"], err.get("data"))
        return data["result"]

    def initialize(self) -> _JSON:
        return self.rpc(
            "initialize",
            {"protocolVersion": MCP_PROTOCOL_VERSION, "clientInfo": {"name": "clack-python"}},
        )

    def list_tools(self) -> list[_JSON]:
        return self.rpc("tools/list")["tools"]

    def call_tool(self, name: str, arguments: _JSON | None = None) -> Any:
        result = self.rpc("tools/call", {"name": name, "arguments": arguments or {}})
        return decode_tool_result(result)

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    def send_message(
        self, other_user_id: int, content: str, client_message_id: str | None = None
    ) -> _JSON:
        args: _JSON = {"otherUserId": other_user_id, "content": content}
        if client_message_id is not None:
            args["clientMessageId"] = client_message_id
        return self.call_tool("send_message", args)

    def create_room(self, name: str, description: str | None = None) -> _JSON:
        args: _JSON = {"name": name}
        if description is not None:
            args["description"] = description
        return self.call_tool("create_room", args)

    def join_room(self, room_id: int) -> _JSON:
        return self.call_tool("join_room", {"roomId": room_id})

    def leave_room(self, room_id: int) -> _JSON:
        return self.call_tool("leave_room", {"roomId": room_id})

    def send_room_message(
        self, room_id: int, content: str, client_message_id: str | None = None
    ) -> _JSON:
        args: _JSON = {"roomId": room_id, "content": content}
        if client_message_id is not None:
            args["clientMessageId"] = client_message_id
        return self.call_tool("send_room_message", args)

    def get_users(self, start_index: int, end_index: int) -> list[_JSON]:
        return self.call_tool(
            "get_users_by_index_range", {"startIndex": start_index, "endIndex": end_index}
        )["users"]

    def get_rooms(self, start_index: int, end_index: int) -> list[_JSON]:
        return self.call_tool(
            "get_rooms_by_index_range", {"startIndex": start_index, "endIndex": end_index}
        )["rooms"]

    def get_messages(self, start_index: int, end_index: int) -> list[_JSON]:
        return self.call_tool(
            "get_messages_by_index_range",
            {"startIndex": start_index, "endIndex": end_index, "userId": self.user_id},
        )["messages"]

    def get_messages_between_users_page(
        self, user_a: int, user_b: int, start_index: int, count: int
    ) -> list[_JSON]:
        """A latest-first page of one conversation, returned oldest-first."""
        return self.call_tool(
            "get_messages_between_users_by_index_range",
            {
                "userA": user_a,
                "userB": user_b,
                "startIndex": start_index,
                "endIndex": start_index + count,
                "latestFirst": True,
            },
        )["messages"]

    def get_room_messages(self, room_id: int, start_index: int, end_index: int) -> list[_JSON]:
        return self.call_tool(
            "get_room_messages_by_index_range",
            {"roomId": room_id, "startIndex": start_index, "endIndex": end_index},
        )["messages"]

    def get_room_messages_page(self, room_id: int, start_index: int, count: int) -> list[_JSON]:
        """A latest-first page of a room, returned oldest-first."""
        return self.call_tool(
            "get_room_messages_by_index_range",
            {
                "roomId": room_id,
                "startIndex": start_index,
                "endIndex": start_index + count,
                "latestFirst": True,
            },
        )["messages"]

    def get_users_by_time_range(self, start_time: str, end_time: str) -> list[_JSON]:
        return self.call_tool(
            "get_users_by_time_range", {"startTime": start_time, "endTime": end_time}
        )["users"]

    def get_rooms_by_time_range(self, start_time: str, end_time: str) -> list[_JSON]:
        return self.call_tool(
            "get_rooms_by_time_range", {"startTime": start_time, "endTime": end_time}
        )["rooms"]

    def get_messages_by_time_range(self, start_time: str, end_time: str) -> list[_JSON]:
        return self.call_tool(
            "get_messages_by_time_range",
            {"startTime": start_time, "endTime": end_time, "userId": self.user_id},
        )["messages"]

    def get_room_messages_by_time_range(
        self, room_id: int, start_time: str, end_time: str
    ) -> list[_JSON]:
        return self.call_tool(
            "get_room_messages_by_time_range",
            {"roomId": room_id, "startTime": start_time, "endTime": end_time},
        )["messages"]

    def get_user_rooms(self) -> list[_JSON]:
        return self.call_tool("get_user_rooms", {"userId": self.user_id})["rooms"]

    def change_room_owner(self, room_id: int, new_owner_id: int) -> _JSON:
        return self.call_tool(
            "change_room_owner",
            {"roomId": room_id, "newOwnerId": new_owner_id, "currentOwnerId": self.user_id},
        )

    def delete_room(self, room_id: int) -> _JSON:
        return self.call_tool("delete_room", {"roomId": room_id, "ownerId": self.user_id})

    def delete_user(self, user_id: int) -> _JSON:
        return self.call_tool("delete_user", {"userId": user_id})

    # -------------------------------------------------------------------------
    # Bulk reads
    # -------------------------------------------------------------------------

    def _drain(
        self, fetch: Callable[[int, int], list[_JSON]], batch_size: int
    ) -> list[_JSON]:
        items: list[_JSON] = []
        start = 0
        while True:
            page = fetch(start, start + batch_size)
            items.extend(page)
            if len(page) < batch_size:
                return items
            start += batch_size

    def get_all_users(self, batch_size: int = DEFAULT_BATCH_SIZE) -> list[_JSON]:
        return self._drain(self.get_users, batch_size)

    def get_all_rooms(self, batch_size: int = DEFAULT_BATCH_SIZE) -> list[_JSON]:
        return self._drain(self.get_rooms, batch_size)

    def get_all_messages(self, batch_size: int = DEFAULT_BATCH_SIZE) -> list[_JSON]:
        return self._drain(self.get_messages, batch_size)

    def get_all_room_messages(
        self, room_id: int, batch_size: int = DEFAULT_BATCH_SIZE
    ) -> list[_JSON]:
        return self._drain(lambda s, e: self.get_room_messages(room_id, s, e), batch_size)

    def get_user_by_username(self, username: str) -> _JSON | None:
        return next((u for u in self.get_all_users() if u["username"] == username), None)

    def get_room_by_name(self, name: str) -> _JSON | None:
        return next((r for r in self.get_all_rooms() if r["name"] == name), None)

    def send_message_to_username(self, username: str, content: str) -> _JSON:
        user = self.get_user_by_username(username)
        if user is None:
            raise ClackClientError(404, f"User not found: {username}")
        return self.send_message(user["id"], content)

    def send_message_to_room_name(self, name: str, content: str) -> _JSON:
        room = self.get_room_by_name(name)
        if room is None:
            raise ClackClientError(404, f"Room not found: {name}")
        return self.send_room_message(room["id"], content)

    # -------------------------------------------------------------------------
    # Replica sync
    # -------------------------------------------------------------------------

    def load_snapshot(self, replica: Replica) -> Replica:
        """Fill a replica with all users, rooms and the caller's DMs."""
        replica.current_user_id = self.user_id
        replica.load_users(self.get_all_users())
        replica.load_rooms(self.get_all_rooms())
        by_pair: dict[str, list[_JSON]] = {}
        for message in self.get_all_messages():
            by_pair.setdefault(pair_key(message["user_a"], message["user_b"]), []).append(message)
        for key, records in by_pair.items():
            replica.load_messages(key, records, page_size=len(records) + 1)
        return replica

    def load_older_room_messages(self, replica: Replica, room_id: int) -> bool:
        """Prepend the next older page of a room; returns whether more remain."""
        key = room_key(room_id)
        if not replica.has_more(key):
            return False
        page = self.get_room_messages_page(room_id, replica.next_index(key), replica.page_size)
        return replica.prepend_page(key, page).has_more

    def load_older_direct_messages(self, replica: Replica, other_user_id: int) -> bool:
        """Prepend the next older page of a DM conversation; returns whether more remain."""
        key = pair_key(self.user_id, other_user_id)
        if not replica.has_more(key):
            return False
        page = self.get_messages_between_users_page(
            self.user_id, other_user_id, replica.next_index(key), replica.page_size
        )
        return replica.prepend_page(key, page).has_more

    # -------------------------------------------------------------------------
    # Change feed
    # -------------------------------------------------------------------------

    def iter_events(self) -> Iterator[Any]:
        """Stream decoded change-feed payloads until the server closes the stream."""
        if self.token is None:
            raise ClackClientError(401, "Not logged in")
        with self._get_http().stream(
            "GET", "/api/events", params={"token": self.token}, timeout=None
        ) as response:
            if response.status_code >= 400:
                raise ClackClientError(response.status_code, "Event stream rejected")
            yield from parse_sse_lines(response.iter_lines())

    def listen(
        self,
        on_event: Callable[[Any], None],
        stop: threading.Event,
        *,
        max_reconnects: int | None = None,
    ) -> None:
        """Deliver events to `on_event`, reconnecting after a fixed delay.

        Patches emitted while disconnected are not replayed; callers should
        reload their snapshot after a reconnect.
        """
        attempts = 0
        while not stop.is_set():
            try:
                for event in self.iter_events():
                    on_event(event)
                    if stop.is_set():
                        return
            except httpx.HTTPError as exc:
                logger.warning("Event stream dropped: %s", exc)
            attempts += 1
            if max_reconnects is not None and attempts > max_reconnects:
                return
            stop.wait(self.reconnect_interval)

    def follow(self, replica: Replica, stop: threading.Event, **kwargs: Any) -> None:
        """Keep `replica` current from the change feed."""

        def _apply(event: Any) -> None:
            if isinstance(event, dict) and event.get("type") == "connected":
                return
            replica.apply(event)

        self.listen(_apply, stop, **kwargs)
