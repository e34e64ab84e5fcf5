"""Tests for the client-side replica: idempotent patches and de-duplication."""

from __future__ import annotations

import copy

from clack.replica import ListedMessage, Replica, is_same_message, pair_key, room_key


def _dm_patches(msg_id: int, content: str, *, ts: str, sender: int = 1, cid: str | None = None):  # noqa: ANN202
    node = {
        "id": msg_id,
        "timestamp": ts,
        "message": content,
        "sender": sender,
        "senderName": "alice" if sender == 1 else "bob",
        "clientMessageId": cid,
        "userA": 1,
        "userB": 2,
    }
    return [
        {"op": "add", "path": f"/users/1/messages/{msg_id}", "value": node},
        {"op": "add", "path": f"/users/2/messages/{msg_id}", "value": node},
    ]


def _replica_with_users() -> Replica:
    replica = Replica(current_user_id=1)
    replica.apply(
        [
            {"op": "add", "path": "/users/1", "value": {"name": "alice", "messages": {}}},
            {"op": "add", "path": "/users/2", "value": {"name": "bob", "messages": {}}},
        ]
    )
    return replica


def test_keys() -> None:
    assert pair_key(5, 2) == pair_key(2, 5) == "2-5"
    assert room_key(9) == "room:9"


class TestPatches:
    def test_add_user_twice_is_idempotent(self) -> None:
        replica = Replica()
        patch = {"op": "add", "path": "/users/3", "value": {"name": "carol", "messages": {}}}
        replica.apply(patch)
        before = copy.deepcopy(replica.tree)
        replica.apply(patch)
        assert replica.tree == before
        assert replica.user_id_for("carol") == 3

    def test_user_update_keeps_loaded_messages(self) -> None:
        replica = _replica_with_users()
        replica.apply(_dm_patches(1, "hi", ts="2024-01-01T00:00:00.000Z"))
        replica.apply({"op": "add", "path": "/users/1", "value": {"name": "alice", "messages": {}}})
        assert "1" in replica.users["1"]["messages"]

    def test_direct_message_lands_in_tree_and_one_list(self) -> None:
        replica = _replica_with_users()
        applied = replica.apply(_dm_patches(7, "hey", ts="2024-01-01T00:00:00.000Z"))
        assert applied == 2
        assert replica.users["1"]["messages"]["7"]["message"] == "hey"
        assert replica.users["2"]["messages"]["7"]["message"] == "hey"
        assert [m.id for m in replica.messages_for("1-2")] == [7]

    def test_message_patch_replayed(self) -> None:
        replica = _replica_with_users()
        patches = _dm_patches(7, "hey", ts="2024-01-01T00:00:00.000Z")
        replica.apply(patches)
        replica.apply(patches)
        assert len(replica.messages_for("1-2")) == 1

    def test_room_message_without_room_node_still_listed(self) -> None:
        replica = Replica()
        node = {"id": 4, "timestamp": "2024-01-01T00:00:00.000Z", "message": "m", "sender": 1, "roomId": 3}
        assert replica.apply_patch({"op": "add", "path": "/rooms/3/messages/4", "value": node})
        assert "3" not in replica.rooms
        assert [m.content for m in replica.messages_for("room:3")] == ["m"]

    def test_remove_room_drops_its_list(self) -> None:
        replica = Replica()
        replica.apply({"op": "add", "path": "/rooms/3", "value": {"name": "g", "ownerId": 1, "messages": {}}})
        replica.load_messages("room:3", [], page_size=10)
        replica.apply({"op": "remove", "path": "/rooms/3", "roomId": 3})
        assert "3" not in replica.rooms
        assert replica.room_id_for("g") is None
        assert "room:3" not in replica.conversations
        assert replica.has_more("room:3")

    def test_room_replace_tracks_owner(self) -> None:
        replica = Replica()
        replica.apply({"op": "add", "path": "/rooms/3", "value": {"name": "g", "ownerId": 1, "messages": {}}})
        replica.apply({"op": "replace", "path": "/rooms/3", "value": {"name": "g", "ownerId": 2}})
        assert replica.rooms["3"]["ownerId"] == 2
        assert replica.rooms["3"]["messages"] == {}

    def test_legacy_flat_paths(self) -> None:
        replica = Replica()
        replica.apply({"op": "add", "path": "/users", "value": {"id": 1, "username": "alice"}})
        replica.apply({"op": "add", "path": "/users", "value": {"id": 2, "username": "bob"}})
        replica.apply(
            {
                "op": "add",
                "path": "/messages",
                "value": {
                    "id": 10,
                    "user_a": 1,
                    "user_b": 2,
                    "sender_id": 2,
                    "content": "legacy",
                    "created_at": "2024-01-01T00:00:00.000Z",
                },
            }
        )
        assert replica.user_id_for("bob") == 2
        assert replica.users["1"]["messages"]["10"]["message"] == "legacy"
        assert [m.content for m in replica.messages_for("1-2")] == ["legacy"]

    def test_unknown_patches_are_ignored(self) -> None:
        replica = Replica()
        assert replica.apply({"op": "move", "path": "/users/1"}) == 0
        assert replica.apply({"op": "add", "path": "/nowhere/1", "value": {}}) == 0


class TestDeduplication:
    def test_optimistic_entry_reconciled_within_window(self) -> None:
        replica = _replica_with_users()
        replica.add_optimistic("1-2", 1, "hello", timestamp="2024-01-01T00:00:00.000Z")

        # the server echo arrives 400ms later without a client id
        replica.apply(_dm_patches(5, "hello", ts="2024-01-01T00:00:00.400Z"))

        [entry] = replica.messages_for("1-2")
        assert entry.id == 5
        assert not entry.pending

    def test_same_text_outside_window_is_a_new_message(self) -> None:
        replica = _replica_with_users()
        replica.add_optimistic("1-2", 1, "ok", timestamp="2024-01-01T00:00:00.000Z")
        replica.apply(_dm_patches(5, "ok", ts="2024-01-01T00:00:02.000Z"))
        assert len(replica.messages_for("1-2")) == 2

    def test_client_message_id_reconciles_regardless_of_time(self) -> None:
        replica = _replica_with_users()
        replica.add_optimistic(
            "1-2", 1, "hello", client_message_id="c-1", timestamp="2024-01-01T00:00:00.000Z"
        )
        replica.apply(_dm_patches(5, "hello", ts="2024-01-01T00:00:09.000Z", cid="c-1"))
        [entry] = replica.messages_for("1-2")
        assert entry.id == 5

    def test_distinct_server_ids_never_merge(self) -> None:
        replica = _replica_with_users()
        replica.apply(_dm_patches(5, "same", ts="2024-01-01T00:00:00.000Z"))
        replica.apply(_dm_patches(6, "same", ts="2024-01-01T00:00:00.100Z"))
        assert [m.id for m in replica.messages_for("1-2")] == [5, 6]

    def test_is_same_message_requires_same_sender(self) -> None:
        a = ListedMessage(sender=1, content="x", timestamp="2024-01-01T00:00:00.000Z")
        b = ListedMessage(sender=2, content="x", timestamp="2024-01-01T00:00:00.000Z")
        assert not is_same_message(a, b)

    def test_list_stays_time_ordered(self) -> None:
        replica = _replica_with_users()
        replica.apply(_dm_patches(2, "second", ts="2024-01-01T00:00:05.000Z"))
        replica.apply(_dm_patches(1, "first", ts="2024-01-01T00:00:01.000Z"))
        assert [m.content for m in replica.messages_for("1-2")] == ["first", "second"]


def _record(msg_id: int, content: str, second: int) -> dict:
    return {
        "id": msg_id,
        "room_id": 3,
        "sender_id": 1,
        "sender_name": "alice",
        "content": content,
        "created_at": f"2024-01-01T00:00:{second:02d}.000Z",
    }


class TestPagination:
    def test_load_then_prepend_older_pages(self) -> None:
        replica = Replica(page_size=2)
        replica.load_messages("room:3", [_record(3, "c", 3), _record(4, "d", 4)])
        assert replica.has_more("room:3")
        assert replica.next_index("room:3") == 2

        cursor = replica.prepend_page("room:3", [_record(1, "a", 1), _record(2, "b", 2)])
        assert cursor.has_more
        assert cursor.next_index == 4

        cursor = replica.prepend_page("room:3", [])
        assert not cursor.has_more
        assert [m.content for m in replica.messages_for("room:3")] == ["a", "b", "c", "d"]

    def test_short_first_page_means_exhausted(self) -> None:
        replica = Replica(page_size=10)
        replica.load_messages("room:3", [_record(1, "a", 1)])
        assert not replica.has_more("room:3")

    def test_prepend_skips_already_loaded_messages(self) -> None:
        replica = Replica(page_size=2)
        replica.load_messages("room:3", [_record(2, "b", 2), _record(3, "c", 3)])
        replica.prepend_page("room:3", [_record(1, "a", 1), _record(2, "b", 2)])
        assert [m.id for m in replica.messages_for("room:3")] == [1, 2, 3]

    def test_reload_keeps_unconfirmed_optimistic_entries(self) -> None:
        replica = Replica(page_size=2)
        replica.load_messages("room:3", [_record(1, "a", 1)])
        replica.add_optimistic(
            "room:3", 1, "in flight", client_message_id="c-9", timestamp="2024-01-01T00:00:09.000Z"
        )

        replica.load_messages("room:3", [_record(1, "a", 1), _record(2, "b", 2)])
        entries = replica.messages_for("room:3")
        assert [m.content for m in entries] == ["a", "b", "in flight"]
        assert entries[-1].pending

        confirmed = {**_record(3, "in flight", 9), "client_message_id": "c-9"}
        replica.load_messages("room:3", [_record(2, "b", 2), confirmed])
        entries = replica.messages_for("room:3")
        assert [m.id for m in entries] == [2, 3]
        assert not any(m.pending for m in entries)
