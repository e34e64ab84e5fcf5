from __future__ import annotations

import pytest

from clack.errors import ValidationError
from clack.models import (
    DirectMessage,
    RoomMessage,
    conversation_key,
    format_timestamp,
    parse_timestamp,
)


@pytest.mark.parametrize(("a", "b"), [(1, 2), (2, 1), (7, 30), (30, 7)])
def test_conversation_key_is_direction_independent(a: int, b: int) -> None:
    assert conversation_key(a, b) == conversation_key(b, a) == (min(a, b), max(a, b))


def _dm(**overrides: object) -> DirectMessage:
    fields = {
        "id": 1,
        "user_a": 1,
        "user_b": 2,
        "sender_id": 1,
        "sender_name": "alice",
        "content": "hello",
        "created_at": "2024-01-01T00:00:00.000Z",
    }
    fields.update(overrides)
    return DirectMessage(**fields)  # type: ignore[arg-type]


class TestDirectMessage:
    def test_valid_message(self) -> None:
        msg = _dm()
        assert msg.key == (1, 2)
        assert msg.other_participant(1) == 2

    def test_unordered_participants_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            _dm(user_a=2, user_b=1)
        assert exc_info.value.field == "user_a"

    def test_same_participant_twice_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _dm(user_a=2, user_b=2, sender_id=2)

    def test_sender_must_be_participant(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            _dm(sender_id=3)
        assert exc_info.value.field == "sender_id"

    def test_to_dict_omits_missing_client_id(self) -> None:
        assert "client_message_id" not in _dm().to_dict()
        assert _dm(client_message_id="abc").to_dict()["client_message_id"] == "abc"


def test_room_message_to_dict() -> None:
    msg = RoomMessage(
        id=4,
        room_id=9,
        sender_id=1,
        sender_name="alice",
        content="hi room",
        created_at="2024-01-01T00:00:00.000Z",
    )
    assert msg.to_dict()["room_id"] == 9
    assert "user_a" not in msg.to_dict()


def test_timestamp_format_is_millisecond_utc() -> None:
    parsed = parse_timestamp("2024-03-04T05:06:07.891234+02:00")
    assert format_timestamp(parsed) == "2024-03-04T03:06:07.891Z"
