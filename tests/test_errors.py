from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

import pytest

from clack.errors import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clack.logging_setup import configure_logging
from clack.settings import Settings, _env_float, _env_int


def test_not_found_to_dict() -> None:
    err = NotFoundError("room", 7)
    assert err.message == "Room not found: 7"
    assert err.to_dict() == {
        "type": "notfound",
        "message": "Room not found: 7",
        "recoverable": False,
        "resource_type": "room",
        "resource_id": 7,
    }


def test_to_dict_drops_empty_context() -> None:
    data = ConflictError("taken").to_dict()
    assert "resource_type" not in data
    assert data["type"] == "conflict"


def test_validation_error_is_recoverable() -> None:
    err = ValidationError("bad", field="name", constraint="min_length")
    assert err.recoverable
    assert err.to_dict()["field"] == "name"


def test_authorization_error_records_action() -> None:
    assert AuthorizationError("no", action="delete_room").to_dict()["action"] == "delete_room"


@pytest.mark.parametrize(
    ("overrides", "setting"),
    [
        ({"port": 0}, "port"),
        ({"port": 70000}, "port"),
        ({"page_size_limit": 0}, "page_size_limit"),
        ({"sse_queue_size": 0}, "sse_queue_size"),
    ],
)
def test_settings_reject_bad_values(
    test_settings: Settings, overrides: dict[str, int], setting: str
) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        replace(test_settings, **overrides)
    assert exc_info.value.setting == setting


def test_configure_logging_is_idempotent(test_settings: Settings, tmp_path: Path) -> None:
    config = replace(test_settings, log_to_file=True, log_path=tmp_path / "logs" / "clack.log")
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        configure_logging(config, level="DEBUG")
        configure_logging(config, level="DEBUG")
        ours = [h for h in root.handlers if getattr(h, "_clack_handler", False)]
        assert len(ours) == 2
        assert root.level == logging.DEBUG
        assert (tmp_path / "logs" / "clack.log").exists()
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)


def test_non_numeric_env_value_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLACK_PORT", "abc")
    with pytest.raises(ConfigurationError) as exc_info:
        _env_int("CLACK_PORT", 3001)
    assert exc_info.value.setting == "CLACK_PORT"

    monkeypatch.setenv("CLACK_SSE_HEARTBEAT_SECONDS", "soon")
    with pytest.raises(ConfigurationError):
        _env_float("CLACK_SSE_HEARTBEAT_SECONDS", 30.0)


def test_numeric_env_values_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLACK_PORT", "4000")
    assert _env_int("CLACK_PORT", 3001) == 4000
    monkeypatch.setenv("CLACK_PORT", " ")
    assert _env_int("CLACK_PORT", 3001) == 3001
    monkeypatch.delenv("CLACK_SSE_HEARTBEAT_SECONDS", raising=False)
    assert _env_float("CLACK_SSE_HEARTBEAT_SECONDS", 30.0) == 30.0
