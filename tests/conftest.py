from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from clack.app import create_app
from clack.change_feed import ChangeEvent
from clack.db import Database
from clack.models import CallerIdentity, User
from clack.settings import Settings


class RecordingSink:
    """Event sink that keeps every published event."""

    def __init__(self) -> None:
        self.events: list[ChangeEvent] = []

    async def publish(self, event: ChangeEvent) -> None:
        self.events.append(event)

    @property
    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        db_path=tmp_path / "clack-test.db",
        log_path=tmp_path / "clack-test.log",
        log_to_file=False,
        admin_usernames=("admin",),
        sse_queue_size=8,
        sse_heartbeat_seconds=0.05,
    )


@pytest.fixture
def store(test_settings: Settings) -> Iterator[Database]:
    """A migrated store backed by a temp file."""
    db = Database(db_path=test_settings.db_path)
    db.migrate()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_user(store: Database) -> Callable[[str], User]:
    """Create users directly in the store (password hashing skipped)."""

    def _make(username: str) -> User:
        return store.create_user(username, "not-a-real-hash")

    return _make


def caller_for(user: User, *, admin: bool = False) -> CallerIdentity:
    return CallerIdentity(user_id=user.id, username=user.username, is_admin=admin)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def api_client(test_settings: Settings) -> Iterator[TestClient]:
    """HTTP client bound to an app with its own temp database."""
    app = create_app(test_settings)
    with TestClient(app) as client:
        yield client
