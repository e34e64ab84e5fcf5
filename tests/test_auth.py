from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from clack.auth import (
    Authenticator,
    Session,
    SessionStore,
    generate_session_token,
    hash_password,
    verify_password,
)
from clack.db import Database
from clack.errors import AuthenticationError, ConflictError, ValidationError


def test_hash_and_verify_round_trip() -> None:
    encoded = hash_password("hunter22")
    assert encoded.startswith("scrypt$")
    assert verify_password("hunter22", encoded)
    assert not verify_password("hunter23", encoded)


def test_hashes_are_salted() -> None:
    assert hash_password("same-password") != hash_password("same-password")


def test_verify_rejects_malformed_hash() -> None:
    assert not verify_password("x", "not-a-real-hash")
    assert not verify_password("x", "bcrypt$1$2$3$00$00")


def test_session_token_shape() -> None:
    token = generate_session_token()
    assert len(token) == 64
    int(token, 16)


class TestSessionStore:
    def _session(self, token: str, user_id: int, idle_seconds: float = 0) -> Session:
        last = datetime.now(timezone.utc) - timedelta(seconds=idle_seconds)
        return Session(token=token, user_id=user_id, username="u", created_at=last, last_activity=last)

    def test_expired_session_is_dropped(self) -> None:
        store = SessionStore(ttl_seconds=60)
        store.insert(self._session("old", 1, idle_seconds=120))
        assert store.get("old") is None
        assert store.remove("old") is False

    def test_get_refreshes_activity(self) -> None:
        store = SessionStore(ttl_seconds=60)
        session = self._session("t", 1, idle_seconds=30)
        store.insert(session)
        before = session.last_activity
        assert store.get("t") is session
        assert session.last_activity > before

    def test_cleanup_expired(self) -> None:
        store = SessionStore(ttl_seconds=60)
        store.insert(self._session("a", 1, idle_seconds=120))
        store.insert(self._session("b", 2))
        store.insert(self._session("c", 2))
        assert store.cleanup_expired() == 1
        assert store.get("a") is None
        assert store.get("b") is not None


class TestAuthenticator:
    @pytest.fixture
    def auth(self, store: Database, test_settings) -> Authenticator:  # noqa: ANN001
        return Authenticator(store, test_settings)

    def test_register_then_login(self, auth: Authenticator) -> None:
        user, session = auth.register("  alice ", "secret1")
        assert user.username == "alice"
        assert auth.resolve_token(session.token).user_id == user.id

        logged_in, second = auth.login("alice", "secret1")
        assert logged_in == user
        assert second.token != session.token

    def test_register_rejects_bad_input(self, auth: Authenticator) -> None:
        with pytest.raises(ValidationError):
            auth.register("   ", "secret1")
        for bad in ("ab", "has space", "bad!chars", "x" * 33):
            with pytest.raises(ValidationError):
                auth.register(bad, "secret1")
        with pytest.raises(ValidationError):
            auth.register("bob", "123")
        auth.register("bob", "secret1")
        auth.register("x" * 32, "secret1")
        auth.register("the_real-bob", "secret1")
        with pytest.raises(ConflictError):
            auth.register("bob", "secret2")

    def test_wrong_password(self, auth: Authenticator) -> None:
        auth.register("alice", "secret1")
        with pytest.raises(AuthenticationError):
            auth.login("alice", "wrong-one")
        with pytest.raises(AuthenticationError):
            auth.resolve_credentials("nobody", "secret1")

    def test_logout_invalidates_token(self, auth: Authenticator) -> None:
        _, session = auth.register("alice", "secret1")
        assert auth.logout(session.token)
        with pytest.raises(AuthenticationError):
            auth.resolve_token(session.token)

    def test_deleted_user_token_is_rejected(self, auth: Authenticator, store: Database) -> None:
        user, session = auth.register("alice", "secret1")
        store.delete_user(user.id)
        with pytest.raises(AuthenticationError):
            auth.resolve_token(session.token)

    def test_admin_flag_from_settings(self, auth: Authenticator, test_settings) -> None:  # noqa: ANN001
        _, admin_session = auth.register("admin", "secret1")
        assert auth.resolve_token(admin_session.token).is_admin
        other = Authenticator(auth.store, replace(test_settings, admin_usernames=()))
        assert not other.resolve_credentials("admin", "secret1").is_admin
