"""Authentication for the chat service.

Handles:
- Password hashing with Scrypt (random per-user salt)
- Session token generation and idle expiry
- Resolving a transport credential to a CallerIdentity

Two credential forms are accepted: a Bearer session token, or a
username/password pair. Either way only the resolved CallerIdentity travels
further; raw credentials never reach the tool layer.
"""

from __future__ import annotations

import logging
import re
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .db import ChatStore
from .errors import AuthenticationError, ValidationError
from .models import CallerIdentity, User
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Scrypt parameters (memory-hard)
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_KEY_LENGTH = 32
_SALT_BYTES = 16

USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_-]{3,32}")


def _kdf(salt: bytes, n: int = _SCRYPT_N, r: int = _SCRYPT_R, p: int = _SCRYPT_P) -> Scrypt:
    return Scrypt(salt=salt, length=_KEY_LENGTH, n=n, r=r, p=p)


def hash_password(password: str) -> str:
    """Hash a password into a self-describing `scrypt$n$r$p$salt$key` string."""
    salt = secrets.token_bytes(_SALT_BYTES)
    key = _kdf(salt).derive(password.encode("utf-8"))
    return f"scrypt${_SCRYPT_N}${_SCRYPT_R}${_SCRYPT_P}${salt.hex()}${key.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, n, r, p, salt_hex, key_hex = encoded.split("$")
    except ValueError:
        logger.warning("Stored password hash has an unknown layout")
        return False
    if scheme != "scrypt":
        return False
    kdf = _kdf(bytes.fromhex(salt_hex), int(n), int(r), int(p))
    try:
        kdf.verify(password.encode("utf-8"), bytes.fromhex(key_hex))
    except InvalidKey:
        return False
    return True


def generate_session_token() -> str:
    """Generate a cryptographically secure session token.

    Returns:
        64-character hex string (256 bits)
    """
    return secrets.token_hex(32)


@dataclass
class Session:
    """An authenticated user session."""

    token: str
    user_id: int
    username: str
    created_at: datetime
    last_activity: datetime

    def is_expired(self, ttl_seconds: int) -> bool:
        elapsed = (datetime.now(timezone.utc) - self.last_activity).total_seconds()
        return elapsed > ttl_seconds

    def refresh(self) -> None:
        self.last_activity = datetime.now(timezone.utc)


class SessionStore:
    """Thread-safe session storage."""

    def __init__(self, ttl_seconds: int) -> None:
        self._ttl = ttl_seconds
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def insert(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.token] = session

    def get(self, token: str) -> Session | None:
        """Get a live session by token and refresh its idle timer."""
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            if session.is_expired(self._ttl):
                del self._sessions[token]
                return None
            session.refresh()
            return session

    def remove(self, token: str) -> bool:
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def cleanup_expired(self) -> int:
        """Remove all expired sessions. Returns count of removed sessions."""
        with self._lock:
            expired = [t for t, s in self._sessions.items() if s.is_expired(self._ttl)]
            for token in expired:
                del self._sessions[token]
            return len(expired)


class Authenticator:
    """Registers users, issues sessions and resolves credentials to identities."""

    def __init__(self, store: ChatStore, config: Settings | None = None) -> None:
        self.store = store
        self.config = config or default_settings
        self.sessions = SessionStore(self.config.session_ttl_seconds)

    def identity_for(self, user: User) -> CallerIdentity:
        return CallerIdentity(
            user_id=user.id,
            username=user.username,
            is_admin=user.username in self.config.admin_usernames,
        )

    def _open_session(self, user: User) -> Session:
        self.sessions.cleanup_expired()
        now = datetime.now(timezone.utc)
        session = Session(
            token=generate_session_token(),
            user_id=user.id,
            username=user.username,
            created_at=now,
            last_activity=now,
        )
        self.sessions.insert(session)
        return session

    def register(self, username: str, password: str) -> tuple[User, Session]:
        username = username.strip()
        if not username:
            raise ValidationError("Username is required", field="username")
        if not USERNAME_PATTERN.fullmatch(username):
            raise ValidationError(
                "Username must be 3-32 letters, digits, underscores or hyphens",
                field="username",
                constraint="pattern",
            )
        if len(password) < self.config.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.config.min_password_length} characters",
                field="password",
                constraint="min_length",
            )
        user = self.store.create_user(username, hash_password(password))
        logger.info("Registered user id=%s username=%s", user.id, user.username)
        return user, self._open_session(user)

    def verify_credentials(self, username: str, password: str) -> User:
        found = self.store.get_password_hash(username)
        if found is None or not verify_password(password, found[1]):
            raise AuthenticationError("Invalid username or password")
        return found[0]

    def login(self, username: str, password: str) -> tuple[User, Session]:
        user = self.verify_credentials(username, password)
        return user, self._open_session(user)

    def logout(self, token: str) -> bool:
        return self.sessions.remove(token)

    def resolve_token(self, token: str) -> CallerIdentity:
        session = self.sessions.get(token)
        if session is None:
            raise AuthenticationError("Session expired or invalid")
        user = self.store.get_user_by_id(session.user_id)
        if user is None:
            self.sessions.remove(token)
            raise AuthenticationError("Session user no longer exists")
        return self.identity_for(user)

    def resolve_credentials(self, username: str, password: str) -> CallerIdentity:
        return self.identity_for(self.verify_credentials(username, password))
