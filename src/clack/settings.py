from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError

SERVER_NAME = "clack-chat"
SERVER_VERSION = "1.0.0"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    val = raw.strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", setting=name) from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", setting=name) from None


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """Static settings for the chat service.

    Every value can be overridden through a CLACK_* environment variable.
    """

    data_dir: Path = Path(os.environ.get("CLACK_DATA_DIR", str(Path.home() / ".clack-data")))
    db_path: Path = Path(os.environ.get("CLACK_DB_PATH", str(data_dir / "clack.db")))
    log_path: Path = data_dir / "clack.log"
    log_level: str = os.environ.get("CLACK_LOG_LEVEL", "INFO")
    log_max_bytes: int = _env_int("CLACK_LOG_MAX_BYTES", 1_000_000)
    log_backup_count: int = _env_int("CLACK_LOG_BACKUP_COUNT", 3)
    log_to_file: bool = _env_bool("CLACK_LOG_TO_FILE", True)
    host: str = os.environ.get("CLACK_HOST", "127.0.0.1")
    port: int = _env_int("CLACK_PORT", 3001)

    # =========================================================================
    # Auth
    # =========================================================================
    # Usernames listed here may call admin-only tools such as delete_user.
    # Enable via: CLACK_ADMIN_USERNAMES=alice,bob
    # =========================================================================
    admin_usernames: tuple[str, ...] = _env_list("CLACK_ADMIN_USERNAMES")
    session_ttl_seconds: int = _env_int("CLACK_SESSION_TTL_SECONDS", 24 * 60 * 60)
    min_password_length: int = _env_int("CLACK_MIN_PASSWORD_LENGTH", 6)

    # =========================================================================
    # Change feed (SSE)
    # =========================================================================
    # Heartbeat comments keep proxies from closing idle streams. A subscriber
    # whose queue fills up is treated as dead and pruned.
    # =========================================================================
    sse_heartbeat_seconds: float = _env_float("CLACK_SSE_HEARTBEAT_SECONDS", 30.0)
    sse_queue_size: int = _env_int("CLACK_SSE_QUEUE_SIZE", 256)

    # Widest window a single index-range query may request.
    page_size_limit: int = _env_int("CLACK_PAGE_SIZE_LIMIT", 500)

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Invalid port: {self.port}", setting="port")
        if self.page_size_limit < 1:
            raise ConfigurationError(
                "page_size_limit must be positive", setting="page_size_limit"
            )
        if self.sse_queue_size < 1:
            raise ConfigurationError("sse_queue_size must be positive", setting="sse_queue_size")


settings = Settings()
