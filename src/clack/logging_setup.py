from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from .settings import Settings, settings as default_settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(config: Settings | None = None, *, level: str | None = None) -> None:
    """Install console and rotating-file handlers on the root logger.

    Safe to call more than once; handlers installed by a previous call are
    replaced rather than duplicated.
    """
    config = config or default_settings
    root = logging.getLogger()
    root.setLevel((level or config.log_level).upper())

    for handler in list(root.handlers):
        if getattr(handler, "_clack_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    stream._clack_handler = True  # type: ignore[attr-defined]
    root.addHandler(stream)

    if config.log_to_file:
        config.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_path,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler._clack_handler = True  # type: ignore[attr-defined]
        root.addHandler(file_handler)
