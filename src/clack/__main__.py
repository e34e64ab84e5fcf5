"""Clack - real-time chat driven by MCP tool calls.

Usage:
    clack                Start the HTTP server (default)
    clack --help         Show this help message

Environment Variables:
    CLACK_HOST              Server host (default: 127.0.0.1)
    CLACK_PORT              Server port (default: 3001)
    CLACK_DB_PATH           SQLite database file
    CLACK_ADMIN_USERNAMES   Comma-separated usernames allowed to delete users
    CLACK_LOG_LEVEL         Logging level (default: INFO)
"""

from __future__ import annotations

import argparse
import os
from dataclasses import replace
from pathlib import Path

import uvicorn

from .app import create_app
from .errors import ConfigurationError
from .logging_setup import configure_logging
from .settings import SERVER_VERSION, settings


def main() -> None:
    """Main entry point for the Clack server."""
    parser = argparse.ArgumentParser(
        prog="clack",
        description="Clack - real-time chat over MCP tool calls",
        epilog="""
Examples:
  clack                       Start the server on the default port
  clack --port 8020           Start on a custom port
  clack --db /tmp/chat.db     Use a specific database file
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help=f"Server host (default: {settings.host})",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.port,
        help=f"Server port (default: {settings.port})",
    )
    parser.add_argument(
        "--db",
        default=None,
        help=f"SQLite database path (default: {settings.db_path})",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload (development only)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.log_level,
        help=f"Logging level (default: {settings.log_level})",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {SERVER_VERSION}",
    )

    args = parser.parse_args()

    overrides: dict[str, object] = {"host": args.host, "port": args.port}
    if args.db:
        overrides["db_path"] = Path(args.db)
    try:
        config = replace(settings, **overrides)
    except ConfigurationError as exc:
        parser.error(exc.message)
    configure_logging(config, level=args.log_level)

    print(f"Starting Clack server on {config.host}:{config.port}")
    print("Press Ctrl+C to stop\n")

    if args.reload:
        # the reloader re-imports the app in a child process, which reads the env
        if args.db:
            os.environ["CLACK_DB_PATH"] = args.db
        uvicorn.run(
            "clack.app:app",
            host=config.host,
            port=config.port,
            reload=True,
            log_level=args.log_level.lower(),
        )
        return

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
