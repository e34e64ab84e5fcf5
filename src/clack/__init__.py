"""Clack: chat service driven by MCP tool calls with a patch-based change feed."""

from .settings import SERVER_VERSION as __version__

__all__ = ["__version__"]
