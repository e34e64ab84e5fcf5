"""Clack error hierarchy.

Provides structured errors for all domain operations:
- ClackError: Base exception for all application errors
- ValidationError: Input validation failures
- AuthenticationError: Missing or bad credentials
- AuthorizationError: Caller is not entitled to the resource
- NotFoundError: Referenced entity does not exist
- ConflictError: Operation clashes with current state
- DatabaseError: Storage failures
- ConfigurationError: Configuration/setup issues

Usage:
    from clack.errors import NotFoundError

    if room is None:
        raise NotFoundError("room", room_id)
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Base Class
# =============================================================================


class ClackError(Exception):
    """Base exception for all Clack application errors.

    Attributes:
        message: Human-readable error description
        recoverable: Whether the operation can be retried
        context: Additional context for debugging
    """

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to structured dictionary for RPC responses."""
        return {
            "type": type(self).__name__.lower().replace("error", ""),
            "message": self.message,
            "recoverable": self.recoverable,
            **{k: v for k, v in self.context.items() if v is not None},
        }


# =============================================================================
# Client Errors
# =============================================================================


class ValidationError(ClackError):
    """Input validation failed."""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        constraint: str | None = None,
    ) -> None:
        super().__init__(
            message,
            recoverable=True,
            context={"field": field, "constraint": constraint},
        )
        self.field = field
        self.constraint = constraint


class AuthenticationError(ClackError):
    """Credentials were missing, malformed or rejected."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message, recoverable=True)


class AuthorizationError(ClackError):
    """Authenticated caller may not perform this action."""

    def __init__(self, message: str, *, action: str | None = None) -> None:
        super().__init__(message, context={"action": action})
        self.action = action


class NotFoundError(ClackError):
    """A referenced entity does not exist."""

    def __init__(self, resource_type: str, resource_id: Any) -> None:
        super().__init__(
            f"{resource_type.capitalize()} not found: {resource_id}",
            context={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(ClackError):
    """The request is well formed but clashes with current state."""

    def __init__(self, message: str, *, resource_type: str | None = None) -> None:
        super().__init__(message, context={"resource_type": resource_type})
        self.resource_type = resource_type


# =============================================================================
# Server Errors
# =============================================================================


class DatabaseError(ClackError):
    """Storage operation failed."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message, recoverable=True, context={"operation": operation})
        self.operation = operation


class ConfigurationError(ClackError):
    """Settings are missing or inconsistent."""

    def __init__(self, message: str, *, setting: str | None = None) -> None:
        super().__init__(message, context={"setting": setting})
        self.setting = setting

