"""Standardized error types for the completion engine.

Every failure the engine can surface derives from :class:`ChatwireError` and
carries a machine-readable ``error_code`` next to a human-readable message.
Controllers show :meth:`ChatwireError.user_message` to the user; the raw
exception is only ever logged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes carried by engine errors."""

    # Descriptor compilation
    MALFORMED = "malformed"
    UNKNOWN_PLACEHOLDER = "unknown_placeholder"

    # Request building
    MISSING_BINDING = "missing_binding"
    INVALID_BODY = "invalid_body"

    # Transport
    INVALID_REQUEST = "invalid_request"
    HTTP_STATUS = "http_status"
    CONNECTION_ERROR = "connection_error"
    DECODE_ERROR = "decode_error"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"

    # Persistence
    PERSISTENCE_ERROR = "persistence_error"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ChatwireError(Exception):
    """Base exception class for all engine errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    user_prefix: ClassVar[str] = ""

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and debug dumps."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def user_message(self) -> str:
        """Short message suitable for display next to the conversation."""
        if self.user_prefix:
            return f"{self.user_prefix}: {self.message}"
        return self.message

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Concrete Errors
# -----------------------------------------------------------------------------

@dataclass
class CompileError(ChatwireError):
    """Raised when a provider description cannot be compiled."""

    error_code: str = field(default=ErrorCode.MALFORMED)
    message: str = field(default="Provider description is malformed")
    details: dict[str, Any] = field(default_factory=dict)

    user_prefix: ClassVar[str] = "Invalid provider"

    @classmethod
    def malformed(cls, reason: str, **details: Any) -> "CompileError":
        return cls(error_code=ErrorCode.MALFORMED, message=reason, details=dict(details))

    @classmethod
    def unknown_placeholder(cls, name: str) -> "CompileError":
        return cls(
            error_code=ErrorCode.UNKNOWN_PLACEHOLDER,
            message=f"Unrecognized placeholder '{{{{{name}}}}}'",
            details={"placeholder": name},
        )


@dataclass
class BuildError(ChatwireError):
    """Raised when a descriptor cannot be bound to the runtime values."""

    error_code: str = field(default=ErrorCode.MISSING_BINDING)
    message: str = field(default="A required placeholder has no value")
    details: dict[str, Any] = field(default_factory=dict)

    user_prefix: ClassVar[str] = "Provider misconfigured"

    @classmethod
    def missing_binding(cls, placeholder: str) -> "BuildError":
        return cls(
            error_code=ErrorCode.MISSING_BINDING,
            message=f"No value supplied for '{{{{{placeholder}}}}}'",
            details={"placeholder": placeholder},
        )

    @property
    def placeholder(self) -> str | None:
        return self.details.get("placeholder")


@dataclass
class TransportError(ChatwireError):
    """Raised when the provider request fails or its stream cannot be decoded."""

    error_code: str = field(default=ErrorCode.CONNECTION_ERROR)
    message: str = field(default="The provider request failed")
    details: dict[str, Any] = field(default_factory=dict)

    status_code: int | None = field(default=None)
    body_excerpt: str = field(default="")

    def to_dict(self) -> dict[str, Any]:
        result = ChatwireError.to_dict(self)
        if self.status_code is not None:
            result["status_code"] = self.status_code
        if self.body_excerpt:
            result["body_excerpt"] = self.body_excerpt
        return result

    def user_message(self) -> str:
        if self.body_excerpt:
            return f"{self.message}: {self.body_excerpt}"
        return self.message


@dataclass
class PersistenceError(ChatwireError):
    """Raised by conversation stores when a conversation cannot be saved."""

    error_code: str = field(default=ErrorCode.PERSISTENCE_ERROR)
    message: str = field(default="Failed to save conversation. Please try again.")
    details: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ErrorCode",
    "ChatwireError",
    "CompileError",
    "BuildError",
    "TransportError",
    "PersistenceError",
]
