"""
Error types for pma-up.

This module defines the UpdateError base class and the generic subclasses
shared by every stage of an upgrade. Component-specific errors (filesystem,
extraction, download) derive from these and live next to the code that
raises them.

Every error carries a stable ``error_code`` string and a ``details`` dict with
the paths involved, so an operator can act on a failure without re-running
the tool with verbose tracing.
"""

from __future__ import annotations

from typing import Any


class UpdateError(Exception):
    """
    Base exception class for pma-up errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "source_missing", "path_traversal").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, errno values).

    Example:
        >>> raise UpdateError(
        ...     error_code="invalid_argument",
        ...     message="Installation root must not be empty",
        ...     details={"installation_root": ""},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdateError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdateError):
    """
    Error raised when an operation receives invalid input arguments.

    Raised before any I/O takes place.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class FailedPreconditionError(UpdateError):
    """
    Error raised when a precondition for the operation is not met.

    Used when the installation root is missing, a backup to restore from
    does not exist, etc.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class UnavailableError(UpdateError):
    """
    Error raised when a remote collaborator cannot deliver what was asked.

    No filesystem mutation has happened when this is raised, so the whole
    run is safe to retry.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        error_code: str = "unavailable",
    ) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code=error_code, message=message, details=details)


class InternalError(UpdateError):
    """
    Error raised for unexpected internal errors.

    These should be logged with full stack traces.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
