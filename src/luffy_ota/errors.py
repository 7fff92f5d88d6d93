"""
Error types for the Luffy OTA engine.

This module defines the OtaError base class and one subclass per failure
category of the update path. Every error carries a stable error code, a
human-readable message and optional structured details so it can be logged
with the same fields everywhere.

Failures in the update path are isolated per cycle and per service group by
the VersionManager; only ConfigurationError is fatal, and only at startup.
"""

from __future__ import annotations

from typing import Any


class OtaError(Exception):
    """
    Base exception class for OTA engine errors.

    Attributes:
        error_code: Internal error code string (e.g., "transport",
            "install_failed", "rollback_failed", "configuration").
        message: Human-readable error message.
        details: Optional structured details (e.g., package name, URL).

    Example:
        >>> raise OtaError(
        ...     error_code="transport",
        ...     message="Release index unreachable",
        ...     details={"url": "https://api.github.com/repos/o/r/releases/latest"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an OtaError.

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
        Convert the error to a dictionary for logging or status reporting.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(OtaError):
    """
    Error raised for malformed input such as unparseable versions,
    artifact filenames that do not follow the naming scheme, or unknown
    message topics.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class TransportError(OtaError):
    """
    Error raised when the release index cannot be fetched or parsed.

    Transport errors are never escalated: the cycle that hit one is
    abandoned and the next cycle retries.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a TransportError."""
        super().__init__(error_code="transport", message=message, details=details)


class DownloadError(TransportError):
    """Error raised when a package artifact cannot be downloaded."""


class InstallFailure(OtaError):
    """
    Error raised when a service group could not be installed.

    The package manager exiting non-zero is reported by the installer as a
    False return; the VersionManager turns that into an InstallFailure for
    the whole group after attempting rollback.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InstallFailure."""
        super().__init__(
            error_code="install_failed", message=message, details=details
        )


class RollbackFailure(OtaError):
    """
    Error raised when rolling a package back is impossible or fails.

    This happens when no backup artifact exists for the requested version
    or when reinstalling it fails.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RollbackFailure."""
        super().__init__(
            error_code="rollback_failed", message=message, details=details
        )


class UnavailableError(OtaError):
    """
    Error raised when a host tool (dpkg, dpkg-query, systemctl) is missing
    or does not answer in time.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class ConfigurationError(OtaError):
    """
    Error raised when the configuration cannot be loaded or validated.

    This is the only error that is fatal, and only during startup.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ConfigurationError."""
        super().__init__(
            error_code="configuration", message=message, details=details
        )
