"""Exception hierarchy for pcpfwd.

Every error raised by the package derives from PortForwardError so callers
can catch the whole family in one place and still inspect the concrete type.
"""

from __future__ import annotations

from typing import Any


class PortForwardError(Exception):
    """Base exception for all pcpfwd errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize pcpfwd error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(PortForwardError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""
