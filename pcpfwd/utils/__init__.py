"""Shared utilities and infrastructure.

This module contains common utilities used throughout the application.
"""

from __future__ import annotations

from pcpfwd.utils.backoff import ExponentialBackoff
from pcpfwd.utils.exceptions import (
    ConfigurationError,
    PortForwardError,
    ValidationError,
)
from pcpfwd.utils.logging_config import get_logger, setup_logging

__all__ = [
    "ConfigurationError",
    "ExponentialBackoff",
    "PortForwardError",
    "ValidationError",
    "get_logger",
    "setup_logging",
]
