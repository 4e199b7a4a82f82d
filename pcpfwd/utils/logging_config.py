"""Structured logging configuration for pcpfwd.

Provides logging setup with correlation IDs, structured output and
configurable log levels.
"""

from __future__ import annotations

import json
import logging
import logging.config
import sys
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pcpfwd.utils.exceptions import PortForwardError
from pcpfwd.utils.rich_logging import FileFormatter, create_rich_handler

if TYPE_CHECKING:  # pragma: no cover
    from pcpfwd.models import ObservabilityConfig

correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "correlation_id", "taskName"}


class CorrelationFilter(logging.Filter):
    """Filter to add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record."""
        record.correlation_id = correlation_id.get() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_entry["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Fields passed through ``extra=``
        log_entry.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RECORD_ATTRIBUTES
            }
        )
        return json.dumps(log_entry, default=str)


def setup_logging(config: ObservabilityConfig) -> None:
    """Set up logging for the ``pcpfwd`` logger hierarchy.

    Console output goes through Rich on stderr, or JSON lines when structured
    logging is enabled. A rotating file handler is added when ``log_file`` is
    set.
    """
    level = config.log_level.value

    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
            },
            "simple": {
                "()": FileFormatter,
                "format": "%(asctime)s %(levelname)s %(correlation_id)s %(name)s.%(funcName)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {
            "correlation": {
                "()": CorrelationFilter,
            },
        },
        "handlers": {},
        "loggers": {
            "pcpfwd": {
                "level": level,
                "handlers": [],
                "propagate": False,
            },
        },
    }

    if config.structured_logging:
        logging_config["handlers"]["console"] = {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "structured",
            "filters": ["correlation"],
            "stream": sys.stderr,
        }
    else:
        logging_config["handlers"]["console"] = {
            "()": create_rich_handler,
            "level": level,
            "filters": ["correlation"],
        }
    logging_config["loggers"]["pcpfwd"]["handlers"].append("console")

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured" if config.structured_logging else "simple",
            "filters": ["correlation"],
            "filename": str(log_path),
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
        }
        logging_config["loggers"]["pcpfwd"]["handlers"].append("file")

    logging.config.dictConfig(logging_config)


def get_logger(name: str) -> logging.Logger:
    """Get a logger below the ``pcpfwd`` hierarchy."""
    return logging.getLogger(f"pcpfwd.{name}")


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set correlation ID for the current context."""
    if corr_id is None:
        corr_id = str(uuid.uuid4())
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id.get()


class LoggingContext:
    """Context manager that logs start, completion and failure of an operation."""

    def __init__(self, operation: str, slow_threshold: float = 1.0, **kwargs: Any):
        """Initialize operation context.

        Args:
            operation: Name of the operation
            slow_threshold: Duration in seconds above which completion is
                logged at INFO instead of DEBUG
            **kwargs: Additional context to include in logs

        """
        self.operation = operation
        self.slow_threshold = slow_threshold
        self.kwargs = kwargs
        self.logger = get_logger("operations")
        self.start_time: float | None = None

    def __enter__(self) -> LoggingContext:
        self.start_time = time.monotonic()
        set_correlation_id()
        self.logger.debug("Starting %s", self.operation, extra=self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        duration = time.monotonic() - self.start_time if self.start_time else 0.0
        if exc_type is None:
            level = logging.INFO if duration >= self.slow_threshold else logging.DEBUG
            self.logger.log(
                level,
                "Completed %s in %.3fs",
                self.operation,
                duration,
                extra=self.kwargs,
            )
        else:
            self.logger.error(
                "Failed %s in %.3fs: %s",
                self.operation,
                duration,
                exc_val,
                extra=self.kwargs,
            )
        return False


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log an exception with context."""
    if isinstance(exc, PortForwardError):
        logger.error(
            "%s: %s",
            context,
            exc.message,
            extra={"details": exc.details},
            exc_info=True,
        )
    else:
        logger.exception("%s: %s", context, exc)
