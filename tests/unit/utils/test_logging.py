"""Unit tests for logging setup and helpers."""

from __future__ import annotations

import io
import json
import logging

import pytest
from rich.console import Console

from pcpfwd.models import LogLevel, ObservabilityConfig
from pcpfwd.utils.exceptions import PortForwardError
from pcpfwd.utils.logging_config import (
    CorrelationFilter,
    LoggingContext,
    StructuredFormatter,
    get_correlation_id,
    get_logger,
    log_exception,
    set_correlation_id,
    setup_logging,
)
from pcpfwd.utils.rich_logging import (
    CorrelationRichHandler,
    FileFormatter,
    strip_rich_markup,
)

pytestmark = [pytest.mark.unit]


def _record(msg: str, *args, func: str = "register", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "pcpfwd.pcp.manager", logging.INFO, __file__, 1, msg, args, None, func=func
    )
    record.__dict__.update(extra)
    return record


class TestSetupLogging:
    """Test setup_logging."""

    def test_level_and_handlers(self):
        """Test the pcpfwd logger gets the level and a console handler."""
        setup_logging(ObservabilityConfig(log_level=LogLevel.DEBUG))

        logger = logging.getLogger("pcpfwd")
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], CorrelationRichHandler)

    def test_structured_console(self):
        """Test structured logging uses a JSON stream handler."""
        setup_logging(ObservabilityConfig(structured_logging=True))

        handler = logging.getLogger("pcpfwd").handlers[0]
        assert isinstance(handler.formatter, StructuredFormatter)

    def test_structured_file(self, tmp_path):
        """Test JSON lines in the log file carry extras and correlation ID."""
        log_file = tmp_path / "logs" / "pcpfwd.log"
        setup_logging(
            ObservabilityConfig(structured_logging=True, log_file=str(log_file))
        )
        set_correlation_id("corr-1")

        get_logger("test").warning("Renewal failed for %s", "svc-1", extra={"attempt": 2})

        entry = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
        assert entry["message"] == "Renewal failed for svc-1"
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "pcpfwd.test"
        assert entry["correlation_id"] == "corr-1"
        assert entry["attempt"] == 2

    def test_plain_file(self, tmp_path):
        """Test the plain file format holds the message without markup."""
        log_file = tmp_path / "pcpfwd.log"
        setup_logging(ObservabilityConfig(log_file=str(log_file)))

        get_logger("test").info("Registered mapping svc-1")

        content = log_file.read_text(encoding="utf-8")
        assert "INFO" in content
        assert "pcpfwd.test.test_plain_file: Registered mapping svc-1" in content
        assert "#ff69b4" not in content


class TestFormatters:
    """Test formatters and filters."""

    def test_correlation_filter(self):
        """Test the filter stamps the current correlation ID."""
        set_correlation_id("abc")
        record = _record("hello")

        assert CorrelationFilter().filter(record)
        assert record.correlation_id == "abc"

    def test_structured_formatter_exception(self):
        """Test exceptions are included in JSON output."""
        try:
            raise ValueError("boom")
        except ValueError:
            import sys

            record = logging.LogRecord(
                "pcpfwd", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        entry = json.loads(StructuredFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]

    def test_strip_rich_markup(self):
        """Test markup tags are removed."""
        assert strip_rich_markup("[#ff69b4]register[/#ff69b4] done") == "register done"

    def test_file_formatter(self):
        """Test FileFormatter strips markup from formatted output."""
        formatter = FileFormatter("%(message)s")
        assert formatter.format(_record("[bold]ok[/bold]")) == "ok"


class TestRichHandler:
    """Test CorrelationRichHandler."""

    def test_emit_prefixes_function_name(self):
        """Test the function name is shown and brackets survive."""
        output = io.StringIO()
        handler = CorrelationRichHandler(console=Console(file=output, width=200))
        record = _record("Registered mapping %s", "[svc-1]")

        handler.handle(record)

        text = output.getvalue()
        assert "register" in text
        assert "Registered mapping [svc-1]" in text
        # Other handlers still see the undecorated record
        assert record.getMessage() == "Registered mapping [svc-1]"
        assert record.msg == "Registered mapping %s"


class TestHelpers:
    """Test correlation and context helpers."""

    def test_set_correlation_id_generates(self):
        """Test a correlation ID is generated when none is given."""
        corr_id = set_correlation_id()
        assert corr_id
        assert get_correlation_id() == corr_id

    def test_logging_context_success(self, caplog):
        """Test completion is logged."""
        caplog.set_level(logging.DEBUG, logger="pcpfwd.operations")

        with LoggingContext("forward", key="svc-1"):
            pass

        messages = [r.getMessage() for r in caplog.records]
        assert messages[0] == "Starting forward"
        assert messages[1].startswith("Completed forward in ")
        assert caplog.records[1].key == "svc-1"

    def test_logging_context_failure(self, caplog):
        """Test failures are logged and re-raised."""
        caplog.set_level(logging.DEBUG, logger="pcpfwd.operations")

        with pytest.raises(ValueError, match="boom"):
            with LoggingContext("forward"):
                raise ValueError("boom")

        failure = caplog.records[-1]
        assert failure.levelno == logging.ERROR
        assert failure.getMessage().endswith(": boom")

    def test_log_exception_with_details(self, caplog):
        """Test package errors are logged with their details."""
        logger = get_logger("test")
        caplog.set_level(logging.ERROR, logger="pcpfwd.test")

        try:
            raise PortForwardError("mapping refused", {"result_code": 8})
        except PortForwardError as e:
            log_exception(logger, e, "register")

        record = caplog.records[-1]
        assert record.getMessage() == "register: mapping refused"
        assert record.details == {"result_code": 8}
        assert record.exc_info is not None

    def test_log_exception_plain(self, caplog):
        """Test other errors are logged with their traceback."""
        logger = get_logger("test")
        caplog.set_level(logging.ERROR, logger="pcpfwd.test")

        try:
            raise RuntimeError("oops")
        except RuntimeError as e:
            log_exception(logger, e, "probe")

        assert caplog.records[-1].getMessage() == "probe: oops"
