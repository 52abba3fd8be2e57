"""Tests for logging configuration module."""

import json
import logging
import sys
from collections.abc import Generator
from io import StringIO
from unittest.mock import MagicMock, patch

import pytest
import structlog
from delay_stats.core.logging import QUIET_LOGGERS, add_trace_context, build_otlp_handler, configure_logging
from opentelemetry import trace


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None]:
    """Leave the default single stdout handler for other tests."""
    yield
    with patch("delay_stats.core.config.settings.OTEL_ENABLED", False):
        configure_logging()


def handler_names() -> list[str]:
    return [type(h).__name__ for h in logging.getLogger().handlers]


class TestConfigureLogging:
    """Tests for configure_logging function."""

    @pytest.mark.parametrize(
        ("log_level", "expected"),
        [
            ("DEBUG", logging.DEBUG),
            ("warning", logging.WARNING),
            ("Error", logging.ERROR),
        ],
    )
    def test_root_level_follows_log_level(self, log_level: str, expected: int) -> None:
        """Test that the root logger level is set from a case-insensitive name."""
        configure_logging(log_level=log_level)
        assert logging.getLogger().level == expected

    def test_default_level_is_info(self) -> None:
        configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_quiet_loggers_raised_to_warning(self) -> None:
        """Test that per-request HTTP and task trace loggers stay quiet even at DEBUG."""
        configure_logging(log_level="DEBUG")

        assert {"httpx", "httpcore", "celery.app.trace"} <= set(QUIET_LOGGERS)
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_reconfiguring_replaces_root_handlers(self) -> None:
        """Test that a second call does not stack handlers."""
        root_logger = logging.getLogger()
        stray_handler = logging.StreamHandler()
        root_logger.addHandler(stray_handler)

        with patch("delay_stats.core.config.settings.OTEL_ENABLED", False):
            configure_logging()
            configure_logging()

        assert stray_handler not in root_logger.handlers
        assert handler_names() == ["StreamHandler"]
        assert root_logger.handlers[0].stream == sys.stdout  # type: ignore[attr-defined]

    def test_debug_renders_one_json_object_per_line(self) -> None:
        with patch("sys.stdout", new_callable=StringIO) as mock_stdout:
            configure_logging(log_level="DEBUG")
            structlog.get_logger("delay_stats.services.cycle_runner").info("cycle_completed", routes_succeeded=3)

        record = json.loads(mock_stdout.getvalue().strip().splitlines()[-1])
        assert record["event"] == "cycle_completed"
        assert record["routes_succeeded"] == 3
        assert record["level"] == "info"
        assert record["logger"] == "delay_stats.services.cycle_runner"
        assert "timestamp" in record

    def test_stdlib_records_share_the_structlog_format(self) -> None:
        """Test that third-party stdlib loggers are rendered by structlog too."""
        with patch("sys.stdout", new_callable=StringIO) as mock_stdout:
            configure_logging(log_level="DEBUG")
            logging.getLogger("kombu.connection").warning("broker reconnecting")

        record = json.loads(mock_stdout.getvalue().strip().splitlines()[-1])
        assert record["event"] == "broker reconnecting"
        assert record["logger"] == "kombu.connection"
        assert record["level"] == "warning"


class TestAddTraceContext:
    """Tests for the add_trace_context processor."""

    def test_adds_ids_of_recording_span(self) -> None:
        span_context = MagicMock(trace_id=0x0AF7651916CD43DD8448EB211C80319C, span_id=0x00F067AA0BA902B7)
        span = MagicMock()
        span.is_recording.return_value = True
        span.get_span_context.return_value = span_context

        with patch.object(trace, "get_current_span", return_value=span):
            event_dict = add_trace_context(logging.getLogger(), "info", {"event": "route_write_retry"})

        assert event_dict["trace_id"] == "0af7651916cd43dd8448eb211c80319c"
        assert event_dict["span_id"] == "00f067aa0ba902b7"

    def test_leaves_event_alone_without_recording_span(self) -> None:
        event_dict = add_trace_context(logging.getLogger(), "info", {"event": "cycle_started"})

        assert event_dict == {"event": "cycle_started"}

    def test_real_span_ids_are_added(self, otel_enabled_provider: tuple) -> None:
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span("scrape_cycle.run") as span:
            event_dict = add_trace_context(logging.getLogger(), "info", {"event": "cycle_started"})

        assert event_dict["trace_id"] == trace.format_trace_id(span.get_span_context().trace_id)


class TestOtlpHandler:
    """Tests for attaching the OTLP log handler."""

    def test_handler_added_at_otel_log_level(self) -> None:
        with (
            patch("delay_stats.core.config.settings.OTEL_ENABLED", True),
            patch("delay_stats.core.config.settings.OTEL_LOG_LEVEL", "WARNING"),
            patch("delay_stats.core.config.settings.OTEL_EXPORTER_OTLP_LOGS_ENDPOINT", "http://localhost:4318/v1/logs"),
            patch("delay_stats.core.telemetry.get_logger_provider", return_value=MagicMock()),
        ):
            configure_logging(log_level="INFO")

        assert handler_names() == ["StreamHandler", "OtlpLogHandler"]
        assert logging.getLogger().handlers[1].level == logging.WARNING

    def test_no_handler_without_logger_provider(self) -> None:
        with (
            patch("delay_stats.core.config.settings.OTEL_ENABLED", True),
            patch("delay_stats.core.telemetry.get_logger_provider", return_value=None),
        ):
            configure_logging(log_level="INFO")

        assert handler_names() == ["StreamHandler"]

    def test_structlog_bookkeeping_attributes_dropped(self) -> None:
        """Test that _logger and _name never reach the OTLP exporter."""
        handler = build_otlp_handler(logging.INFO, MagicMock())
        record = logging.LogRecord("delay_stats", logging.INFO, __file__, 1, "cycle_completed", None, None)
        record._logger = object()
        record._name = "info"
        record.route_number = 2500

        attributes = type(handler)._get_attributes(record)  # type: ignore[attr-defined]

        assert attributes is not None
        assert "_logger" not in attributes
        assert "_name" not in attributes
        assert attributes["route_number"] == 2500
