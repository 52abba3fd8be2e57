"""Logging configuration.

Scrape cycle logs, Celery worker logs and third-party library logs all go
through structlog's ProcessorFormatter on the stdlib root logger, so they share
one output format and carry the same trace ids.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.sdk._logs import LoggerProvider
    from opentelemetry.util.types import Attributes

# Per-request and per-task chatter; one line per scrape would drown the cycle logs
QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "celery.app.trace",
    "opentelemetry.instrumentation.celery",
    "opentelemetry.exporter.otlp.proto.http",
)

# Set by structlog's wrap_for_formatter; not encodable as OTLP attributes
STRUCTLOG_RECORD_ATTRIBUTES = frozenset({"_logger", "_name"})


def add_trace_context(
    logger: logging.Logger, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor adding the active span's trace and span ids."""
    span = trace.get_current_span()
    if not span.is_recording():
        return event_dict
    span_context = span.get_span_context()
    event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
    event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    return event_dict


def build_otlp_handler(level: int, logger_provider: "LoggerProvider") -> logging.Handler:
    """
    OTLP LoggingHandler that leaves out structlog's record bookkeeping.

    The SDK import happens here so that processes running with OTEL disabled
    never load it.
    """
    from opentelemetry.sdk._logs import LoggingHandler  # noqa: PLC0415

    class OtlpLogHandler(LoggingHandler):
        @staticmethod
        def _get_attributes(record: logging.LogRecord) -> "Attributes":
            attributes = LoggingHandler._get_attributes(record)
            if attributes is None:
                return None
            return {key: value for key, value in attributes.items() if key not in STRUCTLOG_RECORD_ATTRIBUTES}

    return OtlpLogHandler(level=level, logger_provider=logger_provider)


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_trace_context,
    ]


def _renderer(level: str) -> structlog.types.Processor:
    # DEBUG output is usually shipped somewhere and parsed; INFO and above is read by people
    if level == "DEBUG":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def _attach_otlp_handler(root_logger: logging.Logger) -> None:
    from delay_stats.core.config import settings  # noqa: PLC0415
    from delay_stats.core.telemetry import get_logger_provider  # noqa: PLC0415

    logger_provider = get_logger_provider()
    if logger_provider is None:
        return

    root_logger.addHandler(build_otlp_handler(getattr(logging, settings.OTEL_LOG_LEVEL), logger_provider))
    structlog.get_logger(__name__).info(
        "otlp_log_export_enabled",
        level=settings.OTEL_LOG_LEVEL,
        endpoint=settings.OTEL_EXPORTER_OTLP_LOGS_ENDPOINT,
    )


def configure_logging(*, log_level: str = "INFO") -> None:
    """
    Route structlog and stdlib logging through one stdout handler.

    Replaces any handlers already on the root logger, so calling it again
    (the Celery worker does after fork) reconfigures rather than duplicates.

    Args:
        log_level: Log level name, case insensitive
    """
    level = log_level.upper()
    processors = _shared_processors()

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, _renderer(level)],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(stdout_handler)
    root_logger.setLevel(getattr(logging, level))

    # Deferred: config and telemetry both log through this module
    from delay_stats.core.config import settings  # noqa: PLC0415

    if settings.OTEL_ENABLED:
        _attach_otlp_handler(root_logger)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
