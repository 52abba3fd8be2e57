"""
OpenTelemetry setup for the scrape worker.

Providers are created lazily, once per process and after Celery forks, and
export over OTLP/HTTP. With OTEL_ENABLED off nothing is created and spans
opened through `service_span` are non-recording.
"""

import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog
from opentelemetry import trace
from opentelemetry._logs import set_logger_provider as otel_set_logger_provider
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import SpanKind, Status, StatusCode

from delay_stats import __version__
from delay_stats.core.config import require_config, settings

if TYPE_CHECKING:
    from opentelemetry.trace.span import Span

logger = structlog.get_logger(__name__)

_provider_lock = threading.Lock()
_tracer_provider: TracerProvider | None = None
_logger_provider: LoggerProvider | None = None
_clients_instrumented = False

# Primitive values or homogeneous lists of them
AttributeValue = str | int | float | bool | list[str] | list[int] | list[float] | list[bool]


def _parse_otlp_headers(headers_str: str) -> dict[str, str]:
    """
    Parse OTEL_EXPORTER_OTLP_HEADERS ("k1=v1,k2=v2"); malformed pairs are logged and skipped.

    Example:
        >>> _parse_otlp_headers("Authorization=Bearer abc, X-Scope=hzpp")
        {'Authorization': 'Bearer abc', 'X-Scope': 'hzpp'}
    """
    headers: dict[str, str] = {}
    for pair in filter(None, (part.strip() for part in headers_str.split(","))):
        key, sep, value = pair.partition("=")
        if not sep:
            logger.warning("otel_malformed_header", pair=pair)
            continue
        headers[key.strip()] = value.strip()
    return headers


def _otlp_headers() -> dict[str, str]:
    return _parse_otlp_headers(settings.OTEL_EXPORTER_OTLP_HEADERS or "")


def _resource() -> Resource:
    return Resource(
        attributes={
            "service.name": settings.OTEL_SERVICE_NAME,
            "service.version": __version__,
            "deployment.environment": settings.OTEL_ENVIRONMENT,
        }
    )


def _instrument_clients() -> None:
    """Patch redis and httpx for client spans. Instrumentors are process-global, so this runs once."""
    global _clients_instrumented  # noqa: PLW0603
    if _clients_instrumented:
        return
    try:
        RedisInstrumentor().instrument()
        HTTPXClientInstrumentor().instrument()
    except Exception:
        logger.exception("client_instrumentation_failed")
        return
    _clients_instrumented = True


def _build_tracer_provider() -> TracerProvider:
    if not settings.DEBUG:
        require_config("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")

    provider = TracerProvider(resource=_resource())
    _instrument_clients()

    endpoint = settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT
    if not endpoint:
        logger.warning("otel_traces_not_exported", reason="no OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        return provider

    exporter = OTLPSpanExporter(endpoint=endpoint, headers=_otlp_headers())
    provider.add_span_processor(BatchSpanProcessor(exporter))
    logger.info("otel_tracer_provider_created", endpoint=endpoint, environment=settings.OTEL_ENVIRONMENT)
    return provider


def _build_logger_provider() -> LoggerProvider:
    # stdout logging keeps working without an endpoint, so none is required here
    provider = LoggerProvider(resource=_resource())

    endpoint = settings.OTEL_EXPORTER_OTLP_LOGS_ENDPOINT
    if not endpoint:
        logger.warning("otel_logs_not_exported", reason="no OTEL_EXPORTER_OTLP_LOGS_ENDPOINT")
        return provider

    exporter = OTLPLogExporter(endpoint=endpoint, headers=_otlp_headers())
    provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    logger.info("otel_logger_provider_created", endpoint=endpoint, level=settings.OTEL_LOG_LEVEL)
    return provider


def get_tracer_provider() -> TracerProvider | None:
    """
    The process's TracerProvider, built on first use.

    Returns:
        TracerProvider, or None when OTEL is disabled
    """
    global _tracer_provider  # noqa: PLW0603
    if not settings.OTEL_ENABLED:
        return None
    with _provider_lock:
        if _tracer_provider is None:
            _tracer_provider = _build_tracer_provider()
    return _tracer_provider


def get_logger_provider() -> LoggerProvider | None:
    """
    The process's LoggerProvider, built on first use.

    Returns:
        LoggerProvider, or None when OTEL is disabled
    """
    global _logger_provider  # noqa: PLW0603
    if not settings.OTEL_ENABLED:
        return None
    with _provider_lock:
        if _logger_provider is None:
            _logger_provider = _build_logger_provider()
    return _logger_provider


def set_logger_provider() -> None:
    """Install the LoggerProvider as the global one."""
    if provider := get_logger_provider():
        otel_set_logger_provider(provider)


def install_providers() -> None:
    """Build and install both providers globally. Run in each process after fork (worker init, beat init)."""
    if tracer_provider := get_tracer_provider():
        trace.set_tracer_provider(tracer_provider)
    set_logger_provider()


def shutdown_tracer_provider() -> None:
    if _tracer_provider is not None:
        _tracer_provider.shutdown()
        logger.info("otel_tracer_provider_shutdown")


def shutdown_logger_provider() -> None:
    if _logger_provider is not None:
        _logger_provider.shutdown()  # type: ignore[no-untyped-call]
        logger.info("otel_logger_provider_shutdown")


@contextmanager
def service_span(
    name: str,
    service: str,
    kind: SpanKind = SpanKind.INTERNAL,
    **attributes: AttributeValue,
) -> Generator["Span"]:
    """
    Span around one unit of pipeline work, tagged with peer.service.

    The status is set to OK when the block completes. An exception leaves the
    span with ERROR status and an exception event, and is re-raised.

    Args:
        name: Span name, e.g. "scrape_cycle.route" or "scrape.fetch"
        service: peer.service value, e.g. "hzpp" for the status page
        kind: CLIENT for outbound calls, INTERNAL otherwise
        **attributes: Extra span attributes; dotted keys go through a dict, e.g. **{"route.number": 2500}
    """
    # Looked up per call so spans follow the provider installed during worker init
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(name, kind=kind, attributes={"peer.service": service, **attributes}) as span:
        yield span
        span.set_status(Status(StatusCode.OK))
