"""OpenTelemetry test fixtures."""

from collections.abc import Generator

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


@pytest.fixture
def otel_enabled_provider(
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[tuple[TracerProvider, InMemorySpanExporter]]:
    """
    TracerProvider recording spans in memory, installed as the global provider.

    No network export: spans are only kept by the InMemorySpanExporter, and a
    SimpleSpanProcessor makes them visible as soon as they end.

    Yields:
        Tuple of (TracerProvider, InMemorySpanExporter)
    """
    from delay_stats.core.config import settings  # noqa: PLC0415

    monkeypatch.delenv("OTEL_SDK_DISABLED", raising=False)
    monkeypatch.setattr(settings, "OTEL_ENABLED", True)

    exporter = InMemorySpanExporter()
    provider = TracerProvider(
        resource=Resource(
            attributes={
                "service.name": "hzpp-delay-stats-test",
                "deployment.environment": "test",
            }
        )
    )
    provider.add_span_processor(SimpleSpanProcessor(exporter))

    # Bypass set_tracer_provider(), which refuses to override a provider
    trace._TRACER_PROVIDER = provider  # type: ignore[attr-defined]

    yield provider, exporter

    exporter.clear()
    trace._TRACER_PROVIDER = None  # type: ignore[attr-defined]


@pytest.fixture(autouse=True)
def reset_tracer_provider() -> Generator[None]:
    """
    Reset telemetry module globals before and after each test.

    Yields:
        None
    """
    from delay_stats.core import telemetry  # noqa: PLC0415

    telemetry._tracer_provider = None
    telemetry._logger_provider = None
    trace._TRACER_PROVIDER = None  # type: ignore[attr-defined]

    yield

    telemetry._tracer_provider = None
    telemetry._logger_provider = None
    trace._TRACER_PROVIDER = None  # type: ignore[attr-defined]
