"""Celery application instance and configuration."""

import structlog
from celery import Celery
from celery.signals import beat_init

from delay_stats.core.config import require_config, settings
from delay_stats.core.logging import configure_logging

logger = structlog.get_logger(__name__)

# Configure logging for Celery workers
# This ensures structlog integrates properly with Celery's logging system
configure_logging(log_level=settings.LOG_LEVEL)

# Validate required Celery configuration
require_config("CELERY_BROKER_URL", "CELERY_RESULT_BACKEND", "DATABASE_URL", "REDIS_URL")

# Create Celery application instance
celery_app = Celery("hzpp_delay_stats")

celery_app.conf.update(
    broker_url=settings.CELERY_BROKER_URL,
    result_backend=settings.CELERY_RESULT_BACKEND,
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Messages carry UTC; crontab entries are read in the network time zone
    timezone=settings.TIMEZONE,
    enable_utc=True,
    # Task tracking
    task_track_started=True,
    # The cycle enforces CYCLE_TIMEOUT_SECONDS itself; Celery limits are the backstop
    task_soft_time_limit=int(settings.CYCLE_TIMEOUT_SECONDS) + 30,
    task_time_limit=int(settings.CYCLE_TIMEOUT_SECONDS) + 60,
    # One cycle per worker process at a time
    worker_prefetch_multiplier=1,
    # Don't hijack root logger - let structlog handle it
    worker_hijack_root_logger=False,
)

# CeleryInstrumentor wraps task execution to create spans and propagate trace context.
# The TracerProvider is set in worker_process_init (database.py) after fork.
if settings.OTEL_ENABLED:
    from opentelemetry.instrumentation.celery import CeleryInstrumentor

    CeleryInstrumentor().instrument()
    logger.info("celery_otel_instrumentation_enabled")


@beat_init.connect
def init_beat_otel(**kwargs: object) -> None:
    """Give the beat process its own providers so scrape cycle triggers are traced from the scheduler on."""
    if not settings.OTEL_ENABLED:
        return
    from delay_stats.core.telemetry import install_providers  # noqa: PLC0415

    try:
        install_providers()
    except Exception:
        # Beat keeps scheduling without traces
        logger.exception("beat_otel_initialization_failed")
        return
    logger.info("beat_otel_providers_installed")


# Import tasks to register them with Celery, and schedules to populate beat_schedule.
# Must come after celery_app is created.
from delay_stats.celery import (  # noqa: E402
    schedules,  # noqa: F401
    tasks,  # noqa: F401
)
