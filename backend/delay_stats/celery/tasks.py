"""Celery tasks: the scrape cycle, the timetable import and statistics rebuilds."""

from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol, TypedDict

import structlog

from delay_stats.celery.app import celery_app
from delay_stats.celery.database import (
    get_worker_cycle_runner,
    get_worker_http_client,
    get_worker_loop,
    get_worker_session,
)
from delay_stats.core.config import settings
from delay_stats.helpers.delay_math import service_day
from delay_stats.services.delay_aggregator import DelayAggregator
from delay_stats.services.timetable_import import ImportTimetableResult, TimetableImporter

logger = structlog.get_logger(__name__)


def run_in_worker_loop[T](
    coro_func: Callable[..., Awaitable[T]],
    *args: Any,  # noqa: ANN401 - Pass-through args to async function
    **kwargs: Any,  # noqa: ANN401 - Pass-through kwargs to async function
) -> T:
    """
    Run an async function in the worker's persistent event loop.

    Args:
        coro_func: An async function (not coroutine) to execute
        *args: Positional arguments to pass to the async function
        **kwargs: Keyword arguments to pass to the async function

    Returns:
        The return value of the async function

    Raises:
        RuntimeError: If worker not initialized or event loop is closed
    """
    loop = get_worker_loop()
    coro = coro_func(*args, **kwargs)
    return loop.run_until_complete(coro)


# Protocol for Celery task request
class TaskRequest(Protocol):
    """Protocol for Celery task request object."""

    @property
    def retries(self) -> int:
        """Number of times task has been retried."""
        ...


# Protocol for Celery bound task
class BoundTask(Protocol):
    """Protocol for Celery bound task self parameter."""

    @property
    def request(self) -> TaskRequest:
        """Task request object."""
        ...

    def retry(self, exc: Exception | None = None, countdown: int | None = None) -> Exception:
        """
        Retry the task.

        This method raises an exception to signal task retry.
        """
        ...


# Type definitions for task return values
class ScrapeCycleResult(TypedDict):
    """Result from run_scrape_cycle task."""

    status: str
    routes_succeeded: int
    routes_failed: int
    routes_cancelled: int
    anomalies: dict[str, int]
    updates_applied: int
    notifications_sent: int
    timed_out: bool


class RebuildDelayStatsResult(TypedDict):
    """Result from rebuild_delay_stats task."""

    status: str
    day: str
    buckets: int


@celery_app.task(name="delay_stats.celery.tasks.run_scrape_cycle")
def run_scrape_cycle() -> ScrapeCycleResult:
    """
    Run one scrape cycle.

    Triggered by Celery Beat every SCRAPE_INTERVAL_SECONDS. Not retried: the
    next scheduled cycle picks up whatever this one missed, and the cycle
    guard turns an overlapping trigger into a skipped cycle.

    Returns:
        ScrapeCycleResult: Route outcome counts, anomaly counts and totals
    """
    try:
        result = run_in_worker_loop(_run_scrape_cycle_async)
        logger.info("scrape_cycle_task_completed", result=result)
        return result
    except Exception as exc:
        logger.error(
            "scrape_cycle_task_failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise


async def _run_scrape_cycle_async() -> ScrapeCycleResult:
    """Async implementation of run_scrape_cycle using the worker's shared runner."""
    report = await get_worker_cycle_runner().run_cycle()
    return ScrapeCycleResult(
        status="skipped" if report.skipped else "success",
        routes_succeeded=report.routes_succeeded,
        routes_failed=report.routes_failed,
        routes_cancelled=report.routes_cancelled,
        anomalies={kind.value: count for kind, count in report.anomalies.items()},
        updates_applied=report.updates_applied,
        notifications_sent=report.notifications_sent,
        timed_out=report.timed_out,
    )


def import_days(now: datetime, days_ahead: int) -> list[date]:
    """
    Service days a scheduled import covers: today in the network time zone and the days after it.

    Example:
        >>> import_days(datetime(2026, 3, 2, 23, 30, tzinfo=UTC), 1)
        [datetime.date(2026, 3, 3), datetime.date(2026, 3, 4)]
    """
    today = service_day(now, settings.tzinfo)
    return [today + timedelta(days=offset) for offset in range(days_ahead + 1)]


@celery_app.task(  # type: ignore[arg-type]
    bind=True,
    max_retries=3,
    name="delay_stats.celery.tasks.import_timetable",
)
def import_timetable(self: BoundTask, day: str | None = None) -> list[ImportTimetableResult]:
    """
    Import stations and planned route runs for one or more service days.

    Without a day, imports today in the network time zone and the
    TIMETABLE_IMPORT_DAYS_AHEAD days after it. Rows already present are
    skipped, so overlapping daily runs are harmless.

    Args:
        self: Celery task instance (bound via bind=True)
        day: ISO date to import on its own

    Returns:
        list[ImportTimetableResult]: Counts of inserted and skipped rows, per day

    Raises:
        Retry: If the planner API or database failed transiently
    """
    try:
        result = run_in_worker_loop(_import_timetable_async, day)
        logger.info("import_timetable_task_completed", result=result)
        return result

    except Exception as exc:
        logger.error(
            "import_timetable_task_failed",
            day=day,
            error=str(exc),
            error_type=type(exc).__name__,
            retry_count=self.request.retries,
        )
        raise self.retry(exc=exc, countdown=300) from exc


async def _import_timetable_async(day: str | None = None) -> list[ImportTimetableResult]:
    """Async implementation of import_timetable."""
    if day:
        targets = [date.fromisoformat(day)]
    else:
        targets = import_days(datetime.now(UTC), settings.TIMETABLE_IMPORT_DAYS_AHEAD)
    session = None
    try:
        session = get_worker_session()
        importer = TimetableImporter(db=session, http_client=get_worker_http_client())
        return [await importer.import_day(target) for target in targets]
    finally:
        if session is not None:
            await session.close()


@celery_app.task(  # type: ignore[arg-type]
    bind=True,
    max_retries=3,
    name="delay_stats.celery.tasks.rebuild_delay_stats",
)
def rebuild_delay_stats(self: BoundTask, day: str) -> RebuildDelayStatsResult:
    """
    Recompute all delay buckets of a service day from stop data.

    Manual maintenance task, e.g. after a bulk correction of stop times.

    Args:
        self: Celery task instance (bound via bind=True)
        day: ISO date of the service day

    Returns:
        RebuildDelayStatsResult: Number of buckets written
    """
    try:
        result = run_in_worker_loop(_rebuild_delay_stats_async, day)
        logger.info("rebuild_delay_stats_task_completed", result=result)
        return result

    except Exception as exc:
        logger.error(
            "rebuild_delay_stats_task_failed",
            day=day,
            error=str(exc),
            error_type=type(exc).__name__,
            retry_count=self.request.retries,
        )
        raise self.retry(exc=exc, countdown=60) from exc


async def _rebuild_delay_stats_async(day: str) -> RebuildDelayStatsResult:
    """Async implementation of rebuild_delay_stats."""
    target = date.fromisoformat(day)
    session = None
    try:
        session = get_worker_session()
        buckets = await DelayAggregator(session).rebuild_day(target)
        await session.commit()
        return RebuildDelayStatsResult(status="success", day=target.isoformat(), buckets=buckets)
    finally:
        if session is not None:
            await session.close()
