"""
Scrape cycle driver.

One cycle: enumerate active route runs, fetch each distinct route number
concurrently (bounded), then push every payload through
parse -> match -> upsert + aggregate (one transaction per route run) ->
alerts. Route pipelines are independent: a failure in one is recorded in the
cycle report and never aborts the others.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from delay_stats.core.config import Settings, settings
from delay_stats.core.errors import AnomalyKind, FetchError, classify_persistence_error, is_transient_database_error
from delay_stats.core.redis import RedisClientProtocol
from delay_stats.core.telemetry import service_span
from delay_stats.helpers.status_parser import parse_status_page
from delay_stats.models.timetable import Route
from delay_stats.schemas.cycle import CycleReport, RouteOutcome
from delay_stats.schemas.observations import AppliedChange, MatchedUpdate, StatusFlag, WriteResult
from delay_stats.services.alert_evaluator import AlertEvaluator
from delay_stats.services.delay_aggregator import DelayAggregator
from delay_stats.services.matcher import Matcher
from delay_stats.services.scrape_client import ScrapeClient
from delay_stats.services.timetable_store import TimetableStore
from delay_stats.services.upsert_writer import UpsertWriter

if TYPE_CHECKING:
    from opentelemetry.trace import Span

logger = structlog.get_logger(__name__)

CYCLE_LOCK_KEY = "scrape_cycle:lock"
LAST_REPORT_KEY = "scrape_cycle:last_report"
PERSISTENCE_RETRY_MAX_WAIT_SECONDS = 5.0

# Deletes the lock only while it still holds our token, so an expired lock taken over by another cycle survives
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

RouteKey = tuple[datetime, str]


def route_label(key: RouteKey) -> str:
    """Stable report key for a route run."""
    expected_start_time, route_id = key
    return f"{route_id}@{expected_start_time.isoformat()}"


class CycleGuard:
    """
    Admits at most one scrape cycle at a time, across worker processes.

    A Redis SET NX EX lock holding a random token; only the holder of the
    token releases it, and the expiry frees it if the holder dies.
    """

    def __init__(self, redis_client: RedisClientProtocol, ttl_seconds: int, key: str = CYCLE_LOCK_KEY) -> None:
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.key = key
        self._token: str | None = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        acquired = await self.redis_client.set(self.key, token, ex=self.ttl_seconds, nx=True)
        if acquired:
            self._token = token
            return True
        return False

    async def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        await self.redis_client.eval(RELEASE_LOCK_SCRIPT, 1, self.key, token)


class CycleRunner:
    """Runs scrape cycles and owns their concurrency, timeout and shutdown."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: RedisClientProtocol,
        scrape_client: ScrapeClient,
        config: Settings | None = None,
    ) -> None:
        """
        Initialize the cycle runner.

        Args:
            session_factory: Factory for the per-unit-of-work sessions
            redis_client: Redis client for the cycle guard, alerts and the last report
            scrape_client: Client fetching live status pages
            config: Settings override, defaults to the process settings
        """
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.scrape_client = scrape_client
        self.config = config or settings
        self.tz = self.config.tzinfo
        # Lock outlives a cycle that hits its timeout so a stuck worker cannot be overlapped
        self.guard = CycleGuard(redis_client, ttl_seconds=int(self.config.CYCLE_TIMEOUT_SECONDS) + 60)
        self._shutting_down = False
        self._idle = asyncio.Event()
        self._idle.set()

    # ==================== Lifecycle ====================

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    async def shutdown(self, timeout: float | None = None) -> None:
        """
        Stop admitting cycles and wait for the in-flight cycle to finish.

        Args:
            timeout: Give up waiting after this many seconds (None waits indefinitely)
        """
        self._shutting_down = True
        logger.info("cycle_runner_shutting_down", cycle_in_flight=not self._idle.is_set())
        async with asyncio.timeout(timeout):
            await self._idle.wait()
        logger.info("cycle_runner_stopped")

    # ==================== Cycle ====================

    async def run_cycle(self) -> CycleReport:
        """
        Run one scrape cycle.

        Returns:
            The cycle report; skipped=True when another cycle holds the guard
            or the runner is shutting down
        """
        started_at = datetime.now(UTC)
        if self._shutting_down:
            logger.info("cycle_rejected_shutting_down")
            return CycleReport(started_at=started_at, finished_at=started_at, skipped=True)

        if not await self.guard.acquire():
            logger.warning("cycle_overrun", started_at=started_at.isoformat())
            return CycleReport(started_at=started_at, finished_at=started_at, skipped=True)

        self._idle.clear()
        try:
            with service_span("scrape_cycle.run", "scrape-cycle") as span:
                report = CycleReport(started_at=started_at)
                await self._run(report)
                report.finished_at = datetime.now(UTC)
                self._record_span_attributes(span, report)
                logger.info(
                    "cycle_completed",
                    duration_seconds=round((report.finished_at - report.started_at).total_seconds(), 3),
                    routes_succeeded=report.routes_succeeded,
                    routes_failed=report.routes_failed,
                    routes_cancelled=report.routes_cancelled,
                    updates_applied=report.updates_applied,
                    notifications_sent=report.notifications_sent,
                    timed_out=report.timed_out,
                    anomalies={kind.value: count for kind, count in report.anomalies.items()},
                )
                await self._store_report(report)
                return report
        finally:
            await self.guard.release()
            self._idle.set()

    async def _run(self, report: CycleReport) -> None:
        now = report.started_at
        async with self.session_factory() as session:
            runs = await TimetableStore(session).get_active_routes(
                now,
                timedelta(minutes=self.config.ACTIVE_WINDOW_LOOKBACK_MINUTES),
                timedelta(minutes=self.config.ACTIVE_WINDOW_LOOKAHEAD_MINUTES),
            )

        by_number: dict[int, list[Route]] = defaultdict(list)
        for run in runs:
            by_number[run.route_number].append(run)
        logger.info("cycle_started", active_routes=len(runs), route_numbers=len(by_number))

        semaphore = asyncio.Semaphore(self.config.SCRAPE_CONCURRENCY)
        try:
            async with asyncio.timeout(self.config.CYCLE_TIMEOUT_SECONDS):
                async with asyncio.TaskGroup() as tg:
                    for route_number, group in by_number.items():
                        tg.create_task(self._process_route_number(route_number, group, semaphore, report))
        except TimeoutError:
            report.timed_out = True
            logger.warning("cycle_timeout", timeout_seconds=self.config.CYCLE_TIMEOUT_SECONDS)

        for run in runs:
            report.route_outcomes.setdefault(
                route_label((run.expected_start_time, run.id)),
                RouteOutcome.CANCELLED,
            )

    # ==================== Per route number ====================

    async def _process_route_number(
        self,
        route_number: int,
        runs: list[Route],
        semaphore: asyncio.Semaphore,
        report: CycleReport,
    ) -> None:
        """Fetch once for a route number and process every run it touches."""
        run_keys: list[RouteKey] = [(run.expected_start_time, run.id) for run in runs]
        try:
            async with semaphore:
                fetched = await self.scrape_client.fetch(route_number)

            if isinstance(fetched, FetchError):
                report.record_anomaly(AnomalyKind.FETCH_FAILED)
                for key in run_keys:
                    report.route_outcomes[route_label(key)] = RouteOutcome.FAILED
                return

            parsed = parse_status_page(fetched.body, route_number, fetched.fetched_at, self.tz)
            report.record_anomaly(AnomalyKind.PARSE_ERROR, len(parsed.errors))
            for error in parsed.errors:
                logger.info("parse_error", route_number=route_number, reason=error.reason)

            async with self.session_factory() as session:
                matcher = Matcher(TimetableStore(session), timedelta(minutes=self.config.MATCH_TOLERANCE_MINUTES))
                matched = await matcher.match(parsed.observations, fetched.fetched_at)
            for match_error in matched.errors:
                report.record_anomaly(match_error.anomaly_kind)

            updates_by_run: dict[RouteKey, list[MatchedUpdate]] = defaultdict(list)
            for update in matched.updates:
                updates_by_run[update.route_key].append(update)

            # Active runs without updates succeed trivially; matched runs outside the window are still written
            for key in dict.fromkeys([*run_keys, *updates_by_run]):
                await self._process_run(key, updates_by_run.get(key, []), report)
        except Exception as e:
            logger.error(
                "route_pipeline_failed",
                route_number=route_number,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=e,
            )
            for key in run_keys:
                report.route_outcomes.setdefault(route_label(key), RouteOutcome.FAILED)

    async def _process_run(self, key: RouteKey, updates: list[MatchedUpdate], report: CycleReport) -> None:
        """
        Write one route run's updates in its own transaction, then evaluate alerts.

        The outcome is recorded as soon as the transaction settles, so a cycle
        timeout during alert evaluation still reports the committed run as succeeded.
        """
        label = route_label(key)
        if not updates:
            report.route_outcomes[label] = RouteOutcome.SUCCEEDED
            return

        expected_start_time, route_id = key
        with service_span(
            "scrape_cycle.route",
            "scrape-cycle",
            **{"route.id": route_id, "route.updates": len(updates)},
        ) as span:
            result = await self._write_run(key, updates, report)
            if result is None:
                report.route_outcomes[label] = RouteOutcome.FAILED
                span.set_attribute("route.outcome", RouteOutcome.FAILED.value)
                return

            report.route_outcomes[label] = RouteOutcome.SUCCEEDED
            report.record_anomaly(AnomalyKind.MONOTONICITY_VIOLATION, len(result.violations))
            report.updates_applied += result.stops_updated
            span.set_attribute("route.outcome", RouteOutcome.SUCCEEDED.value)
            span.set_attribute("route.stops_updated", result.stops_updated)

            railway_works = any(u.status_flag is StatusFlag.RAILWAY_WORKS for u in updates)
            report.notifications_sent += await self._evaluate_alerts(
                route_id,
                expected_start_time,
                updates[0].route_number,
                result.changes,
                railway_works,
            )

    def _log_write_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "route_write_retry",
            route_id=retry_state.kwargs.get("route_id"),
            attempt=retry_state.attempt_number,
            max_attempts=self.config.PERSISTENCE_RETRY_ATTEMPTS,
            reason=str(error),
        )

    async def _write_once(
        self,
        route_id: str,
        expected_start_time: datetime,
        updates: list[MatchedUpdate],
    ) -> WriteResult | None:
        async with self.session_factory() as session, session.begin():
            route = await TimetableStore(session).get_route_with_stops(route_id, expected_start_time, for_update=True)
            if route is None:
                logger.warning("route_run_disappeared", route_id=route_id)
                return None
            result = await UpsertWriter(session).apply(route, updates)
            await DelayAggregator(session, self.tz, self.config.NETWORK_REGION).apply_changes(result.changes)
        return result

    async def _write_run(self, key: RouteKey, updates: list[MatchedUpdate], report: CycleReport) -> WriteResult | None:
        """
        Apply updates and delay statistics atomically, retrying transient database errors.

        Returns:
            The committed write result, or None if the route transaction failed
        """
        expected_start_time, route_id = key
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.PERSISTENCE_RETRY_ATTEMPTS),
            wait=wait_exponential(
                multiplier=self.config.PERSISTENCE_RETRY_BACKOFF_SECONDS, min=0, max=PERSISTENCE_RETRY_MAX_WAIT_SECONDS
            ),
            retry=retry_if_exception(is_transient_database_error),
            before_sleep=self._log_write_retry,
            reraise=True,
        )
        try:
            return await retrying(
                self._write_once, route_id=route_id, expected_start_time=expected_start_time, updates=updates
            )
        except SQLAlchemyError as e:
            error = classify_persistence_error(e)
            report.record_anomaly(AnomalyKind.PERSISTENCE_FAILED)
            logger.error(
                "route_write_failed",
                route_id=route_id,
                attempts=retrying.statistics.get("attempt_number", 1),
                transient=error.transient,
                reason=error.reason,
            )
            return None

    async def _evaluate_alerts(
        self,
        route_id: str,
        expected_start_time: datetime,
        route_number: int,
        changes: list[AppliedChange],
        railway_works: bool,
    ) -> int:
        """
        Run alert evaluation after the route commit. Failures are logged, the route stays committed.

        If the notifications do not commit (a database or Redis error, or the
        cycle timeout cancelling the task) their dedupe keys are released.
        """
        evaluator: AlertEvaluator | None = None
        try:
            async with self.session_factory() as session, session.begin():
                evaluator = AlertEvaluator(
                    session,
                    self.redis_client,
                    self.tz,
                    cooldown_minutes=self.config.ALERT_COOLDOWN_MINUTES,
                )
                return await evaluator.evaluate(
                    route_id,
                    expected_start_time,
                    route_number,
                    changes,
                    railway_works,
                )
        except (SQLAlchemyError, RedisError) as e:
            logger.error(
                "alert_evaluation_failed",
                route_id=route_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._release_dedupe_keys(evaluator)
            return 0
        except asyncio.CancelledError:
            await asyncio.shield(self._release_dedupe_keys(evaluator))
            raise

    async def _release_dedupe_keys(self, evaluator: AlertEvaluator | None) -> None:
        if evaluator is None:
            return
        try:
            await evaluator.release_dedupe_keys()
        except RedisError as e:
            logger.warning("notification_dedupe_release_failed", error=str(e))

    # ==================== Reporting ====================

    def _record_span_attributes(self, span: "Span", report: CycleReport) -> None:
        """
        Set cycle report counts as span attributes.

        Args:
            span: OpenTelemetry span to set attributes on
            report: Finished cycle report
        """
        span.set_attribute("cycle.routes_succeeded", report.routes_succeeded)
        span.set_attribute("cycle.routes_failed", report.routes_failed)
        span.set_attribute("cycle.routes_cancelled", report.routes_cancelled)
        span.set_attribute("cycle.updates_applied", report.updates_applied)
        span.set_attribute("cycle.notifications_sent", report.notifications_sent)
        span.set_attribute("cycle.anomalies", report.anomaly_total)
        span.set_attribute("cycle.timed_out", report.timed_out)

    async def _store_report(self, report: CycleReport) -> None:
        try:
            await self.redis_client.set(LAST_REPORT_KEY, report.model_dump_json())
        except RedisError as e:
            logger.warning("cycle_report_store_failed", error=str(e))
