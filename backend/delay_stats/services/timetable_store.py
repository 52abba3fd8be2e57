"""Read access to the canonical timetable: route runs, their stops and current status."""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from delay_stats.helpers.delay_math import stop_delay_seconds
from delay_stats.models.timetable import Route
from delay_stats.schemas.stats import RouteStatusResponse, StopStatus

logger = structlog.get_logger(__name__)


def pick_closest_run(runs: list[Route], now: datetime) -> Route | None:
    """
    Choose the run that best represents "now" for a route number.

    A run in progress wins; otherwise the run whose expected start or end is
    nearest to now. Pure function for easy testing.
    """
    if not runs:
        return None
    running = [r for r in runs if r.expected_start_time <= now <= r.expected_end_time]
    if running:
        return max(running, key=lambda r: r.expected_start_time)

    def distance(route: Route) -> timedelta:
        if now < route.expected_start_time:
            return route.expected_start_time - now
        return now - route.expected_end_time

    return min(runs, key=lambda r: (distance(r), r.expected_start_time))


class TimetableStore:
    """Queries over stations, routes and stops. Never writes."""

    def __init__(self, db: AsyncSession) -> None:
        """
        Initialize the timetable store.

        Args:
            db: Database session
        """
        self.db = db

    async def get_active_routes(
        self,
        now: datetime,
        lookback: timedelta,
        lookahead: timedelta,
    ) -> list[Route]:
        """
        Route runs whose expected start lies in [now - lookback, now + lookahead].

        Args:
            now: Reference instant (timezone-aware)
            lookback: How far back a run may have started and still be running
            lookahead: How soon a run must be due to be polled

        Returns:
            Route runs ordered by route number and expected start
        """
        result = await self.db.execute(
            select(Route)
            .where(
                Route.expected_start_time >= now - lookback,
                Route.expected_start_time <= now + lookahead,
            )
            .order_by(Route.route_number, Route.expected_start_time)
        )
        return list(result.scalars().all())

    async def get_candidate_runs(
        self,
        route_number: int,
        earliest: datetime,
        latest: datetime,
    ) -> list[Route]:
        """
        Runs of a route number overlapping [earliest, latest], stops and stations loaded.

        The caller widens the interval by its matching tolerance; exact
        candidate filtering happens in the matcher.
        """
        result = await self.db.execute(
            select(Route)
            .where(
                Route.route_number == route_number,
                Route.expected_start_time <= latest,
                Route.expected_end_time >= earliest,
            )
            .options(selectinload(Route.stops))
            .order_by(Route.expected_start_time)
        )
        return list(result.scalars().all())

    async def get_route_with_stops(
        self,
        route_id: str,
        expected_start_time: datetime,
        *,
        for_update: bool = False,
    ) -> Route | None:
        """
        Load one route run with its stops.

        Args:
            route_id: Operator route id
            expected_start_time: Expected start of the run (second half of the key)
            for_update: Lock the route row until the surrounding transaction ends

        Returns:
            The route run, or None if it does not exist
        """
        query = (
            select(Route)
            .where(Route.id == route_id, Route.expected_start_time == expected_start_time)
            .options(selectinload(Route.stops))
        )
        if for_update:
            query = query.with_for_update(of=Route)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_route_status(self, route_number: int, now: datetime | None = None) -> RouteStatusResponse | None:
        """
        Current state of the run of a route number closest to now.

        Looks one day either side of now, which covers overnight runs.

        Args:
            route_number: Public train number
            now: Reference instant, defaults to the current time

        Returns:
            Route status with per-stop expected and real times, or None if the
            route number has no run near now
        """
        now = now or datetime.now(UTC)
        window = timedelta(days=1)
        runs = await self.get_candidate_runs(route_number, now - window, now + window)
        route = pick_closest_run(runs, now)
        if route is None:
            logger.debug("route_status_not_found", route_number=route_number)
            return None

        stops = []
        for stop in route.stops:
            delay = stop_delay_seconds(stop)
            stops.append(
                StopStatus(
                    sequence=stop.sequence,
                    station_id=stop.station_id,
                    station_name=stop.station.name,
                    expected_arrival=stop.expected_arrival,
                    real_arrival=stop.real_arrival,
                    expected_departure=stop.expected_departure,
                    real_departure=stop.real_departure,
                    delay_minutes=round(delay / 60, 1) if delay is not None else None,
                )
            )

        return RouteStatusResponse(
            route_id=route.id,
            route_number=route.route_number,
            source=route.source,
            destination=route.destination,
            expected_start_time=route.expected_start_time,
            expected_end_time=route.expected_end_time,
            real_start_time=route.real_start_time,
            real_end_time=route.real_end_time,
            stops=stops,
        )
