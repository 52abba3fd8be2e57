"""Applies matched observations to stored stops while keeping real times ordered."""

from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from delay_stats.core.errors import MonotonicityViolation
from delay_stats.helpers.delay_math import stop_delay_seconds
from delay_stats.models.timetable import Route, Stop
from delay_stats.schemas.observations import AppliedChange, MatchedUpdate, WriteResult

logger = structlog.get_logger(__name__)


# ==================== Pure Helper Functions ====================


def _first_time(arrival: datetime | None, departure: datetime | None) -> datetime | None:
    return arrival if arrival is not None else departure


def _last_time(arrival: datetime | None, departure: datetime | None) -> datetime | None:
    return departure if departure is not None else arrival


def check_monotonicity(
    stops: list[Stop],
    sequence: int,
    arrival: datetime | None,
    departure: datetime | None,
) -> str | None:
    """
    Validate proposed real times for one stop against its observed neighbours.

    The nearest stop before and after that carries any real time is used, so
    unobserved stops in between do not hide an inversion.

    Args:
        stops: All stops of the route run, with current real times
        sequence: Sequence of the stop being updated
        arrival: Proposed real arrival
        departure: Proposed real departure

    Returns:
        A description of the violated ordering, or None if the times are consistent
    """
    if arrival is not None and departure is not None and departure < arrival:
        return f"departure {departure.isoformat()} precedes arrival {arrival.isoformat()}"

    first = _first_time(arrival, departure)
    last = _last_time(arrival, departure)

    previous = [
        s
        for s in stops
        if s.sequence < sequence and (s.real_arrival is not None or s.real_departure is not None)
    ]
    if previous and first is not None:
        neighbour = max(previous, key=lambda s: s.sequence)
        bound = _last_time(neighbour.real_arrival, neighbour.real_departure)
        if bound is not None and first < bound:
            return f"{first.isoformat()} precedes stop {neighbour.sequence} at {bound.isoformat()}"

    following = [
        s
        for s in stops
        if s.sequence > sequence and (s.real_arrival is not None or s.real_departure is not None)
    ]
    if following and last is not None:
        neighbour = min(following, key=lambda s: s.sequence)
        bound = _first_time(neighbour.real_arrival, neighbour.real_departure)
        if bound is not None and last > bound:
            return f"{last.isoformat()} follows stop {neighbour.sequence} at {bound.isoformat()}"

    return None


class UpsertWriter:
    """
    Writes real arrival and departure times for one route run.

    The caller owns the transaction: every update of a route run is applied in
    one unit of work and committed (or rolled back) together.
    """

    def __init__(self, db: AsyncSession) -> None:
        """
        Initialize the writer.

        Args:
            db: Database session with an open transaction
        """
        self.db = db

    async def apply(self, route: Route, updates: list[MatchedUpdate]) -> WriteResult:
        """
        Apply matched updates to a route run's stops.

        Rules:
        - A null observation field never clears a stored time.
        - Re-submitting the stored values is a no-op.
        - A different value overwrites the stored one (source correction).
        - An update that would break time ordering along the route is rejected
          as a MonotonicityViolation; the remaining updates still apply.

        The route's real start (first stop departure) and real end (last stop
        arrival) are kept in step with the stops.

        Args:
            route: Route run with stops loaded, on this session
            updates: Matched updates for this run, in observation order

        Returns:
            WriteResult with one AppliedChange per stop whose delay changed
        """
        result = WriteResult()
        stops_by_sequence = {stop.sequence: stop for stop in route.stops}
        # sequence -> delay before this batch, so repeated updates collapse into one change
        original_delays: dict[int, int | None] = {}

        for update in updates:
            stop = stops_by_sequence.get(update.sequence)
            if stop is None:
                # Matcher only emits sequences of this run
                logger.warning("update_for_unknown_stop", route_id=route.id, sequence=update.sequence)
                continue

            arrival = update.actual_arrival if update.actual_arrival is not None else stop.real_arrival
            departure = update.actual_departure if update.actual_departure is not None else stop.real_departure
            if arrival == stop.real_arrival and departure == stop.real_departure:
                continue

            if reason := check_monotonicity(route.stops, stop.sequence, arrival, departure):
                violation = MonotonicityViolation(route.id, stop.sequence, reason)
                logger.warning(
                    "monotonicity_violation",
                    route_id=route.id,
                    route_number=route.route_number,
                    sequence=stop.sequence,
                    reason=reason,
                )
                result.violations.append(violation)
                continue

            original_delays.setdefault(stop.sequence, stop_delay_seconds(stop))
            stop.real_arrival = arrival
            stop.real_departure = departure
            result.stops_updated += 1

        for sequence, old_delay in original_delays.items():
            stop = stops_by_sequence[sequence]
            new_delay = stop_delay_seconds(stop)
            if new_delay != old_delay:
                result.changes.append(
                    AppliedChange(
                        route_id=route.id,
                        route_expected_start_time=route.expected_start_time,
                        route_number=route.route_number,
                        sequence=sequence,
                        station_id=stop.station_id,
                        old_delay_seconds=old_delay,
                        new_delay_seconds=new_delay,
                    )
                )

        if route.stops:
            first_stop, last_stop = route.stops[0], route.stops[-1]
            if first_stop.real_departure is not None:
                route.real_start_time = first_stop.real_departure
            if last_stop.real_arrival is not None:
                route.real_end_time = last_stop.real_arrival

        await self.db.flush()
        logger.debug(
            "route_updates_applied",
            route_id=route.id,
            route_number=route.route_number,
            stops_updated=result.stops_updated,
            delay_changes=len(result.changes),
            violations=len(result.violations),
        )
        return result
