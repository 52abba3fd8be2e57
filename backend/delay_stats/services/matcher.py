"""
Reconciliation of live observations against the canonical timetable.

Every observation is bound to exactly one (route run, stop) pair or rejected
with a classified MatchError. The same route number runs several times a
day, so the run is chosen by time; loop lines visit a station more than once,
so the stop is chosen with a per-run monotonic cursor.
"""

from collections import defaultdict
from datetime import datetime, timedelta

import structlog

from delay_stats.core.errors import MatchError, MatchErrorKind
from delay_stats.helpers.text import normalize_text
from delay_stats.models.timetable import Route, Station, Stop
from delay_stats.schemas.observations import LiveObservation, MatchedUpdate, MatchResult
from delay_stats.services.timetable_store import TimetableStore

logger = structlog.get_logger(__name__)


# ==================== Pure Helper Functions ====================
# Pure functions with no side effects for easy testing


def reference_instant(observation: LiveObservation, fetched_at: datetime) -> datetime:
    """The instant an observation is about: departure, else arrival, else fetch time."""
    return observation.actual_departure or observation.actual_arrival or fetched_at


def select_run(
    runs: list[Route],
    observation: LiveObservation,
    reference: datetime,
    tolerance: timedelta,
) -> Route:
    """
    Pick the route run an observation belongs to.

    A run is a candidate when the reference instant lies within its expected
    span widened by the tolerance on both sides. The candidate whose expected
    start is closest to the reference instant wins.

    Args:
        runs: Runs of the observation's route number
        observation: Observation being matched
        reference: Reference instant of the observation
        tolerance: Slack around each run's expected span

    Returns:
        The selected route run

    Raises:
        MatchError: no_route if no run is a candidate, ambiguous on an exact tie
    """
    candidates = [
        run
        for run in runs
        if run.expected_start_time - tolerance <= reference <= run.expected_end_time + tolerance
    ]
    if not candidates:
        raise MatchError(
            MatchErrorKind.NO_ROUTE,
            observation.route_number,
            observation.station_code,
            f"no run within tolerance of {reference.isoformat()}",
        )

    ranked = sorted(candidates, key=lambda run: abs(run.expected_start_time - reference))
    if len(ranked) > 1 and abs(ranked[0].expected_start_time - reference) == abs(
        ranked[1].expected_start_time - reference
    ):
        raise MatchError(
            MatchErrorKind.AMBIGUOUS,
            observation.route_number,
            observation.station_code,
            f"runs starting {ranked[0].expected_start_time.isoformat()} and "
            f"{ranked[1].expected_start_time.isoformat()} are equally close",
        )
    return ranked[0]


def station_matches(station: Station, station_text: str) -> bool:
    """
    Check whether scraped station text refers to a station.

    Numeric text is compared with the station code; anything else with the
    station id or, accent- and case-insensitively, the station name.

    Examples:
        >>> station = Station(id="72480", code=72480, name="Nova Gradiška")
        >>> station_matches(station, "NOVA GRADISKA")
        True
        >>> station_matches(station, "72480")
        True
    """
    text = station_text.strip()
    if text.isdigit():
        return int(text) == station.code or text == station.id
    return text == station.id or normalize_text(text) == normalize_text(station.name)


def initial_cursor(stops: list[Stop]) -> int:
    """
    Starting cursor for a run: the highest sequence with any real time stored.

    Runs with no observations yet start at their first stop.
    """
    observed = [s.sequence for s in stops if s.real_arrival is not None or s.real_departure is not None]
    if observed:
        return max(observed)
    return min((s.sequence for s in stops), default=0)


def select_stop(stops: list[Stop], observation: LiveObservation, cursor: int) -> Stop:
    """
    Bind an observation to the lowest-sequence matching stop at or after the cursor.

    A station repeated on a loop line binds to the cursor stop again, so
    re-observations and corrections of the current stop stay idempotent; the
    later visit is reached once an intermediate station has moved the cursor.

    Raises:
        MatchError: no_stop if the station is not on the route at or after the cursor
    """
    matching = [s for s in stops if station_matches(s.station, observation.station_code)]
    ahead = sorted((s for s in matching if s.sequence >= cursor), key=lambda s: s.sequence)
    if ahead:
        return ahead[0]

    reason = "station only appears behind the cursor" if matching else "station is not on the route"
    raise MatchError(MatchErrorKind.NO_STOP, observation.route_number, observation.station_code, reason)


# ==================== Matcher ====================


class Matcher:
    """Resolves observations to stops of scheduled route runs."""

    def __init__(self, store: TimetableStore, tolerance: timedelta) -> None:
        """
        Initialize the matcher.

        Args:
            store: Timetable store on the matching session
            tolerance: Slack around a run's expected span when choosing the run
        """
        self.store = store
        self.tolerance = tolerance

    async def match(self, observations: list[LiveObservation], fetched_at: datetime) -> MatchResult:
        """
        Match a payload's observations, in page order.

        Each run's cursor starts from its stored real times and advances with
        every observation bound to it, so the order of observations matters.

        Args:
            observations: Parsed observations
            fetched_at: Fetch time of the payload, the fallback reference instant

        Returns:
            MatchResult with one MatchedUpdate per bound observation and one
            MatchError per rejected observation
        """
        result = MatchResult()
        by_number: dict[int, list[LiveObservation]] = defaultdict(list)
        for observation in observations:
            by_number[observation.route_number].append(observation)

        for route_number, group in by_number.items():
            references = [reference_instant(o, fetched_at) for o in group]
            runs = await self.store.get_candidate_runs(
                route_number,
                min(references) - self.tolerance,
                max(references) + self.tolerance,
            )
            cursors: dict[tuple[datetime, str], int] = {}

            for observation, reference in zip(group, references, strict=True):
                try:
                    run = select_run(runs, observation, reference, self.tolerance)
                    key = (run.expected_start_time, run.id)
                    cursor = cursors.setdefault(key, initial_cursor(run.stops))
                    stop = select_stop(run.stops, observation, cursor)
                except MatchError as e:
                    logger.info(
                        "observation_unmatched",
                        kind=e.kind.value,
                        route_number=e.route_number,
                        station=e.station_code,
                        reason=e.reason,
                    )
                    result.errors.append(e)
                    continue

                cursors[key] = stop.sequence
                result.updates.append(
                    MatchedUpdate(
                        route_id=run.id,
                        route_expected_start_time=run.expected_start_time,
                        route_number=run.route_number,
                        sequence=stop.sequence,
                        station_id=stop.station_id,
                        actual_arrival=observation.actual_arrival,
                        actual_departure=observation.actual_departure,
                        status_flag=observation.status_flag,
                    )
                )

        logger.debug(
            "observations_matched",
            matched=len(result.updates),
            unmatched=len(result.errors),
        )
        return result
