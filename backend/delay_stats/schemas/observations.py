"""Transient values flowing through a scrape cycle: payloads, observations and changes."""

import enum
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from delay_stats.core.errors import MatchError, MonotonicityViolation, ParseError


class StatusFlag(str, enum.Enum):
    """Operational status reported by the live delay page."""

    WAITING_FOR_DEPARTURE = "waiting_for_departure"
    ON_TIME = "on_time"
    LATE = "late"
    FINISHED = "finished"
    RAILWAY_WORKS = "railway_works"
    UNKNOWN = "unknown"


class FetchedPayload(BaseModel):
    """Raw live status page for one route number."""

    route_number: int
    body: str
    fetched_at: datetime
    status_code: int = 200


class LiveObservation(BaseModel):
    """
    A single scraped reading of a train at a station.

    Never persisted: the matcher turns it into a MatchedUpdate or a MatchError.
    Times are timezone-aware UTC; None means the page did not report them.
    """

    model_config = ConfigDict(frozen=True)

    route_number: int
    observed_day: date
    station_code: str = Field(..., min_length=1, description="Station text as scraped, unresolved")
    actual_arrival: datetime | None = None
    actual_departure: datetime | None = None
    status_flag: StatusFlag = StatusFlag.UNKNOWN
    reported_delay_minutes: int | None = None


class ParseResult(BaseModel):
    """Observations extracted from a payload plus the fragments that could not be read."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    observations: list[LiveObservation] = Field(default_factory=list)
    errors: list[ParseError] = Field(default_factory=list)


class MatchedUpdate(BaseModel):
    """An observation bound to exactly one stop of one route run."""

    model_config = ConfigDict(frozen=True)

    route_id: str
    route_expected_start_time: datetime
    route_number: int
    sequence: int
    station_id: str
    actual_arrival: datetime | None = None
    actual_departure: datetime | None = None
    status_flag: StatusFlag = StatusFlag.UNKNOWN

    @property
    def route_key(self) -> tuple[datetime, str]:
        """Primary key of the route run this update targets."""
        return (self.route_expected_start_time, self.route_id)


class MatchResult(BaseModel):
    """Outcome of reconciling one payload's observations against the timetable."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    updates: list[MatchedUpdate] = Field(default_factory=list)
    errors: list[MatchError] = Field(default_factory=list)


class AppliedChange(BaseModel):
    """A committed change to a stop's delay, as seen by the aggregator and alerts."""

    model_config = ConfigDict(frozen=True)

    route_id: str
    route_expected_start_time: datetime
    route_number: int
    sequence: int
    station_id: str
    old_delay_seconds: int | None = None
    new_delay_seconds: int | None = None


class WriteResult(BaseModel):
    """What the upsert writer did for one route run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    changes: list[AppliedChange] = Field(default_factory=list)
    violations: list[MonotonicityViolation] = Field(default_factory=list)
    stops_updated: int = 0
