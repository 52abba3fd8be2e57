"""Pydantic schemas for the read side: delay statistics, route status and favourites."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from delay_stats.models.delay_stat import StatDimension

# ==================== Request Schemas ====================


class DelayStatsFilter(BaseModel):
    """Query for delay buckets of one dimension over a window of service days."""

    dimension: StatDimension
    group_key: str | None = Field(None, description="Restrict to one station id, route number or region")
    start_day: date
    end_day: date

    @model_validator(mode="after")
    def validate_window(self) -> "DelayStatsFilter":
        """Validate that the window is not inverted."""
        if self.end_day < self.start_day:
            msg = f"end_day {self.end_day} is before start_day {self.start_day}"
            raise ValueError(msg)
        return self


class FavoriteRequest(BaseModel):
    """Create or update a user's favourite route number."""

    user_id: UUID
    route_number: int = Field(..., gt=0)
    alert_on_railway_works: bool = False
    alert_on_delay_minutes: int | None = Field(
        None,
        ge=0,
        description="Notify when a stop is at least this many minutes late. None disables delay alerts.",
    )


# ==================== Response Schemas ====================


class DelayStatsEntry(BaseModel):
    """Aggregated delays for one grouping key across the requested window."""

    group_key: str
    sample_count: int
    mean_delay_minutes: float | None = None
    max_delay_minutes: float | None = None


class DelayStatsResponse(BaseModel):
    """Delay statistics for a dimension and window."""

    dimension: StatDimension
    start_day: date
    end_day: date
    entries: list[DelayStatsEntry] = Field(default_factory=list)


class StopStatus(BaseModel):
    """Expected and observed times for one stop of a route run."""

    sequence: int
    station_id: str
    station_name: str
    expected_arrival: datetime
    real_arrival: datetime | None = None
    expected_departure: datetime
    real_departure: datetime | None = None
    delay_minutes: float | None = None


class RouteStatusResponse(BaseModel):
    """Current state of the route run closest to now."""

    model_config = ConfigDict(from_attributes=True)

    route_id: str
    route_number: int
    source: str
    destination: str
    expected_start_time: datetime
    expected_end_time: datetime
    real_start_time: datetime | None = None
    real_end_time: datetime | None = None
    stops: list[StopStatus] = Field(default_factory=list)


class FavoriteResponse(BaseModel):
    """Stored favourite."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    route_number: int
    alert_on_railway_works: bool
    alert_on_delay_minutes: int | None = None
