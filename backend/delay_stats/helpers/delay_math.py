"""
Delay arithmetic and service-day helpers.

All functions are pure. Instants are timezone-aware; a service day is a
calendar date in the network's local time zone.
"""

from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo


class StopTimes(Protocol):
    """Anything carrying expected and real stop times (ORM Stop, test doubles)."""

    expected_arrival: datetime
    real_arrival: datetime | None
    expected_departure: datetime
    real_departure: datetime | None


def compute_delay(real: datetime | None, expected: datetime) -> timedelta | None:
    """
    Delay of an event: real minus expected.

    Returns None when the event has not been observed. A train that ran
    exactly on time has a zero delay, an unobserved one has no delay.

    Examples:
        >>> compute_delay(None, datetime(2026, 1, 1, 8, 0, tzinfo=UTC)) is None
        True
        >>> compute_delay(datetime(2026, 1, 1, 8, 5, tzinfo=UTC), datetime(2026, 1, 1, 8, 0, tzinfo=UTC))
        datetime.timedelta(seconds=300)
    """
    if real is None:
        return None
    return real - expected


def delay_seconds(real: datetime | None, expected: datetime) -> int | None:
    """Delay in whole seconds, or None when unobserved."""
    delay = compute_delay(real, expected)
    if delay is None:
        return None
    return int(delay.total_seconds())


def stop_delay_seconds(stop: StopTimes) -> int | None:
    """
    The single delay sample a stop contributes to statistics and alerts.

    Arrival delay when the real arrival is known, otherwise departure delay
    (origin stations only report a departure), otherwise None.
    """
    arrival = delay_seconds(stop.real_arrival, stop.expected_arrival)
    if arrival is not None:
        return arrival
    return delay_seconds(stop.real_departure, stop.expected_departure)


def delay_minutes(seconds: int) -> int:
    """Whole minutes of delay, rounded down."""
    return seconds // 60


def service_day(instant: datetime, tz: ZoneInfo) -> date:
    """Local calendar date of an instant."""
    return instant.astimezone(tz).date()


def day_bounds_utc(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """
    UTC instants bounding a local service day as a half-open interval.

    DST transition days are 23 or 25 hours long; the bounds follow local
    midnight on both ends.
    """
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)
