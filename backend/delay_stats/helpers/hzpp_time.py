"""Conversion of HZPP planner clock strings into UTC instants."""

import re
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

_CLOCK_RE = re.compile(r"^\s*(\d{1,3}):(\d{2})(?::(\d{2}))?\s*$")


def parse_clock(value: str) -> tuple[int, int]:
    """
    Split a planner clock string into hours and minutes.

    Hours may exceed 23: a train leaving after midnight on a run that started
    the previous evening is reported as e.g. "25:49:00". Seconds are ignored.

    Raises:
        ValueError: If the string is not a clock time or minutes are out of range
    """
    match = _CLOCK_RE.match(value)
    if match is None:
        msg = f"Invalid planner time '{value}'"
        raise ValueError(msg)
    hours, minutes = int(match.group(1)), int(match.group(2))
    if minutes > 59:
        msg = f"Invalid minutes in planner time '{value}'"
        raise ValueError(msg)
    return hours, minutes


def planner_time_to_utc(day: date, value: str, tz: ZoneInfo) -> datetime:
    """
    Resolve a planner clock string on a service day to a UTC instant.

    Every full 24 hours rolls over to the next local day.

    Examples:
        >>> planner_time_to_utc(date(2026, 1, 10), "25:49:00", ZoneInfo("Europe/Zagreb"))
        datetime.datetime(2026, 1, 11, 0, 49, tzinfo=datetime.timezone.utc)
    """
    hours, minutes = parse_clock(value)
    local_day = day + timedelta(days=hours // 24)
    local = datetime.combine(local_day, time(hours % 24, minutes), tzinfo=tz)
    return local.astimezone(UTC)
