"""Tests for delay arithmetic, service days and text normalisation."""

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from delay_stats.helpers.delay_math import (
    compute_delay,
    day_bounds_utc,
    delay_minutes,
    delay_seconds,
    service_day,
    stop_delay_seconds,
)
from delay_stats.helpers.text import normalize_text

TZ = ZoneInfo("Europe/Zagreb")
EXPECTED = datetime(2026, 3, 2, 6, 0, tzinfo=UTC)


@dataclass
class FakeStop:
    """Plain object satisfying the StopTimes protocol."""

    expected_arrival: datetime
    expected_departure: datetime
    real_arrival: datetime | None = None
    real_departure: datetime | None = None


class TestComputeDelay:
    """Tests for compute_delay and delay_seconds."""

    def test_unobserved_event_has_no_delay(self) -> None:
        """Test a missing real time is None, not zero."""
        assert compute_delay(None, EXPECTED) is None
        assert delay_seconds(None, EXPECTED) is None

    def test_on_time_is_zero(self) -> None:
        """Test an exactly punctual event has a zero delay."""
        assert compute_delay(EXPECTED, EXPECTED) == timedelta(0)
        assert delay_seconds(EXPECTED, EXPECTED) == 0

    def test_late_and_early(self) -> None:
        """Test late events are positive and early ones negative."""
        assert delay_seconds(EXPECTED + timedelta(minutes=7), EXPECTED) == 420
        assert delay_seconds(EXPECTED - timedelta(minutes=1), EXPECTED) == -60

    def test_delay_across_time_zones(self) -> None:
        """Test instants in different zones are compared as instants."""
        local = datetime(2026, 3, 2, 7, 5, tzinfo=TZ)
        assert delay_seconds(local, EXPECTED) == 300


class TestStopDelaySeconds:
    """Tests for stop_delay_seconds."""

    def test_prefers_arrival_delay(self) -> None:
        """Test the arrival delay is used when both times are known."""
        stop = FakeStop(
            expected_arrival=EXPECTED,
            expected_departure=EXPECTED + timedelta(minutes=2),
            real_arrival=EXPECTED + timedelta(minutes=4),
            real_departure=EXPECTED + timedelta(minutes=9),
        )
        assert stop_delay_seconds(stop) == 240

    def test_falls_back_to_departure_delay(self) -> None:
        """Test an origin stop with only a departure uses the departure delay."""
        stop = FakeStop(
            expected_arrival=EXPECTED,
            expected_departure=EXPECTED,
            real_departure=EXPECTED + timedelta(minutes=3),
        )
        assert stop_delay_seconds(stop) == 180

    def test_unobserved_stop(self) -> None:
        """Test a stop with no real times contributes no sample."""
        assert stop_delay_seconds(FakeStop(expected_arrival=EXPECTED, expected_departure=EXPECTED)) is None


@pytest.mark.parametrize(("seconds", "minutes"), [(0, 0), (59, 0), (60, 1), (719, 11), (-30, -1)])
def test_delay_minutes_rounds_down(seconds: int, minutes: int) -> None:
    """Test whole minutes are floored."""
    assert delay_minutes(seconds) == minutes


class TestServiceDay:
    """Tests for service_day and day_bounds_utc."""

    def test_service_day_uses_local_date(self) -> None:
        """Test an instant late in the UTC evening belongs to the next local day."""
        assert service_day(datetime(2026, 3, 2, 23, 30, tzinfo=UTC), TZ) == date(2026, 3, 3)
        assert service_day(datetime(2026, 3, 2, 22, 30, tzinfo=UTC), TZ) == date(2026, 3, 2)

    def test_day_bounds_in_winter(self) -> None:
        """Test a regular day is 24 hours starting at local midnight."""
        start, end = day_bounds_utc(date(2026, 3, 2), TZ)
        assert start == datetime(2026, 3, 1, 23, 0, tzinfo=UTC)
        assert end == datetime(2026, 3, 2, 23, 0, tzinfo=UTC)

    def test_day_bounds_on_spring_forward(self) -> None:
        """Test the DST start day is 23 hours long."""
        start, end = day_bounds_utc(date(2026, 3, 29), TZ)
        assert end - start == timedelta(hours=23)


class TestNormalizeText:
    """Tests for normalize_text."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("Nova Gradiška", "nova gradiska"),
            ("ĐAKOVO", "dakovo"),
            ("Vlak  čeka\tpolazak", "vlak ceka polazak"),
            ("Zagreb-Borongaj", "zagreb borongaj"),
            (None, ""),
        ],
    )
    def test_normalize_text(self, value: str | None, expected: str) -> None:
        """Test diacritics, case, hyphens and whitespace are folded."""
        assert normalize_text(value) == expected
