"""Tests for the live status page parser."""

from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import pytest
from delay_stats.core.errors import AnomalyKind, ParseError
from delay_stats.helpers.status_parser import detect_status, html_to_lines, parse_status_page
from delay_stats.schemas.observations import StatusFlag

TZ = ZoneInfo("Europe/Zagreb")
FETCHED_AT = datetime(2026, 3, 2, 7, 0, tzinfo=UTC)


def page(*lines: str) -> str:
    """Wrap text lines in the markup the delay page uses."""
    body = "".join(f"<p>{line}</p>" for line in lines)
    return f"<html><head><title>HZPP</title></head><body>{body}</body></html>"


# ==================== detect_status Tests ====================


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("vlak ceka polazak", (StatusFlag.WAITING_FOR_DEPARTURE, None)),
        ("vlak je redovit", (StatusFlag.ON_TIME, None)),
        ("kasni 12 min.", (StatusFlag.LATE, 12)),
        ("kasni 3 min", (StatusFlag.LATE, 3)),
        ("zavrsio je voznju", (StatusFlag.FINISHED, None)),
        ("zavrsio je voznju kasni 7 min.", (StatusFlag.FINISHED, 7)),
        ("obustava prometa zbog radova na pruzi", (StatusFlag.RAILWAY_WORKS, None)),
        ("hrvatske zeljeznice", (StatusFlag.UNKNOWN, None)),
    ],
)
def test_detect_status(line: str, expected: tuple[StatusFlag, int | None]) -> None:
    """Test status phrases are classified from normalised text."""
    assert detect_status(line) == expected


def test_html_to_lines_splits_on_tags_and_collapses_whitespace() -> None:
    """Test markup is stripped and each text node becomes a line."""
    lines = html_to_lines("<div>Kolodvor:   Novska<br/>Dolazak 02.03.26. u 08:01</div>\n\n<p> </p>")
    assert lines == ["Kolodvor: Novska", "Dolazak 02.03.26. u 08:01"]


# ==================== parse_status_page Tests ====================


def test_parse_single_station_block() -> None:
    """Test a block with a departure and a delay yields one observation."""
    payload = page("Vlak: 2500", "Kolodvor: ZAGREB GL. KOL.", "Odlazak 02.03.26. u 07:05", "Kasni 5 min.")

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    assert result.errors == []
    assert len(result.observations) == 1
    observation = result.observations[0]
    assert observation.route_number == 2500
    assert observation.station_code == "ZAGREB GL. KOL."
    assert observation.actual_departure == datetime(2026, 3, 2, 6, 5, tzinfo=UTC)
    assert observation.actual_arrival is None
    assert observation.status_flag is StatusFlag.LATE
    assert observation.reported_delay_minutes == 5
    assert observation.observed_day == date(2026, 3, 2)


def test_parse_multiple_blocks_in_page_order() -> None:
    """Test every station block becomes an observation, in page order."""
    payload = page(
        "Vlak: 2500",
        "Kolodvor: Dugo Selo",
        "Dolazak 02.03.26. u 07:21",
        "Odlazak 02.03.26. u 07:23",
        "Vlak je redovit",
        "Kolodvor: Novska",
        "Dolazak 02.03.2026. u 07:44",
        "Kasni 3 min.",
    )

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    assert [o.station_code for o in result.observations] == ["Dugo Selo", "Novska"]
    first, second = result.observations
    assert first.actual_arrival == datetime(2026, 3, 2, 6, 21, tzinfo=UTC)
    assert first.actual_departure == datetime(2026, 3, 2, 6, 23, tzinfo=UTC)
    assert first.status_flag is StatusFlag.ON_TIME
    assert second.actual_arrival == datetime(2026, 3, 2, 6, 44, tzinfo=UTC)
    assert second.actual_departure is None
    assert second.reported_delay_minutes == 3


def test_parse_station_name_on_following_line() -> None:
    """Test a station name printed on the line after the Kolodvor label."""
    payload = page("Kolodvor:", "Nova Gradiška", "Dolazak 02.03.26. u 08:40")

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    assert result.errors == []
    assert result.observations[0].station_code == "Nova Gradiška"


def test_parse_accepts_dotted_clock_and_accents() -> None:
    """Test HH.MM clocks and accented labels are understood."""
    payload = page("Kolodvor: Vinkovci", "Dolazak 02.03.26. u 10.15", "Završio je vožnju")

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    observation = result.observations[0]
    assert observation.actual_arrival == datetime(2026, 3, 2, 9, 15, tzinfo=UTC)
    assert observation.status_flag is StatusFlag.FINISHED


def test_parse_missing_station_is_recorded_and_skipped() -> None:
    """Test a block without a station fails alone; later blocks still parse."""
    payload = page(
        "Kolodvor:",
        "Dolazak 02.03.26. u 07:21",
        "Kolodvor: Novska",
        "Dolazak 02.03.26. u 07:44",
    )

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    assert len(result.errors) == 1
    assert isinstance(result.errors[0], ParseError)
    assert result.errors[0].reason == "missing station"
    assert result.errors[0].anomaly_kind is AnomalyKind.PARSE_ERROR
    assert [o.station_code for o in result.observations] == ["Novska"]


def test_parse_invalid_date_is_recorded_and_skipped() -> None:
    """Test an impossible calendar date is a parse error for that block only."""
    payload = page(
        "Kolodvor: Dugo Selo",
        "Dolazak 31.02.26. u 07:21",
        "Kolodvor: Novska",
        "Dolazak 02.03.26. u 07:44",
    )

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    assert len(result.errors) == 1
    assert "invalid date" in result.errors[0].reason
    assert [o.station_code for o in result.observations] == ["Novska"]


def test_parse_block_inherits_page_status() -> None:
    """Test a block with no status of its own takes the header's status."""
    payload = page("Vlak: 2500", "Vlak čeka polazak", "Kolodvor: Zagreb Glavni kolodvor")

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    assert result.observations[0].status_flag is StatusFlag.WAITING_FOR_DEPARTURE


def test_parse_railway_works_outranks_delay() -> None:
    """Test railway works wins over a delay line but keeps the reported minutes."""
    payload = page("Kolodvor: Novska", "Kasni 10 min.", "Radovi na pruzi")

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    observation = result.observations[0]
    assert observation.status_flag is StatusFlag.RAILWAY_WORKS
    assert observation.reported_delay_minutes == 10


def test_parse_uses_train_number_from_page() -> None:
    """Test the page's own train number wins over the requested one."""
    payload = page("Vlak: 2501", "Kolodvor: Novska", "Dolazak 02.03.26. u 07:44")

    result = parse_status_page(payload, 2500, FETCHED_AT, TZ)

    assert result.observations[0].route_number == 2501


def test_parse_observed_day_falls_back_to_fetch_time_in_local_zone() -> None:
    """Test an observation without times is dated by the local day of the fetch."""
    fetched_at = datetime(2026, 3, 2, 23, 30, tzinfo=UTC)  # 00:30 on 3 March in Zagreb
    payload = page("Kolodvor: Novska", "Vlak je redovit")

    result = parse_status_page(payload, 2500, fetched_at, TZ)

    assert result.observations[0].observed_day == date(2026, 3, 3)


def test_parse_unrecognisable_page_is_single_error() -> None:
    """Test a page with nothing recognisable yields one error and no observations."""
    result = parse_status_page("<html><body><h1>Service unavailable</h1></body></html>", 2500, FETCHED_AT, TZ)

    assert result.observations == []
    assert len(result.errors) == 1
    assert result.errors[0].reason == "no recognisable content"


def test_parse_named_train_without_stations_is_empty() -> None:
    """Test a train with no station reports yet is not an error."""
    result = parse_status_page(page("Vlak: 2500", "Vlak čeka polazak"), 2500, FETCHED_AT, TZ)

    assert result.observations == []
    assert result.errors == []
