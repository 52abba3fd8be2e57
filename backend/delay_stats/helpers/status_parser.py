"""
Parser for the HZPP live train-delay page.

The page is loosely structured HTML: a header naming the train ("Vlak: 2500"),
then one block per reported station introduced by "Kolodvor:", each with
optional "Dolazak"/"Odlazak dd.mm.yy. u HH:MM" lines and a free-text status
("Vlak je redovit", "Kasni 12 min.", "Završio je vožnju", ...).

Everything here is pure and deterministic so the parser can be tested
against captured pages without network or database access.
"""

import re
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from bs4 import BeautifulSoup

from delay_stats.core.errors import ParseError
from delay_stats.helpers.delay_math import service_day
from delay_stats.helpers.text import normalize_text
from delay_stats.schemas.observations import LiveObservation, ParseResult, StatusFlag

# Patterns run against normalize_text() output: lowercase, no diacritics
_TRAIN_RE = re.compile(r"\bvlak:\s*(\d+)")
_STATION_RE = re.compile(r"^kolodvor:\s*(.*)$")
_EVENT_RE = re.compile(
    r"^(dolazak|odlazak)\s+(\d{1,2})\.(\d{1,2})\.(\d{2}|\d{4})\.?\s*u\s*(\d{1,2})[:.](\d{2})",
)
_LATE_RE = re.compile(r"\bkasni\s+(\d+)\s*min")

# Highest priority first: a finished run that is late is still finished
_STATUS_PRIORITY = [
    StatusFlag.RAILWAY_WORKS,
    StatusFlag.FINISHED,
    StatusFlag.LATE,
    StatusFlag.ON_TIME,
    StatusFlag.WAITING_FOR_DEPARTURE,
    StatusFlag.UNKNOWN,
]


def html_to_lines(payload: str) -> list[str]:
    """
    Strip markup and return the page's non-empty text lines.

    Inner whitespace is collapsed; the original spelling and case are kept so
    station names pass through unchanged.
    """
    soup = BeautifulSoup(payload, "html.parser")
    text = soup.get_text("\n")
    return [" ".join(line.split()) for line in text.splitlines() if line.strip()]


def detect_status(normalized_line: str) -> tuple[StatusFlag, int | None]:
    """
    Classify one normalised text line.

    Returns:
        The status flag (UNKNOWN if the line carries none) and the reported
        delay in minutes for "Kasni N min." lines.

    Examples:
        >>> detect_status("kasni 12 min.")
        (<StatusFlag.LATE: 'late'>, 12)
        >>> detect_status("zbog radova na pruzi")
        (<StatusFlag.RAILWAY_WORKS: 'railway_works'>, None)
    """
    if "radov" in normalized_line:
        return StatusFlag.RAILWAY_WORKS, None
    if "zavrsio" in normalized_line and "voznj" in normalized_line:
        late = _LATE_RE.search(normalized_line)
        return StatusFlag.FINISHED, int(late.group(1)) if late else None
    if late := _LATE_RE.search(normalized_line):
        return StatusFlag.LATE, int(late.group(1))
    if "redovit" in normalized_line:
        return StatusFlag.ON_TIME, None
    if "ceka polazak" in normalized_line:
        return StatusFlag.WAITING_FOR_DEPARTURE, None
    return StatusFlag.UNKNOWN, None


def _is_keyword_line(normalized_line: str) -> bool:
    return bool(
        _STATION_RE.match(normalized_line)
        or _EVENT_RE.match(normalized_line)
        or _TRAIN_RE.search(normalized_line)
        or detect_status(normalized_line)[0] is not StatusFlag.UNKNOWN
    )


def _merge_status(
    current: tuple[StatusFlag, int | None],
    found: tuple[StatusFlag, int | None],
) -> tuple[StatusFlag, int | None]:
    flag, minutes = current
    new_flag, new_minutes = found
    if _STATUS_PRIORITY.index(new_flag) < _STATUS_PRIORITY.index(flag):
        return new_flag, new_minutes if new_minutes is not None else minutes
    if minutes is None and new_minutes is not None:
        return flag, new_minutes
    return current


def _event_time(match: re.Match[str], tz: ZoneInfo) -> datetime:
    """Localise a matched "dd.mm.yy. u HH:MM" to UTC. Raises ValueError on impossible values."""
    day, month, year = int(match.group(2)), int(match.group(3)), int(match.group(4))
    if year < 100:
        year += 2000
    hour, minute = int(match.group(5)), int(match.group(6))
    local = datetime(year, month, day, hour, minute, tzinfo=tz)
    return local.astimezone(UTC)


def _split_blocks(lines: list[str]) -> tuple[list[str], list[list[str]]]:
    """Split lines into the page header and one list per "Kolodvor:" block."""
    header: list[str] = []
    blocks: list[list[str]] = []
    for line in lines:
        if _STATION_RE.match(normalize_text(line)):
            blocks.append([line])
        elif blocks:
            blocks[-1].append(line)
        else:
            header.append(line)
    return header, blocks


def _parse_block(
    block: list[str],
    route_number: int,
    fetched_at: datetime,
    tz: ZoneInfo,
    default_status: tuple[StatusFlag, int | None],
) -> LiveObservation:
    """Turn one "Kolodvor:" block into an observation. Raises ParseError if malformed."""
    fragment = "\n".join(block)
    marker = re.match(r"^\s*kolodvor:\s*", block[0], flags=re.IGNORECASE)
    station = block[0][marker.end() :].strip() if marker else ""
    rest = block[1:]
    if not station and rest and not _is_keyword_line(normalize_text(rest[0])):
        station, rest = rest[0].strip(), rest[1:]
    if not station:
        raise ParseError(fragment, "missing station")

    arrival: datetime | None = None
    departure: datetime | None = None
    status: tuple[StatusFlag, int | None] = (StatusFlag.UNKNOWN, None)
    for line in rest:
        normalized = normalize_text(line)
        if event := _EVENT_RE.match(normalized):
            try:
                instant = _event_time(event, tz)
            except ValueError as e:
                raise ParseError(fragment, f"invalid date or time: {e}") from e
            if event.group(1) == "dolazak":
                arrival = instant
            else:
                departure = instant
            continue
        status = _merge_status(status, detect_status(normalized))

    if status[0] is StatusFlag.UNKNOWN:
        status = default_status

    reference = departure or arrival or fetched_at
    return LiveObservation(
        route_number=route_number,
        observed_day=service_day(reference, tz),
        station_code=station,
        actual_arrival=arrival,
        actual_departure=departure,
        status_flag=status[0],
        reported_delay_minutes=status[1],
    )


def parse_status_page(payload: str, route_number: int, fetched_at: datetime, tz: ZoneInfo) -> ParseResult:
    """
    Parse a live status page into observations.

    Malformed station blocks are recorded as ParseError and skipped; the
    remaining blocks still produce observations. A page with no recognisable
    content at all yields a single ParseError and no observations.

    Args:
        payload: Raw page body
        route_number: Route number the page was requested for, used when the
            page does not name the train itself
        fetched_at: Time of the fetch, the observed day falls back to it
        tz: Network time zone the page's wall-clock times are in

    Returns:
        ParseResult with observations in page order and any parse errors
    """
    lines = html_to_lines(payload)
    header, blocks = _split_blocks(lines)

    number = route_number
    train_named = False
    page_status: tuple[StatusFlag, int | None] = (StatusFlag.UNKNOWN, None)
    for line in header:
        normalized = normalize_text(line)
        if train := _TRAIN_RE.search(normalized):
            number = int(train.group(1))
            train_named = True
        page_status = _merge_status(page_status, detect_status(normalized))

    if not blocks:
        if not train_named and page_status[0] is StatusFlag.UNKNOWN:
            return ParseResult(errors=[ParseError(payload, "no recognisable content")])
        return ParseResult()

    result = ParseResult()
    for block in blocks:
        try:
            result.observations.append(_parse_block(block, number, fetched_at, tz, page_status))
        except ParseError as e:
            result.errors.append(e)
    return result
