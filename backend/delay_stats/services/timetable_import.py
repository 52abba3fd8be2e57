"""
Daily timetable import from the HZPP planner API.

Stations come from getStops.php, the day's route runs with their stops from
getRoutes.php. Rows already present are left untouched so real times
collected by the scrape cycle are never overwritten.
"""

from datetime import date
from typing import Any, TypedDict
from zoneinfo import ZoneInfo

import httpx
import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from delay_stats.core.config import settings
from delay_stats.core.telemetry import service_span
from delay_stats.helpers.hzpp_time import planner_time_to_utc
from delay_stats.models.timetable import Route, RouteType, Station, Stop
from delay_stats.schemas.hzpp import HzppRoute, HzppStation

logger = structlog.get_logger(__name__)


class ImportTimetableResult(TypedDict):
    """Counts reported by a timetable import."""

    day: str
    stations_added: int
    routes_added: int
    routes_skipped: int
    stops_added: int


# ==================== Pure Helper Functions ====================


def parse_accessibility_flag(value: int, field: str) -> bool:
    """
    Decode the planner's yes/no codes: 1 is yes, 0 and 2 are no.

    Raises:
        ValueError: For any other code
    """
    if value == 1:
        return True
    if value in (0, 2):
        return False
    msg = f"Unexpected {field} code {value}"
    raise ValueError(msg)


def parse_route_type(value: int) -> RouteType:
    """
    Decode the planner's route type: 2 is a train, 3 a bus.

    Raises:
        ValueError: For any other code
    """
    match value:
        case 2:
            return RouteType.TRAIN
        case 3:
            return RouteType.BUS
    msg = f"Unexpected route_type code {value}"
    raise ValueError(msg)


def build_route(hzpp_route: HzppRoute, day: date, tz: ZoneInfo) -> Route:
    """
    Convert a planner route into a Route run with its stops.

    The run starts at the first stop's departure and ends at the last stop's
    arrival; source and destination are taken from the same stops because the
    planner's own header fields are unreliable.

    Raises:
        ValueError: If the route has no stops or carries invalid codes or times
    """
    if not hzpp_route.stops:
        msg = f"Route {hzpp_route.route_id} has no stops"
        raise ValueError(msg)

    ordered = sorted(hzpp_route.stops, key=lambda s: s.sequence)
    first, last = ordered[0], ordered[-1]
    expected_start = planner_time_to_utc(day, first.departure_time, tz)
    expected_end = planner_time_to_utc(day, last.arrival_time, tz)

    route = Route(
        id=hzpp_route.route_id,
        expected_start_time=expected_start,
        route_number=hzpp_route.route_number,
        source=first.stop_name,
        destination=last.stop_name,
        bikes_allowed=parse_accessibility_flag(hzpp_route.bikes_allowed, "bikes_allowed"),
        wheelchair_accessible=parse_accessibility_flag(hzpp_route.wheelchair_accessible, "wheelchair_accessible"),
        route_type=parse_route_type(hzpp_route.route_type),
        expected_end_time=expected_end,
    )
    route.stops = [
        Stop(
            route_id=hzpp_route.route_id,
            route_expected_start_time=expected_start,
            sequence=stop.sequence,
            station_id=stop.stop_id,
            expected_arrival=planner_time_to_utc(day, stop.arrival_time, tz),
            expected_departure=planner_time_to_utc(day, stop.departure_time, tz),
        )
        for stop in ordered
    ]
    return route


def station_from_stop(stop_id: str, name: str, latitude: float, longitude: float) -> Station:
    """Placeholder station for a stop the station list does not know."""
    code = int(stop_id) if stop_id.isdigit() else 0
    return Station(id=stop_id, code=code, name=name, latitude=latitude, longitude=longitude)


class TimetableImporter:
    """Fetches the planner timetable and inserts what is missing."""

    def __init__(
        self,
        db: AsyncSession,
        http_client: httpx.AsyncClient,
        *,
        planner_url: str | None = None,
        tz: ZoneInfo | None = None,
    ) -> None:
        """
        Initialize the importer.

        Args:
            db: Database session; import_day commits it
            http_client: Shared httpx client
            planner_url: Planner API base URL, defaults to HZPP_PLANNER_URL
            tz: Time zone of planner times, defaults to TIMEZONE
        """
        self.db = db
        self.http_client = http_client
        self.planner_url = (planner_url or settings.HZPP_PLANNER_URL).rstrip("/")
        self.tz = tz or settings.tzinfo

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> list[Any]:
        response = await self.http_client.get(
            f"{self.planner_url}/{path}",
            params=params,
            timeout=settings.FETCH_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, list):
            msg = f"Expected a JSON list from {path}, got {type(data).__name__}"
            raise ValueError(msg)
        return data

    async def fetch_stations(self) -> list[HzppStation]:
        """Fetch the station list. Invalid entries are logged and dropped."""
        stations = []
        for raw in await self._get_json("getStops.php"):
            try:
                stations.append(HzppStation.model_validate(raw))
            except ValidationError as e:
                logger.warning("planner_station_invalid", error=str(e))
        return stations

    async def fetch_routes(self, day: date) -> list[HzppRoute]:
        """Fetch the routes running on a day. Invalid entries are logged and dropped."""
        routes = []
        for raw in await self._get_json("getRoutes.php", {"date": day.strftime("%Y%m%d")}):
            try:
                routes.append(HzppRoute.model_validate(raw))
            except ValidationError as e:
                logger.warning("planner_route_invalid", error=str(e))
        return routes

    async def _existing_station_ids(self, ids: set[str]) -> set[str]:
        if not ids:
            return set()
        result = await self.db.execute(select(Station.id).where(Station.id.in_(ids)))
        return set(result.scalars().all())

    async def _existing_route_keys(self, routes: list[Route]) -> set[tuple[int, str]]:
        """(route number, ISO expected start) of the given runs that are already stored."""
        if not routes:
            return set()
        starts = [r.expected_start_time for r in routes]
        result = await self.db.execute(
            select(Route.route_number, Route.expected_start_time).where(
                Route.route_number.in_({r.route_number for r in routes}),
                Route.expected_start_time >= min(starts),
                Route.expected_start_time <= max(starts),
            )
        )
        return {(number, start.isoformat()) for number, start in result.all()}

    async def import_day(self, day: date) -> ImportTimetableResult:
        """
        Import stations and the route runs of a service day.

        Args:
            day: Service day to import

        Returns:
            Counts of inserted and skipped rows
        """
        with service_span("timetable.import_day", "hzpp-planner", **{"timetable.day": day.isoformat()}) as span:
            hzpp_stations = await self.fetch_stations()
            hzpp_routes = await self.fetch_routes(day)
            logger.info(
                "planner_data_fetched",
                day=day.isoformat(),
                stations=len(hzpp_stations),
                routes=len(hzpp_routes),
            )

            # Stations: from the list first, then any stop the list does not know
            candidates: dict[str, Station] = {}
            for s in hzpp_stations:
                candidates.setdefault(
                    s.stop_id,
                    Station(
                        id=s.stop_id,
                        code=s.stop_code,
                        name=s.stop_name,
                        latitude=s.stop_lat,
                        longitude=s.stop_lng,
                    ),
                )
            for r in hzpp_routes:
                for stop in r.stops:
                    if stop.stop_id not in candidates:
                        candidates[stop.stop_id] = station_from_stop(
                            stop.stop_id, stop.stop_name, stop.latitude, stop.longitude
                        )

            existing_stations = await self._existing_station_ids(set(candidates))
            new_stations = [st for sid, st in candidates.items() if sid not in existing_stations]
            self.db.add_all(new_stations)

            # Routes: convert, dedupe within the payload, skip runs already stored
            routes: list[Route] = []
            skipped = 0
            seen: set[tuple[int, str]] = set()
            for hzpp_route in hzpp_routes:
                try:
                    route = build_route(hzpp_route, day, self.tz)
                except ValueError as e:
                    logger.warning(
                        "planner_route_skipped",
                        route_id=hzpp_route.route_id,
                        route_number=hzpp_route.route_number,
                        reason=str(e),
                    )
                    skipped += 1
                    continue
                key = (route.route_number, route.expected_start_time.isoformat())
                if key in seen:
                    skipped += 1
                    continue
                seen.add(key)
                routes.append(route)

            existing_routes = await self._existing_route_keys(routes)
            new_routes = [
                r for r in routes if (r.route_number, r.expected_start_time.isoformat()) not in existing_routes
            ]
            self.db.add_all(new_routes)
            await self.db.commit()

            result: ImportTimetableResult = {
                "day": day.isoformat(),
                "stations_added": len(new_stations),
                "routes_added": len(new_routes),
                "routes_skipped": skipped,
                "stops_added": sum(len(r.stops) for r in new_routes),
            }
            span.set_attribute("timetable.routes_added", result["routes_added"])
            span.set_attribute("timetable.stations_added", result["stations_added"])
            logger.info("timetable_imported", **result)
            return result
