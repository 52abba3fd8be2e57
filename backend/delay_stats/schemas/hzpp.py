"""Payload shapes of the HZPP planner API used by the timetable import."""

from pydantic import BaseModel, Field


class HzppStation(BaseModel):
    """Station record from getStops.php."""

    stop_id: str
    stop_code: int
    stop_name: str
    stop_lat: float
    stop_lng: float


class HzppStop(BaseModel):
    """One call of a planned route. Times are "HH:MM:SS" and may exceed 24 hours."""

    stop_id: str
    stop_name: str
    arrival_time: str
    departure_time: str
    latitude: float
    longitude: float
    sequence: int


class HzppCalendar(BaseModel):
    """Weekday validity flags of a planned route."""

    monday: int = 0
    tuesday: int = 0
    wednesday: int = 0
    thursday: int = 0
    friday: int = 0
    saturday: int = 0
    sunday: int = 0


class HzppRoute(BaseModel):
    """
    Route record from getRoutes.php.

    The top-level arrival and departure times are unreliable; the import uses
    the first and last stop instead. Accessibility flags use 1 for yes and
    0 or 2 for no; route_type 2 is a train and 3 a bus.
    """

    route_id: str
    route_number: int
    route_src: str = ""
    route_desc: str = ""
    arrival_time: str | None = None
    departure_time: str | None = None
    bikes_allowed: int
    wheelchair_accessible: int
    route_type: int
    stops: list[HzppStop] = Field(default_factory=list)
    calendar: list[HzppCalendar] = Field(default_factory=list)
