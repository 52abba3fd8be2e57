"""Database models for the HZPP delay statistics engine."""

# Import all models to register them with SQLAlchemy metadata
from delay_stats.models.alert import AlertReason, Favorite, Notification
from delay_stats.models.base import Base, BaseModel, UTCDateTime
from delay_stats.models.delay_stat import DelayStat, StatDimension
from delay_stats.models.timetable import Route, RouteType, Station, Stop

__all__ = [
    # Base
    "Base",
    "BaseModel",
    "UTCDateTime",
    # Timetable models
    "Station",
    "Route",
    "RouteType",
    "Stop",
    # Statistics models
    "DelayStat",
    "StatDimension",
    # Alert models
    "Favorite",
    "Notification",
    "AlertReason",
]
