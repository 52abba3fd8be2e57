"""Canonical timetable models: stations, scheduled route runs and their stops."""

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Enum,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    SmallInteger,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from delay_stats.models.base import Base, UTCDateTime


class RouteType(str, enum.Enum):
    """Vehicle type serving a route (HZPP replaces some trains by buses)."""

    TRAIN = "train"
    BUS = "bus"


class Station(Base):
    """Station reference data, created by the timetable import."""

    __tablename__ = "stations"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    code: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)

    def __repr__(self) -> str:
        """String representation of the station."""
        return f"<Station(id={self.id}, code={self.code}, name={self.name})>"


class Route(Base):
    """One scheduled run of a numbered train.

    The same route number runs on many days, so a run is identified by its
    number together with its expected start time.
    """

    __tablename__ = "routes"

    expected_start_time: Mapped[datetime] = mapped_column(UTCDateTime, primary_key=True)
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    route_number: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(255), nullable=False)
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    bikes_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    wheelchair_accessible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    route_type: Mapped[RouteType] = mapped_column(
        Enum(
            RouteType,
            name="route_type",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=RouteType.TRAIN,
    )
    real_start_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    real_end_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expected_end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    stops: Mapped[list["Stop"]] = relationship(
        back_populates="route",
        order_by="Stop.sequence",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("route_number", "expected_start_time", name="uq_route_number_start"),
        Index("ix_routes_number_start", "route_number", "expected_start_time"),
    )

    def __repr__(self) -> str:
        """String representation of the route run."""
        return f"<Route(id={self.id}, number={self.route_number}, expected_start={self.expected_start_time})>"


class Stop(Base):
    """One call of a route run at a station."""

    __tablename__ = "stops"

    route_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    route_expected_start_time: Mapped[datetime] = mapped_column(UTCDateTime, primary_key=True)
    sequence: Mapped[int] = mapped_column(SmallInteger, primary_key=True)
    station_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("stations.id"),
        nullable=False,
        index=True,
    )
    real_arrival: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expected_arrival: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    real_departure: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expected_departure: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    route: Mapped[Route] = relationship(back_populates="stops")
    station: Mapped[Station] = relationship(lazy="joined")

    __table_args__ = (
        ForeignKeyConstraint(
            ["route_expected_start_time", "route_id"],
            ["routes.expected_start_time", "routes.id"],
            ondelete="CASCADE",
        ),
    )

    def __repr__(self) -> str:
        """String representation of the stop."""
        return f"<Stop(route_id={self.route_id}, sequence={self.sequence}, station_id={self.station_id})>"
