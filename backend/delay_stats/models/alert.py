"""Route favourites and the notifications raised for them."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from delay_stats.models.base import BaseModel, UTCDateTime


class AlertReason(str, enum.Enum):
    """Condition that triggered a notification."""

    DELAY = "delay"
    RAILWAY_WORKS = "railway_works"


class Favorite(BaseModel):
    """A user's subscription to a route number."""

    __tablename__ = "favorites"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    route_number: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    alert_on_railway_works: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # None disables delay alerts
    alert_on_delay_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "route_number", name="uq_favorites_user_route"),
        CheckConstraint(
            "alert_on_delay_minutes IS NULL OR alert_on_delay_minutes >= 0",
            name="ck_favorites_delay_threshold",
        ),
    )

    def __repr__(self) -> str:
        """String representation of the favourite."""
        return f"<Favorite(user_id={self.user_id}, route_number={self.route_number})>"


class Notification(BaseModel):
    """Audit log of emitted alerts."""

    __tablename__ = "notifications"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    route_id: Mapped[str] = mapped_column(String(255), nullable=False)
    route_expected_start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    reason: Mapped[AlertReason] = mapped_column(
        Enum(
            AlertReason,
            name="alert_reason",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    # Delay in minutes for delay alerts; None for railway works
    magnitude: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        ForeignKeyConstraint(
            ["route_expected_start_time", "route_id"],
            ["routes.expected_start_time", "routes.id"],
            ondelete="CASCADE",
        ),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of the notification."""
        return f"<Notification(id={self.id}, user_id={self.user_id}, reason={self.reason})>"
