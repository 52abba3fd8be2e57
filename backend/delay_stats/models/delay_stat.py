"""Aggregated delay statistics."""

import enum
from datetime import date

from sqlalchemy import BigInteger, Date, Enum, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from delay_stats.models.base import BaseModel


class StatDimension(str, enum.Enum):
    """Grouping a delay bucket is keyed by."""

    STATION = "station"
    LINE = "line"
    REGION = "region"


class DelayStat(BaseModel):
    """
    One delay bucket: all stop delays for a grouping key on a service day.

    Derived data. Every row can be recomputed from the stops table, see
    DelayAggregator.rebuild_day.
    """

    __tablename__ = "delay_stats"

    dimension: Mapped[StatDimension] = mapped_column(
        Enum(
            StatDimension,
            name="stat_dimension",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    group_key: Mapped[str] = mapped_column(String(255), nullable=False)
    window_day: Mapped[date] = mapped_column(Date, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delay_sum_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    delay_max_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("dimension", "group_key", "window_day", name="uq_delay_stats_bucket"),
        Index("ix_delay_stats_dimension_day", "dimension", "window_day"),
    )

    def __repr__(self) -> str:
        """String representation of the delay bucket."""
        return (
            f"<DelayStat(dimension={self.dimension}, key={self.group_key}, "
            f"day={self.window_day}, count={self.sample_count})>"
        )
