"""Scrape cycle report schema."""

import enum
from datetime import datetime

from pydantic import BaseModel, Field, computed_field

from delay_stats.core.errors import AnomalyKind


class RouteOutcome(str, enum.Enum):
    """Terminal state of one route run within a cycle."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CycleReport(BaseModel):
    """
    Summary of one scrape cycle.

    Route outcomes are keyed by route run ("<route_id>@<expected start ISO>").
    Anomalies are counted per kind; a route can succeed and still carry
    anomalies for individual observations.
    """

    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = False
    timed_out: bool = False
    route_outcomes: dict[str, RouteOutcome] = Field(default_factory=dict)
    anomalies: dict[AnomalyKind, int] = Field(default_factory=dict)
    updates_applied: int = 0
    notifications_sent: int = 0

    def record_anomaly(self, kind: AnomalyKind, count: int = 1) -> None:
        if count:
            self.anomalies[kind] = self.anomalies.get(kind, 0) + count

    def _count(self, outcome: RouteOutcome) -> int:
        return sum(1 for value in self.route_outcomes.values() if value is outcome)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def routes_succeeded(self) -> int:
        return self._count(RouteOutcome.SUCCEEDED)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def routes_failed(self) -> int:
        return self._count(RouteOutcome.FAILED)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def routes_cancelled(self) -> int:
        return self._count(RouteOutcome.CANCELLED)

    @property
    def anomaly_total(self) -> int:
        return sum(self.anomalies.values())
