"""Alert evaluation for favourited routes after a route transaction commits."""

import uuid
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from delay_stats.core.config import settings
from delay_stats.core.redis import RedisClientProtocol
from delay_stats.core.telemetry import service_span
from delay_stats.helpers.delay_math import delay_minutes, service_day
from delay_stats.models.alert import AlertReason, Favorite, Notification
from delay_stats.schemas.observations import AppliedChange

logger = structlog.get_logger(__name__)


# ==================== Pure Helper Functions ====================
# Pure functions with no side effects for easy testing


def build_dedupe_key(
    user_id: uuid.UUID,
    route_id: str,
    route_expected_start_time: datetime,
    reason: AlertReason,
    day: str,
) -> str:
    """
    Redis key guarding one notification per (user, route run, condition, day).

    Example:
        >>> start = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)
        >>> build_dedupe_key(uuid.UUID(int=1), "r1", start, AlertReason.DELAY, "2026-03-01")
        'alert:00000000-0000-0000-0000-000000000001:r1:2026-03-01T06:00:00+00:00:delay:2026-03-01'
    """
    return f"alert:{user_id}:{route_id}:{route_expected_start_time.isoformat()}:{reason.value}:{day}"


def build_works_flag_key(route_id: str, route_expected_start_time: datetime) -> str:
    """Redis key remembering that a route run is currently flagged with railway works."""
    return f"railway_works:{route_id}:{route_expected_start_time.isoformat()}"


def worst_new_delay(changes: list[AppliedChange]) -> int | None:
    """
    Largest new delay among changes that set or changed a stop delay.

    Returns:
        Delay in seconds, or None if no change carries a new delay
    """
    delays = [
        c.new_delay_seconds
        for c in changes
        if c.new_delay_seconds is not None and c.new_delay_seconds != c.old_delay_seconds
    ]
    return max(delays) if delays else None


def delay_threshold_met(favorite: Favorite, minutes: int) -> bool:
    """Check a favourite's delay threshold. A favourite without a threshold never matches."""
    return favorite.alert_on_delay_minutes is not None and minutes >= favorite.alert_on_delay_minutes


class AlertEvaluator:
    """Raises delay and railway-works notifications for route favourites."""

    def __init__(
        self,
        db: AsyncSession,
        redis_client: RedisClientProtocol,
        tz: ZoneInfo | None = None,
        cooldown_minutes: int | None = None,
    ) -> None:
        """
        Initialize the alert evaluator.

        Args:
            db: Database session; notifications are added to its transaction
            redis_client: Redis client for deduplication and railway works state
            tz: Network time zone defining the dedupe day, defaults to TIMEZONE
            cooldown_minutes: Dedupe key lifetime, defaults to ALERT_COOLDOWN_MINUTES
        """
        self.db = db
        self.redis_client = redis_client
        self.tz = tz or settings.tzinfo
        self.cooldown_seconds = (cooldown_minutes or settings.ALERT_COOLDOWN_MINUTES) * 60
        # Dedupe keys set by this evaluator; released if its transaction does not commit
        self.acquired_keys: list[str] = []

    async def release_dedupe_keys(self) -> None:
        """
        Drop the dedupe keys this evaluator set.

        Called when the notifications it added were rolled back, so the next
        qualifying update can notify again the same day.
        """
        keys, self.acquired_keys = self.acquired_keys, []
        if keys:
            await self.redis_client.delete(*keys)
            logger.warning("notification_dedupe_released", keys=len(keys))

    async def _favorites_for(self, route_number: int) -> list[Favorite]:
        result = await self.db.execute(
            select(Favorite).where(Favorite.route_number == route_number).order_by(Favorite.user_id)
        )
        return list(result.scalars().all())

    async def _railway_works_is_new(self, route_id: str, route_expected_start_time: datetime, flagged: bool) -> bool:
        """Track the railway works flag of a run; True only when it turns on."""
        key = build_works_flag_key(route_id, route_expected_start_time)
        if not flagged:
            await self.redis_client.delete(key)
            return False
        # SET NX succeeds only for the first cycle that sees the flag
        was_set = await self.redis_client.set(key, "1", ex=self.cooldown_seconds, nx=True)
        return bool(was_set)

    async def _notify(
        self,
        favorite: Favorite,
        route_id: str,
        route_expected_start_time: datetime,
        reason: AlertReason,
        magnitude: int | None,
        now: datetime,
    ) -> bool:
        """Emit one notification unless an identical one was already sent today."""
        day = service_day(now, self.tz).isoformat()
        key = build_dedupe_key(favorite.user_id, route_id, route_expected_start_time, reason, day)
        acquired = await self.redis_client.set(key, now.isoformat(), ex=self.cooldown_seconds, nx=True)
        if not acquired:
            logger.debug(
                "notification_suppressed_duplicate",
                user_id=str(favorite.user_id),
                route_id=route_id,
                reason=reason.value,
            )
            return False
        self.acquired_keys.append(key)

        self.db.add(
            Notification(
                user_id=favorite.user_id,
                route_id=route_id,
                route_expected_start_time=route_expected_start_time,
                reason=reason,
                magnitude=magnitude,
            )
        )
        logger.info(
            "notification_emitted",
            user_id=str(favorite.user_id),
            route_id=route_id,
            route_number=favorite.route_number,
            route_expected_start_time=route_expected_start_time.isoformat(),
            reason=reason.value,
            magnitude=magnitude,
        )
        return True

    async def evaluate(
        self,
        route_id: str,
        route_expected_start_time: datetime,
        route_number: int,
        changes: list[AppliedChange],
        railway_works: bool = False,
    ) -> int:
        """
        Evaluate a committed route run update against its favourites.

        Delay alerts fire when the worst new stop delay reaches a favourite's
        threshold. Railway works alerts fire when the run is newly flagged.
        Each (user, route run, condition) notifies at most once per service day.

        Args:
            route_id: Operator route id
            route_expected_start_time: Expected start of the run
            route_number: Public train number favourites are keyed by
            changes: Delay changes committed for this run
            railway_works: Whether the latest observations report railway works

        Returns:
            Number of notifications emitted
        """
        with service_span(
            "alert.evaluate",
            "alert-evaluator",
            **{"alert.route_id": route_id, "alert.route_number": route_number},
        ) as span:
            now = datetime.now(UTC)
            new_works = await self._railway_works_is_new(route_id, route_expected_start_time, railway_works)
            worst = worst_new_delay(changes)
            if worst is None and not new_works:
                span.set_attribute("alert.notifications", 0)
                return 0

            favorites = await self._favorites_for(route_number)
            sent = 0
            for favorite in favorites:
                if worst is not None and delay_threshold_met(favorite, delay_minutes(worst)):
                    sent += await self._notify(
                        favorite,
                        route_id,
                        route_expected_start_time,
                        AlertReason.DELAY,
                        delay_minutes(worst),
                        now,
                    )
                if new_works and favorite.alert_on_railway_works:
                    sent += await self._notify(
                        favorite,
                        route_id,
                        route_expected_start_time,
                        AlertReason.RAILWAY_WORKS,
                        None,
                        now,
                    )

            if sent:
                await self.db.flush()
            span.set_attribute("alert.favorites_checked", len(favorites))
            span.set_attribute("alert.notifications", sent)
            return sent
