"""
Delay statistics per station, line and region.

Buckets are keyed by (dimension, group key, service day) and hold a sample
count, the sum of delays and the maximum delay. They are maintained
incrementally inside the same transaction as the stop updates that cause
them, and can always be rebuilt from the stops table.
"""

from collections import defaultdict
from collections.abc import Iterable
from datetime import date
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from delay_stats.core.config import settings
from delay_stats.core.telemetry import service_span
from delay_stats.helpers.delay_math import day_bounds_utc, service_day, stop_delay_seconds
from delay_stats.models.delay_stat import DelayStat, StatDimension
from delay_stats.models.timetable import Route, Stop
from delay_stats.schemas.observations import AppliedChange
from delay_stats.schemas.stats import DelayStatsEntry, DelayStatsFilter, DelayStatsResponse

logger = structlog.get_logger(__name__)

BucketKey = tuple[StatDimension, str, date]


# ==================== Pure Helper Functions ====================


def bucket_keys(
    station_id: str,
    route_number: int,
    day: date,
    region: str,
) -> list[BucketKey]:
    """
    Buckets a single stop delay sample belongs to.

    Example:
        >>> bucket_keys("72480", 2102, date(2026, 3, 1), "HR")[1]
        (<StatDimension.LINE: 'line'>, '2102', datetime.date(2026, 3, 1))
    """
    return [
        (StatDimension.STATION, station_id, day),
        (StatDimension.LINE, str(route_number), day),
        (StatDimension.REGION, region, day),
    ]


def apply_sample_delta(bucket: DelayStat, old: int | None, new: int | None) -> bool:
    """
    Fold one sample replacement into a bucket's count, sum and maximum.

    Args:
        bucket: Bucket to update in place
        old: Previous delay of the stop in seconds (None if it had none)
        new: New delay of the stop in seconds (None if it has none)

    Returns:
        True if the maximum can no longer be derived incrementally (the old
        value was the maximum and it shrank or disappeared) and must be
        recomputed from stop data
    """
    if old is None and new is None:
        return False

    if old is None:
        bucket.sample_count += 1
    elif new is None:
        bucket.sample_count -= 1

    bucket.delay_sum_seconds += (new or 0) - (old or 0)

    if new is not None and (bucket.delay_max_seconds is None or new >= bucket.delay_max_seconds):
        bucket.delay_max_seconds = new
        return False
    return old is not None and bucket.delay_max_seconds is not None and old >= bucket.delay_max_seconds


def fold_samples(samples: Iterable[tuple[BucketKey, int]]) -> dict[BucketKey, tuple[int, int, int]]:
    """Reduce (bucket, delay) samples to (count, sum, max) per bucket."""
    folded: dict[BucketKey, tuple[int, int, int]] = {}
    for key, delay in samples:
        count, total, maximum = folded.get(key, (0, 0, delay))
        folded[key] = (count + 1, total + delay, max(maximum, delay))
    return folded


class DelayAggregator:
    """Maintains and queries the delay_stats buckets."""

    def __init__(
        self,
        db: AsyncSession,
        tz: ZoneInfo | None = None,
        region: str | None = None,
    ) -> None:
        """
        Initialize the aggregator.

        Args:
            db: Database session; writes join the caller's transaction
            tz: Time zone defining service days, defaults to TIMEZONE
            region: Region bucket key, defaults to NETWORK_REGION
        """
        self.db = db
        self.tz = tz or settings.tzinfo
        self.region = region or settings.NETWORK_REGION

    # ==================== Incremental updates ====================

    async def apply_changes(self, changes: list[AppliedChange]) -> int:
        """
        Fold committed-to-be stop delay changes into their buckets.

        Must run in the same transaction as the stop updates. Buckets are
        locked in sorted key order so concurrent route transactions touching
        the same station or region cannot deadlock.

        Args:
            changes: Delay changes produced by the upsert writer

        Returns:
            Number of buckets touched
        """
        deltas: dict[BucketKey, list[tuple[int | None, int | None]]] = defaultdict(list)
        for change in changes:
            day = service_day(change.route_expected_start_time, self.tz)
            for key in bucket_keys(change.station_id, change.route_number, day, self.region):
                deltas[key].append((change.old_delay_seconds, change.new_delay_seconds))

        for key in sorted(deltas, key=lambda k: (k[0].value, k[1], k[2])):
            bucket = await self._lock_or_create_bucket(key)
            needs_recompute = False
            for old, new in deltas[key]:
                needs_recompute = apply_sample_delta(bucket, old, new) or needs_recompute
            if needs_recompute:
                bucket.delay_max_seconds = await self._recompute_max(key)
                logger.debug(
                    "delay_bucket_max_recomputed",
                    dimension=key[0].value,
                    group_key=key[1],
                    day=key[2].isoformat(),
                    delay_max_seconds=bucket.delay_max_seconds,
                )

        if deltas:
            await self.db.flush()
        return len(deltas)

    async def _select_bucket(self, key: BucketKey) -> DelayStat | None:
        dimension, group_key, day = key
        result = await self.db.execute(
            select(DelayStat)
            .where(
                DelayStat.dimension == dimension,
                DelayStat.group_key == group_key,
                DelayStat.window_day == day,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _lock_or_create_bucket(self, key: BucketKey) -> DelayStat:
        """Lock an existing bucket row, or insert it inside a savepoint."""
        bucket = await self._select_bucket(key)
        if bucket is not None:
            return bucket

        dimension, group_key, day = key
        try:
            async with self.db.begin_nested():
                bucket = DelayStat(
                    dimension=dimension,
                    group_key=group_key,
                    window_day=day,
                    sample_count=0,
                    delay_sum_seconds=0,
                    delay_max_seconds=None,
                )
                self.db.add(bucket)
        except IntegrityError:
            # Another route transaction inserted the bucket first
            logger.debug("delay_bucket_insert_race", dimension=dimension.value, group_key=group_key)
            bucket = await self._select_bucket(key)
            if bucket is None:
                raise
        return bucket

    async def _recompute_max(self, key: BucketKey) -> int | None:
        samples = await self._collect_samples(key[2], key)
        folded = fold_samples(samples)
        return folded[key][2] if key in folded else None

    # ==================== Rebuild ====================

    async def _collect_samples(self, day: date, only: BucketKey | None = None) -> list[tuple[BucketKey, int]]:
        """
        Delay samples of every stop of runs starting on a service day.

        Args:
            day: Service day
            only: Restrict to the samples of one bucket

        Returns:
            (bucket key, delay seconds) pairs, one per stop and dimension
        """
        start, end = day_bounds_utc(day, self.tz)
        query = (
            select(Stop, Route.route_number)
            .join(
                Route,
                (Route.id == Stop.route_id) & (Route.expected_start_time == Stop.route_expected_start_time),
            )
            .where(
                Route.expected_start_time >= start,
                Route.expected_start_time < end,
                (Stop.real_arrival.is_not(None)) | (Stop.real_departure.is_not(None)),
            )
        )
        if only is not None:
            dimension, group_key, _ = only
            if dimension is StatDimension.STATION:
                query = query.where(Stop.station_id == group_key)
            elif dimension is StatDimension.LINE:
                query = query.where(Route.route_number == int(group_key))
            elif group_key != self.region:
                return []

        result = await self.db.execute(query)
        samples: list[tuple[BucketKey, int]] = []
        for stop, route_number in result.all():
            delay = stop_delay_seconds(stop)
            if delay is None:
                continue
            for key in bucket_keys(stop.station_id, route_number, day, self.region):
                if only is None or key == only:
                    samples.append((key, delay))
        return samples

    async def rebuild_day(self, day: date) -> int:
        """
        Recompute every bucket of a service day from stop data.

        Existing buckets of the day are replaced. Runs in the caller's
        transaction.

        Args:
            day: Service day to rebuild

        Returns:
            Number of buckets written
        """
        with service_span("delay_stats.rebuild_day", "delay-aggregator", **{"delay_stats.day": day.isoformat()}):
            await self.db.flush()
            folded = fold_samples(await self._collect_samples(day))
            await self.db.execute(delete(DelayStat).where(DelayStat.window_day == day))
            for (dimension, group_key, window_day), (count, total, maximum) in sorted(
                folded.items(), key=lambda item: (item[0][0].value, item[0][1])
            ):
                self.db.add(
                    DelayStat(
                        dimension=dimension,
                        group_key=group_key,
                        window_day=window_day,
                        sample_count=count,
                        delay_sum_seconds=total,
                        delay_max_seconds=maximum,
                    )
                )
            await self.db.flush()
            logger.info("delay_stats_rebuilt", day=day.isoformat(), buckets=len(folded))
            return len(folded)

    # ==================== Queries ====================

    async def get_delay_stats(self, stats_filter: DelayStatsFilter) -> DelayStatsResponse:
        """
        Aggregate delay statistics for a dimension over a window of service days.

        Args:
            stats_filter: Dimension, optional group key and inclusive day window

        Returns:
            One entry per group key with sample count, mean and max delay in minutes
        """
        query = (
            select(
                DelayStat.group_key,
                func.sum(DelayStat.sample_count),
                func.sum(DelayStat.delay_sum_seconds),
                func.max(DelayStat.delay_max_seconds),
            )
            .where(
                DelayStat.dimension == stats_filter.dimension,
                DelayStat.window_day >= stats_filter.start_day,
                DelayStat.window_day <= stats_filter.end_day,
            )
            .group_by(DelayStat.group_key)
            .order_by(DelayStat.group_key)
        )
        if stats_filter.group_key is not None:
            query = query.where(DelayStat.group_key == stats_filter.group_key)

        result = await self.db.execute(query)
        entries = []
        for group_key, count, total, maximum in result.all():
            count = int(count or 0)
            entries.append(
                DelayStatsEntry(
                    group_key=group_key,
                    sample_count=count,
                    mean_delay_minutes=round(int(total) / count / 60, 2) if count else None,
                    max_delay_minutes=round(int(maximum) / 60, 2) if count and maximum is not None else None,
                )
            )

        return DelayStatsResponse(
            dimension=stats_filter.dimension,
            start_day=stats_filter.start_day,
            end_day=stats_filter.end_day,
            entries=entries,
        )
