"""Tests for delay and railway works alerts on favourited routes."""

import uuid
from zoneinfo import ZoneInfo

import pytest
from delay_stats.models.alert import AlertReason, Favorite, Notification
from delay_stats.schemas.observations import AppliedChange
from delay_stats.services.alert_evaluator import (
    AlertEvaluator,
    build_dedupe_key,
    build_works_flag_key,
    delay_threshold_met,
    worst_new_delay,
)
from freezegun import freeze_time
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tests.helpers.fake_redis import FakeRedis
from tests.helpers.timetable import BASE_START, make_route, make_stations, seed

TZ = ZoneInfo("Europe/Zagreb")
ROUTE_ID = "r-2500"
ALICE = uuid.UUID("11111111-1111-1111-1111-111111111111")
BOB = uuid.UUID("22222222-2222-2222-2222-222222222222")


def change(new: int | None, old: int | None = None, sequence: int = 3) -> AppliedChange:
    return AppliedChange(
        route_id=ROUTE_ID,
        route_expected_start_time=BASE_START,
        route_number=2500,
        sequence=sequence,
        station_id="72300",
        old_delay_seconds=old,
        new_delay_seconds=new,
    )


@pytest.fixture
async def seeded(session_factory: async_sessionmaker[AsyncSession]) -> async_sessionmaker[AsyncSession]:
    """Route 2500 with two favourites: Alice at 5 minutes with works alerts, Bob at 15 minutes."""
    await seed(
        session_factory,
        *make_stations(),
        make_route(ROUTE_ID, 2500),
        Favorite(user_id=ALICE, route_number=2500, alert_on_railway_works=True, alert_on_delay_minutes=5),
        Favorite(user_id=BOB, route_number=2500, alert_on_railway_works=False, alert_on_delay_minutes=15),
    )
    return session_factory


async def evaluate(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: FakeRedis,
    changes: list[AppliedChange],
    railway_works: bool = False,
) -> int:
    async with session_factory() as session, session.begin():
        return await AlertEvaluator(session, redis_client, TZ).evaluate(
            ROUTE_ID, BASE_START, 2500, changes, railway_works
        )


async def notifications(session_factory: async_sessionmaker[AsyncSession]) -> list[tuple[uuid.UUID, str, int | None]]:
    async with session_factory() as session:
        result = await session.execute(select(Notification).order_by(Notification.user_id, Notification.reason))
        return [(n.user_id, n.reason.value, n.magnitude) for n in result.scalars().all()]


# ==================== Pure helper Tests ====================


def test_build_keys() -> None:
    """Test dedupe and works keys identify the run and condition."""
    key = build_dedupe_key(ALICE, ROUTE_ID, BASE_START, AlertReason.RAILWAY_WORKS, "2026-03-02")
    assert key == f"alert:{ALICE}:r-2500:2026-03-02T06:00:00+00:00:railway_works:2026-03-02"
    assert build_works_flag_key(ROUTE_ID, BASE_START) == "railway_works:r-2500:2026-03-02T06:00:00+00:00"


def test_worst_new_delay_ignores_unchanged_and_cleared() -> None:
    """Test only set or changed delays count towards alerts."""
    assert worst_new_delay([change(300), change(900, old=900), change(None, old=1200), change(600, old=60)]) == 600
    assert worst_new_delay([change(None, old=60)]) is None
    assert worst_new_delay([]) is None


def test_delay_threshold_met() -> None:
    """Test the threshold is inclusive and absent thresholds never match."""
    favorite = Favorite(user_id=ALICE, route_number=2500, alert_on_delay_minutes=5)
    assert delay_threshold_met(favorite, 5)
    assert not delay_threshold_met(favorite, 4)

    favorite.alert_on_delay_minutes = None
    assert not delay_threshold_met(favorite, 120)


# ==================== evaluate Tests ====================


@freeze_time("2026-03-02 07:00:00")
async def test_delay_alert_for_favourites_over_threshold(
    seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis
) -> None:
    """Test a 10 minute delay alerts Alice (5 min) but not Bob (15 min)."""
    sent = await evaluate(seeded, fake_redis, [change(600)])

    assert sent == 1
    assert await notifications(seeded) == [(ALICE, "delay", 10)]
    key = build_dedupe_key(ALICE, ROUTE_ID, BASE_START, AlertReason.DELAY, "2026-03-02")
    assert key in fake_redis.store
    assert fake_redis.ttls[key] == 1440 * 60


@freeze_time("2026-03-02 07:00:00")
async def test_delay_alert_uses_worst_stop(seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis) -> None:
    """Test the largest new delay of the batch decides, reaching Bob too."""
    sent = await evaluate(seeded, fake_redis, [change(240, sequence=2), change(1000, sequence=3)])

    assert sent == 2
    assert await notifications(seeded) == [(ALICE, "delay", 16), (BOB, "delay", 16)]


@freeze_time("2026-03-02 07:00:00")
async def test_delay_alert_once_per_day(seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis) -> None:
    """Test a growing delay does not notify again on the same service day."""
    assert await evaluate(seeded, fake_redis, [change(420)]) == 1
    assert await evaluate(seeded, fake_redis, [change(540, old=420)]) == 0

    assert await notifications(seeded) == [(ALICE, "delay", 7)]


async def test_delay_alert_again_next_day(seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis) -> None:
    """Test the dedupe window is the local service day."""
    with freeze_time("2026-03-02 21:00:00"):  # 22:00 in Zagreb
        assert await evaluate(seeded, fake_redis, [change(420)]) == 1
    with freeze_time("2026-03-02 23:30:00"):  # 00:30 next day in Zagreb
        assert await evaluate(seeded, fake_redis, [change(540, old=420)]) == 1

    assert sorted(await notifications(seeded)) == [(ALICE, "delay", 7), (ALICE, "delay", 9)]


async def test_no_changes_no_lookup(seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis) -> None:
    """Test nothing is sent without new delays or new railway works."""
    assert await evaluate(seeded, fake_redis, []) == 0
    assert await evaluate(seeded, fake_redis, [change(None, old=600)]) == 0
    assert await notifications(seeded) == []


@freeze_time("2026-03-02 07:00:00")
async def test_railway_works_alert_when_newly_flagged(
    seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis
) -> None:
    """Test only favourites opted in are told about railway works, once while the flag persists."""
    assert await evaluate(seeded, fake_redis, [], railway_works=True) == 1
    assert await notifications(seeded) == [(ALICE, "railway_works", None)]

    assert await evaluate(seeded, fake_redis, [], railway_works=True) == 0
    assert build_works_flag_key(ROUTE_ID, BASE_START) in fake_redis.store


@freeze_time("2026-03-02 07:00:00")
async def test_railway_works_flag_cleared_when_absent(
    seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis
) -> None:
    """Test the flag resets once the run no longer reports works; the daily dedupe still applies."""
    await evaluate(seeded, fake_redis, [], railway_works=True)

    await evaluate(seeded, fake_redis, [], railway_works=False)
    assert build_works_flag_key(ROUTE_ID, BASE_START) not in fake_redis.store

    # Newly flagged again, but Alice was already told today
    assert await evaluate(seeded, fake_redis, [], railway_works=True) == 0


@freeze_time("2026-03-02 07:00:00")
async def test_delay_and_works_in_one_evaluation(
    seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis
) -> None:
    """Test both conditions notify independently."""
    sent = await evaluate(seeded, fake_redis, [change(600)], railway_works=True)

    assert sent == 2
    assert await notifications(seeded) == [(ALICE, "delay", 10), (ALICE, "railway_works", None)]


async def test_route_without_favourites(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Test a delayed route nobody follows sends nothing."""
    await seed(session_factory, *make_stations(), make_route(ROUTE_ID, 2500))

    assert await evaluate(session_factory, FakeRedis(), [change(3600)]) == 0


@freeze_time("2026-03-02 07:00:00")
async def test_rolled_back_notification_can_be_sent_again(
    seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis
) -> None:
    """Test releasing the dedupe keys of an uncommitted evaluation lets the next qualifying delay notify."""
    evaluator: AlertEvaluator | None = None
    with pytest.raises(RuntimeError):
        async with seeded() as session, session.begin():
            evaluator = AlertEvaluator(session, fake_redis, TZ)
            assert await evaluator.evaluate(ROUTE_ID, BASE_START, 2500, [change(420)]) == 1
            msg = "transaction aborted"
            raise RuntimeError(msg)

    assert evaluator is not None
    await evaluator.release_dedupe_keys()
    assert evaluator.acquired_keys == []
    assert not [key for key in fake_redis.store if key.startswith("alert:")]

    assert await evaluate(seeded, fake_redis, [change(660, old=420)]) == 1
    assert await notifications(seeded) == [(ALICE, "delay", 11)]


@freeze_time("2026-03-02 07:00:00")
async def test_suppressed_duplicates_are_not_released(
    seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis
) -> None:
    """Test only keys this evaluator set are released, never those of an earlier committed alert."""
    await evaluate(seeded, fake_redis, [change(420)])

    async with seeded() as session, session.begin():
        evaluator = AlertEvaluator(session, fake_redis, TZ)
        assert await evaluator.evaluate(ROUTE_ID, BASE_START, 2500, [change(540, old=420)]) == 0
    await evaluator.release_dedupe_keys()

    key = build_dedupe_key(ALICE, ROUTE_ID, BASE_START, AlertReason.DELAY, "2026-03-02")
    assert key in fake_redis.store


@freeze_time("2026-03-02 07:00:00")
async def test_cooldown_override(seeded: async_sessionmaker[AsyncSession], fake_redis: FakeRedis) -> None:
    """Test an explicit cool-down sets the dedupe key lifetime."""
    async with seeded() as session, session.begin():
        await AlertEvaluator(session, fake_redis, TZ, cooldown_minutes=90).evaluate(
            ROUTE_ID, BASE_START, 2500, [change(600)]
        )

    key = build_dedupe_key(ALICE, ROUTE_ID, BASE_START, AlertReason.DELAY, "2026-03-02")
    assert fake_redis.ttls[key] == 90 * 60
