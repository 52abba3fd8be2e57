"""Tests for Celery worker resources.

These tests drive the worker_process_init and worker_process_shutdown
handlers directly; the database check is patched so no server is needed.
"""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from delay_stats import __version__
from delay_stats.celery import database
from delay_stats.celery.database import (
    cleanup_worker_resources,
    get_worker_cycle_runner,
    get_worker_http_client,
    get_worker_loop,
    init_worker_resources,
)
from delay_stats.core.config import settings
from delay_stats.services.cycle_runner import CycleRunner

from tests.helpers.fake_redis import FakeRedis


@pytest.fixture
def store_reachable() -> Generator[AsyncMock]:
    with patch("delay_stats.celery.database.check_store_reachable", new=AsyncMock()) as check:
        yield check


@pytest.fixture(autouse=True)
def clean_worker() -> Generator[None]:
    """Leave no worker loop or shared clients behind."""
    yield
    cleanup_worker_resources()


def test_init_creates_persistent_loop(store_reachable: AsyncMock) -> None:
    """Test init creates one loop, checks the store and is idempotent."""
    init_worker_resources()
    loop = get_worker_loop()

    init_worker_resources()

    assert get_worker_loop() is loop
    assert not loop.is_closed()
    store_reachable.assert_awaited_once()


def test_init_exits_when_store_unreachable() -> None:
    """Test a worker that cannot reach the database refuses to start."""
    with (
        patch(
            "delay_stats.celery.database.check_store_reachable",
            new=AsyncMock(side_effect=OSError("Connection refused")),
        ),
        patch("delay_stats.celery.database.logger") as mock_logger,
        pytest.raises(SystemExit) as exc_info,
    ):
        init_worker_resources()

    assert exc_info.value.code == 1
    assert mock_logger.critical.call_args[0][0] == "worker_store_unreachable"


def test_cleanup_shuts_down_runner_then_clients(store_reachable: AsyncMock) -> None:
    """Test shutdown lets the runner finish before closing clients and the loop."""
    init_worker_resources()
    loop = get_worker_loop()
    runner = MagicMock()
    runner.shutdown = AsyncMock()
    http_client = MagicMock()
    http_client.aclose = AsyncMock()
    redis_client = FakeRedis()
    database._worker_cycle_runner = runner
    database._worker_http_client = http_client
    database._worker_redis_client = redis_client

    cleanup_worker_resources()

    runner.shutdown.assert_awaited_once_with(timeout=settings.CYCLE_TIMEOUT_SECONDS)
    http_client.aclose.assert_awaited_once()
    assert redis_client.closed is True
    assert loop.is_closed()
    with pytest.raises(RuntimeError, match="not initialized"):
        get_worker_loop()


def test_cycle_runner_is_shared(store_reachable: AsyncMock) -> None:
    """Test the worker builds one cycle runner on its shared clients."""
    init_worker_resources()
    redis_client = FakeRedis()

    with (
        patch("delay_stats.celery.database.get_worker_session_factory", return_value=MagicMock()),
        patch("delay_stats.celery.database.get_worker_redis_client", return_value=redis_client),
    ):
        runner = get_worker_cycle_runner()
        assert get_worker_cycle_runner() is runner

    assert isinstance(runner, CycleRunner)
    assert runner.redis_client is redis_client
    assert runner.scrape_client.http_client is get_worker_http_client()
    assert get_worker_http_client().headers["User-Agent"] == f"{settings.PROJECT_NAME}/{__version__}"


def test_cleanup_continues_after_failing_step(store_reachable: AsyncMock) -> None:
    """Test one resource failing to close does not leave the others open."""
    init_worker_resources()
    loop = get_worker_loop()
    http_client = MagicMock()
    http_client.aclose = AsyncMock(side_effect=RuntimeError("already closed"))
    redis_client = FakeRedis()
    database._worker_http_client = http_client
    database._worker_redis_client = redis_client

    with patch("delay_stats.celery.database.logger") as mock_logger:
        cleanup_worker_resources()

    mock_logger.warning.assert_called_once()
    assert mock_logger.warning.call_args.kwargs["resource"] == "http_client"
    assert redis_client.closed is True
    assert loop.is_closed()
