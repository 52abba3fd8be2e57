"""Pytest configuration and fixtures."""

import os

# Settings are loaded on import of delay_stats.core.config
# Required values must be in the environment BEFORE any delay_stats imports
os.environ["DEBUG"] = "true"
os.environ["OTEL_ENABLED"] = "false"
os.environ["SECRET_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_REDIS_URL"] = "redis://localhost:6379/0"
os.environ["SECRET_CELERY_BROKER_URL"] = "redis://localhost:6379/1"
os.environ["SECRET_CELERY_RESULT_BACKEND"] = "redis://localhost:6379/2"

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
from delay_stats.models import Base
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tests.helpers.fake_redis import FakeRedis

pytest_plugins = ["tests.fixtures.otel"]


@pytest.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """
    Create a file-backed SQLite database with all tables.

    A file rather than :memory: so every session of the cycle runner sees the
    same data. pysqlite's own transaction handling is switched off and each
    transaction starts with BEGIN IMMEDIATE, which makes SAVEPOINTs work and
    serialises concurrent writers the way row locks do on PostgreSQL.

    Yields:
        AsyncEngine bound to the test database
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'delay_stats.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:  # noqa: ANN401
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:  # noqa: ANN401
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory configured like the worker's."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    """
    Database session for a single test.

    Each test gets a fresh database file, so commits need no cleanup.

    Yields:
        AsyncSession on the test database
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    """In-memory Redis double supporting the subset the application uses."""
    return FakeRedis()
