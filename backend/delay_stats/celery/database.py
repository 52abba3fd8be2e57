"""Per-process worker resources: event loop, database, Redis, HTTP and the cycle runner.

Celery forks its pool processes, and asyncio loops, connection pools and
sockets must not cross a fork. So every worker process builds its own after
`worker_process_init`. It keeps one event loop for its lifetime and creates
the clients lazily on that loop. `worker_process_shutdown` tears them down.
"""

import asyncio
import contextlib
import threading
from collections.abc import Awaitable, Callable

import httpx
import structlog
from celery.signals import worker_process_init, worker_process_shutdown
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from delay_stats import __version__
from delay_stats.core.config import settings
from delay_stats.core.redis import RedisClientProtocol, create_redis_client
from delay_stats.services.cycle_runner import CycleRunner
from delay_stats.services.scrape_client import ScrapeClient

logger = structlog.get_logger(__name__)

_worker_loop: asyncio.AbstractEventLoop | None = None
_worker_engine: AsyncEngine | None = None
_worker_session_factory: async_sessionmaker[AsyncSession] | None = None
_worker_redis_client: RedisClientProtocol | None = None
_worker_http_client: httpx.AsyncClient | None = None
_worker_cycle_runner: CycleRunner | None = None
# Reentrant: building the cycle runner builds the other clients under the same lock
_init_lock = threading.RLock()


async def check_store_reachable() -> None:
    """
    Run a trivial query against the worker database.

    Raises:
        SQLAlchemyError: If the database refuses or cannot be reached
    """
    async with get_worker_session_factory()() as session:
        await session.execute(text("SELECT 1"))


@worker_process_init.connect
def init_worker_resources(**kwargs: object) -> None:
    """
    Create the process's event loop and check the database before taking tasks.

    Calling it again while the loop is open does nothing.

    Raises:
        SystemExit: If the database is unreachable; the pool replaces the process
    """
    global _worker_loop  # noqa: PLW0603
    if _worker_loop is not None and not _worker_loop.is_closed():
        return

    _worker_loop = asyncio.new_event_loop()
    asyncio.set_event_loop(_worker_loop)
    logger.info("worker_loop_created")

    if settings.OTEL_ENABLED:
        # Imported here so the parent process never builds exporters it would hand to children
        from delay_stats.core.telemetry import install_providers  # noqa: PLC0415

        install_providers()
        logger.info("worker_otel_providers_installed")

    try:
        _worker_loop.run_until_complete(check_store_reachable())
    except (SQLAlchemyError, OSError) as exc:
        logger.critical("worker_store_unreachable", error=str(exc), error_type=type(exc).__name__)
        raise SystemExit(1) from exc

    logger.info("worker_ready")


def _shutdown_steps(
    runner: CycleRunner | None,
    http_client: httpx.AsyncClient | None,
    engine: AsyncEngine | None,
    redis_client: RedisClientProtocol | None,
) -> list[tuple[str, Callable[[], Awaitable[object]]]]:
    """Teardown in dependency order: the runner drains first, then what it was using."""
    steps: list[tuple[str, Callable[[], Awaitable[object]]]] = []
    if runner is not None:
        steps.append(("cycle_runner", lambda: runner.shutdown(timeout=settings.CYCLE_TIMEOUT_SECONDS)))
    if http_client is not None:
        steps.append(("http_client", http_client.aclose))
    if engine is not None:
        steps.append(("engine", engine.dispose))
    if redis_client is not None:
        steps.append(("redis_client", redis_client.aclose))
    return steps


def _close_loop(loop: asyncio.AbstractEventLoop) -> None:
    pending = asyncio.all_tasks(loop)
    for task in pending:
        task.cancel()
    if pending:
        with contextlib.suppress(Exception):
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    loop.close()
    asyncio.set_event_loop(None)


@worker_process_shutdown.connect
def cleanup_worker_resources(**kwargs: object) -> None:
    """
    Drain the in-flight cycle, close every client and the loop.

    Globals are cleared before anything is closed so no getter can hand out
    a resource that is being torn down. A failing step is logged and the rest
    still run.
    """
    global _worker_loop, _worker_engine, _worker_session_factory, _worker_redis_client  # noqa: PLW0603
    global _worker_http_client, _worker_cycle_runner  # noqa: PLW0603

    loop = _worker_loop
    if loop is None:
        return

    steps = _shutdown_steps(_worker_cycle_runner, _worker_http_client, _worker_engine, _worker_redis_client)
    _worker_loop = _worker_engine = _worker_session_factory = None
    _worker_redis_client = _worker_http_client = _worker_cycle_runner = None

    for name, close in steps:
        try:
            loop.run_until_complete(close())
        except Exception as exc:
            logger.warning(
                "worker_resource_close_failed",
                resource=name,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    if settings.OTEL_ENABLED:
        from delay_stats.core.telemetry import shutdown_logger_provider, shutdown_tracer_provider  # noqa: PLC0415

        shutdown_tracer_provider()
        shutdown_logger_provider()

    _close_loop(loop)
    logger.info("worker_resources_released", resources=[name for name, _ in steps])


def _create_engine() -> AsyncEngine:
    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
    )
    if settings.OTEL_ENABLED:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor  # noqa: PLC0415

        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    return engine


def _get_worker_engine() -> AsyncEngine:
    global _worker_engine  # noqa: PLW0603
    with _init_lock:
        if _worker_engine is None:
            _worker_engine = _create_engine()
    return _worker_engine


def get_worker_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Session factory on the worker engine.

    The cycle runner needs the factory rather than a session: it opens one
    per unit of work (matching reads, each route transaction, alerts).
    """
    global _worker_session_factory  # noqa: PLW0603
    with _init_lock:
        if _worker_session_factory is None:
            _worker_session_factory = async_sessionmaker(
                _get_worker_engine(),
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
    return _worker_session_factory


def get_worker_session() -> AsyncSession:
    """A new session on the worker engine; the caller closes it."""
    return get_worker_session_factory()()


def get_worker_redis_client() -> RedisClientProtocol:
    """Shared Redis client. Task code must not close it; worker shutdown does."""
    global _worker_redis_client  # noqa: PLW0603
    with _init_lock:
        if _worker_redis_client is None:
            _worker_redis_client = create_redis_client()
    return _worker_redis_client


def get_worker_http_client() -> httpx.AsyncClient:
    global _worker_http_client  # noqa: PLW0603
    with _init_lock:
        if _worker_http_client is None:
            _worker_http_client = httpx.AsyncClient(
                timeout=settings.FETCH_TIMEOUT_SECONDS,
                follow_redirects=True,
                headers={"User-Agent": f"{settings.PROJECT_NAME}/{__version__}"},
            )
    return _worker_http_client


def get_worker_cycle_runner() -> CycleRunner:
    """The process's cycle runner, wired to the shared session factory and clients."""
    global _worker_cycle_runner  # noqa: PLW0603
    with _init_lock:
        if _worker_cycle_runner is None:
            _worker_cycle_runner = CycleRunner(
                session_factory=get_worker_session_factory(),
                redis_client=get_worker_redis_client(),
                scrape_client=ScrapeClient(get_worker_http_client()),
            )
    return _worker_cycle_runner


def get_worker_loop() -> asyncio.AbstractEventLoop:
    """
    The persistent event loop of this worker process.

    Raises:
        RuntimeError: Before worker_process_init has run, or after shutdown closed the loop
    """
    if _worker_loop is None:
        msg = "Worker event loop not initialized; worker_process_init has not run in this process"
        raise RuntimeError(msg)
    if _worker_loop.is_closed():
        msg = "Worker event loop is closed; the worker is shutting down"
        raise RuntimeError(msg)
    return _worker_loop
