"""
Redis access for the scrape worker.

Keys written: the single-cycle guard, alert cool-down markers, the last
railway works flag per route run and the last cycle report. All values are
short strings, so the client decodes responses.
"""

from typing import Protocol, cast

import redis.asyncio as redis

from delay_stats.core.config import settings


class RedisClientProtocol(Protocol):
    """
    The part of redis.asyncio.Redis the worker calls.

    Narrow enough for tests to pass an in-memory double.
    """

    async def get(self, name: str) -> str | None: ...

    async def set(
        self,
        name: str,
        value: str,
        ex: int | None = None,
        nx: bool = False,
    ) -> bool | None:
        """With nx=True the key is only written if absent; the return value is then None when it existed."""
        ...

    async def delete(self, *names: str) -> int: ...

    async def eval(self, script: str, numkeys: int, *keys_and_args: str) -> object: ...

    async def aclose(self, close_connection_pool: bool = True) -> None: ...


def create_redis_client(url: str | None = None) -> RedisClientProtocol:
    """
    Client for REDIS_URL (or url), decoding responses to str.

    Connecting is lazy; the first command opens the pool.
    """
    client = redis.from_url(  # type: ignore[no-untyped-call]
        url or settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=30,
    )
    return cast(RedisClientProtocol, client)
