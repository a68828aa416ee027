from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from reporter.cache.keys import scoped_key
from reporter.core.config import get_settings
from reporter.core.context import RequestContext
from reporter.services.telemetry import record_external_call


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            _redis_pool = Redis.from_url(get_settings().redis_url, decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


def _seconds(ttl: timedelta) -> int:
    # Redis rejects non-positive expirations.
    return max(1, int(ttl.total_seconds()))


def _record(start: float, success: bool) -> None:
    record_external_call(
        integration="cache.redis", latency_ms=(time.monotonic() - start) * 1000.0, success=success
    )


class RedisCache:
    def __init__(self, redis: Redis | None = None) -> None:
        self._redis = redis

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await get_redis()

    async def _timed(self, command: Callable[[Redis], Awaitable[Any]]) -> Any:
        redis = await self._client()
        start = time.monotonic()
        try:
            result = await command(redis)
        except Exception:
            _record(start, success=False)
            raise
        _record(start, success=True)
        return result

    async def set_if_absent(
        self, ctx: RequestContext, key: str, value: str, ttl: timedelta
    ) -> bool:
        acquired = await self._timed(
            lambda redis: redis.set(scoped_key(ctx, key), value, nx=True, ex=_seconds(ttl))
        )
        return bool(acquired)

    async def get(self, ctx: RequestContext, key: str) -> str:
        value = await self._timed(lambda redis: redis.get(scoped_key(ctx, key)))
        if value is None:
            return ""
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8")
        return str(value)

    async def set(self, ctx: RequestContext, key: str, value: str, ttl: timedelta) -> None:
        await self._timed(lambda redis: redis.set(scoped_key(ctx, key), value, ex=_seconds(ttl)))
