from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from reporter.core.config import get_settings
from reporter.core.context import RequestContext
from reporter.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


class QueuePublisher(Protocol):
    async def publish_default(
        self, ctx: RequestContext, exchange: str, routing_key: str, message: dict[str, Any]
    ) -> None:
        ...


class QueuePublishError(RuntimeError):
    """The broker accepted the call but did not enqueue the job."""


async def get_redis_pool() -> ArqRedis:
    # Cache the arq pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            _redis_pool = await create_pool(RedisSettings.from_dsn(get_settings().redis_url))
            _redis_pool_loop = current_loop
    return _redis_pool


class ArqQueuePublisher:
    """Publishes jobs on arq queues.

    The exchange names the arq queue and the routing key names the worker
    function, so one worker process can serve several report queues.
    """

    def __init__(self, pool: ArqRedis | None = None) -> None:
        self._pool = pool

    async def _get_pool(self) -> ArqRedis:
        if self._pool is not None:
            return self._pool
        return await get_redis_pool()

    async def publish_default(
        self, ctx: RequestContext, exchange: str, routing_key: str, message: dict[str, Any]
    ) -> None:
        pool = await self._get_pool()
        start = time.monotonic()
        try:
            job = await pool.enqueue_job(routing_key, message, _queue_name=exchange)
        except Exception:
            record_external_call(
                integration="queue.arq", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise
        record_external_call(
            integration="queue.arq", latency_ms=(time.monotonic() - start) * 1000.0, success=True
        )
        if job is None:
            raise QueuePublishError(f"job was not enqueued on {exchange}/{routing_key}")
        logger.info(
            "report_job_enqueued queue=%s job_id=%s request_id=%s",
            exchange,
            job.job_id,
            ctx.request_id,
        )
