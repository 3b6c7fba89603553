from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import timedelta
from typing import Any, Protocol

from arq import create_pool
from arq.connections import RedisSettings

from fleetcore.core.config import get_settings


logger = logging.getLogger(__name__)

# Job function names registered by the worker.
RUN_DIRECTIVE_JOB = "run_directive"
FANOUT_SIGNAL_JOB = "fanout_signal"
INSTALL_PACKAGE_JOB = "install_package"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class JobQueue(Protocol):
    async def enqueue(self, function: str, *, defer_s: float | None = None, **kwargs: Any) -> str | None:
        """Enqueue one job; returns the queue's job id when it assigns one."""


async def get_redis_pool():
    # Cache the Redis pool per event loop to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


class ArqJobQueue:
    """Publishes jobs onto the arq queue the worker consumes."""

    def __init__(self, *, queue_name: str | None = None) -> None:
        self.queue_name = queue_name or get_settings().queue_name

    async def enqueue(self, function: str, *, defer_s: float | None = None, **kwargs: Any) -> str | None:
        redis = await get_redis_pool()
        defer_by = timedelta(seconds=defer_s) if defer_s and defer_s > 0 else None
        job = await redis.enqueue_job(
            function,
            _queue_name=self.queue_name,
            _defer_by=defer_by,
            **kwargs,
        )
        # arq returns None when a job with the same id is already queued.
        return job.job_id if job else None


_default_queue: ArqJobQueue | None = None


def get_job_queue() -> JobQueue:
    global _default_queue
    if _default_queue is None:
        _default_queue = ArqJobQueue()
    return _default_queue


def retry_backoff_ms(*, job_key: str, attempt_no: int) -> int:
    # Exponential backoff with deterministic jitter keeps tests reproducible and avoids stampedes.
    settings = get_settings()
    base = max(1, int(settings.retry_backoff_ms))
    cap = max(base, int(settings.retry_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{job_key}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


def truthy(value: Any) -> bool:
    # Job override flags arrive boolean-ish from JSON, query strings, and operators.
    return value is True or value == 1 or value in ("true", "1")
