from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from remindrelay.core.config import get_settings


logger = logging.getLogger(__name__)

RUN_JOB_FUNCTION = "run_delivery_job"

_job_queue_pool: ArqRedis | None = None
_job_queue_pool_loop: asyncio.AbstractEventLoop | None = None
_job_queue_lock = asyncio.Lock()


async def get_job_queue_pool() -> ArqRedis:
    # Cache the arq Redis pool per event loop to avoid reconnect churn.
    global _job_queue_pool, _job_queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _job_queue_pool is not None and _job_queue_pool_loop == current_loop:
        return _job_queue_pool
    if _job_queue_pool is not None and _job_queue_pool_loop != current_loop:
        _job_queue_pool = None
    async with _job_queue_lock:
        if _job_queue_pool is None:
            settings = get_settings()
            _job_queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.job_queue_name,
            )
            _job_queue_pool_loop = current_loop
    return _job_queue_pool


async def enqueue_job_run(job_id: str) -> bool:
    # Hand a job loop to the worker; the job lease turns duplicate runs into no-ops.
    settings = get_settings()
    try:
        redis = await get_job_queue_pool()
        await redis.enqueue_job(
            RUN_JOB_FUNCTION,
            job_id,
            _queue_name=settings.job_queue_name,
        )
        return True
    except Exception as exc:  # noqa: BLE001 - caller falls back to an in-process loop
        logger.warning("delivery_job_enqueue_failed job_id=%s error=%s", job_id, exc)
        return False
