"""Shared plumbing for Celery tasks: per-run services and task metrics."""

import time
from contextlib import asynccontextmanager
from functools import wraps

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker

from keepsake.config import get_settings
from keepsake.dependencies import build_services, create_engine
from keepsake.metrics import celery_task_duration_seconds, celery_task_total


@asynccontextmanager
async def worker_services():
    """Services for one task run. Timers are never armed inside a worker."""
    settings = get_settings()
    engine = create_engine(settings)
    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        yield build_services(
            settings,
            async_sessionmaker(engine, expire_on_commit=False),
            redis_client,
            arm_timers=False,
        )
    finally:
        await redis_client.aclose()
        await engine.dispose()


def tracked(task_name: str):
    """Count and time a task body under ``task_name``."""

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = fn(*args, **kwargs)
            except Exception:
                celery_task_total.labels(task_name=task_name, status="failure").inc()
                raise
            finally:
                celery_task_duration_seconds.labels(task_name=task_name).observe(time.perf_counter() - start)
            celery_task_total.labels(task_name=task_name, status="success").inc()
            return result

        return wrapper

    return decorator

