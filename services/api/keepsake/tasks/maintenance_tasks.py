"""Celery tasks for audit history retention."""

import asyncio
import logging

from celery import shared_task

from keepsake.tasks.runtime import tracked, worker_services

logger = logging.getLogger(__name__)


@shared_task(name="keepsake.tasks.maintenance_tasks.prune_event_history")
@tracked("prune_event_history")
def prune_event_history() -> int:
    """Delete audit entries older than ``audit_retention_days``."""

    async def _run() -> int:
        async with worker_services() as services:
            cutoff = services.store.retention_cutoff()
            if cutoff is None:
                logger.info("History retention disabled, nothing pruned")
                return 0
            removed = await services.store.prune_history(cutoff)
            logger.info("Pruned %d history entries older than %s", removed, cutoff.isoformat())
            return removed

    return asyncio.run(_run())
