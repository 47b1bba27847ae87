"""Celery tasks for reminder delivery."""

import asyncio
import logging

from celery import shared_task

from keepsake.tasks.runtime import tracked, worker_services

logger = logging.getLogger(__name__)


@shared_task(name="keepsake.tasks.reminder_tasks.dispatch_due_reminders")
@tracked("dispatch_due_reminders")
def dispatch_due_reminders() -> int:
    """Deliver pending reminders whose in-process timer never fired."""

    async def _run() -> int:
        async with worker_services() as services:
            return await services.scheduler.dispatch_due()

    sent = asyncio.run(_run())
    if sent:
        logger.info("Reminder sweep handled %d overdue reminders", sent)
    return sent


@shared_task(name="keepsake.tasks.reminder_tasks.refresh_recurring_reminders")
@tracked("refresh_recurring_reminders")
def refresh_recurring_reminders() -> int:
    """Plan reminders for the next occurrence of recurring events whose plan ran out."""

    async def _run() -> int:
        async with worker_services() as services:
            events = await services.store.recurring_without_pending_reminders()
            planned = 0
            for event in events:
                try:
                    planned += await services.scheduler.schedule(event)
                except Exception:
                    logger.exception("Could not refresh reminders for event %s", event.id)
            logger.info("Refreshed reminders for %d recurring events (%d entries)", len(events), planned)
            return planned

    return asyncio.run(_run())


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    autoretry_for=(Exception,),
    retry_backoff=True,
    name="keepsake.tasks.reminder_tasks.schedule_event_reminders",
)
def schedule_event_reminders(self, event_id: int) -> int:
    """Rebuild the reminder plan of a single event."""

    async def _run() -> int:
        async with worker_services() as services:
            event = await services.store.get(event_id)
            await services.scheduler.clear_reminders(event_id)
            return await services.scheduler.schedule(event)

    return asyncio.run(_run())
