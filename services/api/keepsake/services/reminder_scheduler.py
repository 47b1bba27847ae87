"""Reminder plan persistence, timers and delivery.

Plan entries are rows in ``event_reminders``. In the API process every
pending entry due within ``reminder_max_delay_days`` gets an asyncio task that
sleeps until its fire time; the table of tasks is keyed by event id so an
event's timers can be cancelled and replaced as a unit. Celery workers build
the scheduler with ``arm_timers=False`` and only use the sweep.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keepsake.config import Settings
from keepsake.models.base import utcnow
from keepsake.models.event import Event
from keepsake.models.event_reminder import EventReminder, ReminderStatus
from keepsake.schemas.event import EventRead
from keepsake.services.event_store import event_from_row
from keepsake.services.notification_dispatcher import ReminderDispatcher
from keepsake.services.preference_service import PreferenceService
from keepsake.services.reminder_planner import (
    plan_reminders,
    quiet_hours_end_after,
    render_notification,
)

logger = logging.getLogger(__name__)


class ReminderScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: ReminderDispatcher,
        preferences: PreferenceService,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        arm_timers: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._preferences = preferences
        self._settings = settings
        self._clock = clock
        self._arm_timers = arm_timers
        self._timers: dict[int, dict[int, asyncio.Task]] = {}

    # --- timer table ---

    def armed(self, event_id: int) -> set[int]:
        """Reminder ids with a live timer for ``event_id``."""
        return {rid for rid, task in self._timers.get(event_id, {}).items() if not task.done()}

    def _arm(self, event_id: int, reminder_id: int, fire_time: datetime) -> None:
        if not self._arm_timers:
            return
        delay = (fire_time - self._clock()).total_seconds()
        if delay > timedelta(days=self._settings.reminder_max_delay_days).total_seconds():
            return
        timers = self._timers.setdefault(event_id, {})
        previous = timers.get(reminder_id)
        if previous is not None and previous is not asyncio.current_task():
            previous.cancel()
        timers[reminder_id] = asyncio.create_task(
            self._run_timer(event_id, reminder_id, max(delay, 0.0)),
            name=f"reminder-{event_id}-{reminder_id}",
        )

    async def _run_timer(self, event_id: int, reminder_id: int, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self.fire(reminder_id)
        finally:
            timers = self._timers.get(event_id)
            if timers is not None and timers.get(reminder_id) is asyncio.current_task():
                del timers[reminder_id]
                if not timers:
                    self._timers.pop(event_id, None)

    def cancel_timers(self, event_id: int) -> int:
        """Cancel every timer for the event. Safe to call when none exist."""
        timers = self._timers.pop(event_id, {})
        current = asyncio.current_task() if self._arm_timers else None
        for task in timers.values():
            if task is not current:
                task.cancel()
        return len(timers)

    async def shutdown(self) -> None:
        tasks = [task for timers in self._timers.values() for task in timers.values()]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Reminder scheduler stopped, %d timers cancelled", len(tasks))

    # --- plan management ---

    async def schedule(self, event: EventRead) -> int:
        """Persist the reminder plan for the event's next occurrence and arm its timers.

        Pending rows whose fire time is still part of the plan are kept, the
        rest are cancelled. Returns the number of pending entries.
        """
        preferences = await self._preferences.get(event.created_by)
        planned = plan_reminders(
            event, preferences, self._clock(), self._settings.day_of_notification_hour
        )
        wanted = {p.fire_time: p for p in planned}

        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    select(EventReminder).where(
                        EventReminder.event_id == event.id,
                        EventReminder.status == ReminderStatus.PENDING,
                    )
                )
                kept: list[EventReminder] = []
                for row in result.scalars().all():
                    plan = wanted.pop(row.reminder_time, None)
                    if plan is None:
                        row.status = ReminderStatus.CANCELLED
                        continue
                    row.lead_minutes = plan.lead_minutes
                    row.reminder_type = plan.reminder_type
                    row.occurrence_time = plan.occurrence_date
                    kept.append(row)
                for plan in wanted.values():
                    row = EventReminder(
                        event_id=event.id,
                        reminder_time=plan.fire_time,
                        occurrence_time=plan.occurrence_date,
                        lead_minutes=plan.lead_minutes,
                        reminder_type=plan.reminder_type,
                        status=ReminderStatus.PENDING,
                        retry_count=0,
                    )
                    db.add(row)
                    kept.append(row)
                await db.flush()
                to_arm = [(row.id, row.reminder_time) for row in kept]

        self.cancel_timers(event.id)
        for reminder_id, fire_time in to_arm:
            self._arm(event.id, reminder_id, fire_time)
        logger.debug("Event %s has %d pending reminders", event.id, len(to_arm))
        return len(to_arm)

    async def clear_reminders(self, event_id: int) -> int:
        """Mark every pending entry cancelled (rows are kept) and stop the timers."""
        self.cancel_timers(event_id)
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(EventReminder)
                    .where(
                        EventReminder.event_id == event_id,
                        EventReminder.status == ReminderStatus.PENDING,
                    )
                    .values(status=ReminderStatus.CANCELLED)
                )
        return result.rowcount or 0

    async def rearm_pending(self) -> int:
        """Arm timers for persisted pending entries, e.g. after a restart."""
        horizon = self._clock() + timedelta(days=self._settings.reminder_max_delay_days)
        async with self._session_factory() as db:
            result = await db.execute(
                select(EventReminder.id, EventReminder.event_id, EventReminder.reminder_time).where(
                    EventReminder.status == ReminderStatus.PENDING,
                    EventReminder.reminder_time <= horizon,
                )
            )
            rows = result.all()
        for reminder_id, event_id, fire_time in rows:
            self._arm(event_id, reminder_id, fire_time)
        logger.info("Re-armed %d pending reminders", len(rows))
        return len(rows)

    async def dispatch_due(self, now: datetime | None = None) -> int:
        """Deliver pending entries overdue by more than the grace period.

        Claims older than ``reminder_claim_timeout_minutes`` belong to a process
        that died mid-delivery and are returned to pending first.
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self._settings.reminder_sweep_grace_minutes)
        await self._release_stale_claims(now)
        async with self._session_factory() as db:
            result = await db.execute(
                select(EventReminder.id)
                .where(
                    EventReminder.status == ReminderStatus.PENDING,
                    EventReminder.reminder_time <= cutoff,
                )
                .order_by(EventReminder.reminder_time)
            )
            due = list(result.scalars().all())
        for reminder_id in due:
            await self.fire(reminder_id)
        return len(due)

    # --- delivery ---

    async def fire(self, reminder_id: int) -> ReminderStatus | None:
        """Attempt delivery of one entry. Never raises; returns the resulting status."""
        try:
            return await self._fire(reminder_id)
        except Exception:
            logger.exception("Reminder %s delivery crashed", reminder_id)
            return None

    async def _claim(self, reminder_id: int) -> bool:
        """Move the entry from pending to sending. Only one caller can win."""
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(EventReminder)
                    .where(
                        EventReminder.id == reminder_id,
                        EventReminder.status == ReminderStatus.PENDING,
                    )
                    .values(status=ReminderStatus.SENDING, last_attempt=self._clock())
                )
        return result.rowcount == 1

    async def _release(self, reminder_id: int) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(EventReminder)
                    .where(
                        EventReminder.id == reminder_id,
                        EventReminder.status == ReminderStatus.SENDING,
                    )
                    .values(status=ReminderStatus.PENDING)
                )

    async def _release_stale_claims(self, now: datetime) -> int:
        stale_before = now - timedelta(minutes=self._settings.reminder_claim_timeout_minutes)
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(EventReminder)
                    .where(
                        EventReminder.status == ReminderStatus.SENDING,
                        EventReminder.last_attempt <= stale_before,
                    )
                    .values(status=ReminderStatus.PENDING)
                )
        released = result.rowcount or 0
        if released:
            logger.warning("Released %d stale reminder claims", released)
        return released

    async def _fire(self, reminder_id: int) -> ReminderStatus | None:
        if not await self._claim(reminder_id):
            return None
        try:
            return await self._deliver_claimed(reminder_id)
        except Exception:
            await self._release(reminder_id)
            raise

    async def _deliver_claimed(self, reminder_id: int) -> ReminderStatus | None:
        async with self._session_factory() as db:
            reminder = await db.get(EventReminder, reminder_id)
            if reminder is None:
                return None
            row = await db.get(Event, reminder.event_id)
            if row is None or row.deleted_at is not None:
                reminder.status = ReminderStatus.CANCELLED
                await db.commit()
                return ReminderStatus.CANCELLED
            event = event_from_row(row)

            preferences = await self._preferences.get(event.created_by)
            now = self._clock()
            resume_at = quiet_hours_end_after(now, preferences)
            if resume_at > now:
                logger.warning(
                    "Reminder %s for event %s suppressed by quiet hours, deferred to %s",
                    reminder_id,
                    event.id,
                    resume_at.isoformat(),
                )
                reminder.status = ReminderStatus.PENDING
                reminder.reminder_time = resume_at
                await db.commit()
                self._arm(event.id, reminder_id, resume_at)
                return ReminderStatus.PENDING

            occurrence = reminder.occurrence_time or event.date
            title, body = render_notification(event, occurrence, reminder.lead_minutes, preferences.timezone)
            metadata = {
                "event_id": event.id,
                "reminder_id": reminder_id,
                "user_id": event.created_by,
                "reminder_type": reminder.reminder_type.value,
                "occurrence": occurrence.isoformat(),
            }
            channel = await self._dispatcher.deliver(title, body, metadata, preferences)

            reminder.last_attempt = now
            if channel is not None:
                reminder.status = ReminderStatus.SENT
                reminder.channel = channel
                await db.commit()
                return ReminderStatus.SENT

            reminder.retry_count += 1
            if reminder.retry_count >= self._settings.reminder_max_retries:
                reminder.status = ReminderStatus.FAILED
                await db.commit()
                logger.warning(
                    "Reminder %s for event %s failed after %d attempts",
                    reminder_id,
                    event.id,
                    reminder.retry_count,
                )
                return ReminderStatus.FAILED

            retry_at = now + timedelta(seconds=self._settings.reminder_retry_delay_seconds)
            reminder.status = ReminderStatus.PENDING
            reminder.reminder_time = retry_at
            await db.commit()
            logger.warning(
                "Reminder %s delivery failed (attempt %d), retrying at %s",
                reminder_id,
                reminder.retry_count,
                retry_at.isoformat(),
            )
            self._arm(event.id, reminder_id, retry_at)
            return ReminderStatus.PENDING
