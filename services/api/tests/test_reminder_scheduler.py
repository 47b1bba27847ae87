"""Tests for reminder persistence, delivery, retries and quiet hours."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from keepsake.models.event_reminder import EventReminder, ReminderChannel, ReminderStatus
from keepsake.services.reminder_scheduler import ReminderScheduler

UTC = timezone.utc


@pytest.fixture
def dispatcher():
    d = MagicMock()
    d.deliver = AsyncMock(return_value=ReminderChannel.PRIMARY)
    return d


@pytest.fixture
def scheduler(session_factory, dispatcher, preference_service, settings, clock):
    return ReminderScheduler(
        session_factory,
        dispatcher,
        preference_service,
        settings,
        clock=clock,
        arm_timers=False,
    )


@pytest.fixture
def high_priority_payload(event_payload):
    return {**event_payload, "date": "2025-01-17T12:00:00Z", "priority": "high", "location": None}


async def _rows(session_factory, event_id, status=None):
    async with session_factory() as db:
        stmt = select(EventReminder).where(EventReminder.event_id == event_id)
        if status is not None:
            stmt = stmt.where(EventReminder.status == status)
        result = await db.execute(stmt.order_by(EventReminder.reminder_time))
        return list(result.scalars().all())


class TestSchedule:
    @pytest.mark.asyncio
    async def test_persists_plan(self, scheduler, store, session_factory, high_priority_payload):
        event = await store.create(high_priority_payload, "alex")

        assert await scheduler.schedule(event) == 5
        rows = await _rows(session_factory, event.id, ReminderStatus.PENDING)
        assert [r.lead_minutes for r in rows] == [1440, None, 60, 15, 5]
        assert all(r.occurrence_time == event.date for r in rows)

    @pytest.mark.asyncio
    async def test_rescheduling_does_not_duplicate(self, scheduler, store, session_factory, high_priority_payload):
        event = await store.create({**high_priority_payload, "reminder_minutes": 60}, "alex")

        await scheduler.schedule(event)
        await scheduler.schedule(event)

        assert len(await _rows(session_factory, event.id, ReminderStatus.PENDING)) == 5
        assert await _rows(session_factory, event.id, ReminderStatus.CANCELLED) == []

    @pytest.mark.asyncio
    async def test_stale_entries_cancelled(self, scheduler, store, session_factory, high_priority_payload):
        event = await store.create(high_priority_payload, "alex")
        await scheduler.schedule(event)

        outcome = await store.update(event.id, {"priority": "low"}, "alex")
        assert await scheduler.schedule(outcome.event) == 2

        pending = await _rows(session_factory, event.id, ReminderStatus.PENDING)
        assert sorted(r.lead_minutes for r in pending) == [60, 1440]

    @pytest.mark.asyncio
    async def test_clear_reminders(self, scheduler, store, session_factory, high_priority_payload):
        event = await store.create(high_priority_payload, "alex")
        await scheduler.schedule(event)

        assert await scheduler.clear_reminders(event.id) == 5
        assert await _rows(session_factory, event.id, ReminderStatus.PENDING) == []
        assert await scheduler.clear_reminders(event.id) == 0

    @pytest.mark.asyncio
    async def test_past_event_gets_no_plan(self, scheduler, store, event_payload):
        event = await store.create({**event_payload, "date": "2025-01-01T10:00:00Z"}, "alex")
        assert await scheduler.schedule(event) == 0


class TestFire:
    @pytest.mark.asyncio
    async def test_successful_delivery(self, scheduler, store, session_factory, dispatcher, event_payload):
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)

        assert await scheduler.fire(row.id) == ReminderStatus.SENT

        title, body, metadata, _ = dispatcher.deliver.call_args[0]
        assert title == "⏰ Dinner at Luigi's is starting soon!"
        assert "Location: Luigi's, Main St." in body
        assert metadata["event_id"] == event.id
        assert metadata["user_id"] == "alex"

        (row,) = await _rows(session_factory, event.id)
        assert row.status == ReminderStatus.SENT
        assert row.channel == ReminderChannel.PRIMARY

    @pytest.mark.asyncio
    async def test_fallback_channel_recorded(self, scheduler, store, session_factory, dispatcher, event_payload):
        dispatcher.deliver.return_value = ReminderChannel.IN_APP
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)

        await scheduler.fire(row.id)

        (row,) = await _rows(session_factory, event.id)
        assert row.channel == ReminderChannel.IN_APP

    @pytest.mark.asyncio
    async def test_retries_then_fails(self, scheduler, store, session_factory, dispatcher, event_payload, clock):
        dispatcher.deliver.return_value = None
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)

        assert await scheduler.fire(row.id) == ReminderStatus.PENDING
        (retry,) = await _rows(session_factory, event.id)
        assert retry.retry_count == 1
        assert retry.reminder_time == clock.now + timedelta(seconds=60)

        assert await scheduler.fire(row.id) == ReminderStatus.PENDING
        assert await scheduler.fire(row.id) == ReminderStatus.FAILED
        assert await scheduler.fire(row.id) is None
        assert dispatcher.deliver.await_count == 3

    @pytest.mark.asyncio
    async def test_quiet_hours_defer(self, scheduler, store, session_factory, dispatcher, event_payload, clock):
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)
        clock.now = datetime(2025, 1, 15, 23, 30, tzinfo=UTC)

        assert await scheduler.fire(row.id) == ReminderStatus.PENDING

        dispatcher.deliver.assert_not_called()
        (deferred,) = await _rows(session_factory, event.id)
        assert deferred.reminder_time == datetime(2025, 1, 16, 8, 0, tzinfo=UTC)
        assert deferred.retry_count == 0

    @pytest.mark.asyncio
    async def test_deleted_event_not_delivered(self, scheduler, store, session_factory, dispatcher, event_payload):
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)
        await store.soft_delete(event.id, "alex")

        assert await scheduler.fire(row.id) is None
        dispatcher.deliver.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_reminder(self, scheduler):
        assert await scheduler.fire(424242) is None

    @pytest.mark.asyncio
    async def test_crash_is_contained(self, scheduler, store, session_factory, dispatcher, event_payload):
        dispatcher.deliver.side_effect = RuntimeError("boom")
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)

        assert await scheduler.fire(row.id) is None
        (row,) = await _rows(session_factory, event.id)
        assert row.status == ReminderStatus.PENDING


class TestClaims:
    @pytest.mark.asyncio
    async def test_concurrent_fires_deliver_once(
        self, session_factory, preference_service, settings, clock, store, event_payload
    ):
        async def slow_deliver(title, body, metadata, preferences):
            await asyncio.sleep(0.05)
            return ReminderChannel.PRIMARY

        dispatcher = MagicMock()
        dispatcher.deliver = AsyncMock(side_effect=slow_deliver)
        worker_a, worker_b = (
            ReminderScheduler(session_factory, dispatcher, preference_service, settings, clock=clock, arm_timers=False)
            for _ in range(2)
        )
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)

        results = await asyncio.gather(worker_a.fire(row.id), worker_b.fire(row.id))

        assert sorted(results, key=lambda r: r is None) == [ReminderStatus.SENT, None]
        assert dispatcher.deliver.await_count == 1
        (row,) = await _rows(session_factory, event.id)
        assert row.status == ReminderStatus.SENT

    @pytest.mark.asyncio
    async def test_sent_entry_is_not_fired_again(self, scheduler, store, session_factory, dispatcher, event_payload):
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)

        assert await scheduler.fire(row.id) == ReminderStatus.SENT
        assert await scheduler.fire(row.id) is None
        assert dispatcher.deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_stale_claim_returned_to_sweep(self, scheduler, store, session_factory, dispatcher, event_payload, clock):
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        (row,) = await _rows(session_factory, event.id)
        async with session_factory() as db:
            async with db.begin():
                claimed = await db.get(EventReminder, row.id)
                claimed.status = ReminderStatus.SENDING
                claimed.last_attempt = clock.now

        # A fresh claim is left to its owner
        assert await scheduler.dispatch_due(clock.now + timedelta(minutes=10)) == 0
        (row,) = await _rows(session_factory, event.id)
        assert row.status == ReminderStatus.SENDING

        # Past the claim timeout and the fire time, the sweep delivers it
        assert await scheduler.dispatch_due(datetime(2025, 1, 17, 19, tzinfo=UTC)) == 1
        assert dispatcher.deliver.await_count == 1
        (row,) = await _rows(session_factory, event.id)
        assert row.status == ReminderStatus.SENT


class TestSweep:
    @pytest.mark.asyncio
    async def test_only_overdue_entries(self, scheduler, store, session_factory, dispatcher, high_priority_payload, clock):
        event = await store.create(high_priority_payload, "alex")
        await scheduler.schedule(event)

        # The 1440-minute reminder fired at 2025-01-16 12:00; grace is five minutes
        assert await scheduler.dispatch_due(datetime(2025, 1, 16, 12, 3, tzinfo=UTC)) == 0
        assert await scheduler.dispatch_due(datetime(2025, 1, 16, 12, 6, tzinfo=UTC)) == 1
        assert dispatcher.deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_everything_overdue(self, scheduler, store, session_factory, high_priority_payload):
        event = await store.create(high_priority_payload, "alex")
        await scheduler.schedule(event)

        assert await scheduler.dispatch_due(datetime(2025, 1, 18, tzinfo=UTC)) == 5
        assert len(await _rows(session_factory, event.id, ReminderStatus.SENT)) == 5


class TestTimers:
    @pytest.mark.asyncio
    async def test_arm_and_cancel(self, session_factory, dispatcher, preference_service, settings, store, high_priority_payload, clock):
        scheduler = ReminderScheduler(session_factory, dispatcher, preference_service, settings, clock=clock)
        event = await store.create(high_priority_payload, "alex")

        await scheduler.schedule(event)
        assert len(scheduler.armed(event.id)) == 5

        assert scheduler.cancel_timers(event.id) == 5
        assert scheduler.armed(event.id) == set()
        assert scheduler.cancel_timers(event.id) == 0
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_due_timer_fires(self, session_factory, dispatcher, preference_service, settings, store, event_payload, clock):
        scheduler = ReminderScheduler(session_factory, dispatcher, preference_service, settings, clock=clock)
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        clock.now = datetime(2025, 1, 17, 18, 50, tzinfo=UTC)

        assert await scheduler.rearm_pending() == 1
        for _ in range(200):
            if not scheduler.armed(event.id):
                break
            await asyncio.sleep(0.01)

        dispatcher.deliver.assert_awaited_once()
        assert scheduler.armed(event.id) == set()
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_far_future_not_armed(self, session_factory, dispatcher, preference_service, settings, store, event_payload):
        scheduler = ReminderScheduler(session_factory, dispatcher, preference_service, settings)
        event = await store.create({**event_payload, "date": "2099-06-01T10:00:00Z", "reminder_minutes": 60}, "alex")

        await scheduler.rearm_pending()
        assert scheduler.armed(event.id) == set()
