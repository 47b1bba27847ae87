"""Tests for the persistent event store (SQLite in memory)."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import InvalidRequestError, SQLAlchemyError

from keepsake.errors import EventValidationError, NotFoundError, StorageError
from keepsake.models.event import Event, EventCategory, EventPriority
from keepsake.models.event_history import HistoryAction
from keepsake.models.event_reminder import EventReminder, ReminderStatus
from keepsake.services.event_store import EventStore

UTC = timezone.utc
EVERYTHING = {"show_past": True, "include_deleted": True}


async def _reminders(session_factory, event_id):
    async with session_factory() as db:
        result = await db.execute(select(EventReminder).where(EventReminder.event_id == event_id))
        return list(result.scalars().all())


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_returns_snapshot(self, store, event_payload, clock):
        event = await store.create(event_payload, "alex")

        assert event.id is not None
        assert event.version == 1
        assert event.created_by == "alex"
        assert event.created_at == clock.now
        assert event.date == datetime(2025, 1, 17, 19, tzinfo=UTC)
        assert event.deleted_at is None

        history = await store.history(event.id)
        assert [h.action for h in history] == [HistoryAction.CREATED]
        assert history[0].new_values["title"] == "Dinner at Luigi's"

    @pytest.mark.asyncio
    async def test_naive_date_uses_event_timezone(self, store, event_payload):
        event_payload.update(date="2025-06-01T19:00:00", timezone="Europe/Paris")
        event = await store.create(event_payload, "alex")
        assert event.date == datetime(2025, 6, 1, 17, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_bare_date_is_midnight(self, store, event_payload):
        event_payload.update(date="2025-06-01", is_all_day=True)
        event = await store.create(event_payload, "alex")
        assert event.date == datetime(2025, 6, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_first_reminder_written_with_event(self, store, session_factory, event_payload):
        event = await store.create({**event_payload, "reminder_minutes": 60}, "alex")

        rows = await _reminders(session_factory, event.id)
        assert len(rows) == 1
        assert rows[0].status == ReminderStatus.PENDING
        assert rows[0].reminder_time == datetime(2025, 1, 17, 18, tzinfo=UTC)
        assert rows[0].occurrence_time == event.date

    @pytest.mark.asyncio
    async def test_out_of_range_interval_writes_nothing(self, store, event_payload):
        event_payload.update(is_recurring=True, recurring_config={"frequency": "weekly", "interval": 400})

        with pytest.raises(EventValidationError) as exc:
            await store.create(event_payload, "alex")

        assert "recurring_config.interval" in exc.value.fields
        assert await store.count(EVERYTHING) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes,field",
        [
            ({"title": "   "}, "title"),
            ({"title": "<b>Bold</b>"}, "title"),
            ({"title": "x" * 101}, "title"),
            ({"date": "1899-12-31"}, "event"),
            ({"date": "not-a-date"}, "date"),
            ({"timezone": "Mars/Olympus"}, "timezone"),
            ({"reminder_minutes": -5}, "reminder_minutes"),
            ({"description": "x" * 1001}, "description"),
        ],
    )
    async def test_invalid_fields(self, store, event_payload, changes, field):
        with pytest.raises(EventValidationError) as exc:
            await store.create({**event_payload, **changes}, "alex")
        assert field in exc.value.fields

    @pytest.mark.asyncio
    async def test_recurring_requires_config(self, store, event_payload):
        with pytest.raises(EventValidationError):
            await store.create({**event_payload, "is_recurring": True}, "alex")

    @pytest.mark.asyncio
    async def test_config_dropped_for_single_event(self, store, event_payload):
        event = await store.create(
            {**event_payload, "is_recurring": False, "recurring_config": {"frequency": "daily"}}, "alex"
        )
        assert event.recurring_config is None

    @pytest.mark.asyncio
    async def test_failed_audit_rolls_back_event(self, store, event_payload):
        with patch(
            "keepsake.services.event_store.write_history",
            AsyncMock(side_effect=SQLAlchemyError("disk full")),
        ):
            with pytest.raises(StorageError) as exc:
                await store.create(event_payload, "alex")

        assert exc.value.operation == "create"
        assert await store.count(EVERYTHING) == 0

    @pytest.mark.asyncio
    async def test_child_collections_are_never_lazy_loaded(self, store, session_factory, event_payload):
        event = await store.create({**event_payload, "reminder_minutes": 15}, "alex")
        async with session_factory() as db:
            row = await db.get(Event, event.id)
            with pytest.raises(InvalidRequestError):
                row.reminders
            with pytest.raises(InvalidRequestError):
                row.history


class TestUpdate:
    @pytest.mark.asyncio
    async def test_changed_fields_are_audited(self, store, event_payload):
        event = await store.create(event_payload, "alex")
        outcome = await store.update(event.id, {"title": "Dinner at Mario's"}, "sam")

        assert outcome.changed_fields == ["title"]
        assert outcome.event.version == 2
        assert outcome.event.updated_by == "sam"

        entry = (await store.history(event.id))[-1]
        assert entry.action == HistoryAction.UPDATED
        assert entry.changed_fields == ["title"]
        assert entry.old_values == {"title": "Dinner at Luigi's"}
        assert entry.new_values == {"title": "Dinner at Mario's"}

    @pytest.mark.asyncio
    async def test_identical_update_is_a_no_op(self, store, event_payload):
        event = await store.create(event_payload, "alex")
        outcome = await store.update(
            event.id, {"title": event.title, "date": "2025-01-17T19:00:00Z"}, "sam"
        )

        assert not outcome.changed
        assert outcome.event.version == 1
        assert len(await store.history(event.id)) == 1

    @pytest.mark.asyncio
    async def test_date_normalised_in_new_timezone(self, store, event_payload):
        event = await store.create(event_payload, "alex")
        outcome = await store.update(
            event.id, {"date": "2025-02-01T10:00:00", "timezone": "Europe/Paris"}, "alex"
        )
        assert outcome.event.date == datetime(2025, 2, 1, 9, tzinfo=UTC)
        assert set(outcome.changed_fields) == {"date", "timezone"}

    @pytest.mark.asyncio
    async def test_turning_off_recurrence_clears_config(self, store, event_payload):
        event = await store.create(
            {**event_payload, "is_recurring": True, "recurring_config": {"frequency": "yearly"}}, "alex"
        )
        outcome = await store.update(event.id, {"is_recurring": False}, "alex")

        assert outcome.event.recurring_config is None
        assert set(outcome.changed_fields) == {"is_recurring", "recurring_config"}

    @pytest.mark.asyncio
    async def test_enabling_recurrence_without_rule_rejected(self, store, event_payload):
        event = await store.create(event_payload, "alex")
        with pytest.raises(EventValidationError) as exc:
            await store.update(event.id, {"is_recurring": True}, "alex")
        assert "recurring_config" in exc.value.fields

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{"title": None}, {"colour": "red"}, {"priority": "urgent"}])
    async def test_invalid_payloads(self, store, event_payload, payload):
        event = await store.create(event_payload, "alex")
        with pytest.raises(EventValidationError):
            await store.update(event.id, payload, "alex")

    @pytest.mark.asyncio
    async def test_missing_event(self, store):
        with pytest.raises(NotFoundError):
            await store.update(999, {"title": "Ghost"}, "alex")

    @pytest.mark.asyncio
    async def test_nullable_fields_can_be_cleared(self, store, event_payload):
        event = await store.create(event_payload, "alex")
        outcome = await store.update(event.id, {"location": None, "description": "  "}, "alex")
        assert outcome.event.location is None
        assert outcome.event.description is None


class TestDeleteRestore:
    @pytest.mark.asyncio
    async def test_round_trip(self, store, event_payload):
        event = await store.create(event_payload, "alex")

        deleted = await store.soft_delete(event.id, "sam")
        assert deleted.deleted_at is not None
        with pytest.raises(NotFoundError):
            await store.get(event.id)
        assert (await store.get(event.id, include_deleted=True)).id == event.id

        restored = await store.restore(event.id, "alex")
        assert restored.deleted_at is None
        assert restored.version == event.version + 2

        actions = [h.action for h in await store.history(event.id)]
        assert actions == [HistoryAction.CREATED, HistoryAction.DELETED, HistoryAction.RESTORED]

    @pytest.mark.asyncio
    async def test_wrong_state_is_not_found(self, store, event_payload):
        event = await store.create(event_payload, "alex")
        with pytest.raises(NotFoundError):
            await store.restore(event.id, "alex")
        await store.soft_delete(event.id, "alex")
        with pytest.raises(NotFoundError):
            await store.soft_delete(event.id, "alex")
        with pytest.raises(NotFoundError):
            await store.update(event.id, {"title": "Too late"}, "alex")

    @pytest.mark.asyncio
    async def test_delete_cancels_pending_reminders(self, store, session_factory, event_payload):
        event = await store.create({**event_payload, "reminder_minutes": 30}, "alex")
        await store.soft_delete(event.id, "alex")

        rows = await _reminders(session_factory, event.id)
        assert [r.status for r in rows] == [ReminderStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_history_of_missing_event(self, store):
        with pytest.raises(NotFoundError):
            await store.history(12345)


class TestQuery:
    @pytest_asyncio.fixture
    async def seeded(self, store):
        specs = [
            ("Beach trip", "2025-01-20T10:00:00Z", "date", "low", "Sunset walk"),
            ("Anniversary", "2025-02-14T19:00:00Z", "anniversary", "high", None),
            ("Movie night", "2025-01-25T20:00:00Z", "date", "medium", "100% popcorn"),
            ("Sam's birthday", "2025-03-02T12:00:00Z", "birthday", "high", None),
            ("Old dinner", "2025-01-02T19:00:00Z", "date", "medium", None),
        ]
        events = []
        for title, when, category, priority, description in specs:
            events.append(
                await store.create(
                    {
                        "title": title,
                        "date": when,
                        "category": category,
                        "priority": priority,
                        "description": description,
                    },
                    "alex",
                )
            )
        return events

    @pytest.mark.asyncio
    async def test_default_hides_past(self, store, seeded):
        page = await store.query()
        assert [e.title for e in page.events] == ["Beach trip", "Movie night", "Anniversary", "Sam's birthday"]
        assert page.total_count == 4

    @pytest.mark.asyncio
    async def test_pagination(self, store, seeded):
        first = await store.query({"show_past": True}, {"page": 1, "per_page": 2})
        last = await store.query({"show_past": True}, {"page": 3, "per_page": 2})

        assert first.total_count == 5
        assert first.has_next_page is True
        assert len(last.events) == 1
        assert last.has_next_page is False

    @pytest.mark.asyncio
    async def test_filters_combine(self, store, seeded):
        page = await store.query({"category": "date", "search_term": "sunset BEACH"})
        assert [e.title for e in page.events] == ["Beach trip"]

    @pytest.mark.asyncio
    async def test_search_escapes_wildcards(self, store, seeded):
        page = await store.query({"search_term": "100%"})
        assert [e.title for e in page.events] == ["Movie night"]

    @pytest.mark.asyncio
    async def test_priority_sort(self, store, seeded):
        page = await store.query({"sort_by": "priority"})
        assert [e.priority for e in page.events] == [
            EventPriority.HIGH,
            EventPriority.HIGH,
            EventPriority.MEDIUM,
            EventPriority.LOW,
        ]

    @pytest.mark.asyncio
    async def test_deleted_only_with_flag(self, store, seeded):
        await store.soft_delete(seeded[0].id, "alex")
        assert await store.count() == 3
        assert await store.count({"include_deleted": True}) == 4

    @pytest.mark.asyncio
    async def test_candidates(self, store, seeded, clock):
        recurring = await store.create(
            {
                "title": "Weekly call",
                "date": "2024-06-01T18:00:00Z",
                "is_recurring": True,
                "recurring_config": {"frequency": "weekly"},
            },
            "alex",
        )
        found = await store.candidates(clock.now, clock.now + timedelta(days=14))
        assert {e.id for e in found} == {recurring.id, seeded[0].id, seeded[2].id}


class TestStats:
    @pytest.mark.asyncio
    async def test_counts_and_next_event(self, store):
        await store.create({"title": "Past", "date": "2025-01-10T10:00:00Z"}, "alex")
        soon = await store.create({"title": "Soon", "date": "2025-01-20T10:00:00Z"}, "alex")
        await store.create(
            {
                "title": "Anniversary",
                "date": "2025-03-01T10:00:00Z",
                "category": "anniversary",
                "is_recurring": True,
                "recurring_config": {"frequency": "yearly"},
            },
            "alex",
        )
        gone = await store.create({"title": "Gone", "date": "2025-01-18T10:00:00Z"}, "alex")
        await store.soft_delete(gone.id, "alex")

        stats = await store.stats()

        assert stats.total_events == 3
        assert stats.upcoming_events == 2
        assert stats.past_events == 1
        assert stats.recurring_events == 1
        assert stats.events_this_month == 2
        assert stats.next_event.id == soon.id

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        stats = await store.stats()
        assert stats.total_events == 0
        assert stats.next_event is None


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_invalid_stored_rule_is_ignored(self, store, session_factory):
        async with session_factory() as db:
            async with db.begin():
                row = Event(
                    title="Corrupt",
                    date=datetime(2025, 2, 1, tzinfo=UTC),
                    is_recurring=True,
                    recurring_config={"frequency": "hourly"},
                    category=EventCategory.OTHER,
                    priority=EventPriority.MEDIUM,
                )
                db.add(row)
        event = await store.get(row.id)
        assert event.recurring_config is None

    @pytest.mark.asyncio
    async def test_prune_history(self, store, event_payload):
        event = await store.create(event_payload, "alex")
        assert await store.prune_history(datetime(2000, 1, 1, tzinfo=UTC)) == 0
        assert await store.prune_history(datetime.now(UTC) + timedelta(days=1)) == 1
        assert await store.history(event.id) == []

    def test_retention_cutoff(self, session_factory, settings, clock):
        store = EventStore(session_factory, settings, clock=clock)
        assert store.retention_cutoff() == clock.now - timedelta(days=settings.audit_retention_days)

        keep_forever = settings.model_copy(update={"audit_retention_days": 0})
        assert EventStore(session_factory, keep_forever, clock=clock).retention_cutoff() is None

    @pytest.mark.asyncio
    async def test_recurring_without_pending_reminders(self, store, event_payload):
        weekly = {**event_payload, "is_recurring": True, "recurring_config": {"frequency": "weekly"}}
        planned = await store.create({**weekly, "title": "Planned", "reminder_minutes": 30}, "alex")
        bare = await store.create({**weekly, "title": "Bare"}, "alex")
        gone = await store.create({**weekly, "title": "Gone"}, "alex")
        await store.create({**event_payload, "title": "One-off"}, "alex")
        await store.soft_delete(gone.id, "alex")

        stale = await store.recurring_without_pending_reminders()

        assert [e.id for e in stale] == [bare.id]
        assert planned.id not in {e.id for e in stale}
