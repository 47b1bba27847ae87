"""Persistent event repository.

Each mutation runs in a single transaction: the event row, its audit entry
and any reminder rows commit together or not at all. Rows never leave this
module; callers receive detached ``EventRead`` snapshots.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

import jsonschema
from dateutil.relativedelta import relativedelta
from pydantic import ValidationError
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keepsake.config import Settings, get_settings
from keepsake.errors import EventValidationError, FieldError, NotFoundError, StorageError
from keepsake.metrics import event_mutations_total, store_operation_duration_seconds
from keepsake.models.base import utcnow
from keepsake.models.event import Event, EventPriority
from keepsake.models.event_history import EventHistory, HistoryAction
from keepsake.models.event_reminder import EventReminder, ReminderStatus
from keepsake.schemas.event import (
    EventCreate,
    EventFilters,
    EventPage,
    EventRead,
    EventStats,
    EventUpdate,
    HistoryEntry,
    Pagination,
    RecurrenceRule,
    normalize_event_date,
)
from keepsake.services.audit_service import TRACKED_FIELDS, snapshot, to_json_value, write_history
from keepsake.services.event_filters import search_tokens
from keepsake.services.reminder_planner import first_reminder_time, reminder_type_for

logger = logging.getLogger(__name__)

# Shape of the stored recurring_config column, checked on every read
RECURRENCE_CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["frequency"],
    "properties": {
        "frequency": {"enum": ["daily", "weekly", "monthly", "yearly"]},
        "interval": {"type": "integer", "minimum": 1, "maximum": 365},
        "end_date": {"type": ["string", "null"]},
        "max_occurrences": {"type": ["integer", "null"], "minimum": 1, "maximum": 1000},
        "days_of_week": {
            "type": ["array", "null"],
            "items": {"type": "integer", "minimum": 0, "maximum": 6},
        },
        "day_of_month": {"type": ["integer", "null"], "minimum": 1, "maximum": 31},
    },
}

_PRIORITY_RANK = case(
    (Event.priority == EventPriority.HIGH, 0),
    (Event.priority == EventPriority.MEDIUM, 1),
    else_=2,
)


def parse_recurrence(raw: Any, event_id: int | None = None) -> RecurrenceRule | None:
    """Validate a stored recurrence config. Invalid shapes are logged and treated as no rule."""
    if raw is None:
        return None
    try:
        jsonschema.validate(instance=raw, schema=RECURRENCE_CONFIG_SCHEMA)
        return RecurrenceRule.model_validate(raw)
    except (jsonschema.ValidationError, ValidationError) as e:
        logger.warning("Ignoring invalid recurring_config on event %s: %s", event_id, e)
        return None


def event_from_row(row: Event) -> EventRead:
    return EventRead(
        id=row.id,
        title=row.title,
        description=row.description,
        date=row.date,
        timezone=row.timezone,
        is_all_day=row.is_all_day,
        location=row.location,
        category=row.category,
        priority=row.priority,
        is_recurring=row.is_recurring,
        recurring_config=parse_recurrence(row.recurring_config, row.id),
        reminder_minutes=row.reminder_minutes,
        created_at=row.created_at,
        updated_at=row.updated_at,
        created_by=row.created_by,
        updated_by=row.updated_by,
        version=row.version,
        deleted_at=row.deleted_at,
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _search_clause(term: str | None):
    tokens = search_tokens(term)
    if not tokens:
        return None
    haystack = (
        func.coalesce(Event.title, "")
        + " "
        + func.coalesce(Event.description, "")
        + " "
        + func.coalesce(Event.location, "")
    )
    return and_(*(haystack.ilike(f"%{_escape_like(t)}%", escape="\\") for t in tokens))


def _rule_config(value: Any) -> dict | None:
    if value is None:
        return None
    if isinstance(value, RecurrenceRule):
        return value.to_config()
    rule = parse_recurrence(value)
    return rule.to_config() if rule else value


def validate_input(model, data):
    """Coerce raw input into ``model``, raising EventValidationError with field messages."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise EventValidationError.from_pydantic(e) from e


@dataclass
class UpdateOutcome:
    event: EventRead
    changed_fields: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)


class EventStore:
    """Event repository over an async session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock

    # --- writes ---

    async def create(self, data: EventCreate | dict, actor: str | None) -> EventRead:
        """Insert an event, its ``created`` audit entry and its first reminder."""
        draft = validate_input(EventCreate, data)
        now = self._clock()
        with store_operation_duration_seconds.labels(operation="create").time():
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        row = Event(
                            title=draft.title,
                            description=draft.description,
                            date=draft.date,
                            timezone=draft.timezone,
                            is_all_day=draft.is_all_day,
                            location=draft.location,
                            category=draft.category,
                            priority=draft.priority,
                            is_recurring=draft.is_recurring,
                            recurring_config=_rule_config(draft.recurring_config),
                            reminder_minutes=draft.reminder_minutes,
                            created_by=actor,
                            updated_by=actor,
                            version=1,
                            deleted_at=None,
                            created_at=now,
                            updated_at=now,
                        )
                        db.add(row)
                        await db.flush()
                        await write_history(
                            db, row.id, HistoryAction.CREATED, actor, new_values=snapshot(row)
                        )
                        event = event_from_row(row)
                        if draft.reminder_minutes is not None:
                            self._add_first_reminder(db, event, draft.reminder_minutes, now)
            except SQLAlchemyError as e:
                logger.error("Event create failed: %s", e)
                raise StorageError("create") from e

        event_mutations_total.labels(action="created").inc()
        logger.info("Event %s created by %s", event.id, actor)
        return event

    @staticmethod
    def _add_first_reminder(db: AsyncSession, event: EventRead, lead: int, now: datetime) -> None:
        first = first_reminder_time(event, lead, now)
        if first is None:
            return
        fire_time, occurrence = first
        db.add(
            EventReminder(
                event_id=event.id,
                reminder_time=fire_time,
                occurrence_time=occurrence,
                lead_minutes=lead,
                reminder_type=reminder_type_for(lead),
            )
        )

    async def update(self, event_id: int, data: EventUpdate | dict, actor: str | None) -> UpdateOutcome:
        """Apply the fields that actually differ. A payload with no differences writes nothing."""
        patch = validate_input(EventUpdate, data)
        changes = patch.changes()
        now = self._clock()
        with store_operation_duration_seconds.labels(operation="update").time():
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        row = await self._load(db, event_id, deleted=False, for_update=True)
                        before = event_from_row(row)
                        self._merge_checks(row, before, changes)

                        changed: list[str] = []
                        old_values: dict[str, Any] = {}
                        new_values: dict[str, Any] = {}
                        for name in TRACKED_FIELDS:
                            if name not in changes:
                                continue
                            value = changes[name]
                            if name == "recurring_config":
                                value = _rule_config(value)
                            old = to_json_value(
                                _rule_config(row.recurring_config)
                                if name == "recurring_config"
                                else getattr(row, name)
                            )
                            new = to_json_value(value)
                            if old == new:
                                continue
                            changed.append(name)
                            old_values[name] = old
                            new_values[name] = new
                            setattr(row, name, value)

                        if not changed:
                            return UpdateOutcome(before)

                        row.version += 1
                        row.updated_by = actor
                        row.updated_at = now
                        await db.flush()
                        await write_history(
                            db,
                            row.id,
                            HistoryAction.UPDATED,
                            actor,
                            changed_fields=changed,
                            old_values=old_values,
                            new_values=new_values,
                        )
                        event = event_from_row(row)
            except SQLAlchemyError as e:
                logger.error("Event %s update failed: %s", event_id, e)
                raise StorageError("update") from e

        event_mutations_total.labels(action="updated").inc()
        logger.info("Event %s updated by %s: %s", event_id, actor, ", ".join(changed))
        return UpdateOutcome(event, changed)

    @staticmethod
    def _merge_checks(row: Event, before: EventRead, changes: dict[str, Any]) -> None:
        """Cross-field rules that depend on the stored row."""
        errors: list[FieldError] = []
        tz_name = changes.get("timezone") or row.timezone
        if "date" in changes:
            try:
                changes["date"] = normalize_event_date(changes["date"], tz_name)
            except ValueError as e:
                errors.append(FieldError("date", str(e)))
        for name in ("description", "location"):
            if name in changes and changes[name] is not None:
                changes[name] = changes[name].strip() or None

        is_recurring = changes.get("is_recurring", row.is_recurring)
        rule = changes["recurring_config"] if "recurring_config" in changes else before.recurring_config
        if is_recurring and rule is None:
            errors.append(
                FieldError("recurring_config", "Recurring events require a recurrence configuration")
            )
        elif not is_recurring and (rule is not None or row.recurring_config is not None):
            changes["recurring_config"] = None
        if errors:
            raise EventValidationError(errors)

    async def soft_delete(self, event_id: int, actor: str | None) -> EventRead:
        """Mark deleted, audit the pre-delete snapshot and cancel pending reminders."""
        now = self._clock()
        with store_operation_duration_seconds.labels(operation="soft_delete").time():
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        row = await self._load(db, event_id, deleted=False, for_update=True)
                        old_values = snapshot(row)
                        row.deleted_at = now
                        row.version += 1
                        row.updated_by = actor
                        row.updated_at = now
                        await db.execute(
                            update(EventReminder)
                            .where(
                                EventReminder.event_id == event_id,
                                EventReminder.status == ReminderStatus.PENDING,
                            )
                            .values(status=ReminderStatus.CANCELLED)
                        )
                        await write_history(
                            db, event_id, HistoryAction.DELETED, actor, old_values=old_values
                        )
                        event = event_from_row(row)
            except SQLAlchemyError as e:
                logger.error("Event %s delete failed: %s", event_id, e)
                raise StorageError("soft_delete") from e

        event_mutations_total.labels(action="deleted").inc()
        logger.info("Event %s deleted by %s", event_id, actor)
        return event

    async def restore(self, event_id: int, actor: str | None) -> EventRead:
        """Clear ``deleted_at``. Reminders are not recreated here."""
        now = self._clock()
        with store_operation_duration_seconds.labels(operation="restore").time():
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        row = await self._load(db, event_id, deleted=True, for_update=True)
                        row.deleted_at = None
                        row.version += 1
                        row.updated_by = actor
                        row.updated_at = now
                        await db.flush()
                        await write_history(
                            db, event_id, HistoryAction.RESTORED, actor, new_values=snapshot(row)
                        )
                        event = event_from_row(row)
            except SQLAlchemyError as e:
                logger.error("Event %s restore failed: %s", event_id, e)
                raise StorageError("restore") from e

        event_mutations_total.labels(action="restored").inc()
        logger.info("Event %s restored by %s", event_id, actor)
        return event

    async def prune_history(self, older_than: datetime) -> int:
        """Delete audit entries recorded before ``older_than``."""
        with store_operation_duration_seconds.labels(operation="prune_history").time():
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        result = await db.execute(
                            delete(EventHistory).where(EventHistory.changed_at < older_than)
                        )
            except SQLAlchemyError as e:
                logger.error("History pruning failed: %s", e)
                raise StorageError("prune_history") from e
        return result.rowcount or 0

    # --- reads ---

    async def _load(
        self,
        db: AsyncSession,
        event_id: int,
        deleted: bool | None,
        for_update: bool = False,
    ) -> Event:
        stmt = select(Event).where(Event.id == event_id)
        if deleted is True:
            stmt = stmt.where(Event.deleted_at.is_not(None))
        elif deleted is False:
            stmt = stmt.where(Event.deleted_at.is_(None))
        if for_update:
            stmt = stmt.with_for_update()
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise NotFoundError(event_id)
        return row

    async def get(self, event_id: int, include_deleted: bool = False) -> EventRead:
        with store_operation_duration_seconds.labels(operation="get").time():
            try:
                async with self._session_factory() as db:
                    row = await self._load(db, event_id, deleted=None if include_deleted else False)
                    return event_from_row(row)
            except SQLAlchemyError as e:
                raise StorageError("get") from e

    async def history(self, event_id: int) -> list[HistoryEntry]:
        """Audit entries for an event (deleted or not), oldest first."""
        with store_operation_duration_seconds.labels(operation="history").time():
            try:
                async with self._session_factory() as db:
                    await self._load(db, event_id, deleted=None)
                    result = await db.execute(
                        select(EventHistory)
                        .where(EventHistory.event_id == event_id)
                        .order_by(EventHistory.changed_at, EventHistory.id)
                    )
                    return [HistoryEntry.model_validate(h) for h in result.scalars().all()]
            except SQLAlchemyError as e:
                raise StorageError("history") from e

    def _filter_conditions(self, filters: EventFilters, now: datetime) -> list:
        conditions = []
        if not filters.include_deleted:
            conditions.append(Event.deleted_at.is_(None))
        if filters.date_from:
            conditions.append(Event.date >= filters.date_from)
        if filters.date_to:
            conditions.append(Event.date <= filters.date_to)
        if filters.category:
            conditions.append(Event.category == filters.category)
        if filters.priority:
            conditions.append(Event.priority == filters.priority)
        search = _search_clause(filters.search_term)
        if search is not None:
            conditions.append(search)
        if not filters.show_recurring:
            conditions.append(Event.is_recurring == False)  # noqa: E712
        if not filters.show_past:
            conditions.append(Event.date >= now)
        return conditions

    @staticmethod
    def _ordering(filters: EventFilters) -> list:
        if filters.sort_by == "title":
            keys = [func.lower(Event.title), Event.date]
        elif filters.sort_by == "priority":
            keys = [_PRIORITY_RANK, Event.date]
        elif filters.sort_by == "category":
            keys = [Event.category, Event.date]
        else:
            keys = [Event.date, _PRIORITY_RANK]
        keys.append(Event.id)
        if filters.sort_direction == "desc":
            return [k.desc() for k in keys]
        return [k.asc() for k in keys]

    async def query(
        self,
        filters: EventFilters | dict | None = None,
        pagination: Pagination | dict | None = None,
    ) -> EventPage:
        """One page of events matching ``filters`` plus the total match count."""
        filters = validate_input(EventFilters, filters or {})
        pagination = validate_input(Pagination, pagination or {})
        conditions = self._filter_conditions(filters, self._clock())

        with store_operation_duration_seconds.labels(operation="query").time():
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        total = (
                            await db.execute(select(func.count(Event.id)).where(*conditions))
                        ).scalar_one()
                        result = await db.execute(
                            select(Event)
                            .where(*conditions)
                            .order_by(*self._ordering(filters))
                            .offset(pagination.offset)
                            .limit(pagination.per_page)
                        )
                        events = [event_from_row(r) for r in result.scalars().all()]
            except SQLAlchemyError as e:
                logger.error("Event query failed: %s", e)
                raise StorageError("query") from e

        return EventPage(
            events=events,
            total_count=total,
            page=pagination.page,
            per_page=pagination.per_page,
            has_next_page=pagination.offset + len(events) < total,
        )

    async def count(self, filters: EventFilters | dict | None = None) -> int:
        filters = validate_input(EventFilters, filters or {})
        conditions = self._filter_conditions(filters, self._clock())
        with store_operation_duration_seconds.labels(operation="count").time():
            try:
                async with self._session_factory() as db:
                    result = await db.execute(select(func.count(Event.id)).where(*conditions))
                    return result.scalar_one()
            except SQLAlchemyError as e:
                raise StorageError("count") from e

    async def candidates(
        self,
        window_start: datetime,
        window_end: datetime,
        filters: EventFilters | None = None,
    ) -> list[EventRead]:
        """Live events that can produce an occurrence within the window.

        The search term is not applied here; callers match it in memory
        with the filter utility.
        """
        filters = filters or EventFilters()
        conditions = [Event.deleted_at.is_(None)]
        if filters.category:
            conditions.append(Event.category == filters.category)
        if filters.priority:
            conditions.append(Event.priority == filters.priority)
        single = and_(
            Event.is_recurring == False,  # noqa: E712
            Event.date >= window_start,
            Event.date <= window_end,
        )
        if filters.show_recurring:
            conditions.append(or_(single, and_(Event.is_recurring == True, Event.date <= window_end)))  # noqa: E712
        else:
            conditions.append(single)

        with store_operation_duration_seconds.labels(operation="candidates").time():
            try:
                async with self._session_factory() as db:
                    result = await db.execute(
                        select(Event).where(*conditions).order_by(Event.date, Event.id)
                    )
                    return [event_from_row(r) for r in result.scalars().all()]
            except SQLAlchemyError as e:
                raise StorageError("candidates") from e

    async def recurring_without_pending_reminders(self) -> list[EventRead]:
        """Live recurring events with no pending reminder rows."""
        pending = (
            select(EventReminder.id)
            .where(
                EventReminder.event_id == Event.id,
                EventReminder.status == ReminderStatus.PENDING,
            )
            .exists()
        )
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Event).where(
                        Event.deleted_at.is_(None),
                        Event.is_recurring == True,  # noqa: E712
                        ~pending,
                    )
                )
                return [event_from_row(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError("recurring_without_pending_reminders") from e

    def _month_bounds(self, now: datetime) -> tuple[datetime, datetime]:
        tz = ZoneInfo(self._settings.default_timezone)
        local = now.astimezone(tz)
        start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        end = start + relativedelta(months=1)
        return start, end

    async def stats(self) -> EventStats:
        """Dashboard counters and the next upcoming event, read in one transaction."""
        now = self._clock()
        month_start, month_end = self._month_bounds(now)
        live = Event.deleted_at.is_(None)

        with store_operation_duration_seconds.labels(operation="stats").time():
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        counts = (
                            await db.execute(
                                select(
                                    func.count(Event.id),
                                    func.coalesce(func.sum(case((Event.date >= now, 1), else_=0)), 0),
                                    func.coalesce(func.sum(case((Event.date < now, 1), else_=0)), 0),
                                    func.coalesce(
                                        func.sum(case((Event.is_recurring == True, 1), else_=0)), 0  # noqa: E712
                                    ),
                                    func.coalesce(
                                        func.sum(
                                            case(
                                                (
                                                    and_(Event.date >= month_start, Event.date < month_end),
                                                    1,
                                                ),
                                                else_=0,
                                            )
                                        ),
                                        0,
                                    ),
                                ).where(live)
                            )
                        ).one()
                        next_row = (
                            await db.execute(
                                select(Event)
                                .where(live, Event.date >= now)
                                .order_by(Event.date, _PRIORITY_RANK, Event.id)
                                .limit(1)
                            )
                        ).scalar_one_or_none()
            except SQLAlchemyError as e:
                logger.error("Event stats failed: %s", e)
                raise StorageError("stats") from e

        total, upcoming, past, recurring, this_month = (int(v) for v in counts)
        return EventStats(
            total_events=total,
            upcoming_events=upcoming,
            past_events=past,
            recurring_events=recurring,
            events_this_month=this_month,
            next_event=event_from_row(next_row) if next_row is not None else None,
        )

    def retention_cutoff(self) -> datetime | None:
        days = self._settings.audit_retention_days
        if days <= 0:
            return None
        return self._clock() - timedelta(days=days)
