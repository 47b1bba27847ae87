"""Event read/write paths with caching and reminder side effects."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from keepsake.config import Settings
from keepsake.errors import EventValidationError, FieldError
from keepsake.models.base import utcnow
from keepsake.schemas.event import (
    EventCreate,
    EventDetail,
    EventFilters,
    EventPage,
    EventRead,
    EventStats,
    EventUpdate,
    HistoryEntry,
    OccurrenceList,
    OccurrenceRead,
    Pagination,
)
from keepsake.services.event_filters import filter_events, sort_occurrences
from keepsake.services.event_store import EventStore, validate_input
from keepsake.services.occurrences import Occurrence, calculate_occurrences, next_occurrence
from keepsake.services.query_cache import QueryCache, make_key
from keepsake.services.reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "events"
UPCOMING_WINDOW = timedelta(days=365)
UPCOMING_LIMIT = 10


def _occurrence_read(occurrence: Occurrence, event: EventRead) -> OccurrenceRead:
    return OccurrenceRead(
        occurrence_id=occurrence.occurrence_id,
        event_id=occurrence.event_id,
        date=occurrence.date,
        is_original=occurrence.is_original,
        occurrence_index=occurrence.occurrence_index,
        title=event.title,
        category=event.category,
        priority=event.priority,
    )


class EventService:
    """Composition of store, cache, occurrence expansion and reminders.

    Cache and reminder failures are logged and never fail the request that
    triggered them.
    """

    def __init__(
        self,
        store: EventStore,
        cache: QueryCache,
        scheduler: ReminderScheduler | None,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._scheduler = scheduler
        self._settings = settings
        self._clock = clock

    # --- cache helpers ---

    def _cached(self, key: str) -> tuple[Any, int | None]:
        """The cached value (or None) and the cache generation seen before the store read."""
        try:
            generation = self._cache.generation
            return self._cache.get(key), generation
        except Exception as e:
            logger.warning("Query cache read failed for %s: %s", key, e)
            return None, None

    def _remember(self, key: str, value: Any, ttl: float, generation: int | None) -> None:
        if generation is None:
            return
        try:
            self._cache.set(key, value, ttl, generation=generation)
        except Exception as e:
            logger.warning("Query cache write failed for %s: %s", key, e)

    def _invalidate(self) -> None:
        try:
            self._cache.invalidate(CACHE_NAMESPACE)
        except Exception as e:
            logger.warning("Query cache invalidation failed: %s", e)

    async def _plan_reminders(self, event: EventRead, replace: bool = False) -> None:
        if self._scheduler is None:
            return
        try:
            if replace:
                await self._scheduler.clear_reminders(event.id)
            await self._scheduler.schedule(event)
        except Exception:
            logger.exception("Reminder planning failed for event %s", event.id)

    def _cancel_reminders(self, event_id: int) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.cancel_timers(event_id)
        except Exception:
            logger.exception("Reminder cancellation failed for event %s", event_id)

    # --- reads ---

    async def list_events(
        self,
        filters: EventFilters | dict | None = None,
        pagination: Pagination | dict | None = None,
    ) -> EventPage:
        filters = validate_input(EventFilters, filters or {})
        pagination = validate_input(Pagination, pagination or {})
        key = make_key(
            f"{CACHE_NAMESPACE}:list",
            {"filters": filters.signature(), "page": pagination.model_dump()},
        )
        page, generation = self._cached(key)
        if page is None:
            page = await self._store.query(filters, pagination)
            self._remember(key, page, self._list_ttl(filters), generation)
        return page

    def _list_ttl(self, filters: EventFilters) -> float:
        # Windows that ended in the past only change through edits, which invalidate
        if filters.date_to is not None and filters.date_to < self._clock():
            return self._settings.query_cache_historical_ttl_seconds
        return self._settings.query_cache_list_ttl_seconds

    async def count_events(self, filters: EventFilters | dict | None = None) -> int:
        filters = validate_input(EventFilters, filters or {})
        key = make_key(f"{CACHE_NAMESPACE}:count", {"filters": filters.signature()})
        total, generation = self._cached(key)
        if total is None:
            total = await self._store.count(filters)
            self._remember(key, total, self._settings.query_cache_count_ttl_seconds, generation)
        return total

    async def get_event(self, event_id: int) -> EventDetail:
        """The event with its next occurrence and up to ten upcoming ones."""
        key = make_key(f"{CACHE_NAMESPACE}:detail", {"id": event_id})
        detail, generation = self._cached(key)
        if detail is not None:
            return detail

        event = await self._store.get(event_id)
        now = self._clock()
        upcoming = calculate_occurrences(
            event,
            window_start=now,
            window_end=now + UPCOMING_WINDOW,
            max_results=UPCOMING_LIMIT,
            safety_limit=self._settings.occurrence_safety_limit,
        )
        detail = EventDetail(
            event=event,
            next_occurrence=next_occurrence(
                event,
                now,
                lookahead=timedelta(days=self._settings.occurrence_lookahead_days),
                safety_limit=self._settings.occurrence_safety_limit,
            ),
            upcoming_occurrences=[_occurrence_read(o, event) for o in upcoming],
        )
        self._remember(key, detail, self._settings.query_cache_list_ttl_seconds, generation)
        return detail

    async def list_occurrences(
        self,
        window_start: datetime,
        window_end: datetime,
        filters: EventFilters | dict | None = None,
        max_results: int | None = None,
    ) -> OccurrenceList:
        """Occurrences of all matching events inside the window, in date order."""
        filters = validate_input(EventFilters, filters or {})
        max_results = max_results or self._settings.occurrence_default_max_results
        if window_start > window_end:
            raise EventValidationError([FieldError("start", "Window start must not be after its end")])
        if filters.date_from:
            window_start = max(window_start, filters.date_from)
        if filters.date_to:
            window_end = min(window_end, filters.date_to)

        key = make_key(
            f"{CACHE_NAMESPACE}:occurrences",
            {
                "start": window_start.isoformat(),
                "end": window_end.isoformat(),
                "filters": filters.signature(),
                "max": max_results,
            },
        )
        cached, generation = self._cached(key)
        if cached is not None:
            return cached

        events = filter_events(await self._store.candidates(window_start, window_end, filters), filters)
        by_id = {event.id: event for event in events}
        collected: list[Occurrence] = []
        warnings: list[str] = []
        for event in events:
            found = calculate_occurrences(
                event,
                window_start,
                window_end,
                max_results=max_results,
                safety_limit=self._settings.occurrence_safety_limit,
            )
            collected.extend(found.occurrences)
            if found.limit_exceeded is not None:
                warnings.append(str(found.limit_exceeded))

        ordered = sort_occurrences(collected, by_id, filters.sort_direction)[:max_results]
        result = OccurrenceList(
            occurrences=[_occurrence_read(o, by_id[o.event_id]) for o in ordered],
            warnings=warnings,
        )
        self._remember(key, result, self._settings.query_cache_list_ttl_seconds, generation)
        return result

    async def stats(self) -> EventStats:
        key = f"{CACHE_NAMESPACE}:stats"
        stats, generation = self._cached(key)
        if stats is None:
            stats = await self._store.stats()
            self._remember(key, stats, self._settings.query_cache_stats_ttl_seconds, generation)
        return stats

    async def history(self, event_id: int) -> list[HistoryEntry]:
        return await self._store.history(event_id)

    # --- writes ---

    async def create(self, data: EventCreate | dict, actor: str | None) -> EventRead:
        event = await self._store.create(data, actor)
        self._invalidate()
        await self._plan_reminders(event)
        return event

    async def update(self, event_id: int, data: EventUpdate | dict, actor: str | None) -> EventRead:
        outcome = await self._store.update(event_id, data, actor)
        if not outcome.changed:
            return outcome.event
        self._invalidate()
        await self._plan_reminders(outcome.event, replace=True)
        return outcome.event

    async def delete(self, event_id: int, actor: str | None) -> EventRead:
        event = await self._store.soft_delete(event_id, actor)
        self._invalidate()
        self._cancel_reminders(event_id)
        return event

    async def restore(self, event_id: int, actor: str | None) -> EventRead:
        event = await self._store.restore(event_id, actor)
        self._invalidate()
        await self._plan_reminders(event)
        return event
