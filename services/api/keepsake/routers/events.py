"""Event routes."""

from fastapi import APIRouter, Depends, Query

from keepsake.dependencies import get_current_user_id, get_event_service
from keepsake.models.event import EventCategory, EventPriority
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
    OccurrenceWindow,
    Pagination,
)
from keepsake.services.event_service import EventService
from keepsake.services.event_store import validate_input

router = APIRouter(prefix="/events", tags=["events"])


def event_filters(
    category: EventCategory | None = None,
    priority: EventPriority | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    search: str | None = Query(None, alias="q"),
    show_recurring: bool = True,
    show_past: bool = False,
    include_deleted: bool = False,
    sort_by: str = "date",
    sort_direction: str = "asc",
) -> EventFilters:
    raw = {
        "category": category,
        "priority": priority,
        "date_from": date_from,
        "date_to": date_to,
        "search_term": search,
        "show_recurring": show_recurring,
        "show_past": show_past,
        "include_deleted": include_deleted,
        "sort_by": sort_by,
        "sort_direction": sort_direction,
    }
    return validate_input(EventFilters, {k: v for k, v in raw.items() if v is not None})


def pagination(page: int = 1, per_page: int = 20) -> Pagination:
    return validate_input(Pagination, {"page": page, "per_page": per_page})


@router.get("", response_model=EventPage)
async def list_events(
    _: str = Depends(get_current_user_id),
    filters: EventFilters = Depends(event_filters),
    page: Pagination = Depends(pagination),
    service: EventService = Depends(get_event_service),
):
    """List events matching the filters, one page at a time."""
    return await service.list_events(filters, page)


@router.get("/count")
async def count_events(
    _: str = Depends(get_current_user_id),
    filters: EventFilters = Depends(event_filters),
    service: EventService = Depends(get_event_service),
):
    return {"count": await service.count_events(filters)}


@router.get("/stats", response_model=EventStats)
async def event_stats(
    _: str = Depends(get_current_user_id),
    service: EventService = Depends(get_event_service),
):
    """Totals by category, priority and time bucket."""
    return await service.stats()


@router.get("/occurrences", response_model=OccurrenceList)
async def list_occurrences(
    start: str,
    end: str,
    max_results: int = 100,
    _: str = Depends(get_current_user_id),
    filters: EventFilters = Depends(event_filters),
    service: EventService = Depends(get_event_service),
):
    """Expand recurring events into concrete occurrences within [start, end]."""
    window = validate_input(OccurrenceWindow, {"start": start, "end": end, "max_results": max_results})
    return await service.list_occurrences(window.start, window.end, filters, window.max_results)


@router.post("", response_model=EventRead, status_code=201)
async def create_event(
    body: EventCreate,
    user_id: str = Depends(get_current_user_id),
    service: EventService = Depends(get_event_service),
):
    """Create an event and plan its reminders."""
    return await service.create(body, user_id)


@router.get("/{event_id}", response_model=EventDetail)
async def get_event(
    event_id: int,
    _: str = Depends(get_current_user_id),
    service: EventService = Depends(get_event_service),
):
    return await service.get_event(event_id)


@router.patch("/{event_id}", response_model=EventRead)
async def update_event(
    event_id: int,
    body: EventUpdate,
    user_id: str = Depends(get_current_user_id),
    service: EventService = Depends(get_event_service),
):
    """Apply a partial update. Fields not sent are left untouched."""
    return await service.update(event_id, body, user_id)


@router.delete("/{event_id}", response_model=EventRead)
async def delete_event(
    event_id: int,
    user_id: str = Depends(get_current_user_id),
    service: EventService = Depends(get_event_service),
):
    """Soft-delete an event. It can be brought back with ``/restore``."""
    return await service.delete(event_id, user_id)


@router.post("/{event_id}/restore", response_model=EventRead)
async def restore_event(
    event_id: int,
    user_id: str = Depends(get_current_user_id),
    service: EventService = Depends(get_event_service),
):
    return await service.restore(event_id, user_id)


@router.get("/{event_id}/history", response_model=list[HistoryEntry])
async def event_history(
    event_id: int,
    _: str = Depends(get_current_user_id),
    service: EventService = Depends(get_event_service),
):
    """Audit trail for the event, oldest first."""
    return await service.history(event_id)
