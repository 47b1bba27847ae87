"""In-memory filtering and ordering of events and occurrences."""

from typing import Iterable

from keepsake.models.event import EventPriority
from keepsake.schemas.event import EventFilters, EventRead
from keepsake.services.occurrences import Occurrence

# Lower rank sorts first
PRIORITY_RANK: dict[EventPriority, int] = {
    EventPriority.HIGH: 0,
    EventPriority.MEDIUM: 1,
    EventPriority.LOW: 2,
}


def search_tokens(term: str | None) -> list[str]:
    if not term:
        return []
    return term.lower().split()


def searchable_text(event: EventRead) -> str:
    parts = [event.title, event.description, event.location]
    return " ".join(p for p in parts if p).lower()


def matches_search(event: EventRead, term: str | None) -> bool:
    """True when every whitespace-separated token occurs in title, description or location."""
    tokens = search_tokens(term)
    if not tokens:
        return True
    text = searchable_text(event)
    return all(token in text for token in tokens)


def matches(event: EventRead, filters: EventFilters) -> bool:
    """Attribute checks for an occurrence source. Date bounds belong to the expansion window."""
    if event.deleted_at is not None and not filters.include_deleted:
        return False
    if filters.category and event.category != filters.category:
        return False
    if filters.priority and event.priority != filters.priority:
        return False
    if not filters.show_recurring and event.is_recurring:
        return False
    return matches_search(event, filters.search_term)


def filter_events(events: Iterable[EventRead], filters: EventFilters) -> list[EventRead]:
    return [e for e in events if matches(e, filters)]


def sort_occurrences(
    occurrences: Iterable[Occurrence],
    events: dict[int, EventRead],
    direction: str = "asc",
) -> list[Occurrence]:
    """Date order; ties break on priority, event id, then occurrence index."""

    def key(occ: Occurrence):
        event = events.get(occ.event_id)
        rank = PRIORITY_RANK.get(event.priority, len(PRIORITY_RANK)) if event else len(PRIORITY_RANK)
        return (occ.date, rank, occ.event_id, occ.occurrence_index)

    return sorted(occurrences, key=key, reverse=direction == "desc")
