"""Event schemas and boundary validation."""

import re
from datetime import date, datetime, time, timezone
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from keepsake.models.event import EventCategory, EventPriority
from keepsake.models.event_history import HistoryAction

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000
MAX_LOCATION_LENGTH = 200
MAX_REMINDER_MINUTES = 10080  # one week
MIN_EVENT_DATE = datetime(1900, 1, 1, tzinfo=timezone.utc)
MAX_EVENT_DATE = datetime(2100, 12, 31, 23, 59, 59, tzinfo=timezone.utc)

_HTML_TAG = re.compile(r"<[^>]*>")

Frequency = Literal["daily", "weekly", "monthly", "yearly"]
SortField = Literal["date", "title", "priority", "category"]


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError("Invalid timezone") from e


def parse_event_date(value: Any, end_of_day: bool = False) -> Any:
    """Accept bare ISO dates ("2025-01-31").

    A bare date is midnight, or the last instant of that day when it closes
    an inclusive range.
    """
    at = time.max if end_of_day else time.min
    if isinstance(value, str) and len(value.strip()) == 10:
        try:
            return datetime.combine(date.fromisoformat(value.strip()), at)
        except ValueError:
            raise ValueError("Invalid date format")
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, at)
    return value


def normalize_event_date(value: datetime, tz_name: str) -> datetime:
    """Attach the event timezone to naive values and enforce the supported range."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=resolve_timezone(tz_name))
    if value < MIN_EVENT_DATE or value > MAX_EVENT_DATE:
        raise ValueError("Date must be between 1900 and 2100")
    return value


def clean_title(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Event title is required")
    if len(value) > MAX_TITLE_LENGTH:
        raise ValueError(f"Title cannot exceed {MAX_TITLE_LENGTH} characters")
    if _HTML_TAG.search(value):
        raise ValueError("Title cannot contain HTML tags")
    return value


class RecurrenceRule(BaseModel):
    """Recurrence configuration, stored as JSON on the event row."""

    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    interval: int = Field(1, ge=1, le=365)
    end_date: date | None = None
    max_occurrences: int | None = Field(None, ge=1, le=1000)
    days_of_week: tuple[int, ...] | None = None  # 0 = Sunday
    day_of_month: int | None = Field(None, ge=1, le=31)

    @field_validator("end_date", mode="before")
    @classmethod
    def parse_end_date(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and len(v) > 10:
            try:
                return datetime.fromisoformat(v.replace("Z", "+00:00")).date()
            except ValueError:
                raise ValueError("Invalid end date for recurring event")
        return v

    @field_validator("days_of_week")
    @classmethod
    def check_days(cls, v: tuple[int, ...] | None) -> tuple[int, ...] | None:
        if v is None:
            return None
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("Days of week must be between 0 (Sunday) and 6 (Saturday)")
        return tuple(sorted(set(v))) or None

    def to_config(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class EventCreate(BaseModel):
    title: str
    date: datetime
    description: str | None = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    timezone: str = "UTC"
    is_all_day: bool = False
    location: str | None = Field(None, max_length=MAX_LOCATION_LENGTH)
    category: EventCategory = EventCategory.OTHER
    priority: EventPriority = EventPriority.MEDIUM
    is_recurring: bool = False
    recurring_config: RecurrenceRule | None = None
    reminder_minutes: int | None = Field(None, ge=0, le=MAX_REMINDER_MINUTES)

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str) -> str:
        return clean_title(v)

    @field_validator("date", mode="before")
    @classmethod
    def check_date(cls, v: Any) -> Any:
        return parse_event_date(v)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        resolve_timezone(v)
        return v

    @field_validator("description", "location")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def check_consistency(self) -> "EventCreate":
        self.date = normalize_event_date(self.date, self.timezone)
        if self.is_recurring and self.recurring_config is None:
            raise ValueError("Recurring events require a recurrence configuration")
        if not self.is_recurring:
            self.recurring_config = None
        return self


# Columns that may never be set to null through an update
NON_NULLABLE_FIELDS = frozenset(
    {"title", "date", "timezone", "is_all_day", "category", "priority", "is_recurring"}
)


class EventUpdate(BaseModel):
    """Partial update. Only fields present in the payload are considered."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    date: datetime | None = None
    description: str | None = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    timezone: str | None = None
    is_all_day: bool | None = None
    location: str | None = Field(None, max_length=MAX_LOCATION_LENGTH)
    category: EventCategory | None = None
    priority: EventPriority | None = None
    is_recurring: bool | None = None
    recurring_config: RecurrenceRule | None = None
    reminder_minutes: int | None = Field(None, ge=0, le=MAX_REMINDER_MINUTES)

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str | None) -> str | None:
        return None if v is None else clean_title(v)

    @field_validator("date", mode="before")
    @classmethod
    def check_date(cls, v: Any) -> Any:
        return parse_event_date(v)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str | None) -> str | None:
        if v is not None:
            resolve_timezone(v)
        return v

    @model_validator(mode="after")
    def check_nulls(self) -> "EventUpdate":
        for name in NON_NULLABLE_FIELDS & self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class EventRead(BaseModel):
    """Detached, read-only view of an event row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    title: str
    description: str | None = None
    date: datetime
    timezone: str = "UTC"
    is_all_day: bool = False
    location: str | None = None
    category: EventCategory = EventCategory.OTHER
    priority: EventPriority = EventPriority.MEDIUM
    is_recurring: bool = False
    recurring_config: RecurrenceRule | None = None
    reminder_minutes: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None
    updated_by: str | None = None
    version: int = 1
    deleted_at: datetime | None = None

    @field_validator("date", "created_at", "updated_at", "deleted_at")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class EventFilters(BaseModel):
    """Closed set of list filters. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    category: EventCategory | None = None
    priority: EventPriority | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search_term: str | None = Field(None, max_length=100)
    show_recurring: bool = True
    show_past: bool = False
    include_deleted: bool = False
    sort_by: SortField = "date"
    sort_direction: Literal["asc", "desc"] = "asc"

    @field_validator("date_from", mode="before")
    @classmethod
    def parse_lower_bound(cls, v: Any) -> Any:
        return parse_event_date(v)

    @field_validator("date_to", mode="before")
    @classmethod
    def parse_upper_bound(cls, v: Any) -> Any:
        return parse_event_date(v, end_of_day=True)

    @field_validator("date_from", "date_to")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("search_term")
    @classmethod
    def strip_search(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def check_range(self) -> "EventFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def signature(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int = Field(1, ge=1)
    per_page: int = Field(20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


class EventPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    events: list[EventRead]
    total_count: int
    page: int
    per_page: int
    has_next_page: bool


class EventStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_events: int = 0
    upcoming_events: int = 0
    past_events: int = 0
    recurring_events: int = 0
    events_this_month: int = 0
    next_event: EventRead | None = None


class OccurrenceRead(BaseModel):
    model_config = ConfigDict(frozen=True)

    occurrence_id: str
    event_id: int
    date: datetime
    is_original: bool
    occurrence_index: int
    title: str | None = None
    category: EventCategory | None = None
    priority: EventPriority | None = None


class OccurrenceList(BaseModel):
    model_config = ConfigDict(frozen=True)

    occurrences: list[OccurrenceRead]
    warnings: list[str] = []


class EventDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: EventRead
    next_occurrence: datetime | None = None
    upcoming_occurrences: list[OccurrenceRead] = []


class HistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: int
    action: HistoryAction
    changed_fields: list[str] | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    changed_by: str | None = None
    changed_at: datetime


class OccurrenceWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    max_results: int = Field(100, ge=1, le=1000)

    @field_validator("start", mode="before")
    @classmethod
    def parse_start(cls, v: Any) -> Any:
        return parse_event_date(v)

    @field_validator("end", mode="before")
    @classmethod
    def parse_end(cls, v: Any) -> Any:
        return parse_event_date(v, end_of_day=True)

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def check_order(self) -> "OccurrenceWindow":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self
