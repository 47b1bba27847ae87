"""Reminder planning: which fire times an event gets, and what they say.

Pure functions only; persistence and timers live in ``reminder_scheduler``.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from keepsake.models.event import EventCategory, EventPriority
from keepsake.models.event_reminder import ReminderType
from keepsake.schemas.event import EventRead
from keepsake.schemas.preference import NotificationPreferences
from keepsake.services.occurrences import next_occurrence

ONE_DAY = 1440
ONE_WEEK = 7 * ONE_DAY
SPECIAL_CATEGORIES = frozenset({EventCategory.ANNIVERSARY, EventCategory.BIRTHDAY})

PRIORITY_EXTRA_LEADS: dict[EventPriority, tuple[int, ...]] = {
    EventPriority.HIGH: (5, 15, 60, ONE_DAY),
    EventPriority.MEDIUM: (15, 60),
}
LOW_PRIORITY_MIN_LEAD = 60

TEMPLATES: dict[str, tuple[str, str]] = {
    "starting_soon": (
        "⏰ {event_title} is starting soon!",
        'Your event "{event_title}" starts in {lead} at {event_time}.',
    ),
    "upcoming": (
        "📅 Upcoming: {event_title}",
        "Don't forget! \"{event_title}\" is scheduled for {event_time} (in {lead}).",
    ),
    "advance": (
        "📋 Coming up: {event_title}",
        'Reminder: "{event_title}" is scheduled for {event_time} (in {lead}).',
    ),
    "today": (
        "🎉 Today: {event_title}",
        'Today is the day! "{event_title}" is scheduled for {event_time}.',
    ),
}


@dataclass(frozen=True)
class PlannedReminder:
    fire_time: datetime
    occurrence_date: datetime
    lead_minutes: int | None  # None for the same-day notice
    reminder_type: ReminderType

    @property
    def is_day_of(self) -> bool:
        return self.lead_minutes is None


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def reminder_lead_times(event: EventRead, preferences: NotificationPreferences) -> list[int]:
    """Lead times in minutes, ascending.

    Preferences, then priority (high and medium add leads, low drops anything
    under an hour), then category, then the event's own override, which is
    never dropped.
    """
    leads = set(preferences.reminder_times)
    if event.priority == EventPriority.LOW:
        leads = {lead for lead in leads if lead >= LOW_PRIORITY_MIN_LEAD}
    else:
        leads.update(PRIORITY_EXTRA_LEADS.get(event.priority, ()))
    if event.category in SPECIAL_CATEGORIES:
        leads.update((ONE_DAY, ONE_WEEK))
    if event.reminder_minutes is not None:
        leads.add(event.reminder_minutes)
    return sorted(leads)


def reminder_type_for(lead_minutes: int | None) -> ReminderType:
    if lead_minutes is None:
        return ReminderType.STANDARD
    if lead_minutes <= 15:
        return ReminderType.URGENT
    if lead_minutes >= ONE_DAY:
        return ReminderType.GENTLE
    return ReminderType.STANDARD


def wants_day_of_notice(event: EventRead) -> bool:
    return event.priority == EventPriority.HIGH or event.category in SPECIAL_CATEGORIES


def day_of_notice_time(event: EventRead, occurrence_date: datetime, hour: int = 9) -> datetime:
    """``hour``:00 local time (event timezone) on the occurrence's date, in UTC."""
    tz = _zone(event.timezone)
    local_day = occurrence_date.astimezone(tz).date()
    return datetime.combine(local_day, time(hour), tzinfo=tz).astimezone(timezone.utc)


def target_occurrence(event: EventRead, now: datetime) -> datetime | None:
    if event.is_recurring:
        return next_occurrence(event, now)
    return event.date if event.date > now else None


def plan_reminders(
    event: EventRead,
    preferences: NotificationPreferences,
    now: datetime,
    day_of_hour: int = 9,
) -> list[PlannedReminder]:
    """Future fire times for the event's next occurrence, earliest first."""
    if event.deleted_at is not None:
        return []
    occurrence = target_occurrence(event, now)
    if occurrence is None:
        return []

    planned: dict[datetime, PlannedReminder] = {}
    # Longest lead first so equal fire times keep the earliest notice
    for lead in reversed(reminder_lead_times(event, preferences)):
        fire_time = occurrence - timedelta(minutes=lead)
        if fire_time <= now:
            continue
        planned.setdefault(
            fire_time,
            PlannedReminder(fire_time, occurrence, lead, reminder_type_for(lead)),
        )

    if wants_day_of_notice(event):
        fire_time = day_of_notice_time(event, occurrence, day_of_hour)
        if fire_time > now:
            planned.setdefault(
                fire_time,
                PlannedReminder(fire_time, occurrence, None, ReminderType.STANDARD),
            )

    return sorted(planned.values(), key=lambda p: p.fire_time)


def first_reminder_time(event: EventRead, lead_minutes: int, now: datetime) -> tuple[datetime, datetime] | None:
    """Fire time of the event's own lead for the first occurrence it can still precede.

    Returns ``(fire_time, occurrence_date)`` or None.
    """
    lead = timedelta(minutes=lead_minutes)
    if event.is_recurring:
        occurrence = next_occurrence(event, now + lead)
    else:
        occurrence = event.date if event.date - lead > now else None
    if occurrence is None:
        return None
    return occurrence - lead, occurrence


# --- Quiet hours ---


def in_quiet_hours(moment: datetime, preferences: NotificationPreferences) -> bool:
    """``[start, end)`` in the user's timezone; wraps midnight when start > end."""
    start = preferences.quiet_start
    end = preferences.quiet_end
    if start == end:
        return False
    local = moment.astimezone(_zone(preferences.timezone)).time()
    if start < end:
        return start <= local < end
    return local >= start or local < end


def quiet_hours_end_after(moment: datetime, preferences: NotificationPreferences) -> datetime:
    """When delivery may resume. Returns ``moment`` unchanged outside quiet hours."""
    if not in_quiet_hours(moment, preferences):
        return moment
    tz = _zone(preferences.timezone)
    start = preferences.quiet_start
    end = preferences.quiet_end
    local = moment.astimezone(tz)
    resume_day = local.date()
    if start > end and local.time() >= start:
        resume_day += timedelta(days=1)
    return datetime.combine(resume_day, end, tzinfo=tz).astimezone(timezone.utc)


# --- Rendering ---


def format_lead(minutes: int) -> str:
    if minutes < 60 or minutes % 60:
        count, unit = minutes, "minute"
    elif minutes % ONE_WEEK == 0:
        count, unit = minutes // ONE_WEEK, "week"
    elif minutes % ONE_DAY == 0:
        count, unit = minutes // ONE_DAY, "day"
    else:
        count, unit = minutes // 60, "hour"
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_event_time(moment: datetime, tz_name: str, all_day: bool, time_only: bool = False) -> str:
    local = moment.astimezone(_zone(tz_name))
    clock = local.strftime("%I:%M %p").lstrip("0")
    if time_only:
        return "all day" if all_day else clock
    day = f"{local:%B} {local.day}, {local.year}"
    return day if all_day else f"{day} at {clock}"


def template_for(lead_minutes: int | None) -> str:
    if lead_minutes is None:
        return "today"
    if lead_minutes <= 15:
        return "starting_soon"
    if lead_minutes <= 60:
        return "upcoming"
    return "advance"


def render_notification(
    event: EventRead,
    occurrence_date: datetime,
    lead_minutes: int | None,
    tz_name: str,
) -> tuple[str, str]:
    """Return ``(title, body)`` for a reminder."""
    title_template, body_template = TEMPLATES[template_for(lead_minutes)]
    values = {
        "event_title": event.title,
        "event_time": format_event_time(
            occurrence_date, tz_name, event.is_all_day, time_only=lead_minutes is None
        ),
        "lead": format_lead(lead_minutes) if lead_minutes is not None else "",
    }
    title = title_template.format(**values)
    body = body_template.format(**values)
    if event.location:
        body = f"{body} Location: {event.location}."
    return title, body
