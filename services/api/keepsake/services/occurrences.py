"""Expansion of recurring events into concrete occurrences.

Everything here is pure: no I/O, no clocks. Stepping happens on the local
wall-clock time of the event's timezone so a 19:00 weekly dinner stays at
19:00 across DST changes; results are returned in UTC.

Monthly rules without a target day and yearly rules are computed from the
anchor (anchor + n * interval) rather than from the previous occurrence, so a
31st anchor yields Jan 31, Feb 28, Mar 31, Apr 30 instead of drifting to the
28th after February.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from keepsake.errors import CalculationLimitExceeded
from keepsake.metrics import occurrence_limit_hits_total
from keepsake.schemas.event import EventRead, RecurrenceRule

logger = logging.getLogger(__name__)

SAFETY_LIMIT = 10_000
DEFAULT_LOOKAHEAD = timedelta(days=730)
NEXT_OCCURRENCE_SCAN = 10


@dataclass(frozen=True)
class Occurrence:
    occurrence_id: str
    event_id: int
    date: datetime
    is_original: bool
    occurrence_index: int


@dataclass
class OccurrenceSet:
    occurrences: list[Occurrence] = field(default_factory=list)
    limit_exceeded: CalculationLimitExceeded | None = None

    def __iter__(self):
        return iter(self.occurrences)

    def __len__(self) -> int:
        return len(self.occurrences)


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def _day_index(value: datetime) -> int:
    """Weekday with 0 = Sunday."""
    return (value.weekday() + 1) % 7


def _step(rule: RecurrenceRule, anchor: datetime, current: datetime, index: int) -> datetime:
    """Return the local wall-clock time of occurrence ``index``."""
    if rule.frequency == "daily":
        return current + timedelta(days=rule.interval)

    if rule.frequency == "weekly":
        if not rule.days_of_week:
            return current + timedelta(weeks=rule.interval)
        today = _day_index(current)
        later = [day for day in rule.days_of_week if day > today]
        if later:
            return current + timedelta(days=later[0] - today)
        return current + timedelta(weeks=rule.interval, days=rule.days_of_week[0] - today)

    if rule.frequency == "monthly":
        if rule.day_of_month:
            moved = current + relativedelta(months=rule.interval)
            last_day = calendar.monthrange(moved.year, moved.month)[1]
            return moved.replace(day=min(rule.day_of_month, last_day))
        return anchor + relativedelta(months=rule.interval * index)

    return anchor + relativedelta(years=rule.interval * index)


def calculate_occurrences(
    event: EventRead,
    window_start: datetime,
    window_end: datetime,
    max_results: int = 100,
    safety_limit: int = SAFETY_LIMIT,
) -> OccurrenceSet:
    """Occurrences of ``event`` falling within ``[window_start, window_end]``.

    Occurrences before the window are generated and counted (they consume
    ``max_occurrences`` and the safety budget) but not returned. Hitting the
    safety ceiling returns the partial result with ``limit_exceeded`` set.
    """
    result = OccurrenceSet()
    if max_results <= 0 or window_start > window_end:
        return result

    anchor = event.date
    rule = event.recurring_config if event.is_recurring else None

    if rule is None:
        if window_start <= anchor <= window_end:
            result.occurrences.append(
                Occurrence(
                    occurrence_id=f"{event.id}-original",
                    event_id=event.id,
                    date=anchor,
                    is_original=True,
                    occurrence_index=0,
                )
            )
        return result

    tz = _zone(event.timezone)
    anchor_local = anchor.astimezone(tz).replace(tzinfo=None)
    current = anchor_local
    index = 0

    while True:
        if rule.end_date is not None and current.date() > rule.end_date:
            break
        if rule.max_occurrences is not None and index >= rule.max_occurrences:
            break
        instant = current.replace(tzinfo=tz).astimezone(timezone.utc)
        if instant > window_end:
            break
        if index >= safety_limit:
            logger.warning(
                "Occurrence expansion for event %s hit the safety limit of %d iterations",
                event.id,
                safety_limit,
            )
            occurrence_limit_hits_total.inc()
            result.limit_exceeded = CalculationLimitExceeded(event.id, safety_limit)
            break

        if instant >= window_start:
            result.occurrences.append(
                Occurrence(
                    occurrence_id=f"{event.id}-{index}",
                    event_id=event.id,
                    date=instant,
                    is_original=index == 0,
                    occurrence_index=index,
                )
            )
            if len(result.occurrences) >= max_results:
                break

        index += 1
        try:
            following = _step(rule, anchor_local, current, index)
        except (ValueError, OverflowError):
            # Stepped past the representable calendar
            break
        if following <= current:
            logger.warning("Recurrence rule for event %s does not advance; stopping", event.id)
            break
        current = following

    return result


def next_occurrence(
    event: EventRead,
    after: datetime,
    lookahead: timedelta = DEFAULT_LOOKAHEAD,
    safety_limit: int = SAFETY_LIMIT,
) -> datetime | None:
    """First occurrence strictly after ``after`` within the look-ahead window."""
    found = calculate_occurrences(
        event,
        window_start=after,
        window_end=after + lookahead,
        max_results=NEXT_OCCURRENCE_SCAN,
        safety_limit=safety_limit,
    )
    for occurrence in found:
        if occurrence.date > after:
            return occurrence.date
    return None
