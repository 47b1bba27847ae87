"""Audit trail for event mutations."""

import enum
from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from keepsake.models.event import Event
from keepsake.models.event_history import EventHistory, HistoryAction

# Fields captured in audit snapshots and compared by updates
TRACKED_FIELDS = (
    "title",
    "description",
    "date",
    "timezone",
    "is_all_day",
    "location",
    "category",
    "priority",
    "is_recurring",
    "recurring_config",
    "reminder_minutes",
)


def to_json_value(value: Any) -> Any:
    """Normalise a column value into its JSON form for diffing and storage."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    if isinstance(value, dict):
        return {k: to_json_value(v) for k, v in value.items() if v is not None}
    return value


def snapshot(row: Event) -> dict[str, Any]:
    return {name: to_json_value(getattr(row, name)) for name in TRACKED_FIELDS}


async def write_history(
    db: AsyncSession,
    event_id: int,
    action: HistoryAction,
    changed_by: str | None,
    changed_fields: list[str] | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> EventHistory:
    """Append an audit entry in the caller's transaction."""
    entry = EventHistory(
        event_id=event_id,
        action=action,
        changed_fields=changed_fields,
        old_values=old_values,
        new_values=new_values,
        changed_by=changed_by,
    )
    db.add(entry)
    await db.flush()
    return entry
