"""Event model: the central record of the calendar."""

import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, Enum, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from keepsake.models.base import Base, TimestampMixin, UTCDateTime

JSONColumn = JSON().with_variant(JSONB(), "postgresql")


class EventCategory(str, enum.Enum):
    ANNIVERSARY = "anniversary"
    BIRTHDAY = "birthday"
    DATE = "date"
    MILESTONE = "milestone"
    OTHER = "other"


class EventPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    is_all_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)

    category: Mapped[EventCategory] = mapped_column(
        Enum(EventCategory, name="event_category", values_callable=_enum_values),
        default=EventCategory.OTHER,
        nullable=False,
        index=True,
    )
    priority: Mapped[EventPriority] = mapped_column(
        Enum(EventPriority, name="event_priority", values_callable=_enum_values),
        default=EventPriority.MEDIUM,
        nullable=False,
        index=True,
    )

    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # recurring_config JSON stores:
    # {
    #   "frequency": "daily" | "weekly" | "monthly" | "yearly",
    #   "interval": 1-365,
    #   "end_date": "YYYY-MM-DD" | null,
    #   "max_occurrences": number | null,
    #   "days_of_week": [0-6] | null,   (0 = Sunday)
    #   "day_of_month": 1-31 | null
    # }
    recurring_config: Mapped[dict | None] = mapped_column(JSONColumn, nullable=True)

    reminder_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)

    # Relationships
    history: Mapped[list["EventHistory"]] = relationship(
        "EventHistory", back_populates="event", lazy="raise", passive_deletes=True
    )
    reminders: Mapped[list["EventReminder"]] = relationship(
        "EventReminder", back_populates="event", lazy="raise", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Event {self.id} v{self.version} {self.title!r}>"
