"""Reminder plan entries: one row per planned fire time."""

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from keepsake.models.base import Base, UTCDateTime, utcnow


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    # Claimed by one process for delivery
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReminderType(str, enum.Enum):
    STANDARD = "standard"
    URGENT = "urgent"
    GENTLE = "gentle"


class ReminderChannel(str, enum.Enum):
    PRIMARY = "primary"
    IN_APP = "in_app"


def _values(enum_cls) -> list[str]:
    return [m.value for m in enum_cls]


class EventReminder(Base):
    __tablename__ = "event_reminders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reminder_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    occurrence_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # None marks the same-day notice
    lead_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reminder_type: Mapped[ReminderType] = mapped_column(
        Enum(ReminderType, name="reminder_type", values_callable=_values),
        default=ReminderType.STANDARD,
        nullable=False,
    )
    channel: Mapped[ReminderChannel] = mapped_column(
        Enum(ReminderChannel, name="reminder_channel", values_callable=_values),
        default=ReminderChannel.PRIMARY,
        nullable=False,
    )
    status: Mapped[ReminderStatus] = mapped_column(
        Enum(ReminderStatus, name="reminder_status", values_callable=_values),
        default=ReminderStatus.PENDING,
        nullable=False,
        index=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    # Relationships
    event: Mapped["Event"] = relationship("Event", back_populates="reminders")

    def __repr__(self) -> str:
        return f"<EventReminder {self.id} event_id={self.event_id} status={self.status.value}>"
