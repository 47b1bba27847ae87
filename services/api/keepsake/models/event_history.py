"""Append-only audit trail of event mutations."""

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from keepsake.models.base import Base, UTCDateTime, utcnow
from keepsake.models.event import JSONColumn


class HistoryAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    RESTORED = "restored"


class EventHistory(Base):
    __tablename__ = "event_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[HistoryAction] = mapped_column(
        Enum(HistoryAction, name="history_action", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    changed_fields: Mapped[list | None] = mapped_column(JSONColumn, nullable=True)
    old_values: Mapped[dict | None] = mapped_column(JSONColumn, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSONColumn, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    changed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )

    # Relationships
    event: Mapped["Event"] = relationship("Event", back_populates="history")

    def __repr__(self) -> str:
        return f"<EventHistory {self.action.value} event_id={self.event_id}>"
