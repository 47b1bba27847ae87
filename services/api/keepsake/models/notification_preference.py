"""Per-user notification preferences."""

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from keepsake.models.base import Base, TimestampMixin
from keepsake.models.event import JSONColumn

DEFAULT_REMINDER_TIMES = [15, 60, 1440]


class NotificationPreference(Base, TimestampMixin):
    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    reminder_times: Mapped[list] = mapped_column(
        JSONColumn, nullable=False, default=lambda: list(DEFAULT_REMINDER_TIMES)
    )
    quiet_hours_start: Mapped[str] = mapped_column(String(5), nullable=False, default="22:00")
    quiet_hours_end: Mapped[str] = mapped_column(String(5), nullable=False, default="08:00")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    push_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<NotificationPreference user_id={self.user_id}>"
