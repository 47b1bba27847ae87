"""Notification preference schemas."""

from datetime import time

from pydantic import BaseModel, Field, field_validator

from keepsake.models.notification_preference import DEFAULT_REMINDER_TIMES
from keepsake.schemas.event import MAX_REMINDER_MINUTES, resolve_timezone

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def _check_reminder_times(v: list[int]) -> list[int]:
    if any(m < 0 or m > MAX_REMINDER_MINUTES for m in v):
        raise ValueError(f"Reminder times must be between 0 and {MAX_REMINDER_MINUTES} minutes")
    return sorted(set(v))


class NotificationPreferences(BaseModel):
    reminder_times: list[int] = Field(default_factory=lambda: list(DEFAULT_REMINDER_TIMES))
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    timezone: str = "UTC"
    push_enabled: bool = True
    in_app_enabled: bool = True

    model_config = {"from_attributes": True}

    @property
    def quiet_start(self) -> time:
        return parse_hhmm(self.quiet_hours_start)

    @property
    def quiet_end(self) -> time:
        return parse_hhmm(self.quiet_hours_end)


class PreferenceUpdate(BaseModel):
    reminder_times: list[int] | None = Field(None, max_length=20)
    quiet_hours_start: str | None = Field(None, pattern=HHMM_PATTERN)
    quiet_hours_end: str | None = Field(None, pattern=HHMM_PATTERN)
    timezone: str | None = None
    push_enabled: bool | None = None
    in_app_enabled: bool | None = None

    model_config = {"extra": "forbid"}

    @field_validator("reminder_times")
    @classmethod
    def check_reminder_times(cls, v: list[int] | None) -> list[int] | None:
        return None if v is None else _check_reminder_times(v)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str | None) -> str | None:
        if v is not None:
            resolve_timezone(v)
        return v
