"""Keepsake database models."""

from keepsake.models.event import Event, EventCategory, EventPriority
from keepsake.models.event_history import EventHistory, HistoryAction
from keepsake.models.event_reminder import EventReminder, ReminderChannel, ReminderStatus, ReminderType
from keepsake.models.notification_preference import NotificationPreference

__all__ = [
    "Event",
    "EventCategory",
    "EventPriority",
    "EventHistory",
    "HistoryAction",
    "EventReminder",
    "ReminderChannel",
    "ReminderStatus",
    "ReminderType",
    "NotificationPreference",
]
