"""Notification preference storage."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keepsake.errors import StorageError
from keepsake.models.notification_preference import NotificationPreference
from keepsake.schemas.preference import NotificationPreferences, PreferenceUpdate

logger = logging.getLogger(__name__)


class PreferenceService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], default_timezone: str = "UTC") -> None:
        self._session_factory = session_factory
        self._default_timezone = default_timezone

    def defaults(self) -> NotificationPreferences:
        return NotificationPreferences(timezone=self._default_timezone)

    async def get(self, user_id: str | None) -> NotificationPreferences:
        """Stored preferences, or defaults for users who never saved any."""
        if not user_id:
            return self.defaults()
        try:
            async with self._session_factory() as db:
                row = await db.get(NotificationPreference, user_id)
        except SQLAlchemyError as e:
            raise StorageError("get_preferences") from e
        if row is None:
            return self.defaults()
        return NotificationPreferences.model_validate(row)

    async def update(self, user_id: str, changes: PreferenceUpdate) -> NotificationPreferences:
        values = changes.model_dump(exclude_unset=True, exclude_none=True)
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        select(NotificationPreference)
                        .where(NotificationPreference.user_id == user_id)
                        .with_for_update()
                    )
                    row = result.scalar_one_or_none()
                    if row is None:
                        row = NotificationPreference(user_id=user_id, **self.defaults().model_dump())
                        db.add(row)
                    for key, value in values.items():
                        setattr(row, key, value)
                    await db.flush()
                    prefs = NotificationPreferences.model_validate(row)
        except SQLAlchemyError as e:
            logger.error("Preference update failed for user %s: %s", user_id, e)
            raise StorageError("update_preferences") from e

        logger.info("Notification preferences updated for user %s: %s", user_id, sorted(values))
        return prefs
