"""Notification preference routes."""

from fastapi import APIRouter, Depends

from keepsake.dependencies import get_current_user_id, get_preference_service
from keepsake.schemas.preference import NotificationPreferences, PreferenceUpdate
from keepsake.services.preference_service import PreferenceService

router = APIRouter(prefix="/preferences", tags=["preferences"])


@router.get("/notifications", response_model=NotificationPreferences)
async def get_notification_preferences(
    user_id: str = Depends(get_current_user_id),
    service: PreferenceService = Depends(get_preference_service),
):
    """Get the current user's reminder preferences, or the defaults."""
    return await service.get(user_id)


@router.put("/notifications", response_model=NotificationPreferences)
async def update_notification_preferences(
    body: PreferenceUpdate,
    user_id: str = Depends(get_current_user_id),
    service: PreferenceService = Depends(get_preference_service),
):
    """Update reminder preferences. Existing reminders keep their plan until the event changes."""
    return await service.update(user_id, body)
