"""In-app notification inbox."""

from fastapi import APIRouter, Depends

from keepsake.dependencies import get_current_user_id, get_dispatcher
from keepsake.services.notification_dispatcher import ReminderDispatcher

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/in-app")
async def drain_in_app(
    user_id: str = Depends(get_current_user_id),
    dispatcher: ReminderDispatcher = Depends(get_dispatcher),
):
    """Return and clear queued in-app notifications for the current user."""
    items = await dispatcher.in_app.drain(user_id)
    return {"notifications": items, "count": len(items)}
