"""Reminder delivery: webhook primary channel with an in-app queue fallback."""

import json
import logging
import threading
from collections import defaultdict, deque
from typing import Any

import httpx
import redis.asyncio as aioredis

from keepsake.config import Settings
from keepsake.metrics import reminder_deliveries_total
from keepsake.models.base import utcnow
from keepsake.models.event_reminder import ReminderChannel
from keepsake.schemas.preference import NotificationPreferences

logger = logging.getLogger(__name__)

# Webhook consumers commonly cap message text
_MAX_BODY_LENGTH = 3000


class WebhookChannel:
    """POST reminders as JSON to a configured webhook."""

    def __init__(self, webhook_url: str, timeout: float = 10) -> None:
        self._url = webhook_url
        self._timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self._url)

    async def send(self, title: str, body: str, metadata: dict[str, Any] | None = None) -> bool:
        """Returns True on a 2xx response, False otherwise."""
        if not self.available:
            return False

        if len(body) > _MAX_BODY_LENGTH:
            body = body[: _MAX_BODY_LENGTH - 3] + "..."
        payload = {"title": title[:150], "body": body, "metadata": metadata or {}}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload)
                if response.is_success:
                    logger.info("Webhook reminder sent: %s", title)
                    return True
                logger.warning(
                    "Reminder webhook returned %d: %s",
                    response.status_code,
                    response.text[:200],
                )
                return False
        except httpx.TimeoutException:
            logger.error("Reminder webhook timed out for: %s", title)
            return False
        except httpx.HTTPError as e:
            logger.error("Reminder webhook failed: %s", e)
            return False


class InAppNotificationQueue:
    """Per-user bounded queue drained by the client."""

    def __init__(self, max_per_user: int = 100) -> None:
        self._max_per_user = max_per_user
        self._queues: dict[str, deque] = defaultdict(lambda: deque(maxlen=self._max_per_user))
        self._lock = threading.Lock()

    async def send(self, title: str, body: str, metadata: dict[str, Any] | None = None) -> bool:
        metadata = metadata or {}
        user_id = metadata.get("user_id") or "anonymous"
        item = {
            "title": title,
            "body": body,
            "metadata": metadata,
            "queued_at": utcnow().isoformat(),
        }
        with self._lock:
            self._queues[str(user_id)].append(item)
        logger.info("In-app notification queued for %s: %s", user_id, title)
        return True

    def pending(self, user_id: str) -> int:
        with self._lock:
            return len(self._queues.get(user_id, ()))

    async def drain(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            queue = self._queues.pop(user_id, None)
        return list(queue) if queue else []


class RedisInAppQueue:
    """In-app queue shared between API and worker processes.

    One Redis list per user, trimmed to the newest ``max_per_user`` items.
    """

    def __init__(self, client: aioredis.Redis, max_per_user: int = 100, ttl_seconds: int = 7 * 86400) -> None:
        self._redis = client
        self._max_per_user = max_per_user
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def _key(user_id: str) -> str:
        return f"in_app:{user_id}"

    async def send(self, title: str, body: str, metadata: dict[str, Any] | None = None) -> bool:
        metadata = metadata or {}
        user_id = str(metadata.get("user_id") or "anonymous")
        item = json.dumps(
            {"title": title, "body": body, "metadata": metadata, "queued_at": utcnow().isoformat()},
            default=str,
        )
        key = self._key(user_id)
        pipe = self._redis.pipeline()
        pipe.rpush(key, item)
        pipe.ltrim(key, -self._max_per_user, -1)
        pipe.expire(key, self._ttl_seconds)
        await pipe.execute()
        logger.info("In-app notification queued for %s: %s", user_id, title)
        return True

    async def drain(self, user_id: str) -> list[dict[str, Any]]:
        key = self._key(user_id)
        pipe = self._redis.pipeline()
        pipe.lrange(key, 0, -1)
        pipe.delete(key)
        items, _ = await pipe.execute()
        return [json.loads(item) for item in items]


class ReminderDispatcher:
    """Tries the primary channel, then the in-app fallback."""

    def __init__(self, primary: WebhookChannel, fallback: InAppNotificationQueue | RedisInAppQueue) -> None:
        self._primary = primary
        self._fallback = fallback

    @property
    def in_app(self) -> InAppNotificationQueue | RedisInAppQueue:
        return self._fallback

    async def deliver(
        self,
        title: str,
        body: str,
        metadata: dict[str, Any],
        preferences: NotificationPreferences,
    ) -> ReminderChannel | None:
        """Return the channel that accepted the reminder, or None if none did."""
        if preferences.push_enabled and self._primary.available:
            try:
                if await self._primary.send(title, body, metadata):
                    reminder_deliveries_total.labels(channel="primary", status="sent").inc()
                    return ReminderChannel.PRIMARY
            except Exception as e:
                logger.error("Primary reminder channel raised: %s", e)
            reminder_deliveries_total.labels(channel="primary", status="failed").inc()

        if preferences.in_app_enabled:
            try:
                if await self._fallback.send(title, body, metadata):
                    reminder_deliveries_total.labels(channel="in_app", status="sent").inc()
                    return ReminderChannel.IN_APP
            except Exception as e:
                logger.error("In-app reminder channel raised: %s", e)
            reminder_deliveries_total.labels(channel="in_app", status="failed").inc()

        return None


def get_notification_dispatcher(
    settings: Settings,
    in_app: InAppNotificationQueue | RedisInAppQueue | None = None,
) -> ReminderDispatcher:
    """Factory that wires up a ReminderDispatcher from settings."""
    return ReminderDispatcher(
        primary=WebhookChannel(settings.notification_webhook_url),
        fallback=in_app or InAppNotificationQueue(),
    )
