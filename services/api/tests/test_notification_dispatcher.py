"""Unit tests for reminder delivery channels and ReminderDispatcher."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from keepsake.config import Settings
from keepsake.models.event_reminder import ReminderChannel
from keepsake.schemas.preference import NotificationPreferences
from keepsake.services.notification_dispatcher import (
    InAppNotificationQueue,
    RedisInAppQueue,
    ReminderDispatcher,
    WebhookChannel,
    get_notification_dispatcher,
)

WEBHOOK_URL = "https://hooks.example.com/keepsake"


def _mock_http(response=None, error=None):
    """Patch httpx.AsyncClient so ``post`` returns ``response`` or raises ``error``."""
    client = AsyncMock()
    if error is not None:
        client.post.side_effect = error
    else:
        client.post.return_value = response
    patcher = patch("keepsake.services.notification_dispatcher.httpx.AsyncClient")
    mock_cls = patcher.start()
    mock_cls.return_value.__aenter__ = AsyncMock(return_value=client)
    mock_cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return patcher, client


@pytest.fixture
def prefs():
    return NotificationPreferences()


class TestWebhookChannel:
    @pytest.mark.asyncio
    async def test_successful_send(self):
        patcher, client = _mock_http(httpx.Response(204))
        try:
            ok = await WebhookChannel(WEBHOOK_URL).send("Title", "Body", {"event_id": 1})
        finally:
            patcher.stop()

        assert ok is True
        url = client.post.call_args[0][0]
        payload = client.post.call_args[1]["json"]
        assert url == WEBHOOK_URL
        assert payload == {"title": "Title", "body": "Body", "metadata": {"event_id": 1}}

    @pytest.mark.asyncio
    async def test_error_status_returns_false(self):
        patcher, _ = _mock_http(httpx.Response(500, text="upstream down"))
        try:
            assert await WebhookChannel(WEBHOOK_URL).send("Title", "Body") is False
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [httpx.ReadTimeout("slow"), httpx.ConnectError("refused")],
    )
    async def test_transport_errors_return_false(self, error):
        patcher, _ = _mock_http(error=error)
        try:
            assert await WebhookChannel(WEBHOOK_URL).send("Title", "Body") is False
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_long_body_truncated(self):
        patcher, client = _mock_http(httpx.Response(200))
        try:
            await WebhookChannel(WEBHOOK_URL).send("Title", "x" * 5000)
        finally:
            patcher.stop()

        body = client.post.call_args[1]["json"]["body"]
        assert len(body) == 3000
        assert body.endswith("...")

    @pytest.mark.asyncio
    async def test_unconfigured_channel(self):
        channel = WebhookChannel("")
        assert channel.available is False
        assert await channel.send("Title", "Body") is False


class TestInAppQueue:
    @pytest.mark.asyncio
    async def test_per_user_queues(self):
        queue = InAppNotificationQueue()
        await queue.send("A", "a", {"user_id": "alex"})
        await queue.send("B", "b", {"user_id": "sam"})

        assert queue.pending("alex") == 1
        items = await queue.drain("alex")
        assert [i["title"] for i in items] == ["A"]
        assert await queue.drain("alex") == []
        assert queue.pending("sam") == 1

    @pytest.mark.asyncio
    async def test_bounded(self):
        queue = InAppNotificationQueue(max_per_user=2)
        for n in range(3):
            await queue.send(f"N{n}", "", {"user_id": "alex"})
        assert [i["title"] for i in await queue.drain("alex")] == ["N1", "N2"]


class TestRedisInAppQueue:
    @pytest.mark.asyncio
    async def test_send_pipelines_push_trim_expire(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, True, True])
        client = MagicMock()
        client.pipeline.return_value = pipe

        await RedisInAppQueue(client, max_per_user=50).send("A", "a", {"user_id": "alex"})

        key, raw = pipe.rpush.call_args[0]
        assert key == "in_app:alex"
        assert json.loads(raw)["title"] == "A"
        pipe.ltrim.assert_called_once_with("in_app:alex", -50, -1)
        pipe.expire.assert_called_once()

    @pytest.mark.asyncio
    async def test_drain(self):
        stored = json.dumps({"title": "A", "body": "a", "metadata": {}, "queued_at": "2025-01-15T12:00:00+00:00"})
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[[stored], 1])
        client = MagicMock()
        client.pipeline.return_value = pipe

        items = await RedisInAppQueue(client).drain("alex")

        assert items[0]["title"] == "A"
        pipe.delete.assert_called_once_with("in_app:alex")


class TestReminderDispatcher:
    @pytest.fixture
    def primary(self):
        channel = MagicMock()
        channel.available = True
        channel.send = AsyncMock(return_value=True)
        return channel

    @pytest.fixture
    def fallback(self):
        queue = MagicMock()
        queue.send = AsyncMock(return_value=True)
        return queue

    @pytest.mark.asyncio
    async def test_primary_first(self, primary, fallback, prefs):
        channel = await ReminderDispatcher(primary, fallback).deliver("T", "B", {}, prefs)

        assert channel == ReminderChannel.PRIMARY
        fallback.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_when_primary_fails(self, primary, fallback, prefs):
        primary.send.return_value = False
        channel = await ReminderDispatcher(primary, fallback).deliver("T", "B", {}, prefs)

        assert channel == ReminderChannel.IN_APP
        fallback.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_falls_back_when_primary_raises(self, primary, fallback, prefs):
        primary.send.side_effect = RuntimeError("boom")
        assert await ReminderDispatcher(primary, fallback).deliver("T", "B", {}, prefs) == ReminderChannel.IN_APP

    @pytest.mark.asyncio
    async def test_push_disabled_skips_primary(self, primary, fallback):
        prefs = NotificationPreferences(push_enabled=False)
        assert await ReminderDispatcher(primary, fallback).deliver("T", "B", {}, prefs) == ReminderChannel.IN_APP
        primary.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_accepted(self, primary, fallback):
        primary.send.return_value = False
        prefs = NotificationPreferences(in_app_enabled=False)
        assert await ReminderDispatcher(primary, fallback).deliver("T", "B", {}, prefs) is None

    def test_factory_uses_settings(self):
        dispatcher = get_notification_dispatcher(Settings(notification_webhook_url=WEBHOOK_URL))
        assert isinstance(dispatcher.in_app, InAppNotificationQueue)
