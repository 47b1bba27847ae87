"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from keepsake.config import Settings
from keepsake.models.base import Base
from keepsake.services.event_store import EventStore
from keepsake.services.preference_service import PreferenceService

# Wednesday, outside the default 22:00-08:00 quiet hours
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379/15",
        default_timezone="UTC",
        notification_webhook_url="",
        reminder_retry_delay_seconds=60,
        reminder_max_retries=3,
    )


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory, settings, clock) -> EventStore:
    return EventStore(session_factory, settings, clock=clock)


@pytest.fixture
def preference_service(session_factory) -> PreferenceService:
    return PreferenceService(session_factory, "UTC")


@pytest.fixture
def event_payload() -> dict:
    """A valid one-off event two days after NOW."""
    return {
        "title": "Dinner at Luigi's",
        "date": "2025-01-17T19:00:00+00:00",
        "description": "Table for two",
        "location": "Luigi's, Main St",
        "category": "date",
        "priority": "medium",
    }
