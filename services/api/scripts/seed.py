"""Seed script: populates dev DB with a handful of sample milestones."""

import asyncio
from datetime import datetime, timedelta, timezone

from keepsake.config import get_settings
from keepsake.dependencies import init_db, shutdown_db
from keepsake.services.event_store import EventStore

SEED_ACTOR = "seed"


def sample_events(now: datetime) -> list[dict]:
    return [
        {
            "title": "Wedding anniversary",
            "date": datetime(now.year - 3, 6, 14, 18, 0, tzinfo=timezone.utc),
            "category": "anniversary",
            "priority": "high",
            "is_recurring": True,
            "recurring_config": {"frequency": "yearly"},
        },
        {
            "title": "Sam's birthday",
            "date": datetime(1996, 2, 29, tzinfo=timezone.utc),
            "category": "birthday",
            "is_all_day": True,
            "is_recurring": True,
            "recurring_config": {"frequency": "yearly"},
        },
        {
            "title": "Date night",
            "date": (now + timedelta(days=2)).replace(hour=19, minute=0, second=0, microsecond=0),
            "category": "date",
            "location": "Luigi's",
            "is_recurring": True,
            "recurring_config": {"frequency": "weekly", "interval": 2},
            "reminder_minutes": 120,
        },
        {
            "title": "First flat viewing",
            "date": (now + timedelta(days=10)).replace(hour=11, minute=0, second=0, microsecond=0),
            "category": "milestone",
            "priority": "low",
        },
    ]


async def seed():
    settings = get_settings()
    _, session_factory = init_db(settings)
    store = EventStore(session_factory, settings)

    if await store.count({"show_past": True, "include_deleted": True}):
        print("Events already present, skipping.")
        await shutdown_db()
        return

    now = datetime.now(timezone.utc)
    for payload in sample_events(now):
        event = await store.create(payload, SEED_ACTOR)
        print(f"Seeded event {event.id}: {event.title}")

    await shutdown_db()


if __name__ == "__main__":
    asyncio.run(seed())
