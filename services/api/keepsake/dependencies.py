"""FastAPI dependency injection and service wiring."""

from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from keepsake.config import Settings, get_settings
from keepsake.services.event_service import EventService
from keepsake.services.event_store import EventStore
from keepsake.services.notification_dispatcher import (
    InAppNotificationQueue,
    RedisInAppQueue,
    ReminderDispatcher,
    get_notification_dispatcher,
)
from keepsake.services.preference_service import PreferenceService
from keepsake.services.query_cache import get_query_cache
from keepsake.services.reminder_scheduler import ReminderScheduler

# Database engine and session factory (initialized in lifespan)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

security = HTTPBearer()


def create_engine(settings: Settings) -> AsyncEngine:
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(settings.database_url, echo=settings.debug)
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


def init_db(settings: Settings) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory. Called from lifespan."""
    global _engine, _session_factory
    _engine = create_engine(settings)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine, _session_factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_db(get_settings())
    return _session_factory


async def shutdown_db() -> None:
    """Dispose of the database engine. Called from lifespan."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@dataclass
class Services:
    """Process-wide service objects, built once by the composition root."""

    events: EventService
    store: EventStore
    scheduler: ReminderScheduler
    preferences: PreferenceService
    dispatcher: ReminderDispatcher


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: aioredis.Redis | None = None,
    arm_timers: bool = True,
) -> Services:
    """Wire store, cache, scheduler and dispatcher together.

    With a Redis client the in-app queue is shared across processes;
    without one it lives in this process only.
    """
    in_app = RedisInAppQueue(redis_client) if redis_client is not None else InAppNotificationQueue()
    dispatcher = get_notification_dispatcher(settings, in_app)
    store = EventStore(session_factory, settings)
    preferences = PreferenceService(session_factory, settings.default_timezone)
    scheduler = ReminderScheduler(
        session_factory,
        dispatcher,
        preferences,
        settings,
        arm_timers=arm_timers,
    )
    events = EventService(store, get_query_cache(settings), scheduler, settings)
    return Services(
        events=events,
        store=store,
        scheduler=scheduler,
        preferences=preferences,
        dispatcher=dispatcher,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_event_service(services: Services = Depends(get_services)) -> EventService:
    return services.events


def get_preference_service(services: Services = Depends(get_services)) -> PreferenceService:
    return services.preferences


def get_dispatcher(services: Services = Depends(get_services)) -> ReminderDispatcher:
    return services.dispatcher


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> str:
    """Extract the actor id from the bearer token. Tokens are issued elsewhere."""
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_private_key.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from e

    user_id = payload.get("sub")
    if not user_id or payload.get("type", "access") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return str(user_id)
