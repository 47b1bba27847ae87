"""Keepsake FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from keepsake.config import Settings, get_settings
from keepsake.dependencies import build_services, init_db, shutdown_db
from keepsake.middleware.error_handler import ErrorHandlerMiddleware, register_exception_handlers
from keepsake.middleware.logging import LoggingMiddleware, setup_logging
from keepsake.routers import events, health, notifications, preferences

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    setup_logging(debug=settings.debug)
    logger.info("Starting Keepsake API (env=%s)", settings.app_env)

    _, session_factory = init_db(settings)
    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    app.state.session_factory = session_factory
    app.state.redis = redis_client
    app.state.services = build_services(settings, session_factory, redis_client)

    try:
        await app.state.services.scheduler.rearm_pending()
    except Exception:
        logger.exception("Could not re-arm pending reminders; the sweep task will pick them up")

    yield

    await app.state.services.scheduler.shutdown()
    await redis_client.aclose()
    await shutdown_db()
    logger.info("Keepsake API shutting down")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Keepsake",
        description="Shared calendar of a couple's milestones with recurring events and reminders",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    register_exception_handlers(app)

    # Middleware: the last one added runs first
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(LoggingMiddleware)

    app.include_router(health.router)
    for module in (events, preferences, notifications):
        app.include_router(module.router, prefix=settings.api_prefix)

    Instrumentator(
        excluded_handlers=["/health", "/health/ready", "/docs", "/redoc", "/openapi.json", "/metrics"],
    ).instrument(app)

    return app


# Default app instance for uvicorn
app = create_app()
