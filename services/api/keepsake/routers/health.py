"""Liveness, readiness and Prometheus exposition."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy import text

from keepsake.metrics import render_latest

SERVICE_NAME = "keepsake-api"

router = APIRouter(tags=["health"])


@router.get("/")
async def root():
    return {"status": "running", "service": SERVICE_NAME, "version": "1.0.0"}


@router.get("/health")
async def health():
    return {"status": "ok", "service": SERVICE_NAME}


async def _probe_database(request: Request) -> str:
    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        return f"error: {type(e).__name__}"
    return "ok"


async def _probe_redis(request: Request) -> str:
    try:
        await request.app.state.redis.ping()
    except Exception as e:
        return f"error: {type(e).__name__}"
    return "ok"


@router.get("/health/ready")
async def ready(request: Request):
    """Readiness: the database and Redis must both answer."""
    checks = {
        "database": await _probe_database(request),
        "redis": await _probe_redis(request),
    }
    healthy = all(result == "ok" for result in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )


@router.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(content=render_latest(), media_type=CONTENT_TYPE_LATEST)
