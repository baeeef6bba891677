"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness checks
the database, Redis when the broadcast channel is relayed through it, and
reports live broadcast connection counts.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.dealflow.config import BroadcastBackend, get_settings
from src.dealflow.core.database import get_engine
from src.dealflow.core.redis import ping_redis

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database and (when used) Redis connectivity."""
    settings = get_settings()
    checks: dict = {"database": "ok", "redis": "unused"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if settings.BROADCAST_BACKEND == BroadcastBackend.redis:
        error = await ping_redis()
        checks["redis"] = "error" if error else "ok"
        if error:
            checks["redis_error"] = error

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when every dependency in use answers, else 503."""
    checks = await _check_dependencies()
    all_healthy = checks.get("database") == "ok" and checks.get("redis") in ("ok", "unused")

    registry = getattr(request.app.state, "broadcast_registry", None)
    broadcast = registry.stats() if registry is not None else {"status": "unavailable"}

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
            "broadcast": broadcast,
        },
    )
