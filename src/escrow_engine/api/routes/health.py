"""Health check endpoint.

Verifies connectivity to PostgreSQL and Redis, returns structured status.
Redis only backs the trust-score cache, so a Redis outage degrades the
status without failing it.
"""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from escrow_engine.config import APP_VERSION
from escrow_engine.infrastructure.database.engine import _get_engine
from escrow_engine.infrastructure.redis_client import get_redis_or_none
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.challenge import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check() -> HealthResponse:
    db_status = "unknown"
    redis_status = "not configured"

    try:
        async with _get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    redis = get_redis_or_none()
    if redis is not None:
        try:
            await redis.ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    if db_status != "healthy":
        overall = "unhealthy"
    elif redis_status.startswith("unhealthy"):
        overall = "degraded"
    else:
        overall = "ok"

    return HealthResponse(
        status=overall,
        version=APP_VERSION,
        database=db_status,
        redis=redis_status,
    )
