"""Health check endpoint.

Verifies connectivity to the database and (when configured) Redis.
Used by Docker healthchecks, load balancers, and monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from service_clearinghouse import __version__
from service_clearinghouse.infrastructure.database.engine import get_engine
from service_clearinghouse.infrastructure.redis_client import ping_redis
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.schemas.ledger import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check() -> HealthResponse:
    db_status = "healthy"
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        db_status = "unhealthy"
        logger.error("health.db_check_failed", error=str(exc))

    redis_status = await ping_redis()
    healthy = db_status == "healthy" and redis_status != "error"

    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=__version__,
        database=db_status,
        redis=redis_status,
    )
