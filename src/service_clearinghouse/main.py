"""ASGI entry point: one process serves the marketplace REST API and its MCP tools.

Routers under /api/v1 cover jobs, quotes, escrow funding and settlement,
disputes, reviews, the ledger and payouts, the payment gateway webhook and
the cron sweeps. The MCP tools are mounted at /mcp and call the same
services, each in its own unit of work.

Startup configures logging, opens the database engine and, when the redis
notification channel is selected, the Redis client. Shutdown closes both.
Tables are created by Alembic migrations, or by ``init_db`` in development.

Run with:
    uv run uvicorn service_clearinghouse.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from service_clearinghouse import __version__
from service_clearinghouse.config import get_settings
from service_clearinghouse.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open shared connections before serving and close them on shutdown."""
    settings = get_settings()

    # Console logs in development, JSON lines elsewhere
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
        notification_channel=settings.notification_channel,
        payment_gateway=settings.payment_gateway_enabled,
    )

    # Database engine and session factory
    from service_clearinghouse.infrastructure.database.engine import close_db, init_db

    await init_db()

    # Redis backs the redis notification channel only
    from service_clearinghouse.infrastructure.redis_client import close_redis, init_redis

    if settings.notification_channel == "redis":
        await init_redis(settings.redis_url)

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Build the app: middleware, REST routers, then the MCP mount."""
    settings = get_settings()

    app = FastAPI(
        title="Service Clearinghouse",
        description=(
            "Escrow-backed marketplace for service jobs: quotes, escrow, "
            "disputes and payouts between requesters and fulfillers."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from service_clearinghouse.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from service_clearinghouse.api.routes.cron import router as cron_router
    from service_clearinghouse.api.routes.disputes import router as disputes_router
    from service_clearinghouse.api.routes.health import router as health_router
    from service_clearinghouse.api.routes.jobs import router as jobs_router
    from service_clearinghouse.api.routes.ledger import router as ledger_router
    from service_clearinghouse.api.routes.payments import router as payments_router
    from service_clearinghouse.api.routes.quotes import router as quotes_router
    from service_clearinghouse.api.routes.reviews import router as reviews_router

    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(quotes_router)
    app.include_router(disputes_router)
    app.include_router(reviews_router)
    app.include_router(ledger_router)
    app.include_router(payments_router)
    app.include_router(cron_router)

    # --- MCP Server (mounted as sub-application) ---
    from service_clearinghouse.mcp_server.tools import mcp

    mcp_app = mcp.sse_app()
    app.mount("/mcp", mcp_app)

    return app


# The app instance used by Uvicorn
app = create_app()
