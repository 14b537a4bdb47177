"""FastAPI application entry point for the Escrow Challenge Engine.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode),
       build the webhook emitter, trust-score and RPC clients.
    2. Running: Serve REST API + MCP tools on a single Uvicorn process.
    3. Shutdown: Close HTTP clients, database and Redis connections.

The MCP server is mounted at /mcp so agents can discover tools alongside the
REST API at /api/v1/*. The timeout sweeper runs as its own process
(escrow_engine.worker.sweeper_worker).

Run with:
    uvicorn escrow_engine.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from escrow_engine.config import APP_VERSION, get_settings
from escrow_engine.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

    # 2. Initialize database
    from escrow_engine.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis (optional: only the trust-score cache uses it)
    from escrow_engine.infrastructure.redis_client import close_redis, init_redis

    redis = None
    try:
        redis = await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Outbound collaborators
    from escrow_engine.infrastructure.events import build_event_emitter
    from escrow_engine.infrastructure.rpc_client import JsonRpcConfirmationClient
    from escrow_engine.infrastructure.trust_score_client import build_trust_score_provider
    from escrow_engine.mcp_server.tools import collaborators

    app.state.event_emitter = build_event_emitter(
        settings.webhook_url,
        secret=settings.webhook_secret,
        timeout_seconds=settings.webhook_timeout_seconds,
    )
    app.state.trust_scores = build_trust_score_provider(
        settings.trust_score_url,
        api_key=settings.trust_score_api_key,
        timeout_seconds=settings.trust_score_timeout_seconds,
        redis=redis,
        cache_ttl_seconds=settings.trust_score_cache_ttl_seconds,
    )
    app.state.confirmations = (
        JsonRpcConfirmationClient(settings.rpc_endpoints, settings.rpc_timeout_seconds)
        if settings.rpc_endpoints
        else None
    )
    collaborators.update(
        event_emitter=app.state.event_emitter, trust_scores=app.state.trust_scores
    )

    logger.info(
        "app.started",
        host=settings.app_host,
        port=settings.app_port,
        webhooks=bool(settings.webhook_url),
        trust_scores=app.state.trust_scores is not None,
        rpc_chains=sorted(settings.rpc_endpoints),
    )

    yield

    # Shutdown
    logger.info("app.shutting_down")
    for client in (app.state.event_emitter, app.state.trust_scores, app.state.confirmations):
        aclose = getattr(client, "aclose", None)
        if aclose is not None:
            await aclose()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Escrow Challenge Engine",
        description=(
            "Two-party challenges with stake escrow, traffic light risk gating, "
            "disputes and timeout enforcement."
        ),
        version=APP_VERSION,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from escrow_engine.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from escrow_engine.api.routes.admin import router as admin_router
    from escrow_engine.api.routes.challenges import router as challenges_router
    from escrow_engine.api.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(challenges_router)
    app.include_router(admin_router)

    # --- MCP Server (mounted as sub-application) ---
    from escrow_engine.mcp_server.tools import mcp

    app.mount("/mcp", mcp.sse_app())

    return app


# The app instance used by Uvicorn
app = create_app()
