"""Tandem API: FastAPI application entry point.

Run locally:
    uvicorn tandem.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tandem.config import Settings, get_settings
from tandem.middleware.jwt_auth import JWTAuthMiddleware
from tandem.middleware.payload_limit import PayloadLimitMiddleware
from tandem.middleware.rate_limit import RateLimitMiddleware
from tandem.middleware.security import SecurityHeadersMiddleware
from tandem.routers import entities, health, sync
from tandem.services.database import close_pool, init_pool
from tandem.sync.registry import get_sync_registry
from tandem.sync.store import ensure_schema

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("tandem")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting Tandem API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    # Fail fast on a broken entity type table
    registry = get_sync_registry()
    logger.info("Serving %d entity types: %s", len(registry), ", ".join(registry.names))

    await init_pool(settings)
    await ensure_schema()
    yield
    await close_pool()
    logger.info("Tandem API shut down")


# ---------- App factory ----------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Tandem API",
        description=(
            "Offline-first sync service: devices push local changes and pull "
            "everything modified since their last sync."
        ),
        version=settings.app_version,
        debug=settings.debug,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ---------- Middleware (added innermost first; the last one added runs first) ----------

    # CORS, innermost, so preflight is answered after auth lets OPTIONS through
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
    )

    # JWT authentication
    app.add_middleware(JWTAuthMiddleware, settings=settings)

    # Body size cap, counted as the body streams in
    app.add_middleware(PayloadLimitMiddleware, settings=settings)

    # Rate limiting
    app.add_middleware(RateLimitMiddleware, settings=settings)

    # Security headers on every response
    app.add_middleware(SecurityHeadersMiddleware)

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)
    app.include_router(entities.router, prefix=v1_prefix)

    return app


app = create_app()
