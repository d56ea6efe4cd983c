"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from tandem.dependencies import AppSettings
from tandem.services.database import DB_ERRORS, get_pool
from tandem.sync.registry import get_sync_registry

router = APIRouter(tags=["system"])
logger = logging.getLogger("tandem.health")


@router.get("/health")
async def health_check(settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check and reports the loaded
    entity type table.
    """
    db_ok = False
    try:
        pool = get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        db_ok = True
    except (RuntimeError, *DB_ERRORS) as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    registry = get_sync_registry()
    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "entityTypes": {"version": registry.version, "count": len(registry)},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
