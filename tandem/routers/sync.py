"""Sync endpoints: the push+pull exchange, reset, status and type table."""

from __future__ import annotations

import logging
from typing import Any, NoReturn

from fastapi import APIRouter, HTTPException

from tandem.dependencies import Coordinator, CurrentUser
from tandem.models.sync import (
    EntityTypeTable,
    ResetResponse,
    SyncRequest,
    SyncResponse,
    SyncStatusRead,
)
from tandem.sync.errors import (
    AuthError,
    PartialSyncError,
    RecordValidationError,
    StoreError,
    SyncError,
)

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("tandem.routers.sync")


def raise_for_sync_error(exc: SyncError) -> NoReturn:
    """Translate a sync-layer failure into the matching HTTP error.

    No failure response carries ``success`` or a ``timestamp``, so a device
    can never mistake it for a completed exchange.
    """
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    if isinstance(exc, RecordValidationError):
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Invalid sync request",
                "problems": [p.to_dict() for p in exc.problems],
            },
        ) from exc
    if isinstance(exc, PartialSyncError):
        raise HTTPException(
            status_code=503,
            detail={
                "message": "Sync failed for some entity types; retry",
                "failedTypes": sorted(exc.failed_types),
            },
        ) from exc
    if isinstance(exc, StoreError):
        raise HTTPException(status_code=503, detail="Sync store unavailable; retry") from exc
    raise HTTPException(status_code=500, detail="Sync failed") from exc


@router.post("", response_model=SyncResponse)
async def synchronize(body: SyncRequest, user: CurrentUser, coordinator: Coordinator) -> Any:
    """Push the device's changes and pull everything it has not seen yet.

    The returned ``timestamp`` is the device's next ``lastSync``.
    """
    try:
        result = await coordinator.synchronize(user.owner_id, body.last_sync, body.changes)
    except SyncError as exc:
        raise_for_sync_error(exc)

    return SyncResponse(timestamp=result.server_timestamp, changes=result.changes)


@router.delete("/reset", response_model=ResetResponse)
async def reset(user: CurrentUser, coordinator: Coordinator) -> Any:
    """Hard-delete all of the caller's synced data.  Irreversible."""
    try:
        removed = await coordinator.reset_all(user.owner_id)
    except SyncError as exc:
        raise_for_sync_error(exc)

    logger.info("Reset for %s removed %d records", user.owner_id, sum(removed.values()))
    return ResetResponse(message="All data cleared from server.")


@router.get("/status", response_model=SyncStatusRead)
async def status(user: CurrentUser, coordinator: Coordinator) -> Any:
    try:
        last_sync = await coordinator.last_sync(user.owner_id)
    except SyncError as exc:
        raise_for_sync_error(exc)

    return SyncStatusRead(owner_id=user.owner_id, last_sync=last_sync)


@router.get("/types", response_model=EntityTypeTable)
async def entity_types(user: CurrentUser, coordinator: Coordinator) -> Any:
    registry = coordinator.registry
    return {"version": registry.version, "types": registry.describe()}
