"""Direct entity operations outside the sync exchange."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from tandem.dependencies import Coordinator, CurrentUser
from tandem.routers.sync import raise_for_sync_error
from tandem.sync.errors import SyncError

router = APIRouter(prefix="/entities", tags=["entities"])


@router.delete("/{entity_type}/{entity_id}", status_code=204)
async def purge_entity(
    entity_type: str, entity_id: str, user: CurrentUser, coordinator: Coordinator
) -> None:
    """Irreversibly remove one record.

    Other devices are not notified; soft deletes through ``POST /sync`` are
    the normal way to delete.
    """
    if entity_type not in coordinator.registry:
        raise HTTPException(status_code=404, detail="Unknown entity type")
    try:
        deleted = await coordinator.purge(user.owner_id, entity_type, entity_id)
    except SyncError as exc:
        raise_for_sync_error(exc)

    if not deleted:
        raise HTTPException(status_code=404, detail="Entity not found")
