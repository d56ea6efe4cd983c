"""Sync coordinator: one push + pull exchange for one owner.

Flow of ``synchronize``:

1. Reject a missing owner (``AuthError``) before touching storage.
2. Validate every incoming batch (``RecordValidationError``), still before
   any write, so a rejected exchange has no partial effects.
3. Resolve the cutoff (``lastSync`` or EPOCH) and capture ``now`` once,
   after both the cutoff and the owner's high-water mark.  A ``lastSync``
   from the future is rejected (``RecordValidationError``).
4. Push: one independent upsert per type, run concurrently.  If any type
   fails, the exchange fails with ``PartialSyncError`` naming those types;
   the types that did commit are harmless because a retry re-applies them.
5. Pull: ``updated_at > cutoff`` per known type, run concurrently.
6. Record ``now`` as the owner's bookkeeping watermark.
7. Return ``now`` as the device's next ``lastSync``.

The coordinator keeps no state between exchanges; concurrent exchanges for
the same owner only meet at the row level inside the store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from tandem.sync.errors import AuthError, PartialSyncError, StoreError
from tandem.sync.merge import MergeResolver, PreparedBatch
from tandem.sync.registry import EntityTypeSpec, SyncTypeRegistry
from tandem.sync.store import EntityRecord, EntityStore
from tandem.sync.watermark import (
    EPOCH,
    AccountStore,
    WatermarkTracker,
    resolve_cutoff,
    utc_now,
)

logger = logging.getLogger("tandem.sync.coordinator")


@dataclass
class SyncResult:
    """Outcome of one successful exchange.

    Attributes:
        server_timestamp: The device's next ``lastSync``.
        changes:          Type name -> wire records modified after the cutoff.
        pushed:           Type name -> number of records written.
    """

    server_timestamp: datetime
    changes: dict[str, list[dict[str, Any]]]
    pushed: dict[str, int] = field(default_factory=dict)


def _require_owner(owner_id: str | None) -> str:
    if not owner_id or not str(owner_id).strip():
        raise AuthError("Caller identity is missing")
    return str(owner_id)


def _is_own_echo(record: EntityRecord, batch: PreparedBatch | None, now: datetime) -> bool:
    """Whether ``record`` is this exchange's own write, stored exactly as sent.

    Those are left out of the response: the device already holds that exact
    content.  A record whose stored state differs from what was pushed (merge
    fields picked up another device's keys, or fields the device omitted were
    kept) is sent back so the device converges.
    """
    if batch is None or record.updated_at != now:
        return False
    for write in batch.writes:
        if write.entity_id != record.entity_id:
            continue
        sent_deleted = write.is_deleted if write.is_deleted is not None else False
        return record.data == write.data and record.is_deleted == sent_deleted
    return False


class SyncCoordinator:
    """Orchestrates sync exchanges and resets.

    Args:
        store:    Entity store.
        accounts: Bookkeeping watermark store.
        registry: Entity type table.
        clock:    Server clock; injectable for tests.
    """

    def __init__(
        self,
        store: EntityStore,
        accounts: AccountStore,
        registry: SyncTypeRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._registry = registry
        self._resolver = MergeResolver(registry)
        self._tracker = WatermarkTracker(accounts, clock)

    @property
    def registry(self) -> SyncTypeRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def synchronize(
        self,
        owner_id: str | None,
        client_watermark: datetime | None,
        changes: Mapping[str, Any] | None,
    ) -> SyncResult:
        """Apply a device's changes and return everything it has not seen.

        Raises:
            AuthError:             No owner identity.
            RecordValidationError: Any incoming record is invalid, or
                ``client_watermark`` is ahead of the server clock.
            PartialSyncError:      One or more types failed to write.
            StoreError:            A read or the bookkeeping write failed.
        """
        owner = _require_owner(owner_id)
        batches = self._resolver.prepare_all(changes)

        cutoff = resolve_cutoff(client_watermark)
        now = await self._tracker.issue_instant(owner, cutoff)

        persisted = await self._push(owner, batches, now)
        # Accepted race: rows from a concurrent exchange stamped before ``now``
        # that commit after this pull are not seen by this device until rewritten
        pulled = await self._pull(owner, cutoff)

        changes_out: dict[str, list[dict[str, Any]]] = {}
        for name, records in pulled.items():
            batch = batches.get(name)
            changes_out[name] = [
                r.to_wire()
                for r in records
                if not _is_own_echo(r, batch, now)
            ]

        await self._tracker.advance(owner, now)

        pushed = {name: len(records) for name, records in persisted.items()}
        logger.info(
            "Sync owner=%s cutoff=%s pushed=%d pulled=%d watermark=%s",
            owner,
            cutoff.isoformat(),
            sum(pushed.values()),
            sum(len(v) for v in changes_out.values()),
            now.isoformat(),
        )
        return SyncResult(server_timestamp=now, changes=changes_out, pushed=pushed)

    async def _push(
        self,
        owner_id: str,
        batches: dict[str, PreparedBatch],
        now: datetime,
    ) -> dict[str, list[EntityRecord]]:
        if not batches:
            return {}

        names = list(batches)
        results = await asyncio.gather(
            *(
                self._store.upsert_many(batches[n].spec, owner_id, batches[n].writes, now)
                for n in names
            ),
            return_exceptions=True,
        )

        persisted: dict[str, list[EntityRecord]] = {}
        failed: dict[str, str] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error("Push failed owner=%s type=%s: %s", owner_id, name, result)
                failed[name] = str(result)
            else:
                persisted[name] = result

        if failed:
            raise PartialSyncError(failed)
        return persisted

    async def _pull(
        self, owner_id: str, cutoff: datetime
    ) -> dict[str, list[EntityRecord]]:
        specs = list(self._registry)
        results = await asyncio.gather(
            *(self._store.find_modified_since(s, owner_id, cutoff) for s in specs),
            return_exceptions=True,
        )

        pulled: dict[str, list[EntityRecord]] = {}
        for spec, result in zip(specs, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error("Pull failed owner=%s type=%s: %s", owner_id, spec.name, result)
                if isinstance(result, StoreError):
                    raise result
                raise StoreError(str(result), spec.name) from result
            pulled[spec.name] = result
        return pulled

    # ------------------------------------------------------------------
    # Destructive operations
    # ------------------------------------------------------------------

    async def reset_all(self, owner_id: str | None) -> dict[str, int]:
        """Hard-delete every entity for the owner and rewind to EPOCH.

        The next sync from any device behaves like a first sync.

        Returns:
            Type name -> rows removed.
        """
        owner = _require_owner(owner_id)
        logger.warning("Resetting all sync data for owner=%s", owner)

        specs = list(self._registry)
        results = await asyncio.gather(
            *(self._store.delete_all(s, owner) for s in specs),
            return_exceptions=True,
        )

        removed: dict[str, int] = {}
        failed: dict[str, str] = {}
        for spec, result in zip(specs, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error("Reset failed owner=%s type=%s: %s", owner, spec.name, result)
                failed[spec.name] = str(result)
            else:
                removed[spec.name] = result
        if failed:
            raise PartialSyncError(failed)

        await self._tracker.rewind(owner)
        logger.info("Reset owner=%s removed=%d", owner, sum(removed.values()))
        return removed

    async def purge(self, owner_id: str | None, entity_type: str, entity_id: str) -> bool:
        """Irreversibly delete one entity, outside normal sync.

        No tombstone is left, so other devices are not told; use a soft
        delete (``isDeleted``) through ``synchronize`` for that.

        Raises:
            KeyError: Unknown entity type.
        """
        owner = _require_owner(owner_id)
        spec: EntityTypeSpec = self._registry.get(entity_type)
        deleted = await self._store.delete_one(spec, owner, entity_id)
        if deleted:
            logger.warning("Purged %s/%s for owner=%s", entity_type, entity_id, owner)
        return deleted

    async def last_sync(self, owner_id: str | None) -> datetime:
        """The owner's bookkeeping watermark (EPOCH if never synced)."""
        owner = _require_owner(owner_id)
        return await self._tracker.last_sync(owner) or EPOCH
