"""Entity store: per-type, owner-scoped persistence for synced records.

All rows live in one ``sync_entities`` table keyed by
``(entity_type, owner_id, entity_id)``; the entity type is the storage
partition.  Every statement filters on the authenticated owner, and the owner
column is always written from the caller's identity, never from the payload.

Singleton types are stored under a fixed row key per owner, so the primary key
itself guarantees at most one row per (type, owner).  The client's id for the
singleton is kept in the body and echoed back.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from tandem.services.database import DB_ERRORS, get_connection, get_pool
from tandem.sync.errors import StoreError
from tandem.sync.merge import PendingWrite, merge_record
from tandem.sync.registry import EntityTypeSpec

logger = logging.getLogger("tandem.sync.store")

SINGLETON_ROW_KEY = "@singleton"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_entities (
    entity_type TEXT NOT NULL,
    owner_id    TEXT NOT NULL,
    entity_id   TEXT NOT NULL,
    data        JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_deleted  BOOLEAN NOT NULL DEFAULT FALSE,
    created_at  TIMESTAMPTZ NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (entity_type, owner_id, entity_id)
);

CREATE INDEX IF NOT EXISTS sync_entities_owner_type_updated_idx
    ON sync_entities (owner_id, entity_type, updated_at);

CREATE TABLE IF NOT EXISTS sync_accounts (
    owner_id    TEXT PRIMARY KEY,
    last_sync   TIMESTAMPTZ NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


@dataclass
class EntityRecord:
    """One stored entity as read back from the store.

    Attributes:
        entity_type: Registry type name.
        entity_id:   Client-chosen id.
        owner_id:    Authenticated owner.
        data:        Type-specific fields.
        is_deleted:  Tombstone flag.
        created_at:  Server time of first write.
        updated_at:  Server time of last write.
    """

    entity_type: str
    entity_id: str
    owner_id: str
    data: dict[str, Any]
    is_deleted: bool
    created_at: datetime
    updated_at: datetime

    def to_wire(self) -> dict[str, Any]:
        """Shape sent to clients: body fields plus the server-owned keys."""
        return {
            **self.data,
            "id": self.entity_id,
            "ownerId": self.owner_id,
            "isDeleted": self.is_deleted,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def row_key(spec: EntityTypeSpec, entity_id: str) -> str:
    return SINGLETON_ROW_KEY if spec.is_singleton else entity_id


def stored_body(spec: EntityTypeSpec, write: PendingWrite) -> dict[str, Any]:
    """Body as persisted; singletons carry their client id inside it."""
    if spec.is_singleton:
        return {**write.data, "id": write.entity_id}
    return dict(write.data)


def _to_record(
    spec: EntityTypeSpec,
    owner_id: str,
    entity_id: str,
    data: Mapping[str, Any],
    is_deleted: bool,
    created_at: datetime,
    updated_at: datetime,
) -> EntityRecord:
    body = dict(data)
    if spec.is_singleton:
        entity_id = str(body.pop("id", None) or spec.default_id or entity_id)
    return EntityRecord(
        entity_type=spec.name,
        entity_id=entity_id,
        owner_id=owner_id,
        data=body,
        is_deleted=is_deleted,
        created_at=created_at,
        updated_at=updated_at,
    )


class EntityStore(ABC):
    """Contract every entity store implements."""

    @abstractmethod
    async def upsert_many(
        self,
        spec: EntityTypeSpec,
        owner_id: str,
        writes: list[PendingWrite],
        now: datetime,
    ) -> list[EntityRecord]:
        """Update-or-insert each write, matching on ``(id, owner_id)``.

        Every row is stamped ``updated_at = now``.  Merge fields declared by
        ``spec`` are combined key-by-key with the stored value, atomically per
        record.

        Returns:
            The persisted records, in write order.

        Raises:
            StoreError: On any storage failure.
        """

    @abstractmethod
    async def find_modified_since(
        self, spec: EntityTypeSpec, owner_id: str, cutoff: datetime
    ) -> list[EntityRecord]:
        """All records with ``updated_at > cutoff``, tombstones included."""

    @abstractmethod
    async def delete_all(self, spec: EntityTypeSpec, owner_id: str) -> int:
        """Hard-remove every record of this type for the owner."""

    @abstractmethod
    async def delete_one(
        self, spec: EntityTypeSpec, owner_id: str, entity_id: str
    ) -> bool:
        """Hard-remove one record.  Returns False if it did not exist."""


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryEntityStore(EntityStore):
    """Dict-backed store with the same semantics as the Postgres one.

    Used by the test-suite and for running the API without a database.
    Each upsert runs without yielding to the event loop, so it is atomic per
    record just like a single SQL statement.
    """

    def __init__(self) -> None:
        # (entity_type, owner_id, row_key) -> record
        self._rows: dict[tuple[str, str, str], EntityRecord] = {}

    async def upsert_many(
        self,
        spec: EntityTypeSpec,
        owner_id: str,
        writes: list[PendingWrite],
        now: datetime,
    ) -> list[EntityRecord]:
        persisted: list[EntityRecord] = []
        for write in writes:
            key = (spec.name, owner_id, row_key(spec, write.entity_id))
            current = self._rows.get(key)
            if current is None:
                body = stored_body(spec, write)
                is_deleted = bool(write.is_deleted)
                created_at = now
            else:
                stored = dict(current.data)
                if spec.is_singleton:
                    stored["id"] = current.entity_id
                body = merge_record(
                    stored,
                    stored_body(spec, write),
                    spec.merge_fields,
                    replace=spec.is_singleton,
                )
                if write.is_deleted is not None:
                    is_deleted = write.is_deleted
                else:
                    is_deleted = False if spec.is_singleton else current.is_deleted
                created_at = current.created_at

            record = _to_record(
                spec, owner_id, key[2], copy.deepcopy(body), is_deleted, created_at, now
            )
            self._rows[key] = record
            persisted.append(copy.deepcopy(record))
        return persisted

    async def find_modified_since(
        self, spec: EntityTypeSpec, owner_id: str, cutoff: datetime
    ) -> list[EntityRecord]:
        found = [
            copy.deepcopy(record)
            for (entity_type, owner, _), record in self._rows.items()
            if entity_type == spec.name
            and owner == owner_id
            and record.updated_at > cutoff
        ]
        return sorted(found, key=lambda r: (r.updated_at, r.entity_id))

    async def delete_all(self, spec: EntityTypeSpec, owner_id: str) -> int:
        doomed = [
            key for key in self._rows if key[0] == spec.name and key[1] == owner_id
        ]
        for key in doomed:
            del self._rows[key]
        return len(doomed)

    async def delete_one(
        self, spec: EntityTypeSpec, owner_id: str, entity_id: str
    ) -> bool:
        key = (spec.name, owner_id, row_key(spec, entity_id))
        record = self._rows.get(key)
        if record is None or record.entity_id != entity_id:
            return False
        del self._rows[key]
        return True

    def count(self, spec: EntityTypeSpec, owner_id: str) -> int:
        return sum(1 for key in self._rows if key[0] == spec.name and key[1] == owner_id)


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------

_FIRST_MERGE_PARAM = 7


def _merge_field_sql(param: str) -> str:
    """SQL fragment producing ``{field: merged}`` for one merge field.

    Mirrors ``merge_record``: both sides objects -> union with the incoming
    sub-keys winning; incoming present -> incoming; else keep stored.
    """
    return f"""CASE
            WHEN (EXCLUDED.data ? {param})
                 AND jsonb_typeof(e.data -> {param}) = 'object'
                 AND jsonb_typeof(EXCLUDED.data -> {param}) = 'object'
                THEN jsonb_build_object({param}, (e.data -> {param}) || (EXCLUDED.data -> {param}))
            WHEN (EXCLUDED.data ? {param})
                THEN jsonb_build_object({param}, EXCLUDED.data -> {param})
            WHEN (e.data ? {param})
                THEN jsonb_build_object({param}, e.data -> {param})
            ELSE '{{}}'::jsonb
        END"""


def build_upsert_sql(spec: EntityTypeSpec) -> str:
    """The single-record upsert statement for a type.

    Parameters: $1 type, $2 owner, $3 row key, $4 body, $5 tombstone flag
    (NULL = not sent), $6 server instant, $7.. merge field names.
    """
    parts = ["EXCLUDED.data"] if spec.is_singleton else ["e.data", "EXCLUDED.data"]
    for offset in range(len(spec.merge_fields)):
        parts.append(_merge_field_sql(f"${_FIRST_MERGE_PARAM + offset}::text"))
    data_expr = "\n        || ".join(parts)

    keep_deleted = "FALSE" if spec.is_singleton else "e.is_deleted"

    return f"""
        INSERT INTO sync_entities AS e (
            entity_type, owner_id, entity_id, data, is_deleted, created_at, updated_at
        ) VALUES ($1, $2, $3, $4::jsonb, COALESCE($5::boolean, FALSE), $6, $6)
        ON CONFLICT (entity_type, owner_id, entity_id) DO UPDATE SET
            data = {data_expr},
            is_deleted = COALESCE($5::boolean, {keep_deleted}),
            updated_at = EXCLUDED.updated_at
        RETURNING entity_id, data, is_deleted, created_at, updated_at
    """


class PostgresEntityStore(EntityStore):
    """Entity store on the ``sync_entities`` table.

    One type's batch is applied in a single transaction; different types use
    different connections and commit independently.
    """

    async def upsert_many(
        self,
        spec: EntityTypeSpec,
        owner_id: str,
        writes: list[PendingWrite],
        now: datetime,
    ) -> list[EntityRecord]:
        if not writes:
            return []
        sql = build_upsert_sql(spec)
        persisted: list[EntityRecord] = []
        try:
            async with get_connection(owner_id=owner_id) as conn:
                for write in writes:
                    row = await conn.fetchrow(
                        sql,
                        spec.name,
                        owner_id,
                        row_key(spec, write.entity_id),
                        stored_body(spec, write),
                        write.is_deleted,
                        now,
                        *spec.merge_fields,
                    )
                    persisted.append(self._record(spec, owner_id, row))
        except DB_ERRORS as exc:
            raise StoreError(f"Upsert failed for {spec.name}: {exc}", spec.name) from exc
        return persisted

    async def find_modified_since(
        self, spec: EntityTypeSpec, owner_id: str, cutoff: datetime
    ) -> list[EntityRecord]:
        try:
            async with get_connection(owner_id=owner_id) as conn:
                rows = await conn.fetch(
                    """
                    SELECT entity_id, data, is_deleted, created_at, updated_at
                    FROM sync_entities
                    WHERE entity_type = $1 AND owner_id = $2 AND updated_at > $3
                    ORDER BY updated_at, entity_id
                    """,
                    spec.name,
                    owner_id,
                    cutoff,
                )
        except DB_ERRORS as exc:
            raise StoreError(f"Read failed for {spec.name}: {exc}", spec.name) from exc
        return [self._record(spec, owner_id, row) for row in rows]

    async def delete_all(self, spec: EntityTypeSpec, owner_id: str) -> int:
        try:
            async with get_connection(owner_id=owner_id) as conn:
                status = await conn.execute(
                    "DELETE FROM sync_entities WHERE entity_type = $1 AND owner_id = $2",
                    spec.name,
                    owner_id,
                )
        except DB_ERRORS as exc:
            raise StoreError(f"Delete failed for {spec.name}: {exc}", spec.name) from exc
        return _affected(status)

    async def delete_one(
        self, spec: EntityTypeSpec, owner_id: str, entity_id: str
    ) -> bool:
        if spec.is_singleton:
            query = """
                DELETE FROM sync_entities
                WHERE entity_type = $1 AND owner_id = $2 AND entity_id = $3
                  AND data ->> 'id' = $4
            """
            args: tuple[Any, ...] = (spec.name, owner_id, SINGLETON_ROW_KEY, entity_id)
        else:
            query = """
                DELETE FROM sync_entities
                WHERE entity_type = $1 AND owner_id = $2 AND entity_id = $3
            """
            args = (spec.name, owner_id, entity_id)
        try:
            async with get_connection(owner_id=owner_id) as conn:
                status = await conn.execute(query, *args)
        except DB_ERRORS as exc:
            raise StoreError(f"Delete failed for {spec.name}: {exc}", spec.name) from exc
        return _affected(status) > 0

    @staticmethod
    def _record(spec: EntityTypeSpec, owner_id: str, row: Mapping[str, Any]) -> EntityRecord:
        return _to_record(
            spec,
            owner_id,
            row["entity_id"],
            row["data"] or {},
            row["is_deleted"],
            row["created_at"],
            row["updated_at"],
        )


def _affected(status: str) -> int:
    """Row count from an asyncpg status string such as ``"DELETE 3"``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


async def ensure_schema() -> None:
    """Create the sync tables if they do not exist.  Called at startup."""
    pool = get_pool()
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Sync schema ensured")
