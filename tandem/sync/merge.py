"""Merge resolver: turn incoming client records into writes for the store.

Two granularities of last-write-wins are applied:

- ordinary fields are replaced by the incoming value (record granularity);
- merge fields (key/value maps such as attendance-by-date) are unioned
  key-by-key, incoming value winning per sub-key.

The second rule is what keeps device A's ``history["2024-01-01"]`` alive when
device B later pushes the same record carrying only ``history["2024-01-02"]``.

``merge_record`` is the single definition of these semantics.  The in-memory
store and the client agent call it directly; the Postgres store expresses the
same rules in one ``INSERT ... ON CONFLICT`` statement so that concurrent
writers merge atomically at the row.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable

from tandem.sync.errors import RecordProblem, RecordValidationError
from tandem.sync.registry import EntityTypeSpec, SyncTypeRegistry
from tandem.sync.watermark import parse_client_timestamp

logger = logging.getLogger("tandem.sync.merge")

# Keys the server owns; client-supplied values are discarded.
SERVER_KEYS = frozenset(
    {"_id", "__v", "id", "ownerId", "userId", "updatedAt", "createdAt", "isDeleted"}
)


def merge_record(
    stored: Mapping[str, Any] | None,
    incoming: Mapping[str, Any],
    merge_fields: Iterable[str] = (),
    replace: bool = False,
) -> dict[str, Any]:
    """Combine a stored record body with an incoming one.

    Args:
        stored:       Current body, or None when the record is new.
        incoming:     Body proposed by the client.
        merge_fields: Fields merged key-by-key when both sides are mappings.
        replace:      If True, fields missing from ``incoming`` are dropped
                      (singletons).  Otherwise they are kept (patch semantics).

    Returns:
        The body to persist.  Neither argument is mutated.
    """
    base: Mapping[str, Any] = stored or {}
    merged: dict[str, Any] = dict(incoming) if replace else {**base, **incoming}

    for name in merge_fields:
        if name in incoming:
            old, new = base.get(name), incoming[name]
            if isinstance(old, Mapping) and isinstance(new, Mapping):
                merged[name] = {**old, **new}
            else:
                merged[name] = new
        elif name in base:
            merged[name] = base[name]

    return merged


def collapse_singleton(records: list[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Pick the record with the latest client-reported ``updatedAt``.

    Ties keep the earliest record in batch order.  Records with no usable
    timestamp rank as oldest.
    """
    if not records:
        raise ValueError("cannot collapse an empty batch")
    winner = records[0]
    winner_ts = parse_client_timestamp(winner.get("updatedAt"))
    for record in records[1:]:
        ts = parse_client_timestamp(record.get("updatedAt"))
        if ts > winner_ts:
            winner, winner_ts = record, ts
    return winner


# ---------------------------------------------------------------------------
# Batch preparation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PendingWrite:
    """One record ready for ``EntityStore.upsert_many``.

    Attributes:
        entity_id:  Client-chosen id (for singletons, the id echoed to clients).
        data:       Record body with server-owned keys removed.
        is_deleted: Tombstone flag, or None if the client did not send one.
    """

    entity_id: str
    data: dict[str, Any]
    is_deleted: bool | None = None


@dataclass
class PreparedBatch:
    """Validated writes for one entity type."""

    spec: EntityTypeSpec
    writes: list[PendingWrite] = field(default_factory=list)
    received: int = 0

    @property
    def entity_ids(self) -> set[str]:
        return {w.entity_id for w in self.writes}


def _resolve_id(record: Mapping[str, Any], spec: EntityTypeSpec) -> str | None:
    for key in ("id", "_id"):
        value = record.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            value = str(value).strip()
            if value:
                return value
    if spec.is_singleton:
        return spec.default_id
    return None


def _tombstone_flag(record: Mapping[str, Any]) -> bool | None:
    if "isDeleted" not in record or record["isDeleted"] is None:
        return None
    return bool(record["isDeleted"])


class MergeResolver:
    """Validate change batches and turn them into pending writes.

    Owner binding happens in the store (the authenticated owner is passed
    explicitly and any ``ownerId``/``userId`` in the payload is dropped here),
    and ``updatedAt`` is always the server instant of the exchange.
    """

    def __init__(self, registry: SyncTypeRegistry) -> None:
        self._registry = registry

    def prepare_all(
        self, changes: Mapping[str, Any] | None
    ) -> dict[str, PreparedBatch]:
        """Validate every batch in a request before anything is written.

        Raises:
            RecordValidationError: Listing every problem found, across types.
        """
        problems: list[RecordProblem] = []
        batches: dict[str, PreparedBatch] = {}

        for entity_type, records in (changes or {}).items():
            if entity_type not in self._registry:
                problems.append(
                    RecordProblem(entity_type, "unknown entity type")
                )
                continue
            if records is None:
                continue
            if not isinstance(records, list):
                problems.append(
                    RecordProblem(entity_type, "change batch must be a list")
                )
                continue
            if not records:
                continue
            batch, found = self._prepare(self._registry.get(entity_type), records)
            problems.extend(found)
            batches[entity_type] = batch

        if problems:
            raise RecordValidationError(problems)
        return batches

    def prepare(self, entity_type: str, records: list[Any]) -> PreparedBatch:
        """Validate one type's batch.

        Raises:
            RecordValidationError: If any record is invalid.
        """
        if entity_type not in self._registry:
            raise RecordValidationError(
                [RecordProblem(entity_type, "unknown entity type")]
            )
        batch, problems = self._prepare(self._registry.get(entity_type), records)
        if problems:
            raise RecordValidationError(problems)
        return batch

    def _prepare(
        self, spec: EntityTypeSpec, records: list[Any]
    ) -> tuple[PreparedBatch, list[RecordProblem]]:
        problems: list[RecordProblem] = []
        valid: list[tuple[str, Mapping[str, Any]]] = []

        for index, record in enumerate(records):
            if not isinstance(record, Mapping):
                problems.append(
                    RecordProblem(spec.name, "record must be an object", index)
                )
                continue
            entity_id = _resolve_id(record, spec)
            if entity_id is None:
                problems.append(
                    RecordProblem(spec.name, "record has no id", index)
                )
                continue
            if not _tombstone_flag(record):
                missing = [
                    f for f in spec.required_fields if record.get(f) is None
                ]
                if missing:
                    problems.append(
                        RecordProblem(
                            spec.name,
                            f"missing required field(s): {', '.join(missing)}",
                            index,
                            entity_id,
                        )
                    )
                    continue
            valid.append((entity_id, record))

        batch = PreparedBatch(spec=spec, received=len(records))
        if problems or not valid:
            return batch, problems

        if spec.is_singleton and len(valid) > 1:
            winner = collapse_singleton([record for _, record in valid])
            valid = [pair for pair in valid if pair[1] is winner]
            logger.debug(
                "Collapsed %d %s records to one (id=%s)",
                batch.received,
                spec.name,
                valid[0][0],
            )

        seen: dict[str, int] = {}
        for entity_id, record in valid:
            write = PendingWrite(
                entity_id=entity_id,
                data={k: v for k, v in record.items() if k not in SERVER_KEYS},
                is_deleted=_tombstone_flag(record),
            )
            if entity_id not in seen:
                seen[entity_id] = len(batch.writes)
                batch.writes.append(write)
                continue
            # Same id twice in one batch: fold as two sequential upserts would
            earlier = batch.writes[seen[entity_id]]
            batch.writes[seen[entity_id]] = PendingWrite(
                entity_id=entity_id,
                data=merge_record(earlier.data, write.data, spec.merge_fields),
                is_deleted=(
                    write.is_deleted if write.is_deleted is not None else earlier.is_deleted
                ),
            )

        return batch, problems

