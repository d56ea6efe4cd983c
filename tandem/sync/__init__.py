"""Tandem incremental sync engine.

Devices keep a full local copy of a user's data and periodically exchange
changes with the server in a single push+pull round trip keyed by a
server-issued watermark.

Core modules:
    registry:    declarative entity type table (entity_types.yaml)
    merge:       record/field-level last-write-wins and singleton collapse
    store:       owner-scoped persistence with atomic per-record merges
    watermark:   server instants, cutoffs and per-owner bookkeeping
    coordinator: one exchange (validate, push, pull, issue watermark)
    client:      device-side agent with pending set and delta application
"""

from tandem.sync.coordinator import SyncCoordinator, SyncResult
from tandem.sync.errors import (
    AuthError,
    PartialSyncError,
    RecordValidationError,
    StoreError,
    SyncError,
)
from tandem.sync.registry import EntityTypeSpec, SyncTypeRegistry, get_sync_registry

__all__ = [
    "SyncCoordinator",
    "SyncResult",
    "SyncError",
    "AuthError",
    "StoreError",
    "PartialSyncError",
    "RecordValidationError",
    "EntityTypeSpec",
    "SyncTypeRegistry",
    "get_sync_registry",
]
