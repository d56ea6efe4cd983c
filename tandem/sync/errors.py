"""Error taxonomy for sync exchanges.

Every failure surfaces to the caller as a failed exchange.  The router maps
these onto HTTP status codes; the client never advances its watermark on any
of them, so a retry always fully overlaps the failed attempt.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class SyncError(Exception):
    """Base class for all sync protocol failures."""


class AuthError(SyncError):
    """Caller identity is missing or invalid.  Raised before any storage I/O."""


class StoreError(SyncError):
    """A read or write against the entity store failed.

    Attributes:
        entity_type: Type whose storage call failed, when known.
    """

    def __init__(self, message: str, entity_type: str | None = None) -> None:
        super().__init__(message)
        self.entity_type = entity_type


class PartialSyncError(StoreError):
    """One or more per-type writes failed during the push fan-out.

    Other types may already have been written.  That is safe: a retry
    re-applies the same content and upserts are idempotent.

    Attributes:
        failed_types: entity type -> error message.
    """

    def __init__(self, failed_types: dict[str, str]) -> None:
        names = ", ".join(sorted(failed_types))
        super().__init__(f"Sync failed for entity types: {names}")
        self.failed_types = failed_types


@dataclass
class RecordProblem:
    """One rejected record in an incoming change batch."""

    entity_type: str
    reason: str
    index: int | None = None
    entity_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.entity_type,
            "index": self.index,
            "id": self.entity_id,
            "reason": self.reason,
        }


class RecordValidationError(SyncError):
    """Incoming records failed validation; the whole exchange is rejected."""

    def __init__(self, problems: list[RecordProblem]) -> None:
        super().__init__(
            f"{len(problems)} invalid record(s) in change batch"
        )
        self.problems = problems
