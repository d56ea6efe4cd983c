"""Wire schemas for the sync endpoints.

Field names on the wire are camelCase to match the mobile client
(``lastSync``, ``ownerId``); Python attributes stay snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from tandem.models.base import TandemBase


class SyncRequest(TandemBase):
    """One push+pull exchange.

    ``changes`` maps entity type name to the records modified on the device
    since its last successful sync.  Records are validated per type by the
    merge resolver, so the schema here stays permissive.
    """

    last_sync: datetime | None = Field(default=None, alias="lastSync")
    changes: dict[str, Any] | None = None


class SyncResponse(TandemBase):
    success: bool = True
    timestamp: datetime
    changes: dict[str, list[dict[str, Any]]]


class ResetResponse(TandemBase):
    success: bool = True
    message: str


class SyncStatusRead(TandemBase):
    owner_id: str = Field(alias="ownerId")
    last_sync: datetime = Field(alias="lastSync")


class EntityTypeRead(TandemBase):
    name: str
    strategy: str
    merge_fields: list[str] = Field(default_factory=list, alias="mergeFields")
    required_fields: list[str] = Field(default_factory=list, alias="requiredFields")
    singleton: bool = False


class EntityTypeTable(TandemBase):
    version: str
    types: list[EntityTypeRead]
