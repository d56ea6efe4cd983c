"""Device-side sync agent.

Buffers local mutations, runs one push+pull exchange against the API, applies
the returned delta to the local cache and stores the new watermark.

State machine::

    IDLE ──(local mutation)──▶ PUSH_PENDING ──(sync)──▶ SYNCING
      ▲                                                   │
      └──────── success: apply delta, store watermark ────┤
      └──────── failure: keep old watermark + pending ────┘

Nothing here depends on other devices; convergence comes purely from
repeated exchanges with the server.  On-device persistence is abstracted by
``LocalCache``.

Usage::

    agent = SyncAgent("https://api.example.com", token_provider, cache, registry)
    await agent.record_mutation("tasks", {"id": "t1", "title": "Buy milk"})
    await agent.sync()
"""

from __future__ import annotations

import copy
import itertools
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

import httpx

from tandem.sync.merge import merge_record
from tandem.sync.registry import EntityTypeSpec, SyncTypeRegistry
from tandem.sync.watermark import parse_client_timestamp, utc_now

logger = logging.getLogger("tandem.sync.client")

SYNC_PATH = "/api/v1/sync"
RESET_PATH = "/api/v1/sync/reset"

WATERMARK_KEY = "lastSync"
PENDING_KEY = "pending"

TokenProvider = Callable[[], Awaitable[str]]


class SyncState(str, Enum):
    IDLE = "idle"
    PUSH_PENDING = "push_pending"
    SYNCING = "syncing"


class SyncClientError(Exception):
    """An exchange failed; local state (watermark, pending set) is unchanged.

    Attributes:
        status_code: HTTP status if the server answered, else None.
        detail:      Server-provided error detail, if any.
    """

    def __init__(
        self, message: str, status_code: int | None = None, detail: Any = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


# ---------------------------------------------------------------------------
# Local cache
# ---------------------------------------------------------------------------


class LocalCache(ABC):
    """On-device storage capability.  Records are plain JSON-able dicts."""

    @abstractmethod
    async def load(self, entity_type: str) -> list[dict[str, Any]]:
        """All local records of a type (a singleton type holds at most one)."""

    @abstractmethod
    async def save(self, entity_type: str, records: list[dict[str, Any]]) -> None:
        """Replace all local records of a type."""

    @abstractmethod
    async def get_meta(self, key: str) -> Any:
        """Read a bookkeeping value (watermark, pending set)."""

    @abstractmethod
    async def set_meta(self, key: str, value: Any) -> None:
        """Write a bookkeeping value."""


class InMemoryLocalCache(LocalCache):
    def __init__(self) -> None:
        self._records: dict[str, list[dict[str, Any]]] = {}
        self._meta: dict[str, Any] = {}

    async def load(self, entity_type: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._records.get(entity_type, []))

    async def save(self, entity_type: str, records: list[dict[str, Any]]) -> None:
        self._records[entity_type] = copy.deepcopy(list(records))

    async def get_meta(self, key: str) -> Any:
        return copy.deepcopy(self._meta.get(key))

    async def set_meta(self, key: str, value: Any) -> None:
        self._meta[key] = copy.deepcopy(value)


def _local_id(record: Mapping[str, Any]) -> str | None:
    value = record.get("id", record.get("_id"))
    return str(value) if value is not None else None


def _iso(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class SyncAgent:
    """Client half of the sync protocol for one device.

    Args:
        base_url:       API root, e.g. ``https://api.example.com``.
        token_provider: Async callable returning a fresh Bearer token.
        cache:          Local storage.
        registry:       Entity type table (same one the server uses).
        http_client:    Optional injected ``httpx.AsyncClient``.
        timeout:        Request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        cache: LocalCache,
        registry: SyncTypeRegistry,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._cache = cache
        self._registry = registry
        self._http = http_client
        self._timeout = timeout
        self._seq = itertools.count(1)
        # (entity_type, entity_id) -> mutation sequence number
        self._pending: dict[tuple[str, str], int] | None = None
        self._state = SyncState.IDLE

    @property
    def state(self) -> SyncState:
        return self._state

    async def watermark(self) -> str | None:
        return await self._cache.get_meta(WATERMARK_KEY)

    async def pending(self) -> set[tuple[str, str]]:
        return set(await self._load_pending())

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    async def record_mutation(
        self, entity_type: str, record: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Store a local create/update and queue it for the next push.

        Returns:
            The stored record, stamped with a local ``updatedAt``.
        """
        spec = self._registry.get(entity_type)
        stamped = dict(record)
        entity_id = _local_id(stamped) or spec.default_id
        if entity_id is None:
            raise ValueError(f"{entity_type} records need an 'id'")
        stamped["id"] = entity_id
        stamped["updatedAt"] = utc_now().isoformat()

        records = await self._cache.load(entity_type)
        if spec.is_singleton:
            records = [stamped]
        else:
            records = [r for r in records if _local_id(r) != entity_id]
            records.append(stamped)
        await self._cache.save(entity_type, records)

        pending = await self._load_pending()
        pending[(entity_type, entity_id)] = next(self._seq)
        await self._save_pending(pending)
        if self._state is SyncState.IDLE:
            self._state = SyncState.PUSH_PENDING
        return stamped

    async def delete(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        """Soft-delete: keep a tombstone so the deletion propagates."""
        records = await self._cache.load(entity_type)
        current = next((r for r in records if _local_id(r) == entity_id), None)
        if current is None:
            current = {"id": entity_id}
        return await self.record_mutation(entity_type, {**current, "isDeleted": True})

    async def build_changes(self) -> dict[str, list[dict[str, Any]]]:
        """Outgoing batch: every pending record, grouped by type."""
        pending = await self._load_pending()
        wanted: dict[str, set[str]] = {}
        for entity_type, entity_id in pending:
            wanted.setdefault(entity_type, set()).add(entity_id)

        changes: dict[str, list[dict[str, Any]]] = {}
        for entity_type, ids in wanted.items():
            records = await self._cache.load(entity_type)
            batch = [r for r in records if _local_id(r) in ids]
            if batch:
                changes[entity_type] = batch
        return changes

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def sync(self) -> dict[str, Any]:
        """Run one exchange.

        Returns:
            The server's response body.

        Raises:
            SyncClientError: On any failure.  The watermark is not advanced and
                pending mutations remain queued, so the next call is a safe
                retry.
        """
        pending = await self._load_pending()
        sent = dict(pending)
        body = {
            "lastSync": await self._cache.get_meta(WATERMARK_KEY),
            "changes": await self.build_changes(),
        }

        self._state = SyncState.SYNCING
        try:
            payload = await self._request("POST", SYNC_PATH, json=body)
        except SyncClientError:
            self._state = SyncState.PUSH_PENDING if pending else SyncState.IDLE
            raise

        # Records mutated while the request was in flight stay local-first
        pending = await self._load_pending()
        protected = {key for key, seq in pending.items() if sent.get(key) != seq}

        await self.apply_delta(payload.get("changes") or {}, protected)

        for key, seq in sent.items():
            if pending.get(key) == seq:
                del pending[key]
        await self._save_pending(pending)
        await self._cache.set_meta(WATERMARK_KEY, _iso(payload["timestamp"]))

        self._state = SyncState.PUSH_PENDING if pending else SyncState.IDLE
        logger.info(
            "Synced: pushed=%d watermark=%s",
            sum(len(v) for v in body["changes"].values()),
            payload["timestamp"],
        )
        return payload

    async def reset(self, repush: bool = True) -> None:
        """Wipe this account's server data and start over from EPOCH.

        With ``repush`` every local record is queued, so the next sync
        uploads this device's copy as a fresh first sync.
        """
        await self._request("DELETE", RESET_PATH)
        await self._cache.set_meta(WATERMARK_KEY, None)
        if repush:
            pending = await self._load_pending()
            for spec in self._registry:
                for record in await self._cache.load(spec.name):
                    entity_id = _local_id(record)
                    if entity_id is not None:
                        pending[(spec.name, entity_id)] = next(self._seq)
            await self._save_pending(pending)
            if pending:
                self._state = SyncState.PUSH_PENDING

    # ------------------------------------------------------------------
    # Applying server changes
    # ------------------------------------------------------------------

    async def apply_delta(
        self,
        changes: Mapping[str, list[Mapping[str, Any]]],
        protected: set[tuple[str, str]] | frozenset = frozenset(),
    ) -> bool:
        """Merge server records into the local cache; the server wins.

        Tombstones are stored, not dropped, so a deleted record cannot be
        resurrected by a stale local copy.

        Returns:
            True if anything local changed.
        """
        changed = False
        for entity_type, incoming in changes.items():
            if not incoming or entity_type not in self._registry:
                continue
            spec = self._registry.get(entity_type)
            if spec.is_singleton:
                changed |= await self._apply_singleton(spec, incoming, protected)
            else:
                changed |= await self._apply_collection(spec, incoming, protected)
        return changed

    async def _apply_collection(
        self,
        spec: EntityTypeSpec,
        incoming: list[Mapping[str, Any]],
        protected: set[tuple[str, str]] | frozenset,
    ) -> bool:
        local = await self._cache.load(spec.name)
        index = {_local_id(r): i for i, r in enumerate(local)}
        changed = False
        for server_record in incoming:
            entity_id = _local_id(server_record)
            if entity_id is None or (spec.name, entity_id) in protected:
                continue
            if entity_id in index:
                i = index[entity_id]
                local[i] = merge_record(local[i], server_record, spec.merge_fields)
            else:
                index[entity_id] = len(local)
                local.append(dict(server_record))
            changed = True
        if changed:
            await self._cache.save(spec.name, local)
        return changed

    async def _apply_singleton(
        self,
        spec: EntityTypeSpec,
        incoming: list[Mapping[str, Any]],
        protected: set[tuple[str, str]] | frozenset,
    ) -> bool:
        latest = max(incoming, key=lambda r: parse_client_timestamp(r.get("updatedAt")))
        local = await self._cache.load(spec.name)
        current = local[0] if local else None
        if current is not None and (spec.name, _local_id(current)) in protected:
            return False
        merged = merge_record(current, latest, spec.merge_fields, replace=True)
        await self._cache.save(spec.name, [merged])
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_pending(self) -> dict[tuple[str, str], int]:
        if self._pending is None:
            stored = await self._cache.get_meta(PENDING_KEY) or []
            self._pending = {(t, i): 0 for t, i in stored}
        return self._pending

    async def _save_pending(self, pending: dict[tuple[str, str], int]) -> None:
        self._pending = pending
        await self._cache.set_meta(PENDING_KEY, [list(key) for key in pending])

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = await self._token_provider()
        headers = {"Authorization": f"Bearer {token}"}
        url = f"{self._base_url}{path}"
        try:
            if self._http is not None:
                response = await self._http.request(method, url, headers=headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Sync request failed: %s", exc)
            raise SyncClientError(f"Request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            logger.warning("Sync rejected (%d): %s", response.status_code, detail)
            raise SyncClientError(
                f"Server returned {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )

        payload = response.json()
        if method == "POST" and not payload.get("success"):
            raise SyncClientError("Server reported an unsuccessful sync", detail=payload)
        return payload
