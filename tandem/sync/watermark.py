"""Server-authoritative time for sync exchanges.

The server is the only ordering authority: every accepted write is stamped
with the instant captured at the start of its exchange, and that same
instant is handed back to the device as its next ``lastSync``.  Client
clocks are trusted for content (singleton collapse) but never for ordering,
and a ``lastSync`` the server could not have issued is rejected.

``EPOCH`` is the single "beginning of time" sentinel.  It is used for a
first sync (``lastSync`` absent) and by reset.  Every stored record is
stamped strictly after it, so a strict ``updated_at > EPOCH`` query never
excludes anything from a true first sync.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from tandem.services.database import DB_ERRORS, execute, fetchval
from tandem.sync.errors import RecordProblem, RecordValidationError, StoreError

logger = logging.getLogger("tandem.sync.watermark")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Smallest step Postgres timestamptz can represent
_TICK = timedelta(microseconds=1)

# How far a client's lastSync may run ahead of the latest instant this
# server has seen for the owner
MAX_CLIENT_LEAD = timedelta(seconds=5)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime.  Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_cutoff(client_watermark: datetime | None) -> datetime:
    """Return the pull cutoff for a request; absent means first sync."""
    if client_watermark is None:
        return EPOCH
    return as_utc(client_watermark)


def parse_client_timestamp(value: Any) -> datetime:
    """Best-effort parse of a client-reported ``updatedAt``.

    Accepts datetimes, ISO-8601 strings and JavaScript millisecond epochs.
    Anything unparseable counts as EPOCH, i.e. "oldest".
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, bool):
        return EPOCH
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return EPOCH
    if isinstance(value, str) and value:
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return EPOCH
    return EPOCH


# ---------------------------------------------------------------------------
# Account bookkeeping
# ---------------------------------------------------------------------------


class AccountStore(ABC):
    """Per-owner high-water mark.  Floors issued instants; never a pull cutoff."""

    @abstractmethod
    async def advance(self, owner_id: str, instant: datetime) -> None:
        """Record ``instant`` unless a later value is already stored."""

    @abstractmethod
    async def rewind(self, owner_id: str) -> None:
        """Set the owner's watermark back to EPOCH."""

    @abstractmethod
    async def last_sync(self, owner_id: str) -> datetime | None:
        """Return the stored watermark, or None for an unknown owner."""


class InMemoryAccountStore(AccountStore):
    def __init__(self) -> None:
        self._watermarks: dict[str, datetime] = {}

    async def advance(self, owner_id: str, instant: datetime) -> None:
        current = self._watermarks.get(owner_id)
        if current is None or instant > current:
            self._watermarks[owner_id] = instant

    async def rewind(self, owner_id: str) -> None:
        self._watermarks[owner_id] = EPOCH

    async def last_sync(self, owner_id: str) -> datetime | None:
        return self._watermarks.get(owner_id)


class PostgresAccountStore(AccountStore):
    """``sync_accounts`` table; rows are created on first sight of an owner."""

    async def advance(self, owner_id: str, instant: datetime) -> None:
        await self._execute(
            owner_id,
            """
            INSERT INTO sync_accounts (owner_id, last_sync)
            VALUES ($1, $2)
            ON CONFLICT (owner_id) DO UPDATE SET
                last_sync = GREATEST(sync_accounts.last_sync, EXCLUDED.last_sync),
                updated_at = NOW()
            """,
            instant,
        )

    async def rewind(self, owner_id: str) -> None:
        await self._execute(
            owner_id,
            """
            INSERT INTO sync_accounts (owner_id, last_sync)
            VALUES ($1, $2)
            ON CONFLICT (owner_id) DO UPDATE SET
                last_sync = EXCLUDED.last_sync,
                updated_at = NOW()
            """,
            EPOCH,
        )

    async def last_sync(self, owner_id: str) -> datetime | None:
        try:
            return await fetchval(
                "SELECT last_sync FROM sync_accounts WHERE owner_id = $1",
                owner_id,
                owner_id=owner_id,
            )
        except DB_ERRORS as exc:
            raise StoreError(f"Could not read watermark: {exc}") from exc

    async def _execute(self, owner_id: str, query: str, instant: datetime) -> None:
        try:
            await execute(query, owner_id, instant, owner_id=owner_id)
        except DB_ERRORS as exc:
            raise StoreError(f"Could not update watermark: {exc}") from exc


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class WatermarkTracker:
    """Issues exchange instants and keeps the bookkeeping watermark.

    Args:
        accounts: Bookkeeping store.
        clock:    Returns the server's current time; injectable for tests.
    """

    def __init__(
        self,
        accounts: AccountStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._accounts = accounts
        self._clock = clock

    async def issue_instant(self, owner_id: str, cutoff: datetime = EPOCH) -> datetime:
        """Capture "now" for one exchange of ``owner_id``.

        The result is strictly after the owner's high-water mark (the latest
        instant issued to any of their devices) and strictly after
        ``cutoff``.  Instants issued to one owner therefore never decrease,
        even when the server clock steps back, and a write stamped with one
        can never land behind a watermark another device already holds.

        Raises:
            RecordValidationError: ``cutoff`` is further ahead of both the
                server clock and the high-water mark than ``MAX_CLIENT_LEAD``.
                Such a value was not issued by this server.
        """
        clock = as_utc(self._clock())
        high_water = await self._accounts.last_sync(owner_id) or EPOCH

        if cutoff > max(clock, high_water) + MAX_CLIENT_LEAD:
            logger.warning(
                "Rejecting lastSync %s for owner=%s: ahead of server clock %s",
                cutoff.isoformat(),
                owner_id,
                clock.isoformat(),
            )
            raise RecordValidationError(
                [RecordProblem("lastSync", "lastSync is later than the server clock")]
            )

        now = max(clock, high_water + _TICK, cutoff + _TICK)
        if now != clock:
            logger.warning(
                "Server clock %s is behind owner=%s high-water mark; issuing %s",
                clock.isoformat(),
                owner_id,
                now.isoformat(),
            )
        return now

    async def advance(self, owner_id: str, instant: datetime) -> None:
        await self._accounts.advance(owner_id, instant)

    async def rewind(self, owner_id: str) -> None:
        await self._accounts.rewind(owner_id)

    async def last_sync(self, owner_id: str) -> datetime | None:
        return await self._accounts.last_sync(owner_id)
