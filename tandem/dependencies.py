"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from tandem.config import Settings, get_settings
from tandem.sync.coordinator import SyncCoordinator
from tandem.sync.registry import get_sync_registry
from tandem.sync.store import PostgresEntityStore
from tandem.sync.watermark import PostgresAccountStore


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller extracted from the Bearer JWT."""

    user_id: str  # token "sub"; every synced row is owned by this id
    email: str | None = None
    session_id: str | None = None

    @property
    def owner_id(self) -> str:
        return self.user_id


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The JWT auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_coordinator() -> SyncCoordinator:
    """Postgres-backed coordinator.  Stateless, so one per request is fine."""
    return SyncCoordinator(
        store=PostgresEntityStore(),
        accounts=PostgresAccountStore(),
        registry=get_sync_registry(),
    )


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Coordinator = Annotated[SyncCoordinator, Depends(get_coordinator)]
