"""Shared fixtures for sync engine and API tests."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt as pyjwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tandem.config import Settings
from tandem.dependencies import get_coordinator
from tandem.main import create_app
from tandem.sync.coordinator import SyncCoordinator
from tandem.sync.errors import StoreError
from tandem.sync.merge import PendingWrite
from tandem.sync.registry import EntityTypeSpec, SyncTypeRegistry, load_sync_registry
from tandem.sync.store import EntityRecord, InMemoryEntityStore
from tandem.sync.watermark import InMemoryAccountStore

ALICE = "google-oauth2|alice"
BOB = "google-oauth2|bob"
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Server clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FlakyStore(InMemoryEntityStore):
    """In-memory store whose writes (or reads) fail for chosen types."""

    def __init__(
        self,
        fail_writes: set[str] | None = None,
        fail_reads: set[str] | None = None,
    ) -> None:
        super().__init__()
        self.fail_writes = set(fail_writes or ())
        self.fail_reads = set(fail_reads or ())

    async def upsert_many(
        self,
        spec: EntityTypeSpec,
        owner_id: str,
        writes: list[PendingWrite],
        now: datetime,
    ) -> list[EntityRecord]:
        if spec.name in self.fail_writes:
            raise StoreError("disk full", spec.name)
        return await super().upsert_many(spec, owner_id, writes, now)

    async def find_modified_since(
        self, spec: EntityTypeSpec, owner_id: str, cutoff: datetime
    ) -> list[EntityRecord]:
        if spec.name in self.fail_reads:
            raise ConnectionResetError("connection lost")
        return await super().find_modified_since(spec, owner_id, cutoff)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> SyncTypeRegistry:
    """The bundled entity type table."""
    return load_sync_registry()


@pytest.fixture
def store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def accounts() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def coordinator(
    store: InMemoryEntityStore,
    accounts: InMemoryAccountStore,
    registry: SyncTypeRegistry,
    clock: FixedClock,
) -> SyncCoordinator:
    return SyncCoordinator(store, accounts, registry, clock=clock)


# ---------------------------------------------------------------------------
# Auth fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """Throwaway signing key; the app verifies with its public half."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_pem(rsa_key: rsa.RSAPrivateKey) -> str:
    return (
        rsa_key.public_key()
        .public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )


@pytest.fixture
def make_token(rsa_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Sign an RS256 token for ``sub``; extra claims override defaults."""

    def _make(sub: str = ALICE, **claims: Any) -> str:
        payload: dict[str, Any] = {
            "sub": sub,
            "email": "alice@example.com",
            "iat": int(time.time()),
            "exp": int(time.time()) + 3600,
        }
        payload.update(claims)
        return pyjwt.encode(payload, rsa_key, algorithm="RS256")

    return _make


@pytest.fixture
def auth_headers(make_token: Callable[..., str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(ALICE)}"}


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(public_pem: str) -> Settings:
    return Settings(
        _env_file=None,
        jwt_public_key=public_pem,
        rate_limit_per_minute=1000,
        rate_limit_burst=1000,
    )


@pytest.fixture
def make_app(coordinator: SyncCoordinator) -> Callable[[Settings], FastAPI]:
    """Build an app wired to the in-memory coordinator."""

    def _make(app_settings: Settings) -> FastAPI:
        application = create_app(app_settings)
        application.dependency_overrides[get_coordinator] = lambda: coordinator
        return application

    return _make


@pytest.fixture
def app(make_app: Callable[[Settings], FastAPI], settings: Settings) -> FastAPI:
    return make_app(settings)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    # Not used as a context manager: the lifespan would open a database pool
    return TestClient(app)
