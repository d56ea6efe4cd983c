"""Tests for the device-side sync agent.

Convergence tests run two agents against the real app over
``httpx.ASGITransport``; failure paths use ``httpx.MockTransport``.
"""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest
from fastapi import FastAPI

from tandem.sync.client import (
    InMemoryLocalCache,
    SyncAgent,
    SyncClientError,
    SyncState,
)
from tandem.sync.registry import SyncTypeRegistry
from tandem.sync.tests.conftest import ALICE, FixedClock

BASE_URL = "http://tandem.test"


@pytest.fixture
def make_agent(
    app: FastAPI, registry: SyncTypeRegistry, make_token: Callable[..., str]
) -> Callable[..., SyncAgent]:
    """Agent for ``ALICE`` talking to the in-process app."""

    def _make(
        cache: InMemoryLocalCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> SyncAgent:
        async def token() -> str:
            return make_token(ALICE)

        http = httpx.AsyncClient(
            transport=transport or httpx.ASGITransport(app=app), base_url=BASE_URL
        )
        return SyncAgent(BASE_URL, token, cache or InMemoryLocalCache(), registry, http)

    return _make


def _ok(changes: dict[str, list[dict[str, Any]]] | None = None) -> httpx.Response:
    return httpx.Response(
        200,
        json={"success": True, "timestamp": "2026-03-01T12:00:00Z", "changes": changes or {}},
    )


class TestLocalMutations:
    @pytest.mark.asyncio
    async def test_record_mutation_queues(self, make_agent: Callable[..., SyncAgent]) -> None:
        agent = make_agent()
        assert agent.state is SyncState.IDLE

        stored = await agent.record_mutation("tasks", {"id": "t1", "title": "Read"})

        assert "updatedAt" in stored
        assert agent.state is SyncState.PUSH_PENDING
        assert await agent.pending() == {("tasks", "t1")}
        assert await agent.build_changes() == {"tasks": [stored]}

    @pytest.mark.asyncio
    async def test_singleton_gets_default_id(self, make_agent: Callable[..., SyncAgent]) -> None:
        agent = make_agent()
        stored = await agent.record_mutation("budget", {"monthlyLimit": 400})
        assert stored["id"] == "budget_settings"

    @pytest.mark.asyncio
    async def test_collection_needs_id(self, make_agent: Callable[..., SyncAgent]) -> None:
        with pytest.raises(ValueError):
            await make_agent().record_mutation("tasks", {"title": "no id"})

    @pytest.mark.asyncio
    async def test_delete_keeps_tombstone(self, make_agent: Callable[..., SyncAgent]) -> None:
        cache = InMemoryLocalCache()
        agent = make_agent(cache)
        await agent.record_mutation("tasks", {"id": "t1", "title": "Read"})
        await agent.delete("tasks", "t1")

        [task] = await cache.load("tasks")
        assert task["isDeleted"] is True
        assert task["title"] == "Read"


class TestExchange:
    @pytest.mark.asyncio
    async def test_two_devices_converge(
        self, make_agent: Callable[..., SyncAgent], clock: FixedClock
    ) -> None:
        phone_cache, tablet_cache = InMemoryLocalCache(), InMemoryLocalCache()
        phone, tablet = make_agent(phone_cache), make_agent(tablet_cache)

        await phone.record_mutation(
            "habits", {"id": "h1", "title": "Run", "history": {"2024-01-01": True}}
        )
        await phone.sync()
        assert phone.state is SyncState.IDLE
        assert await phone.pending() == set()
        clock.advance(seconds=1)

        await tablet.record_mutation(
            "habits", {"id": "h1", "title": "Run", "history": {"2024-01-02": True}}
        )
        await tablet.sync()
        clock.advance(seconds=1)
        await phone.sync()

        both = {"2024-01-01": True, "2024-01-02": True}
        [on_phone] = await phone_cache.load("habits")
        [on_tablet] = await tablet_cache.load("habits")
        assert on_phone["history"] == both
        assert on_tablet["history"] == both

    @pytest.mark.asyncio
    async def test_delete_propagates(
        self, make_agent: Callable[..., SyncAgent], clock: FixedClock
    ) -> None:
        phone_cache, tablet_cache = InMemoryLocalCache(), InMemoryLocalCache()
        phone, tablet = make_agent(phone_cache), make_agent(tablet_cache)

        await phone.record_mutation("bucketList", {"id": "b1", "text": "Skydive"})
        await phone.sync()
        clock.advance(seconds=1)
        await tablet.sync()
        assert [b["text"] for b in await tablet_cache.load("bucketList")] == ["Skydive"]

        await tablet.delete("bucketList", "b1")
        await tablet.sync()
        clock.advance(seconds=1)
        await phone.sync()

        [item] = await phone_cache.load("bucketList")
        assert item["isDeleted"] is True

    @pytest.mark.asyncio
    async def test_watermark_persisted(self, make_agent: Callable[..., SyncAgent]) -> None:
        cache = InMemoryLocalCache()
        agent = make_agent(cache)
        assert await agent.watermark() is None

        payload = await agent.sync()
        assert await cache.get_meta("lastSync") == payload["timestamp"]

    @pytest.mark.asyncio
    async def test_reset_requeues_local_data(
        self, make_agent: Callable[..., SyncAgent], clock: FixedClock
    ) -> None:
        cache = InMemoryLocalCache()
        agent = make_agent(cache)
        await agent.record_mutation("journal", {"id": "j1", "text": "hello"})
        await agent.sync()
        clock.advance(seconds=1)

        await agent.reset()

        assert await agent.watermark() is None
        assert await agent.pending() == {("journal", "j1")}
        assert agent.state is SyncState.PUSH_PENDING

        clock.advance(seconds=1)
        await agent.sync()
        other_cache = InMemoryLocalCache()
        await make_agent(other_cache).sync()
        assert [j["id"] for j in await other_cache.load("journal")] == ["j1"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_server_error_keeps_state(self, make_agent: Callable[..., SyncAgent]) -> None:
        cache = InMemoryLocalCache()
        await cache.set_meta("lastSync", "2026-01-01T00:00:00Z")
        transport = httpx.MockTransport(
            lambda request: httpx.Response(503, json={"detail": "Sync store unavailable; retry"})
        )
        agent = make_agent(cache, transport)
        await agent.record_mutation("tasks", {"id": "t1", "title": "Read"})

        with pytest.raises(SyncClientError) as exc_info:
            await agent.sync()

        assert exc_info.value.status_code == 503
        assert await agent.watermark() == "2026-01-01T00:00:00Z"
        assert await agent.pending() == {("tasks", "t1")}
        assert agent.state is SyncState.PUSH_PENDING

    @pytest.mark.asyncio
    async def test_network_error(self, make_agent: Callable[..., SyncAgent]) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        agent = make_agent(transport=httpx.MockTransport(refuse))
        with pytest.raises(SyncClientError):
            await agent.sync()
        assert agent.state is SyncState.IDLE
        assert await agent.watermark() is None

    @pytest.mark.asyncio
    async def test_unsuccessful_body_rejected(self, make_agent: Callable[..., SyncAgent]) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"success": False})
        )
        agent = make_agent(transport=transport)
        with pytest.raises(SyncClientError):
            await agent.sync()
        assert await agent.watermark() is None

    @pytest.mark.asyncio
    async def test_mutation_during_flight_stays_pending(
        self, make_agent: Callable[..., SyncAgent]
    ) -> None:
        cache = InMemoryLocalCache()
        holder: dict[str, SyncAgent] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            # The user edits t1 while the request is on the wire
            await holder["agent"].record_mutation("tasks", {"id": "t1", "title": "Local edit"})
            return _ok({"tasks": [{"id": "t1", "title": "Server copy", "isDeleted": False}]})

        agent = make_agent(cache, httpx.MockTransport(handler))
        holder["agent"] = agent
        await agent.record_mutation("tasks", {"id": "t1", "title": "First"})

        await agent.sync()

        [task] = await cache.load("tasks")
        assert task["title"] == "Local edit"
        assert await agent.pending() == {("tasks", "t1")}
        assert agent.state is SyncState.PUSH_PENDING


class TestApplyDelta:
    @pytest.mark.asyncio
    async def test_server_wins_and_history_unions(
        self, make_agent: Callable[..., SyncAgent]
    ) -> None:
        cache = InMemoryLocalCache()
        await cache.save(
            "subjects", [{"id": "s1", "name": "Math", "history": {"d1": "present"}}]
        )
        agent = make_agent(cache)

        changed = await agent.apply_delta(
            {"subjects": [{"id": "s1", "name": "Maths", "history": {"d2": "absent"}}]}
        )

        assert changed is True
        [subject] = await cache.load("subjects")
        assert subject["name"] == "Maths"
        assert subject["history"] == {"d1": "present", "d2": "absent"}

    @pytest.mark.asyncio
    async def test_singleton_takes_newest(self, make_agent: Callable[..., SyncAgent]) -> None:
        cache = InMemoryLocalCache()
        await cache.save("timetable", [{"id": "timetable", "schedule": {"mon": ["math"]}}])
        agent = make_agent(cache)

        await agent.apply_delta(
            {
                "timetable": [
                    {"id": "timetable", "schedule": {"tue": ["art"]}, "updatedAt": "2026-01-02T00:00:00Z"},
                    {"id": "timetable", "schedule": {"wed": ["pe"]}, "updatedAt": "2026-01-01T00:00:00Z"},
                ]
            }
        )

        [table] = await cache.load("timetable")
        assert table["schedule"] == {"mon": ["math"], "tue": ["art"]}

    @pytest.mark.asyncio
    async def test_unknown_types_ignored(self, make_agent: Callable[..., SyncAgent]) -> None:
        agent = make_agent()
        assert await agent.apply_delta({"notes": [{"id": "n1"}], "tasks": []}) is False
