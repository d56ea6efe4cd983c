"""Tests for record merging, singleton collapse and batch preparation."""

from __future__ import annotations

import pytest

from tandem.sync.errors import RecordValidationError
from tandem.sync.merge import (
    MergeResolver,
    PendingWrite,
    collapse_singleton,
    merge_record,
)
from tandem.sync.registry import SyncTypeRegistry


@pytest.fixture
def resolver(registry: SyncTypeRegistry) -> MergeResolver:
    return MergeResolver(registry)


class TestMergeRecord:
    def test_new_record_is_incoming(self) -> None:
        assert merge_record(None, {"title": "Read"}) == {"title": "Read"}

    def test_patch_keeps_omitted_fields(self) -> None:
        stored = {"title": "Read", "notes": "ch. 3"}
        assert merge_record(stored, {"title": "Read more"}) == {
            "title": "Read more",
            "notes": "ch. 3",
        }

    def test_replace_drops_omitted_fields(self) -> None:
        stored = {"currency": "EUR", "limit": 300}
        assert merge_record(stored, {"limit": 400}, replace=True) == {"limit": 400}

    def test_merge_field_unions_sub_keys(self) -> None:
        stored = {"title": "Run", "history": {"2024-01-01": True}}
        incoming = {"title": "Run", "history": {"2024-01-02": True}}
        merged = merge_record(stored, incoming, ("history",))
        assert merged["history"] == {"2024-01-01": True, "2024-01-02": True}

    def test_merge_field_incoming_wins_per_sub_key(self) -> None:
        stored = {"history": {"2024-01-01": True, "2024-01-02": True}}
        incoming = {"history": {"2024-01-01": False}}
        merged = merge_record(stored, incoming, ("history",))
        assert merged["history"] == {"2024-01-01": False, "2024-01-02": True}

    def test_merge_field_kept_on_replace(self) -> None:
        stored = {"name": "old", "schedule": {"mon": ["math"]}}
        incoming = {"schedule": {"tue": ["art"]}}
        merged = merge_record(stored, incoming, ("schedule",), replace=True)
        assert merged == {"schedule": {"mon": ["math"], "tue": ["art"]}}

    def test_merge_field_omitted_on_replace_is_kept(self) -> None:
        stored = {"schedule": {"mon": ["math"]}, "title": "old"}
        merged = merge_record(stored, {"title": "new"}, ("schedule",), replace=True)
        assert merged == {"title": "new", "schedule": {"mon": ["math"]}}

    def test_non_mapping_merge_field_is_replaced(self) -> None:
        merged = merge_record({"history": {"a": 1}}, {"history": None}, ("history",))
        assert merged["history"] is None

    def test_arguments_not_mutated(self) -> None:
        stored = {"history": {"a": 1}}
        incoming = {"history": {"b": 2}}
        merge_record(stored, incoming, ("history",))
        assert stored == {"history": {"a": 1}}
        assert incoming == {"history": {"b": 2}}


class TestCollapseSingleton:
    def test_latest_updated_at_wins(self) -> None:
        records = [
            {"limit": 1, "updatedAt": "2024-01-01T00:00:00Z"},
            {"limit": 2, "updatedAt": "2024-03-01T00:00:00Z"},
            {"limit": 3, "updatedAt": "2024-02-01T00:00:00Z"},
        ]
        assert collapse_singleton(records)["limit"] == 2

    def test_tie_keeps_earliest_in_batch(self) -> None:
        records = [
            {"limit": 1, "updatedAt": "2024-01-01T00:00:00Z"},
            {"limit": 2, "updatedAt": "2024-01-01T00:00:00Z"},
        ]
        assert collapse_singleton(records)["limit"] == 1

    def test_millisecond_timestamps(self) -> None:
        records = [{"xp": 1, "updatedAt": 1700000000000}, {"xp": 2, "updatedAt": 1600000000000}]
        assert collapse_singleton(records)["xp"] == 1

    def test_missing_timestamp_ranks_oldest(self) -> None:
        records = [{"xp": 1}, {"xp": 2, "updatedAt": "2020-01-01T00:00:00Z"}]
        assert collapse_singleton(records)["xp"] == 2

    def test_empty_batch(self) -> None:
        with pytest.raises(ValueError):
            collapse_singleton([])


class TestMergeResolver:
    def test_server_keys_stripped(self, resolver: MergeResolver) -> None:
        batch = resolver.prepare(
            "tasks",
            [
                {
                    "id": "t1",
                    "title": "Read",
                    "ownerId": "mallory",
                    "userId": "mallory",
                    "updatedAt": "2099-01-01T00:00:00Z",
                    "createdAt": "2000-01-01T00:00:00Z",
                    "__v": 3,
                }
            ],
        )
        assert batch.writes == [PendingWrite(entity_id="t1", data={"title": "Read"})]

    def test_legacy_object_id(self, resolver: MergeResolver) -> None:
        batch = resolver.prepare("tasks", [{"_id": "65a1", "title": "Read"}])
        assert batch.entity_ids == {"65a1"}

    def test_numeric_id_is_stringified(self, resolver: MergeResolver) -> None:
        batch = resolver.prepare("journal", [{"id": 1712000000, "text": "hi"}])
        assert batch.entity_ids == {"1712000000"}

    def test_tombstone_flag(self, resolver: MergeResolver) -> None:
        batch = resolver.prepare("tasks", [{"id": "t1", "isDeleted": True}])
        assert batch.writes[0].is_deleted is True
        assert batch.writes[0].data == {}

    def test_tombstone_skips_required_fields(self, resolver: MergeResolver) -> None:
        batch = resolver.prepare("transactions", [{"id": "x1", "isDeleted": True}])
        assert len(batch.writes) == 1

    def test_missing_required_field(self, resolver: MergeResolver) -> None:
        with pytest.raises(RecordValidationError) as exc_info:
            resolver.prepare("transactions", [{"id": "x1", "amount": 5, "type": "expense"}])
        problem = exc_info.value.problems[0]
        assert problem.entity_id == "x1"
        assert "category" in problem.reason

    def test_missing_id(self, resolver: MergeResolver) -> None:
        with pytest.raises(RecordValidationError) as exc_info:
            resolver.prepare("tasks", [{"title": "no id"}, {"id": "  ", "title": "blank"}])
        assert [p.index for p in exc_info.value.problems] == [0, 1]

    def test_singleton_default_id(self, resolver: MergeResolver) -> None:
        batch = resolver.prepare("budget", [{"monthlyLimit": 500}])
        assert batch.entity_ids == {"budget_settings"}

    def test_singleton_collapsed(self, resolver: MergeResolver) -> None:
        batch = resolver.prepare(
            "gamification",
            [
                {"id": "g", "xp": 10, "updatedAt": "2024-01-01T00:00:00Z"},
                {"id": "g", "xp": 30, "updatedAt": "2024-01-03T00:00:00Z"},
                {"id": "g", "xp": 20, "updatedAt": "2024-01-02T00:00:00Z"},
            ],
        )
        assert batch.received == 3
        assert len(batch.writes) == 1
        assert batch.writes[0].data == {"xp": 30}

    def test_duplicate_ids_folded_in_order(self, resolver: MergeResolver) -> None:
        batch = resolver.prepare(
            "habits",
            [
                {"id": "h1", "title": "Run", "history": {"d1": True}},
                {"id": "h1", "title": "Run 5k", "history": {"d2": True}},
            ],
        )
        assert batch.writes == [
            PendingWrite(
                entity_id="h1",
                data={"title": "Run 5k", "history": {"d1": True, "d2": True}},
            )
        ]


class TestPrepareAll:
    def test_unknown_type_rejected(self, resolver: MergeResolver) -> None:
        with pytest.raises(RecordValidationError) as exc_info:
            resolver.prepare_all({"tasks": [{"id": "t1", "title": "ok"}], "notes": [{"id": "n"}]})
        assert [p.to_dict() for p in exc_info.value.problems] == [
            {"type": "notes", "index": None, "id": None, "reason": "unknown entity type"}
        ]

    def test_problems_collected_across_types(self, resolver: MergeResolver) -> None:
        with pytest.raises(RecordValidationError) as exc_info:
            resolver.prepare_all(
                {
                    "tasks": [{"id": "t1"}],
                    "habits": "not a list",
                    "bucketList": ["not an object"],
                }
            )
        assert {p.entity_type for p in exc_info.value.problems} == {
            "tasks",
            "habits",
            "bucketList",
        }

    def test_empty_and_null_batches_skipped(self, resolver: MergeResolver) -> None:
        assert resolver.prepare_all({"tasks": [], "habits": None}) == {}
        assert resolver.prepare_all(None) == {}
