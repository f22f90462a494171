"""Tests for low-quality and stale atom purging."""

from __future__ import annotations

from unittest.mock import AsyncMock

from knowledge_atoms.atoms import AtomStore
from knowledge_atoms.config import KnowledgeConfig
from knowledge_atoms.purge import PurgeEngine, build_purge_set
from knowledge_atoms.storage import Storage
from tests.conftest import atom_ids, days_ago, insert_atom


class TestBuildPurgeSet:
    def test_union_keeps_order_and_dedupes(self) -> None:
        assert build_purge_set([5, 2], [2, 7, 1]) == [5, 2, 7, 1]

    def test_cap_keeps_head(self) -> None:
        assert build_purge_set([5, 2], [7, 1], max_to_purge=3) == [5, 2, 7]

    def test_non_positive_cap_means_no_cap(self) -> None:
        assert build_purge_set([1], [2], max_to_purge=0) == [1, 2]
        assert build_purge_set([1], [2], max_to_purge=-3) == [1, 2]

    def test_empty(self) -> None:
        assert build_purge_set([], []) == []


class TestPurge:
    async def test_removes_both_kinds(
        self, storage: Storage, store: AtomStore, config: KnowledgeConfig
    ) -> None:
        low = await insert_atom(storage, content="low", usage_count=10, helpful_count=1)
        stale = await insert_atom(storage, content="stale", created_at=days_ago(95))
        keep = await insert_atom(storage, content="keep", usage_count=6, helpful_count=4)

        result = await PurgeEngine(store, config).purge("u1")
        assert result.purged_count == 2
        assert result.low_quality_count == 1
        assert result.stale_count == 1
        assert result.errors == []
        assert result.purged_ids == [low, stale]
        assert await atom_ids(storage, "u1") == [keep]

    async def test_atom_matching_both_predicates_deleted_once(
        self, storage: Storage, store: AtomStore, config: KnowledgeConfig
    ) -> None:
        """Ratio 0.1 with last use 120 days ago is counted twice but removed once."""
        await insert_atom(
            storage, usage_count=10, helpful_count=1, last_used_at=days_ago(120)
        )
        engine = PurgeEngine(store, config)

        result = await engine.purge("u1")
        assert result.purged_count == 1
        assert result.low_quality_count == 1
        assert result.stale_count == 1
        assert await store.count("u1") == 0

        again = await engine.purge("u1")
        assert again.purged_count == 0
        assert again.to_dict() == {
            "purged_count": 0,
            "low_quality_count": 0,
            "stale_count": 0,
            "errors": [],
        }

    async def test_cap_counts_only_chosen(
        self, storage: Storage, store: AtomStore, config: KnowledgeConfig
    ) -> None:
        first_low = await insert_atom(storage, content="a", usage_count=5, helpful_count=0)
        await insert_atom(storage, content="b", usage_count=5, helpful_count=0)
        await insert_atom(storage, content="c", created_at=days_ago(200))

        result = await PurgeEngine(store, config).purge("u1", max_to_purge=1)
        assert result.purged_ids == [first_low]
        assert result.low_quality_count == 1
        assert result.stale_count == 0
        assert await store.count("u1") == 2

    async def test_other_users_untouched(
        self, storage: Storage, store: AtomStore, config: KnowledgeConfig
    ) -> None:
        await insert_atom(storage, user_id="u2", created_at=days_ago(200))
        result = await PurgeEngine(store, config).purge("u1")
        assert result.purged_count == 0
        assert await store.count("u2") == 1

    async def test_records_maintenance_log(
        self, storage: Storage, store: AtomStore, config: KnowledgeConfig
    ) -> None:
        stale = await insert_atom(storage, created_at=days_ago(200))
        await PurgeEngine(store, config).purge("u1")
        history = await store.maintenance_history("u1")
        assert history[0]["action"] == "purge"
        assert history[0]["atoms_affected"] == [stale]

    async def test_storage_failure_reported(
        self, store: AtomStore, config: KnowledgeConfig
    ) -> None:
        store.find_low_quality = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        result = await PurgeEngine(store, config).purge("u1")
        assert result.purged_count == 0
        assert result.errors == ["Purge failed: disk I/O error"]

    async def test_find_candidates_does_not_delete(
        self, storage: Storage, store: AtomStore, config: KnowledgeConfig
    ) -> None:
        stale = await insert_atom(storage, created_at=days_ago(200))
        low, old = await PurgeEngine(store, config).find_candidates("u1")
        assert low == []
        assert old == [stale]
        assert await store.count("u1") == 1
