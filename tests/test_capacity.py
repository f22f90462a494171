"""Tests for per-user capacity accounting and eviction."""

from __future__ import annotations

from dataclasses import dataclass

import anyio
import pytest

from knowledge_atoms.atoms import AtomStore
from knowledge_atoms.capacity import CapacityManager, UserLocks
from knowledge_atoms.config import KnowledgeConfig, LimitsConfig
from knowledge_atoms.purge import PurgeEngine
from knowledge_atoms.storage import Storage
from tests.conftest import atom_ids, days_ago, insert_atom, insert_many


@dataclass
class _Candidate:
    name: str
    confidence: float


@pytest.fixture
def small_config(tmp_path) -> KnowledgeConfig:
    return KnowledgeConfig(
        db_path=tmp_path / "k.db",
        backup_dir=tmp_path / "bk",
        embedding_dims=8,
        limits=LimitsConfig(max_atoms_per_user=5),
    )


def _manager(store: AtomStore, cfg: KnowledgeConfig) -> CapacityManager:
    return CapacityManager(store, PurgeEngine(store, cfg), cfg)


class TestCheckLimit:
    async def test_empty_user(self, store: AtomStore, config: KnowledgeConfig) -> None:
        status = await _manager(store, config).check_limit("u1")
        assert status.current == 0
        assert status.limit == 500
        assert status.remaining == 500
        assert status.can_create is True
        assert status.usage_percentage == 0.0

    async def test_near_full(
        self, storage: Storage, store: AtomStore, small_config: KnowledgeConfig
    ) -> None:
        await insert_many(storage, "u1", 4)
        status = await _manager(store, small_config).check_limit("u1")
        assert status.to_dict() == {
            "current": 4,
            "limit": 5,
            "remaining": 1,
            "can_create": True,
            "usage_percentage": 80.0,
        }

    async def test_over_limit_clamps_remaining(
        self, storage: Storage, store: AtomStore, small_config: KnowledgeConfig
    ) -> None:
        await insert_many(storage, "u1", 7)
        status = await _manager(store, small_config).check_limit("u1")
        assert status.remaining == 0
        assert status.can_create is False


class TestMakeRoom:
    async def test_no_work_when_room_exists(
        self, storage: Storage, store: AtomStore, small_config: KnowledgeConfig
    ) -> None:
        await insert_many(storage, "u1", 2)
        assert await _manager(store, small_config).make_room("u1", 3) == 0
        assert await store.count("u1") == 2

    async def test_purges_before_evicting(
        self, storage: Storage, store: AtomStore, small_config: KnowledgeConfig
    ) -> None:
        stale = await insert_atom(storage, content="stale", created_at=days_ago(200))
        ids = await insert_many(storage, "u1", 4)

        freed = await _manager(store, small_config).make_room("u1", 2)
        assert freed == 2
        remaining = await atom_ids(storage, "u1")
        assert ids[0] == stale
        assert remaining == ids[2:]

    async def test_force_evicts_weakest(
        self, storage: Storage, store: AtomStore, small_config: KnowledgeConfig
    ) -> None:
        strong = [
            await insert_atom(storage, content=f"strong {i}", usage_count=4, helpful_count=4)
            for i in range(3)
        ]
        weak_old = await insert_atom(storage, content="weak old", created_at=days_ago(3))
        weak_new = await insert_atom(storage, content="weak new", created_at=days_ago(1))

        freed = await _manager(store, small_config).make_room("u1", 1)
        assert freed == 1
        remaining = await atom_ids(storage, "u1")
        assert weak_old not in remaining
        assert weak_new in remaining
        assert all(i in remaining for i in strong)

        history = await store.maintenance_history("u1")
        assert history[0]["action"] == "force_evict"

    async def test_force_evict_on_empty_store(
        self, store: AtomStore, small_config: KnowledgeConfig
    ) -> None:
        assert await _manager(store, small_config).force_evict("u1", 3) == 0


class TestFitCandidates:
    def test_keeps_highest_confidence(self) -> None:
        cands = [_Candidate("a", 0.5), _Candidate("b", 0.9), _Candidate("c", 0.7)]
        kept = CapacityManager.fit_candidates(cands, 2)
        assert [c.name for c in kept] == ["b", "c"]

    def test_ties_keep_original_order(self) -> None:
        cands = [_Candidate("a", 0.8), _Candidate("b", 0.8), _Candidate("c", 0.8)]
        assert [c.name for c in CapacityManager.fit_candidates(cands, 2)] == ["a", "b"]

    def test_zero_slots(self) -> None:
        assert CapacityManager.fit_candidates([_Candidate("a", 1.0)], 0) == []


class TestUserLocks:
    async def test_entry_dropped_after_release(self) -> None:
        locks = UserLocks()
        async with locks.hold("u1"):
            async with locks.hold("u2"):
                assert len(locks) == 2
            assert len(locks) == 1
        assert len(locks) == 0

    async def test_entry_dropped_after_error(self) -> None:
        locks = UserLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("u1"):
                raise RuntimeError("boom")
        assert len(locks) == 0

    async def test_many_users_do_not_accumulate(self) -> None:
        locks = UserLocks()
        for i in range(100):
            async with locks.hold(f"user-{i}"):
                pass
        assert len(locks) == 0

    async def test_same_user_serialised(self) -> None:
        locks = UserLocks()
        order: list[str] = []
        first_in = anyio.Event()

        async def first() -> None:
            async with locks.hold("u1"):
                order.append("first:start")
                first_in.set()
                await anyio.sleep(0.05)
                order.append("first:end")

        async def second() -> None:
            await first_in.wait()
            async with locks.hold("u1"):
                order.append("second")

        async with anyio.create_task_group() as tg:
            tg.start_soon(first)
            tg.start_soon(second)

        assert order == ["first:start", "first:end", "second"]
        assert len(locks) == 0

    async def test_entry_kept_while_waiter_queued(self) -> None:
        locks = UserLocks()

        async def waiter() -> None:
            async with locks.hold("u1"):
                pass

        async with anyio.create_task_group() as tg:
            async with locks.hold("u1"):
                tg.start_soon(waiter)
                await anyio.sleep(0.01)
                assert locks._holders["u1"] == 2

        assert len(locks) == 0
