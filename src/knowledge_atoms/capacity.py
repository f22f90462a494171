"""Per-user capacity accounting and eviction.

Every user may hold at most ``limits.max_atoms_per_user`` atoms.  Before a
batch of new atoms is stored the orchestrator asks :class:`CapacityManager`
how much room is left and, if that is not enough, to make room: first by
purging low-quality and stale atoms, then by force-evicting the weakest
remaining atoms.

The check and the insert are separate calls; callers that need them to
be atomic hold the user's lock from :class:`UserLocks` across both.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Sequence, TypeVar

import anyio

from knowledge_atoms.atoms import AtomStore
from knowledge_atoms.config import KnowledgeConfig, get_config
from knowledge_atoms.purge import PurgeEngine

logger = logging.getLogger(__name__)

_C = TypeVar("_C")


@dataclass(frozen=True)
class AtomLimitStatus:
    """Snapshot of a user's capacity."""

    current: int
    limit: int
    remaining: int
    can_create: bool
    usage_percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
            "can_create": self.can_create,
            "usage_percentage": round(self.usage_percentage, 2),
        }


class UserLocks:
    """Registry of one :class:`anyio.Lock` per user id.

    Locks are created on first use and never shared between users.  An
    entry lives only while some task holds or waits for it, so the
    registry stays bounded by the number of users with work in flight.

    Usage::

        async with locks.hold(user_id):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[str, anyio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = anyio.Lock()
            self._locks[user_id] = lock
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if self._holders[user_id] == 0:
                del self._holders[user_id]
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)


class CapacityManager:
    """Reports remaining capacity and frees slots on demand.

    Parameters
    ----------
    store:
        The :class:`~knowledge_atoms.atoms.AtomStore` holding the atoms.
    purge:
        The :class:`~knowledge_atoms.purge.PurgeEngine` used as the first
        eviction stage.
    config:
        Optional explicit configuration.
    """

    def __init__(
        self,
        store: AtomStore,
        purge: PurgeEngine,
        config: KnowledgeConfig | None = None,
    ) -> None:
        self._store = store
        self._purge = purge
        self._limit = (config or get_config()).limits.max_atoms_per_user

    @property
    def limit(self) -> int:
        return self._limit

    async def check_limit(self, user_id: str) -> AtomLimitStatus:
        current = await self._store.count(user_id)
        remaining = max(0, self._limit - current)
        return AtomLimitStatus(
            current=current,
            limit=self._limit,
            remaining=remaining,
            can_create=remaining > 0,
            usage_percentage=(current / self._limit * 100) if self._limit > 0 else 100.0,
        )

    async def make_room(self, user_id: str, slots_needed: int) -> int:
        """Free enough slots for *slots_needed* new atoms.

        Returns the number of atoms actually removed, which is ``0`` when
        the user already has room.  May return less than the deficit if
        the store runs out of atoms.
        """
        status = await self.check_limit(user_id)
        if status.remaining >= slots_needed:
            return 0

        deficit = slots_needed - status.remaining
        purge_result = await self._purge.purge(user_id, max_to_purge=deficit)
        freed = purge_result.purged_count

        if freed < deficit:
            freed += await self.force_evict(user_id, deficit - freed)

        logger.info(
            "Made room for user %s: needed %d, freed %d (purged=%d)",
            user_id,
            deficit,
            freed,
            purge_result.purged_count,
        )
        return freed

    async def force_evict(self, user_id: str, count: int) -> int:
        """Delete the *count* weakest atoms regardless of age or ratio."""
        ids = await self._store.lowest_quality(user_id, count)
        if not ids:
            return 0
        removed = await self._store.delete_many(user_id, ids)
        logger.warning("Force-evicted %d atoms for user %s", removed, user_id)
        await self._store.log_maintenance(user_id, "force_evict", {"requested": count}, ids)
        return removed

    @staticmethod
    def fit_candidates(candidates: Sequence[_C], slots: int) -> list[_C]:
        """Keep the *slots* highest-confidence candidates.

        Sorting is stable, so candidates with equal confidence keep their
        original order.
        """
        if slots <= 0:
            return []
        ranked = sorted(candidates, key=lambda c: c.confidence, reverse=True)  # type: ignore[attr-defined]
        return ranked[:slots]
