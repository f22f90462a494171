"""Merging of near-duplicate atoms within each type.

Consolidation works on one user at a time and one type at a time, in
:data:`~knowledge_atoms.atoms.ATOM_TYPES` order:

1. **Cluster** -- every pair of same-type atoms whose embeddings have
   cosine similarity of at least ``similarity_threshold`` is joined in a
   :class:`DisjointSet`.  Similarity is transitive through the clusters,
   so A~B and B~C puts A, B and C in one group even if A and C differ.
2. **Pick a keeper** -- the group member with the best helpful ratio;
   ties go to the higher usage count, then the earlier ``created_at``,
   then the lower id.
3. **Merge** -- the keeper receives the group's summed usage and helpful
   counts and every other member is deleted.  Each group is merged in its
   own transaction.

A failure while processing one type is recorded and the remaining types
still run.  A storage advisory lock prevents two processes from
consolidating the same user at once.

Usage::

    engine = ConsolidationEngine(storage, store)
    result = await engine.consolidate("u1")
    print(result.to_dict())
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from knowledge_atoms.atoms import ATOM_TYPES, AtomStore, KnowledgeAtom
from knowledge_atoms.config import KnowledgeConfig, get_config
from knowledge_atoms.embeddings import EmbeddingEngine
from knowledge_atoms.storage import Storage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Union-find
# ---------------------------------------------------------------------------


class DisjointSet:
    """Union-find over the integers ``0..n-1``.

    Backed by flat parent and size lists.  :meth:`find` compresses paths
    and :meth:`union` attaches the smaller tree under the larger one.
    """

    def __init__(self, n: int) -> None:
        self._parent = list(range(n))
        self._size = [1] * n

    def find(self, i: int) -> int:
        root = i
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[i] != root:
            self._parent[i], i = root, self._parent[i]
        return root

    def union(self, i: int, j: int) -> bool:
        """Join the sets holding *i* and *j*; ``False`` if already joined."""
        ri, rj = self.find(i), self.find(j)
        if ri == rj:
            return False
        if self._size[ri] < self._size[rj]:
            ri, rj = rj, ri
        self._parent[rj] = ri
        self._size[ri] += self._size[rj]
        return True

    def groups(self) -> list[list[int]]:
        """All sets, each sorted, ordered by their smallest member."""
        by_root: dict[int, list[int]] = {}
        for i in range(len(self._parent)):
            by_root.setdefault(self.find(i), []).append(i)
        return sorted(by_root.values(), key=lambda g: g[0])


def find_similar_groups(
    atoms: list[KnowledgeAtom],
    threshold: float,
) -> list[list[KnowledgeAtom]]:
    """Cluster *atoms* by pairwise cosine similarity.

    Returns only groups of two or more, members in the input order.
    """
    n = len(atoms)
    if n < 2:
        return []
    dsu = DisjointSet(n)
    for i in range(n):
        for j in range(i + 1, n):
            sim = EmbeddingEngine.cosine_similarity(atoms[i].embedding, atoms[j].embedding)
            if sim >= threshold:
                dsu.union(i, j)
    return [[atoms[k] for k in group] for group in dsu.groups() if len(group) >= 2]


def choose_keeper(group: list[KnowledgeAtom]) -> KnowledgeAtom:
    """The atom that survives a merge.

    Highest helpful ratio wins; ties fall to higher ``usage_count``, then
    earlier ``created_at``, then lower id.
    """
    return min(
        group,
        key=lambda a: (-a.helpful_ratio, -a.usage_count, a.created_at, a.id),
    )


# ---------------------------------------------------------------------------
# ConsolidationResult
# ---------------------------------------------------------------------------


@dataclass
class ConsolidationResult:
    """Summary of one consolidation run for one user.

    Attributes
    ----------
    groups_found:
        Number of duplicate groups (size two or more) across all types.
    atoms_merged:
        Number of atoms deleted because they were folded into a keeper.
    atoms_remaining:
        The user's total atom count after the run.
    errors:
        One entry per type that failed, plus lock contention.
    details:
        Per-group records (type, keeper, merged ids, summed counters).
    """

    groups_found: int = 0
    atoms_merged: int = 0
    atoms_remaining: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "groups_found": self.groups_found,
            "atoms_merged": self.atoms_merged,
            "atoms_remaining": self.atoms_remaining,
            "errors": list(self.errors),
            "details": self.details,
            "dry_run": self.dry_run,
        }


# ---------------------------------------------------------------------------
# ConsolidationEngine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Finds and merges near-duplicate atoms.

    Parameters
    ----------
    storage:
        The :class:`~knowledge_atoms.storage.Storage` backing *store*;
        used for the advisory lock.
    store:
        The :class:`~knowledge_atoms.atoms.AtomStore` to consolidate.
    config:
        Optional explicit configuration.
    """

    def __init__(
        self,
        storage: Storage,
        store: AtomStore,
        config: KnowledgeConfig | None = None,
    ) -> None:
        self._storage = storage
        self._store = store
        self._threshold = (config or get_config()).consolidation.similarity_threshold

    async def consolidate(self, user_id: str, dry_run: bool = False) -> ConsolidationResult:
        """Merge every duplicate group for *user_id*.

        With *dry_run* the groups are reported in ``details`` but nothing
        is changed.
        """
        result = ConsolidationResult(dry_run=dry_run)
        lock_name = f"consolidation:{user_id}"
        holder = uuid.uuid4().hex

        def _try_lock(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, lock_name, holder)

        if not await self._storage.execute_transaction(_try_lock):
            logger.warning("Consolidation already running for user %s; skipping", user_id)
            result.errors.append(f"Consolidation already in progress for user {user_id}")
            result.atoms_remaining = await self._store.count(user_id)
            return result

        try:
            for atom_type in ATOM_TYPES:
                try:
                    await self._consolidate_type(user_id, atom_type, result)
                except Exception as exc:
                    logger.exception(
                        "Consolidation failed for user %s type %s", user_id, atom_type
                    )
                    result.errors.append(f"Consolidation failed for {atom_type}: {exc}")
            result.atoms_remaining = await self._store.count(user_id)
        finally:
            def _release(conn: sqlite3.Connection) -> None:
                Storage.release_lock(conn, lock_name, holder)

            await self._storage.execute_transaction(_release)

        logger.info(
            "Consolidation %sfor user %s: groups=%d merged=%d remaining=%d errors=%d",
            "(dry-run) " if dry_run else "",
            user_id,
            result.groups_found,
            result.atoms_merged,
            result.atoms_remaining,
            len(result.errors),
        )
        return result

    async def _consolidate_type(
        self,
        user_id: str,
        atom_type: str,
        result: ConsolidationResult,
    ) -> None:
        atoms = await self._store.get_by_type(user_id, atom_type)
        groups = find_similar_groups(atoms, self._threshold)

        for group in groups:
            keeper = choose_keeper(group)
            others = [a.id for a in group if a.id != keeper.id]
            total_usage = sum(a.usage_count for a in group)
            total_helpful = sum(a.helpful_count for a in group)
            detail = {
                "type": atom_type,
                "keeper_id": keeper.id,
                "merged_ids": others,
                "usage_count": total_usage,
                "helpful_count": total_helpful,
            }
            result.groups_found += 1

            if result.dry_run:
                result.details.append(detail)
                continue

            removed = await self._store.merge_group(
                user_id, keeper.id, total_usage, total_helpful, others
            )
            result.atoms_merged += removed
            result.details.append(detail)
            await self._store.log_maintenance(user_id, "consolidate", detail, others)
            logger.debug(
                "Merged %d %s atoms into %d for user %s",
                removed,
                atom_type,
                keeper.id,
                user_id,
            )
