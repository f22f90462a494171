"""Knowledge atom type definitions and the persistence façade.

A **knowledge atom** is one reusable insight distilled from a coaching
conversation.  Every atom belongs to exactly one user and one of five
categories:

- **OBJECTION_RESPONSE** -- how pushback was handled.
- **TALKING_POINT** -- an argument or value proposition that landed.
- **QUESTION** -- a discovery question that moved the conversation.
- **CLOSING_TECHNIQUE** -- a way of asking for commitment.
- **TOPIC_EXPERTISE** -- domain knowledge the speaker demonstrated.

This module provides:

* :class:`KnowledgeAtom` -- a dataclass that maps 1:1 with a row in the
  ``knowledge_atoms`` table.
* :class:`AtomStore` -- async CRUD and filtered queries over
  :class:`~knowledge_atoms.storage.Storage`.  Every method is scoped to a
  ``user_id`` and every single call is atomic; multi-call sequences are
  coordinated by the caller (see :mod:`knowledge_atoms.manager`).

Usage::

    store = AtomStore(storage)
    atom = await store.create(
        "u1", "QUESTION", "What would change if this were solved?", embedding,
    )
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from knowledge_atoms.config import KnowledgeConfig, get_config
from knowledge_atoms.embeddings import EmbeddingEngine
from knowledge_atoms.errors import ValidationError
from knowledge_atoms.storage import (
    Storage,
    deserialize_embedding,
    serialize_embedding,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ATOM_TYPES: tuple[str, ...] = (
    "OBJECTION_RESPONSE",
    "TALKING_POINT",
    "QUESTION",
    "CLOSING_TECHNIQUE",
    "TOPIC_EXPERTISE",
)
"""Allowed values for ``knowledge_atoms.type``, in processing order."""

DEFAULT_ATOM_TYPE = "TALKING_POINT"

ATOM_SOURCES: tuple[str, ...] = ("extraction", "manual")

SORTABLE_COLUMNS: tuple[str, ...] = (
    "created_at",
    "usage_count",
    "helpful_count",
    "last_used_at",
)


# ---------------------------------------------------------------------------
# Dataclass
# ---------------------------------------------------------------------------


@dataclass
class KnowledgeAtom:
    """In-memory representation of a single ``knowledge_atoms`` row.

    ``context``, ``confidence`` and ``source`` together form the atom's
    metadata; :attr:`metadata` exposes them as one mapping.
    """

    id: int
    user_id: str
    type: str
    content: str
    embedding: list[float] = field(default_factory=list)
    usage_count: int = 0
    helpful_count: int = 0
    last_used_at: str | None = None
    created_at: str = ""
    updated_at: str = ""
    source_session_id: str | None = None
    context: str | None = None
    confidence: float = 1.0
    source: str = "extraction"

    @property
    def helpful_ratio(self) -> float:
        """``helpful_count / usage_count``, or ``0.0`` for an unused atom."""
        if self.usage_count <= 0:
            return 0.0
        return self.helpful_count / self.usage_count

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "context": self.context,
            "confidence": self.confidence,
            "source": self.source,
        }

    @classmethod
    def from_row(cls, row: Any) -> KnowledgeAtom:
        """Create a :class:`KnowledgeAtom` from a :class:`sqlite3.Row`."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            content=row["content"],
            embedding=deserialize_embedding(row["embedding"]),
            usage_count=row["usage_count"],
            helpful_count=row["helpful_count"],
            last_used_at=row["last_used_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            source_session_id=row["source_session_id"],
            context=row["context"],
            confidence=row["confidence"],
            source=row["source"],
        )

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        """Serialise to a plain dict for JSON responses.

        The embedding is omitted unless asked for; it is large and rarely
        useful to a client.
        """
        d: dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "content": self.content,
            "usage_count": self.usage_count,
            "helpful_count": self.helpful_count,
            "helpful_ratio": round(self.helpful_ratio, 4) if self.usage_count else None,
            "last_used_at": self.last_used_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "source_session_id": self.source_session_id,
            "metadata": self.metadata,
        }
        if include_embedding:
            d["embedding"] = list(self.embedding)
        return d


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _validate_atom_type(atom_type: str) -> None:
    if atom_type not in ATOM_TYPES:
        raise ValidationError(
            f"Invalid atom type {atom_type!r}. "
            f"Must be one of: {', '.join(ATOM_TYPES)}"
        )


def _validate_confidence(confidence: float) -> None:
    if not 0.0 <= confidence <= 1.0:
        raise ValidationError(
            f"Confidence must be between 0.0 and 1.0, got {confidence}"
        )


def _validate_counters(usage_count: int, helpful_count: int) -> None:
    """Raise unless ``0 <= helpful_count <= usage_count``."""
    if usage_count < 0 or helpful_count < 0:
        raise ValidationError("Usage counters must not be negative")
    if helpful_count > usage_count:
        raise ValidationError(
            f"helpful_count ({helpful_count}) cannot exceed usage_count ({usage_count})"
        )


def _placeholders(values: list[Any] | tuple[Any, ...]) -> str:
    return ",".join("?" * len(values))


# ---------------------------------------------------------------------------
# Atom store
# ---------------------------------------------------------------------------


class AtomStore:
    """Async persistence façade for knowledge atoms.

    Parameters
    ----------
    storage:
        An initialised :class:`~knowledge_atoms.storage.Storage`.
    config:
        Optional explicit configuration (limits and embedding dimension).
    """

    def __init__(self, storage: Storage, config: KnowledgeConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or get_config()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        type: str,
        content: str,
        embedding: list[float],
        context: str | None = None,
        confidence: float = 1.0,
        source: str = "extraction",
        source_session_id: str | None = None,
    ) -> KnowledgeAtom:
        """Insert a new atom and return it with database-generated fields.

        Raises
        ------
        ValidationError
            If the type, content length, context length, confidence,
            source, or embedding dimension is invalid.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if not content or not content.strip():
            raise ValidationError("Atom content must not be empty")
        limits = self._cfg.extraction
        if len(content) > limits.max_content_chars:
            raise ValidationError(
                f"Atom content exceeds {limits.max_content_chars} characters"
            )
        if context is not None and len(context) > limits.max_context_chars:
            raise ValidationError(
                f"Atom context exceeds {limits.max_context_chars} characters"
            )
        _validate_atom_type(type)
        _validate_confidence(confidence)
        if source not in ATOM_SOURCES:
            raise ValidationError(f"Invalid atom source {source!r}")
        if len(embedding) != self._cfg.embedding_dims:
            raise ValidationError(
                f"Embedding has {len(embedding)} dimensions, "
                f"expected {self._cfg.embedding_dims}"
            )

        atom_id = await self._storage.execute_write(
            """
            INSERT INTO knowledge_atoms
                (user_id, type, content, embedding, source_session_id,
                 context, confidence, source)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                type,
                content,
                serialize_embedding(embedding),
                source_session_id,
                context,
                confidence,
                source,
            ),
        )
        log.debug("Created atom %d for user %s (type=%s)", atom_id, user_id, type)
        atom = await self.get(user_id, atom_id)
        if atom is None:
            raise RuntimeError(f"Atom {atom_id} not found after insert")
        return atom

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, user_id: str, atom_id: int) -> KnowledgeAtom | None:
        rows = await self._storage.execute(
            "SELECT * FROM knowledge_atoms WHERE id = ? AND user_id = ?",
            (atom_id, user_id),
        )
        return KnowledgeAtom.from_row(rows[0]) if rows else None

    async def list_atoms(
        self,
        user_id: str,
        type: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> list[KnowledgeAtom]:
        """Page through a user's atoms.

        Unknown *sort_by* columns fall back to ``created_at``; any
        *sort_order* other than ``"asc"`` means descending.
        """
        if type is not None:
            _validate_atom_type(type)
        column = sort_by if sort_by in SORTABLE_COLUMNS else "created_at"
        direction = "ASC" if sort_order == "asc" else "DESC"

        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if type is not None:
            conditions.append("type = ?")
            params.append(type)
        params.extend([max(limit, 0), max(offset, 0)])

        rows = await self._storage.execute(
            f"SELECT * FROM knowledge_atoms WHERE {' AND '.join(conditions)} "
            f"ORDER BY {column} {direction}, id {direction} LIMIT ? OFFSET ?",
            tuple(params),
        )
        return [KnowledgeAtom.from_row(r) for r in rows]

    async def get_by_type(self, user_id: str, type: str) -> list[KnowledgeAtom]:
        """All of a user's atoms of one type, in id order."""
        _validate_atom_type(type)
        rows = await self._storage.execute(
            "SELECT * FROM knowledge_atoms WHERE user_id = ? AND type = ? ORDER BY id",
            (user_id, type),
        )
        return [KnowledgeAtom.from_row(r) for r in rows]

    async def count(self, user_id: str, type: str | None = None) -> int:
        if type is None:
            rows = await self._storage.execute(
                "SELECT COUNT(*) AS cnt FROM knowledge_atoms WHERE user_id = ?",
                (user_id,),
            )
        else:
            rows = await self._storage.execute(
                "SELECT COUNT(*) AS cnt FROM knowledge_atoms WHERE user_id = ? AND type = ?",
                (user_id, type),
            )
        return int(rows[0]["cnt"]) if rows else 0

    async def count_by_type(self, user_id: str) -> dict[str, int]:
        """Group-by-type counts; types with no atoms are omitted."""
        rows = await self._storage.execute(
            "SELECT type, COUNT(*) AS cnt FROM knowledge_atoms "
            "WHERE user_id = ? GROUP BY type",
            (user_id,),
        )
        return {row["type"]: int(row["cnt"]) for row in rows}

    async def users_with_atoms(self) -> dict[str, int]:
        """Atom count per user, for every user holding at least one atom."""
        rows = await self._storage.execute(
            "SELECT user_id, COUNT(*) AS cnt FROM knowledge_atoms "
            "GROUP BY user_id ORDER BY user_id"
        )
        return {row["user_id"]: int(row["cnt"]) for row in rows}

    async def usage_summary(self, user_id: str) -> dict[str, float]:
        """Total usage and the mean helpful count over used atoms."""
        rows = await self._storage.execute(
            """
            SELECT
                COALESCE(SUM(usage_count), 0) AS total_usage,
                AVG(CASE WHEN usage_count > 0 THEN helpful_count END) AS avg_helpful
            FROM knowledge_atoms
            WHERE user_id = ?
            """,
            (user_id,),
        )
        row = rows[0]
        return {
            "total_usage": int(row["total_usage"] or 0),
            "avg_helpfulness": float(row["avg_helpful"] or 0.0),
        }

    # ------------------------------------------------------------------
    # Quality queries
    # ------------------------------------------------------------------

    async def find_low_quality(
        self,
        user_id: str,
        min_uses: int | None = None,
        min_helpful_ratio: float | None = None,
    ) -> list[int]:
        """Ids of atoms used at least *min_uses* times with a poor helpful ratio.

        Ordered by id so repeated calls return a stable sequence.
        """
        limits = self._cfg.limits
        if min_uses is None:
            min_uses = limits.purge_min_uses
        if min_helpful_ratio is None:
            min_helpful_ratio = limits.purge_min_helpful_ratio

        rows = await self._storage.execute(
            """
            SELECT id FROM knowledge_atoms
            WHERE user_id = ?
              AND usage_count >= ?
              AND (CASE WHEN usage_count > 0
                        THEN CAST(helpful_count AS REAL) / usage_count
                        ELSE 0.0 END) < ?
            ORDER BY id
            """,
            (user_id, min_uses, min_helpful_ratio),
        )
        return [int(r["id"]) for r in rows]

    async def find_stale(self, user_id: str, days: int | None = None) -> list[int]:
        """Ids of atoms unused for *days* or more.

        An atom is stale if ``last_used_at`` is older than *days* ago, or
        if it was never used and ``created_at`` is older than *days* ago.
        """
        if days is None:
            days = self._cfg.limits.stale_days
        modifier = f"-{int(days)} days"
        rows = await self._storage.execute(
            """
            SELECT id FROM knowledge_atoms
            WHERE user_id = ?
              AND (
                  (last_used_at IS NOT NULL
                   AND last_used_at < datetime('now', ?))
                  OR
                  (last_used_at IS NULL
                   AND created_at < datetime('now', ?))
              )
            ORDER BY id
            """,
            (user_id, modifier, modifier),
        )
        return [int(r["id"]) for r in rows]

    async def lowest_quality(self, user_id: str, limit: int) -> list[int]:
        """Ids of the *limit* weakest atoms, weakest first.

        Ordered by ascending ``(usage_count, helpful_count, created_at)``
        with the id as final tie-breaker.
        """
        if limit <= 0:
            return []
        rows = await self._storage.execute(
            """
            SELECT id FROM knowledge_atoms
            WHERE user_id = ?
            ORDER BY usage_count ASC, helpful_count ASC, created_at ASC, id ASC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [int(r["id"]) for r in rows]

    async def top_performing(self, user_id: str, limit: int = 5) -> list[KnowledgeAtom]:
        rows = await self._storage.execute(
            """
            SELECT * FROM knowledge_atoms
            WHERE user_id = ? AND usage_count >= 3
            ORDER BY helpful_count DESC, usage_count DESC, id ASC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [KnowledgeAtom.from_row(r) for r in rows]

    async def score_recent(
        self,
        user_id: str,
        query_vector: list[float],
        limit: int,
        types: list[str] | None = None,
    ) -> list[tuple[KnowledgeAtom, float]]:
        """Cosine similarity of *query_vector* against the newest atoms.

        Only the *limit* most recently created atoms (optionally filtered
        by *types*) are scored.  sqlite-vec computes the distance in SQL
        when available; otherwise the score is computed in Python.
        """
        for t in types or []:
            _validate_atom_type(t)

        conditions = ["user_id = ?", "embedding IS NOT NULL"]
        params: list[Any] = [user_id]
        if types:
            conditions.append(f"type IN ({_placeholders(types)})")
            params.extend(types)
        recent_sql = (
            f"SELECT * FROM knowledge_atoms WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at DESC, id DESC LIMIT ?"
        )
        params.append(limit)

        if self._storage.vec_available and len(query_vector) == self._cfg.embedding_dims:
            rows = await self._storage.execute(
                f"SELECT r.*, 1.0 - vec_distance_cosine(r.embedding, ?) AS similarity "
                f"FROM ({recent_sql}) AS r",
                (serialize_embedding(query_vector), *params),
            )
            return [
                (KnowledgeAtom.from_row(r), float(r["similarity"] or 0.0))
                for r in rows
            ]

        rows = await self._storage.execute(recent_sql, tuple(params))
        scored: list[tuple[KnowledgeAtom, float]] = []
        for r in rows:
            atom = KnowledgeAtom.from_row(r)
            scored.append(
                (atom, EmbeddingEngine.cosine_similarity(query_vector, atom.embedding))
            )
        return scored

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        user_id: str,
        atom_ids: list[int],
        helpful: bool | None = None,
    ) -> int:
        """Increment ``usage_count`` (and ``helpful_count`` if *helpful*).

        Also stamps ``last_used_at``.  Returns the number of rows updated.
        """
        if not atom_ids:
            return 0
        helpful_sql = ", helpful_count = helpful_count + 1" if helpful else ""
        return await self._storage.execute_write_rowcount(
            f"""
            UPDATE knowledge_atoms
            SET usage_count = usage_count + 1{helpful_sql},
                last_used_at = datetime('now'),
                updated_at = datetime('now')
            WHERE user_id = ? AND id IN ({_placeholders(atom_ids)})
            """,
            (user_id, *atom_ids),
        )

    async def record_helpful(self, user_id: str, atom_ids: list[int]) -> int:
        """Increment ``helpful_count`` without touching usage.

        The increment is capped at ``usage_count`` so the counter
        invariant holds even for feedback on atoms never recorded as used.
        """
        if not atom_ids:
            return 0
        return await self._storage.execute_write_rowcount(
            f"""
            UPDATE knowledge_atoms
            SET helpful_count = MIN(helpful_count + 1, usage_count),
                updated_at = datetime('now')
            WHERE user_id = ? AND id IN ({_placeholders(atom_ids)})
              AND helpful_count < usage_count
            """,
            (user_id, *atom_ids),
        )

    async def set_counters(
        self,
        user_id: str,
        atom_id: int,
        usage_count: int,
        helpful_count: int,
    ) -> bool:
        """Overwrite both usage counters, re-checking ``helpful <= usage``."""
        _validate_counters(usage_count, helpful_count)
        updated = await self._storage.execute_write_rowcount(
            """
            UPDATE knowledge_atoms
            SET usage_count = ?, helpful_count = ?, updated_at = datetime('now')
            WHERE id = ? AND user_id = ?
            """,
            (usage_count, helpful_count, atom_id, user_id),
        )
        return updated > 0

    async def merge_group(
        self,
        user_id: str,
        keeper_id: int,
        usage_count: int,
        helpful_count: int,
        remove_ids: list[int],
    ) -> int:
        """Set the keeper's counters and delete the rest in one transaction.

        Returns the number of removed rows.
        """
        _validate_counters(usage_count, helpful_count)
        if keeper_id in remove_ids:
            raise ValidationError("The keeper cannot also be removed")

        def _do_merge(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                UPDATE knowledge_atoms
                SET usage_count = ?, helpful_count = ?, updated_at = datetime('now')
                WHERE id = ? AND user_id = ?
                """,
                (usage_count, helpful_count, keeper_id, user_id),
            )
            if cursor.rowcount != 1:
                raise RuntimeError(f"Keeper atom {keeper_id} no longer exists")
            if not remove_ids:
                return 0
            cursor = conn.execute(
                f"DELETE FROM knowledge_atoms "
                f"WHERE user_id = ? AND id IN ({_placeholders(remove_ids)})",
                (user_id, *remove_ids),
            )
            return cursor.rowcount

        return await self._storage.execute_transaction(_do_merge)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, user_id: str, atom_id: int) -> bool:
        """Delete one atom if the user owns it."""
        removed = await self._storage.execute_write_rowcount(
            "DELETE FROM knowledge_atoms WHERE id = ? AND user_id = ?",
            (atom_id, user_id),
        )
        if removed:
            log.info("Deleted atom %d for user %s", atom_id, user_id)
        return removed > 0

    async def delete_many(self, user_id: str, atom_ids: list[int]) -> int:
        """Bulk delete by id set, scoped to the owner."""
        if not atom_ids:
            return 0
        return await self._storage.execute_write_rowcount(
            f"DELETE FROM knowledge_atoms "
            f"WHERE user_id = ? AND id IN ({_placeholders(atom_ids)})",
            (user_id, *atom_ids),
        )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def log_maintenance(
        self,
        user_id: str,
        action: str,
        details: dict[str, Any] | None = None,
        atom_ids: list[int] | None = None,
    ) -> None:
        """Append one row to ``maintenance_log``."""
        await self._storage.execute_write(
            "INSERT INTO maintenance_log (user_id, action, details, atoms_affected) "
            "VALUES (?, ?, ?, ?)",
            (
                user_id,
                action,
                json.dumps(details) if details is not None else None,
                json.dumps(atom_ids) if atom_ids is not None else None,
            ),
        )

    async def maintenance_history(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent audit rows for a user, newest first."""
        rows = await self._storage.execute(
            "SELECT * FROM maintenance_log WHERE user_id = ? "
            "ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        return [
            {
                "action": r["action"],
                "details": json.loads(r["details"]) if r["details"] else None,
                "atoms_affected": (
                    json.loads(r["atoms_affected"]) if r["atoms_affected"] else []
                ),
                "created_at": r["created_at"],
            }
            for r in rows
        ]
