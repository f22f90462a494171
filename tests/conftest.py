"""Shared fixtures and helpers for the knowledge_atoms test suite."""

from __future__ import annotations

import hashlib
import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from knowledge_atoms.atoms import AtomStore
from knowledge_atoms.config import KnowledgeConfig
from knowledge_atoms.embeddings import EmbeddingResponse
from knowledge_atoms.errors import ExternalServiceError
from knowledge_atoms.llm import CompletionResponse
from knowledge_atoms.storage import Storage, serialize_embedding

TEST_DIMS = 8
"""Small embedding dimension so tests can hand-craft vectors."""


# ---------------------------------------------------------------------------
# Vector and time helpers
# ---------------------------------------------------------------------------


def basis(i: int, dims: int = TEST_DIMS) -> list[float]:
    """Unit vector along axis *i*."""
    vec = [0.0] * dims
    vec[i] = 1.0
    return vec


def with_similarity(sim: float, dims: int = TEST_DIMS) -> list[float]:
    """Unit vector whose cosine similarity with ``basis(0)`` is *sim*."""
    vec = [0.0] * dims
    vec[0] = sim
    vec[1] = math.sqrt(max(0.0, 1.0 - sim * sim))
    return vec


def days_ago(days: int) -> str:
    """SQLite ``datetime('now')``-style timestamp *days* in the past."""
    ts = datetime.now(tz=timezone.utc) - timedelta(days=days)
    return ts.strftime("%Y-%m-%d %H:%M:%S")


def hashed_vector(text: str, dims: int = TEST_DIMS) -> list[float]:
    """Deterministic non-zero vector derived from *text*."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b / 127.5) - 1.0 for b in digest[:dims]]


# ---------------------------------------------------------------------------
# Provider doubles
# ---------------------------------------------------------------------------


class StubEmbeddings:
    """Deterministic embedding service.

    Texts listed in ``vectors`` get that exact vector; texts in ``fail_on``
    raise :class:`ExternalServiceError`; everything else is hashed.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        fail_on: set[str] | None = None,
        dims: int = TEST_DIMS,
    ) -> None:
        self.vectors = vectors or {}
        self.fail_on = fail_on or set()
        self.dims = dims
        self.calls: list[str] = []

    async def embed(self, text: str) -> EmbeddingResponse:
        self.calls.append(text)
        if text in self.fail_on:
            raise ExternalServiceError(f"embedding provider rejected {text[:20]!r}")
        return EmbeddingResponse(vector=self.vectors.get(text) or hashed_vector(text, self.dims))


class StubCompletion:
    """Completion service that returns a canned reply and records prompts."""

    def __init__(self, content: str = '{"atoms": []}', error: Exception | None = None) -> None:
        self.content = content
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def complete(self, prompt: str, **kwargs: Any) -> CompletionResponse:
        self.calls.append({"prompt": prompt, **kwargs})
        if self.error is not None:
            raise self.error
        return CompletionResponse(content=self.content)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> KnowledgeConfig:
    """Configuration pointing every path at ``tmp_path``."""
    return KnowledgeConfig(
        db_path=tmp_path / "knowledge.db",
        backup_dir=tmp_path / "backups",
        embedding_dims=TEST_DIMS,
    )


@pytest.fixture
async def storage(tmp_path: Path, config: KnowledgeConfig) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory."""
    s = Storage(tmp_path / "test.db", config=config)
    s._backup_dir = tmp_path / "backups"
    s._backup_dir.mkdir(exist_ok=True)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
def store(storage: Storage, config: KnowledgeConfig) -> AtomStore:
    return AtomStore(storage, config)


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing AtomStore
# ---------------------------------------------------------------------------


async def insert_atom(
    storage: Storage,
    user_id: str = "u1",
    content: str = "Lead with the cost of inaction.",
    atom_type: str = "TALKING_POINT",
    embedding: list[float] | None = None,
    usage_count: int = 0,
    helpful_count: int = 0,
    last_used_at: str | None = None,
    created_at: str | None = None,
    confidence: float = 0.8,
    source: str = "extraction",
    context: str | None = None,
) -> int:
    """Insert an atom directly via SQL and return its id.

    ``embedding`` defaults to a hash of the content so unrelated atoms
    are not accidentally near-duplicates.
    """
    if embedding is None:
        embedding = hashed_vector(content)
    atom_id = await storage.execute_write(
        """
        INSERT INTO knowledge_atoms
            (user_id, type, content, embedding, usage_count, helpful_count,
             last_used_at, confidence, source, context)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            atom_type,
            content,
            serialize_embedding(embedding),
            usage_count,
            helpful_count,
            last_used_at,
            confidence,
            source,
            context,
        ),
    )
    if created_at is not None:
        await storage.execute_write(
            "UPDATE knowledge_atoms SET created_at = ? WHERE id = ?",
            (created_at, atom_id),
        )
    return atom_id


async def insert_many(storage: Storage, user_id: str, count: int, **kwargs: Any) -> list[int]:
    """Insert *count* distinct, never-used atoms for *user_id* in one batch."""
    atom_type = kwargs.get("atom_type", "TALKING_POINT")
    rows = [
        (
            user_id,
            atom_type,
            f"atom {user_id} #{i}",
            serialize_embedding(hashed_vector(f"atom {user_id} #{i}")),
        )
        for i in range(count)
    ]
    await storage.execute_transaction(
        lambda conn: conn.executemany(
            "INSERT INTO knowledge_atoms (user_id, type, content, embedding) VALUES (?, ?, ?, ?)",
            rows,
        )
    )
    return await atom_ids(storage, user_id)


async def atom_ids(storage: Storage, user_id: str) -> list[int]:
    rows = await storage.execute(
        "SELECT id FROM knowledge_atoms WHERE user_id = ? ORDER BY id", (user_id,)
    )
    return [r["id"] for r in rows]
