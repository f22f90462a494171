"""Embedding generation backed by Ollama, with a content-hash cache.

:class:`EmbeddingEngine` is the default :class:`EmbeddingService`.  It turns
atom text into fixed-dimension vectors with the configured Ollama model and
keeps every result in the ``embedding_cache`` table, keyed by the SHA-256 of
the text.  Cached rows written under a different model name are treated as
misses and overwritten.

Anything that implements :class:`EmbeddingService` can be passed to the
orchestrator instead (tests use a deterministic stub).

Usage::

    engine = EmbeddingEngine(storage)
    response = await engine.embed("Lead with the cost of doing nothing.")
    vector = response.vector
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Protocol

import httpx
import ollama

from knowledge_atoms.config import KnowledgeConfig, get_config
from knowledge_atoms.errors import ExternalServiceError
from knowledge_atoms.storage import (
    Storage,
    deserialize_embedding,
    serialize_embedding,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingResponse:
    """Result of one embedding call."""

    vector: list[float]


class EmbeddingService(Protocol):
    """Anything that can turn text into a vector."""

    async def embed(self, text: str) -> EmbeddingResponse: ...


class EmbeddingEngine:
    """Ollama-backed embedding client with a SQLite cache.

    Parameters
    ----------
    storage:
        An initialised :class:`~knowledge_atoms.storage.Storage`; its
        ``embedding_cache`` table holds previously computed vectors.
    config:
        Optional explicit configuration.
    """

    def __init__(self, storage: Storage, config: KnowledgeConfig | None = None) -> None:
        cfg = config or get_config()
        self._storage = storage
        self._model = cfg.embedding_model
        self._dims = cfg.embedding_dims
        self._timeout = cfg.embed_timeout_seconds
        self._client = ollama.AsyncClient(host=cfg.ollama_url)

    @property
    def model(self) -> str:
        return self._model

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> EmbeddingResponse:
        return EmbeddingResponse(vector=await self.embed_text(text))

    async def embed_text(self, text: str) -> list[float]:
        """Return the embedding for *text*, consulting the cache first.

        Raises
        ------
        ExternalServiceError
            If Ollama is unreachable, times out, or returns a vector of
            the wrong dimension.
        """
        content_hash = self._content_hash(text)
        cached = await self._cache_get(content_hash)
        if cached is not None:
            return cached

        try:
            response = await asyncio.wait_for(
                self._client.embed(model=self._model, input=text),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError(
                f"Embedding request timed out after {self._timeout:.0f}s"
            ) from exc
        except (ConnectionError, OSError, httpx.HTTPError) as exc:
            raise ExternalServiceError(
                "Ollama server is not running or unreachable at the configured URL"
            ) from exc
        except ollama.ResponseError as exc:
            raise ExternalServiceError(f"Ollama embed failed: {exc}") from exc

        embeddings = getattr(response, "embeddings", None) or []
        if not embeddings:
            raise ExternalServiceError("Ollama returned no embedding")
        vector = [float(v) for v in embeddings[0]]
        if len(vector) != self._dims:
            raise ExternalServiceError(
                f"Embedding model returned {len(vector)} dimensions, "
                f"expected {self._dims}"
            )

        await self._cache_put(content_hash, vector)
        return vector

    async def health_check(self) -> bool:
        """Return ``True`` if a trivial embedding request succeeds."""
        try:
            await asyncio.wait_for(
                self._client.embed(model=self._model, input="health check"),
                timeout=self._timeout,
            )
            return True
        except Exception as exc:
            log.debug("Embedding health check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Vector maths
    # ------------------------------------------------------------------

    @staticmethod
    def cosine_similarity(a: list[float], b: list[float]) -> float:
        """Cosine similarity of two vectors.

        Vectors of different length, empty vectors, and zero vectors all
        score ``0.0``.
        """
        if len(a) != len(b) or not a:
            return 0.0
        dot = 0.0
        norm_a = 0.0
        norm_b = 0.0
        for x, y in zip(a, b):
            dot += x * y
            norm_a += x * x
            norm_b += y * y
        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0
        return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    @staticmethod
    def _content_hash(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    async def _cache_get(self, content_hash: str) -> list[float] | None:
        rows = await self._storage.execute(
            "SELECT embedding, model FROM embedding_cache WHERE content_hash = ?",
            (content_hash,),
        )
        if not rows:
            return None
        if rows[0]["model"] != self._model:
            log.debug("Cached embedding %s is from another model", content_hash[:12])
            return None
        vector = deserialize_embedding(rows[0]["embedding"])
        return vector if len(vector) == self._dims else None

    async def _cache_put(self, content_hash: str, vector: list[float]) -> None:
        await self._storage.execute_write(
            "INSERT OR REPLACE INTO embedding_cache (content_hash, embedding, model) "
            "VALUES (?, ?, ?)",
            (content_hash, serialize_embedding(vector), self._model),
        )
