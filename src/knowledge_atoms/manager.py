"""Central orchestrator for the knowledge-atom store.

:class:`KnowledgeManager` wires storage, providers and engines together and
exposes the public operations the MCP server and CLI call.  All public
methods return plain dicts because their output is JSON-serialised.

Ingestion runs transcript -> extraction -> capacity -> embed -> store.
Maintenance (purge, consolidation) runs only when a caller asks for it;
nothing here schedules itself.

Within one process, every multi-step mutation for a user (capacity check
followed by inserts, purge, consolidation) runs under that user's lock, so
concurrent extractions cannot overshoot the per-user cap.  Across
processes the cap is best effort.

Usage::

    manager = KnowledgeManager()
    await manager.initialize()
    result = await manager.extract_knowledge_from_session("s1", "u1", transcript)
    await manager.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any

from knowledge_atoms.atoms import ATOM_TYPES, AtomStore
from knowledge_atoms.capacity import CapacityManager, UserLocks
from knowledge_atoms.config import KnowledgeConfig, get_config
from knowledge_atoms.consolidation import ConsolidationEngine
from knowledge_atoms.embeddings import EmbeddingEngine, EmbeddingService
from knowledge_atoms.errors import (
    CapacityExhausted,
    ExternalServiceError,
    ValidationError,
    capacity_message,
)
from knowledge_atoms.extraction import ExtractionPipeline
from knowledge_atoms.llm import CompletionService, OllamaCompletionClient
from knowledge_atoms.ollama_probe import OllamaProbe
from knowledge_atoms.purge import PurgeEngine
from knowledge_atoms.retrieval import RetrievalEngine, format_for_prompt
from knowledge_atoms.stats import StatsReporter
from knowledge_atoms.storage import Storage

logger = logging.getLogger(__name__)

MANUAL_MIN_CONTENT_CHARS = 10


class KnowledgeManager:
    """The orchestrator.  One manager per process.

    Parameters
    ----------
    db_path:
        Override for ``config.db_path``.
    config:
        Optional explicit configuration.
    embeddings:
        Embedding provider; defaults to an Ollama-backed
        :class:`~knowledge_atoms.embeddings.EmbeddingEngine`.
    completion:
        Completion provider; defaults to
        :class:`~knowledge_atoms.llm.OllamaCompletionClient`.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        config: KnowledgeConfig | None = None,
        embeddings: EmbeddingService | None = None,
        completion: CompletionService | None = None,
    ) -> None:
        self._config = config or get_config()
        self._db_path_override = db_path
        self._embeddings_override = embeddings
        self._completion_override = completion

        self._storage: Storage | None = None
        self._store: AtomStore | None = None
        self._embeddings: EmbeddingService | None = None
        self._pipeline: ExtractionPipeline | None = None
        self._purge: PurgeEngine | None = None
        self._capacity: CapacityManager | None = None
        self._consolidation: ConsolidationEngine | None = None
        self._stats: StatsReporter | None = None
        self._retrieval: RetrievalEngine | None = None
        self._locks = UserLocks()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database and every engine.  Idempotent."""
        if self._initialized:
            return
        cfg = self._config

        self._storage = Storage(self._db_path_override or cfg.db_path, config=cfg)
        await self._storage.initialize()

        self._store = AtomStore(self._storage, cfg)
        self._embeddings = self._embeddings_override or EmbeddingEngine(self._storage, cfg)
        completion = self._completion_override or OllamaCompletionClient(cfg)

        self._pipeline = ExtractionPipeline(completion, cfg)
        self._purge = PurgeEngine(self._store, cfg)
        self._capacity = CapacityManager(self._store, self._purge, cfg)
        self._consolidation = ConsolidationEngine(self._storage, self._store, cfg)
        self._stats = StatsReporter(self._store, cfg)
        self._retrieval = RetrievalEngine(self._store, self._embeddings, cfg)

        self._initialized = True
        logger.info("Knowledge manager initialized. DB: %s", self._storage.db_path)

    async def shutdown(self) -> None:
        if self._storage is not None:
            await self._storage.close()
        self._initialized = False
        logger.info("Knowledge manager shut down")

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "KnowledgeManager is not initialized. Call `await manager.initialize()` first."
            )

    async def _embed(self, text: str) -> list[float]:
        assert self._embeddings is not None
        timeout = self._config.embed_timeout_seconds
        try:
            response = await asyncio.wait_for(self._embeddings.embed(text), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError(
                f"Embedding request timed out after {timeout:.0f}s"
            ) from exc
        return response.vector

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    async def check_atom_limit(self, user_id: str) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._capacity is not None
        status = await self._capacity.check_limit(user_id)
        return status.to_dict()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def extract_knowledge_from_session(
        self,
        session_id: str,
        user_id: str,
        transcript: str,
    ) -> dict[str, Any]:
        """Extract atoms from *transcript* and store as many as fit.

        Never raises for item-level problems.  Returns a dict with keys
        ``session_id``, ``atoms_created`` and ``errors``.
        """
        self._ensure_initialized()
        assert self._pipeline is not None
        assert self._capacity is not None
        assert self._store is not None

        result: dict[str, Any] = {
            "session_id": session_id,
            "atoms_created": 0,
            "errors": [],
        }
        errors: list[str] = result["errors"]

        try:
            candidates = await self._pipeline.extract(transcript)
        except ValidationError as exc:
            errors.append(str(exc))
            return result
        except ExternalServiceError as exc:
            logger.warning("Extraction failed for session %s: %s", session_id, exc)
            errors.append(f"Extraction failed: {exc}")
            return result

        if not candidates:
            return result

        async with self._locks.hold(user_id):
            try:
                status = await self._capacity.check_limit(user_id)
                logger.info(
                    "Atom limit for user %s: %d/%d (%d remaining)",
                    user_id,
                    status.current,
                    status.limit,
                    status.remaining,
                )
                needed = len(candidates)
                if status.remaining < needed:
                    freed = await self._capacity.make_room(user_id, needed)
                    available = status.remaining + freed
                    if available < needed:
                        candidates = self._capacity.fit_candidates(candidates, available)
                        logger.info(
                            "Limited extraction for user %s to %d highest-confidence atoms",
                            user_id,
                            len(candidates),
                        )
                        if not candidates:
                            errors.append(capacity_message(status.limit))
                            return result
            except Exception as exc:
                logger.exception("Capacity handling failed for user %s", user_id)
                errors.append(f"Extraction failed: {exc}")
                return result

            for candidate in candidates:
                try:
                    vector = await self._embed(candidate.content)
                    await self._store.create(
                        user_id,
                        candidate.type,
                        candidate.content,
                        vector,
                        context=candidate.context,
                        confidence=candidate.confidence,
                        source="extraction",
                        source_session_id=session_id,
                    )
                    result["atoms_created"] += 1
                except Exception as exc:
                    logger.warning(
                        "Failed to store %s atom for user %s: %s",
                        candidate.type,
                        user_id,
                        exc,
                    )
                    errors.append(f"Failed to store atom: {exc}")

        logger.info(
            "Extraction for session %s created %d atoms (%d errors)",
            session_id,
            result["atoms_created"],
            len(errors),
        )
        return result

    async def add_manual_atom(
        self,
        user_id: str,
        type: str,
        content: str,
        context: str | None = None,
    ) -> dict[str, Any]:
        """Store a hand-written atom with full confidence.

        Raises
        ------
        ValidationError
            If the type is unknown or content/context lengths are out of range.
        CapacityExhausted
            If the user is at the limit and no atom could be evicted.
        ExternalServiceError
            If the content could not be embedded.
        """
        self._ensure_initialized()
        assert self._capacity is not None
        assert self._store is not None

        limits = self._config.extraction
        content = (content or "").strip()
        if not MANUAL_MIN_CONTENT_CHARS <= len(content) <= limits.max_content_chars:
            raise ValidationError(
                f"Content must be between {MANUAL_MIN_CONTENT_CHARS} and "
                f"{limits.max_content_chars} characters"
            )
        if context is not None and len(context) > limits.max_context_chars:
            raise ValidationError(
                f"Context must be at most {limits.max_context_chars} characters"
            )
        if type not in ATOM_TYPES:
            raise ValidationError(
                f"Invalid atom type {type!r}. Must be one of: {', '.join(ATOM_TYPES)}"
            )

        async with self._locks.hold(user_id):
            status = await self._capacity.check_limit(user_id)
            if not status.can_create:
                freed = await self._capacity.make_room(user_id, 1)
                if freed < 1:
                    raise CapacityExhausted(status.limit)
            vector = await self._embed(content)
            atom = await self._store.create(
                user_id,
                type,
                content,
                vector,
                context=context or None,
                confidence=1.0,
                source="manual",
            )
        return atom.to_dict()

    # ------------------------------------------------------------------
    # Browsing
    # ------------------------------------------------------------------

    async def list_atoms(
        self,
        user_id: str,
        type: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._store is not None
        atoms = await self._store.list_atoms(
            user_id,
            type=type,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
        return {
            "atoms": [a.to_dict() for a in atoms],
            "total": await self._store.count(user_id, type),
            "limit": limit,
            "offset": offset,
        }

    async def delete_atom(self, user_id: str, atom_id: int) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._store is not None
        deleted = await self._store.delete(user_id, atom_id)
        return {"atom_id": atom_id, "deleted": deleted}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_user_atoms(
        self,
        user_id: str,
        max_to_purge: int | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._purge is not None
        async with self._locks.hold(user_id):
            result = await self._purge.purge(user_id, max_to_purge)
        return result.to_dict()

    async def consolidate_user_atoms(
        self,
        user_id: str,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._consolidation is not None
        async with self._locks.hold(user_id):
            result = await self._consolidation.consolidate(user_id, dry_run=dry_run)
        return result.to_dict()

    async def get_management_stats(self, user_id: str) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._stats is not None
        stats = await self._stats.management_stats(user_id)
        return stats.to_dict()

    async def run_full_maintenance(
        self,
        user_id: str,
        include_consolidation: bool = False,
    ) -> dict[str, Any]:
        """Purge, then optionally consolidate.

        The ``consolidation`` key is present only when consolidation ran.
        """
        self._ensure_initialized()
        assert self._purge is not None
        assert self._consolidation is not None

        async with self._locks.hold(user_id):
            purge = await self._purge.purge(user_id)
            out: dict[str, Any] = {"purge": purge.to_dict()}
            if include_consolidation:
                consolidation = await self._consolidation.consolidate(user_id)
                out["consolidation"] = consolidation.to_dict()
        return out

    async def run_maintenance_all(self, include_consolidation: bool = False) -> dict[str, Any]:
        """Run :meth:`run_full_maintenance` for every user holding atoms.

        Users are processed one at a time.  An exception for one user is
        recorded in that user's ``errors`` and the sweep moves on.
        """
        self._ensure_initialized()
        assert self._store is not None

        start = time.monotonic()
        users = await self._store.users_with_atoms()
        logger.info(
            "Maintenance sweep over %d users (consolidation=%s)",
            len(users),
            include_consolidation,
        )

        details: list[dict[str, Any]] = []
        for user_id, atom_count in users.items():
            entry: dict[str, Any] = {
                "user_id": user_id,
                "atom_count": atom_count,
                "purged": 0,
                "merged": 0,
                "errors": [],
            }
            try:
                result = await self.run_full_maintenance(
                    user_id, include_consolidation=include_consolidation
                )
            except Exception as exc:
                logger.exception("Maintenance failed for user %s", user_id)
                entry["errors"].append(str(exc))
            else:
                consolidation = result.get("consolidation", {})
                entry["purged"] = result["purge"]["purged_count"]
                entry["merged"] = consolidation.get("atoms_merged", 0)
                entry["errors"] = result["purge"]["errors"] + consolidation.get("errors", [])
            details.append(entry)

        out = {
            "users_processed": len(details),
            "total_purged": sum(d["purged"] for d in details),
            "total_merged": sum(d["merged"] for d in details),
            "total_errors": sum(len(d["errors"]) for d in details),
            "include_consolidation": include_consolidation,
            "duration_ms": round((time.monotonic() - start) * 1000),
            "details": details,
        }
        logger.info(
            "Maintenance sweep done in %dms: %d purged, %d merged, %d errors",
            out["duration_ms"],
            out["total_purged"],
            out["total_merged"],
            out["total_errors"],
        )
        return out

    async def get_maintenance_history(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        self._ensure_initialized()
        assert self._store is not None
        return await self._store.maintenance_history(user_id, limit)

    # ------------------------------------------------------------------
    # Retrieval and usage tracking
    # ------------------------------------------------------------------

    async def retrieve_relevant_knowledge(
        self,
        user_id: str,
        query: str,
        max_results: int | None = None,
        min_similarity: float | None = None,
        types: list[str] | None = None,
        boost_helpful: bool | None = None,
    ) -> dict[str, Any]:
        """Similar atoms plus a ready-to-inject prompt block."""
        self._ensure_initialized()
        assert self._retrieval is not None
        hits = await self._retrieval.retrieve(
            user_id,
            query,
            max_results=max_results,
            min_similarity=min_similarity,
            types=types,
            boost_helpful=boost_helpful,
        )
        return {
            "results": [h.to_dict() for h in hits],
            "prompt": format_for_prompt(hits),
        }

    async def record_knowledge_usage(
        self,
        user_id: str,
        atom_ids: list[int],
        helpful: bool | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._retrieval is not None
        updated = await self._retrieval.record_usage(user_id, atom_ids, helpful=helpful)
        return {"updated": updated}

    async def record_feedback(
        self,
        user_id: str,
        atom_ids: list[int],
        is_helpful: bool,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._retrieval is not None
        updated = await self._retrieval.record_feedback(user_id, atom_ids, is_helpful)
        return {"updated": updated}

    async def get_top_performing(self, user_id: str, limit: int = 5) -> list[dict[str, Any]]:
        self._ensure_initialized()
        assert self._retrieval is not None
        atoms = await self._retrieval.top_performing(user_id, limit)
        return [a.to_dict() for a in atoms]

    async def get_extraction_stats(self, user_id: str) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._stats is not None
        return await self._stats.extraction_stats(user_id)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        """Database and provider status.

        Returns
        -------
        dict
            Keys: ``db_path``, ``db_size_mb``, ``vec_available``,
            ``embedding_model``, ``extraction_model``, ``ollama``,
            ``embedding_healthy``.
        """
        self._ensure_initialized()
        assert self._storage is not None
        cfg = self._config

        probe = OllamaProbe(cfg.ollama_url)
        ollama_status = await probe.status([cfg.embedding_model, cfg.extraction.model])

        embedding_healthy: bool | None = None
        checker = getattr(self._embeddings, "health_check", None)
        if checker is not None:
            embedding_healthy = await checker()

        return {
            "db_path": str(self._storage.db_path),
            "db_size_mb": await self._storage.get_db_size_mb(),
            "vec_available": self._storage.vec_available,
            "embedding_model": cfg.embedding_model,
            "extraction_model": cfg.extraction.model,
            "ollama": ollama_status,
            "embedding_healthy": embedding_healthy,
        }
