"""Similarity search over a user's atoms, plus usage and feedback tracking.

Retrieval embeds the query, scores the user's most recent atoms by cosine
similarity and returns the best matches.  Atoms with a usage history get a
modest boost proportional to their helpful ratio, so proven knowledge
outranks equally similar but untested knowledge.

Usage tracking is the feedback loop that purge and consolidation rely on:
every time retrieved atoms are shown, :meth:`RetrievalEngine.record_usage`
bumps their usage counters; explicit thumbs-up feedback bumps the helpful
counter.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from knowledge_atoms.atoms import AtomStore, KnowledgeAtom
from knowledge_atoms.config import KnowledgeConfig, get_config
from knowledge_atoms.embeddings import EmbeddingService

log = logging.getLogger(__name__)

TYPE_LABELS: dict[str, str] = {
    "OBJECTION_RESPONSE": "Objection Handling",
    "TALKING_POINT": "Effective Argument",
    "QUESTION": "Discovery Question",
    "CLOSING_TECHNIQUE": "Closing Technique",
    "TOPIC_EXPERTISE": "Your Expertise",
}

_UNUSED_HELPFUL_RATIO = 0.5


@dataclass
class RetrievedKnowledge:
    """One retrieval hit."""

    id: int
    type: str
    content: str
    similarity: float
    score: float
    usage_count: int
    helpful_ratio: float
    context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "context": self.context,
            "similarity": round(self.similarity, 4),
            "usage_count": self.usage_count,
            "helpful_ratio": round(self.helpful_ratio, 4),
        }


def format_for_prompt(items: list[RetrievedKnowledge]) -> str:
    """Render hits as a numbered block for a system prompt.

    Returns an empty string when there is nothing to render.
    """
    if not items:
        return ""
    lines = "\n\n".join(
        f"{i}. [{TYPE_LABELS.get(item.type, item.type)}]: {item.content}"
        for i, item in enumerate(items, start=1)
    )
    return (
        "\n## Your Knowledge Base (based on your past conversations)\n\n"
        "Relevant context from your previous interactions:\n\n"
        f"{lines}\n\n"
        "Use this knowledge to personalize your suggestions when relevant."
    )


class RetrievalEngine:
    """Ranks a user's atoms against a free-text query.

    Parameters
    ----------
    store:
        The :class:`~knowledge_atoms.atoms.AtomStore` to search.
    embeddings:
        Any :class:`~knowledge_atoms.embeddings.EmbeddingService`.
    config:
        Optional explicit configuration.
    """

    def __init__(
        self,
        store: AtomStore,
        embeddings: EmbeddingService,
        config: KnowledgeConfig | None = None,
    ) -> None:
        cfg = config or get_config()
        self._store = store
        self._embeddings = embeddings
        self._cfg = cfg.retrieval
        self._embed_timeout = cfg.embed_timeout_seconds

    async def retrieve(
        self,
        user_id: str,
        query: str,
        max_results: int | None = None,
        min_similarity: float | None = None,
        types: list[str] | None = None,
        boost_helpful: bool | None = None,
    ) -> list[RetrievedKnowledge]:
        """Return up to *max_results* atoms similar to *query*.

        An embedding failure yields an empty list rather than an error.
        """
        cfg = self._cfg
        if max_results is None:
            max_results = cfg.max_results
        if min_similarity is None:
            min_similarity = cfg.min_similarity
        if boost_helpful is None:
            boost_helpful = cfg.boost_helpful

        try:
            response = await asyncio.wait_for(
                self._embeddings.embed(query), timeout=self._embed_timeout
            )
        except Exception as exc:
            log.warning("Query embedding failed for user %s: %s", user_id, exc)
            return []

        scored = await self._store.score_recent(
            user_id, response.vector, cfg.candidate_pool, types
        )

        hits: list[RetrievedKnowledge] = []
        for atom, similarity in scored:
            if similarity < min_similarity:
                continue
            hits.append(self._to_hit(atom, similarity, boost_helpful))

        hits.sort(key=lambda h: h.score, reverse=True)
        log.debug(
            "Retrieval for user %s: %d scored, %d above %.2f",
            user_id,
            len(scored),
            len(hits),
            min_similarity,
        )
        return hits[:max_results]

    def _to_hit(
        self,
        atom: KnowledgeAtom,
        similarity: float,
        boost_helpful: bool,
    ) -> RetrievedKnowledge:
        ratio = atom.helpful_ratio if atom.usage_count > 0 else _UNUSED_HELPFUL_RATIO
        score = similarity
        if boost_helpful and atom.usage_count >= self._cfg.boost_min_uses:
            score = similarity * (1 + ratio * self._cfg.boost_factor)
        return RetrievedKnowledge(
            id=atom.id,
            type=atom.type,
            content=atom.content,
            context=atom.context,
            similarity=similarity,
            score=score,
            usage_count=atom.usage_count,
            helpful_ratio=ratio,
        )

    async def record_usage(
        self,
        user_id: str,
        atom_ids: list[int],
        helpful: bool | None = None,
    ) -> int:
        """Mark atoms as used; ``helpful=True`` also counts them as helpful."""
        updated = await self._store.record_usage(user_id, atom_ids, helpful=helpful)
        log.debug("Recorded usage of %d atoms for user %s", updated, user_id)
        return updated

    async def record_feedback(
        self,
        user_id: str,
        atom_ids: list[int],
        is_helpful: bool,
    ) -> int:
        """Count explicit positive feedback; negative feedback changes nothing."""
        if not is_helpful:
            return 0
        return await self._store.record_helpful(user_id, atom_ids)

    async def top_performing(self, user_id: str, limit: int = 5) -> list[KnowledgeAtom]:
        return await self._store.top_performing(user_id, limit)
