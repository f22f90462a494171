"""Tests for similarity retrieval and usage/feedback tracking."""

from __future__ import annotations

import pytest

from knowledge_atoms.atoms import AtomStore
from knowledge_atoms.config import KnowledgeConfig
from knowledge_atoms.retrieval import RetrievalEngine, RetrievedKnowledge, format_for_prompt
from knowledge_atoms.storage import Storage
from tests.conftest import StubEmbeddings, basis, insert_atom, with_similarity

QUERY = "how do I handle a pricing objection?"


@pytest.fixture
def embeddings() -> StubEmbeddings:
    return StubEmbeddings(vectors={QUERY: basis(0)})


@pytest.fixture
def engine(store: AtomStore, embeddings: StubEmbeddings, config: KnowledgeConfig) -> RetrievalEngine:
    return RetrievalEngine(store, embeddings, config)


class TestRetrieve:
    async def test_filters_and_ranks_by_similarity(
        self, engine: RetrievalEngine, storage: Storage
    ) -> None:
        best = await insert_atom(storage, content="best", embedding=with_similarity(0.95))
        ok = await insert_atom(storage, content="ok", embedding=with_similarity(0.6))
        await insert_atom(storage, content="unrelated", embedding=with_similarity(0.2))

        hits = await engine.retrieve("u1", QUERY)
        assert [h.id for h in hits] == [best, ok]
        assert hits[0].similarity == pytest.approx(0.95, abs=1e-4)

    async def test_helpful_history_boosts_score(
        self, engine: RetrievalEngine, storage: Storage
    ) -> None:
        proven = await insert_atom(
            storage,
            content="proven",
            embedding=with_similarity(0.8),
            usage_count=5,
            helpful_count=5,
        )
        fresh = await insert_atom(storage, content="fresh", embedding=with_similarity(0.9))

        hits = await engine.retrieve("u1", QUERY)
        assert [h.id for h in hits] == [proven, fresh]
        assert hits[0].score == pytest.approx(0.8 * 1.2, abs=1e-4)

        hits = await engine.retrieve("u1", QUERY, boost_helpful=False)
        assert [h.id for h in hits] == [fresh, proven]

    async def test_boost_needs_minimum_uses(
        self, engine: RetrievalEngine, storage: Storage
    ) -> None:
        await insert_atom(
            storage,
            content="barely used",
            embedding=with_similarity(0.8),
            usage_count=2,
            helpful_count=2,
        )
        (hit,) = await engine.retrieve("u1", QUERY)
        assert hit.score == pytest.approx(hit.similarity)

    async def test_unused_atoms_report_neutral_ratio(
        self, engine: RetrievalEngine, storage: Storage
    ) -> None:
        await insert_atom(storage, embedding=with_similarity(0.8))
        (hit,) = await engine.retrieve("u1", QUERY)
        assert hit.helpful_ratio == 0.5

    async def test_max_results_and_types(
        self, engine: RetrievalEngine, storage: Storage
    ) -> None:
        for i in range(4):
            await insert_atom(storage, content=f"q{i}", atom_type="QUESTION",
                              embedding=with_similarity(0.9))
        await insert_atom(storage, content="t", atom_type="TALKING_POINT",
                          embedding=with_similarity(0.99))

        hits = await engine.retrieve("u1", QUERY, max_results=2, types=["QUESTION"])
        assert len(hits) == 2
        assert {h.type for h in hits} == {"QUESTION"}

    async def test_embedding_failure_returns_empty(
        self, store: AtomStore, storage: Storage, config: KnowledgeConfig
    ) -> None:
        await insert_atom(storage, embedding=basis(0))
        engine = RetrievalEngine(store, StubEmbeddings(fail_on={QUERY}), config)
        assert await engine.retrieve("u1", QUERY) == []

    async def test_only_own_atoms(self, engine: RetrievalEngine, storage: Storage) -> None:
        await insert_atom(storage, user_id="u2", embedding=basis(0))
        assert await engine.retrieve("u1", QUERY) == []


class TestUsageTracking:
    async def test_record_usage_and_feedback(
        self, engine: RetrievalEngine, store: AtomStore, storage: Storage
    ) -> None:
        atom_id = await insert_atom(storage)
        assert await engine.record_usage("u1", [atom_id]) == 1
        assert await engine.record_feedback("u1", [atom_id], is_helpful=True) == 1
        assert await engine.record_feedback("u1", [atom_id], is_helpful=False) == 0

        atom = await store.get("u1", atom_id)
        assert (atom.usage_count, atom.helpful_count) == (1, 1)

    async def test_top_performing(self, engine: RetrievalEngine, storage: Storage) -> None:
        star = await insert_atom(storage, content="star", usage_count=4, helpful_count=4)
        await insert_atom(storage, content="new")
        atoms = await engine.top_performing("u1")
        assert [a.id for a in atoms] == [star]


class TestFormatForPrompt:
    def test_empty(self) -> None:
        assert format_for_prompt([]) == ""

    def test_numbered_with_labels(self) -> None:
        items = [
            RetrievedKnowledge(1, "OBJECTION_RESPONSE", "Reframe price as cost of delay.",
                               0.9, 0.9, 0, 0.5),
            RetrievedKnowledge(2, "QUESTION", "What does success look like?", 0.8, 0.8, 0, 0.5),
        ]
        text = format_for_prompt(items)
        assert "## Your Knowledge Base (based on your past conversations)" in text
        assert "1. [Objection Handling]: Reframe price as cost of delay." in text
        assert "2. [Discovery Question]: What does success look like?" in text
        assert text.rstrip().endswith("personalize your suggestions when relevant.")
