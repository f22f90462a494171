"""Tests for the transcript extraction pipeline."""

from __future__ import annotations

import asyncio
import json

import pytest

from knowledge_atoms.config import ExtractionConfig, KnowledgeConfig
from knowledge_atoms.errors import TRANSCRIPT_TOO_SHORT, ExternalServiceError, ValidationError
from knowledge_atoms.extraction import EXTRACTION_PROMPT, SYSTEM_PROMPT, ExtractionPipeline
from knowledge_atoms.llm import CompletionResponse
from tests.conftest import StubCompletion

TRANSCRIPT = "Prospect: We already use a competitor. Rep: What would make switching worth it? " * 3


def _reply(*items: dict) -> str:
    return json.dumps({"atoms": list(items)})


class TestValidation:
    def test_short_transcript_rejected(self) -> None:
        pipeline = ExtractionPipeline(StubCompletion(), KnowledgeConfig())
        with pytest.raises(ValidationError, match=TRANSCRIPT_TOO_SHORT):
            pipeline.validate_transcript("x" * 50)

    def test_whitespace_does_not_count(self) -> None:
        pipeline = ExtractionPipeline(StubCompletion(), KnowledgeConfig())
        with pytest.raises(ValidationError):
            pipeline.validate_transcript(" " * 200 + "x" * 99)

    def test_exactly_minimum_accepted(self) -> None:
        pipeline = ExtractionPipeline(StubCompletion(), KnowledgeConfig())
        assert pipeline.validate_transcript("x" * 100) == "x" * 100

    async def test_short_transcript_never_calls_model(self) -> None:
        completion = StubCompletion()
        pipeline = ExtractionPipeline(completion, KnowledgeConfig())
        with pytest.raises(ValidationError):
            await pipeline.extract("too short")
        assert completion.calls == []


class TestPrompt:
    def test_keeps_tail_of_long_transcript(self) -> None:
        pipeline = ExtractionPipeline(StubCompletion(), KnowledgeConfig())
        transcript = "A" * 4000 + "B" * 6000
        prompt = pipeline.build_prompt(transcript)
        assert prompt.startswith(EXTRACTION_PROMPT)
        assert prompt[len(EXTRACTION_PROMPT):] == "B" * 6000

    def test_short_transcript_unchanged(self) -> None:
        pipeline = ExtractionPipeline(StubCompletion(), KnowledgeConfig())
        assert pipeline.truncate(TRANSCRIPT) == TRANSCRIPT

    async def test_request_parameters(self) -> None:
        completion = StubCompletion(_reply())
        pipeline = ExtractionPipeline(completion, KnowledgeConfig())
        await pipeline.extract(TRANSCRIPT)

        (call,) = completion.calls
        assert call["model"] == "llama3.1:8b"
        assert call["format"] == "json"
        assert call["system"] == SYSTEM_PROMPT
        assert call["temperature"] == 0.3
        assert call["max_tokens"] == 2000
        assert call["prompt"].endswith(TRANSCRIPT)


class TestExtract:
    async def test_returns_filtered_candidates(self) -> None:
        completion = StubCompletion(
            _reply(
                {"type": "QUESTION", "content": "What changes if you wait?", "confidence": 0.9},
                {"type": "TALKING_POINT", "content": "weak", "confidence": 0.2},
                {"type": "closing technique", "content": "Trial close early.", "confidence": 0.7},
            )
        )
        pipeline = ExtractionPipeline(completion, KnowledgeConfig())
        candidates = await pipeline.extract(TRANSCRIPT)
        assert [(c.type, c.content) for c in candidates] == [
            ("QUESTION", "What changes if you wait?"),
            ("CLOSING_TECHNIQUE", "Trial close early."),
        ]

    async def test_unparseable_reply_yields_nothing(self) -> None:
        pipeline = ExtractionPipeline(StubCompletion("not json"), KnowledgeConfig())
        assert await pipeline.extract(TRANSCRIPT) == []

    async def test_provider_error_propagates(self) -> None:
        completion = StubCompletion(error=ExternalServiceError("daemon down"))
        pipeline = ExtractionPipeline(completion, KnowledgeConfig())
        with pytest.raises(ExternalServiceError, match="daemon down"):
            await pipeline.extract(TRANSCRIPT)

    async def test_unexpected_error_wrapped(self) -> None:
        completion = StubCompletion(error=KeyError("message"))
        pipeline = ExtractionPipeline(completion, KnowledgeConfig())
        with pytest.raises(ExternalServiceError, match="LLM extraction failed"):
            await pipeline.extract(TRANSCRIPT)

    async def test_timeout(self) -> None:
        class _Slow:
            async def complete(self, prompt: str, **kwargs) -> CompletionResponse:
                await asyncio.sleep(1)
                return CompletionResponse(content=_reply())

        cfg = KnowledgeConfig(extraction=ExtractionConfig(timeout_seconds=0.01))
        pipeline = ExtractionPipeline(_Slow(), cfg)
        with pytest.raises(ExternalServiceError, match="timed out"):
            await pipeline.extract(TRANSCRIPT)
