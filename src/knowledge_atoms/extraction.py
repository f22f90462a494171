"""Transcript analysis: one structured completion in, candidate atoms out.

The pipeline is narrow.  It validates the transcript, keeps
only its most recent part, asks the completion service for a JSON reply,
and hands the reply to :mod:`knowledge_atoms.parsing`.  It never touches
storage; capacity checks and persistence are the orchestrator's job.

Usage::

    pipeline = ExtractionPipeline(OllamaCompletionClient())
    candidates = await pipeline.extract(transcript)
"""

from __future__ import annotations

import asyncio
import logging

from knowledge_atoms.config import KnowledgeConfig, get_config
from knowledge_atoms.errors import (
    TRANSCRIPT_TOO_SHORT,
    ExternalServiceError,
    ValidationError,
)
from knowledge_atoms.llm import CompletionService
from knowledge_atoms.parsing import ExtractedCandidate, decode_payload, filter_candidates

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert conversation analyst. "
    "Always respond with valid JSON containing an 'atoms' array."
)

EXTRACTION_PROMPT = """\
You analyse sales calls and meetings and pull out reusable knowledge.

Read the transcript below and extract knowledge atoms in these categories:

1. OBJECTION_RESPONSE: how the speaker handled an objection or pushback.
   Capture both the objection and the response that worked.
2. TALKING_POINT: arguments or value propositions that resonated.
3. QUESTION: discovery questions that moved the conversation forward.
4. CLOSING_TECHNIQUE: how the speaker asked for a commitment or trial close.
5. TOPIC_EXPERTISE: technical knowledge or industry insight the speaker shared.

For every atom give:
- type: one of OBJECTION_RESPONSE, TALKING_POINT, QUESTION, CLOSING_TECHNIQUE, TOPIC_EXPERTISE
- content: the knowledge itself, concise but complete (1-3 sentences)
- context: a short note on when it was used
- confidence: how valuable you judge it, from 0.0 to 1.0

Only include actionable knowledge you rate at 0.6 or higher.
Respond with JSON of the form {"atoms": [ ... ]}.

TRANSCRIPT:
"""


class ExtractionPipeline:
    """Turns a transcript into an ordered list of :class:`ExtractedCandidate`.

    Parameters
    ----------
    completion:
        Any :class:`~knowledge_atoms.llm.CompletionService`.
    config:
        Optional explicit configuration; only the ``extraction`` section
        is used.
    """

    def __init__(
        self,
        completion: CompletionService,
        config: KnowledgeConfig | None = None,
    ) -> None:
        self._completion = completion
        self._cfg = (config or get_config()).extraction

    def validate_transcript(self, transcript: str | None) -> str:
        """Return the transcript or raise :class:`ValidationError` if too short."""
        if not transcript or len(transcript.strip()) < self._cfg.min_transcript_chars:
            raise ValidationError(TRANSCRIPT_TOO_SHORT)
        return transcript

    def truncate(self, transcript: str) -> str:
        """Keep only the trailing ``max_transcript_chars`` characters."""
        limit = self._cfg.max_transcript_chars
        if len(transcript) <= limit:
            return transcript
        return transcript[-limit:]

    def build_prompt(self, transcript: str) -> str:
        return EXTRACTION_PROMPT + self.truncate(transcript)

    async def extract(self, transcript: str) -> list[ExtractedCandidate]:
        """Run the completion and decode its reply.

        Raises
        ------
        ValidationError
            If the transcript is too short.
        ExternalServiceError
            If the completion call fails or exceeds its timeout.  Not
            retried.
        """
        transcript = self.validate_transcript(transcript)
        prompt = self.build_prompt(transcript)
        logger.debug(
            "Requesting extraction from %s (%d transcript chars)",
            self._cfg.model,
            len(prompt) - len(EXTRACTION_PROMPT),
        )

        try:
            response = await asyncio.wait_for(
                self._completion.complete(
                    prompt,
                    model=self._cfg.model,
                    format="json",
                    system=SYSTEM_PROMPT,
                    temperature=self._cfg.temperature,
                    max_tokens=self._cfg.max_tokens,
                ),
                timeout=self._cfg.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError(
                f"LLM extraction timed out after {self._cfg.timeout_seconds:.0f}s"
            ) from exc
        except ExternalServiceError:
            raise
        except Exception as exc:
            raise ExternalServiceError(f"LLM extraction failed: {exc}") from exc

        decoded = decode_payload(response.content)
        candidates = filter_candidates(
            decoded.items,
            min_confidence=self._cfg.min_confidence,
            max_content_chars=self._cfg.max_content_chars,
            max_context_chars=self._cfg.max_context_chars,
        )
        logger.info(
            "Extraction reply shape=%s: %d raw items, %d candidates kept",
            decoded.shape,
            len(decoded.items),
            len(candidates),
        )
        return candidates
