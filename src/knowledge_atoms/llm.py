"""Structured completion client used by the extraction pipeline.

The pipeline only needs one call: send a prompt, ask for JSON, get text
back.  :class:`CompletionService` captures that contract;
:class:`OllamaCompletionClient` implements it over ``ollama.AsyncClient.chat``.

Timeouts are applied by the caller (see
:meth:`~knowledge_atoms.extraction.ExtractionPipeline.extract`), so this
client only translates transport failures into
:class:`~knowledge_atoms.errors.ExternalServiceError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
import ollama

from knowledge_atoms.config import KnowledgeConfig, get_config
from knowledge_atoms.errors import ExternalServiceError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionResponse:
    """Raw text returned by the model."""

    content: str


class CompletionService(Protocol):
    """Anything that can answer a prompt, optionally in JSON mode."""

    async def complete(
        self,
        prompt: str,
        *,
        model: str,
        format: str | None = "json",
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResponse: ...


class OllamaCompletionClient:
    """Chat completion over a local Ollama daemon."""

    def __init__(self, config: KnowledgeConfig | None = None) -> None:
        cfg = config or get_config()
        self._client = ollama.AsyncClient(host=cfg.ollama_url)

    async def complete(
        self,
        prompt: str,
        *,
        model: str,
        format: str | None = "json",
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResponse:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        options: dict[str, float | int] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens

        try:
            response = await self._client.chat(
                model=model,
                messages=messages,
                format=format or "",
                options=options or None,
            )
        except (ConnectionError, OSError, httpx.HTTPError) as exc:
            raise ExternalServiceError(
                "Ollama server is not running or unreachable at the configured URL"
            ) from exc
        except ollama.ResponseError as exc:
            raise ExternalServiceError(f"Ollama chat failed: {exc}") from exc

        content = response.message.content or ""
        log.debug("Completion from %s returned %d chars", model, len(content))
        return CompletionResponse(content=content)
