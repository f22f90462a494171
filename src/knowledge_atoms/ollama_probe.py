"""Reachability checks for the Ollama daemon that serves both models.

Used by the ``health`` operation and the ``health`` CLI command to tell
apart "daemon down" from "model not pulled".  Never raises.

Usage::

    probe = OllamaProbe(cfg.ollama_url)
    status = await probe.status([cfg.embedding_model, cfg.extraction.model])
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

log = logging.getLogger(__name__)


class OllamaProbe:
    """Queries ``GET /api/tags`` on an Ollama server."""

    def __init__(self, base_url: str = "http://localhost:11434", timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def list_models(self) -> list[str] | None:
        """Installed model names, or ``None`` if the daemon did not answer."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as exc:
            log.debug("Ollama daemon unreachable at %s: %s", self.base_url, exc)
            return None
        if resp.status_code != 200:
            log.debug("Ollama /api/tags returned HTTP %d", resp.status_code)
            return None
        try:
            return [m["name"] for m in resp.json().get("models", [])]
        except (ValueError, KeyError, TypeError, AttributeError):
            log.warning("Unexpected /api/tags payload from %s", self.base_url)
            return []

    async def is_daemon_running(self) -> bool:
        return await self.list_models() is not None

    async def status(self, required_models: list[str]) -> dict[str, Any]:
        """Daemon reachability plus, per required model, whether it is pulled.

        A model matches if its name is a prefix of an installed tag, so
        ``nomic-embed-text`` matches ``nomic-embed-text:latest``.
        """
        installed = await self.list_models()
        if installed is None:
            return {
                "daemon_running": False,
                "models": {m: False for m in required_models},
            }
        return {
            "daemon_running": True,
            "models": {
                m: any(name == m or name.startswith(f"{m}:") for name in installed)
                for m in required_models
            },
        }
