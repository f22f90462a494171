"""Exception types shared across the knowledge-atom store.

Only input validation is raised to callers of the public operations.
Provider failures are wrapped in :class:`ExternalServiceError` and turned
into ``errors`` entries by the orchestrator, so a single bad atom never
aborts a whole batch.
"""

from __future__ import annotations

TRANSCRIPT_TOO_SHORT = "Transcript too short for meaningful extraction"


class KnowledgeError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(KnowledgeError, ValueError):
    """Bad caller input (short transcript, unknown type, oversize content)."""


class ExternalServiceError(KnowledgeError, RuntimeError):
    """The LLM or embedding provider failed, timed out, or returned garbage."""


class ParseError(KnowledgeError):
    """The LLM response did not match any accepted shape."""


class CapacityExhausted(KnowledgeError):
    """The user's store is full and no slots could be freed."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(capacity_message(limit))


def capacity_message(limit: int) -> str:
    """The error string reported when no room could be made for new atoms."""
    return f"Knowledge limit reached ({limit}). Delete or wait for auto-cleanup."
