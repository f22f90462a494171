"""Central configuration for the knowledge-atom store.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``KNOWLEDGE_`` (nested keys use
double underscores, e.g. ``KNOWLEDGE_LIMITS__MAX_ATOMS_PER_USER=50``).

Every engine also accepts an explicit :class:`KnowledgeConfig`, so tests
can vary thresholds without touching the process-wide cache.

Usage::

    from knowledge_atoms.config import get_config

    cfg = get_config()
    print(cfg.embedding_model)
    print(cfg.limits.max_atoms_per_user)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LimitsConfig:
    """Capacity and quality thresholds applied per user."""

    max_atoms_per_user: int = 500
    purge_min_uses: int = 5
    """Atoms need at least this many uses before their helpful ratio counts."""
    purge_min_helpful_ratio: float = 0.3
    stale_days: int = 90
    """Days without usage after which an atom is considered stale.

    Atoms that were never used are measured from ``created_at``."""


@dataclass(frozen=True, slots=True)
class ExtractionConfig:
    """Parameters for turning a transcript into candidate atoms."""

    min_transcript_chars: int = 100
    max_transcript_chars: int = 6000
    """Only the trailing part of longer transcripts is sent to the LLM."""
    min_confidence: float = 0.4
    max_content_chars: int = 1000
    max_context_chars: int = 500
    model: str = "llama3.1:8b"
    temperature: float = 0.3
    max_tokens: int = 2000
    timeout_seconds: float = 60.0


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Parameters for merging near-duplicate atoms."""

    similarity_threshold: float = 0.85


@dataclass(frozen=True, slots=True)
class StatsConfig:
    """Weights for the advisory health score and duplicate heuristic."""

    duplicate_type_floor: int = 10
    duplicate_factor: float = 0.1
    usage_high_ratio: float = 0.9
    usage_high_penalty: float = 30.0
    usage_warn_ratio: float = 0.7
    usage_warn_penalty: float = 15.0
    low_quality_weight: float = 40.0
    stale_weight: float = 30.0


@dataclass(frozen=True, slots=True)
class RetrievalConfig:
    """Parameters for similarity search over a user's atoms."""

    max_results: int = 5
    min_similarity: float = 0.4
    candidate_pool: int = 100
    """Only the most recently created atoms are scored."""
    boost_helpful: bool = True
    boost_min_uses: int = 3
    boost_factor: float = 0.2


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class KnowledgeConfig:
    """Root configuration object for the knowledge-atom store.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    ollama_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text"
    embedding_dims: int = 768
    embed_timeout_seconds: float = 15.0
    db_path: Path = field(default_factory=lambda: Path("~/.knowledge-atoms/knowledge.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.knowledge-atoms/backups"))
    backup_count: int = 5
    log_level: str = "INFO"

    limits: LimitsConfig = field(default_factory=LimitsConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    stats: StatsConfig = field(default_factory=StatsConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass, so expand ~ through object.__setattr__.
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())
        object.__setattr__(self, "backup_dir", Path(self.backup_dir).expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "KNOWLEDGE_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: KnowledgeConfig | None = None


def get_config(*, reload: bool = False) -> KnowledgeConfig:
    """Return the current :class:`KnowledgeConfig`.

    On the first call the config is built by merging defaults with any
    ``KNOWLEDGE_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Parameters
    ----------
    reload:
        Force re-reading environment variables and rebuilding the config.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(KnowledgeConfig, _ENV_PREFIX)
    return _cached_config
