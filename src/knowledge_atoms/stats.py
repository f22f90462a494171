"""Read-only health reporting for a user's knowledge store."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from knowledge_atoms.atoms import AtomStore
from knowledge_atoms.config import KnowledgeConfig, StatsConfig, get_config


@dataclass
class ManagementStats:
    """Aggregate view of one user's atoms."""

    total: int
    limit: int
    low_quality_count: int
    stale_count: int
    duplicate_estimate: int
    health_score: int
    by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "limit": self.limit,
            "low_quality_count": self.low_quality_count,
            "stale_count": self.stale_count,
            "duplicate_estimate": self.duplicate_estimate,
            "by_type": dict(self.by_type),
            "health_score": self.health_score,
        }


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def estimate_duplicates(by_type: dict[str, int], cfg: StatsConfig) -> int:
    """Rough duplicate count from the type distribution alone.

    Each type contributes a fixed share of its atoms above a floor.
    """
    excess = sum(
        max(0, count - cfg.duplicate_type_floor) * cfg.duplicate_factor
        for count in by_type.values()
    )
    return math.floor(excess)


def health_score(
    total: int,
    limit: int,
    low_quality_count: int,
    stale_count: int,
    cfg: StatsConfig,
) -> int:
    """Advisory 0-100 score; 100 is an empty-ish store with no bad atoms."""
    usage_ratio = total / limit if limit > 0 else 1.0
    low_quality_ratio = low_quality_count / total if total > 0 else 0.0
    stale_ratio = stale_count / total if total > 0 else 0.0

    if usage_ratio > cfg.usage_high_ratio:
        usage_penalty = cfg.usage_high_penalty
    elif usage_ratio > cfg.usage_warn_ratio:
        usage_penalty = cfg.usage_warn_penalty
    else:
        usage_penalty = 0.0

    score = _round_half_up(
        100
        - usage_penalty
        - low_quality_ratio * cfg.low_quality_weight
        - stale_ratio * cfg.stale_weight
    )
    return max(0, min(100, score))


class StatsReporter:
    """Computes :class:`ManagementStats` without modifying anything."""

    def __init__(self, store: AtomStore, config: KnowledgeConfig | None = None) -> None:
        cfg = config or get_config()
        self._store = store
        self._limits = cfg.limits
        self._cfg = cfg.stats

    async def management_stats(self, user_id: str) -> ManagementStats:
        total = await self._store.count(user_id)
        by_type = await self._store.count_by_type(user_id)
        low_quality = await self._store.find_low_quality(
            user_id,
            min_uses=self._limits.purge_min_uses,
            min_helpful_ratio=self._limits.purge_min_helpful_ratio,
        )
        stale = await self._store.find_stale(user_id, days=self._limits.stale_days)

        limit = self._limits.max_atoms_per_user
        return ManagementStats(
            total=total,
            limit=limit,
            low_quality_count=len(low_quality),
            stale_count=len(stale),
            duplicate_estimate=estimate_duplicates(by_type, self._cfg),
            health_score=health_score(total, limit, len(low_quality), len(stale), self._cfg),
            by_type=by_type,
        )

    async def extraction_stats(self, user_id: str) -> dict[str, Any]:
        """Totals by type plus usage aggregates."""
        by_type = await self._store.count_by_type(user_id)
        usage = await self._store.usage_summary(user_id)
        return {
            "total_atoms": sum(by_type.values()),
            "by_type": by_type,
            "total_usage": usage["total_usage"],
            "avg_helpfulness": round(usage["avg_helpfulness"], 2),
        }
