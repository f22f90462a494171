"""Removal of low-quality and stale atoms.

Two independent predicates select atoms for deletion:

- **low quality** -- used at least ``purge_min_uses`` times with a
  helpful ratio below ``purge_min_helpful_ratio``;
- **stale** -- not used for ``stale_days`` (never-used atoms are measured
  from their creation time).

The purge set is the de-duplicated union, low-quality ids first and then
stale ids, each in id order.  An optional cap keeps only the head of that
sequence.  Deletion is one bulk statement, so running a purge twice in a
row removes nothing the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from knowledge_atoms.atoms import AtomStore
from knowledge_atoms.config import KnowledgeConfig, get_config

logger = logging.getLogger(__name__)


@dataclass
class PurgeResult:
    """Summary of one purge run.

    ``low_quality_count`` and ``stale_count`` are measured against the
    atoms actually deleted; an atom matching both predicates counts in
    both but is deleted once.
    """

    purged_count: int = 0
    low_quality_count: int = 0
    stale_count: int = 0
    errors: list[str] = field(default_factory=list)
    purged_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "purged_count": self.purged_count,
            "low_quality_count": self.low_quality_count,
            "stale_count": self.stale_count,
            "errors": list(self.errors),
        }


def build_purge_set(
    low_quality_ids: list[int],
    stale_ids: list[int],
    max_to_purge: int | None = None,
) -> list[int]:
    """Ordered, de-duplicated union of both id lists, optionally capped.

    A cap of ``None`` or anything below 1 means no cap.
    """
    ordered = list(dict.fromkeys([*low_quality_ids, *stale_ids]))
    if max_to_purge is not None and max_to_purge > 0:
        return ordered[:max_to_purge]
    return ordered


class PurgeEngine:
    """Selects and deletes low-quality and stale atoms for one user at a time.

    Parameters
    ----------
    store:
        The :class:`~knowledge_atoms.atoms.AtomStore` to purge from.
    config:
        Optional explicit configuration; thresholds come from ``limits``.
    """

    def __init__(self, store: AtomStore, config: KnowledgeConfig | None = None) -> None:
        self._store = store
        self._limits = (config or get_config()).limits

    async def find_candidates(self, user_id: str) -> tuple[list[int], list[int]]:
        """Return ``(low_quality_ids, stale_ids)`` without deleting anything."""
        low_quality = await self._store.find_low_quality(
            user_id,
            min_uses=self._limits.purge_min_uses,
            min_helpful_ratio=self._limits.purge_min_helpful_ratio,
        )
        stale = await self._store.find_stale(user_id, days=self._limits.stale_days)
        return low_quality, stale

    async def purge(self, user_id: str, max_to_purge: int | None = None) -> PurgeResult:
        """Delete the purge set for *user_id*.

        Storage failures are recorded in ``errors`` rather than raised.
        """
        result = PurgeResult()
        try:
            low_quality, stale = await self.find_candidates(user_id)
            final_ids = build_purge_set(low_quality, stale, max_to_purge)

            if final_ids:
                await self._store.delete_many(user_id, final_ids)

            chosen = set(final_ids)
            result.purged_count = len(final_ids)
            result.purged_ids = final_ids
            result.low_quality_count = sum(1 for i in low_quality if i in chosen)
            result.stale_count = sum(1 for i in stale if i in chosen)
        except Exception as exc:
            logger.exception("Purge failed for user %s", user_id)
            result.errors.append(f"Purge failed: {exc}")
            return result

        if result.purged_count:
            logger.info(
                "Purged %d atoms for user %s (low_quality=%d, stale=%d)",
                result.purged_count,
                user_id,
                result.low_quality_count,
                result.stale_count,
            )
            try:
                await self._store.log_maintenance(
                    user_id,
                    "purge",
                    {
                        "low_quality_count": result.low_quality_count,
                        "stale_count": result.stale_count,
                        "max_to_purge": max_to_purge,
                    },
                    result.purged_ids,
                )
            except Exception:
                logger.warning("Could not record purge for user %s", user_id, exc_info=True)
        return result
