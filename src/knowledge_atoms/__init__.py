"""knowledge_atoms -- a bounded, per-user store of reusable conversation knowledge.

Quick start::

    from knowledge_atoms import KnowledgeManager

    async def main():
        manager = KnowledgeManager()
        await manager.initialize()

        result = await manager.extract_knowledge_from_session("s1", "u1", transcript)
        stats = await manager.get_management_stats("u1")

        await manager.shutdown()

For lower-level access, import from submodules::

    from knowledge_atoms.atoms import KnowledgeAtom, AtomStore, ATOM_TYPES
    from knowledge_atoms.purge import PurgeEngine, PurgeResult
    from knowledge_atoms.consolidation import ConsolidationEngine, DisjointSet
"""

from __future__ import annotations

__version__ = "0.1.0"

from knowledge_atoms.manager import KnowledgeManager
from knowledge_atoms.atoms import ATOM_TYPES, KnowledgeAtom
from knowledge_atoms.errors import (
    CapacityExhausted,
    ExternalServiceError,
    KnowledgeError,
    ValidationError,
)

__all__ = [
    "__version__",
    "KnowledgeManager",
    "KnowledgeAtom",
    "ATOM_TYPES",
    "KnowledgeError",
    "ValidationError",
    "ExternalServiceError",
    "CapacityExhausted",
]
