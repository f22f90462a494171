"""MCP server exposing the knowledge store as tools over stdio.

Each public operation of :class:`~knowledge_atoms.manager.KnowledgeManager`
is mapped to one tool.  The ``mcp`` object is imported by
:mod:`knowledge_atoms.__main__` and launched with ``mcp.run()``.

* A single global :pydata:`_manager` is lazily initialised on the first
  tool call via :func:`_ensure_manager`.
* Empty-string and non-positive parameters from MCP (which lacks
  first-class optionals) are normalised to ``None`` before forwarding.
* Every tool catches exceptions and returns a structured error dict.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from knowledge_atoms.manager import KnowledgeManager

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and manager instances
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "knowledge-atoms",
    instructions=(
        "Per-user store of reusable conversation knowledge: extract atoms "
        "from transcripts, retrieve them for prompts, and keep the store healthy"
    ),
)

_manager = KnowledgeManager()


async def _ensure_manager() -> None:
    if not _manager._initialized:
        await _manager.initialize()


def _error_response(err: Exception) -> dict[str, Any]:
    """Structured error dict returned in place of a raised exception."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# Ingestion
# ===================================================================


@mcp.tool()
async def extract_knowledge(
    session_id: str,
    user_id: str,
    transcript: str,
) -> dict[str, Any]:
    """Extract knowledge atoms from a finished conversation transcript.

    Only the last 6000 characters are analysed.  If the user is near the
    500-atom limit, low-quality and stale atoms are evicted first; when
    room still runs short the lowest-confidence candidates are dropped.

    Args:
        session_id: Identifier of the conversation the transcript came from.
        user_id: Owner of the new atoms.
        transcript: Full transcript text (at least 100 characters).

    Returns:
        A dict with keys ``session_id``, ``atoms_created`` and ``errors``.
    """
    try:
        await _ensure_manager()
        return await _manager.extract_knowledge_from_session(session_id, user_id, transcript)
    except Exception as exc:
        logger.exception("extract_knowledge failed")
        return _error_response(exc)


@mcp.tool()
async def add_atom(
    user_id: str,
    type: str,
    content: str,
    context: str = "",
) -> dict[str, Any]:
    """Store a hand-written knowledge atom with full confidence.

    Args:
        user_id: Owner of the atom.
        type: One of OBJECTION_RESPONSE, TALKING_POINT, QUESTION,
            CLOSING_TECHNIQUE, TOPIC_EXPERTISE.
        content: The knowledge itself, 10-1000 characters.
        context: Optional note on when to use it (up to 500 characters).
    """
    try:
        await _ensure_manager()
        return await _manager.add_manual_atom(user_id, type, content, context or None)
    except Exception as exc:
        logger.exception("add_atom failed")
        return _error_response(exc)


# ===================================================================
# Browsing
# ===================================================================


@mcp.tool()
async def check_atom_limit(user_id: str) -> dict[str, Any]:
    """Report how many atoms a user holds and how many more fit."""
    try:
        await _ensure_manager()
        return await _manager.check_atom_limit(user_id)
    except Exception as exc:
        logger.exception("check_atom_limit failed")
        return _error_response(exc)


@mcp.tool()
async def list_atoms(
    user_id: str,
    type: str = "",
    sort_by: str = "created_at",
    sort_order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """Page through a user's atoms.

    Args:
        user_id: Owner of the atoms.
        type: Optional type filter; empty for all types.
        sort_by: created_at, usage_count, helpful_count or last_used_at.
        sort_order: asc or desc.
        limit: Page size.
        offset: Number of atoms to skip.
    """
    try:
        await _ensure_manager()
        return await _manager.list_atoms(
            user_id,
            type=type or None,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
    except Exception as exc:
        logger.exception("list_atoms failed")
        return _error_response(exc)


@mcp.tool()
async def delete_atom(user_id: str, atom_id: int) -> dict[str, Any]:
    """Permanently delete one atom owned by *user_id*."""
    try:
        await _ensure_manager()
        return await _manager.delete_atom(user_id, atom_id)
    except Exception as exc:
        logger.exception("delete_atom failed")
        return _error_response(exc)


# ===================================================================
# Maintenance
# ===================================================================


@mcp.tool()
async def manage_knowledge(
    user_id: str,
    action: str,
    max_to_purge: int = 0,
) -> dict[str, Any]:
    """Run a maintenance action for one user.

    Args:
        user_id: Whose store to maintain.
        action: ``purge`` removes low-quality and stale atoms;
            ``consolidate`` merges near-duplicates;
            ``full_maintenance`` purges then consolidates.
        max_to_purge: Cap for ``purge``; 0 means no cap.
    """
    try:
        await _ensure_manager()
        if action == "purge":
            return await _manager.purge_user_atoms(user_id, max_to_purge or None)
        if action == "consolidate":
            return await _manager.consolidate_user_atoms(user_id)
        if action == "full_maintenance":
            return await _manager.run_full_maintenance(user_id, include_consolidation=True)
        raise ValueError(
            f"Unknown action {action!r}; expected purge, consolidate or full_maintenance"
        )
    except Exception as exc:
        logger.exception("manage_knowledge failed")
        return _error_response(exc)


@mcp.tool()
async def knowledge_stats(user_id: str) -> dict[str, Any]:
    """Health report: totals by type, low-quality and stale counts, health score."""
    try:
        await _ensure_manager()
        stats = await _manager.get_management_stats(user_id)
        stats["extraction"] = await _manager.get_extraction_stats(user_id)
        return stats
    except Exception as exc:
        logger.exception("knowledge_stats failed")
        return _error_response(exc)


@mcp.tool()
async def maintenance_history(user_id: str, limit: int = 20) -> dict[str, Any]:
    """Recent purge, eviction and consolidation actions for a user."""
    try:
        await _ensure_manager()
        return {"entries": await _manager.get_maintenance_history(user_id, limit)}
    except Exception as exc:
        logger.exception("maintenance_history failed")
        return _error_response(exc)


# ===================================================================
# Retrieval
# ===================================================================


@mcp.tool()
async def retrieve_knowledge(
    user_id: str,
    query: str,
    max_results: int = 5,
    min_similarity: float = 0.4,
    types: list[str] | None = None,
) -> dict[str, Any]:
    """Find the user's atoms most relevant to *query*.

    Returns:
        A dict with ``results`` (ranked hits) and ``prompt`` (a formatted
        block ready to inject into a system prompt, empty when no hits).
    """
    try:
        await _ensure_manager()
        return await _manager.retrieve_relevant_knowledge(
            user_id,
            query,
            max_results=max_results,
            min_similarity=min_similarity,
            types=types or None,
        )
    except Exception as exc:
        logger.exception("retrieve_knowledge failed")
        return _error_response(exc)


@mcp.tool()
async def record_usage(
    user_id: str,
    atom_ids: list[int],
    helpful: bool | None = None,
) -> dict[str, Any]:
    """Record that atoms were shown to the user; ``helpful=True`` also counts them as helpful."""
    try:
        await _ensure_manager()
        return await _manager.record_knowledge_usage(user_id, atom_ids, helpful)
    except Exception as exc:
        logger.exception("record_usage failed")
        return _error_response(exc)


@mcp.tool()
async def record_feedback(
    user_id: str,
    atom_ids: list[int],
    is_helpful: bool,
) -> dict[str, Any]:
    """Record explicit feedback on previously used atoms."""
    try:
        await _ensure_manager()
        return await _manager.record_feedback(user_id, atom_ids, is_helpful)
    except Exception as exc:
        logger.exception("record_feedback failed")
        return _error_response(exc)


@mcp.tool()
async def top_atoms(user_id: str, limit: int = 5) -> dict[str, Any]:
    """The user's most helpful atoms among those used at least three times."""
    try:
        await _ensure_manager()
        return {"atoms": await _manager.get_top_performing(user_id, limit)}
    except Exception as exc:
        logger.exception("top_atoms failed")
        return _error_response(exc)


@mcp.tool()
async def health() -> dict[str, Any]:
    """Database size, sqlite-vec availability and Ollama status."""
    try:
        await _ensure_manager()
        return await _manager.health()
    except Exception as exc:
        logger.exception("health failed")
        return _error_response(exc)
