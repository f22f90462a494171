"""Command-line entry points for maintenance and health checks.

Scheduling is left to the caller (cron, systemd timers, a job runner);
these commands run one action and exit.

Usage::

    python -m knowledge_atoms health
    python -m knowledge_atoms stats <user_id>
    python -m knowledge_atoms purge <user_id> [--max N]
    python -m knowledge_atoms consolidate <user_id> [--dry-run]
    python -m knowledge_atoms maintain <user_id> [--consolidate]
    python -m knowledge_atoms maintain-all [--consolidate]
    python -m knowledge_atoms extract <session_id> <user_id> <transcript_file>
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

from knowledge_atoms.manager import KnowledgeManager

log = logging.getLogger(__name__)

COMMANDS: tuple[str, ...] = (
    "health",
    "stats",
    "purge",
    "consolidate",
    "maintain",
    "maintain-all",
    "extract",
)


async def _with_manager(fn: Callable[[KnowledgeManager], Awaitable[Any]]) -> Any:
    """Run *fn* against a freshly initialised manager, then shut it down."""
    manager = KnowledgeManager()
    await manager.initialize()
    try:
        return await fn(manager)
    finally:
        await manager.shutdown()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _usage(message: str) -> None:
    print(f"Usage: python -m knowledge_atoms {message}", file=sys.stderr)
    sys.exit(1)


def _int_flag(args: list[str], flag: str) -> int | None:
    if flag not in args:
        return None
    idx = args.index(flag)
    if idx + 1 >= len(args):
        _usage(f"... {flag} <N>")
    try:
        return int(args[idx + 1])
    except ValueError:
        print(f"Error: {flag} expects an integer, got {args[idx + 1]!r}", file=sys.stderr)
        sys.exit(1)


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------


async def _health() -> str:
    try:
        status = await _with_manager(lambda m: m.health())
    except Exception as exc:
        return f"Health check failed: {exc}"

    ollama = status["ollama"]
    models = ", ".join(
        f"{name}={'ok' if ok else 'missing'}" for name, ok in ollama["models"].items()
    )
    lines = [
        "knowledge-atoms health check:",
        f"  db: {status['db_path']} ({status['db_size_mb']:.2f} MB)",
        f"  sqlite-vec: {'loaded' if status['vec_available'] else 'unavailable'}",
        f"  ollama daemon: {'running' if ollama['daemon_running'] else 'unreachable'}",
        f"  models: {models}",
    ]
    return "\n".join(lines)


def run_health() -> None:
    print(asyncio.run(_health()))


# ------------------------------------------------------------------
# Per-user commands
# ------------------------------------------------------------------


def run_stats(args: list[str]) -> None:
    if not args:
        _usage("stats <user_id>")
    user_id = args[0]

    async def _stats(m: KnowledgeManager) -> dict[str, Any]:
        out = await m.get_management_stats(user_id)
        out["limit_status"] = await m.check_atom_limit(user_id)
        return out

    _print_json(asyncio.run(_with_manager(_stats)))


def run_purge(args: list[str]) -> None:
    if not args or args[0].startswith("-"):
        _usage("purge <user_id> [--max N]")
    user_id = args[0]
    max_to_purge = _int_flag(args, "--max")
    _print_json(asyncio.run(_with_manager(lambda m: m.purge_user_atoms(user_id, max_to_purge))))


def run_consolidate(args: list[str]) -> None:
    if not args or args[0].startswith("-"):
        _usage("consolidate <user_id> [--dry-run]")
    user_id = args[0]
    dry_run = "--dry-run" in args
    _print_json(
        asyncio.run(_with_manager(lambda m: m.consolidate_user_atoms(user_id, dry_run=dry_run)))
    )


def run_maintain(args: list[str]) -> None:
    if not args or args[0].startswith("-"):
        _usage("maintain <user_id> [--consolidate]")
    user_id = args[0]
    include = "--consolidate" in args
    _print_json(
        asyncio.run(
            _with_manager(lambda m: m.run_full_maintenance(user_id, include_consolidation=include))
        )
    )


def run_maintain_all(args: list[str]) -> None:
    include = "--consolidate" in args
    _print_json(
        asyncio.run(
            _with_manager(lambda m: m.run_maintenance_all(include_consolidation=include))
        )
    )


def run_extract(args: list[str]) -> None:
    if len(args) < 3:
        _usage("extract <session_id> <user_id> <transcript_file>")
    session_id, user_id, path = args[0], args[1], Path(args[2])
    try:
        transcript = path.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Error: cannot read {path}: {exc}", file=sys.stderr)
        sys.exit(1)
    _print_json(
        asyncio.run(
            _with_manager(
                lambda m: m.extract_knowledge_from_session(session_id, user_id, transcript)
            )
        )
    )


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m knowledge_atoms``,
        e.g. ``["purge", "u1", "--max", "20"]``.
    """
    if not args:
        return

    handlers: dict[str, Callable[[list[str]], None]] = {
        "stats": run_stats,
        "purge": run_purge,
        "consolidate": run_consolidate,
        "maintain": run_maintain,
        "maintain-all": run_maintain_all,
        "extract": run_extract,
    }

    command = args[0]
    if command == "health":
        run_health()
        sys.exit(0)

    handler = handlers.get(command)
    if handler is None:
        # Unknown command -- fall through to the MCP server.
        return
    handler(args[1:])
    sys.exit(0)
