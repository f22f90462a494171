"""Entry point for ``python -m knowledge_atoms``.

Dispatches to CLI commands or starts the MCP server over stdio if no CLI
command is given.
"""

from __future__ import annotations

import logging
import sys

from knowledge_atoms.config import get_config


def main() -> None:
    """Configure logging, then dispatch CLI commands or run the MCP server."""
    # stdout carries the MCP transport, so logs go to stderr.
    logging.basicConfig(
        level=get_config().log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args = sys.argv[1:]

    from knowledge_atoms.cli import COMMANDS, dispatch

    if args and args[0] in COMMANDS:
        dispatch(args)
        return

    from knowledge_atoms.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
