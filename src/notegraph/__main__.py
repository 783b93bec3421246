"""Entry point for ``python -m notegraph``.

Dispatches to CLI commands (sweep, relink, backfill, health) or starts the
MCP server over stdio transport if no CLI command is given.
"""

from __future__ import annotations

import logging
import sys

from notegraph.config import get_config


def _configure_logging() -> None:
    # stdout carries the MCP transport, so logs go to stderr.
    logging.basicConfig(
        level=get_config().log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    _configure_logging()
    args = sys.argv[1:]

    if args:
        from notegraph.cli import dispatch
        dispatch(args)
        return

    from notegraph.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
