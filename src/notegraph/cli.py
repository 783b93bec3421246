"""CLI entry points for schedulers and operators.

Usage::

    # Orphan sweep (run from cron or any external scheduler):
    python -m notegraph sweep --secret "$NOTEGRAPH_SWEEP_SECRET"

    # Maintenance:
    python -m notegraph relink --owner 3
    python -m notegraph backfill --owner 3
    python -m notegraph health

Every command prints a short human-readable summary to stdout and exits
non-zero on failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

import httpx

from notegraph.config import get_config
from notegraph.errors import UnauthorizedError

log = logging.getLogger(__name__)

COMMANDS: tuple[str, ...] = ("sweep", "relink", "backfill", "health")


def _option(args: list[str], name: str) -> str | None:
    """Return the value following ``--name`` (or ``--name=value``) in *args*."""
    flag = f"--{name}"
    for i, arg in enumerate(args):
        if arg == flag and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith(flag + "="):
            return arg.split("=", 1)[1]
    return None


def _require_owner(args: list[str]) -> int:
    raw = _option(args, "owner")
    if raw is None or not raw.isdigit():
        raise SystemExit("--owner <id> is required")
    return int(raw)


# ------------------------------------------------------------------
# Sweep
# ------------------------------------------------------------------


async def _sweep(secret: str | None) -> dict[str, Any]:
    from notegraph.notebook import get_notebook, reset_notebook

    nb = await get_notebook()
    try:
        return await nb.run_sweep(secret)
    finally:
        await reset_notebook()


def _format_sweep(summary: dict[str, Any]) -> str:
    lines = [
        "Sweep complete:",
        f"  owners: {summary['processed_users']}/{summary['total_owners']}",
        f"  orphan entries processed: {summary['orphan_entries_processed']}",
        f"  links created: {summary['suggestions_generated']}",
        f"  contradictions found: {summary['contradictions_found']}",
        f"  errors: {len(summary['errors'])}",
    ]
    lines.extend(f"    - {err}" for err in summary["errors"])
    return "\n".join(lines)


def run_sweep(args: list[str]) -> int:
    """Run the sweep command.  Returns the process exit code."""
    try:
        summary = asyncio.run(_sweep(_option(args, "secret")))
    except UnauthorizedError as exc:
        print(f"Unauthorized: {exc}", file=sys.stderr)
        return 2
    if "--json" in args:
        print(json.dumps(summary, indent=2))
    else:
        print(_format_sweep(summary))
    return 0


# ------------------------------------------------------------------
# Relink / backfill
# ------------------------------------------------------------------


async def _relink(owner_id: int) -> str:
    from notegraph.notebook import get_notebook, reset_notebook

    nb = await get_notebook()
    try:
        result = await nb.relink_owner(owner_id)
    finally:
        await reset_notebook()
    return (
        f"Relink complete: {result['entries']} entries processed, "
        f"{result['links_created']} new links, {len(result['errors'])} errors."
    )


def run_relink(args: list[str]) -> int:
    """Re-run auto-linking for every embedded entry of one owner."""
    print(asyncio.run(_relink(_require_owner(args))))
    return 0


async def _backfill(owner_id: int) -> str:
    from notegraph.notebook import get_notebook, reset_notebook

    nb = await get_notebook()
    try:
        result = await nb.generate_embeddings(owner_id)
    finally:
        await reset_notebook()
    lines = [
        f"Backfill complete: {result['succeeded']}/{result['processed']} entries embedded."
    ]
    for item in result["results"]:
        if item["status"] == "failed":
            lines.append(f"  failed {item['entry_id']}: {item['error']}")
    return "\n".join(lines)


def run_backfill(args: list[str]) -> int:
    """Embed entries of one owner that have no embedding yet."""
    print(asyncio.run(_backfill(_require_owner(args))))
    return 0


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------


async def _ollama_models(base_url: str) -> list[str] | None:
    """Model names served by Ollama, or ``None`` if the daemon is unreachable."""
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.get(f"{base_url}/api/tags")
            resp.raise_for_status()
            return [m["name"] for m in resp.json().get("models", [])]
    except (httpx.HTTPError, ValueError, KeyError) as exc:
        log.debug("Ollama tag listing failed: %s", exc)
        return None


def _model_line(label: str, model: str, available: list[str] | None) -> str:
    if not model:
        return f"  {label}: not configured"
    if available is None:
        return f"  {label}: {model} (ollama unreachable)"
    present = any(name == model or name.startswith(f"{model}:") for name in available)
    return f"  {label}: {model} ({'available' if present else 'not pulled'})"


async def _health() -> str:
    from notegraph.notebook import get_notebook, reset_notebook

    cfg = get_config()
    models = await _ollama_models(cfg.ollama_url)

    nb = await get_notebook()
    try:
        status = await nb.status()
    finally:
        await reset_notebook()

    lines = [
        "notegraph health check:",
        f"  owners: {status['owners']}",
        f"  entries: {status['entries']}",
        f"  links: {status['entry_links']}",
        f"  db_size: {status['db_size_mb']:.2f} MB",
        f"  vector index: {'available' if status['vector_index'] else 'unavailable'}",
        f"  ollama: {'reachable' if models is not None else 'unreachable'} ({cfg.ollama_url})",
        _model_line("embedding model", cfg.embedding_model, models),
        _model_line("judge model", cfg.judge.model, models),
    ]
    return "\n".join(lines)


def run_health() -> int:
    print(asyncio.run(_health()))
    return 0


# ------------------------------------------------------------------
# Dispatcher
# ------------------------------------------------------------------


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m notegraph``,
        e.g. ``["sweep", "--secret", "..."]``.
    """
    if not args:
        return

    command = args[0]
    if command == "sweep":
        sys.exit(run_sweep(args[1:]))
    elif command == "relink":
        sys.exit(run_relink(args[1:]))
    elif command == "backfill":
        sys.exit(run_backfill(args[1:]))
    elif command == "health":
        sys.exit(run_health())
    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        print(f"Available commands: {', '.join(COMMANDS)}", file=sys.stderr)
        sys.exit(1)
