"""MCP server exposing the notebook as tools via stdio transport.

Each public method on :class:`~notegraph.notebook.Notebook` maps 1-to-1 to
an MCP tool.  The ``mcp`` object is imported by :mod:`notegraph.__main__`
and launched with ``mcp.run()``.

Architecture notes
------------------
* The process-level notebook comes from
  :func:`~notegraph.notebook.get_notebook` on the first tool call.
* Empty-string and zero parameters from MCP (which lacks first-class
  optionals) are normalised to ``None`` before forwarding.
* All tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from notegraph.notebook import get_notebook

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "notegraph",
    instructions="Personal notebook that links related notes and explains why",
)


def _error_response(err: Exception) -> dict[str, Any]:
    """Create a structured error dict for MCP tool responses."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# Owners and projects
# ===================================================================


@mcp.tool()
async def create_owner(name: str) -> dict[str, Any]:
    """Register a new notebook owner. Every entry belongs to exactly one owner.

    Args:
        name: Unique owner name.
    """
    try:
        nb = await get_notebook()
        return await nb.create_owner(name)
    except Exception as exc:
        logger.exception("create_owner failed")
        return _error_response(exc)


@mcp.tool()
async def create_project(owner_id: int, name: str, description: str = "") -> dict[str, Any]:
    """Create a project (a named group of entries) for an owner.

    Args:
        owner_id: The owner the project belongs to.
        name: Project name, unique per owner.
        description: Optional free-text description.
    """
    try:
        nb = await get_notebook()
        return await nb.create_project(owner_id, name, description)
    except Exception as exc:
        logger.exception("create_project failed")
        return _error_response(exc)


@mcp.tool()
async def list_projects(owner_id: int) -> dict[str, Any]:
    """List an owner's projects."""
    try:
        nb = await get_notebook()
        return await nb.list_projects(owner_id)
    except Exception as exc:
        logger.exception("list_projects failed")
        return _error_response(exc)


# ===================================================================
# Entries
# ===================================================================


@mcp.tool()
async def create_entry(
    owner_id: int,
    title: str,
    body: str,
    kind: str = "text",
    tags: list[str] | None = None,
    project_id: int = 0,
    files: list[str] | None = None,
) -> dict[str, Any]:
    """Store a new note, embed it, and link it to related notes with explanations.

    Embedding and linking are best-effort: the note is always stored, and the
    response reports whether it was embedded and which links were created.

    Args:
        owner_id: The note's owner.
        title: Short title.
        body: The note content.
        kind: One of "text", "code", "image".
        tags: Optional keyword tags. Shared tags also drive contradiction checks.
        project_id: Optional project id (0 for none).
        files: Optional attachment URLs.

    Returns:
        A dict with keys:
        - entry: The stored note, including its links
        - has_embedding: Whether the note was embedded
        - auto_linking: Summary of the links created
    """
    try:
        nb = await get_notebook()
        return await nb.create_entry(
            owner_id,
            title,
            body,
            kind=kind,
            tags=tags,
            project_id=project_id or None,
            files=files,
        )
    except Exception as exc:
        logger.exception("create_entry failed")
        return _error_response(exc)


@mcp.tool()
async def get_entry(owner_id: int, entry_id: int) -> dict[str, Any]:
    """Fetch one note with its links."""
    try:
        nb = await get_notebook()
        return await nb.get_entry(owner_id, entry_id)
    except Exception as exc:
        logger.exception("get_entry failed")
        return _error_response(exc)


@mcp.tool()
async def list_entries(
    owner_id: int,
    project_id: int = 0,
    tag: str = "",
    limit: int = 20,
    page: int = 1,
) -> dict[str, Any]:
    """List an owner's notes, newest first, optionally filtered by project or tag.

    Args:
        owner_id: The owner whose notes to list.
        project_id: Restrict to one project (0 for all).
        tag: Restrict to notes carrying this tag.
        limit: Page size (max 100).
        page: 1-based page number.
    """
    try:
        nb = await get_notebook()
        return await nb.list_entries(
            owner_id, project_id=project_id or None, tag=tag or None, limit=limit, page=page
        )
    except Exception as exc:
        logger.exception("list_entries failed")
        return _error_response(exc)


@mcp.tool()
async def update_entry(
    owner_id: int,
    entry_id: int,
    title: str = "",
    body: str = "",
    kind: str = "",
    tags: list[str] | None = None,
    files: list[str] | None = None,
    project_id: int | None = None,
) -> dict[str, Any]:
    """Update fields of a note. Changing title, body or tags re-embeds it.

    Empty values leave the field unchanged. Pass project_id=0 to remove the
    note from its project.
    """
    changes: dict[str, Any] = {}
    if title:
        changes["title"] = title
    if body:
        changes["body"] = body
    if kind:
        changes["kind"] = kind
    if tags is not None:
        changes["tags"] = tags
    if files is not None:
        changes["files"] = files
    if project_id is not None:
        changes["project_id"] = project_id or None
    try:
        nb = await get_notebook()
        return await nb.update_entry(owner_id, entry_id, **changes)
    except Exception as exc:
        logger.exception("update_entry failed")
        return _error_response(exc)


@mcp.tool()
async def delete_entry(owner_id: int, entry_id: int) -> dict[str, Any]:
    """Delete a note and remove every link that points at it."""
    try:
        nb = await get_notebook()
        return await nb.delete_entry(owner_id, entry_id)
    except Exception as exc:
        logger.exception("delete_entry failed")
        return _error_response(exc)


# ===================================================================
# Linking and search
# ===================================================================


@mcp.tool()
async def auto_link(
    owner_id: int,
    entry_id: int,
    max_links: int | None = None,
    threshold: float | None = None,
    project_id: int = 0,
) -> dict[str, Any]:
    """Find and explain links between an existing note and the owner's other notes.

    Args:
        owner_id: The note's owner.
        entry_id: The note to link.
        max_links: Maximum links to create (omit for the default of 3).
        threshold: Minimum similarity in [0, 1] (omit for the default of 0.7).
        project_id: Only link to notes in this project (0 for all).
    """
    try:
        nb = await get_notebook()
        return await nb.auto_link(
            owner_id,
            entry_id,
            max_links=max_links,
            threshold=threshold,
            project_id=project_id or None,
        )
    except Exception as exc:
        logger.exception("auto_link failed")
        return _error_response(exc)


@mcp.tool()
async def search_entries(
    owner_id: int, query: str, limit: int = 10, project_id: int = 0
) -> dict[str, Any]:
    """Semantic search over an owner's notes, with a plain text-match fallback."""
    try:
        nb = await get_notebook()
        return await nb.search_entries(owner_id, query, limit, project_id or None)
    except Exception as exc:
        logger.exception("search_entries failed")
        return _error_response(exc)


@mcp.tool()
async def generate_embeddings(
    owner_id: int, entry_ids: list[int] | None = None
) -> dict[str, Any]:
    """Embed notes that do not have an embedding yet (up to 100 per call)."""
    try:
        nb = await get_notebook()
        return await nb.generate_embeddings(owner_id, entry_ids or None)
    except Exception as exc:
        logger.exception("generate_embeddings failed")
        return _error_response(exc)


@mcp.tool()
async def run_sweep(secret: str) -> dict[str, Any]:
    """Re-link poorly connected notes for every owner and flag contradictions.

    Requires the configured sweep secret.
    """
    try:
        nb = await get_notebook()
        return await nb.run_sweep(secret)
    except Exception as exc:
        logger.exception("run_sweep failed")
        return _error_response(exc)


@mcp.tool()
async def status() -> dict[str, Any]:
    """Notebook health: row counts, database size, vector index and Ollama status."""
    try:
        nb = await get_notebook()
        return await nb.status()
    except Exception as exc:
        logger.exception("status failed")
        return _error_response(exc)
