"""Central orchestrator for the notegraph system.

The :class:`Notebook` wires storage, embeddings, search, the judge, link
maintenance, contradiction detection and the orphan sweep into a single
high-level API that the MCP server and the CLI call.

There is **one Notebook per process**, obtained through
:func:`get_notebook`.  All public methods return plain dicts because their
output is JSON-serialised for tool responses.

Usage::

    from notegraph.notebook import Notebook

    nb = Notebook()
    await nb.initialize()
    owner = await nb.create_owner("ada")
    created = await nb.create_entry(owner["id"], "React hooks", "useEffect ...", tags=["react"])
    await nb.shutdown()
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import sqlite3
from pathlib import Path
from typing import Any

from notegraph.config import get_config
from notegraph.contradictions import ContradictionDetector
from notegraph.credentials import sweep_secret
from notegraph.embeddings import EmbeddingEngine
from notegraph.entries import EntryManager
from notegraph.errors import EmbeddingUnavailableError, UnauthorizedError
from notegraph.judge import RelevanceJudge
from notegraph.links import LinkManager
from notegraph.owners import OwnerManager
from notegraph.pipeline import LinkingPipeline
from notegraph.search import CandidateSearch
from notegraph.storage import Storage
from notegraph.sweep import OrphanSweep

logger = logging.getLogger(__name__)

_BACKFILL_LIMIT = 100
_MAX_PAGE_SIZE = 100


class Notebook:
    """The central orchestrator.  One notebook per process.

    All components are created in :meth:`initialize` and released in
    :meth:`shutdown`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._config = get_config()
        self._db_path_override = db_path
        self._storage: Storage | None = None
        self._embeddings: EmbeddingEngine | None = None
        self._owners: OwnerManager | None = None
        self._entries: EntryManager | None = None
        self._search: CandidateSearch | None = None
        self._judge: RelevanceJudge | None = None
        self._links: LinkManager | None = None
        self._pipeline: LinkingPipeline | None = None
        self._detector: ContradictionDetector | None = None
        self._sweep: OrphanSweep | None = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Initialise all components.  Idempotent."""
        if self._initialized:
            return

        self._storage = Storage(self._db_path_override or self._config.db_path)
        await self._storage.initialize()

        self._embeddings = EmbeddingEngine(self._storage)
        self._owners = OwnerManager(self._storage)
        self._entries = EntryManager(self._storage)
        self._search = CandidateSearch(self._storage, self._entries, self._embeddings)
        self._judge = RelevanceJudge()
        self._links = LinkManager(self._storage)
        self._pipeline = LinkingPipeline(
            self._entries, self._search, self._judge, self._links
        )
        self._detector = ContradictionDetector(self._judge)
        self._sweep = OrphanSweep(
            self._storage,
            self._owners,
            self._entries,
            self._pipeline,
            self._detector,
            self._links,
        )

        self._initialized = True
        logger.info("Notebook initialized. DB: %s", self._storage.db_path)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "Notebook not initialized. Call await notebook.initialize() first."
            )

    # ==================================================================
    # Owners and projects
    # ==================================================================

    async def create_owner(self, name: str) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._owners is not None
        return (await self._owners.create_owner(name)).to_dict()

    async def list_owners(self) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._owners is not None
        owners = await self._owners.list_owners()
        return {"owners": [o.to_dict() for o in owners]}

    async def create_project(
        self, owner_id: int, name: str, description: str = ""
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._owners is not None
        project = await self._owners.create_project(owner_id, name, description)
        return project.to_dict()

    async def list_projects(self, owner_id: int) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._owners is not None
        projects = await self._owners.list_projects(owner_id)
        return {"owner_id": owner_id, "projects": [p.to_dict() for p in projects]}

    # ==================================================================
    # Entries
    # ==================================================================

    async def create_entry(
        self,
        owner_id: int,
        title: str,
        body: str,
        kind: str = "text",
        tags: list[str] | None = None,
        project_id: int | None = None,
        files: list[str] | None = None,
    ) -> dict[str, Any]:
        """Create an entry, then embed and auto-link it on a best-effort basis.

        The entry is stored even when embedding or linking fails; the
        response says what happened.

        Returns
        -------
        dict
            Keys: ``entry``, ``has_embedding``, ``auto_linking``.
        """
        self._ensure_initialized()
        assert self._entries is not None
        assert self._embeddings is not None
        assert self._pipeline is not None

        entry = await self._entries.create(
            owner_id, title, body, kind=kind, tags=tags, project_id=project_id, files=files
        )

        try:
            entry.embedding = await self._embeddings.embed_and_store(
                entry.id,
                owner_id,
                EmbeddingEngine.entry_text(entry.title, entry.body, entry.tags),
            )
        except EmbeddingUnavailableError as exc:
            logger.warning("Entry %d stored without embedding: %s", entry.id, exc)

        if entry.embedding:
            try:
                linked = await self._pipeline.auto_link_entry(entry)
                auto_linking = linked.to_dict()
            except Exception as exc:
                logger.exception("Auto-link failed for new entry %d", entry.id)
                auto_linking = {"success": False, "linked_entries": [], "error": str(exc)}
        else:
            auto_linking = {
                "success": False,
                "linked_entries": [],
                "error": "entry has no embedding",
            }

        fresh = await self._entries.require(entry.id, owner_id)
        return {
            "entry": fresh.to_dict(),
            "has_embedding": fresh.has_embedding,
            "auto_linking": auto_linking,
        }

    async def get_entry(self, owner_id: int, entry_id: int) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._entries is not None
        return (await self._entries.require(entry_id, owner_id)).to_dict()

    async def list_entries(
        self,
        owner_id: int,
        project_id: int | None = None,
        tag: str | None = None,
        limit: int = 20,
        page: int = 1,
    ) -> dict[str, Any]:
        """One page of an owner's entries, newest first, with pagination info."""
        self._ensure_initialized()
        assert self._entries is not None
        limit = max(1, min(limit, _MAX_PAGE_SIZE))
        page = max(1, page)
        entries, total = await self._entries.list_for_owner(
            owner_id, project_id=project_id, tag=tag, limit=limit, offset=(page - 1) * limit
        )
        return {
            "entries": [e.to_dict() for e in entries],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def update_entry(
        self, owner_id: int, entry_id: int, **changes: Any
    ) -> dict[str, Any]:
        """Update an entry; re-embed when its title, body or tags changed."""
        self._ensure_initialized()
        assert self._entries is not None
        assert self._embeddings is not None

        entry, stale = await self._entries.update(entry_id, owner_id, **changes)
        re_embedded = False
        if stale:
            try:
                await self._embeddings.embed_and_store(
                    entry.id,
                    owner_id,
                    EmbeddingEngine.entry_text(entry.title, entry.body, entry.tags),
                )
                re_embedded = True
            except EmbeddingUnavailableError as exc:
                logger.warning("Entry %d updated without re-embedding: %s", entry.id, exc)
            entry = await self._entries.require(entry.id, owner_id)

        return {"entry": entry.to_dict(), "re_embedded": re_embedded}

    async def delete_entry(self, owner_id: int, entry_id: int) -> dict[str, Any]:
        """Delete an entry and every link that references it."""
        self._ensure_initialized()
        assert self._entries is not None
        removed = await self._entries.delete(entry_id, owner_id)
        return {"status": "deleted", "entry_id": entry_id, "links_removed": removed}

    # ==================================================================
    # Linking and search
    # ==================================================================

    async def auto_link(
        self,
        owner_id: int,
        entry_id: int,
        max_links: int | None = None,
        threshold: float | None = None,
        project_id: int | None = None,
    ) -> dict[str, Any]:
        """Run the auto-link pipeline for one existing entry.

        Candidates are restricted to *project_id* when given.

        Raises
        ------
        EntryNotFoundError
            If the entry does not exist for *owner_id*.
        NoEmbeddingError
            If the entry has not been embedded yet.
        """
        self._ensure_initialized()
        assert self._pipeline is not None
        result = await self._pipeline.auto_link(
            entry_id,
            owner_id=owner_id,
            max_links=max_links,
            threshold=threshold,
            project_id=project_id,
        )
        return result.to_dict()

    async def search_entries(
        self,
        owner_id: int,
        query: str,
        limit: int = 10,
        project_id: int | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._search is not None
        found = await self._search.search(owner_id, query, limit, project_id)
        return {
            "query": query,
            "results": [
                {**c.entry.to_dict(), "score": c.score} for c in found.value
            ],
            "degraded": found.degraded,
            "detail": found.detail,
        }

    async def generate_embeddings(
        self, owner_id: int, entry_ids: list[int] | None = None
    ) -> dict[str, Any]:
        """Backfill embeddings for entries that lack one.

        At most 100 entries are processed per call.  Each entry is reported
        individually so one failure does not hide the others.
        """
        self._ensure_initialized()
        assert self._entries is not None
        assert self._embeddings is not None

        pending = await self._entries.missing_embeddings(
            owner_id, limit=_BACKFILL_LIMIT, entry_ids=entry_ids
        )
        results: list[dict[str, Any]] = []
        for entry in pending:
            try:
                await self._embeddings.embed_and_store(
                    entry.id,
                    owner_id,
                    EmbeddingEngine.entry_text(entry.title, entry.body, entry.tags),
                )
                results.append({"entry_id": entry.id, "title": entry.title, "status": "success"})
            except (EmbeddingUnavailableError, sqlite3.Error) as exc:
                logger.warning("Backfill failed for entry %d: %s", entry.id, exc)
                results.append(
                    {
                        "entry_id": entry.id,
                        "title": entry.title,
                        "status": "failed",
                        "error": str(exc),
                    }
                )

        succeeded = sum(1 for r in results if r["status"] == "success")
        return {
            "processed": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }

    # ==================================================================
    # Sweep and status
    # ==================================================================

    async def run_sweep(self, secret: str | None) -> dict[str, Any]:
        """Run the orphan sweep if *secret* matches the configured one.

        Raises
        ------
        UnauthorizedError
            If no sweep secret is configured or *secret* does not match.
        """
        self._ensure_initialized()
        assert self._sweep is not None
        assert self._storage is not None

        expected = sweep_secret()
        if not expected or not secret or not hmac.compare_digest(
            secret.encode("utf-8"), expected.encode("utf-8")
        ):
            logger.warning("Rejected sweep request with invalid secret")
            raise UnauthorizedError("Invalid or missing sweep secret")

        summary = await self._sweep.run()
        await self._storage.optimize()
        return summary.to_dict()

    async def relink_owner(self, owner_id: int) -> dict[str, Any]:
        """Re-run auto-linking for every embedded entry of one owner."""
        self._ensure_initialized()
        assert self._entries is not None
        assert self._pipeline is not None

        entries = await self._entries.embedded_for_owner(owner_id)
        created = 0
        errors: list[str] = []
        for entry in entries:
            try:
                result = await self._pipeline.auto_link_entry(entry)
            except Exception as exc:
                logger.warning("Relink failed for entry %d: %s", entry.id, exc)
                errors.append(f"entry {entry.id}: {exc}")
                continue
            created += len(result.linked_entries)
            errors.extend(result.errors)
        return {"entries": len(entries), "links_created": created, "errors": errors}

    async def status(self) -> dict[str, Any]:
        """Database counts plus provider health."""
        self._ensure_initialized()
        assert self._storage is not None
        assert self._embeddings is not None
        assert self._judge is not None

        counts = await self._storage.table_counts()
        return {
            **counts,
            "db_size_mb": await self._storage.get_db_size_mb(),
            "vector_index": self._storage.vec_available,
            "embedding_model": self._embeddings.model or None,
            "judge_model": self._config.judge.model or None,
            "ollama_healthy": await self._embeddings.health_check(),
        }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Close storage.  Safe to call more than once."""
        if self._storage:
            await self._storage.close()
        self._initialized = False
        logger.info("Notebook shut down")


# ---------------------------------------------------------------------------
# Process-level singleton
# ---------------------------------------------------------------------------

_notebook_instance: Notebook | None = None
_notebook_lock: asyncio.Lock | None = None


async def get_notebook() -> Notebook:
    """Return the process-level Notebook, initialising it on first call.

    Double-checked locking with an :class:`asyncio.Lock` makes concurrent
    first callers share one initialisation.
    """
    global _notebook_instance, _notebook_lock
    # The lock is created lazily because no event loop exists at import time.
    if _notebook_lock is None:
        _notebook_lock = asyncio.Lock()
    if _notebook_instance is not None:
        return _notebook_instance
    async with _notebook_lock:
        if _notebook_instance is None:
            nb = Notebook()
            await nb.initialize()
            _notebook_instance = nb
    return _notebook_instance


async def reset_notebook() -> None:
    """Shut down and forget the process-level Notebook.

    FOR TESTING ONLY.
    """
    global _notebook_instance, _notebook_lock
    if _notebook_instance is not None:
        await _notebook_instance.shutdown()
    _notebook_instance = None
    _notebook_lock = None
