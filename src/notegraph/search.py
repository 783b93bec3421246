"""Vector candidate search over an owner's entries.

:meth:`CandidateSearch.find_similar` is the first stage of auto-linking: it
ranks an owner's other entries by cosine similarity to a target entry using
the ``entries_vec`` index (partitioned by owner).

Failure policy
--------------
A target without an embedding is a caller error and raises
:class:`~notegraph.errors.NoEmbeddingError`.  Everything else (extension not
loaded, index query failing) degrades: the owner's most recent entries are
returned with a fixed neutral score and the outcome is flagged as degraded,
so linking can still proceed through the judge.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, NamedTuple

from notegraph.config import get_config
from notegraph.embeddings import EmbeddingEngine
from notegraph.entries import Entry, EntryManager
from notegraph.errors import EmbeddingUnavailableError, NoEmbeddingError
from notegraph.outcome import Outcome
from notegraph.storage import Storage, serialize_embedding

logger = logging.getLogger(__name__)

_KNN_OVERFETCH: int = 4
"""Multiplier on *limit* for the KNN query.  Self-matches, project scoping
and the threshold are applied after the index returns, so ask for more."""

_KNN_MIN_K: int = 10

_KNN_MAX_K: int = 4096
"""Largest ``k`` sqlite-vec accepts.  Project-scoped queries widen ``k``
up to this bound when other projects crowd out the nearest rows."""


class Candidate(NamedTuple):
    """An entry returned by search together with its similarity score.

    ``score`` is ``None`` only for plain text-match results from
    :meth:`CandidateSearch.search`.
    """

    entry: Entry
    score: float | None


class CandidateSearch:
    """Nearest-neighbour search scoped to a single owner.

    Parameters
    ----------
    storage:
        An initialised :class:`~notegraph.storage.Storage`.
    entries:
        Used to hydrate ids returned by the index and for the recency
        fallback.
    embeddings:
        Used to embed free-text queries in :meth:`search`.
    """

    def __init__(
        self,
        storage: Storage,
        entries: EntryManager,
        embeddings: EmbeddingEngine,
    ) -> None:
        self._storage = storage
        self._entries = entries
        self._embeddings = embeddings
        self._cfg = get_config().linking

    async def find_similar(
        self,
        target: Entry,
        limit: int,
        threshold: float,
        project_id: int | None = None,
    ) -> Outcome[list[Candidate]]:
        """Rank the owner's other entries by similarity to *target*.

        Parameters
        ----------
        target:
            The entry to find neighbours for.  Must carry an embedding.
        limit:
            Maximum number of candidates returned.
        threshold:
            Ranked results must score strictly above this value.
        project_id:
            Optionally restrict candidates to one project.

        Returns
        -------
        Outcome[list[Candidate]]
            Candidates in descending score order.  Degraded when the index
            could not be used; the candidates are then the owner's most
            recent entries scored with ``linking.fallback_score``.

        Raises
        ------
        NoEmbeddingError
            If *target* has no embedding.
        """
        if not target.embedding:
            raise NoEmbeddingError(target.id)
        if limit <= 0:
            return Outcome.ok([])

        if not self._storage.vec_available:
            return await self._recent_fallback(
                target, limit, project_id, "vector index unavailable"
            )

        blob = serialize_embedding(target.embedding)
        k = max(limit * _KNN_OVERFETCH, _KNN_MIN_K)
        while True:
            try:
                rows = await self._knn(blob, k, target.owner_id)
            except sqlite3.Error as exc:
                logger.warning(
                    "Vector search failed for entry %d (%s); using recent entries",
                    target.id,
                    exc,
                )
                return await self._recent_fallback(target, limit, project_id, str(exc))

            candidates = await self._scope(rows, target, threshold, project_id)
            if len(candidates) >= limit or len(rows) < k or k >= _KNN_MAX_K:
                break
            # Rows come back nearest first: once the farthest one is at or
            # below the threshold, a wider query cannot add candidates.
            if EmbeddingEngine.distance_to_similarity(rows[-1]["distance"]) <= threshold:
                break
            k = min(k * _KNN_OVERFETCH, _KNN_MAX_K)

        candidates.sort(key=lambda c: c.score, reverse=True)
        return Outcome.ok(candidates[:limit])

    async def _knn(self, blob: bytes, k: int, owner_id: int) -> list[Any]:
        return await self._storage.execute(
            """
            SELECT entry_id, distance
            FROM entries_vec
            WHERE embedding MATCH ? AND k = ? AND owner_id = ?
            ORDER BY distance
            """,
            (blob, k, owner_id),
        )

    async def _scope(
        self,
        rows: list[Any],
        target: Entry,
        threshold: float,
        project_id: int | None,
    ) -> list[Candidate]:
        """Hydrate index rows, keeping same-owner, in-project hits above *threshold*."""
        scored: list[tuple[int, float]] = []
        for row in rows:
            if row["entry_id"] == target.id:
                continue
            score = EmbeddingEngine.distance_to_similarity(row["distance"])
            if score > threshold:
                scored.append((row["entry_id"], score))

        hydrated = await self._entries.get_batch([eid for eid, _ in scored])
        candidates: list[Candidate] = []
        for entry_id, score in scored:
            entry = hydrated.get(entry_id)
            if entry is None or entry.owner_id != target.owner_id:
                continue
            if project_id is not None and entry.project_id != project_id:
                continue
            candidates.append(Candidate(entry, score))
        return candidates

    async def _recent_fallback(
        self,
        target: Entry,
        limit: int,
        project_id: int | None,
        reason: str,
    ) -> Outcome[list[Candidate]]:
        recent = await self._entries.recent(
            target.owner_id, limit, exclude_id=target.id, project_id=project_id
        )
        score = self._cfg.fallback_score
        return Outcome.fallback([Candidate(e, score) for e in recent], reason)

    async def search(
        self,
        owner_id: int,
        query: str,
        limit: int = 10,
        project_id: int | None = None,
    ) -> Outcome[list[Candidate]]:
        """Free-text search over an owner's entries.

        Embeds *query* and ranks by vector similarity.  Falls back to a
        case-insensitive substring match (degraded) when the query cannot be
        embedded, the index is unavailable, or nothing is ranked.
        """
        if not query or not query.strip():
            raise ValueError("Search query must be a non-empty string")

        detail = "no vector matches"
        if self._storage.vec_available:
            ranked: list[Candidate] = []
            k = max(limit * _KNN_OVERFETCH, _KNN_MIN_K)
            try:
                blob = serialize_embedding(await self._embeddings.embed_text(query))
                while True:
                    rows = await self._knn(blob, k, owner_id)
                    hydrated = await self._entries.get_batch([r["entry_id"] for r in rows])
                    ranked = []
                    for row in rows:
                        entry = hydrated.get(row["entry_id"])
                        if entry is None:
                            continue
                        if project_id is not None and entry.project_id != project_id:
                            continue
                        ranked.append(
                            Candidate(entry, EmbeddingEngine.distance_to_similarity(row["distance"]))
                        )
                    if len(ranked) >= limit or len(rows) < k or k >= _KNN_MAX_K:
                        break
                    k = min(k * _KNN_OVERFETCH, _KNN_MAX_K)
            except EmbeddingUnavailableError as exc:
                detail = str(exc)
            except sqlite3.Error as exc:
                logger.warning("Vector query search failed (%s); using text match", exc)
                ranked = []
                detail = str(exc)

            if ranked:
                return Outcome.ok(ranked[:limit])
        else:
            detail = "vector index unavailable"

        matches = await self._entries.text_search(owner_id, query, limit, project_id)
        return Outcome.fallback([Candidate(e, None) for e in matches], detail)
