"""Tests for vector candidate search and free-text search.

The ranking rules (strict threshold, self exclusion, owner and project
scoping, ordering) are checked against a stubbed KNN query so scores are
exact.  A second group runs the real ``entries_vec`` index and is skipped
when sqlite-vec is not available.
"""

from __future__ import annotations

import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from notegraph.embeddings import EmbeddingEngine
from notegraph.entries import Entry, EntryManager
from notegraph.errors import NoEmbeddingError
from notegraph.search import CandidateSearch
from notegraph.storage import Storage

from tests.conftest import (
    embed_response,
    insert_entry,
    insert_owner,
    insert_project,
    unit_vector,
    vector_with_similarity,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _entry(entry_id: int, owner_id: int = 1, project_id: int | None = None) -> Entry:
    return Entry(
        id=entry_id,
        owner_id=owner_id,
        title=f"Entry {entry_id}",
        body="body",
        project_id=project_id,
        embedding=unit_vector(0),
    )


def _stub_search(
    rows: list[dict] | Exception,
    pool: list[Entry],
    recent: list[Entry] | None = None,
) -> CandidateSearch:
    """CandidateSearch over a fake index returning *rows* (entry_id, distance)."""
    storage = MagicMock()
    storage.vec_available = True
    if isinstance(rows, Exception):
        storage.execute = AsyncMock(side_effect=rows)
    else:
        storage.execute = AsyncMock(return_value=rows)

    by_id = {e.id: e for e in pool}
    entries = MagicMock()
    entries.get_batch = AsyncMock(
        side_effect=lambda ids: {i: by_id[i] for i in ids if i in by_id}
    )
    entries.recent = AsyncMock(return_value=recent or [])
    return CandidateSearch(storage, entries, MagicMock())


# ---------------------------------------------------------------------------
# find_similar: ranking rules
# ---------------------------------------------------------------------------


class TestFindSimilarRanking:
    async def test_threshold_is_strict(self) -> None:
        target = _entry(1)
        search = _stub_search(
            [{"entry_id": 2, "distance": 0.25}, {"entry_id": 3, "distance": 0.5}],
            [_entry(2), _entry(3)],
        )
        found = await search.find_similar(target, limit=5, threshold=0.5)
        assert found.degraded is False
        assert [(c.entry.id, c.score) for c in found.value] == [(2, 0.75)]

    async def test_excludes_target_itself(self) -> None:
        target = _entry(1)
        search = _stub_search(
            [{"entry_id": 1, "distance": 0.0}, {"entry_id": 2, "distance": 0.25}],
            [target, _entry(2)],
        )
        found = await search.find_similar(target, limit=5, threshold=0.0)
        assert [c.entry.id for c in found.value] == [2]

    async def test_excludes_other_owners(self) -> None:
        target = _entry(1, owner_id=1)
        search = _stub_search(
            [{"entry_id": 2, "distance": 0.1}, {"entry_id": 3, "distance": 0.2}],
            [_entry(2, owner_id=2), _entry(3, owner_id=1)],
        )
        found = await search.find_similar(target, limit=5, threshold=0.0)
        assert [c.entry.id for c in found.value] == [3]

    async def test_project_filter(self) -> None:
        target = _entry(1)
        search = _stub_search(
            [{"entry_id": 2, "distance": 0.1}, {"entry_id": 3, "distance": 0.2}],
            [_entry(2, project_id=7), _entry(3, project_id=8)],
        )
        found = await search.find_similar(target, limit=5, threshold=0.0, project_id=8)
        assert [c.entry.id for c in found.value] == [3]

    async def test_project_scope_widens_past_other_projects(self) -> None:
        target = _entry(1)
        crowd = [_entry(i, project_id=7) for i in range(2, 14)]
        wanted = _entry(20, project_id=8)

        async def _knn(sql: str, params: tuple) -> list[dict]:
            k = params[1]
            rows = [{"entry_id": e.id, "distance": 0.05} for e in crowd]
            rows.append({"entry_id": wanted.id, "distance": 0.2})
            return rows[:k]

        search = _stub_search([], [*crowd, wanted])
        search._storage.execute = AsyncMock(side_effect=_knn)

        found = await search.find_similar(target, limit=1, threshold=0.5, project_id=8)

        assert [c.entry.id for c in found.value] == [20]
        assert found.degraded is False
        ks = [call.args[1][1] for call in search._storage.execute.await_args_list]
        assert ks == [10, 40]

    async def test_stops_widening_below_threshold(self) -> None:
        target = _entry(1)
        crowd = [_entry(i, project_id=7) for i in range(2, 12)]

        async def _knn(sql: str, params: tuple) -> list[dict]:
            return [{"entry_id": e.id, "distance": 0.6} for e in crowd][: params[1]]

        search = _stub_search([], crowd)
        search._storage.execute = AsyncMock(side_effect=_knn)

        found = await search.find_similar(target, limit=1, threshold=0.5, project_id=8)

        assert found.value == []
        assert search._storage.execute.await_count == 1

    async def test_sorted_descending_and_truncated(self) -> None:
        target = _entry(1)
        search = _stub_search(
            [
                {"entry_id": 4, "distance": 0.3},
                {"entry_id": 2, "distance": 0.1},
                {"entry_id": 3, "distance": 0.2},
            ],
            [_entry(2), _entry(3), _entry(4)],
        )
        found = await search.find_similar(target, limit=2, threshold=0.0)
        assert [c.entry.id for c in found.value] == [2, 3]
        assert found.value[0].score >= found.value[1].score

    async def test_zero_limit_returns_nothing(self) -> None:
        search = _stub_search([{"entry_id": 2, "distance": 0.1}], [_entry(2)])
        found = await search.find_similar(_entry(1), limit=0, threshold=0.0)
        assert found.value == []
        assert found.degraded is False

    async def test_no_embedding_raises(self) -> None:
        target = _entry(1)
        target.embedding = None
        search = _stub_search([], [])
        with pytest.raises(NoEmbeddingError, match="Entry 1 has no embedding"):
            await search.find_similar(target, limit=3, threshold=0.7)


# ---------------------------------------------------------------------------
# find_similar: fallback
# ---------------------------------------------------------------------------


class TestFindSimilarFallback:
    async def test_index_error_falls_back_to_recent(self) -> None:
        recent = [_entry(5), _entry(4)]
        search = _stub_search(sqlite3.OperationalError("no such table: entries_vec"), [], recent)
        found = await search.find_similar(_entry(1), limit=3, threshold=0.7)
        assert found.degraded is True
        assert "entries_vec" in (found.detail or "")
        assert [(c.entry.id, c.score) for c in found.value] == [(5, 0.5), (4, 0.5)]

    async def test_fallback_excludes_target(self) -> None:
        search = _stub_search(sqlite3.OperationalError("boom"), [], [])
        await search.find_similar(_entry(1), limit=3, threshold=0.7)
        search._entries.recent.assert_awaited_once_with(
            1, 3, exclude_id=1, project_id=None
        )

    async def test_unavailable_extension_falls_back(self, storage: Storage) -> None:
        storage._vec_available = False
        entries = EntryManager(storage)
        owner = await insert_owner(storage, "ada")
        older = await insert_entry(storage, owner, "older", age_minutes=5)
        target_id = await insert_entry(storage, owner, "target", embedding=unit_vector(0))
        search = CandidateSearch(storage, entries, EmbeddingEngine(storage))

        target = await entries.require(target_id)
        found = await search.find_similar(target, limit=3, threshold=0.7)

        assert found.degraded is True
        assert found.detail == "vector index unavailable"
        assert [c.entry.id for c in found.value] == [older]


# ---------------------------------------------------------------------------
# find_similar: real vector index
# ---------------------------------------------------------------------------


class TestFindSimilarIndex:
    async def test_ranks_by_cosine_similarity(self, vec_storage: Storage) -> None:
        entries = EntryManager(vec_storage)
        owner = await insert_owner(vec_storage, "ada")
        close = await insert_entry(vec_storage, owner, "close", embedding=vector_with_similarity(0.85, 1))
        await insert_entry(vec_storage, owner, "far", embedding=vector_with_similarity(0.2, 2))
        closer = await insert_entry(vec_storage, owner, "closer", embedding=vector_with_similarity(0.95, 3))
        target_id = await insert_entry(vec_storage, owner, "target", embedding=unit_vector(0))
        search = CandidateSearch(vec_storage, entries, EmbeddingEngine(vec_storage))

        found = await search.find_similar(await entries.require(target_id), limit=5, threshold=0.7)

        assert found.degraded is False
        assert [c.entry.id for c in found.value] == [closer, close]
        assert found.value[0].score == pytest.approx(0.95, abs=1e-4)
        assert found.value[1].score == pytest.approx(0.85, abs=1e-4)

    async def test_never_crosses_owners(self, vec_storage: Storage) -> None:
        entries = EntryManager(vec_storage)
        ada = await insert_owner(vec_storage, "ada")
        bob = await insert_owner(vec_storage, "bob")
        await insert_entry(vec_storage, bob, "bob's twin", embedding=unit_vector(0))
        target_id = await insert_entry(vec_storage, ada, "target", embedding=unit_vector(0))
        search = CandidateSearch(vec_storage, entries, EmbeddingEngine(vec_storage))

        found = await search.find_similar(await entries.require(target_id), limit=5, threshold=0.0)

        assert found.value == []

    async def test_project_scope(self, vec_storage: Storage) -> None:
        entries = EntryManager(vec_storage)
        owner = await insert_owner(vec_storage, "ada")
        work = await insert_project(vec_storage, owner, "work")
        await insert_entry(vec_storage, owner, "home", embedding=vector_with_similarity(0.9, 1))
        in_work = await insert_entry(
            vec_storage, owner, "work", embedding=vector_with_similarity(0.8, 2), project_id=work
        )
        target_id = await insert_entry(vec_storage, owner, "target", embedding=unit_vector(0))
        search = CandidateSearch(vec_storage, entries, EmbeddingEngine(vec_storage))

        found = await search.find_similar(
            await entries.require(target_id), limit=5, threshold=0.5, project_id=work
        )

        assert [c.entry.id for c in found.value] == [in_work]

    async def test_project_scope_beyond_nearest_neighbours(self, vec_storage: Storage) -> None:
        entries = EntryManager(vec_storage)
        owner = await insert_owner(vec_storage, "ada")
        work = await insert_project(vec_storage, owner, "work")
        for i in range(12):
            await insert_entry(
                vec_storage, owner, f"home {i}", embedding=vector_with_similarity(0.95, 1 + i % 14)
            )
        in_work = await insert_entry(
            vec_storage, owner, "work", embedding=vector_with_similarity(0.8, 15), project_id=work
        )
        target_id = await insert_entry(vec_storage, owner, "target", embedding=unit_vector(0))
        search = CandidateSearch(vec_storage, entries, EmbeddingEngine(vec_storage))

        found = await search.find_similar(
            await entries.require(target_id), limit=1, threshold=0.5, project_id=work
        )

        assert found.degraded is False
        assert [c.entry.id for c in found.value] == [in_work]


# ---------------------------------------------------------------------------
# search (free text)
# ---------------------------------------------------------------------------


class TestQuerySearch:
    async def test_empty_query_rejected(self, storage: Storage) -> None:
        search = CandidateSearch(storage, EntryManager(storage), EmbeddingEngine(storage))
        with pytest.raises(ValueError, match="non-empty"):
            await search.search(1, "   ")

    async def test_text_fallback_without_index(self, storage: Storage) -> None:
        storage._vec_available = False
        owner = await insert_owner(storage, "ada")
        hit = await insert_entry(storage, owner, "CSS Grid Layout")
        await insert_entry(storage, owner, "React Hooks Tips")
        search = CandidateSearch(storage, EntryManager(storage), EmbeddingEngine(storage))

        found = await search.search(owner, "grid")

        assert found.degraded is True
        assert [(c.entry.id, c.score) for c in found.value] == [(hit, None)]

    async def test_vector_ranked_results(self, vec_storage: Storage) -> None:
        owner = await insert_owner(vec_storage, "ada")
        hit = await insert_entry(vec_storage, owner, "hooks", embedding=vector_with_similarity(0.9, 1))
        engine = EmbeddingEngine(vec_storage)
        engine._client = AsyncMock()
        engine._client.embed = AsyncMock(return_value=embed_response(unit_vector(0)))
        search = CandidateSearch(vec_storage, EntryManager(vec_storage), engine)

        found = await search.search(owner, "react hooks")

        assert found.degraded is False
        assert found.value[0].entry.id == hit
        assert found.value[0].score == pytest.approx(0.9, abs=1e-4)

    async def test_embedding_failure_uses_text_match(self, vec_storage: Storage) -> None:
        owner = await insert_owner(vec_storage, "ada")
        hit = await insert_entry(vec_storage, owner, "React hooks")
        engine = EmbeddingEngine(vec_storage)
        engine._client = AsyncMock()
        engine._client.embed = AsyncMock(side_effect=ConnectionError("down"))
        search = CandidateSearch(vec_storage, EntryManager(vec_storage), engine)

        found = await search.search(owner, "hooks")

        assert found.degraded is True
        assert "unreachable" in (found.detail or "")
        assert [c.entry.id for c in found.value] == [hit]
