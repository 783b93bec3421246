"""Shared fixtures and helpers for the notegraph test suite."""

from __future__ import annotations

import json
import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest

from notegraph.config import get_config
from notegraph.notebook import Notebook
from notegraph.storage import Storage, serialize_embedding

DIMS = 16
"""Embedding size used throughout the tests (set via NOTEGRAPH_EMBEDDING_DIMS)."""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Point every test at a temp database and small embeddings.

    The config is cached process-wide, so it is rebuilt before and after
    each test.
    """
    monkeypatch.setenv("NOTEGRAPH_DB_PATH", str(tmp_path / "default.db"))
    monkeypatch.setenv("NOTEGRAPH_EMBEDDING_DIMS", str(DIMS))
    monkeypatch.delenv("NOTEGRAPH_SWEEP_SECRET", raising=False)
    # Never consult a real password store from tests.
    monkeypatch.setattr("notegraph.credentials.has_pass", lambda: False)
    get_config(reload=True)
    yield
    monkeypatch.undo()
    get_config(reload=True)


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory."""
    s = Storage(tmp_path / "test.db")
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def vec_storage(storage: Storage) -> Storage:
    """Like ``storage`` but skips the test when sqlite-vec cannot load."""
    if not storage.vec_available:
        pytest.skip("sqlite-vec extension not available")
    return storage


@pytest.fixture
async def owner_id(storage: Storage) -> int:
    return await insert_owner(storage, "ada")


@pytest.fixture
def embed_client() -> AsyncMock:
    """Mock ``ollama.AsyncClient`` whose ``embed`` returns a fixed vector."""
    client = AsyncMock()
    client.embed = AsyncMock(return_value=embed_response(unit_vector(0)))
    return client


@pytest.fixture
def judge_client() -> AsyncMock:
    """Mock ``ollama.AsyncClient`` whose ``generate`` returns a fixed reason."""
    client = AsyncMock()
    client.generate = AsyncMock(return_value=generate_response("Both discuss the same topic"))
    return client


@pytest.fixture
async def notebook(tmp_path: Path, embed_client: AsyncMock, judge_client: AsyncMock) -> Notebook:
    """An initialized Notebook with both Ollama clients mocked out."""
    nb = Notebook(db_path=tmp_path / "notebook.db")
    await nb.initialize()
    nb._embeddings._client = embed_client
    nb._judge._client = judge_client
    yield nb  # type: ignore[misc]
    await nb.shutdown()


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------


def unit_vector(axis: int) -> list[float]:
    vec = [0.0] * DIMS
    vec[axis] = 1.0
    return vec


def vector_with_similarity(score: float, axis: int, base_axis: int = 0) -> list[float]:
    """A unit vector whose cosine similarity to ``unit_vector(base_axis)`` is *score*.

    Vectors built on different *axis* values are orthogonal apart from their
    shared base component, so their mutual similarity is the product of
    their scores.
    """
    vec = [0.0] * DIMS
    vec[base_axis] = score
    vec[axis] = math.sqrt(max(0.0, 1.0 - score * score))
    return vec


def embed_response(*vectors: list[float]) -> SimpleNamespace:
    return SimpleNamespace(embeddings=list(vectors))


def generate_response(text: str) -> SimpleNamespace:
    return SimpleNamespace(response=text)


# ---------------------------------------------------------------------------
# Direct SQL helpers (bypass managers, no model calls)
# ---------------------------------------------------------------------------


async def insert_owner(storage: Storage, name: str) -> int:
    return await storage.execute_write("INSERT INTO owners (name) VALUES (?)", (name,))


async def insert_project(storage: Storage, owner_id: int, name: str) -> int:
    return await storage.execute_write(
        "INSERT INTO projects (owner_id, name) VALUES (?, ?)", (owner_id, name)
    )


async def insert_entry(
    storage: Storage,
    owner_id: int,
    title: str,
    body: str = "",
    tags: list[str] | None = None,
    embedding: list[float] | None = None,
    kind: str = "text",
    project_id: int | None = None,
    age_minutes: int | None = None,
) -> int:
    """Insert an entry (and its vector row, when embedded) directly via SQL.

    Entries inserted later are newer unless *age_minutes* says otherwise.
    """
    body = body or f"Body of {title}"
    if age_minutes is None:
        created = datetime.now(tz=timezone.utc)
    else:
        created = datetime.now(tz=timezone.utc) - timedelta(minutes=age_minutes)
    stamp = created.isoformat()
    blob = serialize_embedding(embedding) if embedding else None

    entry_id = await storage.execute_write(
        """
        INSERT INTO entries
            (owner_id, project_id, title, body, kind, tags, files, embedding,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, '[]', ?, ?, ?)
        """,
        (owner_id, project_id, title, body, kind, json.dumps(tags or []), blob, stamp, stamp),
    )
    if embedding and storage.vec_available:
        await storage.execute_write(
            "INSERT INTO entries_vec (entry_id, owner_id, embedding) VALUES (?, ?, ?)",
            (entry_id, owner_id, blob),
        )
    return entry_id


async def insert_link(
    storage: Storage,
    source_id: int,
    target_id: int,
    reason: str = "related",
    score: float | None = 0.8,
    is_contradiction: bool = False,
) -> int:
    return await storage.execute_write(
        """
        INSERT INTO entry_links (source_id, target_id, reason, score, is_contradiction)
        VALUES (?, ?, ?, ?, ?)
        """,
        (source_id, target_id, reason, score, int(is_contradiction)),
    )


async def fetch_links(storage: Storage, source_id: int | None = None) -> list[dict[str, Any]]:
    if source_id is None:
        rows = await storage.execute("SELECT * FROM entry_links ORDER BY id")
    else:
        rows = await storage.execute(
            "SELECT * FROM entry_links WHERE source_id = ? ORDER BY id", (source_id,)
        )
    return [dict(r) for r in rows]
