"""Entry CRUD operations and the entry data model.

An **entry** is one note written by an owner: a title, a body, a kind
(``text``, ``code`` or ``image``), free-form tags, optional attachments and
an optional project.  Once embedded it takes part in vector search, and it
accumulates explained :class:`LinkEdge` records pointing at related entries.

This module provides:

* :class:`Entry` and :class:`LinkEdge` -- dataclasses mapping 1:1 onto rows
  of ``entries`` and ``entry_links``.
* :class:`EntryManager` -- async CRUD, listing and text search on top of
  :class:`~notegraph.storage.Storage`.

Usage::

    mgr = EntryManager(storage)
    entry = await mgr.create(owner_id, "React hooks", "useEffect cleanup ...", tags=["react"])
    print(entry.to_dict())
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from notegraph.errors import EntryNotFoundError
from notegraph.storage import Storage, deserialize_embedding, utc_now

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ENTRY_KINDS: tuple[str, ...] = ("text", "code", "image")
"""Allowed values for the ``entries.kind`` column."""

_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"title", "body", "kind", "tags", "files", "project_id"}
)

_EMBEDDED_FIELDS: frozenset[str] = frozenset({"title", "body", "tags"})
"""Fields that feed the embedding text; changing any of them forces a re-embed."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class LinkEdge:
    """One directed, explained link from an entry to another entry.

    Parameters
    ----------
    target_id:
        The entry this link points at.  A reference, not ownership.
    reason:
        Human-readable explanation of the relationship.
    score:
        Vector similarity in ``[0, 1]``, or ``None`` for links that did not
        come from the vector path (contradictions).
    is_contradiction:
        ``True`` for warnings that the two entries disagree.
    """

    target_id: int
    reason: str
    score: float | None = None
    is_contradiction: bool = False

    @classmethod
    def from_row(cls, row: Any) -> LinkEdge:
        return cls(
            target_id=row["target_id"],
            reason=row["reason"],
            score=row["score"],
            is_contradiction=bool(row["is_contradiction"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "reason": self.reason,
            "score": self.score,
            "is_contradiction": self.is_contradiction,
        }


def _json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


@dataclass
class Entry:
    """In-memory representation of a single entry row.

    ``tags`` and ``files`` are JSON arrays in SQLite and lists here.
    ``embedding`` is ``None`` until an embedding has been stored, which is a
    normal state for fresh entries or when the provider is down.
    """

    id: int
    owner_id: int
    title: str
    body: str
    kind: str = "text"
    tags: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    project_id: int | None = None
    embedding: list[float] | None = None
    links: list[LinkEdge] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Any, links: list[LinkEdge] | None = None) -> Entry:
        """Create an :class:`Entry` from a :class:`sqlite3.Row` of ``entries``."""
        blob = row["embedding"]
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            body=row["body"],
            kind=row["kind"],
            tags=_json_list(row["tags"]),
            files=_json_list(row["files"]),
            project_id=row["project_id"],
            embedding=deserialize_embedding(blob) if blob else None,
            links=list(links or []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def linked_ids(self) -> set[int]:
        return {link.target_id for link in self.links}

    def to_dict(self) -> dict[str, Any]:
        """Serialise for tool responses.  The raw vector is left out."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "project_id": self.project_id,
            "title": self.title,
            "body": self.body,
            "kind": self.kind,
            "tags": list(self.tags),
            "files": list(self.files),
            "has_embedding": self.has_embedding,
            "links": [link.to_dict() for link in self.links],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_kind(kind: str) -> None:
    if kind not in ENTRY_KINDS:
        raise ValueError(
            f"Invalid entry kind {kind!r}; must be one of {', '.join(ENTRY_KINDS)}"
        )


def _validate_text(name: str, value: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Entry {name} must be a non-empty string")


def _clean_tags(tags: list[str] | None) -> list[str]:
    if tags is None:
        return []
    if not isinstance(tags, list):
        raise ValueError("tags must be a list of strings")
    return [t.strip() for t in tags if isinstance(t, str) and t.strip()]


def _clean_files(files: list[str] | None) -> list[str]:
    if files is None:
        return []
    if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
        raise ValueError("files must be a list of URLs")
    return list(files)


# ---------------------------------------------------------------------------
# EntryManager
# ---------------------------------------------------------------------------


class EntryManager:
    """Async CRUD over the ``entries`` table.

    Parameters
    ----------
    storage:
        An initialised :class:`~notegraph.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        owner_id: int,
        title: str,
        body: str,
        kind: str = "text",
        tags: list[str] | None = None,
        project_id: int | None = None,
        files: list[str] | None = None,
    ) -> Entry:
        """Insert a new entry without an embedding.

        Raises
        ------
        ValueError
            On invalid fields, an unknown owner, or a project that belongs
            to a different owner.
        """
        _validate_text("title", title)
        _validate_text("body", body)
        _validate_kind(kind)
        clean_tags = _clean_tags(tags)
        clean_files = _clean_files(files)

        if project_id is not None:
            await self._check_project(owner_id, project_id)

        now = utc_now()
        try:
            rows = await self._storage.execute_write_returning(
                """
                INSERT INTO entries
                    (owner_id, project_id, title, body, kind, tags, files,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    owner_id,
                    project_id,
                    title,
                    body,
                    kind,
                    json.dumps(clean_tags),
                    json.dumps(clean_files),
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Owner {owner_id} does not exist") from exc

        entry = Entry.from_row(rows[0])
        log.info("Created entry %d for owner %d", entry.id, owner_id)
        return entry

    async def _check_project(self, owner_id: int, project_id: int) -> None:
        rows = await self._storage.execute(
            "SELECT owner_id FROM projects WHERE id = ?", (project_id,)
        )
        if not rows or rows[0]["owner_id"] != owner_id:
            raise ValueError(f"Project {project_id} not found for owner {owner_id}")

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, entry_id: int, owner_id: int | None = None) -> Entry | None:
        """Fetch one entry with its links, optionally scoped to *owner_id*."""
        if owner_id is None:
            rows = await self._storage.execute(
                "SELECT * FROM entries WHERE id = ?", (entry_id,)
            )
        else:
            rows = await self._storage.execute(
                "SELECT * FROM entries WHERE id = ? AND owner_id = ?",
                (entry_id, owner_id),
            )
        if not rows:
            return None
        links = await self._load_links([entry_id])
        return Entry.from_row(rows[0], links.get(entry_id))

    async def require(self, entry_id: int, owner_id: int | None = None) -> Entry:
        """Like :meth:`get` but raises :class:`EntryNotFoundError`."""
        entry = await self.get(entry_id, owner_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    async def get_batch(self, entry_ids: list[int]) -> dict[int, Entry]:
        """Fetch several entries (with links) in two queries."""
        if not entry_ids:
            return {}
        placeholders = ",".join("?" for _ in entry_ids)
        rows = await self._storage.execute(
            f"SELECT * FROM entries WHERE id IN ({placeholders})",
            tuple(entry_ids),
        )
        links = await self._load_links([r["id"] for r in rows])
        return {r["id"]: Entry.from_row(r, links.get(r["id"])) for r in rows}

    async def _rows_to_entries(self, rows: list[sqlite3.Row]) -> list[Entry]:
        links = await self._load_links([r["id"] for r in rows])
        return [Entry.from_row(r, links.get(r["id"])) for r in rows]

    async def _load_links(self, entry_ids: list[int]) -> dict[int, list[LinkEdge]]:
        if not entry_ids:
            return {}
        placeholders = ",".join("?" for _ in entry_ids)
        rows = await self._storage.execute(
            f"""
            SELECT source_id, target_id, reason, score, is_contradiction
            FROM entry_links
            WHERE source_id IN ({placeholders})
            ORDER BY id
            """,
            tuple(entry_ids),
        )
        out: dict[int, list[LinkEdge]] = {}
        for row in rows:
            out.setdefault(row["source_id"], []).append(LinkEdge.from_row(row))
        return out

    async def list_for_owner(
        self,
        owner_id: int,
        project_id: int | None = None,
        tag: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Entry], int]:
        """Return one page of an owner's entries, newest first, plus the total."""
        clauses = ["owner_id = ?"]
        params: list[Any] = [owner_id]
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if tag:
            clauses.append("EXISTS (SELECT 1 FROM json_each(entries.tags) WHERE value = ?)")
            params.append(tag)
        where = " AND ".join(clauses)

        count_rows = await self._storage.execute(
            f"SELECT COUNT(*) AS cnt FROM entries WHERE {where}", tuple(params)
        )
        rows = await self._storage.execute(
            f"SELECT * FROM entries WHERE {where} "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return await self._rows_to_entries(rows), int(count_rows[0]["cnt"])

    async def recent(
        self,
        owner_id: int,
        limit: int,
        exclude_id: int | None = None,
        project_id: int | None = None,
        embedded_only: bool = False,
    ) -> list[Entry]:
        """Most recently created entries of an owner, newest first."""
        clauses = ["owner_id = ?"]
        params: list[Any] = [owner_id]
        if exclude_id is not None:
            clauses.append("id != ?")
            params.append(exclude_id)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if embedded_only:
            clauses.append("embedding IS NOT NULL AND length(embedding) > 0")
        rows = await self._storage.execute(
            f"SELECT * FROM entries WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (*params, limit),
        )
        return await self._rows_to_entries(rows)

    async def embedded_for_owner(self, owner_id: int) -> list[Entry]:
        """Every entry of *owner_id* that has a non-empty embedding, newest first."""
        rows = await self._storage.execute(
            """
            SELECT * FROM entries
            WHERE owner_id = ? AND embedding IS NOT NULL AND length(embedding) > 0
            ORDER BY created_at DESC, id DESC
            """,
            (owner_id,),
        )
        return await self._rows_to_entries(rows)

    async def missing_embeddings(
        self,
        owner_id: int,
        limit: int = 100,
        entry_ids: list[int] | None = None,
    ) -> list[Entry]:
        """Entries of *owner_id* that still lack an embedding, oldest first."""
        clauses = ["owner_id = ?", "(embedding IS NULL OR length(embedding) = 0)"]
        params: list[Any] = [owner_id]
        if entry_ids:
            clauses.append(f"id IN ({','.join('?' for _ in entry_ids)})")
            params.extend(entry_ids)
        rows = await self._storage.execute(
            f"SELECT * FROM entries WHERE {' AND '.join(clauses)} ORDER BY id LIMIT ?",
            (*params, limit),
        )
        return [Entry.from_row(r) for r in rows]

    async def text_search(
        self,
        owner_id: int,
        query: str,
        limit: int = 10,
        project_id: int | None = None,
    ) -> list[Entry]:
        """Case-insensitive substring match on title, body and tags."""
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        clauses = [
            "owner_id = ?",
            "(title LIKE ? ESCAPE '\\' OR body LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\')",
        ]
        params: list[Any] = [owner_id, pattern, pattern, pattern]
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        rows = await self._storage.execute(
            f"SELECT * FROM entries WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (*params, limit),
        )
        return await self._rows_to_entries(rows)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(
        self, entry_id: int, owner_id: int, **changes: Any
    ) -> tuple[Entry, bool]:
        """Apply *changes* to an entry.

        Returns
        -------
        tuple[Entry, bool]
            The updated entry and whether its embedding is now stale (title,
            body or tags changed).  A stale embedding is cleared so the entry
            drops out of vector search until it is re-embedded.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        current = await self.require(entry_id, owner_id)
        values: dict[str, Any] = {}
        if "title" in changes:
            _validate_text("title", changes["title"])
            values["title"] = changes["title"]
        if "body" in changes:
            _validate_text("body", changes["body"])
            values["body"] = changes["body"]
        if "kind" in changes:
            _validate_kind(changes["kind"])
            values["kind"] = changes["kind"]
        if "tags" in changes:
            values["tags"] = json.dumps(_clean_tags(changes["tags"]))
        if "files" in changes:
            values["files"] = json.dumps(_clean_files(changes["files"]))
        if "project_id" in changes:
            if changes["project_id"] is not None:
                await self._check_project(owner_id, changes["project_id"])
            values["project_id"] = changes["project_id"]

        if not values:
            return current, False

        stale = any(
            name in values and values[name] != (
                json.dumps(current.tags) if name == "tags" else getattr(current, name)
            )
            for name in _EMBEDDED_FIELDS
        )
        values["updated_at"] = utc_now()
        vec_available = self._storage.vec_available

        def _apply(conn: sqlite3.Connection) -> None:
            assignments = ", ".join(f"{name} = :{name}" for name in values)
            conn.execute(
                f"UPDATE entries SET {assignments} WHERE id = :entry_id",
                {**values, "entry_id": entry_id},
            )
            if stale:
                conn.execute("UPDATE entries SET embedding = NULL WHERE id = ?", (entry_id,))
                if vec_available:
                    conn.execute("DELETE FROM entries_vec WHERE entry_id = ?", (entry_id,))

        await self._storage.execute_transaction(_apply)
        return await self.require(entry_id, owner_id), stale

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, entry_id: int, owner_id: int) -> int:
        """Delete an entry and every link that touches it, atomically.

        Returns
        -------
        int
            Number of links removed (owned by the entry or pointing at it).

        Raises
        ------
        EntryNotFoundError
            If the entry does not exist for *owner_id*.
        """
        vec_available = self._storage.vec_available

        def _delete(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT id FROM entries WHERE id = ? AND owner_id = ?",
                (entry_id, owner_id),
            ).fetchone()
            if row is None:
                raise EntryNotFoundError(entry_id)
            referrers = [
                r[0]
                for r in conn.execute(
                    "SELECT DISTINCT source_id FROM entry_links WHERE target_id = ?",
                    (entry_id,),
                ).fetchall()
            ]
            removed = conn.execute(
                "DELETE FROM entry_links WHERE source_id = ? OR target_id = ?",
                (entry_id, entry_id),
            ).rowcount
            if referrers:
                conn.execute(
                    f"UPDATE entries SET updated_at = ? "
                    f"WHERE id IN ({','.join('?' for _ in referrers)})",
                    (utc_now(), *referrers),
                )
            if vec_available:
                conn.execute("DELETE FROM entries_vec WHERE entry_id = ?", (entry_id,))
            conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            return removed

        removed = await self._storage.execute_transaction(_delete)
        log.info("Deleted entry %d (%d links removed)", entry_id, removed)
        return removed
