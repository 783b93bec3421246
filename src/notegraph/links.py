"""Link graph maintenance.

Turns judged candidates into :class:`~notegraph.entries.LinkEdge` rows.
Similarity links are written on the source entry and mirrored onto each
target; contradiction warnings are one-directional.

Duplicate prevention lives in the database: partial unique indexes on
``(source_id, target_id)`` (one for similarity links, one for
contradictions) plus ``INSERT ... ON CONFLICT DO NOTHING``, so two writers
racing on the same pair cannot both succeed.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from notegraph.entries import Entry, LinkEdge
from notegraph.storage import Storage, utc_now

logger = logging.getLogger(__name__)

CONTRADICTION_PREFIX = "Potential contradiction: "

_INSERT_SIMILARITY_SQL = """
INSERT INTO entry_links (source_id, target_id, reason, score, is_contradiction)
VALUES (?, ?, ?, ?, 0)
ON CONFLICT(source_id, target_id) WHERE is_contradiction = 0 DO NOTHING
"""

_INSERT_CONTRADICTION_SQL = """
INSERT INTO entry_links (source_id, target_id, reason, score, is_contradiction)
VALUES (?, ?, ?, NULL, 1)
ON CONFLICT(source_id, target_id) WHERE is_contradiction = 1 DO NOTHING
"""


def _validate_pair(source_id: int, target_id: int) -> None:
    if source_id == target_id:
        raise ValueError(f"Cannot link entry {source_id} to itself")


@dataclass
class JudgedCandidate:
    """A search candidate after the judge has spoken.

    ``reason`` of ``None`` means the judge rejected the pair.
    """

    entry: Entry
    score: float | None
    reason: str | None


@dataclass
class LinkResult:
    """What :meth:`LinkManager.apply_links` actually changed.

    Attributes
    ----------
    created_edges:
        Only the edges that did not exist before this call.
    mirrored:
        How many reverse edges were written onto targets.
    errors:
        Mirror failures.  The source-side edges stay in place.
    """

    created_edges: list[dict[str, Any]] = field(default_factory=list)
    mirrored: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created_edges)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_count": self.created_count,
            "created_edges": list(self.created_edges),
            "mirrored": self.mirrored,
            "errors": list(self.errors),
        }


class LinkManager:
    """Add-if-absent writes for similarity links and contradiction warnings."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def apply_links(
        self, source: Entry, judged: list[JudgedCandidate]
    ) -> LinkResult:
        """Persist accepted candidates as links in both directions.

        Candidates with a ``None`` reason or pointing at *source* itself are
        skipped.  Source-side edges are written in one transaction; each
        mirror is its own transaction and is only written when the target
        holds no link back to the source yet.
        """
        accepted = [
            j for j in judged if j.reason is not None and j.entry.id != source.id
        ]
        result = LinkResult()
        if not accepted:
            return result

        def _insert_forward(conn: sqlite3.Connection) -> list[JudgedCandidate]:
            created: list[JudgedCandidate] = []
            for j in accepted:
                cursor = conn.execute(
                    _INSERT_SIMILARITY_SQL, (source.id, j.entry.id, j.reason, j.score)
                )
                if cursor.rowcount == 1:
                    created.append(j)
            if created:
                conn.execute(
                    "UPDATE entries SET updated_at = ? WHERE id = ?",
                    (utc_now(), source.id),
                )
            return created

        created = await self._storage.execute_transaction(_insert_forward)

        for j in created:
            result.created_edges.append(
                {
                    "source_id": source.id,
                    "target_id": j.entry.id,
                    "title": j.entry.title,
                    "reason": j.reason,
                    "score": j.score,
                }
            )
            try:
                if await self._mirror(source.id, j):
                    result.mirrored += 1
            except sqlite3.Error as exc:
                logger.warning(
                    "Mirror link %d -> %d failed: %s", j.entry.id, source.id, exc
                )
                result.errors.append(
                    f"mirror {j.entry.id} -> {source.id} failed: {exc}"
                )

        logger.debug(
            "Entry %d: %d new links, %d mirrored",
            source.id,
            result.created_count,
            result.mirrored,
        )
        return result

    async def _mirror(self, source_id: int, judged: JudgedCandidate) -> bool:
        target_id = judged.entry.id

        def _insert_reverse(conn: sqlite3.Connection) -> bool:
            back = conn.execute(
                "SELECT 1 FROM entry_links WHERE source_id = ? AND target_id = ? LIMIT 1",
                (target_id, source_id),
            ).fetchone()
            if back is not None:
                return False
            cursor = conn.execute(
                _INSERT_SIMILARITY_SQL,
                (target_id, source_id, judged.reason, judged.score),
            )
            if cursor.rowcount != 1:
                return False
            conn.execute(
                "UPDATE entries SET updated_at = ? WHERE id = ?",
                (utc_now(), target_id),
            )
            return True

        return await self._storage.execute_transaction(_insert_reverse)

    async def record_contradiction(
        self, first_id: int, second_id: int, explanation: str
    ) -> bool:
        """Flag *first_id* as contradicting *second_id*.

        Returns ``True`` if a new warning was written, ``False`` if the same
        directed warning already existed.
        """
        _validate_pair(first_id, second_id)

        def _insert(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                _INSERT_CONTRADICTION_SQL,
                (first_id, second_id, f"{CONTRADICTION_PREFIX}{explanation}"),
            )
            if cursor.rowcount != 1:
                return False
            conn.execute(
                "UPDATE entries SET updated_at = ? WHERE id = ?",
                (utc_now(), first_id),
            )
            return True

        return await self._storage.execute_transaction(_insert)

    async def links_for(self, entry_id: int) -> list[LinkEdge]:
        """All links owned by *entry_id* in insertion order."""
        rows = await self._storage.execute(
            """
            SELECT target_id, reason, score, is_contradiction
            FROM entry_links WHERE source_id = ? ORDER BY id
            """,
            (entry_id,),
        )
        return [LinkEdge.from_row(r) for r in rows]
