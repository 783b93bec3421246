"""Scheduled orphan sweep.

Walks every owner, re-links embedded entries that have few or no links
using the auto-link pipeline with looser settings, and flags contradictions
among each owner's most recent entries.  Intended to be triggered by an
external scheduler (see ``python -m notegraph sweep``); nothing here
schedules itself.

Failures are isolated at two levels: a failing entry does not stop its
owner, and a failing owner does not stop the sweep.  Both are recorded as
strings in :attr:`SweepSummary.errors`.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from notegraph.config import get_config
from notegraph.contradictions import ContradictionDetector
from notegraph.entries import EntryManager
from notegraph.links import LinkManager
from notegraph.owners import OwnerManager
from notegraph.pipeline import LinkingPipeline
from notegraph.storage import Storage

logger = logging.getLogger(__name__)

_LOCK_NAME = "orphan_sweep"


@dataclass
class SweepSummary:
    """Counters for one sweep run.

    Attributes
    ----------
    total_owners:
        Owners seen at the start of the run.
    processed_users:
        Owners with embedded entries whose pass finished without an
        owner-level failure.  Owners with nothing embedded are skipped.
    suggestions_generated:
        New links created by re-linking orphans (mirrors not counted).
    orphan_entries_processed:
        Orphans that went through the pipeline without raising.
    contradictions_found:
        Contradicting pairs reported by the detector.
    """

    total_owners: int = 0
    processed_users: int = 0
    suggestions_generated: int = 0
    orphan_entries_processed: int = 0
    contradictions_found: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_owners": self.total_owners,
            "processed_users": self.processed_users,
            "suggestions_generated": self.suggestions_generated,
            "orphan_entries_processed": self.orphan_entries_processed,
            "contradictions_found": self.contradictions_found,
            "errors": list(self.errors),
        }


class OrphanSweep:
    """Batch re-linking of poorly connected entries across all owners."""

    def __init__(
        self,
        storage: Storage,
        owners: OwnerManager,
        entries: EntryManager,
        pipeline: LinkingPipeline,
        detector: ContradictionDetector,
        links: LinkManager,
    ) -> None:
        self._storage = storage
        self._owners = owners
        self._entries = entries
        self._pipeline = pipeline
        self._detector = detector
        self._links = links
        self._cfg = get_config().sweep

    async def run(self) -> SweepSummary:
        """Run one sweep over every owner.

        An advisory lock keeps two sweeps from overlapping; if another sweep
        holds it, an empty summary with an explanatory error is returned.
        """
        summary = SweepSummary()
        holder = uuid.uuid4().hex

        def _try_lock(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, _LOCK_NAME, holder)

        if not await self._storage.execute_transaction(_try_lock):
            logger.warning("Orphan sweep already in progress; skipping")
            summary.errors.append("sweep already in progress")
            return summary

        try:
            owner_ids = await self._owners.owner_ids()
            summary.total_owners = len(owner_ids)
            for owner_id in owner_ids:
                try:
                    if await self._sweep_owner(owner_id, summary):
                        summary.processed_users += 1
                except Exception as exc:
                    logger.exception("Sweep failed for owner %d", owner_id)
                    summary.errors.append(f"owner {owner_id}: {exc}")
        finally:
            def _release(conn: sqlite3.Connection) -> None:
                Storage.release_lock(conn, _LOCK_NAME, holder)

            await self._storage.execute_transaction(_release)

        logger.info(
            "Sweep complete: owners=%d/%d  orphans=%d  links=%d  contradictions=%d  errors=%d",
            summary.processed_users,
            summary.total_owners,
            summary.orphan_entries_processed,
            summary.suggestions_generated,
            summary.contradictions_found,
            len(summary.errors),
        )
        return summary

    async def _sweep_owner(self, owner_id: int, summary: SweepSummary) -> bool:
        """Sweep one owner.  Returns ``False`` when it has no embedded entries."""
        entries = await self._entries.embedded_for_owner(owner_id)
        if not entries:
            return False

        orphans = [e for e in entries if len(e.links) <= self._cfg.orphan_max_links]
        for entry in orphans:
            try:
                result = await self._pipeline.auto_link_entry(
                    entry,
                    max_links=self._cfg.max_links,
                    threshold=self._cfg.threshold,
                )
            except Exception as exc:
                logger.warning("Sweep: linking entry %d failed: %s", entry.id, exc)
                summary.errors.append(f"entry {entry.id}: {exc}")
                continue
            summary.orphan_entries_processed += 1
            summary.suggestions_generated += len(result.linked_entries)
            summary.errors.extend(f"entry {entry.id}: {err}" for err in result.errors)

        # entries is newest first, so each pair's first item is the newer one.
        window = entries[: self._cfg.contradiction_window]
        for found in await self._detector.detect(window):
            summary.contradictions_found += 1
            try:
                await self._links.record_contradiction(
                    found.first_id, found.second_id, found.explanation
                )
            except sqlite3.Error as exc:
                logger.warning(
                    "Sweep: recording contradiction %d -> %d failed: %s",
                    found.first_id,
                    found.second_id,
                    exc,
                )
                summary.errors.append(
                    f"contradiction {found.first_id} -> {found.second_id}: {exc}"
                )
        return True
