"""Auto-link pipeline: search, judge, link.

This is the graph-building path run after an entry is created (interactive
defaults) and by the orphan sweep (looser defaults).  For one entry it:

1. finds the owner's most similar entries (:mod:`notegraph.search`),
2. asks the judge about each candidate in turn (:mod:`notegraph.judge`),
3. writes accepted links in both directions (:mod:`notegraph.links`).

Judging is sequential and bounded by ``linking.request_timeout``: when the
budget runs out the in-flight model call is cancelled and the remaining
candidates are dropped.  Only precondition problems (unknown entry, no
embedding) raise; everything else is reported on :class:`AutoLinkResult`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from notegraph.config import get_config
from notegraph.entries import Entry, EntryManager
from notegraph.errors import NoEmbeddingError
from notegraph.judge import RelevanceJudge
from notegraph.links import JudgedCandidate, LinkManager
from notegraph.search import CandidateSearch

logger = logging.getLogger(__name__)


@dataclass
class AutoLinkResult:
    """Summary of one auto-link run.

    Attributes
    ----------
    linked_entries:
        The links created by this run (existing links are not repeated).
    candidates_considered:
        Candidates handed to the judge.
    rejected:
        Candidates the judge found unrelated.
    search_degraded:
        Candidates came from the recency fallback rather than the index.
    generic_reasons:
        Accepted links whose reason is the generic fallback text.
    timed_out:
        The judging budget ran out before every candidate was judged.
    """

    entry_id: int
    linked_entries: list[dict[str, Any]] = field(default_factory=list)
    mirrored: int = 0
    candidates_considered: int = 0
    already_linked: int = 0
    rejected: int = 0
    search_degraded: bool = False
    generic_reasons: int = 0
    timed_out: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.search_degraded or self.generic_reasons > 0 or self.timed_out

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "success": not self.errors,
            "linked_entries": list(self.linked_entries),
            "links_created": len(self.linked_entries),
            "mirrored": self.mirrored,
            "candidates_considered": self.candidates_considered,
            "already_linked": self.already_linked,
            "rejected": self.rejected,
            "degraded": self.degraded,
            "search_degraded": self.search_degraded,
            "generic_reasons": self.generic_reasons,
            "timed_out": self.timed_out,
            "errors": list(self.errors),
        }


class LinkingPipeline:
    """Run search, judge and link for one entry at a time."""

    def __init__(
        self,
        entries: EntryManager,
        search: CandidateSearch,
        judge: RelevanceJudge,
        links: LinkManager,
    ) -> None:
        self._entries = entries
        self._search = search
        self._judge = judge
        self._links = links
        self._cfg = get_config().linking

    async def auto_link(
        self,
        entry_id: int,
        owner_id: int | None = None,
        max_links: int | None = None,
        threshold: float | None = None,
        project_id: int | None = None,
    ) -> AutoLinkResult:
        """Auto-link the entry with id *entry_id*.

        Raises
        ------
        EntryNotFoundError
            If the entry does not exist (for *owner_id*, when given).
        NoEmbeddingError
            If the entry has not been embedded.
        """
        entry = await self._entries.require(entry_id, owner_id)
        return await self.auto_link_entry(entry, max_links, threshold, project_id)

    async def auto_link_entry(
        self,
        entry: Entry,
        max_links: int | None = None,
        threshold: float | None = None,
        project_id: int | None = None,
    ) -> AutoLinkResult:
        """Auto-link an already loaded *entry*.

        ``max_links`` and ``threshold`` default to the interactive
        ``linking`` settings.
        """
        if not entry.embedding:
            raise NoEmbeddingError(entry.id)

        limit = self._cfg.max_links if max_links is None else max_links
        min_score = self._cfg.threshold if threshold is None else threshold
        if limit < 0:
            raise ValueError("max_links must be >= 0")
        if not 0.0 <= min_score <= 1.0:
            raise ValueError("threshold must be within [0, 1]")

        result = AutoLinkResult(entry_id=entry.id)

        found = await self._search.find_similar(entry, limit, min_score, project_id)
        if found.degraded:
            result.search_degraded = True
            logger.info(
                "Entry %d: candidate search degraded (%s)", entry.id, found.detail
            )

        already = entry.linked_ids()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._cfg.request_timeout
        judged: list[JudgedCandidate] = []

        for candidate in found.value:
            if candidate.entry.id in already:
                result.already_linked += 1
                continue
            remaining = deadline - loop.time()
            if remaining <= 0:
                result.timed_out = True
                break
            result.candidates_considered += 1
            try:
                verdict = await asyncio.wait_for(
                    self._judge.judge(entry, candidate.entry, candidate.score),
                    timeout=remaining,
                )
            except TimeoutError:
                result.timed_out = True
                break

            if verdict.value is None:
                result.rejected += 1
                continue
            if verdict.degraded:
                result.generic_reasons += 1
            judged.append(
                JudgedCandidate(candidate.entry, candidate.score, verdict.value)
            )

        if result.timed_out:
            logger.warning(
                "Entry %d: judging budget of %.0fs exhausted after %d candidate(s)",
                entry.id,
                self._cfg.request_timeout,
                result.candidates_considered,
            )

        applied = await self._links.apply_links(entry, judged)
        result.linked_entries = applied.created_edges
        result.mirrored = applied.mirrored
        result.errors.extend(applied.errors)

        logger.info(
            "Auto-linked entry %d: %d new link(s) from %d candidate(s)",
            entry.id,
            len(result.linked_entries),
            result.candidates_considered,
        )
        return result
