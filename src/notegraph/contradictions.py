"""Pairwise contradiction detection over a small window of entries.

Every pair in the window costs one model call, so the window is capped and
pairs that share no tag are skipped before the model is asked anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations

from notegraph.config import get_config
from notegraph.entries import Entry
from notegraph.judge import RelevanceJudge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Contradiction:
    first_id: int
    second_id: int
    explanation: str


def _share_tag(a: Entry, b: Entry) -> bool:
    return not set(a.tags).isdisjoint(b.tags)


class ContradictionDetector:
    """Find entries whose stated approach or conclusion has changed."""

    def __init__(self, judge: RelevanceJudge) -> None:
        self._judge = judge
        self._window = get_config().sweep.contradiction_window

    async def detect(self, entries: list[Entry]) -> list[Contradiction]:
        """Check every same-topic pair in *entries* for a contradiction.

        Parameters
        ----------
        entries:
            Entries in the order the caller wants them paired (the sweep
            passes newest first).  Anything past the configured window is
            ignored.

        Returns
        -------
        list[Contradiction]
            One item per contradicting pair, in pair order.  Pairs whose
            model call failed are logged and left out.
        """
        if len(entries) < 2 or not self._judge.configured:
            return []

        if len(entries) > self._window:
            logger.debug(
                "Contradiction window truncated from %d to %d entries",
                len(entries),
                self._window,
            )
            entries = entries[: self._window]

        found: list[Contradiction] = []
        for first, second in combinations(entries, 2):
            if not _share_tag(first, second):
                continue
            outcome = await self._judge.check_contradiction(first, second)
            if outcome.degraded:
                logger.warning(
                    "Skipping pair %d / %d: %s", first.id, second.id, outcome.detail
                )
                continue
            if outcome.value:
                found.append(Contradiction(first.id, second.id, outcome.value))
        return found
