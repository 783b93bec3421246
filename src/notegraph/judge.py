"""Language-model relevance judge.

Given two entries and their vector similarity, the judge decides whether
the link is meaningful and, if so, writes a short human-readable reason.
Scores in the near-duplicate band never reach the model.  The same model
also answers the pairwise "do these notes contradict each other?" question
used by the contradiction detector.

The judge never raises for model trouble.  Unconfigured, unreachable or
timed-out calls produce a degraded :class:`~notegraph.outcome.Outcome`
holding the generic reason (for links) or ``None`` (for contradictions).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import ollama

from notegraph.config import get_config
from notegraph.entries import Entry
from notegraph.outcome import Outcome

logger = logging.getLogger(__name__)

GENERIC_REASON = "These entries may be related"
DUPLICATE_REASON = "Duplicate entries with identical content"
NO_CONNECTION = "NO_MEANINGFUL_CONNECTION"
NO_CONTRADICTION = "NO_CONTRADICTION"

_LINK_SYSTEM_PROMPT = (
    "You are an assistant that analyzes whether two notes are meaningfully "
    "related and explains why. Only describe a relationship if there's a clear "
    "conceptual or topical connection between the content. If the only "
    "similarity is creation date, format, or superficial word usage, respond "
    f"with '{NO_CONNECTION}'. If there is a meaningful connection, explain it "
    "clearly and concisely in 15 words or less."
)

_CONTRADICTION_SYSTEM_PROMPT = (
    "You are an assistant that detects contradictions between notes. Only "
    "report actual contradictions where the user has changed their approach, "
    "recommendation, or conclusion. Don't report mere differences in topic or "
    f"focus. If no clear contradiction exists, respond with '{NO_CONTRADICTION}'."
)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _entry_block(label: str, entry: Entry, body_chars: int, with_tags: bool) -> str:
    lines = [
        f"{label} ({entry.created_at[:10]}):",
        f"Title: {entry.title}",
    ]
    if with_tags:
        lines.append(f"Tags: {', '.join(entry.tags)}")
    lines.append(f"Content: {_truncate(entry.body, body_chars)}")
    return "\n".join(lines)


class RelevanceJudge:
    """Explain or reject candidate links with a local Ollama model.

    The Ollama client is created lazily on the first model call so that
    constructing a judge never touches the network.
    """

    def __init__(self) -> None:
        cfg = get_config()
        self._cfg = cfg.judge
        self._linking = cfg.linking
        self._ollama_url = cfg.ollama_url
        self._client: Any = None

    @property
    def configured(self) -> bool:
        """Whether a judge model is set.  Without one every call degrades."""
        return bool(self._cfg.model)

    # ------------------------------------------------------------------
    # Link reasons
    # ------------------------------------------------------------------

    async def judge(
        self, source: Entry, candidate: Entry, vector_score: float
    ) -> Outcome[str | None]:
        """Decide whether *source* and *candidate* deserve a link.

        Parameters
        ----------
        source:
            The entry being linked.
        candidate:
            A neighbour found by candidate search.
        vector_score:
            Similarity in ``[0, 1]`` reported by candidate search.

        Returns
        -------
        Outcome[str | None]
            ``ok(reason)`` to link, ``ok(None)`` when the model found no
            meaningful connection, or ``fallback(GENERIC_REASON)`` when the
            model could not be consulted.
        """
        if vector_score > self._linking.near_duplicate_threshold:
            if source.title == candidate.title and source.body == candidate.body:
                return Outcome.ok(DUPLICATE_REASON)
            return Outcome.ok(f"Very similar content ({round(vector_score * 100)}% match)")

        if not self.configured:
            return Outcome.fallback(GENERIC_REASON, "no judge model configured")

        body_chars = self._linking.judge_body_chars
        prompt = (
            "Analyze if these two entries are meaningfully related and explain "
            f"why or respond with {NO_CONNECTION}:\n\n"
            f"{_entry_block('Entry 1', source, body_chars, with_tags=True)}\n\n"
            f"{_entry_block('Entry 2', candidate, body_chars, with_tags=True)}\n\n"
            f"Vector similarity score: {vector_score:.2f} (0-1 scale)"
        )

        try:
            reply = await self._complete(
                _LINK_SYSTEM_PROMPT, prompt, self._cfg.max_tokens
            )
        except Exception as exc:
            logger.warning(
                "Link judge failed for %d -> %d: %s",
                source.id,
                candidate.id,
                exc,
                exc_info=True,
            )
            return Outcome.fallback(GENERIC_REASON, f"judge call failed: {exc}")

        if NO_CONNECTION in reply:
            return Outcome.ok(None)
        if not reply:
            return Outcome.fallback(GENERIC_REASON, "judge returned an empty reply")
        return Outcome.ok(reply)

    # ------------------------------------------------------------------
    # Contradictions
    # ------------------------------------------------------------------

    async def check_contradiction(self, first: Entry, second: Entry) -> Outcome[str | None]:
        """Ask whether *first* and *second* contradict each other.

        Returns ``ok(explanation)`` for a contradiction, ``ok(None)`` when
        there is none, and ``fallback(None)`` when the model could not be
        consulted.
        """
        if not self.configured:
            return Outcome.fallback(None, "no judge model configured")

        body_chars = self._linking.judge_body_chars
        prompt = (
            "Check if these two entries contradict each other:\n\n"
            f"{_entry_block('Entry 1', first, body_chars, with_tags=False)}\n\n"
            f"{_entry_block('Entry 2', second, body_chars, with_tags=False)}"
        )
        try:
            reply = await self._complete(
                _CONTRADICTION_SYSTEM_PROMPT, prompt, self._cfg.contradiction_max_tokens
            )
        except Exception as exc:
            logger.warning(
                "Contradiction check failed for %d / %d: %s",
                first.id,
                second.id,
                exc,
                exc_info=True,
            )
            return Outcome.fallback(None, f"judge call failed: {exc}")

        if not reply or NO_CONTRADICTION in reply:
            return Outcome.ok(None)
        return Outcome.ok(reply)

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    async def _complete(self, system: str, prompt: str, max_tokens: int) -> str:
        if self._client is None:
            self._client = ollama.AsyncClient(host=self._ollama_url)

        response = await asyncio.wait_for(
            self._client.generate(
                model=self._cfg.model,
                system=system,
                prompt=prompt,
                options={
                    "temperature": self._cfg.temperature,
                    "num_predict": max_tokens,
                },
            ),
            timeout=self._cfg.timeout,
        )
        return (response.response or "").strip()
