"""Exception types raised across the notegraph package.

Only precondition and authorisation problems are raised to callers.
Degraded-but-usable results (recency fallback, generic judge reasons) are
reported through :class:`notegraph.outcome.Outcome` instead.
"""

from __future__ import annotations


class NotegraphError(Exception):
    """Base class for all notegraph errors."""


class NoEmbeddingError(NotegraphError, ValueError):
    """The entry has no embedding, so it cannot take part in vector search."""

    def __init__(self, entry_id: int) -> None:
        super().__init__(f"Entry {entry_id} has no embedding")
        self.entry_id = entry_id


class EntryNotFoundError(NotegraphError, ValueError):
    """No entry exists with the requested id (or it belongs to another owner)."""

    def __init__(self, entry_id: int) -> None:
        super().__init__(f"Entry {entry_id} not found")
        self.entry_id = entry_id


class EmbeddingUnavailableError(NotegraphError, RuntimeError):
    """The embedding provider is unconfigured, unreachable or misbehaving."""


class UnauthorizedError(NotegraphError):
    """The caller did not present the expected sweep secret."""
