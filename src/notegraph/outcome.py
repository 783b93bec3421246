"""Tagged result type for pipeline stages that may degrade.

Stages such as candidate search and the relevance judge never raise for
infrastructure trouble.  They return an :class:`Outcome` that is either
``ok`` or ``degraded`` and always carries a usable value, so callers can
decide whether a degraded answer is good enough.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

_V = TypeVar("_V")


@dataclass(frozen=True, slots=True)
class Outcome(Generic[_V]):
    """A stage result plus a flag saying whether the normal path produced it.

    Attributes
    ----------
    value:
        The stage result.  Always present, even when degraded.
    degraded:
        ``True`` when a fallback path produced *value*.
    detail:
        Short human-readable note on why the result is degraded.
    """

    value: _V
    degraded: bool = False
    detail: str | None = None

    @classmethod
    def ok(cls, value: _V) -> Outcome[_V]:
        return cls(value=value)

    @classmethod
    def fallback(cls, value: _V, detail: str) -> Outcome[_V]:
        return cls(value=value, degraded=True, detail=detail)
