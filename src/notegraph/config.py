"""Central configuration for the notegraph system.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``NOTEGRAPH_`` (nested keys use
double underscores, e.g. ``NOTEGRAPH_LINKING__THRESHOLD=0.75``).

Usage::

    from notegraph.config import get_config

    cfg = get_config()
    print(cfg.embedding_model)
    print(cfg.linking.threshold)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class JudgeConfig:
    """Parameters for the language-model relevance judge.

    An empty ``model`` means no judge is configured; every judgement then
    degrades to the generic reason and contradiction detection is skipped.
    """

    model: str = "llama3.2:3b"
    temperature: float = 0.7
    max_tokens: int = 100
    contradiction_max_tokens: int = 150
    timeout: float = 15.0  # seconds per model call


@dataclass(frozen=True, slots=True)
class LinkingConfig:
    """Parameters for interactive auto-linking of a single entry."""

    threshold: float = 0.7
    max_links: int = 3
    near_duplicate_threshold: float = 0.9
    """Scores strictly above this skip the model and get a canned reason."""

    judge_body_chars: int = 300
    fallback_score: float = 0.5
    """Neutral score attached to candidates returned by the recency fallback."""

    request_timeout: float = 120.0
    """Overall budget in seconds for judging the candidates of one entry."""


@dataclass(frozen=True, slots=True)
class SweepConfig:
    """Parameters for the scheduled orphan sweep."""

    threshold: float = 0.6
    max_links: int = 3
    orphan_max_links: int = 1  # entries with at most this many links are orphans
    contradiction_window: int = 20


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class NotegraphConfig:
    """Root configuration object for the notegraph system.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    ollama_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text"
    embedding_dims: int = 768
    db_path: Path = field(default_factory=lambda: Path("~/.notegraph/notegraph.db"))
    log_level: str = "INFO"

    judge: JudgeConfig = field(default_factory=JudgeConfig)
    linking: LinkingConfig = field(default_factory=LinkingConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass, so go through object.__setattr__.
        object.__setattr__(self, "db_path", self.db_path.expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "NOTEGRAPH_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: NotegraphConfig | None = None


def get_config(*, reload: bool = False) -> NotegraphConfig:
    """Return the current :class:`NotegraphConfig`.

    On the first call the config is built by merging defaults with any
    ``NOTEGRAPH_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Parameters
    ----------
    reload:
        Force re-reading environment variables and rebuilding the config.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(NotegraphConfig, _ENV_PREFIX)
    return _cached_config
