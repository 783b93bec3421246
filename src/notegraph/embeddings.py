"""Embedding provider backed by a local Ollama daemon.

Turns entry text into fixed-length vectors, caches them by content hash, and
keeps the ``entries_vec`` nearest-neighbour index in step with the
``entries.embedding`` column.

Any provider problem (no model configured, daemon down, wrong vector size)
surfaces as :class:`~notegraph.errors.EmbeddingUnavailableError`.  Callers
that treat embedding as best-effort catch exactly that.

Usage::

    engine = EmbeddingEngine(storage)
    vec = await engine.embed_text("React hooks guide")
    await engine.embed_and_store(entry.id, entry.owner_id, text)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import sqlite3

import httpx
import ollama

from notegraph.config import get_config
from notegraph.errors import EmbeddingUnavailableError
from notegraph.storage import Storage, deserialize_embedding, serialize_embedding, utc_now

logger = logging.getLogger(__name__)

_EMBED_TIMEOUT: float = 30.0
"""Seconds to wait for a single embed call before giving up."""


class EmbeddingEngine:
    """Embed text through Ollama and persist vectors for entries.

    Parameters
    ----------
    storage:
        An initialised :class:`~notegraph.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        cfg = get_config()
        self._storage = storage
        self._model = cfg.embedding_model
        self._dims = cfg.embedding_dims
        self._client = ollama.AsyncClient(host=cfg.ollama_url)

    @property
    def configured(self) -> bool:
        """Whether an embedding model name is set."""
        return bool(self._model)

    @property
    def model(self) -> str:
        return self._model

    # ------------------------------------------------------------------
    # Text helpers
    # ------------------------------------------------------------------

    @staticmethod
    def entry_text(title: str, body: str, tags: list[str]) -> str:
        """Build the text that represents an entry in embedding space."""
        return f"{title} {body} {' '.join(tags)}"

    @staticmethod
    def _content_hash(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def embed_text(self, text: str) -> list[float]:
        """Return the embedding for *text*, using the cache when possible.

        Raises
        ------
        EmbeddingUnavailableError
            If no model is configured, Ollama cannot be reached, or the
            returned vector is empty or has the wrong dimensionality.
        """
        if not self.configured:
            raise EmbeddingUnavailableError("No embedding model configured")

        content_hash = self._content_hash(text)
        rows = await self._storage.execute(
            "SELECT embedding FROM embedding_cache WHERE content_hash = ? AND model = ?",
            (content_hash, self._model),
        )
        if rows:
            return deserialize_embedding(rows[0]["embedding"])

        try:
            response = await asyncio.wait_for(
                self._client.embed(model=self._model, input=text),
                timeout=_EMBED_TIMEOUT,
            )
        except (ConnectionError, httpx.HTTPError, TimeoutError) as exc:
            raise EmbeddingUnavailableError(
                f"Ollama server is not running or unreachable at {get_config().ollama_url}: {exc}"
            ) from exc
        except ollama.ResponseError as exc:
            raise EmbeddingUnavailableError(
                f"Ollama rejected embed request for model {self._model!r}: {exc}"
            ) from exc

        embeddings = getattr(response, "embeddings", None) or []
        if not embeddings or not embeddings[0]:
            raise EmbeddingUnavailableError("Ollama returned an empty embedding")
        vec = [float(x) for x in embeddings[0]]
        if len(vec) != self._dims:
            raise EmbeddingUnavailableError(
                f"Embedding has {len(vec)} dimensions, expected {self._dims}"
            )

        await self._storage.execute_write(
            "INSERT OR REPLACE INTO embedding_cache (content_hash, model, embedding) "
            "VALUES (?, ?, ?)",
            (content_hash, self._model, serialize_embedding(vec)),
        )
        return vec

    async def embed_and_store(self, entry_id: int, owner_id: int, text: str) -> list[float]:
        """Embed *text* and persist it as the embedding of *entry_id*.

        The ``entries`` column and the vector index are written in one
        transaction so they never disagree.
        """
        vec = await self.embed_text(text)
        blob = serialize_embedding(vec)
        vec_available = self._storage.vec_available

        def _store(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE entries SET embedding = ?, updated_at = ? WHERE id = ?",
                (blob, utc_now(), entry_id),
            )
            if vec_available:
                # vec0 has no upsert.
                conn.execute("DELETE FROM entries_vec WHERE entry_id = ?", (entry_id,))
                conn.execute(
                    "INSERT INTO entries_vec (entry_id, owner_id, embedding) VALUES (?, ?, ?)",
                    (entry_id, owner_id, blob),
                )

        await self._storage.execute_transaction(_store)
        logger.debug("Stored embedding for entry %d", entry_id)
        return vec

    async def health_check(self) -> bool:
        """Return ``True`` if the configured model answers an embed call."""
        if not self.configured:
            return False
        try:
            await asyncio.wait_for(
                self._client.embed(model=self._model, input="health check"),
                timeout=_EMBED_TIMEOUT,
            )
            return True
        except (ConnectionError, httpx.HTTPError, TimeoutError, ollama.ResponseError) as exc:
            logger.warning("Embedding health check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Similarity maths
    # ------------------------------------------------------------------

    @staticmethod
    def distance_to_similarity(distance: float) -> float:
        """Convert a cosine distance from the vector index into a similarity in [0, 1]."""
        return max(0.0, min(1.0, 1.0 - distance))
