"""Core storage layer for the notegraph system.

Manages a SQLite database with sqlite-vec for nearest-neighbour search over
entry embeddings.  All public methods are async-friendly, wrapping
synchronous sqlite3 calls via :func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections: each thread pool worker keeps one
      long-lived connection open.
    - WAL mode enables concurrent readers alongside a single writer.

Usage::

    from notegraph.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    row_id = await store.execute_write("INSERT INTO entries ...", (...))
"""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

import anyio
import sqlite_vec

from notegraph.config import get_config

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Embedding serialisation helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into a compact binary representation.

    Parameters
    ----------
    vec:
        A list of floats (typically 768-dimensional).

    Returns
    -------
    bytes
        Little-endian packed float32 values, the layout sqlite-vec expects.
    """
    return struct.pack(f"<{len(vec)}f", *vec)


def deserialize_embedding(data: bytes) -> list[float]:
    """Unpack binary embedding data back into a list of floats."""
    count = len(data) // struct.calcsize("f")
    return list(struct.unpack(f"<{count}f", data))


def utc_now() -> str:
    """ISO-8601 UTC timestamp with microseconds, sortable as text."""
    return datetime.now(tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS owners (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL REFERENCES owners(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(owner_id, name)
);

-- Notes.  tags and files are JSON arrays; embedding is packed float32.
CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL REFERENCES owners(id),
    project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'text' CHECK(kind IN ('text','code','image')),
    tags TEXT NOT NULL DEFAULT '[]',
    files TEXT NOT NULL DEFAULT '[]',
    embedding BLOB,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Directed, explained links between entries.  id gives insertion order.
CREATE TABLE IF NOT EXISTS entry_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    target_id INTEGER NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    reason TEXT NOT NULL,
    score REAL CHECK(score IS NULL OR (score >= 0.0 AND score <= 1.0)),
    is_contradiction INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK(source_id != target_id)
);

-- Embedding cache keyed by content hash and model
CREATE TABLE IF NOT EXISTS embedding_cache (
    content_hash TEXT NOT NULL,
    model TEXT NOT NULL,
    embedding BLOB NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (content_hash, model)
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_entries_owner_created
    ON entries(owner_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_entries_project ON entries(project_id);
CREATE INDEX IF NOT EXISTS idx_entry_links_target ON entry_links(target_id);
CREATE UNIQUE INDEX IF NOT EXISTS uq_entry_links_similarity
    ON entry_links(source_id, target_id) WHERE is_contradiction = 0;
CREATE UNIQUE INDEX IF NOT EXISTS uq_entry_links_contradiction
    ON entry_links(source_id, target_id) WHERE is_contradiction = 1;
"""


def _vec_schema_sql(dims: int) -> str:
    """Vector table DDL, only executed when sqlite-vec loads successfully."""
    return (
        "CREATE VIRTUAL TABLE IF NOT EXISTS entries_vec USING vec0(\n"
        "    entry_id INTEGER PRIMARY KEY,\n"
        "    owner_id INTEGER PARTITION KEY,\n"
        f"    embedding FLOAT[{dims}] distance_metric=cosine\n"
        ");\n"
    )


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend for the notegraph system.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        cfg = get_config()
        self._db_path: Path = db_path or cfg.db_path
        self._dims: int = cfg.embedding_dims
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False
        self._vec_available = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def vec_available(self) -> bool:
        """Whether the sqlite-vec extension loaded successfully."""
        return self._vec_available

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        Idempotent.  Creates the database directory, probes sqlite-vec, and
        creates all tables, indexes and (when possible) the vector table.
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info(
            "Storage initialised at %s (vec=%s)",
            self._db_path,
            self._vec_available,
        )

    def _initialize_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._vec_available = self._probe_vec_support()

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            if self._vec_available:
                conn.executescript(_vec_schema_sql(self._dims))
            conn.executescript(_INDEX_SQL)
            conn.commit()
        finally:
            conn.close()

    def _probe_vec_support(self) -> bool:
        """Check whether sqlite-vec can be loaded in this environment.

        Returns ``True`` if the extension loaded, ``False`` otherwise.  The
        result is cached for the lifetime of the :class:`Storage` instance;
        without it, candidate search runs on its recency fallback.
        """
        conn = sqlite3.connect(str(self._db_path))
        try:
            if not hasattr(conn, "enable_load_extension"):
                log.warning(
                    "sqlite3 module compiled without extension loading support; "
                    "vector search will be unavailable"
                )
                return False

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            log.debug("sqlite-vec extension loaded successfully")
            return True
        except (AttributeError, OSError, sqlite3.OperationalError) as exc:
            log.warning(
                "sqlite-vec extension could not be loaded (%s); "
                "vector search will be unavailable",
                exc,
            )
            return False
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection gets WAL journal mode, foreign key enforcement,
        sqlite-vec (when available) and :class:`sqlite3.Row` rows.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        if self._vec_available:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Bind parameters (positional tuple or named dict).

        Returns
        -------
        list[sqlite3.Row]
            Result rows with dict-like column access.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.lastrowid or 0
            except Exception:
                conn.rollback()
                raise

    async def execute_write_returning(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a write query with a RETURNING clause under the write lock.

        Returns
        -------
        list[sqlite3.Row]
            Rows produced by the RETURNING clause.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_returning_sync(sql, params),
        )

    def _execute_write_returning_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                rows = cursor.fetchall()
                conn.commit()
                return rows
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        the transaction.  Commit on success, rollback on exception.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Advisory lock helpers
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Attempt to acquire a named advisory lock inside a transaction.

        Stale locks older than 30 minutes are cleaned up before the
        acquisition attempt, so a crashed sweep cannot block the next one
        forever.

        Parameters
        ----------
        conn:
            A connection already inside an active transaction.
        name:
            The lock name (primary key in the ``locks`` table).
        holder:
            An identifier for the holder.  Defaults to a random UUID.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', '-30 minutes')",
            (name,),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder) VALUES (?, ?)",
                (name, holder),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named advisory lock inside a transaction.

        If *holder* is given, only a lock held by that holder is released.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute("DELETE FROM locks WHERE name = ?", (name,))

    # ------------------------------------------------------------------
    # Maintenance and metadata
    # ------------------------------------------------------------------

    async def optimize(self) -> None:
        """Refresh planner statistics and run a quick integrity check."""
        await anyio.to_thread.run_sync(self._optimize_sync)

    def _optimize_sync(self) -> None:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("ANALYZE")
                rows = conn.execute("PRAGMA integrity_check(1)").fetchall()
                status = rows[0][0] if rows else "unknown"
                if status != "ok":
                    log.warning("Integrity check returned: %s", status)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    async def get_db_size_mb(self) -> float:
        """Return the database file size (plus WAL) in megabytes."""
        return await anyio.to_thread.run_sync(self._get_db_size_mb_sync)

    def _get_db_size_mb_sync(self) -> float:
        if not self._db_path.exists():
            return 0.0
        size_bytes = self._db_path.stat().st_size
        wal_path = self._db_path.with_name(self._db_path.name + "-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return round(size_bytes / (1024 * 1024), 2)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for the core tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'owners'          AS tbl, COUNT(*) AS cnt FROM owners
            UNION ALL
            SELECT 'projects',                COUNT(*)        FROM projects
            UNION ALL
            SELECT 'entries',                 COUNT(*)        FROM entries
            UNION ALL
            SELECT 'entry_links',             COUNT(*)        FROM entry_links
            UNION ALL
            SELECT 'embedding_cache',         COUNT(*)        FROM embedding_cache
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
