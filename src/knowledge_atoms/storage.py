"""Core storage layer for the knowledge-atom store.

Manages a SQLite database holding every user's atoms, an embedding cache,
advisory locks and a maintenance audit log.  All public methods are
async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections -- each thread pool worker keeps
      one long-lived connection open.
    - WAL mode enables concurrent readers alongside a single writer.

When the sqlite-vec extension loads, its ``vec_distance_cosine`` SQL
function is available on every connection (see :attr:`Storage.vec_available`).

Usage::

    from knowledge_atoms.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    row_id = await store.execute_write("INSERT INTO knowledge_atoms ...", (...))
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

from knowledge_atoms.config import KnowledgeConfig, get_config

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Embedding serialisation helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into little-endian float32 bytes.

    The layout matches what sqlite-vec expects for its distance functions.
    """
    return struct.pack(f"<{len(vec)}f", *vec)


def deserialize_embedding(data: bytes | None) -> list[float]:
    """Unpack bytes produced by :func:`serialize_embedding`.

    ``None`` or an empty blob yields an empty list.
    """
    if not data:
        return []
    count = len(data) // struct.calcsize("f")
    return list(struct.unpack(f"<{count}f", data))


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Per-user knowledge atoms
CREATE TABLE IF NOT EXISTS knowledge_atoms (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN (
        'OBJECTION_RESPONSE','TALKING_POINT','QUESTION',
        'CLOSING_TECHNIQUE','TOPIC_EXPERTISE'
    )),
    content TEXT NOT NULL,
    embedding BLOB,
    usage_count INTEGER NOT NULL DEFAULT 0 CHECK(usage_count >= 0),
    helpful_count INTEGER NOT NULL DEFAULT 0
        CHECK(helpful_count >= 0 AND helpful_count <= usage_count),
    last_used_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    source_session_id TEXT,
    context TEXT,
    confidence REAL NOT NULL DEFAULT 1.0 CHECK(confidence >= 0.0 AND confidence <= 1.0),
    source TEXT NOT NULL DEFAULT 'extraction' CHECK(source IN ('extraction','manual'))
);

-- Embedding cache keyed by content hash
CREATE TABLE IF NOT EXISTS embedding_cache (
    content_hash TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    model TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Audit log for purge / eviction / consolidation actions
CREATE TABLE IF NOT EXISTS maintenance_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    action TEXT NOT NULL,
    details TEXT,
    atoms_affected TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_atoms_user ON knowledge_atoms(user_id);
CREATE INDEX IF NOT EXISTS idx_atoms_user_type ON knowledge_atoms(user_id, type);
CREATE INDEX IF NOT EXISTS idx_atoms_user_usage
    ON knowledge_atoms(user_id, usage_count);
CREATE INDEX IF NOT EXISTS idx_atoms_user_last_used
    ON knowledge_atoms(user_id, last_used_at);
CREATE INDEX IF NOT EXISTS idx_atoms_user_created
    ON knowledge_atoms(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_atoms_session ON knowledge_atoms(source_session_id);
CREATE INDEX IF NOT EXISTS idx_maintenance_user ON maintenance_log(user_id, created_at);
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    config:
        Optional explicit configuration; defaults to :func:`get_config`.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        config: KnowledgeConfig | None = None,
    ) -> None:
        cfg = config or get_config()
        self._db_path: Path = db_path or cfg.db_path
        self._backup_dir: Path = cfg.backup_dir
        self._backup_count: int = cfg.backup_count
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

        Idempotent.  Creates directories, probes sqlite-vec, creates the
        schema and indexes, then takes an automatic backup.
        """
        if self._initialized:
            return
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info(
            "Storage initialised at %s (vec=%s)",
            self._db_path,
            self._vec_available,
        )

    def _initialize_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        self._vec_available = self._probe_vec_support()

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.executescript(_INDEX_SQL)
            conn.commit()
        finally:
            conn.close()

        self._backup_sync()

    def _probe_vec_support(self) -> bool:
        """Check whether sqlite-vec can be loaded in this environment."""
        conn = sqlite3.connect(str(self._db_path))
        try:
            if not hasattr(conn, "enable_load_extension"):
                log.warning(
                    "sqlite3 module compiled without extension loading support; "
                    "similarity ranking will run in Python"
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
                "similarity ranking will run in Python",
                exc,
            )
            return False
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent connection, opening it if needed."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
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
        """Execute a read-only query and return all rows."""
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

    async def execute_write_rowcount(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock and return ``rowcount``.

        Use this for ``UPDATE`` / ``DELETE`` statements where the caller
        needs to know how many rows were affected.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_rowcount_sync(sql, params),
        )

    def _execute_write_rowcount_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return max(cursor.rowcount, 0)
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

        Stale locks older than 10 minutes are cleaned up before the
        acquisition attempt.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', '-10 minutes')",
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

        If *holder* is given, the lock is only released when held by it.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute(
                "DELETE FROM locks WHERE name = ?",
                (name,),
            )

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database and prune old ones."""
        return await anyio.to_thread.run_sync(self._backup_sync)

    def _backup_sync(self) -> Path:
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path

        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"knowledge_{timestamp}.db"

        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob("knowledge_*.db"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    async def get_db_size_mb(self) -> float:
        """Return the database file size (plus WAL) in megabytes."""
        return await anyio.to_thread.run_sync(self._get_db_size_mb_sync)

    def _get_db_size_mb_sync(self) -> float:
        if not self._db_path.exists():
            return 0.0
        size_bytes = self._db_path.stat().st_size
        wal_path = self._db_path.with_suffix(".db-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return round(size_bytes / (1024 * 1024), 2)

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

        # Fresh thread-local so no worker thread keeps a closed handle.
        self._local = threading.local()
        self._initialized = False
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
