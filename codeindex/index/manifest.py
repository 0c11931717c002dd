"""
SQLite-backed manifest for the index.

Tracks which files have been indexed (with their content hashes), the
embedding status of every chunk, and a content-hash keyed cache of vectors
so unchanged text is never sent to the embedding capability twice.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    path        TEXT    UNIQUE NOT NULL,
    hash        TEXT    NOT NULL,
    language    TEXT    NOT NULL DEFAULT '',
    version     INTEGER NOT NULL DEFAULT 0,
    indexed_at  REAL    NOT NULL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS chunks (
    chunk_id        TEXT    PRIMARY KEY,
    path            TEXT    NOT NULL,
    content_hash    TEXT    NOT NULL,
    embedded_hash   TEXT    DEFAULT NULL,
    status          TEXT    NOT NULL DEFAULT 'pending',
    attempts        INTEGER NOT NULL DEFAULT 0,
    last_error      TEXT    NOT NULL DEFAULT '',
    updated_at      REAL    NOT NULL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS embedding_cache (
    content_hash    TEXT    NOT NULL,
    model           TEXT    NOT NULL,
    dims            INTEGER NOT NULL,
    vector          BLOB    NOT NULL,
    PRIMARY KEY (content_hash, model)
);

CREATE INDEX IF NOT EXISTS idx_chunks_path   ON chunks(path);
CREATE INDEX IF NOT EXISTS idx_chunks_status ON chunks(status);
CREATE INDEX IF NOT EXISTS idx_files_path    ON files(path);
"""

STATUS_PENDING = "pending"
STATUS_EMBEDDED = "embedded"
STATUS_FAILED = "failed"


@dataclass
class FileRecord:
    """Stored metadata for a single indexed file."""
    path: str
    hash: str
    language: str
    version: int
    indexed_at: float


@dataclass
class ChunkRecord:
    """Embedding bookkeeping for one chunk."""
    chunk_id: str
    path: str
    content_hash: str
    embedded_hash: Optional[str]
    status: str
    attempts: int
    last_error: str


class Manifest:
    """
    SQLite-backed manifest of files, chunk embedding status and cached
    vectors.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Will be created if absent.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self):
        """Yield a connected SQLite connection with WAL mode for concurrency."""
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables if they do not exist yet."""
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    @staticmethod
    def _chunk_from_row(row) -> ChunkRecord:
        return ChunkRecord(
            chunk_id=row["chunk_id"],
            path=row["path"],
            content_hash=row["content_hash"],
            embedded_hash=row["embedded_hash"],
            status=row["status"],
            attempts=row["attempts"],
            last_error=row["last_error"],
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def get_file(self, path: str) -> Optional[FileRecord]:
        """
        Return the stored record for *path*, or None if not indexed.

        Parameters
        ----------
        path:
            Repository-relative file path.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT path, hash, language, version, indexed_at FROM files WHERE path = ?",
                (path,),
            ).fetchone()
        if row is None:
            return None
        return FileRecord(
            path=row["path"],
            hash=row["hash"],
            language=row["language"],
            version=row["version"],
            indexed_at=row["indexed_at"],
        )

    def upsert_file(self, path: str, hash_: str, language: str, version: int = 0) -> None:
        """Insert or update the manifest entry for *path*."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO files (path, hash, language, version, indexed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    hash       = excluded.hash,
                    language   = excluded.language,
                    version    = excluded.version,
                    indexed_at = excluded.indexed_at
                """,
                (path, hash_, language, version, time.time()),
            )

    def remove_file(self, path: str) -> None:
        """
        Remove all manifest data for *path* (file row and its chunks).

        Safe to call even if *path* is not in the manifest.
        """
        with self._connect() as conn:
            conn.execute("DELETE FROM files WHERE path = ?", (path,))
            conn.execute("DELETE FROM chunks WHERE path = ?", (path,))

    def get_all_indexed_paths(self) -> list[str]:
        """Return the paths of every file currently in the manifest."""
        with self._connect() as conn:
            rows = conn.execute("SELECT path FROM files ORDER BY path").fetchall()
        return [r["path"] for r in rows]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def get_chunk(self, chunk_id: str) -> Optional[ChunkRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
        return self._chunk_from_row(row) if row is not None else None

    def chunks_for_file(self, path: str) -> list[ChunkRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE path = ? ORDER BY chunk_id", (path,)
            ).fetchall()
        return [self._chunk_from_row(r) for r in rows]

    def mark_embedded(self, chunk_id: str, path: str, content_hash: str) -> None:
        """Record a successful embedding of *content_hash* for *chunk_id*."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chunks (chunk_id, path, content_hash, embedded_hash,
                                    status, attempts, last_error, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, '', ?)
                ON CONFLICT(chunk_id) DO UPDATE SET
                    path          = excluded.path,
                    content_hash  = excluded.content_hash,
                    embedded_hash = excluded.embedded_hash,
                    status        = excluded.status,
                    attempts      = 0,
                    last_error    = '',
                    updated_at    = excluded.updated_at
                """,
                (chunk_id, path, content_hash, content_hash, STATUS_EMBEDDED, time.time()),
            )

    def mark_failed(self, chunk_id: str, path: str, content_hash: str,
                    attempts: int, error: str) -> None:
        """Record that embedding *content_hash* gave up after *attempts* tries."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chunks (chunk_id, path, content_hash, embedded_hash,
                                    status, attempts, last_error, updated_at)
                VALUES (?, ?, ?, NULL, ?, ?, ?, ?)
                ON CONFLICT(chunk_id) DO UPDATE SET
                    path          = excluded.path,
                    content_hash  = excluded.content_hash,
                    embedded_hash = NULL,
                    status        = excluded.status,
                    attempts      = excluded.attempts,
                    last_error    = excluded.last_error,
                    updated_at    = excluded.updated_at
                """,
                (chunk_id, path, content_hash, STATUS_FAILED, attempts, error[:500], time.time()),
            )

    def remove_chunks(self, chunk_ids: Iterable[str]) -> None:
        ids = [(cid,) for cid in chunk_ids]
        if not ids:
            return
        with self._connect() as conn:
            conn.executemany("DELETE FROM chunks WHERE chunk_id = ?", ids)

    def failed_chunks(self) -> list[ChunkRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE status = ? ORDER BY chunk_id", (STATUS_FAILED,)
            ).fetchall()
        return [self._chunk_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Embedding cache
    # ------------------------------------------------------------------

    def cache_get(self, content_hash: str, model: str) -> Optional[list[float]]:
        """Return the cached vector for (*content_hash*, *model*), or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT dims, vector FROM embedding_cache WHERE content_hash = ? AND model = ?",
                (content_hash, model),
            ).fetchone()
        if row is None:
            return None
        vec = np.frombuffer(row["vector"], dtype=np.float32)
        if vec.shape[0] != row["dims"]:
            logger.warning("Discarding malformed cached vector for %s", content_hash[:12])
            return None
        return vec.tolist()

    def cache_put(self, content_hash: str, model: str, vector: list[float]) -> None:
        blob = np.asarray(vector, dtype=np.float32).tobytes()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO embedding_cache (content_hash, model, dims, vector)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(content_hash, model) DO UPDATE SET
                    dims = excluded.dims, vector = excluded.vector
                """,
                (content_hash, model, len(vector), blob),
            )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        """
        Return manifest statistics.

        Returns
        -------
        dict
            Keys: file_count, chunk_count, by_status (dict), cached_vectors.
        """
        with self._connect() as conn:
            file_count = conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]
            chunk_count = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            by_status = {
                r["status"]: r["n"]
                for r in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM chunks GROUP BY status"
                ).fetchall()
            }
            cached = conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]
        return {
            "file_count": file_count,
            "chunk_count": chunk_count,
            "by_status": by_status,
            "cached_vectors": cached,
        }

    def clear(self) -> None:
        """Delete all data from the manifest (keeps the schema)."""
        with self._connect() as conn:
            conn.execute("DELETE FROM chunks")
            conn.execute("DELETE FROM files")
            conn.execute("DELETE FROM embedding_cache")
