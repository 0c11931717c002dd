"""
Local segmented vector store.

Points live in memory in an appendable segment plus sealed, immutable numpy
segments.  Every write takes the next sequence number; a search captures the
current sequence number and the segment list, and sees only entries committed
at or before it, so a concurrent insert is either fully visible or not at
all.  Deletions and replacements are tombstones; :meth:`VectorStore.compact`
rewrites the segments without dead entries once they pass the configured
ratio.

Similarity is cosine over L2-normalised float32 vectors, exact scan with
numpy ``argpartition`` top-k per segment.

Storage: ``.codeindex/vectors.db`` (SQLite; ``point_id``, float32 ``vector``
BLOB, JSON ``payload``).
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import numpy as np

from ..errors import StoreCorruption

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FILTER_KEYS = frozenset({"path", "path_prefix", "kind", "language", "symbol_id", "exclude_ids"})

# Below this many entries compaction is never worth it
_MIN_COMPACT_ENTRIES = 32

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS vectors (
    point_id   TEXT PRIMARY KEY,
    vector     BLOB NOT NULL,
    payload    TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE IF NOT EXISTS meta (
    key    TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);
"""

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vec_to_bytes(vec: np.ndarray) -> bytes:
    """Serialise a vector to compact float32 bytes."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def _bytes_to_vec(buf: bytes) -> np.ndarray:
    """Deserialise bytes back to a vector."""
    return np.frombuffer(buf, dtype=np.float32).copy()


def _normalise(vec: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return vec / norm


def _matches(payload: dict, filters: dict) -> bool:
    path = payload.get("path", "")
    if "path" in filters and path != filters["path"]:
        return False
    if "path_prefix" in filters:
        prefix = filters["path_prefix"].rstrip("/")
        if prefix and path != prefix and not path.startswith(prefix + "/"):
            return False
    if "kind" in filters:
        kinds = filters["kind"]
        if isinstance(kinds, str):
            kinds = (kinds,)
        if payload.get("kind") not in kinds:
            return False
    if "language" in filters and payload.get("language") != filters["language"]:
        return False
    if "symbol_id" in filters and payload.get("symbol_id") != filters["symbol_id"]:
        return False
    return True


def check_filters(filters: Optional[dict]) -> dict:
    """Validate filter keys; returns an empty dict for None."""
    if not filters:
        return {}
    unknown = set(filters) - FILTER_KEYS
    if unknown:
        raise ValueError(f"Unknown filter(s) {sorted(unknown)}; expected any of {sorted(FILTER_KEYS)}")
    return filters


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Entry:
    point_id: str
    seq: int
    vector: np.ndarray      # normalised
    raw: np.ndarray         # as given, returned by get()
    payload: dict


class _SealedSegment:
    """Immutable block of entries with a stacked, normalised matrix."""

    __slots__ = ("entries", "seqs", "matrix")

    def __init__(self, entries: list[_Entry], dims: int) -> None:
        self.entries = tuple(entries)
        self.seqs = np.fromiter((e.seq for e in entries), dtype=np.int64, count=len(entries))
        if entries:
            self.matrix = np.stack([e.vector for e in entries]).astype(np.float32, copy=False)
        else:
            self.matrix = np.zeros((0, dims), dtype=np.float32)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class _View:
    """What a search sees: everything committed at or before *seq*."""
    seq: int
    sealed: tuple[_SealedSegment, ...]
    active: list
    active_len: int
    dead: frozenset[int]    # entry seqs tombstoned at or before *seq*


# ---------------------------------------------------------------------------
# VectorStore
# ---------------------------------------------------------------------------

class VectorStore:
    """In-memory segmented vector store with SQLite persistence.

    Parameters
    ----------
    dimensions:
        Expected vector length; ``0`` accepts the first length seen.
    segment_size:
        Entries per sealed segment.
    compaction_threshold:
        Dead-entry ratio above which a write triggers :meth:`compact`.
    """

    def __init__(
        self,
        dimensions: int = 0,
        segment_size: int = 1024,
        compaction_threshold: float = 0.3,
    ) -> None:
        self.dimensions = dimensions
        self.segment_size = max(1, segment_size)
        self.compaction_threshold = compaction_threshold
        self._lock = threading.Lock()
        self._seq = 0
        self._sealed: tuple[_SealedSegment, ...] = ()
        self._active: list[_Entry] = []
        self._latest: dict[str, _Entry] = {}
        # entry seq -> seq of the write that killed it
        self._tombstones: dict[int, int] = {}
        self.compactions = 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _coerce(self, vector: Iterable[float]) -> np.ndarray:
        arr = np.asarray(list(vector) if not isinstance(vector, np.ndarray) else vector,
                         dtype=np.float32)
        if arr.ndim != 1 or arr.shape[0] == 0:
            raise ValueError("vector must be a non-empty 1-D sequence of numbers")
        if not np.all(np.isfinite(arr)):
            raise ValueError("vector contains non-finite values")
        if self.dimensions and arr.shape[0] != self.dimensions:
            raise ValueError(f"vector has {arr.shape[0]} dimensions, expected {self.dimensions}")
        return arr

    def _append(self, point_id: str, raw: np.ndarray, payload: dict) -> None:
        # caller holds self._lock
        if not self.dimensions:
            self.dimensions = raw.shape[0]
        elif raw.shape[0] != self.dimensions:
            raise ValueError(f"vector has {raw.shape[0]} dimensions, expected {self.dimensions}")
        self._seq += 1
        old = self._latest.get(point_id)
        if old is not None:
            self._tombstones[old.seq] = self._seq
        entry = _Entry(point_id, self._seq, _normalise(raw), raw, dict(payload))
        self._active.append(entry)
        self._latest[point_id] = entry
        if len(self._active) >= self.segment_size:
            self._sealed = self._sealed + (_SealedSegment(self._active, self.dimensions),)
            self._active = []

    def upsert(self, point_id: str, vector: Iterable[float], payload: Optional[dict] = None) -> None:
        """Insert or replace one point."""
        raw = self._coerce(vector)
        with self._lock:
            self._append(point_id, raw, payload or {})
        self._maybe_compact()

    def upsert_many(self, points: list[tuple[str, Iterable[float], dict]]) -> None:
        """Upsert vector points.

        Parameters
        ----------
        points:
            List of ``(point_id, vector, payload)`` tuples.
        """
        if not points:
            return
        coerced = [(pid, self._coerce(vec), payload) for pid, vec, payload in points]
        with self._lock:
            for pid, raw, payload in coerced:
                self._append(pid, raw, payload)
        logger.debug("Upserted %d points", len(points))
        self._maybe_compact()

    def delete(self, point_id: str) -> bool:
        """Tombstone *point_id*.  Returns False if it was not stored."""
        with self._lock:
            entry = self._latest.pop(point_id, None)
            if entry is None:
                return False
            self._seq += 1
            self._tombstones[entry.seq] = self._seq
        self._maybe_compact()
        return True

    def delete_by_file(self, file_path: str) -> int:
        """Delete all points whose payload ``path`` matches *file_path*."""
        with self._lock:
            doomed = [e for e in self._latest.values() if e.payload.get("path") == file_path]
            for entry in doomed:
                del self._latest[entry.point_id]
                self._seq += 1
                self._tombstones[entry.seq] = self._seq
        if doomed:
            logger.debug("Deleted %d points for file %s", len(doomed), file_path)
            self._maybe_compact()
        return len(doomed)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _view(self) -> _View:
        with self._lock:
            seq = self._seq
            return _View(
                seq=seq,
                sealed=self._sealed,
                active=self._active,
                active_len=len(self._active),
                dead=frozenset(e for e, d in self._tombstones.items() if d <= seq),
            )

    def get(self, point_id: str) -> Optional[dict]:
        entry = self._latest.get(point_id)
        if entry is None:
            return None
        return {"id": entry.point_id, "vector": entry.raw.tolist(), "payload": dict(entry.payload)}

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._latest)

    def count(self) -> int:
        return len(self._latest)

    def search(
        self,
        query_vector: Iterable[float],
        top_k: int = 10,
        filters: Optional[dict] = None,
    ) -> list[dict]:
        """Cosine-similarity search.

        Parameters
        ----------
        query_vector:
            The query embedding vector.
        top_k:
            Number of results to return.
        filters:
            Optional payload filters: ``path``, ``path_prefix``, ``kind``
            (one value or a list), ``language``, ``symbol_id``,
            ``exclude_ids``.

        Returns
        -------
        list[dict]
            Each dict has ``id``, ``score`` (float) and ``payload`` (dict),
            best first.
        """
        filters = check_filters(filters)
        if top_k <= 0:
            return []
        view = self._view()
        if not self.dimensions:
            return []
        query = _normalise(self._coerce(query_vector))
        exclude = set(filters.get("exclude_ids") or ())

        scored: list[tuple[float, _Entry]] = []
        segments: list[tuple[tuple[_Entry, ...], np.ndarray, np.ndarray]] = [
            (seg.entries, seg.seqs, seg.matrix) for seg in view.sealed
        ]
        if view.active_len:
            tail = tuple(view.active[:view.active_len])
            segments.append((
                tail,
                np.fromiter((e.seq for e in tail), dtype=np.int64, count=len(tail)),
                np.stack([e.vector for e in tail]),
            ))

        dead = np.fromiter(view.dead, dtype=np.int64, count=len(view.dead))
        for entries, seqs, matrix in segments:
            if not entries:
                continue
            mask = seqs <= view.seq
            if dead.size:
                mask &= ~np.isin(seqs, dead)
            if filters or exclude:
                mask &= np.fromiter(
                    (e.point_id not in exclude and _matches(e.payload, filters) for e in entries),
                    dtype=bool, count=len(entries),
                )
            idx = np.flatnonzero(mask)
            if idx.size == 0:
                continue
            scores = matrix[idx] @ query
            if idx.size > top_k:
                top = np.argpartition(scores, -top_k)[-top_k:]
            else:
                top = np.arange(idx.size)
            for t in top:
                scored.append((float(scores[t]), entries[idx[t]]))

        scored.sort(key=lambda pair: (-pair[0], pair[1].point_id))
        return [
            {"id": e.point_id, "score": s, "payload": dict(e.payload)}
            for s, e in scored[:top_k]
        ]

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def dead_ratio(self) -> float:
        total = sum(len(s) for s in self._sealed) + len(self._active)
        return len(self._tombstones) / total if total else 0.0

    def _maybe_compact(self) -> None:
        total = sum(len(s) for s in self._sealed) + len(self._active)
        if total >= _MIN_COMPACT_ENTRIES and self.dead_ratio() > self.compaction_threshold:
            self.compact()

    def compact(self) -> int:
        """Rewrite segments without dead entries.  Returns entries dropped."""
        with self._lock:
            live = sorted(self._latest.values(), key=lambda e: e.seq)
            dropped = sum(len(s) for s in self._sealed) + len(self._active) - len(live)
            sealed: list[_SealedSegment] = []
            full = len(live) - len(live) % self.segment_size
            for start in range(0, full, self.segment_size):
                sealed.append(_SealedSegment(live[start:start + self.segment_size],
                                             self.dimensions))
            self._sealed = tuple(sealed)
            self._active = list(live[full:])
            self._tombstones = {}
            self.compactions += 1
        logger.debug("Compacted vector store: dropped %d dead entries, %d live",
                     dropped, len(live))
        return dropped

    def stats(self) -> dict:
        return {
            "points": self.count(),
            "dimensions": self.dimensions,
            "sealed_segments": len(self._sealed),
            "active_entries": len(self._active),
            "dead_ratio": round(self.dead_ratio(), 4),
            "compactions": self.compactions,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str) -> None:
        """Write every live point to the SQLite database at *path*."""
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with self._lock:
            live = sorted(self._latest.values(), key=lambda e: e.seq)
            dims = self.dimensions
        tmp = f"{path}.tmp"
        if os.path.exists(tmp):
            os.remove(tmp)
        conn = sqlite3.connect(tmp)
        try:
            conn.executescript(_CREATE_TABLES)
            conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES ('dimensions', ?)",
                         (str(dims),))
            conn.executemany(
                "INSERT OR REPLACE INTO vectors (point_id, vector, payload) VALUES (?, ?, ?)",
                [(e.point_id, _vec_to_bytes(e.raw), json.dumps(e.payload, default=str))
                 for e in live],
            )
            conn.commit()
        finally:
            conn.close()
        os.replace(tmp, path)
        logger.debug("Saved %d vectors to %s", len(live), path)

    @classmethod
    def load(
        cls,
        path: str,
        segment_size: int = 1024,
        compaction_threshold: float = 0.3,
    ) -> "VectorStore":
        """
        Load a store previously written by :meth:`save`.

        Raises
        ------
        FileNotFoundError
            If *path* does not exist.
        StoreCorruption
            If the database cannot be read or holds malformed rows.
        """
        if not os.path.exists(path):
            raise FileNotFoundError(f"Vector store not found: {path}")
        try:
            conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
            try:
                row = conn.execute("SELECT value FROM meta WHERE key = 'dimensions'").fetchone()
                rows = conn.execute(
                    "SELECT point_id, vector, payload FROM vectors ORDER BY rowid"
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.DatabaseError as exc:
            raise StoreCorruption("vectors", path, str(exc)) from exc

        dims = int(row[0]) if row is not None else 0
        store = cls(dimensions=dims, segment_size=segment_size,
                    compaction_threshold=compaction_threshold)
        points: list[tuple[str, Any, dict]] = []
        for point_id, blob, payload_json in rows:
            if not isinstance(blob, bytes) or len(blob) % 4:
                raise StoreCorruption("vectors", path, f"bad vector blob for {point_id}")
            vec = _bytes_to_vec(blob)
            if dims and vec.shape[0] != dims:
                raise StoreCorruption("vectors", path, f"dimension mismatch for {point_id}")
            try:
                payload = json.loads(payload_json)
            except (json.JSONDecodeError, TypeError) as exc:
                raise StoreCorruption("vectors", path, f"bad payload for {point_id}") from exc
            points.append((point_id, vec, payload))
        try:
            store.upsert_many(points)
        except ValueError as exc:
            raise StoreCorruption("vectors", path, str(exc)) from exc
        logger.info("Loaded %d vectors from %s", len(points), path)
        return store
