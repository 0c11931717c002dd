"""
Indexer — walks a repository and wires the index stores together.

Full index:
  1. Walk the tree (respecting .gitignore, ignore globs and skipped dirs)
  2. Submit every supported file to the incremental updater
  3. Wait for extraction, graph commits and cross-file resolution
  4. Persist graph.pkl, vectors.db and index_meta.json

Incremental index:
  Change events (from the watcher or a caller) go through
  :meth:`CodeIndex.apply_event`; only the changed files are re-extracted.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import sqlite3
import time
from concurrent.futures import as_completed
from typing import Iterable, Optional

from tqdm import tqdm

from ..config import Config
from ..errors import StoreCorruption
from .embedder import EmbeddingPipeline, build_chunks, create_embedder
from .graph import GraphStore
from .manifest import Manifest
from .models import ChangeEvent, ChangeKind, ExtractedFile, FileState, content_hash
from .parser import detect_language
from .query import QueryEngine, QueryResult
from .updater import IncrementalUpdater
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Ignore rules
# ---------------------------------------------------------------------------

def _load_gitignore_patterns(root: str) -> list[str]:
    """Read .gitignore from *root* and return its glob patterns."""
    gi_path = os.path.join(root, ".gitignore")
    patterns: list[str] = []
    if not os.path.exists(gi_path):
        return patterns
    with open(gi_path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if line and not line.startswith(("#", "!")):
                patterns.append(line.rstrip("/"))
    return patterns


def _is_ignored(rel_path: str, patterns: Iterable[str]) -> bool:
    """Return True if *rel_path* (or its basename) matches any pattern."""
    name = rel_path.rsplit("/", 1)[-1]
    for pattern in patterns:
        anchored = pattern.lstrip("/")
        if fnmatch.fnmatch(name, anchored) or fnmatch.fnmatch(rel_path, anchored):
            return True
    return False


def _is_excluded(rel_path: str, patterns: Iterable[str], skip_dirs: Iterable[str] = ()) -> bool:
    """
    Return True if *rel_path* or any directory above it is left out of the index.

    Used by both the walker and the watcher.  Hidden directories and those
    named in *skip_dirs* are excluded along with pattern matches.
    """
    parts = rel_path.split("/")
    for depth, part in enumerate(parts[:-1], 1):
        if part in skip_dirs or part.startswith("."):
            return True
        if _is_ignored("/".join(parts[:depth]), patterns):
            return True
    return _is_ignored(rel_path, patterns)


def walk_source_files(
    root: str,
    start: str = ".",
    recursive: bool = True,
    ignore: Optional[Iterable[str]] = None,
    skip_dirs: Iterable[str] = (),
) -> list[str]:
    """
    Return the supported source files under *start*.

    Parameters
    ----------
    root:
        Repository root; returned paths are relative to it, ``/``-separated.
    start:
        File or directory (relative to *root*) to walk.
    recursive:
        Descend into subdirectories.
    ignore:
        Extra glob patterns, matched like .gitignore entries.
    skip_dirs:
        Directory names never descended into.
    """
    root = os.path.abspath(root)
    patterns = _load_gitignore_patterns(root) + list(ignore or ())
    skip = frozenset(skip_dirs)
    base = os.path.normpath(os.path.join(root, start))

    def rel(p: str) -> str:
        return os.path.relpath(p, root).replace(os.sep, "/")

    if os.path.isfile(base):
        r = rel(base)
        if detect_language(r) and not _is_excluded(r, patterns, skip):
            return [r]
        return []

    results: list[str] = []
    for dirpath, dirnames, filenames in os.walk(base, topdown=True):
        if not recursive:
            dirnames[:] = []
        # Prune in place so os.walk never enters skipped trees
        dirnames[:] = [
            d for d in dirnames
            if d not in skip
            and not d.startswith(".")
            and not _is_ignored(rel(os.path.join(dirpath, d)), patterns)
        ]
        for fname in filenames:
            r = rel(os.path.join(dirpath, fname))
            if detect_language(r) is None or _is_excluded(r, patterns, skip):
                continue
            results.append(r)
    return sorted(results)


# ---------------------------------------------------------------------------
# CodeIndex
# ---------------------------------------------------------------------------

class CodeIndex:
    """
    One repository's index: graph, vectors, manifest, updater and queries.

    Usage::

        index = CodeIndex("/path/to/repo")
        index.index()
        index.get_call_graph("main.py")
        index.close()

    Parameters
    ----------
    root:
        Repository root.
    config:
        Settings; loaded from ``.codeindex.yaml`` under *root* (then the
        usual locations) when omitted.
    embedder:
        Embedding capability.  When omitted one is built from the config;
        with no capability, chunks are not embedded and similarity queries
        return nothing.
    """

    def __init__(self, root: str, config: Optional[Config] = None,
                 embedder=None, sleep=time.sleep) -> None:
        self.root = os.path.abspath(root)
        self.config = config or Config.load(search_dirs=[self.root, os.path.expanduser("~")])
        self.storage_dir = os.path.join(self.root, self.config.STORAGE_DIR)
        os.makedirs(self.storage_dir, exist_ok=True)

        self.embedder = embedder if embedder is not None else create_embedder(self.config)
        self.graph = GraphStore(self.config.RESOLUTION_ORDER)
        self.store = self._new_store()
        self.manifest = self._open_manifest()
        self.pipeline = EmbeddingPipeline(
            self.embedder,
            self.manifest,
            self.store,
            max_retries=self.config.EMBED_MAX_RETRIES,
            retry_delay=self.config.EMBED_RETRY_DELAY,
            dimensions=self.config.EMBEDDING_DIMENSIONS,
            sleep=sleep,
        )
        self.updater = IncrementalUpdater(
            self.root,
            self.graph,
            debounce_seconds=self.config.DEBOUNCE_SECONDS,
            resolve_delay_seconds=self.config.RESOLVE_DELAY_SECONDS,
            max_workers=self.config.MAX_WORKERS,
            on_indexed=self._after_index,
            on_removed=self._after_remove,
        )
        self.query = QueryEngine(self.graph, self.store, self.pipeline,
                                 pending=self.updater.pending_paths)
        self._watcher = None

    # ------------------------------------------------------------------
    # Storage paths
    # ------------------------------------------------------------------

    @property
    def graph_path(self) -> str:
        return os.path.join(self.storage_dir, "graph.pkl")

    @property
    def vectors_path(self) -> str:
        return os.path.join(self.storage_dir, "vectors.db")

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.storage_dir, "manifest.db")

    @property
    def meta_path(self) -> str:
        return os.path.join(self.storage_dir, "index_meta.json")

    def _new_store(self) -> VectorStore:
        return VectorStore(
            dimensions=self.config.EMBEDDING_DIMENSIONS,
            segment_size=self.config.SEGMENT_SIZE,
            compaction_threshold=self.config.COMPACTION_THRESHOLD,
        )

    def _open_manifest(self) -> Manifest:
        try:
            return Manifest(self.manifest_path)
        except sqlite3.DatabaseError as exc:
            logger.warning("Manifest %s unreadable (%s); starting a new one",
                           self.manifest_path, exc)
            for suffix in ("", "-wal", "-shm"):
                if os.path.exists(self.manifest_path + suffix):
                    os.remove(self.manifest_path + suffix)
            return Manifest(self.manifest_path)

    def _set_graph(self, graph: GraphStore) -> None:
        self.graph = graph
        self.updater.graph = graph
        self.query.graph = graph

    def _set_store(self, store: VectorStore) -> None:
        self.store = store
        self.pipeline.store = store
        self.query.store = store

    # ------------------------------------------------------------------
    # Post-commit hooks (run on the updater's pool)
    # ------------------------------------------------------------------

    def _after_index(self, extracted: ExtractedFile, source: str | bytes) -> None:
        table = self.graph.snapshot(resolve=False).file(extracted.path)
        version = table.info.version if table is not None else 0
        self.manifest.upsert_file(extracted.path, extracted.content_hash,
                                  extracted.language, version)
        if self.embedder is None:
            return
        chunks = build_chunks(extracted, source, max_chars=self.config.MAX_CHUNK_CHARS)
        self.pipeline.process_file(extracted.path, chunks)

    def _after_remove(self, path: str) -> None:
        self.pipeline.remove_file(path)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index(
        self,
        path: str = ".",
        recursive: bool = True,
        ignore: Optional[Iterable[str]] = None,
        show_progress: bool = False,
        timeout: Optional[float] = None,
    ) -> dict:
        """
        Index every supported file under *path*.

        Files already indexed with identical content are skipped; indexed
        files under *path* that no longer exist are removed.

        Returns
        -------
        dict
            Summary: file_count, indexed, unchanged, removed, error_count,
            symbol_count, edge_count, elapsed_seconds.
        """
        start_time = time.time()
        ignore = list(self.config.IGNORE) + list(ignore or ())
        files = walk_source_files(self.root, path, recursive=recursive, ignore=ignore,
                                  skip_dirs=self.config.SKIP_DIRS)

        snap = self.graph.snapshot(resolve=False)
        futures = []
        unchanged = 0
        for rel_path in files:
            table = snap.file(rel_path)
            if table is not None and self.updater.state(rel_path) is FileState.INDEXED:
                try:
                    with open(os.path.join(self.root, rel_path), "rb") as fh:
                        digest = content_hash(fh.read())
                except OSError:
                    digest = None
                if digest == table.info.content_hash:
                    unchanged += 1
                    continue
            fut = self.updater.submit(ChangeEvent(rel_path, ChangeKind.MODIFIED), immediate=True)
            if fut is not None:
                futures.append(fut)

        prefix = "" if path in (".", "") else path.strip("/").replace(os.sep, "/")
        on_disk = set(files)
        removed = 0
        # The manifest also remembers files a rebuilt graph has never seen
        known_paths = set(snap.files) | set(self.manifest.get_all_indexed_paths())
        for known in sorted(known_paths):
            under = not prefix or known == prefix or known.startswith(prefix + "/")
            if under and known not in on_disk and \
                    not os.path.exists(os.path.join(self.root, known)):
                fut = self.updater.submit(ChangeEvent(known, ChangeKind.DELETED), immediate=True)
                removed += 1
                if fut is not None:
                    futures.append(fut)

        done = as_completed(futures)
        if show_progress:
            done = tqdm(done, total=len(futures), desc="Indexing", unit="file")
        for _ in done:
            pass
        self.updater.wait_idle(timeout)

        errors = [p for p in files if self.updater.state(p) is not FileState.INDEXED]
        stats = self.graph.snapshot().stats()
        self._write_meta(stats)
        elapsed = time.time() - start_time
        summary = {
            "file_count": len(files),
            "indexed": len(files) - unchanged - len(errors),
            "unchanged": unchanged,
            "removed": removed,
            "error_count": len(errors),
            "symbol_count": stats.get("symbols", 0),
            "edge_count": stats.get("edge_count", 0),
            "elapsed_seconds": round(elapsed, 2),
        }
        logger.info(
            "Index complete: %d files (%d unchanged, %d removed), %d symbols, %d edges in %.1fs",
            summary["file_count"], unchanged, removed,
            summary["symbol_count"], summary["edge_count"], elapsed,
        )
        return summary

    def apply_event(self, event: ChangeEvent, immediate: bool = False):
        """Feed one change event to the updater; see :meth:`IncrementalUpdater.submit`."""
        return self.updater.submit(event, immediate=immediate)

    def flush(self) -> None:
        self.updater.flush()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.updater.wait_idle(timeout)

    def pending_paths(self) -> list[str]:
        return self.updater.pending_paths()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _write_meta(self, graph_stats: dict) -> None:
        meta = {
            "last_indexed": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "file_count": graph_stats.get("files", 0),
            "symbol_count": graph_stats.get("symbols", 0),
            "edge_count": graph_stats.get("edge_count", 0),
            "vector_count": self.store.count(),
            "embedding_model": self.pipeline.model if self.embedder is not None else None,
            "index_version": INDEX_FORMAT_VERSION,
        }
        with open(self.meta_path, "w", encoding="utf-8") as fh:
            json.dump(meta, fh, indent=2)

    def read_meta(self) -> Optional[dict]:
        """Return index_meta.json, or None if it is missing or unreadable."""
        if not os.path.exists(self.meta_path):
            return None
        try:
            with open(self.meta_path, encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError):
            return None

    def is_indexed(self) -> bool:
        return os.path.exists(self.graph_path)

    def save(self) -> None:
        """Persist the graph and vector store (the manifest is always on disk)."""
        self.updater.flush()
        self.graph.save(self.graph_path)
        self.store.save(self.vectors_path)
        self._write_meta(self.graph.snapshot().stats())
        logger.info("Saved index to %s", self.storage_dir)

    def load(self, reconcile: bool = True) -> dict:
        """
        Restore the graph and vector store from disk.

        A corrupt store is rebuilt from the source files: the graph by a
        full index, the vectors from cached embeddings.  With *reconcile*,
        files changed or deleted since the save are re-indexed.

        Returns
        -------
        dict
            Keys: graph (``loaded`` / ``rebuilt`` / ``missing``), vectors
            (same values), reindexed (count).
        """
        status = {"graph": "missing", "vectors": "missing", "reindexed": 0}

        try:
            self._set_store(VectorStore.load(
                self.vectors_path,
                segment_size=self.config.SEGMENT_SIZE,
                compaction_threshold=self.config.COMPACTION_THRESHOLD,
            ))
            status["vectors"] = "loaded"
        except FileNotFoundError:
            pass
        except StoreCorruption as exc:
            logger.warning("%s; rebuilding vectors from source", exc)
            self._set_store(self._new_store())
            status["vectors"] = "rebuilt"

        try:
            self._set_graph(GraphStore.load(self.graph_path, self.config.RESOLUTION_ORDER))
            status["graph"] = "loaded"
        except FileNotFoundError:
            pass
        except StoreCorruption as exc:
            logger.warning("%s; rebuilding graph from source", exc)
            self._set_graph(GraphStore(self.config.RESOLUTION_ORDER))
            status["graph"] = "rebuilt"

        snap = self.graph.snapshot(resolve=False)
        self.updater.adopt({p: t.info.version for p, t in snap.files.items()})

        if status["graph"] == "rebuilt" or (reconcile and status["graph"] == "loaded"):
            status["reindexed"] = self.index()["indexed"]

        if status["vectors"] == "rebuilt" and self.embedder is not None:
            self._reembed_all()
        return status

    def _reembed_all(self) -> None:
        """Recreate every file's points, from the cache where possible."""
        snap = self.graph.snapshot()
        for path in sorted(snap.files):
            try:
                with open(os.path.join(self.root, path), encoding="utf-8",
                          errors="replace") as fh:
                    source = fh.read()
            except OSError:
                continue
            table = snap.files[path]
            extracted = ExtractedFile(
                path=path,
                language=table.language,
                content_hash=table.info.content_hash,
                symbols=list(table.symbols),
            )
            self.pipeline.process_file(
                path, build_chunks(extracted, source, max_chars=self.config.MAX_CHUNK_CHARS))

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    def watch(self) -> None:
        """Start a background file watcher feeding change events to the updater."""
        from .watcher import IndexWatcher

        if self._watcher is None:
            self._watcher = IndexWatcher(self)
            self._watcher.start_background()

    def stop_watching(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

    def close(self, save: bool = False) -> None:
        """Stop watching, optionally save, and shut the worker pool down."""
        self.stop_watching()
        if save:
            self.updater.wait_idle()
            self.save()
        self.updater.close(wait=True)

    def __enter__(self) -> "CodeIndex":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_outline(self, path: str) -> QueryResult:
        return self.query.get_outline(path)

    def get_call_graph(self, path_or_symbol: str, depth: int = 1) -> QueryResult:
        return self.query.get_call_graph(path_or_symbol, depth)

    def get_references(self, target: str, position=None,
                       include_declaration: bool = False) -> QueryResult:
        return self.query.get_references(target, position, include_declaration)

    def get_definitions(self, target: str, position=None) -> QueryResult:
        return self.query.get_definitions(target, position)

    def get_implementations(self, target: str, position=None) -> QueryResult:
        return self.query.get_implementations(target, position)

    def get_type_definitions(self, target: str, position=None) -> QueryResult:
        return self.query.get_type_definitions(target, position)

    def get_diagnostics(self, path: str) -> QueryResult:
        return self.query.get_diagnostics(path)

    def get_document_links(self, path: str) -> QueryResult:
        return self.query.get_document_links(path)

    def query_symbol(self, path: str, position) -> QueryResult:
        return self.query.query_symbol(path, position)

    def find_similar(self, chunk_or_text, k: int = 10,
                     filters: Optional[dict] = None) -> QueryResult:
        return self.query.find_similar(chunk_or_text, k, filters)

    def find_similar_callers(self, chunk_or_text, k: int = 10,
                             filters: Optional[dict] = None) -> QueryResult:
        return self.query.find_similar_callers(chunk_or_text, k, filters)

    def stats(self) -> dict:
        return {
            "graph": self.graph.snapshot().stats(),
            "vectors": self.store.stats(),
            "manifest": self.manifest.stats(),
            "updater": self.updater.stats(),
        }
