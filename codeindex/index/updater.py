"""
Incremental updater — turns a stream of change events into graph commits.

Events for one path are coalesced over a debounce window so a burst of
saves costs a single extraction of the final content.  Extraction runs on a
worker pool; every accepted event bumps the path's version, and a finished
extraction whose version has been superseded is thrown away instead of
committed.  Cross-file resolution is batched on its own timer.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Union

from .extractor import extract_file
from .graph import GraphStore
from .models import ChangeEvent, ChangeKind, ExtractedFile, FileState, IndexedFile

logger = logging.getLogger(__name__)

# Legal per-file state transitions; DELETED is terminal until a new create.
_TRANSITIONS: dict[FileState, frozenset[FileState]] = {
    FileState.UNINDEXED: frozenset({FileState.INDEXING, FileState.DELETED}),
    FileState.INDEXING: frozenset({FileState.INDEXED, FileState.STALE, FileState.DELETED}),
    FileState.INDEXED: frozenset({FileState.STALE, FileState.DELETED}),
    FileState.STALE: frozenset({FileState.INDEXING, FileState.DELETED}),
    FileState.DELETED: frozenset({FileState.UNINDEXED}),
}

IndexedCallback = Callable[[ExtractedFile, Union[str, bytes]], None]
RemovedCallback = Callable[[str], None]


def check_transition(current: FileState, new: FileState) -> None:
    """Raise ValueError when *current* -> *new* is not a legal transition."""
    if new is not current and new not in _TRANSITIONS[current]:
        raise ValueError(f"illegal file state transition {current.value} -> {new.value}")


class IncrementalUpdater:
    """
    Debounced, versioned, pooled re-indexing of changed files.

    Parameters
    ----------
    root:
        Repository root; event paths are relative to it.
    graph:
        The :class:`GraphStore` receiving commits.
    debounce_seconds:
        Per-path coalescing window.  ``0`` processes every event at once.
    resolve_delay_seconds:
        Delay before queued cross-file resolution runs after a commit.
    max_workers:
        Worker pool size.
    on_indexed:
        Called with ``(extracted, source_text)`` after a structural commit,
        on the pool, so the embedding pipeline never blocks indexing.
    on_removed:
        Called with the path after a file is dropped from the graph.
    """

    def __init__(
        self,
        root: str,
        graph: GraphStore,
        debounce_seconds: float = 0.3,
        resolve_delay_seconds: float = 0.5,
        max_workers: Optional[int] = None,
        on_indexed: Optional[IndexedCallback] = None,
        on_removed: Optional[RemovedCallback] = None,
    ) -> None:
        self.root = os.path.abspath(root)
        self.graph = graph
        self._debounce = debounce_seconds
        self._resolve_delay = resolve_delay_seconds
        self._on_indexed = on_indexed
        self._on_removed = on_removed
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or (os.cpu_count() or 4),
            thread_name_prefix="codeindex",
        )

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        # Serialises version check + commit so an older extraction can never
        # land after a newer one
        self._commit_lock = threading.Lock()

        self._states: dict[str, FileState] = {}
        self._versions: dict[str, int] = {}
        self._pending_events: dict[str, ChangeEvent] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._resolve_timer: Optional[threading.Timer] = None
        self._inflight = 0
        self._closed = False

        self.extraction_count = 0
        self.discarded_count = 0

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def state(self, path: str) -> FileState:
        with self._lock:
            return self._states.get(path, FileState.UNINDEXED)

    def _set_state(self, path: str, new: FileState) -> None:
        # caller holds self._lock
        current = self._states.get(path, FileState.UNINDEXED)
        check_transition(current, new)
        self._states[path] = new

    def pending_paths(self) -> list[str]:
        """Files with accepted changes that are not yet reflected in the graph."""
        with self._lock:
            waiting = set(self._pending_events)
            waiting.update(
                p for p, s in self._states.items()
                if s in (FileState.UNINDEXED, FileState.INDEXING, FileState.STALE)
            )
            return sorted(waiting)

    def adopt(self, files: dict[str, int]) -> None:
        """
        Take over files restored from disk as INDEXED.

        Parameters
        ----------
        files:
            Path -> version the graph holds for it.  Later events continue
            counting from that version.
        """
        with self._lock:
            for path, version in files.items():
                self._states[path] = FileState.INDEXED
                self._versions[path] = max(version, self._versions.get(path, 0))

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def submit(self, event: ChangeEvent, immediate: bool = False) -> Optional[Future]:
        """
        Accept a change event.

        Parameters
        ----------
        event:
            The change.  ``renamed`` events are split into a delete of
            ``old_path`` and a create of ``path``.
        immediate:
            Skip the debounce window and schedule the work now; the returned
            future completes when the file is committed.
        """
        if event.kind is ChangeKind.RENAMED:
            if event.old_path:
                self.submit(ChangeEvent(event.old_path, ChangeKind.DELETED), immediate)
            return self.submit(ChangeEvent(event.path, ChangeKind.CREATED, event.content),
                               immediate)

        path = event.path
        with self._lock:
            if self._closed:
                raise RuntimeError("updater is closed")
            self._versions[path] = self._versions.get(path, 0) + 1
            state = self._states.get(path, FileState.UNINDEXED)
            if state is FileState.DELETED and event.kind is not ChangeKind.DELETED:
                self._set_state(path, FileState.UNINDEXED)
            elif state in (FileState.INDEXED, FileState.INDEXING):
                self._set_state(path, FileState.STALE)
            self._pending_events[path] = event

            timer = self._timers.pop(path, None)
            if timer is not None:
                timer.cancel()
            if not immediate and self._debounce > 0:
                timer = threading.Timer(self._debounce, self._fire, args=(path,))
                timer.daemon = True
                self._timers[path] = timer
                timer.start()
                return None
        return self._fire(path)

    def _fire(self, path: str) -> Optional[Future]:
        """Debounce window closed: schedule the latest event for *path*."""
        with self._lock:
            self._timers.pop(path, None)
            event = self._pending_events.pop(path, None)
            if event is None or self._closed:
                return None
            version = self._versions[path]
            if event.kind is not ChangeKind.DELETED:
                self._set_state(path, FileState.INDEXING)
            self._inflight += 1
        task = self._delete_task if event.kind is ChangeKind.DELETED else self._index_task
        return self._executor.submit(task, path, event, version)

    # ------------------------------------------------------------------
    # Worker tasks
    # ------------------------------------------------------------------

    def _read(self, path: str) -> Optional[bytes]:
        # Raw bytes: hashes and byte ranges must match the file on disk
        try:
            with open(os.path.join(self.root, path), "rb") as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    def _is_current(self, path: str, version: int) -> bool:
        with self._lock:
            return self._versions.get(path) == version

    def _index_task(self, path: str, event: ChangeEvent, version: int) -> None:
        try:
            content = event.content if event.content is not None else self._read(path)
            if content is None:
                # Vanished before we got to it
                self._delete_task(path, ChangeEvent(path, ChangeKind.DELETED), version,
                                  counted=False)
                return
            with self._lock:
                self.extraction_count += 1
            extracted = extract_file(path, content)

            with self._commit_lock:
                if not self._is_current(path, version):
                    with self._lock:
                        self.discarded_count += 1
                    logger.debug("Discarded superseded extraction of %s (v%d)", path, version)
                    return
                self.graph.commit_file(extracted, IndexedFile(
                    path=path,
                    content_hash=extracted.content_hash,
                    version=version,
                    language=extracted.language,
                ))
                with self._lock:
                    if self._versions.get(path) == version:
                        self._set_state(path, FileState.INDEXED)
            self._schedule_resolve()
            logger.debug("Indexed %s v%d (%d symbols)", path, version, len(extracted.symbols))
            if self._on_indexed is not None:
                self._spawn(self._run_on_indexed, path, version, extracted, content)
        except Exception as exc:
            logger.warning("Indexing %s failed: %s", path, exc)
            with self._lock:
                if self._versions.get(path) == version and \
                        self._states.get(path) is FileState.INDEXING:
                    self._set_state(path, FileState.STALE)
        finally:
            self._task_done()

    def _delete_task(self, path: str, event: ChangeEvent, version: int,
                     counted: bool = True) -> None:
        try:
            with self._commit_lock:
                if not self._is_current(path, version):
                    return
                self.graph.remove_file(path)
                with self._lock:
                    self._set_state(path, FileState.DELETED)
            self._schedule_resolve()
            logger.debug("Removed %s", path)
            if self._on_removed is not None:
                self._spawn(self._run_on_removed, path)
        except Exception as exc:
            logger.warning("Removing %s failed: %s", path, exc)
        finally:
            if counted:
                self._task_done()

    def _spawn(self, fn, *args) -> None:
        with self._lock:
            if self._closed:
                return
            self._inflight += 1
        try:
            self._executor.submit(fn, *args)
        except RuntimeError:
            self._task_done()

    def _run_on_indexed(self, path: str, version: int, extracted: ExtractedFile,
                        content: Union[str, bytes]) -> None:
        try:
            if self._is_current(path, version):
                self._on_indexed(extracted, content)
        except Exception as exc:
            logger.warning("Post-index hook failed for %s: %s", path, exc)
        finally:
            self._task_done()

    def _run_on_removed(self, path: str) -> None:
        try:
            self._on_removed(path)
        except Exception as exc:
            logger.warning("Post-remove hook failed for %s: %s", path, exc)
        finally:
            self._task_done()

    def _task_done(self) -> None:
        with self._lock:
            self._inflight -= 1
            self._idle.notify_all()

    # ------------------------------------------------------------------
    # Cross-file resolution
    # ------------------------------------------------------------------

    def _schedule_resolve(self) -> None:
        if self._resolve_delay <= 0:
            self.graph.resolve_pending()
            return
        with self._lock:
            if self._closed:
                return
            if self._resolve_timer is not None:
                self._resolve_timer.cancel()
            self._resolve_timer = threading.Timer(self._resolve_delay, self._resolve_now)
            self._resolve_timer.daemon = True
            self._resolve_timer.start()

    def _resolve_now(self) -> None:
        with self._lock:
            self._resolve_timer = None
        try:
            self.graph.resolve_pending()
        except Exception as exc:
            logger.warning("Cross-file resolution failed: %s", exc)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def flush(self) -> list[Future]:
        """Close every open debounce window now and run queued resolution."""
        with self._lock:
            paths = list(self._timers)
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            resolve_timer, self._resolve_timer = self._resolve_timer, None
        if resolve_timer is not None:
            resolve_timer.cancel()
        futures = [f for f in (self._fire(p) for p in paths) if f is not None]
        if self.graph.has_pending_resolution():
            self.graph.resolve_pending()
        return futures

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no events are waiting and no task is running.

        Returns False if *timeout* expired first.  Pending debounce windows
        are waited out, not flushed.  Returns at once after :meth:`close`.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while not self._closed and (self._inflight > 0 or self._pending_events):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                # Timers fire outside the condition, so poll while they are armed
                self._idle.wait(timeout=0.05 if remaining is None else min(remaining, 0.05))
        if self.graph.has_pending_resolution():
            self.graph.resolve_pending()
        return True

    def stats(self) -> dict:
        with self._lock:
            by_state: dict[str, int] = {}
            for s in self._states.values():
                by_state[s.value] = by_state.get(s.value, 0) + 1
            return {
                "extractions": self.extraction_count,
                "discarded": self.discarded_count,
                "inflight": self._inflight,
                "by_state": by_state,
            }

    def close(self, wait: bool = True) -> None:
        """Cancel timers and shut the worker pool down."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._pending_events.clear()
            if self._resolve_timer is not None:
                self._resolve_timer.cancel()
                self._resolve_timer = None
        self._executor.shutdown(wait=wait, cancel_futures=True)
        if wait:
            with self._lock:
                self._inflight = 0
                self._idle.notify_all()
        logger.debug("Updater closed")
