"""
File watcher for incremental index updates.

Uses watchdog to monitor the repository and turns file system events into
:class:`ChangeEvent` objects for the updater.  Debouncing and coalescing are
the updater's job; this module only filters and translates.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .indexer import _is_excluded, _load_gitignore_patterns
from .models import ChangeEvent, ChangeKind
from .parser import detect_language

logger = logging.getLogger(__name__)


class IndexEventHandler(FileSystemEventHandler):
    """
    Watchdog event handler that feeds change events to a :class:`CodeIndex`.

    Parameters
    ----------
    index:
        The :class:`~codeindex.index.indexer.CodeIndex` to update.
    """

    def __init__(self, index) -> None:
        super().__init__()
        self._index = index
        self._root = index.root
        self._skip_dirs = frozenset(index.config.SKIP_DIRS) | {index.config.STORAGE_DIR}
        self._patterns: list[str] = []
        self.reload_patterns()

    def reload_patterns(self) -> None:
        """Re-read .gitignore and the configured ignore globs."""
        self._patterns = _load_gitignore_patterns(self._root) + list(self._index.config.IGNORE)

    # ------------------------------------------------------------------
    # Watchdog event dispatch
    # ------------------------------------------------------------------

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.MODIFIED)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.CREATED)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.DELETED)

    def on_moved(self, event) -> None:
        if event.is_directory:
            return
        old = self._rel_path(event.src_path)
        new = self._rel_path(event.dest_path)
        old_ok = old is not None and not self._should_ignore(old)
        new_ok = new is not None and not self._should_ignore(new)
        if old_ok and new_ok:
            self._submit(ChangeEvent(new, ChangeKind.RENAMED, old_path=old))
        elif old_ok:
            self._submit(ChangeEvent(old, ChangeKind.DELETED))
        elif new_ok:
            self._submit(ChangeEvent(new, ChangeKind.CREATED))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rel_path(self, abs_path) -> Optional[str]:
        """Convert *abs_path* to a root-relative path, or None if outside."""
        if isinstance(abs_path, bytes):
            abs_path = os.fsdecode(abs_path)
        try:
            rel = os.path.relpath(abs_path, self._root)
        except ValueError:
            return None
        if rel.startswith(".."):
            return None
        return rel.replace(os.sep, "/")

    def _should_ignore(self, rel_path: str) -> bool:
        if detect_language(rel_path) is None:
            return True
        return _is_excluded(rel_path, self._patterns, self._skip_dirs)

    def _emit(self, abs_path, kind: ChangeKind) -> None:
        rel_path = self._rel_path(abs_path)
        if rel_path == ".gitignore":
            self.reload_patterns()
            return
        if rel_path is None or self._should_ignore(rel_path):
            return
        self._submit(ChangeEvent(rel_path, kind))

    def _submit(self, event: ChangeEvent) -> None:
        logger.debug("[watcher] %s %s", event.kind.value, event.path)
        try:
            self._index.apply_event(event)
        except RuntimeError as exc:
            # updater already closed
            logger.debug("[watcher] Dropped %s: %s", event.path, exc)


class IndexWatcher:
    """
    High-level wrapper around a watchdog observer for one repository.

    Usage::

        watcher = IndexWatcher(index)
        watcher.start_background()
        ...
        watcher.stop()
    """

    def __init__(self, index) -> None:
        self._index = index
        self._root = index.root
        self._observer: Optional[Observer] = None
        self._handler = IndexEventHandler(index)
        self._started = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """
        Start watching the repository.

        Blocks until :meth:`stop` is called.  For non-blocking use, call
        :meth:`start_background` instead.
        """
        observer = Observer()
        observer.schedule(self._handler, self._root, recursive=True)
        observer.start()
        self._observer = observer
        self._started.set()
        logger.info("[watcher] Watching %s", self._root)
        try:
            while observer.is_alive():
                observer.join(timeout=1)
        except KeyboardInterrupt:
            observer.stop()
        observer.join()

    def start_background(self, timeout: float = 5.0) -> None:
        """Start the watcher in a daemon thread and wait until it is observing."""
        t = threading.Thread(target=self.start, daemon=True, name="codeindex-watcher")
        t.start()
        self._started.wait(timeout)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("[watcher] Stopped")
