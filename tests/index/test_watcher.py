"""
Unit tests for codeindex.index.watcher

Tests the event handler's filtering and translation into change events,
and the IndexWatcher lifecycle.  The observer is mocked for lifecycle tests.
"""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from codeindex.config import Config
from codeindex.index.models import ChangeKind
from codeindex.index.watcher import IndexEventHandler, IndexWatcher


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def index(tmp_path):
    idx = MagicMock()
    idx.root = str(tmp_path)
    idx.config = Config(ignore=["*_pb2.py"])
    return idx


def _path(index, rel):
    return os.path.join(index.root, *rel.split("/"))


def _submitted(index):
    return [
        (c.args[0].path, c.args[0].kind, c.args[0].old_path)
        for c in index.apply_event.call_args_list
    ]


# ---------------------------------------------------------------------------
# IndexEventHandler
# ---------------------------------------------------------------------------

class TestIndexEventHandler:

    def test_modified_created_deleted(self, index):
        handler = IndexEventHandler(index)
        handler.on_modified(FileModifiedEvent(_path(index, "pkg/a.py")))
        handler.on_created(FileCreatedEvent(_path(index, "b.ts")))
        handler.on_deleted(FileDeletedEvent(_path(index, "c.go")))
        assert _submitted(index) == [
            ("pkg/a.py", ChangeKind.MODIFIED, None),
            ("b.ts", ChangeKind.CREATED, None),
            ("c.go", ChangeKind.DELETED, None),
        ]

    @pytest.mark.parametrize("rel", [
        "README.md",
        "node_modules/lib/index.js",
        ".git/hooks/pre-commit.py",
        ".codeindex/graph.py",
        "proto/service_pb2.py",
    ])
    def test_ignored_paths(self, index, rel):
        IndexEventHandler(index).on_modified(FileModifiedEvent(_path(index, rel)))
        index.apply_event.assert_not_called()

    def test_agrees_with_walker_on_ignored_directories(self, tmp_path):
        (tmp_path / ".gitignore").write_text("generated/\n", encoding="utf-8")
        idx = MagicMock()
        idx.root = str(tmp_path)
        idx.config = Config(ignore=["vendored"])
        handler = IndexEventHandler(idx)
        for rel in ("generated/gen.py", "vendored/v.py", "vendored/deep/x.py", "src/ok.py"):
            handler.on_modified(FileModifiedEvent(_path(idx, rel)))
        assert _submitted(idx) == [("src/ok.py", ChangeKind.MODIFIED, None)]

    def test_gitignore_change_reloads_patterns(self, index):
        handler = IndexEventHandler(index)
        with open(os.path.join(index.root, ".gitignore"), "w", encoding="utf-8") as fh:
            fh.write("build/\n")
        handler.on_modified(FileModifiedEvent(_path(index, ".gitignore")))
        handler.on_modified(FileModifiedEvent(_path(index, "build/out.py")))
        index.apply_event.assert_not_called()

    def test_directory_events_ignored(self, index):
        IndexEventHandler(index).on_modified(DirModifiedEvent(_path(index, "pkg")))
        index.apply_event.assert_not_called()

    def test_path_outside_root_ignored(self, index, tmp_path):
        outside = os.path.join(os.path.dirname(str(tmp_path)), "elsewhere.py")
        IndexEventHandler(index).on_modified(FileModifiedEvent(outside))
        index.apply_event.assert_not_called()

    def test_move_becomes_rename(self, index):
        IndexEventHandler(index).on_moved(
            FileMovedEvent(_path(index, "old.py"), _path(index, "pkg/new.py")))
        assert _submitted(index) == [("pkg/new.py", ChangeKind.RENAMED, "old.py")]

    def test_move_to_ignored_is_delete(self, index):
        IndexEventHandler(index).on_moved(
            FileMovedEvent(_path(index, "a.py"), _path(index, "a.py.bak")))
        assert _submitted(index) == [("a.py", ChangeKind.DELETED, None)]

    def test_move_from_ignored_is_create(self, index):
        # editors commonly write a temp file then rename it into place
        IndexEventHandler(index).on_moved(
            FileMovedEvent(_path(index, "a.py.swp"), _path(index, "a.py")))
        assert _submitted(index) == [("a.py", ChangeKind.CREATED, None)]

    def test_closed_index_is_tolerated(self, index):
        index.apply_event.side_effect = RuntimeError("updater is closed")
        IndexEventHandler(index).on_modified(FileModifiedEvent(_path(index, "a.py")))
        index.apply_event.assert_called_once()


# ---------------------------------------------------------------------------
# IndexWatcher lifecycle
# ---------------------------------------------------------------------------

class TestIndexWatcher:

    def test_initial_state(self, index):
        watcher = IndexWatcher(index)
        assert not watcher.is_running
        watcher.stop()

    @patch("codeindex.index.watcher.Observer")
    def test_start_background_and_stop(self, mock_observer_cls, index):
        observer = MagicMock()
        alive = iter([True, False])
        observer.is_alive.side_effect = lambda: next(alive, False)
        mock_observer_cls.return_value = observer

        watcher = IndexWatcher(index)
        watcher.start_background(timeout=2)
        observer.schedule.assert_called_once()
        assert observer.schedule.call_args[0][1] == index.root
        assert observer.schedule.call_args[1] == {"recursive": True}
        observer.start.assert_called_once()

        watcher.stop()
        observer.stop.assert_called()
        assert not watcher.is_running
