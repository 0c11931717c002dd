"""
Unit tests for codeindex.index.updater

The extractor is patched with a fast fake so the tests exercise the state
machine, debouncing, versioning and the worker pool, not tree-sitter.
"""

from __future__ import annotations

import threading

import pytest

from codeindex.index.graph import GraphStore
from codeindex.index.models import (
    ChangeEvent,
    ChangeKind,
    ExtractedFile,
    FileState,
    Location,
    Position,
    Range,
    Symbol,
    SymbolKind,
    content_hash,
    make_symbol_id,
)
from codeindex.index.updater import IncrementalUpdater, check_transition


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_WHOLE = Range(Position(0, 0), Position(1, 0), 0, 10)


def _fake_extract(path, content, language=None):
    """One module symbol plus a function named after the content."""
    raw = content
    if isinstance(content, bytes):
        content = content.decode("utf-8")
    if content == "boom":
        raise RuntimeError("extractor exploded")
    qual = path.rsplit(".", 1)[0].replace("/", ".")
    mod = Symbol(
        id=make_symbol_id(path, qual, SymbolKind.MODULE), name=qual, qualname=qual,
        kind=SymbolKind.MODULE, location=Location(path, _WHOLE), selection=_WHOLE,
    )
    fn = Symbol(
        id=make_symbol_id(path, content, SymbolKind.FUNCTION), name=content, qualname=content,
        kind=SymbolKind.FUNCTION, location=Location(path, _WHOLE), selection=_WHOLE,
        container_id=mod.id,
    )
    return ExtractedFile(path=path, language="python", content_hash=content_hash(raw),
                         symbols=[mod, fn])


@pytest.fixture
def fake_extract(monkeypatch):
    calls = []

    def _extract(path, content, language=None):
        calls.append((path, content))
        return _fake_extract(path, content, language)

    monkeypatch.setattr("codeindex.index.updater.extract_file", _extract)
    return calls


def _updater(tmp_path, **kwargs):
    kwargs.setdefault("debounce_seconds", 0.0)
    kwargs.setdefault("resolve_delay_seconds", 0.0)
    kwargs.setdefault("max_workers", 2)
    return IncrementalUpdater(str(tmp_path), GraphStore(), **kwargs)


def _hash_of(updater, path):
    table = updater.graph.snapshot().file(path)
    return table.info.content_hash if table is not None else None


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class TestTransitions:

    @pytest.mark.parametrize("current,new", [
        (FileState.UNINDEXED, FileState.INDEXING),
        (FileState.INDEXING, FileState.INDEXED),
        (FileState.INDEXED, FileState.STALE),
        (FileState.STALE, FileState.INDEXING),
        (FileState.INDEXED, FileState.DELETED),
        (FileState.DELETED, FileState.UNINDEXED),
    ])
    def test_legal(self, current, new):
        check_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (FileState.UNINDEXED, FileState.INDEXED),
        (FileState.INDEXED, FileState.INDEXING),
        (FileState.DELETED, FileState.INDEXING),
        (FileState.STALE, FileState.INDEXED),
    ])
    def test_illegal(self, current, new):
        with pytest.raises(ValueError):
            check_transition(current, new)


# ---------------------------------------------------------------------------
# Event processing
# ---------------------------------------------------------------------------

class TestSubmit:

    def test_immediate_submit_commits(self, tmp_path, fake_extract):
        up = _updater(tmp_path)
        try:
            fut = up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "alpha"), immediate=True)
            fut.result(timeout=5)
            assert up.state("a.py") is FileState.INDEXED
            assert _hash_of(up, "a.py") == content_hash("alpha")
            assert up.graph.snapshot().file("a.py").info.version == 1
        finally:
            up.close()

    def test_burst_is_coalesced_into_one_extraction(self, tmp_path, fake_extract):
        up = _updater(tmp_path, debounce_seconds=0.2)
        try:
            for i in range(10):
                assert up.submit(ChangeEvent("a.py", ChangeKind.MODIFIED, f"v{i}")) is None
            assert up.wait_idle(timeout=5)
            assert up.extraction_count == 1
            assert fake_extract == [("a.py", "v9")]
            assert _hash_of(up, "a.py") == content_hash("v9")
            assert up.state("a.py") is FileState.INDEXED
        finally:
            up.close()

    def test_superseded_extraction_is_discarded(self, tmp_path, monkeypatch):
        gate = threading.Event()
        started = threading.Event()

        def _slow(path, content, language=None):
            if content == "old":
                started.set()
                gate.wait(5)
            return _fake_extract(path, content)

        monkeypatch.setattr("codeindex.index.updater.extract_file", _slow)
        up = _updater(tmp_path)
        try:
            old = up.submit(ChangeEvent("a.py", ChangeKind.MODIFIED, "old"), immediate=True)
            assert started.wait(5)
            new = up.submit(ChangeEvent("a.py", ChangeKind.MODIFIED, "new"), immediate=True)
            new.result(timeout=5)
            gate.set()
            old.result(timeout=5)
            assert up.discarded_count == 1
            assert _hash_of(up, "a.py") == content_hash("new")
            assert up.state("a.py") is FileState.INDEXED
        finally:
            gate.set()
            up.close()

    def test_content_is_read_from_disk(self, tmp_path, fake_extract):
        (tmp_path / "disk.py").write_text("ondisk", encoding="utf-8")
        up = _updater(tmp_path)
        try:
            up.submit(ChangeEvent("disk.py", ChangeKind.MODIFIED), immediate=True).result(5)
            assert fake_extract == [("disk.py", b"ondisk")]
        finally:
            up.close()

    def test_crlf_bytes_are_kept(self, tmp_path, fake_extract):
        raw = b"crlf\r\n"
        (tmp_path / "win.py").write_bytes(raw)
        up = _updater(tmp_path)
        try:
            up.submit(ChangeEvent("win.py", ChangeKind.MODIFIED), immediate=True).result(5)
            assert fake_extract == [("win.py", raw)]
            assert _hash_of(up, "win.py") == content_hash(raw)
        finally:
            up.close()

    def test_vanished_file_is_removed(self, tmp_path, fake_extract):
        up = _updater(tmp_path)
        try:
            up.submit(ChangeEvent("gone.py", ChangeKind.CREATED, "x"), immediate=True).result(5)
            up.submit(ChangeEvent("gone.py", ChangeKind.MODIFIED), immediate=True).result(5)
            assert up.state("gone.py") is FileState.DELETED
            assert up.graph.snapshot().file("gone.py") is None
        finally:
            up.close()

    def test_delete(self, tmp_path, fake_extract):
        removed = []
        up = _updater(tmp_path, on_removed=removed.append)
        try:
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "alpha"), immediate=True).result(5)
            up.submit(ChangeEvent("a.py", ChangeKind.DELETED), immediate=True).result(5)
            assert up.wait_idle(timeout=5)
            assert up.state("a.py") is FileState.DELETED
            assert up.graph.snapshot().file("a.py") is None
            assert removed == ["a.py"]
            assert "a.py" not in up.pending_paths()
        finally:
            up.close()

    def test_create_after_delete_starts_new_life(self, tmp_path, fake_extract):
        up = _updater(tmp_path)
        try:
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "one"), immediate=True).result(5)
            up.submit(ChangeEvent("a.py", ChangeKind.DELETED), immediate=True).result(5)
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "two"), immediate=True).result(5)
            assert up.state("a.py") is FileState.INDEXED
            assert _hash_of(up, "a.py") == content_hash("two")
        finally:
            up.close()

    def test_rename_is_delete_plus_create(self, tmp_path, fake_extract):
        up = _updater(tmp_path)
        try:
            up.submit(ChangeEvent("old.py", ChangeKind.CREATED, "body"), immediate=True).result(5)
            up.submit(ChangeEvent("new.py", ChangeKind.RENAMED, "body", old_path="old.py"),
                      immediate=True).result(5)
            assert up.wait_idle(timeout=5)
            snap = up.graph.snapshot()
            assert snap.file("old.py") is None
            assert "FUNCTION:new.py::body" in snap.symbols
            assert "FUNCTION:old.py::body" not in snap.symbols
            assert up.state("old.py") is FileState.DELETED
        finally:
            up.close()

    def test_failed_extraction_leaves_file_stale(self, tmp_path, fake_extract):
        up = _updater(tmp_path)
        try:
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "boom"), immediate=True).result(5)
            assert up.state("a.py") is FileState.STALE
            assert "a.py" in up.pending_paths()
            up.submit(ChangeEvent("a.py", ChangeKind.MODIFIED, "fixed"), immediate=True).result(5)
            assert up.state("a.py") is FileState.INDEXED
        finally:
            up.close()

    def test_on_indexed_hook(self, tmp_path, fake_extract):
        seen = []
        up = _updater(tmp_path, on_indexed=lambda ex, text: seen.append((ex.path, text)))
        try:
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "alpha"), immediate=True).result(5)
            assert up.wait_idle(timeout=5)
            assert seen == [("a.py", "alpha")]
        finally:
            up.close()


class TestControl:

    def test_pending_paths_and_flush(self, tmp_path, fake_extract):
        up = _updater(tmp_path, debounce_seconds=30)
        try:
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "alpha"))
            assert up.pending_paths() == ["a.py"]
            futures = up.flush()
            assert len(futures) == 1
            futures[0].result(timeout=5)
            assert up.pending_paths() == []
        finally:
            up.close()

    def test_wait_idle_times_out_while_debouncing(self, tmp_path, fake_extract):
        up = _updater(tmp_path, debounce_seconds=30)
        try:
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "alpha"))
            assert up.wait_idle(timeout=0.1) is False
        finally:
            up.close()

    def test_adopt_restores_indexed_state(self, tmp_path, fake_extract):
        up = _updater(tmp_path)
        try:
            up.adopt({"a.py": 7})
            assert up.state("a.py") is FileState.INDEXED
            up.submit(ChangeEvent("a.py", ChangeKind.MODIFIED, "alpha"), immediate=True).result(5)
            assert up.graph.snapshot().file("a.py").info.version == 8
        finally:
            up.close()

    def test_submit_after_close_raises(self, tmp_path, fake_extract):
        up = _updater(tmp_path)
        up.close()
        with pytest.raises(RuntimeError):
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "alpha"))

    def test_wait_idle_returns_after_close_cancels_queued_work(self, tmp_path, monkeypatch):
        gate = threading.Event()
        started = threading.Event()

        def _blocking(path, content, language=None):
            started.set()
            gate.wait(5)
            return _fake_extract(path, content)

        monkeypatch.setattr("codeindex.index.updater.extract_file", _blocking)
        up = _updater(tmp_path, max_workers=1)
        up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "alpha"), immediate=True)
        assert started.wait(5)
        # queued behind a.py and cancelled by close()
        up.submit(ChangeEvent("b.py", ChangeKind.CREATED, "beta"), immediate=True)
        up.close(wait=False)
        gate.set()

        waiter = threading.Thread(target=up.wait_idle)
        waiter.start()
        waiter.join(timeout=5)
        assert not waiter.is_alive()

    def test_stats(self, tmp_path, fake_extract):
        up = _updater(tmp_path)
        try:
            up.submit(ChangeEvent("a.py", ChangeKind.CREATED, "alpha"), immediate=True).result(5)
            stats = up.stats()
            assert stats["extractions"] == 1
            assert stats["by_state"] == {"indexed": 1}
        finally:
            up.close()
