"""
Unit tests for codeindex.index.query

Builds a small two-file Python repository through the real extractor and
graph store, then checks every structural query plus the similarity
queries against a hand-filled vector store.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from codeindex.errors import EmbeddingFailure
from codeindex.index.embedder import EmbeddingPipeline
from codeindex.index.graph import GraphStore
from codeindex.index.manifest import Manifest
from codeindex.index.models import CodeChunk, IndexedFile, Position
from codeindex.index.query import QueryEngine, QueryResult
from codeindex.index.vector_store import VectorStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

SHAPES = '''class Shape:
    def area(self):
        return 0


class Square(Shape):
    def area(self):
        return 4


class Tiny(Square):
    def area(self):
        return 1


def make() -> Square:
    return Square()


def foo():
    return 1


def bar():
    return foo()


def baz():
    return bar()
'''

APP = '''from .shapes import foo


def main():
    return foo()
'''

BROKEN = "def bad(:\n    pass\n"

FOO = "FUNCTION:pkg/shapes.py::foo"
BAR = "FUNCTION:pkg/shapes.py::bar"
BAZ = "FUNCTION:pkg/shapes.py::baz"
MAIN = "FUNCTION:pkg/app.py::main"


def _index(store, path, source):
    from codeindex.index.extractor import extract_file
    extracted = extract_file(path, source)
    store.commit_file(extracted, IndexedFile(path=path, content_hash=extracted.content_hash,
                                             version=1, language=extracted.language))


@pytest.fixture
def graph():
    pytest.importorskip("tree_sitter_python")
    store = GraphStore()
    _index(store, "pkg/shapes.py", SHAPES)
    _index(store, "pkg/app.py", APP)
    _index(store, "pkg/broken.py", BROKEN)
    return store


@pytest.fixture
def engine(graph):
    return QueryEngine(graph)


def _ids(result):
    return [item["id"] for item in result]


def _edges(result):
    return {(e["caller"]["id"], e["callee"]["id"], e["depth"]) for e in result}


# ---------------------------------------------------------------------------
# QueryResult
# ---------------------------------------------------------------------------

class TestQueryResult:

    def test_sequence_behaviour(self):
        result = QueryResult(items=[{"a": 1}, {"b": 2}], pending=["x.py"])
        assert len(result) == 2
        assert result[1] == {"b": 2}
        assert list(result) == [{"a": 1}, {"b": 2}]
        assert result.to_dict() == {"items": [{"a": 1}, {"b": 2}], "pending": ["x.py"]}

    def test_pending_paths_are_reported(self, graph):
        engine = QueryEngine(graph, pending=lambda: ["pkg/app.py"])
        assert engine.get_outline("pkg/app.py").pending == ["pkg/app.py"]


# ---------------------------------------------------------------------------
# Structural queries
# ---------------------------------------------------------------------------

class TestOutline:

    def test_top_level_in_document_order(self, engine):
        outline = engine.get_outline("pkg/shapes.py")
        assert [n["name"] for n in outline] == ["Shape", "Square", "Tiny", "make", "foo", "bar", "baz"]

    def test_members_are_nested(self, engine):
        shape = engine.get_outline("pkg/shapes.py")[0]
        assert [c["id"] for c in shape["children"]] == ["METHOD:pkg/shapes.py::Shape.area"]
        assert shape["children"][0]["children"] == []

    def test_unknown_file(self, engine):
        assert len(engine.get_outline("nowhere.py")) == 0


class TestCallGraph:

    def test_symbol_depth_one(self, engine):
        assert _edges(engine.get_call_graph(BAR)) == {(BAR, FOO, 1), (BAZ, BAR, 1)}

    def test_callers_across_files_and_depth(self, engine):
        assert _edges(engine.get_call_graph(FOO, depth=2)) == {
            (BAR, FOO, 1), (MAIN, FOO, 1), (BAZ, BAR, 2),
        }

    def test_file_start_set(self, engine):
        assert _edges(engine.get_call_graph("pkg/app.py")) == {(MAIN, FOO, 1)}

    def test_unknown_target(self, engine):
        assert len(engine.get_call_graph("FUNCTION:nope.py::x")) == 0


class TestReferences:

    def test_references_by_id(self, engine):
        refs = engine.get_references(FOO)
        sites = [(r["path"], r["range"]["start"]["line"]) for r in refs]
        assert ("pkg/shapes.py", 24) in sites
        assert ("pkg/app.py", 4) in sites
        assert sites == sorted(sites)
        assert all(r["target_id"] == FOO for r in refs)

    def test_references_by_position_on_call_site(self, engine):
        by_pos = engine.get_references("pkg/shapes.py", Position(24, 12))
        assert [r["target_id"] for r in by_pos] == [r["target_id"] for r in engine.get_references(FOO)]

    def test_include_declaration(self, engine):
        refs = engine.get_references(FOO, include_declaration=True)
        assert refs[0]["kind"] == "declaration"
        assert refs[0]["range"]["start"] == {"line": 19, "character": 4}

    def test_missing_symbol(self, engine):
        assert len(engine.get_references("FUNCTION:pkg/shapes.py::nope")) == 0


class TestDefinitions:

    def test_definition_from_call_site(self, engine):
        assert _ids(engine.get_definitions("pkg/shapes.py", {"line": 24, "character": 12})) == [FOO]

    def test_definition_from_name_token(self, engine):
        assert _ids(engine.get_definitions("pkg/shapes.py", (19, 5))) == [FOO]

    def test_definition_across_files(self, engine):
        assert _ids(engine.get_definitions("pkg/app.py", Position(4, 12))) == [FOO]

    def test_position_on_nothing(self, engine):
        assert len(engine.get_definitions("pkg/shapes.py", Position(4, 0))) == 0


class TestImplementations:

    def test_transitive_subtypes(self, engine):
        assert _ids(engine.get_implementations("CLASS:pkg/shapes.py::Shape")) == [
            "CLASS:pkg/shapes.py::Square", "CLASS:pkg/shapes.py::Tiny",
        ]

    def test_method_overrides(self, engine):
        assert _ids(engine.get_implementations("METHOD:pkg/shapes.py::Shape.area")) == [
            "METHOD:pkg/shapes.py::Square.area", "METHOD:pkg/shapes.py::Tiny.area",
        ]

    def test_leaf_type_and_plain_function(self, engine):
        assert len(engine.get_implementations("CLASS:pkg/shapes.py::Tiny")) == 0
        assert len(engine.get_implementations(FOO)) == 0


class TestTypeDefinitions:

    def test_return_annotation(self, engine):
        assert _ids(engine.get_type_definitions("FUNCTION:pkg/shapes.py::make")) == [
            "CLASS:pkg/shapes.py::Square",
        ]

    def test_type_answers_with_itself(self, engine):
        assert _ids(engine.get_type_definitions("CLASS:pkg/shapes.py::Tiny")) == [
            "CLASS:pkg/shapes.py::Tiny",
        ]

    def test_untyped_function(self, engine):
        assert len(engine.get_type_definitions(FOO)) == 0


class TestFileQueries:

    def test_diagnostics(self, engine):
        diags = engine.get_diagnostics("pkg/broken.py")
        assert len(diags) >= 1
        assert all(d["severity"] == "error" for d in diags)
        assert len(engine.get_diagnostics("pkg/shapes.py")) == 0
        assert len(engine.get_diagnostics("missing.py")) == 0

    def test_document_links(self, engine):
        links = engine.get_document_links("pkg/app.py")
        assert [(lk["text"], lk["target"]) for lk in links] == [(".shapes", "pkg/shapes.py")]

    def test_query_symbol_on_call(self, engine):
        result = engine.query_symbol("pkg/shapes.py", Position(24, 12))
        assert len(result) == 1
        item = result[0]
        assert item["symbol"]["id"] == BAR
        assert item["reference"]["name"] == "foo"
        assert item["definition"]["id"] == FOO

    def test_query_symbol_on_definition_body(self, engine):
        item = engine.query_symbol("pkg/shapes.py", Position(20, 6))[0]
        assert item["symbol"]["id"] == FOO
        assert item["reference"] is None

    def test_query_symbol_unknown_file(self, engine):
        assert len(engine.query_symbol("missing.py", Position(0, 0))) == 0


# ---------------------------------------------------------------------------
# Similarity queries
# ---------------------------------------------------------------------------

def _payload(sym_id):
    return {"symbol_id": sym_id, "path": sym_id.split(":", 1)[1].split("::")[0],
            "kind": "function", "language": "python"}


@pytest.fixture
def vectors():
    store = VectorStore()
    store.upsert(f"chunk:{FOO}", [1.0, 0.0, 0.0], _payload(FOO))
    store.upsert(f"chunk:{BAR}", [0.9, 0.1, 0.0], _payload(BAR))
    store.upsert(f"chunk:{BAZ}", [0.0, 1.0, 0.0], _payload(BAZ))
    return store


class TestFindSimilar:

    def test_by_symbol_id_excludes_itself(self, graph, vectors):
        engine = QueryEngine(graph, store=vectors)
        hits = engine.find_similar(FOO, k=2)
        assert [h["id"] for h in hits] == [f"chunk:{BAR}", f"chunk:{BAZ}"]
        assert hits[0]["symbol"]["id"] == BAR
        assert hits[0]["score"] > hits[1]["score"]

    def test_by_chunk_id(self, graph, vectors):
        engine = QueryEngine(graph, store=vectors)
        assert [h["id"] for h in engine.find_similar(f"chunk:{FOO}", k=1)] == [f"chunk:{BAR}"]

    def test_by_chunk_object(self, graph, vectors):
        chunk = CodeChunk(id=f"chunk:{FOO}", path="pkg/shapes.py", kind="function",
                          name="foo", language="python", text="def foo", line_start=20,
                          line_end=21, symbol_id=FOO)
        engine = QueryEngine(graph, store=vectors)
        assert f"chunk:{FOO}" not in [h["id"] for h in engine.find_similar(chunk)]

    def test_free_text_uses_pipeline(self, graph, vectors):
        pipeline = MagicMock()
        pipeline.embed_query.return_value = [0.0, 1.0, 0.0]
        engine = QueryEngine(graph, store=vectors, pipeline=pipeline)
        hits = engine.find_similar("something about baz", k=1)
        assert [h["id"] for h in hits] == [f"chunk:{BAZ}"]
        pipeline.embed_query.assert_called_once_with("something about baz")

    def test_filters_pass_through(self, graph, vectors):
        engine = QueryEngine(graph, store=vectors)
        hits = engine.find_similar(FOO, filters={"symbol_id": BAZ})
        assert [h["id"] for h in hits] == [f"chunk:{BAZ}"]

    def test_embedding_failure_gives_empty_result(self, graph, vectors):
        pipeline = MagicMock()
        pipeline.embed_query.side_effect = EmbeddingFailure("down")
        engine = QueryEngine(graph, store=vectors, pipeline=pipeline)
        assert len(engine.find_similar("free text")) == 0
        assert len(engine.get_call_graph(BAR)) == 2

    def test_without_store_or_pipeline(self, graph, vectors):
        assert len(QueryEngine(graph).find_similar(FOO)) == 0
        assert len(QueryEngine(graph, store=vectors).find_similar("free text")) == 0

    def test_similar_callers(self, graph, vectors):
        pipeline = MagicMock()
        pipeline.embed_query.return_value = [1.0, 0.0, 0.0]
        engine = QueryEngine(graph, store=vectors, pipeline=pipeline)
        items = engine.find_similar_callers("returns one", k=1)
        assert len(items) == 1
        assert items[0]["match"]["id"] == f"chunk:{FOO}"
        assert [c["id"] for c in items[0]["callers"]] == [MAIN, BAR]


class TestFailedChunks:

    def test_failed_chunk_is_absent_but_structure_remains(self, graph, tmp_path):
        class _Embedder:
            model = "fake"

            def embed(self, text):
                if "baz" in text:
                    raise RuntimeError("refused")
                return [1.0, 0.5] if "foo" in text else [0.5, 1.0]

        store = VectorStore()
        pipeline = EmbeddingPipeline(_Embedder(), Manifest(str(tmp_path / "m.db")), store,
                                     max_retries=1, sleep=lambda _s: None)
        chunks = [
            CodeChunk(id=f"chunk:{sid}", path="pkg/shapes.py", kind="function",
                      name=sid.rsplit("::", 1)[1], language="python",
                      text=f"def {sid.rsplit('::', 1)[1]}", line_start=1, line_end=2,
                      symbol_id=sid)
            for sid in (FOO, BAR, BAZ)
        ]
        stats = pipeline.process_file("pkg/shapes.py", chunks)
        assert stats["failed"] == 1

        engine = QueryEngine(graph, store=store, pipeline=pipeline)
        hits = engine.find_similar("foo", k=10)
        assert f"chunk:{BAZ}" not in [h["id"] for h in hits]
        assert len(hits) == 2
        assert (BAZ, BAR, 1) in _edges(engine.get_call_graph(BAR))
