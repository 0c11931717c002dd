"""
Unit tests for codeindex.index.extractor

Runs the real tree-sitter grammars (skipped when a grammar package is not
installed) and checks symbols, references, links and diagnostics.
"""

from __future__ import annotations

import pytest

from codeindex.index.extractor import extract_file, module_name_for_path
from codeindex.index.models import Position, RefKind, Severity, SymbolKind


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

PY_SOURCE = '''"""Module doc."""
import os
from .util import helper

MAX_SIZE = 10
counter = 0


class Base:
    pass


class Foo(Base):
    """A foo."""

    limit = 3

    def run(self, x: int) -> Base:
        y = x + 1
        self.helper()
        return helper(y)

    def helper(self):
        return os.path.join("a", "b")


def main():
    foo = Foo()
    foo.run(1)
'''


def _by_id(extracted):
    return {s.id: s for s in extracted.symbols}


def _refs(extracted, kind=None, source_id=None):
    return [
        r for r in extracted.references
        if (kind is None or r.kind is kind) and (source_id is None or r.source_id == source_id)
    ]


# ---------------------------------------------------------------------------
# Module names
# ---------------------------------------------------------------------------

class TestModuleName:

    @pytest.mark.parametrize("path,expected", [
        ("pkg/mod.py", "pkg.mod"),
        ("pkg/__init__.py", "pkg"),
        ("main.py", "main"),
        ("web/src/index.ts", "web.src"),
        ("src/lib/mod.rs", "src.lib"),
    ])
    def test_dotted_names(self, path, expected):
        assert module_name_for_path(path) == expected


# ---------------------------------------------------------------------------
# Python
# ---------------------------------------------------------------------------

class TestPythonSymbols:

    @pytest.fixture(autouse=True)
    def _grammar(self):
        pytest.importorskip("tree_sitter_python")

    def test_symbol_ids_and_kinds(self):
        ex = extract_file("pkg/mod.py", PY_SOURCE)
        syms = _by_id(ex)
        expected = {
            "MODULE:pkg/mod.py::pkg.mod": SymbolKind.MODULE,
            "CONSTANT:pkg/mod.py::MAX_SIZE": SymbolKind.CONSTANT,
            "VARIABLE:pkg/mod.py::counter": SymbolKind.VARIABLE,
            "CLASS:pkg/mod.py::Base": SymbolKind.CLASS,
            "CLASS:pkg/mod.py::Foo": SymbolKind.CLASS,
            "VARIABLE:pkg/mod.py::Foo.limit": SymbolKind.VARIABLE,
            "METHOD:pkg/mod.py::Foo.run": SymbolKind.METHOD,
            "METHOD:pkg/mod.py::Foo.helper": SymbolKind.METHOD,
            "FUNCTION:pkg/mod.py::main": SymbolKind.FUNCTION,
        }
        assert set(syms) == set(expected)
        for sym_id, kind in expected.items():
            assert syms[sym_id].kind is kind

    def test_function_locals_are_not_symbols(self):
        ex = extract_file("pkg/mod.py", PY_SOURCE)
        assert not any(s.name in ("foo", "y") for s in ex.symbols)

    def test_containment(self):
        ex = extract_file("pkg/mod.py", PY_SOURCE)
        syms = _by_id(ex)
        assert syms["METHOD:pkg/mod.py::Foo.run"].container_id == "CLASS:pkg/mod.py::Foo"
        assert syms["CLASS:pkg/mod.py::Foo"].container_id == "MODULE:pkg/mod.py::pkg.mod"
        assert syms["MODULE:pkg/mod.py::pkg.mod"].container_id is None

    def test_signature_and_docstring(self):
        ex = extract_file("pkg/mod.py", PY_SOURCE)
        syms = _by_id(ex)
        assert syms["METHOD:pkg/mod.py::Foo.run"].signature == "def run(self, x: int) -> Base"
        assert syms["CLASS:pkg/mod.py::Foo"].signature == "class Foo(Base)"
        assert "A foo." in syms["CLASS:pkg/mod.py::Foo"].docstring

    def test_selection_covers_name_token(self):
        ex = extract_file("a.py", "def foo():\n    return 1\n")
        foo = _by_id(ex)["FUNCTION:a.py::foo"]
        assert foo.selection.start == Position(0, 4)
        assert foo.selection.end == Position(0, 7)
        assert foo.location.range.start == Position(0, 0)

    def test_duplicate_qualnames_get_suffix(self):
        ex = extract_file("a.py", "def f():\n    pass\n\ndef f():\n    pass\n")
        ids = [s.id for s in ex.symbols if s.name == "f"]
        assert ids == ["FUNCTION:a.py::f", "FUNCTION:a.py::f#2"]

    def test_nested_function_qualname(self):
        src = "def outer():\n    def inner():\n        pass\n    inner()\n"
        ex = extract_file("a.py", src)
        syms = _by_id(ex)
        inner = syms["FUNCTION:a.py::outer.inner"]
        assert inner.container_id == "FUNCTION:a.py::outer"
        calls = _refs(ex, RefKind.CALL, "FUNCTION:a.py::outer")
        assert [r.name for r in calls] == ["inner"]


class TestPythonReferences:

    @pytest.fixture(autouse=True)
    def _grammar(self):
        pytest.importorskip("tree_sitter_python")

    def test_call_refs_and_qualifiers(self):
        ex = extract_file("pkg/mod.py", PY_SOURCE)
        run_calls = {(r.name, r.qualifier) for r in
                     _refs(ex, RefKind.CALL, "METHOD:pkg/mod.py::Foo.run")}
        assert run_calls == {("helper", "self"), ("helper", "")}
        main_calls = {(r.name, r.qualifier) for r in
                      _refs(ex, RefKind.CALL, "FUNCTION:pkg/mod.py::main")}
        assert main_calls == {("Foo", ""), ("run", "foo")}

    def test_reads_of_locals_are_dropped(self):
        ex = extract_file("pkg/mod.py", PY_SOURCE)
        reads = {r.name for r in _refs(ex, RefKind.READ)}
        assert not reads & {"x", "y", "foo", "self"}
        assert "os" in reads

    def test_inherit_and_type_refs(self):
        ex = extract_file("pkg/mod.py", PY_SOURCE)
        inherit = _refs(ex, RefKind.INHERIT)
        assert [(r.name, r.source_id) for r in inherit] == [("Base", "CLASS:pkg/mod.py::Foo")]
        types = _refs(ex, RefKind.TYPE, "METHOD:pkg/mod.py::Foo.run")
        assert [r.name for r in types] == ["Base"]

    def test_imports_produce_links_and_import_refs(self):
        ex = extract_file("pkg/mod.py", PY_SOURCE)
        assert sorted(link.text for link in ex.links) == [".util", "os"]
        imports = _refs(ex, RefKind.IMPORT)
        assert [(r.name, r.qualifier) for r in imports] == [("helper", ".util")]

    def test_aliased_import_keeps_local_name(self):
        src = "from .util import helper as h, other\n\n\ndef run():\n    return h()\n"
        ex = extract_file("pkg/main.py", src)
        imports = _refs(ex, RefKind.IMPORT)
        assert [(r.name, r.alias) for r in imports] == [("helper", "h"), ("other", "")]
        calls = _refs(ex, RefKind.CALL, "FUNCTION:pkg/main.py::run")
        assert [r.name for r in calls] == ["h"]

    def test_keyword_argument_names_are_not_reads(self):
        ex = extract_file("a.py", "def f():\n    g(timeout=3)\n")
        assert "timeout" not in {r.name for r in ex.references}

    def test_global_names_are_reads(self):
        src = "count = 0\n\ndef bump():\n    global count\n    count = count + 1\n"
        ex = extract_file("a.py", src)
        reads = _refs(ex, RefKind.READ, "FUNCTION:a.py::bump")
        assert "count" in {r.name for r in reads}


class TestPythonFailSoft:

    @pytest.fixture(autouse=True)
    def _grammar(self):
        pytest.importorskip("tree_sitter_python")

    def test_valid_regions_survive_syntax_errors(self):
        src = "def good():\n    return 1\n\ndef bad(:\n    pass\n"
        ex = extract_file("a.py", src)
        assert "FUNCTION:a.py::good" in _by_id(ex)
        assert ex.diagnostics
        assert all(d.severity is Severity.ERROR for d in ex.diagnostics)

    def test_extraction_is_idempotent(self):
        first = extract_file("pkg/mod.py", PY_SOURCE)
        second = extract_file("pkg/mod.py", PY_SOURCE)
        assert first == second


class TestUnsupported:

    def test_unknown_language_yields_module_and_warning(self):
        ex = extract_file("notes.xyz", "anything at all")
        assert [s.kind for s in ex.symbols] == [SymbolKind.MODULE]
        assert len(ex.diagnostics) == 1
        assert ex.diagnostics[0].severity is Severity.WARNING
        assert ex.references == []


# ---------------------------------------------------------------------------
# JavaScript
# ---------------------------------------------------------------------------

JS_SOURCE = """import { helper } from './util';

export function main(a) {
  return helper(a);
}

const add = (x, y) => x + y;

class Foo extends Base {
  run() {
    this.go();
  }
}
"""


class TestJavaScript:

    @pytest.fixture(autouse=True)
    def _grammar(self):
        pytest.importorskip("tree_sitter_javascript")

    def test_symbols(self):
        ex = extract_file("web/app.js", JS_SOURCE)
        ids = set(_by_id(ex))
        assert {
            "FUNCTION:web/app.js::main",
            "FUNCTION:web/app.js::add",
            "CLASS:web/app.js::Foo",
            "METHOD:web/app.js::Foo.run",
        } <= ids

    def test_refs(self):
        ex = extract_file("web/app.js", JS_SOURCE)
        calls = {(r.name, r.qualifier, r.source_id) for r in _refs(ex, RefKind.CALL)}
        assert ("helper", "", "FUNCTION:web/app.js::main") in calls
        assert ("go", "this", "METHOD:web/app.js::Foo.run") in calls
        inherit = _refs(ex, RefKind.INHERIT)
        assert [r.name for r in inherit] == ["Base"]
        assert [link.text for link in ex.links] == ["./util"]
        assert [r.name for r in _refs(ex, RefKind.IMPORT)] == ["helper"]

    def test_aliased_import_specifier(self):
        ex = extract_file("web/b.js", "import { helper as h } from './util';\nh();\n")
        assert [(r.name, r.alias) for r in _refs(ex, RefKind.IMPORT)] == [("helper", "h")]

    def test_parameters_are_locals(self):
        ex = extract_file("web/app.js", JS_SOURCE)
        reads = {r.name for r in _refs(ex, RefKind.READ)}
        assert not reads & {"a", "x", "y"}
