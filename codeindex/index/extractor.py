"""
Symbol extractor — walks one file's syntax tree and produces its symbol
definitions (with containment), raw references classified by site shape,
import links and diagnostics.

The extractor never looks at other files, so any number of files can be
extracted in parallel.  Malformed regions are reported as diagnostics while
the rest of the tree is still walked (tree-sitter recovers around errors).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterator, Optional

from ..errors import ParseError
from .models import (
    Diagnostic,
    DocumentLink,
    ExtractedFile,
    Location,
    Position,
    Range,
    RefKind,
    Reference,
    Severity,
    Symbol,
    SymbolKind,
    TYPE_KINDS,
    content_hash,
    make_symbol_id,
)
from .parser import PositionMapper, detect_language, parse

logger = logging.getLogger(__name__)

_MAX_SIGNATURE = 200
_CONSTANT_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


# ---------------------------------------------------------------------------
# Language rule tables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LanguageRules:
    """Node-type tables describing where one grammar keeps symbols and refs."""
    definitions: dict[str, SymbolKind] = field(default_factory=dict)
    identifiers: frozenset[str] = frozenset({"identifier"})
    type_identifiers: frozenset[str] = frozenset()
    # call node type -> field holding the callee
    calls: dict[str, str] = field(default_factory=dict)
    # call node type -> field holding the receiver when the callee field
    # names the method directly (Java method_invocation, Ruby call)
    call_receivers: dict[str, str] = field(default_factory=dict)
    # member access node type -> (object field, property field)
    members: dict[str, tuple[str, str]] = field(default_factory=dict)
    # fields / child node types under a definition holding base types
    base_fields: tuple[str, ...] = ()
    base_nodes: frozenset[str] = frozenset()
    return_fields: tuple[str, ...] = ("return_type",)
    params_field: str = "parameters"
    body_field: str = "body"
    # node type -> field holding bound names (local variables)
    bindings: dict[str, str] = field(default_factory=dict)
    # module/class-level declarations that define variables
    variables: frozenset[str] = frozenset()
    imports: frozenset[str] = frozenset()
    # identifiers under these (node type, field) pairs are labels, not reads
    label_fields: frozenset[tuple[str, str]] = frozenset()
    # definition node types that open a function scope
    function_scopes: frozenset[str] = frozenset()


_PYTHON = LanguageRules(
    definitions={
        "function_definition": SymbolKind.FUNCTION,
        "class_definition": SymbolKind.CLASS,
    },
    calls={"call": "function"},
    members={"attribute": ("object", "attribute")},
    base_fields=("superclasses",),
    bindings={
        "assignment": "left",
        "augmented_assignment": "left",
        "for_statement": "left",
        "for_in_clause": "left",
        "named_expression": "name",
        "as_pattern": "alias",
        "lambda": "parameters",
    },
    variables=frozenset({"assignment"}),
    imports=frozenset({"import_statement", "import_from_statement", "future_import_statement"}),
    label_fields=frozenset({("keyword_argument", "name")}),
    function_scopes=frozenset({"function_definition"}),
)

_JS_DEFS = {
    "function_declaration": SymbolKind.FUNCTION,
    "generator_function_declaration": SymbolKind.FUNCTION,
    "class_declaration": SymbolKind.CLASS,
    "method_definition": SymbolKind.METHOD,
}

_JAVASCRIPT = LanguageRules(
    definitions=dict(_JS_DEFS),
    calls={"call_expression": "function", "new_expression": "constructor"},
    members={"member_expression": ("object", "property")},
    base_nodes=frozenset({"class_heritage"}),
    bindings={
        "variable_declarator": "name",
        "for_in_statement": "left",
        "catch_clause": "parameter",
        "arrow_function": "parameters",
    },
    variables=frozenset({"lexical_declaration", "variable_declaration"}),
    imports=frozenset({"import_statement"}),
    function_scopes=frozenset({"function_declaration", "generator_function_declaration",
                               "method_definition"}),
)

_TYPESCRIPT = LanguageRules(
    definitions={
        **_JS_DEFS,
        "abstract_class_declaration": SymbolKind.CLASS,
        "interface_declaration": SymbolKind.INTERFACE,
        "type_alias_declaration": SymbolKind.TYPE,
        "enum_declaration": SymbolKind.ENUM,
    },
    type_identifiers=frozenset({"type_identifier"}),
    calls={"call_expression": "function", "new_expression": "constructor"},
    members={"member_expression": ("object", "property")},
    base_nodes=frozenset({"class_heritage", "extends_type_clause"}),
    bindings=_JAVASCRIPT.bindings,
    variables=_JAVASCRIPT.variables,
    imports=_JAVASCRIPT.imports,
    function_scopes=_JAVASCRIPT.function_scopes,
)

_JAVA = LanguageRules(
    definitions={
        "class_declaration": SymbolKind.CLASS,
        "record_declaration": SymbolKind.CLASS,
        "interface_declaration": SymbolKind.INTERFACE,
        "enum_declaration": SymbolKind.ENUM,
        "method_declaration": SymbolKind.METHOD,
        "constructor_declaration": SymbolKind.METHOD,
    },
    type_identifiers=frozenset({"type_identifier"}),
    calls={"method_invocation": "name", "object_creation_expression": "type"},
    call_receivers={"method_invocation": "object"},
    members={"field_access": ("object", "field")},
    base_fields=("superclass", "interfaces"),
    base_nodes=frozenset({"superclass", "super_interfaces", "extends_interfaces"}),
    return_fields=("type",),
    params_field="parameters",
    bindings={
        "variable_declarator": "name",
        "enhanced_for_statement": "name",
        "catch_formal_parameter": "name",
    },
    variables=frozenset({"field_declaration"}),
    imports=frozenset({"import_declaration"}),
    function_scopes=frozenset({"method_declaration", "constructor_declaration"}),
)

_GO = LanguageRules(
    definitions={
        "function_declaration": SymbolKind.FUNCTION,
        "method_declaration": SymbolKind.METHOD,
        "type_spec": SymbolKind.TYPE,
    },
    type_identifiers=frozenset({"type_identifier"}),
    calls={"call_expression": "function"},
    members={"selector_expression": ("operand", "field")},
    return_fields=("result",),
    bindings={
        "short_var_declaration": "left",
        "var_spec": "name",
        "range_clause": "left",
    },
    variables=frozenset({"var_declaration", "const_declaration"}),
    imports=frozenset({"import_spec"}),
    function_scopes=frozenset({"function_declaration", "method_declaration"}),
)

_RUST = LanguageRules(
    definitions={
        "function_item": SymbolKind.FUNCTION,
        "function_signature_item": SymbolKind.FUNCTION,
        "struct_item": SymbolKind.STRUCT,
        "enum_item": SymbolKind.ENUM,
        "trait_item": SymbolKind.TRAIT,
        "type_item": SymbolKind.TYPE,
    },
    type_identifiers=frozenset({"type_identifier"}),
    calls={"call_expression": "function"},
    members={"field_expression": ("value", "field"), "scoped_identifier": ("path", "name")},
    base_nodes=frozenset({"trait_bounds"}),
    bindings={
        "let_declaration": "pattern",
        "for_expression": "pattern",
        "closure_expression": "parameters",
    },
    variables=frozenset({"const_item", "static_item"}),
    imports=frozenset({"use_declaration"}),
    function_scopes=frozenset({"function_item"}),
)

_C = LanguageRules(
    definitions={
        "function_definition": SymbolKind.FUNCTION,
        "struct_specifier": SymbolKind.STRUCT,
        "enum_specifier": SymbolKind.ENUM,
    },
    type_identifiers=frozenset({"type_identifier"}),
    calls={"call_expression": "function"},
    members={"field_expression": ("argument", "field")},
    return_fields=("type",),
    bindings={"init_declarator": "declarator"},
    imports=frozenset({"preproc_include"}),
    function_scopes=frozenset({"function_definition"}),
)

_CPP = LanguageRules(
    definitions={
        **_C.definitions,
        "class_specifier": SymbolKind.CLASS,
    },
    type_identifiers=_C.type_identifiers,
    calls=_C.calls,
    members=_C.members,
    base_nodes=frozenset({"base_class_clause"}),
    return_fields=_C.return_fields,
    bindings=_C.bindings,
    imports=_C.imports,
    function_scopes=_C.function_scopes,
)

_RUBY = LanguageRules(
    definitions={
        "method": SymbolKind.FUNCTION,
        "singleton_method": SymbolKind.FUNCTION,
        "class": SymbolKind.CLASS,
        "module": SymbolKind.MODULE,
    },
    identifiers=frozenset({"identifier", "constant"}),
    calls={"call": "method"},
    call_receivers={"call": "receiver"},
    base_fields=("superclass",),
    bindings={"assignment": "left"},
    function_scopes=frozenset({"method", "singleton_method"}),
)

_PHP = LanguageRules(
    definitions={
        "function_definition": SymbolKind.FUNCTION,
        "method_declaration": SymbolKind.METHOD,
        "class_declaration": SymbolKind.CLASS,
        "interface_declaration": SymbolKind.INTERFACE,
    },
    identifiers=frozenset({"name"}),
    calls={"function_call_expression": "function", "member_call_expression": "name"},
    call_receivers={"member_call_expression": "object"},
    base_nodes=frozenset({"base_clause", "class_interface_clause"}),
    function_scopes=frozenset({"function_definition", "method_declaration"}),
)

_CSHARP = LanguageRules(
    definitions={
        "class_declaration": SymbolKind.CLASS,
        "interface_declaration": SymbolKind.INTERFACE,
        "struct_declaration": SymbolKind.STRUCT,
        "enum_declaration": SymbolKind.ENUM,
        "method_declaration": SymbolKind.METHOD,
        "constructor_declaration": SymbolKind.METHOD,
    },
    calls={"invocation_expression": "function", "object_creation_expression": "type"},
    members={"member_access_expression": ("expression", "name")},
    base_nodes=frozenset({"base_list"}),
    return_fields=("returns", "type"),
    bindings={"variable_declarator": "name"},
    imports=frozenset({"using_directive"}),
    function_scopes=frozenset({"method_declaration", "constructor_declaration"}),
)

RULES: dict[str, LanguageRules] = {
    "python": _PYTHON,
    "javascript": _JAVASCRIPT,
    "typescript": _TYPESCRIPT,
    "tsx": _TYPESCRIPT,
    "java": _JAVA,
    "go": _GO,
    "rust": _RUST,
    "c": _C,
    "cpp": _CPP,
    "ruby": _RUBY,
    "php": _PHP,
    "c_sharp": _CSHARP,
}

_GENERIC = LanguageRules()

# Wrappers whose identifiers are never plain reads
_OPAQUE_BINDING = frozenset({
    "attribute", "subscript", "member_expression", "field_expression",
    "selector_expression", "call", "call_expression", "index_expression",
})
_FUNCTION_VALUES = frozenset({"arrow_function", "function_expression", "function",
                              "generator_function"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _text(node) -> str:
    """Decode a tree-sitter Node's text as UTF-8."""
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="replace") if node.text else ""


def module_name_for_path(path: str) -> str:
    """``pkg/mod.py`` -> ``pkg.mod``; package ``__init__`` files name the package."""
    without_ext = path.rsplit(".", 1)[0] if "." in path.rsplit("/", 1)[-1] else path
    name = without_ext.replace("\\", "/").strip("/").replace("/", ".")
    for suffix in (".__init__", ".index", ".mod"):
        if name.endswith(suffix) and name != suffix[1:]:
            name = name[: -len(suffix)]
            break
    return name or path


def _whole_file_range(source: bytes) -> Range:
    lines = source.split(b"\n")
    last = lines[-1].decode("utf-8", errors="replace") if lines else ""
    return Range(Position(0, 0), Position(max(len(lines) - 1, 0), len(last)), 0, len(source))


def _extract_docstring(def_node) -> str:
    """
    Try to extract the first docstring from the body of a function/class node.
    Works for Python (expression_statement wrapping a string literal).
    Returns empty string if not found.
    """
    if def_node is None:
        return ""
    body = def_node.child_by_field_name("body")
    if body is None:
        return ""
    for stmt in body.named_children:
        if stmt.type == "expression_statement":
            for sub in stmt.named_children:
                if sub.type in ("string", "concatenated_string"):
                    raw = _text(sub)
                    for q in ('"""', "'''", '"', "'"):
                        if raw.startswith(q) and raw.endswith(q) and len(raw) >= 2 * len(q):
                            return raw[len(q):-len(q)].strip()
                    return raw.strip()
        break  # only the first statement can be a docstring
    return ""


def _make_module_symbol(path: str, source: bytes) -> Symbol:
    qualname = module_name_for_path(path)
    whole = _whole_file_range(source)
    return Symbol(
        id=make_symbol_id(path, qualname, SymbolKind.MODULE),
        name=qualname.rsplit(".", 1)[-1],
        qualname=qualname,
        kind=SymbolKind.MODULE,
        location=Location(path, whole),
        selection=Range(Position(0, 0), Position(0, 0)),
    )


class _Frame:
    """One lexical scope during the walk."""

    __slots__ = ("symbol", "locals", "parent", "is_function")

    def __init__(self, symbol: Symbol, locals_: set[str], parent: Optional["_Frame"],
                 is_function: bool) -> None:
        self.symbol = symbol
        self.locals = locals_
        self.parent = parent
        self.is_function = is_function

    @property
    def prefix(self) -> str:
        if self.symbol.kind is SymbolKind.MODULE:
            return ""
        return self.symbol.qualname + "."

    def is_local(self, name: str) -> bool:
        frame: Optional[_Frame] = self
        while frame is not None:
            if name in frame.locals:
                return True
            frame = frame.parent
        return False

    def in_function(self) -> bool:
        return self.is_function


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class SymbolExtractor:
    """
    Extract symbols, references, links and diagnostics from one parsed file.

    Parameters
    ----------
    path:
        Repository-relative path of the file.
    language:
        Language tag; selects the rule table.
    source:
        Raw UTF-8 bytes the tree was parsed from.
    """

    def __init__(self, path: str, language: str, source: bytes) -> None:
        self.path = path
        self.language = language
        self.source = source
        self.rules = RULES.get(language, _GENERIC)
        self._mapper = PositionMapper(source)
        self._symbols: list[Symbol] = []
        self._references: list[Reference] = []
        self._links: list[DocumentLink] = []
        self._seen_ids: dict[str, int] = {}
        self._variable_names: set[str] = set()
        # (type name, trait name, node) from Rust impl blocks, bound after the walk
        self._pending_impls: list[tuple[str, str, object]] = []

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def extract(self, tree, diagnostics: list[Diagnostic]) -> ExtractedFile:
        module = _make_module_symbol(self.path, self.source)
        self._symbols.append(module)
        self._seen_ids[module.id] = 1
        frame = _Frame(module, set(), None, False)
        for child in tree.root_node.children:
            self._walk(child, frame)
        self._bind_impls()

        return ExtractedFile(
            path=self.path,
            language=self.language,
            content_hash=content_hash(self.source),
            symbols=self._symbols,
            references=self._references,
            links=self._links,
            diagnostics=self._attach_diagnostics(diagnostics),
        )

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    def _walk(self, node, frame: _Frame) -> None:
        t = node.type
        rules = self.rules
        if t in rules.definitions:
            self._definition(node, frame)
        elif t == "impl_item" and self.language == "rust":
            self._rust_impl(node, frame)
        elif t in rules.calls:
            self._call(node, frame)
        elif t in rules.members:
            self._member(node, frame)
        elif t in rules.imports:
            self._import(node, frame)
        elif t in rules.variables and not frame.in_function():
            self._variable(node, frame)
        elif t in rules.identifiers:
            self._read(node, frame)
        elif t in rules.type_identifiers:
            self._add_ref(node, RefKind.TYPE, frame.symbol.id)
        else:
            self._walk_children(node, frame)

    def _walk_children(self, node, frame: _Frame, skip: frozenset[int] = frozenset()) -> None:
        for i, child in enumerate(node.children):
            field_name = node.field_name_for_child(i)
            if field_name is not None and (node.type, field_name) in self.rules.label_fields:
                continue
            if child.id in skip:
                continue
            self._walk(child, frame)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def _name_node(self, node):
        name = node.child_by_field_name("name")
        if name is not None:
            return name
        # C/C++ functions: declarator chain down to the identifier
        decl = node.child_by_field_name("declarator")
        while decl is not None:
            if decl.type in ("identifier", "field_identifier", "qualified_identifier",
                             "destructor_name", "operator_name"):
                return decl
            decl = decl.child_by_field_name("declarator")
        return None

    def _refine_kind(self, node, kind: SymbolKind, frame: _Frame) -> SymbolKind:
        if node.type == "type_spec":
            inner = node.child_by_field_name("type")
            if inner is not None and inner.type == "struct_type":
                return SymbolKind.STRUCT
            if inner is not None and inner.type == "interface_type":
                return SymbolKind.INTERFACE
        if kind is SymbolKind.FUNCTION and frame.symbol.kind in TYPE_KINDS:
            return SymbolKind.METHOD
        return kind

    def _signature(self, node) -> str:
        body = node.child_by_field_name(self.rules.body_field)
        end = body.start_byte if body is not None else node.end_byte
        raw = self.source[node.start_byte:end].decode("utf-8", errors="replace")
        if body is None:
            raw = raw.split("\n", 1)[0]
        sig = " ".join(raw.split()).rstrip(":{ ").strip()
        if len(sig) > _MAX_SIGNATURE:
            sig = sig[:_MAX_SIGNATURE - 3] + "..."
        return sig

    def _add_symbol(self, name: str, qualname: str, kind: SymbolKind, node, name_node,
                    container: Optional[Symbol], signature: str = "",
                    docstring: str = "") -> Symbol:
        base_id = make_symbol_id(self.path, qualname, kind)
        count = self._seen_ids.get(base_id, 0) + 1
        self._seen_ids[base_id] = count
        sym_id = base_id if count == 1 else f"{base_id}#{count}"
        sym = Symbol(
            id=sym_id,
            name=name,
            qualname=qualname,
            kind=kind,
            location=Location(self.path, self._mapper.range(node)),
            selection=self._mapper.range(name_node),
            container_id=container.id if container is not None else None,
            signature=signature,
            docstring=docstring,
        )
        self._symbols.append(sym)
        return sym

    def _definition(self, node, frame: _Frame) -> None:
        kind = self.rules.definitions[node.type]
        name_node = self._name_node(node)
        if name_node is None:
            # Anonymous (e.g. `struct { ... } x;`): nothing to name, keep walking
            self._walk_children(node, frame)
            return
        # Forward declarations such as `struct foo;` carry no body
        if node.type in ("struct_specifier", "enum_specifier", "class_specifier") and \
                node.child_by_field_name("body") is None:
            return

        kind = self._refine_kind(node, kind, frame)
        name = _text(name_node)
        prefix = frame.prefix
        container = frame.symbol
        if node.type == "method_declaration" and self.language == "go":
            receiver = self._go_receiver(node)
            if receiver:
                prefix = f"{receiver}."
                container = self._find_local_type(receiver) or container
        sym = self._add_symbol(
            name, f"{prefix}{name}", kind, node, name_node, container,
            signature=self._signature(node),
            docstring=_extract_docstring(node) if self.language == "python" else "",
        )

        handled: set[int] = {name_node.id}
        for base_leaf, qualifier in self._base_leaves(node):
            self._add_ref(base_leaf, RefKind.INHERIT, sym.id, qualifier)
            handled.add(base_leaf.id)
        for container in self._base_containers(node):
            handled.add(container.id)
        for fld in self.rules.return_fields:
            ret = node.child_by_field_name(fld)
            if ret is not None and kind in (SymbolKind.FUNCTION, SymbolKind.METHOD):
                self._type_refs(ret, sym.id)
                handled.add(ret.id)
                break

        is_function = node.type in self.rules.function_scopes
        locals_ = self._collect_locals(node) if is_function else set()
        child_frame = _Frame(sym, locals_, frame, is_function)
        self._walk_children(node, child_frame, frozenset(handled))

    def _go_receiver(self, node) -> str:
        receiver = node.child_by_field_name("receiver")
        if receiver is None:
            return ""
        for leaf in self._iter_leaves(receiver, frozenset({"type_identifier"})):
            return _text(leaf)
        return ""

    def _rust_impl(self, node, frame: _Frame) -> None:
        type_node = node.child_by_field_name("type")
        trait_node = node.child_by_field_name("trait")
        type_name = ""
        if type_node is not None:
            for leaf in self._iter_leaves(type_node, frozenset({"type_identifier"})):
                type_name = _text(leaf)
                break
        if trait_node is not None and type_name:
            for leaf in self._iter_leaves(trait_node, frozenset({"type_identifier"})):
                self._pending_impls.append((type_name, _text(leaf), leaf))
                break
        body = node.child_by_field_name("body")
        if body is None:
            return
        # Methods of `impl Foo` are qualified as Foo.method
        impl_symbol = Symbol(
            id=frame.symbol.id,
            name=type_name,
            qualname=type_name or frame.symbol.qualname,
            kind=SymbolKind.STRUCT if type_name else frame.symbol.kind,
            location=frame.symbol.location,
            selection=frame.symbol.selection,
        )
        impl_frame = _Frame(impl_symbol, set(), frame, False)
        for child in body.children:
            if child.type in ("function_item", "function_signature_item"):
                self._rust_method(child, impl_frame, frame)
            else:
                self._walk(child, frame)

    def _rust_method(self, node, impl_frame: _Frame, outer: _Frame) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        name = _text(name_node)
        container = self._find_local_type(impl_frame.symbol.name) or outer.symbol
        sym = self._add_symbol(
            name, f"{impl_frame.prefix}{name}", SymbolKind.METHOD, node, name_node,
            container, signature=self._signature(node),
        )
        handled = {name_node.id}
        ret = node.child_by_field_name("return_type")
        if ret is not None:
            self._type_refs(ret, sym.id)
            handled.add(ret.id)
        child_frame = _Frame(sym, self._collect_locals(node), outer, True)
        self._walk_children(node, child_frame, frozenset(handled))

    def _find_local_type(self, name: str) -> Optional[Symbol]:
        for sym in self._symbols:
            if sym.name == name and sym.kind in TYPE_KINDS:
                return sym
        return None

    def _bind_impls(self) -> None:
        for type_name, _trait, leaf in self._pending_impls:
            owner = self._find_local_type(type_name)
            if owner is not None:
                self._add_ref(leaf, RefKind.INHERIT, owner.id)

    # ------------------------------------------------------------------
    # Bases and types
    # ------------------------------------------------------------------

    def _base_containers(self, node) -> Iterator:
        for fld in self.rules.base_fields:
            base = node.child_by_field_name(fld)
            if base is not None:
                yield base
        for child in node.children:
            if child.type in self.rules.base_nodes:
                yield child
            elif child.type == "class_body" or child.type == "body":
                break

    def _base_leaves(self, node) -> Iterator[tuple[object, str]]:
        seen: set[int] = set()
        for container in self._base_containers(node):
            if container.id in seen:
                continue
            seen.add(container.id)
            yield from self._type_leaves(container, skip_arguments=True)

    def _type_leaves(self, node, skip_arguments: bool) -> Iterator[tuple[object, str]]:
        t = node.type
        if t in ("keyword_argument", "comment"):
            return
        if skip_arguments and t in ("type_arguments", "type_parameters"):
            return
        if t in self.rules.identifiers or t in self.rules.type_identifiers:
            yield node, ""
            return
        if t in self.rules.members:
            obj_field, prop_field = self.rules.members[t]
            prop = node.child_by_field_name(prop_field)
            obj = node.child_by_field_name(obj_field)
            if prop is not None:
                yield prop, _text(obj)
            return
        for child in node.named_children:
            yield from self._type_leaves(child, skip_arguments)

    def _type_refs(self, node, source_id: str) -> None:
        for leaf, qualifier in self._type_leaves(node, skip_arguments=False):
            self._add_ref(leaf, RefKind.TYPE, source_id, qualifier)

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def _add_ref(self, node, kind: RefKind, source_id: str, qualifier: str = "",
                 alias: str = "") -> None:
        name = _text(node)
        if not name:
            return
        self._references.append(Reference(
            name=name,
            kind=kind,
            location=Location(self.path, self._mapper.range(node)),
            source_id=source_id,
            qualifier=qualifier,
            alias=alias,
        ))

    def _read(self, node, frame: _Frame) -> None:
        name = _text(node)
        if not name or frame.is_local(name):
            return
        self._add_ref(node, RefKind.READ, frame.symbol.id)

    def _callee(self, node):
        """Return ``(name_node, receiver_node)`` for a call node."""
        rules = self.rules
        callee = node.child_by_field_name(rules.calls[node.type])
        if callee is None:
            return None, None, None
        if node.type in rules.call_receivers:
            return callee, node.child_by_field_name(rules.call_receivers[node.type]), callee
        if callee.type in rules.identifiers or callee.type in rules.type_identifiers:
            return callee, None, callee
        if callee.type in rules.members:
            obj_field, prop_field = rules.members[callee.type]
            return (callee.child_by_field_name(prop_field),
                    callee.child_by_field_name(obj_field), callee)
        if callee.type == "generic_type":
            for leaf in self._iter_leaves(callee, rules.type_identifiers):
                return leaf, None, callee
        return None, None, callee

    def _call(self, node, frame: _Frame) -> None:
        name_node, receiver, callee = self._callee(node)
        if name_node is None:
            self._walk_children(node, frame)
            return
        name = _text(name_node)
        # A call through a local (e.g. a parameter holding a callback) has no
        # definition to resolve to
        if receiver is not None or not frame.is_local(name):
            self._add_ref(name_node, RefKind.CALL, frame.symbol.id, _text(receiver))
        if receiver is not None:
            self._walk(receiver, frame)
        skip = {callee.id}
        if receiver is not None:
            skip.add(receiver.id)
        self._walk_children(node, frame, frozenset(skip))

    def _member(self, node, frame: _Frame) -> None:
        obj_field, _prop = self.rules.members[node.type]
        obj = node.child_by_field_name(obj_field)
        if obj is not None:
            self._walk(obj, frame)

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def _link(self, node, text: str) -> None:
        text = text.strip().strip("\"'<>`")
        if not text:
            return
        self._links.append(DocumentLink(
            text=text,
            location=Location(self.path, self._mapper.range(node)),
        ))

    def _import(self, node, frame: _Frame) -> None:
        t = node.type
        if t == "future_import_statement":
            return
        if self.language == "python":
            if t == "import_from_statement":
                module = node.child_by_field_name("module_name")
                if module is not None:
                    self._link(module, _text(module))
                for name in node.children_by_field_name("name"):
                    aliased = name.type == "aliased_import"
                    target = name.child_by_field_name("name") if aliased else name
                    alias = _text(name.child_by_field_name("alias")) if aliased else ""
                    leaf = target.named_children[-1] if target is not None and \
                        target.type == "dotted_name" and target.named_children else target
                    if leaf is not None:
                        self._add_ref(leaf, RefKind.IMPORT, frame.symbol.id, _text(module), alias)
            else:
                for name in node.children_by_field_name("name"):
                    target = name.child_by_field_name("name") if name.type == "aliased_import" else name
                    if target is not None:
                        self._link(target, _text(target))
            return
        if t == "import_statement":
            source = node.child_by_field_name("source")
            if source is not None:
                self._link(source, _text(source))
                for spec in self._iter_leaves(node, frozenset({"import_specifier"})):
                    name = spec.child_by_field_name("name")
                    if name is not None:
                        self._add_ref(name, RefKind.IMPORT, frame.symbol.id, _text(source),
                                      _text(spec.child_by_field_name("alias")))
            return
        target = (node.child_by_field_name("path")
                  or node.child_by_field_name("argument")
                  or (node.named_children[0] if node.named_children else None))
        if target is not None:
            self._link(target, _text(target))

    # ------------------------------------------------------------------
    # Module / class level variables
    # ------------------------------------------------------------------

    def _variable_kind(self, name: str, node) -> SymbolKind:
        if node.type in ("const_declaration", "const_item") or _CONSTANT_RE.match(name):
            return SymbolKind.CONSTANT
        return SymbolKind.VARIABLE

    def _declare_variable(self, name_node, decl_node, frame: _Frame,
                          kind: Optional[SymbolKind] = None) -> Optional[Symbol]:
        name = _text(name_node)
        if not name:
            return None
        qualname = f"{frame.prefix}{name}"
        if qualname in self._variable_names:
            return None
        self._variable_names.add(qualname)
        return self._add_symbol(
            name, qualname, kind or self._variable_kind(name, decl_node),
            decl_node, name_node, frame.symbol,
            signature=" ".join(_text(decl_node).split("\n", 1)[0].split())[:_MAX_SIGNATURE],
        )

    def _variable(self, node, frame: _Frame) -> None:
        t = node.type
        if t == "assignment":  # python
            left = node.child_by_field_name("left")
            handled: set[int] = set()
            first: Optional[Symbol] = None
            if left is not None and left.type not in _OPAQUE_BINDING:
                for ident in self._binding_idents(left):
                    sym = self._declare_variable(ident, node, frame)
                    first = first or sym
                handled.add(left.id)
            type_node = node.child_by_field_name("type")
            if type_node is not None:
                self._type_refs(type_node, first.id if first else frame.symbol.id)
                handled.add(type_node.id)
            self._walk_children(node, frame, frozenset(handled))
            return
        if t in ("lexical_declaration", "variable_declaration"):  # javascript
            for decl in node.named_children:
                if decl.type != "variable_declarator":
                    continue
                self._js_declarator(decl, node, frame)
            return
        if t == "field_declaration":  # java
            type_node = node.child_by_field_name("type")
            for decl in node.children_by_field_name("declarator"):
                name = decl.child_by_field_name("name")
                sym = self._declare_variable(name, node, frame) if name is not None else None
                if type_node is not None and sym is not None:
                    self._type_refs(type_node, sym.id)
                value = decl.child_by_field_name("value")
                if value is not None:
                    self._walk(value, frame)
            return
        if t in ("var_declaration", "const_declaration"):  # go
            for spec in node.named_children:
                for name in spec.children_by_field_name("name"):
                    self._declare_variable(name, node, frame)
                value = spec.child_by_field_name("value")
                if value is not None:
                    self._walk(value, frame)
            return
        if t in ("const_item", "static_item"):  # rust
            name = node.child_by_field_name("name")
            if name is not None:
                self._declare_variable(name, node, frame, SymbolKind.CONSTANT)
            value = node.child_by_field_name("value")
            if value is not None:
                self._walk(value, frame)
            return
        self._walk_children(node, frame)

    def _js_declarator(self, decl, decl_stmt, frame: _Frame) -> None:
        name = decl.child_by_field_name("name")
        value = decl.child_by_field_name("value")
        if name is None or name.type not in self.rules.identifiers:
            if value is not None:
                self._walk(value, frame)
            return
        if value is not None and value.type in _FUNCTION_VALUES:
            kind = SymbolKind.METHOD if frame.symbol.kind in TYPE_KINDS else SymbolKind.FUNCTION
            body = value.child_by_field_name("body")
            end = body.start_byte if body is not None else value.end_byte
            header = self.source[decl.start_byte:end].decode("utf-8", errors="replace")
            sym = self._add_symbol(
                _text(name), f"{frame.prefix}{_text(name)}", kind, decl, name, frame.symbol,
                signature=" ".join(header.split()).rstrip("{ ").removesuffix("=>").strip(),
            )
            ret = value.child_by_field_name("return_type")
            if ret is not None:
                self._type_refs(ret, sym.id)
            child_frame = _Frame(sym, self._collect_locals(value), frame, True)
            self._walk_children(value, child_frame,
                                frozenset({ret.id}) if ret is not None else frozenset())
            return
        self._declare_variable(name, decl_stmt, frame)
        type_node = decl.child_by_field_name("type")
        if type_node is not None:
            self._type_refs(type_node, frame.symbol.id)
        if value is not None:
            self._walk(value, frame)

    # ------------------------------------------------------------------
    # Local bindings
    # ------------------------------------------------------------------

    def _binding_idents(self, node) -> Iterator:
        if node.type in self.rules.identifiers or node.type in (
                "shorthand_property_identifier_pattern", "shorthand_property_identifier"):
            yield node
            return
        if node.type in _OPAQUE_BINDING or node.type in ("type", "type_annotation"):
            return
        for child in node.named_children:
            yield from self._binding_idents(child)

    def _param_idents(self, params) -> Iterator:
        for child in params.named_children:
            if child.type in self.rules.identifiers:
                yield child
                continue
            if child.type == "self_parameter":
                continue
            for fld in ("name", "pattern", "left"):
                named = child.children_by_field_name(fld)
                if named:
                    for n in named:
                        yield from self._binding_idents(n)
                    break
            else:
                first = self._first_ident(child)
                if first is not None:
                    yield first

    def _first_ident(self, node):
        for child in node.named_children:
            if child.type in ("type", "type_annotation") or child.type in self.rules.type_identifiers:
                continue
            if child.type in self.rules.identifiers:
                return child
            found = self._first_ident(child)
            if found is not None:
                return found
        return None

    def _parameter_lists(self, fn_node) -> Iterator:
        params = fn_node.child_by_field_name(self.rules.params_field)
        if params is not None:
            yield params
        # Go method receivers bind a name too
        receiver = fn_node.child_by_field_name("receiver")
        if receiver is not None:
            yield receiver
        # C/C++: parameters hang off the function_declarator
        decl = fn_node.child_by_field_name("declarator")
        while params is None and decl is not None:
            nested = decl.child_by_field_name(self.rules.params_field)
            if nested is not None:
                yield nested
                break
            decl = decl.child_by_field_name("declarator")

    def _collect_locals(self, fn_node) -> set[str]:
        """Names bound inside *fn_node*, not descending into nested definitions."""
        names: set[str] = set()
        for params in self._parameter_lists(fn_node):
            names.update(_text(n) for n in self._param_idents(params))
            if any(c.type == "self_parameter" for c in params.named_children):
                names.add("self")
        declared_global: set[str] = set()
        stack = list(fn_node.named_children)
        while stack:
            node = stack.pop()
            if node.type in self.rules.definitions or node.type == "class_body":
                continue
            if node.type in ("global_statement", "nonlocal_statement"):
                declared_global.update(_text(c) for c in node.named_children)
                continue
            fld = self.rules.bindings.get(node.type)
            if fld is not None:
                for target in node.children_by_field_name(fld):
                    if fld == "parameters":
                        names.update(_text(n) for n in self._param_idents(target))
                    else:
                        names.update(_text(n) for n in self._binding_idents(target))
            stack.extend(node.named_children)
        return names - declared_global

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _attach_diagnostics(self, diagnostics: list[Diagnostic]) -> list[Diagnostic]:
        """Bind each diagnostic to the innermost symbol enclosing it."""
        attached: list[Diagnostic] = []
        for diag in diagnostics:
            pos = diag.location.range.start
            best: Optional[Symbol] = None
            for sym in self._symbols:
                if not sym.location.range.contains(pos):
                    continue
                if best is None or sym.location.range.span() < best.location.range.span():
                    best = sym
            attached.append(Diagnostic(
                severity=diag.severity,
                message=diag.message,
                location=Location(self.path, diag.location.range),
                symbol_id=best.id if best is not None else None,
                source=diag.source,
            ))
        return attached

    # ------------------------------------------------------------------
    # Tree utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _iter_leaves(node, types: frozenset[str]) -> Iterator:
        stack = [node]
        while stack:
            current = stack.pop()
            if current.type in types:
                yield current
                continue
            stack.extend(reversed(current.named_children))


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def extract_tree(path: str, language: str, source: bytes, tree,
                 diagnostics: list[Diagnostic]) -> ExtractedFile:
    """Run the extractor over an already-parsed tree."""
    return SymbolExtractor(path, language, source).extract(tree, diagnostics)


def extract_file(path: str, text: str | bytes, language: Optional[str] = None) -> ExtractedFile:
    """
    Parse and extract one file.

    Never raises for bad input: a missing grammar or a parser failure yields
    a result holding only the module symbol and a warning diagnostic.

    Parameters
    ----------
    path:
        Repository-relative path.
    text:
        File content.
    language:
        Language tag; detected from the extension when omitted.
    """
    source = text.encode("utf-8") if isinstance(text, str) else text
    language = language or detect_language(path) or "unknown"
    try:
        tree, diagnostics = parse(source, language, path)
    except ParseError as exc:
        logger.warning("Parse error in %s: %s", path, exc.message)
        module = _make_module_symbol(path, source)
        return ExtractedFile(
            path=path,
            language=language,
            content_hash=content_hash(source),
            symbols=[module],
            diagnostics=[Diagnostic(
                severity=Severity.WARNING,
                message=exc.message,
                location=Location(path, Range(Position(0, 0), Position(0, 0))),
                symbol_id=module.id,
            )],
        )
    return extract_tree(path, language, source, tree, diagnostics)
