"""
Code graph for the index.

The graph is kept as flat tables keyed by string ids (symbols, per-file
tables, name index, edge adjacency).  Writers serialise on one lock and
mutate private working tables; readers call :meth:`GraphStore.snapshot`
and receive an immutable :class:`GraphSnapshot` that is published once per
burst of commits (copy on publish).  A NetworkX view of each snapshot is
built lazily for traversals (call-graph depth walks, transitive
implementations).
"""

from __future__ import annotations

import logging
import os
import pickle
import posixpath
import threading
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

import networkx as nx

from ..config import RESOLUTION_RULES
from ..errors import ResolutionAmbiguity, StoreCorruption
from .models import (
    CALLABLE_KINDS,
    TYPE_KINDS,
    Diagnostic,
    DocumentLink,
    Edge,
    EdgeType,
    ExtractedFile,
    IndexedFile,
    Position,
    RefKind,
    Reference,
    Symbol,
    SymbolKind,
)

logger = logging.getLogger(__name__)

_FORMAT = "codeindex-graph"
_FORMAT_VERSION = 2

_SELF_NAMES = frozenset({"self", "this", "cls", "super()", "base"})
_JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")

# Which symbol kinds each reference shape may bind to
_COMPATIBLE: dict[RefKind, frozenset[SymbolKind]] = {
    RefKind.CALL: CALLABLE_KINDS,
    RefKind.INHERIT: TYPE_KINDS,
    RefKind.TYPE: TYPE_KINDS,
    RefKind.READ: frozenset(SymbolKind) - {SymbolKind.MODULE},
    RefKind.IMPORT: frozenset(SymbolKind) - {SymbolKind.MODULE},
}

# Languages whose files may bind to each other's symbols
_LANGUAGE_FAMILY = {
    "typescript": "javascript",
    "tsx": "javascript",
    "cpp": "c",
}


def _family(language: Optional[str]) -> Optional[str]:
    return _LANGUAGE_FAMILY.get(language, language) if language else language


_EDGE_FOR_REF = {
    RefKind.CALL: EdgeType.CALLS,
    RefKind.INHERIT: EdgeType.IMPLEMENTS,
    RefKind.TYPE: EdgeType.TYPE_DEFINITION,
}


# ---------------------------------------------------------------------------
# Per-file table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileTable:
    """Everything the graph holds for one file; replaced wholesale on commit."""
    info: IndexedFile
    language: str
    symbols: tuple[Symbol, ...]
    references: tuple[Reference, ...]
    diagnostics: tuple[Diagnostic, ...] = ()
    links: tuple[DocumentLink, ...] = ()
    edges: tuple[Edge, ...] = ()

    @property
    def path(self) -> str:
        return self.info.path

    @property
    def module_id(self) -> Optional[str]:
        for sym in self.symbols:
            if sym.kind is SymbolKind.MODULE:
                return sym.id
        return None

    @property
    def ref_names(self) -> frozenset[str]:
        return frozenset(r.name for r in self.references)


def module_package(module_qualname: str, path: str) -> str:
    """Package that relative imports in *path* are resolved against."""
    base = posixpath.basename(path)
    if base.startswith("__init__."):
        return module_qualname
    return module_qualname.rpartition(".")[0]


def absolute_module(text: str, path: str, module_qualname: str) -> str:
    """Turn a Python relative import (``..pkg.mod``) into a dotted name."""
    if not text.startswith("."):
        return text
    dots = len(text) - len(text.lstrip("."))
    rest = text[dots:]
    package = module_package(module_qualname, path)
    parts = package.split(".") if package else []
    if dots > 1:
        parts = parts[: max(len(parts) - (dots - 1), 0)]
    if rest:
        parts.append(rest)
    return ".".join(parts)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class GraphSnapshot:
    """
    Immutable, consistent view of the whole graph.

    All tables are plain dicts whose values are tuples or frozen records;
    nothing here is mutated after publication.
    """

    def __init__(
        self,
        version: int,
        files: dict[str, FileTable],
        symbols: dict[str, Symbol],
        out_edges: dict[str, tuple[Edge, ...]],
        in_edges: dict[str, tuple[Edge, ...]],
        refs_to: dict[str, tuple[Reference, ...]],
        pending_resolution: frozenset[str] = frozenset(),
    ) -> None:
        self.version = version
        self.files = files
        self.symbols = symbols
        self.out_edges = out_edges
        self.in_edges = in_edges
        self.refs_to = refs_to
        self.pending_resolution = pending_resolution
        self._digraph: Optional[nx.DiGraph] = None
        self._modules: Optional[dict[str, str]] = None

    @classmethod
    def empty(cls) -> "GraphSnapshot":
        return cls(0, {}, {}, {}, {}, {})

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def file(self, path: str) -> Optional[FileTable]:
        return self.files.get(path)

    def symbol(self, symbol_id: str) -> Optional[Symbol]:
        return self.symbols.get(symbol_id)

    def symbols_in(self, path: str) -> tuple[Symbol, ...]:
        table = self.files.get(path)
        return table.symbols if table is not None else ()

    def children(self, symbol_id: str) -> list[Symbol]:
        return [
            self.symbols[e.target]
            for e in self.out_edges.get(symbol_id, ())
            if e.type is EdgeType.CONTAINS and e.target in self.symbols
        ]

    def edges_from(self, symbol_id: str, edge_type: Optional[EdgeType] = None) -> list[Edge]:
        return [e for e in self.out_edges.get(symbol_id, ())
                if edge_type is None or e.type is edge_type]

    def edges_to(self, symbol_id: str, edge_type: Optional[EdgeType] = None) -> list[Edge]:
        return [e for e in self.in_edges.get(symbol_id, ())
                if edge_type is None or e.type is edge_type]

    def references_to(self, symbol_id: str) -> tuple[Reference, ...]:
        return self.refs_to.get(symbol_id, ())

    def symbol_at(self, path: str, position: Position) -> Optional[Symbol]:
        """Innermost symbol whose name token, else whose body, covers *position*."""
        syms = self.symbols_in(path)
        for sym in syms:
            if sym.kind is not SymbolKind.MODULE and sym.selection.contains(position):
                return sym
        best: Optional[Symbol] = None
        for sym in syms:
            if not sym.location.range.contains(position):
                continue
            if best is None or sym.location.range.span() <= best.location.range.span():
                best = sym
        return best

    def reference_at(self, path: str, position: Position) -> Optional[Reference]:
        table = self.files.get(path)
        if table is None:
            return None
        for ref in table.references:
            if ref.location.range.contains(position):
                return ref
        return None

    def stats(self) -> dict:
        by_edge: dict[str, int] = {}
        for edges in self.out_edges.values():
            for e in edges:
                by_edge[e.type.value] = by_edge.get(e.type.value, 0) + 1
        return {
            "files": len(self.files),
            "symbols": len(self.symbols),
            "edge_count": sum(by_edge.values()),
            "by_edge_type": by_edge,
            "version": self.version,
        }

    # ------------------------------------------------------------------
    # NetworkX view
    # ------------------------------------------------------------------

    def digraph(self) -> nx.DiGraph:
        """Directed graph of all symbols and edges (built once per snapshot)."""
        if self._digraph is None:
            g = nx.DiGraph()
            for sym_id, sym in self.symbols.items():
                g.add_node(sym_id, name=sym.name, kind=sym.kind.value, path=sym.path)
            for edges in self.out_edges.values():
                for e in edges:
                    if g.has_edge(e.source, e.target):
                        g[e.source][e.target]["types"].add(e.type)
                    else:
                        g.add_edge(e.source, e.target, types={e.type})
            self._digraph = g
        return self._digraph

    def typed_view(self, edge_type: EdgeType) -> nx.DiGraph:
        g = self.digraph()
        return nx.subgraph_view(g, filter_edge=lambda u, v: edge_type in g[u][v]["types"])

    # ------------------------------------------------------------------
    # Document links
    # ------------------------------------------------------------------

    def module_map(self) -> dict[str, str]:
        """Dotted module name -> path for every indexed file."""
        if self._modules is None:
            modules: dict[str, str] = {}
            for path in sorted(self.files):
                mod_id = self.files[path].module_id
                if mod_id is not None:
                    modules.setdefault(self.symbols[mod_id].qualname, path)
            self._modules = modules
        return self._modules

    def module_name(self, path: str) -> str:
        table = self.files.get(path)
        mod_id = table.module_id if table is not None else None
        return self.symbols[mod_id].qualname if mod_id in self.symbols else ""

    def resolve_link_target(self, text: str, from_path: str) -> Optional[str]:
        """Map an import text to an indexed file path, or None when external."""
        table = self.files.get(from_path)
        language = table.language if table is not None else ""
        modules = self.module_map()
        if language in ("javascript", "typescript", "tsx") or text.startswith("./") \
                or text.startswith("../"):
            if not text.startswith("."):
                return None
            base = posixpath.normpath(posixpath.join(posixpath.dirname(from_path), text))
            candidates = [base] + [base + ext for ext in _JS_EXTENSIONS] + \
                [f"{base}/index{ext}" for ext in _JS_EXTENSIONS]
            for cand in candidates:
                if cand in self.files:
                    return cand
            return None
        if language == "python":
            dotted = absolute_module(text, from_path, self.module_name(from_path))
            return modules.get(dotted)
        if language in ("c", "cpp"):
            local = posixpath.normpath(posixpath.join(posixpath.dirname(from_path), text))
            if local in self.files:
                return local
            for path in sorted(self.files):
                if path == text or path.endswith("/" + text):
                    return path
            return None
        dotted = text.replace("::", ".").replace("/", ".")
        for prefix in ("crate.", "self.", "super."):
            if dotted.startswith(prefix):
                dotted = dotted[len(prefix):]
        if dotted in modules:
            return modules[dotted]
        # Java/Go/Rust imports name a suffix of the file's module path, or a
        # member inside it
        parts = dotted.split(".")
        for cut in range(len(parts), 0, -1):
            suffix = ".".join(parts[:cut])
            for mod, path in modules.items():
                if mod == suffix or mod.endswith("." + suffix):
                    return path
        return None

    def document_links(self, path: str) -> list[DocumentLink]:
        table = self.files.get(path)
        if table is None:
            return []
        return [replace(link, target=self.resolve_link_target(link.text, path))
                for link in table.links]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@dataclass
class _Working:
    """Mutable tables owned by the writer (guarded by GraphStore._lock)."""
    files: dict[str, FileTable] = field(default_factory=dict)
    symbols: dict[str, Symbol] = field(default_factory=dict)
    by_name: dict[str, tuple[str, ...]] = field(default_factory=dict)
    out_edges: dict[str, tuple[Edge, ...]] = field(default_factory=dict)
    in_edges: dict[str, tuple[Edge, ...]] = field(default_factory=dict)
    refs_to: dict[str, tuple[Reference, ...]] = field(default_factory=dict)
    # name -> files holding a reference with that name
    referrers: dict[str, set[str]] = field(default_factory=dict)


def _tuple_add(table: dict, key: str, item) -> None:
    table[key] = table.get(key, ()) + (item,)


def _tuple_remove(table: dict, key: str, item) -> None:
    current = table.get(key, ())
    remaining = tuple(x for x in current if x != item)
    if remaining:
        table[key] = remaining
    else:
        table.pop(key, None)


class GraphStore:
    """
    Snapshot-and-swap graph store.

    Parameters
    ----------
    resolution_order:
        Tie-break rules applied, in order, when a reference name matches
        several compatible definitions.  Any of ``same_file``,
        ``same_directory``, ``enclosing_scope`` and ``first_indexed``;
        ``first_indexed`` (path, then position) always closes the order.
    """

    def __init__(self, resolution_order: Optional[Iterable[str]] = None) -> None:
        order = list(resolution_order or RESOLUTION_RULES)
        unknown = [r for r in order if r not in RESOLUTION_RULES]
        if unknown:
            raise ValueError(f"Unknown resolution rule(s): {unknown}")
        self.resolution_order = tuple(order)
        self._lock = threading.RLock()
        self._w = _Working()
        self._pending: set[str] = set()
        self._version = 0
        self._published = GraphSnapshot.empty()
        self._dirty = False

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def has_pending_resolution(self) -> bool:
        return bool(self._pending)

    def snapshot(self, resolve: bool = True) -> GraphSnapshot:
        """
        Return the current immutable snapshot.

        Parameters
        ----------
        resolve:
            When cross-file re-resolution is queued, perform it first so the
            snapshot reflects every committed file.
        """
        if resolve and self._pending:
            self.resolve_pending()
        if not self._dirty:
            return self._published
        with self._lock:
            if self._dirty:
                w = self._w
                self._published = GraphSnapshot(
                    version=self._version,
                    files=dict(w.files),
                    symbols=dict(w.symbols),
                    out_edges=dict(w.out_edges),
                    in_edges=dict(w.in_edges),
                    refs_to=dict(w.refs_to),
                    pending_resolution=frozenset(self._pending),
                )
                self._dirty = False
            return self._published

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def commit_file(self, extracted: ExtractedFile, info: IndexedFile) -> None:
        """
        Replace everything known about ``extracted.path`` in one swap.

        References into symbols that vanish with this commit are detached
        from every other file before the commit becomes visible; files whose
        resolution may change are queued for :meth:`resolve_pending`.
        """
        path = extracted.path
        with self._lock:
            old = self._w.files.get(path)
            old_ids = {s.id for s in old.symbols} if old is not None else set()
            old_names = {s.name for s in old.symbols} if old is not None else set()
            if old is not None:
                self._unindex(old)
                self._drop_symbols(old)
            self._add_symbols(extracted.symbols)

            table = FileTable(
                info=info,
                language=extracted.language,
                symbols=tuple(extracted.symbols),
                references=tuple(extracted.references),
                diagnostics=tuple(extracted.diagnostics),
                links=tuple(extracted.links),
            )
            table = self._resolve_table(table)
            self._index(table)

            new_ids = {s.id for s in extracted.symbols}
            vanished = old_ids - new_ids
            affected = self._detach(vanished, exclude=path)
            names = old_names | {s.name for s in extracted.symbols}
            affected |= self._referrers_of(names)
            affected.discard(path)
            self._pending |= affected
            self._bump()
        logger.debug("Committed %s (%d symbols, %d refs, %d queued)",
                     path, len(extracted.symbols), len(extracted.references), len(affected))

    def remove_file(self, path: str) -> bool:
        """Drop *path* and every edge touching its symbols.  Returns False if unknown."""
        with self._lock:
            old = self._w.files.get(path)
            if old is None:
                return False
            self._unindex(old)
            self._drop_symbols(old)
            del self._w.files[path]
            self._pending.discard(path)
            affected = self._detach({s.id for s in old.symbols}, exclude=path)
            affected |= self._referrers_of({s.name for s in old.symbols})
            affected.discard(path)
            self._pending |= affected
            self._bump()
        logger.debug("Removed %s from graph (%d files queued)", path, len(affected))
        return True

    def resolve_pending(self) -> int:
        """Re-resolve every queued file.  Idempotent; returns the file count."""
        with self._lock:
            pending = sorted(self._pending)
            self._pending.clear()
            for path in pending:
                table = self._w.files.get(path)
                if table is None:
                    continue
                self._unindex(table)
                self._index(self._resolve_table(table))
            if pending:
                self._bump()
        if pending:
            logger.debug("Re-resolved %d file(s)", len(pending))
        return len(pending)

    def _bump(self) -> None:
        self._version += 1
        self._dirty = True

    # ------------------------------------------------------------------
    # Index maintenance (caller holds the lock)
    # ------------------------------------------------------------------

    def _add_symbols(self, symbols: Iterable[Symbol]) -> None:
        for sym in symbols:
            self._w.symbols[sym.id] = sym
            _tuple_add(self._w.by_name, sym.name, sym.id)

    def _index(self, table: FileTable) -> None:
        w = self._w
        w.files[table.path] = table
        for edge in table.edges:
            _tuple_add(w.out_edges, edge.source, edge)
            _tuple_add(w.in_edges, edge.target, edge)
        for ref in table.references:
            w.referrers.setdefault(ref.name, set()).add(table.path)
            if ref.target_id is not None:
                _tuple_add(w.refs_to, ref.target_id, ref)

    def _unindex(self, table: FileTable) -> None:
        """Remove a table's edges and references; its symbols stay."""
        w = self._w
        for edge in table.edges:
            _tuple_remove(w.out_edges, edge.source, edge)
            _tuple_remove(w.in_edges, edge.target, edge)
        for ref in table.references:
            holders = w.referrers.get(ref.name)
            if holders is not None:
                holders.discard(table.path)
                if not holders:
                    del w.referrers[ref.name]
            if ref.target_id is not None:
                _tuple_remove(w.refs_to, ref.target_id, ref)

    def _drop_symbols(self, table: FileTable) -> None:
        for sym in table.symbols:
            if self._w.symbols.get(sym.id) is sym:
                del self._w.symbols[sym.id]
            _tuple_remove(self._w.by_name, sym.name, sym.id)

    def _referrers_of(self, names: Iterable[str]) -> set[str]:
        affected: set[str] = set()
        for name in names:
            affected |= self._w.referrers.get(name, set())
        return affected

    def _detach(self, vanished: set[str], exclude: str) -> set[str]:
        """Unbind references into *vanished* ids and drop the matching edges."""
        if not vanished:
            return set()
        w = self._w
        holders: set[str] = set()
        for sym_id in vanished:
            for ref in w.refs_to.get(sym_id, ()):
                holders.add(ref.path)
        holders.discard(exclude)
        for path in holders:
            table = w.files.get(path)
            if table is None:
                continue
            refs = tuple(
                replace(r, target_id=None) if r.target_id in vanished else r
                for r in table.references
            )
            self._unindex(table)
            updated = replace(table, references=refs,
                              edges=self._derive_edges(table.symbols, refs))
            self._index(updated)
        return holders

    # ------------------------------------------------------------------
    # Resolution (caller holds the lock)
    # ------------------------------------------------------------------

    def _resolve_table(self, table: FileTable) -> FileTable:
        local = {s.id: s for s in table.symbols}
        module_name = ""
        mod_id = table.module_id
        if mod_id is not None:
            module_name = local[mod_id].qualname

        resolved: list[Reference] = []
        imported: dict[str, str] = {}
        # Imports bind names (or their aliases) for the rest of the file
        for ref in table.references:
            if ref.kind is RefKind.IMPORT:
                target = self._resolve_import(ref, table, module_name)
                if target is not None:
                    imported.setdefault(ref.alias or ref.name, target)
        for ref in table.references:
            if ref.kind is RefKind.IMPORT:
                target = self._resolve_import(ref, table, module_name)
            else:
                target = self._resolve(ref, table, local, imported)
            resolved.append(ref if ref.target_id == target else replace(ref, target_id=target))

        refs = tuple(resolved)
        return replace(table, references=refs, edges=self._derive_edges(table.symbols, refs))

    def _language_of(self, path: str, table: FileTable) -> Optional[str]:
        if path == table.path:
            return table.language
        other = self._w.files.get(path)
        return other.language if other is not None else None

    def _candidates(self, ref: Reference, table: FileTable) -> list[Symbol]:
        """Symbols named like *ref*, of a compatible kind and language family."""
        allowed = _COMPATIBLE[ref.kind]
        family = _family(table.language)
        out = []
        for sym_id in self._w.by_name.get(ref.name, ()):
            sym = self._w.symbols.get(sym_id)
            if sym is None or sym.kind not in allowed:
                continue
            if _family(self._language_of(sym.path, table)) != family:
                continue
            out.append(sym)
        return out

    def _ancestors(self, symbol_id: str, local: dict[str, Symbol]) -> list[str]:
        chain: list[str] = []
        current: Optional[str] = symbol_id
        while current is not None and current not in chain:
            chain.append(current)
            sym = local.get(current) or self._w.symbols.get(current)
            current = sym.container_id if sym is not None else None
        return chain

    def _is_module_level(self, sym: Symbol) -> bool:
        if sym.container_id is None:
            return True
        container = self._w.symbols.get(sym.container_id)
        return container is None or container.kind is SymbolKind.MODULE

    def _resolve(self, ref: Reference, table: FileTable, local: dict[str, Symbol],
                 imported: dict[str, str]) -> Optional[str]:
        if not ref.qualifier:
            bound = imported.get(ref.name)
            sym = self._w.symbols.get(bound) if bound is not None else None
            if sym is not None and sym.kind in _COMPATIBLE[ref.kind]:
                return bound
        candidates = self._candidates(ref, table)
        if not candidates:
            return None
        chain = self._ancestors(ref.source_id, local)

        if ref.qualifier:
            if ref.qualifier in _SELF_NAMES:
                candidates = [c for c in candidates if not self._is_module_level(c)]
            else:
                last = ref.qualifier.rsplit(".", 1)[-1]
                candidates = [c for c in candidates
                              if not self._is_module_level(c)
                              or self._module_of(c).rsplit(".", 1)[-1] == last]
        else:
            # Members and nested definitions are only visible from inside
            # their container
            candidates = [c for c in candidates
                          if self._is_module_level(c) or c.container_id in chain]
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0].id

        ref_dir = posixpath.dirname(ref.path)

        def scope_key(sym: Symbol) -> tuple:
            parts: list = []
            for rule in self.resolution_order:
                if rule == "same_file":
                    parts.append(0 if sym.path == ref.path else 1)
                elif rule == "same_directory":
                    parts.append(0 if posixpath.dirname(sym.path) == ref_dir else 1)
                elif rule == "enclosing_scope":
                    cid = sym.container_id
                    parts.append(chain.index(cid) if cid in chain else len(chain) + 1)
                elif rule == "first_indexed":
                    break
            return tuple(parts)

        def key(sym: Symbol) -> tuple:
            # first_indexed: path, then position, then id
            return (scope_key(sym), sym.path, sym.location.range.start_byte, sym.id)

        ranked = sorted(candidates, key=key)
        best = ranked[0]
        if scope_key(ranked[1]) == scope_key(best):
            logger.debug("%s; picked %s", ResolutionAmbiguity(ref.name, [c.id for c in ranked]),
                         best.id)
        return best.id

    def _module_of(self, sym: Symbol) -> str:
        current: Optional[Symbol] = sym
        seen: set[str] = set()
        while current is not None and current.id not in seen:
            if current.kind is SymbolKind.MODULE:
                return current.qualname
            seen.add(current.id)
            current = self._w.symbols.get(current.container_id) if current.container_id else None
        return ""

    def _resolve_import(self, ref: Reference, table: FileTable, module_name: str) -> Optional[str]:
        path = table.path
        dotted = absolute_module(ref.qualifier.strip("'\""), path, module_name)
        for cand in sorted(self._candidates(ref, table), key=lambda s: (s.path, s.location.range.start_byte)):
            if not self._is_module_level(cand):
                continue
            mod = self._module_of(cand)
            if mod == dotted or dotted.endswith("." + mod) or mod.endswith("." + dotted):
                return cand.id
            if ref.qualifier.startswith("."):
                # JS relative specifier: compare against the candidate's path
                base = posixpath.normpath(posixpath.join(posixpath.dirname(path), ref.qualifier))
                if posixpath.splitext(cand.path)[0] in (base, base + "/index"):
                    return cand.id
        return None

    def _derive_edges(self, symbols: Iterable[Symbol], refs: Iterable[Reference]) -> tuple[Edge, ...]:
        edges: dict[Edge, None] = {}
        for sym in symbols:
            if sym.container_id is not None:
                edges[Edge(sym.container_id, sym.id, EdgeType.CONTAINS)] = None
        for ref in refs:
            if ref.target_id is None or ref.target_id == ref.source_id:
                continue
            edge_type = _EDGE_FOR_REF.get(ref.kind)
            if edge_type is not None:
                edges[Edge(ref.source_id, ref.target_id, edge_type)] = None
        return tuple(edges)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def save(self, path: str) -> None:
        """
        Serialise the graph to *path* using pickle.

        Parameters
        ----------
        path:
            Destination file path (e.g. .codeindex/graph.pkl).
        """
        snap = self.snapshot(resolve=True)
        payload = {
            "format": _FORMAT,
            "version": _FORMAT_VERSION,
            "resolution_order": list(self.resolution_order),
            "files": list(snap.files.values()),
        }
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        tmp = f"{path}.tmp"
        with open(tmp, "wb") as fh:
            pickle.dump(payload, fh, protocol=pickle.HIGHEST_PROTOCOL)
        os.replace(tmp, path)
        logger.debug("Saved graph (%d files, %d symbols) to %s",
                     len(snap.files), len(snap.symbols), path)

    @classmethod
    def load(cls, path: str, resolution_order: Optional[Iterable[str]] = None) -> "GraphStore":
        """
        Deserialise a graph previously saved with :meth:`save`.

        Raises
        ------
        FileNotFoundError
            If *path* does not exist.
        StoreCorruption
            If the file cannot be read or is not a graph of this format.
        """
        if not os.path.exists(path):
            raise FileNotFoundError(f"Graph file not found: {path}")
        try:
            with open(path, "rb") as fh:
                payload = pickle.load(fh)
        except (pickle.UnpicklingError, EOFError, AttributeError, ImportError,
                IndexError, TypeError, ValueError) as exc:
            raise StoreCorruption("graph", path, str(exc)) from exc
        if not isinstance(payload, dict) or payload.get("format") != _FORMAT:
            raise StoreCorruption("graph", path, "not a codeindex graph file")
        if payload.get("version") != _FORMAT_VERSION:
            raise StoreCorruption("graph", path,
                                  f"unsupported format version {payload.get('version')!r}")

        store = cls(resolution_order or payload.get("resolution_order"))
        with store._lock:
            for table in payload.get("files", []):
                if not isinstance(table, FileTable):
                    raise StoreCorruption("graph", path, "unexpected record in file table")
                store._add_symbols(table.symbols)
                store._index(table)
            store._bump()
        logger.info("Loaded graph (%d files) from %s", len(store._w.files), path)
        return store
