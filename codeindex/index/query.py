"""
Query engine: structural and similarity queries over the index.

Each operation reads one graph snapshot (and, for similarity queries, one
vector-store view).  Composed queries take the two snapshots independently:
results are consistent per store, not across them.  Targets that are not in
the snapshot give an empty result, never an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

import networkx as nx

from ..errors import EmbeddingFailure
from .graph import GraphSnapshot, GraphStore
from .models import TYPE_KINDS, CodeChunk, EdgeType, Position, Symbol, SymbolKind

if TYPE_CHECKING:
    from .embedder import EmbeddingPipeline
    from .vector_store import VectorStore

logger = logging.getLogger(__name__)

Target = Union[str, Symbol]
PositionLike = Union[Position, dict, tuple]


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    """
    Items returned by a query.

    Attributes
    ----------
    items:
        Query-specific dicts, already sorted.
    pending:
        Files whose latest change is not yet reflected in the index; results
        for them may be stale or missing.
    """

    items: list[dict] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def __getitem__(self, index):
        return self.items[index]

    def to_dict(self) -> dict:
        return {"items": self.items, "pending": self.pending}


def _ref_sort_key(item: dict) -> tuple:
    start = item["range"]["start"]
    return (item["path"], start["line"], start["character"])


# ---------------------------------------------------------------------------
# QueryEngine
# ---------------------------------------------------------------------------

class QueryEngine:
    """
    Read-only query surface over a :class:`GraphStore` and a vector store.

    Parameters
    ----------
    graph:
        The graph store; snapshots are taken per query.
    store:
        Vector store for similarity queries (optional).
    pipeline:
        Embedding pipeline used to embed free-text similarity queries.
    pending:
        Callable returning the paths still awaiting indexing.
    """

    def __init__(
        self,
        graph: GraphStore,
        store: Optional["VectorStore"] = None,
        pipeline: Optional["EmbeddingPipeline"] = None,
        pending: Optional[Callable[[], list[str]]] = None,
    ) -> None:
        self.graph = graph
        self.store = store
        self.pipeline = pipeline
        self._pending = pending or (lambda: [])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _snapshot(self) -> GraphSnapshot:
        return self.graph.snapshot(resolve=True)

    def _result(self, items: list[dict]) -> QueryResult:
        return QueryResult(items=items, pending=list(self._pending()))

    @staticmethod
    def _target_symbol(snap: GraphSnapshot, target: Target,
                       position: Optional[PositionLike] = None) -> Optional[Symbol]:
        """
        Resolve a query target to a symbol.

        *target* is a symbol id (or Symbol), or a file path when *position*
        is given.  A position on a definition's name selects that symbol; a
        position on a reference selects the reference's target.
        """
        if isinstance(target, Symbol):
            return snap.symbol(target.id)
        if position is None:
            return snap.symbol(target)
        pos = Position.coerce(position)
        for sym in snap.symbols_in(target):
            if sym.kind is not SymbolKind.MODULE and sym.selection.contains(pos):
                return sym
        ref = snap.reference_at(target, pos)
        if ref is not None and ref.target_id is not None:
            return snap.symbol(ref.target_id)
        return None

    # ------------------------------------------------------------------
    # Structural queries
    # ------------------------------------------------------------------

    def get_outline(self, path: str) -> QueryResult:
        """
        Containment tree of the symbols in *path*.

        Returns
        -------
        QueryResult
            Top-level symbols (children of the module) in document order,
            each with a nested ``children`` list.
        """
        snap = self._snapshot()
        syms = snap.symbols_in(path)
        if not syms:
            return self._result([])
        nodes: dict[str, dict] = {}
        for sym in syms:
            node = sym.summary()
            node["docstring"] = sym.docstring
            node["children"] = []
            nodes[sym.id] = node
        roots: list[dict] = []
        for sym in syms:
            if sym.kind is SymbolKind.MODULE:
                continue
            parent = nodes.get(sym.container_id) if sym.container_id else None
            if parent is None or parent["kind"] == SymbolKind.MODULE.value:
                roots.append(nodes[sym.id])
            else:
                parent["children"].append(nodes[sym.id])
        return self._result(roots)

    def get_call_graph(self, path_or_symbol: Target, depth: int = 1) -> QueryResult:
        """
        Caller -> callee edges around a file or a symbol.

        Parameters
        ----------
        path_or_symbol:
            A file path (every symbol in the file is a start node) or a
            symbol id.
        depth:
            Hops to follow in each direction from the start nodes.

        Returns
        -------
        QueryResult
            One item per edge: ``caller``, ``callee`` (symbol summaries) and
            ``depth`` (hop distance from the start set).
        """
        snap = self._snapshot()
        if isinstance(path_or_symbol, Symbol):
            path_or_symbol = path_or_symbol.id
        if path_or_symbol in snap.files:
            start = [s.id for s in snap.symbols_in(path_or_symbol)]
        elif path_or_symbol in snap.symbols:
            start = [path_or_symbol]
        else:
            return self._result([])

        calls = snap.typed_view(EdgeType.CALLS)
        found: dict[tuple[str, str], int] = {}
        for forward in (True, False):
            seen = set(start)
            frontier = [n for n in start if n in calls]
            for hop in range(1, max(depth, 1) + 1):
                nxt: list[str] = []
                for node in frontier:
                    neighbours = calls.successors(node) if forward else calls.predecessors(node)
                    for other in neighbours:
                        edge = (node, other) if forward else (other, node)
                        found.setdefault(edge, hop)
                        if other not in seen:
                            seen.add(other)
                            nxt.append(other)
                frontier = nxt
                if not frontier:
                    break

        items = [
            {
                "caller": snap.symbols[src].summary(),
                "callee": snap.symbols[dst].summary(),
                "depth": hop,
            }
            for (src, dst), hop in found.items()
            if src in snap.symbols and dst in snap.symbols
        ]
        items.sort(key=lambda e: (e["depth"], e["caller"]["id"], e["callee"]["id"]))
        return self._result(items)

    def get_references(self, target: Target, position: Optional[PositionLike] = None,
                       include_declaration: bool = False) -> QueryResult:
        """Every resolved reference to the target symbol, by file and position."""
        snap = self._snapshot()
        sym = self._target_symbol(snap, target, position)
        if sym is None:
            return self._result([])
        items = [ref.summary() for ref in snap.references_to(sym.id)]
        items.sort(key=_ref_sort_key)
        if include_declaration:
            decl = {
                "name": sym.name,
                "kind": "declaration",
                "path": sym.path,
                "range": sym.selection.to_dict(),
                "source_id": sym.id,
                "target_id": sym.id,
            }
            items.insert(0, decl)
        return self._result(items)

    def get_definitions(self, target: Target,
                        position: Optional[PositionLike] = None) -> QueryResult:
        """Definition of the symbol named at the target."""
        snap = self._snapshot()
        sym = self._target_symbol(snap, target, position)
        return self._result([sym.summary()] if sym is not None else [])

    def get_implementations(self, target: Target,
                            position: Optional[PositionLike] = None) -> QueryResult:
        """
        Types that implement or extend the target, transitively.

        For a method target, the same-named methods of those types.
        """
        snap = self._snapshot()
        sym = self._target_symbol(snap, target, position)
        if sym is None:
            return self._result([])

        member_name: Optional[str] = None
        base = sym
        if sym.kind not in TYPE_KINDS:
            container = snap.symbol(sym.container_id) if sym.container_id else None
            if container is None or container.kind not in TYPE_KINDS:
                return self._result([])
            member_name, base = sym.name, container

        implements = snap.typed_view(EdgeType.IMPLEMENTS)
        if base.id not in implements:
            return self._result([])
        # IMPLEMENTS runs subtype -> base, so implementors are ancestors
        subtypes = sorted(nx.ancestors(implements, base.id))
        items: list[dict] = []
        for sub_id in subtypes:
            sub = snap.symbol(sub_id)
            if sub is None:
                continue
            if member_name is None:
                items.append(sub.summary())
                continue
            for child in snap.children(sub_id):
                if child.name == member_name:
                    items.append(child.summary())
        items.sort(key=lambda s: (s["path"], s["line_start"], s["id"]))
        return self._result(items)

    def get_type_definitions(self, target: Target,
                             position: Optional[PositionLike] = None) -> QueryResult:
        """Types the target is declared with (a type itself answers with itself)."""
        snap = self._snapshot()
        sym = self._target_symbol(snap, target, position)
        if sym is None:
            return self._result([])
        types = [
            snap.symbols[e.target]
            for e in snap.edges_from(sym.id, EdgeType.TYPE_DEFINITION)
            if e.target in snap.symbols
        ]
        if not types and sym.kind in TYPE_KINDS:
            types = [sym]
        seen: set[str] = set()
        items: list[dict] = []
        for t in types:
            if t.id not in seen:
                seen.add(t.id)
                items.append(t.summary())
        return self._result(items)

    def get_diagnostics(self, path: str) -> QueryResult:
        snap = self._snapshot()
        table = snap.file(path)
        if table is None:
            return self._result([])
        return self._result([d.to_dict() for d in table.diagnostics])

    def get_document_links(self, path: str) -> QueryResult:
        snap = self._snapshot()
        return self._result([link.to_dict() for link in snap.document_links(path)])

    def query_symbol(self, path: str, position: PositionLike) -> QueryResult:
        """
        What is at *position* in *path*.

        Returns
        -------
        QueryResult
            At most one item: ``symbol`` (innermost enclosing symbol),
            ``reference`` (the reference under the cursor, if any) and
            ``definition`` (that reference's resolved target, if any).
        """
        snap = self._snapshot()
        pos = Position.coerce(position)
        sym = snap.symbol_at(path, pos)
        if sym is None:
            return self._result([])
        item: dict[str, Any] = {"symbol": sym.summary(), "reference": None, "definition": None}
        ref = snap.reference_at(path, pos)
        if ref is not None:
            item["reference"] = ref.summary()
            target = snap.symbol(ref.target_id) if ref.target_id else None
            item["definition"] = target.summary() if target is not None else None
        return self._result([item])

    # ------------------------------------------------------------------
    # Similarity queries
    # ------------------------------------------------------------------

    def _query_vector(self, chunk_or_text: Union[str, CodeChunk]) -> tuple[Optional[list[float]], Optional[str]]:
        """Vector for the query plus the point id to leave out of results."""
        if isinstance(chunk_or_text, CodeChunk):
            candidates, text = (chunk_or_text.id,), chunk_or_text.text
        else:
            candidates, text = (chunk_or_text, f"chunk:{chunk_or_text}"), chunk_or_text
        for point_id in candidates:
            stored = self.store.get(point_id)
            if stored is not None:
                return stored["vector"], point_id
        if self.pipeline is None:
            return None, None
        self_id = chunk_or_text.id if isinstance(chunk_or_text, CodeChunk) else None
        return self.pipeline.embed_query(text), self_id

    def _similar(self, snap: GraphSnapshot, chunk_or_text: Union[str, CodeChunk], k: int,
                 filters: Optional[dict]) -> list[dict]:
        if self.store is None:
            return []
        try:
            vector, self_id = self._query_vector(chunk_or_text)
        except EmbeddingFailure as exc:
            logger.warning("Could not embed similarity query: %s", exc)
            return []
        if vector is None:
            return []
        filters = dict(filters or {})
        if self_id is not None:
            filters["exclude_ids"] = set(filters.get("exclude_ids") or ()) | {self_id}
        hits = self.store.search(vector, top_k=k, filters=filters)
        for hit in hits:
            sym_id = hit["payload"].get("symbol_id")
            sym = snap.symbol(sym_id) if sym_id else None
            hit["symbol"] = sym.summary() if sym is not None else None
        return hits

    def find_similar(self, chunk_or_text: Union[str, CodeChunk], k: int = 10,
                     filters: Optional[dict] = None) -> QueryResult:
        """
        The *k* stored chunks closest to *chunk_or_text*.

        Parameters
        ----------
        chunk_or_text:
            A :class:`CodeChunk`, a stored chunk id or symbol id (its vector
            is reused and it is left out of the results), or free text.
        k:
            Result count.
        filters:
            Vector-store filters (``path``, ``path_prefix``, ``kind``,
            ``language``, ``symbol_id``, ``exclude_ids``).
        """
        snap = self._snapshot()
        return self._result(self._similar(snap, chunk_or_text, k, filters))

    def find_similar_callers(self, chunk_or_text: Union[str, CodeChunk], k: int = 10,
                             filters: Optional[dict] = None) -> QueryResult:
        """Similarity search, then the graph callers of each hit."""
        snap = self._snapshot()
        items: list[dict] = []
        for hit in self._similar(snap, chunk_or_text, k, filters):
            sym_id = hit["payload"].get("symbol_id")
            callers = [
                snap.symbols[e.source].summary()
                for e in (snap.edges_to(sym_id, EdgeType.CALLS) if sym_id else [])
                if e.source in snap.symbols
            ]
            callers.sort(key=lambda s: s["id"])
            items.append({"match": hit, "callers": callers})
        return self._result(items)
