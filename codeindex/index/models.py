"""
Data model shared by the extractor, graph, updater, embedder and query layers.

Records are frozen so that graph snapshots can share them freely: a new
snapshot replaces records, it never mutates them.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class SymbolKind(str, Enum):
    MODULE = "module"
    CLASS = "class"
    INTERFACE = "interface"
    STRUCT = "struct"
    ENUM = "enum"
    TRAIT = "trait"
    TYPE = "type"
    FUNCTION = "function"
    METHOD = "method"
    VARIABLE = "variable"
    CONSTANT = "constant"


CALLABLE_KINDS = frozenset({SymbolKind.FUNCTION, SymbolKind.METHOD, SymbolKind.CLASS,
                            SymbolKind.STRUCT})
TYPE_KINDS = frozenset({SymbolKind.CLASS, SymbolKind.INTERFACE, SymbolKind.STRUCT,
                        SymbolKind.ENUM, SymbolKind.TRAIT, SymbolKind.TYPE})
CONTAINER_KINDS = TYPE_KINDS | {SymbolKind.MODULE, SymbolKind.FUNCTION, SymbolKind.METHOD}


class RefKind(str, Enum):
    """Syntactic shape of a reference site."""
    CALL = "call"
    INHERIT = "inherit"
    TYPE = "type"
    READ = "read"
    IMPORT = "import"


class EdgeType(str, Enum):
    CALLS = "CALLS"
    IMPLEMENTS = "IMPLEMENTS"
    TYPE_DEFINITION = "TYPE_DEFINITION"
    CONTAINS = "CONTAINS"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"
    HINT = "hint"


class FileState(str, Enum):
    UNINDEXED = "unindexed"
    INDEXING = "indexing"
    INDEXED = "indexed"
    STALE = "stale"
    DELETED = "deleted"


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class Position:
    """Zero-based line / character position."""
    line: int
    character: int

    @classmethod
    def coerce(cls, value) -> "Position":
        """Accept a Position, a ``{"line", "character"}`` dict or a tuple."""
        if isinstance(value, Position):
            return value
        if isinstance(value, dict):
            return cls(int(value["line"]), int(value["character"]))
        line, character = value
        return cls(int(line), int(character))


@dataclass(frozen=True)
class Range:
    start: Position
    end: Position
    start_byte: int = 0
    end_byte: int = 0

    def contains(self, pos: Position) -> bool:
        return self.start <= pos <= self.end

    def span(self) -> tuple[int, int]:
        return (self.end.line - self.start.line, self.end.character - self.start.character)

    def to_dict(self) -> dict:
        return {
            "start": {"line": self.start.line, "character": self.start.character},
            "end": {"line": self.end.line, "character": self.end.character},
        }


@dataclass(frozen=True)
class Location:
    path: str
    range: Range

    def to_dict(self) -> dict:
        return {"path": self.path, "range": self.range.to_dict()}


# ---------------------------------------------------------------------------
# Graph records
# ---------------------------------------------------------------------------

def make_symbol_id(path: str, qualname: str, kind: SymbolKind) -> str:
    """Stable id derived from file, qualified name and kind (never position)."""
    return f"{kind.value.upper()}:{path}::{qualname}"


@dataclass(frozen=True)
class Symbol:
    id: str
    name: str
    qualname: str
    kind: SymbolKind
    location: Location
    # Range of the name token only; used for position lookups
    selection: Range
    container_id: Optional[str] = None
    signature: str = ""
    docstring: str = ""

    @property
    def path(self) -> str:
        return self.location.path

    def summary(self) -> dict:
        """Compact, serialisable summary used by query results."""
        return {
            "id": self.id,
            "name": self.name,
            "qualname": self.qualname,
            "kind": self.kind.value,
            "path": self.location.path,
            "range": self.location.range.to_dict(),
            "line_start": self.location.range.start.line + 1,
            "line_end": self.location.range.end.line + 1,
            "container_id": self.container_id,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class Reference:
    name: str
    kind: RefKind
    location: Location
    source_id: str              # enclosing symbol the occurrence belongs to
    target_id: Optional[str] = None
    qualifier: str = ""         # receiver text, e.g. "self" in self.run()
    alias: str = ""             # local name an import binds, when renamed

    @property
    def path(self) -> str:
        return self.location.path

    def summary(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "path": self.location.path,
            "range": self.location.range.to_dict(),
            "source_id": self.source_id,
            "target_id": self.target_id,
        }


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    type: EdgeType


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    message: str
    location: Location
    symbol_id: Optional[str] = None
    source: str = "parser"

    def to_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "message": self.message,
            "path": self.location.path,
            "range": self.location.range.to_dict(),
            "symbol_id": self.symbol_id,
            "source": self.source,
        }


@dataclass(frozen=True)
class DocumentLink:
    """An import site; *target* is the resolved repository path, if any."""
    text: str
    location: Location
    target: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "path": self.location.path,
            "range": self.location.range.to_dict(),
            "target": self.target,
        }


# ---------------------------------------------------------------------------
# Per-file extraction result and file bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class ExtractedFile:
    """Everything the extractor learned about one file, with no cross-file data."""
    path: str
    language: str
    content_hash: str
    symbols: list[Symbol] = field(default_factory=list)
    references: list[Reference] = field(default_factory=list)
    links: list[DocumentLink] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def module_id(self) -> Optional[str]:
        for sym in self.symbols:
            if sym.kind is SymbolKind.MODULE:
                return sym.id
        return None


@dataclass(frozen=True)
class IndexedFile:
    path: str
    content_hash: str
    version: int
    language: str
    state: FileState = FileState.INDEXED


@dataclass(frozen=True)
class ChangeEvent:
    """A change notification delivered by the file-watch/transport layer.

    *content* may be omitted for created/modified events, in which case the
    updater reads the file from disk when the debounce window closes.
    """
    path: str
    kind: ChangeKind
    content: Optional[str] = None
    old_path: Optional[str] = None


# ---------------------------------------------------------------------------
# Embedding records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CodeChunk:
    id: str
    path: str
    kind: str
    name: str
    language: str
    text: str
    line_start: int
    line_end: int
    symbol_id: Optional[str] = None

    @property
    def content_hash(self) -> str:
        return content_hash(self.text)

    def payload(self) -> dict:
        return {
            "chunk_id": self.id,
            "symbol_id": self.symbol_id,
            "path": self.path,
            "kind": self.kind,
            "name": self.name,
            "language": self.language,
            "line_start": self.line_start,
            "line_end": self.line_end,
        }


def content_hash(text: str | bytes) -> str:
    if isinstance(text, str):
        text = text.encode("utf-8")
    return hashlib.sha256(text).hexdigest()
