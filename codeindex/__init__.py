"""
codeindex — local-first code intelligence for a repository.

Public API for library usage::

    from codeindex import CodeIndex

    index = CodeIndex("/path/to/repo")
    index.index()
    result = index.get_call_graph("main.py")
"""

__version__ = "0.1.0"

from .config import Config
from .errors import (
    CodeIndexError,
    EmbeddingFailure,
    ParseError,
    ResolutionAmbiguity,
    StoreCorruption,
)
from .index.indexer import CodeIndex
from .index.models import ChangeEvent, ChangeKind, Position
from .index.query import QueryResult
from .logs import setup_logger

__all__ = [
    "CodeIndex",
    "Config",
    "ChangeEvent",
    "ChangeKind",
    "Position",
    "QueryResult",
    "setup_logger",
    "CodeIndexError",
    "ParseError",
    "ResolutionAmbiguity",
    "EmbeddingFailure",
    "StoreCorruption",
]
