"""
Error taxonomy for the indexing engine.

Extraction and embedding errors are contained per file / per chunk and never
abort the whole index.  Only :class:`StoreCorruption` escalates, and only to a
rebuild of the affected store.
"""

from __future__ import annotations


class CodeIndexError(Exception):
    """Base class for all engine errors."""


class ParseError(CodeIndexError):
    """Raised when a file (or a region of it) cannot be parsed.

    Callers record a diagnostic and keep whatever partial symbols were
    recovered.
    """

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class ResolutionAmbiguity(CodeIndexError):
    """A reference matched several candidate definitions.

    Never propagated out of resolution: the tie-break order picks a winner.
    Kept as a type so the condition can be logged uniformly.
    """

    def __init__(self, name: str, candidates: list[str]) -> None:
        super().__init__(f"{name!r} matches {len(candidates)} definitions")
        self.name = name
        self.candidates = candidates


class EmbeddingFailure(CodeIndexError):
    """The embedding capability failed or returned a malformed vector.

    ``attempts`` is how many calls were made before giving up (0 when the
    failure was raised by a single call rather than the retry loop).
    """

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class StoreCorruption(CodeIndexError):
    """A persisted snapshot is unreadable; the store must be rebuilt."""

    def __init__(self, store: str, path: str, reason: str) -> None:
        super().__init__(f"{store} snapshot at {path} is unreadable: {reason}")
        self.store = store
        self.path = path
        self.reason = reason
