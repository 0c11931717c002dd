"""
Parser adapter — turns file text into a tree-sitter syntax tree plus
syntax diagnostics.

Supports: Python, JavaScript, TypeScript/TSX, Java, C, C++, Go, Rust, Ruby,
PHP, C#.  Further languages can be plugged in with :func:`register_language`.

Uses tree-sitter >= 0.22 API with individual language packages.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from ..errors import ParseError
from .models import Diagnostic, Location, Position, Range, Severity

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Language mapping
# ---------------------------------------------------------------------------

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".hxx": "cpp",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "c_sharp",
}


def supported_languages() -> set[str]:
    return set(EXTENSION_TO_LANGUAGE.values()) | set(_CUSTOM_LOADERS)


def detect_language(file_path: str) -> Optional[str]:
    """
    Return the language tag for *file_path*, or None if unsupported.

    Parameters
    ----------
    file_path:
        Any file path; only the extension is examined.
    """
    ext = os.path.splitext(file_path)[1].lower()
    return EXTENSION_TO_LANGUAGE.get(ext)


# ---------------------------------------------------------------------------
# Language -> (tree-sitter Language object) lookup
# ---------------------------------------------------------------------------

# Grammar loaders registered at runtime: language -> callable returning the
# raw language pointer (what tree_sitter.Language() accepts).
_CUSTOM_LOADERS: dict[str, Callable[[], object]] = {}


def register_language(
    language: str,
    loader: Callable[[], object],
    extensions: tuple[str, ...] = (),
) -> None:
    """
    Plug in a grammar for *language*.

    Parameters
    ----------
    language:
        Language tag used throughout the index.
    loader:
        Zero-argument callable returning the grammar's language pointer,
        e.g. ``tree_sitter_lua.language``.
    extensions:
        File extensions (with the leading dot) that map to *language*.
    """
    _CUSTOM_LOADERS[language] = loader
    for ext in extensions:
        EXTENSION_TO_LANGUAGE[ext.lower()] = language
    _LANG_CACHE.pop(language, None)


def _get_lang_func(language: str):
    """Return the tree-sitter language() function for *language*, or None."""
    if language in _CUSTOM_LOADERS:
        return _CUSTOM_LOADERS[language]
    try:
        if language == "python":
            import tree_sitter_python as m  # type: ignore
            return m.language
        elif language == "javascript":
            import tree_sitter_javascript as m  # type: ignore
            return m.language
        elif language == "typescript":
            import tree_sitter_typescript as m  # type: ignore
            return m.language_typescript
        elif language == "tsx":
            import tree_sitter_typescript as m  # type: ignore
            return m.language_tsx
        elif language == "java":
            import tree_sitter_java as m  # type: ignore
            return m.language
        elif language == "c":
            import tree_sitter_c as m  # type: ignore
            return m.language
        elif language == "cpp":
            import tree_sitter_cpp as m  # type: ignore
            return m.language
        elif language == "go":
            import tree_sitter_go as m  # type: ignore
            return m.language
        elif language == "rust":
            import tree_sitter_rust as m  # type: ignore
            return m.language
        elif language == "ruby":
            import tree_sitter_ruby as m  # type: ignore
            return m.language
        elif language == "php":
            import tree_sitter_php as m  # type: ignore
            return m.language_php
        elif language == "c_sharp":
            import tree_sitter_c_sharp as m  # type: ignore
            return m.language
    except ImportError:
        logger.debug("Grammar package for %s is not installed", language)
    return None


# Language objects are immutable and shared; parsers are not thread-safe,
# so each worker thread keeps its own.
_LANG_CACHE: dict[str, object] = {}
_LANG_LOCK = threading.Lock()
_THREAD_STATE = threading.local()


def _get_ts_language(language: str):
    """
    Return the tree_sitter.Language object for *language*, or None.

    Caches results for performance.
    """
    with _LANG_LOCK:
        if language in _LANG_CACHE:
            return _LANG_CACHE[language]
    import tree_sitter as ts

    func = _get_lang_func(language)
    if func is None:
        return None
    try:
        lang_obj = ts.Language(func())
    except (TypeError, ValueError) as exc:
        logger.warning("Cannot load tree-sitter language %s: %s", language, exc)
        return None
    with _LANG_LOCK:
        _LANG_CACHE[language] = lang_obj
    return lang_obj


def _get_ts_parser(language: str):
    """
    Return this thread's tree-sitter Parser configured for *language*,
    or None when no grammar is available.
    """
    parsers = getattr(_THREAD_STATE, "parsers", None)
    if parsers is None:
        parsers = _THREAD_STATE.parsers = {}
    if language in parsers:
        return parsers[language]
    import tree_sitter as ts

    lang_obj = _get_ts_language(language)
    if lang_obj is None:
        return None
    parser = ts.Parser(lang_obj)
    parsers[language] = parser
    return parser


# ---------------------------------------------------------------------------
# Point -> Position conversion
# ---------------------------------------------------------------------------

class PositionMapper:
    """Convert tree-sitter byte columns into character columns."""

    def __init__(self, source: bytes) -> None:
        self._lines = source.split(b"\n")

    def position(self, point) -> Position:
        row, col = point[0], point[1]
        if row < len(self._lines):
            line = self._lines[row]
            if line[:col].isascii():
                return Position(row, col)
            return Position(row, len(line[:col].decode("utf-8", errors="replace")))
        return Position(row, col)

    def range(self, node) -> Range:
        return Range(
            start=self.position(node.start_point),
            end=self.position(node.end_point),
            start_byte=node.start_byte,
            end_byte=node.end_byte,
        )


# ---------------------------------------------------------------------------
# Main public parse function
# ---------------------------------------------------------------------------

def _collect_syntax_diagnostics(root, mapper: PositionMapper, path: str) -> list[Diagnostic]:
    """Walk the error-bearing parts of *root* and report ERROR / missing nodes."""
    diagnostics: list[Diagnostic] = []
    if not root.has_error:
        return diagnostics
    stack = [root]
    while stack:
        node = stack.pop()
        if node.is_missing:
            diagnostics.append(Diagnostic(
                severity=Severity.ERROR,
                message=f"Missing {node.type}",
                location=Location(path, mapper.range(node)),
            ))
            continue
        if node.type == "ERROR" or node.is_error:
            diagnostics.append(Diagnostic(
                severity=Severity.ERROR,
                message="Syntax error",
                location=Location(path, mapper.range(node)),
            ))
            # Nested errors inside an error region add nothing useful
            continue
        if node.has_error:
            stack.extend(reversed(node.children))
    diagnostics.sort(key=lambda d: (d.location.range.start.line, d.location.range.start.character))
    return diagnostics


def parse(file_text: str | bytes, language: str, path: str = ""):
    """
    Parse *file_text* and return ``(tree, diagnostics)``.

    Parameters
    ----------
    file_text:
        Source text (str or raw UTF-8 bytes).
    language:
        Language tag, e.g. ``"python"``.
    path:
        Repository path recorded on the diagnostics.

    Raises
    ------
    ParseError
        If no grammar is available for *language* or tree-sitter fails.
    """
    source = file_text.encode("utf-8") if isinstance(file_text, str) else file_text
    ts_parser = _get_ts_parser(language)
    if ts_parser is None:
        raise ParseError(path, f"tree-sitter grammar unavailable for {language!r}")
    try:
        tree = ts_parser.parse(source)
    except (ValueError, RuntimeError) as exc:
        raise ParseError(path, f"tree-sitter failed: {exc}") from exc

    diagnostics = _collect_syntax_diagnostics(tree.root_node, PositionMapper(source), path)
    if diagnostics:
        logger.debug("%s: %d syntax diagnostic(s)", path, len(diagnostics))
    return tree, diagnostics
