"""
Embedding pipeline for the index.

Chunks each file at symbol boundaries (one chunk per function, method and
class, plus one file-level chunk), formats every chunk into embeddable text,
and turns it into a vector through a pluggable embedding capability.

Vectors are cached by content hash, so unchanged text never reaches the
capability twice.  Failures are retried with bounded exponential backoff;
a chunk that still fails is marked ``failed`` in the manifest and removed
from the vector store so similarity queries skip it.  Structural indexing
never waits on any of this.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import TYPE_CHECKING, Callable, Optional, Protocol

import requests

from ..errors import EmbeddingFailure
from .models import CodeChunk, ExtractedFile, Symbol, SymbolKind, content_hash

if TYPE_CHECKING:
    from ..config import Config
    from .manifest import Manifest
    from .vector_store import VectorStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CHUNK_KINDS = frozenset({
    SymbolKind.FUNCTION, SymbolKind.METHOD, SymbolKind.CLASS, SymbolKind.STRUCT,
    SymbolKind.INTERFACE, SymbolKind.TRAIT, SymbolKind.ENUM,
})
_FUNCTION_KINDS = frozenset({SymbolKind.FUNCTION, SymbolKind.METHOD})

FILE_CHUNK_PREFIX = "chunk:FILE:"


# ---------------------------------------------------------------------------
# Embedding capability
# ---------------------------------------------------------------------------

class EmbeddingCapability(Protocol):
    """Anything that turns text into a fixed-length vector."""

    model: str

    def embed(self, text: str) -> list[float]:
        ...


class OllamaEmbedder:
    """
    Embeddings from a local Ollama server (``POST /api/embed``).

    Parameters
    ----------
    base_url:
        Server root, e.g. ``http://localhost:11434``; a full ``/api/...``
        URL is accepted too.
    model:
        Embedding model name.
    timeout:
        ``(connect, read)`` timeout in seconds.
    """

    def __init__(self, base_url: str = "http://localhost:11434",
                 model: str = "nomic-embed-text",
                 timeout: tuple[float, float] = (10, 120)) -> None:
        # Derive the API root for endpoints like /api/embed
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")
        self.model = model
        self._timeout = timeout

    def embed(self, text: str) -> list[float]:
        url = f"{self._api_root}/api/embed"
        payload = {"model": self.model, "input": text}
        try:
            response = requests.post(url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as exc:
            raise EmbeddingFailure(f"Ollama embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingFailure(f"Ollama returned invalid JSON: {exc}") from exc
        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not embeddings:
            raise EmbeddingFailure("Ollama response carried no embeddings")
        return embeddings[0]


class OpenAIEmbedder:
    """
    Embeddings from the OpenAI API (``pip install 'codeindex[semantic]'``).

    Parameters
    ----------
    api_key:
        API key; the ``OPENAI_API_KEY`` environment variable is used when empty.
    model:
        Embedding model name, e.g. ``text-embedding-3-small``.
    base_url:
        Optional alternative endpoint.
    """

    def __init__(self, api_key: str = "", model: str = "text-embedding-3-small",
                 base_url: Optional[str] = None) -> None:
        import openai

        kwargs = {"api_key": api_key or None}
        if base_url:
            kwargs["base_url"] = base_url
        self._client = openai.OpenAI(**kwargs)
        self._openai = openai
        self.model = model

    def embed(self, text: str) -> list[float]:
        try:
            response = self._client.embeddings.create(model=self.model, input=[text])
        except self._openai.OpenAIError as exc:
            raise EmbeddingFailure(f"OpenAI embedding request failed: {exc}") from exc
        if not response.data:
            raise EmbeddingFailure("OpenAI response carried no embeddings")
        return list(response.data[0].embedding)


def create_embedder(config: "Config") -> Optional[EmbeddingCapability]:
    """Build the capability named by ``config.EMBEDDING_PROVIDER`` (None for ``none``)."""
    provider = config.EMBEDDING_PROVIDER
    if provider in ("", "none"):
        return None
    if provider == "ollama":
        return OllamaEmbedder(config.OLLAMA_BASE_URL, config.EMBEDDING_MODEL)
    if provider == "openai":
        return OpenAIEmbedder(config.OPENAI_API_KEY, config.EMBEDDING_MODEL,
                              config.OPENAI_BASE_URL)
    raise ValueError(f"Unknown embedding provider {provider!r}")


def validate_vector(vector, dimensions: int = 0) -> list[float]:
    """
    Check a capability response.

    Raises
    ------
    EmbeddingFailure
        If *vector* is empty, holds non-numeric or non-finite values, or has
        the wrong length.
    """
    if not isinstance(vector, (list, tuple)) or not vector:
        raise EmbeddingFailure("empty or non-list embedding")
    out: list[float] = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EmbeddingFailure(f"non-numeric embedding component {value!r}")
        if not math.isfinite(value):
            raise EmbeddingFailure("non-finite embedding component")
        out.append(float(value))
    if dimensions and len(out) != dimensions:
        raise EmbeddingFailure(f"embedding has {len(out)} dimensions, expected {dimensions}")
    return out


# ---------------------------------------------------------------------------
# Text formatters
# ---------------------------------------------------------------------------

def _function_text(language: str, file_path: str, kind: str, name: str,
                   signature: str, docstring: str, body: str) -> str:
    """Format a function or method into embeddable text."""
    doc_str = docstring.strip() if docstring else "none"
    return (
        f"Language: {language}\n"
        f"File: {file_path}\n"
        f"{kind.capitalize()}: {name}\n"
        f"Signature: {signature or 'none'}\n"
        f"Docstring: {doc_str}\n"
        f"Body:\n{body.strip()}"
    )


def _class_text(language: str, file_path: str, kind: str, name: str, signature: str,
                docstring: str, method_names: list[str], body: str) -> str:
    """Format a class-like symbol into embeddable text."""
    doc_str = docstring.strip() if docstring else "none"
    methods_str = ", ".join(method_names) if method_names else "none"
    return (
        f"Language: {language}\n"
        f"File: {file_path}\n"
        f"{kind.capitalize()}: {name}\n"
        f"Signature: {signature or 'none'}\n"
        f"Docstring: {doc_str}\n"
        f"Methods: {methods_str}\n"
        f"Body:\n{body.strip()}"
    )


def _file_text(language: str, file_path: str, symbol_names: list[str], content: str) -> str:
    names = ", ".join(symbol_names) if symbol_names else "none"
    return (
        f"Language: {language}\n"
        f"File: {file_path}\n"
        f"Symbols: {names}\n"
        f"Content:\n{content}"
    )


def _truncate(text: str, limit: int) -> str:
    if limit and len(text) > limit:
        return text[:limit]
    return text


# ---------------------------------------------------------------------------
# Extracted file -> chunks
# ---------------------------------------------------------------------------

def build_chunks(extracted: ExtractedFile, source: str | bytes,
                 max_chars: int = 6000) -> list[CodeChunk]:
    """
    Produce one chunk per function, method and class-like symbol of
    *extracted*, plus one file-level chunk.

    Parameters
    ----------
    extracted:
        Extraction result for one file.
    source:
        The text the extraction ran on (symbol byte ranges index into it).
    max_chars:
        Upper bound on each chunk's text.
    """
    raw = source.encode("utf-8") if isinstance(source, str) else source
    path, language = extracted.path, extracted.language

    children: dict[str, list[str]] = {}
    for sym in extracted.symbols:
        if sym.container_id is not None and sym.kind in _FUNCTION_KINDS:
            children.setdefault(sym.container_id, []).append(sym.name)

    chunks: list[CodeChunk] = []
    top_level: list[str] = []
    for sym in extracted.symbols:
        if sym.kind not in _CHUNK_KINDS:
            continue
        rng = sym.location.range
        body = raw[rng.start_byte:rng.end_byte].decode("utf-8", errors="replace")
        if sym.kind in _FUNCTION_KINDS:
            text = _function_text(language, path, sym.kind.value, sym.qualname,
                                  sym.signature, sym.docstring, body)
        else:
            text = _class_text(language, path, sym.kind.value, sym.qualname, sym.signature,
                               sym.docstring, children.get(sym.id, []), body)
        chunks.append(_chunk_for(sym, language, _truncate(text, max_chars)))
        if sym.container_id == extracted.module_id:
            top_level.append(sym.name)

    content = raw.decode("utf-8", errors="replace")
    line_count = content.count("\n") + 1
    chunks.append(CodeChunk(
        id=f"{FILE_CHUNK_PREFIX}{path}",
        path=path,
        kind="file",
        name=path.rsplit("/", 1)[-1],
        language=language,
        text=_truncate(_file_text(language, path, top_level, content), max_chars),
        line_start=1,
        line_end=line_count,
        symbol_id=extracted.module_id,
    ))
    return chunks


def _chunk_for(sym: Symbol, language: str, text: str) -> CodeChunk:
    rng = sym.location.range
    return CodeChunk(
        id=f"chunk:{sym.id}",
        path=sym.path,
        kind=sym.kind.value,
        name=sym.qualname,
        language=language,
        text=text,
        line_start=rng.start.line + 1,
        line_end=rng.end.line + 1,
        symbol_id=sym.id,
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class EmbeddingPipeline:
    """
    Keeps the vector store in step with each file's chunks.

    Parameters
    ----------
    embedder:
        The embedding capability; None disables embedding (only cached
        vectors are used).
    manifest:
        Chunk status and vector cache.
    store:
        Destination vector store.
    max_retries:
        Retries after the first failed attempt before a chunk is marked
        failed.
    retry_delay:
        Base backoff; attempt *n* waits ``retry_delay * 2**(n-1)`` seconds.
    dimensions:
        Expected vector length (0 = whatever the store expects).
    sleep:
        Injected for tests.
    """

    def __init__(
        self,
        embedder: Optional[EmbeddingCapability],
        manifest: "Manifest",
        store: "VectorStore",
        max_retries: int = 2,
        retry_delay: float = 0.5,
        dimensions: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.embedder = embedder
        self.manifest = manifest
        self.store = store
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay
        self.dimensions = dimensions
        self._sleep = sleep
        self._gen_lock = threading.Lock()
        # Held while a path's points and chunk records are written or removed
        self._write_lock = threading.Lock()
        self._generations: dict[str, int] = {}
        self.calls = 0

    @property
    def model(self) -> str:
        return getattr(self.embedder, "model", "") or "default"

    def _expected_dims(self) -> int:
        return self.dimensions or self.store.dimensions

    # ------------------------------------------------------------------
    # Capability calls
    # ------------------------------------------------------------------

    def embed_with_retry(self, text: str) -> tuple[list[float], int]:
        """
        Embed *text*, retrying on failure.

        Returns
        -------
        tuple[list[float], int]
            The validated vector and the number of attempts it took.

        Raises
        ------
        EmbeddingFailure
            When every attempt failed; its ``attempts`` gives the call count.
        """
        if self.embedder is None:
            raise EmbeddingFailure("no embedding capability configured")
        attempts = self.max_retries + 1
        last: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                self.calls += 1
                vector = validate_vector(self.embedder.embed(text), self._expected_dims())
                return vector, attempt
            except Exception as exc:
                last = exc
                if attempt < attempts:
                    wait = self.retry_delay * 2 ** (attempt - 1)
                    logger.debug("Embedding attempt %d/%d failed: %s; retrying in %.2fs",
                                 attempt, attempts, exc, wait)
                    self._sleep(wait)
        raise EmbeddingFailure(f"embedding failed after {attempts} attempts: {last}",
                               attempts=attempts) from last

    def embed_query(self, text: str) -> list[float]:
        """Vector for free text, through the same cache as chunks."""
        key = content_hash(text)
        cached = self.manifest.cache_get(key, self.model)
        if cached is not None:
            return cached
        vector, _ = self.embed_with_retry(text)
        self.manifest.cache_put(key, self.model, vector)
        return vector

    # ------------------------------------------------------------------
    # Per-file processing
    # ------------------------------------------------------------------

    def _begin(self, path: str) -> int:
        with self._gen_lock:
            gen = self._generations.get(path, 0) + 1
            self._generations[path] = gen
            return gen

    def _current(self, path: str, gen: int) -> bool:
        with self._gen_lock:
            return self._generations.get(path) == gen

    def process_file(self, path: str, chunks: list[CodeChunk]) -> dict:
        """
        Bring the vector store in line with *chunks* for *path*.

        A later call for the same path supersedes an earlier one that is
        still running; the earlier call stops at its next chunk.

        Returns
        -------
        dict
            Keys: embedded, cached, unchanged, failed, removed, superseded.
        """
        gen = self._begin(path)
        stats = {"embedded": 0, "cached": 0, "unchanged": 0, "failed": 0,
                 "removed": 0, "superseded": False}

        existing = {r.chunk_id: r for r in self.manifest.chunks_for_file(path)}
        current_ids = {c.id for c in chunks}
        stale = [cid for cid in existing if cid not in current_ids]
        for cid in stale:
            self.store.delete(cid)
        self.manifest.remove_chunks(stale)
        stats["removed"] = len(stale)

        for chunk in chunks:
            if not self._current(path, gen):
                stats["superseded"] = True
                logger.debug("Embedding of %s superseded", path)
                break
            digest = chunk.content_hash
            record = existing.get(chunk.id)
            if record is not None and record.embedded_hash == digest \
                    and self.store.get(chunk.id) is not None:
                stats["unchanged"] += 1
                continue

            vector = self.manifest.cache_get(digest, self.model)
            dims = self._expected_dims()
            if vector is not None and (not dims or len(vector) == dims):
                stats["cached"] += 1
            else:
                try:
                    vector, _attempts = self.embed_with_retry(chunk.text)
                except EmbeddingFailure as exc:
                    with self._write_lock:
                        if self._current(path, gen):
                            self.store.delete(chunk.id)
                            self.manifest.mark_failed(chunk.id, path, digest,
                                                      exc.attempts, str(exc))
                    stats["failed"] += 1
                    logger.warning("Embedding failed for %s: %s", chunk.id, exc)
                    continue
                self.manifest.cache_put(digest, self.model, vector)
                stats["embedded"] += 1

            with self._write_lock:
                if not self._current(path, gen):
                    stats["superseded"] = True
                    break
                try:
                    self.store.upsert(chunk.id, vector, chunk.payload())
                except ValueError as exc:
                    self.manifest.mark_failed(chunk.id, path, digest, 0, str(exc))
                    stats["failed"] += 1
                    logger.warning("Vector store rejected %s: %s", chunk.id, exc)
                    continue
                self.manifest.mark_embedded(chunk.id, path, digest)

        if stats["embedded"] or stats["failed"]:
            logger.info("[embedder] %s: %d embedded, %d cached, %d unchanged, %d failed",
                        path, stats["embedded"], stats["cached"], stats["unchanged"],
                        stats["failed"])
        return stats

    def remove_file(self, path: str) -> int:
        """Drop every point and chunk record belonging to *path*."""
        with self._write_lock:
            self._begin(path)
            removed = self.store.delete_by_file(path)
            self.manifest.remove_file(path)
        return removed
