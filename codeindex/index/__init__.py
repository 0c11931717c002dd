"""
Repository index — per-repository structural and semantic code intelligence.

Structural layer: tree-sitter extraction into a symbol graph, kept current by
the incremental updater.
Semantic layer: chunk embeddings in a local segmented vector store.
"""
