"""
Dossier Embedding Index

Snapshot chunking, the in-process vector store and the indexer that keeps
it in step with committed snapshots.
"""

from .chunker import Chunk, chunk_snapshot
from .indexer import EmbeddingIndexer, IndexCommit
from .vector_store import OwnerIndex, VectorStore

__all__ = [
    "Chunk",
    "chunk_snapshot",
    "EmbeddingIndexer",
    "IndexCommit",
    "OwnerIndex",
    "VectorStore",
]
