"""Embedding and vector index services."""

from .service import EmbeddingBackend, EmbeddingConfig, HashEmbeddingBackend, OpenAIEmbeddingBackend
from .store import QdrantConnection, QdrantVectorIndex, VectorHit, VectorIndex

__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "HashEmbeddingBackend",
    "OpenAIEmbeddingBackend",
    "QdrantConnection",
    "QdrantVectorIndex",
    "VectorHit",
    "VectorIndex",
]
