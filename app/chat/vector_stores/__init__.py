"""
Vector Search Layer

Embeddings (OpenAI) and the vector index used for semantic retrieval.

Environment Variables:
    VECTOR_BACKEND: "pinecone" (default) or "memory"
    PINECONE_API_KEY / PINECONE_INDEX_NAME: Pinecone settings
"""

from app.config import VECTOR_BACKEND

from .base import ANY_COUNTRY, NAMESPACES, RESPONSE_CACHE_NAMESPACE, VectorIndex, VectorMatch, VectorRecord
from .embeddings import EmbeddingCache, EmbeddingService, cosine_similarity
from .memory_index import InMemoryVectorIndex

# Singleton instance (lazy initialization)
_index_instance: VectorIndex = None


def get_vector_index() -> VectorIndex:
    """
    Get the configured vector index (singleton).

    Raises:
        ValueError: If unknown backend configured
    """
    global _index_instance

    if _index_instance is not None:
        return _index_instance

    if VECTOR_BACKEND == "pinecone":
        from .pinecone_index import PineconeVectorIndex
        _index_instance = PineconeVectorIndex()
    elif VECTOR_BACKEND == "memory":
        _index_instance = InMemoryVectorIndex()
    else:
        raise ValueError(f"Unknown vector backend: {VECTOR_BACKEND}")

    return _index_instance


def reset_vector_index() -> None:
    """Reset the index singleton (for testing)."""
    global _index_instance
    _index_instance = None


__all__ = [
    "ANY_COUNTRY",
    "NAMESPACES",
    "RESPONSE_CACHE_NAMESPACE",
    "VectorIndex",
    "VectorMatch",
    "VectorRecord",
    "EmbeddingCache",
    "EmbeddingService",
    "cosine_similarity",
    "InMemoryVectorIndex",
    "get_vector_index",
    "reset_vector_index",
]
