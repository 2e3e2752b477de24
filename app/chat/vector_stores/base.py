"""
Abstract Vector Index

Semantic search backend. Each evidence category lives in its own
namespace; vector ids are the evidence record keys so hits can be
hydrated from the customs store.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

# One namespace per evidence kind
NAMESPACES = (
    "hs_code",
    "legal_chunk",
    "tariff_note",
    "knowledge",
    "pdf",
    "watch",
)

# Question embeddings of cached answers; vector ids are ResponseCacheEntry ids
RESPONSE_CACHE_NAMESPACE = "response_cache"

# country_code metadata of records that apply to every jurisdiction
# (Pinecone cannot filter on missing or null metadata)
ANY_COUNTRY = "ALL"


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorRecord:
    id: str
    values: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorIndex(ABC):
    """Abstract base class for vector index backends."""

    @abstractmethod
    def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> int:
        """
        Insert or replace vectors.

        Returns:
            Number of vectors written
        """
        pass

    @abstractmethod
    def query(self, namespace: str, vector: Sequence[float], top_k: int = 10,
              min_score: float = 0.0, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        """
        Nearest neighbours by cosine similarity.

        Args:
            namespace: Evidence namespace
            vector: Query embedding
            top_k: Maximum matches
            min_score: Matches below this similarity are dropped
            filter: Metadata filter in the Pinecone syntax: exact match
                ({"language": "ar"}) or membership
                ({"country_code": {"$in": ["MA", "ALL"]}})

        Returns:
            Matches sorted by descending score
        """
        pass

    @abstractmethod
    def delete(self, namespace: str, ids: Sequence[str]) -> None:
        pass
