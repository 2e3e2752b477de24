"""
Pinecone Vector Index

Evidence vectors for semantic retrieval, one namespace per category.
Metadata carries country_code (and language for legal chunks) so queries
can be scoped without a round-trip to the database.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from pinecone import Pinecone as PineconeClient

from app.config import EMBEDDING_DIMENSION, PINECONE_API_KEY, PINECONE_INDEX_NAME
from app.chat.vector_stores.base import VectorIndex, VectorMatch, VectorRecord

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 100


class PineconeVectorIndex(VectorIndex):
    """VectorIndex backed by a Pinecone serverless index."""

    def __init__(self, index_name: str = PINECONE_INDEX_NAME, client: Optional[PineconeClient] = None):
        self.index_name = index_name
        self.pc = client or PineconeClient(api_key=PINECONE_API_KEY)

        try:
            self.index = self.pc.Index(index_name)
        except Exception:
            # Index may not exist yet - created on first upsert
            self.index = None

    def _ensure_index(self):
        if self.index is None:
            existing = [idx.name for idx in self.pc.list_indexes()]
            if self.index_name not in existing:
                self.pc.create_index(
                    name=self.index_name,
                    dimension=EMBEDDING_DIMENSION,
                    metric="cosine",
                    spec={"serverless": {"cloud": "aws", "region": "us-east-1"}}
                )
            self.index = self.pc.Index(self.index_name)
        return self.index

    def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> int:
        index = self._ensure_index()
        vectors = [
            {"id": r.id, "values": list(r.values), "metadata": _clean_metadata(r.metadata)}
            for r in records
        ]
        for i in range(0, len(vectors), UPSERT_BATCH_SIZE):
            index.upsert(vectors=vectors[i:i + UPSERT_BATCH_SIZE], namespace=namespace)
        return len(vectors)

    def query(self, namespace: str, vector: Sequence[float], top_k: int = 10,
              min_score: float = 0.0, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        index = self._ensure_index()
        results = index.query(
            vector=list(vector),
            top_k=top_k,
            namespace=namespace,
            include_metadata=True,
            filter=filter if filter else None
        )
        matches = [
            VectorMatch(id=str(match.id), score=float(match.score), metadata=dict(match.metadata or {}))
            for match in results.matches
            if match.score is not None and match.score >= min_score
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches

    def delete(self, namespace: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        self._ensure_index().delete(ids=list(ids), namespace=namespace)


def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Pinecone rejects null metadata values."""
    return {k: v for k, v in (metadata or {}).items() if v is not None}
