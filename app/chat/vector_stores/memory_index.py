"""
In-Memory Vector Index

Brute-force cosine index for local runs and tests. Same contract as the
Pinecone index, including the equality and $in metadata filters.
"""

import threading
from typing import Any, Dict, List, Optional, Sequence

from app.chat.vector_stores.base import VectorIndex, VectorMatch, VectorRecord
from app.chat.vector_stores.embeddings import cosine_similarity


class InMemoryVectorIndex(VectorIndex):

    def __init__(self):
        self._namespaces: Dict[str, Dict[str, VectorRecord]] = {}
        self._lock = threading.Lock()

    def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> int:
        with self._lock:
            bucket = self._namespaces.setdefault(namespace, {})
            for record in records:
                bucket[record.id] = record
        return len(records)

    def query(self, namespace: str, vector: Sequence[float], top_k: int = 10,
              min_score: float = 0.0, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        with self._lock:
            records = list(self._namespaces.get(namespace, {}).values())

        matches = []
        for record in records:
            if filter and not _matches(record.metadata, filter):
                continue
            score = cosine_similarity(vector, record.values)
            if score >= min_score:
                matches.append(VectorMatch(id=record.id, score=score, metadata=dict(record.metadata)))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    def delete(self, namespace: str, ids: Sequence[str]) -> None:
        with self._lock:
            bucket = self._namespaces.get(namespace, {})
            for vector_id in ids:
                bucket.pop(vector_id, None)

    def count(self, namespace: str) -> int:
        with self._lock:
            return len(self._namespaces.get(namespace, {}))


def _matches(metadata: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    """Subset of the Pinecone filter language: equality, $eq and $in."""
    for key, condition in filter.items():
        value = metadata.get(key)
        if isinstance(condition, dict):
            if "$eq" in condition and value != condition["$eq"]:
                return False
            if "$in" in condition and value not in condition["$in"]:
                return False
        elif value != condition:
            return False
    return True
