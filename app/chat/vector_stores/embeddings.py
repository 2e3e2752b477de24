"""
Embedding Service

Creates question/document embeddings with OpenAI (text-embedding-3-small,
1536 dimensions). A request embeds the user question once; every retrieval
category reuses that vector through the EmbeddingCache.

The cache is an explicit object handed to the service (one per app, or a
fresh one per test with a fake clock). It is safe for concurrent use from
the retrieval thread pool: a lock guards the map, stale entries are swept
opportunistically on insert, and the oldest entry is evicted when full.
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from openai import OpenAI

from app.config import (
    EMBEDDING_CACHE_MAX_ENTRIES,
    EMBEDDING_CACHE_TTL_SECONDS,
    EMBEDDING_MAX_CHARS,
    EMBEDDING_MODEL,
    OPENAI_API_KEY,
    TIMEOUTS,
)
from app.rag.retry import RETRY_CONFIGS, call_with_retry

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty or zero vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def normalize_cache_key(text: str) -> str:
    return " ".join((text or "").lower().split())


class EmbeddingCache:
    """
    Short-TTL map of normalized text -> embedding.

    Args:
        ttl_seconds: Entry lifetime
        max_entries: Size bound; oldest entry evicted first
        clock: Returns the current time in seconds (inject a fake in tests)
    """

    def __init__(self, ttl_seconds: float = EMBEDDING_CACHE_TTL_SECONDS,
                 max_entries: int = EMBEDDING_CACHE_MAX_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: Dict[str, Tuple[List[float], float]] = {}
        self._lock = threading.Lock()

    def get(self, text: str) -> Optional[List[float]]:
        key = normalize_cache_key(text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            vector, stored_at = entry
            if self.clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return vector

    def put(self, text: str, vector: List[float]) -> None:
        key = normalize_cache_key(text)
        now = self.clock()
        with self._lock:
            self._sweep(now)
            if key not in self._entries and len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k][1])
                del self._entries[oldest]
            self._entries[key] = (vector, now)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, stored_at) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class EmbeddingService:
    """
    OpenAI embeddings with caching and retry.

    embed() is deterministic for identical input (cache hit or same model
    call) and truncates input beyond EMBEDDING_MAX_CHARS.
    """

    def __init__(self, client: Optional[OpenAI] = None, cache: Optional[EmbeddingCache] = None,
                 model: str = EMBEDDING_MODEL):
        self.client = client or OpenAI(api_key=OPENAI_API_KEY, timeout=TIMEOUTS["embedding"])
        self.cache = cache if cache is not None else EmbeddingCache()
        self.model = model

    def embed(self, text: str) -> List[float]:
        """
        Embedding for text.

        Raises:
            ServiceUnavailableError: After retries are exhausted
        """
        truncated = (text or "")[:EMBEDDING_MAX_CHARS]
        cached = self.cache.get(truncated)
        if cached is not None:
            return cached

        response = call_with_retry(
            lambda: self.client.embeddings.create(model=self.model, input=truncated),
            RETRY_CONFIGS["embedding"],
            service="embedding",
        )
        vector = list(response.data[0].embedding)
        self.cache.put(truncated, vector)
        return vector
