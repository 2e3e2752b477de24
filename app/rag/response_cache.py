"""
Response Cache

Stores validated answers keyed by the hash of the normalized question. The
question embedding is upserted into the vector index (namespace
"response_cache", vector id = entry id) for near-duplicate matching.

lookup():
1. Exact hash match on an unexpired entry
2. Otherwise the nearest cached question from the vector index, if its
   similarity is >= cache_match (0.94) and the entry has not expired
A hit increments hit_count and sets last_hit_at.

store() is gated: no empty question, no image questions, no low-confidence
answers. Entries expire 7 days after they were last stored. Purges delete
the entry vectors along with the rows.

Cache failures never fail a request: lookups return None and stores are
rolled back, both with a logged warning. store_detached() writes on a
session from session_factory, for callers running on a worker thread.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.chat.vector_stores.base import RESPONSE_CACHE_NAMESPACE, VectorIndex, VectorRecord
from app.chat.vector_stores.embeddings import EmbeddingService
from app.config import RESPONSE_CACHE_TTL_DAYS, THRESHOLDS
from app.web.db.models.response_cache import ResponseCacheEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10000


@dataclass
class CachedResponse:
    response_text: str
    confidence: str
    citations: List[Dict[str, Any]] = field(default_factory=list)
    context_used: Dict[str, Any] = field(default_factory=dict)
    has_evidence: bool = False
    similarity: float = 1.0
    hit_count: int = 0


class ResponseCache:
    """
    Args:
        session: SQLAlchemy session
        embeddings: Used to embed questions for similarity matching
        index: Vector index holding the question embeddings (no similarity
            matching without one)
        clock: Returns the current UTC datetime (inject a fake in tests)
        match_threshold: Minimum cosine similarity for a near-duplicate hit
        ttl_days: Entry lifetime
        session_factory: Opens a fresh session for store_detached()
    """

    def __init__(self, session: Session, embeddings: Optional[EmbeddingService] = None,
                 index: Optional[VectorIndex] = None,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 match_threshold: float = THRESHOLDS.cache_match,
                 ttl_days: int = RESPONSE_CACHE_TTL_DAYS,
                 session_factory: Optional[Callable[[], Session]] = None):
        self.session = session
        self.session_factory = session_factory
        self.embeddings = embeddings
        self.index = index
        self.clock = clock
        self.match_threshold = match_threshold
        self.ttl_days = ttl_days

    def _embed(self, question: str, embedding: Optional[List[float]]) -> Optional[List[float]]:
        if embedding is not None or self.embeddings is None:
            return embedding
        try:
            return self.embeddings.embed(question)
        except Exception as e:
            logger.warning(f"Cache embedding failed: {e}")
            return None

    def lookup(self, question: str, embedding: Optional[List[float]] = None) -> Optional[CachedResponse]:
        """
        Cached answer for a question, or None.

        Args:
            question: User question
            embedding: Precomputed question embedding (computed on demand otherwise)
        """
        if not question or not question.strip():
            return None

        now = self.clock()
        try:
            entry = self.session.query(ResponseCacheEntry).filter(
                ResponseCacheEntry.question_hash == ResponseCacheEntry.hash_question(question),
                ResponseCacheEntry.expires_at > now,
            ).first()
            similarity = 1.0

            if entry is None and self.index is not None:
                vector = self._embed(question, embedding)
                if vector is None:
                    return None
                entry, similarity = self._most_similar(vector, now)

            if entry is None:
                return None

            entry.hit_count = (entry.hit_count or 0) + 1
            entry.last_hit_at = now
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.warning(f"Response cache lookup failed: {e}")
            return None

        logger.info(f"Response cache hit (similarity={similarity:.3f}, hits={entry.hit_count})")
        return CachedResponse(
            response_text=entry.response_text,
            confidence=entry.confidence_level,
            citations=entry.citations or [],
            context_used=entry.context_used or {},
            has_evidence=entry.has_evidence,
            similarity=similarity,
            hit_count=entry.hit_count,
        )

    def _most_similar(self, vector: List[float], now: datetime) -> Tuple[Optional[ResponseCacheEntry], float]:
        matches = self.index.query(
            RESPONSE_CACHE_NAMESPACE, vector, top_k=1, min_score=self.match_threshold
        )
        if not matches:
            return None, 0.0

        match = matches[0]
        entry = self.session.get(ResponseCacheEntry, int(match.id))
        # the row may have expired or been purged without its vector
        if entry is None or entry.expires_at <= now:
            return None, 0.0
        return entry, match.score

    def store(self, question: str, response: str, confidence: str,
              citations: Optional[List[Dict[str, Any]]] = None, has_evidence: bool = False,
              has_images: bool = False, context_used: Optional[Dict[str, Any]] = None,
              embedding: Optional[List[float]] = None) -> bool:
        """
        Upsert an answer on its question hash, then its question vector.

        Returns:
            True when the answer was stored, False when a gate refused it or
            the write failed
        """
        if not question or not question.strip() or has_images or confidence == "low" or not response:
            return False

        now = self.clock()
        question_hash = ResponseCacheEntry.hash_question(question)
        vector = self._embed(question, embedding) if self.index is not None else embedding

        try:
            entry = self.session.query(ResponseCacheEntry).filter(
                ResponseCacheEntry.question_hash == question_hash
            ).first()
            if entry is None:
                entry = ResponseCacheEntry(question_hash=question_hash, hit_count=0, created_at=now)
                self.session.add(entry)

            entry.question_text = question
            entry.question_embedding = vector
            entry.response_text = response
            entry.confidence_level = confidence
            entry.citations = citations or []
            entry.context_used = context_used or {}
            entry.has_evidence = has_evidence
            entry.expires_at = now + timedelta(days=self.ttl_days)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.warning(f"Response cache store failed: {e}")
            return False

        if self.index is not None and vector is not None:
            try:
                self.index.upsert(RESPONSE_CACHE_NAMESPACE, [
                    VectorRecord(id=str(entry.id), values=vector, metadata={"question_hash": question_hash})
                ])
            except Exception as e:
                # the exact-hash path still serves this entry
                logger.warning(f"Response cache vector upsert failed: {e}")

        return True

    def store_detached(self, **kwargs) -> bool:
        """
        store() on a session of its own, for writes off the request thread.

        Falls back to the bound session when no session_factory was given.
        """
        if self.session_factory is None:
            return self.store(**kwargs)

        session = self.session_factory()
        try:
            detached = ResponseCache(
                session, self.embeddings, index=self.index, clock=self.clock,
                match_threshold=self.match_threshold, ttl_days=self.ttl_days,
            )
            return detached.store(**kwargs)
        finally:
            session.close()

    def _delete_vectors(self, entry_ids: Sequence[int]) -> None:
        if self.index is None or not entry_ids:
            return
        try:
            self.index.delete(RESPONSE_CACHE_NAMESPACE, [str(i) for i in entry_ids])
        except Exception as e:
            logger.warning(f"Response cache vector delete failed: {e}")

    def purge_expired(self) -> int:
        """Delete expired entries and their vectors; returns the number deleted."""
        expired = [row.id for row in self.session.query(ResponseCacheEntry.id).filter(
            ResponseCacheEntry.expires_at <= self.clock()
        )]
        if expired:
            self.session.query(ResponseCacheEntry).filter(
                ResponseCacheEntry.id.in_(expired)
            ).delete(synchronize_session=False)
            self.session.commit()
            self._delete_vectors(expired)
        logger.info(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    def purge_lru(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> int:
        """Keep the max_entries most recently used entries; returns the number deleted."""
        total = self.session.query(ResponseCacheEntry).count()
        if total <= max_entries:
            return 0

        # never-hit entries go first, then by last hit, then by age
        entries = self.session.query(ResponseCacheEntry).order_by(
            ResponseCacheEntry.last_hit_at.is_(None).desc(),
            ResponseCacheEntry.last_hit_at.asc(),
            ResponseCacheEntry.created_at.asc(),
        ).limit(total - max_entries).all()
        entry_ids = [entry.id for entry in entries]
        for entry in entries:
            self.session.delete(entry)
        self.session.commit()
        self._delete_vectors(entry_ids)
        logger.info(f"Purged {len(entries)} least recently used cache entries")
        return len(entries)

    def purge_all(self) -> int:
        entry_ids = [row.id for row in self.session.query(ResponseCacheEntry.id)]
        deleted = self.session.query(ResponseCacheEntry).delete(synchronize_session=False)
        self.session.commit()
        self._delete_vectors(entry_ids)
        return deleted
