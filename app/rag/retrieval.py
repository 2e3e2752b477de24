"""
Hybrid Retriever

Fetches evidence for one question across the semantic categories (HS codes,
legal chunks, tariff notes, knowledge documents, PDF extracts, watch
documents). Every category runs the same strategy pipeline:

    semantic search  ->  relaxed semantic (if sparse)  ->  keyword (if sparse)

Each strategy returns a result set tagged with a confidence label; the sets
are folded together with merge_results so a semantic hit wins over the
keyword copy of the same record. Categories that receive both signals can
be fused with weighted reciprocal rank fusion instead.

Categories run concurrently on a thread pool. The question embedding is
computed once before the fan-out. A failing strategy or category is logged
and degrades to an empty list; it never aborts the request.
"""

import contextvars
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from app.chat.vector_stores.base import ANY_COUNTRY, VectorIndex
from app.chat.vector_stores.embeddings import EmbeddingService
from app.config import RETRIEVAL_MAX_WORKERS, THRESHOLDS, RetrievalThresholds
from app.rag.evidence import (
    Evidence,
    HsCodeRow,
    KnowledgeDocument,
    LegalChunk,
    PdfExtract,
    TariffNote,
    WatchDocument,
)
from app.rag.fusion import DEFAULT_SEMANTIC_WEIGHT, merge_results, reciprocal_rank_fusion
from app.storage.base import CustomsStore

logger = logging.getLogger(__name__)

CONFIDENCE_SEMANTIC = "semantic"
CONFIDENCE_RELAXED = "relaxed"
CONFIDENCE_KEYWORD = "keyword"

ARABIC_RATIO_THRESHOLD = 0.3
KEYWORD_SIMILARITY = 0.5

IMPORTANCE_MULTIPLIERS = {
    "haute": 1.15,
    "moyenne": 1.05,
}


# =============================================================================
# Query and intent-adaptive settings
# =============================================================================

@dataclass
class RetrievalQuery:
    """One question, prepared for retrieval."""
    text: str
    keywords: List[str] = field(default_factory=list)
    codes: List[str] = field(default_factory=list)
    country: str = "MA"
    intent: str = "info"
    embedding: Optional[List[float]] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class AdaptiveSettings:
    hs_threshold: float
    doc_threshold: float
    hs_limit: int
    doc_limit: int


def adaptive_thresholds(intent: str, thresholds: RetrievalThresholds = THRESHOLDS) -> AdaptiveSettings:
    """
    Similarity thresholds and result limits for a detected intent.

    Classification needs a precise code match (strict HS threshold) but can
    use broad context (loose document threshold); legal and procedural
    questions need the opposite.
    """
    t = thresholds
    if intent == "classify":
        return AdaptiveSettings(t.hs_high, t.doc_low, 15, 8)
    if intent == "calculate":
        return AdaptiveSettings(t.hs_medium, t.doc_medium, 10, 5)
    if intent in ("control", "procedure"):
        return AdaptiveSettings(t.hs_medium, t.doc_high, 8, 10)
    if intent == "origin":
        return AdaptiveSettings(t.hs_medium, t.doc_high, 10, 8)
    return AdaptiveSettings(t.hs_medium, t.doc_medium, 12, 6)


def arabic_ratio(text: str) -> float:
    """Fraction of letters that are Arabic script."""
    letters = [c for c in (text or "") if c.isalpha()]
    if not letters:
        return 0.0
    arabic = sum(1 for c in letters if "\u0600" <= c <= "\u06ff")
    return arabic / len(letters)


def detect_language(text: str) -> str:
    return "ar" if arabic_ratio(text) >= ARABIC_RATIO_THRESHOLD else "fr"


# =============================================================================
# Per-category quality adjustments
# =============================================================================

def pdf_quality_score(pdf: PdfExtract) -> float:
    """Multiplier in [1.0, 1.5] rewarding a real summary, key points and text."""
    score = 1.0
    if pdf.summary and len(pdf.summary) > 100:
        score += 0.2
    if pdf.key_points:
        score += 0.15
    if pdf.extracted_text and len(pdf.extracted_text) > 500:
        score += 0.15
    return min(score, 1.5)


def watch_importance_multiplier(doc: WatchDocument) -> float:
    return IMPORTANCE_MULTIPLIERS.get((doc.importance or "").lower(), 1.0)


def rank_pdfs(pdfs: List[PdfExtract]) -> List[PdfExtract]:
    for pdf in pdfs:
        pdf.relevance_score = round(pdf.similarity * pdf_quality_score(pdf), 4)
    return sorted(pdfs, key=lambda p: p.relevance_score, reverse=True)


def rank_watch_documents(docs: List[WatchDocument]) -> List[WatchDocument]:
    for doc in docs:
        doc.relevance_score = round(doc.similarity * watch_importance_multiplier(doc), 4)
    return sorted(docs, key=lambda d: d.relevance_score, reverse=True)


# =============================================================================
# Strategies
# =============================================================================

@dataclass
class StrategyResult:
    items: List[Evidence]
    confidence: str
    strategy: str


def country_filter(query: RetrievalQuery) -> Dict:
    """Metadata filter for records of the query's country or of every country."""
    return {"country_code": {"$in": [query.country, ANY_COUNTRY]}}


class RetrievalStrategy(ABC):
    """
    One way of finding records of a single evidence kind.

    Attributes:
        name: Label used in logs
        confidence: Tag attached to every result set this strategy returns
        only_when_sparse: Skip when earlier strategies already reached the floor
    """

    name = "strategy"
    confidence = CONFIDENCE_SEMANTIC
    only_when_sparse = False

    @abstractmethod
    def run(self, query: RetrievalQuery, limit: int) -> List[Evidence]:
        pass


class SemanticStrategy(RetrievalStrategy):
    """Vector search in the kind's namespace, hydrated through the store."""

    name = "semantic"

    def __init__(self, kind: str, index: VectorIndex, store: CustomsStore, threshold: float,
                 filter_fn: Optional[Callable[[RetrievalQuery], Optional[Dict]]] = None,
                 extra_limit: int = 0):
        self.kind = kind
        self.index = index
        self.store = store
        self.threshold = threshold
        self.filter_fn = filter_fn
        self.extra_limit = extra_limit

    def run(self, query: RetrievalQuery, limit: int) -> List[Evidence]:
        if query.embedding is None:
            return []

        metadata_filter = self.filter_fn(query) if self.filter_fn else None
        matches = self.index.query(
            self.kind,
            query.embedding,
            top_k=limit + self.extra_limit,
            min_score=self.threshold,
            filter=metadata_filter,
        )
        if not matches:
            return []

        records = self.store.fetch_by_keys(self.kind, [m.id for m in matches])
        items = []
        for match in matches:
            record = records.get(match.id)
            if record is None:
                continue
            record.similarity = round(match.score, 4)
            items.append(record)
        return items


class RelaxedSemanticStrategy(SemanticStrategy):
    """Second semantic pass at the low threshold with a larger limit."""

    name = "relaxed_semantic"
    confidence = CONFIDENCE_RELAXED
    only_when_sparse = True


class KeywordStrategy(RetrievalStrategy):
    """
    Store text search. `search(query, limit)` returns records; `similarity`
    maps a record to the similarity it is ranked with.
    """

    name = "keyword"
    confidence = CONFIDENCE_KEYWORD

    def __init__(self, search: Callable[[RetrievalQuery, int], List[Evidence]],
                 similarity: Optional[Callable[[Evidence], float]] = None,
                 only_when_sparse: bool = True):
        self.search = search
        self.similarity = similarity
        self.only_when_sparse = only_when_sparse

    def run(self, query: RetrievalQuery, limit: int) -> List[Evidence]:
        if not query.keywords:
            return []
        items = self.search(query, limit)
        for item in items:
            item.similarity = self.similarity(item) if self.similarity else KEYWORD_SIMILARITY
        return items


@dataclass
class CategoryPipeline:
    """
    Ordered strategies for one evidence kind.

    Attributes:
        fuse: Blend semantic and keyword rankings with RRF when both returned items
        rank: Final ordering applied after merging (quality multipliers)
    """
    kind: str
    strategies: List[RetrievalStrategy]
    limit: int
    floor: int = 3
    fuse: bool = False
    semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT
    rank: Optional[Callable[[List], List]] = None


def run_pipeline(pipeline: CategoryPipeline, query: RetrievalQuery) -> List[Evidence]:
    """Run the strategies in order and fold their result sets together."""
    results: List[StrategyResult] = []
    cap = pipeline.limit
    merged: List[Evidence] = []

    for strategy in pipeline.strategies:
        if strategy.only_when_sparse and len(merged) >= pipeline.floor:
            continue
        try:
            items = strategy.run(query, pipeline.limit)
        except Exception as e:
            logger.warning(f"{pipeline.kind}/{strategy.name} retrieval failed: {e}")
            continue
        results.append(StrategyResult(items=items, confidence=strategy.confidence, strategy=strategy.name))
        cap = max(cap, pipeline.limit + getattr(strategy, "extra_limit", 0))
        merged = merge_results(merged, items)

    if pipeline.fuse:
        semantic = merge_results(*[r.items for r in results if r.confidence != CONFIDENCE_KEYWORD])
        keyword = merge_results(*[r.items for r in results if r.confidence == CONFIDENCE_KEYWORD])
        if semantic and keyword:
            fused = reciprocal_rank_fusion(semantic, keyword, semantic_weight=pipeline.semantic_weight)
            merged = [item for item, _ in fused]

    if pipeline.rank:
        merged = pipeline.rank(merged)

    logger.debug(
        f"{pipeline.kind}: {len(merged)} results from "
        f"{[(r.strategy, len(r.items)) for r in results]}"
    )
    return merged[:cap]


# =============================================================================
# Retriever
# =============================================================================

class _SerializedStore:
    """Store proxy that serializes calls; the underlying session is not thread-safe."""

    def __init__(self, store: CustomsStore):
        self._store = store
        self._lock = threading.Lock()

    def __getattr__(self, name):
        attr = getattr(self._store, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)
        return call


class HybridRetriever:
    """
    Args:
        store: Customs store used for hydration and keyword search
        embeddings: Embedding service (owns the short-TTL embedding cache)
        index: Vector index with one namespace per evidence kind
        thresholds: Base similarity thresholds
        max_workers: Size of the category fan-out pool
    """

    def __init__(self, store: CustomsStore, embeddings: EmbeddingService, index: VectorIndex,
                 thresholds: RetrievalThresholds = THRESHOLDS, max_workers: int = RETRIEVAL_MAX_WORKERS):
        self.store = _SerializedStore(store)
        self.embeddings = embeddings
        self.index = index
        self.thresholds = thresholds
        self.max_workers = max_workers

    def build_pipelines(self, query: RetrievalQuery) -> List[CategoryPipeline]:
        settings = adaptive_thresholds(query.intent, self.thresholds)
        t = self.thresholds
        store, index = self.store, self.index

        def semantic(kind, threshold, **kwargs):
            return SemanticStrategy(kind, index, store, threshold, **kwargs)

        def relaxed(kind, extra_limit, **kwargs):
            return RelaxedSemanticStrategy(kind, index, store, t.doc_low if kind != HsCodeRow.kind else t.hs_low,
                                           extra_limit=extra_limit, **kwargs)

        def legal_filter(q):
            metadata_filter = country_filter(q)
            if q.language == "ar":
                metadata_filter["language"] = q.language
            return metadata_filter

        return [
            CategoryPipeline(HsCodeRow.kind, [
                semantic(HsCodeRow.kind, settings.hs_threshold),
                relaxed(HsCodeRow.kind, 5),
                KeywordStrategy(lambda q, n: store.search_hs_codes(q.keywords, limit=n)),
            ], limit=settings.hs_limit, floor=t.min_results_before_fallback),

            CategoryPipeline(LegalChunk.kind, [
                semantic(LegalChunk.kind, settings.doc_threshold, filter_fn=legal_filter),
                KeywordStrategy(
                    lambda q, n: store.search_legal_chunks(q.keywords, language=q.language, limit=n,
                                                           country=q.country),
                    only_when_sparse=False,
                ),
            ], limit=settings.doc_limit, floor=t.min_results_before_fallback, fuse=True),

            CategoryPipeline(TariffNote.kind, [
                semantic(TariffNote.kind, settings.doc_threshold, filter_fn=country_filter),
                KeywordStrategy(lambda q, n: store.search_tariff_notes(q.country, q.keywords, limit=n)),
            ], limit=settings.doc_limit, floor=t.min_results_before_fallback),

            CategoryPipeline(KnowledgeDocument.kind, [
                semantic(KnowledgeDocument.kind, settings.doc_threshold, filter_fn=country_filter),
                relaxed(KnowledgeDocument.kind, 3, filter_fn=country_filter),
                KeywordStrategy(lambda q, n: store.search_knowledge(q.country, q.keywords, limit=n)),
            ], limit=settings.doc_limit, floor=t.min_results_before_fallback),

            CategoryPipeline(PdfExtract.kind, [
                semantic(PdfExtract.kind, settings.doc_threshold, filter_fn=country_filter),
                KeywordStrategy(
                    lambda q, n: store.search_pdfs(q.keywords, country=q.country, limit=n),
                    similarity=lambda pdf: min(pdf.relevance_score / 10.0, 1.0),
                    only_when_sparse=False,
                ),
            ], limit=settings.doc_limit, floor=t.min_results_before_fallback, fuse=True, rank=rank_pdfs),

            CategoryPipeline(WatchDocument.kind, [
                semantic(WatchDocument.kind, settings.doc_threshold, filter_fn=country_filter),
                KeywordStrategy(
                    lambda q, n: store.search_watch_documents(q.keywords, limit=n, country=q.country)
                ),
            ], limit=5, floor=t.min_results_before_fallback, rank=rank_watch_documents),
        ]

    def embed_query(self, text: str) -> Optional[List[float]]:
        """Question embedding, or None when the embedding service is unavailable."""
        try:
            return self.embeddings.embed(text)
        except Exception as e:
            logger.warning(f"Embedding unavailable, keyword retrieval only: {e}")
            return None

    def retrieve(self, query: RetrievalQuery, kinds: Optional[Sequence[str]] = None) -> Dict[str, List[Evidence]]:
        """
        Run every category pipeline concurrently.

        Returns:
            {kind: [records]}; a failed category maps to []
        """
        if query.language is None:
            query.language = detect_language(query.text)
        if query.embedding is None:
            query.embedding = self.embed_query(query.text)

        pipelines = [p for p in self.build_pipelines(query) if kinds is None or p.kind in kinds]
        results: Dict[str, List[Evidence]] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            # each worker runs in a copy of the caller's context (Flask app context included)
            futures = {
                p.kind: executor.submit(contextvars.copy_context().run, run_pipeline, p, query)
                for p in pipelines
            }
            for kind, future in futures.items():
                try:
                    results[kind] = future.result()
                except Exception as e:
                    logger.error(f"Retrieval for {kind} failed: {e}")
                    results[kind] = []

        return results
