"""
Context Builder

Assembles the RAGContext for one question:

1. Tariff inheritance for every detected code (sequential, resolver)
2. Hybrid retrieval over the semantic categories (concurrent)
3. Direct lookups that complete the retrieval: nomenclature rows for the
   codes, tariff lines and controls when inheritance found nothing, chapter
   notes, extraction evidence, PDFs mentioning the codes, legal references
   and procedures
4. Full text of the PDFs backing legal references

Every direct lookup is guarded: a storage failure empties that category and
is logged, the rest of the context is still built.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from app.rag.evidence import (
    HsCodeRow,
    KnowledgeDocument,
    LegalChunk,
    PdfExtract,
    RAGContext,
    TariffNote,
    WatchDocument,
)
from app.rag.fusion import merge_results
from app.rag.inheritance import InheritanceResolver, RATE_NOT_FOUND
from app.rag.prompt_builder import LegalText
from app.rag.retrieval import HybridRetriever, RetrievalQuery
from app.rag.source_validator import extract_articles_from_response
from app.services.hs_codes import normalize
from app.storage.base import CustomsStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_INHERITANCE_CODES = 5
MAX_HS_CODES = 15
MAX_TARIFFS = 20
MAX_CONTROL_HEADINGS = 5
MAX_PDFS = 8
MAX_KNOWLEDGE = 5
LEGAL_TEXT_MIN_CHARS = 200


@dataclass
class BuiltContext:
    context: RAGContext
    legal_texts: Dict[str, LegalText] = field(default_factory=dict)
    codes: List[str] = field(default_factory=list)


class ContextBuilder:
    """
    Args:
        store: Customs store for direct lookups
        retriever: Hybrid retriever for the semantic categories
        resolver: Inheritance resolver (built on `store` when omitted)
    """

    def __init__(self, store: CustomsStore, retriever: HybridRetriever,
                 resolver: Optional[InheritanceResolver] = None):
        self.store = store
        self.retriever = retriever
        self.resolver = resolver or InheritanceResolver(store)

    @staticmethod
    def _guarded(label: str, fn: Callable[[], T], default: T) -> T:
        try:
            return fn()
        except Exception as e:
            logger.warning(f"Context lookup '{label}' failed: {e}")
            return default

    def build(self, query: RetrievalQuery) -> BuiltContext:
        """
        Build the context for a prepared query.

        Args:
            query: Question text, keywords, codes, country and intent
        """
        country = query.country
        codes = []
        for code in query.codes:
            clean = normalize(code)
            if clean and clean not in codes:
                codes.append(clean)

        context = RAGContext(country_code=country)
        context.tariffs_with_inheritance = self.resolver.resolve_many(
            codes, country, limit=MAX_INHERITANCE_CODES
        )

        retrieved = self.retriever.retrieve(query)

        # Nomenclature rows for the detected codes first, then semantic hits
        direct_hs = [row for row in (
            self._guarded("hs_code", lambda c=c: self.store.get_hs_code(c), None) for c in codes
        ) if row is not None]
        context.hs_codes = merge_results(direct_hs, retrieved.get(HsCodeRow.kind, []))[:MAX_HS_CODES]

        all_codes = codes + [r.code_clean for r in context.hs_codes if r.code_clean not in codes]
        headings = list(dict.fromkeys(c[:4] for c in all_codes if len(c) >= 4))
        chapters = list(dict.fromkeys(c[:2] for c in all_codes if len(c) >= 2))
        inheritance_found = any(t.rate_source != RATE_NOT_FOUND for t in context.tariffs_with_inheritance)

        if not inheritance_found:
            context.tariffs = self._fallback_tariffs(country, all_codes, query.keywords)
            for heading in headings[:MAX_CONTROL_HEADINGS]:
                context.controlled_products.extend(self._guarded(
                    "controls", lambda h=heading: self.store.find_controls(country, h), []
                ))

        chapter_notes = self._guarded(
            "tariff_notes", lambda: self.store.find_tariff_notes(country, chapters), []
        ) if chapters else []
        context.tariff_notes = merge_results(chapter_notes, retrieved.get(TariffNote.kind, []))

        if codes:
            context.evidence_rows = self._guarded(
                "evidence_rows", lambda: self.store.find_evidence_rows(country, codes), []
            )

        mentioning = self._guarded(
            "pdfs_by_code", lambda: self.store.find_pdfs_mentioning_codes(headings, country=country), []
        ) if headings else []
        context.pdf_summaries = merge_results(retrieved.get(PdfExtract.kind, []), mentioning)[:MAX_PDFS]

        article_chunks = []
        articles = extract_articles_from_response(query.text)
        if articles:
            article_chunks = self._guarded(
                "legal_chunks_by_article",
                lambda: self.store.find_legal_chunks_by_article(articles, country=country), [],
            )
        context.legal_chunks = merge_results(article_chunks, retrieved.get(LegalChunk.kind, []))

        context.knowledge_documents = retrieved.get(KnowledgeDocument.kind, [])[:MAX_KNOWLEDGE]
        context.watch_documents = retrieved.get(WatchDocument.kind, [])

        reference_terms = list(query.keywords) + codes
        if reference_terms:
            context.legal_references = self._guarded(
                "legal_references", lambda: self.store.find_legal_references(reference_terms, country), []
            )
        if query.keywords:
            context.regulatory_procedures = self._guarded(
                "procedures", lambda: self.store.find_procedures(query.keywords, country), []
            )

        legal_texts = self._legal_texts(context)

        logger.info(f"Context built for {country}: {context.summary_counts()}")
        return BuiltContext(context=context, legal_texts=legal_texts, codes=all_codes)

    def _fallback_tariffs(self, country: str, codes: Sequence[str], keywords: Sequence[str]):
        tariffs = []
        for prefix in list(dict.fromkeys(c[:6] for c in codes if len(c) >= 4))[:MAX_INHERITANCE_CODES]:
            tariffs.extend(self._guarded(
                "tariffs_by_prefix", lambda p=prefix: self.store.find_tariffs_by_prefix(country, p, limit=10), []
            ))
        if not tariffs and keywords:
            tariffs = self._guarded(
                "tariffs_by_keyword", lambda: self.store.search_tariffs(country, keywords, limit=10), []
            )
        return merge_results(tariffs)[:MAX_TARIFFS]

    def _legal_texts(self, context: RAGContext) -> Dict[str, LegalText]:
        pdf_ids = list(dict.fromkeys(r.pdf_id for r in context.legal_references if r.pdf_id))
        if not pdf_ids:
            return {}

        pdfs = self._guarded("legal_texts", lambda: self.store.fetch_by_keys(PdfExtract.kind, pdf_ids), {})
        texts = {}
        for pdf_id, pdf in pdfs.items():
            if pdf.extracted_text and len(pdf.extracted_text) >= LEGAL_TEXT_MIN_CHARS:
                texts[pdf_id] = LegalText(text=pdf.extracted_text, title=pdf.title, download_url=pdf.download_url)
        return texts
