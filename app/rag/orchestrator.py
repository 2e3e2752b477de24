"""
Chat Orchestrator

Coordinates the full advisory pipeline for one chat request:
1. Response cache lookup (text-only questions)
2. Image / PDF analysis of the uploads
3. Question analysis + conversation history carry-over
4. Optional query expansion and synonym codes
5. Context building (inheritance, hybrid retrieval, direct lookups)
6. Re-ranking of the long-text evidence
7. Prompt assembly and generation
8. Source validation, confidence and disclaimer
9. Response cache store (submitted to the store executor when one is given;
   a failed write is logged and never fails the request)

Each stage is timed with timed_stage under the request run id.

This is the main entry point behind POST /api/chat.
"""

import contextvars
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.chat.logging_utils import PipelineLogger, timed_stage
from app.chat.output_schemas import ChatRequestSchema
from app.chat.vector_stores.base import VectorIndex
from app.chat.vector_stores.embeddings import EmbeddingService
from app.rag.context_builder import BuiltContext, ContextBuilder
from app.rag.errors import AnalysisError
from app.rag.evidence import KnowledgeDocument, LegalChunk, RAGContext
from app.rag.llm import GenerationService
from app.rag.passage_scorer import score_documents
from app.rag.prompt_builder import build_system_prompt
from app.rag.query_expander import QueryExpander, expand_with_synonyms
from app.rag.question_analyzer import analyze_question, extract_history_context
from app.rag.reranker import LLMReranker, PassageInput
from app.rag.response_cache import ResponseCache
from app.rag.retrieval import HybridRetriever, RetrievalQuery, detect_language
from app.rag.source_validator import PostProcessResult, SourceValidator
from app.services.document_analysis import AnalysisResult, DocumentAnalyzer
from app.services.hs_codes import normalize, parse_detected_code
from app.storage.base import CustomsStore

logger = logging.getLogger(__name__)

HISTORY_MESSAGES = 6
MAX_CODES = 10


@dataclass
class ChatRequest:
    question: str
    session_id: str = ""
    images: List[Dict[str, Any]] = field(default_factory=list)
    pdf_documents: List[Dict[str, Any]] = field(default_factory=list)
    conversation_history: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChatRequest":
        """
        Build from the JSON body (camelCase or snake_case keys).

        Raises:
            pydantic.ValidationError: Body does not match ChatRequestSchema
        """
        schema = ChatRequestSchema.model_validate(payload or {})
        return cls(
            question=schema.question.strip(),
            session_id=schema.session_id,
            images=schema.images,
            pdf_documents=schema.pdf_documents,
            conversation_history=[turn.model_dump() for turn in schema.conversation_history],
        )

    @property
    def has_attachments(self) -> bool:
        return bool(self.images or self.pdf_documents)


@dataclass
class ChatResponse:
    response_text: str
    confidence: str
    citations: List[Dict[str, Any]] = field(default_factory=list)
    context_summary_counts: Dict[str, Any] = field(default_factory=dict)
    cached: bool = False
    has_evidence: bool = False
    cited_circulars: List[Dict[str, Any]] = field(default_factory=list)
    detected_codes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "responseText": self.response_text,
            "confidence": self.confidence,
            "citations": self.citations,
            "contextSummaryCounts": self.context_summary_counts,
            "cached": self.cached,
            "hasEvidence": self.has_evidence,
            "citedCirculars": self.cited_circulars,
            "detectedCodes": self.detected_codes,
        }


class ChatOrchestrator:
    """
    Usage:
        orchestrator = ChatOrchestrator(store, embeddings, index, response_cache=cache)
        response = orchestrator.handle(ChatRequest(question="Quel est le taux pour 8471.30 ?"))

    Args:
        store_executor: Runs response cache writes off the request thread.
            Without one the write happens inline, after the answer is built.

    Raises from handle():
        ServiceUnavailableError: Generation (or vision) unavailable after retries
    """

    def __init__(
        self,
        store: CustomsStore,
        embeddings: EmbeddingService,
        index: VectorIndex,
        generation: Optional[GenerationService] = None,
        response_cache: Optional[ResponseCache] = None,
        analyzer: Optional[DocumentAnalyzer] = None,
        reranker: Optional[LLMReranker] = None,
        expander: Optional[QueryExpander] = None,
        store_executor: Optional[Executor] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.generation = generation or GenerationService()
        self.response_cache = response_cache
        self.analyzer = analyzer
        self.reranker = reranker
        self.expander = expander
        self.store_executor = store_executor
        self.context_builder = ContextBuilder(store, HybridRetriever(store, embeddings, index))
        self.validator = SourceValidator(store)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @timed_stage("uploads")
    def _analyze_uploads(self, request: ChatRequest, *, plog: PipelineLogger) -> List[AnalysisResult]:
        if not request.has_attachments:
            return []
        if self.analyzer is None:
            self.analyzer = DocumentAnalyzer()

        analyses = []
        if request.images:
            try:
                analyses.append(self.analyzer.analyze_image(request.images, request.question))
            except AnalysisError as e:
                logger.warning(f"Image analysis skipped: {e}")
        for document in request.pdf_documents:
            try:
                analyses.append(self.analyzer.analyze_pdf(document, request.question))
            except AnalysisError as e:
                logger.warning(f"PDF analysis skipped: {e}")

        plog.log_stage("analyze_uploads", {
            "analyses": len(analyses),
            "suggested_codes": [c for a in analyses for c in a.suggested_codes],
        })
        return analyses

    @timed_stage("question")
    def _prepare_query(self, request: ChatRequest, analyses: List[AnalysisResult], *,
                       plog: PipelineLogger) -> RetrievalQuery:
        history = extract_history_context(request.conversation_history)
        upload_text = " ".join(a.search_text() for a in analyses if a.search_text())
        analysis = analyze_question(" ".join(p for p in (request.question, upload_text) if p))

        codes: List[str] = []
        suggested = [
            parsed["clean"]
            for parsed in (parse_detected_code(c) for a in analyses for c in a.suggested_codes)
            if parsed
        ]
        for code in analysis.detected_codes + suggested + history.codes:
            clean = normalize(code)
            if clean and clean not in codes:
                codes.append(clean)

        keywords = list(dict.fromkeys(analysis.keywords + history.keywords))
        synonyms = expand_with_synonyms(keywords)
        if not codes:
            codes.extend(synonyms.codes)

        search_text = history.context_prefix + " ".join(p for p in (request.question, upload_text) if p)
        if synonyms.terms:
            search_text = f"{search_text} {' '.join(synonyms.terms)}"
        if self.expander is not None:
            expanded = self.expander.expand(search_text)
            search_text = expanded.search_text()
            codes.extend(h for h in (normalize(h) for h in expanded.hs_hints) if len(h) >= 4 and h not in codes)

        plog.log_stage("analyze_question", {
            "intent": analysis.intent,
            "intents": analysis.intents,
            "codes": codes,
            "keywords": keywords,
            "country": analysis.country,
        })
        return RetrievalQuery(
            text=search_text,
            keywords=keywords,
            codes=codes[:MAX_CODES],
            country=analysis.country,
            intent=analysis.intent,
            language=detect_language(request.question),
        )

    @timed_stage("context")
    def _build_context(self, query: RetrievalQuery, *, plog: PipelineLogger) -> BuiltContext:
        built = self.context_builder.build(query)
        plog.log_retrieve(built.context.summary_counts())
        return built

    @timed_stage("rerank")
    def _rerank_context(self, question: str, context: RAGContext, query: RetrievalQuery, *,
                        plog: Optional[PipelineLogger] = None) -> None:
        """Reorder legal chunks and knowledge documents by relevance."""
        if self.reranker is None:
            return
        items = list(context.legal_chunks) + list(context.knowledge_documents)
        if len(items) <= 1:
            return

        scored = score_documents(items, query.codes, query.keywords)
        ranked = self.reranker.rerank(
            question, [PassageInput(text=s.text, kind=s.kind, payload=s.item) for s in scored]
        )
        ranked_items = [r.payload for r in ranked]
        leftovers = [s.item for s in scored if not any(s.item is r for r in ranked_items)]
        ordered = ranked_items + leftovers

        context.legal_chunks = [i for i in ordered if i.kind == LegalChunk.kind]
        context.knowledge_documents = [i for i in ordered if i.kind == KnowledgeDocument.kind]

    @timed_stage("generation")
    def _generate(self, request: ChatRequest, query: RetrievalQuery, built: BuiltContext,
                  analyses: List[AnalysisResult], *, plog: PipelineLogger) -> str:
        system_prompt = build_system_prompt(
            built.context,
            detected_codes=query.codes,
            keywords=query.keywords,
            legal_texts=built.legal_texts,
            analyses=analyses,
        )
        completion = self.generation.complete(system_prompt, self._messages(request))
        plog.log_generate(completion.text)
        return completion.text

    @timed_stage("validation")
    def _validate(self, answer: str, request: ChatRequest, query: RetrievalQuery, context: RAGContext, *,
                  plog: PipelineLogger) -> PostProcessResult:
        result = self.validator.post_process_response(
            answer, request.question, context, detected_codes=query.codes
        )
        plog.log_stage("validate", {
            "confidence": result.confidence,
            "has_evidence": result.validation.has_evidence,
            "validated": len(result.validation.sources_validated),
            "rejected": len(result.validation.sources_rejected),
        })
        return result

    def _store_response(self, question: str, result: PostProcessResult,
                        citations: List[Dict[str, Any]], has_images: bool) -> None:
        kwargs = dict(
            question=question,
            response=result.response_text,
            confidence=result.confidence,
            citations=citations,
            has_evidence=result.validation.has_evidence,
            has_images=has_images,
            context_used=result.context_used,
        )
        if self.store_executor is None:
            self._write_cache(kwargs, detached=False)
            return

        # the write runs on its own session, never on the request's scoped one
        ctx = contextvars.copy_context()
        self.store_executor.submit(ctx.run, self._write_cache, kwargs, True)

    def _write_cache(self, kwargs: Dict[str, Any], detached: bool) -> None:
        write = self.response_cache.store_detached if detached else self.response_cache.store
        try:
            write(**kwargs)
        except Exception as e:
            logger.warning(f"Response cache store failed: {e}")

    @staticmethod
    def _messages(request: ChatRequest) -> List[Dict[str, str]]:
        messages = [
            {"role": turn["role"], "content": turn.get("content", "")}
            for turn in request.conversation_history[-HISTORY_MESSAGES:]
            if turn.get("role") in ("user", "assistant") and turn.get("content")
        ]
        messages.append({"role": "user", "content": request.question or "Analyse les documents fournis."})
        return messages

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle(self, request: ChatRequest) -> ChatResponse:
        if not request.question and not request.has_attachments:
            raise ValueError("Question vide")

        with PipelineLogger(request.session_id or None) as plog:
            # 1. Cache
            if self.response_cache is not None and request.question and not request.has_attachments:
                cached = self.response_cache.lookup(request.question)
                if cached is not None:
                    plog.log_stage("cache_hit", {"similarity": cached.similarity},
                                   duration_ms=plog.elapsed_ms())
                    return ChatResponse(
                        response_text=cached.response_text,
                        confidence=cached.confidence,
                        citations=cached.citations,
                        context_summary_counts=cached.context_used,
                        cached=True,
                        has_evidence=cached.has_evidence,
                    )

            # 2-4. Uploads and question
            analyses = self._analyze_uploads(request, plog=plog)
            query = self._prepare_query(request, analyses, plog=plog)

            # 5-6. Context
            built = self._build_context(query, plog=plog)
            context = built.context
            self._rerank_context(request.question, context, query, plog=plog)

            # 7-8. Generation and validation
            answer = self._generate(request, query, built, analyses, plog=plog)
            result = self._validate(answer, request, query, context, plog=plog)
            citations = [s.to_dict() for s in result.validation.sources_validated]

            # 9. Cache store
            if self.response_cache is not None:
                self._store_response(request.question, result, citations, request.has_attachments)

            plog.log_stage("respond", {"confidence": result.confidence}, duration_ms=plog.elapsed_ms())
            return ChatResponse(
                response_text=result.response_text,
                confidence=result.confidence,
                citations=citations,
                context_summary_counts=result.context_used,
                cached=False,
                has_evidence=result.validation.has_evidence,
                cited_circulars=[c.to_dict() for c in result.cited_circulars],
                detected_codes=query.codes,
            )
