"""
Chat API Views.

Endpoints:
1. POST /api/chat: advisory answer with validated citations
2. POST /api/analyze-pdf: one page batch of a PDF (resumable with next_page)
3. POST /api/duty/calculate: effective tariff + duty/VAT for a code and value
4. POST /api/analyze-dum: extraction, taxes and checks for a customs declaration (DUM)

Errors are returned as {"success": false, "error": ...} with 400 (bad
request), 503 + Retry-After (upstream service unavailable) or 500.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from app.chat.vector_stores import get_vector_index
from app.chat.vector_stores.embeddings import EmbeddingService
from app.config import DEFAULT_COUNTRY, PDF_PAGES_PER_BATCH
from app.rag.errors import AnalysisError, ServiceUnavailableError
from app.rag.inheritance import InheritanceResolver
from app.rag.orchestrator import ChatOrchestrator, ChatRequest
from app.rag.query_expander import QueryExpander
from app.rag.reranker import LLMReranker
from app.rag.response_cache import ResponseCache
from app.services.duty_calculator import calculate_duties, compute_caf, convert_to_mad
from app.services.document_analysis import DocumentAnalyzer
from app.services.dum_analyzer import PDF_MEDIA_TYPE, DumAnalyzer
from app.services.hs_codes import normalize
from app.storage import get_store
from app.web.db import db

logger = logging.getLogger(__name__)

bp = Blueprint("chat", __name__, url_prefix="/api")


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _unavailable(e: ServiceUnavailableError):
    logger.error(f"Service unavailable: {e}")
    response = jsonify({
        "success": False,
        "error": "Service temporairement indisponible, veuillez réessayer.",
        "service": e.service,
    })
    response.status_code = 503
    response.headers["Retry-After"] = str(e.retry_after)
    return response


def get_embedding_service() -> EmbeddingService:
    extensions = current_app.extensions
    if "embedding_service" not in extensions:
        extensions["embedding_service"] = EmbeddingService(cache=extensions["embedding_cache"])
    return extensions["embedding_service"]


def get_orchestrator() -> ChatOrchestrator:
    """Orchestrator bound to the request session (tests register an 'orchestrator_factory')."""
    factory = current_app.extensions.get("orchestrator_factory")
    if factory is not None:
        return factory()

    embeddings = get_embedding_service()
    index = get_vector_index()
    return ChatOrchestrator(
        store=get_store(db.session),
        embeddings=embeddings,
        index=index,
        response_cache=ResponseCache(
            db.session, embeddings, index=index, session_factory=sessionmaker(bind=db.engine)
        ),
        store_executor=current_app.extensions.get("cache_store_executor"),
        reranker=LLMReranker(),
        expander=QueryExpander() if current_app.config.get("QUERY_EXPANSION") else None,
    )


def get_document_analyzer() -> DocumentAnalyzer:
    analyzer = current_app.extensions.get("document_analyzer")
    return analyzer if analyzer is not None else DocumentAnalyzer()


def get_dum_analyzer() -> DumAnalyzer:
    analyzer = current_app.extensions.get("dum_analyzer")
    return analyzer if analyzer is not None else DumAnalyzer(get_store(db.session))


@bp.route("/chat", methods=["POST"])
def chat():
    """
    Answer a customs question.

    Body: {question, sessionId, images?, pdfDocuments?, conversationHistory?}
    """
    try:
        chat_request = ChatRequest.from_payload(request.get_json(silent=True) or {})
    except ValidationError as e:
        return _error(f"Requête invalide: {e.errors()[0].get('msg', 'format incorrect')}", 400)

    if not chat_request.question and not chat_request.has_attachments:
        return _error("La question est requise", 400)

    try:
        response = get_orchestrator().handle(chat_request)
    except ServiceUnavailableError as e:
        return _unavailable(e)
    except Exception as e:
        logger.exception(f"Chat request failed: {e}")
        return _error("Erreur interne lors du traitement de la question", 500)

    return jsonify({"success": True, **response.to_dict()})


@bp.route("/analyze-pdf", methods=["POST"])
def analyze_pdf():
    """
    Analyze one page batch of a PDF.

    Body: {base64 | url, title?, question?, start_page?, max_pages?}
    The response carries next_page (null when the document is finished).
    """
    data = request.get_json(silent=True) or {}
    if not data.get("base64") and not data.get("url"):
        return _error("base64 ou url requis", 400)

    try:
        start_page = max(int(data.get("start_page") or 1), 1)
        max_pages = max(int(data.get("max_pages") or PDF_PAGES_PER_BATCH), 1)
    except (TypeError, ValueError):
        return _error("start_page et max_pages doivent être des entiers", 400)

    try:
        batch = get_document_analyzer().analyze_pdf_batch(
            data, start_page=start_page, max_pages=max_pages, question=data.get("question", "")
        )
    except AnalysisError as e:
        return _error(str(e), 400)
    except ServiceUnavailableError as e:
        return _unavailable(e)
    except Exception as e:
        logger.exception(f"PDF analysis failed: {e}")
        return _error("Erreur interne lors de l'analyse du PDF", 500)

    return jsonify({"success": True, **batch.to_dict()})


@bp.route("/duty/calculate", methods=["POST"])
def calculate_duty():
    """
    Duties and taxes for a code.

    Body: {code, value, currency?, incoterm?, freight?, insurance?, country?}
    """
    data = request.get_json(silent=True) or {}
    code = normalize(data.get("code"))
    if len(code) < 2:
        return _error("Code SH requis", 400)

    try:
        value = float(data.get("value", data.get("cif_value")))
        freight = float(data["freight"]) if data.get("freight") is not None else None
        insurance = float(data["insurance"]) if data.get("insurance") is not None else None
        currency = data.get("currency") or "MAD"
        value_mad = convert_to_mad(value, currency)
        freight_mad = convert_to_mad(freight, currency) if freight is not None else None
        insurance_mad = convert_to_mad(insurance, currency) if insurance is not None else None
    except (TypeError, ValueError) as e:
        return _error(f"Valeur invalide: {e}", 400)
    if value < 0:
        return _error("La valeur doit être positive", 400)

    try:
        cif_value = compute_caf(value_mad, data.get("incoterm") or "CIF", freight_mad, insurance_mad)
        tariff = InheritanceResolver(get_store(db.session)).resolve(code, data.get("country") or DEFAULT_COUNTRY)
        calculation = calculate_duties(tariff, cif_value)
    except Exception as e:
        logger.exception(f"Duty calculation failed for {code}: {e}")
        return _error("Erreur interne lors du calcul", 500)

    return jsonify({
        "success": True,
        "tariff": tariff.to_dict(),
        "calculation": calculation.to_dict(),
    })


@bp.route("/analyze-dum", methods=["POST"])
def analyze_dum():
    """
    Analyze a customs declaration (DUM).

    Body: {pdf_base64 | image_base64, media_type?, country_code?}
    """
    data = request.get_json(silent=True) or {}
    if not data.get("pdf_base64") and not data.get("image_base64"):
        return _error("pdf_base64 ou image_base64 requis", 400)

    content = data.get("pdf_base64") or data["image_base64"]
    media_type = PDF_MEDIA_TYPE if data.get("pdf_base64") else (data.get("media_type") or "image/jpeg")

    try:
        analysis = get_dum_analyzer().analyze(content, media_type, country=data.get("country_code") or DEFAULT_COUNTRY)
    except AnalysisError as e:
        return _error(str(e), 400)
    except ServiceUnavailableError as e:
        return _unavailable(e)
    except Exception as e:
        logger.exception(f"DUM analysis failed: {e}")
        return _error("Erreur interne lors de l'analyse de la DUM", 500)

    return jsonify({"success": True, **analysis.to_dict()})
