"""
Document Analysis

Turns user uploads into structured product information before retrieval:

- analyze_image: vision model over one or more images (base64 data URLs)
- analyze_pdf: text extracted with pdfplumber, summarized by the model
- analyze_pdf_batch: page-range extraction for large PDFs. Each call handles
  at most PDF_PAGES_PER_BATCH pages from start_page and returns next_page
  (None when the document is finished) so the caller can resume.

Model output is expected as JSON (DocumentExtraction). Malformed JSON is
repaired by parse_model_json; when nothing can be recovered the raw text is
wrapped as the summary so the analysis is never lost.
"""

import base64
import binascii
import io
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pdfplumber
import requests
from pydantic import ValidationError

from app.chat.output_schemas import DocumentExtraction
from app.config import PDF_BATCH_DELAY_SECONDS, PDF_PAGES_PER_BATCH, TIMEOUTS, VISION_MODEL
from app.rag.errors import AnalysisError
from app.rag.json_utils import parse_model_json
from app.rag.llm import GenerationService
from app.services.hs_codes import parse_detected_code

logger = logging.getLogger(__name__)

MAX_PDF_PROMPT_CHARS = 60000
RAW_SUMMARY_CHARS = 500
SUPPORTED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")

ANALYSIS_INSTRUCTIONS = """Tu es un expert en classification douanière (Système Harmonisé).
Analyse le document fourni et réponds UNIQUEMENT avec un objet JSON:
{
  "summary": "résumé court",
  "product_description": "description précise de la marchandise (nature, matière, usage)",
  "suggested_codes": ["codes SH candidats, ex: 8471.30"],
  "key_points": ["points réglementaires importants"],
  "full_text": "texte pertinent transcrit",
  "questions": ["questions de clarification si des informations manquent"]
}"""


@dataclass
class AnalysisResult:
    summary: str = ""
    product_description: Optional[str] = None
    suggested_codes: List[str] = field(default_factory=list)
    key_points: List[str] = field(default_factory=list)
    full_text: str = ""
    questions: List[str] = field(default_factory=list)
    source: str = "image"
    title: Optional[str] = None
    partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def search_text(self) -> str:
        """Text to append to the question for retrieval."""
        parts = [self.product_description or "", self.summary]
        return " ".join(p for p in parts if p).strip()


@dataclass
class PdfBatchResult:
    start_page: int
    end_page: int
    total_pages: int
    next_page: Optional[int]
    text: str
    analysis: AnalysisResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_page": self.start_page,
            "end_page": self.end_page,
            "total_pages": self.total_pages,
            "next_page": self.next_page,
            "done": self.next_page is None,
            "analysis": self.analysis.to_dict(),
        }


def parse_analysis(text: str, source: str, title: Optional[str] = None) -> AnalysisResult:
    """Structured analysis from model text; raw text is wrapped when no JSON is recoverable."""
    parsed = parse_model_json(text)
    if parsed.success and parsed.data:
        try:
            extraction = DocumentExtraction.model_validate(parsed.data)
            return AnalysisResult(
                summary=extraction.summary,
                product_description=extraction.product_description,
                suggested_codes=[c for c in extraction.suggested_codes if parse_detected_code(c)],
                key_points=extraction.key_points,
                full_text=extraction.full_text,
                questions=extraction.questions,
                source=source,
                title=title,
                partial=parsed.partial,
            )
        except ValidationError as e:
            logger.warning(f"Analysis JSON did not match schema: {e}")

    logger.warning(f"Analysis returned no usable JSON ({parsed.error}), wrapping raw text")
    return AnalysisResult(
        summary=(text or "")[:RAW_SUMMARY_CHARS],
        full_text=text or "",
        source=source,
        title=title,
        partial=True,
    )


def decode_base64(data: str) -> bytes:
    """Decode plain or data-URL base64."""
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise AnalysisError(f"Invalid base64 payload: {e}")


class DocumentAnalyzer:
    """
    Args:
        vision: Generation service for images (vision model, 45 s timeout)
        pdf: Generation service for PDF text (180 s timeout)
        http: requests session used to download PDFs given by URL
        sleep: Delay function between PDF batches (no-op in tests)
    """

    def __init__(self, vision: Optional[GenerationService] = None, pdf: Optional[GenerationService] = None,
                 http: Optional[requests.Session] = None, sleep: Callable[[float], None] = time.sleep):
        self.vision = vision or GenerationService(model=VISION_MODEL, service="vision")
        self.pdf = pdf or GenerationService(service="pdf")
        self.http = http or requests.Session()
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def analyze_image(self, images: List[Dict[str, Any]], question: str = "") -> AnalysisResult:
        """
        Analyze uploaded images.

        Args:
            images: [{"base64": ..., "media_type": "image/jpeg"}]
            question: User question, used as the analysis focus

        Raises:
            AnalysisError: No usable image in the payload
            ServiceUnavailableError: Vision model unavailable after retries
        """
        blocks = []
        for image in images or []:
            data = image.get("base64") or image.get("data")
            media_type = image.get("media_type") or image.get("mediaType") or "image/jpeg"
            if not data:
                continue
            if media_type not in SUPPORTED_IMAGE_TYPES:
                logger.warning(f"Unsupported image type {media_type}, skipping")
                continue
            url = data if data.startswith("data:") else f"data:{media_type};base64,{data}"
            blocks.append({"type": "image_url", "image_url": {"url": url}})

        if not blocks:
            raise AnalysisError("No usable image in request")

        blocks.append({"type": "text", "text": question or "Identifie ce produit pour sa classification douanière."})
        result = self.vision.complete(
            ANALYSIS_INSTRUCTIONS,
            [{"role": "user", "content": blocks}],
            max_tokens=2000,
            temperature=0.1,
        )
        analysis = parse_analysis(result.text, source="image")
        logger.info(f"Image analysis: {len(blocks) - 1} image(s), codes={analysis.suggested_codes}")
        return analysis

    # ------------------------------------------------------------------
    # PDFs
    # ------------------------------------------------------------------

    def load_pdf(self, document: Dict[str, Any]) -> bytes:
        """
        Raw bytes of a PDF given as base64 or URL.

        Raises:
            AnalysisError: Neither payload present or download failed
        """
        if document.get("base64"):
            return decode_base64(document["base64"])

        url = document.get("url")
        if not url:
            raise AnalysisError("PDF document has neither base64 content nor url")
        try:
            response = self.http.get(url, timeout=TIMEOUTS["pdf"])
            response.raise_for_status()
        except requests.RequestException as e:
            raise AnalysisError(f"PDF download failed: {e}")
        return response.content

    @staticmethod
    def extract_pages(raw: bytes, start_page: int = 1, max_pages: Optional[int] = None):
        """
        Text of a page range with pdfplumber.

        Returns:
            (text, last page read, total pages)
        """
        try:
            with pdfplumber.open(io.BytesIO(raw)) as pdf:
                total = len(pdf.pages)
                first = max(start_page, 1)
                last = total if max_pages is None else min(first + max_pages - 1, total)
                parts = []
                for number in range(first, last + 1):
                    text = pdf.pages[number - 1].extract_text() or ""
                    if text.strip():
                        parts.append(f"=== PAGE {number} ===\n{text.strip()}")
        except Exception as e:
            raise AnalysisError(f"PDF text extraction failed: {e}")
        return "\n\n".join(parts), last, total

    def _summarize(self, text: str, title: Optional[str], question: str) -> AnalysisResult:
        if not text.strip():
            return AnalysisResult(summary="Aucun texte extractible (document scanné ?)", source="pdf",
                                  title=title, partial=True)
        payload = f"Document: {title or 'PDF'}\nQuestion: {question or '-'}\n\n{text[:MAX_PDF_PROMPT_CHARS]}"
        result = self.pdf.complete(ANALYSIS_INSTRUCTIONS, payload, max_tokens=3000, temperature=0.1)
        analysis = parse_analysis(result.text, source="pdf", title=title)
        if not analysis.full_text:
            analysis.full_text = text
        return analysis

    def analyze_pdf(self, document: Dict[str, Any], question: str = "") -> AnalysisResult:
        """
        Analyze a whole PDF in one call.

        Args:
            document: {"base64" | "url", "title"?}
        """
        title = document.get("title") or document.get("name")
        text, _, total = self.extract_pages(self.load_pdf(document))
        logger.info(f"PDF analysis: '{title}' ({total} pages, {len(text)} chars)")
        return self._summarize(text, title, question)

    def analyze_pdf_batch(self, document: Dict[str, Any], start_page: int = 1,
                          max_pages: int = PDF_PAGES_PER_BATCH, question: str = "",
                          raw: Optional[bytes] = None) -> PdfBatchResult:
        """
        Analyze one page range of a PDF.

        Args:
            document: {"base64" | "url", "title"?}
            start_page: First page (1-based)
            max_pages: Pages per batch
            raw: Already loaded PDF bytes (skips the download)
        """
        title = document.get("title") or document.get("name")
        raw = raw if raw is not None else self.load_pdf(document)
        text, last, total = self.extract_pages(raw, start_page, max_pages)
        next_page = last + 1 if last < total else None
        logger.info(f"PDF batch '{title}': pages {start_page}-{last}/{total}, next={next_page}")
        return PdfBatchResult(
            start_page=start_page,
            end_page=last,
            total_pages=total,
            next_page=next_page,
            text=text,
            analysis=self._summarize(text, title, question),
        )

    def analyze_pdf_all(self, document: Dict[str, Any], question: str = "",
                        max_pages: int = PDF_PAGES_PER_BATCH,
                        delay_seconds: float = PDF_BATCH_DELAY_SECONDS) -> List[PdfBatchResult]:
        """Run analyze_pdf_batch until next_page is None, pausing between batches."""
        raw = self.load_pdf(document)
        batches = []
        next_page: Optional[int] = 1
        while next_page is not None:
            if batches:
                self.sleep(delay_seconds)
            batch = self.analyze_pdf_batch(document, next_page, max_pages, question, raw=raw)
            batches.append(batch)
            next_page = batch.next_page
        return batches
