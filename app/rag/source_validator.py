"""
Source Validator

Decides which retrieved evidence the generated answer may cite. Runs after
generation, on the answer text itself:

Code track
    Codes are re-extracted from the answer (bold codes > "Code SH:" phrasing
    > prose mentions, with a bare digit-group fallback). Tariffs, PDFs, legal
    references, evidence rows and legal chunks are checked against those
    codes, their chapters and the product keywords of the question. Every
    rejected candidate is recorded with a reason.

Article track
    Article references ("Article 15 bis", "Art. 42-2", "المادة 12") are
    matched against retrieved legal chunks by normalized article number. The
    download URL is resolved chunk -> legal source -> PDF, then falls back to
    the canonical customs code document.

Both tracks are merged, deduplicated by id, sorted high -> low and capped at
10. When nothing is validated the answer keeps its text but gets the
disclaimer appended.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from app.config import CANONICAL_LEGAL_DOCUMENT
from app.rag.evidence import (
    EvidenceRow,
    LegalChunk,
    LegalReference,
    PdfExtract,
    RAGContext,
    TariffRow,
)
from app.rag.inheritance import RATE_DIRECT, RATE_INHERITED, RATE_RANGE
from app.services.hs_codes import normalize
from app.storage.base import CustomsStore

logger = logging.getLogger(__name__)

MAX_VALIDATED_SOURCES = 10
MAX_CITED_CIRCULARS = 8
LEGAL_CHUNK_DIRECT_SIMILARITY = 0.65
LEGAL_CHUNK_FILTER_SIMILARITY = 0.6
MIN_KEYWORD_LENGTH = 4
EXCERPT_CHARS = 300

NO_EVIDENCE_MESSAGE = "Aucune source interne ne prouve ce code. Considérez lancer une ingestion de documents."
NO_CODES_MESSAGE = "Aucun code SH détecté dans la réponse."
DISCLAIMER = (
    "\n\n---\n⚠️ **Note**: Aucune source interne ne confirme ce code SH. "
    "Cette classification est indicative et nécessite vérification auprès des autorités douanières."
)

CONFIDENCE_ORDER = {"high": 0, "medium": 1, "low": 2}

RECOMMENDED_CODE_PATTERNS = (
    re.compile(r"\*\*(\d{4}\.\d{2}(?:\.\d{2})?(?:\.\d{2})?)\*\*"),
    re.compile(r"\*\*(\d{2}\.\d{2})\*\*"),
    re.compile(r"Code\s+(?:SH\s*)?:?\s*\*?\*?(\d{2,4}\.?\d{0,6})", re.IGNORECASE),
    re.compile(r"correspond(?:re)?.*?(\d{2,4}\.\d{2})", re.IGNORECASE),
    re.compile(r"position\s+(?:tarifaire\s+)?(\d{2,4}\.\d{2})", re.IGNORECASE),
)

FALLBACK_CODE_PATTERNS = (
    re.compile(r"\b\d{4}\.\d{2}\.\d{2}\.\d{2}\b"),
    re.compile(r"\b\d{4}\.\d{2}\.\d{2}\b"),
    re.compile(r"\b\d{4}\.\d{2}\b"),
    re.compile(r"\b\d{2}\.\d{2}\b"),
)

ARTICLE_PATTERNS = (
    re.compile(r"\b(?:Article|Art\.?)\s*(\d+(?:\s*(?:bis|ter|quater))?(?:\s*-\s*\d+)?)", re.IGNORECASE),
    re.compile(r"\bl['’]article\s+(\d+(?:\s*(?:bis|ter|quater))?)", re.IGNORECASE),
    re.compile(r"المادة\s+(\d+)"),
    re.compile(r"الفصل\s+(\d+)"),
)

PRODUCT_STOP_WORDS = {
    "quel", "quelle", "quels", "quelles", "est", "sont", "le", "la", "les", "un", "une", "des",
    "pour", "sur", "dans", "par", "avec", "sans", "que", "qui", "quoi", "comment", "pourquoi",
    "code", "sh", "tarif", "droit", "douane", "importation", "exportation", "taux", "taxe",
    "maroc", "marocain", "marocaine", "import", "export", "importer", "exporter",
}

CHAPTER_PDF_PATTERNS = (
    "Chapitre{n}",
    "Chapitre {n}",
    "Chapitre{ch}",
    "SH CODE {n}",
    "SH CODE {ch}",
    "SH_CODE_{n}",
    "SH_CODE_{ch}",
)

CANONICAL_DOCUMENT_PATTERNS = (CANONICAL_LEGAL_DOCUMENT, "Code des Douanes", "CDII", "CodeDesDouanes")

_NON_LETTERS = re.compile(r"[^\w\s]|[\d_]")
_FIRST_NUMBER = re.compile(r"(\d+)")
_PDF_CHAPTER = re.compile(r"(?:chapitre|sh[ _]code)[ _]?(\d{1,2})\b", re.IGNORECASE)


# =============================================================================
# Results
# =============================================================================

@dataclass
class ValidatedSource:
    id: str
    type: str  # tariff, note, legal, evidence, pdf
    title: str
    matched_by: str  # hs_code, keyword, chapter, direct
    confidence: str  # high, medium, low
    reference: Optional[str] = None
    download_url: Optional[str] = None
    chapter: Optional[str] = None
    excerpt: Optional[str] = None
    page_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RejectedSource:
    id: str
    reason: str


@dataclass
class ValidationResult:
    sources_validated: List[ValidatedSource] = field(default_factory=list)
    sources_rejected: List[RejectedSource] = field(default_factory=list)
    has_evidence: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sources_validated": [s.to_dict() for s in self.sources_validated],
            "sources_rejected": [asdict(r) for r in self.sources_rejected],
            "has_evidence": self.has_evidence,
            "message": self.message,
        }


@dataclass
class CitedCircular:
    id: str
    reference_type: str
    reference_number: str
    title: str
    download_url: Optional[str] = None
    pdf_title: Optional[str] = None
    reference_date: Optional[str] = None
    validated: bool = True
    page_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PostProcessResult:
    confidence: str
    response_text: str
    cited_circulars: List[CitedCircular]
    validation: ValidationResult
    context_used: Dict[str, Any]
    codes_for_validation: List[str]


# =============================================================================
# Extraction
# =============================================================================

def _valid_chapter(code: str) -> bool:
    return len(code) >= 4 and 1 <= int(code[:2]) <= 99


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def extract_codes_from_response(text: str) -> List[str]:
    """
    Codes the answer actually recommends, as digit strings.

    The bare digit-group patterns are only used when none of the
    recommendation patterns matched.
    """
    text = text or ""
    codes = []
    for pattern in RECOMMENDED_CODE_PATTERNS:
        for match in pattern.finditer(text):
            code = re.sub(r"\D", "", match.group(1))
            if _valid_chapter(code):
                codes.append(code)

    if not codes:
        for pattern in FALLBACK_CODE_PATTERNS:
            for match in pattern.finditer(text):
                code = match.group(0).replace(".", "")
                if _valid_chapter(code):
                    codes.append(code)

    return _dedupe(codes)


def extract_articles_from_response(text: str) -> List[str]:
    articles = []
    for pattern in ARTICLE_PATTERNS:
        for match in pattern.finditer(text or ""):
            number = (match.group(1) or "").strip()
            if number and len(number) <= 10:
                articles.append(re.sub(r"\s+", " ", number))
    return _dedupe(articles)


def extract_product_keywords(question: str) -> List[str]:
    """Product words of a question: letters only, longer than 3, not a stop word."""
    words = _NON_LETTERS.sub(" ", (question or "").lower()).split()
    return [w for w in words if len(w) > 3 and w not in PRODUCT_STOP_WORDS]


def _chapter_of(code: str) -> str:
    clean = normalize(code)
    return clean[:2].zfill(2) if clean else ""


def _chapters(codes: Iterable[str]) -> Set[str]:
    return {_chapter_of(c) for c in codes if len(normalize(c)) >= 2}


def pdf_chapter(pdf: PdfExtract) -> str:
    """Chapter a tariff PDF covers, from its title or the codes it mentions."""
    match = _PDF_CHAPTER.search(pdf.title or "") or _PDF_CHAPTER.search(pdf.file_path or "")
    if match:
        return match.group(1).zfill(2)
    chapters = _chapters(pdf.mentioned_hs_codes)
    if len(chapters) == 1:
        return chapters.pop()
    return ""


def _normalize_article(article: str) -> str:
    return article.lower().replace(" ", "").replace("-", "")


def _sort_and_cap(sources: List[ValidatedSource]) -> List[ValidatedSource]:
    unique: Dict[str, ValidatedSource] = {}
    for source in sources:
        unique.setdefault(source.id, source)
    ordered = sorted(unique.values(), key=lambda s: CONFIDENCE_ORDER[s.confidence])
    return ordered[:MAX_VALIDATED_SOURCES]


# =============================================================================
# Validator
# =============================================================================

class SourceValidator:
    """
    Args:
        store: Used for chapter PDF backfill and legal source URL resolution
    """

    def __init__(self, store: CustomsStore):
        self.store = store
        self._canonical_document: Optional[PdfExtract] = None
        self._canonical_looked_up = False

    # ------------------------------------------------------------------
    # Code track
    # ------------------------------------------------------------------

    def validate_for_codes(self, codes: Sequence[str], keywords: Sequence[str],
                           context: RAGContext) -> ValidationResult:
        if not codes and not keywords:
            return ValidationResult(message=NO_CODES_MESSAGE)

        clean_codes = [normalize(c) for c in codes if normalize(c)]
        chapters = _chapters(clean_codes)
        keywords_lower = [k.lower() for k in keywords]
        validated: List[ValidatedSource] = []
        rejected: List[RejectedSource] = []

        for tariff in context.tariffs:
            source = self._match_tariff(tariff, clean_codes, chapters, keywords_lower)
            if source is not None:
                validated.append(source)
            else:
                rejected.append(RejectedSource(
                    id=f"tariff:{tariff.country_code}:{tariff.national_code}",
                    reason=f"Ligne {tariff.national_code} ne correspond ni aux codes ni aux mots-clés",
                ))

        if validated and chapters:
            self._backfill_chapter_pdfs(validated, chapters)

        for pdf in context.pdf_summaries:
            source = self._match_pdf(pdf, clean_codes, chapters)
            if source is not None:
                validated.append(source)
            elif pdf.title:
                rejected.append(RejectedSource(
                    id=pdf.pdf_id,
                    reason=(f"Chapitre {pdf_chapter(pdf) or '??'} ne correspond pas aux codes détectés "
                            f"({', '.join(sorted(chapters))})"),
                ))

        for ref in context.legal_references:
            source = self._match_legal_reference(ref, clean_codes, keywords_lower)
            if source is not None:
                validated.append(source)
            else:
                rejected.append(RejectedSource(id=ref.id, reason="Référence sans lien avec les codes ou mots-clés"))

        for row in context.evidence_rows:
            source = self._match_evidence_row(row, clean_codes)
            if source is not None:
                validated.append(source)

        for chunk in context.legal_chunks:
            source = self._match_legal_chunk(chunk, keywords_lower)
            if source is not None:
                validated.append(source)

        final = _sort_and_cap(validated)
        return ValidationResult(
            sources_validated=final,
            sources_rejected=rejected,
            has_evidence=bool(final),
            message=None if final else NO_EVIDENCE_MESSAGE,
        )

    def _match_tariff(self, tariff: TariffRow, codes: Sequence[str], chapters: Set[str],
                      keywords: Sequence[str]) -> Optional[ValidatedSource]:
        tariff_code = normalize(tariff.national_code or tariff.hs_code_6)
        tariff_chapter = tariff_code[:2].zfill(2)
        description = (tariff.description_local or "").lower()

        matched_by = None
        if any(tariff_code.startswith(c) or c.startswith(tariff_code[:6]) for c in codes):
            matched_by = "hs_code"
        elif tariff_chapter in chapters and any(k in description for k in keywords):
            matched_by = "keyword"
        elif not codes and any(len(k) >= MIN_KEYWORD_LENGTH and k in description for k in keywords):
            matched_by = "keyword"
            chapters.add(tariff_chapter)

        if matched_by is None:
            return None
        return ValidatedSource(
            id=f"tariff:{tariff.country_code}:{tariff.national_code}",
            type="tariff",
            title=tariff.description_local or f"Code {tariff.national_code}",
            reference=tariff.national_code,
            download_url=tariff.download_url,
            chapter=tariff_chapter,
            excerpt=tariff.source_evidence,
            page_number=tariff.source_page,
            matched_by=matched_by,
            confidence="high" if matched_by == "hs_code" else "medium",
        )

    def _backfill_chapter_pdfs(self, validated: List[ValidatedSource], chapters: Set[str]) -> None:
        """Attach a chapter tariff PDF to validated tariffs that have no document link."""
        for chapter in sorted(chapters):
            number = int(chapter)
            for template in CHAPTER_PDF_PATTERNS:
                pattern = template.format(n=number, ch=chapter)
                try:
                    found = self.store.find_pdfs_by_title([pattern], category="tarif", limit=1)
                except Exception as e:
                    logger.warning(f"Chapter PDF lookup failed for {pattern}: {e}")
                    continue
                if not found:
                    continue

                pdf = found[0]
                title_number = _FIRST_NUMBER.search(pdf.title or "")
                if not title_number or title_number.group(1).zfill(2) != chapter:
                    continue

                if not any(v.id == pdf.pdf_id for v in validated):
                    validated.append(ValidatedSource(
                        id=pdf.pdf_id,
                        type="pdf",
                        title=pdf.title or f"Chapitre {number}",
                        reference=f"Chapitre {number}",
                        download_url=pdf.download_url,
                        chapter=chapter,
                        matched_by="chapter",
                        confidence="medium",
                    ))
                for source in validated:
                    if source.type == "tariff" and source.chapter == chapter and not source.download_url:
                        source.download_url = pdf.download_url
                break

    @staticmethod
    def _match_pdf(pdf: PdfExtract, codes: Sequence[str], chapters: Set[str]) -> Optional[ValidatedSource]:
        """A PDF backs the answer through its chapter or a mentioned heading; keyword overlap alone does not."""
        chapter = pdf_chapter(pdf)
        mentioned = [normalize(m) for m in pdf.mentioned_hs_codes]

        matched_by = None
        if chapter and chapter in chapters:
            matched_by = "chapter"
        elif any(m.startswith(c[:4]) for c in codes for m in mentioned if len(c) >= 4):
            matched_by = "hs_code"

        if matched_by is None:
            return None
        confidence = "high" if matched_by == "hs_code" else "medium"
        number = int(chapter) if chapter else None
        return ValidatedSource(
            id=pdf.pdf_id,
            type="pdf",
            title=pdf.title or (f"Chapitre {number}" if number else "Document"),
            reference=f"Chapitre {number}" if number else None,
            download_url=pdf.download_url,
            chapter=chapter or None,
            matched_by=matched_by,
            confidence=confidence,
        )

    @staticmethod
    def _match_legal_reference(ref: LegalReference, codes: Sequence[str],
                               keywords: Sequence[str]) -> Optional[ValidatedSource]:
        if not ref.reference_number:
            return None
        context_text = (ref.context or "").lower()
        title = (ref.title or "").lower()

        if any(c in context_text or c[:4] in context_text for c in codes):
            matched_by = "hs_code"
        elif any(k in context_text or k in title for k in keywords):
            matched_by = "keyword"
        else:
            return None

        return ValidatedSource(
            id=ref.id,
            type="legal",
            title=ref.title or f"{ref.reference_type} {ref.reference_number}",
            reference=ref.reference_number,
            download_url=ref.download_url,
            matched_by=matched_by,
            confidence="high" if matched_by == "hs_code" else "medium",
        )

    @staticmethod
    def _match_evidence_row(row: EvidenceRow, codes: Sequence[str]) -> Optional[ValidatedSource]:
        evidence_code = normalize(row.national_code)
        if not any(evidence_code.startswith(c[:6]) or c.startswith(evidence_code[:6]) for c in codes):
            return None
        return ValidatedSource(
            id=f"evidence:{row.id}",
            type="evidence",
            title=f"Preuve pour {row.national_code}",
            reference=row.national_code,
            download_url=row.download_url,
            excerpt=row.evidence_text,
            page_number=row.page_number,
            matched_by="hs_code",
            # extraction confidence of the row itself
            confidence="high" if row.confidence == "auto_detected_10" else "medium",
        )

    @staticmethod
    def _match_legal_chunk(chunk: LegalChunk, keywords: Sequence[str]) -> Optional[ValidatedSource]:
        if not chunk.article_number:
            return None
        text = (chunk.chunk_text or "").lower()

        if any(len(k) >= MIN_KEYWORD_LENGTH and k in text for k in keywords):
            matched_by = "keyword"
        elif chunk.similarity >= LEGAL_CHUNK_DIRECT_SIMILARITY:
            matched_by = "direct"
        else:
            return None

        section = f" - {chunk.section_title}" if chunk.section_title else ""
        reference = chunk.source_ref or chunk.source_title or ""
        return ValidatedSource(
            id=f"article:{chunk.id}:{chunk.article_number}",
            type="legal",
            title=f"Article {chunk.article_number}{section}",
            reference=f"{reference} - Art. {chunk.article_number}" if reference else f"Art. {chunk.article_number}",
            download_url=chunk.download_url or chunk.source_url,
            excerpt=(chunk.chunk_text or "")[:EXCERPT_CHARS],
            page_number=chunk.page_number,
            matched_by=matched_by,
            confidence="high" if matched_by == "direct" else "medium",
        )

    # ------------------------------------------------------------------
    # Article track
    # ------------------------------------------------------------------

    def validate_articles(self, articles: Sequence[str], context: RAGContext) -> List[ValidatedSource]:
        if not articles:
            return []

        wanted = [_normalize_article(a) for a in articles]
        validated: List[ValidatedSource] = []
        for chunk in context.legal_chunks:
            if not chunk.article_number:
                continue
            number = _normalize_article(chunk.article_number)
            if not any(number in a or a in number for a in wanted):
                continue

            title = chunk.source_title or chunk.source_ref or ""
            url = self._chunk_url(chunk)
            if url is None:
                canonical = self._canonical_pdf()
                if canonical is not None:
                    url = canonical.download_url
                    title = title or canonical.title or CANONICAL_LEGAL_DOCUMENT

            section = f" - {chunk.section_title}" if chunk.section_title else ""
            reference = chunk.source_ref or title
            validated.append(ValidatedSource(
                id=f"article:{chunk.source_id or 'unknown'}:{chunk.article_number}",
                type="legal",
                title=f"Article {chunk.article_number}{section}",
                reference=f"{reference} - Art. {chunk.article_number}" if reference else f"Art. {chunk.article_number}",
                download_url=url,
                excerpt=(chunk.chunk_text or "")[:EXCERPT_CHARS],
                page_number=chunk.page_number,
                matched_by="direct",
                confidence="high",
            ))

        unique: Dict[str, ValidatedSource] = {}
        for source in validated:
            unique.setdefault(source.id, source)
        return list(unique.values())

    def _chunk_url(self, chunk: LegalChunk) -> Optional[str]:
        if chunk.download_url or chunk.source_url:
            return chunk.download_url or chunk.source_url
        if chunk.source_id is None:
            return None
        try:
            return self.store.resolve_legal_source_url(chunk.source_id)
        except Exception as e:
            logger.warning(f"Legal source URL lookup failed for {chunk.source_id}: {e}")
            return None

    def _canonical_pdf(self) -> Optional[PdfExtract]:
        if not self._canonical_looked_up:
            self._canonical_looked_up = True
            try:
                found = self.store.find_pdfs_by_title(list(CANONICAL_DOCUMENT_PATTERNS), limit=1)
                self._canonical_document = found[0] if found else None
            except Exception as e:
                logger.warning(f"Canonical legal document lookup failed: {e}")
        return self._canonical_document

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def validate_all(self, response_text: str, question: str, context: RAGContext,
                     codes: Optional[Sequence[str]] = None) -> ValidationResult:
        """
        Run both tracks on an answer.

        Args:
            codes: Codes to validate; extracted from the answer when None
        """
        if codes is None:
            codes = extract_codes_from_response(response_text)
        articles = extract_articles_from_response(response_text)
        keywords = extract_product_keywords(question)

        code_result = self.validate_for_codes(codes, keywords, context)
        article_sources = self.validate_articles(articles, context)
        logger.info(f"Source validation: {len(code_result.sources_validated)} code sources, "
                    f"{len(article_sources)} article sources, articles={articles}")

        merged = _sort_and_cap(code_result.sources_validated + article_sources)
        return ValidationResult(
            sources_validated=merged,
            sources_rejected=code_result.sources_rejected,
            has_evidence=bool(merged),
            message=None if merged else NO_EVIDENCE_MESSAGE,
        )

    # ------------------------------------------------------------------
    # Post-processing
    # ------------------------------------------------------------------

    def _tariffs_for_chapters(self, context: RAGContext, codes: Sequence[str], chapters: Set[str],
                              keywords: Sequence[str]) -> List[TariffRow]:
        candidates = list(context.tariffs) + [
            TariffRow(
                country_code=t.country_code,
                national_code=t.code_clean,
                hs_code_6=t.code_clean[:6],
                description_local=t.description,
                duty_rate=t.duty_rate,
                vat_rate=t.vat_rate,
                source_evidence="; ".join(t.legal_notes) or None,
                download_url=t.download_url,
            )
            for t in context.tariffs_with_inheritance
        ]
        filtered = [
            t for t in candidates
            if len(normalize(t.national_code or t.hs_code_6)) >= 2
            and _chapter_of(t.national_code or t.hs_code_6) in chapters
        ]
        if filtered:
            return filtered

        country = context.country_code
        try:
            if chapters:
                for code in [c for c in codes if len(c) >= 6]:
                    direct = self.store.find_direct_tariff(country, code)
                    if direct is not None:
                        filtered.append(direct)
                if not filtered:
                    for chapter in sorted(chapters)[:3]:
                        filtered.extend(self.store.find_tariffs_by_prefix(country, chapter, limit=10))
            elif keywords:
                terms = [k for k in keywords[:3] if len(k) >= MIN_KEYWORD_LENGTH]
                if terms:
                    filtered = self.store.search_tariffs(country, terms, limit=10)
                    chapters.update(_chapter_of(t.national_code) for t in filtered)
        except Exception as e:
            logger.warning(f"Tariff lookup for validation failed: {e}")
        return filtered

    def _pdfs_for_chapters(self, context: RAGContext, chapters: Set[str]) -> List[PdfExtract]:
        filtered = [p for p in context.pdf_summaries if pdf_chapter(p) in chapters]
        if filtered or not chapters:
            return filtered
        try:
            return self.store.find_pdfs_by_title([f"SH_CODE_{ch}" for ch in sorted(chapters)], limit=5)
        except Exception as e:
            logger.warning(f"Chapter PDF lookup for validation failed: {e}")
            return []

    def post_process_response(self, response_text: str, question: str, context: RAGContext,
                              detected_codes: Sequence[str] = ()) -> PostProcessResult:
        """
        Validate an answer and build what the client receives.

        The answer is never suppressed: when codes were claimed and nothing
        backs them, the disclaimer is appended.
        """
        confidence = determine_confidence(response_text, context)
        response_codes = extract_codes_from_response(response_text)
        keywords = extract_product_keywords(question)
        codes = response_codes or [normalize(c) for c in list(detected_codes)[:5]]
        chapters = _chapters(codes)

        tariffs = self._tariffs_for_chapters(context, codes, chapters, keywords)
        pdfs = self._pdfs_for_chapters(context, chapters)

        def reference_matches(ref: LegalReference) -> bool:
            text = (ref.context or "").lower()
            title = (ref.title or "").lower()
            if any(c in text or c[:4] in text for c in codes):
                return True
            if not codes:
                return any(len(k) >= MIN_KEYWORD_LENGTH and (k in text or k in title) for k in keywords)
            return False

        def chunk_matches(chunk: LegalChunk) -> bool:
            text = (chunk.chunk_text or "").lower()
            return (
                any(len(k) >= MIN_KEYWORD_LENGTH and k in text for k in keywords)
                or chunk.similarity >= LEGAL_CHUNK_FILTER_SIMILARITY
                or bool(chunk.article_number)
            )

        evidence = RAGContext(
            country_code=context.country_code,
            tariffs=tariffs,
            pdf_summaries=pdfs,
            legal_references=[r for r in context.legal_references if reference_matches(r)],
            legal_chunks=[c for c in context.legal_chunks if chunk_matches(c)],
            evidence_rows=list(context.evidence_rows),
        )
        validation = self.validate_all(response_text, question, evidence, codes=codes)
        logger.info(
            f"Validation: validated={len(validation.sources_validated)} "
            f"rejected={len(validation.sources_rejected)} has_evidence={validation.has_evidence} "
            f"tariffs={len(tariffs)} pdfs={len(pdfs)}"
        )

        final_text = response_text
        if not validation.has_evidence and codes:
            final_text += DISCLAIMER

        context_used = context.summary_counts()
        context_used.update({
            "sources_validated": len(validation.sources_validated),
            "sources_rejected": len(validation.sources_rejected),
        })

        return PostProcessResult(
            confidence=confidence,
            response_text=final_text,
            cited_circulars=build_cited_circulars(validation.sources_validated),
            validation=validation,
            context_used=context_used,
            codes_for_validation=list(codes),
        )


def build_cited_circulars(sources: Sequence[ValidatedSource]) -> List[CitedCircular]:
    circulars = []
    for source in list(sources)[:MAX_CITED_CIRCULARS]:
        if source.type == "pdf":
            reference_type = "Tarif"
        elif source.type == "legal":
            is_article = "article" in (source.title or "").lower() or "Art." in (source.reference or "")
            reference_type = "Article" if is_article else "Circulaire"
        elif source.type == "tariff":
            reference_type = "Ligne tarifaire"
        else:
            reference_type = "Preuve"

        circulars.append(CitedCircular(
            id=source.id,
            reference_type=reference_type,
            reference_number=source.reference or source.chapter or "",
            title=source.title,
            download_url=source.download_url,
            pdf_title=source.title,
            page_number=source.page_number,
        ))
    return circulars


# =============================================================================
# Confidence
# =============================================================================

_PERCENT_BEFORE = re.compile(r"(?:confiance|fiabilité|certitude)[:\s]*(\d{1,3})\s*%", re.IGNORECASE)
_PERCENT_AFTER = re.compile(r"(\d{1,3})\s*%\s*(?:de\s+)?(?:confiance|fiabilité|certitude)", re.IGNORECASE)


def determine_confidence(response_text: str, context: RAGContext) -> str:
    """
    Confidence of an answer.

    An explicit phrase in the answer wins ("confiance élevée", "confiance
    faible"...), then a stated percentage. Without any confidence wording the
    resolved tariffs decide: a direct or inherited rate is high, a range is
    medium, nothing resolved at all is low.
    """
    lowered = (response_text or "").lower()
    confidence = "medium"

    if any(p in lowered for p in ("confiance haute", "confiance élevée", "confiance elevee",
                                  "niveau de confiance : élevé")):
        confidence = "high"
    elif any(p in lowered for p in ("confiance faible", "confiance basse")):
        confidence = "low"
    elif any(p in lowered for p in ("confiance moyenne", "confiance modérée")):
        confidence = "medium"
    else:
        match = _PERCENT_BEFORE.search(response_text or "") or _PERCENT_AFTER.search(response_text or "")
        if match:
            percentage = int(match.group(1))
            confidence = "high" if percentage >= 80 else "medium" if percentage >= 50 else "low"

    if "confiance" not in lowered and "fiabilité" not in lowered:
        sources = {t.rate_source for t in context.tariffs_with_inheritance}
        if RATE_DIRECT in sources or RATE_INHERITED in sources:
            confidence = "high"
        elif RATE_RANGE in sources:
            confidence = "medium"
        elif not context.tariffs_with_inheritance and not context.hs_codes:
            confidence = "low"

    return confidence
