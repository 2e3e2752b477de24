"""
SQLAlchemy Customs Store

CustomsStore backed by the Flask-SQLAlchemy models. Text search uses
case-insensitive LIKE over the relevant columns; relevance for documents
is the number of term occurrences, computed after the query.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.orm import scoped_session

from app.config import DEFAULT_VAT_RATE, DOCUMENT_BASE_URL
from app.rag.evidence import (
    ControlRow,
    EvidenceRow,
    HsCodeRow,
    KnowledgeDocument,
    LegalChunk,
    LegalReference,
    PdfExtract,
    Procedure,
    TariffNote,
    TariffRow,
    WatchDocument,
)
from app.services.hs_codes import escape_search_term, extract_hs6, normalize
from app.storage.base import CustomsStore
from app.web.db.models import customs_tables as ct
from app.web.db.models import document_tables as dt

logger = logging.getLogger(__name__)


def document_url(file_path: Optional[str]) -> Optional[str]:
    """Public download URL for a stored file path."""
    if not file_path:
        return None
    if file_path.startswith(("http://", "https://")):
        return file_path
    return f"{DOCUMENT_BASE_URL.rstrip('/')}/{file_path.lstrip('/')}"


def _like(column, term: str):
    return column.ilike(f"%{escape_search_term(term)}%", escape="\\")


def _any_term(columns: Sequence, terms: Iterable[str]):
    clauses = [_like(column, term) for term in terms for column in columns]
    return or_(*clauses)


def _count_hits(text: str, terms: Sequence[str]) -> int:
    lowered = (text or "").lower()
    return sum(lowered.count(term.lower()) for term in terms)


class SQLCustomsStore(CustomsStore):
    """
    CustomsStore over a SQLAlchemy session.

    A scoped session is resolved to the calling context's Session once, so the
    store can be used from retrieval worker threads that have no app context.
    Callers sharing one store across threads must serialize access.
    """

    def __init__(self, session):
        if isinstance(session, scoped_session):
            session = session()
        self.session = session

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _hs_row(row: ct.HSCode) -> HsCodeRow:
        return HsCodeRow(
            code=row.code,
            code_clean=row.code_clean,
            description_fr=row.description_fr or "",
            description_en=row.description_en,
            description_ar=row.description_ar,
            chapter_number=row.chapter_number,
            level=row.level,
            legal_notes=row.legal_notes,
        )

    @staticmethod
    def _tariff_row(row: ct.CountryTariff) -> TariffRow:
        return TariffRow(
            country_code=row.country_code,
            national_code=row.national_code,
            hs_code_6=row.hs_code_6 or row.national_code[:6],
            description_local=row.description_local or "",
            duty_rate=row.duty_rate,
            vat_rate=row.vat_rate if row.vat_rate is not None else DEFAULT_VAT_RATE,
            is_prohibited=bool(row.is_prohibited),
            is_restricted=bool(row.is_restricted),
            source_pdf=row.source_pdf,
            source_page=row.source_page,
            source_evidence=row.source_evidence,
            download_url=document_url(row.source_pdf),
        )

    @staticmethod
    def _control_row(row: ct.ControlledProduct) -> ControlRow:
        return ControlRow(
            hs_code=row.hs_code,
            control_type=row.control_type,
            control_authority=row.control_authority,
            required_documents=list(row.required_documents or []),
            notes=row.notes,
            country_code=row.country_code,
        )

    @staticmethod
    def _note_row(row: ct.TariffNote) -> TariffNote:
        return TariffNote(
            id=row.id,
            note_text=row.note_text,
            note_type=row.note_type,
            chapter_number=row.chapter_number,
            anchor=row.anchor,
            country_code=row.country_code,
            page_number=row.page_number,
            source_pdf=row.source_pdf,
        )

    def _chunk_row(self, row: dt.LegalChunk) -> LegalChunk:
        source = row.source
        pdf = source.pdf if source is not None else None
        return LegalChunk(
            id=row.id,
            source_id=row.source_id,
            chunk_text=row.chunk_text,
            chunk_index=row.chunk_index,
            page_number=row.page_number,
            article_number=row.article_number,
            section_title=row.section_title,
            source_type=source.source_type if source else None,
            source_ref=source.source_ref if source else None,
            source_title=source.title if source else None,
            source_url=source.source_url if source else None,
            pdf_id=pdf.id if pdf else None,
            download_url=(source.source_url if source and source.source_url
                          else document_url(pdf.file_path) if pdf else None),
            language=row.language or "fr",
        )

    @staticmethod
    def _pdf_row(pdf: dt.PdfDocument, extraction: Optional[dt.PdfExtraction] = None,
                 relevance: float = 0.0) -> PdfExtract:
        return PdfExtract(
            pdf_id=pdf.id,
            title=pdf.title,
            category=pdf.category,
            summary=extraction.summary if extraction else None,
            key_points=list(extraction.key_points or []) if extraction else [],
            extracted_text=extraction.extracted_text if extraction else None,
            mentioned_hs_codes=list(extraction.mentioned_hs_codes or []) if extraction else [],
            file_path=pdf.file_path,
            download_url=document_url(pdf.file_path),
            country_code=pdf.country_code,
            relevance_score=relevance,
        )

    @staticmethod
    def _knowledge_row(row: dt.KnowledgeDocument) -> KnowledgeDocument:
        return KnowledgeDocument(
            id=row.id,
            title=row.title,
            content=row.content,
            category=row.category,
            source_url=row.source_url,
        )

    @staticmethod
    def _watch_row(row: dt.VeilleDocument) -> WatchDocument:
        return WatchDocument(
            id=row.id,
            title=row.title,
            content=row.content,
            source_url=row.source_url,
            source_name=row.source_name,
            category=row.category,
            importance=row.importance or "moyenne",
            mentioned_hs_codes=list(row.mentioned_hs_codes or []),
        )

    @staticmethod
    def _reference_row(row: dt.LegalReference) -> LegalReference:
        pdf = row.pdf
        return LegalReference(
            id=row.id,
            reference_type=row.reference_type,
            reference_number=row.reference_number,
            title=row.title,
            reference_date=row.reference_date.isoformat() if row.reference_date else None,
            context=row.context,
            pdf_id=row.pdf_id,
            pdf_title=pdf.title if pdf else None,
            download_url=document_url(pdf.file_path) if pdf else None,
        )

    @staticmethod
    def _procedure_row(row: dt.RegulatoryProcedure) -> Procedure:
        pdf = row.pdf
        return Procedure(
            id=row.id,
            procedure_name=row.procedure_name,
            authority=row.authority,
            required_documents=list(row.required_documents or []),
            deadlines=row.deadlines,
            penalties=row.penalties,
            pdf_id=row.pdf_id,
            pdf_title=pdf.title if pdf else None,
            download_url=document_url(pdf.file_path) if pdf else None,
        )

    def _evidence_row(self, row: dt.HSEvidence) -> EvidenceRow:
        source = row.source
        return EvidenceRow(
            id=row.id,
            national_code=row.national_code,
            evidence_text=row.evidence_text,
            source_id=row.source_id,
            hs_code_6=row.hs_code_6,
            page_number=row.page_number,
            confidence=row.confidence,
            source_ref=source.source_ref if source else None,
            source_title=source.title if source else None,
            download_url=self.resolve_legal_source_url(row.source_id) if row.source_id else None,
            country_code=row.country_code,
        )

    def _latest_extraction(self, pdf_id: str) -> Optional[dt.PdfExtraction]:
        return (
            self.session.query(dt.PdfExtraction)
            .filter(dt.PdfExtraction.pdf_id == pdf_id)
            .order_by(dt.PdfExtraction.created_at.desc())
            .first()
        )

    # ------------------------------------------------------------------
    # Nomenclature
    # ------------------------------------------------------------------

    def get_hs_code(self, code_clean: str) -> Optional[HsCodeRow]:
        clean = normalize(code_clean)
        row = (
            self.session.query(ct.HSCode)
            .filter(or_(ct.HSCode.code_clean == clean, ct.HSCode.code == code_clean))
            .filter(ct.HSCode.is_active.is_(True))
            .first()
        )
        return self._hs_row(row) if row else None

    def get_hs_codes_with_notes(self, codes: Sequence[str]) -> List[HsCodeRow]:
        if not codes:
            return []
        rows = (
            self.session.query(ct.HSCode)
            .filter(ct.HSCode.code_clean.in_(list(codes)))
            .filter(ct.HSCode.is_active.is_(True))
            .filter(ct.HSCode.legal_notes.isnot(None))
            .all()
        )
        return [self._hs_row(r) for r in rows]

    def search_hs_codes(self, terms: Sequence[str], limit: int = 10) -> List[HsCodeRow]:
        if not terms:
            return []
        rows = (
            self.session.query(ct.HSCode)
            .filter(ct.HSCode.is_active.is_(True))
            .filter(_any_term([ct.HSCode.description_fr, ct.HSCode.description_ar], terms))
            .limit(limit)
            .all()
        )
        return [self._hs_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Tariff lines
    # ------------------------------------------------------------------

    def _tariffs(self, country: str):
        return (
            self.session.query(ct.CountryTariff)
            .filter(ct.CountryTariff.country_code == country)
            .filter(ct.CountryTariff.is_active.is_(True))
        )

    def find_direct_tariff(self, country: str, code_clean: str) -> Optional[TariffRow]:
        clean = normalize(code_clean)
        rows = (
            self._tariffs(country)
            .filter(or_(
                ct.CountryTariff.national_code == clean,
                ct.CountryTariff.hs_code_6 == clean[:6],
            ))
            .order_by(ct.CountryTariff.national_code)
            .all()
        )
        if not rows:
            return None
        exact = [r for r in rows if r.national_code == clean]
        return self._tariff_row(exact[0] if exact else rows[0])

    def find_child_tariffs(self, country: str, prefix: str) -> List[TariffRow]:
        clean = normalize(prefix)
        rows = (
            self._tariffs(country)
            .filter(ct.CountryTariff.national_code.like(f"{escape_search_term(clean)}%", escape="\\"))
            .filter(ct.CountryTariff.national_code != clean)
            .order_by(ct.CountryTariff.national_code)
            .all()
        )
        return [self._tariff_row(r) for r in rows]

    def find_tariffs_by_prefix(self, country: str, prefix: str, limit: int = 20) -> List[TariffRow]:
        clean = normalize(prefix)
        rows = (
            self._tariffs(country)
            .filter(ct.CountryTariff.national_code.like(f"{escape_search_term(clean)}%", escape="\\"))
            .order_by(ct.CountryTariff.national_code)
            .limit(limit)
            .all()
        )
        return [self._tariff_row(r) for r in rows]

    def search_tariffs(self, country: str, terms: Sequence[str], limit: int = 10) -> List[TariffRow]:
        if not terms:
            return []
        rows = (
            self._tariffs(country)
            .filter(_any_term([ct.CountryTariff.description_local], terms))
            .limit(limit)
            .all()
        )
        return [self._tariff_row(r) for r in rows]

    def find_controls(self, country: str, code_clean: str) -> List[ControlRow]:
        clean = normalize(code_clean)
        rows = (
            self.session.query(ct.ControlledProduct)
            .filter(ct.ControlledProduct.country_code == country)
            .filter(ct.ControlledProduct.is_active.is_(True))
            .filter(or_(
                ct.ControlledProduct.hs_code == clean,
                ct.ControlledProduct.hs_code.like(f"{escape_search_term(clean[:4])}%", escape="\\"),
            ))
            .all()
        )
        return [self._control_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Notes and legal text
    # ------------------------------------------------------------------

    def find_tariff_notes(self, country: str, chapters: Sequence[str], limit: int = 20) -> List[TariffNote]:
        if not chapters:
            return []
        variants = set()
        for chapter in chapters:
            variants.add(str(chapter))
            variants.add(str(chapter).lstrip("0") or "0")
            variants.add(str(chapter).zfill(2))
        rows = (
            self.session.query(ct.TariffNote)
            .filter(ct.TariffNote.country_code == country)
            .filter(ct.TariffNote.chapter_number.in_(sorted(variants)))
            .limit(limit)
            .all()
        )
        return [self._note_row(r) for r in rows]

    def search_tariff_notes(self, country: str, terms: Sequence[str], limit: int = 10) -> List[TariffNote]:
        if not terms:
            return []
        rows = (
            self.session.query(ct.TariffNote)
            .filter(ct.TariffNote.country_code == country)
            .filter(_any_term([ct.TariffNote.note_text], terms))
            .limit(limit)
            .all()
        )
        return [self._note_row(r) for r in rows]

    def _legal_chunk_query(self, country: Optional[str]):
        query = self.session.query(dt.LegalChunk).filter(dt.LegalChunk.is_active.is_(True))
        if country:
            query = (
                query.join(dt.LegalSource, dt.LegalSource.id == dt.LegalChunk.source_id)
                .filter(dt.LegalSource.country_code == country)
            )
        return query

    def search_legal_chunks(self, terms: Sequence[str], language: Optional[str] = None,
                            limit: int = 10, country: Optional[str] = None) -> List[LegalChunk]:
        if not terms:
            return []
        query = self._legal_chunk_query(country).filter(_any_term([dt.LegalChunk.chunk_text], terms))
        if language:
            query = query.filter(dt.LegalChunk.language == language)
        rows = query.limit(limit * 3).all()
        rows.sort(key=lambda r: _count_hits(r.chunk_text, terms), reverse=True)
        return [self._chunk_row(r) for r in rows[:limit]]

    def find_legal_chunks_by_article(self, articles: Sequence[str], limit: int = 20,
                                     country: Optional[str] = None) -> List[LegalChunk]:
        numbers = sorted({a.replace(" ", "").lower() for a in articles if a and a.strip()})
        if not numbers:
            return []
        # article numbers are stored as written ("15", "15 bis")
        normalized = func.lower(func.replace(dt.LegalChunk.article_number, " ", ""))
        rows = (
            self._legal_chunk_query(country)
            .filter(normalized.in_(numbers))
            .order_by(dt.LegalChunk.id)
            .limit(limit)
            .all()
        )
        return [self._chunk_row(r) for r in rows]

    def find_evidence_rows(self, country: str, codes: Sequence[str], limit: int = 20) -> List[EvidenceRow]:
        prefixes = sorted({hs6 for hs6 in (extract_hs6(c) for c in codes) if hs6})
        if not prefixes:
            return []
        rows = (
            self.session.query(dt.HSEvidence)
            .filter(dt.HSEvidence.country_code == country)
            .filter(dt.HSEvidence.hs_code_6.in_(prefixes))
            .limit(limit)
            .all()
        )
        return [self._evidence_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def search_pdfs(self, terms: Sequence[str], country: Optional[str] = None,
                    limit: int = 5) -> List[PdfExtract]:
        if not terms:
            return []
        query = (
            self.session.query(dt.PdfDocument, dt.PdfExtraction)
            .outerjoin(dt.PdfExtraction, dt.PdfExtraction.pdf_id == dt.PdfDocument.id)
            .filter(dt.PdfDocument.is_active.is_(True))
            .filter(_any_term([
                dt.PdfDocument.title,
                dt.PdfExtraction.summary,
                dt.PdfExtraction.extracted_text,
            ], terms))
        )
        if country:
            query = query.filter(or_(dt.PdfDocument.country_code == country,
                                     dt.PdfDocument.country_code.is_(None)))

        results: Dict[str, PdfExtract] = {}
        for pdf, extraction in query.limit(limit * 4).all():
            text = " ".join(filter(None, [
                pdf.title,
                extraction.summary if extraction else None,
                extraction.extracted_text if extraction else None,
            ]))
            relevance = float(_count_hits(text, terms))
            existing = results.get(pdf.id)
            if existing is None or existing.relevance_score < relevance:
                results[pdf.id] = self._pdf_row(pdf, extraction, relevance)
        ranked = sorted(results.values(), key=lambda p: p.relevance_score, reverse=True)
        return ranked[:limit]

    def find_pdfs_by_title(self, patterns: Sequence[str], category: Optional[str] = None,
                           limit: int = 5) -> List[PdfExtract]:
        if not patterns:
            return []
        query = (
            self.session.query(dt.PdfDocument)
            .filter(dt.PdfDocument.is_active.is_(True))
            .filter(_any_term([dt.PdfDocument.title, dt.PdfDocument.file_name], patterns))
        )
        if category:
            query = query.filter(dt.PdfDocument.category == category)
        return [self._pdf_row(pdf, self._latest_extraction(pdf.id)) for pdf in query.limit(limit).all()]

    def find_pdfs_mentioning_codes(self, codes: Sequence[str], limit: int = 5,
                                   country: Optional[str] = None) -> List[PdfExtract]:
        wanted = {normalize(c)[:4] for c in codes if len(normalize(c)) >= 4}
        if not wanted:
            return []
        query = (
            self.session.query(dt.PdfDocument, dt.PdfExtraction)
            .join(dt.PdfExtraction, dt.PdfExtraction.pdf_id == dt.PdfDocument.id)
            .filter(dt.PdfDocument.is_active.is_(True))
            .filter(dt.PdfExtraction.mentioned_hs_codes.isnot(None))
        )
        if country:
            query = query.filter(or_(dt.PdfDocument.country_code == country,
                                     dt.PdfDocument.country_code.is_(None)))
        rows = query.all()
        results = []
        for pdf, extraction in rows:
            mentioned = {normalize(str(c))[:4] for c in (extraction.mentioned_hs_codes or [])}
            if mentioned & wanted:
                results.append(self._pdf_row(pdf, extraction))
            if len(results) >= limit:
                break
        return results

    def search_knowledge(self, country: str, terms: Sequence[str], limit: int = 5) -> List[KnowledgeDocument]:
        if not terms:
            return []
        rows = (
            self.session.query(dt.KnowledgeDocument)
            .filter(dt.KnowledgeDocument.is_active.is_(True))
            .filter(or_(dt.KnowledgeDocument.country_code == country,
                        dt.KnowledgeDocument.country_code.is_(None)))
            .filter(_any_term([dt.KnowledgeDocument.title, dt.KnowledgeDocument.content], terms))
            .limit(limit)
            .all()
        )
        return [self._knowledge_row(r) for r in rows]

    def search_watch_documents(self, terms: Sequence[str], limit: int = 5,
                               country: Optional[str] = None) -> List[WatchDocument]:
        if not terms:
            return []
        query = self.session.query(dt.VeilleDocument)
        if country:
            query = query.filter(or_(dt.VeilleDocument.country_code == country,
                                     dt.VeilleDocument.country_code.is_(None)))
        rows = (
            query
            .filter(_any_term([dt.VeilleDocument.title, dt.VeilleDocument.content], terms))
            .order_by(dt.VeilleDocument.collected_at.desc())
            .limit(limit)
            .all()
        )
        return [self._watch_row(r) for r in rows]

    def find_legal_references(self, terms: Sequence[str], country: str, limit: int = 10) -> List[LegalReference]:
        if not terms:
            return []
        rows = (
            self.session.query(dt.LegalReference)
            .filter(dt.LegalReference.is_active.is_(True))
            .filter(dt.LegalReference.country_code == country)
            .filter(_any_term([dt.LegalReference.reference_number, dt.LegalReference.title], terms))
            .limit(limit)
            .all()
        )
        return [self._reference_row(r) for r in rows]

    def find_procedures(self, terms: Sequence[str], country: str, limit: int = 5) -> List[Procedure]:
        if not terms:
            return []
        rows = (
            self.session.query(dt.RegulatoryProcedure)
            .filter(dt.RegulatoryProcedure.is_active.is_(True))
            .filter(dt.RegulatoryProcedure.country_code == country)
            .filter(_any_term([dt.RegulatoryProcedure.procedure_name], terms))
            .limit(limit)
            .all()
        )
        return [self._procedure_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------

    def fetch_by_keys(self, kind: str, keys: Sequence[str]) -> Dict[str, object]:
        if not keys:
            return {}
        keys = list(keys)

        if kind == HsCodeRow.kind:
            rows = self.session.query(ct.HSCode).filter(ct.HSCode.code_clean.in_(keys)).all()
            records = [self._hs_row(r) for r in rows if r.is_active]
        elif kind == LegalChunk.kind:
            ids = [int(k) for k in keys if str(k).isdigit()]
            rows = self.session.query(dt.LegalChunk).filter(dt.LegalChunk.id.in_(ids)).all()
            records = [self._chunk_row(r) for r in rows if r.is_active]
        elif kind == TariffNote.kind:
            ids = [int(k) for k in keys if str(k).isdigit()]
            rows = self.session.query(ct.TariffNote).filter(ct.TariffNote.id.in_(ids)).all()
            records = [self._note_row(r) for r in rows]
        elif kind == KnowledgeDocument.kind:
            rows = self.session.query(dt.KnowledgeDocument).filter(dt.KnowledgeDocument.id.in_(keys)).all()
            records = [self._knowledge_row(r) for r in rows if r.is_active]
        elif kind == PdfExtract.kind:
            rows = self.session.query(dt.PdfDocument).filter(dt.PdfDocument.id.in_(keys)).all()
            records = [self._pdf_row(r, self._latest_extraction(r.id)) for r in rows if r.is_active]
        elif kind == WatchDocument.kind:
            rows = self.session.query(dt.VeilleDocument).filter(dt.VeilleDocument.id.in_(keys)).all()
            records = [self._watch_row(r) for r in rows]
        else:
            raise ValueError(f"Unsupported evidence kind for hydration: {kind}")

        return {record.key: record for record in records}

    def resolve_legal_source_url(self, source_id: int) -> Optional[str]:
        source = self.session.get(dt.LegalSource, source_id)
        if source is None:
            return None
        if source.source_url:
            return source.source_url
        if source.pdf is not None:
            return document_url(source.pdf.file_path)
        return None
