"""
Evidence Indexer

Embeds database rows into the vector index so the hybrid retriever can
find them semantically. Vector ids are the evidence keys used by
CustomsStore.fetch_by_keys; metadata carries the scoping fields the
retriever filters on (country_code, language); records without a country
are tagged ANY_COUNTRY.

Usage:
    indexer = EvidenceIndexer(embedding_service, vector_index)
    indexer.index_all(db.session)
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from app.chat.vector_stores.base import ANY_COUNTRY, VectorIndex, VectorRecord
from app.chat.vector_stores.embeddings import EmbeddingService
from app.web.db.models import customs_tables as ct
from app.web.db.models import document_tables as dt

logger = logging.getLogger(__name__)

# (vector id, text to embed, metadata)
Row = Tuple[str, str, Dict]


def _hs_code_rows(session) -> Iterable[Row]:
    for row in session.query(ct.HSCode).filter(ct.HSCode.is_active.is_(True)):
        text = " ".join(filter(None, [row.code, row.description_fr, row.description_ar]))
        yield row.code_clean, text, {"chapter": row.chapter_number}


def _legal_chunk_rows(session) -> Iterable[Row]:
    for row in session.query(dt.LegalChunk).filter(dt.LegalChunk.is_active.is_(True)):
        country = row.source.country_code if row.source else None
        metadata = {"language": row.language or "fr", "country_code": country or ANY_COUNTRY}
        yield str(row.id), row.chunk_text, metadata


def _tariff_note_rows(session) -> Iterable[Row]:
    for row in session.query(ct.TariffNote):
        metadata = {"country_code": row.country_code or ANY_COUNTRY, "chapter": row.chapter_number}
        yield str(row.id), row.note_text, metadata


def _knowledge_rows(session) -> Iterable[Row]:
    for row in session.query(dt.KnowledgeDocument).filter(dt.KnowledgeDocument.is_active.is_(True)):
        yield row.id, f"{row.title}\n{row.content}", {"country_code": row.country_code or ANY_COUNTRY}


def _pdf_rows(session) -> Iterable[Row]:
    for pdf in session.query(dt.PdfDocument).filter(dt.PdfDocument.is_active.is_(True)):
        extraction = pdf.extractions[-1] if pdf.extractions else None
        parts = [pdf.title]
        if extraction is not None:
            parts.append(extraction.summary or "")
            parts.extend(str(p) for p in (extraction.key_points or []))
        yield pdf.id, "\n".join(p for p in parts if p), {"country_code": pdf.country_code or ANY_COUNTRY}


def _watch_rows(session) -> Iterable[Row]:
    for row in session.query(dt.VeilleDocument):
        yield row.id, f"{row.title}\n{row.content or ''}", {"country_code": row.country_code or ANY_COUNTRY}


ROW_LOADERS: Dict[str, Callable] = {
    "hs_code": _hs_code_rows,
    "legal_chunk": _legal_chunk_rows,
    "tariff_note": _tariff_note_rows,
    "knowledge": _knowledge_rows,
    "pdf": _pdf_rows,
    "watch": _watch_rows,
}


class EvidenceIndexer:

    def __init__(self, embeddings: EmbeddingService, index: VectorIndex, batch_size: int = 50):
        self.embeddings = embeddings
        self.index = index
        self.batch_size = batch_size

    def index_kind(self, session, kind: str) -> int:
        """Embed and upsert every row of one evidence kind."""
        if kind not in ROW_LOADERS:
            raise ValueError(f"Unknown evidence kind: {kind}")

        written = 0
        batch: List[VectorRecord] = []
        for key, text, metadata in ROW_LOADERS[kind](session):
            if not text or not text.strip():
                continue
            batch.append(VectorRecord(id=key, values=self.embeddings.embed(text), metadata=metadata))
            if len(batch) >= self.batch_size:
                written += self.index.upsert(kind, batch)
                batch = []
        if batch:
            written += self.index.upsert(kind, batch)

        logger.info(f"Indexed {written} {kind} vectors")
        return written

    def index_all(self, session, kinds: Optional[Iterable[str]] = None) -> Dict[str, int]:
        return {kind: self.index_kind(session, kind) for kind in (kinds or ROW_LOADERS.keys())}
