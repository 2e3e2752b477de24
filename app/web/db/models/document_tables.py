"""
Document Store Models

Regulatory documents the advisory pipeline retrieves from and cites.

Tables:
- PdfDocument: Uploaded PDFs (tariff chapters, circulars, laws)
- PdfExtraction: Text, summary and key points extracted from a PdfDocument
- LegalSource: A legal text (law, decree, circular) identified by reference
- LegalChunk: Chunked text of a LegalSource for retrieval
- HSEvidence: Verbatim lines proving a national code exists in a source
- LegalReference: References cited inside a PdfDocument
- RegulatoryProcedure: Procedures described by a PdfDocument
- KnowledgeDocument: Curated knowledge base articles
- VeilleDocument: Regulatory watch items (news, notices)
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, UniqueConstraint
from app.web.db import db
from app.web.db.models.base import BaseModel


def generate_uuid() -> str:
    return str(uuid.uuid4())


class PdfDocument(BaseModel):
    """
    Stored PDF.

    category: 'tarif', 'circulaire', 'loi', 'accord', 'note'
    file_path is relative to DOCUMENT_BASE_URL.
    """
    __tablename__ = "pdf_documents"

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    title = db.Column(db.Text, nullable=False)
    file_name = db.Column(db.Text, nullable=False)
    file_path = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), nullable=False)
    country_code = db.Column(db.String(3), nullable=True, default="MA")
    reference = db.Column(db.Text, nullable=True)
    related_hs_codes = db.Column(JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    extractions = db.relationship('PdfExtraction', backref='pdf', cascade='all, delete-orphan')


class PdfExtraction(BaseModel):
    __tablename__ = "pdf_extractions"

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    pdf_id = db.Column(db.String(36), db.ForeignKey('pdf_documents.id'), nullable=False, index=True)
    extracted_text = db.Column(db.Text, nullable=True)
    summary = db.Column(db.Text, nullable=True)
    key_points = db.Column(JSON, nullable=True)
    mentioned_hs_codes = db.Column(JSON, nullable=True)
    extraction_model = db.Column(db.String(64), nullable=True)

    # Batch extraction cursor
    last_page_processed = db.Column(db.Integer, nullable=True)
    total_pages = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class LegalSource(BaseModel):
    """
    Legal text identified by (country, type, ref).

    source_type: 'code', 'loi', 'decret', 'circulaire', 'tarif'
    """
    __tablename__ = "legal_sources"
    __table_args__ = (
        UniqueConstraint('country_code', 'source_type', 'source_ref', name='uq_legal_source_ref'),
    )

    id = db.Column(db.Integer, primary_key=True)
    country_code = db.Column(db.String(3), nullable=False, default="MA")
    source_type = db.Column(db.String(30), nullable=False)
    source_ref = db.Column(db.Text, nullable=False)
    title = db.Column(db.Text, nullable=True)
    issuer = db.Column(db.Text, nullable=True)
    source_date = db.Column(db.Date, nullable=True)
    source_url = db.Column(db.Text, nullable=True)
    pdf_id = db.Column(db.String(36), db.ForeignKey('pdf_documents.id'), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    chunks = db.relationship('LegalChunk', backref='source', cascade='all, delete-orphan')
    pdf = db.relationship('PdfDocument')


class LegalChunk(BaseModel):
    __tablename__ = "legal_chunks"
    __table_args__ = (
        db.Index('idx_legal_chunks_source_page', 'source_id', 'page_number'),
    )

    id = db.Column(db.Integer, primary_key=True)
    source_id = db.Column(db.Integer, db.ForeignKey('legal_sources.id'), nullable=False, index=True)
    chunk_index = db.Column(db.Integer, nullable=False, default=0)
    chunk_text = db.Column(db.Text, nullable=False)
    page_number = db.Column(db.Integer, nullable=True)
    article_number = db.Column(db.String(20), nullable=True, index=True)
    section_title = db.Column(db.Text, nullable=True)
    language = db.Column(db.String(2), nullable=False, default="fr")  # 'fr' or 'ar'
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class HSEvidence(BaseModel):
    """
    Proof that a national code appears in a source.

    confidence: 'auto_detected_10' when a full 10-digit line was matched,
    'auto_detected_6' / 'manual' otherwise.
    """
    __tablename__ = "hs_evidence"

    id = db.Column(db.Integer, primary_key=True)
    country_code = db.Column(db.String(3), nullable=False, default="MA")
    national_code = db.Column(db.String(20), nullable=False, index=True)
    hs_code_6 = db.Column(db.String(6), nullable=True, index=True)
    source_id = db.Column(db.Integer, db.ForeignKey('legal_sources.id'), nullable=False)
    page_number = db.Column(db.Integer, nullable=True)
    evidence_text = db.Column(db.Text, nullable=False)
    confidence = db.Column(db.String(30), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    source = db.relationship('LegalSource')


class LegalReference(BaseModel):
    """
    Reference found inside a PDF.

    reference_type: circulaire, loi, décret, arrêté, article, note, convention
    context: abroge, modifie, complète, cite
    """
    __tablename__ = "legal_references"

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    pdf_id = db.Column(db.String(36), db.ForeignKey('pdf_documents.id'), nullable=False, index=True)
    reference_type = db.Column(db.String(50), nullable=False)
    reference_number = db.Column(db.Text, nullable=False)
    title = db.Column(db.Text, nullable=True)
    reference_date = db.Column(db.Date, nullable=True)
    context = db.Column(db.String(50), nullable=True)
    country_code = db.Column(db.String(3), nullable=False, default="MA")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    pdf = db.relationship('PdfDocument')


class RegulatoryProcedure(BaseModel):
    __tablename__ = "regulatory_procedures"

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    pdf_id = db.Column(db.String(36), db.ForeignKey('pdf_documents.id'), nullable=False, index=True)
    procedure_name = db.Column(db.Text, nullable=False)
    required_documents = db.Column(JSON, nullable=True)
    deadlines = db.Column(db.Text, nullable=True)
    penalties = db.Column(db.Text, nullable=True)
    authority = db.Column(db.Text, nullable=True)
    country_code = db.Column(db.String(3), nullable=False, default="MA")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    pdf = db.relationship('PdfDocument')


class KnowledgeDocument(BaseModel):
    __tablename__ = "knowledge_documents"

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    title = db.Column(db.Text, nullable=False)
    content = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), nullable=True)
    country_code = db.Column(db.String(3), nullable=True, default="MA")
    source_url = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class VeilleDocument(BaseModel):
    """
    Regulatory watch item.

    importance: 'haute', 'moyenne', 'basse'
    """
    __tablename__ = "veille_documents"

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    title = db.Column(db.Text, nullable=False)
    content = db.Column(db.Text, nullable=True)
    source_url = db.Column(db.Text, nullable=True)
    source_name = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), nullable=True)
    country_code = db.Column(db.String(3), nullable=True, default="MA")
    importance = db.Column(db.String(20), nullable=False, default="moyenne")
    mentioned_hs_codes = db.Column(JSON, nullable=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)

    collected_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
