"""
SQLAlchemy models for the customs nomenclature.

These tables are populated by the back-office tools from the official tariff
(nomenclature PDFs, chapter notes, control lists) and are read-only for the
advisory pipeline.

Tables:
- HSCode: International HS nomenclature (2/4/6 digits) with legal notes
- CountryTariff: National tariff lines (8/10 digits) per country
- ControlledProduct: Import controls (ONSSA, MCINET, ANRT...) per code
- TariffNote: Chapter notes, definitions and exclusions
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, UniqueConstraint
from app.web.db import db
from app.web.db.models.base import BaseModel


class HSCode(BaseModel):
    """
    HS nomenclature entry.

    code is the display form ("8471.30"), code_clean the storage key
    ("847130"). legal_notes holds the chapter/heading notes that descendant
    codes inherit.
    """
    __tablename__ = "hs_codes"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), nullable=False)
    code_clean = db.Column(db.String(20), nullable=False, unique=True, index=True)
    description_fr = db.Column(db.Text, nullable=False, default="")
    description_en = db.Column(db.Text, nullable=True)
    description_ar = db.Column(db.Text, nullable=True)
    chapter_number = db.Column(db.Integer, nullable=True, index=True)
    level = db.Column(db.String(20), nullable=True)  # chapter, heading, subheading
    legal_notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=datetime.utcnow)


class CountryTariff(BaseModel):
    """
    National tariff line.

    duty_rate is the DDI (import duty) in percent; vat_rate defaults to the
    country rate when NULL.
    """
    __tablename__ = "country_tariffs"
    __table_args__ = (
        UniqueConstraint('country_code', 'national_code', name='uq_country_national_code'),
        db.Index('idx_country_tariffs_hs6', 'country_code', 'hs_code_6'),
    )

    id = db.Column(db.Integer, primary_key=True)
    country_code = db.Column(db.String(3), nullable=False, default="MA")
    national_code = db.Column(db.String(20), nullable=False, index=True)
    hs_code_6 = db.Column(db.String(6), nullable=False)
    description_local = db.Column(db.Text, nullable=True)
    duty_rate = db.Column(db.Float, nullable=True)
    vat_rate = db.Column(db.Float, nullable=True)
    is_prohibited = db.Column(db.Boolean, nullable=False, default=False)
    is_restricted = db.Column(db.Boolean, nullable=False, default=False)

    # Provenance
    source_pdf = db.Column(db.Text, nullable=True)  # file path of the nomenclature PDF
    source_page = db.Column(db.Integer, nullable=True)
    source_evidence = db.Column(db.Text, nullable=True)  # verbatim line from the PDF

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=datetime.utcnow)


class ControlledProduct(BaseModel):
    """Import control attached to a code (exact or heading-level)."""
    __tablename__ = "controlled_products"

    id = db.Column(db.Integer, primary_key=True)
    country_code = db.Column(db.String(3), nullable=False, default="MA")
    hs_code = db.Column(db.String(20), nullable=False, index=True)
    control_type = db.Column(db.String(50), nullable=False)  # 'sanitaire', 'licence', 'homologation'
    control_authority = db.Column(db.Text, nullable=True)  # 'ONSSA', 'MCINET', 'ANRT'
    required_norm = db.Column(db.Text, nullable=True)
    required_documents = db.Column(JSON, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class TariffNote(BaseModel):
    """
    Chapter-level note from the tariff.

    note_type: 'chapter_note', 'definition', 'exclusion', 'subheading_note'
    """
    __tablename__ = "tariff_notes"
    __table_args__ = (
        db.Index('idx_tariff_notes_chapter', 'country_code', 'chapter_number'),
    )

    id = db.Column(db.Integer, primary_key=True)
    country_code = db.Column(db.String(3), nullable=False, default="MA")
    chapter_number = db.Column(db.String(10), nullable=True)
    note_type = db.Column(db.String(30), nullable=False, default="chapter_note")
    anchor = db.Column(db.String(100), nullable=True)  # "Note 1", "Note de sous-positions 2"
    note_text = db.Column(db.Text, nullable=False)
    page_number = db.Column(db.Integer, nullable=True)
    source_pdf = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "country_code": self.country_code,
            "chapter_number": self.chapter_number,
            "note_type": self.note_type,
            "anchor": self.anchor,
            "note_text": self.note_text,
            "page_number": self.page_number,
        }
