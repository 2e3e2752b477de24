"""
Pytest fixtures for DouaneAI tests.

Provides:
- Flask app and test client fixtures
- Database fixtures with in-memory SQLite
- Seeded customs data (nomenclature, tariff lines, controls, documents)
- Fakes for external services (embeddings, generation, clocks)
"""

import os
import re
import sys
import zlib
from datetime import datetime
from unittest.mock import Mock

import pytest

# Set testing environment before importing app
os.environ["TESTING"] = "true"
os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
os.environ["VECTOR_BACKEND"] = "memory"
os.environ.setdefault("OPENAI_API_KEY", "test-key")

# Add the project directory to the Python path
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_dir not in sys.path:
    sys.path.insert(0, project_dir)


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Manually advanced clock; works with float seconds or datetimes."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


class FakeEmbeddingService:
    """Deterministic bag-of-words embeddings, no network."""

    def __init__(self, dimension: int = 256):
        self.dimension = dimension
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        vector = [0.0] * self.dimension
        for word in re.findall(r"\w+", (text or "").lower()):
            vector[zlib.crc32(word.encode("utf-8")) % self.dimension] += 1.0
        return vector


# ============================================================================
# Flask App Fixtures
# ============================================================================

@pytest.fixture
def app():
    """Create Flask application for testing."""
    from app.web import create_app
    from app.web.db import db

    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SECRET_KEY": "test-secret-key",
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def db_session(app):
    """Database session for direct DB access in tests."""
    from app.web.db import db
    with app.app_context():
        yield db.session


# ============================================================================
# Customs Data
# ============================================================================

@pytest.fixture
def customs_data(app):
    """
    Seed a small Moroccan tariff.

    - 8471.30: direct line at 2.5% DDI / 20% TVA
    - 8471: three lines at 2.5, 2.5 and 10 -> range
    - 0702: two lines at 40 -> inherited
    - 8517.13: direct line with an ANRT control on heading 8517
    """
    from app.web.db import db
    from app.web.db.models import (
        ControlledProduct,
        CountryTariff,
        HSCode,
        HSEvidence,
        LegalChunk,
        LegalSource,
        PdfDocument,
        PdfExtraction,
        TariffNote,
    )

    with app.app_context():
        db.session.add_all([
            HSCode(code="84", code_clean="84", chapter_number=84, level="chapter",
                   description_fr="Réacteurs nucléaires, chaudières, machines",
                   legal_notes="Le chapitre 84 ne comprend pas les meules."),
            HSCode(code="84.71", code_clean="8471", chapter_number=84, level="heading",
                   description_fr="Machines automatiques de traitement de l'information",
                   legal_notes="On entend par machines automatiques de traitement de l'information..."),
            HSCode(code="8471.30", code_clean="847130", chapter_number=84, level="subheading",
                   description_fr="Machines automatiques de traitement de l'information portables"),
            HSCode(code="07.02", code_clean="0702", chapter_number=7, level="heading",
                   description_fr="Tomates, à l'état frais ou réfrigéré"),
            HSCode(code="8517.13", code_clean="851713", chapter_number=85, level="subheading",
                   description_fr="Téléphones intelligents"),
        ])

        db.session.add_all([
            CountryTariff(country_code="MA", national_code="8471300000", hs_code_6="847130",
                          description_local="Machines automatiques de traitement de l'information portables",
                          duty_rate=2.5, vat_rate=20.0, source_pdf="tarifs/SH_CODE_84.pdf", source_page=12,
                          source_evidence="8471.30.00.00 -- portables 2,5"),
            CountryTariff(country_code="MA", national_code="8471410000", hs_code_6="847141",
                          description_local="Autres machines comportant une unité centrale",
                          duty_rate=2.5, vat_rate=20.0),
            CountryTariff(country_code="MA", national_code="8471490000", hs_code_6="847149",
                          description_local="Autres, présentées sous forme de systèmes",
                          duty_rate=10.0, vat_rate=20.0),
            CountryTariff(country_code="MA", national_code="0702000010", hs_code_6="070200",
                          description_local="Tomates cerises", duty_rate=40.0, vat_rate=20.0),
            CountryTariff(country_code="MA", national_code="0702000090", hs_code_6="070200",
                          description_local="Autres tomates", duty_rate=40.0, vat_rate=20.0),
            CountryTariff(country_code="MA", national_code="8517130000", hs_code_6="851713",
                          description_local="Téléphones intelligents (smartphones)",
                          duty_rate=2.5, vat_rate=20.0, is_restricted=True),
        ])

        db.session.add(ControlledProduct(country_code="MA", hs_code="8517", control_type="homologation",
                                         control_authority="ANRT"))
        db.session.add(TariffNote(country_code="MA", chapter_number="84", note_type="chapter_note",
                                  anchor="Note 5", note_text="Au sens du n° 84.71, on entend par machines..."))

        db.session.add(PdfDocument(id="pdf-84", title="SH CODE 84 - Réacteurs nucléaires, chaudières, machines",
                                   file_name="SH_CODE_84.pdf", file_path="tarifs/SH_CODE_84.pdf",
                                   category="tarif", country_code="MA"))
        db.session.flush()
        db.session.add(PdfExtraction(pdf_id="pdf-84", summary="Tarif du chapitre 84",
                                     extracted_text="8471.30.00.00 -- Machines portables ... 2,5 %",
                                     mentioned_hs_codes=["8471.30", "8471.41"]))

        source = LegalSource(country_code="MA", source_type="code", source_ref="CDII",
                             title="Code des Douanes et Impôts Indirects",
                             source_url="https://www.douane.gov.ma/cdii.pdf")
        db.session.add(source)
        db.session.flush()
        db.session.add(LegalChunk(source_id=source.id, chunk_index=0, article_number="15", page_number=8,
                                  chunk_text="Article 15 - La valeur en douane des marchandises importées "
                                             "est la valeur transactionnelle."))
        db.session.add(HSEvidence(country_code="MA", national_code="8471300000", hs_code_6="847130",
                                  source_id=source.id, page_number=12, confidence="auto_detected_10",
                                  evidence_text="8471.30.00.00 -- Machines portables 2,5"))
        db.session.commit()
        yield


@pytest.fixture
def store(app, customs_data):
    """SQLCustomsStore over the seeded session."""
    from app.storage import get_store
    from app.web.db import db
    return get_store(db.session)


# ============================================================================
# Mock Fixtures for External Services
# ============================================================================

@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def utc_clock():
    """Datetime clock for the response cache."""
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0))


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def mock_generation():
    """Generation service returning a fixed answer."""
    from app.rag.llm import CompletionResult

    generation = Mock()
    generation.complete.return_value = CompletionResult(
        text="Le code SH recommandé est **8471.30.00.00** (machines portables). "
             "DDI: 2,5 %, TVA: 20 %."
    )
    return generation
