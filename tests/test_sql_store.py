"""
SQL Customs Store Tests

Query methods against the seeded in-memory database, including country
scoping against a second (Senegal) jurisdiction.
"""

import pytest


@pytest.mark.parametrize("file_path,expected", [
    (None, None),
    ("tarifs/SH_CODE_84.pdf", "/documents/tarifs/SH_CODE_84.pdf"),
    ("/tarifs/SH_CODE_84.pdf", "/documents/tarifs/SH_CODE_84.pdf"),
    ("https://www.douane.gov.ma/a.pdf", "https://www.douane.gov.ma/a.pdf"),
])
def test_document_url(file_path, expected):
    from app.storage import document_url
    assert document_url(file_path) == expected


class TestNomenclature:

    def test_get_hs_code(self, store):
        row = store.get_hs_code("8471.30")
        assert row.code_clean == "847130"
        assert row.level == "subheading"
        assert store.get_hs_code("999999") is None

    def test_notes_only_for_codes_with_notes(self, store):
        rows = store.get_hs_codes_with_notes(["84", "8471", "847130"])
        assert sorted(r.code_clean for r in rows) == ["84", "8471"]

    def test_search(self, store):
        assert [r.code_clean for r in store.search_hs_codes(["tomates"])] == ["0702"]


class TestTariffs:

    def test_direct_tariff(self, store):
        tariff = store.find_direct_tariff("MA", "847130")

        assert tariff.national_code == "8471300000"
        assert tariff.duty_rate == 2.5
        assert tariff.download_url == "/documents/tarifs/SH_CODE_84.pdf"
        assert store.find_direct_tariff("SN", "847130") is None

    def test_child_tariffs(self, store):
        children = store.find_child_tariffs("MA", "8471")
        assert [c.national_code for c in children] == ["8471300000", "8471410000", "8471490000"]

    def test_search_tariffs(self, store):
        rows = store.search_tariffs("MA", ["smartphones"])
        assert [r.national_code for r in rows] == ["8517130000"]
        assert rows[0].is_restricted is True

    def test_controls_match_heading(self, store):
        controls = store.find_controls("MA", "851713")
        assert [(c.hs_code, c.control_authority) for c in controls] == [("8517", "ANRT")]
        assert store.find_controls("MA", "847130") == []


class TestLegalText:

    def test_tariff_notes_chapter_variants(self, store):
        assert len(store.find_tariff_notes("MA", ["84"])) == 1
        assert store.find_tariff_notes("MA", ["85"]) == []

    def test_legal_chunk_search(self, store):
        chunks = store.search_legal_chunks(["valeur transactionnelle"])

        assert len(chunks) == 1
        assert chunks[0].article_number == "15"
        assert chunks[0].source_title == "Code des Douanes et Impôts Indirects"
        assert chunks[0].download_url == "https://www.douane.gov.ma/cdii.pdf"

    def test_chunks_by_article(self, store):
        assert [c.article_number for c in store.find_legal_chunks_by_article(["15"])] == ["15"]
        assert store.find_legal_chunks_by_article(["42"]) == []

    def test_evidence_rows(self, store):
        rows = store.find_evidence_rows("MA", ["8471.30.00.00"])

        assert [r.national_code for r in rows] == ["8471300000"]
        assert rows[0].download_url == "https://www.douane.gov.ma/cdii.pdf"
        assert store.find_evidence_rows("MA", ["8471"]) == []
        assert [r.national_code for r in store.find_evidence_rows("MA", ["SH 8471.30 (portables)"])] == ["8471300000"]


class TestDocuments:

    def test_search_pdfs_relevance(self, store):
        pdfs = store.search_pdfs(["portables"], country="MA")

        assert [p.pdf_id for p in pdfs] == ["pdf-84"]
        assert pdfs[0].relevance_score >= 1.0
        assert pdfs[0].summary == "Tarif du chapitre 84"

    def test_pdfs_by_title(self, store):
        assert [p.pdf_id for p in store.find_pdfs_by_title(["SH_CODE_84"])] == ["pdf-84"]

    def test_pdfs_mentioning_codes(self, store):
        assert [p.pdf_id for p in store.find_pdfs_mentioning_codes(["847130"])] == ["pdf-84"]
        assert store.find_pdfs_mentioning_codes(["0702"]) == []

    def test_empty_terms(self, store):
        assert store.search_pdfs([]) == []
        assert store.search_knowledge("MA", []) == []
        assert store.search_watch_documents([]) == []
        assert store.find_procedures([], "MA") == []


class TestHydration:

    def test_fetch_hs_codes(self, store):
        records = store.fetch_by_keys("hs_code", ["847130", "999999"])
        assert list(records) == ["847130"]

    def test_fetch_pdf_with_extraction(self, store):
        record = store.fetch_by_keys("pdf", ["pdf-84"])["pdf-84"]
        assert record.mentioned_hs_codes == ["8471.30", "8471.41"]

    def test_unknown_kind(self, store):
        with pytest.raises(ValueError):
            store.fetch_by_keys("circular", ["1"])

    def test_resolve_source_url(self, store):
        chunk = store.find_legal_chunks_by_article(["15"])[0]
        assert store.resolve_legal_source_url(chunk.source_id) == "https://www.douane.gov.ma/cdii.pdf"
        assert store.resolve_legal_source_url(999) is None


class TestCountryScope:

    @pytest.fixture
    def senegal_data(self, app, customs_data):
        from app.web.db import db
        from app.web.db.models import (
            LegalChunk, LegalSource, PdfDocument, PdfExtraction, VeilleDocument,
        )

        source = LegalSource(country_code="SN", source_type="code", source_ref="CD-SN",
                             title="Code des douanes du Sénégal")
        db.session.add(source)
        db.session.flush()
        db.session.add(LegalChunk(source_id=source.id, chunk_index=0, article_number="15",
                                  chunk_text="Article 15 : la valeur transactionnelle au Sénégal"))
        db.session.add(PdfDocument(id="pdf-sn-84", title="Tarif Sénégal chapitre 84", file_name="SN_84.pdf",
                                   file_path="sn/SN_84.pdf", category="tarif", country_code="SN"))
        db.session.add(PdfExtraction(pdf_id="pdf-sn-84", summary="Tarif SN", mentioned_hs_codes=["8471.30"]))
        db.session.add(VeilleDocument(id="veille-sn", title="Tomates: nouveau droit", country_code="SN"))
        db.session.add(VeilleDocument(id="veille-all", title="Tomates: règles d'origine", country_code=None))
        db.session.commit()

    def test_legal_chunks_scoped_through_source(self, store, senegal_data):
        chunks = store.search_legal_chunks(["valeur transactionnelle"], country="MA")

        assert [c.source_title for c in chunks] == ["Code des Douanes et Impôts Indirects"]
        assert len(store.search_legal_chunks(["valeur transactionnelle"])) == 2

    def test_chunks_by_article_scoped(self, store, senegal_data):
        assert len(store.find_legal_chunks_by_article(["15"], country="MA")) == 1
        assert len(store.find_legal_chunks_by_article(["15"], country="SN")) == 1
        assert len(store.find_legal_chunks_by_article(["15"])) == 2

    def test_pdfs_mentioning_codes_scoped(self, store, senegal_data):
        assert [p.pdf_id for p in store.find_pdfs_mentioning_codes(["847130"], country="MA")] == ["pdf-84"]

    def test_watch_documents_keep_countryless(self, store, senegal_data):
        docs = store.search_watch_documents(["tomates"], country="MA")
        assert [d.id for d in docs] == ["veille-all"]


class TestArticleLookup:

    def test_article_numbers_normalized_in_query(self, app, store):
        from app.web.db import db
        from app.web.db.models import LegalChunk

        source_id = store.find_legal_chunks_by_article(["15"])[0].source_id
        db.session.add(LegalChunk(source_id=source_id, chunk_index=5, article_number="15 BIS",
                                  chunk_text="Article 15 bis"))
        db.session.commit()

        assert [c.article_number for c in store.find_legal_chunks_by_article(["15bis"])] == ["15 BIS"]
        assert len(store.find_legal_chunks_by_article(["15", "15 bis"], limit=1)) == 1
        assert store.find_legal_chunks_by_article(["  "]) == []
