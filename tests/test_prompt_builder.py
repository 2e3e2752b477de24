"""
Prompt Builder Tests

Tests:
- Identity line and country adjective
- Empty sections omitted, empty sources list flagged
- Available sources deduplicated by URL
- Long documents represented by scored passages
- Uploaded document analysis section
"""


def _tariff(code="847130", download_url="/documents/tarifs/SH_CODE_84.pdf"):
    from app.rag.inheritance import RATE_DIRECT, EffectiveTariff

    tariff = EffectiveTariff.empty(code)
    tariff.found = True
    tariff.rate_source = RATE_DIRECT
    tariff.duty_rate = 2.5
    tariff.vat_rate = 20.0
    tariff.download_url = download_url
    return tariff


class TestSystemPrompt:

    def test_empty_context(self):
        from app.rag.evidence import RAGContext
        from app.rag.prompt_builder import build_system_prompt

        prompt = build_system_prompt(RAGContext())

        assert "DouaneAI" in prompt
        assert "réglementation marocaine" in prompt
        assert "Aucun document source" in prompt
        assert "Aucun tarif trouvé" in prompt
        assert "### Produits contrôlés" not in prompt
        assert "### Textes juridiques pertinents" not in prompt

    def test_country_adjective(self):
        from app.rag.evidence import RAGContext
        from app.rag.prompt_builder import build_system_prompt

        assert "réglementation sénégalaise" in build_system_prompt(RAGContext(country_code="SN"))
        assert "réglementation africaine" in build_system_prompt(RAGContext(country_code="GH"))

    def test_tariff_and_controls(self):
        from app.rag.evidence import ControlRow, RAGContext
        from app.rag.prompt_builder import build_system_prompt

        context = RAGContext(
            tariffs_with_inheritance=[_tariff()],
            controlled_products=[ControlRow(hs_code="8517", control_type="homologation", control_authority="ANRT")],
        )
        prompt = build_system_prompt(context)

        assert "## Code 8471.30" in prompt
        assert "### Produits contrôlés" in prompt
        assert '"control_authority": "ANRT"' in prompt
        assert "URL_TÉLÉCHARGEMENT: /documents/tarifs/SH_CODE_84.pdf" in prompt

    def test_pdf_passages_instead_of_full_text(self):
        from app.rag.evidence import PdfExtract, RAGContext
        from app.rag.prompt_builder import build_system_prompt

        relevant = "8471.30.00.00 -- Machines automatiques portables, droit d'importation 2,5 %"
        unrelated = "Paragraphe sans rapport " * 15
        pdf = PdfExtract(pdf_id="pdf-84", title="SH CODE 84", extracted_text=f"{relevant}\n\n{unrelated}",
                         download_url="/documents/tarifs/SH_CODE_84.pdf")

        prompt = build_system_prompt(RAGContext(pdf_summaries=[pdf]), detected_codes=["847130"])

        assert '**EXTRAITS PERTINENTS de "SH CODE 84":**' in prompt
        assert relevant in prompt
        assert "Paragraphe sans rapport" not in prompt
        assert "**URL EXACTE À CITER:** /documents/tarifs/SH_CODE_84.pdf" in prompt

    def test_legal_chunk_header(self):
        from app.rag.evidence import LegalChunk, RAGContext
        from app.rag.prompt_builder import build_system_prompt

        chunk = LegalChunk(id=1, source_id=1, chunk_text="Article 15 - La valeur en douane est la valeur transactionnelle.",
                           article_number="15", page_number=8, source_title="Code des Douanes",
                           source_url="https://www.douane.gov.ma/cdii.pdf")
        prompt = build_system_prompt(RAGContext(legal_chunks=[chunk]), keywords=["valeur"])

        assert "**Code des Douanes** - Article 15 (p. 8)" in prompt
        assert "**URL:** https://www.douane.gov.ma/cdii.pdf" in prompt

    def test_analysis_section(self):
        from app.rag.evidence import RAGContext
        from app.rag.prompt_builder import build_system_prompt
        from app.services.document_analysis import AnalysisResult

        analysis = AnalysisResult(summary="Facture", product_description="Ordinateur portable 14 pouces",
                                  suggested_codes=["8471.30"], questions=["Quel processeur ?"])
        prompt = build_system_prompt(RAGContext(), analyses=[analysis])

        assert "**Description du produit identifié:** Ordinateur portable 14 pouces" in prompt
        assert "**Codes SH suggérés:** 8471.30" in prompt
        assert "Quel processeur ?" in prompt


class TestAvailableSources:

    def test_deduplicated_by_url(self):
        from app.rag.evidence import PdfExtract, RAGContext
        from app.rag.prompt_builder import build_available_sources

        url = "/documents/tarifs/SH_CODE_84.pdf"
        context = RAGContext(
            tariffs_with_inheritance=[_tariff(download_url=url)],
            pdf_summaries=[PdfExtract(pdf_id="pdf-84", title="SH CODE 84", download_url=url)],
        )
        sources = build_available_sources(context)

        assert len(sources) == 1
        assert url in sources[0]

    def test_records_without_url_skipped(self):
        from app.rag.evidence import KnowledgeDocument, RAGContext
        from app.rag.prompt_builder import build_available_sources

        context = RAGContext(knowledge_documents=[KnowledgeDocument(id="k1", title="Guide", content="...")])
        assert build_available_sources(context) == []
