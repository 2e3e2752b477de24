"""
Passage Scorer Tests

Tests:
- Code, keyword and regulatory-term scoring
- Length penalty and zero floor
- Paragraph splitting and merging
- Passage selection under count/char budgets
- Unified scoring across evidence kinds
"""

import pytest

RATE_SENTENCE = "Le taux de droit pour 8471.30 est de 2,5 %. "


def _long_paragraphs(count=3):
    return "\n\n".join((RATE_SENTENCE * 8).strip() for _ in range(count))


class TestScorePassage:

    def test_exact_code_beats_chapter(self):
        from app.rag.passage_scorer import score_passage

        exact = score_passage("Position 8471.30.00.00 machines portables", ["847130"], [])
        chapter = score_passage("Chapitre 84 - machines", ["847130"], [])

        assert exact.score == 11
        assert exact.matched_codes == ["847130"]
        assert chapter.score == 3
        assert chapter.matched_codes == []

    def test_heading_prefix(self):
        from app.rag.passage_scorer import score_passage

        passage = score_passage("Les machines du 8471 sont visées", ["847130"], [])

        assert passage.score == 5
        assert passage.matched_codes == ["847130 (prefix)"]

    def test_keyword_repeat_bonus(self):
        from app.rag.passage_scorer import score_passage

        passage = score_passage("tomates tomates tomates tomates", [], ["Tomates"])

        assert passage.score == 5
        assert passage.matched_keywords == ["Tomates"]

    def test_long_text_floored_at_zero(self):
        from app.rag.passage_scorer import score_passage
        assert score_passage("x" * 1400, [], []).score == 0

    def test_length_penalty(self):
        from app.rag.passage_scorer import score_passage

        short = score_passage("8471.30 " + "y" * 100, ["847130"], [])
        long = score_passage("8471.30 " + "y" * 1000, ["847130"], [])

        assert short.score - long.score == (len("8471.30 " + "y" * 1000) - 800) // 200


class TestParagraphs:

    def test_short_fragments_dropped_and_neighbours_merged(self):
        from app.rag.passage_scorer import split_into_paragraphs

        text = "Court.\n\n" + "A" * 100 + "\n\n" + "B" * 120 + "\n\n" + "C" * 250
        paragraphs = split_into_paragraphs(text)

        assert paragraphs == ["A" * 100 + "\n" + "B" * 120, "C" * 250]

    def test_empty_text(self):
        from app.rag.passage_scorer import split_into_paragraphs
        assert split_into_paragraphs("") == []


class TestExtractTopPassages:

    def test_char_budget_skips_passages_that_do_not_fit(self):
        from app.rag.passage_scorer import extract_top_passages

        passages = extract_top_passages(_long_paragraphs(), ["847130"], [], max_total_chars=800)

        assert len(passages) == 2
        assert sum(len(p.text) for p in passages) <= 800

    def test_high_scoring_passage_truncated_into_remaining_budget(self):
        from app.rag.passage_scorer import extract_top_passages

        passages = extract_top_passages(_long_paragraphs(), ["847130"], [], max_total_chars=1000)

        assert len(passages) == 3
        assert passages[-1].text.endswith("...")
        assert len(passages[-1].text) == 1000 - 2 * len(passages[0].text) - 50 + 3

    def test_max_passages(self):
        from app.rag.passage_scorer import extract_top_passages

        assert len(extract_top_passages(_long_paragraphs(4), ["847130"], [], max_passages=1)) == 1

    def test_zero_score_passages_excluded(self):
        from app.rag.passage_scorer import extract_top_passages

        assert extract_top_passages("z" * 400, ["847130"], ["tomates"]) == []

    def test_format_for_prompt(self):
        from app.rag.passage_scorer import ScoredPassage, format_passages_for_prompt

        text = format_passages_for_prompt([ScoredPassage(text="8471.30 ...", score=11, matched_codes=["847130"])],
                                          "SH CODE 84")

        assert text.startswith('**EXTRAITS PERTINENTS de "SH CODE 84":**')
        assert "[Extrait 1] (score: 11) [codes: 847130]" in text
        assert "> 8471.30 ..." in text
        assert format_passages_for_prompt([], "x") == ""


class TestUnifiedScoring:

    def test_score_documents_mixed_kinds(self):
        from app.rag.evidence import HsCodeRow, LegalChunk, TariffRow
        from app.rag.passage_scorer import score_documents

        items = [
            LegalChunk(id=1, source_id=1, chunk_text="Article 15 - La valeur en douane"),
            TariffRow(country_code="MA", national_code="8471300000", hs_code_6="847130",
                      description_local="Machines portables", duty_rate=2.5, vat_rate=20.0),
            HsCodeRow(code="84.71", code_clean="8471", description_fr="Machines automatiques"),
        ]
        results = score_documents(items, ["847130"], ["machines"])

        assert results[0].kind == "tariff"
        assert results[0].text.startswith("8471300000 Machines portables")
        assert results[-1].kind == "legal_chunk"

    def test_unknown_kind_raises(self):
        from app.rag.passage_scorer import passage_text

        with pytest.raises(ValueError):
            passage_text(object())
