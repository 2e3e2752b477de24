"""
Query Expander Tests

Tests:
- Model expansion builds the enriched search text
- Failures return the original question
- Static synonym table lookup
"""

from unittest.mock import Mock


def _generation(tool_arguments=None, error=None):
    from app.rag.llm import CompletionResult

    generation = Mock()
    if error is not None:
        generation.complete.side_effect = error
    else:
        generation.complete.return_value = CompletionResult(text="", tool_arguments=tool_arguments)
    return generation


class TestQueryExpander:

    def test_expansion_terms_and_hints(self):
        from app.rag.query_expander import QueryExpander

        generation = _generation({
            "expanded_terms": ["téléphone portable", ""],
            "arabic_terms": ["هاتف"],
            "hs_hints": ["8517"],
        })
        expanded = QueryExpander(generation).expand("prix smartphone")

        assert expanded.original == "prix smartphone"
        assert expanded.expanded_terms == ["téléphone portable"]
        assert expanded.search_text() == "prix smartphone téléphone portable هاتف chapitre 8517"

    def test_failure_returns_original(self):
        from app.rag.query_expander import QueryExpander

        expanded = QueryExpander(_generation(error=TimeoutError("slow"))).expand("tomates")

        assert expanded.search_text() == "tomates"
        assert expanded.hs_hints == []

    def test_malformed_arguments_return_original(self):
        from app.rag.query_expander import QueryExpander

        expanded = QueryExpander(_generation({"hs_hints": "07"})).expand("tomates")
        assert expanded.search_text() == "tomates"

    def test_empty_question_skips_model(self):
        from app.rag.query_expander import QueryExpander

        generation = _generation({})
        assert QueryExpander(generation).expand("  ").expanded_terms == []
        generation.complete.assert_not_called()

    def test_search_text_capped(self):
        from app.rag.query_expander import MAX_EXPANDED_CHARS, ExpandedQuery

        expanded = ExpandedQuery(original="q" * 900, expanded_terms=["terme"] * 100)
        assert len(expanded.search_text()) == MAX_EXPANDED_CHARS


class TestSynonyms:

    def test_codes_and_terms(self):
        from app.rag.query_expander import expand_with_synonyms

        result = expand_with_synonyms(["smartphone", "ordinateur"])

        assert result.codes == ["851713", "847130", "847141"]
        assert "téléphone portable" in result.terms

    def test_plural_and_case(self):
        from app.rag.query_expander import expand_with_synonyms
        assert expand_with_synonyms(["Tomates"]).codes == ["0702"]

    def test_unknown_words(self):
        from app.rag.query_expander import expand_with_synonyms

        result = expand_with_synonyms(["bidule"])
        assert result.codes == []
        assert result.terms == []
