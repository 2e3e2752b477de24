"""
Re-ranker Tests

Tests:
- Small passage sets keep their order without a model call
- Model scores reorder passages; missing indices get the default score
- Failures and malformed tool calls fall back to the incoming order
- TF-IDF re-ranking
"""

from unittest.mock import Mock


def _passages(count):
    from app.rag.reranker import PassageInput
    return [PassageInput(text=f"Passage {i}", kind="legal_chunk", payload=i) for i in range(count)]


def _generation(tool_arguments=None, error=None):
    from app.rag.llm import CompletionResult

    generation = Mock()
    if error is not None:
        generation.complete.side_effect = error
    else:
        generation.complete.return_value = CompletionResult(text="", tool_arguments=tool_arguments)
    return generation


class TestLLMReranker:

    def test_three_passages_trusted_as_is(self):
        from app.rag.reranker import LLMReranker

        generation = _generation()
        ranked = LLMReranker(generation).rerank("q", _passages(3))

        assert [(r.index, r.score) for r in ranked] == [(0, 10.0), (1, 9.0), (2, 8.0)]
        generation.complete.assert_not_called()

    def test_empty_input(self):
        from app.rag.reranker import LLMReranker
        assert LLMReranker(_generation()).rerank("q", []) == []

    def test_model_scores_reorder(self):
        """Unscored passages default to 5.0 and keep their relative order."""
        from app.rag.reranker import LLMReranker

        generation = _generation({"scores": [{"index": 0, "score": 2}, {"index": 3, "score": 9}]})
        ranked = LLMReranker(generation).rerank("Taux des tomates ?", _passages(5))

        assert [r.index for r in ranked] == [3, 1, 2, 4, 0]
        assert ranked[1].score == 5.0
        assert ranked[0].payload == 3

        kwargs = generation.complete.call_args.kwargs
        assert kwargs["tool"]["function"]["name"] == "rank_passages"
        assert kwargs["temperature"] == 0

    def test_top_k(self):
        from app.rag.reranker import LLMReranker

        generation = _generation({"scores": [{"index": 4, "score": 10}]})
        ranked = LLMReranker(generation).rerank("q", _passages(5), top_k=2)

        assert [r.index for r in ranked] == [4, 0]

    def test_failure_falls_back_to_order(self):
        from app.rag.errors import ServiceUnavailableError
        from app.rag.reranker import LLMReranker

        generation = _generation(error=ServiceUnavailableError("rerank", 2, "timeout"))
        ranked = LLMReranker(generation).rerank("q", _passages(5))

        assert [r.index for r in ranked] == [0, 1, 2, 3, 4]
        assert [r.score for r in ranked[:3]] == [10.0, 9.5, 9.0]

    def test_malformed_scores_fall_back_to_order(self):
        from app.rag.reranker import LLMReranker

        ranked = LLMReranker(_generation({"scores": [{"index": "premier"}]})).rerank("q", _passages(4))
        assert [r.index for r in ranked] == [0, 1, 2, 3]

    def test_missing_tool_call_falls_back_to_order(self):
        from app.rag.reranker import LLMReranker

        ranked = LLMReranker(_generation(None)).rerank("q", _passages(4))
        assert [r.score for r in ranked] == [10.0, 9.5, 9.0, 8.5]

    def test_only_first_passages_are_ranked(self):
        from app.rag.reranker import LLMReranker

        ranked = LLMReranker(_generation(error=RuntimeError("boom")), max_passages=15).rerank("q", _passages(20))
        assert len(ranked) == 15


class TestTfidfRerank:

    def test_matching_passage_first(self):
        from app.rag.reranker import PassageInput, tfidf_rerank

        passages = [
            PassageInput(text="Les vis et boulons en acier", kind="knowledge"),
            PassageInput(text="Les tomates fraîches du chapitre 07", kind="tariff_note"),
        ]
        ranked = tfidf_rerank("droits sur les tomates", passages)

        assert ranked[0].index == 1
        assert 0 < ranked[0].score <= 10

    def test_no_terms_gives_default_scores(self):
        from app.rag.reranker import tfidf_rerank

        ranked = tfidf_rerank("?", _passages(2))
        assert [r.score for r in ranked] == [5.0, 5.0]
