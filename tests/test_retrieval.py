"""
Hybrid Retrieval Tests

Tests:
- merge_results and reciprocal rank fusion
- Intent-adaptive thresholds and language detection
- PDF quality ranking
- Strategy pipeline: sparse fallback, failure isolation, limits
- HybridRetriever end to end on the seeded database
"""

from unittest.mock import Mock

import pytest


def _hs(code, similarity=0.0):
    from app.rag.evidence import HsCodeRow
    return HsCodeRow(code=code, code_clean=code.replace(".", ""), similarity=similarity)


class _FixedStrategy:
    """Strategy stub returning canned items."""

    def __init__(self, items, name="fixed", confidence="semantic", only_when_sparse=False, error=None):
        self.items = items
        self.name = name
        self.confidence = confidence
        self.only_when_sparse = only_when_sparse
        self.error = error
        self.calls = 0

    def run(self, query, limit):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.items)


class TestFusion:

    def test_merge_keeps_first_occurrence(self):
        from app.rag.fusion import merge_results

        semantic = [_hs("8471.30", 0.9)]
        keyword = [_hs("8471.30", 0.5), _hs("07.02", 0.5)]
        merged = merge_results(semantic, keyword)

        assert [m.key for m in merged] == ["847130", "0702"]
        assert merged[0].similarity == 0.9

    def test_merge_handles_empty_sets(self):
        from app.rag.fusion import merge_results
        assert merge_results([], None, [_hs("84")]) == [_hs("84")]

    def test_rrf_prefers_items_in_both_lists(self):
        from app.rag.fusion import reciprocal_rank_fusion

        a, b, c = _hs("8471"), _hs("0702"), _hs("8517")
        fused = reciprocal_rank_fusion([a, b], [c, b])

        assert fused[0][0].key == "0702"
        assert fused[0][1] == pytest.approx(0.7 / 62 + 0.3 / 62)

    def test_rrf_weight_orders_single_list_items(self):
        from app.rag.fusion import reciprocal_rank_fusion

        fused = reciprocal_rank_fusion([_hs("8471")], [_hs("0702")], semantic_weight=0.7)
        assert [item.key for item, _ in fused] == ["8471", "0702"]

        fused = reciprocal_rank_fusion([_hs("8471")], [_hs("0702")], semantic_weight=0.2)
        assert [item.key for item, _ in fused] == ["0702", "8471"]


class TestAdaptiveSettings:

    @pytest.mark.parametrize("intent,hs,doc,limits", [
        ("classify", 0.78, 0.50, (15, 8)),
        ("calculate", 0.68, 0.62, (10, 5)),
        ("control", 0.68, 0.72, (8, 10)),
        ("procedure", 0.68, 0.72, (8, 10)),
        ("origin", 0.68, 0.72, (10, 8)),
        ("info", 0.68, 0.62, (12, 6)),
    ])
    def test_thresholds_per_intent(self, intent, hs, doc, limits):
        from app.rag.retrieval import adaptive_thresholds

        settings = adaptive_thresholds(intent)
        assert (settings.hs_threshold, settings.doc_threshold) == (hs, doc)
        assert (settings.hs_limit, settings.doc_limit) == limits

    def test_detect_language(self):
        from app.rag.retrieval import detect_language

        assert detect_language("ما هي الرسوم على الهواتف") == "ar"
        assert detect_language("Quel est le taux pour les tomates ?") == "fr"
        assert detect_language("1234") == "fr"


class TestRanking:

    def test_rank_pdfs_rewards_rich_extractions(self):
        from app.rag.evidence import PdfExtract
        from app.rag.retrieval import rank_pdfs

        bare = PdfExtract(pdf_id="a", title="A", similarity=0.8)
        rich = PdfExtract(pdf_id="b", title="B", similarity=0.7, summary="s" * 150,
                          key_points=["p"], extracted_text="t" * 600)

        ranked = rank_pdfs([bare, rich])

        assert [p.pdf_id for p in ranked] == ["b", "a"]
        assert ranked[0].relevance_score == pytest.approx(1.05)
        assert ranked[1].relevance_score == 0.8

    def test_rank_watch_documents_by_importance(self):
        from app.rag.evidence import WatchDocument
        from app.rag.retrieval import rank_watch_documents

        low = WatchDocument(id="1", title="Note", importance="basse", similarity=0.8)
        high = WatchDocument(id="2", title="Circulaire", importance="haute", similarity=0.75)

        assert [d.id for d in rank_watch_documents([low, high])] == ["2", "1"]


class TestPipeline:

    def test_sparse_strategies_skipped_when_floor_reached(self):
        from app.rag.retrieval import CategoryPipeline, RetrievalQuery, run_pipeline

        primary = _FixedStrategy([_hs("8471"), _hs("847130"), _hs("0702")])
        fallback = _FixedStrategy([_hs("8517")], only_when_sparse=True)

        results = run_pipeline(CategoryPipeline("hs_code", [primary, fallback], limit=10, floor=3),
                               RetrievalQuery(text="q"))

        assert len(results) == 3
        assert fallback.calls == 0

    def test_fallback_runs_when_sparse(self):
        from app.rag.retrieval import CategoryPipeline, RetrievalQuery, run_pipeline

        primary = _FixedStrategy([_hs("8471")])
        fallback = _FixedStrategy([_hs("8471"), _hs("8517")], confidence="keyword", only_when_sparse=True)

        results = run_pipeline(CategoryPipeline("hs_code", [primary, fallback], limit=10),
                               RetrievalQuery(text="q"))

        assert [r.key for r in results] == ["8471", "8517"]

    def test_failing_strategy_degrades(self):
        from app.rag.retrieval import CategoryPipeline, RetrievalQuery, run_pipeline

        broken = _FixedStrategy([], error=RuntimeError("index down"))
        keyword = _FixedStrategy([_hs("0702")], confidence="keyword", only_when_sparse=True)

        results = run_pipeline(CategoryPipeline("hs_code", [broken, keyword], limit=5),
                               RetrievalQuery(text="q"))

        assert [r.key for r in results] == ["0702"]

    def test_results_capped_at_limit(self):
        from app.rag.retrieval import CategoryPipeline, RetrievalQuery, run_pipeline

        many = _FixedStrategy([_hs(f"84{i:02d}") for i in range(10)])
        results = run_pipeline(CategoryPipeline("hs_code", [many], limit=4), RetrievalQuery(text="q"))

        assert len(results) == 4

    def test_fusion_blends_semantic_and_keyword(self):
        from app.rag.retrieval import CategoryPipeline, RetrievalQuery, run_pipeline

        semantic = _FixedStrategy([_hs("8471"), _hs("0702")])
        keyword = _FixedStrategy([_hs("0702")], confidence="keyword")

        results = run_pipeline(CategoryPipeline("hs_code", [semantic, keyword], limit=5, fuse=True),
                               RetrievalQuery(text="q"))

        assert results[0].key == "0702"

    def test_keyword_strategy_needs_keywords(self):
        from app.rag.retrieval import KeywordStrategy, RetrievalQuery

        search = Mock(return_value=[_hs("0702")])
        strategy = KeywordStrategy(search)

        assert strategy.run(RetrievalQuery(text="q"), 5) == []
        items = strategy.run(RetrievalQuery(text="q", keywords=["tomates"]), 5)
        assert items[0].similarity == 0.5

    def test_semantic_strategy_without_embedding(self):
        from app.rag.retrieval import RetrievalQuery, SemanticStrategy

        index = Mock()
        strategy = SemanticStrategy("hs_code", index, Mock(), threshold=0.5)

        assert strategy.run(RetrievalQuery(text="q"), 5) == []
        index.query.assert_not_called()


class TestHybridRetriever:

    def _retriever(self, store, embeddings):
        from app.chat.vector_stores import InMemoryVectorIndex
        from app.chat.vector_stores.indexer import EvidenceIndexer
        from app.rag.retrieval import HybridRetriever
        from app.web.db import db

        index = InMemoryVectorIndex()
        EvidenceIndexer(embeddings, index).index_all(db.session)
        return HybridRetriever(store, embeddings, index, max_workers=3)

    def test_semantic_hit_for_description(self, app, store, fake_embeddings):
        from app.rag.retrieval import RetrievalQuery

        retriever = self._retriever(store, fake_embeddings)
        query = RetrievalQuery(text="Machines automatiques de traitement de l'information portables",
                               keywords=["machines", "portables"])

        results = retriever.retrieve(query, kinds=["hs_code"])

        assert list(results) == ["hs_code"]
        assert results["hs_code"][0].code_clean == "847130"
        assert results["hs_code"][0].similarity > 0.68
        assert query.language == "fr"

    def test_embedding_failure_falls_back_to_keywords(self, app, store, fake_embeddings):
        from app.rag.errors import ServiceUnavailableError
        from app.rag.retrieval import RetrievalQuery

        retriever = self._retriever(store, fake_embeddings)
        retriever.embeddings = Mock()
        retriever.embeddings.embed.side_effect = ServiceUnavailableError("embedding", 3, "timeout")

        results = retriever.retrieve(RetrievalQuery(text="tomates fraîches", keywords=["tomates"]))

        assert [r.code_clean for r in results["hs_code"]] == ["0702"]
        assert results["hs_code"][0].similarity == 0.5
        assert set(results) == {"hs_code", "legal_chunk", "tariff_note", "knowledge", "pdf", "watch"}

    def test_every_category_returns_a_list(self, app, store, fake_embeddings):
        from app.rag.retrieval import RetrievalQuery

        retriever = self._retriever(store, fake_embeddings)
        results = retriever.retrieve(RetrievalQuery(text="valeur en douane", keywords=["valeur", "douane"]))

        assert all(isinstance(v, list) for v in results.values())
        assert any(chunk.article_number == "15" for chunk in results["legal_chunk"])

    def test_other_country_documents_excluded(self, app, store, fake_embeddings):
        from app.rag.retrieval import RetrievalQuery
        from app.web.db import db
        from app.web.db.models import KnowledgeDocument, VeilleDocument

        db.session.add_all([
            KnowledgeDocument(id="kb-sn", title="Ordinateurs portables senegal",
                              content="Importation des ordinateurs portables au senegal", country_code="SN"),
            KnowledgeDocument(id="kb-all", title="Ordinateurs portables et valeur en douane",
                              content="Regles generales pour les ordinateurs portables", country_code=None),
            VeilleDocument(id="veille-sn", title="Senegal: ordinateurs portables",
                           content="Nouvelle taxe sur les ordinateurs portables au senegal", country_code="SN"),
            VeilleDocument(id="veille-ma", title="Maroc: ordinateurs portables",
                           content="Circulaire sur les ordinateurs portables", country_code="MA"),
        ])
        db.session.commit()

        retriever = self._retriever(store, fake_embeddings)
        results = retriever.retrieve(RetrievalQuery(
            text="ordinateurs portables senegal",
            keywords=["ordinateurs", "portables", "senegal"],
            country="MA",
        ))

        assert [d.id for d in results["knowledge"]] == ["kb-all"]
        assert [d.id for d in results["watch"]] == ["veille-ma"]

    def test_semantic_filter_scopes_country(self):
        from app.rag.retrieval import RetrievalQuery, SemanticStrategy, country_filter

        index = Mock()
        index.query.return_value = []
        strategy = SemanticStrategy("knowledge", index, Mock(), threshold=0.5, filter_fn=country_filter)

        strategy.run(RetrievalQuery(text="q", country="SN", embedding=[1.0]), 5)

        assert index.query.call_args.kwargs["filter"] == {"country_code": {"$in": ["SN", "ALL"]}}
