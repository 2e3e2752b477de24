"""
Embedding and Vector Index Tests

Tests:
- EmbeddingCache TTL, key normalization and eviction
- EmbeddingService caching and input truncation (mocked OpenAI client)
- Cosine similarity edge cases
- InMemoryVectorIndex query/filter/delete
- EvidenceIndexer over the seeded database
"""

from unittest.mock import Mock

import pytest


def _openai_client(vector=(0.1, 0.2, 0.3)):
    client = Mock()
    client.embeddings.create.return_value = Mock(data=[Mock(embedding=list(vector))])
    return client


class TestEmbeddingCache:

    def test_hit_within_ttl(self, fake_clock):
        from app.chat.vector_stores.embeddings import EmbeddingCache

        cache = EmbeddingCache(ttl_seconds=300, clock=fake_clock)
        cache.put("Quel est le taux ?", [1.0, 2.0])
        fake_clock.advance(299)

        assert cache.get("Quel est le taux ?") == [1.0, 2.0]

    def test_expired_entry_is_dropped(self, fake_clock):
        from app.chat.vector_stores.embeddings import EmbeddingCache

        cache = EmbeddingCache(ttl_seconds=300, clock=fake_clock)
        cache.put("tomates", [1.0])
        fake_clock.advance(301)

        assert cache.get("tomates") is None
        assert len(cache) == 0

    def test_key_ignores_case_and_whitespace(self, fake_clock):
        from app.chat.vector_stores.embeddings import EmbeddingCache

        cache = EmbeddingCache(clock=fake_clock)
        cache.put("  Ordinateur   Portable ", [0.5])

        assert cache.get("ordinateur portable") == [0.5]

    def test_oldest_entry_evicted_when_full(self, fake_clock):
        from app.chat.vector_stores.embeddings import EmbeddingCache

        cache = EmbeddingCache(max_entries=2, clock=fake_clock)
        cache.put("a", [1.0])
        fake_clock.advance(1)
        cache.put("b", [2.0])
        fake_clock.advance(1)
        cache.put("c", [3.0])

        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c") == [3.0]


class TestEmbeddingService:

    def test_second_call_served_from_cache(self, fake_clock):
        from app.chat.vector_stores.embeddings import EmbeddingCache, EmbeddingService

        client = _openai_client()
        service = EmbeddingService(client=client, cache=EmbeddingCache(clock=fake_clock), model="test-model")

        first = service.embed("Droits sur les tomates")
        second = service.embed("droits sur les tomates")

        assert first == second == [0.1, 0.2, 0.3]
        client.embeddings.create.assert_called_once_with(model="test-model", input="Droits sur les tomates")

    def test_long_input_truncated(self, fake_clock):
        from app.chat.vector_stores.embeddings import EmbeddingCache, EmbeddingService
        from app.config import EMBEDDING_MAX_CHARS

        client = _openai_client()
        service = EmbeddingService(client=client, cache=EmbeddingCache(clock=fake_clock))
        service.embed("x" * (EMBEDDING_MAX_CHARS + 500))

        sent = client.embeddings.create.call_args.kwargs["input"]
        assert len(sent) == EMBEDDING_MAX_CHARS


class TestCosineSimilarity:

    def test_identical_vectors(self):
        from app.chat.vector_stores.embeddings import cosine_similarity
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        from app.chat.vector_stores.embeddings import cosine_similarity
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_degenerate_inputs(self):
        from app.chat.vector_stores.embeddings import cosine_similarity
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([1.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


class TestInMemoryVectorIndex:

    def _index(self):
        from app.chat.vector_stores import InMemoryVectorIndex, VectorRecord

        index = InMemoryVectorIndex()
        index.upsert("hs_code", [
            VectorRecord(id="847130", values=[1.0, 0.0], metadata={"chapter": 84}),
            VectorRecord(id="0702", values=[0.0, 1.0], metadata={"chapter": 7}),
            VectorRecord(id="8471", values=[0.9, 0.1], metadata={"chapter": 84}),
        ])
        return index

    def test_query_sorted_by_score(self):
        matches = self._index().query("hs_code", [1.0, 0.0], top_k=2)
        assert [m.id for m in matches] == ["847130", "8471"]

    def test_min_score_and_filter(self):
        index = self._index()

        assert [m.id for m in index.query("hs_code", [0.0, 1.0], min_score=0.5)] == ["0702"]
        assert [m.id for m in index.query("hs_code", [0.0, 1.0], filter={"chapter": 84})] == ["8471", "847130"]

    def test_in_filter(self):
        index = self._index()
        matches = index.query("hs_code", [1.0, 0.0], filter={"chapter": {"$in": [7, 99]}})
        assert [m.id for m in matches] == ["0702"]

    def test_delete_and_count(self):
        index = self._index()
        index.delete("hs_code", ["0702", "missing"])

        assert index.count("hs_code") == 2
        assert index.query("other", [1.0, 0.0]) == []


class TestEvidenceIndexer:

    def test_index_hs_codes(self, app, customs_data, fake_embeddings):
        from app.chat.vector_stores import InMemoryVectorIndex
        from app.chat.vector_stores.indexer import EvidenceIndexer
        from app.web.db import db

        index = InMemoryVectorIndex()
        written = EvidenceIndexer(fake_embeddings, index, batch_size=2).index_kind(db.session, "hs_code")

        assert written == 5
        assert index.count("hs_code") == 5
        top = index.query("hs_code", fake_embeddings.embed("Tomates, à l'état frais ou réfrigéré"), top_k=1)
        assert top[0].id == "0702"

    def test_index_all_counts_per_kind(self, app, customs_data, fake_embeddings):
        from app.chat.vector_stores import InMemoryVectorIndex
        from app.chat.vector_stores.indexer import EvidenceIndexer
        from app.web.db import db

        counts = EvidenceIndexer(fake_embeddings, InMemoryVectorIndex()).index_all(
            db.session, ["legal_chunk", "pdf", "tariff_note"]
        )
        assert counts == {"legal_chunk": 1, "pdf": 1, "tariff_note": 1}

    def test_unknown_kind(self, app, fake_embeddings):
        from app.chat.vector_stores import InMemoryVectorIndex
        from app.chat.vector_stores.indexer import EvidenceIndexer
        from app.web.db import db

        with pytest.raises(ValueError):
            EvidenceIndexer(fake_embeddings, InMemoryVectorIndex()).index_kind(db.session, "nope")

    def test_countryless_records_tagged_for_every_country(self, app, customs_data, fake_embeddings):
        from app.chat.vector_stores import ANY_COUNTRY, InMemoryVectorIndex
        from app.chat.vector_stores.indexer import EvidenceIndexer
        from app.web.db import db
        from app.web.db.models import KnowledgeDocument

        db.session.add(KnowledgeDocument(id="kb-all", title="Incoterms", content="Règles Incoterms 2020",
                                         country_code=None))
        db.session.commit()
        index = InMemoryVectorIndex()
        EvidenceIndexer(fake_embeddings, index).index_kind(db.session, "knowledge")

        match = index.query("knowledge", fake_embeddings.embed("Incoterms"), top_k=1)[0]
        assert match.metadata["country_code"] == ANY_COUNTRY
