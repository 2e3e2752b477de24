"""
Response Cache Tests

Tests:
- Exact (normalized) question hits and hit counting
- Similarity hits through the vector index above the match threshold, misses below
- Store gates: images, low confidence, empty question/answer
- Expiry and purges (rows and their vectors)
- Storage failures degrade to a miss
- Detached stores write on a session of their own
"""

from datetime import timedelta
from unittest.mock import Mock

QUESTION = "Quel est le taux pour les tomates ?"


def _cache(db_session, clock, embeddings=None, index=None):
    from app.rag.response_cache import ResponseCache
    return ResponseCache(db_session, embeddings=embeddings, index=index, clock=clock)


def _index():
    from app.chat.vector_stores import InMemoryVectorIndex
    return InMemoryVectorIndex()


class TestLookup:

    def test_identical_question_hits(self, db_session, utc_clock, fake_embeddings):
        cache = _cache(db_session, utc_clock, fake_embeddings)
        assert cache.store(QUESTION, "DDI 40 %", "high", citations=[{"id": "tariff:MA:0702000010"}],
                           has_evidence=True) is True

        hit = cache.lookup(QUESTION)

        assert hit.response_text == "DDI 40 %"
        assert hit.confidence == "high"
        assert hit.citations == [{"id": "tariff:MA:0702000010"}]
        assert hit.has_evidence is True
        assert hit.similarity == 1.0
        assert hit.hit_count == 1

    def test_case_and_whitespace_normalized(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock)
        cache.store(QUESTION, "DDI 40 %", "medium")

        hit = cache.lookup("  QUEL EST LE TAUX POUR LES TOMATES ?  ")

        assert hit is not None
        assert hit.response_text == "DDI 40 %"

    def test_hit_count_and_last_hit(self, db_session, utc_clock):
        from app.web.db.models import ResponseCacheEntry

        cache = _cache(db_session, utc_clock)
        cache.store(QUESTION, "DDI 40 %", "medium")
        cache.lookup(QUESTION)
        utc_clock.advance(timedelta(hours=1))
        cache.lookup(QUESTION)

        entry = db_session.query(ResponseCacheEntry).one()
        assert entry.hit_count == 2
        assert entry.last_hit_at == utc_clock()

    def test_similar_question_hits(self, db_session, utc_clock):
        from app.chat.vector_stores import RESPONSE_CACHE_NAMESPACE

        index = _index()
        cache = _cache(db_session, utc_clock, index=index)
        cache.store(QUESTION, "DDI 40 %", "high", embedding=[1.0, 0.0, 0.0])

        hit = cache.lookup("Taux des tomates ?", embedding=[0.99, 0.1, 0.0])

        assert index.count(RESPONSE_CACHE_NAMESPACE) == 1
        assert hit is not None
        assert hit.response_text == "DDI 40 %"
        assert hit.similarity >= 0.94

    def test_similarity_lookup_uses_index_not_table(self, db_session, utc_clock):
        index = Mock()
        index.query.return_value = []
        cache = _cache(db_session, utc_clock, index=index)
        cache.store(QUESTION, "DDI 40 %", "high", embedding=[1.0, 0.0, 0.0])

        assert cache.lookup("Taux des tomates ?", embedding=[0.99, 0.1, 0.0]) is None
        namespace, vector = index.query.call_args.args
        assert namespace == "response_cache"
        assert vector == [0.99, 0.1, 0.0]
        assert index.query.call_args.kwargs == {"top_k": 1, "min_score": 0.94}

    def test_similar_expired_entry_misses(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock, index=_index())
        cache.store(QUESTION, "DDI 40 %", "high", embedding=[1.0, 0.0, 0.0])
        utc_clock.advance(timedelta(days=8))

        assert cache.lookup("Taux des tomates ?", embedding=[0.99, 0.1, 0.0]) is None

    def test_dissimilar_question_misses(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock, index=_index())
        cache.store(QUESTION, "DDI 40 %", "high", embedding=[1.0, 0.0, 0.0])

        assert cache.lookup("Procédure d'admission temporaire ?", embedding=[0.5, 0.5, 0.0]) is None

    def test_miss_without_embedding_service(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock)
        assert cache.lookup("Jamais posée") is None
        assert cache.lookup("   ") is None

    def test_expired_entry_misses(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock)
        cache.store(QUESTION, "DDI 40 %", "high")
        utc_clock.advance(timedelta(days=8))

        assert cache.lookup(QUESTION) is None

    def test_storage_failure_is_a_miss(self, utc_clock):
        from app.rag.response_cache import ResponseCache

        session = Mock()
        session.query.side_effect = RuntimeError("database is locked")
        cache = ResponseCache(session, clock=utc_clock)

        assert cache.lookup(QUESTION) is None
        session.rollback.assert_called_once()


class TestStore:

    def test_images_never_cached(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock)

        assert cache.store(QUESTION, "DDI 40 %", "high", has_images=True) is False
        assert cache.lookup(QUESTION) is None

    def test_low_confidence_not_cached(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock)
        assert cache.store(QUESTION, "Je ne sais pas", "low") is False

    def test_empty_inputs_not_cached(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock)
        assert cache.store("  ", "DDI 40 %", "high") is False
        assert cache.store(QUESTION, "", "high") is False

    def test_upsert_keeps_one_row(self, db_session, utc_clock):
        from app.web.db.models import ResponseCacheEntry

        cache = _cache(db_session, utc_clock)
        cache.store(QUESTION, "Ancienne réponse", "medium")
        cache.store(QUESTION.upper(), "Nouvelle réponse", "high")

        entries = db_session.query(ResponseCacheEntry).all()
        assert len(entries) == 1
        assert entries[0].response_text == "Nouvelle réponse"
        assert entries[0].expires_at == utc_clock() + timedelta(days=7)

    def test_write_failure_returns_false(self, utc_clock):
        from app.rag.response_cache import ResponseCache

        session = Mock()
        session.commit.side_effect = RuntimeError("disk full")
        cache = ResponseCache(session, clock=utc_clock)

        assert cache.store(QUESTION, "DDI 40 %", "high") is False
        session.rollback.assert_called_once()


class TestStoreDetached:

    def test_writes_on_its_own_session(self, db_session, utc_clock):
        from sqlalchemy.orm import Session

        from app.rag.response_cache import ResponseCache
        from app.web.db import db

        opened = []

        def session_factory():
            session = Session(db.engine)
            opened.append(session)
            return session

        cache = ResponseCache(db_session, clock=utc_clock, session_factory=session_factory)

        assert cache.store_detached(question=QUESTION, response="DDI 40 %", confidence="high") is True
        assert len(opened) == 1
        assert opened[0] is not db_session
        assert cache.lookup(QUESTION).response_text == "DDI 40 %"

    def test_bound_session_without_factory(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock)

        assert cache.store_detached(question=QUESTION, response="DDI 40 %", confidence="low") is False
        assert cache.store_detached(question=QUESTION, response="DDI 40 %", confidence="high") is True
        assert cache.lookup(QUESTION) is not None


class TestVectorIndex:

    def test_store_upserts_question_vector(self, db_session, utc_clock, fake_embeddings):
        from app.chat.vector_stores import RESPONSE_CACHE_NAMESPACE
        from app.web.db.models import ResponseCacheEntry

        index = _index()
        cache = _cache(db_session, utc_clock, fake_embeddings, index=index)
        cache.store(QUESTION, "DDI 40 %", "high")

        entry = db_session.query(ResponseCacheEntry).one()
        matches = index.query(RESPONSE_CACHE_NAMESPACE, fake_embeddings.embed(QUESTION), top_k=1)
        assert [m.id for m in matches] == [str(entry.id)]
        assert matches[0].metadata["question_hash"] == entry.question_hash

    def test_vector_upsert_failure_keeps_entry(self, db_session, utc_clock):
        index = Mock()
        index.upsert.side_effect = RuntimeError("pinecone down")
        cache = _cache(db_session, utc_clock, index=index)

        assert cache.store(QUESTION, "DDI 40 %", "high", embedding=[1.0, 0.0, 0.0]) is True
        assert cache.lookup(QUESTION) is not None


class TestPurge:

    def test_purge_expired(self, db_session, utc_clock, fake_embeddings):
        from app.chat.vector_stores import RESPONSE_CACHE_NAMESPACE

        index = _index()
        cache = _cache(db_session, utc_clock, fake_embeddings, index=index)
        cache.store("Question ancienne", "Réponse", "high")
        utc_clock.advance(timedelta(days=8))
        cache.store("Question récente", "Réponse", "high")

        assert cache.purge_expired() == 1
        assert cache.lookup("Question récente") is not None
        assert index.count(RESPONSE_CACHE_NAMESPACE) == 1

    def test_purge_expired_nothing_to_do(self, db_session, utc_clock):
        index = Mock()
        cache = _cache(db_session, utc_clock, index=index)
        cache.store(QUESTION, "Réponse", "high")

        assert cache.purge_expired() == 0
        index.delete.assert_not_called()

    def test_purge_lru_removes_never_hit_first(self, db_session, utc_clock, fake_embeddings):
        from app.chat.vector_stores import RESPONSE_CACHE_NAMESPACE
        from app.web.db.models import ResponseCacheEntry

        index = _index()
        cache = _cache(db_session, utc_clock, fake_embeddings, index=index)
        for question in ("Question A", "Question B", "Question C"):
            cache.store(question, "Réponse", "high")
            utc_clock.advance(timedelta(minutes=1))
        cache.lookup("Question A")

        assert cache.purge_lru(max_entries=1) == 2
        assert [e.question_text for e in db_session.query(ResponseCacheEntry).all()] == ["Question A"]
        assert index.count(RESPONSE_CACHE_NAMESPACE) == 1

    def test_purge_lru_under_limit(self, db_session, utc_clock):
        cache = _cache(db_session, utc_clock)
        cache.store(QUESTION, "Réponse", "high")
        assert cache.purge_lru(max_entries=10) == 0

    def test_purge_all(self, db_session, utc_clock, fake_embeddings):
        from app.chat.vector_stores import RESPONSE_CACHE_NAMESPACE

        index = _index()
        cache = _cache(db_session, utc_clock, fake_embeddings, index=index)
        cache.store("Question A", "Réponse", "high")
        cache.store("Question B", "Réponse", "high")

        assert cache.purge_all() == 2
        assert cache.lookup("Question A") is None
        assert index.count(RESPONSE_CACHE_NAMESPACE) == 0
