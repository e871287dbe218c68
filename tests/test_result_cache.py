import math
import time

import pytest

from src.caching.result_cache import (
    AnswerCacheEntry,
    CacheNamespace,
    EmbeddingCacheEntry,
    ResultCache,
)


class TestCacheNamespace:
    def test_set_then_get_counts_a_hit(self, clock):
        ns = CacheNamespace("embedding", ttl_seconds=60, max_entries=10, clock=clock)
        ns.set("k", "v")
        assert ns.get("k") == "v"
        assert ns.hits == 1 and ns.misses == 0

    def test_missing_key_is_a_miss(self, clock):
        ns = CacheNamespace("embedding", 60, 10, clock=clock)
        assert ns.get("nope") is None
        assert ns.misses == 1

    def test_expired_entry_is_removed_and_counted_as_miss(self, clock):
        ns = CacheNamespace("answer", ttl_seconds=60, max_entries=10, clock=clock)
        ns.set("k", "v")
        clock.advance(60)
        assert ns.get("k") == "v"          # exactly at TTL is still fresh
        clock.advance(1)
        assert ns.get("k") is None
        assert "k" not in ns
        assert ns.misses == 1

    def test_eviction_keeps_size_within_capacity(self, clock):
        ns = CacheNamespace("embedding", 3600, max_entries=20, clock=clock)
        for i in range(100):
            ns.set(f"k{i}", i)
            assert len(ns) <= 20

    def test_eviction_removes_least_hit_entries(self, clock):
        ns = CacheNamespace("embedding", 3600, max_entries=10, clock=clock)
        for i in range(10):
            ns.set(f"k{i}", i)
        # every key except k3 gets at least one hit
        for i in range(10):
            for _ in range(0 if i == 3 else i + 1):
                ns.get(f"k{i}")

        ns.set("new", "value")

        assert "k3" not in ns
        assert "new" in ns
        assert len(ns) == 10 - math.ceil(10 * 0.1) + 1

    def test_overwriting_existing_key_does_not_evict(self, clock):
        ns = CacheNamespace("embedding", 3600, max_entries=2, clock=clock)
        ns.set("a", 1)
        ns.set("b", 2)
        ns.set("a", 3)
        assert len(ns) == 2
        assert ns.get("a") == 3

    def test_purge_expired(self, clock):
        ns = CacheNamespace("answer", 10, 10, clock=clock)
        ns.set("old", 1)
        clock.advance(20)
        ns.set("fresh", 2)
        assert ns.purge_expired() == 1
        assert "fresh" in ns and "old" not in ns

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            CacheNamespace("x", 10, 0)


class TestResultCache:
    def test_embedding_keys_ignore_case_and_whitespace(self):
        cache = ResultCache()
        cache.set_embedding("  What IS   entropy? ", [0.1, 0.2], 3)
        entry = cache.get_embedding("what is entropy?")
        assert entry == EmbeddingCacheEntry(embedding=[0.1, 0.2], token_count=3)

    def test_answer_key_is_scoped(self):
        cache = ResultCache()
        entry = AnswerCacheEntry(answer="A", citations=[], tokens_used=5)
        cache.set_answer("q", entry, subject_id="s1", resource_ids=["r2", "r1"])

        assert cache.get_answer("q", subject_id="s1", resource_ids=["r1", "r2"]) == entry
        assert cache.get_answer("q", subject_id="s2", resource_ids=["r1", "r2"]) is None
        assert cache.get_answer("q") is None

    def test_answer_key_covers_answer_settings(self):
        cache = ResultCache()
        entry = AnswerCacheEntry(answer="A", citations=[], tokens_used=5)
        settings = {"top_k": 5, "min_score": 0.7, "style": "balanced", "depth": "basic", "language": "en"}
        cache.set_answer("q", entry, settings=settings)

        assert cache.get_answer("q", settings=dict(settings)) == entry
        assert cache.get_answer("q", settings={**settings, "min_score": 0.9}) is None
        assert cache.get_answer("q", settings={**settings, "language": "es"}) is None
        assert cache.get_answer("q") is None

    def test_invalidation_clears_answers_only(self):
        cache = ResultCache()
        cache.set_embedding("text", [1.0], 1)
        cache.set_answer("q1", AnswerCacheEntry("a", [], 1), subject_id="s1")
        cache.set_answer("q2", AnswerCacheEntry("b", [], 1), subject_id="s2")

        cache.invalidate_by_resource("r1")

        assert len(cache.answers) == 0
        assert cache.get_embedding("text") is not None

        cache.set_answer("q3", AnswerCacheEntry("c", [], 1))
        cache.invalidate_by_subject("s9")
        assert len(cache.answers) == 0

    def test_ttls_are_independent(self, clock):
        cache = ResultCache(embedding_ttl_seconds=100, answer_ttl_seconds=10, clock=clock)
        cache.set_embedding("t", [1.0], 1)
        cache.set_answer("q", AnswerCacheEntry("a", [], 1))
        clock.advance(50)
        assert cache.get_answer("q") is None
        assert cache.get_embedding("t") is not None

    def test_clean_expired_reports_both_namespaces(self, clock):
        cache = ResultCache(embedding_ttl_seconds=10, answer_ttl_seconds=10, clock=clock)
        cache.set_embedding("t", [1.0], 1)
        cache.set_answer("q", AnswerCacheEntry("a", [], 1))
        clock.advance(11)
        assert cache.clean_expired() == (1, 1)

    def test_stats_and_hit_rates(self):
        cache = ResultCache()
        cache.set_embedding("t", [1.0], 1)
        cache.get_embedding("t")
        cache.get_embedding("missing")

        stats = cache.stats()
        assert stats["embedding_hits"] == 1
        assert stats["embedding_misses"] == 1
        assert stats["embedding_cache_size"] == 1
        assert stats["answer_cache_size"] == 0
        assert cache.hit_rates()["embedding"] == pytest.approx(0.5)
        assert cache.hit_rates()["answer"] == 0.0

        cache.clear_all()
        assert cache.stats()["embedding_hits"] == 0
        assert cache.stats()["embedding_cache_size"] == 0

    def test_sweep_thread_lifecycle(self):
        cache = ResultCache(sweep_interval_seconds=0.01)
        assert not cache.running
        with cache:
            assert cache.running
        assert not cache.running

    def test_sweep_removes_expired_entries(self):
        cache = ResultCache(answer_ttl_seconds=0.0, sweep_interval_seconds=0.01)
        cache.set_answer("q", AnswerCacheEntry("a", [], 1))
        cache.start()
        try:
            deadline = time.monotonic() + 2
            while len(cache.answers) and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            cache.stop()
        assert len(cache.answers) == 0
