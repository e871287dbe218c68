"""
In-process Result Cache
------------------------
Two independent namespaces share one owner object:

  embeddings -- text -> (vector, token_count)        TTL 24h, 1000 entries
  answers    -- (query, scope) -> grounded answer     TTL 1h,   500 entries

Expiry is checked lazily on every get() and proactively by a background
sweep thread.  When a namespace is full, set() evicts the 10% of entries
with the fewest hits (an approximate LFU that only costs a sort at eviction
time).

The cache is best-effort: every value can be recomputed after eviction, so
nothing here is a source of truth.  The sweep thread only runs between
start() and stop(); constructing the cache has no side effects.
"""
from __future__ import annotations

import json
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar

from loguru import logger

from src.utils.helpers import content_hash, normalize_for_key

T = TypeVar("T")

EVICTION_FRACTION = 0.1


@dataclass
class CacheEntry(Generic[T]):
    value: T
    timestamp: float
    hits: int = 0


@dataclass(frozen=True)
class EmbeddingCacheEntry:
    embedding: list[float]
    token_count: int


@dataclass(frozen=True)
class AnswerCacheEntry:
    answer: str
    citations: list[dict[str, Any]]
    tokens_used: int


class CacheNamespace(Generic[T]):
    """A capacity-bounded TTL map guarded by its own lock."""

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def _expired(self, entry: CacheEntry[T], now: float) -> bool:
        return now - entry.timestamp > self.ttl_seconds

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                self.misses += 1
                return None
            entry.hits += 1
            self.hits += 1
            return entry.value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_least_used()
            self._entries[key] = CacheEntry(value=value, timestamp=self._clock(), hits=0)

    def _evict_least_used(self) -> None:
        # Caller holds the lock.
        count = math.ceil(len(self._entries) * EVICTION_FRACTION)
        victims = sorted(self._entries.items(), key=lambda item: item[1].hits)[:count]
        for key, _ in victims:
            del self._entries[key]
        logger.debug(f"[Cache:{self.name}] Evicted {len(victims)} least used entries")

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def reset_stats(self) -> None:
        with self._lock:
            self.hits = 0
            self.misses = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ResultCache:
    """
    Owner of the embedding and answer namespaces plus the expiry sweep.

    Usage:
        with ResultCache() as cache:          # start() / stop()
            cache.set_embedding("text", vec, 3)
            cache.get_embedding("text")
    """

    def __init__(
        self,
        embedding_ttl_seconds: float = 24 * 60 * 60,
        embedding_max_entries: int = 1000,
        answer_ttl_seconds: float = 60 * 60,
        answer_max_entries: int = 500,
        sweep_interval_seconds: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.embeddings: CacheNamespace[EmbeddingCacheEntry] = CacheNamespace(
            "embedding", embedding_ttl_seconds, embedding_max_entries, clock
        )
        self.answers: CacheNamespace[AnswerCacheEntry] = CacheNamespace(
            "answer", answer_ttl_seconds, answer_max_entries, clock
        )
        self.sweep_interval_seconds = sweep_interval_seconds
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, config) -> "ResultCache":
        return cls(
            embedding_ttl_seconds=config.embedding_ttl_seconds,
            embedding_max_entries=config.embedding_max_entries,
            answer_ttl_seconds=config.answer_ttl_seconds,
            answer_max_entries=config.answer_max_entries,
            sweep_interval_seconds=config.sweep_interval_seconds,
        )

    # --- Keys -----------------------------------------------------------------

    @staticmethod
    def embedding_key(text: str) -> str:
        return content_hash(normalize_for_key(text))

    @staticmethod
    def answer_key(
        query: str,
        subject_id: Optional[str] = None,
        resource_ids: Optional[list[str]] = None,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Hash the normalised query with everything that shapes the answer:
        the retrieval scope plus settings such as top_k, min_score, style,
        depth and language.
        """
        scope = json.dumps(
            {
                "s": subject_id or "",
                "r": ",".join(sorted(resource_ids or [])),
                "o": dict(settings or {}),
            },
            sort_keys=True,
        )
        return content_hash(normalize_for_key(query), scope)

    # --- Embedding namespace --------------------------------------------------

    def get_embedding(self, text: str) -> Optional[EmbeddingCacheEntry]:
        return self.embeddings.get(self.embedding_key(text))

    def set_embedding(self, text: str, embedding: list[float], token_count: int) -> None:
        self.embeddings.set(
            self.embedding_key(text),
            EmbeddingCacheEntry(embedding=list(embedding), token_count=token_count),
        )

    # --- Answer namespace -----------------------------------------------------

    def get_answer(
        self,
        query: str,
        subject_id: Optional[str] = None,
        resource_ids: Optional[list[str]] = None,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> Optional[AnswerCacheEntry]:
        entry = self.answers.get(self.answer_key(query, subject_id, resource_ids, settings))
        if entry is not None:
            logger.debug(f"[Cache] Answer hit for query={query[:50]!r}")
        return entry

    def set_answer(
        self,
        query: str,
        entry: AnswerCacheEntry,
        subject_id: Optional[str] = None,
        resource_ids: Optional[list[str]] = None,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.answers.set(self.answer_key(query, subject_id, resource_ids, settings), entry)

    # --- Invalidation ---------------------------------------------------------

    def invalidate_by_resource(self, resource_id: str) -> None:
        # Answers do not record which resources they cite, so any resource
        # change drops the whole namespace.  Embeddings stay valid.
        self.answers.clear()
        logger.info(f"[Cache] Answer cache cleared after resource update: {resource_id}")

    def invalidate_by_subject(self, subject_id: str) -> None:
        self.answers.clear()
        logger.info(f"[Cache] Answer cache cleared after subject update: {subject_id}")

    # --- Sweep lifecycle ------------------------------------------------------

    def clean_expired(self) -> tuple[int, int]:
        """Drop expired entries from both namespaces. Returns (embedding, answer) counts."""
        embedding_cleaned = self.embeddings.purge_expired()
        answer_cleaned = self.answers.purge_expired()
        if embedding_cleaned or answer_cleaned:
            logger.debug(
                f"[Cache] Sweep removed {embedding_cleaned} embedding / "
                f"{answer_cleaned} answer entries"
            )
        return embedding_cleaned, answer_cleaned

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.clean_expired()
            except Exception as exc:
                logger.exception(f"[Cache] Sweep failed: {exc}")

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="result-cache-sweep", daemon=True
        )
        self._sweeper.start()
        logger.debug(f"[Cache] Sweep started (every {self.sweep_interval_seconds:.0f}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def __enter__(self) -> "ResultCache":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    # --- Observability --------------------------------------------------------

    def stats(self) -> dict[str, int]:
        return {
            "embedding_hits": self.embeddings.hits,
            "embedding_misses": self.embeddings.misses,
            "answer_hits": self.answers.hits,
            "answer_misses": self.answers.misses,
            "embedding_cache_size": len(self.embeddings),
            "answer_cache_size": len(self.answers),
        }

    def hit_rates(self) -> dict[str, float]:
        return {
            "embedding": self.embeddings.hit_rate,
            "answer": self.answers.hit_rate,
        }

    def clear_all(self) -> None:
        for namespace in (self.embeddings, self.answers):
            namespace.clear()
            namespace.reset_stats()
        logger.info("[Cache] All caches cleared")
