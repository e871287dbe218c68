"""
Cache-checked Embedder
-----------------------
Wraps a TextVectorizer with:
  - ResultCache lookups before any provider call
  - Batching (up to 100 texts per provider batch)
  - Bounded fan-out (up to 10 concurrent calls) for providers without a
    batch endpoint
  - LangSmith run tracing and running token usage

Batch results are always positionally aligned with the inputs, whatever mix
of cache hits and misses they contained.  A failing call fails the whole
batch; nothing from a failed batch is written to the cache.
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from langsmith import traceable
from loguru import logger

from src.caching.result_cache import ResultCache
from src.embedding.vectorizers import EmbeddingResult, TextVectorizer

BATCH_SIZE = 100           # Max texts per provider batch
CONCURRENCY = 10           # Max in-flight calls when there is no batch endpoint


class Embedder:
    """
    Text -> (vector, token_count), cache first.

    Usage:
        embedder = Embedder(vectorizer, cache)
        result = embedder.embed("What is entropy?")
        results = embedder.embed_batch([c.content for c in chunks])
    """

    def __init__(
        self,
        vectorizer: TextVectorizer,
        cache: Optional[ResultCache] = None,
        batch_size: int = BATCH_SIZE,
        concurrency: int = CONCURRENCY,
    ) -> None:
        self.vectorizer = vectorizer
        self.cache = cache if cache is not None else ResultCache()
        self.batch_size = min(batch_size, BATCH_SIZE)
        self.concurrency = concurrency
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0
        self._usage_lock = threading.Lock()

    @property
    def dimensions(self) -> int:
        return self.vectorizer.dimensions

    @property
    def model(self) -> str:
        return self.vectorizer.model

    def _record_usage(self, calls: int, results: list[EmbeddingResult]) -> None:
        with self._usage_lock:
            self.total_api_calls += calls
            self.total_tokens_used += sum(r.token_count for r in results)

    # --- Single text ----------------------------------------------------------

    @traceable(name="embed_text", run_type="embedding")
    def embed(self, text: str) -> EmbeddingResult:
        """Embed one string, consulting the cache first."""
        cached = self.cache.get_embedding(text)
        if cached is not None:
            return EmbeddingResult(embedding=list(cached.embedding), token_count=cached.token_count)

        result = self.vectorizer.embed(text)
        self._record_usage(1, [result])
        self.cache.set_embedding(text, result.embedding, result.token_count)
        return result

    # --- Batch ----------------------------------------------------------------

    @traceable(name="embed_batch", run_type="embedding")
    def embed_batch(self, texts: list[str]) -> list[EmbeddingResult]:
        """
        Embed many strings, returning results in input order.

        Cached texts are filled in directly; the rest are fetched in
        provider batches and written back at their original index.
        """
        results: list[Optional[EmbeddingResult]] = [None] * len(texts)
        uncached_indices: list[int] = []

        for i, text in enumerate(texts):
            cached = self.cache.get_embedding(text)
            if cached is not None:
                results[i] = EmbeddingResult(
                    embedding=list(cached.embedding), token_count=cached.token_count
                )
            else:
                uncached_indices.append(i)

        logger.debug(
            f"[Embedder] Batch of {len(texts)}: "
            f"{len(texts) - len(uncached_indices)} cached, {len(uncached_indices)} to fetch"
        )

        if uncached_indices:
            fetched = self._fetch([texts[i] for i in uncached_indices])
            for index, result in zip(uncached_indices, fetched):
                results[index] = result
            for index, result in zip(uncached_indices, fetched):
                self.cache.set_embedding(texts[index], result.embedding, result.token_count)

        return results  # type: ignore[return-value]

    def _fetch(self, texts: list[str]) -> list[EmbeddingResult]:
        fetched: list[EmbeddingResult] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i: i + self.batch_size]
            if self.vectorizer.supports_batch:
                batch_results = self.vectorizer.embed_many(batch)
                calls = 1
            else:
                batch_results = self._fan_out(batch)
                calls = len(batch)

            if len(batch_results) != len(batch):
                raise ValueError(
                    f"Mismatch: {len(batch)} texts vs {len(batch_results)} embeddings"
                )
            self._record_usage(calls, batch_results)
            fetched.extend(batch_results)

            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | {len(batch)} texts | "
                f"Running total: {self.total_tokens_used} tokens"
            )
        return fetched

    def _fan_out(self, batch: list[str]) -> list[EmbeddingResult]:
        """Issue single-text calls in waves of `concurrency`, each awaited together."""
        results: list[EmbeddingResult] = []
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for j in range(0, len(batch), self.concurrency):
                wave = batch[j: j + self.concurrency]
                # map() yields in submission order and re-raises the first failure
                results.extend(pool.map(self.vectorizer.embed, wave))
        return results

    def usage_summary(self) -> dict:
        return {
            "provider": self.vectorizer.provider,
            "model": self.vectorizer.model,
            "dimensions": self.vectorizer.dimensions,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
        }
