"""
Shared fixtures: fake embedding / generation providers and a pipeline wired
over a real FAISS store with file-backed catalog and query log.
"""
from __future__ import annotations

import hashlib
from typing import Optional

import numpy as np
import pytest

from src.caching.result_cache import ResultCache
from src.chunking.chunker import TextChunker, estimate_tokens
from src.config import AppConfig
from src.embedding.embedder import Embedder
from src.embedding.vectorizers import EmbeddingResult, TextVectorizer
from src.exceptions import UpstreamCapabilityError
from src.generation.generator import GenerationResult, TextGenerator
from src.schemas import Resource
from src.serving.pipeline import RAGPipeline
from src.storage.catalog import FileResourceCatalog, JsonlQueryLog
from src.vectorstore.faiss_store import FAISSVectorStore

DIMS = 8


def pseudo_vector(text: str, dims: int = DIMS) -> list[float]:
    """Deterministic gaussian vector seeded from the text."""
    seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
    return np.random.default_rng(seed).standard_normal(dims).tolist()


def unit(index: int, dims: int = DIMS) -> list[float]:
    vec = [0.0] * dims
    vec[index] = 1.0
    return vec


class FakeVectorizer(TextVectorizer):
    """Vectors from an explicit table, else pseudo-random; records every call."""

    provider = "fake"
    model = "fake-embed"

    def __init__(
        self,
        vectors: Optional[dict[str, list[float]]] = None,
        dimensions: int = DIMS,
        supports_batch: bool = True,
        fail_on: Optional[set[str]] = None,
    ) -> None:
        self.vectors = dict(vectors or {})
        self.dimensions = dimensions
        self.supports_batch = supports_batch
        self.fail_on = set(fail_on or ())
        self.embed_calls: list[str] = []
        self.batch_calls: list[list[str]] = []

    def _result(self, text: str) -> EmbeddingResult:
        if text in self.fail_on:
            raise UpstreamCapabilityError(self.provider, f"cannot embed {text!r}")
        vector = self.vectors.get(text) or pseudo_vector(text, self.dimensions)
        return EmbeddingResult(embedding=list(vector), token_count=estimate_tokens(text))

    def embed(self, text: str) -> EmbeddingResult:
        self.embed_calls.append(text)
        return self._result(text)

    def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        if not self.supports_batch:
            return super().embed_many(texts)
        self.batch_calls.append(list(texts))
        return [self._result(t) for t in texts]


class FakeGenerator(TextGenerator):
    provider = "fake"
    model = "fake-llm"

    def __init__(self, reply: str = "Grounded answer [Source 1].", tokens: int = 42, error=None) -> None:
        self.reply = reply
        self.tokens = tokens
        self.error = error
        self.calls: list[dict] = []

    def generate(self, prompt, *, system_prompt=None, max_tokens=1000, temperature=0.7):
        self.calls.append(
            {
                "prompt": prompt,
                "system_prompt": system_prompt,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        if self.error is not None:
            raise self.error
        return GenerationResult(
            content=self.reply,
            tokens_used=self.tokens,
            finish_reason="stop",
            model=self.model,
            provider=self.provider,
        )


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def vectorizer() -> FakeVectorizer:
    return FakeVectorizer()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def make_pipeline(tmp_path):
    """Factory building a RAGPipeline over fakes and a real in-memory FAISS store."""

    def _make(
        vectorizer: Optional[FakeVectorizer] = None,
        generator: Optional[FakeGenerator] = None,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
    ) -> RAGPipeline:
        vectorizer = vectorizer or FakeVectorizer()
        cache = ResultCache()
        return RAGPipeline(
            chunker=TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap),
            embedder=Embedder(vectorizer, cache),
            vector_store=FAISSVectorStore(vectorizer.dimensions),
            generator=generator or FakeGenerator(),
            catalog=FileResourceCatalog(tmp_path / "resources.json"),
            query_log=JsonlQueryLog(tmp_path / "query_log.jsonl"),
            cache=cache,
            config=AppConfig(),
        )

    return _make


@pytest.fixture
def add_resource():
    def _add(pipeline: RAGPipeline, resource_id: str, **fields) -> Resource:
        fields.setdefault("title", f"Resource {resource_id}")
        return pipeline.catalog.save(Resource(id=resource_id, **fields))

    return _add
