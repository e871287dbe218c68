"""
Text Vectorizers
-----------------
One interface, a closed set of provider variants chosen once at startup:

  OpenAIVectorizer -- text-embedding-3-small, 1536 dims, native batch endpoint (paid)
  GeminiVectorizer -- text-embedding-004, 768 dims, one text per call (free tier)

Dimensionality is fixed per provider and must not be mixed inside one
vector store: switching provider means re-ingesting every resource.

Each client owns its timeout and retry policy (tenacity); a call that still
fails after retries surfaces as UpstreamCapabilityError.
"""
from __future__ import annotations

import math
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential

from src.chunking.chunker import estimate_tokens
from src.exceptions import BackendNotConfiguredError, UpstreamCapabilityError


@dataclass(frozen=True)
class EmbeddingResult:
    embedding: list[float]
    token_count: int


class TextVectorizer(ABC):
    """Given text, return a fixed-length vector and a token count."""

    provider: str = ""
    model: str = ""
    dimensions: int = 0
    supports_batch: bool = False
    max_batch_size: int = 1

    @abstractmethod
    def embed(self, text: str) -> EmbeddingResult:
        ...

    def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        """Native batch call; only variants with supports_batch implement it."""
        raise NotImplementedError(f"{self.provider} has no batch embedding endpoint")


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class OpenAIVectorizer(TextVectorizer):
    """OpenAI embeddings with a native batch endpoint."""

    provider = "openai"
    supports_batch = True
    max_batch_size = 100

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        from openai import OpenAI  # lazy import keeps import graph clean
        self.model = model
        self.dimensions = dimensions
        self._client = OpenAI(api_key=api_key or os.getenv("OPENAI_API_KEY"), timeout=timeout)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def _create(self, payload: str | list[str]):
        return self._client.embeddings.create(
            model=self.model, input=payload, dimensions=self.dimensions
        )

    def embed(self, text: str) -> EmbeddingResult:
        try:
            response = self._create(text if text.strip() else " ")
        except Exception as exc:
            logger.error(f"[OpenAIVectorizer] Embedding failed: {exc}")
            raise UpstreamCapabilityError(self.provider, str(exc)) from exc
        return EmbeddingResult(
            embedding=list(response.data[0].embedding),
            token_count=response.usage.total_tokens,
        )

    def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        if not texts:
            return []
        # Empty strings are rejected by the API
        safe_texts = [t if t.strip() else " " for t in texts]
        try:
            response = self._create(safe_texts)
        except Exception as exc:
            logger.error(f"[OpenAIVectorizer] Batch embedding failed: {exc}")
            raise UpstreamCapabilityError(self.provider, str(exc)) from exc

        tokens_per_item = math.ceil(response.usage.total_tokens / len(texts))
        return [
            EmbeddingResult(embedding=list(item.embedding), token_count=tokens_per_item)
            for item in sorted(response.data, key=lambda x: x.index)
        ]


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class GeminiVectorizer(TextVectorizer):
    """Google Gemini embeddings over REST (free tier, one text per call)."""

    provider = "gemini"
    supports_batch = False
    max_batch_size = 1
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        model: str = "text-embedding-004",
        dimensions: int = 768,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self._api_key = api_key or os.getenv("GEMINI_API_KEY", "")
        self._client = httpx.Client(timeout=timeout)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def _post(self, text: str) -> dict:
        response = self._client.post(
            f"{self.base_url}/models/{self.model}:embedContent",
            params={"key": self._api_key},
            json={
                "model": f"models/{self.model}",
                "content": {"parts": [{"text": text}]},
            },
        )
        response.raise_for_status()
        return response.json()

    def embed(self, text: str) -> EmbeddingResult:
        try:
            data = self._post(text)
            values = data["embedding"]["values"]
        except Exception as exc:
            logger.error(f"[GeminiVectorizer] Embedding failed: {exc}")
            raise UpstreamCapabilityError(self.provider, str(exc)) from exc
        # The endpoint reports no usage; fall back to the character estimate.
        return EmbeddingResult(embedding=list(values), token_count=estimate_tokens(text))

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_vectorizer(config) -> TextVectorizer:
    """
    Build the vectorizer named by config.provider.

    "auto" prefers the free Gemini tier when GEMINI_API_KEY is set and falls
    back to OpenAI; with neither key configured the engine cannot start.
    """
    provider = config.provider
    if provider == "auto":
        if os.getenv("GEMINI_API_KEY"):
            provider = "gemini"
        elif os.getenv("OPENAI_API_KEY"):
            provider = "openai"
        else:
            raise BackendNotConfiguredError(
                "No embedding provider configured: set GEMINI_API_KEY or OPENAI_API_KEY"
            )

    if provider == "gemini":
        vectorizer: TextVectorizer = GeminiVectorizer(
            model=config.model or "text-embedding-004", timeout=config.timeout_seconds
        )
    elif provider == "openai":
        vectorizer = OpenAIVectorizer(
            model=config.model or "text-embedding-3-small", timeout=config.timeout_seconds
        )
    else:
        raise BackendNotConfiguredError(f"Unknown embedding provider: {provider}")

    logger.info(
        f"[Vectorizer] {vectorizer.provider} | model={vectorizer.model} | "
        f"dims={vectorizer.dimensions}"
    )
    return vectorizer
