"""
Vector store interface and shared types.

Two backends implement the same contract:

  PgVectorStore    -- chunks in a relational table with a pgvector column
  FAISSVectorStore -- a dedicated in-process vector index with payloads

Contract (identical from the caller's side):
  - search_similar() never returns more than top_k matches
  - every returned score is >= min_score, sorted descending
  - delete_by_resource() is idempotent
  - a non-empty resource_ids filter takes precedence over subject_id
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from pydantic import BaseModel

from src.chunking.schemas import Chunk, ChunkMetadata

DEFAULT_TOP_K = 5
DEFAULT_MIN_SCORE = 0.7


@dataclass
class ChunkRecord:
    """A chunk paired with its embedding, ready to be stored."""

    resource_id: str
    content: str
    embedding: Sequence[float]
    metadata: ChunkMetadata


class SimilarityMatch(BaseModel):
    """One search hit; score is cosine similarity in [-1, 1]."""

    id: str
    content: str
    metadata: ChunkMetadata
    score: float


class VectorStore(ABC):
    """Persists (resource, chunk, vector, metadata) and answers k-NN queries."""

    backend: str = ""

    def __init__(self, dimensions: int) -> None:
        self.dimensions = dimensions

    def _check_dimensions(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimensions:
            raise ValueError(
                f"Embedding has {len(vector)} dimensions, store expects {self.dimensions}"
            )

    def store_chunk(
        self,
        resource_id: str,
        content: str,
        embedding: Sequence[float],
        metadata: ChunkMetadata,
    ) -> str:
        """Store one chunk and return its store-assigned id."""
        return self.store_chunks([ChunkRecord(resource_id, content, embedding, metadata)])[0]

    @abstractmethod
    def store_chunks(self, records: list[ChunkRecord]) -> list[str]:
        """Store many chunks, returning ids in input order."""

    @abstractmethod
    def search_similar(
        self,
        query_embedding: Sequence[float],
        *,
        resource_ids: Optional[list[str]] = None,
        subject_id: Optional[str] = None,
        top_k: int = DEFAULT_TOP_K,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> list[SimilarityMatch]:
        """Return at most top_k matches with score >= min_score."""

    @abstractmethod
    def delete_by_resource(self, resource_id: str) -> None:
        """Remove every chunk of a resource (no-op when there are none)."""

    @abstractmethod
    def get_chunks(self, resource_id: str, limit: int = 10) -> list[Chunk]:
        """Stored chunks of a resource in chunk_index order."""

    @abstractmethod
    def count(self) -> int:
        """Total number of stored chunks."""

    def close(self) -> None:
        """Release backend resources."""
