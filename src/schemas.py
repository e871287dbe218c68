"""
Core Pydantic schemas for the study-notebook RAG engine.

Resources are the documents a student indexes; everything downstream
(chunks, citations, query log rows) traces back to a resource id.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from src.utils.helpers import utcnow

Style = Literal["formal", "practical", "balanced"]
Depth = Literal["basic", "intermediate", "advanced"]


# --- Enumerations ------------------------------------------------------------

class IndexStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    INDEXED = "indexed"
    FAILED = "failed"          # queryable but unindexed; retry explicitly


# --- Resources ----------------------------------------------------------------

class Resource(BaseModel):
    """
    A study resource (paper, book chapter, lecture transcript...).

    Ingestion reads `content` and falls back to `description` (abstract)
    when no full text is attached.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    subject_id: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    status: IndexStatus = IndexStatus.PENDING
    chunk_count: int = 0
    indexed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def is_indexed(self) -> bool:
        return self.status == IndexStatus.INDEXED


class IngestResult(BaseModel):
    chunks_created: int
    tokens_used: int


# --- Query --------------------------------------------------------------------

class QueryOptions(BaseModel):
    """Retrieval scope plus answer-shaping preferences."""

    resource_ids: Optional[list[str]] = None
    subject_id: Optional[str] = None
    top_k: int = Field(5, ge=1, le=20)
    min_score: float = Field(0.7, ge=0.0, le=1.0)
    style: Style = "balanced"
    depth: Depth = "intermediate"
    language: str = "en"
    skip_cache: bool = False


class Citation(BaseModel):
    resource_id: str
    resource_title: str
    chunk_content: str                  # truncated to 200 chars + "..."
    page: Optional[int] = None
    section: Optional[str] = None
    relevance_score: float


class QueryResult(BaseModel):
    answer: str
    citations: list[Citation] = Field(default_factory=list)
    tokens_used: int = 0
    processing_time_ms: int = 0
    from_cache: bool = False


class QueryLogEntry(BaseModel):
    """One answered query, persisted for usage stats."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    subject_id: Optional[str] = None
    query: str
    response: str
    chunks_used: list[dict] = Field(default_factory=list)   # [{id, score}]
    tokens_used: int = 0
    response_time_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)


# --- Summary ------------------------------------------------------------------

class DefinitionItem(BaseModel):
    term: str
    definition: str
    formula: Optional[str] = None


class ExampleItem(BaseModel):
    description: str
    solution: Optional[str] = None


class AcademicSummary(BaseModel):
    """Multi-section study summary produced from a resource's chunks."""

    theoretical_context: str = ""
    key_ideas: list[str] = Field(default_factory=list)
    definitions: list[DefinitionItem] = Field(default_factory=list)
    examples: list[ExampleItem] = Field(default_factory=list)
    common_mistakes: list[str] = Field(default_factory=list)
    review_checklist: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)


class SummaryResult(BaseModel):
    """
    Structured-or-degraded summary.

    structured=False means the model output did not parse; the raw text is
    then carried in summary.theoretical_context and raw_text.
    """

    summary: AcademicSummary
    structured: bool = True
    raw_text: Optional[str] = None
