"""
Chunk schema - the atomic unit that gets embedded and indexed.

A Chunk traces back to its parent resource so every retrieval result
carries full provenance for citations.  Chunks are immutable once created;
re-ingesting a resource replaces its chunk set wholesale.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict


class ChunkMetadata(BaseModel):
    """Provenance copied into every chunk of a resource."""

    model_config = ConfigDict(frozen=True)

    resource_id: str
    resource_title: str
    chunk_index: int = 0                 # 0-based, contiguous per resource
    page: Optional[int] = None
    section: Optional[str] = None
    timestamp: Optional[str] = None      # offset into audio/video resources
    subject_id: Optional[str] = None     # lets payload filters scope by subject


class Chunk(BaseModel):
    """A single embeddable text window produced from a resource."""

    model_config = ConfigDict(frozen=True)

    content: str
    metadata: ChunkMetadata
