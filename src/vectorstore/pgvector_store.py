"""
pgvector Vector Store
----------------------
Relational backend: chunks live in the resource_chunks table with a pgvector
embedding column.  Search ranks by cosine distance (the <=> operator) and
reports 1 - distance as the score.

Note on thresholds: the database applies LIMIT top_k first and min_score is
filtered afterwards in Python, so a query can return fewer than top_k rows
even when more qualifying rows exist further down the ranking.  The caller
contract (<= top_k results, all >= min_score) still holds.
"""
from __future__ import annotations

import uuid
from typing import Optional, Sequence

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from src.chunking.schemas import Chunk, ChunkMetadata
from src.storage.models import ResourceChunkRow, ResourceRow
from src.vectorstore.base import (
    DEFAULT_MIN_SCORE,
    DEFAULT_TOP_K,
    ChunkRecord,
    SimilarityMatch,
    VectorStore,
)


class PgVectorStore(VectorStore):
    """
    Chunks + embeddings in PostgreSQL.

    Usage:
        store = PgVectorStore(make_session_factory(url), dimensions=1536)
        store.store_chunks(records)
        matches = store.search_similar(query_vec, resource_ids=["r1", "r2"])
    """

    backend = "pgvector"

    def __init__(self, session_factory: sessionmaker, dimensions: int) -> None:
        super().__init__(dimensions)
        self._session_factory = session_factory

    def store_chunks(self, records: list[ChunkRecord]) -> list[str]:
        if not records:
            return []
        for record in records:
            self._check_dimensions(record.embedding)

        ids: list[str] = []
        with self._session_factory() as session:
            try:
                # Single-row insert per chunk, one transaction per batch
                for record in records:
                    row = ResourceChunkRow(
                        id=str(uuid.uuid4()),
                        resource_id=record.resource_id,
                        content=record.content,
                        metadata_=record.metadata.model_dump(mode="json"),
                        chunk_index=record.metadata.chunk_index,
                        embedding=list(record.embedding),
                    )
                    session.add(row)
                    ids.append(row.id)
                session.commit()
            except Exception:
                session.rollback()
                raise

        logger.debug(f"[PgVectorStore] Inserted {len(ids)} chunks")
        return ids

    def search_similar(
        self,
        query_embedding: Sequence[float],
        *,
        resource_ids: Optional[list[str]] = None,
        subject_id: Optional[str] = None,
        top_k: int = DEFAULT_TOP_K,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> list[SimilarityMatch]:
        self._check_dimensions(query_embedding)
        if top_k <= 0:
            return []

        distance = ResourceChunkRow.embedding.cosine_distance(list(query_embedding))
        stmt = (
            select(
                ResourceChunkRow,
                ResourceRow.title,
                ResourceRow.subject_id,
                (1 - distance).label("score"),
            )
            .join(ResourceRow, ResourceRow.id == ResourceChunkRow.resource_id)
        )
        if resource_ids:
            stmt = stmt.where(ResourceChunkRow.resource_id.in_(resource_ids))
        elif subject_id:
            stmt = stmt.where(ResourceRow.subject_id == subject_id)
        stmt = stmt.order_by(distance).limit(top_k)

        with self._session_factory() as session:
            rows = session.execute(stmt).all()

        matches: list[SimilarityMatch] = []
        for chunk_row, title, row_subject_id, score in rows:
            if score is None or float(score) < min_score:
                continue
            stored = chunk_row.metadata_ or {}
            matches.append(
                SimilarityMatch(
                    id=chunk_row.id,
                    content=chunk_row.content,
                    metadata=ChunkMetadata(
                        resource_id=chunk_row.resource_id,
                        resource_title=title,
                        chunk_index=chunk_row.chunk_index,
                        page=stored.get("page"),
                        section=stored.get("section"),
                        timestamp=stored.get("timestamp"),
                        subject_id=row_subject_id,
                    ),
                    score=float(score),
                )
            )
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    def delete_by_resource(self, resource_id: str) -> None:
        with self._session_factory() as session:
            result = session.execute(
                delete(ResourceChunkRow).where(ResourceChunkRow.resource_id == resource_id)
            )
            session.commit()
        logger.debug(f"[PgVectorStore] Deleted {result.rowcount} chunks of {resource_id}")

    def get_chunks(self, resource_id: str, limit: int = 10) -> list[Chunk]:
        stmt = (
            select(ResourceChunkRow)
            .where(ResourceChunkRow.resource_id == resource_id)
            .order_by(ResourceChunkRow.chunk_index)
            .limit(limit)
        )
        with self._session_factory() as session:
            rows = session.execute(stmt).scalars().all()
        return [
            Chunk(
                content=row.content,
                metadata=ChunkMetadata(
                    **{**(row.metadata_ or {}), "resource_id": row.resource_id,
                       "chunk_index": row.chunk_index}
                ),
            )
            for row in rows
        ]

    def count(self) -> int:
        with self._session_factory() as session:
            return int(session.execute(select(func.count()).select_from(ResourceChunkRow)).scalar_one())
