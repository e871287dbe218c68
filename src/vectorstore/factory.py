"""Backend selection for the vector store."""
from __future__ import annotations

from typing import Optional

from loguru import logger
from sqlalchemy.orm import sessionmaker

from src.exceptions import BackendNotConfiguredError
from src.vectorstore.base import VectorStore


def create_vector_store(
    config,
    dimensions: int,
    session_factory: Optional[sessionmaker] = None,
) -> VectorStore:
    """
    Build the backend named by config.backend.

    Args:
        config:          VectorStoreConfig section.
        dimensions:      Embedding dimensionality of the active vectorizer.
        session_factory: Required for the pgvector backend.

    Raises:
        BackendNotConfiguredError: unknown backend, pgvector without a database,
            or a pgvector column width that differs from dimensions.
    """
    if config.backend == "pgvector":
        if session_factory is None:
            raise BackendNotConfiguredError(
                "pgvector backend selected but DATABASE_URL is not set"
            )
        from src.storage.models import ResourceChunkRow
        from src.vectorstore.pgvector_store import PgVectorStore

        column_dims = ResourceChunkRow.__table__.c.embedding.type.dim
        if column_dims != dimensions:
            raise BackendNotConfiguredError(
                f"resource_chunks.embedding holds {column_dims}-dimensional vectors but the "
                f"embedding provider produces {dimensions}; set EMBEDDING_DIMENSIONS={dimensions}"
            )
        store: VectorStore = PgVectorStore(session_factory, dimensions)
    elif config.backend == "faiss":
        from src.vectorstore.faiss_store import FAISSVectorStore

        store = FAISSVectorStore(
            dimensions, collection=config.collection, index_dir=config.index_dir
        )
    else:
        raise BackendNotConfiguredError(f"Unknown vector store backend: {config.backend}")

    logger.info(f"[VectorStore] backend={store.backend} | dims={dimensions}")
    return store
