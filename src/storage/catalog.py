"""
Resource catalog and query log.

Two persistence flavours behind the same interfaces:

  SqlResourceCatalog / SqlQueryLog     -- the resources / rag_queries tables
                                          (used together with PgVectorStore)
  FileResourceCatalog / JsonlQueryLog  -- a JSON file and a JSON-lines log
                                          (used with the FAISS backend when
                                          no DATABASE_URL is configured)
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from src.exceptions import ResourceNotFoundError
from src.schemas import IndexStatus, QueryLogEntry, Resource
from src.storage.models import RagQueryRow, ResourceRow
from src.utils.helpers import append_jsonl, load_json, read_jsonl, save_json, utcnow


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class ResourceCatalog(ABC):
    """Resource metadata and indexing status."""

    @abstractmethod
    def get(self, resource_id: str) -> Resource:
        """Return the resource or raise ResourceNotFoundError."""

    @abstractmethod
    def save(self, resource: Resource) -> Resource:
        ...

    @abstractmethod
    def list_resources(self, subject_id: Optional[str] = None) -> list[Resource]:
        ...

    def _update(self, resource_id: str, **changes) -> Resource:
        resource = self.get(resource_id).model_copy(update=changes)
        return self.save(resource)

    def mark_processing(self, resource_id: str) -> Resource:
        return self._update(resource_id, status=IndexStatus.PROCESSING, last_error=None)

    def mark_indexed(self, resource_id: str, chunk_count: int) -> Resource:
        return self._update(
            resource_id,
            status=IndexStatus.INDEXED,
            chunk_count=chunk_count,
            indexed_at=utcnow(),
            last_error=None,
        )

    def mark_failed(self, resource_id: str, error: str) -> Resource:
        return self._update(resource_id, status=IndexStatus.FAILED, last_error=error)


class QueryLog(ABC):
    @abstractmethod
    def record(self, entry: QueryLogEntry) -> None:
        ...

    @abstractmethod
    def list_for_user(self, user_id: Optional[str]) -> list[QueryLogEntry]:
        """Entries for one user, newest first."""


# ---------------------------------------------------------------------------
# File-backed
# ---------------------------------------------------------------------------

class FileResourceCatalog(ResourceCatalog):
    """All resources in one JSON document, rewritten on every save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._resources: dict[str, Resource] = {}
        if self.path.exists():
            for raw in load_json(self.path):
                resource = Resource.model_validate(raw)
                self._resources[resource.id] = resource
            logger.debug(f"[Catalog] Loaded {len(self._resources)} resources from {self.path}")

    def get(self, resource_id: str) -> Resource:
        with self._lock:
            resource = self._resources.get(resource_id)
        if resource is None:
            raise ResourceNotFoundError(resource_id)
        return resource

    def save(self, resource: Resource) -> Resource:
        with self._lock:
            self._resources[resource.id] = resource
            save_json([r.model_dump(mode="json") for r in self._resources.values()], self.path)
        return resource

    def list_resources(self, subject_id: Optional[str] = None) -> list[Resource]:
        with self._lock:
            resources = list(self._resources.values())
        if subject_id:
            resources = [r for r in resources if r.subject_id == subject_id]
        return resources


class JsonlQueryLog(QueryLog):
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, entry: QueryLogEntry) -> None:
        with self._lock:
            append_jsonl(entry.model_dump(mode="json"), self.path)

    def list_for_user(self, user_id: Optional[str]) -> list[QueryLogEntry]:
        with self._lock:
            rows = read_jsonl(self.path)
        entries = [QueryLogEntry.model_validate(r) for r in rows if r.get("user_id") == user_id]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

def _to_resource(row: ResourceRow) -> Resource:
    return Resource(
        id=row.id,
        title=row.title,
        subject_id=row.subject_id,
        description=row.description,
        content=row.content,
        status=IndexStatus(row.status),
        chunk_count=row.chunk_count,
        indexed_at=row.indexed_at,
        last_error=row.last_error,
    )


class SqlResourceCatalog(ResourceCatalog):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def get(self, resource_id: str) -> Resource:
        with self._session_factory() as session:
            row = session.get(ResourceRow, resource_id)
            if row is None:
                raise ResourceNotFoundError(resource_id)
            return _to_resource(row)

    def save(self, resource: Resource) -> Resource:
        with self._session_factory() as session:
            session.merge(
                ResourceRow(
                    id=resource.id,
                    title=resource.title,
                    subject_id=resource.subject_id,
                    description=resource.description,
                    content=resource.content,
                    status=resource.status.value,
                    chunk_count=resource.chunk_count,
                    indexed_at=resource.indexed_at,
                    last_error=resource.last_error,
                )
            )
            session.commit()
        return resource

    def list_resources(self, subject_id: Optional[str] = None) -> list[Resource]:
        stmt = select(ResourceRow).order_by(ResourceRow.title)
        if subject_id:
            stmt = stmt.where(ResourceRow.subject_id == subject_id)
        with self._session_factory() as session:
            return [_to_resource(row) for row in session.execute(stmt).scalars()]


class SqlQueryLog(QueryLog):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def record(self, entry: QueryLogEntry) -> None:
        with self._session_factory() as session:
            session.add(RagQueryRow(**entry.model_dump()))
            session.commit()

    def list_for_user(self, user_id: Optional[str]) -> list[QueryLogEntry]:
        stmt = (
            select(RagQueryRow)
            .where(RagQueryRow.user_id == user_id)
            .order_by(RagQueryRow.created_at.desc())
        )
        with self._session_factory() as session:
            return [
                QueryLogEntry(
                    id=row.id,
                    user_id=row.user_id,
                    subject_id=row.subject_id,
                    query=row.query,
                    response=row.response,
                    chunks_used=row.chunks_used or [],
                    tokens_used=row.tokens_used,
                    response_time_ms=row.response_time_ms,
                    created_at=row.created_at,
                )
                for row in session.execute(stmt).scalars()
            ]



# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_storage(config) -> tuple[ResourceCatalog, QueryLog, Optional[sessionmaker]]:
    """
    Catalog, query log and (when DATABASE_URL is set) the session factory.

    Without a database both live in files under config.storage.
    """
    if config.database_url:
        from src.storage.models import make_session_factory

        session_factory = make_session_factory(config.database_url)
        return SqlResourceCatalog(session_factory), SqlQueryLog(session_factory), session_factory

    return (
        FileResourceCatalog(config.storage.catalog_path),
        JsonlQueryLog(config.storage.query_log_path),
        None,
    )
