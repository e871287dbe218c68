"""PgVectorStore against a fake session: SQL shape and client-side thresholding."""
import pytest
from sqlalchemy.dialects import postgresql

from src.chunking.schemas import ChunkMetadata
from src.storage.models import ResourceChunkRow
from src.vectorstore.base import ChunkRecord
from src.vectorstore.pgvector_store import PgVectorStore

from tests.conftest import DIMS, unit


class FakeResult:
    def __init__(self, rows, rowcount=0):
        self._rows = rows
        self.rowcount = rowcount

    def all(self):
        return list(self._rows)

    def scalars(self):
        return FakeResult([row[0] if isinstance(row, tuple) else row for row in self._rows])

    def scalar_one(self):
        return self._rows[0]

    def __iter__(self):
        return iter(self._rows)


class FakeSession:
    def __init__(self, rows=None, fail_commit=False):
        self.rows = rows or []
        self.fail_commit = fail_commit
        self.added = []
        self.statements = []
        self.commits = 0
        self.rollbacks = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def add(self, obj):
        self.added.append(obj)

    def commit(self):
        if self.fail_commit:
            raise RuntimeError("connection lost")
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def execute(self, stmt):
        self.statements.append(stmt)
        return FakeResult(self.rows, rowcount=len(self.rows))


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _row(resource_id: str, index: int, content: str = "text") -> ResourceChunkRow:
    return ResourceChunkRow(
        id=f"{resource_id}-{index}",
        resource_id=resource_id,
        content=content,
        metadata_={"resource_id": resource_id, "resource_title": "stale", "chunk_index": index, "page": 3},
        chunk_index=index,
        embedding=unit(0),
    )


def _store(session: FakeSession) -> PgVectorStore:
    return PgVectorStore(lambda: session, dimensions=DIMS)


def test_store_chunks_inserts_one_row_per_chunk_in_one_transaction():
    session = FakeSession()
    records = [
        ChunkRecord(
            resource_id="r1",
            content=f"chunk {i}",
            embedding=unit(i),
            metadata=ChunkMetadata(resource_id="r1", resource_title="T", chunk_index=i),
        )
        for i in range(3)
    ]
    ids = _store(session).store_chunks(records)

    assert len(ids) == 3 and len(set(ids)) == 3
    assert [row.id for row in session.added] == ids
    assert [row.chunk_index for row in session.added] == [0, 1, 2]
    assert session.added[1].embedding == unit(1)
    assert session.commits == 1


def test_store_chunks_rolls_back_on_failure():
    session = FakeSession(fail_commit=True)
    record = ChunkRecord("r1", "c", unit(0), ChunkMetadata(resource_id="r1", resource_title="T"))
    with pytest.raises(RuntimeError):
        _store(session).store_chunks([record])
    assert session.rollbacks == 1


def test_search_orders_by_cosine_distance_and_limits():
    session = FakeSession()
    _store(session).search_similar(unit(0), top_k=7)
    sql = _sql(session.statements[0])
    assert "<=>" in sql
    assert "JOIN resources" in sql
    assert "ORDER BY" in sql and "LIMIT" in sql
    assert "WHERE" not in sql


def test_search_filters_by_resource_ids_before_subject():
    session = FakeSession()
    _store(session).search_similar(unit(0), resource_ids=["r1", "r2"], subject_id="math")
    where = _sql(session.statements[0]).split("WHERE", 1)[1]
    assert "resource_chunks.resource_id IN" in where
    assert "resources.subject_id" not in where


def test_search_filters_by_subject():
    session = FakeSession()
    _store(session).search_similar(unit(0), subject_id="math")
    where = _sql(session.statements[0]).split("WHERE", 1)[1]
    assert "resources.subject_id =" in where


def test_threshold_is_applied_after_the_limit():
    session = FakeSession(
        rows=[
            (_row("r1", 0, "best"), "Calculus", "math", 0.95),
            (_row("r1", 1, "good"), "Calculus", "math", 0.81),
            (_row("r2", 0, "weak"), "Biology", "bio", 0.40),
        ]
    )
    matches = _store(session).search_similar(unit(0), top_k=3, min_score=0.8)

    assert [m.content for m in matches] == ["best", "good"]
    assert all(m.score >= 0.8 for m in matches)
    assert matches[0].metadata.resource_title == "Calculus"
    assert matches[0].metadata.subject_id == "math"
    assert matches[0].metadata.page == 3


def test_never_more_than_top_k():
    rows = [(_row("r1", i), "T", None, 0.9) for i in range(5)]
    matches = _store(FakeSession(rows=rows)).search_similar(unit(0), top_k=2, min_score=0.0)
    assert len(matches) <= 2


def test_get_chunks_uses_stored_order_and_current_ids():
    session = FakeSession(rows=[_row("r1", 0, "first"), _row("r1", 1, "second")])
    chunks = _store(session).get_chunks("r1", limit=2)
    assert [c.content for c in chunks] == ["first", "second"]
    assert [c.metadata.chunk_index for c in chunks] == [0, 1]
    assert "ORDER BY resource_chunks.chunk_index" in _sql(session.statements[0])


def test_delete_and_count():
    session = FakeSession(rows=[4])
    store = _store(session)
    store.delete_by_resource("r1")
    assert "DELETE FROM resource_chunks" in _sql(session.statements[0])
    assert session.commits == 1
    assert store.count() == 4


def test_dimension_mismatch_raises():
    with pytest.raises(ValueError):
        _store(FakeSession()).search_similar([1.0, 2.0])
