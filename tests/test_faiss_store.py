import math

import pytest

from src.chunking.schemas import ChunkMetadata
from src.vectorstore.base import ChunkRecord
from src.vectorstore.faiss_store import FAISSVectorStore

from tests.conftest import DIMS, pseudo_vector, unit


def _record(resource_id: str, index: int, vector, subject_id=None, content=None) -> ChunkRecord:
    return ChunkRecord(
        resource_id=resource_id,
        content=content or f"{resource_id} chunk {index}",
        embedding=vector,
        metadata=ChunkMetadata(
            resource_id=resource_id,
            resource_title=f"Title {resource_id}",
            chunk_index=index,
            subject_id=subject_id,
        ),
    )


def _angled(score: float) -> list[float]:
    """Vector whose cosine with unit(0) equals score."""
    vec = [0.0] * DIMS
    vec[0] = score
    vec[1] = math.sqrt(1 - score * score)
    return vec


@pytest.fixture
def seeded_store() -> FAISSVectorStore:
    store = FAISSVectorStore(DIMS)
    records = [
        _record("r1", i, pseudo_vector(f"r1-{i}"), subject_id="math") for i in range(20)
    ] + [
        _record("r2", i, pseudo_vector(f"r2-{i}"), subject_id="bio") for i in range(20)
    ]
    store.store_chunks(records)
    return store


def test_collection_is_created_lazily():
    store = FAISSVectorStore(DIMS)
    assert store.count() == 0
    assert store.search_similar(unit(0), min_score=0.0) == []


@pytest.mark.parametrize("top_k,min_score", [(1, 0.0), (5, 0.2), (10, -1.0), (50, 0.5), (3, 0.99)])
def test_search_respects_top_k_and_min_score(seeded_store, top_k, min_score):
    query = pseudo_vector("some query")
    matches = seeded_store.search_similar(query, top_k=top_k, min_score=min_score)
    assert len(matches) <= top_k
    assert all(m.score >= min_score for m in matches)
    assert [m.score for m in matches] == sorted((m.score for m in matches), reverse=True)


def test_scores_are_cosine_similarity():
    store = FAISSVectorStore(DIMS)
    store.store_chunks([_record("r1", 0, [x * 7 for x in _angled(0.92)])])
    [match] = store.search_similar(unit(0), min_score=0.5)
    assert match.score == pytest.approx(0.92, abs=1e-5)
    assert match.metadata.resource_title == "Title r1"


def test_resource_filter_takes_precedence_over_subject(seeded_store):
    matches = seeded_store.search_similar(
        pseudo_vector("q"), resource_ids=["r2"], subject_id="math", top_k=40, min_score=-1.0
    )
    assert len(matches) == 20
    assert {m.metadata.resource_id for m in matches} == {"r2"}


def test_subject_filter(seeded_store):
    matches = seeded_store.search_similar(
        pseudo_vector("q"), subject_id="math", top_k=40, min_score=-1.0
    )
    assert {m.metadata.resource_id for m in matches} == {"r1"}


def test_unknown_scope_returns_nothing(seeded_store):
    assert seeded_store.search_similar(pseudo_vector("q"), resource_ids=["nope"], min_score=-1.0) == []
    assert seeded_store.search_similar(pseudo_vector("q"), subject_id="nope", min_score=-1.0) == []


def test_delete_by_resource_is_idempotent(seeded_store):
    seeded_store.delete_by_resource("r1")
    seeded_store.delete_by_resource("r1")
    seeded_store.delete_by_resource("never-stored")
    assert seeded_store.count() == 20
    matches = seeded_store.search_similar(pseudo_vector("q"), top_k=40, min_score=-1.0)
    assert {m.metadata.resource_id for m in matches} == {"r2"}
    assert seeded_store.search_similar(pseudo_vector("q"), subject_id="math", min_score=-1.0) == []


def test_get_chunks_in_index_order():
    store = FAISSVectorStore(DIMS)
    store.store_chunks([_record("r1", i, pseudo_vector(str(i))) for i in (2, 0, 1)])
    chunks = store.get_chunks("r1", limit=2)
    assert [c.metadata.chunk_index for c in chunks] == [0, 1]


def test_dimension_mismatch_raises():
    store = FAISSVectorStore(DIMS)
    with pytest.raises(ValueError):
        store.store_chunks([_record("r1", 0, [1.0, 0.0])])
    with pytest.raises(ValueError):
        store.search_similar([1.0, 0.0])


def test_store_chunk_returns_id():
    store = FAISSVectorStore(DIMS)
    chunk_id = store.store_chunk("r1", "content", unit(0), ChunkMetadata(resource_id="r1", resource_title="T"))
    [match] = store.search_similar(unit(0))
    assert match.id == chunk_id


def test_persistence_round_trip(tmp_path):
    store = FAISSVectorStore(DIMS, collection="notes", index_dir=tmp_path)
    store.store_chunks([_record("r1", i, pseudo_vector(f"v{i}"), subject_id="s") for i in range(5)])
    store.delete_by_resource("r1")
    store.store_chunks([_record("r2", 0, unit(3), subject_id="s", content="kept")])

    reloaded = FAISSVectorStore(DIMS, collection="notes", index_dir=tmp_path)
    assert reloaded.count() == 1
    [match] = reloaded.search_similar(unit(3), subject_id="s")
    assert match.content == "kept"

    reloaded.store_chunks([_record("r3", 0, unit(4))])
    assert reloaded.count() == 2
    assert (tmp_path / "notes.manifest.json").exists()


def test_loading_with_other_dimensions_fails(tmp_path):
    FAISSVectorStore(DIMS, index_dir=tmp_path).store_chunks([_record("r1", 0, unit(0))])
    with pytest.raises(ValueError):
        FAISSVectorStore(DIMS * 2, index_dir=tmp_path).count()
