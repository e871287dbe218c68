import pytest
from fastapi.testclient import TestClient

from app import server
from src.exceptions import UpstreamCapabilityError
from src.generation.prompts import NO_CONTEXT_RESPONSE

from tests.conftest import FakeGenerator, FakeVectorizer, unit

CONTENT = "Lecture notes on linear regression, least squares and residual analysis."
QUESTION = "What is least squares?"


@pytest.fixture
def pipeline(make_pipeline, add_resource, monkeypatch):
    vectorizer = FakeVectorizer(vectors={QUESTION: unit(0), CONTENT: unit(0)})
    pipeline = make_pipeline(vectorizer=vectorizer)
    add_resource(pipeline, "r1", title="Regression", content=CONTENT, subject_id="stats")
    add_resource(pipeline, "empty")
    monkeypatch.setattr(server, "_pipeline", pipeline)
    return pipeline


@pytest.fixture
def client(pipeline):
    # No context manager: lifespan would build a pipeline from real providers.
    return TestClient(server.app)


def test_not_ready_returns_503(monkeypatch):
    monkeypatch.setattr(server, "_pipeline", None)
    assert TestClient(server.app).get("/api/health").status_code == 503


def test_ingest_then_query(client):
    ingested = client.post("/api/ingest/r1")
    assert ingested.status_code == 200
    assert ingested.json()["chunks_created"] == 1

    response = client.post("/api/query", json={"query": QUESTION, "user_id": "u1", "subject_id": "stats"})
    assert response.status_code == 200
    body = response.json()
    assert body["citations"][0]["resource_title"] == "Regression"
    assert body["from_cache"] is False

    stats = client.get("/api/stats/u1").json()
    assert stats["total_queries"] == 1


def test_query_without_context(client):
    response = client.post("/api/query", json={"query": QUESTION})
    assert response.status_code == 200
    assert response.json()["answer"] == NO_CONTEXT_RESPONSE


@pytest.mark.parametrize(
    "payload",
    [{"query": "hi"}, {"query": QUESTION, "top_k": 21}, {"query": QUESTION, "min_score": 1.5}],
)
def test_query_validation(client, payload):
    assert client.post("/api/query", json=payload).status_code == 422


def test_ingest_body_overrides_content(client, pipeline):
    response = client.post("/api/ingest/empty", json={"content": CONTENT + " Extra material for the override."})
    assert response.status_code == 200
    assert pipeline.vector_store.get_chunks("empty")[0].content.endswith("override.")


def test_unknown_resource_is_404(client):
    assert client.post("/api/ingest/missing").status_code == 404
    assert client.get("/api/summary/missing").status_code == 404


def test_summary_without_content_is_422(client):
    assert client.get("/api/summary/empty").status_code == 422


def test_summary_degraded(client):
    client.post("/api/ingest/r1")
    response = client.get("/api/summary/r1", params={"depth": "basic"})
    assert response.status_code == 200
    body = response.json()
    assert body["structured"] is False
    assert body["raw_text"] == FakeGenerator().reply


def test_generation_failure_is_502(client, pipeline):
    client.post("/api/ingest/r1")
    pipeline.generator = FakeGenerator(error=UpstreamCapabilityError("fake", "boom"))

    response = client.post("/api/query", json={"query": QUESTION})
    assert response.status_code == 502
    assert "boom" not in response.text


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["vector_store"]["backend"] == "faiss"
