"""
Study Notebook RAG - Web API Server
------------------------------------
FastAPI server that wraps RAGPipeline.

Endpoints:
  POST /api/query                 -> grounded answer + citations
  POST /api/ingest/{resource_id}  -> chunk, embed and index a resource
  GET  /api/summary/{resource_id} -> structured academic summary
  GET  /api/stats/{user_id}       -> query count, tokens, recent queries
  GET  /api/health                -> vector count, cache hit rates, providers

Run from the project root:
    uvicorn app.server:app --reload --port 8000

Error mapping:
  ResourceNotFoundError     -> 404
  InsufficientContentError  -> 422
  AnswerGenerationError /
  UpstreamCapabilityError   -> 502
  pipeline not started      -> 503
"""
from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from functools import partial
from typing import Literal, Optional

# Windows cp1252 terminal fix
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from src.exceptions import (
    AnswerGenerationError,
    InsufficientContentError,
    ResourceNotFoundError,
    UpstreamCapabilityError,
)
from src.schemas import IngestResult, QueryOptions, QueryResult, SummaryResult

# ---------------------------------------------------------------------------
# Pipeline singleton
# ---------------------------------------------------------------------------

_pipeline = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the RAG pipeline once at startup; stop the cache sweep on shutdown."""
    global _pipeline
    from src.config import load_config
    from src.serving.pipeline import RAGPipeline
    from src.utils.logger import setup_logger

    config = load_config()
    setup_logger(log_level=config.logging.level, log_file=config.logging.file)
    logger.info("[Server] Starting RAG pipeline...")
    _pipeline = RAGPipeline.from_config(config)
    logger.info(
        f"[Server] Pipeline ready | store={_pipeline.vector_store.backend} | "
        f"llm={_pipeline.generator.provider}"
    )
    yield
    _pipeline.close()
    _pipeline = None
    logger.info("[Server] Pipeline closed.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Study Notebook RAG API",
    description="Grounded question answering over a student's indexed resources",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class QueryRequest(BaseModel):
    query: str = Field(..., min_length=5, max_length=1000)
    user_id: Optional[str] = None
    subject_id: Optional[str] = None
    resource_ids: Optional[list[str]] = None
    top_k: int = Field(5, ge=1, le=20)
    min_score: float = Field(0.7, ge=0.0, le=1.0)
    style: Literal["formal", "practical", "balanced"] = "balanced"
    depth: Literal["basic", "intermediate", "advanced"] = "intermediate"
    language: str = "en"
    skip_cache: bool = False

    @field_validator("query")
    @classmethod
    def strip_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Query cannot be empty")
        return v

    def to_options(self) -> QueryOptions:
        return QueryOptions(**self.model_dump(exclude={"query", "user_id"}))


class IngestRequest(BaseModel):
    content: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_pipeline():
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    return _pipeline


async def _run(func, *args, **kwargs):
    """
    Run a blocking pipeline call in the thread-pool executor and map engine
    errors to HTTP status codes.
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InsufficientContentError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except AnswerGenerationError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except UpstreamCapabilityError as exc:
        logger.error(f"[API] Upstream failure: {exc}")
        raise HTTPException(status_code=502, detail="Upstream provider unavailable") from exc


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Return vector count, cache statistics and provider names."""
    pipeline = _require_pipeline()
    return pipeline.health()


@app.post("/api/query", response_model=QueryResult)
async def query(request: QueryRequest):
    """Answer a question from the indexed resources."""
    pipeline = _require_pipeline()
    logger.info(
        f"[API] Query | user={request.user_id} subject={request.subject_id} | "
        f"query={request.query[:80]!r}"
    )
    return await _run(
        pipeline.query, request.query, request.to_options(), user_id=request.user_id
    )


@app.post("/api/ingest/{resource_id}", response_model=IngestResult)
async def ingest(resource_id: str, request: Optional[IngestRequest] = None):
    """(Re)index a resource; optional body content overrides the stored text."""
    pipeline = _require_pipeline()
    content = request.content if request is not None else None
    logger.info(f"[API] Ingest | resource={resource_id}")
    return await _run(pipeline.ingest_resource, resource_id, content)


@app.get("/api/summary/{resource_id}", response_model=SummaryResult)
async def summary(
    resource_id: str,
    depth: Literal["basic", "intermediate", "advanced"] = "intermediate",
    language: str = "en",
):
    """Structured academic summary; degraded (structured=false) when unparsable."""
    pipeline = _require_pipeline()
    return await _run(pipeline.generate_summary, resource_id, depth=depth, language=language)


@app.get("/api/stats/{user_id}")
async def stats(user_id: str):
    pipeline = _require_pipeline()
    return await _run(pipeline.get_user_stats, user_id)
