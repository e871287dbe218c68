"""
RAG Serving Pipeline
---------------------
Orchestrates the three study-notebook operations:

  ingest_resource   resource text
                        -> TextChunker (paragraph / sentence / word windows)
                        -> Embedder.embed_batch (cache first, batched provider calls)
                        -> VectorStore.store_chunks
                        -> catalog: indexed, chunk count, timestamp

  query             user query
                        -> answer cache (unless skip_cache)
                        -> Embedder.embed
                        -> VectorStore.search_similar (top_k, min_score, scope)
                        -> TextGenerator with a grounded [Source N] prompt
                        -> citations + query log + answer cache

  generate_summary  first stored chunks (or the description)
                        -> TextGenerator asked for strict JSON
                        -> AcademicSummary, or a degraded result on parse failure

The query() and ingest_resource() methods are decorated with @traceable so
LangSmith captures each chain in a single trace.
"""
from __future__ import annotations

import re
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

import orjson
from langsmith import traceable
from loguru import logger
from pydantic import ValidationError

from src.caching.result_cache import AnswerCacheEntry, ResultCache
from src.chunking.chunker import TextChunker
from src.config import AppConfig, load_config
from src.embedding.embedder import Embedder
from src.embedding.vectorizers import create_vectorizer
from src.exceptions import (
    AnswerGenerationError,
    InsufficientContentError,
    UpstreamCapabilityError,
)
from src.generation.generator import TextGenerator, create_generator
from src.generation.prompts import (
    NO_CONTEXT_RESPONSE,
    build_grounded_prompt,
    build_summary_prompt,
    build_system_prompt,
)
from src.schemas import (
    AcademicSummary,
    Citation,
    IngestResult,
    QueryLogEntry,
    QueryOptions,
    QueryResult,
    SummaryResult,
)
from src.storage.catalog import QueryLog, ResourceCatalog, create_storage
from src.utils.helpers import truncate_text
from src.vectorstore.base import ChunkRecord, SimilarityMatch, VectorStore
from src.vectorstore.factory import create_vector_store

_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
CITATION_MAX_CHARS = 200


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _answer_settings(options: QueryOptions) -> dict:
    """Options besides the scope that change what a cached answer would say."""
    return options.model_dump(include={"top_k", "min_score", "style", "depth", "language"})


def parse_summary(text: str) -> SummaryResult:
    """
    Parse model output into an AcademicSummary.

    A ```json fence around the object is tolerated.  Anything else that does
    not parse degrades to a skeleton carrying the raw text.
    """
    candidate = text.strip()
    fenced = _JSON_FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        summary = AcademicSummary.model_validate(orjson.loads(candidate))
    except (orjson.JSONDecodeError, ValidationError) as exc:
        logger.warning(f"[RAGPipeline] Summary output did not parse, degrading: {exc}")
        return SummaryResult(
            summary=AcademicSummary(theoretical_context=text),
            structured=False,
            raw_text=text,
        )
    return SummaryResult(summary=summary, structured=True)


class RAGPipeline:
    """
    Ingestion, grounded query and summary over a vector store.

    Usage:
        with RAGPipeline.from_config() as pipeline:
            pipeline.ingest_resource("res-1")
            result = pipeline.query("What is a Fourier series?",
                                    QueryOptions(subject_id="calc-2"))
            print(result.answer)
    """

    def __init__(
        self,
        chunker: TextChunker,
        embedder: Embedder,
        vector_store: VectorStore,
        generator: TextGenerator,
        catalog: ResourceCatalog,
        query_log: QueryLog,
        cache: Optional[ResultCache] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        self.chunker = chunker
        self.embedder = embedder
        self.vector_store = vector_store
        self.generator = generator
        self.catalog = catalog
        self.query_log = query_log
        self.cache = cache if cache is not None else embedder.cache
        self.config = config or AppConfig()

        # resource_id -> [lock, number of callers holding or waiting on it]
        self._resource_locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None, start_cache: bool = True) -> "RAGPipeline":
        """
        Wire every component from configuration.

        With DATABASE_URL set the catalog and query log live in PostgreSQL
        (and the pgvector backend becomes available); otherwise they are
        files under data/.
        """
        config = config or load_config()

        cache = ResultCache.from_config(config.cache)
        vectorizer = create_vectorizer(config.embedding)
        embedder = Embedder(
            vectorizer,
            cache,
            batch_size=config.embedding.batch_size,
            concurrency=config.embedding.concurrency,
        )

        catalog, query_log, session_factory = create_storage(config)
        vector_store = create_vector_store(
            config.vector_store, embedder.dimensions, session_factory
        )

        pipeline = cls(
            chunker=TextChunker(
                chunk_size=config.chunking.chunk_size,
                chunk_overlap=config.chunking.chunk_overlap,
                separator=config.chunking.separator,
            ),
            embedder=embedder,
            vector_store=vector_store,
            generator=create_generator(config.generation),
            catalog=catalog,
            query_log=query_log,
            cache=cache,
            config=config,
        )
        if start_cache:
            cache.start()

        logger.info(
            f"[RAGPipeline] Ready | store={vector_store.backend} "
            f"({vector_store.count()} vectors) | embed={vectorizer.provider} | "
            f"llm={pipeline.generator.provider}"
        )
        return pipeline

    # --- Lifecycle ------------------------------------------------------------

    def close(self) -> None:
        self.cache.stop()
        self.vector_store.close()
        for component in (self.embedder.vectorizer, self.generator):
            close = getattr(component, "close", None)
            if callable(close):
                close()

    def __enter__(self) -> "RAGPipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def _resource_lock(self, resource_id: str) -> Iterator[None]:
        """Serialise ingestion per resource; the entry is dropped once unused."""
        with self._locks_guard:
            entry = self._resource_locks.setdefault(resource_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._resource_locks[resource_id]

    # --- Ingestion ------------------------------------------------------------

    @traceable(name="ingest_resource", run_type="chain")
    def ingest_resource(self, resource_id: str, content: Optional[str] = None) -> IngestResult:
        """
        Chunk, embed and store a resource, replacing any previous chunks.

        Args:
            resource_id: Catalog id of the resource.
            content:     Text to index.  Defaults to the resource's content,
                         then its description.

        Returns:
            IngestResult with the chunk count and embedding tokens.  Content
            shorter than the configured minimum yields IngestResult(0, 0).

        Raises:
            ResourceNotFoundError: unknown resource id.
        """
        start = time.perf_counter()
        resource = self.catalog.get(resource_id)
        text = content if content is not None else (resource.content or resource.description or "")

        min_length = self.config.ingestion.min_content_length
        if len(text.strip()) < min_length:
            logger.warning(
                f"[RAGPipeline] Resource {resource_id} has insufficient content for indexing "
                f"({len(text.strip())} < {min_length} chars)"
            )
            return IngestResult(chunks_created=0, tokens_used=0)

        with self._resource_lock(resource_id):
            self.catalog.mark_processing(resource_id)
            try:
                self.vector_store.delete_by_resource(resource_id)

                chunks = self.chunker.chunk_text(
                    text,
                    {
                        "resource_id": resource_id,
                        "resource_title": resource.title,
                        "subject_id": resource.subject_id,
                    },
                )
                logger.info(f"[RAGPipeline] Created {len(chunks)} chunks for resource {resource_id}")

                embeddings = self.embedder.embed_batch([c.content for c in chunks])
                self.vector_store.store_chunks(
                    [
                        ChunkRecord(
                            resource_id=resource_id,
                            content=chunk.content,
                            embedding=result.embedding,
                            metadata=chunk.metadata,
                        )
                        for chunk, result in zip(chunks, embeddings)
                    ]
                )
                self.catalog.mark_indexed(resource_id, len(chunks))
            except Exception as exc:
                logger.error(f"[RAGPipeline] Ingestion of {resource_id} failed: {exc}")
                self.catalog.mark_failed(resource_id, str(exc))
                raise
            finally:
                # Old chunks are gone either way, so answers citing them are stale.
                self.cache.invalidate_by_resource(resource_id)

        tokens = sum(e.token_count for e in embeddings)
        logger.info(
            f"[RAGPipeline] Ingested resource {resource_id} in {_elapsed_ms(start)}ms | "
            f"chunks={len(chunks)} tokens={tokens}"
        )
        return IngestResult(chunks_created=len(chunks), tokens_used=tokens)

    # --- Query ----------------------------------------------------------------

    @traceable(name="rag_query", run_type="chain")
    def query(
        self,
        query: str,
        options: Optional[QueryOptions] = None,
        user_id: Optional[str] = None,
    ) -> QueryResult:
        """
        Answer a question from the indexed resources.

        Steps:
            1. Answer cache lookup (skipped with options.skip_cache)
            2. Embed the query
            3. Vector search scoped by resource ids or subject
            4. No matches -> canned answer, no generation call
            5. Grounded generation, citations, query log, cache write

        Raises:
            AnswerGenerationError: an upstream provider failed.
        """
        options = options or QueryOptions()
        start = time.perf_counter()
        logger.info(f"[RAGPipeline] Query: {query[:100]!r}")

        settings = _answer_settings(options)
        if not options.skip_cache:
            cached = self.cache.get_answer(
                query, options.subject_id, options.resource_ids, settings
            )
            if cached is not None:
                return QueryResult(
                    answer=cached.answer,
                    citations=[Citation.model_validate(c) for c in cached.citations],
                    tokens_used=cached.tokens_used,
                    processing_time_ms=_elapsed_ms(start),
                    from_cache=True,
                )

        try:
            query_embedding = self.embedder.embed(query)
        except UpstreamCapabilityError as exc:
            raise AnswerGenerationError() from exc

        matches = self._retrieve(query_embedding.embedding, options)

        if not matches:
            logger.info("[RAGPipeline] No chunks above threshold, skipping generation")
            return QueryResult(
                answer=NO_CONTEXT_RESPONSE,
                citations=[],
                tokens_used=query_embedding.token_count,
                processing_time_ms=_elapsed_ms(start),
            )

        try:
            generation = self.generator.generate(
                build_grounded_prompt(query, [m.content for m in matches]),
                system_prompt=build_system_prompt(options.style, options.depth, options.language),
                max_tokens=2000,
                temperature=0.3,
            )
        except UpstreamCapabilityError as exc:
            raise AnswerGenerationError() from exc

        citations = [
            Citation(
                resource_id=m.metadata.resource_id,
                resource_title=m.metadata.resource_title,
                chunk_content=truncate_text(m.content, CITATION_MAX_CHARS),
                page=m.metadata.page,
                section=m.metadata.section,
                relevance_score=m.score,
            )
            for m in matches
        ]
        tokens = query_embedding.token_count + generation.tokens_used
        elapsed = _elapsed_ms(start)

        self.query_log.record(
            QueryLogEntry(
                user_id=user_id,
                subject_id=options.subject_id,
                query=query,
                response=generation.content,
                chunks_used=[{"id": m.id, "score": m.score} for m in matches],
                tokens_used=tokens,
                response_time_ms=elapsed,
            )
        )
        self.cache.set_answer(
            query,
            AnswerCacheEntry(
                answer=generation.content,
                citations=[c.model_dump() for c in citations],
                tokens_used=tokens,
            ),
            options.subject_id,
            options.resource_ids,
            settings,
        )

        logger.info(
            f"[RAGPipeline] Complete | {len(matches)} sources | tokens={tokens} | {elapsed}ms"
        )
        return QueryResult(
            answer=generation.content,
            citations=citations,
            tokens_used=tokens,
            processing_time_ms=elapsed,
        )

    @traceable(name="retrieve", run_type="retriever")
    def _retrieve(self, embedding: list[float], options: QueryOptions) -> list[SimilarityMatch]:
        matches = self.vector_store.search_similar(
            embedding,
            resource_ids=options.resource_ids,
            subject_id=options.subject_id,
            top_k=options.top_k,
            min_score=options.min_score,
        )
        top = f"{matches[0].score:.3f}" if matches else "-"
        logger.debug(f"[RAGPipeline] Retrieved {len(matches)} chunks | top={top}")
        return matches

    # --- Summary --------------------------------------------------------------

    def generate_summary(
        self,
        resource_id: str,
        depth: str = "intermediate",
        language: str = "en",
    ) -> SummaryResult:
        """
        Structured academic summary of one resource.

        Raises:
            ResourceNotFoundError:    unknown resource id.
            InsufficientContentError: no stored chunks and no description.
        """
        resource = self.catalog.get(resource_id)
        chunks = self.vector_store.get_chunks(resource_id, limit=self.config.summary.max_chunks)

        if chunks:
            content = "\n\n".join(c.content for c in chunks)
        else:
            content = resource.description or ""
        if not content.strip():
            raise InsufficientContentError(f"Resource {resource_id} has no content to summarise")

        content = truncate_text(content, self.config.summary.max_chars)
        logger.info(
            f"[RAGPipeline] Summary of {resource_id} | {len(chunks)} chunks | "
            f"{len(content)} chars | depth={depth}"
        )

        generation = self.generator.generate(
            build_summary_prompt(content, depth, language),
            max_tokens=3000,
            temperature=0.2,
        )
        return parse_summary(generation.content)

    # --- Observability --------------------------------------------------------

    def health(self) -> dict:
        return {
            "status": "ok",
            "vector_store": {
                "backend": self.vector_store.backend,
                "vectors": self.vector_store.count(),
                "dimensions": self.vector_store.dimensions,
            },
            "embedding": self.embedder.usage_summary(),
            "generation": {
                "provider": self.generator.provider,
                "model": self.generator.model,
            },
            "cache": {
                **self.cache.stats(),
                "hit_rates": self.cache.hit_rates(),
                "sweep_running": self.cache.running,
            },
        }

    def get_user_stats(self, user_id: Optional[str], recent: int = 10) -> dict:
        entries = self.query_log.list_for_user(user_id)
        return {
            "total_queries": len(entries),
            "total_tokens_used": sum(e.tokens_used for e in entries),
            "recent_queries": [
                {
                    "id": e.id,
                    "query": e.query,
                    "subject_id": e.subject_id,
                    "tokens_used": e.tokens_used,
                    "created_at": e.created_at.isoformat(),
                }
                for e in entries[:recent]
            ],
        }
