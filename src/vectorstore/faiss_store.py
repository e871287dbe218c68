"""
FAISS Vector Store
-------------------
Dedicated vector-index backend built on faiss.IndexFlatIP (inner product ==
cosine similarity after L2 normalisation) wrapped in IndexIDMap2 so chunks
can be removed by id when a resource is deleted or re-ingested.

The store keeps, per named collection:
  - the FAISS index (created lazily on first use with the provider's
    dimensionality)
  - a payload per vector (chunk id, resource id, content, metadata)
  - payload indexes resource_id -> ids and subject_id -> ids, used to build
    an IDSelectorBatch so filtered search runs natively inside FAISS

Persistence (optional, when index_dir is given):
  - FAISS index     -> {index_dir}/{collection}.faiss
  - Payloads        -> {index_dir}/{collection}.payloads.json
  - Manifest        -> {index_dir}/{collection}.manifest.json
"""
from __future__ import annotations

import threading
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Optional, Sequence

import faiss
import numpy as np
from loguru import logger

from src.chunking.schemas import Chunk, ChunkMetadata
from src.utils.helpers import load_json, save_json
from src.vectorstore.base import (
    DEFAULT_MIN_SCORE,
    DEFAULT_TOP_K,
    ChunkRecord,
    SimilarityMatch,
    VectorStore,
)


def _normalise(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise rows so cosine similarity == inner product."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return np.ascontiguousarray(matrix / norms, dtype=np.float32)


class FAISSVectorStore(VectorStore):
    """
    In-process vector index with payload filtering.

    Usage:
        store = FAISSVectorStore(dimensions=768, index_dir="data/index")
        ids = store.store_chunks(records)
        matches = store.search_similar(query_vec, subject_id="calc-1", top_k=5)
    """

    backend = "faiss"

    def __init__(
        self,
        dimensions: int,
        collection: str = "resource_chunks",
        index_dir: Optional[str | Path] = None,
    ) -> None:
        super().__init__(dimensions)
        self.collection = collection
        self.index_dir = Path(index_dir) if index_dir else None
        self._index: Optional[faiss.IndexIDMap2] = None
        self._payloads: dict[int, dict] = {}
        self._ids_by_resource: dict[str, set[int]] = defaultdict(set)
        self._ids_by_subject: dict[str, set[int]] = defaultdict(set)
        self._next_id = 0
        self._lock = threading.RLock()

    # --- Collection lifecycle -------------------------------------------------

    def _paths(self) -> tuple[Path, Path, Path]:
        assert self.index_dir is not None
        return (
            self.index_dir / f"{self.collection}.faiss",
            self.index_dir / f"{self.collection}.payloads.json",
            self.index_dir / f"{self.collection}.manifest.json",
        )

    def _ensure_collection(self) -> faiss.IndexIDMap2:
        """Create (or load) the collection on first use."""
        if self._index is not None:
            return self._index

        if self.index_dir is not None and self._paths()[0].exists():
            self._load()
        else:
            self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimensions))
            logger.info(
                f"[FAISSStore] Created collection '{self.collection}' | "
                f"dims={self.dimensions} | metric=cosine"
            )
        return self._index

    def _index_payload(self, faiss_id: int, payload: dict) -> None:
        self._payloads[faiss_id] = payload
        self._ids_by_resource[payload["resource_id"]].add(faiss_id)
        subject_id = payload["metadata"].get("subject_id")
        if subject_id:
            self._ids_by_subject[subject_id].add(faiss_id)

    # --- Write ----------------------------------------------------------------

    def store_chunks(self, records: list[ChunkRecord]) -> list[str]:
        if not records:
            return []
        for record in records:
            self._check_dimensions(record.embedding)

        with self._lock:
            index = self._ensure_collection()
            matrix = _normalise(np.array([r.embedding for r in records], dtype=np.float32))
            faiss_ids = np.arange(self._next_id, self._next_id + len(records), dtype=np.int64)
            index.add_with_ids(matrix, faiss_ids)
            self._next_id += len(records)

            chunk_ids: list[str] = []
            for faiss_id, record in zip(faiss_ids.tolist(), records):
                chunk_id = str(uuid.uuid4())
                self._index_payload(
                    faiss_id,
                    {
                        "chunk_id": chunk_id,
                        "resource_id": record.resource_id,
                        "content": record.content,
                        "metadata": record.metadata.model_dump(mode="json"),
                    },
                )
                chunk_ids.append(chunk_id)

            self._persist()

        logger.debug(
            f"[FAISSStore] Upserted {len(records)} vectors | total={self.count()}"
        )
        return chunk_ids

    def delete_by_resource(self, resource_id: str) -> None:
        with self._lock:
            faiss_ids = self._ids_by_resource.pop(resource_id, set())
            if not faiss_ids:
                return
            index = self._ensure_collection()
            index.remove_ids(np.array(sorted(faiss_ids), dtype=np.int64))
            for faiss_id in faiss_ids:
                payload = self._payloads.pop(faiss_id)
                subject_id = payload["metadata"].get("subject_id")
                if subject_id:
                    self._ids_by_subject[subject_id].discard(faiss_id)
            self._persist()
        logger.debug(f"[FAISSStore] Deleted {len(faiss_ids)} vectors of resource {resource_id}")

    # --- Search ---------------------------------------------------------------

    def _candidates(
        self, resource_ids: Optional[list[str]], subject_id: Optional[str]
    ) -> Optional[set[int]]:
        """Payload filter: match-any on resource ids, else exact subject match."""
        if resource_ids:
            ids: set[int] = set()
            for resource_id in resource_ids:
                ids |= self._ids_by_resource.get(resource_id, set())
            return ids
        if subject_id:
            return set(self._ids_by_subject.get(subject_id, set()))
        return None

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

        with self._lock:
            index = self._ensure_collection()
            candidates = self._candidates(resource_ids, subject_id)
            pool_size = index.ntotal if candidates is None else len(candidates)
            k = min(top_k, pool_size)
            if k == 0:
                return []

            query = _normalise(np.array([query_embedding], dtype=np.float32))
            if candidates is None:
                scores, ids = index.search(query, k)
            else:
                # Keep the selector referenced for the duration of the search
                selector = faiss.IDSelectorBatch(np.array(sorted(candidates), dtype=np.int64))
                params = faiss.SearchParameters(sel=selector)
                scores, ids = index.search(query, k, params=params)

            matches: list[SimilarityMatch] = []
            for score, faiss_id in zip(scores[0], ids[0]):
                if faiss_id < 0 or float(score) < min_score:
                    continue
                payload = self._payloads[int(faiss_id)]
                matches.append(
                    SimilarityMatch(
                        id=payload["chunk_id"],
                        content=payload["content"],
                        metadata=ChunkMetadata(**payload["metadata"]),
                        score=float(score),
                    )
                )

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    def get_chunks(self, resource_id: str, limit: int = 10) -> list[Chunk]:
        with self._lock:
            self._ensure_collection()
            payloads = [self._payloads[i] for i in self._ids_by_resource.get(resource_id, set())]
        payloads.sort(key=lambda p: p["metadata"]["chunk_index"])
        return [
            Chunk(content=p["content"], metadata=ChunkMetadata(**p["metadata"]))
            for p in payloads[:limit]
        ]

    def count(self) -> int:
        with self._lock:
            return int(self._ensure_collection().ntotal)

    # --- Persistence ----------------------------------------------------------

    def _persist(self) -> None:
        if self.index_dir is not None:
            self.save()

    def save(self) -> None:
        """Persist the FAISS index, payloads and a manifest to index_dir."""
        if self.index_dir is None:
            raise ValueError("FAISSVectorStore has no index_dir to save to")
        with self._lock:
            index = self._ensure_collection()
            self.index_dir.mkdir(parents=True, exist_ok=True)
            index_path, payload_path, manifest_path = self._paths()

            faiss.write_index(index, str(index_path))
            save_json(
                {"next_id": self._next_id, "payloads": self._payloads},
                payload_path,
            )
            save_json(
                {
                    "collection": self.collection,
                    "total_vectors": int(index.ntotal),
                    "dimensions": self.dimensions,
                    "metric": "cosine",
                    "resources": len(self._ids_by_resource),
                },
                manifest_path,
            )

    def _load(self) -> None:
        index_path, payload_path, _ = self._paths()
        index = faiss.read_index(str(index_path))
        if index.d != self.dimensions:
            raise ValueError(
                f"Collection '{self.collection}' has {index.d} dimensions, "
                f"embedder produces {self.dimensions}. Re-ingest all resources."
            )
        self._index = index

        data = load_json(payload_path)
        self._next_id = int(data["next_id"])
        for faiss_id, payload in data["payloads"].items():
            self._index_payload(int(faiss_id), payload)

        logger.info(
            f"[FAISSStore] Loaded '{self.collection}': {index.ntotal} vectors, "
            f"{len(self._ids_by_resource)} resources"
        )
