"""
Configuration loader
---------------------
Reads config/config.yaml into typed pydantic sections.  Secrets (API keys,
DATABASE_URL) never live in the YAML file: they come from the environment,
optionally populated from a .env file via python-dotenv.

A few provider switches can be overridden from the environment so a
deployment can flip backends without editing YAML:

    EMBEDDING_PROVIDER   auto | openai | gemini
    LLM_PROVIDER         auto | openai | anthropic | gemini | groq | deepseek
    VECTOR_DB_PROVIDER   pgvector | faiss

EMBEDDING_DIMENSIONS (read by src.storage.models) sets the pgvector column
width and must match the embedding provider.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("config/config.yaml")


class ProjectConfig(BaseModel):
    name: str = "Study Notebook RAG"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/notebook_rag.log"


class ChunkingConfig(BaseModel):
    chunk_size: int = Field(1000, gt=0)
    chunk_overlap: int = Field(200, ge=0)
    separator: str = "\n\n"


class CacheConfig(BaseModel):
    embedding_ttl_seconds: float = 24 * 60 * 60
    embedding_max_entries: int = 1000
    answer_ttl_seconds: float = 60 * 60
    answer_max_entries: int = 500
    sweep_interval_seconds: float = 5 * 60


class EmbeddingConfig(BaseModel):
    provider: Literal["auto", "openai", "gemini"] = "auto"
    model: Optional[str] = None
    batch_size: int = Field(100, gt=0, le=100)
    concurrency: int = Field(10, gt=0)
    timeout_seconds: float = 30.0


class GenerationConfig(BaseModel):
    provider: Literal["auto", "openai", "anthropic", "gemini", "groq", "deepseek"] = "auto"
    model: Optional[str] = None
    timeout_seconds: float = 120.0


class VectorStoreConfig(BaseModel):
    backend: Literal["pgvector", "faiss"] = "faiss"
    collection: str = "resource_chunks"
    index_dir: Optional[str] = "data/index"


class RetrievalConfig(BaseModel):
    top_k: int = 5
    min_score: float = 0.7


class IngestionConfig(BaseModel):
    min_content_length: int = 50


class SummaryConfig(BaseModel):
    max_chunks: int = 10
    max_chars: int = 15_000


class StorageConfig(BaseModel):
    """File-backed catalog / query log used when no DATABASE_URL is set."""

    catalog_path: str = "data/resources.json"
    query_log_path: str = "data/query_log.jsonl"


class AppConfig(BaseModel):
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def database_url(self) -> Optional[str]:
        return os.getenv("DATABASE_URL") or None


def load_config(path: str | Path | None = None) -> AppConfig:
    """
    Load the YAML config (missing file -> defaults) and apply env overrides.

    Args:
        path: Path to a YAML file.  Defaults to config/config.yaml.

    Returns:
        A validated AppConfig.
    """
    load_dotenv()
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    raw: dict = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    config = AppConfig.model_validate(raw)

    if os.getenv("EMBEDDING_PROVIDER"):
        config.embedding.provider = os.environ["EMBEDDING_PROVIDER"].lower()
    if os.getenv("LLM_PROVIDER"):
        config.generation.provider = os.environ["LLM_PROVIDER"].lower()
    if os.getenv("VECTOR_DB_PROVIDER"):
        config.vector_store.backend = os.environ["VECTOR_DB_PROVIDER"].lower()

    # Re-validate so bad env values fail loudly instead of leaking through.
    return AppConfig.model_validate(config.model_dump())
