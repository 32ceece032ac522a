"""
Client configuration
---------------------
Every remote client and the chunker receive an explicit config model in
their constructor.  `Settings.from_env()` is the only place that reads the
process environment (after loading a local `.env`), and `Settings.from_yaml()`
lets a YAML file override individual sections.

Environment variables:
  DRAFTRAG_API_BASE        default https://api.cloudflare.com/client/v4
  DRAFTRAG_ACCOUNT_ID      account that owns the embedding model and index
  DRAFTRAG_VECTOR_INDEX    vector index name
  DRAFTRAG_API_TOKEN       bearer token for both services
  DRAFTRAG_EMBED_MODEL     default @cf/baai/bge-base-en-v1.5
  DRAFTRAG_HTTP_TIMEOUT    seconds, default 30
  DRAFTRAG_DATABASE_URL    SQLAlchemy URL for the chunk store
  DRAFTRAG_LOG_LEVEL       default INFO
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from draftrag.errors import ValidationError

DEFAULT_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_EMBED_MODEL = "@cf/baai/bge-base-en-v1.5"
DEFAULT_DATABASE_URL = "sqlite:///data/draftrag.db"

# Upstream caps topK when full metadata is returned with each match
MAX_TOP_K_WITH_METADATA = 20

MIN_CHUNK_TOKENS = 1
MAX_CHUNK_TOKENS = 2000


class ChunkingConfig(BaseModel):
    chunk_size_tokens: int = 600
    overlap_tokens: int = 75

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingConfig":
        check_chunk_bounds(self.chunk_size_tokens, self.overlap_tokens)
        return self


class EmbeddingConfig(BaseModel):
    api_base: str = DEFAULT_API_BASE
    account_id: str = ""
    api_token: str = ""
    model: str = DEFAULT_EMBED_MODEL
    timeout_seconds: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.account_id and self.api_token and self.model)

    @property
    def endpoint(self) -> str:
        return f"{self.api_base.rstrip('/')}/accounts/{self.account_id}/ai/run/{self.model}"


class VectorIndexConfig(BaseModel):
    api_base: str = DEFAULT_API_BASE
    account_id: str = ""
    index_name: str = ""
    api_token: str = ""
    timeout_seconds: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.account_id and self.index_name and self.api_token)

    @property
    def base_url(self) -> str:
        return (
            f"{self.api_base.rstrip('/')}/accounts/{self.account_id}"
            f"/vectorize/v2/indexes/{quote(self.index_name, safe='')}"
        )


class RetrievalConfig(BaseModel):
    top_k: int = Field(default=10, ge=1)
    token_budget: int = Field(default=1500, ge=1)
    lexical_fallback: bool = True


class Settings(BaseModel):
    """Top-level settings bundle handed to the CLI and the pipelines."""

    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector_index: VectorIndexConfig = Field(default_factory=VectorIndexConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        api_base = env.get("DRAFTRAG_API_BASE", DEFAULT_API_BASE)
        account_id = env.get("DRAFTRAG_ACCOUNT_ID", "")
        api_token = env.get("DRAFTRAG_API_TOKEN", "")
        timeout = float(env.get("DRAFTRAG_HTTP_TIMEOUT", "30"))

        return cls(
            embedding=EmbeddingConfig(
                api_base=api_base,
                account_id=account_id,
                api_token=api_token,
                model=env.get("DRAFTRAG_EMBED_MODEL", DEFAULT_EMBED_MODEL),
                timeout_seconds=timeout,
            ),
            vector_index=VectorIndexConfig(
                api_base=api_base,
                account_id=account_id,
                index_name=env.get("DRAFTRAG_VECTOR_INDEX", ""),
                api_token=api_token,
                timeout_seconds=timeout,
            ),
            database_url=env.get("DRAFTRAG_DATABASE_URL", DEFAULT_DATABASE_URL),
            log_level=env.get("DRAFTRAG_LOG_LEVEL", "INFO"),
        )

    @classmethod
    def from_yaml(cls, path: str | Path, base: Optional["Settings"] = None) -> "Settings":
        """Overlay the sections found in a YAML file on top of `base` (or env)."""
        with open(path, "r", encoding="utf-8") as f:
            overrides: dict[str, Any] = yaml.safe_load(f) or {}

        merged = (base or cls.from_env()).model_dump()
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key].update(value)
            else:
                merged[key] = value
        return cls.model_validate(merged)


def check_chunk_bounds(chunk_size_tokens: int, overlap_tokens: int) -> None:
    """Raise ValidationError unless 1 <= size <= 2000 and 0 <= overlap < size."""
    if not isinstance(chunk_size_tokens, int) or isinstance(chunk_size_tokens, bool):
        raise ValidationError("chunk_size_tokens must be an integer.")
    if not isinstance(overlap_tokens, int) or isinstance(overlap_tokens, bool):
        raise ValidationError("overlap_tokens must be an integer.")
    if not MIN_CHUNK_TOKENS <= chunk_size_tokens <= MAX_CHUNK_TOKENS:
        raise ValidationError(
            f"chunk_size_tokens must be between {MIN_CHUNK_TOKENS} and {MAX_CHUNK_TOKENS}.",
            details={"chunk_size_tokens": chunk_size_tokens},
        )
    if overlap_tokens < 0:
        raise ValidationError(
            "overlap_tokens must be greater than or equal to zero.",
            details={"overlap_tokens": overlap_tokens},
        )
    if overlap_tokens >= chunk_size_tokens:
        raise ValidationError(
            "overlap_tokens must be smaller than chunk_size_tokens.",
            details={"chunk_size_tokens": chunk_size_tokens, "overlap_tokens": overlap_tokens},
        )
