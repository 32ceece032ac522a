"""Shared fixtures: in-memory chunk store and HTTP fakes for the hosted services."""

import json
import re
import zlib
from typing import Any, Optional

import httpx
import numpy as np
import pytest
from sqlalchemy import create_engine

from draftrag.config import EmbeddingConfig, RetrievalConfig, VectorIndexConfig
from draftrag.embedding.embedder import EmbeddingClient
from draftrag.embedding.vector_index import VectorIndexClient
from draftrag.storage.chunk_store import ChunkStore

API_BASE = "https://api.test/client/v4"
EMBED_DIM = 256


def hashed_embedding(text: str, dim: int = EMBED_DIM) -> list[float]:
    """Deterministic bag-of-words vector: similar wording -> high cosine."""
    vector = np.zeros(dim)
    for token in re.findall(r"[a-z0-9]+", text.lower()):
        if len(token) > 2:
            vector[zlib.crc32(token.encode("utf-8")) % dim] += 1.0
    norm = np.linalg.norm(vector)
    if norm == 0:
        vector[0] = 1.0
        norm = 1.0
    return (vector / norm).tolist()


class FakeEmbeddingService:
    """Answers the embedding endpoint with hashed bag-of-words vectors."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.fail_with: Optional[int] = None

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"success": False, "errors": ["boom"]})
        texts = body["text"] if isinstance(body["text"], list) else [body["text"]]
        data = [hashed_embedding(text) for text in texts]
        return httpx.Response(
            200, json={"success": True, "result": {"shape": [len(data), EMBED_DIM], "data": data}}
        )


class FakeVectorIndex:
    """In-memory stand-in for the vector index HTTP API (cosine similarity)."""

    def __init__(self) -> None:
        self.vectors: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.fail_with: Optional[int] = None

    def handle(self, request: httpx.Request) -> httpx.Response:
        action = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content)
        self.requests.append((action, body))
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"success": False})

        if action == "upsert":
            for record in body["vectors"]:
                self.vectors[record["id"]] = record
            return httpx.Response(200, json={"success": True, "result": {"mutationId": "m-1"}})
        if action == "delete_by_ids":
            for vector_id in body["ids"]:
                self.vectors.pop(vector_id, None)
            return httpx.Response(200, json={"success": True, "result": {"mutationId": "m-2"}})
        if action == "query":
            return httpx.Response(200, json={"success": True, "result": {"matches": self._query(body)}})
        return httpx.Response(404, json={"success": False})

    def _query(self, body: dict[str, Any]) -> list[dict[str, Any]]:
        query = np.array(body["vector"])
        wanted = body.get("filter") or {}
        scored = []
        for record in self.vectors.values():
            metadata = record.get("metadata", {})
            if any(metadata.get(key) != value for key, value in wanted.items()):
                continue
            values = np.array(record["values"])
            denom = float(np.linalg.norm(query) * np.linalg.norm(values)) or 1.0
            scored.append((float(query @ values) / denom, record))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [
            {
                "id": record["id"],
                "score": score,
                "metadata": record["metadata"] if body.get("returnMetadata") == "all" else {},
            }
            for score, record in scored[: body["topK"]]
        ]


@pytest.fixture
def embedding_service() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture
def index_service() -> FakeVectorIndex:
    return FakeVectorIndex()


@pytest.fixture
def http_client(embedding_service: FakeEmbeddingService, index_service: FakeVectorIndex) -> httpx.Client:
    def route(request: httpx.Request) -> httpx.Response:
        if "/ai/run/" in request.url.path:
            return embedding_service.handle(request)
        return index_service.handle(request)

    client = httpx.Client(transport=httpx.MockTransport(route))
    yield client
    client.close()


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(api_base=API_BASE, account_id="acct-1", api_token="token-1")


@pytest.fixture
def index_config() -> VectorIndexConfig:
    return VectorIndexConfig(
        api_base=API_BASE, account_id="acct-1", index_name="draftrag-test", api_token="token-1"
    )


@pytest.fixture
def embedder(embedding_config: EmbeddingConfig, http_client: httpx.Client) -> EmbeddingClient:
    return EmbeddingClient(embedding_config, http_client=http_client)


@pytest.fixture
def vector_index(index_config: VectorIndexConfig, http_client: httpx.Client) -> VectorIndexClient:
    return VectorIndexClient(index_config, http_client=http_client)


@pytest.fixture
def unconfigured_embedder(http_client: httpx.Client) -> EmbeddingClient:
    return EmbeddingClient(EmbeddingConfig(api_base=API_BASE), http_client=http_client)


@pytest.fixture
def unconfigured_index(http_client: httpx.Client) -> VectorIndexClient:
    return VectorIndexClient(VectorIndexConfig(api_base=API_BASE), http_client=http_client)


@pytest.fixture
def store() -> ChunkStore:
    chunk_store = ChunkStore(create_engine("sqlite://"))
    chunk_store.create_schema()
    return chunk_store


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    return RetrievalConfig(top_k=10, token_budget=1500)
