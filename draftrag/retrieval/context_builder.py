"""
Retrieval Context Builder
--------------------------
Turns a user query into a ranked, token-budgeted set of stored chunks:

    query
      |  EmbeddingClient.embed_text
      v
    VectorIndexClient.query_vector_matches   (filter: organizationId [+ sourceContentId])
      |
      v
    ChunkStore.get_chunks                    (resolve "{source}:{index}" -> text)
      |
      v
    rank by score desc -> dedupe by chunk id -> greedy token budget
      |
      v
    reorder selection into document order    (source, chunk_index)

Retrieval is best-effort: this is the one layer that converts embedding,
index or store faults into an empty result, so generation is never blocked.
The result status keeps "nothing matched" apart from "upstream failed".
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from langsmith import traceable
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from draftrag.chunking.chunker import estimate_tokens
from draftrag.chunking.schemas import Chunk
from draftrag.config import RetrievalConfig
from draftrag.embedding.embedder import EmbeddingClient
from draftrag.embedding.vector_index import VectorIndexClient, VectorMatch, parse_vector_id
from draftrag.errors import DraftRagError
from draftrag.retrieval.lexical import rank_chunks_bm25
from draftrag.storage.chunk_store import ChunkStore

CITATION_TEMPLATE = "[{index}] source {source} | chunk {chunk_index}"


class RetrievalStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"              # searched fine, nothing relevant
    UNAVAILABLE = "unavailable"  # no vector index configured, no fallback
    FAULT = "fault"              # upstream / store failure, degraded to empty


class RetrievedChunk(BaseModel):
    chunk: Chunk
    score: float


class RetrievalResult(BaseModel):
    query: str
    organization_id: str
    status: RetrievalStatus
    chunks: list[RetrievedChunk] = Field(default_factory=list)
    strategy: Optional[str] = None
    reason: Optional[str] = None
    token_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.chunks

    def render(self) -> tuple[str, list[dict]]:
        """
        Number each chunk [1]..[N] for a generation prompt and produce a
        parallel list of citation dicts.  Returns ("", []) when empty.
        """
        context_parts: list[str] = []
        citations: list[dict] = []
        for i, item in enumerate(self.chunks, start=1):
            chunk = item.chunk
            citation_line = CITATION_TEMPLATE.format(
                index=i, source=chunk.source_content_id, chunk_index=chunk.chunk_index
            )
            context_parts.append(f"[{i}] {chunk.text.strip()}\nSource: {citation_line}")
            citations.append(
                {
                    "index": i,
                    "chunk_id": chunk.id,
                    "source_content_id": chunk.source_content_id,
                    "chunk_index": chunk.chunk_index,
                    "relevance_score": round(item.score, 4),
                }
            )
        return "\n\n---\n\n".join(context_parts), citations


def _match_key(match: VectorMatch) -> Optional[tuple[str, int]]:
    source = match.metadata.get("sourceContentId")
    index = match.metadata.get("chunkIndex")
    if isinstance(source, str) and source and isinstance(index, int) and not isinstance(index, bool):
        return source, index
    return parse_vector_id(match.id)


def select_within_budget(
    ranked: list[tuple[Chunk, float]], token_budget: int
) -> tuple[list[RetrievedChunk], int]:
    """
    Greedy selection: walk chunks best-first, keep each one that still fits.

    Duplicate chunk ids keep their first (highest-scoring) occurrence.  The
    selection is returned in document order.
    """
    seen: set[str] = set()
    selected: list[RetrievedChunk] = []
    used = 0
    for chunk, score in sorted(ranked, key=lambda pair: pair[1], reverse=True):
        if chunk.id in seen:
            continue
        seen.add(chunk.id)
        cost = chunk.token_estimate or estimate_tokens(chunk.text)
        if used + cost > token_budget:
            continue
        selected.append(RetrievedChunk(chunk=chunk, score=score))
        used += cost
    selected.sort(key=lambda item: (item.chunk.source_content_id, item.chunk.chunk_index))
    return selected, used


class RetrievalContextBuilder:
    """
    Stateless per query -- call build() as many times as you like.

    Usage:
        builder = RetrievalContextBuilder(embedder, index, store, RetrievalConfig())
        result = builder.build("how do we price onboarding?", organization_id="org-1")
        context, citations = result.render()
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        index: VectorIndexClient,
        store: ChunkStore,
        config: Optional[RetrievalConfig] = None,
    ) -> None:
        self.embedder = embedder
        self.index = index
        self.store = store
        self.config = config or RetrievalConfig()

    @traceable(name="build_retrieval_context", run_type="retriever")
    def build(
        self,
        query: str,
        organization_id: str,
        source_content_id: Optional[str] = None,
    ) -> RetrievalResult:
        """Never raises; inspect `status` to tell empty results from faults."""
        base = {"query": query, "organization_id": organization_id}
        if not query or not query.strip():
            return RetrievalResult(**base, status=RetrievalStatus.EMPTY, reason="empty query")

        if not (self.index.is_configured and self.embedder.is_configured):
            if self.config.lexical_fallback:
                return self._build_lexical(query, organization_id, source_content_id)
            return RetrievalResult(
                **base, status=RetrievalStatus.UNAVAILABLE, reason="vector search is not configured"
            )

        try:
            ranked = self._semantic_candidates(query, organization_id, source_content_id)
        except (DraftRagError, SQLAlchemyError) as exc:
            logger.warning(f"[Retriever] Falling back to empty context: {exc}")
            return RetrievalResult(**base, status=RetrievalStatus.FAULT, reason=str(exc))

        return self._finish(base, ranked, strategy="semantic")

    # --- Strategies -----------------------------------------------------------

    def _semantic_candidates(
        self, query: str, organization_id: str, source_content_id: Optional[str]
    ) -> list[tuple[Chunk, float]]:
        vector = self.embedder.embed_text(query)

        query_filter = {"organizationId": organization_id}
        if source_content_id:
            query_filter["sourceContentId"] = source_content_id
        matches = self.index.query_vector_matches(vector, top_k=self.config.top_k, filter=query_filter)

        keyed: list[tuple[tuple[str, int], VectorMatch]] = []
        for match in matches:
            key = _match_key(match)
            if key is not None:
                keyed.append((key, match))
        chunks = self.store.get_chunks(key for key, _ in keyed)

        ranked: list[tuple[Chunk, float]] = []
        for key, match in keyed:
            chunk = chunks.get(key)
            if chunk is None or chunk.organization_id != organization_id:
                continue
            if source_content_id and chunk.source_content_id != source_content_id:
                continue
            ranked.append((chunk, match.score))

        logger.debug(f"[Retriever] {len(matches)} matches -> {len(ranked)} resolved chunks")
        return ranked

    def _build_lexical(
        self, query: str, organization_id: str, source_content_id: Optional[str]
    ) -> RetrievalResult:
        base = {"query": query, "organization_id": organization_id}
        try:
            candidates = self.store.list_org_chunks(organization_id, source_content_id)
        except SQLAlchemyError as exc:
            logger.warning(f"[Retriever] Chunk store unavailable for keyword fallback: {exc}")
            return RetrievalResult(**base, status=RetrievalStatus.FAULT, reason=str(exc))
        ranked = rank_chunks_bm25(query, candidates, top_k=self.config.top_k)
        return self._finish(base, ranked, strategy="lexical")

    def _finish(self, base: dict, ranked: list[tuple[Chunk, float]], strategy: str) -> RetrievalResult:
        selected, used = select_within_budget(ranked, self.config.token_budget)
        status = RetrievalStatus.OK if selected else RetrievalStatus.EMPTY
        logger.info(
            f"[Retriever] {strategy} | {len(ranked)} candidates -> {len(selected)} selected "
            f"({used}/{self.config.token_budget} tokens)"
        )
        return RetrievalResult(
            **base, status=status, chunks=selected, strategy=strategy, token_count=used
        )
