"""
Ingestion Pipeline - Chunk, Store, Embed, Upsert
-------------------------------------------------
  1. Chunk the source text (validation faults propagate to the caller)
  2. Replace the source's chunk set in one transaction
  3. Embed the new chunks in batches
  4. Upsert one vector per chunk, id "{source}:{index}"
  5. Delete vector ids left over from any previous, longer chunk set

Steps 3-5 run after the chunk transaction has committed.  If they still fail
after the configured retries the chunks stay committed and the report says
`vectors_synced=False`: search for that source is stale until the next
ingest, which retrieval tolerates.

Orphans are counted from the store's vector high-water mark, not from the
previous chunk count, so a shrink whose sync failed is still cleaned up by
the next successful ingest.
"""
from __future__ import annotations

from typing import Optional

from loguru import logger
from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from draftrag.chunking.chunker import Chunker
from draftrag.chunking.schemas import Chunk
from draftrag.embedding.embedder import EmbeddingClient
from draftrag.embedding.vector_index import VectorIndexClient, VectorRecord, build_vector_id
from draftrag.errors import ConfigurationMissing, UpstreamServiceFault
from draftrag.storage.chunk_store import ChunkStore

EMBED_BATCH_SIZE = 100


class IngestionReport(BaseModel):
    source_content_id: str
    organization_id: str
    chunk_count: int
    previous_chunk_count: int = 0
    vectors_upserted: int = 0
    orphans_deleted: int = 0
    vectors_synced: bool = False
    error: Optional[str] = None


def build_vector_records(chunks: list[Chunk], embeddings: list[list[float]]) -> list[VectorRecord]:
    if len(chunks) != len(embeddings):
        raise UpstreamServiceFault(
            f"Mismatch: {len(chunks)} chunks vs {len(embeddings)} embeddings"
        )
    return [
        VectorRecord(
            id=build_vector_id(chunk.source_content_id, chunk.chunk_index),
            values=embedding,
            metadata={
                "organizationId": chunk.organization_id,
                "sourceContentId": chunk.source_content_id,
                "chunkIndex": chunk.chunk_index,
            },
        )
        for chunk, embedding in zip(chunks, embeddings)
    ]


class IngestionPipeline:
    """
    Usage:
        pipeline = IngestionPipeline(Chunker(), store, embedder, index)
        report = pipeline.ingest("src-1", "org-1", transcript)
    """

    def __init__(
        self,
        chunker: Chunker,
        store: ChunkStore,
        embedder: EmbeddingClient,
        index: VectorIndexClient,
        retry_attempts: int = 3,
        retry_wait_seconds: float = 1.0,
        batch_size: int = EMBED_BATCH_SIZE,
    ) -> None:
        self.chunker = chunker
        self.store = store
        self.embedder = embedder
        self.index = index
        self.batch_size = batch_size
        self._retrying = Retrying(
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=retry_wait_seconds, max=30),
            retry=retry_if_exception_type(UpstreamServiceFault),
            reraise=True,
        )

    def ingest(self, source_content_id: str, organization_id: str, text: str) -> IngestionReport:
        chunks = self.chunker.chunk_source(source_content_id, organization_id, text)
        previous = self.store.replace_chunks(source_content_id, organization_id, chunks)

        report = IngestionReport(
            source_content_id=source_content_id,
            organization_id=organization_id,
            chunk_count=len(chunks),
            previous_chunk_count=previous,
        )
        high_water = self.store.raise_vector_high_water(
            source_content_id, organization_id, max(previous, len(chunks))
        )

        if not (self.embedder.is_configured and self.index.is_configured):
            report.error = "Vector search is not configured."
            logger.warning(f"[Ingest] {source_content_id}: chunks stored, vector sync skipped (unconfigured)")
            return report

        try:
            report.vectors_upserted = self.sync_vectors(chunks)
            orphans = [build_vector_id(source_content_id, i) for i in range(len(chunks), high_water)]
            if orphans:
                report.orphans_deleted = self._retrying(self.index.delete_vectors, orphans)
            self.store.reset_vector_high_water(source_content_id, len(chunks))
            report.vectors_synced = True
        except (UpstreamServiceFault, ConfigurationMissing) as exc:
            report.error = exc.message
            logger.error(
                f"[Ingest] {source_content_id}: {len(chunks)} chunks committed but vector sync failed: "
                f"{exc.message}"
            )

        logger.info(
            f"[Ingest] {source_content_id} | chunks={report.chunk_count} (was {previous}) | "
            f"vectors={report.vectors_upserted} | orphans_deleted={report.orphans_deleted}"
        )
        return report

    def sync_vectors(self, chunks: list[Chunk]) -> int:
        """Embed and upsert `chunks` batch by batch; returns vectors upserted."""
        upserted = 0
        for i in range(0, len(chunks), self.batch_size):
            batch = chunks[i: i + self.batch_size]
            embeddings = self._retrying(self.embedder.embed_texts, [c.text for c in batch])
            records = build_vector_records(batch, embeddings)
            upserted += self._retrying(self.index.upsert_vectors, records)
        return upserted
