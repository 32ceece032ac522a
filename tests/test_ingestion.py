"""Tests for the ingestion pipeline."""

import pytest

from draftrag.chunking.chunker import Chunker
from draftrag.config import ChunkingConfig
from draftrag.embedding.embedder import EmbeddingClient
from draftrag.embedding.vector_index import VectorIndexClient
from draftrag.errors import ValidationError
from draftrag.ingestion.pipeline import IngestionPipeline
from draftrag.storage.chunk_store import ChunkStore

SMALL = ChunkingConfig(chunk_size_tokens=40, overlap_tokens=5)


def _text(sentences: int) -> str:
    return " ".join(
        f"Sentence {i} covers roadmap item {i} and its delivery date." for i in range(sentences)
    )


def _pipeline(store: ChunkStore, embedder: EmbeddingClient, index: VectorIndexClient) -> IngestionPipeline:
    return IngestionPipeline(Chunker(SMALL), store, embedder, index, retry_attempts=2, retry_wait_seconds=0)


class TestIngest:
    """Chunk, store, embed and upsert."""

    def test_ingest_syncs_every_chunk(self, store, embedder, vector_index, index_service) -> None:
        report = _pipeline(store, embedder, vector_index).ingest("src-1", "org-1", _text(30))

        assert report.vectors_synced
        assert report.error is None
        assert report.chunk_count == store.count_chunks("src-1") > 1
        assert report.vectors_upserted == report.chunk_count
        assert set(index_service.vectors) == {f"src-1:{i}" for i in range(report.chunk_count)}
        metadata = index_service.vectors["src-1:0"]["metadata"]
        assert metadata == {"organizationId": "org-1", "sourceContentId": "src-1", "chunkIndex": 0}

    def test_batches_embedding_calls(self, store, embedder, vector_index, embedding_service) -> None:
        pipeline = IngestionPipeline(Chunker(SMALL), store, embedder, vector_index, batch_size=2)
        report = pipeline.ingest("src-1", "org-1", _text(30))

        assert len(embedding_service.requests) == -(-report.chunk_count // 2)

    def test_reingest_shorter_text_deletes_orphans(self, store, embedder, vector_index, index_service) -> None:
        pipeline = _pipeline(store, embedder, vector_index)
        first = pipeline.ingest("src-1", "org-1", _text(40))
        second = pipeline.ingest("src-1", "org-1", _text(8))

        assert second.previous_chunk_count == first.chunk_count
        assert second.orphans_deleted == first.chunk_count - second.chunk_count
        assert set(index_service.vectors) == {f"src-1:{i}" for i in range(second.chunk_count)}
        assert store.get_vector_high_water("src-1") == second.chunk_count

    def test_blank_text_propagates_and_keeps_store(self, store, embedder, vector_index) -> None:
        pipeline = _pipeline(store, embedder, vector_index)
        pipeline.ingest("src-1", "org-1", _text(10))
        before = store.count_chunks("src-1")

        with pytest.raises(ValidationError):
            pipeline.ingest("src-1", "org-1", "   ")
        assert store.count_chunks("src-1") == before


class TestDegradedIngest:
    """Vector-side failures leave committed chunks and a degraded report."""

    def test_unconfigured_stores_chunks_only(self, store, unconfigured_embedder, unconfigured_index) -> None:
        report = _pipeline(store, unconfigured_embedder, unconfigured_index).ingest("src-1", "org-1", _text(10))

        assert not report.vectors_synced
        assert report.error == "Vector search is not configured."
        assert store.count_chunks("src-1") == report.chunk_count

    def test_embedding_failure_retried_then_reported(
        self, store, embedder, vector_index, embedding_service, index_service
    ) -> None:
        embedding_service.fail_with = 502
        report = _pipeline(store, embedder, vector_index).ingest("src-1", "org-1", _text(10))

        assert not report.vectors_synced
        assert report.error == "Failed to create embeddings."
        assert len(embedding_service.requests) == 2
        assert index_service.vectors == {}
        assert store.count_chunks("src-1") == report.chunk_count

    def test_upsert_failure_reported(self, store, embedder, vector_index, index_service) -> None:
        index_service.fail_with = 500
        report = _pipeline(store, embedder, vector_index).ingest("src-1", "org-1", _text(10))

        assert not report.vectors_synced
        assert report.vectors_upserted == 0
        assert report.error == "Vector index upsert failed."

    def test_failed_shrink_is_cleaned_up_by_next_ingest(
        self, store, embedder, vector_index, index_service
    ) -> None:
        pipeline = _pipeline(store, embedder, vector_index)
        first = pipeline.ingest("src-1", "org-1", _text(40))

        index_service.fail_with = 500
        failed = pipeline.ingest("src-1", "org-1", _text(8))
        assert not failed.vectors_synced
        assert store.get_vector_high_water("src-1") == first.chunk_count

        index_service.fail_with = None
        retried = pipeline.ingest("src-1", "org-1", _text(8))

        assert retried.previous_chunk_count == retried.chunk_count
        assert retried.orphans_deleted == first.chunk_count - retried.chunk_count
        assert set(index_service.vectors) == {f"src-1:{i}" for i in range(retried.chunk_count)}
        assert store.get_vector_high_water("src-1") == retried.chunk_count
