"""
Chunk schemas - the atomic unit that gets embedded and indexed.

A TextChunk is what the chunker produces from bare text; a Chunk is the
persisted form that carries the organization and source it belongs to, so
every retrieval result can be traced back to its origin.
"""
from __future__ import annotations

import uuid

from pydantic import BaseModel, Field

from draftrag.embedding.vector_index import build_vector_id


class TextChunk(BaseModel):
    """One window of normalized text, with exact offsets into that text."""

    index: int
    start_offset: int
    end_offset: int
    text: str
    token_estimate: int = 0


class Chunk(BaseModel):
    """
    A stored chunk of a SourceText.

    (source_content_id, chunk_index) is unique; the vector index keys its
    records by the same pair.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    source_content_id: str
    chunk_index: int
    start_offset: int
    end_offset: int
    text: str
    token_estimate: int = 0

    @property
    def key(self) -> tuple[str, int]:
        return (self.source_content_id, self.chunk_index)

    @property
    def vector_id(self) -> str:
        return build_vector_id(self.source_content_id, self.chunk_index)
