"""
Chunk Store
------------
SQLAlchemy-backed persistence for chunk sets.

The chunk set of one source is always replaced as a whole: delete-all and
insert run inside a single transaction, so a reader sees either the previous
set or the new one, never an empty or mixed set.  Concurrent re-chunks of the
same source are last-committer-wins.

Each source also keeps a vector high-water mark: the highest chunk count whose
vectors may still sit in the index.  It only drops once a sync has deleted
everything above the current chunk count.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from loguru import logger
from sqlalchemy import (
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from draftrag.chunking.schemas import Chunk
from draftrag.errors import ValidationError


class Base(DeclarativeBase):
    pass


class ChunkRow(Base):
    __tablename__ = "chunk"
    __table_args__ = (
        UniqueConstraint("source_content_id", "chunk_index", name="uq_chunk_source_content_chunk_index"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(255), index=True)
    source_content_id: Mapped[str] = mapped_column(String(255), index=True)
    chunk_index: Mapped[int] = mapped_column(Integer)
    start_offset: Mapped[int] = mapped_column(Integer)
    end_offset: Mapped[int] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text)
    token_estimate: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def to_chunk(self) -> Chunk:
        return Chunk(
            id=self.id,
            organization_id=self.organization_id,
            source_content_id=self.source_content_id,
            chunk_index=self.chunk_index,
            start_offset=self.start_offset,
            end_offset=self.end_offset,
            text=self.text,
            token_estimate=self.token_estimate,
        )


class VectorSyncRow(Base):
    __tablename__ = "vector_sync"

    source_content_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(255), index=True)
    high_water: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class ChunkStore:
    """
    Usage:
        store = ChunkStore.from_url("sqlite:///data/draftrag.db")
        store.create_schema()
        previous = store.replace_chunks("src-1", "org-1", chunks)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str) -> "ChunkStore":
        return cls(create_engine(url))

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    # --- Write ----------------------------------------------------------------

    def replace_chunks(self, source_content_id: str, organization_id: str, chunks: list[Chunk]) -> int:
        """
        Atomically replace every chunk of a source; returns the previous count.

        All chunks must belong to `source_content_id` / `organization_id`.
        """
        for chunk in chunks:
            if chunk.source_content_id != source_content_id or chunk.organization_id != organization_id:
                raise ValidationError(
                    f"Chunk {chunk.chunk_index} does not belong to source {source_content_id}."
                )

        with self._sessions.begin() as session:
            previous = session.scalar(
                select(func.count()).select_from(ChunkRow).where(
                    ChunkRow.source_content_id == source_content_id
                )
            ) or 0
            session.execute(delete(ChunkRow).where(ChunkRow.source_content_id == source_content_id))
            session.add_all(
                ChunkRow(
                    id=chunk.id,
                    organization_id=chunk.organization_id,
                    source_content_id=chunk.source_content_id,
                    chunk_index=chunk.chunk_index,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    text=chunk.text,
                    token_estimate=chunk.token_estimate,
                )
                for chunk in chunks
            )

        logger.info(
            f"[ChunkStore] Replaced chunks for {source_content_id} | {previous} -> {len(chunks)}"
        )
        return previous

    # --- Read -----------------------------------------------------------------

    def list_chunks(self, source_content_id: str) -> list[Chunk]:
        with self._sessions() as session:
            rows = session.scalars(
                select(ChunkRow)
                .where(ChunkRow.source_content_id == source_content_id)
                .order_by(ChunkRow.chunk_index)
            )
            return [row.to_chunk() for row in rows]

    def list_org_chunks(self, organization_id: str, source_content_id: Optional[str] = None) -> list[Chunk]:
        with self._sessions() as session:
            stmt = select(ChunkRow).where(ChunkRow.organization_id == organization_id)
            if source_content_id:
                stmt = stmt.where(ChunkRow.source_content_id == source_content_id)
            rows = session.scalars(stmt.order_by(ChunkRow.source_content_id, ChunkRow.chunk_index))
            return [row.to_chunk() for row in rows]

    def get_chunks(self, keys: Iterable[tuple[str, int]]) -> dict[tuple[str, int], Chunk]:
        """Look chunks up by (source_content_id, chunk_index)."""
        wanted = list(dict.fromkeys(keys))
        if not wanted:
            return {}
        with self._sessions() as session:
            sources = {source for source, _ in wanted}
            rows = session.scalars(select(ChunkRow).where(ChunkRow.source_content_id.in_(sources)))
            found = {(row.source_content_id, row.chunk_index): row.to_chunk() for row in rows}
        return {key: found[key] for key in wanted if key in found}

    def count_chunks(self, source_content_id: str) -> int:
        with self._sessions() as session:
            return session.scalar(
                select(func.count()).select_from(ChunkRow).where(
                    ChunkRow.source_content_id == source_content_id
                )
            ) or 0

    # --- Vector high-water mark -----------------------------------------------

    def get_vector_high_water(self, source_content_id: str) -> int:
        with self._sessions() as session:
            row = session.get(VectorSyncRow, source_content_id)
            return row.high_water if row else 0

    def raise_vector_high_water(self, source_content_id: str, organization_id: str, count: int) -> int:
        """Lift the mark to at least `count`; returns the resulting mark."""
        with self._sessions.begin() as session:
            row = session.get(VectorSyncRow, source_content_id)
            if row is None:
                row = VectorSyncRow(
                    source_content_id=source_content_id, organization_id=organization_id, high_water=0
                )
                session.add(row)
            row.high_water = max(row.high_water, count)
            return row.high_water

    def reset_vector_high_water(self, source_content_id: str, count: int) -> None:
        """Set the mark to `count` after every vector above it was deleted."""
        with self._sessions.begin() as session:
            row = session.get(VectorSyncRow, source_content_id)
            if row is not None:
                row.high_water = count
