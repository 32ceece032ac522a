"""
draftrag - Boundary-Aware Chunker
----------------------------------
Splits source text into token-bounded windows that prefer to end on natural
boundaries, so a retrieved chunk rarely starts or stops mid-sentence.

Algorithm:
  1. Normalize whitespace (paragraph breaks and single newlines survive).
  2. Convert token targets to character lengths with a fixed ratio
     (CHARS_PER_TOKEN); no tokenizer is needed and results are deterministic.
  3. Slide a window of `size` characters, advancing by `size - overlap`.
  4. Before cutting, look back over the last 20% of the window for a
     paragraph break, then a newline, then a sentence end (". ", "! ", "? ").
     The end is snapped there only if that keeps at least 70% of the window.
  5. If the chunk still estimates above 120% of the target, retry the snap
     with a 30% lookback, then fall back to a hard cut.

Offsets always index into the normalized text, and chunk text is exactly
`normalized[start_offset:end_offset]`, so the chunks of a source cover it
without gaps.
"""
from __future__ import annotations

import math
import re
from typing import Optional

from loguru import logger

from draftrag.chunking.schemas import Chunk, TextChunk
from draftrag.config import ChunkingConfig, check_chunk_bounds
from draftrag.errors import ValidationError
from draftrag.utils.helpers import normalize_text


# ── Constants ─────────────────────────────────────────────────────────────────

CHARS_PER_TOKEN = 4
DEFAULT_CHUNK_TOKENS = 600
DEFAULT_OVERLAP_TOKENS = 75

SNAP_LOOKBACK = 0.20        # Fraction of the window searched for a boundary
TIGHT_SNAP_LOOKBACK = 0.30  # Second attempt when the chunk is still oversized
MIN_SNAP_FRACTION = 0.70    # A snapped chunk keeps at least this much of the window
MAX_OVERSHOOT = 1.20        # Estimated tokens allowed above target before re-snapping

_SENTENCE_END = re.compile(r"[.!?] ")


def estimate_tokens(text: str) -> int:
    """Approximate token count at ~4 characters per token."""
    if not text or not text.strip():
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _last_boundary(region: str) -> Optional[int]:
    """
    Return the offset just past the best boundary inside `region`, or None.

    Preference: paragraph break, then newline, then sentence end.
    """
    pos = region.rfind("\n\n")
    if pos >= 0:
        return pos + 2
    pos = region.rfind("\n")
    if pos >= 0:
        return pos + 1
    last = None
    for match in _SENTENCE_END.finditer(region):
        last = match.end()
    return last


# ── Main Chunker ──────────────────────────────────────────────────────────────

class Chunker:
    """
    Sliding-window chunker with boundary snapping.

    Usage:
        chunker = Chunker(ChunkingConfig(chunk_size_tokens=600, overlap_tokens=75))
        pieces = chunker.chunk(text)
    """

    def __init__(self, config: Optional[ChunkingConfig] = None) -> None:
        self.config = config or ChunkingConfig()

    @property
    def size_chars(self) -> int:
        return self.config.chunk_size_tokens * CHARS_PER_TOKEN

    @property
    def overlap_chars(self) -> int:
        return self.config.overlap_tokens * CHARS_PER_TOKEN

    def chunk(self, text: str) -> list[TextChunk]:
        """
        Chunk raw text.

        Raises:
            ValidationError: empty/whitespace text, or no chunk could be produced.
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Source text is required to create chunks.")

        normalized = normalize_text(text)
        if not normalized:
            raise ValidationError("Source text is required to create chunks.")

        chunks: list[TextChunk] = []
        length = len(normalized)
        target = self.config.chunk_size_tokens
        start = 0

        while start < length:
            nominal_end = min(start + self.size_chars, length)
            end = nominal_end

            if nominal_end < length:
                end = self._snap(normalized, start, nominal_end, SNAP_LOOKBACK)
                if estimate_tokens(normalized[start:end]) > target * MAX_OVERSHOOT:
                    end = self._snap(normalized, start, nominal_end, TIGHT_SNAP_LOOKBACK)
                if estimate_tokens(normalized[start:end]) > target * MAX_OVERSHOOT:
                    end = nominal_end

            segment = normalized[start:end]
            if segment.strip():
                chunks.append(
                    TextChunk(
                        index=len(chunks),
                        start_offset=start,
                        end_offset=end,
                        text=segment,
                        token_estimate=estimate_tokens(segment),
                    )
                )

            if end >= length:
                break
            start = max(end - self.overlap_chars, start + 1)

        if not chunks:
            raise ValidationError("Unable to generate chunks from the provided text.")

        logger.debug(
            f"[Chunker] {length} chars | size={target} overlap={self.config.overlap_tokens} "
            f"-> {len(chunks)} chunk(s)"
        )
        return chunks

    def chunk_source(self, source_content_id: str, organization_id: str, text: str) -> list[Chunk]:
        """Chunk a SourceText into persistable Chunk records."""
        if not source_content_id or not organization_id:
            raise ValidationError("source_content_id and organization_id are required.")
        return [
            Chunk(
                organization_id=organization_id,
                source_content_id=source_content_id,
                chunk_index=piece.index,
                start_offset=piece.start_offset,
                end_offset=piece.end_offset,
                text=piece.text,
                token_estimate=piece.token_estimate,
            )
            for piece in self.chunk(text)
        ]

    @staticmethod
    def _snap(text: str, start: int, nominal_end: int, lookback: float) -> int:
        window = nominal_end - start
        region_start = nominal_end - int(window * lookback)
        boundary = _last_boundary(text[region_start:nominal_end])
        if boundary is None:
            return nominal_end
        end = region_start + boundary
        if end - start < window * MIN_SNAP_FRACTION:
            return nominal_end
        return end


def chunk_text(
    text: str,
    chunk_size_tokens: int = DEFAULT_CHUNK_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> list[TextChunk]:
    """Validate the sizes, then chunk `text` (see Chunker)."""
    check_chunk_bounds(chunk_size_tokens, overlap_tokens)
    config = ChunkingConfig(chunk_size_tokens=chunk_size_tokens, overlap_tokens=overlap_tokens)
    return Chunker(config).chunk(text)
