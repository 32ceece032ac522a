"""
Keyword ranking over stored chunks, used when no vector index is configured.
"""
from __future__ import annotations

import re

import numpy as np
from rank_bm25 import BM25Okapi

from draftrag.chunking.schemas import Chunk


def bm25_tokens(text: str) -> list[str]:
    """Normalise text for BM25: lowercase, strip punctuation, split on whitespace.

    Stripping every non-alphanumeric character first makes "draft's" and
    "draft," both tokenise to ["draft"] and match correctly.
    """
    normalised = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return [t for t in normalised.split() if len(t) > 1]


def rank_chunks_bm25(query: str, chunks: list[Chunk], top_k: int = 10) -> list[tuple[Chunk, float]]:
    """Return up to top_k (Chunk, bm25_score) pairs with a positive score, best first."""
    tokens = bm25_tokens(query)
    if not chunks or not tokens:
        return []
    bm25 = BM25Okapi([bm25_tokens(chunk.text) or [""] for chunk in chunks])
    scores = bm25.get_scores(tokens)
    order = np.argsort(scores, kind="stable")[::-1][:top_k]
    return [(chunks[i], float(scores[i])) for i in order if scores[i] > 0]
