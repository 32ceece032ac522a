"""
Embedding Client
-----------------
Calls a hosted embedding model over HTTP and normalizes its response.

The upstream protocol is fragile:
  - one text must be sent as a scalar payload  {"text": "..."},
    several as an array payload               {"text": ["...", "..."]}
  - the vectors come back under different keys depending on model/version,
    and each vector may itself be wrapped in an object.

Both levels are handled by explicit parser chains (RESULT_PARSERS,
ENTRY_PARSERS) tried in order; anything unrecognised is an
UpstreamServiceFault, never a silently short result.  Faults are raised to
the caller; this layer does not retry or swallow.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Optional

import httpx
from langsmith import traceable
from loguru import logger

from draftrag.config import EmbeddingConfig
from draftrag.errors import ConfigurationMissing, UpstreamServiceFault, ValidationError


# --- Response shape parsers ---------------------------------------------------

def _result_array(payload: Any) -> Optional[list]:
    """{"result": [...]}"""
    if isinstance(payload, dict) and isinstance(payload.get("result"), list):
        return payload["result"]
    return None


def _result_data(payload: Any) -> Optional[list]:
    """{"result": {"data": [...]}}"""
    if isinstance(payload, dict):
        result = payload.get("result")
        if isinstance(result, dict) and isinstance(result.get("data"), list):
            return result["data"]
    return None


def _result_result(payload: Any) -> Optional[list]:
    """{"result": {"result": [...]}}"""
    if isinstance(payload, dict):
        result = payload.get("result")
        if isinstance(result, dict) and isinstance(result.get("result"), list):
            return result["result"]
    return None


def _bare_array(payload: Any) -> Optional[list]:
    """[...]"""
    return payload if isinstance(payload, list) else None


def _top_level_data(payload: Any) -> Optional[list]:
    """{"data": [...]}"""
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    return None


RESULT_PARSERS: list[tuple[str, Callable[[Any], Optional[list]]]] = [
    ("result", _result_array),
    ("result.data", _result_data),
    ("result.result", _result_result),
    ("bare_array", _bare_array),
    ("data", _top_level_data),
]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric_list(value: Any) -> Optional[list[float]]:
    if isinstance(value, list) and all(_is_number(v) for v in value):
        return [float(v) for v in value]
    return None


def _wrapped(key: str) -> Callable[[Any], Optional[list[float]]]:
    def parse(entry: Any) -> Optional[list[float]]:
        if isinstance(entry, dict):
            return _numeric_list(entry.get(key))
        return None
    return parse


ENTRY_PARSERS: list[tuple[str, Callable[[Any], Optional[list[float]]]]] = [
    ("array", _numeric_list),
    ("data", _wrapped("data")),
    ("embedding", _wrapped("embedding")),
    ("vector", _wrapped("vector")),
]


def extract_result_entries(payload: Any) -> list:
    """Locate the list of per-text entries in an embedding response."""
    for name, parser in RESULT_PARSERS:
        entries = parser(payload)
        if entries is not None:
            logger.trace(f"[Embedder] Response shape: {name}")
            return entries
    raise UpstreamServiceFault("Unexpected embedding response shape.")


def normalize_embedding_entry(entry: Any) -> list[float]:
    """Turn one response entry into a flat float vector ([] if unrecognised)."""
    for _, parser in ENTRY_PARSERS:
        vector = parser(entry)
        if vector is not None:
            return vector
    return []


def parse_embedding_response(payload: Any, expected: int) -> list[list[float]]:
    """Normalize any known response shape into exactly `expected` vectors."""
    entries = extract_result_entries(payload)

    # A single-text request may come back as one flat vector instead of [[...]]
    if expected == 1 and entries and all(_is_number(v) for v in entries):
        entries = [entries]

    vectors = [normalize_embedding_entry(entry) for entry in entries]
    if len(vectors) != expected:
        raise UpstreamServiceFault(
            "Embedding count did not match requested texts.",
            details={"expected": expected, "received": len(vectors)},
        )
    empty = [i for i, v in enumerate(vectors) if not v]
    if empty:
        raise UpstreamServiceFault(
            "Received empty embeddings from the embedding model.",
            details={"empty_positions": empty},
        )
    return vectors


# --- Client -------------------------------------------------------------------

class EmbeddingClient:
    """
    Embeds text with a hosted model.

    Pass an `httpx.Client` to share a connection pool or to inject a mock
    transport; otherwise one is created from the config timeout.
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.config = config
        self._client = http_client or httpx.Client(timeout=config.timeout_seconds)
        self.total_api_calls: int = 0
        self.total_texts_embedded: int = 0

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    @traceable(name="embed_texts", run_type="embedding")
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """
        Embed `texts`, returning one vector per text in the same order.

        Raises:
            ValidationError: empty input list.
            ConfigurationMissing: no account/token/model configured.
            UpstreamServiceFault: non-2xx, unknown shape, count mismatch,
                or any empty vector.
        """
        if not texts:
            raise ValidationError("At least one text is required for embedding.")
        if not self.is_configured:
            raise ConfigurationMissing("Vector embeddings are not configured.")

        payload = {"text": texts[0]} if len(texts) == 1 else {"text": list(texts)}
        headers = {
            "Authorization": f"Bearer {self.config.api_token}",
            "Content-Type": "application/json",
        }

        start = time.perf_counter()
        try:
            response = self._client.post(self.config.endpoint, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamServiceFault(f"Embedding request failed: {exc}") from exc
        elapsed = time.perf_counter() - start

        if not response.is_success:
            raise UpstreamServiceFault(
                "Failed to create embeddings.",
                status_code=response.status_code,
                details={"body": response.text[:500]},
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamServiceFault("Embedding response was not valid JSON.") from exc

        vectors = parse_embedding_response(body, expected=len(texts))

        self.total_api_calls += 1
        self.total_texts_embedded += len(texts)
        logger.debug(
            f"[Embedder] API call: {len(texts)} texts, dim={len(vectors[0])}, {elapsed:.2f}s"
        )
        return vectors

    def embed_text(self, text: str) -> list[float]:
        """Embed a single string."""
        return self.embed_texts([text])[0]

    def usage_summary(self) -> dict:
        return {
            "model": self.config.model,
            "total_api_calls": self.total_api_calls,
            "total_texts_embedded": self.total_texts_embedded,
        }

    def close(self) -> None:
        self._client.close()
