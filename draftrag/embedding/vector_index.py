"""
Vector Index Client
--------------------
HTTP client for a hosted nearest-neighbour vector index.

Endpoints (relative to VectorIndexConfig.base_url, bearer-token auth):
  POST /upsert         {"vectors": [{"id", "values", "metadata"}]}
  POST /query          {"topK", "vector", "filter", "returnMetadata"}
  POST /delete_by_ids  {"ids": [...]}

Vector ids are deterministic ("{source_content_id}:{chunk_index}") so that
re-upserting a re-chunked source overwrites its previous vectors in place.

An unconfigured index is "no semantic capability": queries return [] and
writes raise ConfigurationMissing.  Upstream faults are always raised.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from draftrag.config import MAX_TOP_K_WITH_METADATA, VectorIndexConfig
from draftrag.errors import ConfigurationMissing, UpstreamServiceFault, ValidationError

REQUIRED_METADATA = ("organizationId", "sourceContentId")


def build_vector_id(source_content_id: str, chunk_index: int) -> str:
    return f"{source_content_id}:{chunk_index}"


def parse_vector_id(vector_id: str) -> Optional[tuple[str, int]]:
    """Split "{source}:{index}" back into its parts; None if malformed."""
    source_content_id, sep, index = vector_id.rpartition(":")
    if not sep or not source_content_id or not index.isdigit():
        return None
    return source_content_id, int(index)


class VectorRecord(BaseModel):
    id: str
    values: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorMatch(BaseModel):
    id: str
    score: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


def validate_vector_batch(records: list[VectorRecord]) -> None:
    """Reject the whole batch on the first record missing required data."""
    for position, record in enumerate(records):
        missing = [key for key in REQUIRED_METADATA if not record.metadata.get(key)]
        if missing:
            raise ValidationError(
                "Vector metadata missing sourceContentId or organizationId.",
                details={"position": position, "id": record.id, "missing": missing},
            )
        if not record.values:
            raise ValidationError(
                "Vector values must not be empty.",
                details={"position": position, "id": record.id},
            )


def _extract_matches(payload: Any) -> list:
    if not isinstance(payload, dict):
        return []
    result = payload.get("result")
    if isinstance(result, dict):
        if isinstance(result.get("matches"), list):
            return result["matches"]
        if isinstance(result.get("results"), list):
            return result["results"]
    if isinstance(result, list) and result and isinstance(result[0], dict):
        if isinstance(result[0].get("matches"), list):
            return result[0]["matches"]
    if isinstance(payload.get("matches"), list):
        return payload["matches"]
    return []


def _to_match(raw: Any) -> Optional[VectorMatch]:
    if not isinstance(raw, dict):
        return None
    match_id = raw.get("id") or raw.get("vector_id") or raw.get("vectorId")
    if not isinstance(match_id, str) or not match_id:
        return None
    score = raw.get("score")
    if not isinstance(score, (int, float)) or isinstance(score, bool):
        score = 0.0
    metadata = raw.get("metadata")
    return VectorMatch(
        id=match_id,
        score=float(score),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


class VectorIndexClient:
    """
    Upsert / query / delete against the hosted vector index.

    Usage:
        index = VectorIndexClient(settings.vector_index)
        index.upsert_vectors(records)
        matches = index.query_vector_matches(vector, top_k=5,
                                             filter={"organizationId": org_id})
    """

    def __init__(
        self,
        config: VectorIndexConfig,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.config = config
        self._client = http_client or httpx.Client(timeout=config.timeout_seconds)

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    # --- Write ----------------------------------------------------------------

    def upsert_vectors(self, records: list[VectorRecord]) -> int:
        """
        Upsert a batch of vectors; returns the number sent.

        The full batch is validated before the network call, so an invalid
        record means nothing is uploaded.
        """
        if not records:
            return 0
        validate_vector_batch(records)
        self._require_configured()

        body = {"vectors": [record.model_dump() for record in records]}
        self._post("/upsert", body, action="upsert")
        logger.info(f"[VectorIndex] Upserted {len(records)} vectors")
        return len(records)

    def delete_vectors(self, ids: list[str]) -> int:
        """Delete vectors by id; returns the number of ids sent."""
        if not ids:
            return 0
        self._require_configured()
        self._post("/delete_by_ids", {"ids": list(ids)}, action="delete")
        logger.info(f"[VectorIndex] Deleted {len(ids)} vector ids")
        return len(ids)

    # --- Read -----------------------------------------------------------------

    def query_vector_matches(
        self,
        vector: list[float],
        top_k: int = 3,
        filter: Optional[dict[str, Any]] = None,
        return_metadata: bool = True,
    ) -> list[VectorMatch]:
        """
        Nearest-neighbour query.

        Returns [] when the index is unconfigured or `vector` is empty.  With
        full metadata requested, top_k above the upstream cap is clamped.
        """
        if not self.is_configured or not vector:
            return []
        if top_k < 1:
            raise ValidationError("top_k must be at least 1.", details={"top_k": top_k})

        effective_top_k = top_k
        if return_metadata and top_k > MAX_TOP_K_WITH_METADATA:
            effective_top_k = MAX_TOP_K_WITH_METADATA
            logger.warning(
                f"[VectorIndex] topK capped from {top_k} to {effective_top_k} "
                "because full metadata was requested"
            )

        body: dict[str, Any] = {
            "topK": effective_top_k,
            "vector": list(vector),
            "returnMetadata": "all" if return_metadata else "none",
        }
        if filter:
            body["filter"] = filter

        payload = self._post("/query", body, action="query")
        matches = [m for m in (_to_match(raw) for raw in _extract_matches(payload)) if m]
        logger.debug(f"[VectorIndex] Query returned {len(matches)} matches (topK={effective_top_k})")
        return matches[:effective_top_k]

    # --- Transport ------------------------------------------------------------

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise ConfigurationMissing("Vector search is not configured.")

    def _post(self, path: str, body: dict[str, Any], action: str) -> Any:
        headers = {
            "Authorization": f"Bearer {self.config.api_token}",
            "Content-Type": "application/json",
        }
        try:
            response = self._client.post(f"{self.config.base_url}{path}", json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamServiceFault(f"Vector index {action} request failed: {exc}") from exc

        if not response.is_success:
            logger.error(
                f"[VectorIndex] {action} failed | status={response.status_code} | "
                f"body={response.text[:200]!r}"
            )
            raise UpstreamServiceFault(
                f"Vector index {action} failed.",
                status_code=response.status_code,
                details={"body": response.text[:500]},
            )

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamServiceFault(f"Vector index {action} response was not valid JSON.") from exc

    def close(self) -> None:
        self._client.close()
