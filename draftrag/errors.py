"""Exception taxonomy shared by the chunking, embedding and retrieval layers."""
from __future__ import annotations

from typing import Any, Optional


class DraftRagError(Exception):
    """Base exception for every draftrag fault."""

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(DraftRagError):
    """Raised when input is rejected before any I/O happens."""


class UpstreamServiceFault(DraftRagError):
    """Raised when the embedding model or vector index answers badly."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class ConfigurationMissing(DraftRagError):
    """Raised when a remote client is used without account/index/token settings.

    Callers treat this as "no semantic capability" rather than a failure.
    """
