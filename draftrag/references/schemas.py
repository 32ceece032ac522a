"""
Reference schemas - inline @mentions and the scope they grant.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AnchorKind(str, Enum):
    COLON = "colon"   # @post:conclusion  -> section by title/type
    HASH = "hash"     # @post#section-123 -> section by id


class ReferenceAnchor(BaseModel):
    kind: AnchorKind
    value: str


class ReferenceToken(BaseModel):
    """One @mention; start/end index into the original message."""

    raw: str
    identifier: str
    anchor: Optional[ReferenceAnchor] = None
    start_index: int
    end_index: int


class EntityType(str, Enum):
    CONTENT = "content"
    FILE = "file"
    SECTION = "section"
    SOURCE = "source"


class ScopeEntry(BaseModel):
    """
    A resolved reference.

    `content_id` is the owning content: the entry's own id for content,
    the parent content for a section, None for files and sources.
    """

    type: EntityType
    id: str
    token: ReferenceToken
    metadata: dict[str, Any] = Field(default_factory=dict)
    content_id: Optional[str] = None

    @property
    def key(self) -> tuple[EntityType, str]:
        return (self.type, self.id)
