"""
Reference Scope Builder
------------------------
Resolves parsed @mentions against lookup tables supplied by the caller and
collects the matches into a ReferenceScope: the set of entities the current
chat turn is allowed to mutate.

Resolution order per token:
  - "source:<alias>" / "source/<alias>"  -> sources only
  - identifier containing "."             -> files first, then contents
  - anything else                         -> contents first, then files
A content token with an anchor narrows to one of its sections when the
anchor matches (hash: section id, colon: section title or type).

Matching is case-insensitive and exact.  Tokens that match nothing are plain
text and are dropped without error.
"""
from __future__ import annotations

from typing import Iterable, Iterator, Optional

from loguru import logger
from pydantic import BaseModel, Field

from draftrag.references.schemas import AnchorKind, EntityType, ReferenceToken, ScopeEntry


# --- Lookup tables ------------------------------------------------------------

class SectionRecord(BaseModel):
    id: str
    title: Optional[str] = None
    type: Optional[str] = None
    index: Optional[int] = None


class ContentRecord(BaseModel):
    id: str
    slug: str
    title: str = ""
    status: str = ""
    sections: list[SectionRecord] = Field(default_factory=list)


class FileRecord(BaseModel):
    id: str
    file_name: str
    original_name: Optional[str] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None


class SourceRecord(BaseModel):
    id: str
    alias: str
    title: Optional[str] = None
    source_type: Optional[str] = None


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


class ReferenceLookup:
    """Organization-scoped lookup tables: content slug, file name, source alias."""

    def __init__(
        self,
        contents: Iterable[ContentRecord] = (),
        files: Iterable[FileRecord] = (),
        sources: Iterable[SourceRecord] = (),
    ) -> None:
        self._contents: dict[str, ContentRecord] = {}
        for content in contents:
            self._contents.setdefault(_norm(content.slug), content)

        self._files: dict[str, FileRecord] = {}
        for record in files:
            for name in (record.file_name, record.original_name):
                if name:
                    self._files.setdefault(_norm(name), record)

        self._sources: dict[str, SourceRecord] = {}
        for source in sources:
            for name in (source.alias, source.title):
                if name:
                    self._sources.setdefault(_norm(name), source)

    def content(self, slug: str) -> Optional[ContentRecord]:
        return self._contents.get(_norm(slug))

    def file(self, name: str) -> Optional[FileRecord]:
        return self._files.get(_norm(name))

    def source(self, alias: str) -> Optional[SourceRecord]:
        return self._sources.get(_norm(alias))


# --- Scope --------------------------------------------------------------------

class ReferenceScope:
    """Resolved references deduplicated by (type, id), first token wins."""

    def __init__(self, entries: Iterable[ScopeEntry] = ()) -> None:
        self._entries: dict[tuple[EntityType, str], ScopeEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: ScopeEntry) -> bool:
        if entry.key in self._entries:
            return False
        self._entries[entry.key] = entry
        return True

    @property
    def entries(self) -> list[ScopeEntry]:
        return list(self._entries.values())

    def contains(self, entity_type: EntityType, entity_id: str) -> bool:
        return (entity_type, entity_id) in self._entries

    def get(self, entity_type: EntityType, entity_id: str) -> Optional[ScopeEntry]:
        return self._entries.get((entity_type, entity_id))

    def _ids(self, entity_type: EntityType) -> set[str]:
        return {entity_id for kind, entity_id in self._entries if kind == entity_type}

    @property
    def allowed_content_ids(self) -> set[str]:
        """Contents referenced as a whole; a section reference does not add its parent."""
        return self._ids(EntityType.CONTENT)

    def allows_section(self, content_id: str, section_id: str) -> bool:
        """True when the content, or this exact section of it, was referenced."""
        if content_id in self.allowed_content_ids:
            return True
        entry = self.get(EntityType.SECTION, section_id)
        return entry is not None and entry.content_id == content_id

    @property
    def allowed_section_ids(self) -> set[str]:
        return self._ids(EntityType.SECTION)

    @property
    def allowed_file_ids(self) -> set[str]:
        return self._ids(EntityType.FILE)

    @property
    def allowed_source_ids(self) -> set[str]:
        return self._ids(EntityType.SOURCE)

    def __iter__(self) -> Iterator[ScopeEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"ReferenceScope({[f'{t.value}:{i}' for t, i in self._entries]})"


# --- Resolution ---------------------------------------------------------------

def _content_entry(token: ReferenceToken, content: ContentRecord) -> ScopeEntry:
    if token.anchor is not None:
        anchor = _norm(token.anchor.value)
        for section in content.sections:
            if token.anchor.kind == AnchorKind.HASH:
                hit = _norm(section.id) == anchor
            else:
                hit = anchor in (_norm(section.title), _norm(section.type))
            if hit:
                return ScopeEntry(
                    type=EntityType.SECTION,
                    id=section.id,
                    token=token,
                    content_id=content.id,
                    metadata={
                        "sectionId": section.id,
                        "title": section.title,
                        "type": section.type,
                        "index": section.index,
                        "contentId": content.id,
                        "contentSlug": content.slug,
                        "contentTitle": content.title,
                    },
                )
        logger.debug(f"[Scope] {token.raw}: section not found, scoping whole content")

    return ScopeEntry(
        type=EntityType.CONTENT,
        id=content.id,
        token=token,
        content_id=content.id,
        metadata={
            "id": content.id,
            "slug": content.slug,
            "title": content.title,
            "status": content.status,
            "sections": [s.model_dump() for s in content.sections],
        },
    )


def _file_entry(token: ReferenceToken, record: FileRecord) -> ScopeEntry:
    return ScopeEntry(type=EntityType.FILE, id=record.id, token=token, metadata=record.model_dump())


def resolve_reference(token: ReferenceToken, lookup: ReferenceLookup) -> Optional[ScopeEntry]:
    """Resolve one token, or None when it names nothing known."""
    identifier = token.identifier.strip()
    if not identifier:
        return None

    lowered = identifier.lower()
    if lowered.startswith(("source:", "source/")):
        source = lookup.source(identifier[len("source:"):])
        if source is None:
            return None
        return ScopeEntry(type=EntityType.SOURCE, id=source.id, token=token, metadata=source.model_dump())

    record = lookup.file(identifier)
    content = lookup.content(identifier)

    if "." in identifier and record is not None:
        return _file_entry(token, record)
    if content is not None:
        return _content_entry(token, content)
    if record is not None:
        return _file_entry(token, record)
    return None


def build_reference_scope(tokens: Iterable[ReferenceToken], lookup: ReferenceLookup) -> ReferenceScope:
    scope = ReferenceScope()
    dropped = 0
    for token in tokens:
        entry = resolve_reference(token, lookup)
        if entry is None:
            dropped += 1
            continue
        scope.add(entry)
    if dropped:
        logger.debug(f"[Scope] {dropped} unresolved reference(s) treated as plain text")
    return scope
