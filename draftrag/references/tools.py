"""
Agent tool catalogue
---------------------
The closed set of tools the chat/agent loop may call.  Every tool has:

  - a kind: READ (never mutates), WRITE (mutates existing content) or
    INGEST (creates new source data)
  - a pydantic argument model (camelCase on the wire)
  - a scope requirement: the entities that must have been @referenced
    before the tool may run in agent mode.  A section reference covers
    edits to that section only, never the rest of its parent content

The registry is checked against ToolName at import time, so adding a name
without a registry entry fails at import.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Literal, NamedTuple, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from draftrag.references.schemas import EntityType


class ToolKind(str, Enum):
    READ = "read"
    WRITE = "write"
    INGEST = "ingest"


class ToolName(str, Enum):
    CONTENT_WRITE = "content_write"
    EDIT_SECTION = "edit_section"
    EDIT_METADATA = "edit_metadata"
    INSERT_IMAGE = "insert_image"
    SOURCE_INGEST = "source_ingest"
    READ_CONTENT = "read_content"
    READ_SECTION = "read_section"
    READ_SOURCE = "read_source"
    READ_CONTENT_LIST = "read_content_list"
    READ_SOURCE_LIST = "read_source_list"
    READ_WORKSPACE_SUMMARY = "read_workspace_summary"


# --- Argument models ----------------------------------------------------------

class ToolArguments(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ContentWriteArgs(ToolArguments):
    action: Literal["create", "enrich"]
    # action="create"
    source_content_id: Optional[str] = None
    source_text: Optional[str] = None
    context: Optional[str] = None
    title: Optional[str] = None
    slug: Optional[str] = None
    status: Optional[str] = None
    content_type: Optional[str] = None
    # action="enrich"
    content_id: Optional[str] = None
    base_url: Optional[str] = None


class EditSectionArgs(ToolArguments):
    content_id: str
    section_id: Optional[str] = None
    section_title: Optional[str] = None
    instructions: Optional[str] = None
    temperature: Optional[float] = None


class EditMetadataArgs(ToolArguments):
    content_id: str
    title: Optional[str] = None
    slug: Optional[str] = None
    status: Optional[str] = None
    primary_keyword: Optional[str] = None
    target_locale: Optional[str] = None
    content_type: Optional[str] = None


class InsertImageArgs(ToolArguments):
    content_id: str
    file_id: str
    section_id: Optional[str] = None
    alt_text: Optional[str] = None


class SourceIngestArgs(ToolArguments):
    source_type: Literal["youtube", "context"]
    youtube_url: Optional[str] = None
    title_hint: Optional[str] = None
    context: Optional[str] = None
    title: Optional[str] = None


class ContentIdArgs(ToolArguments):
    content_id: str


class ReadSectionArgs(ToolArguments):
    content_id: str
    section_id: str


class ReadSourceArgs(ToolArguments):
    source_content_id: str


class ListArgs(ToolArguments):
    status: Optional[str] = None
    content_type: Optional[str] = None
    source_type: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    order_by: Optional[Literal["updatedAt", "createdAt", "title"]] = None
    order_direction: Optional[Literal["asc", "desc"]] = None


AnyToolArgs = Union[
    ContentWriteArgs,
    EditSectionArgs,
    EditMetadataArgs,
    InsertImageArgs,
    SourceIngestArgs,
    ContentIdArgs,
    ReadSectionArgs,
    ReadSourceArgs,
    ListArgs,
]

class ScopeKey(NamedTuple):
    type: EntityType
    id: str
    # parent content, for section keys
    content_id: Optional[str] = None


# keys that must all be in scope; None = target unknown, deny
ScopeRequirement = Optional[list[ScopeKey]]


# --- Scope requirements -------------------------------------------------------

def _no_scope(_: Any) -> ScopeRequirement:
    return []


def _owning_content(args: Any) -> ScopeRequirement:
    if not args.content_id:
        return None
    return [ScopeKey(EntityType.CONTENT, args.content_id)]


def _content_write_scope(args: ContentWriteArgs) -> ScopeRequirement:
    # create makes a new item; enrich rewrites an existing one
    if args.action == "create":
        return []
    return _owning_content(args)


def _edit_section_scope(args: EditSectionArgs) -> ScopeRequirement:
    # without a section id only a whole-content reference can cover the edit
    if args.content_id and args.section_id:
        return [ScopeKey(EntityType.SECTION, args.section_id, args.content_id)]
    return _owning_content(args)


def _insert_image_scope(args: InsertImageArgs) -> ScopeRequirement:
    if not args.content_id or not args.file_id:
        return None
    return [ScopeKey(EntityType.CONTENT, args.content_id), ScopeKey(EntityType.FILE, args.file_id)]


# --- Registry -----------------------------------------------------------------

@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    kind: ToolKind
    arguments: type[ToolArguments]
    required_scope: Callable[[Any], ScopeRequirement]
    description: str = ""

    @property
    def is_mutating(self) -> bool:
        return self.kind != ToolKind.READ


TOOLS: dict[ToolName, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(ToolName.CONTENT_WRITE, ToolKind.WRITE, ContentWriteArgs, _content_write_scope,
                 "Create content from source, or re-enrich an existing item."),
        ToolSpec(ToolName.EDIT_SECTION, ToolKind.WRITE, EditSectionArgs, _edit_section_scope,
                 "Edit one section of an existing content item."),
        ToolSpec(ToolName.EDIT_METADATA, ToolKind.WRITE, EditMetadataArgs, _owning_content,
                 "Patch title, slug, status and other metadata fields."),
        ToolSpec(ToolName.INSERT_IMAGE, ToolKind.WRITE, InsertImageArgs, _insert_image_scope,
                 "Place an uploaded image into a content item."),
        ToolSpec(ToolName.SOURCE_INGEST, ToolKind.INGEST, SourceIngestArgs, _no_scope,
                 "Save a YouTube transcript or pasted text as new source content."),
        ToolSpec(ToolName.READ_CONTENT, ToolKind.READ, ContentIdArgs, _no_scope,
                 "Fetch a content item and its sections."),
        ToolSpec(ToolName.READ_SECTION, ToolKind.READ, ReadSectionArgs, _no_scope,
                 "Fetch one section of a content item."),
        ToolSpec(ToolName.READ_SOURCE, ToolKind.READ, ReadSourceArgs, _no_scope,
                 "Fetch a source content item."),
        ToolSpec(ToolName.READ_CONTENT_LIST, ToolKind.READ, ListArgs, _no_scope,
                 "List content items."),
        ToolSpec(ToolName.READ_SOURCE_LIST, ToolKind.READ, ListArgs, _no_scope,
                 "List source content items."),
        ToolSpec(ToolName.READ_WORKSPACE_SUMMARY, ToolKind.READ, ContentIdArgs, _no_scope,
                 "Summarise a content workspace."),
    )
}

_missing = set(ToolName) - set(TOOLS)
if _missing:
    raise RuntimeError(f"Tools missing from the registry: {sorted(t.value for t in _missing)}")


class ToolInvocation(BaseModel):
    name: ToolName
    arguments: AnyToolArgs

    @property
    def spec(self) -> ToolSpec:
        return TOOLS[self.name]


def is_mutating(name: ToolName) -> bool:
    return TOOLS[name].is_mutating


def parse_tool_call(name: str, arguments: Union[str, dict, None]) -> Optional[ToolInvocation]:
    """
    Build a typed invocation from raw agent output.

    Returns None for unknown tool names, unparseable JSON or arguments that
    fail the tool's schema.
    """
    try:
        tool = ToolName(name)
    except ValueError:
        logger.warning(f"[Tools] Unknown tool requested: {name!r}")
        return None

    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments or "{}")
        except json.JSONDecodeError as exc:
            logger.warning(f"[Tools] Failed to parse arguments for {name}: {exc}")
            return None
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        logger.warning(f"[Tools] Arguments for {name} are not an object")
        return None

    try:
        args = TOOLS[tool].arguments.model_validate(arguments)
    except PydanticValidationError as exc:
        logger.warning(f"[Tools] Invalid arguments for {name}: {exc.error_count()} error(s)")
        return None
    return ToolInvocation(name=tool, arguments=args)
