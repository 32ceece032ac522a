"""Tests for the tool registry and the reference-scoped guard."""

import pytest

from draftrag.references.guard import (
    GUARD_FAILURE_ERROR,
    NO_REFERENCE_ERROR,
    Mode,
    decide,
    is_tool_allowed_in_mode,
    mode_enforcement_error,
)
from draftrag.references.parser import parse_references
from draftrag.references.schemas import EntityType, ReferenceToken, ScopeEntry
from draftrag.references.scope import (
    ContentRecord,
    FileRecord,
    ReferenceLookup,
    ReferenceScope,
    SectionRecord,
    build_reference_scope,
)
from draftrag.references.tools import (
    TOOLS,
    EditSectionArgs,
    ToolKind,
    ToolName,
    is_mutating,
    parse_tool_call,
)

LOOKUP = ReferenceLookup(
    contents=[
        ContentRecord(id="c-1", slug="launch-post", sections=[SectionRecord(id="s-1", title="Intro")]),
        ContentRecord(id="c-2", slug="other-post"),
    ],
    files=[FileRecord(id="f-1", file_name="hero.png", mime_type="image/png")],
)


def _content_entry(content_id: str) -> ScopeEntry:
    token = ReferenceToken(raw=f"@{content_id}", identifier=content_id, start_index=0, end_index=1)
    return ScopeEntry(type=EntityType.CONTENT, id=content_id, token=token, content_id=content_id)


def _scope(message: str) -> ReferenceScope:
    return build_reference_scope(parse_references(message), LOOKUP)


def _call(name: str, **arguments):
    invocation = parse_tool_call(name, arguments)
    assert invocation is not None
    return invocation


class TestRegistry:
    """Closed tool set."""

    def test_every_tool_is_registered(self) -> None:
        assert set(TOOLS) == set(ToolName)

    @pytest.mark.parametrize(
        ("name", "kind"),
        [
            (ToolName.CONTENT_WRITE, ToolKind.WRITE),
            (ToolName.EDIT_SECTION, ToolKind.WRITE),
            (ToolName.EDIT_METADATA, ToolKind.WRITE),
            (ToolName.INSERT_IMAGE, ToolKind.WRITE),
            (ToolName.SOURCE_INGEST, ToolKind.INGEST),
            (ToolName.READ_CONTENT, ToolKind.READ),
            (ToolName.READ_WORKSPACE_SUMMARY, ToolKind.READ),
        ],
    )
    def test_kinds(self, name: ToolName, kind: ToolKind) -> None:
        assert TOOLS[name].kind == kind
        assert is_mutating(name) == (kind != ToolKind.READ)


class TestParseToolCall:
    """Raw agent output to typed invocations."""

    def test_json_string_with_camel_case(self) -> None:
        invocation = parse_tool_call("edit_section", '{"contentId": "c-1", "sectionId": "s-1"}')
        assert invocation.name == ToolName.EDIT_SECTION
        assert isinstance(invocation.arguments, EditSectionArgs)
        assert invocation.arguments.content_id == "c-1"
        assert invocation.arguments.section_id == "s-1"

    def test_unknown_tool(self) -> None:
        assert parse_tool_call("drop_database", {}) is None

    @pytest.mark.parametrize("arguments", ["{not json", "[1, 2]", '"text"'])
    def test_malformed_arguments(self, arguments: str) -> None:
        assert parse_tool_call("edit_metadata", arguments) is None

    def test_missing_required_argument(self) -> None:
        assert parse_tool_call("edit_metadata", {"title": "New"}) is None

    def test_empty_arguments_for_list_tool(self) -> None:
        assert parse_tool_call("read_content_list", "") is not None


class TestDecide:
    """Mode and scope enforcement."""

    def test_edit_metadata_chat_agent_and_scoped(self) -> None:
        invocation = _call("edit_metadata", contentId="c-9", title="New title")

        agent_denial = decide(invocation, "agent", ReferenceScope())
        chat_denial = decide(invocation, "chat", ReferenceScope())
        allowed = decide(invocation, "agent", ReferenceScope([_content_entry("c-9")]))

        assert "wasn't referenced" in agent_denial
        assert "not available in chat mode" in chat_denial
        assert allowed is None

    def test_chat_mode_denies_every_mutation(self) -> None:
        scope = _scope("@launch-post")
        for invocation in (
            _call("content_write", action="create", sourceText="notes"),
            _call("edit_section", contentId="c-1", sectionId="s-1"),
            _call("source_ingest", sourceType="context", context="pasted"),
        ):
            assert decide(invocation, Mode.CHAT, scope) == mode_enforcement_error(invocation.name)

    def test_read_tools_always_allowed(self) -> None:
        invocation = _call("read_content", contentId="c-2")
        assert decide(invocation, Mode.CHAT) is None
        assert decide(invocation, Mode.AGENT) is None

    def test_section_reference_authorizes_edit_section(self) -> None:
        scope = _scope("tighten @launch-post:intro")
        invocation = _call("edit_section", contentId="c-1", sectionId="s-1")
        assert decide(invocation, Mode.AGENT, scope) is None

    def test_section_reference_denies_content_level_edits(self) -> None:
        scope = _scope("tighten @launch-post:intro")
        for invocation in (
            _call("edit_metadata", contentId="c-1", title="New title"),
            _call("content_write", action="enrich", contentId="c-1"),
            _call("insert_image", contentId="c-1", fileId="f-1", sectionId="s-1"),
        ):
            assert decide(invocation, Mode.AGENT, scope) == NO_REFERENCE_ERROR

    def test_section_reference_denies_other_sections(self) -> None:
        scope = _scope("tighten @launch-post:intro")
        other = _call("edit_section", contentId="c-1", sectionId="s-other")
        untargeted = _call("edit_section", contentId="c-1", sectionTitle="Intro")

        assert decide(other, Mode.AGENT, scope) == NO_REFERENCE_ERROR
        assert decide(untargeted, Mode.AGENT, scope) == NO_REFERENCE_ERROR

    def test_section_reference_checks_parent_content(self) -> None:
        scope = _scope("tighten @launch-post:intro")
        invocation = _call("edit_section", contentId="c-2", sectionId="s-1")
        assert decide(invocation, Mode.AGENT, scope) == NO_REFERENCE_ERROR

    def test_content_reference_covers_every_section(self) -> None:
        invocation = _call("edit_section", contentId="c-1", sectionId="s-other")
        assert decide(invocation, Mode.AGENT, _scope("@launch-post")) is None

    def test_reference_to_other_content_does_not_authorize(self) -> None:
        scope = _scope("compare with @other-post")
        invocation = _call("edit_section", contentId="c-1", sectionId="s-1")
        assert decide(invocation, Mode.AGENT, scope) == NO_REFERENCE_ERROR

    def test_content_write_create_needs_no_reference(self) -> None:
        invocation = _call("content_write", action="create", sourceContentId="src-1")
        assert decide(invocation, Mode.AGENT, ReferenceScope()) is None

    def test_content_write_enrich_needs_reference(self) -> None:
        enrich = _call("content_write", action="enrich", contentId="c-1")
        assert decide(enrich, Mode.AGENT) == NO_REFERENCE_ERROR
        assert decide(enrich, Mode.AGENT, _scope("@launch-post")) is None

    def test_content_write_enrich_without_target_denied(self) -> None:
        enrich = _call("content_write", action="enrich")
        assert decide(enrich, Mode.AGENT, _scope("@launch-post")) == NO_REFERENCE_ERROR

    def test_insert_image_needs_content_and_file(self) -> None:
        invocation = _call("insert_image", contentId="c-1", fileId="f-1")
        assert decide(invocation, Mode.AGENT, _scope("@launch-post")) == NO_REFERENCE_ERROR
        assert decide(invocation, Mode.AGENT, _scope("@launch-post @hero.png")) is None

    def test_source_ingest_allowed_in_agent_mode(self) -> None:
        invocation = _call("source_ingest", sourceType="youtube", youtubeUrl="https://youtu.be/x")
        assert decide(invocation, Mode.AGENT) is None

    def test_invalid_mode_denies_without_raising(self) -> None:
        invocation = _call("edit_metadata", contentId="c-1")
        assert decide(invocation, "autopilot", _scope("@launch-post")) == GUARD_FAILURE_ERROR

    def test_is_tool_allowed_in_mode(self) -> None:
        assert is_tool_allowed_in_mode(ToolName.READ_SOURCE, "chat")
        assert not is_tool_allowed_in_mode(ToolName.EDIT_METADATA, "chat")
        assert is_tool_allowed_in_mode(ToolName.EDIT_METADATA, "agent")
