"""
Tool Guard
-----------
Decides whether a tool call may run, given the chat mode and the turn's
reference scope.

    read tool                        -> allowed in any mode
    mutating tool in chat mode       -> denied, switch to agent mode
    mutating tool in agent mode      -> allowed only when every entity it
                                        touches was @referenced this turn
    section reference                -> covers edit_section on that section,
                                        nothing else of its parent content

decide() never raises: anything unexpected turns into a denial message
that can go straight back to the model as the tool result.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from loguru import logger

from draftrag.references.schemas import EntityType
from draftrag.references.scope import ReferenceScope
from draftrag.references.tools import ScopeKey, ToolInvocation, ToolName, is_mutating

NO_REFERENCE_ERROR = "I can't edit that because it wasn't referenced. Add @<thing> to scope this edit."
GUARD_FAILURE_ERROR = "I couldn't verify that tool call, so it was not run."


class Mode(str, Enum):
    CHAT = "chat"
    AGENT = "agent"


def mode_enforcement_error(name: Union[ToolName, str]) -> str:
    tool = name.value if isinstance(name, ToolName) else name
    return (
        f'Tool "{tool}" is not available in chat mode '
        "(it can modify content or ingest new data). Switch to agent mode."
    )


def is_tool_allowed_in_mode(name: ToolName, mode: Union[Mode, str]) -> bool:
    return Mode(mode) == Mode.AGENT or not is_mutating(name)


def _in_scope(scope: ReferenceScope, key: ScopeKey) -> bool:
    if key.type == EntityType.SECTION:
        return scope.allows_section(key.content_id or "", key.id)
    if key.type == EntityType.CONTENT:
        return key.id in scope.allowed_content_ids
    if key.type == EntityType.FILE:
        return key.id in scope.allowed_file_ids
    return key.id in scope.allowed_source_ids


def _decide(invocation: ToolInvocation, mode: Mode, scope: ReferenceScope) -> Optional[str]:
    spec = invocation.spec
    if not spec.is_mutating:
        return None
    if mode != Mode.AGENT:
        return mode_enforcement_error(spec.name)

    required = spec.required_scope(invocation.arguments)
    if required is None:
        logger.info(f"[Guard] Denied {spec.name.value}: target entity missing from arguments")
        return NO_REFERENCE_ERROR

    for key in required:
        if not _in_scope(scope, key):
            logger.info(f"[Guard] Denied {spec.name.value}: {key.type.value} {key.id} not referenced")
            return NO_REFERENCE_ERROR
    return None


def decide(
    invocation: ToolInvocation,
    mode: Union[Mode, str],
    scope: Optional[ReferenceScope] = None,
) -> Optional[str]:
    """
    Return None when the call may run, otherwise a human-readable reason.

    `scope` defaults to empty, which denies every mutation that targets an
    existing entity.
    """
    try:
        return _decide(invocation, Mode(mode), scope if scope is not None else ReferenceScope())
    except Exception as exc:
        logger.error(f"[Guard] Could not evaluate tool call: {exc}")
        return GUARD_FAILURE_ERROR
