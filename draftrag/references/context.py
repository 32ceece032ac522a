"""
Markdown block describing the referenced entities, prepended to the agent
prompt so the model knows what it may touch.
"""
from __future__ import annotations

from typing import Iterable, Optional

from draftrag.references.schemas import EntityType, ReferenceToken, ScopeEntry
from draftrag.references.scope import ReferenceScope

SCOPE_CONTRACT = "Scope Contract: Edits are allowed ONLY on referenced entities. Everything else is read-only."


def _bullets(items: Iterable[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _describe(entry: ScopeEntry) -> tuple[str, list[str]]:
    meta = entry.metadata
    if entry.type == EntityType.FILE:
        details = [
            f"ID: {entry.id}",
            f"Type: {meta.get('mime_type') or 'unknown'}",
        ]
        if meta.get("url"):
            details.append(f"URL: {meta['url']}")
        if (meta.get("mime_type") or "").startswith("image/"):
            details.append(f'Hint: Use insert_image with fileId "{entry.id}" to place this image in content.')
        return f"### File: {meta.get('file_name') or meta.get('original_name')}", details

    if entry.type == EntityType.SECTION:
        details = [
            f"Content ID: {meta.get('contentId')}",
            f"Content: {meta.get('contentTitle')}",
            f"Title: {meta.get('title') or meta.get('type') or 'Untitled section'}",
            f"Index: {meta['index'] if meta.get('index') is not None else 'n/a'}",
        ]
        return f"### Section: {meta.get('contentSlug')}#{entry.id}", details

    if entry.type == EntityType.SOURCE:
        details = [f"ID: {entry.id}", f"Type: {meta.get('source_type') or 'unknown'}"]
        return f"### Source: {meta.get('title') or 'Untitled source'}", details

    details = [
        f"ID: {entry.id}",
        f"Title: {meta.get('title')}",
        f"Status: {meta.get('status')}",
    ]
    sections = meta.get("sections") or []
    if sections:
        labels = [
            f"[{s.get('index') if s.get('index') is not None else ''}] "
            f"{s.get('title') or s.get('type') or s['id']} (id: {s['id']})"
            for s in sections
        ]
        details.append("Sections:\n" + _bullets(labels))
    return f"### Content: {meta.get('slug')}", details


def build_reference_context_block(
    scope: ReferenceScope,
    unresolved: Iterable[ReferenceToken] = (),
) -> Optional[str]:
    """Return the markdown block, or None when there is nothing to say."""
    unresolved = list(unresolved)
    if not len(scope) and not unresolved:
        return None

    blocks = ["## Referenced Context (resolved from @ mentions)", SCOPE_CONTRACT]
    for entry in scope:
        header, details = _describe(entry)
        blocks.append(header)
        blocks.append(_bullets(details))

    if unresolved:
        blocks.append("### Unresolved references")
        blocks.append(_bullets(f"{token.raw}: not found" for token in unresolved))

    return "\n\n".join(blocks)
