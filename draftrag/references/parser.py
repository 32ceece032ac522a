"""
Reference Parser
-----------------
Finds `@identifier`, `@identifier:anchor` and `@identifier#anchor` mentions.

An `@` only starts a reference at the start of the message or after
whitespace/punctuation, so the `@` inside `name@example.com` is ignored.
`source:` / `source/` identifiers are namespaced and never split into an
anchor.
"""
from __future__ import annotations

import re
from typing import Optional

from draftrag.references.schemas import AnchorKind, ReferenceAnchor, ReferenceToken

TRAILING_PUNCTUATION = frozenset(".,!?;:#)]}\"'")
NAMESPACED_PREFIXES = ("source:", "source/")

_BOUNDARY = re.compile(r"[\s.,!?;:()\[\]{}<>\"']")
_IDENTIFIER_CHAR = re.compile(r"[A-Za-z0-9_\-.:#/]")


def _is_boundary(char: Optional[str]) -> bool:
    return char is None or bool(_BOUNDARY.match(char))


def split_anchor(identifier: str) -> tuple[str, Optional[ReferenceAnchor]]:
    """Split "post:conclusion" -> ("post", colon anchor); leave namespaced ids whole."""
    if identifier.lower().startswith(NAMESPACED_PREFIXES):
        return identifier, None

    positions = [p for p in (identifier.find("#"), identifier.find(":")) if p > 0]
    if not positions:
        return identifier, None

    anchor_at = min(positions)
    value = identifier[anchor_at + 1:]
    if not value:
        return identifier, None

    kind = AnchorKind.HASH if identifier[anchor_at] == "#" else AnchorKind.COLON
    return identifier[:anchor_at], ReferenceAnchor(kind=kind, value=value)


def parse_references(message: str) -> list[ReferenceToken]:
    """Return the message's references left to right, non-overlapping."""
    if not message:
        return []

    tokens: list[ReferenceToken] = []
    length = len(message)
    index = 0

    while index < length:
        if message[index] != "@":
            index += 1
            continue

        prev_char = message[index - 1] if index > 0 else None
        next_char = message[index + 1] if index + 1 < length else None
        if not _is_boundary(prev_char) or next_char is None or not next_char.isalnum():
            index += 1
            continue

        end = index + 1
        while end < length and _IDENTIFIER_CHAR.match(message[end]):
            end += 1
        while end > index + 1 and message[end - 1] in TRAILING_PUNCTUATION:
            end -= 1

        raw = message[index:end]
        identifier, anchor = split_anchor(raw[1:])
        if identifier:
            tokens.append(
                ReferenceToken(
                    raw=raw,
                    identifier=identifier,
                    anchor=anchor,
                    start_index=index,
                    end_index=end,
                )
            )
        index = max(end, index + 1)

    return tokens
