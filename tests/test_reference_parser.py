"""Tests for @mention parsing."""

import pytest

from draftrag.references.parser import parse_references, split_anchor
from draftrag.references.schemas import AnchorKind


class TestParseReferences:
    """Token extraction and offsets."""

    def test_email_is_not_a_reference(self) -> None:
        assert parse_references("Contact me at name@example.com for details.") == []

    def test_two_tokens_with_offsets(self) -> None:
        message = "Add @image.jpg, then update @post:conclusion."
        tokens = parse_references(message)

        assert len(tokens) == 2
        image, post = tokens

        assert image.identifier == "image.jpg"
        assert image.anchor is None
        assert image.start_index == message.index("@image.jpg")
        assert image.end_index == image.start_index + len("@image.jpg")

        assert post.identifier == "post"
        assert post.anchor is not None
        assert post.anchor.kind == AnchorKind.COLON
        assert post.anchor.value == "conclusion"
        assert post.start_index == message.index("@post:conclusion")
        assert post.raw == "@post:conclusion"
        assert message[post.start_index:post.end_index] == post.raw

    def test_hash_anchor(self) -> None:
        [token] = parse_references("rewrite @launch-post#sec_42 please")
        assert token.identifier == "launch-post"
        assert token.anchor.kind == AnchorKind.HASH
        assert token.anchor.value == "sec_42"

    def test_start_of_message_and_after_punctuation(self) -> None:
        tokens = parse_references("@first (@second) [@third]")
        assert [t.identifier for t in tokens] == ["first", "second", "third"]

    def test_trailing_punctuation_trimmed(self) -> None:
        tokens = parse_references("See @notes.md. And @post:? too!")
        assert [t.raw for t in tokens] == ["@notes.md", "@post"]
        assert tokens[1].anchor is None

    @pytest.mark.parametrize("message", ["", "no mentions here", "@ alone", "@@", "a@b c@d"])
    def test_no_tokens(self, message: str) -> None:
        assert parse_references(message) == []

    def test_source_namespace_kept_whole(self) -> None:
        [token] = parse_references("summarise @source:q3-call for me")
        assert token.identifier == "source:q3-call"
        assert token.anchor is None

    def test_repeated_mentions_each_reported(self) -> None:
        message = "@post and @post again"
        tokens = parse_references(message)
        assert [t.start_index for t in tokens] == [0, message.rindex("@post")]


class TestSplitAnchor:
    """Anchor splitting."""

    def test_first_separator_wins(self) -> None:
        identifier, anchor = split_anchor("post#a:b")
        assert identifier == "post"
        assert anchor.kind == AnchorKind.HASH
        assert anchor.value == "a:b"

    def test_leading_separator_is_not_an_anchor(self) -> None:
        assert split_anchor("#tag") == ("#tag", None)
