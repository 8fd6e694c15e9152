"""
Tests for masking glossary anchors across a translator.

These tests verify:
- Longest-first anchor selection and stable first-encounter ids
- Word boundaries only for anchors that begin and end with word characters
- Restore strategies and unmasking
- Token validation

Run with: pytest tests/test_masking.py -v
"""

import pytest

from termtrans.errors import ValidationError
from termtrans.masking import (
    MASK_TOKEN_RE,
    anchor_pattern,
    escape_tokens,
    extract_mask_ids,
    make_token,
    mask_texts,
    unescape_tokens,
    unmask_text,
)
from termtrans.models import MaskRecord

TARGETS = {
    "Red Potion": ("레드 포션", 5),
    "Potion": ("포션", 3),
    "HP": ("체력", 4),
    "7": ("칠", 9),
}


def resolve(anchor):
    return TARGETS.get(anchor, ("", None))


class TestMaskTexts:
    """Tests for mask_texts()."""

    def test_longest_anchor_first(self):
        """A longer anchor is masked before a shorter one it contains."""
        result = mask_texts(["Red Potion and Potion"], ["Red Potion", "Potion"], resolve_restore=resolve)
        assert result.texts == ["{mask:1} and {mask:2}"]
        assert [(m.id, m.anchor) for m in result.masks] == [(1, "Red Potion"), (2, "Potion")]

    def test_ids_follow_first_encounter(self):
        """Ids are shared across texts and issued in encounter order."""
        result = mask_texts(["HP low", "Potion for HP"], ["Potion", "HP"])
        assert result.texts == ["{mask:1} low", "{mask:2} for {mask:1}"]

    def test_ids_stable_for_same_input(self):
        """The same input masks identically every time."""
        texts = ["Potion for HP", "Red Potion"]
        anchors = ["Red Potion", "Potion", "HP"]
        first = mask_texts(texts, anchors)
        second = mask_texts(texts, anchors)
        assert first.texts == second.texts
        assert first.masks == second.masks

    def test_unmatched_anchors_get_no_id(self):
        """Anchors that never match do not consume ids."""
        result = mask_texts(["only HP here"], ["Red Potion", "Potion", "HP"])
        assert result.texts == ["only {mask:1} here"]
        assert result.matched_ids == 1
        assert result.anchors_considered == 3

    def test_word_boundary(self):
        """HP inside HPotion is left alone in word-boundary mode."""
        result = mask_texts(["HPotion and HP"], ["HP"])
        assert result.texts == ["HPotion and {mask:1}"]

    def test_without_word_boundary(self):
        """Substring matches are masked when boundaries are off."""
        result = mask_texts(["HPotion"], ["HP"], word_boundary=False)
        assert result.texts == ["{mask:1}otion"]

    def test_non_ascii_anchor_ignores_boundary(self):
        """Anchors outside ASCII word characters are matched as plain substrings."""
        result = mask_texts(["레드 포션을 샀다"], ["레드 포션"])
        assert result.texts == ["{mask:1}을 샀다"]

    def test_symbol_edged_anchor(self):
        """An anchor ending in a symbol still matches before a word character."""
        result = mask_texts(["C++11 rocks"], ["C++"])
        assert result.texts == ["{mask:1}11 rocks"]

    def test_case_insensitive(self):
        """Case-insensitive matching masks every casing."""
        result = mask_texts(["hp and Hp"], ["HP"], case_sensitive=False)
        assert result.texts == ["{mask:1} and {mask:1}"]
        assert mask_texts(["hp"], ["HP"]).texts == ["hp"]

    def test_digit_anchor_never_hits_mask_ids(self):
        """A numeric anchor cannot match inside an existing mask."""
        anchors = ["Potion", "HP", "7", "1"]
        result = mask_texts(["Potion x7 HP"], anchors, word_boundary=False)
        assert result.texts == ["{mask:1} x{mask:3} {mask:2}"]
        assert [m.anchor for m in result.masks] == ["Potion", "HP", "7"]

    def test_restore_glossary_target(self):
        """The default strategy restores the glossary target text."""
        result = mask_texts(["Red Potion"], ["Red Potion"], resolve_restore=resolve)
        mask = result.masks[0]
        assert mask.restore == "레드 포션"
        assert mask.glossary_row_index == 5

    def test_restore_anchor(self):
        """The anchor strategy restores the source text."""
        result = mask_texts(["Red Potion"], ["Red Potion"], restore_strategy="anchor", resolve_restore=resolve)
        assert result.masks[0].restore == "Red Potion"
        assert result.masks[0].glossary_row_index == 5

    def test_empty_target_restores_anchor(self):
        """Without a target text the anchor is restored."""
        result = mask_texts(["Shield"], ["Shield"], resolve_restore=resolve)
        assert result.masks[0].restore == "Shield"

    def test_invalid_strategy(self):
        """Unknown restore strategies are rejected."""
        with pytest.raises(ValidationError) as exc:
            mask_texts(["x"], ["x"], restore_strategy="target")
        assert exc.value.reason == "invalid_restore_strategy"

    def test_none_text(self):
        """None inputs become empty strings."""
        assert mask_texts([None], ["HP"]).texts == [""]


class TestUnmask:
    """Tests for restoring tokens."""

    def test_round_trip_through_translator(self):
        """Tokens moved around by a translator restore to glossary targets."""
        result = mask_texts(["Red Potion restores HP"], ["Red Potion", "HP"], resolve_restore=resolve)
        translated = "{mask:2}을 회복하는 {mask:1}"
        assert result.unmask(translated) == "체력을 회복하는 레드 포션"

    def test_unknown_ids_untouched(self):
        """Tokens without a record are left as they are."""
        masks = [MaskRecord(id=1, anchor="HP", restore="체력")]
        assert unmask_text("{mask:1} {mask:9}", masks) == "체력 {mask:9}"

    def test_empty_inputs(self):
        assert unmask_text("", []) == ""
        assert unmask_text("{mask:1}", []) == "{mask:1}"

    def test_token_helpers(self):
        assert make_token(12) == "{mask:12}"
        assert MASK_TOKEN_RE.fullmatch("{mask:12}")
        assert extract_mask_ids("a {mask:3} b {mask:1}") == [3, 1]

    def test_nested_anchors_round_trip(self):
        """Anchors inside longer anchors restore to the exact input."""
        texts = ["Red Potion and Potion, HP", "HPotion Red Potions"]
        for word_boundary in (True, False):
            result = mask_texts(
                texts, ["Red Potion", "Potion", "HP"],
                word_boundary=word_boundary, restore_strategy="anchor",
            )
            assert [result.unmask(t) for t in result.texts] == texts

    def test_existing_token_text_round_trips(self):
        """Literal {mask:N} text in the input is never restored as a mask."""
        text = "{mask:1} then HP"
        result = mask_texts([text], ["HP"], restore_strategy="anchor", resolve_restore=resolve)
        assert result.texts == ["{\u2060mask:1} then {mask:1}"]
        assert result.unmask(result.texts[0]) == text
        target = mask_texts([text], ["HP"], resolve_restore=resolve)
        assert target.unmask(target.texts[0]) == "{mask:1} then 체력"

    def test_token_escape_is_reversible(self):
        for text in ("{mask:2}", "{\u2060mask:2}", "{\u2060\u2060mask:}", "{ mask:1}"):
            assert unescape_tokens(escape_tokens(text)) == text
        assert escape_tokens("{ mask:1}") == "{ mask:1}"


class TestAnchorPattern:
    """Tests for anchor pattern construction."""

    def test_boundary_applied_to_word_edges(self):
        assert anchor_pattern("HP").search("HPotion") is None
        assert anchor_pattern("HP").search("(HP)") is not None

    def test_ascii_boundary_next_to_hangul(self):
        """Boundaries are ASCII-only, so Hangul next to an ASCII anchor is a boundary."""
        assert anchor_pattern("HP").search("HP가") is not None

    def test_metacharacters_literal(self):
        assert anchor_pattern("a.b").search("axb") is None
        assert anchor_pattern("a.b").search("a.b") is not None
