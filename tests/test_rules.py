"""
Tests for the rule overlay.

Run with: pytest tests/test_rules.py -v
"""

import pytest

from termtrans.errors import DataIntegrityError
from termtrans.models import MatchType, Rule
from termtrans.rules import (
    RulesSnapshot,
    apply_rules,
    build_rules_snapshot,
    compile_rule,
    load_rules,
    match_rules,
    rules_for_category,
    tokenize_pattern,
)
from termtrans.table import TableData

from conftest import RULES


@pytest.fixture
def rules():
    return build_rules_snapshot(TableData(header=RULES[0], rows=RULES[1:]))


def _rule(source, target, match_type, priority=0, row_index=2, category=""):
    return Rule(
        key=f"r{row_index}",
        category=category,
        translations={"en-us": source, "ja-jp": target},
        match_type=match_type,
        priority=priority,
        row_index=row_index,
    )


class TestLoading:
    """Tests for parsing the Rules sheet."""

    def test_load(self, rules):
        """Rows become rules with parsed match types and priorities."""
        assert [r.key for r in rules.rules] == ["heal_amount", "shield_fix", "blade_item"]
        heal = rules.rules[0]
        assert heal.match_type is MatchType.PATTERN
        assert heal.priority == 10
        assert heal.applies_to_all
        assert rules.rules[2].category == "item"
        assert rules.rules[2].row_index == 4

    def test_missing_key_column(self):
        with pytest.raises(DataIntegrityError) as exc:
            load_rules(["분류", "ko-KR", "en-US"], [])
        assert exc.value.reason == "missing_rule_key_column"

    def test_missing_anchor_column(self):
        with pytest.raises(DataIntegrityError) as exc:
            load_rules(["KEY", "category", "en-US"], [])
        assert exc.value.reason == "missing_anchor_column"

    def test_empty_sheet_disables_rules(self):
        """An empty Rules sheet loads as no rules."""
        assert build_rules_snapshot(TableData()).rules == ()

    def test_match_type_parse(self):
        """Blank means exact; unknown values are rejected."""
        assert MatchType.parse("") is MatchType.EXACT
        assert MatchType.parse(" Regex ") is MatchType.REGEX
        assert MatchType.parse("fuzzy") is None

    def test_bad_priority_is_zero(self):
        rows = [["k", "", "가", "A", "", "exact", "high"]]
        assert load_rules(RULES[0], rows)[0].priority == 0


class TestSelection:
    """Tests for rule selection and ordering."""

    def test_category_plus_all(self, rules):
        """Category rules join ALL rules, highest priority first."""
        picked = rules_for_category(rules.rules, "item", "en-us")
        assert [r.key for r in picked] == ["heal_amount", "shield_fix", "blade_item"]
        picked = rules_for_category(rules.rules, "gear", "en-us")
        assert [r.key for r in picked] == ["heal_amount", "shield_fix"]

    def test_ties_keep_row_order(self):
        a = _rule("A", "a", MatchType.CONTAINS, priority=1, row_index=3)
        b = _rule("B", "b", MatchType.CONTAINS, priority=1, row_index=2)
        assert rules_for_category([a, b], "", "en-us") == [b, a]

    def test_rules_without_source_dropped(self, rules):
        """A rule with no text in the source language is never selected."""
        picked = rules_for_category(rules.rules, "item", "ko-kr")
        assert "blade_item" not in [r.key for r in picked]


class TestApplyRules:
    """Tests for the mutating rule application used by batches."""

    def test_pattern_placeholders(self, rules):
        """{N} captures digits and is carried into the target."""
        result = apply_rules("Drink for +50 HP", "item", "en-us", "ja-jp", rules)
        assert result.text == "Drink for HP+50"
        assert result.hits == 1
        assert result.matched[0]["key"] == "heal_amount"
        assert result.matched[0]["match_type"] == "pattern"

    def test_first_occurrence_only(self, rules):
        result = apply_rules("Shield and Shield", "gear", "en-us", "ja-jp", rules)
        assert result.text == "盾 and Shield"

    def test_category_scope(self, rules):
        """Category rules only apply to their own category."""
        assert apply_rules("Blade", "gear", "en-us", "ja-jp", rules).text == "Blade"
        assert apply_rules("Blade", "item", "en-us", "ja-jp", rules).text == "ブレード"

    def test_word_match(self, rules):
        assert apply_rules("Bladefish", "item", "en-us", "ja-jp", rules).hits == 0

    def test_word_boundary_is_unicode(self, rules):
        """Hangul counts as a word character for rule boundaries."""
        assert apply_rules("Blade가", "item", "en-us", "ja-jp", rules).hits == 0

    def test_rule_without_target_skipped(self, rules):
        """Rules missing the target language do not fire."""
        result = apply_rules("Blade", "item", "en-us", "ko-kr", rules)
        assert result.text == "Blade"
        assert result.hits == 0

    def test_priority_order_feeds_later_rules(self):
        """A higher priority rule runs first and later rules see its output."""
        first = _rule("foo", "bar", MatchType.CONTAINS, priority=5, row_index=2)
        second = _rule("bar", "baz", MatchType.CONTAINS, priority=1, row_index=3)
        result = apply_rules("foo", "", "en-us", "ja-jp", RulesSnapshot([second, first]))
        assert result.text == "baz"
        assert result.hits == 2

    def test_higher_priority_wins_same_substring(self):
        """Two rules on one substring: only the higher priority one applies."""
        low = _rule("foo", "LOW", MatchType.CONTAINS, priority=1, row_index=2)
        high = _rule("foo", "HIGH", MatchType.CONTAINS, priority=9, row_index=3)
        result = apply_rules("foo", "", "en-us", "ja-jp", RulesSnapshot([low, high]))
        assert result.text == "HIGH"
        assert result.hits == 1
        assert result.matched[0]["row_index"] == 3

    def test_regex_group_refs(self):
        rule = _rule(r"(\d+) coins", "$1 コイン", MatchType.REGEX)
        result = apply_rules("Got 50 coins", "", "en-us", "ja-jp", RulesSnapshot([rule]))
        assert result.text == "Got 50 コイン"

    def test_dollar_refs_in_pattern_rules(self):
        rule = _rule("+{N} HP", "HP +$1", MatchType.PATTERN)
        assert apply_rules("Heals +50 HP", "", "en-us", "ja-jp", RulesSnapshot([rule])).text == "Heals HP +50"

    def test_dollar_refs_in_literal_rules(self):
        """$& and $$ work for contains and word rules too."""
        snap = RulesSnapshot([_rule("Shield", "[$&]", MatchType.CONTAINS)])
        assert apply_rules("Big Shield", "", "en-us", "ja-jp", snap).text == "Big [Shield]"
        snap = RulesSnapshot([_rule("gold", "$$5", MatchType.WORD)])
        assert apply_rules("5 gold", "", "en-us", "ja-jp", snap).text == "5 $5"
        snap = RulesSnapshot([_rule("gold", "$1 $9", MatchType.WORD)])
        assert apply_rules("5 gold", "", "en-us", "ja-jp", snap).text == "5 $1 $9"

    def test_captured_text_not_expanded_again(self):
        rule = _rule(r"(\S+) coins", "$1!", MatchType.REGEX)
        assert apply_rules("$& coins", "", "en-us", "ja-jp", RulesSnapshot([rule])).text == "$&!"

    def test_invalid_regex_skipped(self):
        rule = _rule("(", "x", MatchType.REGEX)
        assert compile_rule(rule, "en-us") is None
        assert apply_rules("(", "", "en-us", "ja-jp", RulesSnapshot([rule])).text == "("

    def test_exact_is_whole_line(self):
        rule = _rule("Shield", "盾", MatchType.EXACT)
        snap = RulesSnapshot([rule])
        assert apply_rules("Big Shield", "", "en-us", "ja-jp", snap).text == "Big Shield"
        assert apply_rules("Title\nShield", "", "en-us", "ja-jp", snap).text == "Title\n盾"

    def test_multiple_placeholders(self):
        rule = _rule("{N}/{X}", "{X}中{N}", MatchType.PATTERN)
        assert apply_rules("3/5", "", "en-us", "ja-jp", RulesSnapshot([rule])).text == "5中3"

    def test_tokenize_pattern(self):
        assert tokenize_pattern("+{N} HP") == r"\+(\d+)\ HP"

    def test_no_rules(self):
        assert apply_rules("text", "", "en-us", "ja-jp", None).text == "text"


class TestMatchRules:
    """Tests for the audit-only rule report used by replace."""

    def test_reports_without_changing(self, rules):
        text = "Drink for +50 HP"
        logs = match_rules(text, "", "en-us", "ja-jp", rules)
        assert logs == [{"rule_key": "heal_amount", "from": "+{N} HP", "to": "HP+{N}"}]

    def test_reports_rules_without_target(self, rules):
        """Rules are reported even when the target text is empty."""
        logs = match_rules("Blade", "item", "en-us", "ko-kr", rules)
        assert logs == [{"rule_key": "blade_item", "from": "Blade", "to": ""}]

    def test_empty_text(self, rules):
        assert match_rules("", "", "en-us", "ja-jp", rules) == []
