"""
Tests for glossary loading, the term index and replace plans.

Run with: pytest tests/test_glossary.py -v
"""

import pytest

from termtrans.errors import DataIntegrityError, NotFoundError, ValidationError
from termtrans.glossary.index import build_index, merge_categories, resolve_categories
from termtrans.glossary.load import build_snapshot, parse_entries
from termtrans.models import Entry
from termtrans.replace import compile_plan, substitute
from termtrans.table import TableData

from conftest import GLOSSARY


def _snapshot(rows=GLOSSARY, sheet="Glossary"):
    return build_snapshot(TableData(header=rows[0], rows=rows[1:]), sheet_name=sheet)


class TestLoading:
    """Tests for parsing sheet rows into entries."""

    def test_row_indexes_follow_sheet_rows(self):
        """Data row N maps to sheet row N + 2."""
        snap = _snapshot()
        assert snap.entries[0].row_index == 2
        assert snap.entry(5).key == "red_potion"
        assert snap.row(5)[3] == "Red Potion"

    def test_language_columns_detected(self):
        """Metadata headers are never treated as languages."""
        snap = _snapshot()
        assert set(snap.lang_index) == {"ko-kr", "en-us", "ja-jp"}
        assert snap.column("EN_us") == 3

    def test_empty_cells_not_stored(self):
        """Entries only hold languages with text."""
        snap = _snapshot()
        assert "ja-jp" not in snap.entry(3).translations
        assert snap.entry(2).text("ja-jp") == "剣"

    def test_blank_category_falls_back_to_sheet(self):
        """A row without a category is filed under the sheet name."""
        snap = _snapshot()
        assert snap.entry(8).category == "glossary"

    def test_missing_anchor_column_rejected(self):
        """A sheet without the anchor language is a data integrity error."""
        header = ["KEY", "en-US", "ja-JP"]
        with pytest.raises(DataIntegrityError) as exc:
            parse_entries(header, [["a", "A", "エー"]], "Glossary")
        assert exc.value.reason == "missing_anchor_column"

    def test_invisible_characters_cleaned(self):
        """Zero-width characters and NBSP never reach the index."""
        rows = [GLOSSARY[0], ["k", "item", "마나", "Mana\u200B\u00A0", "", ""]]
        snap = _snapshot(rows)
        assert "Mana" in snap.index["item"]["en-us"]

    def test_empty_sheet(self):
        """An empty sheet yields an empty snapshot."""
        snap = build_snapshot(TableData(), sheet_name="Glossary")
        assert snap.raw_row_count == 0
        assert snap.index == {}

    def test_require_column(self):
        """Missing language columns raise a validation error naming the role."""
        snap = _snapshot()
        with pytest.raises(ValidationError) as exc:
            snap.require_column("fr-FR", "target")
        assert exc.value.reason == "missing_target_column"


class TestTermIndex:
    """Tests for the category/language/term index."""

    def test_duplicates_retained(self):
        """Rows sharing a term are all kept, in row order."""
        snap = _snapshot()
        candidates = snap.index["item"]["en-us"]["Potion"]
        assert [e.row_index for e in candidates] == [3, 6]

    def test_both_source_languages_indexed(self):
        """Terms are indexed for every configured source language."""
        snap = _snapshot()
        assert "레드 포션" in snap.index["item"]["ko-kr"]
        assert "Red Potion" in snap.index["item"]["en-us"]

    def test_only_configured_sources(self):
        """Languages outside the source list are not indexed."""
        entries = [Entry(row_index=2, key="a", category="x", translations={"ja-jp": "剣"})]
        index = build_index(entries, source_langs=("en-us",))
        assert index == {"x": {}}

    def test_merge_concatenates_across_categories(self):
        """A term in two categories keeps both candidate lists."""
        entries = [
            Entry(row_index=2, key="a", category="one", translations={"en-us": "Gold"}),
            Entry(row_index=3, key="b", category="two", translations={"en-us": "Gold"}),
        ]
        index = build_index(entries, ("en-us",))
        merged = merge_categories(index, "en-us", ["two", "one"])
        assert [e.row_index for e in merged["Gold"]] == [3, 2]

    def test_resolve_categories(self):
        """No category means all; an unknown category is not found."""
        snap = _snapshot()
        assert set(resolve_categories(snap.index, None)) == {"item", "ui", "gear", "glossary"}
        assert resolve_categories(snap.index, " GEAR ") == ["gear"]
        with pytest.raises(NotFoundError) as exc:
            resolve_categories(snap.index, "weapons")
        assert exc.value.reason == "category_not_found"


class TestReplacePlan:
    """Tests for plan compilation and substitution."""

    def _plan(self, target="ko-kr", categories=None):
        snap = _snapshot()
        return compile_plan(merge_categories(snap.index, "en-us", categories), target, "en-us")

    def test_red_potion(self):
        """The glossary target replaces the term and logs the chosen row."""
        result = substitute("Buy a Red Potion", self._plan())
        assert result.text == "Buy a 레드 포션"
        assert result.replaced_total == 1
        assert result.logs[0]["from"] == "Red Potion"
        assert result.logs[0]["chosen"] == {"key": "red_potion", "row_index": 5}

    def test_longest_term_first(self):
        """A shorter term never splits a longer one."""
        result = substitute("Red Potion or Potion", self._plan())
        assert result.text == "레드 포션 or 포션"
        assert result.replaced_total == 2

    def test_first_candidate_with_target_wins(self):
        """Candidates without the target language are skipped."""
        plan = self._plan(target="ja-jp")
        item = next(i for i in plan.items if i.term == "Potion")
        assert item.target == "ポーション"
        assert item.chosen.row_index == 6

    def test_terms_without_target_left_out(self):
        """Terms no candidate can translate are not in the plan."""
        plan = self._plan(target="ja-jp")
        assert {i.term for i in plan.items} == {"Sword", "Potion"}
        assert plan.term_count == 5

    def test_counts_every_occurrence(self):
        """All occurrences of a term are replaced and counted."""
        result = substitute("HP HP HP", self._plan())
        assert result.text == "체력 체력 체력"
        assert result.logs[0]["count"] == 3

    def test_regex_metacharacters_literal(self):
        """Terms and targets are literal text."""
        entries = [Entry(row_index=2, key="a", category="x", translations={"en-us": "C++ (x)", "ko-kr": r"\1 $&"})]
        plan = compile_plan(merge_categories(build_index(entries, ("en-us",)), "en-us"), "ko-kr")
        assert substitute("use C++ (x) now", plan).text == r"use \1 $& now"
        assert substitute("use Cpp x now", plan).text == "use Cpp x now"

    def test_empty_and_non_string_input(self):
        """None and empty strings give empty output."""
        plan = self._plan()
        assert substitute(None, plan).text == ""
        assert substitute("", plan).replaced_total == 0

    def test_blank_target_lang(self):
        """A blank target language compiles to an empty plan."""
        plan = self._plan(target="")
        assert len(plan) == 0
        assert substitute("Red Potion", plan).text == "Red Potion"
