"""
Glossary sheet loading.

Turns a header + rows table into normalized entries and an immutable
``GlossarySnapshot``. Language columns are detected from the header: every
column that is not a known metadata column or a ``<lang>-Masking`` column is
treated as a language.

The anchor language column (ko-KR by default) is mandatory; a sheet without
it is rejected before any index is built.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from termtrans.errors import DataIntegrityError, ValidationError
from termtrans.glossary.index import TermIndex, build_index
from termtrans.models import ROW_INDEX_OFFSET, Entry
from termtrans.table import TableData
from termtrans.utils import (
    cell,
    normalize_category,
    normalize_header,
    normalize_lang,
    now_iso,
    strip_invisible,
)

logger = logging.getLogger(__name__)

# Header cells that are never language columns.
NON_LANGUAGE_HEADERS = frozenset({
    "key",
    "id",
    "분류",
    "category",
    "term",
    "len",
    "length",
    "note",
    "notes",
    "번역메모",
    "클리펀트",
    "우선순위",
    "priority",
    "src_lang",
    "match_type",
})


MASKING_HEADER_SUFFIX = "-Masking"
MASKING_SUFFIX = MASKING_HEADER_SUFFIX.lower()


def first_index(headers: Sequence[str], *names: str) -> int:
    for name in names:
        if name in headers:
            return headers.index(name)
    return -1


def detect_language_columns(
    normalized_header: Sequence[str],
    excluded: frozenset[str] = NON_LANGUAGE_HEADERS,
) -> dict[str, int]:
    """Map language key -> column index for every non-metadata header.

    ``<lang>-masking`` columns hold masked texts and are not languages.
    """
    lang_index: dict[str, int] = {}
    for i, h in enumerate(normalized_header):
        if not h or h in excluded or h.endswith(MASKING_SUFFIX):
            continue
        lang_index.setdefault(normalize_lang(h), i)
    return lang_index


def masking_column(header: Sequence[str], target_lang: str) -> Optional[int]:
    """Index of the ``<target_lang>-Masking`` column, matched case-insensitively."""
    tlk = normalize_lang(target_lang)
    for i, h in enumerate(header):
        norm = normalize_header(h)
        if norm.endswith(MASKING_SUFFIX) and normalize_lang(norm[:-len(MASKING_SUFFIX)]) == tlk:
            return i
    return None


def fallback_category_for(sheet_name: str) -> str:
    return normalize_category(sheet_name) or "default"


@dataclass(frozen=True)
class GlossarySnapshot:
    """One fully loaded glossary sheet.

    ``loaded_at`` is the data version: derived caches keyed on it are
    dropped whenever a reload produces a new value.
    """
    sheet_name: str
    loaded_at: str
    header: tuple[str, ...] = ()
    raw_rows: tuple[tuple[str, ...], ...] = ()
    entries: tuple[Entry, ...] = ()
    lang_index: dict[str, int] = field(default_factory=dict)
    index: TermIndex = field(default_factory=dict)
    key_column: int = -1
    category_column: int = -1

    @property
    def raw_row_count(self) -> int:
        return len(self.raw_rows)

    @property
    def categories(self) -> list[str]:
        return list(self.index.keys())

    def row(self, row_index: int) -> tuple[str, ...]:
        pos = row_index - ROW_INDEX_OFFSET
        if 0 <= pos < len(self.raw_rows):
            return self.raw_rows[pos]
        return ()

    def entry(self, row_index: int) -> Optional[Entry]:
        pos = row_index - ROW_INDEX_OFFSET
        if 0 <= pos < len(self.entries):
            return self.entries[pos]
        return None

    def column(self, lang: str) -> Optional[int]:
        return self.lang_index.get(normalize_lang(lang))

    def require_column(self, lang: str, role: str = "target") -> int:
        """Column index of a language; ValidationError when the sheet lacks it."""
        col = self.column(lang)
        if col is None:
            raise ValidationError(
                f"Sheet '{self.sheet_name}' does not include {role} language column: {normalize_lang(lang)}",
                reason=f"missing_{role}_column",
                extra={"sheet": self.sheet_name, "languages": sorted(self.lang_index)},
            )
        return col

    def cell_text(self, row_index: int, lang: str) -> str:
        return strip_invisible(cell(list(self.row(row_index)), self.column(lang)))


def parse_entries(
    header: Sequence[str],
    rows: Sequence[Sequence[str]],
    sheet_name: str,
    anchor_lang: str = "ko-kr",
) -> tuple[list[Entry], dict[str, int], int, int]:
    """Parse rows into entries.

    Returns:
        (entries, lang_index, key_column, category_column)

    Raises:
        DataIntegrityError: if the anchor language column is absent
    """
    norm = [normalize_header(h) for h in header]
    idx_key = first_index(norm, "key", "id")
    idx_category = first_index(norm, "분류", "category")
    lang_index = detect_language_columns(norm)

    anchor = normalize_lang(anchor_lang)
    if anchor not in lang_index:
        raise DataIntegrityError(
            f"Sheet '{sheet_name}' must include '{anchor}' language column.",
            reason="missing_anchor_column",
            extra={"sheet": sheet_name, "header": list(header)},
        )

    fallback = fallback_category_for(sheet_name)
    entries = []
    for i, raw in enumerate(rows):
        row = list(raw)
        row_index = i + ROW_INDEX_OFFSET
        key = cell(row, idx_key).strip() if idx_key >= 0 else f"row:{row_index}"
        category = normalize_category(cell(row, idx_category)) if idx_category >= 0 else ""
        translations = {}
        for lang, col in lang_index.items():
            value = strip_invisible(cell(row, col))
            if value:
                translations[lang] = value
        entries.append(Entry(
            row_index=row_index,
            key=key,
            category=category or fallback,
            translations=translations,
        ))
    return entries, lang_index, idx_key, idx_category


def build_snapshot(
    data: TableData,
    sheet_name: str,
    anchor_lang: str = "ko-kr",
    source_langs: Sequence[str] = ("ko-kr", "en-us"),
    loaded_at: Optional[str] = None,
) -> GlossarySnapshot:
    """Build a complete snapshot (entries + term index) from raw sheet data."""
    loaded_at = loaded_at or now_iso()
    if not data.header:
        logger.warning("Sheet '%s' is empty", sheet_name)
        return GlossarySnapshot(sheet_name=sheet_name, loaded_at=loaded_at)

    entries, lang_index, idx_key, idx_category = parse_entries(
        data.header, data.rows, sheet_name, anchor_lang
    )
    index = build_index(entries, source_langs, fallback_category_for(sheet_name))
    logger.info(
        "Loaded sheet '%s': %d rows, %d categories, languages=%s",
        sheet_name, len(entries), len(index), sorted(lang_index),
    )
    return GlossarySnapshot(
        sheet_name=sheet_name,
        loaded_at=loaded_at,
        header=tuple(data.header),
        raw_rows=tuple(tuple(str(c) for c in r) for r in data.rows),
        entries=tuple(entries),
        lang_index=lang_index,
        index=index,
        key_column=idx_key,
        category_column=idx_category,
    )
