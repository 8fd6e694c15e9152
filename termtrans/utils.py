"""
Utility functions used across the glossary, pipeline and CLI.

Functions:
    normalize_lang: Normalize language keys ("ko_KR" -> "ko-kr")
    normalize_header: Normalize sheet header cells
    strip_invisible: Remove zero-width characters / BOM, NBSP -> space
    is_effectively_empty: Empty-cell test used by pending selection
    col_index_to_a1: Convert a 0-based column index to A1 letters
    now_iso: Current UTC timestamp (data version format)

Example:
    >>> normalize_lang(" ko_KR ")
    'ko-kr'
    >>> col_index_to_a1(27)
    'AB'
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Iterable

_ZERO_WIDTH_RE = re.compile("[\u200B\u200C\u200D\uFEFF]")


def normalize_lang(lang: Any) -> str:
    """Normalize a language key: trimmed, lowercase, underscores as dashes."""
    if not lang:
        return ""
    return str(lang).strip().lower().replace("_", "-")


def normalize_header(header: Any) -> str:
    return str(header if header is not None else "").strip().lower()


def normalize_category(category: Any) -> str:
    return str(category if category is not None else "").strip().lower()


def strip_invisible(value: Any) -> str:
    """
    Clean a cell value for comparison and indexing.

    - CRLF -> LF
    - NBSP -> regular space
    - zero-width space/joiners and BOM removed
    - surrounding whitespace trimmed
    """
    text = str(value if value is not None else "")
    text = text.replace("\r\n", "\n").replace("\u00A0", " ")
    text = _ZERO_WIDTH_RE.sub("", text)
    return text.strip()


def is_effectively_empty(value: Any, sentinels: Iterable[str] = ()) -> bool:
    """True when a cell is blank after cleaning, or equals a sentinel marker."""
    cleaned = strip_invisible(value)
    if not cleaned:
        return True
    return cleaned in set(sentinels)


def col_index_to_a1(col_index: int) -> str:
    """
    Convert a 0-based column index into A1 column letters.

    Example:
        >>> col_index_to_a1(0)
        'A'
        >>> col_index_to_a1(25)
        'Z'
        >>> col_index_to_a1(26)
        'AA'
    """
    n = int(col_index) + 1
    letters = ""
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def a1_to_col_index(letters: str) -> int:
    """Inverse of col_index_to_a1 ('A' -> 0)."""
    n = 0
    for ch in letters.strip().upper():
        n = n * 26 + (ord(ch) - 64)
    return n - 1


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def cell(row: list[Any], index: int | None) -> str:
    """Safe positional cell read; short rows yield an empty string."""
    if index is None or index < 0 or index >= len(row):
        return ""
    value = row[index]
    return "" if value is None else str(value)
