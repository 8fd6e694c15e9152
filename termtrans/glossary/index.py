"""
Term index for glossary substitution and masking.

The index is a nested mapping::

    category -> source language -> term text -> [Entry, ...]

Several rows may share the same term text (homonyms). They are all kept,
in sheet row order, so that plan compilation can pick the first candidate
that actually has a translation and write-back can target every row.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from termtrans.errors import NotFoundError
from termtrans.models import Entry
from termtrans.utils import normalize_category, normalize_lang, strip_invisible

TermMap = dict[str, list[Entry]]
TermIndex = dict[str, dict[str, TermMap]]

DEFAULT_CATEGORY = "default"


def build_index(
    entries: Iterable[Entry],
    source_langs: Sequence[str] = ("ko-kr", "en-us"),
    fallback_category: str = DEFAULT_CATEGORY,
) -> TermIndex:
    """Build the category/language/term index, preserving duplicates.

    Args:
        entries: Glossary entries in sheet order
        source_langs: Language keys to index as sources
        fallback_category: Category used for entries with a blank category

    Returns:
        Nested dict; every term is non-empty and cleaned of invisible characters
    """
    langs = [normalize_lang(l) for l in source_langs if normalize_lang(l)]
    fallback = normalize_category(fallback_category) or DEFAULT_CATEGORY
    index: TermIndex = {}

    for entry in entries:
        category = normalize_category(entry.category) or fallback
        by_lang = index.setdefault(category, {})
        for lang in langs:
            term = strip_invisible(entry.translations.get(lang, ""))
            if not term:
                continue
            by_lang.setdefault(lang, {}).setdefault(term, []).append(entry)

    return index


def merge_categories(
    index: TermIndex,
    source_lang: str,
    categories: Optional[Iterable[str]] = None,
) -> TermMap:
    """Flatten several categories into one term map.

    Candidate lists for a term present in more than one category are
    concatenated in the order the categories are given, so both
    categories' rows stay reachable.
    """
    lang = normalize_lang(source_lang)
    cats = list(index.keys()) if categories is None else list(categories)
    merged: TermMap = {}
    for cat in cats:
        term_map = index.get(cat, {}).get(lang)
        if not term_map:
            continue
        for term, candidates in term_map.items():
            merged.setdefault(term, []).extend(candidates)
    return merged


def resolve_categories(index: TermIndex, category: Optional[str]) -> list[str]:
    """Return ``[category]`` when one is requested, else every category.

    Raises:
        NotFoundError: if the requested category has no entries
    """
    key = normalize_category(category)
    if not key:
        return list(index.keys())
    if key not in index:
        raise NotFoundError(
            f"Category not found: {key}",
            reason="category_not_found",
            extra={"category": key, "available": sorted(index.keys())},
        )
    return [key]
