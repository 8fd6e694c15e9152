"""
Glossary loading and indexing.

Sheet rows are parsed into Entry records (load) and indexed by
category, source language and term text (index).
"""

from termtrans.glossary.index import (
    TermIndex,
    TermMap,
    build_index,
    merge_categories,
    resolve_categories,
)
from termtrans.glossary.load import GlossarySnapshot, build_snapshot, parse_entries

__all__ = [
    "TermIndex",
    "TermMap",
    "build_index",
    "merge_categories",
    "resolve_categories",
    "GlossarySnapshot",
    "build_snapshot",
    "parse_entries",
]
