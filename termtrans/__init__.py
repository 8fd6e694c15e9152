"""
termtrans: terminology-constrained translation for spreadsheet glossaries.

A multilingual glossary is loaded from tabular rows and used to rewrite
free text deterministically before and around machine translation.

Core components:
1. Term index + compiled replace plans (longest term first)
2. Masking of glossary anchors across an opaque translator
3. Priority-ordered rule overlay for structural fixes
4. Batch pipeline with anomaly detection and optional write-back

License: MIT
"""

__version__ = "0.1.0"

from termtrans.errors import (
    TermTransError,
    ValidationError,
    NotFoundError,
    DataIntegrityError,
    ExternalServiceError,
)
from termtrans.models import Entry, Rule, MatchType
from termtrans.glossary.index import build_index, merge_categories
from termtrans.replace import compile_plan, substitute
from termtrans.masking import mask_texts, unmask_text
from termtrans.service import GlossaryService

__all__ = [
    "TermTransError",
    "ValidationError",
    "NotFoundError",
    "DataIntegrityError",
    "ExternalServiceError",
    "Entry",
    "Rule",
    "MatchType",
    "build_index",
    "merge_categories",
    "compile_plan",
    "substitute",
    "mask_texts",
    "unmask_text",
    "GlossaryService",
]
