"""
Data model for termtrans.

Entries and rules are immutable once loaded; a reload replaces them
wholesale rather than mutating fields in place.

Classes:
    Entry: one glossary row (row index, key, category, translations)
    MatchType: how a rule's source text is matched
    Rule: one row of the Rules sheet
    MaskRecord: one mask id issued by the masking engine
    Anomaly: advisory flag raised by the batch pipeline
    BatchRecord: stored outcome of one batch run
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


# Data rows start on sheet row 2 (row 1 is the header).
ROW_INDEX_OFFSET = 2


@dataclass(frozen=True)
class Entry:
    """A single glossary row.

    Attributes:
        row_index: 1-based sheet row (stable handle for write-back)
        key: Human label, ``row:<n>`` when the sheet has no key column
        category: Lowercased grouping tag
        translations: language key -> non-empty trimmed text
    """
    row_index: int
    key: str
    category: str
    translations: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # Languages with empty cells are never stored.
        clean = {k: v for k, v in dict(self.translations).items() if v and str(v).strip()}
        object.__setattr__(self, "translations", MappingProxyType(clean))

    def text(self, lang: str) -> str:
        return self.translations.get(lang, "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "key": self.key,
            "category": self.category,
            "translations": dict(self.translations),
        }


class MatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    WORD = "word"
    REGEX = "regex"
    PATTERN = "pattern"

    @classmethod
    def parse(cls, value: Any) -> Optional["MatchType"]:
        """Blank means exact; unknown values yield None."""
        raw = str(value if value is not None else "").strip().lower()
        if not raw:
            return cls.EXACT
        try:
            return cls(raw)
        except ValueError:
            return None


@dataclass(frozen=True)
class Rule:
    """A corrective substitution from the Rules sheet.

    An empty ``category`` means the rule applies to every category.
    ``match_type`` is None when the sheet holds an unknown match type;
    such rules never compile.
    """
    key: str
    category: str
    translations: Mapping[str, str]
    match_type: Optional[MatchType]
    priority: int
    row_index: int
    note: str = ""

    @property
    def applies_to_all(self) -> bool:
        return not self.category

    @property
    def label(self) -> str:
        return self.key or f"row:{self.row_index}"

    def text(self, lang: str) -> str:
        return str(self.translations.get(lang, "") or "").strip()


@dataclass(frozen=True)
class MaskRecord:
    id: int
    anchor: str
    restore: str
    glossary_row_index: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "anchor": self.anchor,
            "restore": self.restore,
            "glossary_row_index": self.glossary_row_index,
        }


class AnomalyType(str, Enum):
    EMPTY_TRANSLATION_FALLBACK = "empty_translation_fallback"
    TRANSLATION_FAILED = "translation_failed"
    LENGTH_RATIO_SUSPICIOUS = "length_ratio_suspicious"
    SAME_AS_PROCESSED = "same_as_processed"
    RULE_APPLIED = "rule_applied"


@dataclass
class Anomaly:
    type: AnomalyType
    row_index: int
    source_text: str
    processed_text: str
    translated_text: str
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "row_index": self.row_index,
            "source_text": self.source_text,
            "processed_text": self.processed_text,
            "translated_text": self.translated_text,
            "meta": self.meta,
        }


@dataclass
class BatchRecord:
    """Everything kept about a finished batch until its TTL elapses."""
    batch_id: str
    request: dict[str, Any]
    summary: dict[str, Any]
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    results: list[dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)
    ttl: float = 3600.0

    def expired(self, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.created_at > self.ttl
