"""
Replace plan compilation and deterministic glossary substitution.

A plan is compiled once per (category set, source language, target
language) and data version, then applied to any number of texts:

1. Terms are sorted by length, longest first, so a short term can never
   pre-empt part of a longer one ("Red Potion" is tried before "Potion").
2. For each term the first candidate row with a non-empty target-language
   translation wins; terms without one are left out of the plan.
3. Each term gets one pre-compiled literal pattern (``re.escape``), so
   glossary text can never inject regex metacharacters.

Applying a plan is a single pass: every item runs once, in plan order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from termtrans.glossary.index import TermMap
from termtrans.utils import normalize_lang


@dataclass(frozen=True)
class ChosenRef:
    """The glossary row that supplied a plan item's target text."""
    key: Optional[str]
    row_index: int

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "row_index": self.row_index}


@dataclass(frozen=True)
class PlanItem:
    term: str
    pattern: re.Pattern
    target: str
    chosen: ChosenRef


@dataclass(frozen=True)
class ReplacePlan:
    """Read-only substitution plan.

    Attributes:
        target_lang: Normalized target language key ('' for an empty plan)
        items: Plan items, longest term first
        term_count: Number of distinct terms considered (eligible or not)
        source_lang: Source language key, used for log entries
    """
    target_lang: str
    items: tuple[PlanItem, ...] = ()
    term_count: int = 0
    source_lang: str = ""

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class SubstitutionResult:
    text: str
    replaced_total: int = 0
    logs: list[dict[str, Any]] = field(default_factory=list)


def compile_plan(
    term_map: Optional[TermMap],
    target_lang: str,
    source_lang: str = "",
) -> ReplacePlan:
    """Compile a replace plan for one term map and target language.

    Args:
        term_map: term -> candidate entries (see merge_categories)
        target_lang: Target language key (any case, '_' or '-')
        source_lang: Source language key, recorded in substitution logs

    Returns:
        ReplacePlan; empty when the target language is blank
    """
    tlk = normalize_lang(target_lang)
    slk = normalize_lang(source_lang)
    if not tlk or not term_map:
        return ReplacePlan(target_lang=tlk, source_lang=slk)

    terms = [t for t in (str(k).strip() for k in term_map.keys()) if t]
    # sorted() is stable: equal-length terms keep their map order.
    terms = sorted(terms, key=len, reverse=True)

    items = []
    for term in terms:
        for candidate in term_map.get(term, ()):
            target = str(candidate.translations.get(tlk, "") or "").strip()
            if target:
                items.append(PlanItem(
                    term=term,
                    pattern=re.compile(re.escape(term)),
                    target=target,
                    chosen=ChosenRef(key=candidate.key or None, row_index=candidate.row_index),
                ))
                break

    return ReplacePlan(
        target_lang=tlk,
        items=tuple(items),
        term_count=len(terms),
        source_lang=slk,
    )


def substitute(text: Any, plan: ReplacePlan) -> SubstitutionResult:
    """Apply a plan to text, counting replacements per term.

    Non-string or empty input yields empty output with zero replacements.
    """
    if not isinstance(text, str) or not text:
        return SubstitutionResult(text="")
    if not plan.items:
        return SubstitutionResult(text=text)

    out = text
    total = 0
    logs = []
    for item in plan.items:
        # A function replacement keeps the target literal (no group refs).
        out, count = item.pattern.subn(lambda _m, t=item.target: t, out)
        if count:
            total += count
            logs.append({
                "source_lang": plan.source_lang,
                "target_lang": plan.target_lang,
                "from": item.term,
                "to": item.target,
                "count": count,
                "chosen": item.chosen.to_dict(),
            })
    return SubstitutionResult(text=out, replaced_total=total, logs=logs)
