"""
Rule overlay: priority-ordered corrective substitutions.

Rules cover fixes a literal glossary cannot express (numeric patterns,
grammatical variants). Each rule row has a source text in the source
language column, a replacement in each target language column, a match
type and a priority.

Match types:
    exact     the whole line equals the source text (``^...$``, multiline)
    contains  literal substring anywhere
    word      literal wrapped in ``\\b`` word boundaries
    regex     the source text is used as a regular expression body
    pattern   placeholders {N} {X} {T} -> (\\d+), {V} -> ([^\\r\\n]+);
              the rest of the text is literal

Replacement texts of every type may use ``$1``, ``$&`` and ``$$``.

Two call sites, two behaviours:
- apply_rules(): mutating. Used by the batch pipeline's preprocessing.
- match_rules(): audit only, the text is never changed. Used by the
  plain replace path to report which rules would fire.

Both select the same rules (category-scoped plus ALL rules, priority
descending, then sheet row ascending) and use the same compiled patterns.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from termtrans.errors import DataIntegrityError
from termtrans.glossary.load import detect_language_columns, first_index
from termtrans.models import ROW_INDEX_OFFSET, MatchType, Rule
from termtrans.table import TableData
from termtrans.utils import cell, normalize_category, normalize_header, normalize_lang, now_iso

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{([NXTV])\}")
PLACEHOLDER_GROUPS = {
    "N": r"(\d+)",
    "X": r"(\d+)",
    "T": r"(\d+)",
    "V": r"([^\r\n]+)",
}
_REPLACEMENT_RE = re.compile(r"\{([NXTV])\}|\$(\d{1,2}|&|\$)")

RULE_NON_LANGUAGE_HEADERS = frozenset({
    "key", "분류", "category", "term", "note", "notes", "priority", "match_type",
})


# ============================================================================
# Loading
# ============================================================================

def _parse_priority(raw: str) -> int:
    raw = raw.strip()
    if not raw:
        return 0
    try:
        return int(float(raw))
    except ValueError:
        return 0


def load_rules(
    header: Sequence[str],
    rows: Sequence[Sequence[str]],
    anchor_lang: str = "ko-kr",
) -> list[Rule]:
    """Parse Rules sheet rows.

    Raises:
        DataIntegrityError: when the key, category or anchor language
            column is missing from the header
    """
    norm = [normalize_header(h) for h in header]
    idx_key = first_index(norm, "key")
    idx_category = first_index(norm, "분류", "category")
    idx_match = first_index(norm, "match_type")
    idx_priority = first_index(norm, "priority")
    idx_note = first_index(norm, "note", "notes")

    if idx_key < 0:
        raise DataIntegrityError("Rules sheet header has no KEY column.", reason="missing_rule_key_column")
    if idx_category < 0:
        raise DataIntegrityError(
            "Rules sheet header has no category column.", reason="missing_rule_category_column"
        )

    lang_index = detect_language_columns(norm, RULE_NON_LANGUAGE_HEADERS)
    anchor = normalize_lang(anchor_lang)
    if anchor not in lang_index:
        raise DataIntegrityError(
            f"Rules sheet header has no '{anchor}' language column.",
            reason="missing_anchor_column",
            extra={"header": list(header)},
        )

    rules = []
    for i, raw in enumerate(rows):
        row = list(raw)
        translations = {}
        for lang, col in lang_index.items():
            value = cell(row, col).strip()
            if value:
                translations[lang] = value
        rules.append(Rule(
            key=cell(row, idx_key).strip(),
            category=normalize_category(cell(row, idx_category)),
            translations=translations,
            match_type=MatchType.parse(cell(row, idx_match)),
            priority=_parse_priority(cell(row, idx_priority)),
            row_index=i + ROW_INDEX_OFFSET,
            note=cell(row, idx_note).strip(),
        ))
    return rules


class RulesSnapshot:
    """Loaded rules plus a memo of compiled patterns per source language."""

    def __init__(self, rules: Sequence[Rule], loaded_at: Optional[str] = None):
        self.rules: tuple[Rule, ...] = tuple(rules)
        self.loaded_at = loaded_at or now_iso()
        self._compiled: dict[tuple[int, str], Optional[re.Pattern]] = {}

    def pattern(self, rule: Rule, source_lang: str) -> Optional[re.Pattern]:
        key = (rule.row_index, normalize_lang(source_lang))
        if key not in self._compiled:
            self._compiled[key] = compile_rule(rule, source_lang)
        return self._compiled[key]


def build_rules_snapshot(data: TableData, anchor_lang: str = "ko-kr") -> RulesSnapshot:
    if not data.header:
        logger.info("Rules sheet is empty; rule overlay disabled")
        return RulesSnapshot([])
    rules = load_rules(data.header, data.rows, anchor_lang)
    logger.info("Loaded %d rules", len(rules))
    return RulesSnapshot(rules)


# ============================================================================
# Compilation
# ============================================================================

def tokenize_pattern(source: str) -> str:
    r"""Turn a placeholder pattern into a regex body ("+{N} HP" -> "\+(\d+) HP")."""
    parts = []
    pos = 0
    for m in PLACEHOLDER_RE.finditer(source):
        parts.append(re.escape(source[pos:m.start()]))
        parts.append(PLACEHOLDER_GROUPS[m.group(1)])
        pos = m.end()
    parts.append(re.escape(source[pos:]))
    return "".join(parts)


def compile_rule(rule: Rule, source_lang: str) -> Optional[re.Pattern]:
    """Compile a rule's source text; None when it has none or is invalid."""
    source = rule.text(normalize_lang(source_lang))
    if not source or rule.match_type is None:
        return None

    mt = rule.match_type
    if mt is MatchType.EXACT:
        body = f"^{re.escape(source)}$"
    elif mt is MatchType.CONTAINS:
        body = re.escape(source)
    elif mt is MatchType.WORD:
        body = rf"\b{re.escape(source)}\b"
    elif mt is MatchType.REGEX:
        body = source
    else:
        body = tokenize_pattern(source)

    try:
        return re.compile(body, re.MULTILINE)
    except re.error as e:
        logger.warning("Skipping rule %s (row %d): invalid pattern %r: %s", rule.label, rule.row_index, body, e)
        return None


def rules_for_category(rules: Sequence[Rule], category: str, source_lang: str) -> list[Rule]:
    """ALL rules plus rules of ``category``, highest priority first.

    Ties keep sheet order (lower row index first). Rules without source
    text in ``source_lang`` are dropped.
    """
    cat = normalize_category(category)
    slk = normalize_lang(source_lang)
    picked = [
        r for r in rules
        if r.text(slk) and (r.applies_to_all or r.category == cat)
    ]
    picked.sort(key=lambda r: (-r.priority, r.row_index))
    return picked


# ============================================================================
# Application
# ============================================================================

def _placeholder_groups(source: str) -> dict[str, list[int]]:
    """Placeholder name -> capture group numbers, in source order."""
    groups_by_name: dict[str, list[int]] = {}
    for group_no, m in enumerate(PLACEHOLDER_RE.finditer(source), start=1):
        groups_by_name.setdefault(m.group(1), []).append(group_no)
    return groups_by_name


def render_replacement(rule: Rule, source: str, target: str, match: re.Match) -> str:
    """Build the replacement text for one match.

    ``$1``..``$99``, ``$&`` and ``$$`` work for every match type. Pattern
    rules also fill ``{N}/{X}/{T}/{V}``: the k-th occurrence of a name in
    the target takes the group of the k-th occurrence of that name in the
    source (or its last one). Both kinds are expanded in one pass, so
    captured text is never expanded again.
    """
    groups_by_name = _placeholder_groups(source) if rule.match_type is MatchType.PATTERN else {}
    group_count = match.re.groups or 0
    used: dict[str, int] = {}

    def expand(m: re.Match) -> str:
        name = m.group(1)
        if name is not None:
            numbers = groups_by_name.get(name)
            if not numbers:
                return m.group(0)
            k = used.get(name, 0)
            used[name] = k + 1
            return match.group(numbers[min(k, len(numbers) - 1)]) or ""

        token = m.group(2)
        if token == "$":
            return "$"
        if token == "&":
            return match.group(0)
        n = int(token)
        if 1 <= n <= group_count:
            return match.group(n) or ""
        return m.group(0)

    return _REPLACEMENT_RE.sub(expand, target)


@dataclass
class RuleApplication:
    text: str
    hits: int = 0
    matched: list[dict[str, Any]] = field(default_factory=list)


def apply_rules(
    text: str,
    category: str,
    source_lang: str,
    target_lang: str,
    rules: Optional[RulesSnapshot],
) -> RuleApplication:
    """Apply matching rules in priority order, mutating the text.

    Each rule replaces its first match only. A rule without a translation
    for ``target_lang`` is skipped. A rule counts as a hit only when it
    actually changed the text.
    """
    out = str(text if text is not None else "")
    if not out or rules is None or not rules.rules:
        return RuleApplication(text=out)

    slk = normalize_lang(source_lang)
    tlk = normalize_lang(target_lang)
    result = RuleApplication(text=out)

    for rule in rules_for_category(rules.rules, category, slk):
        target = rule.text(tlk)
        if not target:
            continue
        pattern = rules.pattern(rule, slk)
        if pattern is None:
            continue
        source = rule.text(slk)
        before = result.text
        result.text = pattern.sub(
            lambda m, r=rule, s=source, t=target: render_replacement(r, s, t, m),
            before,
            count=1,
        )
        if result.text != before:
            result.hits += 1
            result.matched.append({
                "key": rule.key or None,
                "row_index": rule.row_index,
                "category": rule.category,
                "match_type": rule.match_type.value,
                "priority": rule.priority,
            })
    return result


def match_rules(
    text: str,
    category: str,
    source_lang: str,
    target_lang: str,
    rules: Optional[RulesSnapshot],
) -> list[dict[str, str]]:
    """Report which rules match ``text`` without changing it.

    Returns deduplicated ``{"rule_key", "from", "to"}`` logs; ``to`` is
    empty when the rule has no translation for ``target_lang``.
    """
    if not text or rules is None or not rules.rules:
        return []

    slk = normalize_lang(source_lang)
    tlk = normalize_lang(target_lang)
    logs = []
    seen = set()
    for rule in rules_for_category(rules.rules, category, slk):
        pattern = rules.pattern(rule, slk)
        if pattern is None or not pattern.search(text):
            continue
        entry = {"rule_key": rule.label, "from": rule.text(slk), "to": rule.text(tlk)}
        dedupe_key = (entry["rule_key"], entry["from"], entry["to"])
        if dedupe_key in seen:
            continue
        seen.add(dedupe_key)
        logs.append(entry)
    return logs
