"""
Process state: glossary snapshots, rules and derived caches.

``GlossaryStore`` owns everything that used to be module-level globals:

- one ``GlossarySnapshot`` per sheet (replaced wholesale on reload)
- the rules snapshot
- derived caches for compiled replace plans and sorted anchor lists

Derived cache keys embed the sheet name and data version, and any reload
that produces a new version clears every derived cache. Partial
invalidation is never attempted because a change in one category can
alter cross-category merges.

Execution is single-threaded (asyncio). Callers must take a snapshot
reference before awaiting and keep using that reference afterwards,
instead of re-reading store state after the await.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterable, Optional

from termtrans.config import Settings
from termtrans.glossary.index import merge_categories
from termtrans.glossary.load import GlossarySnapshot, build_snapshot
from termtrans.replace import ReplacePlan, compile_plan
from termtrans.rules import RulesSnapshot, build_rules_snapshot
from termtrans.table import TableReader, sheet_range
from termtrans.utils import normalize_category, normalize_lang

logger = logging.getLogger(__name__)


class DerivedCache:
    """Bounded map with oldest-inserted eviction.

    This bounds memory, not correctness: an evicted value is simply
    recomputed on the next miss.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max(1, int(max_entries))
        self._data: dict[Hashable, Any] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data

    def get(self, key: Hashable) -> Any:
        value = self._data.get(key)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def put(self, key: Hashable, value: Any) -> None:
        self._data[key] = value
        while len(self._data) > self.max_entries:
            oldest = next(iter(self._data))
            del self._data[oldest]

    def get_or_create(self, key: Hashable, factory: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = factory()
            self.put(key, value)
        return value

    def clear(self) -> None:
        self._data.clear()

    def stats(self) -> dict[str, int]:
        return {"size": len(self._data), "max": self.max_entries, "hits": self.hits, "misses": self.misses}


def category_key(categories: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({normalize_category(c) for c in categories}))


def sorted_anchors(term_map: dict) -> tuple[str, ...]:
    """Unique non-empty anchors, longest first (stable for equal lengths)."""
    anchors = []
    seen = set()
    for term in term_map.keys():
        t = str(term).strip()
        if t and t not in seen:
            seen.add(t)
            anchors.append(t)
    return tuple(sorted(anchors, key=len, reverse=True))


@dataclass
class GlossaryStore:
    """Owner of loaded sheets, rules and derived caches.

    Args:
        reader: Tabular data reader collaborator
        settings: Runtime settings (sheet names, languages, cache size)
    """
    reader: TableReader
    settings: Settings = field(default_factory=Settings)

    def __post_init__(self):
        self._snapshots: dict[str, GlossarySnapshot] = {}
        self._rules: Optional[RulesSnapshot] = None
        self.plans = DerivedCache(self.settings.cache_max_entries)
        self.anchors = DerivedCache(self.settings.cache_max_entries)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sheet_name(self, sheet: Optional[str]) -> str:
        return str(sheet or "").strip() or self.settings.default_sheet

    def clear_derived(self) -> None:
        if len(self.plans) or len(self.anchors):
            logger.info("Clearing derived caches (%d plans, %d anchor lists)", len(self.plans), len(self.anchors))
        self.plans.clear()
        self.anchors.clear()

    def reset(self) -> None:
        """Drop every snapshot and derived cache."""
        self._snapshots.clear()
        self._rules = None
        self.plans.clear()
        self.anchors.clear()

    def snapshot(self, sheet: Optional[str] = None) -> Optional[GlossarySnapshot]:
        return self._snapshots.get(self.sheet_name(sheet))

    async def ensure_loaded(self, sheet: Optional[str] = None, force_reload: bool = False) -> GlossarySnapshot:
        """Return the snapshot for ``sheet``, loading it when needed.

        The new snapshot is only published once it is completely built,
        so a failed load leaves the previous snapshot in place.
        """
        name = self.sheet_name(sheet)
        existing = self._snapshots.get(name)
        if existing is not None and not force_reload:
            return existing

        data = await self.reader.read_range(sheet_range(name))
        snapshot = build_snapshot(
            data,
            sheet_name=name,
            anchor_lang=self.settings.anchor_lang,
            source_langs=self.settings.source_langs,
        )

        # Every newly published data version invalidates all derived caches.
        self.clear_derived()
        self._snapshots[name] = snapshot
        return snapshot

    async def reload(self, sheet: Optional[str] = None) -> GlossarySnapshot:
        return await self.ensure_loaded(sheet, force_reload=True)

    async def ensure_rules_loaded(self, force_reload: bool = False) -> RulesSnapshot:
        if self._rules is not None and not force_reload:
            return self._rules
        data = await self.reader.read_range(sheet_range(self.settings.rule_sheet))
        self._rules = build_rules_snapshot(data, anchor_lang=self.settings.anchor_lang)
        return self._rules

    # ------------------------------------------------------------------
    # Derived artifacts
    # ------------------------------------------------------------------

    def get_plan(
        self,
        snapshot: GlossarySnapshot,
        source_lang: str,
        categories: Iterable[str],
        target_lang: str,
    ) -> ReplacePlan:
        cats = category_key(categories)
        slk = normalize_lang(source_lang)
        tlk = normalize_lang(target_lang)
        key = ("plan", snapshot.sheet_name, snapshot.loaded_at, slk, cats, tlk)

        def build() -> ReplacePlan:
            term_map = merge_categories(snapshot.index, slk, cats)
            plan = compile_plan(term_map, tlk, source_lang=slk)
            logger.debug("Compiled plan %s: %d/%d terms", key, len(plan), plan.term_count)
            return plan

        return self.plans.get_or_create(key, build)

    def get_anchors(
        self,
        snapshot: GlossarySnapshot,
        source_lang: str,
        categories: Iterable[str],
        target_lang: str,
        case_sensitive: bool = True,
        word_boundary: bool = True,
    ) -> tuple[str, ...]:
        cats = category_key(categories)
        slk = normalize_lang(source_lang)
        key = (
            "anchors", snapshot.sheet_name, snapshot.loaded_at, slk, cats,
            normalize_lang(target_lang), bool(case_sensitive), bool(word_boundary),
        )
        return self.anchors.get_or_create(
            key, lambda: sorted_anchors(merge_categories(snapshot.index, slk, cats))
        )

    def status(self) -> dict[str, Any]:
        """Health/diagnostic view of loaded state."""
        return {
            "glossary": [
                {
                    "sheet": name,
                    "loaded_at": snap.loaded_at,
                    "raw_row_count": snap.raw_row_count,
                    "categories": len(snap.index),
                }
                for name, snap in self._snapshots.items()
            ] or None,
            "rules": {
                "loaded_at": self._rules.loaded_at,
                "count": len(self._rules.rules),
            } if self._rules is not None else None,
            "plans": self.plans.stats(),
            "anchors": self.anchors.stats(),
        }
