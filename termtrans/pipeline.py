"""
Batch translation pipeline for termtrans.

One run is a single pass over a glossary sheet:
1. Select pending rows (source filled, target empty unless overwriting)
2. Preprocess: glossary replace plan, then the rule overlay
3. Translate in record-framed chunks (see translate/base.py)
4. Flag anomalies (advisory only, nothing is rejected)
5. Upload translated cells (optional) and mark them in the cooldown gate
6. Persist summary, anomalies and results under a batch id with a TTL

A run that selects nothing still stores a batch, together with a
diagnostic breakdown of why every row was left out.

Design Philosophy:
- The pipeline owns no global state: the glossary store, batch store and
  cooldown gate are injected and can be inspected by tests
- The snapshot is captured once, before the first await, and used for
  the whole run even if a concurrent reload publishes a newer one
- Upload failures are reported in the summary; cells that were written
  stay written
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Optional

from termtrans.cache import GlossaryStore
from termtrans.config import DEFAULT_CHUNK_SIZE, Settings
from termtrans.errors import (
    DataIntegrityError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from termtrans.glossary.index import resolve_categories
from termtrans.glossary.load import GlossarySnapshot
from termtrans.models import ROW_INDEX_OFFSET, Anomaly, AnomalyType, BatchRecord
from termtrans.replace import substitute
from termtrans.rules import apply_rules
from termtrans.table import CellUpdate, TableWriter
from termtrans.translate.base import (
    TranslatedRow,
    TranslateItem,
    TranslateRequest,
    Translator,
)
from termtrans.utils import (
    cell,
    col_index_to_a1,
    is_effectively_empty,
    normalize_category,
    normalize_lang,
    now_iso,
    strip_invisible,
)

logger = logging.getLogger(__name__)

MAX_BATCH_LIMIT = 2000
MAX_PAGE_LIMIT = 1000
ANOMALY_SAMPLE = 20

Clock = Callable[[], float]


def new_batch_id() -> str:
    return f"b_{int(time.time() * 1000):x}_{secrets.token_hex(3)}"


# ============================================================================
# Batch store and cooldown gate
# ============================================================================

class BatchStore:
    """Finished batches, kept for ``ttl_seconds``.

    Expired batches are pruned lazily on every access; there is no
    background timer.
    """

    def __init__(self, ttl_seconds: float = 3600.0, clock: Clock = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._batches: dict[str, BatchRecord] = {}

    def __len__(self) -> int:
        self.prune()
        return len(self._batches)

    def prune(self) -> int:
        now = self.clock()
        expired = [bid for bid, rec in self._batches.items() if rec.expired(now)]
        for bid in expired:
            del self._batches[bid]
        if expired:
            logger.debug("Pruned %d expired batch(es)", len(expired))
        return len(expired)

    def put(self, record: BatchRecord, age: float = 0.0) -> BatchRecord:
        """Store a record; ``age`` backdates it (records restored from disk)."""
        self.prune()
        record.created_at = self.clock() - age
        record.ttl = self.ttl_seconds
        self._batches[record.batch_id] = record
        return record

    def get(self, batch_id: str) -> BatchRecord:
        self.prune()
        bid = str(batch_id or "").strip()
        if not bid:
            raise ValidationError("batch_id is required.", reason="missing_batch_id")
        record = self._batches.get(bid)
        if record is None:
            raise NotFoundError(
                "Batch not found (expired or invalid batch_id).",
                reason="batch_not_found",
                extra={"batch_id": bid},
            )
        return record

    def page_anomalies(self, batch_id: str, offset: int = 0, limit: int = 200) -> dict[str, Any]:
        record = self.get(batch_id)
        return _page(record, record.anomalies, offset, limit)

    def page_results(self, batch_id: str, offset: int = 0, limit: int = 200) -> dict[str, Any]:
        record = self.get(batch_id)
        return _page(record, record.results, offset, limit)


def _page(record: BatchRecord, items: list, offset: int, limit: int) -> dict[str, Any]:
    if not isinstance(offset, int) or offset < 0:
        raise ValidationError("offset must be a non-negative integer.", reason="invalid_offset")
    if not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}.", reason="invalid_limit")
    return {
        "ok": True,
        "batch_id": record.batch_id,
        "total": len(items),
        "offset": offset,
        "limit": limit,
        "items": items[offset:offset + limit],
        "summary": record.summary,
    }


class RecentAppliedGate:
    """Per-sheet cooldown for rows that were just written.

    A freshly written row can still look pending until the data store and
    the cached snapshot catch up; the gate keeps such rows out of pending
    selection for ``ttl_seconds``. A TTL of zero disables the gate.
    """

    def __init__(self, ttl_seconds: float = 600.0, clock: Clock = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._by_sheet: dict[str, dict[int, float]] = {}

    @staticmethod
    def _key(sheet: str) -> str:
        return str(sheet or "").strip()

    def prune(self, sheet: str) -> None:
        key = self._key(sheet)
        rows = self._by_sheet.get(key)
        if rows is None:
            return
        now = self.clock()
        for ri in [ri for ri, exp in rows.items() if exp <= now]:
            del rows[ri]
        if not rows:
            del self._by_sheet[key]

    def mark(self, sheet: str, row_indexes: Iterable[int]) -> int:
        if self.ttl_seconds <= 0:
            return 0
        key = self._key(sheet)
        self.prune(key)
        expires = self.clock() + self.ttl_seconds
        rows = self._by_sheet.setdefault(key, {})
        marked = 0
        for ri in row_indexes:
            if int(ri) < ROW_INDEX_OFFSET:
                continue
            rows[int(ri)] = expires
            marked += 1
        if not rows:
            del self._by_sheet[key]
        return marked

    def is_recent(self, sheet: str, row_index: int) -> bool:
        key = self._key(sheet)
        self.prune(key)
        exp = self._by_sheet.get(key, {}).get(int(row_index))
        return exp is not None and exp > self.clock()

    def count(self, sheet: str) -> int:
        key = self._key(sheet)
        self.prune(key)
        return len(self._by_sheet.get(key, {}))


# ============================================================================
# Request / result types
# ============================================================================

@dataclass
class BatchRequest:
    """Parameters of one batch run.

    Attributes:
        source_lang: Source language column (one of the indexed source languages)
        target_lang: Target language column
        sheet: Glossary sheet name ('' = default sheet)
        category: Restrict to one category ('' = all)
        limit: Maximum rows to select (1..2000)
        fill_only_empty: Only select rows whose target cell is empty
        upload: Write translations back to the sheet
        exclude_row_indexes: Rows the caller already handled
        chunk_size: Records per translator call (clamped to 1..100)
        model: Translator model override
        force_reload: Reload the sheet before selecting
        debug: Larger diagnostic samples
    """
    source_lang: str
    target_lang: str
    sheet: str = ""
    category: str = ""
    limit: int = 200
    fill_only_empty: bool = True
    upload: bool = False
    exclude_row_indexes: list[int] = field(default_factory=list)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    model: Optional[str] = None
    force_reload: bool = False
    debug: bool = False

    def validate(self) -> None:
        if not str(self.source_lang or "").strip():
            raise ValidationError("source_lang is required.", reason="missing_source_lang")
        if not str(self.target_lang or "").strip():
            raise ValidationError("target_lang is required.", reason="missing_target_lang")
        if not isinstance(self.limit, int) or not 1 <= self.limit <= MAX_BATCH_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_BATCH_LIMIT}.", reason="invalid_limit")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PendingRow:
    row_index: int
    category: str
    source_text: str


@dataclass
class BatchRunResult:
    batch_id: str
    summary: dict[str, Any]
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    write: dict[str, Any] = field(default_factory=dict)
    diagnostics: Optional[dict[str, Any]] = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = {
            "ok": True,
            "batch_id": self.batch_id,
            "summary": self.summary,
            "write": self.write,
            "anomalies": {"count": len(self.anomalies), "sample": self.anomalies[:ANOMALY_SAMPLE]},
        }
        if self.diagnostics is not None:
            data["diagnostics"] = self.diagnostics
        if self.message:
            data["message"] = self.message
        return data


# ============================================================================
# Selection helpers
# ============================================================================

def select_pending(
    snapshot: GlossarySnapshot,
    src_col: int,
    tgt_col: int,
    category: str = "",
    fill_only_empty: bool = True,
    limit: int = 200,
    exclude: Iterable[int] = (),
    gate: Optional[RecentAppliedGate] = None,
    sentinels: Iterable[str] = (),
) -> list[PendingRow]:
    """Rows with a non-empty source cell and (optionally) an empty target cell."""
    cat = normalize_category(category)
    excluded = set(int(ri) for ri in exclude)
    sentinels = tuple(sentinels)
    picked = []
    for i, row in enumerate(snapshot.raw_rows):
        row_index = i + ROW_INDEX_OFFSET
        if row_index in excluded:
            continue
        entry = snapshot.entries[i]
        if cat and entry.category != cat:
            continue
        if gate is not None and gate.is_recent(snapshot.sheet_name, row_index):
            continue
        src_raw = cell(list(row), src_col)
        if is_effectively_empty(src_raw, sentinels):
            continue
        if fill_only_empty and not is_effectively_empty(cell(list(row), tgt_col), sentinels):
            continue
        picked.append(PendingRow(row_index=row_index, category=entry.category, source_text=strip_invisible(src_raw)))
        if len(picked) >= limit:
            break
    return picked


def build_diagnostics(
    snapshot: GlossarySnapshot,
    src_col: int,
    tgt_col: int,
    category: str = "",
    fill_only_empty: bool = True,
    exclude: Iterable[int] = (),
    gate: Optional[RecentAppliedGate] = None,
    sentinels: Iterable[str] = (),
    sample_size: int = 8,
) -> dict[str, Any]:
    """Explain a zero-row selection: how many rows fell out at each filter."""
    cat = normalize_category(category)
    excluded = set(int(ri) for ri in exclude)
    sentinels = tuple(sentinels)
    counts = {
        "category_matched": 0,
        "source_non_empty": 0,
        "target_empty": 0,
        "pending_eligible": 0,
        "recently_applied": 0,
        "excluded": 0,
    }
    samples = []

    for i, row in enumerate(snapshot.raw_rows):
        row_index = i + ROW_INDEX_OFFSET
        entry = snapshot.entries[i]
        if cat and entry.category != cat:
            continue
        counts["category_matched"] += 1

        src_raw = cell(list(row), src_col)
        tgt_raw = cell(list(row), tgt_col)
        src_empty = is_effectively_empty(src_raw, sentinels)
        tgt_empty = is_effectively_empty(tgt_raw, sentinels)
        if not src_empty:
            counts["source_non_empty"] += 1
        if tgt_empty:
            counts["target_empty"] += 1

        eligible = not src_empty and (not fill_only_empty or tgt_empty)
        if eligible:
            counts["pending_eligible"] += 1
            if row_index in excluded:
                counts["excluded"] += 1
            elif gate is not None and gate.is_recent(snapshot.sheet_name, row_index):
                counts["recently_applied"] += 1

        if len(samples) < sample_size:
            samples.append({
                "row_index": row_index,
                "category": entry.category,
                "source_empty": src_empty,
                "target_empty": tgt_empty,
                "source_preview": strip_invisible(src_raw)[:60],
                "target_preview": strip_invisible(tgt_raw)[:60],
            })

    return {
        "total_rows": snapshot.raw_row_count,
        "category_filter": cat or "ALL",
        "fill_only_empty": fill_only_empty,
        **counts,
        "samples": samples,
    }


def length_ratio(translated_len: int, processed_len: int) -> float:
    x = max(0, translated_len)
    y = max(0, processed_len)
    if y == 0:
        return 1.0 if x == 0 else 999.0
    return x / y


# ============================================================================
# Pipeline
# ============================================================================

class BatchPipeline:
    """Batch pipeline orchestrating selection, translation and write-back.

    Usage:
        pipeline = BatchPipeline(store, translator, writer, BatchStore(), RecentAppliedGate())
        result = await pipeline.run(BatchRequest(source_lang="en-US", target_lang="ko-KR"))
        print(result.summary["planned"], result.summary["anomalies"])
    """

    def __init__(
        self,
        store: GlossaryStore,
        translator: Translator,
        writer: Optional[TableWriter] = None,
        batches: Optional[BatchStore] = None,
        gate: Optional[RecentAppliedGate] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.translator = translator
        self.writer = writer
        self.settings = settings or store.settings
        self.batches = batches or BatchStore(self.settings.batch_ttl_seconds)
        self.gate = gate or RecentAppliedGate(self.settings.recent_applied_ttl_seconds)

    async def run(self, request: BatchRequest) -> BatchRunResult:
        request.validate()
        if request.upload and self.writer is None:
            raise ValidationError("upload requested but no table writer is configured.", reason="writer_unavailable")

        sheet = self.store.sheet_name(request.sheet)
        slk = self.settings.require_source_lang(request.source_lang)
        tlk = normalize_lang(request.target_lang)

        snapshot = await self.store.ensure_loaded(sheet, force_reload=request.force_reload)
        src_col = snapshot.require_column(slk, "source")
        tgt_col = snapshot.require_column(tlk, "target")
        categories = resolve_categories(snapshot.index, request.category)
        plan = self.store.get_plan(snapshot, slk, categories, tlk)
        rules = await self.store.ensure_rules_loaded()

        sentinels = self.settings.pending_empty_sentinels
        pending = select_pending(
            snapshot, src_col, tgt_col,
            category=request.category,
            fill_only_empty=request.fill_only_empty,
            limit=request.limit,
            exclude=request.exclude_row_indexes,
            gate=self.gate,
            sentinels=sentinels,
        )

        base_summary = {
            "ok": True,
            "sheet": sheet,
            "category": normalize_category(request.category) or "ALL",
            "source_lang": request.source_lang,
            "target_lang": request.target_lang,
        }
        snapshot_meta = {
            "glossary_loaded_at": snapshot.loaded_at,
            "raw_row_count": snapshot.raw_row_count,
            "pending_empty_sentinels": list(sentinels),
        }

        if not pending:
            return self._store_empty(request, snapshot, src_col, tgt_col, base_summary, snapshot_meta)

        # Preprocess: glossary first, then rules.
        items: list[TranslateItem] = []
        prep: dict[int, dict[str, Any]] = {}
        for row in pending:
            glossary = substitute(row.source_text, plan)
            ruled = apply_rules(glossary.text, row.category, slk, tlk, rules)
            items.append(TranslateItem(row.row_index, row.source_text, ruled.text))
            prep[row.row_index] = {
                "category": row.category,
                "after_glossary": glossary.text,
                "glossary_replaced": glossary.replaced_total,
                "processed": ruled.text,
                "rule_hits": ruled.hits,
                "matched_rules": ruled.matched,
            }

        translated, tr_meta = await self._translate(request, items)

        anomalies: list[dict[str, Any]] = []
        results: list[dict[str, Any]] = []
        updates: list[CellUpdate] = []
        ok_rows = 0
        for item in items:
            info = prep[item.row_index]
            outcome = translated.get(item.row_index)
            row_anomalies, text = self._classify(item, info, outcome, tr_meta)
            anomalies.extend(a.to_dict() for a in row_anomalies)
            if outcome is not None and not outcome.fallback_used:
                ok_rows += 1

            results.append({
                "row_index": item.row_index,
                "category": info["category"],
                "source_text": item.source_text,
                "after_glossary": info["after_glossary"],
                "processed_text": info["processed"],
                "translated_text": text,
                "glossary_replaced": info["glossary_replaced"],
                "rule_hits": info["rule_hits"],
                "fallback_used": outcome is None or outcome.fallback_used,
                "error": outcome.error if outcome is not None else None,
            })
            if request.upload:
                a1 = f"{col_index_to_a1(tgt_col)}{item.row_index}"
                updates.append(CellUpdate(range=f"{sheet}!{a1}", values=[[text]]))

        if request.upload:
            write, upload_error = await self._upload(sheet, updates, [it.row_index for it in items])
        else:
            write, upload_error = {"dry_run": True}, None

        batch_id = new_batch_id()
        summary = {
            **base_summary,
            "batch_id": batch_id,
            "planned": len(pending),
            "translated": ok_rows,
            "fallbacks": len(items) - ok_rows,
            "uploaded": write.get("uploaded", 0),
            "anomalies": len(anomalies),
            "finished_at": now_iso(),
            "meta": {
                **snapshot_meta,
                "model": tr_meta.get("model"),
                "chunks": tr_meta.get("chunks"),
                "chunk_size": tr_meta.get("chunk_size", request.chunk_size),
                "repairs": tr_meta.get("repairs", 0),
                "failed_chunks": tr_meta.get("failed_chunks", 0),
                "elapsed_ms": tr_meta.get("elapsed_ms"),
                "updated_cells": write.get("updated_cells", 0),
                "plan_terms": len(plan),
                "rule_count": len(rules.rules),
            },
        }
        if upload_error is not None:
            summary["upload_error"] = upload_error

        self.batches.put(BatchRecord(
            batch_id=batch_id,
            request={**request.to_dict(), "sheet": sheet},
            summary=summary,
            anomalies=anomalies,
            results=results,
        ))
        logger.info(
            "Batch %s: planned=%d translated=%d uploaded=%d anomalies=%d",
            batch_id, summary["planned"], summary["translated"], summary["uploaded"], summary["anomalies"],
        )
        return BatchRunResult(batch_id=batch_id, summary=summary, anomalies=anomalies, write=write)

    def _store_empty(
        self,
        request: BatchRequest,
        snapshot: GlossarySnapshot,
        src_col: int,
        tgt_col: int,
        base_summary: dict[str, Any],
        snapshot_meta: dict[str, Any],
    ) -> BatchRunResult:
        diagnostics = build_diagnostics(
            snapshot, src_col, tgt_col,
            category=request.category,
            fill_only_empty=request.fill_only_empty,
            exclude=request.exclude_row_indexes,
            gate=self.gate,
            sentinels=self.settings.pending_empty_sentinels,
            sample_size=20 if request.debug else 8,
        )
        batch_id = new_batch_id()
        summary = {
            **base_summary,
            "batch_id": batch_id,
            "planned": 0,
            "translated": 0,
            "fallbacks": 0,
            "uploaded": 0,
            "anomalies": 0,
            "finished_at": now_iso(),
            "meta": snapshot_meta,
        }
        self.batches.put(BatchRecord(
            batch_id=batch_id,
            request={**request.to_dict(), "sheet": snapshot.sheet_name},
            summary={**summary, "diagnostics": diagnostics},
        ))
        logger.info("Batch %s: no pending rows (%s)", batch_id, diagnostics)
        return BatchRunResult(
            batch_id=batch_id,
            summary=summary,
            write={"dry_run": not request.upload},
            diagnostics=diagnostics,
            message="No pending rows matched the criteria.",
        )

    async def _translate(
        self,
        request: BatchRequest,
        items: list[TranslateItem],
    ) -> tuple[dict[int, TranslatedRow], dict[str, Any]]:
        tr_request = TranslateRequest(
            source_lang=request.source_lang,
            target_lang=request.target_lang,
            items=items,
            chunk_size=request.chunk_size,
            model=request.model,
        )
        try:
            response = await self.translator.translate(tr_request)
        except ExternalServiceError as e:
            # Backends without record-level handling fail as a whole; the
            # failure still stays local to the rows it covered.
            logger.warning("Translator %s failed for %d rows: %s", self.translator.name, len(items), e)
            failed = {
                it.row_index: TranslatedRow(
                    row_index=it.row_index,
                    source_text=it.source_text,
                    translated_text=it.text_for_translate,
                    fallback_used=True,
                    error=str(e),
                )
                for it in items
            }
            return failed, {"model": request.model, "failed_chunks": 1, "error": e.to_dict()}
        return response.by_row(), response.meta

    def _classify(
        self,
        item: TranslateItem,
        info: dict[str, Any],
        outcome: Optional[TranslatedRow],
        tr_meta: dict[str, Any],
    ) -> tuple[list[Anomaly], str]:
        processed = info["processed"]
        text = strip_invisible(outcome.translated_text) if outcome is not None else ""
        found: list[Anomaly] = []

        def flag(kind: AnomalyType, meta: dict[str, Any]) -> None:
            found.append(Anomaly(
                type=kind,
                row_index=item.row_index,
                source_text=item.source_text,
                processed_text=processed,
                translated_text=text,
                meta=meta,
            ))

        if outcome is not None and outcome.error:
            text = processed
            flag(AnomalyType.TRANSLATION_FAILED, {"error": outcome.error, "model": tr_meta.get("model")})
        elif outcome is None or outcome.fallback_used or not text:
            text = processed
            flag(AnomalyType.EMPTY_TRANSLATION_FALLBACK, {"reason": "translator returned empty", "model": tr_meta.get("model")})

        r = length_ratio(len(text), max(1, len(processed)))
        if r >= self.settings.ratio_high or r <= self.settings.ratio_low:
            flag(AnomalyType.LENGTH_RATIO_SUSPICIOUS, {
                "ratio": r,
                "processed_len": len(processed),
                "translated_len": len(text),
            })

        if strip_invisible(text) == strip_invisible(processed):
            flag(AnomalyType.SAME_AS_PROCESSED, {"note": "Translated text equals processed text."})

        if info["rule_hits"] > 0:
            flag(AnomalyType.RULE_APPLIED, {
                "rule_hits": info["rule_hits"],
                "matched_rules": info["matched_rules"][:10],
            })
        return found, text

    async def _upload(
        self,
        sheet: str,
        updates: list[CellUpdate],
        row_indexes: list[int],
    ) -> tuple[dict[str, Any], Optional[dict[str, Any]]]:
        if not updates:
            return {"uploaded": 0, "updated_cells": 0, "updated_ranges": []}, None
        try:
            res = await self.writer.batch_write(updates)
        except ExternalServiceError as e:
            logger.error("Upload of %d cells to '%s' failed: %s", len(updates), sheet, e)
            return {"uploaded": 0, "updated_cells": 0, "updated_ranges": []}, e.to_dict()

        self.gate.mark(sheet, row_indexes)
        write = {
            "uploaded": len(updates),
            "updated_cells": res.updated_cells,
            "updated_ranges": res.updated_ranges[:50],
        }
        try:
            await self.store.reload(sheet)
        except (ExternalServiceError, DataIntegrityError) as e:
            logger.error("Reload of '%s' after upload failed: %s", sheet, e)
            return write, {**e.to_dict(), "stage": "reload"}
        return write, None
