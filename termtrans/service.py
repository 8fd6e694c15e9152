"""
GlossaryService: the outward operations of termtrans.

The service wires the glossary store, batch store, cooldown gate, table
collaborators and translator together and exposes one coroutine per
operation. Every operation returns plain dicts that serialize directly to
JSON (the CLI prints them; an HTTP layer could return them as-is).

Operations:
    replace_texts        glossary substitution with audit-only rule logs
    mask / unmask        protect glossary terms across a translator
    pending_next         rows still missing one or more target languages
    qa_next              filled source/target pairs for review, cursor paged
    apply_translations   write reviewed translations back to the sheet
    apply_masked         write masked texts to a <lang>-Masking column
    run_batch            the batch pipeline (see pipeline.py)
    get_batch_anomalies / get_batch_results   paged batch output
    reload / status

Usage:
    service = GlossaryService(Settings(), reader=CsvWorkbook("./workbook"))
    out = await service.replace_texts(["Buy a Red Potion"], "en-US", "ko-KR")
    print(out["texts"])
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from termtrans import __version__
from termtrans.cache import GlossaryStore
from termtrans.config import Settings
from termtrans.errors import ValidationError
from termtrans.glossary.index import merge_categories, resolve_categories
from termtrans.glossary.load import MASKING_HEADER_SUFFIX, GlossarySnapshot, masking_column
from termtrans.masking import RESTORE_STRATEGIES, mask_texts, unmask_text
from termtrans.models import ROW_INDEX_OFFSET, MaskRecord
from termtrans.pipeline import BatchPipeline, BatchRequest, BatchStore, RecentAppliedGate
from termtrans.replace import substitute
from termtrans.rules import match_rules
from termtrans.table import CellUpdate, TableReader, TableWriter
from termtrans.translate.base import Translator, create_translator
from termtrans.utils import (
    cell,
    col_index_to_a1,
    is_effectively_empty,
    normalize_category,
    normalize_lang,
    strip_invisible,
)

logger = logging.getLogger(__name__)

MAX_TEXTS = 500
MAX_PENDING_LIMIT = 500
MAX_APPLY_ENTRIES = 500
MAX_MASK_APPLY_ENTRIES = 2000


def _require_texts(texts: Sequence[Any]) -> list[str]:
    if isinstance(texts, str) or not isinstance(texts, Sequence) or not texts:
        raise ValidationError("texts must be a non-empty list of strings.", reason="missing_texts")
    if len(texts) > MAX_TEXTS:
        raise ValidationError(f"texts may hold at most {MAX_TEXTS} items.", reason="too_many_texts")
    return ["" if t is None else str(t) for t in texts]


def _require_limit(limit: Any, maximum: int) -> int:
    if not isinstance(limit, int) or isinstance(limit, bool) or not 1 <= limit <= maximum:
        raise ValidationError(f"limit must be between 1 and {maximum}.", reason="invalid_limit")
    return limit


def _require_target(lang: Any) -> str:
    key = normalize_lang(lang)
    if not key:
        raise ValidationError("target_lang is required.", reason="missing_target_lang")
    return key


def _as_mask_record(mask: Union[MaskRecord, Mapping[str, Any]]) -> MaskRecord:
    if isinstance(mask, MaskRecord):
        return mask
    try:
        return MaskRecord(
            id=int(mask["id"]),
            anchor=str(mask.get("anchor", "")),
            restore=str(mask.get("restore", mask.get("anchor", ""))),
            glossary_row_index=mask.get("glossary_row_index"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid mask entry: {mask!r}", reason="invalid_mask") from e


class GlossaryService:
    """Facade over the glossary store, pipeline and collaborators.

    Args:
        settings: Runtime settings (``Settings.from_env()`` when None)
        reader: Tabular data reader
        writer: Tabular data writer; write operations fail without one
        translator: Translator for batches; an OpenAI translator is
            created on first use when None
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        reader: Optional[TableReader] = None,
        writer: Optional[TableWriter] = None,
        translator: Optional[Translator] = None,
    ):
        if reader is None:
            raise ValueError("GlossaryService needs a table reader")
        self.settings = settings or Settings.from_env()
        self.reader = reader
        self.writer = writer
        self._translator = translator
        self.store = GlossaryStore(reader, self.settings)
        self.batches = BatchStore(self.settings.batch_ttl_seconds)
        self.gate = RecentAppliedGate(self.settings.recent_applied_ttl_seconds)
        self._pipeline: Optional[BatchPipeline] = None

    @property
    def translator(self) -> Translator:
        if self._translator is None:
            self._translator = create_translator("openai", settings=self.settings)
        return self._translator

    @property
    def pipeline(self) -> BatchPipeline:
        if self._pipeline is None:
            self._pipeline = BatchPipeline(
                self.store, self.translator, self.writer, self.batches, self.gate, self.settings,
            )
        return self._pipeline

    def _require_writer(self) -> TableWriter:
        if self.writer is None:
            raise ValidationError("No table writer is configured.", reason="writer_unavailable")
        return self.writer

    # ------------------------------------------------------------------
    # Replace / mask
    # ------------------------------------------------------------------

    async def replace_texts(
        self,
        texts: Sequence[str],
        source_lang: str,
        target_lang: str,
        sheet: Optional[str] = None,
        category: Optional[str] = None,
        include_logs: bool = True,
    ) -> dict[str, Any]:
        """Substitute glossary terms in every text.

        Rules are reported (``rule_logs``) but never applied here; only the
        batch pipeline mutates text with rules.
        """
        inputs = _require_texts(texts)
        slk = self.settings.require_source_lang(source_lang)
        tlk = _require_target(target_lang)

        snapshot = await self.store.ensure_loaded(sheet)
        snapshot.require_column(slk, "source")
        snapshot.require_column(tlk, "target")
        categories = resolve_categories(snapshot.index, category)
        plan = self.store.get_plan(snapshot, slk, categories, tlk)
        if plan.term_count == 0:
            raise ValidationError(
                f"No source texts found for sheet='{snapshot.sheet_name}', source_lang='{slk}', "
                f"category='{normalize_category(category) or 'ALL'}'.",
                reason="no_source_terms",
            )
        rules = await self.store.ensure_rules_loaded()
        rule_category = normalize_category(category)

        out_texts = []
        logs = []
        rule_logs = []
        replaced_total = matched_terms = matched_rules = 0
        for i, text in enumerate(inputs):
            result = substitute(text, plan)
            hits = match_rules(result.text, rule_category, slk, tlk, rules)
            out_texts.append(result.text)
            replaced_total += result.replaced_total
            matched_terms += len(result.logs)
            matched_rules += len(hits)
            if include_logs:
                logs.append({"index": i, "replaced_total": result.replaced_total, "logs": result.logs})
                rule_logs.append({"index": i, "rule_logs": hits})

        response: dict[str, Any] = {
            "ok": True,
            "sheet": snapshot.sheet_name,
            "category": rule_category or "ALL",
            "source_lang": slk,
            "target_lang": tlk,
            "texts": out_texts,
            "summary": {
                "lines": len(inputs),
                "replaced_total": replaced_total,
                "matched_terms": matched_terms,
                "matched_rules": matched_rules,
                "glossary_loaded_at": snapshot.loaded_at,
                "raw_row_count": snapshot.raw_row_count,
                "categories_used": len(categories),
                "unique_terms": plan.term_count,
            },
        }
        if include_logs:
            response["logs"] = logs
            response["rule_logs"] = rule_logs
        return response

    async def mask(
        self,
        texts: Sequence[str],
        source_lang: str,
        target_lang: str,
        sheet: Optional[str] = None,
        category: Optional[str] = None,
        case_sensitive: bool = True,
        word_boundary: bool = True,
        restore_strategy: str = "glossaryTarget",
        include_masks: bool = True,
        force_reload: bool = False,
    ) -> dict[str, Any]:
        """Replace glossary anchors with ``{mask:N}`` tokens."""
        inputs = _require_texts(texts)
        slk = self.settings.require_source_lang(source_lang)
        tlk = _require_target(target_lang)
        if restore_strategy not in RESTORE_STRATEGIES:
            raise ValidationError(
                f"restore_strategy must be one of {', '.join(RESTORE_STRATEGIES)}",
                reason="invalid_restore_strategy",
            )

        snapshot = await self.store.ensure_loaded(sheet, force_reload=force_reload)
        snapshot.require_column(slk, "source")
        snapshot.require_column(tlk, "target")
        categories = resolve_categories(snapshot.index, category)
        anchors = self.store.get_anchors(snapshot, slk, categories, tlk, case_sensitive, word_boundary)
        if not anchors:
            raise ValidationError(
                f"No source texts found for sheet='{snapshot.sheet_name}', source_lang='{slk}', "
                f"category='{normalize_category(category) or 'ALL'}'.",
                reason="no_source_terms",
            )

        term_map = merge_categories(snapshot.index, slk, categories)

        def resolve_restore(anchor: str) -> tuple[str, Optional[int]]:
            hits = term_map.get(anchor) or []
            if not hits:
                return anchor, None
            chosen = min(hits, key=lambda e: e.row_index)
            return snapshot.cell_text(chosen.row_index, tlk), chosen.row_index

        result = mask_texts(
            inputs,
            anchors,
            case_sensitive=case_sensitive,
            word_boundary=word_boundary,
            restore_strategy=restore_strategy,
            resolve_restore=resolve_restore,
        )
        response: dict[str, Any] = {
            "ok": True,
            "sheet": snapshot.sheet_name,
            "category": normalize_category(category) or "ALL",
            "source_lang": slk,
            "target_lang": tlk,
            "restore_strategy": restore_strategy,
            "texts_masked": result.texts,
            "meta": {
                "glossary_loaded_at": snapshot.loaded_at,
                "raw_row_count": snapshot.raw_row_count,
                "categories_used": len(categories),
                "unique_terms": len(anchors),
                "matched_mask_ids": result.matched_ids,
            },
        }
        if include_masks:
            response["masks"] = [m.to_dict() for m in result.masks]
        return response

    def unmask(self, text: str, masks: Iterable[Union[MaskRecord, Mapping[str, Any]]]) -> str:
        return unmask_text(text, [_as_mask_record(m) for m in masks])

    # ------------------------------------------------------------------
    # Review helpers
    # ------------------------------------------------------------------

    async def pending_next(
        self,
        source_lang: str,
        target_langs: Sequence[str],
        sheet: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 100,
        exclude_row_indexes: Iterable[int] = (),
        force_reload: bool = False,
    ) -> dict[str, Any]:
        """Rows whose source is filled but at least one target is empty.

        Rows written within the cooldown window and rows listed in
        ``exclude_row_indexes`` are skipped.
        """
        slk = self.settings.require_source_lang(source_lang)
        _require_limit(limit, MAX_PENDING_LIMIT)
        targets = [normalize_lang(t) for t in (target_langs or []) if normalize_lang(t)]
        if not targets:
            raise ValidationError("target_langs must have at least 1 language.", reason="missing_target_langs")

        snapshot = await self.store.ensure_loaded(sheet, force_reload=force_reload)
        src_col = snapshot.require_column(slk, "source")
        tgt_cols = {lk: snapshot.require_column(lk, "target") for lk in targets}
        cat = normalize_category(category)
        exclude = set(int(ri) for ri in exclude_row_indexes)
        sentinels = self.settings.pending_empty_sentinels

        items = []
        for i, raw in enumerate(snapshot.raw_rows):
            row = list(raw)
            row_index = i + ROW_INDEX_OFFSET
            source_text = strip_invisible(cell(row, src_col))
            if not source_text:
                continue
            if cat and snapshot.entries[i].category != cat:
                continue
            if row_index in exclude or self.gate.is_recent(snapshot.sheet_name, row_index):
                continue
            missing = [lk for lk, col in tgt_cols.items() if is_effectively_empty(cell(row, col), sentinels)]
            if not missing:
                continue
            items.append({"row_index": row_index, "source_text": source_text, "missing_langs": missing})
            if len(items) >= limit:
                break

        return {
            "ok": True,
            "sheet": snapshot.sheet_name,
            "source_lang": slk,
            "target_langs": targets,
            "limit": limit,
            "count": len(items),
            "items": items,
            "meta": {
                "glossary_loaded_at": snapshot.loaded_at,
                "raw_row_count": snapshot.raw_row_count,
                "recent_applied_ttl_seconds": self.gate.ttl_seconds,
                "recently_applied": self.gate.count(snapshot.sheet_name),
                "excluded": len(exclude),
            },
        }

    async def qa_next(
        self,
        source_lang: str,
        target_lang: str,
        sheet: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 100,
        cursor: Optional[str] = None,
        force_reload: bool = False,
    ) -> dict[str, Any]:
        """Page through rows where both source and target are filled.

        ``cursor`` is the data row position to resume from; the response's
        ``cursor_next`` is None once the sheet is exhausted.
        """
        slk = self.settings.require_source_lang(source_lang)
        tlk = _require_target(target_lang)
        _require_limit(limit, MAX_PENDING_LIMIT)

        start = 0
        if cursor is not None and str(cursor).strip():
            try:
                start = int(str(cursor).strip())
            except ValueError:
                start = -1
            if start < 0:
                raise ValidationError("cursor must be a non-negative integer string.", reason="invalid_cursor")

        snapshot = await self.store.ensure_loaded(sheet, force_reload=force_reload)
        src_col = snapshot.require_column(slk, "source")
        tgt_col = snapshot.require_column(tlk, "target")
        cat = normalize_category(category)

        items = []
        i = start
        total = snapshot.raw_row_count
        while i < total:
            row = list(snapshot.raw_rows[i])
            entry = snapshot.entries[i]
            i += 1
            if cat and entry.category != cat:
                continue
            source_text = strip_invisible(cell(row, src_col))
            target_text = strip_invisible(cell(row, tgt_col))
            if not source_text or not target_text:
                continue
            items.append({
                "row_index": entry.row_index,
                "source_text": source_text,
                "target_text": target_text,
            })
            if len(items) >= limit:
                break

        return {
            "ok": True,
            "sheet": snapshot.sheet_name,
            "category": cat or "ALL",
            "source_lang": slk,
            "target_lang": tlk,
            "limit": limit,
            "count": len(items),
            "cursor": str(start),
            "cursor_next": str(i) if i < total else None,
            "items": items,
            "meta": {"glossary_loaded_at": snapshot.loaded_at, "raw_row_count": total},
        }

    async def apply_translations(
        self,
        entries: Sequence[Mapping[str, Any]],
        source_lang: str = "en-us",
        sheet: Optional[str] = None,
        category: Optional[str] = None,
        fill_only_empty: bool = True,
        allow_anchor_update: bool = False,
    ) -> dict[str, Any]:
        """Write translations for glossary rows back to the sheet.

        Each entry is ``{"source_text", "translations": {lang: text}}`` plus
        an optional ``row_index``. With a row index the row's source cell
        must still equal ``source_text``; without one the lowest matching
        row wins. The source and anchor language columns are only written
        when ``allow_anchor_update`` is set.
        """
        writer = self._require_writer()
        slk = self.settings.require_source_lang(source_lang)
        if not entries:
            raise ValidationError("entries must be a non-empty list.", reason="missing_entries")
        if len(entries) > MAX_APPLY_ENTRIES:
            raise ValidationError(f"entries may hold at most {MAX_APPLY_ENTRIES} items.", reason="too_many_entries")

        snapshot = await self.store.ensure_loaded(sheet)
        sheet_name = snapshot.sheet_name
        src_col = snapshot.require_column(slk, "source")
        categories = resolve_categories(snapshot.index, category)
        cat = normalize_category(category)
        term_map = merge_categories(snapshot.index, slk, categories)
        protected = {slk, self.settings.anchor_lang}

        updates: list[CellUpdate] = []
        results = []
        planned_rows: set[int] = set()

        for entry in entries:
            source_text = strip_invisible(entry.get("source_text", ""))
            if not source_text:
                results.append({"source_text": "", "status": "skipped", "reason": "empty_source_text"})
                continue

            chosen = self._locate_row(snapshot, entry.get("row_index"), source_text, src_col, cat, term_map)
            if isinstance(chosen, str):
                results.append({"source_text": source_text, "status": "skipped", "reason": chosen})
                continue

            row_index, key = chosen
            row = list(snapshot.row(row_index))
            updated = skipped = 0
            conflicts = []
            for raw_lang, raw_value in dict(entry.get("translations") or {}).items():
                lang = normalize_lang(raw_lang)
                value = str(raw_value if raw_value is not None else "").strip()
                if not lang or not value:
                    continue
                if lang in protected and not allow_anchor_update:
                    skipped += 1
                    continue
                col = snapshot.column(lang)
                if col is None:
                    skipped += 1
                    conflicts.append({"lang": lang, "reason": "missing_column"})
                    continue
                if fill_only_empty and cell(row, col).strip():
                    skipped += 1
                    continue
                updates.append(CellUpdate(range=f"{sheet_name}!{col_index_to_a1(col)}{row_index}", values=[[value]]))
                updated += 1

            if updated:
                planned_rows.add(row_index)
            status = "no_op"
            if updated and skipped:
                status = "partial_success"
            elif updated:
                status = "success"
            results.append({
                "source_text": source_text,
                "chosen": {"row_index": row_index, "key": key or None},
                "updated_cells_planned": updated,
                "skipped_cells": skipped,
                "conflicts": conflicts,
                "status": status,
            })

        updated_cells = 0
        updated_ranges: list[str] = []
        if updates:
            write = await writer.batch_write(updates)
            updated_cells = write.updated_cells
            updated_ranges = write.updated_ranges
            self.gate.mark(sheet_name, planned_rows)
            await self.store.reload(sheet_name)
            logger.info("Applied %d cells on %d rows of '%s'", updated_cells, len(planned_rows), sheet_name)

        return {
            "ok": True,
            "sheet": sheet_name,
            "fill_only_empty": fill_only_empty,
            "allow_anchor_update": allow_anchor_update,
            "planned_updates": len(updates),
            "updated_cells": updated_cells,
            "updated_ranges": updated_ranges,
            "results": results,
            "meta": {
                "recent_applied": len(planned_rows),
                "recent_applied_ttl_seconds": self.gate.ttl_seconds,
            },
        }

    @staticmethod
    def _locate_row(
        snapshot: GlossarySnapshot,
        row_index: Any,
        source_text: str,
        src_col: int,
        category: str,
        term_map: dict,
    ) -> Union[tuple[int, str], str]:
        """(row_index, key) of the row to update, or a skip reason."""
        if row_index is not None:
            try:
                ri = int(row_index)
            except (TypeError, ValueError):
                return f"row_index_invalid({row_index})"
            if ri < ROW_INDEX_OFFSET or ri > snapshot.raw_row_count + 1:
                return f"row_index_out_of_range({ri})"
            entry = snapshot.entry(ri)
            if category and entry.category != category:
                return f"row_category_mismatch({ri})"
            actual = strip_invisible(cell(list(snapshot.row(ri)), src_col))
            if actual != source_text:
                return f"row_source_mismatch(row_index={ri})"
            return ri, entry.key

        hits = term_map.get(source_text) or []
        if not hits:
            return "not_found"
        chosen = min(hits, key=lambda e: e.row_index)
        return chosen.row_index, chosen.key

    async def apply_masked(
        self,
        entries: Sequence[Mapping[str, Any]],
        target_lang: str,
        sheet: Optional[str] = None,
    ) -> dict[str, Any]:
        """Write masked texts into the sheet's ``<targetLang>-Masking`` column.

        Each entry is ``{"row_index": int >= 2, "masked_text": str}``. Blank
        texts are skipped. The sheet is reloaded after a successful write.

        Raises:
            ValidationError: bad entries, or no masking column for the
                target language
        """
        writer = self._require_writer()
        tlk = _require_target(target_lang)
        if not entries:
            raise ValidationError("entries must be a non-empty list.", reason="missing_entries")
        if len(entries) > MAX_MASK_APPLY_ENTRIES:
            raise ValidationError(
                f"entries may hold at most {MAX_MASK_APPLY_ENTRIES} items.", reason="too_many_entries"
            )

        snapshot = await self.store.ensure_loaded(sheet)
        sheet_name = snapshot.sheet_name
        col = masking_column(snapshot.header, tlk)
        if col is None:
            raise ValidationError(
                f"Sheet '{sheet_name}' has no '{target_lang}{MASKING_HEADER_SUFFIX}' column.",
                reason="missing_masking_column",
                extra={"sheet": sheet_name, "target_lang": tlk},
            )
        masking_header = snapshot.header[col]

        updates: list[CellUpdate] = []
        skipped = 0
        for i, entry in enumerate(entries):
            if not isinstance(entry, Mapping):
                raise ValidationError(f"entries[{i}] must be an object.", reason="invalid_entry")
            row_index = entry.get("row_index")
            if isinstance(row_index, bool) or not isinstance(row_index, int) or row_index < ROW_INDEX_OFFSET:
                raise ValidationError(
                    f"entries[{i}].row_index must be an integer >= {ROW_INDEX_OFFSET}.",
                    reason="invalid_row_index",
                    extra={"index": i, "row_index": row_index},
                )
            text = entry.get("masked_text")
            if text is None or not str(text).strip():
                skipped += 1
                continue
            updates.append(CellUpdate(
                range=f"{sheet_name}!{col_index_to_a1(col)}{row_index}",
                values=[[str(text)]],
            ))

        updated_cells = 0
        updated_ranges: list[str] = []
        if updates:
            write = await writer.batch_write(updates)
            updated_cells = write.updated_cells
            updated_ranges = write.updated_ranges
            await self.store.reload(sheet_name)
            logger.info("Wrote %d masked cells to '%s' of '%s'", updated_cells, masking_header, sheet_name)

        return {
            "ok": True,
            "sheet": sheet_name,
            "masking_header": masking_header,
            "planned_updates": len(updates),
            "skipped": skipped,
            "updated_cells": updated_cells,
            "updated_ranges": updated_ranges,
        }

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def run_batch(self, request: Union[BatchRequest, Mapping[str, Any]]) -> dict[str, Any]:
        if not isinstance(request, BatchRequest):
            try:
                request = BatchRequest(**dict(request))
            except TypeError as e:
                raise ValidationError(f"Invalid batch request: {e}", reason="invalid_request") from e
        result = await self.pipeline.run(request)
        return result.to_dict()

    def get_batch_anomalies(self, batch_id: str, offset: int = 0, limit: int = 200) -> dict[str, Any]:
        return self.batches.page_anomalies(batch_id, offset, limit)

    def get_batch_results(self, batch_id: str, offset: int = 0, limit: int = 200) -> dict[str, Any]:
        return self.batches.page_results(batch_id, offset, limit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def reload(self, sheet: Optional[str] = None) -> dict[str, Any]:
        snapshot = await self.store.reload(sheet)
        rules = await self.store.ensure_rules_loaded(force_reload=True)
        return {
            "ok": True,
            "sheet": snapshot.sheet_name,
            "glossary_loaded_at": snapshot.loaded_at,
            "raw_row_count": snapshot.raw_row_count,
            "categories_count": len(snapshot.index),
            "rules_count": len(rules.rules),
        }

    def status(self) -> dict[str, Any]:
        return {
            "ok": True,
            "version": __version__,
            "settings": self.settings.to_dict(),
            "store": self.store.status(),
            "batches": len(self.batches),
            "translator": self._translator.name if self._translator is not None else None,
        }
