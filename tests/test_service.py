"""
Tests for GlossaryService operations.

Run with: pytest tests/test_service.py -v
"""

import asyncio

import pytest

from termtrans.errors import NotFoundError, ValidationError
from termtrans.service import GlossaryService
from termtrans.table import MemoryTable

from conftest import GLOSSARY, RULES


def run(coro):
    return asyncio.run(coro)


class TestReplaceTexts:
    """Tests for replace_texts()."""

    def test_red_potion(self, service):
        out = run(service.replace_texts(["Buy a Red Potion"], "en-US", "ko-KR"))
        assert out["texts"] == ["Buy a 레드 포션"]
        log = out["logs"][0]["logs"][0]
        assert log["chosen"]["row_index"] == 5
        assert out["summary"]["replaced_total"] == 1
        assert out["category"] == "ALL"

    def test_korean_source(self, service):
        out = run(service.replace_texts(["레드 포션 구매"], "ko-KR", "en-US"))
        assert out["texts"] == ["Red Potion 구매"]

    def test_category_scope(self, service):
        out = run(service.replace_texts(["Sword and Shield"], "en-US", "ko-KR", category="gear"))
        assert out["texts"] == ["Sword and 방패"]

    def test_rules_reported_not_applied(self, service):
        """Rule logs describe matches while the text is left to the glossary."""
        out = run(service.replace_texts(["Heals +50 HP"], "en-US", "ja-JP"))
        assert out["texts"] == ["Heals +50 HP"]
        assert out["rule_logs"][0]["rule_logs"][0]["rule_key"] == "heal_amount"
        assert out["summary"]["matched_rules"] == 1

    def test_category_rules_need_category(self, service):
        """Category-scoped rules are only reported for that category."""
        plain = run(service.replace_texts(["Blade"], "en-US", "ja-JP"))
        scoped = run(service.replace_texts(["Blade"], "en-US", "ja-JP", category="item"))
        assert plain["rule_logs"][0]["rule_logs"] == []
        assert scoped["rule_logs"][0]["rule_logs"][0]["rule_key"] == "blade_item"

    def test_without_logs(self, service):
        out = run(service.replace_texts(["HP"], "en-US", "ko-KR", include_logs=False))
        assert "logs" not in out and "rule_logs" not in out
        assert out["texts"] == ["체력"]

    def test_validation(self, service):
        with pytest.raises(ValidationError) as exc:
            run(service.replace_texts([], "en-US", "ko-KR"))
        assert exc.value.reason == "missing_texts"
        with pytest.raises(ValidationError) as exc:
            run(service.replace_texts(["x"], "fr-FR", "ko-KR"))
        assert exc.value.reason == "unsupported_source_lang"
        with pytest.raises(ValidationError) as exc:
            run(service.replace_texts(["x"], "en-US", "zh-CN"))
        assert exc.value.reason == "missing_target_column"
        with pytest.raises(NotFoundError):
            run(service.replace_texts(["x"], "en-US", "ko-KR", category="weapons"))

    def test_no_source_terms(self, settings):
        table = MemoryTable({"Glossary": [["KEY", "ko-KR", "en-US"], ["a", "가", ""]]})
        service = GlossaryService(settings, reader=table)
        with pytest.raises(ValidationError) as exc:
            run(service.replace_texts(["x"], "en-US", "ko-KR"))
        assert exc.value.reason == "no_source_terms"


class TestMask:
    """Tests for mask() and unmask()."""

    def test_mask_and_restore(self, service):
        out = run(service.mask(["Red Potion and HP"], "en-US", "ko-KR"))
        assert out["texts_masked"] == ["{mask:1} and {mask:2}"]
        masks = out["masks"]
        assert masks[0] == {"id": 1, "anchor": "Red Potion", "restore": "레드 포션", "glossary_row_index": 5}
        assert masks[1]["restore"] == "체력"
        assert service.unmask("{mask:2}와 {mask:1}", masks) == "체력와 레드 포션"

    def test_lowest_row_restores(self, service):
        """Duplicate anchors restore from the lowest row, even when it is blank."""
        out = run(service.mask(["Potion"], "en-US", "ja-JP"))
        mask = out["masks"][0]
        assert mask["glossary_row_index"] == 3
        assert mask["restore"] == "Potion"

    def test_anchor_strategy(self, service):
        out = run(service.mask(["Shield"], "en-US", "ko-KR", restore_strategy="anchor"))
        assert out["masks"][0]["restore"] == "Shield"

    def test_word_boundary_flag(self, service):
        out = run(service.mask(["HPs"], "en-US", "ko-KR", word_boundary=False))
        assert out["texts_masked"] == ["{mask:1}s"]
        out = run(service.mask(["HPs"], "en-US", "ko-KR"))
        assert out["texts_masked"] == ["HPs"]
        assert out["meta"]["matched_mask_ids"] == 0

    def test_invalid_strategy(self, service):
        with pytest.raises(ValidationError) as exc:
            run(service.mask(["x"], "en-US", "ko-KR", restore_strategy="nope"))
        assert exc.value.reason == "invalid_restore_strategy"

    def test_unmask_rejects_bad_records(self, service):
        with pytest.raises(ValidationError) as exc:
            service.unmask("{mask:1}", [{"anchor": "HP"}])
        assert exc.value.reason == "invalid_mask"


class TestPendingAndQa:
    """Tests for pending_next() and qa_next()."""

    def test_pending(self, service):
        out = run(service.pending_next("en-US", ["ja-JP"]))
        assert [i["row_index"] for i in out["items"]] == [3, 4, 5, 7]
        assert out["items"][0] == {"row_index": 3, "source_text": "Potion", "missing_langs": ["ja-jp"]}

    def test_pending_several_targets(self, service):
        out = run(service.pending_next("en-US", ["ja-JP", "ko-KR"], limit=10))
        missing = {i["row_index"]: i["missing_langs"] for i in out["items"]}
        assert missing[6] == ["ko-kr"]
        assert 2 not in missing

    def test_pending_filters(self, service):
        out = run(service.pending_next("en-US", ["ja-JP"], category="item", exclude_row_indexes=[3], limit=1))
        assert [i["row_index"] for i in out["items"]] == [5]

    def test_pending_validation(self, service):
        with pytest.raises(ValidationError) as exc:
            run(service.pending_next("en-US", []))
        assert exc.value.reason == "missing_target_langs"
        with pytest.raises(ValidationError) as exc:
            run(service.pending_next("en-US", ["ja-JP"], limit=501))
        assert exc.value.reason == "invalid_limit"

    def test_qa_cursor(self, service):
        first = run(service.qa_next("en-US", "ja-JP", limit=1))
        assert first["items"] == [{"row_index": 2, "source_text": "Sword", "target_text": "剣"}]
        second = run(service.qa_next("en-US", "ja-JP", limit=1, cursor=first["cursor_next"]))
        assert second["items"][0]["row_index"] == 6
        third = run(service.qa_next("en-US", "ja-JP", limit=1, cursor=second["cursor_next"]))
        assert third["items"] == []
        assert third["cursor_next"] is None

    def test_qa_invalid_cursor(self, service):
        with pytest.raises(ValidationError) as exc:
            run(service.qa_next("en-US", "ja-JP", cursor="abc"))
        assert exc.value.reason == "invalid_cursor"


class TestApplyTranslations:
    """Tests for apply_translations()."""

    def test_apply_by_source_text(self, service, table):
        entries = [{"source_text": "Shield", "translations": {"ja-JP": "盾"}}]
        out = run(service.apply_translations(entries, "en-US"))
        assert out["updated_cells"] == 1
        assert out["results"][0]["status"] == "success"
        assert out["results"][0]["chosen"] == {"row_index": 7, "key": "shield"}
        assert table.sheets["Glossary"][6][4] == "盾"
        pending = run(service.pending_next("en-US", ["ja-JP"]))
        assert 7 not in [i["row_index"] for i in pending["items"]]

    def test_lowest_row_wins(self, service, table):
        entries = [{"source_text": "Potion", "translations": {"ja-JP": "ポーション"}}]
        out = run(service.apply_translations(entries, "en-US"))
        assert out["results"][0]["chosen"]["row_index"] == 3

    def test_fill_only_empty(self, service):
        entries = [{"source_text": "Sword", "translations": {"ja-JP": "ソード"}}]
        out = run(service.apply_translations(entries, "en-US"))
        assert out["results"][0]["status"] == "no_op"
        assert out["results"][0]["skipped_cells"] == 1
        out = run(service.apply_translations(entries, "en-US", fill_only_empty=False))
        assert out["results"][0]["status"] == "success"

    def test_protected_columns(self, service):
        """Source and anchor columns need allow_anchor_update."""
        entries = [{"source_text": "Shield", "translations": {"ko-KR": "실드", "ja-JP": "盾"}}]
        out = run(service.apply_translations(entries, "en-US"))
        assert out["results"][0]["status"] == "partial_success"
        out = run(service.apply_translations(entries, "en-US", fill_only_empty=False, allow_anchor_update=True))
        assert out["results"][0]["updated_cells_planned"] == 2

    def test_row_index_checks(self, service):
        entries = [
            {"source_text": "Shield", "row_index": 5, "translations": {"ja-JP": "盾"}},
            {"source_text": "Shield", "row_index": 99, "translations": {"ja-JP": "盾"}},
            {"source_text": "Shield", "row_index": "x", "translations": {"ja-JP": "盾"}},
            {"source_text": "Nothing", "translations": {"ja-JP": "無"}},
            {"source_text": "", "translations": {"ja-JP": "無"}},
        ]
        out = run(service.apply_translations(entries, "en-US"))
        reasons = [r["reason"] for r in out["results"]]
        assert reasons == [
            "row_source_mismatch(row_index=5)",
            "row_index_out_of_range(99)",
            "row_index_invalid(x)",
            "not_found",
            "empty_source_text",
        ]
        assert out["updated_cells"] == 0

    def test_missing_column_conflict(self, service):
        entries = [{"source_text": "Shield", "translations": {"zh-CN": "盾牌"}}]
        out = run(service.apply_translations(entries, "en-US"))
        assert out["results"][0]["conflicts"] == [{"lang": "zh-cn", "reason": "missing_column"}]

    def test_requires_writer(self, settings, table):
        service = GlossaryService(settings, reader=table)
        with pytest.raises(ValidationError) as exc:
            run(service.apply_translations([{"source_text": "Shield"}], "en-US"))
        assert exc.value.reason == "writer_unavailable"


class TestApplyMasked:
    """Tests for apply_masked()."""

    @pytest.fixture
    def masked_table(self):
        grid = [row + [""] for row in GLOSSARY]
        grid[0][-1] = "ja-JP-Masking"
        return MemoryTable({"Glossary": grid, "Rules": RULES})

    @pytest.fixture
    def masked_service(self, settings, masked_table, translator):
        return GlossaryService(settings, reader=masked_table, writer=masked_table, translator=translator)

    def test_writes_masking_column(self, masked_service, masked_table):
        entries = [
            {"row_index": 5, "masked_text": "{mask:1} x3"},
            {"row_index": 3, "masked_text": "  "},
        ]
        out = run(masked_service.apply_masked(entries, "ja_jp"))
        assert out["masking_header"] == "ja-JP-Masking"
        assert out["planned_updates"] == 1
        assert out["skipped"] == 1
        assert out["updated_cells"] == 1
        assert out["updated_ranges"] == ["Glossary!G5"]
        assert masked_table.sheets["Glossary"][4][6] == "{mask:1} x3"

    def test_masking_column_is_not_a_language(self, masked_service):
        snapshot = run(masked_service.store.ensure_loaded())
        assert "ja-jp-masking" not in snapshot.lang_index
        assert snapshot.column("ja-JP") == 4

    def test_missing_column(self, service):
        with pytest.raises(ValidationError) as exc:
            run(service.apply_masked([{"row_index": 2, "masked_text": "x"}], "ja-JP"))
        assert exc.value.reason == "missing_masking_column"

    def test_entry_validation(self, masked_service):
        with pytest.raises(ValidationError) as exc:
            run(masked_service.apply_masked([], "ja-JP"))
        assert exc.value.reason == "missing_entries"
        for bad in (1, "3", 2.0, True, None):
            with pytest.raises(ValidationError) as exc:
                run(masked_service.apply_masked([{"row_index": bad, "masked_text": "x"}], "ja-JP"))
            assert exc.value.reason == "invalid_row_index"
        too_many = [{"row_index": 2, "masked_text": "x"}] * 2001
        with pytest.raises(ValidationError) as exc:
            run(masked_service.apply_masked(too_many, "ja-JP"))
        assert exc.value.reason == "too_many_entries"

    def test_requires_writer(self, settings, masked_table):
        service = GlossaryService(settings, reader=masked_table)
        with pytest.raises(ValidationError) as exc:
            run(service.apply_masked([{"row_index": 2, "masked_text": "x"}], "ja-JP"))
        assert exc.value.reason == "writer_unavailable"


class TestBatchesAndStatus:
    def test_run_batch_from_dict(self, service):
        out = run(service.run_batch({"source_lang": "en-US", "target_lang": "ja-JP"}))
        assert out["ok"] and out["summary"]["planned"] == 4
        page = service.get_batch_results(out["batch_id"], 0, 2)
        assert page["total"] == 4
        assert len(page["items"]) == 2
        anomalies = service.get_batch_anomalies(out["batch_id"])
        assert anomalies["total"] == out["anomalies"]["count"]

    def test_run_batch_bad_field(self, service):
        with pytest.raises(ValidationError):
            run(service.run_batch({"source_lang": "en-US", "target_lang": "ja-JP", "colour": "red"}))

    def test_reload_and_status(self, service):
        out = run(service.reload())
        assert out["raw_row_count"] == 7
        assert out["rules_count"] == 3
        status = service.status()
        assert status["translator"] == "dummy-prefix"
        assert status["store"]["glossary"][0]["sheet"] == "Glossary"

    def test_reader_required(self, settings):
        with pytest.raises(ValueError):
            GlossaryService(settings)
