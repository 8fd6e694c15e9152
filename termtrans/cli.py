"""
Command-line interface for termtrans.

Every command works on a CSV workbook: a directory holding one
``<sheet>.csv`` file per sheet (``Glossary.csv``, ``Rules.csv``).

Provides commands for:
- Glossary substitution and masking of ad-hoc texts
- Listing pending rows and reviewing filled pairs
- Running the batch pipeline and paging through its output
- Managing API keys

Usage:
    termtrans replace "Buy a Red Potion" --source en-US --target ko-KR
    termtrans mask "HP is low" --source en-US --target ko-KR
    termtrans batch --source en-US --target ja-JP --upload
    termtrans anomalies b_18c2f3a9e10_3fa2c1
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Coroutine, List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from termtrans import __version__
from termtrans.config import DEFAULT_CHUNK_SIZE, Settings
from termtrans.errors import TermTransError, ValidationError
from termtrans.models import BatchRecord
from termtrans.pipeline import BatchRequest
from termtrans.service import GlossaryService
from termtrans.table import CsvWorkbook
from termtrans.translate.base import create_translator

app = typer.Typer(
    name="termtrans",
    help="termtrans: terminology-constrained translation for spreadsheet glossaries",
    add_completion=False,
)
console = Console()

BATCH_DIR = ".termtrans-batches"


class _State:
    workbook: Path = Path(".")
    backend: str = "openai"
    as_json: bool = False


state = _State()


def version_callback(value: bool):
    if value:
        console.print(f"termtrans v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    workbook: Path = typer.Option(
        Path("."), "--workbook", "-w",
        envvar="TERMTRANS_WORKBOOK",
        help="Directory with one CSV file per sheet",
    ),
    backend: str = typer.Option(
        "openai", "--translator",
        help="Translator backend: openai, dummy, echo",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress and debug details"),
):
    """termtrans: glossary substitution, masking and batch translation."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    state.workbook = workbook
    state.backend = backend
    state.as_json = as_json


def _service() -> GlossaryService:
    settings = Settings.from_env()
    table = CsvWorkbook(state.workbook)
    try:
        translator = create_translator(state.backend, settings=settings)
    except ValidationError as e:
        console.print(f"[red]Invalid request:[/] {escape(e.message)} [dim]({e.reason})[/]")
        raise typer.Exit(2)
    return GlossaryService(settings, reader=table, writer=table, translator=translator)


def _run(coro: Coroutine) -> Any:
    """Run a service coroutine, turning termtrans errors into exit codes."""
    try:
        return asyncio.run(coro)
    except ValidationError as e:
        console.print(f"[red]Invalid request:[/] {escape(e.message)} [dim]({e.reason})[/]")
        raise typer.Exit(2)
    except TermTransError as e:
        console.print(f"[red]Error:[/] {escape(e.message)} [dim]({e.reason})[/]")
        if e.extra:
            console.print(f"[dim]{escape(json.dumps(e.extra, ensure_ascii=False))}[/]")
        raise typer.Exit(1)


def _call(func, *args, **kwargs) -> Any:
    """Synchronous counterpart of _run for non-async service calls."""
    try:
        return func(*args, **kwargs)
    except ValidationError as e:
        console.print(f"[red]Invalid request:[/] {escape(e.message)} [dim]({e.reason})[/]")
        raise typer.Exit(2)
    except TermTransError as e:
        console.print(f"[red]Error:[/] {escape(e.message)} [dim]({e.reason})[/]")
        raise typer.Exit(1)


def _emit_json(data: Any) -> bool:
    if state.as_json:
        console.print_json(data=data)
        return True
    return False


# ----------------------------------------------------------------------
# Batch persistence between CLI invocations
# ----------------------------------------------------------------------

def _batch_path(batch_id: str) -> Path:
    return state.workbook / BATCH_DIR / f"{batch_id}.json"


def _save_batch(service: GlossaryService, batch_id: str) -> Path:
    record = service.batches.get(batch_id)
    path = _batch_path(batch_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = asdict(record)
    payload["saved_at"] = time.time()
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def _load_batch(service: GlossaryService, batch_id: str) -> None:
    path = _batch_path(batch_id)
    if not path.exists():
        return
    payload = json.loads(path.read_text(encoding="utf-8"))
    age = time.time() - float(payload.pop("saved_at", 0))
    payload.pop("created_at", None)
    payload.pop("ttl", None)
    service.batches.put(BatchRecord(**payload), age=age)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

@app.command()
def replace(
    texts: List[str] = typer.Argument(..., help="Texts to rewrite"),
    source_lang: str = typer.Option("en-US", "--source", "-s", help="Source language"),
    target_lang: str = typer.Option(..., "--target", "-t", help="Target language"),
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Glossary sheet"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Restrict to one category"),
):
    """Substitute glossary terms (longest term first)."""
    service = _service()
    out = _run(service.replace_texts(texts, source_lang, target_lang, sheet=sheet, category=category))
    if _emit_json(out):
        return

    for line in out["texts"]:
        console.print(line, markup=False)

    table = Table(title=f"Replacements ({out['summary']['replaced_total']})")
    table.add_column("Line", style="dim")
    table.add_column("From", style="cyan")
    table.add_column("To", style="green")
    table.add_column("Count")
    table.add_column("Row", style="dim")
    for per_line in out.get("logs", []):
        for log in per_line["logs"]:
            table.add_row(
                str(per_line["index"]), escape(log["from"]), escape(log["to"]), str(log["count"]),
                str(log["chosen"]["row_index"]),
            )
    console.print(table)

    rule_hits = [(r["index"], h) for r in out.get("rule_logs", []) for h in r["rule_logs"]]
    if rule_hits:
        console.print("\n[bold]Rules that would apply:[/]")
        for index, hit in rule_hits:
            console.print(f"  [{index}] {escape(hit['rule_key'])}: [cyan]{escape(hit['from'])}[/] → [green]{escape(hit['to']) or '-'}[/]")


@app.command()
def mask(
    texts: List[str] = typer.Argument(..., help="Texts to mask"),
    source_lang: str = typer.Option("en-US", "--source", "-s", help="Source language"),
    target_lang: str = typer.Option(..., "--target", "-t", help="Target language"),
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Glossary sheet"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Restrict to one category"),
    restore_strategy: str = typer.Option(
        "glossaryTarget", "--restore",
        help="Restore to 'glossaryTarget' or 'anchor'",
    ),
    ignore_case: bool = typer.Option(False, "--ignore-case", help="Case-insensitive matching"),
    no_word_boundary: bool = typer.Option(False, "--no-word-boundary", help="Match inside words"),
):
    """Replace glossary terms with {mask:N} tokens."""
    service = _service()
    out = _run(service.mask(
        texts, source_lang, target_lang,
        sheet=sheet,
        category=category,
        case_sensitive=not ignore_case,
        word_boundary=not no_word_boundary,
        restore_strategy=restore_strategy,
    ))
    if _emit_json(out):
        return

    for line in out["texts_masked"]:
        console.print(line, markup=False)

    table = Table(title=f"Masks ({out['meta']['matched_mask_ids']})")
    table.add_column("Id", style="cyan")
    table.add_column("Anchor")
    table.add_column("Restore", style="green")
    table.add_column("Row", style="dim")
    for m in out.get("masks", []):
        table.add_row(str(m["id"]), escape(m["anchor"]), escape(m["restore"]), str(m["glossary_row_index"] or "-"))
    console.print(table)


@app.command()
def pending(
    target_langs: List[str] = typer.Option(..., "--target", "-t", help="Target language (repeatable)"),
    source_lang: str = typer.Option("en-US", "--source", "-s", help="Source language"),
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Glossary sheet"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Restrict to one category"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum rows (1-500)"),
):
    """List rows still missing a target translation."""
    service = _service()
    out = _run(service.pending_next(source_lang, target_langs, sheet=sheet, category=category, limit=limit))
    if _emit_json(out):
        return

    table = Table(title=f"Pending rows in {out['sheet']} ({out['count']})")
    table.add_column("Row", style="dim")
    table.add_column("Source", style="cyan")
    table.add_column("Missing", style="yellow")
    for item in out["items"]:
        table.add_row(str(item["row_index"]), escape(item["source_text"]), ", ".join(item["missing_langs"]))
    console.print(table)


@app.command()
def qa(
    target_lang: str = typer.Option(..., "--target", "-t", help="Target language"),
    source_lang: str = typer.Option("en-US", "--source", "-s", help="Source language"),
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Glossary sheet"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Restrict to one category"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum rows (1-500)"),
    cursor: Optional[str] = typer.Option(None, "--cursor", help="Resume position from a previous page"),
):
    """Page through filled source/target pairs for review."""
    service = _service()
    out = _run(service.qa_next(source_lang, target_lang, sheet=sheet, category=category, limit=limit, cursor=cursor))
    if _emit_json(out):
        return

    table = Table(title=f"{out['source_lang']} → {out['target_lang']} ({out['count']})")
    table.add_column("Row", style="dim")
    table.add_column("Source", style="cyan")
    table.add_column("Target", style="green")
    for item in out["items"]:
        table.add_row(str(item["row_index"]), escape(item["source_text"]), escape(item["target_text"]))
    console.print(table)
    if out["cursor_next"] is not None:
        console.print(f"[dim]Next page: --cursor {out['cursor_next']}[/]")


@app.command()
def apply(
    entries_file: Path = typer.Argument(..., help="JSON file with a list of entries"),
    source_lang: str = typer.Option("en-US", "--source", "-s", help="Source language"),
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Glossary sheet"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Restrict to one category"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Also replace non-empty cells"),
    allow_anchor_update: bool = typer.Option(False, "--allow-anchor-update", help="Allow writing source/anchor columns"),
):
    """Write reviewed translations back to the sheet.

    Each entry: {"source_text": ..., "row_index": optional, "translations": {lang: text}}
    """
    try:
        entries = json.loads(entries_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error:[/] cannot read {entries_file}: {e}")
        raise typer.Exit(2)

    service = _service()
    out = _run(service.apply_translations(
        entries, source_lang,
        sheet=sheet,
        category=category,
        fill_only_empty=not overwrite,
        allow_anchor_update=allow_anchor_update,
    ))
    if _emit_json(out):
        return

    table = Table(title=f"Applied {out['updated_cells']} cell(s)")
    table.add_column("Source", style="cyan")
    table.add_column("Row", style="dim")
    table.add_column("Status")
    table.add_column("Detail", style="dim")
    for r in out["results"]:
        row = str(r["chosen"]["row_index"]) if "chosen" in r else "-"
        detail = r.get("reason") or f"{r.get('updated_cells_planned', 0)} updated, {r.get('skipped_cells', 0)} skipped"
        color = {"success": "green", "partial_success": "yellow"}.get(r["status"], "dim")
        table.add_row(escape(r["source_text"]), row, f"[{color}]{r['status']}[/]", detail)
    console.print(table)


@app.command("apply-masked")
def apply_masked(
    entries_file: Path = typer.Argument(..., help="JSON file with a list of entries"),
    target_lang: str = typer.Option(..., "--target", "-t", help="Language of the masking column"),
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Glossary sheet"),
):
    """Write masked texts into the <target>-Masking column.

    Each entry: {"row_index": 2.., "masked_text": ...}
    """
    try:
        entries = json.loads(entries_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error:[/] cannot read {entries_file}: {e}")
        raise typer.Exit(2)

    service = _service()
    out = _run(service.apply_masked(entries, target_lang, sheet=sheet))
    if _emit_json(out):
        return

    console.print(
        f"[green]✓[/] {out['updated_cells']} cell(s) written to "
        f"[cyan]{escape(out['masking_header'])}[/] of {escape(out['sheet'])}"
        f" ({out['skipped']} blank skipped)"
    )
    for r in out["updated_ranges"]:
        console.print(f"  [dim]{escape(r)}[/]")


@app.command()
def batch(
    target_lang: str = typer.Option(..., "--target", "-t", help="Target language"),
    source_lang: str = typer.Option("en-US", "--source", "-s", help="Source language"),
    sheet: str = typer.Option("", "--sheet", help="Glossary sheet"),
    category: str = typer.Option("", "--category", "-c", help="Restrict to one category"),
    limit: int = typer.Option(200, "--limit", "-n", help="Maximum rows (1-2000)"),
    upload: bool = typer.Option(False, "--upload", help="Write translations back to the sheet"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Also translate rows with a target"),
    chunk_size: int = typer.Option(DEFAULT_CHUNK_SIZE, "--chunk-size", help="Records per translator call"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Translator model override"),
    exclude: List[int] = typer.Option([], "--exclude", help="Row index to skip (repeatable)"),
    debug: bool = typer.Option(False, "--debug", help="Larger diagnostic samples"),
):
    """Translate pending rows with glossary and rule preprocessing."""
    service = _service()
    request = BatchRequest(
        source_lang=source_lang,
        target_lang=target_lang,
        sheet=sheet,
        category=category,
        limit=limit,
        fill_only_empty=not overwrite,
        upload=upload,
        exclude_row_indexes=list(exclude),
        chunk_size=chunk_size,
        model=model,
        debug=debug,
    )
    out = _run(service.run_batch(request))
    _save_batch(service, out["batch_id"])
    if _emit_json(out):
        return

    summary = out["summary"]
    table = Table(title=f"Batch {out['batch_id']}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for field_name in ("sheet", "category", "source_lang", "target_lang", "planned",
                       "translated", "fallbacks", "uploaded", "anomalies"):
        table.add_row(field_name, str(summary.get(field_name)))
    console.print(table)

    if "upload_error" in summary:
        console.print(f"[red]Upload failed:[/] {summary['upload_error']['error']}")

    if out.get("diagnostics"):
        console.print(f"[yellow]{out.get('message')}[/]")
        diag = {k: v for k, v in out["diagnostics"].items() if k != "samples"}
        for k, v in diag.items():
            console.print(f"  {k}: {v}")

    sample = out["anomalies"]["sample"]
    if sample:
        _anomaly_table(sample, f"Anomalies (first {len(sample)} of {out['anomalies']['count']})")
        console.print(f"[dim]More: termtrans anomalies {out['batch_id']}[/]")


def _anomaly_table(items: list[dict], title: str) -> None:
    table = Table(title=title)
    table.add_column("Row", style="dim")
    table.add_column("Type", style="yellow")
    table.add_column("Processed")
    table.add_column("Translated", style="green")
    for a in items:
        table.add_row(str(a["row_index"]), a["type"], escape(a["processed_text"]), escape(a["translated_text"]))
    console.print(table)


@app.command()
def anomalies(
    batch_id: str = typer.Argument(..., help="Batch id printed by 'termtrans batch'"),
    offset: int = typer.Option(0, "--offset", help="First item"),
    limit: int = typer.Option(200, "--limit", "-n", help="Page size (1-1000)"),
):
    """Show the anomalies of a stored batch."""
    service = _service()
    _load_batch(service, batch_id)
    out = _call(service.get_batch_anomalies, batch_id, offset, limit)
    if _emit_json(out):
        return
    _anomaly_table(out["items"], f"Anomalies {offset}-{offset + len(out['items'])} of {out['total']}")


@app.command()
def results(
    batch_id: str = typer.Argument(..., help="Batch id printed by 'termtrans batch'"),
    offset: int = typer.Option(0, "--offset", help="First item"),
    limit: int = typer.Option(200, "--limit", "-n", help="Page size (1-1000)"),
):
    """Show the per-row results of a stored batch."""
    service = _service()
    _load_batch(service, batch_id)
    out = _call(service.get_batch_results, batch_id, offset, limit)
    if _emit_json(out):
        return

    table = Table(title=f"Results {offset}-{offset + len(out['items'])} of {out['total']}")
    table.add_column("Row", style="dim")
    table.add_column("Source", style="cyan")
    table.add_column("Processed")
    table.add_column("Translated", style="green")
    table.add_column("Fallback")
    for r in out["items"]:
        table.add_row(
            str(r["row_index"]), escape(r["source_text"]), escape(r["processed_text"]), escape(r["translated_text"]),
            "[red]yes[/]" if r["fallback_used"] else "no",
        )
    console.print(table)


@app.command()
def status(
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Glossary sheet to load"),
):
    """Load the glossary and rules and show their state."""
    service = _service()
    reloaded = _run(service.reload(sheet))
    out = service.status()
    if _emit_json({"reload": reloaded, **out}):
        return

    table = Table(title=f"termtrans v{__version__}")
    table.add_column("Item", style="cyan")
    table.add_column("Value")
    table.add_row("Workbook", str(state.workbook.resolve()))
    table.add_row("Sheet", reloaded["sheet"])
    table.add_row("Loaded at", reloaded["glossary_loaded_at"])
    table.add_row("Rows", str(reloaded["raw_row_count"]))
    table.add_row("Categories", str(reloaded["categories_count"]))
    table.add_row("Rules", str(reloaded["rules_count"]))
    table.add_row("Source languages", ", ".join(out["settings"]["source_langs"]))
    table.add_row("Translator", str(out["translator"]))
    console.print(table)


@app.command()
def keys(
    action: str = typer.Argument(..., help="Action: list, set, get, delete, status"),
    service: Optional[str] = typer.Argument(None, help="Service name (openai)"),
):
    """Manage API keys securely.

    Examples:
        termtrans keys list              # List all keys
        termtrans keys set openai        # Set OpenAI key
        termtrans keys status openai     # Check OpenAI key status
        termtrans keys delete openai     # Delete OpenAI key
    """
    from termtrans.keys import KeyManager, SERVICES

    km = KeyManager()

    if action == "list":
        table = Table(title="API Keys Status")
        table.add_column("Service", style="cyan")
        table.add_column("Status", style="green")
        table.add_column("Source", style="yellow")
        table.add_column("Value", style="dim")

        for key_info in km.list_keys():
            status_text = "✓ Set" if key_info.is_set else "✗ Not set"
            status_color = "green" if key_info.is_set else "red"
            table.add_row(
                key_info.service,
                f"[{status_color}]{status_text}[/]",
                key_info.source,
                key_info.masked_value if key_info.is_set else "-",
            )

        console.print(table)
        console.print("\n[dim]Priority: env > keychain > config file[/]")
        return

    if not service:
        console.print("[red]Error:[/] Service name required")
        console.print(f"Available services: {', '.join(SERVICES.keys())}")
        raise typer.Exit(1)

    if action == "set":
        key = typer.prompt(f"Enter API key for {service}", hide_input=True)
        if not key.strip():
            console.print("[red]Error:[/] Key cannot be empty")
            raise typer.Exit(1)

        storage = km.set_key(service, key.strip())
        console.print(f"[green]✓[/] API key for {service} saved to {storage}")
        if storage == "config":
            console.print(f"[yellow]Note:[/] Key stored in local file ({km.config_file})")

    elif action == "get":
        key = km.get_key(service)
        if key:
            console.print(f"[green]✓[/] Key found: {km._mask_key(key)}")
        else:
            console.print(f"[red]✗[/] No key found for {service}")
            console.print(f"Set with: [cyan]termtrans keys set {service}[/]")

    elif action == "status":
        key_info = km.get_key_info(service)
        if key_info.is_set:
            console.print(f"[green]✓[/] API key for {service} is set")
            console.print(f"    Source: {key_info.source}")
            console.print(f"    Value: {key_info.masked_value}")
        else:
            console.print(f"[red]✗[/] No API key found for {service}")
            console.print("\nTo set the key:")
            console.print(f"  Option 1: [cyan]termtrans keys set {service}[/]")
            console.print(f"  Option 2: [cyan]export {KeyManager.env_var(service)}='your-key-here'[/]")

    elif action == "delete":
        if km.delete_key(service):
            console.print(f"[green]✓[/] API key for {service} deleted")
        else:
            console.print(f"[yellow]⚠[/] No key found to delete for {service}")

    else:
        console.print(f"[red]Error:[/] Unknown action '{action}'")
        console.print("Available actions: list, set, get, delete, status")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
