"""
Tabular data collaborators (read / write of sheet cells).

The core only depends on two operations:

    read_range(range_spec) -> TableData(header, rows)
    batch_write(updates)   -> WriteResult(updated_cells, updated_ranges)

Ranges use A1 notation (``Glossary!A:Z`` for reads, ``Glossary!C5`` for
single-cell writes). Data row N (0-based, after the header) is sheet row
N + 2.

Two implementations ship with the package:
- MemoryTable: dict-backed sheets, used by tests and embedding callers
- CsvWorkbook: a directory with one ``<sheet>.csv`` file per sheet
"""

from __future__ import annotations

import asyncio
import csv
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from termtrans.errors import ExternalServiceError, ValidationError
from termtrans.utils import a1_to_col_index

logger = logging.getLogger(__name__)

_CELL_RE = re.compile(r"^([A-Za-z]+)(\d+)$")


@dataclass
class TableData:
    header: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)


@dataclass
class CellUpdate:
    """One A1-addressed write (``values`` is a 2D block, usually [[text]])."""
    range: str
    values: list[list[str]]


@dataclass
class WriteResult:
    updated_cells: int = 0
    updated_ranges: list[str] = field(default_factory=list)


def sheet_range(sheet: str, columns: str = "A:Z") -> str:
    return f"{sheet}!{columns}"


def split_range(range_spec: str) -> tuple[str, str]:
    """Split ``Sheet!B5`` into ('Sheet', 'B5')."""
    if "!" not in range_spec:
        return range_spec.strip(), ""
    sheet, _, addr = range_spec.rpartition("!")
    return sheet.strip().strip("'"), addr.strip()


def parse_cell(addr: str) -> tuple[int, int]:
    """Parse ``B5`` into (row_index=5, col_index=1)."""
    m = _CELL_RE.match(addr)
    if not m:
        raise ValidationError(f"Unsupported cell address: {addr!r}", reason="invalid_cell_address")
    return int(m.group(2)), a1_to_col_index(m.group(1))


class TableReader(ABC):
    @abstractmethod
    async def read_range(self, range_spec: str) -> TableData:
        ...


class TableWriter(ABC):
    @abstractmethod
    async def batch_write(self, updates: list[CellUpdate]) -> WriteResult:
        ...


class _GridTable(TableReader, TableWriter):
    """Shared grid logic: sheets held as header + rows lists."""

    def _load_grid(self, sheet: str) -> Optional[list[list[str]]]:
        raise NotImplementedError

    def _store_grid(self, sheet: str, grid: list[list[str]]) -> None:
        raise NotImplementedError

    def _read(self, range_spec: str) -> TableData:
        sheet, _ = split_range(range_spec)
        grid = self._load_grid(sheet)
        if not grid:
            return TableData()
        header = [str(h if h is not None else "").strip() for h in grid[0]]
        rows = [[str(c if c is not None else "") for c in row] for row in grid[1:]]
        return TableData(header=header, rows=rows)

    def _write(self, updates: Iterable[CellUpdate]) -> WriteResult:
        by_sheet: dict[str, list[tuple[int, int, list[list[str]], str]]] = {}
        for upd in updates:
            sheet, addr = split_range(upd.range)
            row_index, col_index = parse_cell(addr)
            by_sheet.setdefault(sheet, []).append((row_index, col_index, upd.values, upd.range))

        result = WriteResult()
        for sheet, cells in by_sheet.items():
            grid = self._load_grid(sheet)
            if grid is None:
                raise ExternalServiceError(f"Sheet not found: {sheet}", reason="sheet_not_found")
            for row_index, col_index, values, rng in cells:
                for dr, value_row in enumerate(values):
                    r = row_index - 1 + dr
                    while len(grid) <= r:
                        grid.append([])
                    for dc, value in enumerate(value_row):
                        c = col_index + dc
                        while len(grid[r]) <= c:
                            grid[r].append("")
                        grid[r][c] = str(value)
                        result.updated_cells += 1
                result.updated_ranges.append(rng)
            self._store_grid(sheet, grid)
        return result


class MemoryTable(_GridTable):
    """In-memory sheets: ``{"Glossary": [header, row, row, ...]}``."""

    def __init__(self, sheets: Optional[dict[str, list[list[str]]]] = None):
        self.sheets: dict[str, list[list[str]]] = {
            name: [list(r) for r in grid] for name, grid in (sheets or {}).items()
        }
        self.writes: list[CellUpdate] = []

    def _load_grid(self, sheet: str) -> Optional[list[list[str]]]:
        return self.sheets.get(sheet)

    def _store_grid(self, sheet: str, grid: list[list[str]]) -> None:
        self.sheets[sheet] = grid

    async def read_range(self, range_spec: str) -> TableData:
        return self._read(range_spec)

    async def batch_write(self, updates: list[CellUpdate]) -> WriteResult:
        self.writes.extend(updates)
        return self._write(updates)


class CsvWorkbook(_GridTable):
    """A directory of CSV files, one per sheet (``Glossary.csv``, ``Rules.csv``).

    File I/O runs in a worker thread and is bounded by ``timeout`` seconds.
    """

    def __init__(self, directory: str | Path, timeout: float = 30.0):
        self.directory = Path(directory)
        self.timeout = timeout

    def path_for(self, sheet: str) -> Path:
        return self.directory / f"{sheet}.csv"

    def _load_grid(self, sheet: str) -> Optional[list[list[str]]]:
        path = self.path_for(sheet)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            return [row for row in csv.reader(f)]

    def _store_grid(self, sheet: str, grid: list[list[str]]) -> None:
        path = self.path_for(sheet)
        tmp = path.with_suffix(".csv.tmp")
        with open(tmp, "w", encoding="utf-8", newline="") as f:
            csv.writer(f).writerows(grid)
        tmp.replace(path)

    async def _run(self, func, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(
                f"Workbook I/O timed out after {self.timeout}s", reason="data_store_timeout"
            ) from e
        except OSError as e:
            raise ExternalServiceError(f"Workbook I/O failed: {e}", reason="data_store_error") from e

    async def read_range(self, range_spec: str) -> TableData:
        data = await self._run(self._read, range_spec)
        logger.debug("Read %s: %d rows", range_spec, len(data.rows))
        return data

    async def batch_write(self, updates: list[CellUpdate]) -> WriteResult:
        if not updates:
            return WriteResult()
        return await self._run(self._write, list(updates))
