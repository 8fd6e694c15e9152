"""
Record framing for translator round trips.

A chunk of rows is sent as one payload::

    <rowIndex>\\t<text>  U+241E  <rowIndex>\\t<text>  U+241E  ...

Newlines inside a text are replaced by U+241F so that a record always
occupies a single line of the payload. The row index tag lets the caller
detect dropped or reordered records without trusting the number of lines
the provider sends back.
"""

from __future__ import annotations

from typing import Iterable, Iterator, Optional, Protocol, Sequence

RS = "\u241E"  # record separator
NL = "\u241F"  # newline placeholder


class _Framed(Protocol):
    row_index: int
    text_for_translate: str


def protect_newlines(text: str) -> str:
    return str(text if text is not None else "").replace("\r\n", "\n").replace("\n", NL)


def restore_newlines(text: str) -> str:
    return str(text if text is not None else "").replace(NL, "\n")


def encode_records(items: Iterable[_Framed]) -> str:
    return RS.join(f"{int(it.row_index)}\t{protect_newlines(it.text_for_translate)}" for it in items)


def iter_records(raw: str) -> Iterator[tuple[int, str]]:
    """Yield (row_index, text) for every well-formed record in a payload.

    Only the row tag and trailing line breaks are trimmed; spaces the
    provider kept around the text are part of the translation.
    """
    for record in str(raw or "").split(RS):
        record = record.lstrip()
        tab = record.find("\t")
        if tab <= 0:
            continue
        try:
            row_index = int(record[:tab].strip())
        except ValueError:
            continue
        yield row_index, restore_newlines(record[tab + 1:].rstrip("\r\n"))


def decode_records(raw: str, expected_row_indexes: Sequence[int]) -> dict[int, Optional[str]]:
    """Parse a provider payload.

    Returns a mapping for every expected row index; rows the provider did
    not return (or returned blank) map to None. Records with an unknown or
    malformed row tag are ignored.
    """
    expected = set(expected_row_indexes)
    found: dict[int, str] = {}
    for row_index, text in iter_records(raw):
        if row_index in expected:
            found[row_index] = text

    return {
        ri: (found[ri] if ri in found and found[ri].strip() else None)
        for ri in expected_row_indexes
    }


def missing_rows(decoded: dict[int, Optional[str]]) -> list[int]:
    return [ri for ri, text in decoded.items() if text is None]
