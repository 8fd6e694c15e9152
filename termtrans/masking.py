"""
Masking module for protecting glossary terms across an opaque translator.

Before text is handed to a machine translator, every glossary anchor found
in it is replaced by a mask token (``{mask:N}``); after translation the
tokens are restored either to the anchor itself or to the glossary's
target-language text.

Design:
- Anchors are tried longest first, so "Red Potion" wins over "Potion".
- Mask ids are issued only for anchors that actually match, in
  first-encounter order across the whole list of input texts. The same
  inputs in the same order always produce the same ids; reordering the
  inputs can renumber them.
- While masking, matches are replaced by an internal sentinel built from
  two non-printable brackets around an id spelled in private-use
  characters. No anchor can match inside an already masked region, not
  even an anchor made of digits. Sentinels become public ``{mask:N}``
  tokens only after every anchor has been processed.
- Text that already contains ``{mask:`` is escaped with an invisible
  word joiner before masking (``{`` + U+2060 + ``mask:``) and unescaped
  by unmask_text, so a user's own token text is never restored as a mask.
- Word-boundary mode only wraps anchors that start and end with an ASCII
  word character, so anchors with symbols or non-Latin scripts are never
  corrupted by a boundary they cannot satisfy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

from termtrans.errors import ValidationError
from termtrans.models import MaskRecord

SENTINEL_OPEN = "\x02"
SENTINEL_CLOSE = "\x03"
_DIGIT_BASE = 0xE000  # private-use area: U+E000..U+E009 spell 0..9

MASK_TOKEN_RE = re.compile(r"\{mask:(\d+)\}")
_SENTINEL_RE = re.compile(f"{SENTINEL_OPEN}([\\uE000-\\uE009]+){SENTINEL_CLOSE}")
_ASCII_WORD_RE = re.compile(r"[A-Za-z0-9_]")

# "{" + joiners + "mask:"; escaping adds one joiner, unescaping removes one.
TOKEN_ESCAPE = "\u2060"
_ESCAPABLE_RE = re.compile(f"\\{{({TOKEN_ESCAPE}*)mask:")
_ESCAPED_RE = re.compile(f"\\{{{TOKEN_ESCAPE}({TOKEN_ESCAPE}*)mask:")

RESTORE_STRATEGIES = ("anchor", "glossaryTarget")

# anchor -> (restore text, glossary row index)
RestoreResolver = Callable[[str], tuple[str, Optional[int]]]


def make_token(mask_id: int) -> str:
    return f"{{mask:{mask_id}}}"


def _sentinel(mask_id: int) -> str:
    digits = "".join(chr(_DIGIT_BASE + int(d)) for d in str(mask_id))
    return f"{SENTINEL_OPEN}{digits}{SENTINEL_CLOSE}"


def _sentinel_id(encoded: str) -> int:
    return int("".join(str(ord(ch) - _DIGIT_BASE) for ch in encoded))


def anchor_pattern(anchor: str, case_sensitive: bool = True, word_boundary: bool = True) -> re.Pattern:
    """Build the literal search pattern for one anchor."""
    body = re.escape(anchor)
    flags = 0 if case_sensitive else re.IGNORECASE
    if word_boundary and _ASCII_WORD_RE.match(anchor[0]) and _ASCII_WORD_RE.match(anchor[-1]):
        body = rf"\b{body}\b"
        flags |= re.ASCII
    return re.compile(body, flags)


@dataclass
class MaskSession:
    """Tracks mask ids issued during one masking call.

    ``ids`` maps anchor -> id in first-encounter order; ids start at 1.
    """
    case_sensitive: bool = True
    word_boundary: bool = True
    ids: dict[str, int] = field(default_factory=dict)
    _patterns: dict[str, re.Pattern] = field(default_factory=dict, repr=False)

    def pattern(self, anchor: str) -> re.Pattern:
        pat = self._patterns.get(anchor)
        if pat is None:
            pat = anchor_pattern(anchor, self.case_sensitive, self.word_boundary)
            self._patterns[anchor] = pat
        return pat

    def mask_one(self, text: str, anchors: Sequence[str]) -> str:
        """Replace anchors in ``text`` with internal sentinels."""
        out = text
        if not out:
            return out
        for anchor in anchors:
            if not anchor:
                continue
            pat = self.pattern(anchor)
            if not pat.search(out):
                continue
            mask_id = self.ids.get(anchor)
            if mask_id is None:
                mask_id = len(self.ids) + 1
                self.ids[anchor] = mask_id
            sentinel = _sentinel(mask_id)
            out = pat.sub(lambda _m: sentinel, out)
        return out


def escape_tokens(text: str) -> str:
    """Make literal ``{mask:`` text in an input unrecognizable as a token."""
    return _ESCAPABLE_RE.sub(lambda m: "{" + TOKEN_ESCAPE + m.group(1) + "mask:", text)


def unescape_tokens(text: str) -> str:
    return _ESCAPED_RE.sub(lambda m: "{" + m.group(1) + "mask:", text)


def to_public_tokens(text: str) -> str:
    """Convert internal sentinels into ``{mask:N}`` tokens."""
    return _SENTINEL_RE.sub(lambda m: make_token(_sentinel_id(m.group(1))), text)


def extract_mask_ids(text: str) -> list[int]:
    """All mask ids present in text, in order of appearance."""
    return [int(m) for m in MASK_TOKEN_RE.findall(text or "")]


@dataclass
class MaskResult:
    """Output of mask_texts().

    Attributes:
        texts: Masked texts, same order as the input
        masks: One record per id actually used, sorted by id
        anchors_considered: Number of anchors tried
    """
    texts: list[str]
    masks: list[MaskRecord] = field(default_factory=list)
    anchors_considered: int = 0

    @property
    def matched_ids(self) -> int:
        return len(self.masks)

    def unmask(self, text: str) -> str:
        return unmask_text(text, self.masks)


def mask_texts(
    texts: Iterable[str],
    anchors: Sequence[str],
    case_sensitive: bool = True,
    word_boundary: bool = True,
    restore_strategy: str = "glossaryTarget",
    resolve_restore: Optional[RestoreResolver] = None,
) -> MaskResult:
    """Mask glossary anchors in a list of texts.

    Args:
        texts: Input texts (masked in order; ids follow first encounter)
        anchors: Anchor terms, longest first, deduplicated
        case_sensitive: Match anchors case-sensitively
        word_boundary: Require word boundaries around word-like anchors
        restore_strategy: 'anchor' restores the anchor text,
            'glossaryTarget' restores the glossary target text
        resolve_restore: anchor -> (target text, row index); required for
            meaningful 'glossaryTarget' restores, falls back to the anchor

    Returns:
        MaskResult with public ``{mask:N}`` tokens and the restore table
    """
    if restore_strategy not in RESTORE_STRATEGIES:
        raise ValidationError(
            f"restore_strategy must be one of {', '.join(RESTORE_STRATEGIES)}",
            reason="invalid_restore_strategy",
        )

    session = MaskSession(case_sensitive=case_sensitive, word_boundary=word_boundary)
    internal = [session.mask_one(escape_tokens(str(t if t is not None else "")), anchors) for t in texts]
    public = [to_public_tokens(t) for t in internal]

    used: set[int] = set()
    for t in public:
        used.update(extract_mask_ids(t))

    masks = []
    for anchor, mask_id in session.ids.items():
        if mask_id not in used:
            continue
        restore, row_index = anchor, None
        if resolve_restore is not None:
            target, row_index = resolve_restore(anchor)
            if restore_strategy == "glossaryTarget" and target:
                restore = target
        masks.append(MaskRecord(id=mask_id, anchor=anchor, restore=restore, glossary_row_index=row_index))
    masks.sort(key=lambda m: m.id)

    return MaskResult(texts=public, masks=masks, anchors_considered=len(anchors))


def unmask_text(text: str, masks: Iterable[MaskRecord]) -> str:
    """Restore ``{mask:N}`` tokens; unknown ids are left as they are.

    Escaped token text from the original input is unescaped afterwards.
    """
    if not text:
        return ""
    table = {m.id: m.restore for m in masks}
    if table:
        text = MASK_TOKEN_RE.sub(lambda m: table.get(int(m.group(1)), m.group(0)), text)
    return unescape_tokens(text)
