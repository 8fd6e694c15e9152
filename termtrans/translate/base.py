"""
Base translator interface and implementations.

This module defines:
- Abstract Translator interface that all backends implement
- RecordTranslator, which owns chunking, gap repair and fallback on top
  of a single ``complete(system, user)`` provider call
- DummyTranslator for testing and offline runs (echo or simple transforms)

Design Philosophy:
- Translators are stateless: every call receives the full request
- Row identity is never inferred from position: each record carries its
  row index, and a row missing from the reply gets exactly one repair
  request together with the other missing rows of its chunk
- A provider failure is row-local: the rows of the failed chunk keep
  their pre-translation text and carry an ``error`` for the caller to
  flag; the rest of the batch continues
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from termtrans.config import DEFAULT_CHUNK_SIZE, MAX_CHUNK_SIZE
from termtrans.errors import ExternalServiceError, ValidationError
from termtrans.translate.records import (
    NL,
    RS,
    decode_records,
    encode_records,
    iter_records,
    missing_rows,
    protect_newlines,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranslateItem:
    """One row to translate.

    Attributes:
        row_index: Sheet row the text came from (record identity tag)
        source_text: Original source cell text
        text_for_translate: Text after glossary substitution and rules
    """
    row_index: int
    source_text: str
    text_for_translate: str


@dataclass
class TranslateRequest:
    source_lang: str
    target_lang: str
    items: list[TranslateItem] = field(default_factory=list)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    model: Optional[str] = None


@dataclass
class TranslatedRow:
    """Translation outcome for one row.

    ``fallback_used`` is True when the provider returned nothing for the
    row (even after repair) and ``translated_text`` is the pre-translation
    text. ``error`` is set when the provider call itself failed.
    """
    row_index: int
    source_text: str
    translated_text: str
    fallback_used: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "row_index": self.row_index,
            "source_text": self.source_text,
            "translated_text": self.translated_text,
            "fallback_used": self.fallback_used,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class TranslateResponse:
    results: list[TranslatedRow] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)

    def by_row(self) -> dict[int, TranslatedRow]:
        return {r.row_index: r for r in self.results}


def clamp_chunk_size(value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = DEFAULT_CHUNK_SIZE
    return max(1, min(n, MAX_CHUNK_SIZE))


def build_system_prompt(source_lang: str, target_lang: str) -> str:
    """System prompt describing the record protocol to the provider."""
    return "\n".join([
        "You are a professional game localization translator.",
        f"Translate from {source_lang} to {target_lang}.",
        "HARD RULES:",
        "- Output MUST keep the same record structure.",
        f'- Records are separated by "{RS}". Do NOT remove it.',
        "- Each record format: <rowIndex>\\t<text>. Keep the same rowIndex.",
        f'- Newlines are encoded as "{NL}". Do NOT change/remove it.',
        '- Keep any "{mask:N}" tokens EXACTLY unchanged.',
        "- Preserve punctuation, numbers, and tags (<TIPBOX>, <INFO>, <NAV>).",
        "- Output ONLY the translated records.",
    ])


REPAIR_SUFFIX = "\nReturn ALL records. Output ONLY records."


class Translator(ABC):
    """Abstract base class for all translation backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the translator name (e.g., 'openai-gpt-4.1', 'dummy-prefix')."""

    @property
    def default_model(self) -> Optional[str]:
        return None

    @abstractmethod
    async def translate(self, request: TranslateRequest) -> TranslateResponse:
        """Translate every item of the request.

        Returns one TranslatedRow per item, in request order.
        """


class RecordTranslator(Translator):
    """Translator that speaks the record protocol over a text completion.

    Subclasses implement ``complete()``; everything else (framing,
    chunking, repair, fallback, row-local failures) lives here.
    """

    @abstractmethod
    async def complete(
        self,
        system: str,
        user: str,
        repair: bool = False,
        model: Optional[str] = None,
    ) -> str:
        """Send one framed payload and return the raw provider reply.

        Raises:
            ExternalServiceError: provider error or timeout
        """

    async def translate(self, request: TranslateRequest) -> TranslateResponse:
        started = time.monotonic()
        if not str(request.source_lang or "").strip():
            raise ValidationError("source_lang must be a non-empty string", reason="missing_source_lang")
        if not str(request.target_lang or "").strip():
            raise ValidationError("target_lang must be a non-empty string", reason="missing_target_lang")

        chunk_size = clamp_chunk_size(request.chunk_size)
        model = request.model or self.default_model
        items = list(request.items)
        meta: dict[str, Any] = {
            "translator": self.name,
            "model": model,
            "chunk_size": chunk_size,
            "items": len(items),
            "chunks": 0,
            "repairs": 0,
            "failed_chunks": 0,
        }

        results: list[TranslatedRow] = []
        system = build_system_prompt(request.source_lang, request.target_lang)
        for start in range(0, len(items), chunk_size):
            chunk = items[start:start + chunk_size]
            meta["chunks"] += 1
            results.extend(await self._translate_chunk(chunk, system, model, meta))

        meta["elapsed_ms"] = int((time.monotonic() - started) * 1000)
        logger.info(
            "Translated %d items in %d chunk(s) (%d repair, %d failed) via %s",
            len(items), meta["chunks"], meta["repairs"], meta["failed_chunks"], self.name,
        )
        return TranslateResponse(results=results, meta=meta)

    async def _translate_chunk(
        self,
        chunk: list[TranslateItem],
        system: str,
        model: Optional[str],
        meta: dict[str, Any],
    ) -> list[TranslatedRow]:
        expected = [it.row_index for it in chunk]
        error: Optional[str] = None
        try:
            raw = await self.complete(system, encode_records(chunk), model=model)
            decoded = decode_records(raw, expected)

            gaps = missing_rows(decoded)
            if gaps:
                meta["repairs"] += 1
                logger.info("Chunk missed %d of %d records; requesting repair", len(gaps), len(chunk))
                subset = [it for it in chunk if it.row_index in set(gaps)]
                try:
                    raw = await self.complete(
                        system + REPAIR_SUFFIX, encode_records(subset), repair=True, model=model
                    )
                except ExternalServiceError as e:
                    logger.warning("Repair request failed: %s", e)
                    error = str(e)
                else:
                    for ri, text in decode_records(raw, gaps).items():
                        if text is not None:
                            decoded[ri] = text
        except ExternalServiceError as e:
            meta["failed_chunks"] += 1
            logger.warning("Translator failed for rows %s: %s", expected, e)
            decoded = {ri: None for ri in expected}
            error = str(e)

        rows = []
        for it in chunk:
            text = decoded.get(it.row_index)
            ok = text is not None and text.strip() != ""
            rows.append(TranslatedRow(
                row_index=it.row_index,
                source_text=it.source_text,
                translated_text=text if ok else it.text_for_translate,
                fallback_used=not ok,
                error=None if ok else error,
            ))
        return rows


class DummyTranslator(RecordTranslator):
    """A dummy translator for testing.

    It answers through the real record protocol, so chunking and repair
    are exercised exactly as with a remote provider.

    Modes:
    - 'echo': Return the input unchanged
    - 'upper': Return uppercase version
    - 'prefix': Add [TRANSLATED] prefix
    - 'reverse': Reverse the text (for debugging)

    ``drop_rows`` are left out of the first reply only (the repair reply
    contains them); ``drop_always`` rows are never returned. ``fail``
    makes every call raise ExternalServiceError.
    """

    def __init__(
        self,
        mode: str = "prefix",
        drop_rows: Iterable[int] = (),
        drop_always: Iterable[int] = (),
        fail: bool = False,
    ):
        self.mode = mode
        self.drop_rows = set(drop_rows)
        self.drop_always = set(drop_always)
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return f"dummy-{self.mode}"

    @property
    def default_model(self) -> Optional[str]:
        return "dummy"

    def transform(self, text: str) -> str:
        if self.mode == "echo":
            return text
        if self.mode == "upper":
            return text.upper()
        if self.mode == "reverse":
            return text[::-1]
        return f"[TRANSLATED] {text}"

    async def complete(
        self,
        system: str,
        user: str,
        repair: bool = False,
        model: Optional[str] = None,
    ) -> str:
        self.calls.append({"system": system, "user": user, "repair": repair, "model": model})
        if self.fail:
            raise ExternalServiceError("dummy translator failure", reason="translator_error", status=503)

        records = []
        for row_index, text in iter_records(user):
            if row_index in self.drop_always or (not repair and row_index in self.drop_rows):
                continue
            records.append(f"{row_index}\t{protect_newlines(self.transform(text))}")
        return RS.join(records)


def create_translator(backend: str, **kwargs) -> Translator:
    """Factory function to create a translator by name.

    Args:
        backend: Translator backend name ('dummy', 'echo', 'openai', ...)
        **kwargs: Backend-specific arguments

    Supported backends and aliases:
        - dummy, test: DummyTranslator (``mode`` kwarg, default 'prefix')
        - echo: DummyTranslator in echo mode
        - openai, gpt: OpenAITranslator (``settings``, ``api_key`` kwargs)
    """
    backend_lower = str(backend or "").lower().replace("_", "-")

    if backend_lower in ("dummy", "test"):
        return DummyTranslator(mode=kwargs.get("mode", "prefix"))

    elif backend_lower == "echo":
        return DummyTranslator(mode="echo")

    elif backend_lower in ("openai", "gpt", "gpt-4.1"):
        from termtrans.translate.llm import OpenAITranslator
        return OpenAITranslator(settings=kwargs.get("settings"), api_key=kwargs.get("api_key"))

    raise ValidationError(f"Unknown translator backend: {backend}", reason="unknown_backend")
