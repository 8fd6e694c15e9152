"""
Project-wide configuration.

All tunables are read from environment variables once, via
``Settings.from_env()``, and then passed explicitly to the components that
need them. Nothing reads ``os.environ`` after start-up.

Environment variables:
    TERMTRANS_DEFAULT_SHEET   default glossary sheet name (Glossary)
    TERMTRANS_RULE_SHEET      rules sheet name (Rules)
    TERMTRANS_ANCHOR_LANG     mandatory language column (ko-KR)
    TERMTRANS_SOURCE_LANGS    languages indexed as sources (ko-KR,en-US)
    TERMTRANS_CACHE_MAX       derived cache capacity (256)
    BATCH_TTL_MS              batch record lifetime (1h)
    RECENT_APPLIED_TTL_MS     cooldown after a write-back (10m)
    PENDING_EMPTY_SENTINELS   comma separated values treated as empty cells
    OPENAI_MODEL_TRANSLATE / OPENAI_MODEL, OPENAI_TEMPERATURE,
    OPENAI_MAX_OUTPUT_TOKENS, OPENAI_TIMEOUT_MS, OPENAI_BASE_URL

Example:
    >>> from termtrans.config import Settings
    >>> settings = Settings.from_env()
    >>> settings.batch_ttl_seconds
    3600.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from termtrans.errors import ValidationError
from termtrans.utils import normalize_lang

# Application name for display and identification
APP_NAME = "termtrans"

# Local per-user directory (API key fallback file)
CONFIG_DIR = Path.home() / ".termtrans"

DEFAULT_MODEL = "gpt-4.1"
DEFAULT_CHUNK_SIZE = 25
MAX_CHUNK_SIZE = 100


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _float_ms(env: Mapping[str, str], name: str, default_ms: float) -> float:
    raw = env.get(name, "")
    return (float(raw) if raw.strip() else default_ms) / 1000.0


@dataclass
class Settings:
    """Runtime settings for the service, pipeline and translator."""
    default_sheet: str = "Glossary"
    rule_sheet: str = "Rules"
    anchor_lang: str = "ko-kr"
    source_langs: tuple[str, ...] = ("ko-kr", "en-us")

    cache_max_entries: int = 256
    batch_ttl_seconds: float = 3600.0
    recent_applied_ttl_seconds: float = 600.0
    pending_empty_sentinels: tuple[str, ...] = field(default_factory=tuple)

    # Length ratio (translated / processed) outside (low, high) is flagged.
    ratio_high: float = 2.6
    ratio_low: float = 0.35

    model: str = DEFAULT_MODEL
    temperature: float = 0.0
    max_output_tokens: int = 4096
    timeout_seconds: float = 60.0
    base_url: Optional[str] = None

    def __post_init__(self):
        self.anchor_lang = normalize_lang(self.anchor_lang)
        self.source_langs = tuple(normalize_lang(l) for l in self.source_langs if l)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            default_sheet=env.get("TERMTRANS_DEFAULT_SHEET", "").strip() or "Glossary",
            rule_sheet=env.get("TERMTRANS_RULE_SHEET", "").strip() or "Rules",
            anchor_lang=env.get("TERMTRANS_ANCHOR_LANG", "").strip() or "ko-KR",
            source_langs=_split_csv(env.get("TERMTRANS_SOURCE_LANGS", "")) or ("ko-KR", "en-US"),
            cache_max_entries=int(env.get("TERMTRANS_CACHE_MAX", "") or 256),
            batch_ttl_seconds=_float_ms(env, "BATCH_TTL_MS", 60 * 60 * 1000),
            recent_applied_ttl_seconds=_float_ms(env, "RECENT_APPLIED_TTL_MS", 10 * 60 * 1000),
            pending_empty_sentinels=_split_csv(env.get("PENDING_EMPTY_SENTINELS", "")),
            model=(
                env.get("OPENAI_MODEL_TRANSLATE")
                or env.get("OPENAI_MODEL")
                or DEFAULT_MODEL
            ),
            temperature=float(env.get("OPENAI_TEMPERATURE", "") or 0),
            max_output_tokens=int(env.get("OPENAI_MAX_OUTPUT_TOKENS", "") or 4096),
            timeout_seconds=_float_ms(env, "OPENAI_TIMEOUT_MS", 60_000),
            base_url=env.get("OPENAI_BASE_URL") or None,
        )

    def require_source_lang(self, lang: str) -> str:
        """Normalize ``lang`` and check it is an indexed source language."""
        key = normalize_lang(lang)
        if key not in self.source_langs:
            raise ValidationError(
                f"source_lang must be one of {', '.join(self.source_langs)} (got '{lang}')",
                reason="unsupported_source_lang",
            )
        return key

    def to_dict(self) -> dict:
        """Serialize settings for status output."""
        return {
            "default_sheet": self.default_sheet,
            "rule_sheet": self.rule_sheet,
            "anchor_lang": self.anchor_lang,
            "source_langs": list(self.source_langs),
            "cache_max_entries": self.cache_max_entries,
            "batch_ttl_seconds": self.batch_ttl_seconds,
            "recent_applied_ttl_seconds": self.recent_applied_ttl_seconds,
            "pending_empty_sentinels": list(self.pending_empty_sentinels),
            "model": self.model,
            "timeout_seconds": self.timeout_seconds,
        }
