"""
Translation backends.

Every backend speaks the same record protocol (see records.py) so that a
provider cannot silently drop or reorder rows.
"""

from termtrans.translate.base import (
    DummyTranslator,
    RecordTranslator,
    TranslateItem,
    TranslateRequest,
    TranslateResponse,
    TranslatedRow,
    Translator,
    create_translator,
)
from termtrans.translate.records import NL, RS, decode_records, encode_records

__all__ = [
    "DummyTranslator",
    "RecordTranslator",
    "TranslateItem",
    "TranslateRequest",
    "TranslateResponse",
    "TranslatedRow",
    "Translator",
    "create_translator",
    "NL",
    "RS",
    "decode_records",
    "encode_records",
]
