"""
Shared fixtures: a small game glossary and rules sheet.

Glossary rows (sheet row numbers):
    2  sword       item  검        Sword       剣
    3  potion      item  포션      Potion
    4  hp          ui    체력      HP
    5  red_potion  item  레드 포션  Red Potion
    6  potion_jp   item            Potion      ポーション
    7  shield      gear  방패      Shield
    8  (blank row)
"""

import pytest

from termtrans.config import Settings
from termtrans.service import GlossaryService
from termtrans.table import MemoryTable
from termtrans.translate.base import DummyTranslator

GLOSSARY = [
    ["KEY", "분류", "ko-KR", "en-US", "ja-JP", "Note"],
    ["sword", "item", "검", "Sword", "剣", ""],
    ["potion", "item", "포션", "Potion", "", ""],
    ["hp", "ui", "체력", "HP", "", ""],
    ["red_potion", "item", "레드 포션", "Red Potion", "", ""],
    ["potion_jp", "item", "", "Potion", "ポーション", ""],
    ["shield", "gear", "방패", "Shield", "", ""],
    ["", "", "", "", "", ""],
]

RULES = [
    ["KEY", "분류", "ko-KR", "en-US", "ja-JP", "match_type", "priority"],
    ["heal_amount", "", "+{N} 체력", "+{N} HP", "HP+{N}", "pattern", "10"],
    ["shield_fix", "", "방패", "Shield", "盾", "contains", "5"],
    ["blade_item", "item", "", "Blade", "ブレード", "word", "1"],
]


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def table():
    return MemoryTable({"Glossary": GLOSSARY, "Rules": RULES})


@pytest.fixture
def translator():
    return DummyTranslator(mode="prefix")


@pytest.fixture
def service(settings, table, translator):
    return GlossaryService(settings, reader=table, writer=table, translator=translator)
