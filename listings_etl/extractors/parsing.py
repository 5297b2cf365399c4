"""Numeric and text parsers for Japanese listing notation.

Parsers never raise on malformed input: they log a warning and return 0
(numbers) or an empty value, so one bad field cannot stop a batch.
"""
from __future__ import annotations

import logging
import re
from typing import Any, List, Optional

from ..config import JPY_TO_USD

LOGGER = logging.getLogger(__name__)

MAN = 10_000
OKU = 100_000_000

_MILLION_RE = re.compile(r"(\d+(?:\.\d+)?)Million", re.IGNORECASE)
_OKU_RE = re.compile(r"(\d+(?:\.\d+)?)億(?:(\d+(?:\.\d+)?)万)?")
_MAN_RE = re.compile(r"(\d+(?:\.\d+)?)万")
_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")
_LAYOUT_RE = re.compile(r"(\d+)\s*S?(?:LDK|DK|K)", re.IGNORECASE)
_LAYOUT_CODE_RE = re.compile(r"\d+[SLDK]{1,4}")
_WHITESPACE_RE = re.compile(r"\s+")
_TITLE_NOISE_RE = re.compile(r"【.*?】|（.*?）|\(.*?\)|<.*?>|\s*\(売主\)\s*")


def _normalize_number_text(value: str) -> str:
    return re.sub(r"[,\s　]", "", value)


def parse_price(value: Any) -> float:
    """Convert a price label to yen.

    Handles ``693万円`` (6,930,000), ``1億2000万円`` (120,000,000),
    ``18.8 Million`` and plain numbers with thousands separators.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value

    text = _normalize_number_text(str(value))

    if match := _MILLION_RE.search(text):
        return _as_number(float(match.group(1)) * 1_000_000)
    # 億 must be tried before 万.
    if match := _OKU_RE.search(text):
        oku = float(match.group(1))
        man = float(match.group(2) or 0)
        return _as_number(oku * OKU + man * MAN)
    if match := _MAN_RE.search(text):
        return _as_number(float(match.group(1)) * MAN)
    if match := _NUMBER_RE.search(text):
        return _as_number(float(match.group(1)))

    LOGGER.warning("Could not parse price from %r", value)
    return 0


def parse_area(value: Any) -> float:
    """Extract square metres from labels like ``土地面積: 1,127.42m²`` or ``98.5㎡``."""
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)

    text = str(value).replace(",", "")
    if match := _NUMBER_RE.search(text):
        return float(match.group(1))

    LOGGER.warning("Could not parse area from %r", value)
    return 0


def parse_layout_rooms(value: Optional[str]) -> int:
    """Return the room count N of an ``NLDK``/``NDK``/``NK`` layout code."""
    if not value:
        return 0
    if match := _LAYOUT_RE.search(value):
        return int(match.group(1))
    return 0


def find_layout_code(text: str) -> str:
    match = _LAYOUT_CODE_RE.search(text or "")
    return match.group(0) if match else ""


def clean_title_address(title: str) -> str:
    """Drop bracketed annotations and the seller marker from a card title."""
    return _TITLE_NOISE_RE.sub("", title or "").strip()


def clean_text(value: Optional[str]) -> str:
    return _WHITESPACE_RE.sub(" ", value or "").strip()


def split_lines(value: Optional[str]) -> List[str]:
    return [line.strip() for line in (value or "").splitlines() if line.strip()]


def to_usd(price_jpy: Optional[float], rate: float = JPY_TO_USD) -> Optional[float]:
    if not price_jpy:
        return None
    return round(price_jpy / rate, 2)


def _as_number(value: float) -> float:
    # Whole yen amounts stay ints.
    return int(value) if float(value).is_integer() else value
