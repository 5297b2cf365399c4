"""Extractors for listing cards on the search results page.

Every function takes the parsed document and an optional card scope
(one ``#bukken_list > li`` element) and returns the raw field value, or
``None``/an empty container when the card does not carry it.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .parsing import clean_text, clean_title_address, find_layout_code

LOGGER = logging.getLogger(__name__)

CARD_SELECTOR = "#bukken_list > li"
SITE_ROOT = "https://www.shiawasehome-reuse.com/"

PRICE_TEXT_RE = re.compile(r"[0-9,.]+億(?:[0-9,.]+万)?円?|[0-9,.]+万円")

Node = Union[BeautifulSoup, Tag]


def listing_cards(doc: BeautifulSoup) -> List[Tag]:
    return doc.select(CARD_SELECTOR)


def _root(doc: Node, scope: Optional[Tag]) -> Node:
    return scope if scope is not None else doc


def _labelled_value(root: Node, label: str) -> Optional[Tag]:
    """Return the ``<dd>`` that follows the ``<dt>`` containing ``label``."""
    for dt in root.find_all("dt"):
        if label in dt.get_text():
            return dt.find_next_sibling("dd")
    return None


def _labelled_text(root: Node, label: str) -> str:
    dd = _labelled_value(root, label)
    return dd.get_text(strip=True) if dd is not None else ""


def extract_address(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    root = _root(doc, scope)
    title = root.select_one(".entry-title")
    if title is not None:
        return clean_title_address(title.get_text(strip=True)) or None
    return _labelled_text(root, "住居表示") or None


def extract_price_text(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    root = _root(doc, scope)
    dd = _labelled_value(root, "総額")
    if dd is not None:
        span = dd.select_one("span.a1234")
        if span is not None:
            return span.get_text(strip=True) + "万円"
        return dd.get_text(strip=True) or None
    match = PRICE_TEXT_RE.search(root.get_text())
    return match.group(0) if match else None


def extract_layout(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    root = _root(doc, scope)
    layout = _labelled_text(root, "間取")
    if not layout:
        layout = find_layout_code(root.get_text(" "))
    return layout or None


def _area_text(root: Node, label: str) -> Optional[str]:
    area = _labelled_text(root, label)
    if area:
        return area
    match = re.search(label + r"\s*[:：]\s*([0-9,.]+)(?:㎡|m²)", root.get_text())
    return f"{match.group(1)}㎡" if match else None


def extract_land_area_text(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    return _area_text(_root(doc, scope), "土地面積")


def extract_build_area_text(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    return _area_text(_root(doc, scope), "建物面積")


def extract_build_date(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    root = _root(doc, scope)
    value = _labelled_text(root, "新築年月")
    if not value:
        match = re.search(r"新築年月\s*[:：]?\s*([^\n]+)", root.get_text("\n"))
        value = match.group(1).strip() if match else ""
    return value or None


def extract_tags(doc: Node, scope: Optional[Tag] = None) -> List[str]:
    root = _root(doc, scope)
    return [tag for tag in (li.get_text(strip=True) for li in root.select(".facility li")) if tag]


def extract_listing_url(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    root = _root(doc, scope)
    link = root.select_one("a[href]")
    if link is None:
        return None
    href = link["href"].strip()
    return urljoin(SITE_ROOT, href) if href else None


def extract_recommend_text(doc: Node, scope: Optional[Tag] = None) -> List[str]:
    root = _root(doc, scope)
    element = root.select_one(".recommend_txt")
    if element is None:
        return []
    text = clean_text(element.get_text(" "))
    return [text] if text else []


def extract_is_sold(doc: Node, scope: Optional[Tag] = None) -> bool:
    return _root(doc, scope).select_one(".archive_sold") is not None


def extract_last_page(doc: BeautifulSoup) -> int:
    """Highest ``paged=N`` found in the pagination links, 1 when absent."""
    last = 1
    for link in doc.select(".nav-links a, .nav-next a, .page-numbers"):
        href = link.get("href") or ""
        if match := re.search(r"paged=(\d+)", href):
            last = max(last, int(match.group(1)))
    return last
