"""Extractors for an individual listing detail page."""
from __future__ import annotations

import logging
import re
from typing import Callable, List, Optional, Tuple, Union

from bs4 import BeautifulSoup, Tag

from ..models import CoordinateResult, CoordinateSource
from .parsing import clean_text, split_lines

LOGGER = logging.getLogger(__name__)

Node = Union[BeautifulSoup, Tag]
Coordinates = Tuple[float, float]

TAG_SELECTOR = ".tag_list li, .property-tags span, .detail_txt.recommend_txt li"

_Q_PARAM_RE = re.compile(r"[?&]q=(-?\d+\.\d+),\s*(-?\d+\.\d+)")
_LL_PARAM_RE = re.compile(r"[?&]ll=(-?\d+\.\d+),(-?\d+\.\d+)")
_JU_VAR_RE = re.compile(r"var\s+ju\s*=\s*[\"'](-?\d+\.\d+),(-?\d+\.\d+)[\"']")
_MAPS_LL_RE = re.compile(r"maps\.google\.com/maps\?ll=(-?\d+\.\d+),(-?\d+\.\d+)")
_STAR_KEYWORD_RE = re.compile(r"★([^★]+)")


def _root(doc: Node, scope: Optional[Tag]) -> Node:
    return scope if scope is not None else doc


def _valid(lat: float, lng: float) -> bool:
    return -90 <= lat <= 90 and -180 <= lng <= 180 and not (lat == 0 and lng == 0)


def _pair(match: Optional[re.Match]) -> Optional[Coordinates]:
    if not match:
        return None
    lat, lng = float(match.group(1)), float(match.group(2))
    return (lat, lng) if _valid(lat, lng) else None


def _from_map_iframe(root: Node) -> Optional[Coordinates]:
    for iframe in root.select("iframe.detail-googlemap, iframe[src*='maps.google']"):
        src = iframe.get("src") or ""
        coords = _pair(_Q_PARAM_RE.search(src)) or _pair(_LL_PARAM_RE.search(src))
        if coords:
            return coords
    return None


def _from_map_link(root: Node) -> Optional[Coordinates]:
    for link in root.select("a[href*='maps.google.com']"):
        href = link.get("href") or ""
        coords = _pair(_LL_PARAM_RE.search(href)) or _pair(_Q_PARAM_RE.search(href))
        if coords:
            return coords
    return None


def _from_scripts(root: Node) -> Optional[Coordinates]:
    for script in root.find_all("script"):
        text = script.string or ""
        coords = _pair(_JU_VAR_RE.search(text)) or _pair(_MAPS_LL_RE.search(text))
        if coords:
            return coords
    return None


def _from_data_attributes(root: Node) -> Optional[Coordinates]:
    element = root.select_one("[data-lat][data-lng]")
    if element is None:
        return None
    try:
        lat, lng = float(element["data-lat"]), float(element["data-lng"])
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring malformed data-lat/data-lng attributes")
        return None
    return (lat, lng) if _valid(lat, lng) else None


def _from_geo_meta(root: Node) -> Optional[Coordinates]:
    meta = root.select_one("meta[name='geo.position']")
    content = (meta.get("content") or "") if meta is not None else ""
    if ";" not in content:
        return None
    try:
        lat, lng = (float(part.strip()) for part in content.split(";", 1))
    except ValueError:
        LOGGER.warning("Ignoring malformed geo.position %r", content)
        return None
    return (lat, lng) if _valid(lat, lng) else None


COORDINATE_STRATEGIES: List[Callable[[Node], Optional[Coordinates]]] = [
    _from_map_iframe,
    _from_map_link,
    _from_scripts,
    _from_data_attributes,
    _from_geo_meta,
]


def find_coordinates(doc: Node, scope: Optional[Tag] = None) -> Optional[CoordinateResult]:
    """Run the DOM coordinate strategies in order and return the first hit."""
    root = _root(doc, scope)
    for strategy in COORDINATE_STRATEGIES:
        coords = strategy(root)
        if coords:
            LOGGER.debug("Coordinates found via %s: %s", strategy.__name__, coords)
            return CoordinateResult(lat=coords[0], long=coords[1], source=CoordinateSource.DOM)
    return None


def extract_latitude(doc: Node, scope: Optional[Tag] = None) -> Optional[float]:
    result = find_coordinates(doc, scope)
    return result.lat if result else None


def extract_longitude(doc: Node, scope: Optional[Tag] = None) -> Optional[float]:
    result = find_coordinates(doc, scope)
    return result.long if result else None


def extract_lat_long_string(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    result = find_coordinates(doc, scope)
    return result.lat_long_string if result else None


def extract_detail_tags(doc: Node, scope: Optional[Tag] = None) -> List[str]:
    """Collect feature tags from tag lists, meta keywords and ★ items in the description."""
    root = _root(doc, scope)
    tags: List[str] = [el.get_text(strip=True) for el in root.select(TAG_SELECTOR)]

    keywords = root.select_one("meta[name='keywords']")
    if keywords is not None:
        tags.extend(part.strip() for part in (keywords.get("content") or "").split(","))

    description = root.select_one("meta[name='description']")
    if description is not None:
        content = description.get("content") or ""
        tags.extend(match.strip() for match in _STAR_KEYWORD_RE.findall(content))

    # dict.fromkeys keeps first-seen order
    return list(dict.fromkeys(tag for tag in tags if tag))


def extract_listing_images(doc: Node, scope: Optional[Tag] = None) -> List[str]:
    root = _root(doc, scope)
    images = [img.get("src") for img in root.select(".slick-track li > a > img")]
    return list(dict.fromkeys(src for src in images if src))


def extract_recommended_text(doc: Node, scope: Optional[Tag] = None) -> List[str]:
    element = _root(doc, scope).select_one("div.detail-comment")
    if element is None:
        return []
    return [clean_text(line) for line in split_lines(element.get_text("\n"))]


def extract_about_property(doc: Node, scope: Optional[Tag] = None) -> Optional[str]:
    element = _root(doc, scope).select_one("div.section.detail-section.bukken-outline")
    if element is None:
        return None
    return clean_text(element.get_text(" ")) or None


def extract_detail_is_sold(doc: Node, scope: Optional[Tag] = None) -> bool:
    return _root(doc, scope).select_one("div.detail_sold") is not None
