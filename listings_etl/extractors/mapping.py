"""Declarative mapping from output fields to extractor functions.

The two mapping tables below define which fields exist and how each one
is derived. Adding a field means adding one :class:`ExtractorMapping`
entry and, if needed, one extractor.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup, Tag

from . import detail, search
from .parsing import clean_text, parse_area, parse_price

LOGGER = logging.getLogger(__name__)

Extractor = Callable[..., Any]

EXTRACTORS: Dict[str, Extractor] = {
    "extractAddress": search.extract_address,
    "extractPrice": search.extract_price_text,
    "extractFloorPlan": search.extract_layout,
    "extractLandArea": search.extract_land_area_text,
    "extractBuildArea": search.extract_build_area_text,
    "extractBuildDate": search.extract_build_date,
    "extractTags": search.extract_tags,
    "extractListingUrl": search.extract_listing_url,
    "extractRecommendText": search.extract_recommend_text,
    "extractIsSold": search.extract_is_sold,
    "extractLatitude": detail.extract_latitude,
    "extractLongitude": detail.extract_longitude,
    "extractLatLongString": detail.extract_lat_long_string,
    "extractDetailTags": detail.extract_detail_tags,
    "extractListingImages": detail.extract_listing_images,
    "extractRecommendedText": detail.extract_recommended_text,
    "extractAboutProperty": detail.extract_about_property,
    "extractDetailIsSold": detail.extract_detail_is_sold,
}

POST_PROCESSORS: Dict[str, Callable[[Any], Any]] = {
    "toPrice": parse_price,
    "toArea": parse_area,
    "stripText": clean_text,
}


@dataclass(frozen=True)
class ExtractorMapping:
    """One output field and the extractor that produces it."""

    output_field: str
    extractor: str
    is_required: bool = False
    default: Any = None
    post_processor: Optional[str] = None
    # Mappings sharing a group are requested together by name in retry jobs.
    group: Optional[str] = None


@dataclass
class ExtractionResult:
    values: Dict[str, Any] = field(default_factory=dict)
    missing_required: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return not self.missing_required


LISTING_EXTRACTOR_MAP: List[ExtractorMapping] = [
    ExtractorMapping("address", "extractAddress", is_required=True),
    ExtractorMapping("price", "extractPrice", is_required=True, post_processor="toPrice"),
    ExtractorMapping("layout", "extractFloorPlan", post_processor="stripText"),
    ExtractorMapping("landAreaSqm", "extractLandArea", post_processor="toArea"),
    ExtractorMapping("buildAreaSqm", "extractBuildArea", post_processor="toArea"),
    ExtractorMapping("buildDate", "extractBuildDate"),
    ExtractorMapping("tags", "extractTags", default=[]),
    ExtractorMapping("listingUrl", "extractListingUrl", is_required=True),
    ExtractorMapping("recommendedText", "extractRecommendText", default=[]),
    ExtractorMapping("isSold", "extractIsSold", default=False),
]

DETAIL_EXTRACTOR_MAP: List[ExtractorMapping] = [
    ExtractorMapping("tags", "extractDetailTags", default=[], group="extractAndTranslateTags"),
    ExtractorMapping("lat", "extractLatitude", group="checkIfListingExists"),
    ExtractorMapping("long", "extractLongitude", group="checkIfListingExists"),
    ExtractorMapping("latLongString", "extractLatLongString", group="checkIfListingExists"),
    ExtractorMapping("listingImages", "extractListingImages", default=[], group="extractListingImages"),
    ExtractorMapping("recommendedText", "extractRecommendedText", default=[], group="extractRecommendedText"),
    ExtractorMapping("aboutProperty", "extractAboutProperty", group="extractAboutProperty"),
    ExtractorMapping("isDetailSoldPresent", "extractDetailIsSold", default=False, group="checkIfListingExists"),
]


def select_mappings(
    mappings: Sequence[ExtractorMapping],
    names: Optional[Iterable[str]] = None,
) -> List[ExtractorMapping]:
    """Restrict ``mappings`` to the given extractor, group or field names.

    ``None`` or an empty selection keeps every mapping.
    """
    wanted = set(names or ())
    if not wanted:
        return list(mappings)
    return [
        m for m in mappings
        if m.extractor in wanted or m.group in wanted or m.output_field in wanted
    ]


def apply_mapping(
    mappings: Sequence[ExtractorMapping],
    doc: BeautifulSoup,
    scope: Optional[Tag] = None,
) -> ExtractionResult:
    """Run each mapping against ``doc`` and collect typed field values.

    A failing extractor is logged and its field defaulted; when the field
    is required it is also reported in ``missing_required`` so the caller
    can flag the record instead of trusting the default.
    """
    result = ExtractionResult()
    for mapping in mappings:
        extractor, post_processor = _resolve(mapping)
        try:
            value = extractor(doc, scope)
            if post_processor is not None and value is not None:
                value = post_processor(value)
        except Exception as exc:
            LOGGER.warning("Extractor %s failed for %s: %s", mapping.extractor, mapping.output_field, exc)
            result.errors[mapping.output_field] = str(exc)
            value = None

        if _is_empty(value):
            if mapping.is_required:
                result.missing_required.append(mapping.output_field)
            value = copy.deepcopy(mapping.default)
        result.values[mapping.output_field] = value

    if result.missing_required:
        LOGGER.warning("Required fields missing: %s", ", ".join(result.missing_required))
    return result


def _resolve(mapping: ExtractorMapping):
    try:
        extractor = EXTRACTORS[mapping.extractor]
        post_processor = POST_PROCESSORS[mapping.post_processor] if mapping.post_processor else None
    except KeyError as exc:
        raise ValueError(f"Unknown extractor or post-processor in mapping {mapping}") from exc
    return extractor, post_processor


def _is_empty(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return value is None or value == "" or value == [] or value == 0
