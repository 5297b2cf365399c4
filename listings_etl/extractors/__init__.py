"""Field extractors for listing search and detail pages.

Extractors are pure functions over a BeautifulSoup tree; the mapping
tables in :mod:`.mapping` decide which extractor fills which field.
"""

from .mapping import (
    DETAIL_EXTRACTOR_MAP,
    EXTRACTORS,
    LISTING_EXTRACTOR_MAP,
    ExtractionResult,
    ExtractorMapping,
    apply_mapping,
    select_mappings,
)
from .parsing import parse_area, parse_layout_rooms, parse_price

__all__ = [
    "DETAIL_EXTRACTOR_MAP",
    "EXTRACTORS",
    "LISTING_EXTRACTOR_MAP",
    "ExtractionResult",
    "ExtractorMapping",
    "apply_mapping",
    "select_mappings",
    "parse_area",
    "parse_layout_rooms",
    "parse_price",
]
