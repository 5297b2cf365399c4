"""Scrape search result pages into columnar listing data."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError

from ..config import FetcherConfig, JPY_TO_USD
from ..extractors import search
from ..extractors.mapping import LISTING_EXTRACTOR_MAP, apply_mapping
from ..extractors.parsing import to_usd
from ..models import utc_now_iso
from .browser_fetcher import PageFetcher

LOGGER = logging.getLogger(__name__)

Columns = Dict[str, List[Any]]

# Field names of the raw snapshot stored under ``original``.
ORIGINAL_FIELDS = ("address", "price", "layout", "buildDate", "tags")


def page_url(base_url: str, page: int) -> str:
    if page <= 1:
        return base_url
    return f"{base_url}&paged={page}&so=date&ord=d&s="


def empty_columns() -> Columns:
    names = [m.output_field for m in LISTING_EXTRACTOR_MAP]
    return {name: [] for name in names + ["priceUsd", "missingFields", "scrapedAt", "original"]}


def extract_columns(html: str, jpy_to_usd: float = JPY_TO_USD) -> Columns:
    """Run the listing mapping over every card of one search page.

    Each card contributes one position to every column, so the columns of
    a page always have equal length.
    """
    doc = BeautifulSoup(html, "html.parser")
    columns = empty_columns()
    scraped_at = utc_now_iso()

    for card in search.listing_cards(doc):
        result = apply_mapping(LISTING_EXTRACTOR_MAP, doc, card)
        for name, value in result.values.items():
            columns[name].append(value)
        columns["priceUsd"].append(to_usd(result.values.get("price"), jpy_to_usd))
        columns["missingFields"].append(list(result.missing_required))
        columns["scrapedAt"].append(scraped_at)
        raw = {
            "address": search.extract_address(doc, card),
            "price": search.extract_price_text(doc, card),
            "layout": search.extract_layout(doc, card),
            "buildDate": search.extract_build_date(doc, card),
            "tags": search.extract_tags(doc, card),
        }
        columns["original"].append({name: raw[name] for name in ORIGINAL_FIELDS})

    LOGGER.info("Extracted %d listings from page", len(columns["original"]))
    return columns


def extend_columns(target: Columns, extra: Columns) -> None:
    for name, values in extra.items():
        target.setdefault(name, []).extend(values)


async def scrape_search_pages(
    base_url: str,
    max_pages: Optional[int] = None,
    config: Optional[FetcherConfig] = None,
    delay: float = 1.0,
    jpy_to_usd: float = JPY_TO_USD,
) -> Columns:
    """Scrape every search page (or the first ``max_pages``) into one column set.

    A page that keeps failing after retries is logged and skipped.
    """
    columns = empty_columns()
    async with PageFetcher(config) as fetcher:
        first = await fetcher.fetch_html(page_url(base_url, 1))
        last_page = search.extract_last_page(BeautifulSoup(first, "html.parser"))
        if max_pages is not None:
            last_page = min(last_page, max_pages)
        LOGGER.info("Scraping %d search page(s)", last_page)

        extend_columns(columns, extract_columns(first, jpy_to_usd))
        for page in range(2, last_page + 1):
            await asyncio.sleep(delay)
            url = page_url(base_url, page)
            try:
                html = await fetcher.fetch_html(url)
            except PlaywrightError as exc:
                LOGGER.error("Error scraping page %d (%s): %s", page, url, exc)
                continue
            extend_columns(columns, extract_columns(html, jpy_to_usd))

    LOGGER.info("Scraped %d listings in total", len(columns["original"]))
    return columns
