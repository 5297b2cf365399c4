"""HTTP check for listings that have disappeared from the source site."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random

from ..errors import is_listing_removed
from ..failed_jobs import resolve_listing_url

LOGGER = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_TIMEOUT = httpx.Timeout(20.0)

Record = Dict[str, Any]


@retry(
    stop=stop_after_attempt(3),
    wait=wait_random(1, 3),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
async def fetch_listing_page(client: httpx.AsyncClient, url: str) -> Tuple[int, str]:
    response = await client.get(url)
    LOGGER.debug("Checked %s (status=%s)", url, response.status_code)
    return response.status_code, response.text


async def check_removed(client: httpx.AsyncClient, url: str) -> bool:
    """Return True when ``url`` answers 404 or serves a removal notice."""
    status, html = await fetch_listing_page(client, url)
    if status >= 400 and status != 404:
        LOGGER.warning("Unexpected status %s for %s, keeping listing", status, url)
        return False
    return is_listing_removed(html, status)


async def _find_removed(
    client: httpx.AsyncClient,
    listings: Mapping[str, Record],
    concurrency: int,
) -> List[str]:
    semaphore = asyncio.Semaphore(concurrency)

    async def _check(key: str, record: Record) -> bool:
        url = resolve_listing_url(record)
        if url is None:
            return False
        async with semaphore:
            try:
                removed = await check_removed(client, url)
            except httpx.HTTPError as exc:
                LOGGER.warning("Could not check listing %s (%s): %s", key, url, exc)
                return False
        if removed:
            LOGGER.info("Listing %s no longer exists at %s", key, url)
        return removed

    keys = list(listings)
    flags = await asyncio.gather(*(_check(key, listings[key]) for key in keys))
    return [key for key, removed in zip(keys, flags) if removed]


async def find_removed_listings(
    listings: Mapping[str, Record],
    concurrency: int = 5,
    client: Optional[httpx.AsyncClient] = None,
) -> List[str]:
    """Return keys of listings whose page is gone.

    Listings without a URL and listings whose check keeps failing are
    kept; only a positive removal signal drops a listing.
    """
    if client is not None:
        return await _find_removed(client, listings, concurrency)
    async with httpx.AsyncClient(
        timeout=DEFAULT_TIMEOUT,
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
    ) as owned:
        return await _find_removed(owned, listings, concurrency)
