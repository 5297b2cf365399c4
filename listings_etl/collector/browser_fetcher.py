"""Playwright page fetcher for listing detail pages.

Non-essential requests are aborted at the network layer, then two
coordinate strategies race each other: a response listener watching map
requests, and a DOM scan of the loaded page.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from bs4 import BeautifulSoup
from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    Response,
    Route,
    async_playwright,
)
from tenacity import retry, stop_after_attempt, wait_random

from ..config import FetcherConfig
from ..extractors.detail import find_coordinates
from ..models import CoordinateResult, CoordinateSource
from .race import first_successful

LOGGER = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-gpu",
]

BLOCKED_RESOURCE_TYPES = frozenset(
    {
        "image",
        "stylesheet",
        "font",
        "media",
        "other",
        "websocket",
        "manifest",
        "texttrack",
        "object",
        "beacon",
        "csp_report",
        "imageset",
    }
)
BLOCKED_EXTENSION_RE = re.compile(r"\.(png|jpe?g|gif|webp|css|woff2?|ttf|otf)(\?.*)?$", re.IGNORECASE)
BLOCKED_URL_KEYWORDS = ("facebook", "analytics", "tracking", "advertisement", "marketing", "doubleclick")

MAP_URL_MARKERS = ("maps.google.com", "maps/api")
LL_PARAM_RE = re.compile(r"[?&]ll=(-?\d+\.\d+),(-?\d+\.\d+)")


def should_block(resource_type: str, url: str) -> bool:
    """Return True for requests the listing page does not need."""
    if resource_type in BLOCKED_RESOURCE_TYPES:
        return True
    lowered = url.lower()
    if BLOCKED_EXTENSION_RE.search(lowered.split("#", 1)[0]):
        return True
    return any(keyword in lowered for keyword in BLOCKED_URL_KEYWORDS)


def is_map_url(url: str) -> bool:
    return any(marker in url for marker in MAP_URL_MARKERS)


def coordinates_from_text(text: str) -> Optional[CoordinateResult]:
    """Find an ``ll=lat,lng`` pair in a map URL or response body."""
    match = LL_PARAM_RE.search(text or "")
    if not match:
        return None
    lat, lng = float(match.group(1)), float(match.group(2))
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return CoordinateResult(lat=lat, long=lng, source=CoordinateSource.RESPONSE)


@dataclass
class PageResult:
    """Outcome of loading one listing page."""

    url: str
    status: Optional[int] = None
    coordinates: Optional[CoordinateResult] = None
    html: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.html is not None

    def to_dict(self, include_html: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "url": self.url,
            "status": self.status,
            "coordinates": self.coordinates.model_dump(mode="json") if self.coordinates else None,
            "error": self.error,
        }
        if include_html:
            data["html"] = self.html
        return data


class ResponseInterceptor:
    """Resolve with the first coordinates seen in a map-related response."""

    def __init__(self) -> None:
        self._found: "asyncio.Future[CoordinateResult]" = asyncio.get_running_loop().create_future()

    async def on_response(self, response: Response) -> None:
        future = self._found
        if future.done() or not is_map_url(response.url):
            return
        coords = coordinates_from_text(response.url)
        if coords is None:
            try:
                coords = coordinates_from_text(await response.text())
            except PlaywrightError as exc:
                LOGGER.debug("Could not read map response %s: %s", response.url, exc)
                return
        if coords is not None and not future.done():
            LOGGER.debug("Coordinates intercepted from %s", response.url)
            future.set_result(coords)

    async def wait(self) -> CoordinateResult:
        return await self._found


async def _route_request(route: Route) -> None:
    request = route.request
    if should_block(request.resource_type, request.url):
        await route.abort()
    else:
        await route.continue_()


class PageFetcher:
    """Headless Chromium fetcher returning page HTML and coordinates.

    Use as an async context manager so the browser is started and closed
    around a batch of fetches.
    """

    def __init__(self, config: Optional[FetcherConfig] = None) -> None:
        self.config = config or FetcherConfig.from_env()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "PageFetcher":
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cleanup()

    async def setup(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=LAUNCH_ARGS,
        )
        LOGGER.info("Browser started (headless=%s)", self.config.headless)

    async def cleanup(self) -> None:
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        LOGGER.info("Browser closed")

    async def fetch(self, url: str) -> PageResult:
        """Load ``url``; navigation failures are reported in the result, not raised."""
        if not self._browser:
            raise RuntimeError("Browser not initialized. Call setup() first")

        context_kwargs: Dict[str, Any] = {}
        if self.config.user_agent:
            context_kwargs["user_agent"] = self.config.user_agent
        try:
            context = await self._browser.new_context(**context_kwargs)
        except PlaywrightError as exc:
            LOGGER.warning("Could not open browser context for %s: %s", url, exc)
            return PageResult(url=url, error=str(exc))
        try:
            if self.config.block_resources:
                await context.route("**/*", _route_request)
            page = await context.new_page()
            return await self.fetch_with_page(page, url)
        except PlaywrightError as exc:
            LOGGER.warning("Could not prepare page for %s: %s", url, exc)
            return PageResult(url=url, error=str(exc))
        finally:
            try:
                await context.close()
            except PlaywrightError as exc:
                LOGGER.debug("Error closing browser context: %s", exc)

    @retry(stop=stop_after_attempt(3), wait=wait_random(1, 3), reraise=True)
    async def fetch_html(self, url: str) -> str:
        """Load ``url`` until the network settles and return its HTML, retrying on errors."""
        if not self._browser:
            raise RuntimeError("Browser not initialized. Call setup() first")

        context = await self._browser.new_context()
        try:
            if self.config.block_resources:
                await context.route("**/*", _route_request)
            page = await context.new_page()
            await page.goto(url, wait_until="networkidle", timeout=self.config.timeout_ms)
            html = await page.content()
            LOGGER.debug("Fetched %s (%d bytes)", url, len(html))
            return html
        finally:
            await context.close()

    async def fetch_with_page(self, page: Page, url: str) -> PageResult:
        result = PageResult(url=url)
        interceptor = ResponseInterceptor()
        page.on("response", interceptor.on_response)
        try:
            response = await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.config.timeout_ms,
            )
            result.status = response.status if response is not None else None
            result.coordinates = await first_successful(
                [interceptor.wait(), self._coordinates_from_dom(page)],
                timeout=self.config.coordinate_timeout,
            )
            result.html = await page.content()
        except PlaywrightError as exc:
            LOGGER.warning("Failed to load %s: %s", url, exc)
            result.error = str(exc)
        finally:
            page.remove_listener("response", interceptor.on_response)

        if result.coordinates is None:
            LOGGER.info("No coordinates found for %s", url)
        if self.config.debug:
            await self._capture_debug(page, result)
        return result

    async def _coordinates_from_dom(self, page: Page) -> Optional[CoordinateResult]:
        try:
            await page.wait_for_load_state("load", timeout=self.config.coordinate_timeout * 1000)
        except PlaywrightError as exc:
            LOGGER.debug("Page did not finish loading, scanning DOM anyway: %s", exc)
        html = await page.content()
        return find_coordinates(BeautifulSoup(html, "html.parser"))

    async def _capture_debug(self, page: Page, result: PageResult) -> None:
        """Write screenshot, HTML and result JSON; failures are only logged."""
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        directory = self.config.debug_dir
        try:
            directory.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(directory / f"{stamp}-screenshot.png"), full_page=True)
            (directory / f"{stamp}-page.html").write_text(result.html or "", encoding="utf-8")
            (directory / f"{stamp}-result.json").write_text(
                json.dumps(result.to_dict(include_html=False), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except (OSError, PlaywrightError) as exc:
            LOGGER.debug("Could not write debug artifacts for %s: %s", result.url, exc)
