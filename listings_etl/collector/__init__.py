"""Page collection: headless browser fetcher, search page scraping and availability checks."""

from .browser_fetcher import PageFetcher, PageResult, should_block
from .race import first_successful

__all__ = ["PageFetcher", "PageResult", "first_successful", "should_block"]
