"""Runtime configuration loaded from the environment and optional YAML file."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")

STICKY_FIELDS: Tuple[str, ...] = ("listingImages", "recommendedText", "isDetailSoldPresent")
STORE_ROOT_KEY = "newListings"
QUEUE_NAME = "listing-scraping"
DEFAULT_SEARCH_URL = (
    "https://www.shiawasehome-reuse.com/?bukken=jsearch&shub=1&kalb=0&kahb=kp120"
    "&tochimel=0&tochimeh=&mel=0&meh="
)
JPY_TO_USD = 155.0


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Ignoring non-integer %s=%r, using %d", name, value, default)
        return default


def load_pipeline_file(path: str | Path) -> Dict[str, Any]:
    """Read YAML pipeline overrides (sticky fields, retry policy, search URL)."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("pipeline config must be a dictionary")
    return data


@dataclass
class PipelineConfig:
    """Paths and reconciliation policy shared by the CLI commands."""

    store_path: Path = Path("data/listings.json")
    failed_jobs_path: Path = Path("data/failed-jobs.json")
    sticky_fields: Tuple[str, ...] = STICKY_FIELDS
    max_failed_retries: int = 5
    search_url: str = DEFAULT_SEARCH_URL
    jpy_to_usd: float = JPY_TO_USD

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build config from environment, applying PIPELINE_CONFIG overrides if set."""
        config = cls(
            store_path=Path(os.getenv("LISTINGS_STORE_PATH", "data/listings.json")),
            failed_jobs_path=Path(os.getenv("FAILED_JOBS_PATH", "data/failed-jobs.json")),
            max_failed_retries=_env_int("MAX_FAILED_RETRIES", 5),
            jpy_to_usd=float(os.getenv("JPY_TO_USD", JPY_TO_USD)),
        )
        if path := os.getenv("PIPELINE_CONFIG"):
            config.apply_overrides(load_pipeline_file(path))
        return config

    def apply_overrides(self, data: Dict[str, Any]) -> None:
        if "sticky_fields" in data:
            self.sticky_fields = tuple(data["sticky_fields"])
        if "max_failed_retries" in data:
            self.max_failed_retries = int(data["max_failed_retries"])
        if "search_url" in data:
            self.search_url = str(data["search_url"])
        if "jpy_to_usd" in data:
            self.jpy_to_usd = float(data["jpy_to_usd"])


@dataclass
class FetcherConfig:
    """Headless browser settings for the page fetcher."""

    headless: bool = True
    timeout_ms: int = 60000
    coordinate_timeout: float = 10.0
    block_resources: bool = True
    debug: bool = False
    debug_dir: Path = Path("debug")
    user_agent: Optional[str] = None

    @classmethod
    def from_env(cls) -> "FetcherConfig":
        return cls(
            headless=_env_bool("SCRAPER_HEADLESS", True),
            timeout_ms=_env_int("SCRAPER_TIMEOUT_MS", 60000),
            block_resources=_env_bool("SCRAPER_BLOCK_RESOURCES", True),
            debug=_env_bool("SCRAPER_DEBUG", False),
            debug_dir=Path(os.getenv("SCRAPER_DEBUG_DIR", "debug")),
            user_agent=os.getenv("SCRAPER_USER_AGENT"),
        )


@dataclass
class QueueConfig:
    """Connection settings for the Redis-backed job queue.

    Local runs talk to ``localhost:6379``; any other environment requires an
    explicit ``REDIS_URL`` pointing at the managed instance.
    """

    url: str = "redis://localhost:6379/0"
    name: str = QUEUE_NAME
    max_retries: int = 3
    environment: str = "local"
    connect_timeout: float = 5.0

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @classmethod
    def from_env(cls) -> "QueueConfig":
        environment = os.getenv("SCRAPER_ENV", "local")
        if url := os.getenv("REDIS_URL"):
            return cls(url=url, environment=environment)
        if environment != "local":
            LOGGER.warning("SCRAPER_ENV=%s but REDIS_URL is not set, using localhost", environment)
        return cls(environment=environment)
