"""Pydantic models shared across pipeline components."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = 1


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LatLong(BaseModel):
    lat: float
    long: float


class Listing(BaseModel):
    """One property record as persisted in the listing store.

    Keys use the camelCase names of the JSON document. Keys the model does
    not know about are kept as extras and written back unchanged.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = None
    schema_version: int = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    address: Optional[str] = None
    english_address: Optional[str] = Field(default=None, alias="englishAddress")
    price: Optional[float] = None
    price_usd: Optional[float] = Field(default=None, alias="priceUsd")
    layout: Optional[str] = None
    land_area_sqm: Optional[float] = Field(default=None, alias="landAreaSqm")
    build_area_sqm: Optional[float] = Field(default=None, alias="buildAreaSqm")
    build_date: Optional[str] = Field(default=None, alias="buildDate")
    listing_images: List[str] = Field(default_factory=list, alias="listingImages")
    recommended_text: List[str] = Field(default_factory=list, alias="recommendedText")
    about_property: Optional[str] = Field(default=None, alias="aboutProperty")
    lat: Optional[float] = None
    long: Optional[float] = None
    lat_long: Optional[LatLong] = Field(default=None, alias="latLong")
    lat_long_string: Optional[str] = Field(default=None, alias="latLongString")
    is_sold: bool = Field(default=False, alias="isSold")
    is_detail_sold_present: bool = Field(default=False, alias="isDetailSoldPresent")
    tags: List[str] = Field(default_factory=list)
    listing_url: Optional[str] = Field(default=None, alias="listingUrl")
    original: Dict[str, Any] = Field(default_factory=dict)
    scraped_at: Optional[str] = Field(default=None, alias="scrapedAt")
    removed: bool = False

    @property
    def extensions(self) -> Dict[str, Any]:
        """Fields present on the record that the schema does not declare."""
        return dict(self.model_extra or {})

    @property
    def has_coordinates(self) -> bool:
        return self.lat_long is not None or (self.lat is not None and self.long is not None)

    def to_record(self) -> Dict[str, Any]:
        """Dump to the JSON shape, omitting fields that were never set."""
        return self.model_dump(by_alias=True, exclude_unset=True)


class FailedJob(BaseModel):
    """Listing that needs to be scraped again."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    url: str
    failed_at: str = Field(default_factory=utc_now_iso, alias="failedAt")
    reason: str = ""
    retry_count: int = Field(default=0, alias="retryCount")

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CoordinateSource(str, Enum):
    """Strategy that produced a coordinate pair."""

    RESPONSE = "response"
    DOM = "dom"


class CoordinateResult(BaseModel):
    lat: float
    long: float
    source: CoordinateSource

    @property
    def lat_long_string(self) -> str:
        return f"{self.lat},{self.long}"


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class JobType(str, Enum):
    SCRAPE_LISTING = "scrape-listing"
    PROCESS_DETAIL = "process-detail"
    RETRY_FAILED = "retry-failed"


class ScrapeTask(BaseModel):
    """Listing scraping job carried through the queue."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    task_id: Optional[int] = Field(default=None, alias="taskId")
    job_type: JobType = Field(default=JobType.SCRAPE_LISTING, alias="jobType")
    listing_id: str = Field(alias="listingId")
    url: str
    extractors: List[str] = Field(default_factory=list)
    from_failed_jobs: bool = Field(default=False, alias="fromFailedJobs")
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = Field(default=0, alias="retryCount")
    max_retries: Optional[int] = Field(default=None, alias="maxRetries")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class MergeStats(BaseModel):
    added: int = 0
    updated: int = 0
    total: int = 0
