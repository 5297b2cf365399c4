"""Failed-job bookkeeping: the failed-jobs file and the store scan that feeds it."""
from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from pydantic import ValidationError

from .models import FailedJob, utc_now_iso
from .store import file_lock, read_json, write_json_atomic

LOGGER = logging.getLogger(__name__)

Record = Dict[str, Any]
Listings = Dict[str, Record]

MISSING_TAGS_REASON = "Missing tags, requires scraping"
RESET_REASON = "No tags extracted from listing"
URL_FIELDS = ("listingUrl", "url", "listingDetailUrl", "listingDetail")


class FailedJobStore:
    """Read/modify/write access to the failed-jobs JSON array.

    Every operation holds the file's inter-process lock; the lock is
    reentrant within one instance, so ``add`` can read and write under it.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = file_lock(self.path)

    def read(self) -> List[FailedJob]:
        """Return all jobs, creating an empty file when none exists."""
        with self._lock:
            if not self.path.exists():
                LOGGER.info("Creating failed jobs file at %s", self.path)
                self.write([])
                return []
            try:
                data = read_json(self.path)
                if not isinstance(data, list):
                    raise ValueError("failed jobs file must hold a JSON array")
                return [FailedJob.model_validate(item) for item in data]
            except (OSError, ValueError, ValidationError) as exc:
                LOGGER.error("Error reading failed jobs file %s: %s", self.path, exc)
                return []

    def write(self, jobs: Iterable[FailedJob]) -> None:
        jobs = list(jobs)
        with self._lock:
            write_json_atomic(self.path, [job.to_record() for job in jobs])
        LOGGER.info("Updated failed jobs file with %d jobs", len(jobs))

    def get(self, job_id: str) -> Optional[FailedJob]:
        return next((job for job in self.read() if job.id == job_id), None)

    def add(self, job_id: str, url: str, reason: str) -> FailedJob:
        """Record a failure; a repeated failure bumps the existing entry's retry count."""
        with self._lock:
            jobs = self.read()
            for index, job in enumerate(jobs):
                if job.id == job_id:
                    updated = job.model_copy(
                        update={
                            "failed_at": utc_now_iso(),
                            "reason": reason,
                            "retry_count": job.retry_count + 1,
                        }
                    )
                    jobs[index] = updated
                    LOGGER.info("Updating failed job %s (attempt %d)", job_id, updated.retry_count)
                    break
            else:
                updated = FailedJob(id=job_id, url=url, reason=reason, retry_count=1)
                jobs.append(updated)
                LOGGER.info("Recording new failed job %s", job_id)
            self.write(jobs)
        return updated

    def remove(self, job_id: str) -> bool:
        with self._lock:
            jobs = self.read()
            remaining = [job for job in jobs if job.id != job_id]
            if len(remaining) == len(jobs):
                return False
            self.write(remaining)
        LOGGER.info("Removed failed job %s", job_id)
        return True

    @contextmanager
    def locked(self) -> Iterator[List[FailedJob]]:
        """Hold the lock across a caller's own read-modify-write."""
        with self._lock:
            yield self.read()

    def clear(self) -> None:
        self.write([])


def resolve_listing_url(record: Mapping[str, Any]) -> Optional[str]:
    for name in URL_FIELDS:
        value = record.get(name)
        if isinstance(value, str) and value.startswith("http"):
            return value
    return None


def _has_tags(record: Mapping[str, Any]) -> bool:
    tags = record.get("tags")
    if isinstance(tags, str):
        return bool(tags.strip())
    return bool(tags)


@dataclass
class TrackerReport:
    total_listings: int = 0
    empty_tags: int = 0
    missing_lat_long: int = 0
    missing_lat_long_string: int = 0
    already_in_failed_jobs: int = 0
    added_to_failed_jobs: int = 0
    removed_from_failed_jobs: int = 0
    updated_is_detail_sold_present: int = 0
    stub_lat_long_string: int = 0
    skipped_no_url: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class TrackerResult:
    listings: Listings
    jobs: List[FailedJob]
    report: TrackerReport = field(default_factory=TrackerReport)


def track_failed_jobs(
    listings: Mapping[str, Record],
    failed_jobs: Iterable[FailedJob],
) -> TrackerResult:
    """Scan the store and derive the failed-job list.

    A record without ``latLongString`` is stubbed with ``""`` and marked
    ``isDetailSoldPresent``; its failed-job entry is dropped. A record
    without ``latLong`` is marked ``isDetailSoldPresent`` too. Records with
    empty tags and a URL get a new entry unless one existed before this
    scan. Existing entries keep their retry counts.
    """
    prior = list(failed_jobs)
    prior_ids: Set[str] = {job.id for job in prior}
    report = TrackerReport()
    updated: Listings = {}
    stubbed: Set[str] = set()
    new_jobs: List[FailedJob] = []
    added_ids: Set[str] = set()

    for key, source in listings.items():
        record = copy.deepcopy(source)
        listing_id = record.get("id") or key
        report.total_listings += 1

        if record.get("latLongString") is None:
            report.missing_lat_long_string += 1
            record["latLongString"] = ""
            record["isDetailSoldPresent"] = True
            report.stub_lat_long_string += 1
            stubbed.add(listing_id)

        if record.get("latLong") is None:
            report.missing_lat_long += 1
            if record.get("isDetailSoldPresent") is not True:
                record["isDetailSoldPresent"] = True
                report.updated_is_detail_sold_present += 1

        if not _has_tags(record):
            report.empty_tags += 1
            if listing_id in prior_ids:
                report.already_in_failed_jobs += 1
            else:
                url = resolve_listing_url(record)
                if url is None:
                    LOGGER.warning("Listing %s has empty tags but no URL, skipping", listing_id)
                    report.skipped_no_url += 1
                elif listing_id not in added_ids:
                    added_ids.add(listing_id)
                    new_jobs.append(
                        FailedJob(id=listing_id, url=url, reason=MISSING_TAGS_REASON, retry_count=0)
                    )
                    report.added_to_failed_jobs += 1

        updated[key] = record

    kept = [job for job in prior if job.id not in stubbed]
    report.removed_from_failed_jobs = len(prior) - len(kept)
    jobs = kept + new_jobs

    LOGGER.info("Failed job tracker: %s", report.as_dict())
    return TrackerResult(listings=updated, jobs=jobs, report=report)


def reset_failed_jobs(listings: Mapping[str, Record]) -> List[FailedJob]:
    """Rebuild the failed-job list from scratch with every tagless listing."""
    jobs: List[FailedJob] = []
    for key, record in listings.items():
        if _has_tags(record):
            continue
        listing_id = record.get("id") or key
        url = resolve_listing_url(record)
        if url is None:
            LOGGER.warning("Skipping listing %s - no URL found", listing_id)
            continue
        jobs.append(FailedJob(id=listing_id, url=url, reason=RESET_REASON, retry_count=0))
    LOGGER.info("Found %d listings with empty tags", len(jobs))
    return jobs


@dataclass
class MissingField:
    id: str
    url: Optional[str]
    missing_tags: bool
    missing_lat_long: bool

    @property
    def reason(self) -> str:
        reasons = []
        if self.missing_tags:
            reasons.append("missing tags")
        if self.missing_lat_long:
            reasons.append("missing latLong")
        return f"One-off reprocessing needed: {' and '.join(reasons)}"


def find_missing_fields(listings: Mapping[str, Record]) -> Tuple[List[MissingField], Dict[str, int]]:
    """List listings lacking tags or ``latLong``, with summary counts."""
    found: List[MissingField] = []
    counts = {"total": 0, "missing_tags": 0, "missing_lat_long": 0, "missing_both": 0}
    for key, record in listings.items():
        counts["total"] += 1
        missing_tags = not _has_tags(record)
        missing_lat_long = "latLong" not in record
        counts["missing_tags"] += missing_tags
        counts["missing_lat_long"] += missing_lat_long
        counts["missing_both"] += missing_tags and missing_lat_long
        if missing_tags or missing_lat_long:
            found.append(
                MissingField(
                    id=record.get("id") or key,
                    url=resolve_listing_url(record),
                    missing_tags=missing_tags,
                    missing_lat_long=missing_lat_long,
                )
            )
    return found, counts


def exhausted_jobs(jobs: Iterable[FailedJob], max_retries: int) -> List[FailedJob]:
    return [job for job in jobs if job.retry_count >= max_retries]
