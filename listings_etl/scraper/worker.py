"""Worker for processing listing scraping tasks."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol

from bs4 import BeautifulSoup

from ..collector.browser_fetcher import PageResult
from ..config import STICKY_FIELDS
from ..errors import classify_error, is_listing_removed
from ..extractors.mapping import DETAIL_EXTRACTOR_MAP, apply_mapping, select_mappings
from ..failed_jobs import FailedJobStore
from ..models import ScrapeTask, utc_now_iso
from ..reconcile import merge_record
from ..store import locked_store
from .queue import TaskQueue

LOGGER = logging.getLogger(__name__)

# Extractor groups requested when a failed job is retried without an explicit list.
EXTRACTORS_TO_RETRY = ("checkIfListingExists", "extractAndTranslateTags")


class Fetcher(Protocol):
    async def fetch(self, url: str) -> PageResult:
        ...


class TaskOutcome(str, Enum):
    UPDATED = "updated"
    INCOMPLETE = "incomplete"
    REMOVED = "removed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class WorkerConfig:
    """Worker configuration."""

    worker_id: str
    batch_size: int = 1
    poll_interval: float = 5.0  # Seconds between queue polls
    graceful_shutdown: bool = True
    max_tasks: Optional[int] = None  # Max tasks before shutdown (for testing)
    exit_when_empty: bool = False

    @classmethod
    def from_env(cls, **overrides: Any) -> "WorkerConfig":
        """Build config with ``WORKER_ID`` from the environment (set by the supervisor)."""
        worker_id = os.getenv("WORKER_ID") or f"{os.getenv('HOSTNAME', 'localhost')}-{os.getpid()}"
        return cls(worker_id=worker_id, **overrides)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and not value)


def coordinate_fields(result: PageResult, values: Dict[str, Any]) -> Dict[str, Any]:
    """Coordinate fields for the store, preferring what the fetcher raced for."""
    if result.coordinates is not None:
        lat, lng = result.coordinates.lat, result.coordinates.long
        lat_long_string = result.coordinates.lat_long_string
    elif values.get("lat") is not None and values.get("long") is not None:
        lat, lng = values["lat"], values["long"]
        lat_long_string = values.get("latLongString") or f"{lat},{lng}"
    else:
        return {}
    return {
        "lat": lat,
        "long": lng,
        "latLong": {"lat": lat, "long": lng},
        "latLongString": lat_long_string,
    }


class Worker:
    """Task queue worker."""

    def __init__(
        self,
        config: WorkerConfig,
        queue: TaskQueue,
        fetcher: Fetcher,
        store_path: Path,
        failed_jobs: FailedJobStore,
        sticky_fields: Iterable[str] = STICKY_FIELDS,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        config : WorkerConfig
            Worker configuration
        queue : TaskQueue
            Task queue instance
        fetcher : Fetcher
            Started page fetcher
        store_path : Path
            Listing store updated after every task
        failed_jobs : FailedJobStore
            Failed-jobs file kept in step with the store
        sticky_fields : iterable of str
            Fields a partial scrape must not clear
        """
        self.config = config
        self.queue = queue
        self.fetcher = fetcher
        self.store_path = Path(store_path)
        self.failed_jobs = failed_jobs
        self.sticky_fields = tuple(sticky_fields)
        self.running = False
        self.tasks_processed = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0
        self._setup_signal_handlers()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        if self.config.graceful_shutdown:
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame) -> None:
        """Handle shutdown signal."""
        LOGGER.info("Received shutdown signal %s, stopping after current task...", signum)
        self.running = False

    async def run(self) -> None:
        """Run worker loop."""
        LOGGER.info(
            "Starting worker %s (batch_size=%d, poll_interval=%.1fs)",
            self.config.worker_id,
            self.config.batch_size,
            self.config.poll_interval,
        )

        self.running = True

        while self.running:
            if self.config.max_tasks is not None and self.tasks_processed >= self.config.max_tasks:
                LOGGER.info("Reached max tasks limit (%d), shutting down", self.config.max_tasks)
                break

            try:
                tasks = self.queue.dequeue(self.config.worker_id, self.config.batch_size)
            except Exception as exc:
                LOGGER.error("Worker error: %s", exc, exc_info=True)
                await asyncio.sleep(self.config.poll_interval)
                continue

            if not tasks:
                if self.config.exit_when_empty:
                    LOGGER.info("Queue is empty, shutting down")
                    break
                LOGGER.debug("No tasks available, sleeping...")
                await asyncio.sleep(self.config.poll_interval)
                continue

            for task in tasks:
                if not self.running:
                    LOGGER.info("Shutdown requested, returning task %d to the queue", task.task_id)
                    self.queue.mark_failed(task.task_id, "worker shutdown", retry=True)
                    continue
                await self.process_task(task)
                self.tasks_processed += 1

        self._log_stats()

    async def process_task(self, task: ScrapeTask) -> TaskOutcome:
        """Scrape one listing page and fold the result into the store.

        Returns
        -------
        TaskOutcome
            What happened to the listing
        """
        LOGGER.info("Processing task %d: %s (%s)", task.task_id, task.listing_id, task.url)
        start_time = time.time()

        try:
            result = await self.fetcher.fetch(task.url)
            if result.error is not None and result.html is None:
                raise ConnectionError(result.error)

            if is_listing_removed(result.html, result.status):
                self._remove_listing(task)
                outcome = TaskOutcome.REMOVED
            else:
                outcome = self._update_listing(task, result)
        except Exception as exc:
            error = classify_error(exc)
            LOGGER.error(
                "Exception processing task %d (%s): %s",
                task.task_id,
                error.error_type.value,
                error,
                exc_info=True,
            )
            self.failed_jobs.add(task.listing_id, task.url, str(error))
            self.queue.mark_failed(task.task_id, str(error), retry=error.retriable)
            self.tasks_failed += 1
            return TaskOutcome.FAILED

        self.queue.mark_completed(task.task_id)
        self.tasks_succeeded += 1
        LOGGER.info(
            "Task %d finished as %s (took %.2fs)",
            task.task_id,
            outcome.value,
            time.time() - start_time,
        )
        return outcome

    def _remove_listing(self, task: ScrapeTask) -> None:
        with locked_store(self.store_path) as store:
            if store.listings.pop(task.listing_id, None) is not None:
                store.save()
                LOGGER.info("Listing %s no longer exists, removed from store", task.listing_id)
            else:
                LOGGER.info("Listing %s no longer exists and is not in the store", task.listing_id)
        self.failed_jobs.remove(task.listing_id)

    def _update_listing(self, task: ScrapeTask, result: PageResult) -> TaskOutcome:
        names = task.extractors or (EXTRACTORS_TO_RETRY if task.from_failed_jobs else ())
        mappings = select_mappings(DETAIL_EXTRACTOR_MAP, names)
        extraction = apply_mapping(mappings, BeautifulSoup(result.html, "html.parser"))

        update = {name: value for name, value in extraction.values.items() if not _is_empty(value)}
        update.update(coordinate_fields(result, extraction.values))
        update["scrapedAt"] = utc_now_iso()

        with locked_store(self.store_path) as store:
            current = store.listings.get(task.listing_id)
            if current is None:
                LOGGER.warning("Listing %s is not in the store, skipping update", task.listing_id)
                return TaskOutcome.SKIPPED
            record = merge_record(current, update, self.sticky_fields)
            store.listings[task.listing_id] = record
            store.save()

        missing = []
        if not record.get("tags"):
            missing.append("tags")
        if not record.get("latLong"):
            missing.append("latLong")
        if missing:
            reason = f"Missing {' and '.join(missing)} after scraping"
            self.failed_jobs.add(task.listing_id, task.url, reason)
            LOGGER.warning("Listing %s is incomplete: %s", task.listing_id, reason)
            return TaskOutcome.INCOMPLETE

        self.failed_jobs.remove(task.listing_id)
        return TaskOutcome.UPDATED

    def _log_stats(self) -> None:
        """Log worker statistics."""
        LOGGER.info(
            "Worker %s shutting down: processed=%d, succeeded=%d, failed=%d",
            self.config.worker_id,
            self.tasks_processed,
            self.tasks_succeeded,
            self.tasks_failed,
        )
