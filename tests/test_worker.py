import asyncio

import fakeredis
import pytest

from listings_etl.collector.browser_fetcher import PageResult
from listings_etl.config import QueueConfig
from listings_etl.failed_jobs import FailedJobStore
from listings_etl.models import CoordinateResult, CoordinateSource, ScrapeTask
from listings_etl.scraper.queue import RedisQueue
from listings_etl.scraper.worker import TaskOutcome, Worker, WorkerConfig
from listings_etl.store import load_store, write_json_atomic

from conftest import BARE_DETAIL_HTML, DETAIL_HTML, REMOVED_HTML

URL = "https://www.shiawasehome-reuse.com/bukken/1234/"


class FakeFetcher:
    def __init__(self, result):
        self.result = result
        self.urls = []

    async def fetch(self, url):
        self.urls.append(url)
        return self.result


@pytest.fixture
def env(tmp_path):
    store_path = tmp_path / "listings.json"
    write_json_atomic(
        store_path,
        {
            "newListings": {
                "abc": {
                    "id": "abc",
                    "listingUrl": URL,
                    "price": 49_800_000,
                    "tags": [],
                    "listingImages": ["https://img.example/old.jpg"],
                    "isDetailSoldPresent": True,
                }
            }
        },
    )
    failed_jobs = FailedJobStore(tmp_path / "failed-jobs.json")
    failed_jobs.add("abc", URL, "Missing tags, requires scraping")
    queue = RedisQueue(fakeredis.FakeRedis(decode_responses=True), QueueConfig(max_retries=1))
    return store_path, failed_jobs, queue


def _worker(env, result, **config):
    store_path, failed_jobs, queue = env
    worker_config = WorkerConfig(worker_id="test", graceful_shutdown=False, poll_interval=0.01, **config)
    return Worker(worker_config, queue, FakeFetcher(result), store_path, failed_jobs)


def _dequeue_one(queue, **task_fields):
    queue.enqueue(ScrapeTask(listing_id="abc", url=URL, **task_fields))
    [task] = queue.dequeue("test")
    return task


def test_successful_scrape_updates_store_and_resolves_failed_job(env):
    store_path, failed_jobs, queue = env
    coords = CoordinateResult(lat=35.25, long=139.75, source=CoordinateSource.RESPONSE)
    worker = _worker(env, PageResult(url=URL, status=200, coordinates=coords, html=DETAIL_HTML))
    task = _dequeue_one(queue, from_failed_jobs=True)

    outcome = asyncio.run(worker.process_task(task))

    assert outcome is TaskOutcome.UPDATED
    record = load_store(store_path).listings["abc"]
    assert "南向き" in record["tags"]
    assert record["latLong"] == {"lat": 35.25, "long": 139.75}
    assert record["latLongString"] == "35.25,139.75"
    assert record["price"] == 49_800_000
    assert record["isDetailSoldPresent"] is True
    assert record["listingImages"] == ["https://img.example/old.jpg"]
    assert failed_jobs.get("abc") is None
    assert queue.get_stats()["completed"] == 1


def test_dom_coordinates_are_used_without_intercepted_ones(env):
    store_path, _, queue = env
    worker = _worker(env, PageResult(url=URL, status=200, html=DETAIL_HTML))

    asyncio.run(worker.process_task(_dequeue_one(queue)))

    record = load_store(store_path).listings["abc"]
    assert record["latLongString"] == "35.6329,139.6503"
    assert record["listingImages"] == ["https://img.example/1.jpg", "https://img.example/2.jpg"]


def test_incomplete_scrape_bumps_failed_job(env):
    store_path, failed_jobs, queue = env
    worker = _worker(env, PageResult(url=URL, status=200, html=BARE_DETAIL_HTML))

    outcome = asyncio.run(worker.process_task(_dequeue_one(queue, from_failed_jobs=True)))

    assert outcome is TaskOutcome.INCOMPLETE
    job = failed_jobs.get("abc")
    assert job.retry_count == 2
    assert job.reason == "Missing tags and latLong after scraping"
    assert load_store(store_path).listings["abc"]["isDetailSoldPresent"] is True


@pytest.mark.parametrize(
    "result",
    [
        PageResult(url=URL, status=404, html="<html></html>"),
        PageResult(url=URL, status=200, html=REMOVED_HTML),
    ],
)
def test_removed_listing_is_dropped(env, result):
    store_path, failed_jobs, queue = env
    worker = _worker(env, result)

    outcome = asyncio.run(worker.process_task(_dequeue_one(queue)))

    assert outcome is TaskOutcome.REMOVED
    assert "abc" not in load_store(store_path).listings
    assert failed_jobs.read() == []
    assert queue.get_stats()["completed"] == 1


def test_navigation_failure_is_retried_through_queue(env):
    store_path, failed_jobs, queue = env
    worker = _worker(env, PageResult(url=URL, error="Timeout 60000ms exceeded"))

    outcome = asyncio.run(worker.process_task(_dequeue_one(queue)))

    assert outcome is TaskOutcome.FAILED
    assert queue.get_stats()["pending"] == 1
    assert failed_jobs.get("abc").retry_count == 2
    assert load_store(store_path).listings["abc"]["tags"] == []


def test_run_drains_queue_and_stops(env):
    _, _, queue = env
    queue.enqueue(ScrapeTask(listing_id="abc", url=URL))
    queue.enqueue(ScrapeTask(listing_id="def", url=URL + "?b"))
    worker = _worker(env, PageResult(url=URL, status=200, html=DETAIL_HTML), exit_when_empty=True)

    asyncio.run(worker.run())

    assert worker.tasks_processed == 2
    assert worker.tasks_succeeded == 2
    assert queue.get_stats() == {"pending": 0, "in_progress": 0, "failed": 0, "completed": 2}


def test_run_respects_max_tasks(env):
    _, _, queue = env
    for listing_id in ("a", "b", "c"):
        queue.enqueue(ScrapeTask(listing_id=listing_id, url=URL))
    worker = _worker(env, PageResult(url=URL, status=200, html=DETAIL_HTML), max_tasks=2)

    asyncio.run(worker.run())

    assert worker.tasks_processed == 2
    assert queue.get_stats()["pending"] == 1


def test_rescrape_without_tags_keeps_stored_tags(tmp_path):
    store_path = tmp_path / "listings.json"
    write_json_atomic(
        store_path,
        {"newListings": {"abc": {"id": "abc", "listingUrl": URL, "tags": ["駐車場"], "recommendedText": ["角地"]}}},
    )
    failed_jobs = FailedJobStore(tmp_path / "failed-jobs.json")
    queue = RedisQueue(fakeredis.FakeRedis(decode_responses=True))
    worker = _worker((store_path, failed_jobs, queue), PageResult(url=URL, status=200, html=BARE_DETAIL_HTML))

    outcome = asyncio.run(worker.process_task(_dequeue_one(queue)))

    record = load_store(store_path).listings["abc"]
    assert record["tags"] == ["駐車場"]
    assert record["recommendedText"] == ["角地"]
    assert outcome is TaskOutcome.INCOMPLETE
    assert failed_jobs.get("abc").reason == "Missing latLong after scraping"


def test_task_for_listing_missing_from_store_is_skipped(env):
    store_path, failed_jobs, queue = env
    worker = _worker(env, PageResult(url=URL, status=200, html=DETAIL_HTML))
    queue.enqueue(ScrapeTask(listing_id="gone", url=URL + "?gone"))
    [task] = queue.dequeue("test")

    outcome = asyncio.run(worker.process_task(task))

    assert outcome is TaskOutcome.SKIPPED
    assert set(load_store(store_path).listings) == {"abc"}
    assert failed_jobs.get("gone") is None
    assert queue.get_stats()["completed"] == 1
