import json

import pytest

from listings_etl.failed_jobs import (
    MISSING_TAGS_REASON,
    RESET_REASON,
    FailedJobStore,
    exhausted_jobs,
    find_missing_fields,
    reset_failed_jobs,
    resolve_listing_url,
    track_failed_jobs,
)
from listings_etl.models import FailedJob


@pytest.fixture
def job_store(tmp_path):
    return FailedJobStore(tmp_path / "failed-jobs.json")


def test_tracker_adds_one_entry_for_empty_tags_across_runs():
    listings = {"abc": {"id": "abc", "tags": [], "listingUrl": "http://x", "latLongString": "", "latLong": None}}

    first = track_failed_jobs(listings, [])
    second = track_failed_jobs(first.listings, first.jobs)

    assert [job.id for job in first.jobs] == ["abc"]
    assert [job.id for job in second.jobs] == ["abc"]
    assert first.jobs[0].reason == MISSING_TAGS_REASON
    assert first.jobs[0].retry_count == 0
    assert second.report.already_in_failed_jobs == 1
    assert second.report.added_to_failed_jobs == 0


def test_tracker_run_twice_yields_one_entry_for_tagless_listing():
    listings = {"abc": {"id": "abc", "tags": [], "listingUrl": "http://x"}}

    first = track_failed_jobs(listings, [])
    second = track_failed_jobs(first.listings, first.jobs)

    assert [(job.id, job.url) for job in first.jobs] == [("abc", "http://x")]
    assert [job.id for job in second.jobs] == ["abc"]
    assert second.report.added_to_failed_jobs == 0


def test_tracker_stubs_missing_lat_long_string_and_prunes_prior_entry():
    listings = {"abc": {"id": "abc", "tags": ["駐車場"], "listingUrl": "http://x"}}
    prior = [FailedJob(id="abc", url="http://x", reason="old", retry_count=2)]

    result = track_failed_jobs(listings, prior)

    record = result.listings["abc"]
    assert record["latLongString"] == ""
    assert record["isDetailSoldPresent"] is True
    assert result.jobs == []
    assert result.report.removed_from_failed_jobs == 1
    assert result.report.stub_lat_long_string == 1


def test_tracker_flags_missing_lat_long():
    listings = {"abc": {"id": "abc", "tags": ["a"], "latLongString": "", "isDetailSoldPresent": False}}

    result = track_failed_jobs(listings, [])

    assert result.listings["abc"]["isDetailSoldPresent"] is True
    assert result.report.updated_is_detail_sold_present == 1
    assert listings["abc"]["isDetailSoldPresent"] is False


def test_tracker_skips_listing_without_url(caplog):
    listings = {"abc": {"id": "abc", "tags": [], "latLongString": "", "latLong": {"lat": 1, "long": 2}}}

    result = track_failed_jobs(listings, [])

    assert result.jobs == []
    assert result.report.skipped_no_url == 1
    assert "no URL" in caplog.text


def test_tracker_keeps_retry_counts_of_existing_entries():
    prior = [FailedJob(id="other", url="http://y", reason="r", retry_count=3)]
    listings = {"abc": {"id": "abc", "tags": [], "url": "http://x", "latLongString": "1,2", "latLong": {"lat": 1, "long": 2}}}

    result = track_failed_jobs(listings, prior)

    assert {job.id: job.retry_count for job in result.jobs} == {"other": 3, "abc": 0}


def test_resolve_listing_url_prefers_http_fields():
    assert resolve_listing_url({"listingUrl": "/relative", "listingDetailUrl": "https://x"}) == "https://x"
    assert resolve_listing_url({"listingDetail": "ftp://x"}) is None


def test_failed_job_store_creates_file(job_store):
    assert job_store.read() == []
    assert json.loads(job_store.path.read_text(encoding="utf-8")) == []


def test_failed_job_store_add_increments_retry_count(job_store):
    first = job_store.add("abc", "http://x", "Missing tags")
    second = job_store.add("abc", "http://x", "Still missing tags")

    assert first.retry_count == 1
    assert second.retry_count == 2
    assert [job.reason for job in job_store.read()] == ["Still missing tags"]

    saved = json.loads(job_store.path.read_text(encoding="utf-8"))
    assert set(saved[0]) == {"id", "url", "failedAt", "reason", "retryCount"}


def test_failed_job_store_remove_and_clear(job_store):
    job_store.add("a", "http://a", "r")
    job_store.add("b", "http://b", "r")

    assert job_store.remove("a") is True
    assert job_store.remove("a") is False
    assert job_store.get("b").url == "http://b"

    job_store.clear()
    assert job_store.read() == []


def test_failed_job_store_corrupt_file_reads_empty(job_store, caplog):
    job_store.path.write_text("{oops", encoding="utf-8")
    assert job_store.read() == []
    assert "Error reading failed jobs file" in caplog.text


def test_reset_failed_jobs():
    listings = {
        "a": {"id": "a", "tags": [], "listingUrl": "http://a"},
        "b": {"id": "b", "tags": ["x"], "listingUrl": "http://b"},
        "c": {"id": "c", "tags": []},
    }
    jobs = reset_failed_jobs(listings)
    assert [(job.id, job.reason, job.retry_count) for job in jobs] == [("a", RESET_REASON, 0)]


def test_find_missing_fields():
    listings = {
        "a": {"id": "a", "tags": [], "listingUrl": "http://a"},
        "b": {"id": "b", "tags": ["x"], "latLong": {"lat": 1, "long": 2}},
        "c": {"id": "c", "tags": ["x"]},
    }
    found, counts = find_missing_fields(listings)

    assert [item.id for item in found] == ["a", "c"]
    assert found[0].reason == "One-off reprocessing needed: missing tags and missing latLong"
    assert found[1].reason == "One-off reprocessing needed: missing latLong"
    assert counts == {"total": 3, "missing_tags": 1, "missing_lat_long": 2, "missing_both": 1}


def test_exhausted_jobs():
    jobs = [
        FailedJob(id="a", url="http://a", retry_count=5),
        FailedJob(id="b", url="http://b", retry_count=4),
    ]
    assert [job.id for job in exhausted_jobs(jobs, 5)] == ["a"]
