"""CLI for the listing scraping and reconciliation pipeline."""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from ..collector.availability import find_removed_listings
from ..collector.browser_fetcher import PageFetcher
from ..collector.listing_pages import scrape_search_pages
from ..config import FetcherConfig, PipelineConfig, QueueConfig
from ..errors import QueueUnavailableError, ScraperError
from ..failed_jobs import (
    FailedJobStore,
    exhausted_jobs,
    find_missing_fields,
    reset_failed_jobs,
    track_failed_jobs,
)
from ..models import JobType, ScrapeTask
from ..reconcile import (
    ID_COLUMN,
    merge_store_files,
    migrate_to_uuid,
    resolve_ids,
    validate_listings,
    zip_listings,
)
from ..store import load_store, locked_store, read_json, write_json_atomic
from .queue import RedisQueue, require_queue
from .supervisor import MAX_WORKERS, WorkerSupervisor
from .worker import EXTRACTORS_TO_RETRY, Worker, WorkerConfig

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)

LOGGER = logging.getLogger(__name__)


def _require_queue() -> RedisQueue:
    try:
        return require_queue(QueueConfig.from_env())
    except QueueUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option("--store", "store_path", type=click.Path(path_type=Path), help="Listing store JSON file")
@click.option("--failed-jobs", "failed_jobs_path", type=click.Path(path_type=Path), help="Failed jobs JSON file")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, store_path: Optional[Path], failed_jobs_path: Optional[Path], verbose: bool) -> None:
    """Listing scraping and reconciliation CLI."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    try:
        config = PipelineConfig.from_env()
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"Invalid pipeline config: {exc}") from exc
    if store_path is not None:
        config.store_path = store_path
    if failed_jobs_path is not None:
        config.failed_jobs_path = failed_jobs_path
    ctx.obj = config


@cli.command("scrape-pages")
@click.option("--output", type=click.Path(path_type=Path), default=Path("data/scraped-columns.json"), show_default=True)
@click.option("--max-pages", type=int, help="Stop after this many search pages")
@click.option("--delay", default=1.0, type=float, show_default=True, help="Seconds between page loads")
@click.pass_obj
def scrape_pages(config: PipelineConfig, output: Path, max_pages: Optional[int], delay: float) -> None:
    """Scrape search result pages into columnar JSON."""
    columns = asyncio.run(
        scrape_search_pages(
            config.search_url,
            max_pages=max_pages,
            config=FetcherConfig.from_env(),
            delay=delay,
            jpy_to_usd=config.jpy_to_usd,
        )
    )
    write_json_atomic(output, columns)
    click.echo(f"✅ Scraped {len(columns['original'])} listing(s) into {output}")


@cli.command()
@click.argument("columns_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def transform(config: PipelineConfig, columns_file: Path) -> None:
    """Zip scraped columns into listings and merge them into the store."""
    columns = read_json(columns_file)
    if not isinstance(columns, dict):
        raise click.ClickException(f"{columns_file} must hold an object of columns")

    with locked_store(config.store_path) as store:
        ids = columns.get(ID_COLUMN) or resolve_ids(columns, store.listings)
        zipped = zip_listings(columns, ids, store.listings, config.sticky_fields)
        store.listings.update(zipped)
        store.save(config.store_path)

    invalid = validate_listings(zipped)
    for key, error in invalid.items():
        LOGGER.warning("Listing %s: %s", key, error)
    click.echo(f"✅ Transformed {len(zipped)} listing(s), store now holds {len(store.listings)}")


@cli.command("merge-stores")
@click.argument("base", type=click.Path(path_type=Path))
@click.argument("incoming", type=click.Path(path_type=Path))
@click.pass_obj
def merge_stores_command(config: PipelineConfig, base: Path, incoming: Path) -> None:
    """Merge the INCOMING store into BASE and write BASE back."""
    try:
        stats = merge_store_files(base, incoming, config.sticky_fields)
    except ScraperError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"✅ Merged: added={stats.added} updated={stats.updated} total={stats.total}")


@cli.command("migrate-uuid")
@click.pass_obj
def migrate_uuid(config: PipelineConfig) -> None:
    """Re-key the store by UUID."""
    try:
        with locked_store(config.store_path, required=True) as store:
            store.listings, assigned = migrate_to_uuid(store.listings)
            store.save()
    except ScraperError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"✅ Migrated {len(store.listings)} listing(s), {assigned} new id(s)")


@cli.command("track-failed")
@click.pass_obj
def track_failed(config: PipelineConfig) -> None:
    """Flag incomplete listings and refresh the failed jobs file."""
    failed_jobs = FailedJobStore(config.failed_jobs_path)
    try:
        with locked_store(config.store_path, required=True) as store, failed_jobs.locked() as jobs:
            result = track_failed_jobs(store.listings, jobs)
            store.listings = result.listings
            store.save()
            failed_jobs.write(result.jobs)
    except ScraperError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo("\n📊 Failed Job Tracker\n" + "=" * 40)
    for name, count in result.report.as_dict().items():
        click.echo(f"  {name:30s}: {count:6d}")
    click.echo(f"  {'failed_jobs_total':30s}: {len(result.jobs):6d}")


@cli.command("reset-failed")
@click.confirmation_option(prompt="Replace the failed jobs file with a fresh scan?")
@click.pass_obj
def reset_failed(config: PipelineConfig) -> None:
    """Rebuild the failed jobs file from every listing without tags."""
    store = load_store(config.store_path)
    jobs = reset_failed_jobs(store.listings)
    FailedJobStore(config.failed_jobs_path).write(jobs)
    click.echo(f"✅ Reset failed jobs with {len(jobs)} listing(s)")


@cli.command("find-missing")
@click.option("--report", type=click.Path(dir_okay=False, path_type=Path), help="Write one line per listing")
@click.pass_obj
def find_missing(config: PipelineConfig, report: Optional[Path]) -> None:
    """List listings missing tags or coordinates."""
    store = load_store(config.store_path)
    found, counts = find_missing_fields(store.listings)

    click.echo(
        f"Total: {counts['total']}, missing tags: {counts['missing_tags']}, "
        f"missing latLong: {counts['missing_lat_long']}, missing both: {counts['missing_both']}"
    )
    if report is not None:
        report.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"{item.id}\t{item.url or ''}\t{item.reason}" for item in found]
        report.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
        click.echo(f"✅ Wrote {len(found)} line(s) to {report}")


@cli.command()
@click.option("--listing-id", required=True, help="Listing id in the store")
@click.option("--url", required=True, help="Listing detail URL")
@click.option("--extractor", "extractors", multiple=True, help="Extractor or group name (repeatable)")
def enqueue(listing_id: str, url: str, extractors: Tuple[str, ...]) -> None:
    """Enqueue a listing scraping task."""
    queue = _require_queue()
    task = ScrapeTask(listing_id=listing_id, url=url, extractors=list(extractors))
    task_id = queue.enqueue(task)
    click.echo(f"✅ Enqueued task {task_id}: {listing_id}")


@cli.command("retry-failed")
@click.option("--include-queue", is_flag=True, help="Also re-queue tasks that exhausted their queue retries")
@click.pass_obj
def retry_failed(config: PipelineConfig, include_queue: bool) -> None:
    """Enqueue every failed job that has retries left."""
    queue = _require_queue()
    jobs = FailedJobStore(config.failed_jobs_path).read()
    exhausted = {job.id for job in exhausted_jobs(jobs, config.max_failed_retries)}

    enqueued = 0
    for job in jobs:
        if job.id in exhausted:
            LOGGER.warning(
                "Failed job %s reached %d retries, not re-enqueueing",
                job.id,
                job.retry_count,
            )
            continue
        task = ScrapeTask(
            job_type=JobType.RETRY_FAILED,
            listing_id=job.id,
            url=job.url,
            extractors=list(EXTRACTORS_TO_RETRY),
            from_failed_jobs=True,
        )
        queue.enqueue(task)
        enqueued += 1

    requeued = 0
    if include_queue:
        requeued = sum(queue.retry(task.task_id) for task in queue.get_failed())

    click.echo(f"✅ Enqueued {enqueued} failed job(s), skipped {len(exhausted)} exhausted")
    if include_queue:
        click.echo(f"✅ Re-queued {requeued} failed task(s)")


@cli.command("run-worker")
@click.option("--worker-id", help="Worker ID (defaults to WORKER_ID or hostname-pid)")
@click.option("--batch-size", default=1, type=int, show_default=True, help="Number of tasks to process at once")
@click.option("--poll-interval", default=5.0, type=float, show_default=True, help="Seconds between queue polls")
@click.option("--max-tasks", type=int, help="Max tasks before shutdown (for testing)")
@click.option("--exit-when-empty", is_flag=True, help="Stop once the queue is drained")
@click.pass_obj
def run_worker(
    config: PipelineConfig,
    worker_id: Optional[str],
    batch_size: int,
    poll_interval: float,
    max_tasks: Optional[int],
    exit_when_empty: bool,
) -> None:
    """Run worker to process tasks from queue."""
    queue = _require_queue()
    worker_config = WorkerConfig.from_env(
        batch_size=batch_size,
        poll_interval=poll_interval,
        max_tasks=max_tasks,
        exit_when_empty=exit_when_empty,
    )
    if worker_id:
        worker_config.worker_id = worker_id
    click.echo(f"🚀 Starting worker: {worker_config.worker_id}")

    async def _run() -> None:
        async with PageFetcher(FetcherConfig.from_env()) as fetcher:
            worker = Worker(
                worker_config,
                queue,
                fetcher,
                config.store_path,
                FailedJobStore(config.failed_jobs_path),
                config.sticky_fields,
            )
            await worker.run()

    asyncio.run(_run())


@cli.command()
@click.option("--workers", default=1, type=click.IntRange(1, MAX_WORKERS), show_default=True)
@click.option("--restart-delay", default=5.0, type=float, show_default=True)
@click.option("--shutdown-timeout", default=5.0, type=float, show_default=True)
@click.pass_context
def supervise(ctx: click.Context, workers: int, restart_delay: float, shutdown_timeout: float) -> None:
    """Run and restart a pool of worker processes."""
    command = [sys.executable, "-m", "listings_etl.scraper.cli"]
    config: PipelineConfig = ctx.obj
    command += ["--store", str(config.store_path), "--failed-jobs", str(config.failed_jobs_path)]
    command.append("run-worker")

    supervisor = WorkerSupervisor(
        command,
        restart_delay=restart_delay,
        shutdown_timeout=shutdown_timeout,
    )
    asyncio.run(supervisor.run(workers))
    click.echo("👋 Supervisor stopped")
    ctx.exit(0)


@cli.command()
def stats() -> None:
    """Show queue statistics."""
    queue = _require_queue()
    stats = queue.get_stats()

    click.echo("\n📊 Queue Statistics\n" + "=" * 40)

    total = sum(stats.values())
    click.echo(f"Total tasks: {total}")

    for status, count in sorted(stats.items()):
        click.echo(f"  {status:15s}: {count:6d}")

    click.echo()


@cli.command("purge-failed")
@click.confirmation_option(prompt="Are you sure you want to purge failed tasks?")
def purge_failed() -> None:
    """Remove tasks that exhausted their queue retries."""
    queue = _require_queue()
    count = queue.purge_failed()
    click.echo(f"✅ Purged {count} failed task(s)")


@cli.command("cleanup-removed")
@click.option("--concurrency", default=5, type=int, show_default=True)
@click.option("--dry-run", is_flag=True, help="Only report listings that are gone")
@click.pass_obj
def cleanup_removed(config: PipelineConfig, concurrency: int, dry_run: bool) -> None:
    """Drop listings whose page no longer exists."""
    store = load_store(config.store_path)
    removed = asyncio.run(find_removed_listings(store.listings, concurrency=concurrency))
    if dry_run:
        click.echo(json.dumps(removed, ensure_ascii=False, indent=2))
        return

    failed_jobs = FailedJobStore(config.failed_jobs_path)
    with locked_store(config.store_path) as current:
        dropped = {key: current.listings.pop(key) for key in removed if key in current.listings}
        if dropped:
            current.save(config.store_path)
    for key, record in dropped.items():
        failed_jobs.remove(record.get("id") or key)
    click.echo(f"✅ Removed {len(dropped)} listing(s)")


if __name__ == "__main__":
    cli()
