"""Redis-backed task queue for listing scraping jobs.

Layout under the queue prefix (``listing-scraping`` by default):

- ``<prefix>:seq``          task id counter
- ``<prefix>:task:<id>``    task JSON
- ``<prefix>:pending``      ids waiting for a worker (FIFO)
- ``<prefix>:active``       ids currently held by workers
- ``<prefix>:failed``       ids that exhausted their retries
- ``<prefix>:by-listing``   listing id -> open task id
- ``<prefix>:completed``    completed task counter
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

import redis

from ..config import QueueConfig
from ..errors import QueueUnavailableError
from ..models import ScrapeTask, TaskStatus, utc_now_iso

LOGGER = logging.getLogger(__name__)


class TaskQueue(Protocol):
    """Abstract task queue interface."""

    def enqueue(self, task: ScrapeTask) -> int:
        """Add task to queue.

        Returns
        -------
        int
            Task ID
        """
        ...

    def dequeue(self, worker_id: str, batch_size: int = 1) -> List[ScrapeTask]:
        """Get tasks from queue.

        Parameters
        ----------
        worker_id : str
            Worker identifier for tracking
        batch_size : int
            Number of tasks to fetch

        Returns
        -------
        list[ScrapeTask]
            Tasks ready for processing
        """
        ...

    def mark_completed(self, task_id: int) -> None:
        """Mark task as completed."""
        ...

    def mark_failed(self, task_id: int, error: str, retry: bool = True) -> None:
        """Mark task as failed.

        Parameters
        ----------
        task_id : int
            Task ID
        error : str
            Error message
        retry : bool
            Whether to retry the task
        """
        ...

    def get_failed(self) -> List[ScrapeTask]:
        """Tasks that exhausted their retries."""
        ...

    def retry(self, task_id: int) -> bool:
        """Move a failed task back to pending, counting the attempt."""
        ...

    def get_stats(self) -> Dict[str, int]:
        """Get queue statistics."""
        ...


class RedisQueue:
    """Task queue stored in Redis lists and hashes."""

    def __init__(self, client: "redis.Redis", config: Optional[QueueConfig] = None) -> None:
        """Initialize Redis queue.

        Parameters
        ----------
        client : redis.Redis
            Connected client created with ``decode_responses=True``
        config : QueueConfig, optional
            Queue name and retry limit
        """
        self.client = client
        self.config = config or QueueConfig()
        prefix = self.config.name
        self._seq_key = f"{prefix}:seq"
        self._pending_key = f"{prefix}:pending"
        self._active_key = f"{prefix}:active"
        self._failed_key = f"{prefix}:failed"
        self._by_listing_key = f"{prefix}:by-listing"
        self._completed_key = f"{prefix}:completed"
        self._task_prefix = f"{prefix}:task:"

    def _task_key(self, task_id: int) -> str:
        return f"{self._task_prefix}{task_id}"

    def _load(self, task_id: int) -> Optional[ScrapeTask]:
        raw = self.client.get(self._task_key(task_id))
        if raw is None:
            return None
        return ScrapeTask.model_validate_json(raw)

    def _save(self, task: ScrapeTask, pipe=None) -> None:
        (pipe or self.client).set(self._task_key(task.task_id), task.to_json())

    def ping(self) -> bool:
        return bool(self.client.ping())

    def enqueue(self, task: ScrapeTask) -> int:
        """Add task to queue.

        A listing with an open task gets that task updated instead of a
        second one.
        """
        existing_id = self.client.hget(self._by_listing_key, task.listing_id)
        if existing_id is not None:
            current = self._load(int(existing_id))
            if current is not None and current.status in (
                TaskStatus.PENDING,
                TaskStatus.RETRYING,
                TaskStatus.IN_PROGRESS,
            ):
                updated = current.model_copy(
                    update={
                        "url": task.url,
                        "extractors": task.extractors,
                        "from_failed_jobs": task.from_failed_jobs,
                    }
                )
                self._save(updated)
                LOGGER.debug("Task %d already open for listing %s", updated.task_id, task.listing_id)
                return updated.task_id

        task_id = int(self.client.incr(self._seq_key))
        stored = task.model_copy(
            update={
                "task_id": task_id,
                "status": TaskStatus.PENDING,
                "max_retries": task.max_retries if task.max_retries is not None else self.config.max_retries,
                "created_at": utc_now_iso(),
            }
        )
        pipe = self.client.pipeline()
        self._save(stored, pipe)
        pipe.hset(self._by_listing_key, task.listing_id, task_id)
        pipe.lpush(self._pending_key, task_id)
        pipe.execute()

        LOGGER.debug("Enqueued task %d: %s (%s)", task_id, task.listing_id, task.url)
        return task_id

    def dequeue(self, worker_id: str, batch_size: int = 1) -> List[ScrapeTask]:
        """Move up to ``batch_size`` tasks from pending to active."""
        tasks: List[ScrapeTask] = []
        for _ in range(batch_size):
            raw_id = self.client.lmove(self._pending_key, self._active_key, "RIGHT", "LEFT")
            if raw_id is None:
                break
            task = self._load(int(raw_id))
            if task is None:
                LOGGER.warning("Task %s vanished from the queue, skipping", raw_id)
                self.client.lrem(self._active_key, 1, raw_id)
                continue
            task = task.model_copy(
                update={"status": TaskStatus.IN_PROGRESS, "started_at": utc_now_iso()}
            )
            self._save(task)
            tasks.append(task)

        if tasks:
            LOGGER.info("Dequeued %d task(s) for worker %s", len(tasks), worker_id)
        return tasks

    def mark_completed(self, task_id: int) -> None:
        """Mark task as completed and drop its record."""
        task = self._load(task_id)
        pipe = self.client.pipeline()
        pipe.lrem(self._active_key, 1, task_id)
        pipe.delete(self._task_key(task_id))
        if task is not None:
            pipe.hdel(self._by_listing_key, task.listing_id)
        pipe.incr(self._completed_key)
        pipe.execute()

        LOGGER.debug("Marked task %d as completed", task_id)

    def mark_failed(self, task_id: int, error: str, retry: bool = True) -> None:
        """Mark task as failed, re-queueing it while retries remain."""
        task = self._load(task_id)
        if task is None:
            LOGGER.warning("Task %d not found", task_id)
            return

        should_retry = retry and task.retry_count < task.max_retries
        update = {"retry_count": task.retry_count + 1, "error_message": error}
        pipe = self.client.pipeline()
        pipe.lrem(self._active_key, 1, task_id)
        if should_retry:
            task = task.model_copy(update={**update, "status": TaskStatus.RETRYING})
            pipe.lpush(self._pending_key, task_id)
        else:
            task = task.model_copy(
                update={**update, "status": TaskStatus.FAILED, "completed_at": utc_now_iso()}
            )
            pipe.sadd(self._failed_key, task_id)
            pipe.hdel(self._by_listing_key, task.listing_id)
        self._save(task, pipe)
        pipe.execute()

        LOGGER.warning("Marked task %d as %s: %s", task_id, task.status.value, error)

    def get_failed(self) -> List[ScrapeTask]:
        tasks = [self._load(int(task_id)) for task_id in self.client.smembers(self._failed_key)]
        return sorted((task for task in tasks if task is not None), key=lambda t: t.task_id)

    def retry(self, task_id: int) -> bool:
        """Re-queue a failed task, incrementing its retry counter."""
        if not self.client.sismember(self._failed_key, task_id):
            LOGGER.warning("Task %d is not in the failed set", task_id)
            return False
        task = self._load(task_id)
        if task is None:
            self.client.srem(self._failed_key, task_id)
            return False

        task = task.model_copy(
            update={
                "status": TaskStatus.RETRYING,
                "retry_count": task.retry_count + 1,
                "completed_at": None,
            }
        )
        pipe = self.client.pipeline()
        pipe.srem(self._failed_key, task_id)
        pipe.hset(self._by_listing_key, task.listing_id, task_id)
        pipe.lpush(self._pending_key, task_id)
        self._save(task, pipe)
        pipe.execute()

        LOGGER.info("Retrying task %d (attempt %d)", task_id, task.retry_count)
        return True

    def get_stats(self) -> Dict[str, int]:
        """Get queue statistics."""
        return {
            TaskStatus.PENDING.value: int(self.client.llen(self._pending_key)),
            TaskStatus.IN_PROGRESS.value: int(self.client.llen(self._active_key)),
            TaskStatus.FAILED.value: int(self.client.scard(self._failed_key)),
            TaskStatus.COMPLETED.value: int(self.client.get(self._completed_key) or 0),
        }

    def purge_failed(self) -> int:
        """Delete every task in the failed set.

        Returns
        -------
        int
            Number of tasks removed
        """
        task_ids = list(self.client.smembers(self._failed_key))
        if not task_ids:
            return 0
        pipe = self.client.pipeline()
        for task_id in task_ids:
            pipe.delete(self._task_key(int(task_id)))
        pipe.delete(self._failed_key)
        pipe.execute()

        LOGGER.info("Purged %d failed task(s)", len(task_ids))
        return len(task_ids)


def build_queue(config: Optional[QueueConfig] = None) -> Optional[RedisQueue]:
    """Connect to Redis and return a queue, or None when it is unreachable.

    Callers must handle ``None`` and report that the queue is not
    initialized.
    """
    config = config or QueueConfig.from_env()
    try:
        client = redis.Redis.from_url(
            config.url,
            decode_responses=True,
            socket_connect_timeout=config.connect_timeout,
        )
        client.ping()
    except (redis.RedisError, ValueError) as exc:
        LOGGER.error("Failed to initialize the scraping queue (%s): %s", config.url, exc)
        return None

    LOGGER.info(
        "Connected to %s queue '%s'",
        "local" if config.is_local else config.environment,
        config.name,
    )
    return RedisQueue(client, config)


def require_queue(config: Optional[QueueConfig] = None) -> RedisQueue:
    """Like :func:`build_queue`, but raise when the queue is unavailable.

    Raises
    ------
    QueueUnavailableError
        If Redis cannot be reached
    """
    config = config or QueueConfig.from_env()
    queue = build_queue(config)
    if queue is None:
        raise QueueUnavailableError(url=config.url)
    return queue
