"""Queue-driven listing scraping.

This package runs detail-page scraping at scale:
- Redis task queue with retry bookkeeping
- Async workers folding scraped pages into the listing store
- Supervisor keeping a pool of worker processes alive
- Click CLI tying the pipeline steps together
"""

from .queue import RedisQueue, TaskQueue, build_queue, require_queue
from .supervisor import WorkerState, WorkerSupervisor
from .worker import Worker, WorkerConfig

__all__ = [
    "RedisQueue",
    "TaskQueue",
    "build_queue",
    "require_queue",
    "WorkerState",
    "WorkerSupervisor",
    "Worker",
    "WorkerConfig",
]
