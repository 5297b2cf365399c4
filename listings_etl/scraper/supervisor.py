"""Process supervisor keeping a fixed pool of scraping workers alive.

Each worker is a child process identified by a small integer exposed to it
as ``WORKER_ID``. A worker that exits non-zero outside of shutdown is
restarted with the same identity after ``restart_delay`` seconds.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

LOGGER = logging.getLogger(__name__)

MAX_WORKERS = 10

Spawn = Callable[[int], Awaitable[asyncio.subprocess.Process]]
Emit = Callable[[str], None]


class WorkerState(str, Enum):
    """Lifecycle of one supervised worker."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED_PENDING_RESTART = "crashed_pending_restart"


@dataclass
class WorkerHandle:
    worker_id: int
    state: WorkerState = WorkerState.STARTING
    process: Optional[asyncio.subprocess.Process] = None
    restarts: int = 0
    watcher: Optional["asyncio.Task[None]"] = field(default=None, repr=False)


class WorkerSupervisor:
    """Spawn, watch and restart worker processes.

    Parameters
    ----------
    command : sequence of str
        Command line of one worker process
    max_workers : int
        Upper bound on the pool size
    restart_delay : float
        Seconds to wait before restarting a crashed worker
    shutdown_timeout : float
        Seconds to wait after SIGTERM before sending SIGKILL
    spawn : callable, optional
        ``async spawn(worker_id) -> Process``; defaults to running
        ``command`` with ``WORKER_ID`` set and both pipes captured
    emit : callable, optional
        Receives every prefixed output line; defaults to logging
    """

    def __init__(
        self,
        command: Sequence[str],
        max_workers: int = MAX_WORKERS,
        restart_delay: float = 5.0,
        shutdown_timeout: float = 5.0,
        spawn: Optional[Spawn] = None,
        emit: Optional[Emit] = None,
    ) -> None:
        self.command = list(command)
        self.max_workers = max_workers
        self.restart_delay = restart_delay
        self.shutdown_timeout = shutdown_timeout
        self._spawn = spawn or self._spawn_process
        self._emit = emit
        self.workers: Dict[int, WorkerHandle] = {}
        self._shutting_down = False
        self._shutdown_task: Optional["asyncio.Task[None]"] = None
        self._stopped: Optional[asyncio.Event] = None

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def states(self) -> Dict[int, WorkerState]:
        return {worker_id: handle.state for worker_id, handle in self.workers.items()}

    async def _spawn_process(self, worker_id: int) -> asyncio.subprocess.Process:
        env = {**os.environ, "WORKER_ID": str(worker_id)}
        return await asyncio.create_subprocess_exec(
            *self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )

    async def start(self, worker_count: int) -> List[int]:
        """Spawn ``min(worker_count, max_workers)`` workers numbered from 1."""
        self._stopped = asyncio.Event()
        count = min(worker_count, self.max_workers)
        if count < worker_count:
            LOGGER.warning("Requested %d workers, capping at %d", worker_count, self.max_workers)
        LOGGER.info("Starting %d worker(s): %s", count, " ".join(self.command))

        for worker_id in range(1, count + 1):
            handle = WorkerHandle(worker_id=worker_id)
            self.workers[worker_id] = handle
            if await self._launch(handle):
                handle.watcher = asyncio.create_task(self._watch(handle))
        return list(self.workers)

    async def _launch(self, handle: WorkerHandle) -> bool:
        """Spawn the worker's process; False when shutdown began meanwhile."""
        handle.state = WorkerState.STARTING
        process = await self._spawn(handle.worker_id)
        handle.process = process
        if self._shutting_down:
            handle.state = WorkerState.STOPPING
            await self._terminate(handle)
            return False
        handle.state = WorkerState.RUNNING
        LOGGER.info("Worker #%d started (pid %s)", handle.worker_id, process.pid)
        return True

    async def _pipe(
        self, stream: Optional[asyncio.StreamReader], prefix: str, level: int = logging.INFO
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = f"{prefix} {raw.decode('utf-8', errors='replace').rstrip()}"
            if self._emit is not None:
                self._emit(line)
            else:
                LOGGER.log(level, "%s", line)

    async def _watch(self, handle: WorkerHandle) -> None:
        """Follow one worker for its whole life, respawning it after crashes."""
        while True:
            process = handle.process
            await asyncio.gather(
                self._pipe(process.stdout, f"[Worker #{handle.worker_id}]"),
                self._pipe(process.stderr, f"[Worker #{handle.worker_id} ERROR]", logging.ERROR),
            )
            code = await process.wait()

            if self._shutting_down or handle.state is WorkerState.STOPPING:
                handle.state = WorkerState.STOPPED
                return
            if code == 0:
                LOGGER.info("Worker #%d exited cleanly", handle.worker_id)
                handle.state = WorkerState.STOPPED
                self._check_all_stopped()
                return

            handle.restarts += 1
            LOGGER.warning("Worker #%d exited with code %s", handle.worker_id, code)
            if not await self._respawn(handle):
                return

    async def _respawn(self, handle: WorkerHandle) -> bool:
        """Retry spawning every ``restart_delay`` seconds until it works or shutdown starts."""
        while True:
            handle.state = WorkerState.CRASHED_PENDING_RESTART
            LOGGER.info("Restarting worker #%d in %.1fs", handle.worker_id, self.restart_delay)
            await asyncio.sleep(self.restart_delay)
            if self._shutting_down:
                handle.state = WorkerState.STOPPED
                return False
            try:
                return await self._launch(handle)
            except Exception as exc:
                LOGGER.error("Could not respawn worker #%d: %s", handle.worker_id, exc, exc_info=True)

    def _check_all_stopped(self) -> None:
        if self._stopped is not None and all(
            handle.state is WorkerState.STOPPED for handle in self.workers.values()
        ):
            self._stopped.set()

    async def _terminate(self, handle: WorkerHandle) -> None:
        """SIGTERM one worker, escalating to SIGKILL after ``shutdown_timeout``."""
        process = handle.process
        if process is None or process.returncode is not None:
            handle.state = WorkerState.STOPPED
            return
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Worker #%d ignored SIGTERM, killing it", handle.worker_id)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        handle.state = WorkerState.STOPPED

    async def shutdown(self) -> None:
        """Stop every worker; concurrent and repeated calls share one shutdown."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        self._shutting_down = True
        LOGGER.info("Shutting down %d worker(s)", len(self.workers))

        watchers = []
        for handle in self.workers.values():
            if handle.state is WorkerState.CRASHED_PENDING_RESTART and handle.watcher is not None:
                handle.watcher.cancel()
            elif handle.state is not WorkerState.STOPPED:
                handle.state = WorkerState.STOPPING
            if handle.watcher is not None:
                watchers.append(handle.watcher)

        await asyncio.gather(
            *(self._terminate(handle) for handle in self.workers.values()),
        )
        await asyncio.gather(*watchers, return_exceptions=True)
        for handle in self.workers.values():
            handle.state = WorkerState.STOPPED

        LOGGER.info("All workers stopped")
        if self._stopped is not None:
            self._stopped.set()

    async def wait(self) -> None:
        """Block until shutdown finishes or every worker has exited cleanly."""
        if self._stopped is None:
            return
        await self._stopped.wait()

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict) -> None:
        exc = context.get("exception")
        LOGGER.error("Unhandled error in supervisor: %s", context.get("message"), exc_info=exc)

    async def run(self, worker_count: int) -> None:
        """Start workers, stop them on SIGINT/SIGTERM, return once all have exited."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, lambda s=signum: self._on_signal(s))
        try:
            await self.start(worker_count)
            await self.wait()
            await self.shutdown()
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)

    def _on_signal(self, signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down workers", signal.Signals(signum).name)
        asyncio.ensure_future(self.shutdown())
