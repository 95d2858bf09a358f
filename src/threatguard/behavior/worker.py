"""Background worker for baseline recalibration and model retraining.

A single ``asyncio.Task`` consumes jobs from a bounded ``asyncio.Queue``
and runs each one in a worker thread, so recomputing a baseline or fitting
a model never happens on the request path. Jobs are dropped with a warning
when the queue is full.

``submit`` may be called from the event loop or from any other thread.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass

from threatguard.logging import get_logger

log = get_logger("threatguard.behavior.worker")


@dataclass(frozen=True)
class BaselineJob:
    name: str
    run: Callable[[], None]
    on_drop: Callable[[], None] | None = None


class BaselineWorker:
    """Fire-and-forget job runner with a bounded queue."""

    def __init__(self, *, queue_size: int = 1024) -> None:
        self._queue_size = queue_size
        self._queue: asyncio.Queue[BaselineJob] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._processed = 0
        self._dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, int]:
        return {
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "processed": self._processed,
            "dropped": self._dropped,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            log.warning("baseline_worker_already_running")
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())
        log.info("baseline_worker_started", queue_size=self._queue_size)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        if self._queue is not None:
            while not self._queue.empty():
                job = self._queue.get_nowait()
                self._queue.task_done()
                self._drop(job, reason="worker_stopped")
        log.info("baseline_worker_stopped", **self.stats)

    async def drain(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is not None and self._running:
            await self._queue.join()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _enqueue(self, job: BaselineJob) -> bool:
        if self._queue is None or not self._running:
            self._drop(job, reason="not_running")
            return False
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self._drop(job, reason="queue_full")
            return False
        return True

    def _drop(self, job: BaselineJob, *, reason: str) -> None:
        self._dropped += 1
        log.warning("baseline_job_dropped", job=job.name, reason=reason)
        if job.on_drop is not None:
            job.on_drop()

    def submit(self, job: BaselineJob) -> bool:
        """Queue *job*. Returns ``False`` when it was dropped immediately.

        From a foreign thread the job is handed to the loop and ``True`` is
        returned; a later drop still triggers ``job.on_drop``.
        """
        loop = self._loop
        if loop is None or not self._running:
            self._drop(job, reason="not_running")
            return False
        try:
            in_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            in_loop = False
        if in_loop:
            return self._enqueue(job)
        loop.call_soon_threadsafe(self._enqueue, job)
        return True

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        assert self._queue is not None
        while self._running:
            try:
                job = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                await asyncio.to_thread(job.run)
                self._processed += 1
            except asyncio.CancelledError:
                self._queue.task_done()
                break
            except Exception:
                log.exception("baseline_job_failed", job=job.name)
            self._queue.task_done()
        log.debug("baseline_worker_loop_exited")
