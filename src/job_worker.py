"""
Job worker: pulls due jobs from one queue and runs a handler for each.

A worker bounds in-flight executions by its concurrency and, optionally, by a
sliding-window rate limit. Handler failures are reported back to the queue,
which applies the job's backoff policy; they never escape the worker.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Set

from config import JOB_HEARTBEAT_INTERVAL, WORKER_POLL_INTERVAL
from errors import JobExhausted
from job_queue import JobQueue, JobRecord, JobState
from utils.metrics_utils import JOB_DURATION, JOB_EVENTS
from utils.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobRecord], Awaitable[Any]]


@dataclass(frozen=True)
class JobEvent:
    """Status event published after every execution."""

    queue_name: str
    job_id: str
    job_name: str
    outcome: str  # completed | failed | exhausted
    attempt: int
    error_message: Optional[str] = None


class JobWorker:
    """
    Args:
        queue: Queue to consume
        handler: Coroutine function called with the claimed JobRecord
        concurrency: Max simultaneous executions in this worker
        limiter: Optional rate limiter shared by this worker's executions
        poll_interval: Seconds to wait when no job is due
        job_timeout: Seconds a single execution may take (None = unbounded)
        heartbeat_interval: Seconds between claim refreshes while a handler runs
        job_logger: Logger for per-job lines (defaults to this module's logger)
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 1,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        poll_interval: float = WORKER_POLL_INTERVAL,
        job_timeout: Optional[float] = None,
        heartbeat_interval: float = JOB_HEARTBEAT_INTERVAL,
        job_logger: Optional[logging.Logger] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.limiter = limiter
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.heartbeat_interval = heartbeat_interval
        self.job_logger = job_logger or logger

        self._listeners: List[Callable[[JobEvent], Any]] = []
        self._in_flight: Set[asyncio.Task] = set()
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def add_listener(self, callback: Callable[[JobEvent], Any]):
        """Register a (sync or async) callback for JobEvents."""
        self._listeners.append(callback)

    async def _emit(self, event: JobEvent):
        for listener in self._listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Job event listener failed for {event.job_id}: {e}", exc_info=True)

    def _free_slots(self) -> int:
        free = self.concurrency - len(self._in_flight)
        if self.limiter is not None:
            free = min(free, self.limiter.remaining(self.queue.name))
        return free

    async def process_job(self, job: JobRecord) -> JobEvent:
        """
        Run the handler for one claimed job and report the result.

        Algorithm:
            1. Call the handler (bounded by job_timeout)
            2. Success: queue.complete(); failure: queue.fail() (retry or terminal)
            3. Record metrics and publish a JobEvent
        """
        extra = {"job_id": job.id, "attempt": job.attempts_made}
        self.job_logger.info(
            f"Processing job {job.id} ({job.name}), attempt {job.attempts_made}/{job.options.attempts}",
            extra=extra,
        )
        start_time = time.perf_counter()

        try:
            result = await self._run_handler(job)
        except Exception as e:
            JOB_DURATION.labels(queue=self.queue.name).observe(time.perf_counter() - start_time)
            job = await self.queue.fail(job, e)

            if job.state == JobState.FAILED:
                exhausted = JobExhausted(self.queue.name, job.id, job.attempts_made, job.failed_reason)
                self.job_logger.error(str(exhausted), extra=extra)
                outcome = "exhausted"
            else:
                self.job_logger.warning(f"Job {job.id} ({job.name}) failed: {e}", extra=extra)
                outcome = "failed"

            event = JobEvent(self.queue.name, job.id, job.name, outcome, job.attempts_made, job.failed_reason)

        else:
            JOB_DURATION.labels(queue=self.queue.name).observe(time.perf_counter() - start_time)
            await self.queue.complete(job, result)
            self.job_logger.info(f"Completed job {job.id} ({job.name})", extra=extra)
            event = JobEvent(self.queue.name, job.id, job.name, "completed", job.attempts_made)

        JOB_EVENTS.labels(queue=self.queue.name, outcome=event.outcome).inc()
        await self._emit(event)
        return event

    async def _run_handler(self, job: JobRecord) -> Any:
        heartbeat = asyncio.create_task(self._keep_alive(job))
        try:
            if self.job_timeout:
                try:
                    return await asyncio.wait_for(self.handler(job), timeout=self.job_timeout)
                except asyncio.TimeoutError:
                    raise TimeoutError(f"job timed out after {self.job_timeout}s")
            return await self.handler(job)
        finally:
            heartbeat.cancel()

    async def _keep_alive(self, job: JobRecord):
        """Refresh the job's claim until cancelled or the queue no longer holds it active."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                if not await self.queue.heartbeat(job):
                    self.job_logger.warning(
                        f"Job {job.id} ({job.name}) is no longer active on {self.queue.name}",
                        extra={"job_id": job.id, "attempt": job.attempts_made},
                    )
                    return
            except Exception as e:
                logger.warning(f"Heartbeat for job {job.id} on {self.queue.name} failed: {e}")

    async def _run_guarded(self, job: JobRecord):
        try:
            await self.process_job(job)
        except Exception as e:
            # queue bookkeeping failed; the job stays active until stalled recovery
            logger.error(f"Failed to record result of job {job.id} on {self.queue.name}: {e}", exc_info=True)

    async def run_once(self) -> List[JobEvent]:
        """
        Claim as many due jobs as the concurrency and rate limit allow, run
        them concurrently and wait for all of them.
        """
        free = self._free_slots()
        if free <= 0:
            return []

        jobs = await self.queue.claim(free)
        for _ in jobs:
            if self.limiter is not None:
                self.limiter.try_acquire(self.queue.name)

        return list(await asyncio.gather(*(self.process_job(job) for job in jobs)))

    async def run(self):
        """Poll the queue until close() is called."""
        self._running = True
        logger.info(
            f"Worker started for {self.queue.name} (concurrency={self.concurrency}, "
            f"rate_limit={self.limiter.limit if self.limiter else None})"
        )

        while self._running:
            if len(self._in_flight) >= self.concurrency:
                await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
                continue

            free = self._free_slots()
            if free <= 0:
                wait = self.limiter.seconds_until_available(self.queue.name) if self.limiter else 0
                await asyncio.sleep(min(self.poll_interval, wait) or self.poll_interval)
                continue

            try:
                jobs = await self.queue.claim(free)
            except Exception as e:
                logger.error(f"Claiming jobs on {self.queue.name} failed: {e}")
                await asyncio.sleep(self.poll_interval)
                continue

            if not jobs:
                await asyncio.sleep(self.poll_interval)
                continue

            for job in jobs:
                if self.limiter is not None:
                    self.limiter.try_acquire(self.queue.name)
                task = asyncio.create_task(self._run_guarded(job))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)

    def start(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run())
        return self._loop_task

    async def close(self, drain: bool = True):
        """
        Stop claiming new jobs.

        Args:
            drain: Wait for in-flight executions; otherwise cancel them
        """
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._in_flight:
            if not drain:
                for task in self._in_flight:
                    task.cancel()
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

        logger.info(f"Worker for {self.queue.name} stopped")
