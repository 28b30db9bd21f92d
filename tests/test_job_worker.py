"""
Job worker tests: outcomes and events, concurrency and rate limits, timeouts
and the polling loop.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

import asyncio

import pytest

from job_queue import BackoffPolicy, JobOptions, JobQueue, JobState
from job_worker import JobWorker
from utils.rate_limiter import SlidingWindowRateLimiter


def make_queue(fake_redis, clock, **defaults):
    return JobQueue(fake_redis, "work", default_options=JobOptions(**defaults), clock=clock.ms)


class TestProcessJob:
    """Tests for outcome handling of a single execution."""

    @pytest.mark.asyncio
    async def test_success_completes_job_and_emits_event(self, fake_redis, clock):
        queue = make_queue(fake_redis, clock)
        job_id = await queue.add("double", {"n": 21})
        events = []

        async def handler(job):
            return job.data["n"] * 2

        worker = JobWorker(queue, handler)
        worker.add_listener(events.append)
        await worker.run_once()

        job = await queue.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.return_value == 42
        assert [(e.job_id, e.outcome, e.attempt) for e in events] == [(job_id, "completed", 1)]

    @pytest.mark.asyncio
    async def test_failure_with_attempts_left_is_retried(self, fake_redis, clock):
        queue = make_queue(fake_redis, clock, attempts=2, backoff=BackoffPolicy(type="fixed", delay_ms=1000))
        job_id = await queue.add("flaky")
        events = []

        async def handler(job):
            raise RuntimeError("upstream 503")

        worker = JobWorker(queue, handler)
        worker.add_listener(events.append)
        await worker.run_once()

        job = await queue.get_job(job_id)
        assert job.state == JobState.DELAYED
        assert events[0].outcome == "failed"
        assert events[0].error_message == "upstream 503"

    @pytest.mark.asyncio
    async def test_last_attempt_failure_is_exhausted(self, fake_redis, clock):
        """
        A failure on the final attempt leaves the job FAILED and publishes an
        "exhausted" event; the error never escapes the worker.
        """
        queue = make_queue(fake_redis, clock, attempts=1)
        job_id = await queue.add("doomed")

        async def handler(job):
            raise ValueError("bad payload")

        worker = JobWorker(queue, handler)
        (event,) = await worker.run_once()

        assert event.outcome == "exhausted"
        assert (await queue.get_job(job_id)).state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_timeout_fails_execution(self, fake_redis, clock):
        queue = make_queue(fake_redis, clock, attempts=1)
        await queue.add("slow")

        async def handler(job):
            await asyncio.sleep(5)

        worker = JobWorker(queue, handler, job_timeout=0.01)
        (event,) = await asyncio.wait_for(worker.run_once(), timeout=2)

        assert event.outcome == "exhausted"
        assert "timed out" in event.error_message

    @pytest.mark.asyncio
    async def test_async_and_failing_listeners(self, fake_redis, clock):
        queue = make_queue(fake_redis, clock)
        await queue.add("work")
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        async def recording(event):
            seen.append(event.outcome)

        async def handler(job):
            return None

        worker = JobWorker(queue, handler)
        worker.add_listener(broken)
        worker.add_listener(recording)
        await worker.run_once()

        assert seen == ["completed"]

    def test_concurrency_must_be_positive(self, fake_redis, clock):
        with pytest.raises(ValueError):
            JobWorker(make_queue(fake_redis, clock), handler=None, concurrency=0)

    @pytest.mark.asyncio
    async def test_long_running_job_not_recovered_as_stalled(self, fake_redis, clock):
        """
        Algorithm:
            1. Start a job whose handler runs for longer than the stall timeout
            2. While it runs, heartbeats refresh its claim
            3. Stalled recovery finds nothing and the job completes once
        """
        queue = make_queue(fake_redis, clock)
        job_id = await queue.add("upload")
        gate = asyncio.Event()
        started = asyncio.Event()
        runs = []

        async def handler(job):
            runs.append(job.attempts_made)
            started.set()
            await gate.wait()
            return "uploaded"

        worker = JobWorker(queue, handler, heartbeat_interval=0.01)
        run = asyncio.create_task(worker.run_once())
        await started.wait()

        for _ in range(3):
            clock.advance(20 * 60)
            await asyncio.sleep(0.05)
            assert await queue.recover_stalled(stall_ms=30 * 60 * 1000) == []

        gate.set()
        (event,) = await run

        assert event.outcome == "completed"
        assert runs == [1]
        assert (await queue.get_job(job_id)).state == JobState.COMPLETED



class TestThroughputBounds:
    @pytest.mark.asyncio
    async def test_concurrency_bounds_claims(self, fake_redis, clock):
        """
        Algorithm:
            1. Five due jobs, concurrency 2
            2. One run_once() executes two of them, concurrently
            3. Peak concurrency observed in the handler is 2
        """
        queue = make_queue(fake_redis, clock)
        for n in range(5):
            await queue.add("work", {"n": n})
        running = 0
        peak = 0

        async def handler(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        worker = JobWorker(queue, handler, concurrency=2)
        events = await worker.run_once()

        assert len(events) == 2
        assert peak == 2
        assert (await queue.get_job_counts())["waiting"] == 3

    @pytest.mark.asyncio
    async def test_rate_limit_caps_jobs_per_window(self, fake_redis, clock):
        queue = make_queue(fake_redis, clock)
        for n in range(5):
            await queue.add("work", {"n": n})
        limiter = SlidingWindowRateLimiter(3, 60, clock=clock)

        async def handler(job):
            return None

        worker = JobWorker(queue, handler, concurrency=10, limiter=limiter)

        assert len(await worker.run_once()) == 3
        assert await worker.run_once() == []

        clock.advance(61)
        assert len(await worker.run_once()) == 2


class TestWorkerLoop:
    @pytest.mark.asyncio
    async def test_started_worker_processes_and_drains(self, fake_redis, clock):
        """
        Algorithm:
            1. Start the polling loop
            2. Add a job; the handler picks it up
            3. close(drain=True) waits for the in-flight execution
        """
        queue = make_queue(fake_redis, clock)
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(job):
            started.set()
            await release.wait()
            return "done"

        worker = JobWorker(queue, handler, poll_interval=0.01)
        worker.start()
        job_id = await queue.add("work")
        await asyncio.wait_for(started.wait(), timeout=2)

        closing = asyncio.create_task(worker.close(drain=True))
        await asyncio.sleep(0.02)
        assert not closing.done()

        release.set()
        await asyncio.wait_for(closing, timeout=2)

        assert (await queue.get_job(job_id)).state == JobState.COMPLETED
        assert worker.in_flight == 0

    @pytest.mark.asyncio
    async def test_close_without_drain_cancels(self, fake_redis, clock):
        queue = make_queue(fake_redis, clock)
        started = asyncio.Event()

        async def handler(job):
            started.set()
            await asyncio.sleep(3600)

        worker = JobWorker(queue, handler, poll_interval=0.01)
        worker.start()
        job_id = await queue.add("work")
        await asyncio.wait_for(started.wait(), timeout=2)

        await asyncio.wait_for(worker.close(drain=False), timeout=2)

        # cancelled execution stays active until stalled recovery picks it up
        assert (await queue.get_job(job_id)).state == JobState.ACTIVE
