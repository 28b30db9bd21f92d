"""
Redis-backed durable job queue with retries, backoff and repeatable jobs.

Each queue lives under `queue:{name}:`:
    id               INCR counter for generated job ids
    job:{id}         JobRecord JSON (state, attempts, execution history)
    due              ZSET job id -> epoch ms at which the job becomes runnable
    active           ZSET job id -> epoch ms at which a worker claimed it
    completed        LIST of completed job ids, newest first (bounded)
    failed           LIST of terminally failed job ids, newest first (bounded)
    repeat           ZSET repeat key -> epoch ms of the next occurrence
    repeat:opts      HASH repeat key -> JobDescriptor JSON

Every state transition is claimed with a single ZREM, so when several
processes race for the same due job or repeat occurrence exactly one wins.
Delivery is at-least-once: a job whose worker dies is returned to `due` by
recover_stalled().
"""

import hashlib
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, Field, model_validator

from config import JOB_BACKOFF_MAX_DELAY_MS, JOB_STALLED_TIMEOUT, QUEUE_DEFAULTS, QUEUE_KEY_PREFIX, SCHEDULE_TIMEZONE

logger = logging.getLogger(__name__)

# Due jobs inspected per claim so priorities can be honored
CLAIM_SCAN_SIZE = 50


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


# ============================================================================
# JOB OPTIONS
# ============================================================================


class BackoffPolicy(BaseModel):
    """Maps the number of attempts already made to a retry delay."""

    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=JOB_BACKOFF_MAX_DELAY_MS, ge=0)

    def compute(self, attempts_made: int) -> int:
        """
        Delay before the next attempt, in milliseconds.

        Exponential: delay_ms * 2^(attempts_made - 1), so the first retry
        waits delay_ms and every later retry waits twice as long, capped at
        max_delay_ms.
        """
        if self.type == "fixed":
            return min(self.delay_ms, self.max_delay_ms)
        return min(self.delay_ms * 2 ** max(0, attempts_made - 1), self.max_delay_ms)


class RepeatOptions(BaseModel):
    """Cron pattern or fixed interval for a repeatable job (exactly one)."""

    pattern: Optional[str] = None
    every_ms: Optional[int] = Field(default=None, gt=0)
    tz: str = SCHEDULE_TIMEZONE

    @model_validator(mode="after")
    def _check_exactly_one(self):
        if (self.pattern is None) == (self.every_ms is None):
            raise ValueError("repeat needs exactly one of pattern or every_ms")
        return self

    @property
    def signature(self) -> str:
        if self.pattern is not None:
            return f"cron:{self.pattern}"
        return f"every:{self.every_ms}"

    def next_run_ms(self, after_ms: int) -> Optional[int]:
        """
        Next occurrence strictly after `after_ms`.

        Intervals are aligned to the epoch, so every process computes the
        same occurrence times. Cron patterns are evaluated by APScheduler's
        CronTrigger in the configured timezone.
        """
        if self.every_ms is not None:
            return (after_ms // self.every_ms + 1) * self.every_ms

        trigger = CronTrigger.from_crontab(self.pattern, timezone=self.tz)
        after = ms_to_datetime(after_ms) + timedelta(milliseconds=1)
        fire_time = trigger.get_next_fire_time(None, after)
        if fire_time is None:
            return None
        return int(fire_time.timestamp() * 1000)


class JobOptions(BaseModel):
    """
    Per-job options. Fields left unset fall back to the queue's defaults.

    remove_on_complete / remove_on_fail bound how many finished jobs are
    retained; None keeps every job.
    """

    attempts: int = Field(default=1, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    repeat: Optional[RepeatOptions] = None
    remove_on_complete: Optional[int] = Field(default=None, ge=0)
    remove_on_fail: Optional[int] = Field(default=None, ge=0)
    job_id: Optional[str] = None
    priority: int = 0  # lower runs first among due jobs
    delay_ms: int = Field(default=0, ge=0)


def queue_default_options(queue_name: str) -> JobOptions:
    """Default JobOptions for a configured queue."""
    defaults = QUEUE_DEFAULTS.get(queue_name)
    if defaults is None:
        return JobOptions()
    return JobOptions(
        attempts=defaults["attempts"],
        backoff=BackoffPolicy(type="exponential", delay_ms=defaults["backoff_delay_ms"]),
        remove_on_complete=defaults["remove_on_complete"],
        remove_on_fail=defaults["remove_on_fail"],
    )


class JobDescriptor(BaseModel):
    """What to run, where, and how (retries, cadence, retention)."""

    queue_name: str
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)

    @property
    def repeat_key(self) -> Optional[str]:
        """
        Identity of a repeatable descriptor: name, job id (or a hash of the
        payload) and cadence. Registering the same key twice is a no-op.
        """
        if self.options.repeat is None:
            return None
        identity = self.options.job_id or hashlib.md5(
            json.dumps(self.data, sort_keys=True, default=str).encode()
        ).hexdigest()[:12]
        return f"{self.name}:{identity}:{self.options.repeat.signature}"


# ============================================================================
# JOB STATE
# ============================================================================


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobExecution(BaseModel):
    """One run of a job by a worker."""

    attempt: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: Optional[JobOutcome] = None
    error: Optional[str] = None


class JobRecord(BaseModel):
    """A concrete job instance as stored in the queue."""

    id: str
    queue_name: str
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    options: JobOptions
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    created_at: datetime
    finished_at: Optional[datetime] = None
    return_value: Any = None
    failed_reason: Optional[str] = None
    repeat_key: Optional[str] = None
    executions: List[JobExecution] = Field(default_factory=list)

    @property
    def current_execution(self) -> Optional[JobExecution]:
        return self.executions[-1] if self.executions else None


# ============================================================================
# QUEUE
# ============================================================================


class JobQueue:
    """
    Named job queue over an async Redis client.

    Args:
        client: redis.asyncio client (decode_responses=True)
        name: Queue name, also the key namespace
        default_options: Options applied to every job unless overridden
        prefix: Root key prefix shared by all queues
        clock: Returns the current epoch time in milliseconds
    """

    def __init__(
        self,
        client,
        name: str,
        default_options: Optional[JobOptions] = None,
        prefix: str = QUEUE_KEY_PREFIX,
        clock=now_ms,
    ):
        self.client = client
        self.name = name
        self.default_options = default_options or queue_default_options(name)
        self.prefix = prefix
        self._clock = clock

    def key(self, *parts: str) -> str:
        return ":".join((self.prefix, self.name) + parts)

    def job_key(self, job_id: str) -> str:
        return self.key("job", job_id)

    def merge_options(self, options: Optional[JobOptions]) -> JobOptions:
        if options is None:
            return self.default_options.model_copy(deep=True)
        merged = self.default_options.model_dump()
        merged.update(options.model_dump(exclude_unset=True))
        return JobOptions.model_validate(merged)

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    async def add(self, name: str, data: Optional[Dict[str, Any]] = None, options: Optional[JobOptions] = None) -> str:
        """Shorthand for enqueue(JobDescriptor(...)) on this queue."""
        return await self.enqueue(
            JobDescriptor(queue_name=self.name, name=name, data=data or {}, options=options or JobOptions())
        )

    async def enqueue(self, descriptor: JobDescriptor) -> str:
        """
        Add a job described by `descriptor`.

        Returns:
            The job id, or the repeat key for repeatable descriptors

        Algorithm:
            1. Merge descriptor options over the queue defaults
            2. Repeatable descriptors are registered, not run directly
            3. A custom job id that already exists is a no-op
            4. Store the record and make it due after its delay
        """
        if descriptor.queue_name != self.name:
            raise ValueError(f"Descriptor for queue {descriptor.queue_name} enqueued on {self.name}")

        options = self.merge_options(descriptor.options)
        descriptor = descriptor.model_copy(update={"options": options})

        if options.repeat is not None:
            return await self.add_repeatable(descriptor)

        return await self._add_job(descriptor.name, descriptor.data, options)

    async def _add_job(
        self,
        name: str,
        data: Dict[str, Any],
        options: JobOptions,
        repeat_key: Optional[str] = None,
        now: Optional[int] = None,
    ) -> str:
        now = self._clock() if now is None else now
        job_id = options.job_id or str(await self.client.incr(self.key("id")))

        record = JobRecord(
            id=job_id,
            queue_name=self.name,
            name=name,
            data=data,
            options=options,
            state=JobState.DELAYED if options.delay_ms else JobState.WAITING,
            created_at=ms_to_datetime(now),
            repeat_key=repeat_key,
        )

        created = await self.client.set(self.job_key(job_id), record.model_dump_json(), nx=True)
        if not created:
            logger.debug(f"Job {job_id} already exists on {self.name}, not adding again")
            return job_id

        await self.client.zadd(self.key("due"), {job_id: now + options.delay_ms})
        logger.debug(f"Added job {job_id} ({name}) to {self.name}")
        return job_id

    # ------------------------------------------------------------------
    # Repeatable jobs
    # ------------------------------------------------------------------

    async def add_repeatable(self, descriptor: JobDescriptor) -> str:
        """
        Register a repeatable descriptor; its first occurrence is the next
        cron/interval tick. Re-registering an existing key keeps its schedule.
        """
        repeat_key = descriptor.repeat_key
        if repeat_key is None:
            raise ValueError(f"Job {descriptor.name} has no repeat options")

        await self.client.hset(self.key("repeat:opts"), repeat_key, descriptor.model_dump_json())
        if await self.client.zscore(self.key("repeat"), repeat_key) is None:
            next_run = descriptor.options.repeat.next_run_ms(self._clock())
            if next_run is not None:
                await self.client.zadd(self.key("repeat"), {repeat_key: next_run})
        logger.debug(f"Registered repeatable {repeat_key} on {self.name}")
        return repeat_key

    async def list_repeatable(self) -> List[JobDescriptor]:
        """
        All registered repeatable descriptors, ordered by repeat key.

        Entries that no longer parse are unregistered.
        """
        raw = await self.client.hgetall(self.key("repeat:opts"))
        descriptors = []
        for repeat_key in sorted(raw):
            try:
                descriptors.append(JobDescriptor.model_validate_json(raw[repeat_key]))
            except ValueError as e:
                logger.warning(f"Dropping unreadable repeatable {repeat_key} on {self.name}: {e}")
                await self.remove_repeatable(repeat_key)
        return descriptors

    async def remove_repeatable(self, repeat_key: str) -> bool:
        """Unregister a repeatable descriptor. Already-queued occurrences still run."""
        removed = await self.client.hdel(self.key("repeat:opts"), repeat_key)
        await self.client.zrem(self.key("repeat"), repeat_key)
        if removed:
            logger.debug(f"Removed repeatable {repeat_key} from {self.name}")
        return bool(removed)

    async def promote_repeatables(self, now: Optional[int] = None) -> int:
        """
        Materialize due repeatable occurrences into concrete jobs.

        Algorithm:
            1. Find repeat keys whose next run is due
            2. Claim each with ZREM (one process wins per occurrence)
            3. Schedule the following occurrence
            4. Add the occurrence with a deterministic job id, so a second
               promotion of the same occurrence is a no-op

        Returns:
            Number of occurrences promoted by this call
        """
        now = self._clock() if now is None else now
        due = await self.client.zrangebyscore(self.key("repeat"), 0, now, withscores=True)

        promoted = 0
        for repeat_key, score in due:
            due_ms = int(score)
            raw = await self.client.hget(self.key("repeat:opts"), repeat_key)
            if raw is None:
                await self.client.zrem(self.key("repeat"), repeat_key)
                continue

            if not await self.client.zrem(self.key("repeat"), repeat_key):
                continue

            descriptor = JobDescriptor.model_validate_json(raw)
            repeat = descriptor.options.repeat
            next_run = repeat.next_run_ms(max(now, due_ms))
            if next_run is not None:
                await self.client.zadd(self.key("repeat"), {repeat_key: next_run})

            occurrence_options = descriptor.options.model_copy(
                update={"repeat": None, "job_id": f"repeat:{repeat_key}:{due_ms}", "delay_ms": 0}
            )
            await self._add_job(descriptor.name, descriptor.data, occurrence_options, repeat_key=repeat_key, now=now)
            promoted += 1

        return promoted

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        raw = await self.client.get(self.job_key(job_id))
        if raw is None:
            return None
        return JobRecord.model_validate_json(raw)

    async def _save(self, record: JobRecord):
        await self.client.set(self.job_key(record.id), record.model_dump_json())

    async def claim(self, limit: int = 1, now: Optional[int] = None) -> List[JobRecord]:
        """
        Claim up to `limit` due jobs for execution.

        Among due jobs, lower priority values go first, then earlier due times.
        Claiming starts a new JobExecution and counts an attempt.
        """
        if limit < 1:
            return []
        now = self._clock() if now is None else now

        candidates = await self.client.zrangebyscore(
            self.key("due"), 0, now, start=0, num=max(limit, CLAIM_SCAN_SIZE), withscores=True
        )
        if not candidates:
            return []

        loaded = []
        for job_id, score in candidates:
            record = await self.get_job(job_id)
            if record is None:
                await self.client.zrem(self.key("due"), job_id)
                continue
            loaded.append((record.options.priority, score, record))
        loaded.sort(key=lambda item: (item[0], item[1]))

        claimed = []
        for _, _, record in loaded:
            if len(claimed) >= limit:
                break
            if not await self.client.zrem(self.key("due"), record.id):
                continue  # another worker got it

            record.state = JobState.ACTIVE
            record.attempts_made += 1
            record.executions.append(JobExecution(attempt=record.attempts_made, started_at=ms_to_datetime(now)))
            await self._save(record)
            await self.client.zadd(self.key("active"), {record.id: now})
            claimed.append(record)

        return claimed

    async def heartbeat(self, job: JobRecord, now: Optional[int] = None) -> bool:
        """
        Refresh the claim time of a running job so stalled recovery skips it.

        Returns False once the job is no longer active.
        """
        now = self._clock() if now is None else now
        if await self.client.zscore(self.key("active"), job.id) is None:
            return False
        await self.client.zadd(self.key("active"), {job.id: now})
        return True

    async def _stale_result(self, job: JobRecord) -> Optional[JobRecord]:
        """
        The stored record when `job` is not the execution the queue currently
        considers active (recovered as stalled, re-claimed or finished), else None.
        """
        stored = await self.get_job(job.id)
        if stored is not None and stored.state == JobState.ACTIVE and stored.attempts_made == job.attempts_made:
            return None
        logger.warning(
            f"Ignoring result of job {job.id} attempt {job.attempts_made} on {self.name}: execution no longer active"
        )
        return stored or job

    async def complete(self, job: JobRecord, return_value: Any = None, now: Optional[int] = None) -> JobRecord:
        """Mark an active job succeeded and apply completed-job retention."""
        now = self._clock() if now is None else now
        stale = await self._stale_result(job)
        if stale is not None:
            return stale

        finished_at = ms_to_datetime(now)

        execution = job.current_execution
        if execution is not None:
            execution.finished_at = finished_at
            execution.outcome = JobOutcome.SUCCEEDED

        job.state = JobState.COMPLETED
        job.finished_at = finished_at
        job.return_value = return_value
        job.failed_reason = None

        await self._save(job)
        await self.client.zrem(self.key("active"), job.id)
        await self._retain("completed", job.id, job.options.remove_on_complete)
        return job

    async def fail(self, job: JobRecord, error: BaseException, now: Optional[int] = None) -> JobRecord:
        """
        Record a failed execution.

        If attempts remain, the job becomes due again after its backoff delay.
        Otherwise it is terminally FAILED, retained for inspection and never
        retried automatically.
        """
        now = self._clock() if now is None else now
        stale = await self._stale_result(job)
        if stale is not None:
            return stale

        message = str(error) or error.__class__.__name__

        execution = job.current_execution
        if execution is not None:
            execution.finished_at = ms_to_datetime(now)
            execution.outcome = JobOutcome.FAILED
            execution.error = message
        job.failed_reason = message

        await self.client.zrem(self.key("active"), job.id)

        if job.attempts_made < job.options.attempts:
            delay = job.options.backoff.compute(job.attempts_made)
            job.state = JobState.DELAYED
            await self._save(job)
            await self.client.zadd(self.key("due"), {job.id: now + delay})
            logger.info(
                f"Job {job.id} on {self.name} failed (attempt {job.attempts_made}/{job.options.attempts}), "
                f"retrying in {delay}ms: {message}"
            )
            return job

        await self._finalize_failed(job, now)
        return job

    async def _finalize_failed(self, job: JobRecord, now: int):
        job.state = JobState.FAILED
        job.finished_at = ms_to_datetime(now)
        await self._save(job)
        await self._retain("failed", job.id, job.options.remove_on_fail)
        logger.warning(
            f"Job {job.id} on {self.name} failed permanently after {job.attempts_made} attempt(s): {job.failed_reason}"
        )

    async def _retain(self, list_name: str, job_id: str, keep: Optional[int]):
        """Push a finished job onto its list and evict records beyond `keep`."""
        if keep == 0:
            await self.client.delete(self.job_key(job_id))
            return

        list_key = self.key(list_name)
        await self.client.lpush(list_key, job_id)
        if keep is None:
            return

        evicted = await self.client.lrange(list_key, keep, -1)
        if evicted:
            await self.client.delete(*(self.job_key(old_id) for old_id in evicted))
            await self.client.ltrim(list_key, 0, keep - 1)

    async def recover_stalled(self, stall_ms: int = JOB_STALLED_TIMEOUT * 1000, now: Optional[int] = None) -> List[str]:
        """
        Return jobs whose worker disappeared to the due set.

        A job whose claim was not refreshed (see heartbeat) within `stall_ms`
        has its execution cancelled; it is retried if attempts remain, otherwise terminally failed.
        """
        now = self._clock() if now is None else now
        stalled = await self.client.zrangebyscore(self.key("active"), 0, now - stall_ms)

        recovered = []
        for job_id in stalled:
            if not await self.client.zrem(self.key("active"), job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue

            execution = job.current_execution
            if execution is not None and execution.outcome is None:
                execution.finished_at = ms_to_datetime(now)
                execution.outcome = JobOutcome.CANCELLED
                execution.error = "job stalled"
            job.failed_reason = "job stalled"

            if job.attempts_made < job.options.attempts:
                job.state = JobState.WAITING
                await self._save(job)
                await self.client.zadd(self.key("due"), {job_id: now})
            else:
                await self._finalize_failed(job, now)
            recovered.append(job_id)

        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled job(s) on {self.name}")
        return recovered

    async def get_job_counts(self, now: Optional[int] = None) -> Dict[str, int]:
        now = self._clock() if now is None else now
        due_total = await self.client.zcard(self.key("due"))
        waiting = await self.client.zcount(self.key("due"), 0, now)
        return {
            JobState.WAITING.value: waiting,
            JobState.DELAYED.value: due_total - waiting,
            JobState.ACTIVE.value: await self.client.zcard(self.key("active")),
            JobState.COMPLETED.value: await self.client.llen(self.key("completed")),
            JobState.FAILED.value: await self.client.llen(self.key("failed")),
            "repeatable": await self.client.zcard(self.key("repeat")),
        }

    async def get_jobs(self, state: JobState, limit: int = 50) -> List[JobRecord]:
        """Most recent finished jobs, newest first (completed or failed)."""
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Only finished jobs are listed, got {state.value}")
        ids = await self.client.lrange(self.key(state.value), 0, limit - 1)
        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs
