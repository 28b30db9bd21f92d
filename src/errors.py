"""
Error taxonomy for the trending refresh pipeline.

Lock contention is deliberately absent: failing to acquire a refresh lock is
a normal outcome (see trending_cache.LockStatus), never an exception.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class AdapterError(PipelineError):
    """
    An external platform call failed or returned malformed data.

    Raised out of platform adapters instead of raw transport errors so the job
    layer can retry it with the job's backoff policy.
    """

    def __init__(self, platform: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{platform}: {message}")
        self.platform = platform
        self.cause = cause


class CircuitOpenError(AdapterError):
    """The adapter's circuit breaker is open; the call was not attempted."""


class CacheUnavailable(PipelineError):
    """
    The cache backend failed or did not answer within the operation timeout.

    Raised inside TrendingCache and attached to the degraded result it
    returns; callers see CacheStatus.DEGRADED / LockStatus.UNAVAILABLE.
    """

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None):
        super().__init__(f"Cache {operation} failed for {key}: {cause}")
        self.operation = operation
        self.key = key
        self.cause = cause


class PartitionCreateConflict(PipelineError):
    """A partition could not be created (already exists, or base table not partitioned)."""

    def __init__(self, partition_name: str, message: str):
        super().__init__(f"{partition_name}: {message}")
        self.partition_name = partition_name


class JobExhausted(PipelineError):
    """All retry attempts for a job have been consumed."""

    def __init__(self, queue_name: str, job_id: str, attempts: int, reason: Optional[str] = None):
        super().__init__(
            f"Job {job_id} on {queue_name} failed after {attempts} attempt(s): {reason}"
        )
        self.queue_name = queue_name
        self.job_id = job_id
        self.attempts = attempts
        self.reason = reason
