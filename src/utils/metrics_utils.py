"""
Prometheus metrics for jobs, trending refreshes and cache health.
"""

from prometheus_client import REGISTRY, Counter, Histogram

from config import JOB_DURATION_BUCKETS


def _get_or_create_metric(metric_class, name, description, labelnames=None, **kwargs):
    """
    Returns existing metric if already registered, otherwise creates new one.
    Prevents 'Duplicated timeseries' error on module re-import.

    Algorithm:
    1. Attempt to create the metric
    2. If ValueError (duplicate), find and return the existing collector
    3. For Counters, internal name is without '_total' suffix
    """
    try:
        if labelnames:
            return metric_class(name, description, labelnames, **kwargs)
        return metric_class(name, description, **kwargs)
    except ValueError:
        base_name = name[: -len("_total")] if name.endswith("_total") else name
        for collector in list(REGISTRY._names_to_collectors.values()):
            if getattr(collector, "_name", None) in (base_name, name):
                return collector
        raise


JOB_EVENTS = _get_or_create_metric(
    Counter,
    "pipeline_job_events_total",
    "Job execution outcomes",
    ["queue", "outcome"],
)

JOB_DURATION = _get_or_create_metric(
    Histogram,
    "pipeline_job_duration_seconds",
    "Job handler duration in seconds",
    ["queue"],
    buckets=JOB_DURATION_BUCKETS,
)

TRENDING_REFRESHES = _get_or_create_metric(
    Counter,
    "trending_refresh_total",
    "Trending refresh attempts by outcome",
    ["platform", "outcome"],
)

CACHE_DEGRADED = _get_or_create_metric(
    Counter,
    "trending_cache_degraded_total",
    "Cache operations that failed open/closed because the backend was unavailable",
    ["operation"],
)

PARTITION_RESULTS = _get_or_create_metric(
    Counter,
    "stats_partition_results_total",
    "Partition maintenance results by outcome",
    ["outcome"],
)
