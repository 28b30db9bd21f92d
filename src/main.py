"""
Process runner for the trending refresh pipeline.

Startup:
- Initialize Sentry, logging and the Prometheus endpoint
- Connect the Redis pool and build the cache, adapters and aggregation service
- Build the queues, the optional relational store (partitions + statistics)
- Reconcile the repeatable-job schedule
- Start one worker per queue and the maintenance scheduler

Shutdown (SIGINT/SIGTERM):
- Stop the maintenance scheduler
- Drain workers
- Close adapters, the Redis pool and the database engine
"""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import sentry_sdk
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from prometheus_client import start_http_server
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from adapters import PlatformAdapter, TikTokAdapter, YouTubeAdapter
from background_jobs import SqlStatsRepository, SyncJobRouter, build_sync_handlers, make_trending_refresh_handler
from config import (
    DATABASE_URL,
    ENVIRONMENT,
    JOB_STALLED_TIMEOUT,
    LOG_FORMAT,
    LOG_LEVEL,
    METRICS_ENABLED,
    METRICS_PORT,
    QUEUE_DOWNLOADS,
    QUEUE_SYNC,
    QUEUE_TRENDING_REFRESH,
    QUEUE_UPLOADS,
    REDIS_CONFIG,
    REPEAT_PROMOTE_INTERVAL,
    SENTRY_DSN,
    SENTRY_TRACES_SAMPLE_RATE,
    STALLED_CHECK_INTERVAL,
    SUPPORTED_REGION_CODES,
    WORKER_SETTINGS,
)
from job_logger import get_job_logger
from job_queue import JobQueue
from job_worker import JobEvent, JobWorker
from partition_manager import PartitionManager, PostgresPartitionStore
from scheduler import JobScheduler
from trending_cache import TrendingCache
from trending_service import TrendingAggregationService
from utils.async_redis_utils import AsyncRedisService
from utils.common_utils import filter_transient_errors
from utils.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """Every handle the running process owns."""

    cache: TrendingCache
    service: TrendingAggregationService
    queues: Dict[str, JobQueue]
    workers: Dict[str, JobWorker] = field(default_factory=dict)
    adapters: List[PlatformAdapter] = field(default_factory=list)
    partition_manager: Optional[PartitionManager] = None
    maintenance: Optional[AsyncIOScheduler] = None


def log_job_event(event: JobEvent):
    """Publish job status events to the process log."""
    if event.outcome == "completed":
        logger.debug(f"[{event.queue_name}] job {event.job_id} completed")
    else:
        logger.error(
            f"[{event.queue_name}] job {event.job_id} ({event.job_name}) {event.outcome} "
            f"on attempt {event.attempt}: {event.error_message}"
        )


def job_listener(event):
    """Listen to maintenance scheduler events for monitoring."""
    if event.exception:
        logger.error(f"Maintenance job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Maintenance job {event.job_id} executed successfully")


def build_queues(redis_client) -> Dict[str, JobQueue]:
    return {
        name: JobQueue(redis_client, name)
        for name in (QUEUE_TRENDING_REFRESH, QUEUE_SYNC, QUEUE_DOWNLOADS, QUEUE_UPLOADS)
    }


def build_worker(queue: JobQueue, handler, redis_client) -> JobWorker:
    settings = WORKER_SETTINGS[queue.name]
    limiter = None
    if settings["limit"]:
        limiter = SlidingWindowRateLimiter(settings["limit"], settings["window"])
    return JobWorker(
        queue,
        handler,
        concurrency=settings["concurrency"],
        limiter=limiter,
        job_timeout=settings["job_timeout"],
        job_logger=get_job_logger(queue.name, redis_client, LOG_LEVEL),
    )


async def build_pipeline(
    redis_client,
    adapters: Optional[List[PlatformAdapter]] = None,
    engine: Optional[AsyncEngine] = None,
    download_handler=None,
    upload_handler=None,
) -> Pipeline:
    """
    Wire the components over already-connected resources.

    Download/upload workers only start when a handler is supplied; their
    queues always exist so producers can enqueue.
    """
    cache = TrendingCache(redis_client)
    if adapters is None:
        adapters = [YouTubeAdapter(cache=cache), TikTokAdapter()]
    service = TrendingAggregationService(cache, adapters)
    queues = build_queues(redis_client)

    partition_manager = None
    stats_repository = None
    if engine is not None:
        partition_manager = PartitionManager(PostgresPartitionStore(engine))
        stats_repository = SqlStatsRepository(engine)

    pipeline = Pipeline(
        cache=cache,
        service=service,
        queues=queues,
        adapters=adapters,
        partition_manager=partition_manager,
    )

    handlers = {
        QUEUE_TRENDING_REFRESH: make_trending_refresh_handler(service),
        QUEUE_SYNC: SyncJobRouter(
            build_sync_handlers(partition_manager=partition_manager, stats_repository=stats_repository)
        ),
    }
    if download_handler is not None:
        handlers[QUEUE_DOWNLOADS] = download_handler
    if upload_handler is not None:
        handlers[QUEUE_UPLOADS] = upload_handler

    for name, handler in handlers.items():
        worker = build_worker(queues[name], handler, redis_client)
        worker.add_listener(log_job_event)
        pipeline.workers[name] = worker

    return pipeline


async def reconcile_schedule(pipeline: Pipeline):
    platforms = pipeline.service.configured_platforms()
    if not platforms:
        logger.warning("No trending platform is configured; only sync jobs will be scheduled")
    scheduler = JobScheduler(
        {name: pipeline.queues[name] for name in (QUEUE_TRENDING_REFRESH, QUEUE_SYNC)},
        platforms=platforms,
        regions=SUPPORTED_REGION_CODES,
    )
    return await scheduler.reconcile()


def start_maintenance(pipeline: Pipeline) -> AsyncIOScheduler:
    """Periodic promotion of repeatable jobs and stalled-job recovery."""

    async def promote_repeatables():
        for queue in pipeline.queues.values():
            try:
                promoted = await queue.promote_repeatables()
                if promoted:
                    logger.debug(f"Promoted {promoted} repeatable job(s) on {queue.name}")
            except Exception as e:
                logger.error(f"Promoting repeatables on {queue.name} failed: {e}", exc_info=True)

    async def recover_stalled():
        for queue in pipeline.queues.values():
            try:
                await queue.recover_stalled(JOB_STALLED_TIMEOUT * 1000)
            except Exception as e:
                logger.error(f"Stalled job recovery on {queue.name} failed: {e}", exc_info=True)

    maintenance = AsyncIOScheduler()
    maintenance.add_job(
        promote_repeatables,
        "interval",
        seconds=REPEAT_PROMOTE_INTERVAL,
        id="promote_repeatables",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=REPEAT_PROMOTE_INTERVAL,
    )
    maintenance.add_job(
        recover_stalled,
        "interval",
        seconds=STALLED_CHECK_INTERVAL,
        id="recover_stalled",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=60,
    )
    maintenance.add_listener(job_listener, EVENT_JOB_ERROR | EVENT_JOB_EXECUTED)
    maintenance.start()
    logger.info("Maintenance scheduler started")
    return maintenance


@asynccontextmanager
async def pipeline_lifespan():
    """Connect, wire and start everything; tear it down in reverse order."""
    redis_service = AsyncRedisService(**REDIS_CONFIG)
    try:
        await asyncio.wait_for(redis_service.connect(), timeout=30.0)
    except asyncio.TimeoutError:
        logger.error("Redis connection timeout after 30s - check REDIS_HOST and network")
        raise

    engine = create_async_engine(DATABASE_URL, pool_pre_ping=True) if DATABASE_URL else None
    if engine is None:
        logger.warning("DATABASE_URL not set - partition and statistics jobs disabled")

    try:
        pipeline = await build_pipeline(redis_service.client, engine=engine)
    except Exception:
        await redis_service.close()
        if engine is not None:
            await engine.dispose()
        raise

    try:
        report = await reconcile_schedule(pipeline)
        logger.info(f"Schedule reconciled (changed={report.changed})")

        for worker in pipeline.workers.values():
            worker.start()
        pipeline.maintenance = start_maintenance(pipeline)

        yield pipeline

    finally:
        logger.info("Shutting down trending pipeline...")
        if pipeline.maintenance is not None:
            pipeline.maintenance.shutdown(wait=False)
            logger.info("Maintenance scheduler stopped")

        await asyncio.gather(*(worker.close(drain=True) for worker in pipeline.workers.values()))

        for adapter in pipeline.adapters:
            aclose = getattr(adapter, "aclose", None)
            if aclose is not None:
                await aclose()

        await redis_service.close()
        if engine is not None:
            await engine.dispose()
        logger.info("Shutdown complete")


async def run():
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with pipeline_lifespan():
        logger.info("Trending pipeline running")
        await stop.wait()


def main():
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        environment=ENVIRONMENT,
        before_send=filter_transient_errors,
    )
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    if METRICS_ENABLED:
        start_http_server(METRICS_PORT)
        logger.info(f"Prometheus metrics exposed on :{METRICS_PORT}")

    asyncio.run(run())


if __name__ == "__main__":
    main()
