"""
Job handlers and producers for the pipeline's queues.

- trending-refresh: refresh one (platform, region) through the aggregation service
- sync: operational jobs dispatched by job name
    1. stats-snapshot-recent / stats-snapshot-all: record per-video statistics
    2. stats-aggregation: fold daily snapshots older than 90 days into weekly rows
    3. partition-management: keep future monthly partitions in place
    4. channel-metadata-sync / video-list-sync: delegated to injected callables
- video-downloads / video-uploads: typed payloads, producers, and handlers
  that delegate the heavy lifting to injected processors

Every handler lets failures propagate so the queue applies its retry/backoff
policy. Only the per-channel loop of the stats snapshot isolates errors.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from config import (
    PARTITION_LOOKAHEAD_MONTHS,
    QUEUE_DOWNLOADS,
    QUEUE_UPLOADS,
    STATS_AGGREGATION_THRESHOLD_DAYS,
    STATS_RECENT_WINDOW_DAYS,
    STATS_SNAPSHOT_TABLE,
)
from job_queue import JobOptions, JobQueue, JobRecord
from models import Platform
from trending_service import TrendingAggregationService
from utils.common_utils import time_execution

logger = logging.getLogger(__name__)

COUNTER_COLUMNS = ["view_count", "like_count", "comment_count", "share_count"]


# ============================================================================
# TRENDING REFRESH
# ============================================================================


def make_trending_refresh_handler(service: TrendingAggregationService):
    """Handler for `trending-refresh` jobs with data {platform, region}."""

    async def handle_trending_refresh(job: JobRecord) -> Dict[str, str]:
        platform = job.data["platform"]
        region = job.data["region"]
        outcome = await service.refresh_trending(platform, region)
        return {"platform": platform, "region": region, "outcome": outcome.value}

    return handle_trending_refresh


# ============================================================================
# STATISTICS
# ============================================================================


class VideoStats(BaseModel):
    """Current counters for one published video, as reported by its platform."""

    platform_video_id: str
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    share_count: int = 0


StatsFetcher = Callable[[Dict[str, Any], List[str]], Awaitable[List[VideoStats]]]


def engagement_rate(stats: VideoStats) -> float:
    """(likes + comments + shares) / views, or 0 for videos without views."""
    if stats.view_count <= 0:
        return 0.0
    return (stats.like_count + stats.comment_count + stats.share_count) / stats.view_count


class SqlStatsRepository:
    """
    Statistics persistence over an SQLAlchemy async engine.

    Tables: channels, connected_accounts, published_videos and the
    partitioned snapshot table.
    """

    def __init__(self, engine: AsyncEngine, snapshot_table: str = STATS_SNAPSHOT_TABLE):
        self.engine = engine
        self.snapshot_table = snapshot_table

    async def list_active_channels(self) -> List[Dict[str, Any]]:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                text(
                    "SELECT c.id, c.name, a.platform, a.id AS connected_account_id, a.user_id "
                    "FROM channels c JOIN connected_accounts a ON a.id = c.connected_account_id "
                    "WHERE c.is_active"
                )
            )
            return [dict(row) for row in result.mappings()]

    async def list_channel_videos(self, channel_id: str, published_since: Optional[datetime]) -> List[Dict[str, Any]]:
        query = "SELECT id, platform_video_id FROM published_videos WHERE channel_id = :channel_id"
        params: Dict[str, Any] = {"channel_id": channel_id}
        if published_since is not None:
            query += " AND published_at >= :since"
            params["since"] = published_since
        async with self.engine.connect() as conn:
            result = await conn.execute(text(query), params)
            return [dict(row) for row in result.mappings()]

    async def record_snapshot(self, video_id: str, stats: VideoStats, rate: float, snapshot_at: datetime):
        """Insert a daily snapshot and update the video's latest counters atomically."""
        params = {"video_id": video_id, "rate": rate, "snapshot_at": snapshot_at, **stats.model_dump()}
        async with self.engine.begin() as conn:
            await conn.execute(
                text(
                    f"INSERT INTO {self.snapshot_table} "
                    "(published_video_id, view_count, like_count, comment_count, share_count, "
                    "engagement_rate, is_weekly_summary, snapshot_at) "
                    "VALUES (:video_id, :view_count, :like_count, :comment_count, :share_count, "
                    ":rate, false, :snapshot_at)"
                ),
                params,
            )
            await conn.execute(
                text(
                    "UPDATE published_videos SET view_count = :view_count, like_count = :like_count, "
                    "comment_count = :comment_count, share_count = :share_count, "
                    "last_stats_sync_at = :snapshot_at WHERE id = :video_id"
                ),
                params,
            )

    async def fetch_daily_snapshots_before(self, cutoff: datetime) -> List[Dict[str, Any]]:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                text(
                    "SELECT id, published_video_id, view_count, like_count, comment_count, "
                    f"share_count, engagement_rate, snapshot_at FROM {self.snapshot_table} "
                    "WHERE snapshot_at < :cutoff AND NOT is_weekly_summary ORDER BY snapshot_at"
                ),
                {"cutoff": cutoff},
            )
            return [dict(row) for row in result.mappings()]

    async def replace_with_weekly_summary(self, summary: Dict[str, Any], snapshot_ids: List[Any]):
        """Insert one weekly summary row and delete the daily rows it replaces."""
        async with self.engine.begin() as conn:
            await conn.execute(
                text(
                    f"INSERT INTO {self.snapshot_table} "
                    "(published_video_id, view_count, like_count, comment_count, share_count, "
                    "engagement_rate, is_weekly_summary, snapshot_at) "
                    "VALUES (:published_video_id, :view_count, :like_count, :comment_count, "
                    ":share_count, :engagement_rate, true, :week_start)"
                ),
                summary,
            )
            await conn.execute(
                text(f"DELETE FROM {self.snapshot_table} WHERE id = ANY(:ids)"),
                {"ids": list(snapshot_ids)},
            )


@time_execution
async def sync_stats_snapshots(
    repository,
    fetchers: Dict[str, StatsFetcher],
    recent_only: bool,
    now: Optional[datetime] = None,
    recent_window_days: int = STATS_RECENT_WINDOW_DAYS,
) -> Dict[str, int]:
    """
    Record a statistics snapshot for every published video of every active channel.

    Args:
        repository: SqlStatsRepository or compatible
        fetchers: Platform value -> coroutine (channel, platform video ids) -> [VideoStats]
        recent_only: Only videos published within recent_window_days

    Returns:
        Counts of processed channels, recorded snapshots and failed channels

    Algorithm:
        1. Load active channels
        2. Per channel: load its videos, fetch stats from its platform
        3. Per video: record snapshot with engagement rate, update latest counters
        4. A failing channel is logged and skipped; the others continue
    """
    now = now or datetime.now(timezone.utc)
    label = "recent" if recent_only else "all"
    since = now - timedelta(days=recent_window_days) if recent_only else None

    channels = await repository.list_active_channels()
    logger.info(f"[stats-snapshot:{label}] Processing {len(channels)} channels")

    summary = {"channels": 0, "snapshots": 0, "failed_channels": 0}
    for channel in channels:
        try:
            fetcher = fetchers.get(channel["platform"])
            if fetcher is None:
                continue

            videos = await repository.list_channel_videos(channel["id"], since)
            if not videos:
                continue

            stats = await fetcher(channel, [v["platform_video_id"] for v in videos])
            stats_by_id = {s.platform_video_id: s for s in stats}

            for video in videos:
                stat = stats_by_id.get(video["platform_video_id"])
                if stat is None:
                    continue
                await repository.record_snapshot(video["id"], stat, engagement_rate(stat), now)
                summary["snapshots"] += 1

            summary["channels"] += 1
            logger.info(f"[stats-snapshot:{label}] Synced {len(videos)} videos for {channel.get('name')}")

        except Exception as e:
            summary["failed_channels"] += 1
            logger.error(f"[stats-snapshot:{label}] Failed for channel {channel.get('id')}: {e}", exc_info=True)

    return summary


def build_weekly_summaries(snapshots: pd.DataFrame) -> pd.DataFrame:
    """
    Group daily snapshots by (published video, ISO week starting Monday).

    Counters are averaged with integer (floor) division, engagement rate with
    a float mean. Missing values count as zero.

    Returns:
        DataFrame with published_video_id, week_start, the averaged columns,
        snapshot_count and snapshot_ids (list of source row ids)
    """
    df = snapshots.copy()
    df[COUNTER_COLUMNS] = df[COUNTER_COLUMNS].fillna(0).astype("int64")
    df["engagement_rate"] = df["engagement_rate"].fillna(0.0).astype(float)

    snapshot_at = pd.to_datetime(df["snapshot_at"], utc=True)
    df["week_start"] = (snapshot_at - pd.to_timedelta(snapshot_at.dt.weekday, unit="D")).dt.normalize()

    grouped = df.groupby(["published_video_id", "week_start"], sort=True)
    summaries = grouped.agg(
        view_count=("view_count", "sum"),
        like_count=("like_count", "sum"),
        comment_count=("comment_count", "sum"),
        share_count=("share_count", "sum"),
        engagement_rate=("engagement_rate", "mean"),
        snapshot_count=("id", "count"),
        snapshot_ids=("id", list),
    ).reset_index()

    for column in COUNTER_COLUMNS:
        summaries[column] = summaries[column] // summaries["snapshot_count"]

    return summaries


@time_execution
async def aggregate_weekly_snapshots(
    repository,
    threshold_days: int = STATS_AGGREGATION_THRESHOLD_DAYS,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Replace daily snapshots older than `threshold_days` with weekly summaries.

    Returns:
        Counts of weekly summaries created and daily snapshots deleted
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=threshold_days)
    logger.info(f"[stats-aggregation] Aggregating snapshots older than {cutoff.isoformat()}")

    rows = await repository.fetch_daily_snapshots_before(cutoff)
    if not rows:
        logger.info("[stats-aggregation] No snapshots to aggregate")
        return {"summaries": 0, "deleted": 0}

    summaries = build_weekly_summaries(pd.DataFrame(rows))

    created = 0
    deleted = 0
    for row in summaries.itertuples(index=False):
        summary = {
            "published_video_id": row.published_video_id,
            "week_start": row.week_start.to_pydatetime(),
            "view_count": int(row.view_count),
            "like_count": int(row.like_count),
            "comment_count": int(row.comment_count),
            "share_count": int(row.share_count),
            "engagement_rate": float(row.engagement_rate),
        }
        await repository.replace_with_weekly_summary(summary, row.snapshot_ids)
        created += 1
        deleted += len(row.snapshot_ids)

    logger.info(f"[stats-aggregation] Created {created} weekly summaries, deleted {deleted} daily snapshots")
    return {"summaries": created, "deleted": deleted}


# ============================================================================
# SYNC QUEUE DISPATCH
# ============================================================================

SyncHandler = Callable[[], Awaitable[Any]]


class SyncJobRouter:
    """Handler for the `sync` queue: dispatches on job name."""

    def __init__(self, handlers: Dict[str, SyncHandler]):
        self.handlers = handlers

    async def __call__(self, job: JobRecord) -> Any:
        handler = self.handlers.get(job.name)
        if handler is None:
            logger.warning(f"[sync] Unknown job name: {job.name}")
            return None

        logger.info(f"[sync] Processing job: {job.name}")
        result = await handler()
        logger.info(f"[sync] Completed job: {job.name}")
        return result


def _not_configured(name: str) -> SyncHandler:
    async def skip():
        logger.info(f"[sync] {name} is not configured in this deployment, skipping")
        return {"skipped": True}

    return skip


def build_sync_handlers(
    partition_manager=None,
    stats_repository=None,
    stats_fetchers: Optional[Dict[str, StatsFetcher]] = None,
    channel_metadata_sync: Optional[SyncHandler] = None,
    video_list_sync: Optional[SyncHandler] = None,
    lookahead_months: int = PARTITION_LOOKAHEAD_MONTHS,
) -> Dict[str, SyncHandler]:
    """Sync job name -> handler, with skip handlers for missing collaborators."""
    handlers: Dict[str, SyncHandler] = {
        "channel-metadata-sync": channel_metadata_sync or _not_configured("channel-metadata-sync"),
        "video-list-sync": video_list_sync or _not_configured("video-list-sync"),
    }

    if stats_repository is not None:
        fetchers = stats_fetchers or {}

        async def snapshot_recent():
            return await sync_stats_snapshots(stats_repository, fetchers, recent_only=True)

        async def snapshot_all():
            return await sync_stats_snapshots(stats_repository, fetchers, recent_only=False)

        async def aggregate():
            return await aggregate_weekly_snapshots(stats_repository)

        handlers["stats-snapshot-recent"] = snapshot_recent
        handlers["stats-snapshot-all"] = snapshot_all
        handlers["stats-aggregation"] = aggregate
    else:
        for name in ("stats-snapshot-recent", "stats-snapshot-all", "stats-aggregation"):
            handlers[name] = _not_configured(name)

    if partition_manager is not None:

        async def manage_partitions():
            results = await partition_manager.ensure_future_partitions(lookahead_months)
            return {r.descriptor.partition_name: r.outcome.value for r in results}

        handlers["partition-management"] = manage_partitions
    else:
        handlers["partition-management"] = _not_configured("partition-management")

    return handlers


# ============================================================================
# DOWNLOADS / UPLOADS
# ============================================================================


class DownloadJobData(BaseModel):
    downloaded_video_id: str
    url: str
    platform: Platform
    platform_video_id: str
    user_id: str


class UploadJobData(BaseModel):
    upload_job_id: str
    downloaded_video_id: str
    channel_id: str
    platform: Platform
    title: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    privacy_status: str = "private"
    upload_mode: Optional[str] = None
    user_id: str
    connected_account_id: str


async def enqueue_download(queue: JobQueue, payload: DownloadJobData) -> str:
    """Queue a download; the downloaded video id doubles as the job id."""
    if queue.name != QUEUE_DOWNLOADS:
        raise ValueError(f"Downloads go to {QUEUE_DOWNLOADS}, not {queue.name}")
    return await queue.add(
        "download",
        payload.model_dump(mode="json"),
        JobOptions(job_id=f"download:{payload.downloaded_video_id}"),
    )


async def enqueue_upload(queue: JobQueue, payload: UploadJobData, attempt_key: Optional[str] = None) -> str:
    """
    Queue an upload. `attempt_key` distinguishes manual retries of the same
    upload job from accidental double submissions.
    """
    if queue.name != QUEUE_UPLOADS:
        raise ValueError(f"Uploads go to {QUEUE_UPLOADS}, not {queue.name}")
    job_id = f"upload:{payload.upload_job_id}"
    if attempt_key:
        job_id = f"{job_id}:{attempt_key}"
    return await queue.add("upload", payload.model_dump(mode="json"), JobOptions(job_id=job_id))


def make_payload_handler(payload_model, processor: Callable[[Any, JobRecord], Awaitable[Any]]):
    """
    Wrap an external processor (downloader, uploader) as a job handler that
    validates the job payload first. Invalid payloads fail the job.
    """

    async def handle(job: JobRecord) -> Any:
        payload = payload_model.model_validate(job.data)
        return await processor(payload, job)

    return handle
