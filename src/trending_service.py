"""
Trending aggregation service.

Stateless orchestrator over the trending cache and the platform adapters:
- refresh_trending() fetches one (platform, region) page under a distributed
  lock and overwrites the cached snapshot for that key
- get_trending() is the cache-first read path, including the merged "ALL" view

Cache layout (under the `trending` prefix):
    trending:{platform}:{region}          -> TrendingSnapshot JSON (platform TTL)
    trending:meta:{platform}:{region}     -> RefreshMetadata JSON (7 days)
    trending:lock:{platform}:{region}     -> lock holder token (lock TTL)
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from adapters.base import PlatformAdapter
from config import (
    ADAPTER_FETCH_TIMEOUT,
    ALL_CACHE_TTL,
    CACHE_TTL_BY_PLATFORM,
    DEFAULT_PAGE_LIMIT,
    MAX_PAGE_LIMIT,
    REFRESH_MAX_RESULTS,
    TRENDING_LOCK_TTL,
    TRENDING_META_TTL,
)
from errors import AdapterError
from models import (
    ALL_PLATFORMS,
    FetchTrendingOptions,
    Platform,
    RefreshMetadata,
    TrendingPage,
    TrendingSnapshot,
    TrendingVideoRecord,
)
from trending_cache import TrendingCache
from utils.metrics_utils import TRENDING_REFRESHES

logger = logging.getLogger(__name__)


class RefreshOutcome(str, Enum):
    SKIPPED_UNAVAILABLE = "skipped_unavailable"
    LOCK_CONTENDED = "lock_contended"
    REFRESHED = "refreshed"


def trending_key(platform: Platform, region: str) -> str:
    return f"{platform.value}:{region}"


def meta_key(platform: Platform, region: str) -> str:
    return f"meta:{platform.value}:{region}"


def normalize_videos(videos: Iterable[TrendingVideoRecord]) -> List[TrendingVideoRecord]:
    """
    Dedup on the natural key (first occurrence wins) and assign 1-based ranks
    in input order.
    """
    seen = set()
    normalized = []
    for video in videos:
        if video.natural_key in seen:
            continue
        seen.add(video.natural_key)
        normalized.append(video.model_copy(update={"trending_rank": len(normalized) + 1}))
    return normalized


class TrendingAggregationService:
    """
    Args:
        cache: TrendingCache for snapshots, metadata and locks
        adapters: One adapter per platform, resolved once here
        lock_ttl: Seconds a refresh lock stays valid
        max_results: Videos requested per refresh
        fetch_timeout: Upper bound on a single adapter fetch, in seconds
        cache_ttls: Data TTL per platform value
    """

    def __init__(
        self,
        cache: TrendingCache,
        adapters: Iterable[PlatformAdapter],
        lock_ttl: int = TRENDING_LOCK_TTL,
        max_results: int = REFRESH_MAX_RESULTS,
        fetch_timeout: float = ADAPTER_FETCH_TIMEOUT,
        cache_ttls: Optional[Dict[str, int]] = None,
    ):
        self.cache = cache
        self.lock_ttl = lock_ttl
        self.max_results = max_results
        self.fetch_timeout = fetch_timeout
        self.cache_ttls = cache_ttls or CACHE_TTL_BY_PLATFORM

        self.adapters: Dict[Platform, PlatformAdapter] = {}
        for adapter in adapters:
            if adapter.platform in self.adapters:
                raise ValueError(f"Duplicate adapter registered for {adapter.platform.value}")
            self.adapters[adapter.platform] = adapter

    @property
    def platforms(self) -> List[Platform]:
        return list(self.adapters)

    def configured_platforms(self) -> List[Platform]:
        """Platforms whose adapter has credentials. Quota and outages are checked per refresh."""
        return [platform for platform, adapter in self.adapters.items() if adapter.is_configured()]

    async def refresh_trending(self, platform: Union[Platform, str], region: str) -> RefreshOutcome:
        """
        Refresh the cached trending snapshot for one (platform, region).

        Algorithm:
            1. Resolve the adapter; no-op if absent or unavailable (no lock taken)
            2. Acquire lock `{platform}:{region}`; return immediately if not acquired
            3. Fetch with a timeout, normalize, overwrite the snapshot, update metadata
            4. Release the lock in `finally`, also when the fetch failed

        Returns:
            RefreshOutcome describing what happened

        Raises:
            AdapterError: the fetch failed or timed out (after metadata is updated)
        """
        platform = Platform(platform)
        adapter = self.adapters.get(platform)
        if adapter is None or not await adapter.is_available():
            logger.info(f"Skipping refresh for {platform.value}:{region}, adapter unavailable")
            TRENDING_REFRESHES.labels(platform=platform.value, outcome=RefreshOutcome.SKIPPED_UNAVAILABLE.value).inc()
            return RefreshOutcome.SKIPPED_UNAVAILABLE

        key = trending_key(platform, region)
        lock = await self.cache.acquire_lock(key, self.lock_ttl)
        if not lock:
            logger.info(f"Refresh for {key} already in flight ({lock.status.value}), skipping")
            TRENDING_REFRESHES.labels(platform=platform.value, outcome=RefreshOutcome.LOCK_CONTENDED.value).inc()
            return RefreshOutcome.LOCK_CONTENDED

        attempt_at = datetime.now(timezone.utc)
        try:
            try:
                result = await asyncio.wait_for(
                    adapter.fetch_trending(
                        FetchTrendingOptions(region=region, max_results=self.max_results)
                    ),
                    timeout=self.fetch_timeout,
                )
            except asyncio.TimeoutError as e:
                raise AdapterError(
                    platform.value, f"fetch timed out after {self.fetch_timeout}s", e
                ) from e
            except AdapterError:
                raise
            except Exception as e:
                raise AdapterError(platform.value, str(e), e) from e

            videos = normalize_videos(result.videos)
            if videos:
                snapshot = TrendingSnapshot(
                    platform=platform,
                    region=region,
                    refreshed_at=attempt_at,
                    videos=videos,
                    next_page_token=result.next_page_token,
                    total_results=result.total_results,
                )
                await self.cache.set(
                    key,
                    snapshot.model_dump(mode="json"),
                    self.cache_ttls.get(platform.value, ALL_CACHE_TTL),
                )
            else:
                logger.warning(f"Refresh for {key} returned no videos, keeping previous snapshot")

            await self._write_metadata(platform, region, attempt_at, succeeded=True, video_count=len(videos))
            logger.info(f"Refreshed {key}: {len(videos)} videos")
            TRENDING_REFRESHES.labels(platform=platform.value, outcome=RefreshOutcome.REFRESHED.value).inc()
            return RefreshOutcome.REFRESHED

        except AdapterError as e:
            logger.error(f"Refresh for {key} failed: {e}", exc_info=True)
            TRENDING_REFRESHES.labels(platform=platform.value, outcome="failed").inc()
            await self._write_metadata(platform, region, attempt_at, succeeded=False, error=str(e))
            raise

        finally:
            await self.cache.release_lock(key, lock.token)

    async def _write_metadata(
        self,
        platform: Platform,
        region: str,
        attempt_at: datetime,
        succeeded: bool,
        video_count: int = 0,
        error: Optional[str] = None,
    ):
        previous = await self.get_refresh_metadata(platform, region)
        metadata = previous or RefreshMetadata(platform=platform, region=region)
        metadata.last_attempt_at = attempt_at
        if succeeded:
            metadata.last_refreshed_at = attempt_at
            metadata.last_error = None
            metadata.video_count = video_count
        else:
            metadata.last_error = error
        await self.cache.set(meta_key(platform, region), metadata.model_dump(mode="json"), TRENDING_META_TTL)

    async def get_refresh_metadata(self, platform: Union[Platform, str], region: str) -> Optional[RefreshMetadata]:
        """Refresh bookkeeping for a key, or None if it was never attempted."""
        platform = Platform(platform)
        result = await self.cache.get(meta_key(platform, region))
        if not result.hit:
            return None
        try:
            return RefreshMetadata.model_validate(result.value)
        except ValueError as e:
            logger.warning(f"Ignoring unreadable refresh metadata for {platform.value}:{region}: {e}")
            return None

    async def _get_snapshot(self, platform: Platform, region: str) -> Optional[TrendingSnapshot]:
        result = await self.cache.get(trending_key(platform, region))
        if not result.hit:
            return None
        try:
            return TrendingSnapshot.model_validate(result.value)
        except ValueError as e:
            logger.warning(f"Ignoring unreadable snapshot for {platform.value}:{region}: {e}")
            return None

    async def get_trending(
        self,
        platform: Union[Platform, str],
        region: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> TrendingPage:
        """
        Cache-first read of trending videos. Never calls an adapter.

        Algorithm:
            1. Load the snapshot for the platform (or every registered platform for "ALL")
            2. For "ALL": merge and sort by view count descending
            3. Slice the requested page

        Returns:
            TrendingPage; empty with refreshed_at=None when nothing is cached
        """
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_LIMIT))

        if platform == ALL_PLATFORMS:
            snapshots = [
                snapshot
                for snapshot in await asyncio.gather(
                    *(self._get_snapshot(p, region) for p in self.adapters)
                )
                if snapshot is not None
            ]
            videos = [video for snapshot in snapshots for video in snapshot.videos]
            videos.sort(key=lambda v: v.view_count or 0, reverse=True)
            refreshed_at = min((s.refreshed_at for s in snapshots), default=None)
        else:
            snapshot = await self._get_snapshot(Platform(platform), region)
            videos = snapshot.videos if snapshot else []
            refreshed_at = snapshot.refreshed_at if snapshot else None

        offset = (page - 1) * limit
        return TrendingPage(
            videos=videos[offset:offset + limit],
            page=page,
            limit=limit,
            total=len(videos),
            has_more=offset + limit < len(videos),
            refreshed_at=refreshed_at,
        )
