"""
YouTube Data API v3 trending adapter.

Uses `videos.list?chart=mostPopular` (1 quota unit per call) rather than
search.list (100 units). Daily quota usage is tracked in Redis and resets at
midnight Pacific Time, matching YouTube's own quota day.
"""

import asyncio
import logging
import math
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

import httpx

from adapters.base import ResilientAdapter, to_int
from config import (
    YOUTUBE_API_BASE,
    YOUTUBE_API_KEY,
    YOUTUBE_CATEGORIES,
    YOUTUBE_DAILY_QUOTA_LIMIT,
    YOUTUBE_MAX_RESULTS,
    YOUTUBE_QUOTA_KEY,
)
from errors import AdapterError
from models import FetchResult, FetchTrendingOptions, Platform, TrendingVideoRecord

logger = logging.getLogger(__name__)

PACIFIC = ZoneInfo("America/Los_Angeles")
DURATION_RE = re.compile(r"^P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")


def parse_iso_duration(value: Optional[str]) -> Optional[int]:
    """Parse an ISO 8601 duration (PT1H2M3S) into seconds."""
    if not value:
        return None
    match = DURATION_RE.match(value)
    if not match:
        return None
    days, hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def seconds_until_midnight_pacific(now: Optional[datetime] = None) -> int:
    """Seconds until the next YouTube quota reset."""
    now_pt = (now or datetime.now(tz=PACIFIC)).astimezone(PACIFIC)
    midnight = (now_pt + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(1, math.ceil((midnight - now_pt).total_seconds()))


class YouTubeAdapter(ResilientAdapter):
    """
    Trending adapter for YouTube.

    Args:
        cache: TrendingCache used for quota accounting (optional)
        api_key: YouTube Data API key
        http_client: Shared httpx.AsyncClient (one is created if omitted)
        categories: Category ids queried when no category is requested
        daily_quota_limit: Units after which the adapter reports unavailable
    """

    platform = Platform.YOUTUBE

    def __init__(
        self,
        cache=None,
        api_key: str = YOUTUBE_API_KEY,
        http_client: Optional[httpx.AsyncClient] = None,
        categories: Optional[List[str]] = None,
        daily_quota_limit: int = YOUTUBE_DAILY_QUOTA_LIMIT,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.cache = cache
        self.api_key = api_key
        self.http_client = http_client or httpx.AsyncClient(base_url=YOUTUBE_API_BASE, timeout=15.0)
        self.categories = categories or list(YOUTUBE_CATEGORIES)
        self.daily_quota_limit = daily_quota_limit

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def is_available(self) -> bool:
        if not self.is_configured():
            return False
        return await self.get_quota_used() < self.daily_quota_limit

    async def fetch_trending(self, options: FetchTrendingOptions) -> FetchResult:
        max_results = min(options.max_results, YOUTUBE_MAX_RESULTS)

        if options.category:
            return await self._fetch_most_popular(
                options.region, options.category, max_results, options.page_token
            )

        return await self._fetch_multi_category(options.region, max_results)

    async def _fetch_most_popular(
        self,
        region: str,
        category: Optional[str],
        max_results: int,
        page_token: Optional[str] = None,
    ) -> FetchResult:
        params = {
            "part": "snippet,statistics,contentDetails",
            "chart": "mostPopular",
            "regionCode": region,
            "maxResults": max_results,
            "key": self.api_key,
        }
        if category:
            params["videoCategoryId"] = category
        if page_token:
            params["pageToken"] = page_token

        async def api_call():
            response = await self.http_client.get("/videos", params=params)
            response.raise_for_status()
            return response.json()

        data = await self.call_with_resilience(api_call)
        await self._track_quota(1)
        try:
            return self._map_video_list(data, region, max_results)
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            raise AdapterError(self.platform.value, f"malformed videos.list item: {e}", e) from e

    async def _fetch_multi_category(self, region: str, max_results: int) -> FetchResult:
        """
        Fetch mostPopular for every category in parallel, merge and re-rank.

        Algorithm:
            1. Request max(3, ceil(max_results / #categories)) videos per category
            2. Merge successful pages, dedup by video id (first wins)
            3. Sort by view count descending, re-assign ranks 1..n
            4. Return the top max_results (no continuation cursor)
        """
        per_category = max(3, math.ceil(max_results / len(self.categories)))
        results = await asyncio.gather(
            *(self._fetch_most_popular(region, cat, per_category) for cat in self.categories),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures and len(failures) == len(results):
            raise AdapterError(
                self.platform.value,
                f"all {len(results)} category requests failed: {failures[0]}",
                failures[0],
            )
        for failure in failures:
            logger.warning(f"YouTube category fetch failed for {region}: {failure}")

        seen = set()
        merged: List[TrendingVideoRecord] = []
        for result in results:
            if isinstance(result, BaseException):
                continue
            for video in result.videos:
                if video.platform_video_id in seen:
                    continue
                seen.add(video.platform_video_id)
                merged.append(video)

        merged.sort(key=lambda v: v.view_count or 0, reverse=True)
        ranked = [v.model_copy(update={"trending_rank": i + 1}) for i, v in enumerate(merged)]

        return FetchResult(
            videos=tuple(ranked[:max_results]),
            next_page_token=None,
            total_results=len(ranked),
        )

    def _map_video_list(self, data: Dict, region: str, max_results: int) -> FetchResult:
        if not isinstance(data, dict) or not isinstance(data.get("items", []), list):
            raise AdapterError(self.platform.value, "malformed videos.list response")

        videos = []
        for index, item in enumerate(data.get("items", [])[:max_results]):
            snippet = item.get("snippet") or {}
            statistics = item.get("statistics") or {}
            thumbnails = snippet.get("thumbnails") or {}
            thumbnail = thumbnails.get("high") or thumbnails.get("default") or {}
            published = snippet.get("publishedAt")

            videos.append(
                TrendingVideoRecord(
                    platform=Platform.YOUTUBE,
                    platform_video_id=item.get("id") or "",
                    region=region,
                    title=snippet.get("title") or "",
                    description=snippet.get("description"),
                    thumbnail_url=thumbnail.get("url"),
                    channel_name=snippet.get("channelTitle"),
                    channel_id=snippet.get("channelId"),
                    duration=parse_iso_duration((item.get("contentDetails") or {}).get("duration")),
                    view_count=to_int(statistics.get("viewCount")),
                    like_count=to_int(statistics.get("likeCount")),
                    comment_count=to_int(statistics.get("commentCount")),
                    share_count=None,  # not exposed by the API
                    published_at=published,
                    trending_rank=index + 1,
                    category=snippet.get("categoryId"),
                    tags=snippet.get("tags") or [],
                    raw_metadata={
                        "thumbnail_width": thumbnail.get("width"),
                        "thumbnail_height": thumbnail.get("height"),
                    },
                )
            )

        page_info = data.get("pageInfo") or {}
        return FetchResult(
            videos=tuple(videos),
            next_page_token=data.get("nextPageToken"),
            total_results=page_info.get("totalResults"),
        )

    async def _track_quota(self, units: int):
        if self.cache is None:
            return
        await self.cache.incr_by(
            YOUTUBE_QUOTA_KEY, units, seconds_until_midnight_pacific()
        )

    async def get_quota_used(self) -> int:
        if self.cache is None:
            return 0
        result = await self.cache.get(YOUTUBE_QUOTA_KEY)
        if not result.hit:
            return 0
        try:
            return int(result.value)
        except (TypeError, ValueError):
            return 0

    async def aclose(self):
        await self.http_client.aclose()
