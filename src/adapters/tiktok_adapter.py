"""
TikTok trending adapter backed by the Apify TikTok scraper actor.

The actor is run synchronously (`run-sync-get-dataset-items`), so one call
returns the whole dataset. Apify has no continuation cursor; results are
sliced to max_results and next_page_token is always None.
"""

import logging
from typing import Dict, List, Optional

import httpx

from adapters.base import ResilientAdapter, to_int
from config import APIFY_API_TOKEN, APIFY_BASE_URL, APIFY_TIKTOK_ACTOR_ID, APIFY_TIMEOUT
from errors import AdapterError
from models import FetchResult, FetchTrendingOptions, Platform, TrendingVideoRecord

logger = logging.getLogger(__name__)


class TikTokAdapter(ResilientAdapter):
    """
    Trending adapter for TikTok.

    Args:
        api_token: Apify API token
        http_client: Shared httpx.AsyncClient (one is created if omitted)
        actor_id: Apify actor to run
    """

    platform = Platform.TIKTOK

    def __init__(
        self,
        api_token: str = APIFY_API_TOKEN,
        http_client: Optional[httpx.AsyncClient] = None,
        actor_id: str = APIFY_TIKTOK_ACTOR_ID,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_token = api_token
        self.actor_id = actor_id
        self.http_client = http_client or httpx.AsyncClient(base_url=APIFY_BASE_URL, timeout=APIFY_TIMEOUT)

    def is_configured(self) -> bool:
        return bool(self.api_token)

    async def is_available(self) -> bool:
        return self.is_configured()

    async def fetch_trending(self, options: FetchTrendingOptions) -> FetchResult:
        if not self.api_token:
            return FetchResult(videos=(), next_page_token=None, total_results=0)

        body = {
            "hashtags": [],
            "resultsPerPage": options.max_results,
            "searchQueries": [],
            "shouldDownloadCovers": False,
            "shouldDownloadSlideshowImages": False,
            "shouldDownloadSubtitles": False,
            "shouldDownloadVideos": False,
        }

        async def api_call():
            response = await self.http_client.post(
                f"/acts/{self.actor_id}/run-sync-get-dataset-items",
                json=body,
                headers={"Authorization": f"Bearer {self.api_token}"},
                timeout=APIFY_TIMEOUT,
            )
            response.raise_for_status()
            return response.json()

        items = await self.call_with_resilience(api_call)
        if not isinstance(items, list):
            raise AdapterError(self.platform.value, "malformed Apify dataset response")

        try:
            videos = tuple(
                self._map_item(item, options.region, index)
                for index, item in enumerate(items[: options.max_results])
            )
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            raise AdapterError(self.platform.value, f"malformed Apify dataset item: {e}", e) from e
        logger.debug(f"Apify returned {len(items)} TikTok items for {options.region}")

        return FetchResult(videos=videos, next_page_token=None, total_results=len(videos))

    def _map_item(self, item: Dict, region: str, index: int) -> TrendingVideoRecord:
        video_meta = item.get("videoMeta") or {}
        author = item.get("authorMeta") or {}
        web_url = item.get("webVideoUrl") or ""
        hashtags: List[Dict] = item.get("hashtags") or []

        return TrendingVideoRecord(
            platform=Platform.TIKTOK,
            platform_video_id=str(item.get("id") or web_url.rstrip("/").split("/")[-1]),
            region=region,
            title=item.get("text") or "",
            description=item.get("text"),
            thumbnail_url=video_meta.get("coverUrl"),
            channel_name=author.get("nickName") or author.get("name"),
            channel_id=str(author["id"]) if author.get("id") is not None else None,
            duration=to_int(video_meta.get("duration")),
            view_count=to_int(item.get("playCount")),
            like_count=to_int(item.get("diggCount")),
            comment_count=to_int(item.get("commentCount")),
            share_count=to_int(item.get("shareCount")),
            published_at=item.get("createTimeISO"),
            trending_rank=index + 1,
            category=None,
            tags=[h["name"] for h in hashtags if h.get("name")],
        )

    async def aclose(self):
        await self.http_client.aclose()
