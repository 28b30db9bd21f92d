"""
Data models for trending videos.

TrendingVideoRecord is the normalized, platform-independent representation of
a single trending video. Records are serialized to JSON for the cache, so
counters are plain ints (Python ints are unbounded; values fit in 64 bits).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    """External platforms trending data is aggregated from."""

    YOUTUBE = "YOUTUBE"
    TIKTOK = "TIKTOK"
    INSTAGRAM = "INSTAGRAM"


ALL_PLATFORMS = "ALL"


class TrendingVideoRecord(BaseModel):
    """One trending video, normalized across platforms."""

    platform: Platform
    platform_video_id: str
    region: str
    title: str
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    channel_name: Optional[str] = None
    channel_id: Optional[str] = None
    duration: Optional[int] = None  # seconds
    view_count: Optional[int] = None
    like_count: Optional[int] = None
    comment_count: Optional[int] = None
    share_count: Optional[int] = None
    published_at: Optional[datetime] = None
    trending_rank: Optional[int] = None  # 1-based, within a single fetch batch
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    raw_metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def natural_key(self) -> Tuple[str, str, str]:
        """Dedup key: (platform, platform_video_id, region)."""
        return (self.platform.value, self.platform_video_id, self.region)


class FetchTrendingOptions(BaseModel):
    """Options for a single adapter call."""

    region: str
    category: Optional[str] = None
    max_results: int = Field(default=20, ge=1)
    page_token: Optional[str] = None


class FetchResult(BaseModel):
    """One page of adapter output. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    videos: Tuple[TrendingVideoRecord, ...] = ()
    next_page_token: Optional[str] = None
    total_results: Optional[int] = None


class TrendingSnapshot(BaseModel):
    """Cached payload for one (platform, region) key."""

    platform: Platform
    region: str
    refreshed_at: datetime
    videos: List[TrendingVideoRecord] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    total_results: Optional[int] = None


class RefreshMetadata(BaseModel):
    """Bookkeeping about refreshes of one (platform, region) key."""

    platform: Platform
    region: str
    last_refreshed_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    video_count: int = 0


class TrendingPage(BaseModel):
    """Paginated read-path response."""

    videos: List[TrendingVideoRecord] = Field(default_factory=list)
    page: int
    limit: int
    total: int
    has_more: bool
    refreshed_at: Optional[datetime] = None
