"""
Platform adapters for trending data.
"""

from adapters.base import PlatformAdapter, ResilientAdapter
from adapters.tiktok_adapter import TikTokAdapter
from adapters.youtube_adapter import YouTubeAdapter

__all__ = [
    "PlatformAdapter",
    "ResilientAdapter",
    "TikTokAdapter",
    "YouTubeAdapter",
]
