"""
Utils package for the trending pipeline.

Redis connection handling, resilience helpers, rate limiting and metrics.
"""

from utils.async_redis_utils import AsyncRedisService
from utils.common_utils import get_logger

__all__ = [
    "AsyncRedisService",
    "get_logger",
]

__version__ = "0.1.0"
