"""
Configuration constants for the trending refresh pipeline.

This module contains all configuration values including TTLs, lock settings,
queue retry/retention policies, worker limits, job schedules and connection
settings. Centralizing these values makes the system easier to tune and
maintain.
"""

import os
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

# ============================================================================
# REDIS CONNECTION
# ============================================================================

REDIS_MAX_CONNECTIONS = 50  # Per process
REDIS_SOCKET_TIMEOUT = 10  # Seconds

REDIS_CONFIG = {
    "host": os.getenv("REDIS_HOST", "localhost"),
    "port": int(os.getenv("REDIS_PORT", "6379")),
    "password": os.getenv("REDIS_PASSWORD") or None,
    "ssl_enabled": os.getenv("REDIS_TLS_ENABLED", "false").lower() == "true",
    "max_connections": REDIS_MAX_CONNECTIONS,
    "socket_timeout": REDIS_SOCKET_TIMEOUT,
}

# Upper bound for a single cache/lock round trip. Reads fail open and lock
# attempts fail closed once this elapses.
CACHE_OP_TIMEOUT = float(os.getenv("CACHE_OP_TIMEOUT", "2.0"))

# ============================================================================
# RELATIONAL STORE (statistics snapshots)
# ============================================================================

DATABASE_URL = os.getenv("DATABASE_URL", "")
STATS_SNAPSHOT_TABLE = "video_stats_snapshots"

# ============================================================================
# TRENDING CACHE & LOCKS
# ============================================================================

TRENDING_CACHE_PREFIX = "trending"

# Data TTLs per platform (seconds)
YOUTUBE_CACHE_TTL = 30 * 60  # 30 min
TIKTOK_CACHE_TTL = 15 * 60  # 15 min
ALL_CACHE_TTL = 15 * 60  # limited by the shortest platform TTL

CACHE_TTL_BY_PLATFORM: Dict[str, int] = {
    "YOUTUBE": YOUTUBE_CACHE_TTL,
    "TIKTOK": TIKTOK_CACHE_TTL,
    "INSTAGRAM": TIKTOK_CACHE_TTL,
}

# Lock TTL bounds a single refresh cycle; auto-release if the holder dies
TRENDING_LOCK_TTL = int(os.getenv("TRENDING_LOCK_TTL", "300"))

# Refresh metadata outlives the data so stale vs. never-refreshed is visible
TRENDING_META_TTL = 7 * 24 * 60 * 60  # 7 days

REFRESH_MAX_RESULTS = 20
ADAPTER_FETCH_TIMEOUT = float(os.getenv("ADAPTER_FETCH_TIMEOUT", "45"))

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 50

# ============================================================================
# PLATFORMS & REGIONS
# ============================================================================

SUPPORTED_REGIONS: Dict[str, str] = {
    "US": "United States",
    "GB": "United Kingdom",
    "JP": "Japan",
    "KR": "South Korea",
    "BR": "Brazil",
    "IN": "India",
    "DE": "Germany",
    "FR": "France",
    "AU": "Australia",
    "CA": "Canada",
    "MX": "Mexico",
    "VN": "Vietnam",
}

SUPPORTED_REGION_CODES: List[str] = list(SUPPORTED_REGIONS)

YOUTUBE_CATEGORIES: Dict[str, str] = {
    "1": "Film & Animation",
    "10": "Music",
    "17": "Sports",
    "20": "Gaming",
    "22": "People & Blogs",
    "23": "Comedy",
    "24": "Entertainment",
    "25": "News & Politics",
    "26": "Howto & Style",
    "27": "Education",
    "28": "Science & Technology",
    "30": "Movies",
}

# ============================================================================
# PLATFORM API CREDENTIALS & LIMITS
# ============================================================================

YOUTUBE_API_KEY = os.getenv("YOUTUBE_API_KEY", "")
YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"
YOUTUBE_DAILY_QUOTA_LIMIT = 5000  # units reserved for trending
YOUTUBE_QUOTA_KEY = "youtube:quota:daily"  # under the trending cache prefix
YOUTUBE_MAX_RESULTS = 50  # API page size ceiling

APIFY_API_TOKEN = os.getenv("APIFY_API_TOKEN", "")
APIFY_BASE_URL = "https://api.apify.com/v2"
APIFY_TIKTOK_ACTOR_ID = "clockworks~free-tiktok-scraper"
APIFY_TIMEOUT = 30.0

# Resilience around third-party calls
ADAPTER_RETRY_ATTEMPTS = 3
ADAPTER_RETRY_BASE_DELAY = 1.0  # seconds
ADAPTER_RETRY_MAX_DELAY = 5.0
CIRCUIT_FAILURE_THRESHOLD = 5
CIRCUIT_RESET_TIMEOUT = 60.0
CIRCUIT_MONITOR_WINDOW = 60.0

# ============================================================================
# JOB QUEUES
# ============================================================================

QUEUE_KEY_PREFIX = "queue"

QUEUE_TRENDING_REFRESH = "trending-refresh"
QUEUE_SYNC = "sync"
QUEUE_DOWNLOADS = "video-downloads"
QUEUE_UPLOADS = "video-uploads"

# Cap for exponential backoff delays
JOB_BACKOFF_MAX_DELAY_MS = 60 * 60 * 1000  # 1 hour

# Default job options per queue
QUEUE_DEFAULTS: Dict[str, Dict] = {
    QUEUE_TRENDING_REFRESH: {
        "attempts": 3,
        "backoff_delay_ms": 5_000,
        "remove_on_complete": 100,
        "remove_on_fail": 50,
    },
    QUEUE_SYNC: {
        "attempts": 3,
        "backoff_delay_ms": 60_000,
        "remove_on_complete": 100,
        "remove_on_fail": 100,
    },
    QUEUE_DOWNLOADS: {
        "attempts": 3,
        "backoff_delay_ms": 10_000,
        "remove_on_complete": 200,
        "remove_on_fail": 100,
    },
    QUEUE_UPLOADS: {
        "attempts": 2,
        "backoff_delay_ms": 30_000,
        "remove_on_complete": 200,
        "remove_on_fail": 100,
    },
}

# ============================================================================
# WORKERS
# ============================================================================

WORKER_POLL_INTERVAL = 1.0  # seconds between claim attempts when idle

# Active jobs whose claim has not been refreshed within this window are
# considered stalled (worker crashed) and are made due again.
JOB_STALLED_TIMEOUT = 30 * 60  # seconds

# Running jobs refresh their claim this often; must stay well below
# JOB_STALLED_TIMEOUT.
JOB_HEARTBEAT_INTERVAL = 60  # seconds

WORKER_SETTINGS: Dict[str, Dict] = {
    QUEUE_TRENDING_REFRESH: {
        "concurrency": 3,
        "limit": 10,  # max jobs ...
        "window": 60,  # ... per 60 seconds
        "job_timeout": ADAPTER_FETCH_TIMEOUT + 15,
    },
    QUEUE_SYNC: {
        "concurrency": 1,
        "limit": None,
        "window": None,
        "job_timeout": None,
    },
    QUEUE_DOWNLOADS: {
        "concurrency": 3,
        "limit": None,
        "window": None,
        "job_timeout": None,
    },
    QUEUE_UPLOADS: {
        "concurrency": 2,
        "limit": None,
        "window": None,
        "job_timeout": None,
    },
}

# ============================================================================
# JOB SCHEDULES
# ============================================================================

TRENDING_REFRESH_INTERVAL = 30 * 60  # seconds, per platform x region

# Cron patterns (UTC)
SYNC_SCHEDULES: Dict[str, str] = {
    "channel-metadata-sync": "0 */6 * * *",  # every 6 hours
    "video-list-sync": "0 */12 * * *",  # every 12 hours
    "stats-snapshot-recent": "0 1,7,13,19 * * *",  # videos < 7 days, every 6 hours
    "stats-snapshot-all": "0 3 * * *",  # daily at 3 AM
    "stats-aggregation": "0 2 * * *",  # daily at 2 AM
    "partition-management": "0 0 1 * *",  # 1st of each month at midnight
}

SCHEDULE_TIMEZONE = "UTC"

# How often each process promotes due repeatable jobs / recovers stalled jobs
REPEAT_PROMOTE_INTERVAL = 5  # seconds
STALLED_CHECK_INTERVAL = 60  # seconds

# ============================================================================
# PARTITIONS & STATISTICS
# ============================================================================

PARTITION_LOOKAHEAD_MONTHS = 2
STATS_AGGREGATION_THRESHOLD_DAYS = 90
STATS_RECENT_WINDOW_DAYS = 7

# ============================================================================
# JOB LOGS
# ============================================================================

JOB_LOG_MAX_ENTRIES = 1000
JOB_LOG_TTL = 24 * 60 * 60  # 24 hours

# ============================================================================
# MONITORING AND METRICS
# ============================================================================

METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_PORT = int(os.getenv("METRICS_PORT", "9090"))

JOB_DURATION_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]

SENTRY_DSN = os.getenv("SENTRY_DSN", "")
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.01"))
ENVIRONMENT = os.getenv("ENV", "development")

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

ENABLE_DEBUG_LOGGING = os.getenv("ENABLE_DEBUG_LOGGING", "false").lower() == "true"

LOG_LEVEL = "DEBUG" if ENABLE_DEBUG_LOGGING else os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
