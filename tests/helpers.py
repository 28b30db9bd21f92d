"""
Test helpers: an in-memory async Redis double, a controllable clock, stub
adapters and sample data.

Simple, reusable pieces - no factories.
"""

import asyncio
import fnmatch
from typing import Dict, List, Optional

from redis.exceptions import ConnectionError as RedisConnectionError

from adapters.base import PlatformAdapter
from models import FetchResult, FetchTrendingOptions, Platform, TrendingVideoRecord


class FakeClock:
    """Manually advanced clock shared by the Redis double and the queues."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def ms(self) -> int:
        return int(self.now * 1000)

    def advance(self, seconds: float):
        self.now += seconds


class FakeAsyncRedis:
    """
    In-memory stand-in for redis.asyncio.Redis(decode_responses=True).

    Implements the commands the pipeline uses, with key expiry driven by a
    FakeClock. Set `down = True` to make every command raise ConnectionError.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.data: Dict[str, object] = {}
        self.expires: Dict[str, float] = {}
        self.down = False
        self.calls: List[str] = []

    # -- internals -------------------------------------------------------

    def _check(self, command: str):
        self.calls.append(command)
        if self.down:
            raise RedisConnectionError("fake redis is down")

    def _alive(self, key: str) -> bool:
        expire_at = self.expires.get(key)
        if expire_at is not None and expire_at <= self.clock():
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return key in self.data

    def _get_typed(self, key: str, factory):
        if not self._alive(key):
            self.data[key] = factory()
        return self.data[key]

    @staticmethod
    def _slice(items: list, start: int, end: int) -> list:
        n = len(items)
        start = start if start >= 0 else max(n + start, 0)
        end = end if end >= 0 else n + end
        if end < start:
            return []
        return items[start:end + 1]

    def _cleanup(self, key: str):
        value = self.data.get(key)
        if value is not None and hasattr(value, "__len__") and not isinstance(value, str) and len(value) == 0:
            self.data.pop(key, None)
            self.expires.pop(key, None)

    # -- connection ------------------------------------------------------

    async def ping(self):
        self._check("ping")
        return True

    async def aclose(self):
        return None

    # -- strings ---------------------------------------------------------

    async def get(self, key):
        self._check("get")
        if not self._alive(key):
            return None
        return self.data[key]

    async def set(self, key, value, ex=None, nx=False):
        self._check("set")
        if nx and self._alive(key):
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.expires[key] = self.clock() + ex
        else:
            self.expires.pop(key, None)
        return True

    async def delete(self, *keys):
        self._check("delete")
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return removed

    async def exists(self, *keys):
        self._check("exists")
        return sum(1 for key in keys if self._alive(key))

    async def incr(self, key):
        return await self.incrby(key, 1)

    async def incrby(self, key, amount):
        self._check("incrby")
        current = int(self.data[key]) if self._alive(key) else 0
        self.data[key] = str(current + amount)
        return current + amount

    async def expire(self, key, seconds):
        self._check("expire")
        if not self._alive(key):
            return False
        self.expires[key] = self.clock() + seconds
        return True

    async def ttl(self, key):
        self._check("ttl")
        if not self._alive(key):
            return -2
        if key not in self.expires:
            return -1
        return int(round(self.expires[key] - self.clock()))

    async def keys(self, pattern="*"):
        self._check("keys")
        return [key for key in list(self.data) if self._alive(key) and fnmatch.fnmatch(key, pattern)]

    # -- sorted sets -----------------------------------------------------

    async def zadd(self, key, mapping):
        self._check("zadd")
        zset = self._get_typed(key, dict)
        added = sum(1 for member in mapping if member not in zset)
        for member, score in mapping.items():
            zset[member] = float(score)
        return added

    async def zrem(self, key, *members):
        self._check("zrem")
        if not self._alive(key):
            return 0
        zset = self.data[key]
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        self._cleanup(key)
        return removed

    async def zscore(self, key, member):
        self._check("zscore")
        if not self._alive(key):
            return None
        return self.data[key].get(member)

    async def zcard(self, key):
        self._check("zcard")
        return len(self.data[key]) if self._alive(key) else 0

    def _sorted(self, key):
        if not self._alive(key):
            return []
        return sorted(self.data[key].items(), key=lambda item: (item[1], item[0]))

    async def zrangebyscore(self, key, min, max, start=None, num=None, withscores=False):
        self._check("zrangebyscore")
        low, high = float(min), float(max)
        items = [(m, s) for m, s in self._sorted(key) if low <= s <= high]
        if start is not None and num is not None:
            items = items[start:start + num]
        return items if withscores else [m for m, _ in items]

    async def zcount(self, key, min, max):
        self._check("zcount")
        low, high = float(min), float(max)
        return sum(1 for _, s in self._sorted(key) if low <= s <= high)

    async def zrange(self, key, start, end, withscores=False):
        self._check("zrange")
        items = self._slice(self._sorted(key), start, end)
        return items if withscores else [m for m, _ in items]

    # -- hashes ----------------------------------------------------------

    async def hset(self, key, field=None, value=None, mapping=None):
        self._check("hset")
        hash_ = self._get_typed(key, dict)
        updates = dict(mapping or {})
        if field is not None:
            updates[field] = value
        added = sum(1 for f in updates if f not in hash_)
        hash_.update({f: str(v) for f, v in updates.items()})
        return added

    async def hget(self, key, field):
        self._check("hget")
        if not self._alive(key):
            return None
        return self.data[key].get(field)

    async def hgetall(self, key):
        self._check("hgetall")
        if not self._alive(key):
            return {}
        return dict(self.data[key])

    async def hdel(self, key, *fields):
        self._check("hdel")
        if not self._alive(key):
            return 0
        hash_ = self.data[key]
        removed = sum(1 for f in fields if hash_.pop(f, None) is not None)
        self._cleanup(key)
        return removed

    # -- lists -----------------------------------------------------------

    async def lpush(self, key, *values):
        self._check("lpush")
        items = self._get_typed(key, list)
        for value in values:
            items.insert(0, str(value))
        return len(items)

    async def lrange(self, key, start, end):
        self._check("lrange")
        if not self._alive(key):
            return []
        return list(self._slice(self.data[key], start, end))

    async def ltrim(self, key, start, end):
        self._check("ltrim")
        if self._alive(key):
            self.data[key] = self._slice(self.data[key], start, end)
            self._cleanup(key)
        return True

    async def llen(self, key):
        self._check("llen")
        return len(self.data[key]) if self._alive(key) else 0

    async def lindex(self, key, index):
        self._check("lindex")
        if not self._alive(key):
            return None
        items = self.data[key]
        try:
            return items[index]
        except IndexError:
            return None


class HangingRedis(FakeAsyncRedis):
    """Redis double whose reads and writes never answer."""

    async def get(self, key):
        await asyncio.sleep(3600)

    async def set(self, key, value, ex=None, nx=False):
        await asyncio.sleep(3600)


def make_video(video_id: str, views: Optional[int] = None, platform: Platform = Platform.YOUTUBE, region: str = "US", **fields) -> TrendingVideoRecord:
    """Build a TrendingVideoRecord with sensible defaults."""
    return TrendingVideoRecord(
        platform=platform,
        platform_video_id=video_id,
        region=region,
        title=fields.pop("title", f"Video {video_id}"),
        view_count=views,
        **fields,
    )


class StubAdapter(PlatformAdapter):
    """
    Adapter returning canned videos.

    Attributes:
        calls: Number of fetch_trending invocations
        gate: If set, fetch_trending waits on it (simulates an in-flight fetch)
        error: If set, fetch_trending raises it
    """

    def __init__(self, platform: Platform = Platform.YOUTUBE, videos=None, available: bool = True, configured: bool = True):
        self.platform = platform
        self.videos = list(videos or [])
        self.available = available
        self.configured = configured
        self.calls = 0
        self.availability_checks = 0
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.error: Optional[BaseException] = None
        self.delay: float = 0

    def is_configured(self) -> bool:
        return self.configured

    async def is_available(self) -> bool:
        self.availability_checks += 1
        return self.available

    async def fetch_trending(self, options: FetchTrendingOptions) -> FetchResult:
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        videos = [v.model_copy(update={"region": options.region}) for v in self.videos]
        return FetchResult(videos=tuple(videos[: options.max_results]), total_results=len(videos))


class FakePartitionStore:
    """Partition store double recording DDL instead of running it."""

    def __init__(self, existing=None, failing=None):
        self.existing = set(existing or [])
        self.failing = set(failing or [])
        self.created: List[str] = []

    async def partition_exists(self, partition_name: str) -> bool:
        return partition_name in self.existing

    async def create_partition(self, descriptor):
        name = descriptor.partition_name
        if name in self.failing:
            raise RuntimeError(f'relation "{name}" would overlap partition')
        self.created.append(name)
        self.existing.add(name)


async def no_sleep(_seconds: float):
    return None
