"""
Redis-backed cache and distributed lock for trending data.

Keys are namespaced as `{prefix}:{key}`; lock entries share the keyspace under
`{prefix}:lock:{key}` with their own TTL, which doubles as an auto-release if
the holder dies.

Backend failures never propagate out of this module:
- reads fail open (CacheStatus.DEGRADED, no value)
- writes are dropped (CacheStatus.DEGRADED)
- lock attempts fail closed (LockStatus.UNAVAILABLE, not acquired)
The status values make the degraded path observable to callers and tests.
"""

import asyncio
import json
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from redis.exceptions import RedisError

from config import CACHE_OP_TIMEOUT, TRENDING_CACHE_PREFIX, TRENDING_LOCK_TTL
from errors import CacheUnavailable
from utils.metrics_utils import CACHE_DEGRADED

logger = logging.getLogger(__name__)


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    OK = "ok"
    DEGRADED = "degraded"


class LockStatus(str, Enum):
    ACQUIRED = "acquired"
    CONTENDED = "contended"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class CacheResult:
    """Outcome of a cache read."""

    status: CacheStatus
    value: Any = None
    error: Optional[CacheUnavailable] = None

    @property
    def hit(self) -> bool:
        return self.status == CacheStatus.HIT


@dataclass(frozen=True)
class LockResult:
    """Outcome of a lock attempt. Truthy only when this call created the lock."""

    status: LockStatus
    key: str
    token: Optional[str] = None
    error: Optional[CacheUnavailable] = None

    @property
    def acquired(self) -> bool:
        return self.status == LockStatus.ACQUIRED

    def __bool__(self) -> bool:
        return self.acquired


def _holder_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class TrendingCache:
    """
    Cache-aside store and lock primitive over an async Redis client.

    Args:
        client: redis.asyncio client (decode_responses=True)
        prefix: Namespace prefix for every key
        op_timeout: Seconds allowed for one backend round trip
    """

    def __init__(self, client, prefix: str = TRENDING_CACHE_PREFIX, op_timeout: float = CACHE_OP_TIMEOUT):
        self.client = client
        self.prefix = prefix
        self.op_timeout = op_timeout

    def data_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def lock_key(self, key: str) -> str:
        return f"{self.prefix}:lock:{key}"

    async def _call(self, operation: str, full_key: str, coro):
        """Run one backend round trip; timeouts and backend errors become CacheUnavailable."""
        try:
            return await asyncio.wait_for(coro, timeout=self.op_timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            CACHE_DEGRADED.labels(operation=operation).inc()
            raise CacheUnavailable(operation, full_key, e) from e

    async def get(self, key: str) -> CacheResult:
        """
        Read and JSON-decode a value.

        Returns:
            CacheResult with HIT and the value, MISS, or DEGRADED when the
            backend is unreachable or the stored payload is unreadable
        """
        full_key = self.data_key(key)
        try:
            raw = await self._call("get", full_key, self.client.get(full_key))
        except CacheUnavailable as e:
            logger.warning(f"{e}, serving miss")
            return CacheResult(CacheStatus.DEGRADED, error=e)

        if raw is None:
            return CacheResult(CacheStatus.MISS)

        try:
            return CacheResult(CacheStatus.HIT, json.loads(raw))
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable cache entry {full_key}: {e}")
            return CacheResult(CacheStatus.DEGRADED)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> CacheStatus:
        """
        JSON-encode and store a value with a TTL. Best-effort.

        Returns:
            CacheStatus.OK, or CacheStatus.DEGRADED if the write was dropped
        """
        full_key = self.data_key(key)
        payload = json.dumps(value, default=str)
        try:
            await self._call("set", full_key, self.client.set(full_key, payload, ex=ttl_seconds))
        except CacheUnavailable as e:
            logger.warning(f"{e}, write dropped")
            return CacheStatus.DEGRADED
        return CacheStatus.OK

    async def acquire_lock(self, key: str, ttl_seconds: int = TRENDING_LOCK_TTL) -> LockResult:
        """
        Atomically create the lock entry if absent (SET NX EX).

        Exactly one concurrent caller observes ACQUIRED while the lock is
        valid. Backend errors report UNAVAILABLE (not acquired).
        """
        full_key = self.lock_key(key)
        token = _holder_token()
        try:
            created = await self._call("lock", full_key, self.client.set(full_key, token, nx=True, ex=ttl_seconds))
        except CacheUnavailable as e:
            logger.warning(f"{e}, lock treated as not acquired")
            return LockResult(LockStatus.UNAVAILABLE, key, error=e)

        if created:
            logger.debug(f"Acquired lock {full_key} (holder: {token}, TTL: {ttl_seconds}s)")
            return LockResult(LockStatus.ACQUIRED, key, token)

        logger.debug(f"Lock {full_key} already held")
        return LockResult(LockStatus.CONTENDED, key)

    async def release_lock(self, key: str, token: Optional[str] = None) -> bool:
        """
        Delete the lock entry. Best-effort.

        Without a token the delete is unconditional. With a token the entry is
        only deleted while it still holds that token, so a caller whose lock
        expired cannot release a newer holder's lock.

        Returns:
            True if a lock entry was deleted
        """
        full_key = self.lock_key(key)
        try:
            if token is not None:
                current_holder = await self._call("unlock", full_key, self.client.get(full_key))
                if current_holder != token:
                    logger.warning(f"Not releasing {full_key}: held by {current_holder}, not {token}")
                    return False
            deleted = await self._call("unlock", full_key, self.client.delete(full_key))
            return bool(deleted)
        except CacheUnavailable as e:
            logger.warning(f"{e}, lock left to expire")
            return False

    async def incr_by(self, key: str, amount: int, ttl_seconds: int) -> Optional[int]:
        """Increment a counter and refresh its expiry. Returns None when degraded."""
        full_key = self.data_key(key)
        try:
            value = await self._call("incr", full_key, self.client.incrby(full_key, amount))
            await self._call("incr", full_key, self.client.expire(full_key, ttl_seconds))
            return int(value)
        except CacheUnavailable as e:
            logger.warning(f"{e}, counter update dropped")
            return None
