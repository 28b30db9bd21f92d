"""
Shared async Redis connection for the trending pipeline.

One AsyncRedisService backs the trending cache, the refresh locks and every
job queue of a process. The process runner connects it at startup, hands
`client` to the components that need it, and closes it after the workers
have drained.
"""

from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError, ConnectionError, TimeoutError

from utils.common_utils import get_logger

logger = get_logger(__name__)


class AsyncRedisService:
    """
    Owns a connection pool and the client built on it.

    Algorithm:
    1. Build a pool (plain TCP, or rediss:// when TLS is enabled)
    2. Wrap it in a client and PING once
    3. Expose the connected client as `client`

    Socket timeouts are short; callers add their own per-operation bound
    on top (see CACHE_OP_TIMEOUT).
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        password: Optional[str] = None,
        max_connections: int = 50,
        socket_connect_timeout: int = 5,
        socket_timeout: int = 10,
        ssl_enabled: bool = False,
        **kwargs,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.max_connections = max_connections
        self.socket_connect_timeout = socket_connect_timeout
        self.socket_timeout = socket_timeout
        self.ssl_enabled = ssl_enabled
        self.extra_options = kwargs

        self.pool: Optional[ConnectionPool] = None
        self.client: Optional[Redis] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def _build_pool(self) -> ConnectionPool:
        common = dict(
            max_connections=self.max_connections,
            socket_connect_timeout=self.socket_connect_timeout,
            socket_timeout=self.socket_timeout,
            socket_keepalive=True,
            decode_responses=True,
            retry_on_timeout=True,
            **self.extra_options,
        )
        if self.ssl_enabled:
            return ConnectionPool.from_url(
                f"rediss://:{self.password or ''}@{self.address}/0",
                ssl_cert_reqs="none",
                **common,
            )
        return ConnectionPool(
            host=self.host,
            port=self.port,
            password=self.password,
            retry_on_error=[ConnectionError, TimeoutError],
            health_check_interval=30,
            **common,
        )

    async def connect(self) -> Redis:
        """
        Create the pool and client, then PING.

        Raises:
            ConnectionError: If the server cannot be reached
        """
        self.pool = self._build_pool()
        self.client = aioredis.Redis(connection_pool=self.pool)
        try:
            await self.client.ping()
        except RedisError as e:
            logger.error(f"Redis at {self.address} unreachable: {e}")
            await self.close()
            raise ConnectionError(f"Cannot connect to Redis at {self.address}: {e}")

        logger.info(f"Connected to Redis at {self.address} (tls={self.ssl_enabled}, pool={self.max_connections})")
        return self.client

    async def close(self):
        if self.client is not None:
            await self.client.aclose()
            self.client = None
        if self.pool is not None:
            await self.pool.disconnect()
            self.pool = None
        logger.info(f"Redis connection to {self.address} closed")

    async def verify_connection(self) -> bool:
        """True when a PING round trip succeeds."""
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False
