# sms_dispatch/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from sms_dispatch.errors import StoreUnavailableError
from sms_dispatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Pooled Redis connection with an explicit initialize/close lifecycle."""

    def __init__(self, url: str, max_connections: int = 20):
        self.url = url
        self.max_connections = max_connections
        self.pool = None
        self._client = None
        self._initialized = False

    @classmethod
    def from_client(cls, client) -> "RedisClient":
        """Wrap an already-connected client (used by tests and embedding callers)."""
        instance = cls(url="")
        instance._client = client
        instance._initialized = True
        return instance

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=self._redacted_url())

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self._client = redis.Redis(connection_pool=self.pool)

            result = await self._client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized", max_connections=self.max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    def _redacted_url(self) -> str:
        # Drop credentials before logging
        if "@" in self.url:
            scheme, _, rest = self.url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.url

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def client(self) -> redis.Redis:
        if not self._initialized or self._client is None:
            raise StoreUnavailableError("Redis client not initialized", operation="connect")
        return self._client

    async def close(self):
        """Clean shutdown"""
        try:
            if self._client:
                await self._client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False
