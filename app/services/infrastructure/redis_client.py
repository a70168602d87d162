# app/services/infrastructure/redis_client.py
import time

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import WatchError

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.messaging.errors import BackingStoreUnavailable

logger = get_logger(__name__)

# Minimum gap between reconnect attempts while Redis is down
RECONNECT_BACKOFF_SECONDS = 30.0


class FastRedisClient:
    """Pooled async Redis client whose helpers degrade instead of raising."""

    def __init__(self, url: str | None = None):
        self.url = url
        self.pool = None
        self.client = None
        self._initialized = False
        self._last_attempt = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.url) or self.client is not None

    @property
    def available(self) -> bool:
        return self._initialized and self.client is not None

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        if not self.url:
            logger.warning("REDIS_URL not configured, presence and cache stay in-process")
            return

        self._last_attempt = time.monotonic()

        try:
            logger.info("Attempting Redis connection", url_preview=self.url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Fast Redis client initialized successfully",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
            )

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            self.client = None
            if self.pool:
                await self.pool.disconnect()
                self.pool = None
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            self.client = None
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Retry initialization at most once per backoff window."""
        if self.available:
            return
        if not self.url:
            raise ConnectionError("Redis not configured")
        if time.monotonic() - self._last_attempt < RECONNECT_BACKOFF_SECONDS:
            raise ConnectionError("Redis client not available")

        logger.warning("Redis not initialized, attempting to initialize")
        await self.initialize()

    async def require(self) -> redis.Redis:
        """
        Return the raw client for callers that manage their own fallback.

        Raises:
            BackingStoreUnavailable: Redis is not configured or not reachable
        """
        try:
            await self._ensure_initialized()
        except (ConnectionError, RuntimeError) as e:
            raise BackingStoreUnavailable(str(e), backend="redis") from e
        return self.client

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        """Get value - with fallback handling"""
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:50], error=str(e))
            return None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        """Set value with TTL - with fallback handling"""
        try:
            await self._ensure_initialized()

            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:50], error=str(e))
            return False

    async def incr_with_ttl(self, key: str, ttl_s: int | None = None) -> int | None:
        """INCR a counter and refresh its TTL in one transaction. None on failure."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                if ttl_s:
                    pipe.expire(key, ttl_s)
                results = await pipe.execute()
            return int(results[0])
        except Exception as e:
            logger.error("Redis INCR failed", key=key[:50], error=str(e))
            return None

    async def set_if_unchanged(
        self,
        guard_key: str,
        expected: str | None,
        key: str,
        value: str,
        ttl_s: int | None = None,
    ) -> bool:
        """SET key only while guard_key still holds expected (WATCH/MULTI/EXEC)."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                await pipe.watch(guard_key)
                if await pipe.get(guard_key) != expected:
                    return False
                pipe.multi()
                if ttl_s:
                    pipe.setex(key, ttl_s, value)
                else:
                    pipe.set(key, value)
                await pipe.execute()
            return True
        except WatchError:
            logger.debug("Guard key changed during SET, skipped", key=key[:50])
            return False
        except Exception as e:
            logger.error("Redis guarded SET failed", key=key[:50], error=str(e))
            return False

    async def delete(self, *keys: str) -> int:
        """Delete keys - returns number removed, 0 on failure"""
        if not keys:
            return 0
        try:
            await self._ensure_initialized()
            return int(await self.client.delete(*keys))
        except Exception as e:
            logger.error("Redis DELETE failed", keys=[k[:50] for k in keys[:5]], error=str(e))
            return 0

    async def scan_prefix(self, prefix: str, count: int = 100) -> list[str]:
        """Collect keys starting with prefix using SCAN (never KEYS)."""
        try:
            await self._ensure_initialized()
            return [key async for key in self.client.scan_iter(match=f"{prefix}*", count=count)]
        except Exception as e:
            logger.error("Redis SCAN failed", prefix=prefix[:50], error=str(e))
            return []


# Global instance
fast_redis = FastRedisClient(settings.REDIS_URL)
