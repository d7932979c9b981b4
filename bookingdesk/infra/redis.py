"""
Redis Connection Management

Redis connection with retries and graceful degradation, plus scan leases
that keep more than one process from running the same background scan in
the same period. Leases fail open: correctness of the scans never depends
on Redis, only duplicate work does.
"""

import logging
from typing import Optional
from uuid import uuid4

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from bookingdesk.config import settings

logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "bookingdesk:v1:"

# Compare-and-delete so a lease is only released by its holder
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisClient:
    """
    Manages Redis connection as a singleton.

    Features:
    - Connection pooling
    - Automatic retries
    - Timeouts
    - Graceful failure handling
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            retry = Retry(ExponentialBackoff(), retries=3)

            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=retry,
            )

            await cls._client.ping()
            cls._connected = True
            logger.info("Redis connection established successfully")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None
        except Exception as e:
            logger.error(f"Unexpected error connecting to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False

    @classmethod
    def is_connected(cls) -> bool:
        """Check if Redis is connected."""
        return cls._connected


async def get_redis() -> Optional[Redis]:
    """
    Provide the shared Redis client.

    Returns None if Redis is unavailable.
    """
    return await RedisClient.get_client()


class ScanLeaseStore:
    """
    Redis-based leases for background scans.

    Key: bookingdesk:v1:lease:{scan_name}

    IMPORTANT: Fails OPEN - if Redis is unavailable, the lease is granted.
    Every scan is idempotent, so a Redis outage only risks duplicate work.
    """

    LEASE_PREFIX = f"{APP_PREFIX}lease:"

    def __init__(self, redis_client: Optional[Redis], ttl_seconds: Optional[int] = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.scan_lease_ttl_seconds

    def _key(self, name: str) -> str:
        """Generate lease key with namespace."""
        return f"{self.LEASE_PREFIX}{name}"

    async def acquire(self, name: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Try to take the lease for a scan.

        Args:
            name: Scan name
            ttl_seconds: Lease lifetime (defaults to scan_lease_ttl_seconds)

        Returns:
            Lease token if granted (including fail-open), None if another
            process holds it
        """
        token = uuid4().hex

        if self.redis is None:
            logger.warning(f"Redis unavailable - scan lease bypassed for {name}")
            return token

        try:
            granted = await self.redis.set(
                self._key(name),
                token,
                nx=True,
                px=(ttl_seconds or self.ttl_seconds) * 1000,
            )
            return token if granted else None
        except RedisError as e:
            logger.error(f"Scan lease check failed for {name}: {e} - running anyway")
            return token

    async def release(self, name: str, token: str) -> bool:
        """
        Release a lease if still held by this token.

        Returns:
            True if released
        """
        if self.redis is None:
            return False

        try:
            released = await self.redis.eval(_RELEASE_SCRIPT, 1, self._key(name), token)
            return bool(released)
        except RedisError as e:
            logger.error(f"Failed to release scan lease {name}: {e}")
            return False


async def get_scan_lease_store() -> ScanLeaseStore:
    """
    Get ScanLeaseStore instance.

    Returns ScanLeaseStore even if Redis unavailable (fails open).
    """
    client = await get_redis()
    return ScanLeaseStore(client)


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return False
