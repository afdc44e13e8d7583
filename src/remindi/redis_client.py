"""
Centralized Redis Client Management.

The engine uses Redis only for job leases, so a single lazily created
client pointed at the lease database is enough.
"""

from typing import Any, TypeAlias

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from remindi.settings import settings

logger = structlog.get_logger(__name__)

RedisClientType: TypeAlias = redis.Redis


class RedisClientManager:
    """
    Lazily connected Redis client holder.

    ``set_client`` lets tests install a ``fakeredis`` instance.
    """

    def __init__(self, url: str | None = None) -> None:
        self._url = url
        self._client: RedisClientType | None = None

    @property
    def url(self) -> str:
        return self._url or settings.redis.lock_url

    def get_client(self) -> RedisClientType:
        """Return the client, creating it on first use."""
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                decode_responses=settings.redis.decode_responses,
                max_connections=settings.redis.max_connections,
            )
            logger.debug("redis.client_created", url=self.url)
        return self._client

    def set_client(self, client: RedisClientType | None) -> None:
        self._client = client

    async def close(self) -> None:
        """Close the client connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis.closed")

    async def health_check(self) -> dict[str, Any]:
        """
        Perform Redis health check.

        Returns:
            Health status dictionary
        """
        try:
            client = self.get_client()
            await client.ping()
            info = await client.info()
            return {
                "status": "healthy",
                "redis_version": info.get("redis_version"),
                "connected_clients": info.get("connected_clients"),
            }
        except RedisError as e:
            logger.error("redis.health_check_failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}


# Global Redis client manager instance
redis_manager = RedisClientManager()


async def get_redis_client() -> RedisClientType:
    """Redis client used for job leases."""
    return redis_manager.get_client()


def set_redis_client(client: RedisClientType | None) -> None:
    """Install (or clear) the process-wide client."""
    redis_manager.set_client(client)


async def shutdown_redis() -> None:
    """Close Redis connections on worker or CLI shutdown."""
    try:
        await redis_manager.close()
    except RedisError as e:
        logger.error("redis.shutdown_failed", error=str(e))


__all__ = [
    "RedisClientManager",
    "redis_manager",
    "get_redis_client",
    "set_redis_client",
    "shutdown_redis",
]
