"""
Redis-backed job leases.

A lease is ``SET lock:<name> <token> NX EX <ttl>``; release deletes the key
only if it still holds our token, so a lease that expired and was taken
over by another worker is never released by the previous holder.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from remindi.redis_client import get_redis_client

logger = structlog.get_logger(__name__)

LOCK_PREFIX = "lock:"

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def _lock_key(key: str) -> str:
    return f"{LOCK_PREFIX}{key}"


async def try_lock(key: str, timeout: int = 30) -> str | None:
    """
    Take the lease once, without waiting.

    Returns:
        The lease token, or None if someone else holds it
    """
    client = await get_redis_client()
    token = str(uuid.uuid4())
    acquired = await client.set(_lock_key(key), token, nx=True, ex=max(1, int(timeout)))
    if acquired:
        logger.debug("lock.acquired", key=key, ttl=timeout)
        return token
    return None


async def release_lock(key: str, token: str) -> bool:
    """Release the lease if ``token`` still owns it."""
    client = await get_redis_client()
    released = bool(await client.eval(RELEASE_SCRIPT, 1, _lock_key(key), token))
    if not released:
        logger.warning("lock.release_not_owner", key=key)
    return released


@asynccontextmanager
async def distributed_lock(
    key: str,
    timeout: float = 30,
    retry_delay: float = 0.1,
) -> AsyncIterator[str]:
    """
    Hold the lease for the duration of the block, waiting up to ``timeout``.

    Raises:
        TimeoutError: If the lease could not be taken in time
    """
    deadline = time.monotonic() + timeout
    token = await try_lock(key, timeout=int(timeout) or 1)
    while token is None:
        if time.monotonic() >= deadline:
            raise TimeoutError(f"Could not acquire lock {key} within {timeout}s")
        await asyncio.sleep(retry_delay)
        token = await try_lock(key, timeout=int(timeout) or 1)

    try:
        yield token
    finally:
        await release_lock(key, token)


class DistributedLock:
    """Object form of the lease, for holders that acquire and release separately."""

    def __init__(self, key: str, timeout: int = 30) -> None:
        self.key = key
        self.timeout = timeout
        self.lock_value: str | None = None

    async def acquire(self, blocking: bool = True, retry_delay: float = 0.1) -> bool:
        """Take the lease; with ``blocking=False`` make a single attempt."""
        if self.lock_value is not None:
            return False

        deadline = time.monotonic() + self.timeout
        while True:
            token = await try_lock(self.key, timeout=self.timeout)
            if token is not None:
                self.lock_value = token
                return True
            if not blocking or time.monotonic() >= deadline:
                return False
            await asyncio.sleep(retry_delay)

    async def release(self) -> bool:
        if self.lock_value is None:
            return False
        released = await release_lock(self.key, self.lock_value)
        self.lock_value = None
        return released

    async def __aenter__(self) -> "DistributedLock":
        if not await self.acquire():
            raise TimeoutError(f"Could not acquire lock {self.key} within {self.timeout}s")
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()


__all__ = [
    "LOCK_PREFIX",
    "RELEASE_SCRIPT",
    "try_lock",
    "release_lock",
    "distributed_lock",
    "DistributedLock",
]
