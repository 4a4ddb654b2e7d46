"""Per-connection sync leases.

Only one sync job may page through a connection's change feed at a time, since the
cursor checkpoint assumes a single writer. A lease is a token stored under the
connection's key with an expiry; release and refresh only succeed for the holder of
the token, so an expired-and-retaken lease is never freed by its previous owner.
"""

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from ledgersync.core.config import settings

logger = logging.getLogger(__name__)

_LEASE_PREFIX = "sync_lease:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_REFRESH_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""


class SyncAlreadyRunningError(Exception):
    """Another job currently holds the lease for this connection."""

    def __init__(self, connection_id: uuid.UUID):
        super().__init__(f"Sync already running for connection {connection_id}")
        self.connection_id = connection_id


class _SyncLease:
    ttl_seconds: int

    async def acquire(self, connection_id: uuid.UUID) -> str | None:
        raise NotImplementedError

    async def release(self, connection_id: uuid.UUID, token: str) -> bool:
        raise NotImplementedError

    async def refresh(self, connection_id: uuid.UUID, token: str) -> bool:
        raise NotImplementedError

    @asynccontextmanager
    async def hold(self, connection_id: uuid.UUID) -> AsyncIterator[str]:
        """Hold the lease for the duration of the block, or raise SyncAlreadyRunningError."""
        token = await self.acquire(connection_id)
        if token is None:
            raise SyncAlreadyRunningError(connection_id)
        try:
            yield token
        finally:
            if not await self.release(connection_id, token):
                logger.warning("Lease for connection %s expired before release", connection_id)


class RedisSyncLease(_SyncLease):
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(connection_id: uuid.UUID) -> str:
        return f"{_LEASE_PREFIX}{connection_id}"

    async def acquire(self, connection_id: uuid.UUID) -> str | None:
        token = uuid.uuid4().hex
        acquired = await self.redis.set(
            self._key(connection_id), token, nx=True, ex=self.ttl_seconds
        )
        return token if acquired else None

    async def release(self, connection_id: uuid.UUID, token: str) -> bool:
        return bool(await self.redis.eval(_RELEASE_SCRIPT, 1, self._key(connection_id), token))

    async def refresh(self, connection_id: uuid.UUID, token: str) -> bool:
        return bool(
            await self.redis.eval(
                _REFRESH_SCRIPT, 1, self._key(connection_id), token, self.ttl_seconds
            )
        )


class InProcessSyncLease(_SyncLease):
    """Lease registry for single-process deployments (and the test suite)."""

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds
        self._held: dict[uuid.UUID, tuple[str, float]] = {}

    def _live(self, connection_id: uuid.UUID) -> str | None:
        entry = self._held.get(connection_id)
        if entry and entry[1] > time.monotonic():
            return entry[0]
        return None

    async def acquire(self, connection_id: uuid.UUID) -> str | None:
        if self._live(connection_id) is not None:
            return None
        token = uuid.uuid4().hex
        self._held[connection_id] = (token, time.monotonic() + self.ttl_seconds)
        return token

    async def release(self, connection_id: uuid.UUID, token: str) -> bool:
        if self._live(connection_id) != token:
            return False
        del self._held[connection_id]
        return True

    async def refresh(self, connection_id: uuid.UUID, token: str) -> bool:
        if self._live(connection_id) != token:
            return False
        self._held[connection_id] = (token, time.monotonic() + self.ttl_seconds)
        return True


_local_lease: InProcessSyncLease | None = None


def get_sync_lease() -> _SyncLease:
    global _local_lease
    if settings.sync_lease_backend == "local":
        if _local_lease is None:
            _local_lease = InProcessSyncLease(settings.sync_lease_ttl_seconds)
        return _local_lease

    from ledgersync.core.redis import get_redis
    return RedisSyncLease(get_redis(), settings.sync_lease_ttl_seconds)


@asynccontextmanager
async def task_sync_lease() -> AsyncIterator[_SyncLease]:
    """Lease for one ``asyncio.run`` job, with a Redis client owned by that event loop.

    The shared client from ``get_redis`` pools connections bound to the loop that first
    used them, so a Celery task must not reuse it from a later loop.
    """
    if settings.sync_lease_backend == "local":
        yield get_sync_lease()
        return

    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        yield RedisSyncLease(client, settings.sync_lease_ttl_seconds)
    finally:
        await client.aclose()
