"""
Per-connection lease tests: the in-process registry and the Redis scripts (mocked).
"""
import uuid
from unittest.mock import AsyncMock

import pytest

from ledgersync.core.lease import InProcessSyncLease, RedisSyncLease, SyncAlreadyRunningError


class TestInProcessSyncLease:
    async def test_second_acquire_is_rejected(self):
        lease = InProcessSyncLease(ttl_seconds=60)
        connection_id = uuid.uuid4()

        token = await lease.acquire(connection_id)

        assert token is not None
        assert await lease.acquire(connection_id) is None
        assert await lease.acquire(uuid.uuid4()) is not None

    async def test_release_requires_holder_token(self):
        lease = InProcessSyncLease(ttl_seconds=60)
        connection_id = uuid.uuid4()
        token = await lease.acquire(connection_id)

        assert await lease.release(connection_id, "someone-else") is False
        assert await lease.release(connection_id, token) is True
        assert await lease.acquire(connection_id) is not None

    async def test_expired_lease_can_be_retaken(self):
        lease = InProcessSyncLease(ttl_seconds=0)
        connection_id = uuid.uuid4()
        stale = await lease.acquire(connection_id)

        fresh = await lease.acquire(connection_id)

        assert fresh is not None
        assert await lease.refresh(connection_id, stale) is False
        assert await lease.release(connection_id, stale) is False

    async def test_hold_raises_when_taken(self):
        lease = InProcessSyncLease(ttl_seconds=60)
        connection_id = uuid.uuid4()

        async with lease.hold(connection_id):
            with pytest.raises(SyncAlreadyRunningError) as excinfo:
                async with lease.hold(connection_id):
                    pass
            assert excinfo.value.connection_id == connection_id

        # released on exit
        assert await lease.acquire(connection_id) is not None

    async def test_hold_releases_on_error(self):
        lease = InProcessSyncLease(ttl_seconds=60)
        connection_id = uuid.uuid4()

        with pytest.raises(RuntimeError):
            async with lease.hold(connection_id):
                raise RuntimeError("job crashed")

        assert await lease.acquire(connection_id) is not None


class TestRedisSyncLease:
    async def test_acquire_uses_set_nx_with_ttl(self):
        redis = AsyncMock()
        redis.set.return_value = True
        lease = RedisSyncLease(redis, ttl_seconds=900)
        connection_id = uuid.uuid4()

        token = await lease.acquire(connection_id)

        assert token is not None
        redis.set.assert_awaited_once_with(
            f"sync_lease:{connection_id}", token, nx=True, ex=900
        )

    async def test_acquire_rejected(self):
        redis = AsyncMock()
        redis.set.return_value = None
        lease = RedisSyncLease(redis, ttl_seconds=900)

        assert await lease.acquire(uuid.uuid4()) is None

    async def test_release_and_refresh_check_token(self):
        redis = AsyncMock()
        redis.eval.side_effect = [1, 0]
        lease = RedisSyncLease(redis, ttl_seconds=900)
        connection_id = uuid.uuid4()

        assert await lease.refresh(connection_id, "tok") is True
        assert await lease.release(connection_id, "tok") is False

        refresh_call, release_call = redis.eval.await_args_list
        assert refresh_call.args[1:] == (1, f"sync_lease:{connection_id}", "tok", 900)
        assert "expire" in refresh_call.args[0]
        assert release_call.args[1:] == (1, f"sync_lease:{connection_id}", "tok")
        assert "del" in release_call.args[0]
