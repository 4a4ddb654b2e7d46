"""
Celery task bodies. Each call runs its own ``asyncio.run``, as in a worker process,
so nothing a task touches may outlive its event loop.
"""
import asyncio
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import ledgersync.core.lease as lease_module
import ledgersync.services.sync as sync_module
from fakes import FakeProvider, make_account, make_page, make_txn
from ledgersync.core.config import settings
from ledgersync.core.database import Base
from ledgersync.models import Transaction, User
from ledgersync.services.connections import store_connection


class _LoopBoundRedis:
    """In-memory Redis that, like redis.asyncio, only works on the loop that first used it."""

    def __init__(self, failing_keys=()):
        self.loop = None
        self.closed = False
        self.values = {}
        self.failing_keys = failing_keys

    def _check_loop(self):
        loop = asyncio.get_running_loop()
        if self.loop is None:
            self.loop = loop
        if self.closed or self.loop is not loop:
            raise RuntimeError("Event loop is closed")

    async def set(self, key, value, nx=False, ex=None):
        self._check_loop()
        if key in self.failing_keys:
            raise ConnectionError("redis connection reset")
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def eval(self, script, numkeys, key, token, *args):
        self._check_loop()
        if self.values.get(key) != token:
            return 0
        if "del" in script:
            del self.values[key]
        return 1

    async def aclose(self):
        self.closed = True


@pytest.fixture
def ledger_url(tmp_path, monkeypatch):
    url = f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}"
    monkeypatch.setattr(settings, "database_url", url)
    monkeypatch.setattr(settings, "sync_lease_backend", "redis")
    return url


@pytest.fixture
def redis_clients(monkeypatch):
    clients = []
    failing_keys = set()

    def from_url(url, **kwargs):
        client = _LoopBoundRedis(failing_keys)
        clients.append(client)
        return client

    monkeypatch.setattr(lease_module.aioredis, "from_url", from_url)
    return SimpleNamespace(clients=clients, failing_keys=failing_keys)


def _use_provider(monkeypatch, provider):
    monkeypatch.setattr(sync_module.PlaidProvider, "from_settings", lambda: provider)


async def _seed(url, *items):
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as db:
        user = User(email="pat@example.com", full_name="Pat Example")
        db.add(user)
        await db.flush()
        ids = [(await store_connection(db, user.id, item, access)).id for item, access in items]
        await db.commit()
    await engine.dispose()
    return ids


async def _transactions(url):
    engine = create_async_engine(url)
    async with async_sessionmaker(engine)() as db:
        rows = (await db.execute(select(Transaction).order_by(Transaction.provider_transaction_id))).scalars().all()
        result = [(t.provider_transaction_id, t.amount) for t in rows]
    await engine.dispose()
    return result


class _PerTokenProvider:
    def __init__(self, feeds):
        self.feeds = feeds

    async def get_accounts(self, access_token):
        return await self.feeds[access_token].get_accounts(access_token)

    async def sync_transactions(self, access_token, cursor):
        return await self.feeds[access_token].sync_transactions(access_token, cursor)

    async def get_balances(self, access_token):
        return await self.feeds[access_token].get_balances(access_token)


# ── sync_connection_task ─────────────────────────────────────────────────────

class TestSyncConnectionTask:
    def test_consecutive_runs_in_one_process(self, ledger_url, redis_clients, monkeypatch):
        [connection_id] = asyncio.run(_seed(ledger_url, ("item-1", "access-1")))
        _use_provider(monkeypatch, FakeProvider(
            accounts=[make_account()],
            pages={
                None: make_page("c1", added=[make_txn("t1", 1200)]),
                "c1": make_page("c2", modified=[make_txn("t1", 1500)]),
            },
        ))

        first = sync_module.sync_connection_task(str(connection_id))
        second = sync_module.sync_connection_task(str(connection_id))

        assert first == {"state": "idle", "pages": 1, "error": None}
        assert second == {"state": "idle", "pages": 1, "error": None}
        assert len(redis_clients.clients) == 2
        assert all(c.closed for c in redis_clients.clients)
        assert redis_clients.clients[0].loop is not redis_clients.clients[1].loop
        assert asyncio.run(_transactions(ledger_url)) == [("t1", 1500)]

    def test_local_backend_needs_no_redis(self, ledger_url, redis_clients, monkeypatch):
        monkeypatch.setattr(settings, "sync_lease_backend", "local")
        [connection_id] = asyncio.run(_seed(ledger_url, ("item-1", "access-1")))
        _use_provider(monkeypatch, FakeProvider(accounts=[make_account()], pages={None: make_page("c1")}))

        assert sync_module.sync_connection_task(str(connection_id))["state"] == "idle"
        assert redis_clients.clients == []


# ── sync_all_connections ─────────────────────────────────────────────────────

class TestSyncAllConnections:
    def test_lease_error_does_not_stop_other_connections(self, ledger_url, redis_clients, monkeypatch):
        broken, healthy = asyncio.run(_seed(ledger_url, ("item-a", "access-a"), ("item-b", "access-b")))
        redis_clients.failing_keys.add(f"sync_lease:{broken}")
        _use_provider(monkeypatch, _PerTokenProvider({
            "access-a": FakeProvider(
                accounts=[make_account("acc-a")],
                pages={None: make_page("a1", added=[make_txn("ta", account="acc-a")])},
            ),
            "access-b": FakeProvider(
                accounts=[make_account("acc-b")],
                pages={None: make_page("b1", added=[make_txn("tb", 700, account="acc-b")])},
            ),
        }))

        sync_module.sync_all_connections()

        assert asyncio.run(_transactions(ledger_url)) == [("tb", 700)]
        assert [c.closed for c in redis_clients.clients] == [True]

        # next beat runs in a fresh loop with a fresh client
        redis_clients.failing_keys.clear()
        sync_module.sync_all_connections()

        assert [t for t, _ in asyncio.run(_transactions(ledger_url))] == ["ta", "tb"]
        assert len(redis_clients.clients) == 2
