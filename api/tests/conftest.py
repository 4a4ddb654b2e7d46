import os

from cryptography.fernet import Fernet

# Settings are read at import time
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("API_SECRET_KEY", "test-secret-key-with-at-least-32-characters")
os.environ["SYNC_LEASE_BACKEND"] = "local"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from ledgersync.core.database import Base  # noqa: E402
from ledgersync.core.lease import InProcessSyncLease  # noqa: E402
from ledgersync.models import User  # noqa: E402
from ledgersync.services.connections import store_connection  # noqa: E402


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so independent sessions see each other's commits
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def lease():
    return InProcessSyncLease(ttl_seconds=60)


@pytest_asyncio.fixture
async def user(session_factory):
    async with session_factory() as session:
        user = User(email="pat@example.com", full_name="Pat Example")
        session.add(user)
        await session.commit()
    return user


@pytest_asyncio.fixture
async def connection(session_factory, user):
    async with session_factory() as session:
        connection = await store_connection(
            session,
            user_id=user.id,
            item_id="item-sandbox-1",
            access_token="access-sandbox-1",
            institution_id="ins_109508",
            institution_name="First Platypus Bank",
        )
        await session.commit()
    return connection
