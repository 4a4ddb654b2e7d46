"""Incremental sync driver: idempotent, resumable, one job per connection at a time.

A job walks the provider's change feed page by page::

    idle -> fetching -> applying -> checkpointed -> (next page) ... -> idle
                 \\___________\\______________________________-> failed

Each page's ledger changes and its new cursor are committed in one database
transaction. A crash mid-page leaves the cursor one page behind, and re-applying
that page is a no-op because every write goes through the transaction mapping.
Provider failures never advance the cursor and never raise to the trigger; they are
recorded on the connection's accounts instead.
"""

import asyncio
import enum
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ledgersync.core.config import settings
from ledgersync.core.lease import SyncAlreadyRunningError, task_sync_lease
from ledgersync.models.connection import Connection
from ledgersync.schemas.sync import ProviderWebhook
from ledgersync.services.accounts import link_accounts, load_account_links
from ledgersync.services.balances import reconcile_balances
from ledgersync.services.cache import SyncJobCache
from ledgersync.services.categories import prime_categories
from ledgersync.services.connections import (
    get_access_token,
    get_connection,
    get_connection_by_item_id,
    list_user_connections,
    load_cursor,
    mark_connection_status,
    reset_cursor,
    save_cursor,
)
from ledgersync.services.provider import FeedProvider, PlaidProvider, ProviderAuthError, ProviderError
from ledgersync.services.status import SyncOutcome, report_outcome
from ledgersync.services.transactions import apply_diff
from ledgersync.worker import celery_app

logger = logging.getLogger(__name__)

# Transaction webhooks that mean "new data is waiting in the change feed"
SYNC_WEBHOOK_TYPE = "TRANSACTIONS"
SYNC_WEBHOOK_CODES = {"SYNC_UPDATES_AVAILABLE"}


class SyncState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    CHECKPOINTED = "checkpointed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LeaseLostError(Exception):
    pass


@dataclass
class SyncResult:
    connection_id: uuid.UUID
    state: SyncState = SyncState.IDLE
    pages: int = 0
    added: int = 0
    modified: int = 0
    removed: int = 0
    deferred: int = 0
    accounts_reconciled: int = 0
    error: str | None = None


class SyncDriver:
    def __init__(self, session_factory: async_sessionmaker, provider: FeedProvider, lease):
        self.session_factory = session_factory
        self.provider = provider
        self.lease = lease

    @staticmethod
    def _transition(result: SyncResult, state: SyncState) -> None:
        logger.debug("Connection %s: %s -> %s", result.connection_id, result.state.value, state.value)
        result.state = state

    async def run(self, connection_id: uuid.UUID, full_resync: bool = False) -> SyncResult:
        """Sync one connection.

        Raises ConnectionNotFoundError if the connection does not exist and
        SyncAlreadyRunningError if another job holds its lease. Every other failure
        is recorded and returned as a ``failed`` result.
        """
        async with self.session_factory() as db:
            await get_connection(db, connection_id)

        async with self.lease.hold(connection_id) as token:
            return await self._run_locked(connection_id, token, full_resync)

    async def run_or_skip(self, connection_id: uuid.UUID, full_resync: bool = False) -> SyncResult:
        try:
            return await self.run(connection_id, full_resync=full_resync)
        except SyncAlreadyRunningError:
            logger.info("Sync already running for connection %s, skipping", connection_id)
            return SyncResult(connection_id=connection_id, state=SyncState.SKIPPED)

    async def _run_locked(self, connection_id: uuid.UUID, token: str, full_resync: bool) -> SyncResult:
        result = SyncResult(connection_id=connection_id)
        cache = SyncJobCache()

        async with self.session_factory() as db:
            connection = await get_connection(db, connection_id)
            try:
                access_token = get_access_token(connection)
                await self._link_accounts(db, connection, access_token, cache)
                if full_resync:
                    await reset_cursor(db, connection.id)
                    await db.commit()
                await self._page_loop(db, connection, access_token, token, cache, result)
                await self._finish(db, connection, access_token, cache, result)
            except Exception as exc:
                await db.rollback()
                await self._fail(connection_id, exc, result)
        return result

    async def _link_accounts(
        self, db: AsyncSession, connection: Connection, access_token: str, cache: SyncJobCache
    ) -> None:
        await load_account_links(db, connection.id, cache)
        descriptors = await self.provider.get_accounts(access_token)
        await link_accounts(db, connection, descriptors, cache)
        await db.commit()

    async def _page_loop(
        self,
        db: AsyncSession,
        connection: Connection,
        access_token: str,
        lease_token: str,
        cache: SyncJobCache,
        result: SyncResult,
    ) -> None:
        state = await load_cursor(db, connection.id)
        cursor = state.cursor if state else None
        if cursor is None:
            logger.info("Connection %s has no cursor, starting full sync", connection.id)

        while True:
            if not await self.lease.refresh(connection.id, lease_token):
                raise LeaseLostError(f"Lease for connection {connection.id} expired mid-sync")

            self._transition(result, SyncState.FETCHING)
            page = await self.provider.sync_transactions(access_token, cursor)
            logger.info(
                "Connection %s page %d: %d added, %d modified, %d removed",
                connection.id, result.pages + 1, len(page.added), len(page.modified), len(page.removed),
            )

            self._transition(result, SyncState.APPLYING)
            # Categories are shared across the user's connections; committed ahead of the page, in key order
            await prime_categories(db, connection.user_id, page.added, cache)
            await db.commit()
            diff = await apply_diff(
                db, connection.user_id, connection, page.added, page.modified, page.removed, cache
            )
            await save_cursor(db, connection.id, page.next_cursor, page.has_more)
            await db.commit()

            self._transition(result, SyncState.CHECKPOINTED)
            result.pages += 1
            result.added += diff.added
            result.modified += diff.modified
            result.removed += diff.removed
            result.deferred += len(diff.deferred)
            cursor = page.next_cursor

            if not page.has_more:
                break

    async def _finish(
        self,
        db: AsyncSession,
        connection: Connection,
        access_token: str,
        cache: SyncJobCache,
        result: SyncResult,
    ) -> None:
        reconciled = await reconcile_balances(db, connection, self.provider, access_token, cache)
        result.accounts_reconciled = len(reconciled)
        await report_outcome(db, list(cache.accounts.values()), SyncOutcome.success())
        if connection.status != "active":
            await mark_connection_status(db, connection, "active")
        await db.commit()

        self._transition(result, SyncState.IDLE)
        logger.info(
            "Synced connection %s: %d pages, %d added, %d modified, %d removed, %d deferred",
            connection.id, result.pages, result.added, result.modified, result.removed, result.deferred,
        )

    async def _fail(self, connection_id: uuid.UUID, exc: Exception, result: SyncResult) -> None:
        if isinstance(exc, ProviderError):
            logger.warning("Sync failed for connection %s: %s", connection_id, exc)
        else:
            logger.exception("Unexpected error syncing connection %s", connection_id)
        self._transition(result, SyncState.FAILED)
        result.error = str(exc) or exc.__class__.__name__

        # Fresh session: the job's session may be unusable after the error
        try:
            async with self.session_factory() as db:
                connection = await get_connection(db, connection_id)
                cache = SyncJobCache()
                await load_account_links(db, connection_id, cache)
                await report_outcome(db, list(cache.accounts.values()), SyncOutcome.failure(result.error))
                if isinstance(exc, ProviderAuthError):
                    await mark_connection_status(db, connection, "error", exc.code)
                await db.commit()
        except Exception:
            logger.exception("Could not record sync failure for connection %s", connection_id)


# ─── Triggers ──────────────────────────────────────────────────────────────

async def sync_connection(
    driver: SyncDriver, connection_id: uuid.UUID, full_resync: bool = False
) -> SyncResult:
    return await driver.run(connection_id, full_resync=full_resync)


async def sync_user_connections(driver: SyncDriver, user_id: uuid.UUID) -> list[SyncResult]:
    """Manual "sync now": every connection of the user, concurrently."""
    async with driver.session_factory() as db:
        connections = await list_user_connections(db, user_id)
    logger.info("Syncing %d connections for user %s", len(connections), user_id)
    return list(await asyncio.gather(*(driver.run_or_skip(c.id) for c in connections)))


async def handle_webhook(db: AsyncSession, payload: ProviderWebhook) -> uuid.UUID | None:
    """Resolve a provider webhook to the connection it should sync, or None to ignore it."""
    if not payload.item_id:
        return None
    if payload.webhook_type != SYNC_WEBHOOK_TYPE or payload.webhook_code not in SYNC_WEBHOOK_CODES:
        logger.debug("Ignoring webhook %s/%s", payload.webhook_type, payload.webhook_code)
        return None
    connection = await get_connection_by_item_id(db, payload.item_id)
    if connection is None:
        logger.info("Ignoring webhook for unknown item %s", payload.item_id)
        return None
    return connection.id


# ─── Celery tasks ──────────────────────────────────────────────────────────

@asynccontextmanager
async def _task_driver() -> AsyncIterator[SyncDriver]:
    """Driver for one task run: engine and lease client both belong to this event loop."""
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    try:
        async with task_sync_lease() as lease:
            factory = async_sessionmaker(engine, expire_on_commit=False)
            yield SyncDriver(factory, PlaidProvider.from_settings(), lease)
    finally:
        await engine.dispose()


async def _sync_all() -> None:
    async with _task_driver() as driver:
        async with driver.session_factory() as db:
            connection_ids = (await db.execute(select(Connection.id))).scalars().all()
        results = await asyncio.gather(
            *(driver.run_or_skip(cid) for cid in connection_ids), return_exceptions=True
        )
    failed = 0
    for cid, result in zip(connection_ids, results):
        if isinstance(result, BaseException):
            logger.error("Scheduled sync for connection %s raised: %r", cid, result)
            failed += 1
        elif result.state == SyncState.FAILED:
            failed += 1
    logger.info("Scheduled sync finished: %d connections, %d failed", len(results), failed)


async def _sync_one(connection_id: uuid.UUID, full_resync: bool) -> SyncResult:
    async with _task_driver() as driver:
        return await driver.run_or_skip(connection_id, full_resync=full_resync)


@celery_app.task(name="ledgersync.services.sync.sync_all_connections")
def sync_all_connections():
    """Iterate all connections and sync each one."""
    logger.info("Starting scheduled transaction sync for all connections")
    asyncio.run(_sync_all())


@celery_app.task(name="ledgersync.services.sync.sync_connection_task")
def sync_connection_task(connection_id: str, full_resync: bool = False):
    """Sync a single connection. Queued by webhooks or the scheduler."""
    logger.info("Syncing connection %s", connection_id)
    result = asyncio.run(_sync_one(uuid.UUID(connection_id), full_resync))
    return {"state": result.state.value, "pages": result.pages, "error": result.error}
