"""Balance reconciler: writes the provider's current balance snapshot to linked accounts."""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.models.account import Account
from ledgersync.models.connection import Connection
from ledgersync.schemas.sync import AccountDescriptor
from ledgersync.services.accounts import balance_fields, load_account_links
from ledgersync.services.cache import SyncJobCache
from ledgersync.services.provider import FeedProvider

logger = logging.getLogger(__name__)


async def apply_balances(
    db: AsyncSession,
    connection: Connection,
    descriptors: list[AccountDescriptor],
    cache: SyncJobCache,
) -> list[uuid.UUID]:
    """Write balances for every linked account in the snapshot. Returns updated account ids."""
    if not cache.accounts:
        await load_account_links(db, connection.id, cache)

    updated = []
    for descriptor in descriptors:
        account_id = cache.accounts.get(descriptor.provider_account_id)
        if account_id is None:
            logger.info(
                "Skipping balance for unlinked provider account %s", descriptor.provider_account_id
            )
            continue
        account_type = cache.account_types.get(account_id)
        if account_type is None:
            account_type = await db.scalar(select(Account.type).where(Account.id == account_id))
            if account_type is None:
                continue
            cache.account_types[account_id] = account_type
        await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(**balance_fields(account_type, descriptor))
        )
        updated.append(account_id)

    return updated


async def reconcile_balances(
    db: AsyncSession,
    connection: Connection,
    provider: FeedProvider,
    access_token: str,
    cache: SyncJobCache,
) -> list[uuid.UUID]:
    descriptors = await provider.get_balances(access_token)
    updated = await apply_balances(db, connection, descriptors, cache)
    logger.info("Reconciled balances for %d accounts on connection %s", len(updated), connection.id)
    return updated
