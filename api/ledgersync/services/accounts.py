"""Account linker: one internal Account per provider account, created on first sight."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.database import upsert_insert
from ledgersync.models.account import Account
from ledgersync.models.connection import AccountLink, Connection
from ledgersync.schemas.sync import AccountDescriptor
from ledgersync.services.cache import SyncJobCache

logger = logging.getLogger(__name__)


def map_account_type(provider_type: str, subtype: str | None = None) -> str:
    if provider_type == "depository":
        return "savings" if subtype == "savings" else "checking"
    if provider_type in ("credit", "loan", "investment"):
        return provider_type
    return "other"


def balance_fields(account_type: str, descriptor: AccountDescriptor) -> dict:
    """Balance columns for an account, honoring the credit invariant.

    Credit accounts carry a limit and derived available credit but no available
    balance; every other account type carries neither credit field.
    """
    current = descriptor.current_balance or 0
    if account_type == "credit":
        limit = descriptor.credit_limit
        return {
            "current_balance": current,
            "available_balance": None,
            "credit_limit": limit,
            "available_credit": limit - abs(current) if limit is not None else None,
        }
    return {
        "current_balance": current,
        "available_balance": descriptor.available_balance,
        "credit_limit": None,
        "available_credit": None,
    }


def _display_name(descriptor: AccountDescriptor) -> str:
    return descriptor.official_name or descriptor.name or "Account"


def _apply_descriptor(account: Account, connection: Connection, descriptor: AccountDescriptor) -> None:
    account.name = _display_name(descriptor)
    account.type = map_account_type(descriptor.type, descriptor.subtype)
    account.institution = connection.institution_name
    account.mask = descriptor.mask
    if descriptor.currency_code:
        account.currency_code = descriptor.currency_code
    for column, value in balance_fields(account.type, descriptor).items():
        setattr(account, column, value)


def _refresh_link(link: AccountLink, descriptor: AccountDescriptor) -> None:
    link.name = _display_name(descriptor)
    link.provider_type = descriptor.type
    link.provider_subtype = descriptor.subtype
    link.mask = descriptor.mask


async def _find_link(
    db: AsyncSession, connection_id: uuid.UUID, provider_account_id: str
) -> AccountLink | None:
    result = await db.execute(
        select(AccountLink).where(
            AccountLink.connection_id == connection_id,
            AccountLink.provider_account_id == provider_account_id,
        )
    )
    return result.scalar_one_or_none()


async def load_account_links(
    db: AsyncSession, connection_id: uuid.UUID, cache: SyncJobCache
) -> dict[str, uuid.UUID]:
    """Warm the job cache with every account already linked under the connection."""
    result = await db.execute(
        select(AccountLink.provider_account_id, AccountLink.account_id, Account.type)
        .join(Account, Account.id == AccountLink.account_id)
        .where(AccountLink.connection_id == connection_id)
    )
    for provider_account_id, account_id, account_type in result.all():
        cache.accounts[provider_account_id] = account_id
        cache.account_types[account_id] = account_type
    return cache.accounts


async def resolve_account(
    db: AsyncSession,
    connection: Connection,
    descriptor: AccountDescriptor,
    cache: SyncJobCache,
) -> uuid.UUID:
    """Return the internal account id for a provider account, creating it if needed."""
    link = await _find_link(db, connection.id, descriptor.provider_account_id)

    if link is None:
        account = Account(
            user_id=connection.user_id,
            sync_status="ok",
            last_sync_at=datetime.now(timezone.utc),
        )
        _apply_descriptor(account, connection, descriptor)
        db.add(account)
        await db.flush()

        stmt = upsert_insert(db, AccountLink.__table__).values(
            id=uuid.uuid4(),
            connection_id=connection.id,
            user_id=connection.user_id,
            provider_account_id=descriptor.provider_account_id,
            account_id=account.id,
            name=_display_name(descriptor),
            provider_type=descriptor.type,
            provider_subtype=descriptor.subtype,
            mask=descriptor.mask,
        ).on_conflict_do_nothing(index_elements=["connection_id", "provider_account_id"])
        await db.execute(stmt)

        link = await _find_link(db, connection.id, descriptor.provider_account_id)
        if link.account_id == account.id:
            logger.info(
                "Linked provider account %s to new account %s",
                descriptor.provider_account_id, account.id,
            )
            cache.accounts[descriptor.provider_account_id] = account.id
            cache.account_types[account.id] = account.type
            return account.id

        # Another job linked this provider account first; adopt its account
        logger.info(
            "Provider account %s linked concurrently, discarding duplicate account",
            descriptor.provider_account_id,
        )
        await db.delete(account)
        await db.flush()

    account = await db.get(Account, link.account_id)
    _apply_descriptor(account, connection, descriptor)
    _refresh_link(link, descriptor)
    await db.flush()

    cache.accounts[descriptor.provider_account_id] = account.id
    cache.account_types[account.id] = account.type
    return account.id


async def link_accounts(
    db: AsyncSession,
    connection: Connection,
    descriptors: list[AccountDescriptor],
    cache: SyncJobCache,
) -> list[uuid.UUID]:
    account_ids = []
    for descriptor in descriptors:
        account_ids.append(await resolve_account(db, connection, descriptor, cache))
    logger.info("Linked %d accounts for connection %s", len(account_ids), connection.id)
    return account_ids
