"""Transaction mapper: applies one diff page to the ledger exactly once.

Every provider transaction id maps to at most one internal Transaction through
``TransactionMapping``. The mapping row is claimed with an ``INSERT .. ON CONFLICT
DO NOTHING`` so two writers can never both believe they created it. Each inserted
Transaction is also stamped with its provider id, which lets a later run re-derive a
mapping row that was lost after the Transaction insert instead of inserting a
duplicate.
"""

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.database import upsert_insert
from ledgersync.models.account import Transaction, TransactionMapping
from ledgersync.models.connection import AccountLink, Connection
from ledgersync.schemas.sync import ProviderTransaction
from ledgersync.services.cache import SyncJobCache
from ledgersync.services.categories import infer_kind, resolve_category

logger = logging.getLogger(__name__)


@dataclass
class DiffResult:
    added: int = 0
    modified: int = 0
    removed: int = 0
    repaired: int = 0
    deferred: list[str] = field(default_factory=list)


def _description(entry: ProviderTransaction) -> str:
    return (entry.name or entry.merchant_name or "Transaction")[:500]


def _apply_sync_fields(txn: Transaction, entry: ProviderTransaction) -> None:
    """Overwrite only the fields the provider owns; notes and manual categories survive."""
    txn.amount = entry.amount
    txn.date = entry.date
    txn.description = _description(entry)
    txn.merchant_name = entry.merchant_name
    txn.pending = entry.pending


class TransactionMapper:
    def __init__(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        connection: Connection,
        cache: SyncJobCache,
    ):
        self.db = db
        self.user_id = user_id
        self.connection = connection
        self.cache = cache
        self.mappings: dict[str, uuid.UUID] = {}

    async def _load_mappings(self, provider_ids: list[str]) -> None:
        if not provider_ids:
            return
        result = await self.db.execute(
            select(TransactionMapping.provider_transaction_id, TransactionMapping.transaction_id)
            .where(
                TransactionMapping.user_id == self.user_id,
                TransactionMapping.provider_transaction_id.in_(provider_ids),
            )
        )
        self.mappings.update({pid: tid for pid, tid in result.all()})

    async def _account_for(self, provider_account_id: str) -> uuid.UUID | None:
        account_id = self.cache.accounts.get(provider_account_id)
        if account_id is not None:
            return account_id
        result = await self.db.execute(
            select(AccountLink.account_id).where(
                AccountLink.connection_id == self.connection.id,
                AccountLink.provider_account_id == provider_account_id,
            )
        )
        account_id = result.scalar_one_or_none()
        if account_id is not None:
            self.cache.accounts[provider_account_id] = account_id
        return account_id

    async def _claim_mapping(self, entry: ProviderTransaction, transaction_id: uuid.UUID) -> uuid.UUID:
        """Insert the mapping if nobody holds it yet; return whichever transaction owns it."""
        stmt = upsert_insert(self.db, TransactionMapping.__table__).values(
            id=uuid.uuid4(),
            user_id=self.user_id,
            provider_transaction_id=entry.provider_transaction_id,
            provider_account_id=entry.provider_account_id,
            transaction_id=transaction_id,
        ).on_conflict_do_nothing(index_elements=["user_id", "provider_transaction_id"])
        await self.db.execute(stmt)

        result = await self.db.execute(
            select(TransactionMapping.transaction_id).where(
                TransactionMapping.user_id == self.user_id,
                TransactionMapping.provider_transaction_id == entry.provider_transaction_id,
            )
        )
        owner = result.scalar_one()
        self.mappings[entry.provider_transaction_id] = owner
        return owner

    async def _find_orphan(self, provider_transaction_id: str) -> Transaction | None:
        """A Transaction stamped with this provider id but with no mapping row."""
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.provider_transaction_id == provider_transaction_id,
                ~exists().where(TransactionMapping.transaction_id == Transaction.id),
            )
            .order_by(Transaction.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _repair_orphan(self, entry: ProviderTransaction) -> uuid.UUID | None:
        orphan = await self._find_orphan(entry.provider_transaction_id)
        if orphan is None:
            return None
        owner = await self._claim_mapping(entry, orphan.id)
        if owner != orphan.id:
            await self.db.delete(orphan)
            await self.db.flush()
        logger.info(
            "Re-derived mapping for provider transaction %s from transaction %s",
            entry.provider_transaction_id, owner,
        )
        return owner

    async def _drop_mapping(self, provider_transaction_id: str) -> None:
        self.mappings.pop(provider_transaction_id, None)
        result = await self.db.execute(
            select(TransactionMapping).where(
                TransactionMapping.user_id == self.user_id,
                TransactionMapping.provider_transaction_id == provider_transaction_id,
            )
        )
        mapping = result.scalar_one_or_none()
        if mapping is not None:
            await self.db.delete(mapping)
            await self.db.flush()

    async def _initial_category(self, entry: ProviderTransaction) -> uuid.UUID | None:
        return await resolve_category(
            self.db, self.user_id, entry.category_label, infer_kind(entry.amount), self.cache
        )

    async def upsert(self, entry: ProviderTransaction, result: DiffResult) -> bool:
        account_id = await self._account_for(entry.provider_account_id)
        if account_id is None:
            logger.warning(
                "Deferring provider transaction %s: account %s is not linked",
                entry.provider_transaction_id, entry.provider_account_id,
            )
            result.deferred.append(entry.provider_transaction_id)
            return False

        transaction_id = self.mappings.get(entry.provider_transaction_id)
        if transaction_id is None:
            transaction_id = await self._repair_orphan(entry)
            if transaction_id is not None:
                result.repaired += 1

        if transaction_id is not None:
            txn = await self.db.get(Transaction, transaction_id)
            if txn is not None:
                _apply_sync_fields(txn, entry)
                if txn.category_id is None and not txn.is_manual_category:
                    txn.category_id = await self._initial_category(entry)
                await self.db.flush()
                return True
            # Transaction was deleted outside the sync path; re-create it
            await self._drop_mapping(entry.provider_transaction_id)

        txn = Transaction(
            user_id=self.user_id,
            account_id=account_id,
            provider_transaction_id=entry.provider_transaction_id,
            category_id=await self._initial_category(entry),
        )
        _apply_sync_fields(txn, entry)
        self.db.add(txn)
        await self.db.flush()

        owner = await self._claim_mapping(entry, txn.id)
        if owner != txn.id:
            # Lost the race: keep the first writer's transaction, drop ours
            logger.info(
                "Provider transaction %s already mapped to %s, discarding duplicate",
                entry.provider_transaction_id, owner,
            )
            await self.db.delete(txn)
            await self.db.flush()
            existing = await self.db.get(Transaction, owner)
            _apply_sync_fields(existing, entry)
            await self.db.flush()
        return True

    async def remove(self, provider_transaction_id: str) -> bool:
        transaction_id = self.mappings.pop(provider_transaction_id, None)
        if transaction_id is None:
            orphan = await self._find_orphan(provider_transaction_id)
            if orphan is None:
                return False
            transaction_id = orphan.id

        await self._drop_mapping(provider_transaction_id)
        txn = await self.db.get(Transaction, transaction_id)
        if txn is not None:
            await self.db.delete(txn)
            await self.db.flush()
        return True

    async def apply(
        self,
        added: list[ProviderTransaction],
        modified: list[ProviderTransaction],
        removed: list[str],
    ) -> DiffResult:
        result = DiffResult()
        await self._load_mappings(
            [t.provider_transaction_id for t in added]
            + [t.provider_transaction_id for t in modified]
            + list(removed)
        )

        for entry in added:
            if await self.upsert(entry, result):
                result.added += 1
        for entry in modified:
            if await self.upsert(entry, result):
                result.modified += 1
        for provider_transaction_id in removed:
            if await self.remove(provider_transaction_id):
                result.removed += 1

        if result.deferred:
            logger.warning(
                "Deferred %d transactions for connection %s (unlinked accounts)",
                len(result.deferred), self.connection.id,
            )
        return result


async def apply_diff(
    db: AsyncSession,
    user_id: uuid.UUID,
    connection: Connection,
    added: list[ProviderTransaction],
    modified: list[ProviderTransaction],
    removed: list[str],
    cache: SyncJobCache | None = None,
) -> DiffResult:
    mapper = TransactionMapper(db, user_id, connection, cache or SyncJobCache())
    return await mapper.apply(added, modified, removed)
