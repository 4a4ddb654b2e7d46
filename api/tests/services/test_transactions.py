"""
Transaction mapper tests: exactly-once mapping, orphan repair, and which fields the
sync path is allowed to overwrite.
"""
from datetime import date

import pytest_asyncio
from sqlalchemy import func, select

from fakes import make_account, make_txn
from ledgersync.models import Category, Transaction, TransactionMapping
from ledgersync.services.accounts import link_accounts
from ledgersync.services.cache import SyncJobCache
from ledgersync.services.transactions import DiffResult, TransactionMapper, apply_diff


@pytest_asyncio.fixture
async def account_id(session_factory, connection):
    async with session_factory() as db:
        [account_id] = await link_accounts(db, connection, [make_account()], SyncJobCache())
        await db.commit()
    return account_id


async def _apply(session_factory, connection, added=(), modified=(), removed=()):
    async with session_factory() as db:
        result = await apply_diff(
            db, connection.user_id, connection, list(added), list(modified), list(removed)
        )
        await db.commit()
    return result


async def _only_transaction(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(Transaction))).scalar_one()


async def _mapping_count(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(func.count(TransactionMapping.id)))).scalar_one()


# ── exactly-once ─────────────────────────────────────────────────────────────

class TestExactlyOnce:
    async def test_replaying_a_page_is_a_no_op(self, session_factory, connection, account_id):
        page = [make_txn("t1", 1200), make_txn("t2", 800)]
        await _apply(session_factory, connection, added=page)
        await _apply(session_factory, connection, added=page)

        async with session_factory() as db:
            count = (await db.execute(select(func.count(Transaction.id)))).scalar_one()
        assert count == 2
        assert await _mapping_count(session_factory) == 2

    async def test_inserted_transaction_carries_provider_fields(self, session_factory, connection, account_id):
        entry = make_txn(
            "t1", 4599, name="UBER *TRIP", merchant_name="Uber", pending=True, date=date(2026, 9, 30)
        )
        await _apply(session_factory, connection, added=[entry])

        txn = await _only_transaction(session_factory)
        assert txn.account_id == account_id
        assert txn.user_id == connection.user_id
        assert txn.amount == 4599
        assert txn.date == date(2026, 9, 30)
        assert txn.description == "UBER *TRIP"
        assert txn.merchant_name == "Uber"
        assert txn.pending is True
        assert txn.is_manual_category is False

    async def test_concurrent_writer_keeps_first_transaction(self, session_factory, connection, account_id):
        await _apply(session_factory, connection, added=[make_txn("t1", 1200)])
        winner = await _only_transaction(session_factory)

        # A second job that never saw the mapping inserts its own row, then loses the claim
        async with session_factory() as db:
            mapper = TransactionMapper(db, connection.user_id, connection, SyncJobCache())
            assert await mapper.upsert(make_txn("t1", 999), DiffResult())
            await db.commit()

        txn = await _only_transaction(session_factory)
        assert txn.id == winner.id
        assert txn.amount == 999
        assert await _mapping_count(session_factory) == 1

    async def test_orphan_transaction_is_reused(self, session_factory, connection, account_id):
        # Transaction row committed but its mapping row lost
        async with session_factory() as db:
            orphan = Transaction(
                user_id=connection.user_id,
                account_id=account_id,
                amount=1200,
                date=date(2026, 10, 1),
                description="Purchase t1",
                provider_transaction_id="t1",
            )
            db.add(orphan)
            await db.commit()

        result = await _apply(session_factory, connection, added=[make_txn("t1", 1300)])

        assert result.repaired == 1
        txn = await _only_transaction(session_factory)
        assert txn.id == orphan.id
        assert txn.amount == 1300
        async with session_factory() as db:
            mapping = (await db.execute(select(TransactionMapping))).scalar_one()
        assert mapping.transaction_id == orphan.id
        assert mapping.provider_account_id == "acc-checking"


# ── removal ──────────────────────────────────────────────────────────────────

class TestRemove:
    async def test_removes_transaction_and_mapping(self, session_factory, connection, account_id):
        await _apply(session_factory, connection, added=[make_txn("t1"), make_txn("t2")])

        result = await _apply(session_factory, connection, removed=["t1"])

        assert result.removed == 1
        txn = await _only_transaction(session_factory)
        assert txn.provider_transaction_id == "t2"
        assert await _mapping_count(session_factory) == 1

    async def test_unknown_id_is_a_no_op(self, session_factory, connection, account_id):
        await _apply(session_factory, connection, added=[make_txn("t1")])

        result = await _apply(session_factory, connection, removed=["never-seen"])

        assert result.removed == 0
        assert (await _only_transaction(session_factory)).provider_transaction_id == "t1"

    async def test_added_and_removed_in_one_page(self, session_factory, connection, account_id):
        result = await _apply(session_factory, connection, added=[make_txn("t1")], removed=["t1"])

        assert result.added == 1
        assert result.removed == 1
        async with session_factory() as db:
            assert (await db.execute(select(Transaction))).first() is None
        assert await _mapping_count(session_factory) == 0


# ── user-owned fields ────────────────────────────────────────────────────────

class TestUserEdits:
    async def test_manual_category_and_notes_survive_modify(self, session_factory, connection, account_id):
        await _apply(session_factory, connection, added=[make_txn("t1", 1200)])
        async with session_factory() as db:
            groceries = Category(
                user_id=connection.user_id, name="Groceries", name_key="groceries", kind="expense"
            )
            db.add(groceries)
            await db.flush()
            txn = (await db.execute(select(Transaction))).scalar_one()
            txn.category_id = groceries.id
            txn.is_manual_category = True
            txn.notes = "split with roommate"
            await db.commit()

        await _apply(
            session_factory, connection,
            modified=[make_txn("t1", 1500, category_label="GENERAL_MERCHANDISE")],
        )

        txn = await _only_transaction(session_factory)
        assert txn.amount == 1500
        assert txn.category_id == groceries.id
        assert txn.is_manual_category is True
        assert txn.notes == "split with roommate"

    async def test_missing_category_filled_on_modify(self, session_factory, connection, account_id):
        await _apply(session_factory, connection, added=[make_txn("t1", category_label=None)])
        assert (await _only_transaction(session_factory)).category_id is None

        await _apply(session_factory, connection, modified=[make_txn("t1", category_label="TRAVEL")])

        txn = await _only_transaction(session_factory)
        async with session_factory() as db:
            category = await db.get(Category, txn.category_id)
        assert category.name == "Travel"
        assert category.kind == "expense"

    async def test_sign_change_does_not_rekind_category(self, session_factory, connection, account_id):
        await _apply(session_factory, connection, added=[make_txn("t1", 2500, category_label="TRANSFER_IN")])
        first = await _only_transaction(session_factory)

        await _apply(session_factory, connection, modified=[make_txn("t1", -2500, category_label="TRANSFER_IN")])

        txn = await _only_transaction(session_factory)
        assert txn.amount == -2500
        assert txn.category_id == first.category_id
        async with session_factory() as db:
            kinds = (await db.execute(select(Category.kind))).scalars().all()
        assert kinds == ["expense"]

    async def test_unlinked_account_is_deferred(self, session_factory, connection, account_id):
        result = await _apply(session_factory, connection, added=[make_txn("t1", account="acc-elsewhere")])

        assert result.added == 0
        assert result.deferred == ["t1"]
        assert await _mapping_count(session_factory) == 0
