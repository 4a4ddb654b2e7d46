"""
Unit tests for the category resolver.
"""
import asyncio

import pytest
from sqlalchemy import select

import ledgersync.services.categories as categories_module
from fakes import make_txn
from ledgersync.models import Category
from ledgersync.services.cache import SyncJobCache
from ledgersync.services.categories import infer_kind, normalize_label, resolve_category


# ── normalize_label ──────────────────────────────────────────────────────────

class TestNormalizeLabel:
    def test_plaid_primary(self):
        assert normalize_label("FOOD_AND_DRINK") == ("Food And Drink", "food and drink")

    def test_legacy_label(self):
        assert normalize_label("Travel") == ("Travel", "travel")

    def test_whitespace_collapsed(self):
        assert normalize_label("  food   and\tdrink ") == ("Food And Drink", "food and drink")

    @pytest.mark.parametrize("label", [None, "", "   ", "___"])
    def test_unusable_label(self, label):
        assert normalize_label(label) is None


class TestInferKind:
    def test_inflow_is_income(self):
        assert infer_kind(-2500) == "income"

    def test_outflow_is_expense(self):
        assert infer_kind(2500) == "expense"

    def test_zero_is_expense(self):
        assert infer_kind(0) == "expense"


# ── resolve_category ─────────────────────────────────────────────────────────

class TestResolveCategory:
    async def test_creates_once_case_insensitive(self, db, user):
        first = await resolve_category(db, user.id, "FOOD_AND_DRINK", "expense")
        second = await resolve_category(db, user.id, "food and drink", "expense")
        await db.commit()

        assert first == second
        categories = (await db.execute(select(Category))).scalars().all()
        assert [(c.name, c.name_key, c.kind) for c in categories] == [
            ("Food And Drink", "food and drink", "expense")
        ]

    async def test_kind_is_part_of_identity(self, db, user):
        expense = await resolve_category(db, user.id, "TRANSFER", "expense")
        income = await resolve_category(db, user.id, "TRANSFER", "income")

        assert expense != income

    async def test_empty_label_has_no_category(self, db, user):
        assert await resolve_category(db, user.id, "  ", "expense") is None
        assert (await db.execute(select(Category))).first() is None

    async def test_cache_short_circuits(self, db, user):
        cache = SyncJobCache()
        category_id = await resolve_category(db, user.id, "TRAVEL", "expense", cache)

        assert cache.categories[("travel", "expense")] == category_id
        assert await resolve_category(db, user.id, "travel", "expense", cache) == category_id

    async def test_concurrent_resolution_creates_one_row(self, session_factory, user):
        async def resolve():
            async with session_factory() as session:
                category_id = await resolve_category(session, user.id, "GENERAL_MERCHANDISE", "expense")
                await session.commit()
                return category_id

        ids = await asyncio.gather(*(resolve() for _ in range(100)))

        assert len(set(ids)) == 1
        async with session_factory() as session:
            rows = (await session.execute(select(Category.id))).scalars().all()
        assert rows == [ids[0]]


# ── prime_categories ─────────────────────────────────────────────────────────

class TestPrimeCategories:
    async def test_distinct_pairs_resolved_in_key_order(self, db, user, monkeypatch):
        resolved = []
        real_resolve = categories_module.resolve_category

        async def recording_resolve(session, user_id, raw_label, kind, cache=None):
            resolved.append((normalize_label(raw_label)[1], kind))
            return await real_resolve(session, user_id, raw_label, kind, cache)

        monkeypatch.setattr(categories_module, "resolve_category", recording_resolve)
        entries = [
            make_txn("t1", 1200, category_label="TRANSFER_IN"),
            make_txn("t2", 800, category_label="FOOD_AND_DRINK"),
            make_txn("t3", 450, category_label="food and drink"),
            make_txn("t4", -90_000, category_label="INCOME"),
            make_txn("t5", 300, category_label=None),
        ]
        cache = SyncJobCache()

        assert await categories_module.prime_categories(db, user.id, entries, cache) == 3
        assert resolved == [
            ("food and drink", "expense"),
            ("income", "income"),
            ("transfer in", "expense"),
        ]
        assert set(cache.categories) == set(resolved)

    async def test_jobs_in_opposite_order_share_rows(self, session_factory, user):
        async def prime(labels):
            async with session_factory() as session:
                cache = SyncJobCache()
                entries = [make_txn(f"t{i}", 500, category_label=label) for i, label in enumerate(labels)]
                await categories_module.prime_categories(session, user.id, entries, cache)
                await session.commit()
                return cache.categories

        first, second = await asyncio.gather(
            prime(["FOOD_AND_DRINK", "TRANSFER_IN"]),
            prime(["TRANSFER_IN", "FOOD_AND_DRINK"]),
        )

        assert first == second
        async with session_factory() as session:
            rows = (await session.execute(select(Category.name_key).order_by(Category.name_key))).scalars().all()
        assert rows == ["food and drink", "transfer in"]
