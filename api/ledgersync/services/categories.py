"""Category resolver: provider labels to (name, kind) categories, created exactly once."""

import logging
import re
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.database import upsert_insert
from ledgersync.models.account import Category
from ledgersync.schemas.sync import ProviderTransaction
from ledgersync.services.cache import SyncJobCache

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[_\s]+")


def normalize_label(raw_label: str | None) -> tuple[str, str] | None:
    """Return ``(display_name, dedup_key)`` for a provider label, or None if unusable.

    ``FOOD_AND_DRINK`` and ``  food and drink `` both become
    ``("Food And Drink", "food and drink")``.
    """
    if not raw_label:
        return None
    words = [w for w in _SEPARATORS.split(raw_label.strip().lower()) if w]
    if not words:
        return None
    display = " ".join(w[0].upper() + w[1:] for w in words)
    return display[:100], display.lower()[:100]


def infer_kind(amount: int) -> str:
    # Inflows are negative
    return "income" if amount < 0 else "expense"


async def resolve_category(
    db: AsyncSession,
    user_id: uuid.UUID,
    raw_label: str | None,
    kind: str,
    cache: SyncJobCache | None = None,
) -> uuid.UUID | None:
    normalized = normalize_label(raw_label)
    if normalized is None:
        return None
    display, key = normalized

    if cache is not None and (key, kind) in cache.categories:
        return cache.categories[(key, kind)]

    stmt = upsert_insert(db, Category.__table__).values(
        id=uuid.uuid4(),
        user_id=user_id,
        name=display,
        name_key=key,
        kind=kind,
    ).on_conflict_do_nothing(index_elements=["user_id", "name_key", "kind"])
    await db.execute(stmt)

    result = await db.execute(
        select(Category.id).where(
            Category.user_id == user_id,
            Category.name_key == key,
            Category.kind == kind,
        )
    )
    category_id = result.scalar_one()

    if cache is not None:
        cache.categories[(key, kind)] = category_id
    logger.debug("Resolved category %r (%s) to %s", display, kind, category_id)
    return category_id


async def prime_categories(
    db: AsyncSession,
    user_id: uuid.UUID,
    entries: list[ProviderTransaction],
    cache: SyncJobCache,
) -> int:
    """Resolve the distinct categories a batch of new transactions will need.

    Categories are created in sorted ``(name_key, kind)`` order, so two jobs priming
    overlapping sets for one user always take the unique-key locks in the same order.
    Returns the number of distinct categories resolved.
    """
    labels: dict[tuple[str, str], str] = {}
    for entry in entries:
        normalized = normalize_label(entry.category_label)
        if normalized is not None:
            labels.setdefault((normalized[1], infer_kind(entry.amount)), entry.category_label)

    for key, kind in sorted(labels):
        await resolve_category(db, user_id, labels[(key, kind)], kind, cache)
    return len(labels)
