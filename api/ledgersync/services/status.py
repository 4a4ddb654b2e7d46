"""Sync status reporter.

``sync_status``, ``last_sync_at`` and ``last_sync_error`` on Account are the only
sync-specific fields the alerting engine reads.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.models.account import Account

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


@dataclass
class SyncOutcome:
    ok: bool
    error: str | None = None

    @classmethod
    def success(cls) -> "SyncOutcome":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "SyncOutcome":
        return cls(ok=False, error=error)


async def report_outcome(
    db: AsyncSession,
    account_ids: list[uuid.UUID],
    outcome: SyncOutcome,
    at: datetime | None = None,
) -> None:
    if not account_ids:
        return

    if outcome.ok:
        values = {
            "sync_status": "ok",
            "last_sync_at": at or datetime.now(timezone.utc),
            "last_sync_error": None,
        }
    else:
        # last_sync_at stays stale so missed-sync alerts can fire
        values = {
            "sync_status": "error",
            "last_sync_error": (outcome.error or "Sync failed")[:MAX_ERROR_LENGTH],
        }

    await db.execute(
        update(Account)
        .where(Account.id.in_(account_ids))
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    logger.info(
        "Reported sync %s for %d accounts", "ok" if outcome.ok else "error", len(account_ids)
    )


async def set_account_status(
    db: AsyncSession,
    account_id: uuid.UUID,
    status: str,
    last_sync_at: datetime | None = None,
    error: str | None = None,
) -> Account | None:
    """Status update pushed by an external sync system."""
    account = await db.get(Account, account_id)
    if account is None:
        return None
    account.sync_status = status
    account.last_sync_at = last_sync_at or datetime.now(timezone.utc)
    account.last_sync_error = error[:MAX_ERROR_LENGTH] if error else None
    await db.flush()
    return account
