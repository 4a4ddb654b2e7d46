"""Connection store: provider logins and their change-feed cursors."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.database import upsert_insert
from ledgersync.core.security import decrypt_value, encrypt_value
from ledgersync.models.connection import AccountLink, Connection, SyncCursor

logger = logging.getLogger(__name__)


class ConnectionNotFoundError(Exception):
    def __init__(self, reference):
        super().__init__(f"Connection not found: {reference}")
        self.reference = reference


async def store_connection(
    db: AsyncSession,
    user_id: uuid.UUID,
    item_id: str,
    access_token: str,
    institution_id: str | None = None,
    institution_name: str | None = None,
) -> Connection:
    """Create the connection, or refresh its credential after re-authentication."""
    table = Connection.__table__
    stmt = upsert_insert(db, table).values(
        id=uuid.uuid4(),
        user_id=user_id,
        item_id=item_id,
        encrypted_access_token=encrypt_value(access_token),
        institution_id=institution_id,
        institution_name=institution_name,
        status="active",
        error_code=None,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["item_id"],
        set_={
            "encrypted_access_token": stmt.excluded.encrypted_access_token,
            "institution_id": func.coalesce(stmt.excluded.institution_id, table.c.institution_id),
            "institution_name": func.coalesce(stmt.excluded.institution_name, table.c.institution_name),
            "status": "active",
            "error_code": None,
            "updated_at": func.now(),
        },
    )
    await db.execute(stmt)

    result = await db.execute(
        select(Connection)
        .where(Connection.item_id == item_id)
        .execution_options(populate_existing=True)
    )
    connection = result.scalar_one()
    if connection.user_id != user_id:
        raise ValueError(f"Item {item_id} already belongs to another user")
    logger.info("Stored connection %s for item %s", connection.id, item_id)
    return connection


async def get_connection(
    db: AsyncSession, connection_id: uuid.UUID, user_id: uuid.UUID | None = None
) -> Connection:
    query = select(Connection).where(Connection.id == connection_id)
    if user_id is not None:
        query = query.where(Connection.user_id == user_id)
    connection = (await db.execute(query)).scalar_one_or_none()
    if connection is None:
        raise ConnectionNotFoundError(connection_id)
    return connection


async def get_connection_by_item_id(db: AsyncSession, item_id: str) -> Connection | None:
    result = await db.execute(select(Connection).where(Connection.item_id == item_id))
    return result.scalar_one_or_none()


async def list_user_connections(db: AsyncSession, user_id: uuid.UUID) -> list[Connection]:
    result = await db.execute(
        select(Connection)
        .where(Connection.user_id == user_id)
        .order_by(Connection.created_at)
    )
    return list(result.scalars().all())


async def count_linked_accounts(db: AsyncSession, connection_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(AccountLink.id)).where(AccountLink.connection_id == connection_id)
    )
    return result.scalar_one()


def get_access_token(connection: Connection) -> str:
    return decrypt_value(connection.encrypted_access_token)


async def mark_connection_status(
    db: AsyncSession, connection: Connection, status: str, error_code: str | None = None
) -> None:
    connection.status = status
    connection.error_code = error_code[:100] if error_code else None
    await db.flush()


# ─── Cursor state ──────────────────────────────────────────────────────────

async def load_cursor(db: AsyncSession, connection_id: uuid.UUID) -> SyncCursor | None:
    result = await db.execute(
        select(SyncCursor)
        .where(SyncCursor.connection_id == connection_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def save_cursor(
    db: AsyncSession, connection_id: uuid.UUID, cursor: str, has_more: bool
) -> None:
    """Checkpoint the feed position. Runs inside the page's transaction."""
    now = datetime.now(timezone.utc)
    stmt = upsert_insert(db, SyncCursor.__table__).values(
        connection_id=connection_id,
        cursor=cursor,
        has_more=has_more,
        last_synced_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["connection_id"],
        set_={
            "cursor": stmt.excluded.cursor,
            "has_more": stmt.excluded.has_more,
            "last_synced_at": stmt.excluded.last_synced_at,
            "updated_at": func.now(),
        },
    )
    await db.execute(stmt)


async def reset_cursor(db: AsyncSession, connection_id: uuid.UUID) -> None:
    """Explicit full re-sync: the next fetch starts from the beginning of the feed."""
    state = await load_cursor(db, connection_id)
    if state is not None:
        state.cursor = None
        state.has_more = False
        await db.flush()
    logger.info("Reset sync cursor for connection %s", connection_id)
