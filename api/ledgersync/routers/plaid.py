import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.config import settings
from ledgersync.core.database import get_db
from ledgersync.core.deps import get_current_user, get_provider, get_sync_driver
from ledgersync.core.lease import SyncAlreadyRunningError
from ledgersync.models.user import User
from ledgersync.schemas.sync import (
    ConnectionResponse,
    LinkTokenResponse,
    ProviderWebhook,
    PublicTokenExchange,
    SyncResultResponse,
    WebhookAck,
)
from ledgersync.services.connections import (
    ConnectionNotFoundError,
    count_linked_accounts,
    get_connection,
    list_user_connections,
    load_cursor,
    store_connection,
)
from ledgersync.services.provider import PlaidProvider, ProviderError
from ledgersync.services.sync import (
    SyncDriver,
    SyncResult,
    handle_webhook,
    sync_connection,
    sync_connection_task,
    sync_user_connections,
)

logger = logging.getLogger(__name__)

# Backed by Redis so limits hold across API workers
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.redis_url)

router = APIRouter(prefix="/plaid", tags=["plaid"])


def _result_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        connection_id=result.connection_id,
        state=result.state.value,
        pages=result.pages,
        added=result.added,
        modified=result.modified,
        removed=result.removed,
        deferred=result.deferred,
        accounts_reconciled=result.accounts_reconciled,
        error=result.error,
    )


async def _connection_response(db: AsyncSession, connection) -> ConnectionResponse:
    cursor = await load_cursor(db, connection.id)
    return ConnectionResponse(
        id=connection.id,
        item_id=connection.item_id,
        institution_name=connection.institution_name,
        status=connection.status,
        error_code=connection.error_code,
        last_synced_at=cursor.last_synced_at if cursor else None,
        account_count=await count_linked_accounts(db, connection.id),
    )


# ─── Endpoints ─────────────────────────────────────────────────────────────

@router.post("/link-token", response_model=LinkTokenResponse)
async def create_link_token(
    user: User = Depends(get_current_user),
    provider: PlaidProvider = Depends(get_provider),
):
    try:
        link_token = await provider.create_link_token(str(user.id))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return LinkTokenResponse(link_token=link_token)


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    connections = await list_user_connections(db, user.id)
    return [await _connection_response(db, c) for c in connections]


@router.post("/exchange-token", response_model=ConnectionResponse)
async def exchange_public_token(
    payload: PublicTokenExchange,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: PlaidProvider = Depends(get_provider),
    driver: SyncDriver = Depends(get_sync_driver),
):
    try:
        access_token, item_id = await provider.exchange_public_token(payload.public_token)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

    try:
        connection = await store_connection(
            db,
            user_id=user.id,
            item_id=item_id,
            access_token=access_token,
            institution_id=payload.institution_id,
            institution_name=payload.institution_name,
        )
    except ValueError:
        raise HTTPException(status_code=409, detail="Institution already linked to another user")
    await db.commit()

    # Link accounts and pull the first pages right away; failures land on the accounts
    await driver.run_or_skip(connection.id)

    await db.refresh(connection)
    return await _connection_response(db, connection)


@router.post("/sync", response_model=list[SyncResultResponse])
@limiter.limit("10/minute")
async def sync_all(
    request: Request,
    user: User = Depends(get_current_user),
    driver: SyncDriver = Depends(get_sync_driver),
):
    results = await sync_user_connections(driver, user.id)
    return [_result_response(r) for r in results]


@router.post("/connections/{connection_id}/sync", response_model=SyncResultResponse)
async def sync_one(
    connection_id: uuid.UUID,
    full: bool = Query(default=False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    driver: SyncDriver = Depends(get_sync_driver),
):
    try:
        await get_connection(db, connection_id, user_id=user.id)
        result = await sync_connection(driver, connection_id, full_resync=full)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Institution not found")
    except SyncAlreadyRunningError:
        raise HTTPException(status_code=409, detail="Sync already in progress")
    return _result_response(result)


@router.post("/webhook", response_model=WebhookAck)
async def provider_webhook(
    payload: ProviderWebhook,
    db: AsyncSession = Depends(get_db),
):
    connection_id = await handle_webhook(db, payload)
    if connection_id is None:
        return WebhookAck(ok=True, queued=False)

    sync_connection_task.delay(str(connection_id))
    logger.info("Queued sync for connection %s from %s webhook", connection_id, payload.webhook_code)
    return WebhookAck(ok=True, queued=True)
