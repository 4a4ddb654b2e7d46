import hmac

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.config import settings
from ledgersync.core.database import get_db
from ledgersync.schemas.sync import SyncStatusUpdate
from ledgersync.services.status import set_account_status

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/sync-status")
async def sync_status_webhook(
    payload: SyncStatusUpdate,
    x_webhook_secret: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Let an external sync system push account health (status, last sync, error)."""
    if settings.webhook_secret:
        if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.webhook_secret):
            raise HTTPException(status_code=401, detail="Unauthorized")

    if payload.status not in ("ok", "error"):
        raise HTTPException(status_code=400, detail="status must be 'ok' or 'error'")

    account = await set_account_status(
        db,
        payload.account_id,
        payload.status,
        last_sync_at=payload.last_sync_at,
        error=payload.error,
    )
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return {"ok": True, "account_id": str(account.id)}
