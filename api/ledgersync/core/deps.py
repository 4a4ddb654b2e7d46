import uuid

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.database import async_session, get_db
from ledgersync.core.lease import get_sync_lease
from ledgersync.core.security import decode_token
from ledgersync.models.user import User
from ledgersync.services.provider import PlaidProvider, ProviderNotConfiguredError
from ledgersync.services.sync import SyncDriver


def _token_from_request(request: Request) -> str | None:
    token = request.cookies.get("access_token")
    if token:
        return token
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:]
    return None


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    try:
        user_id = uuid.UUID(payload.get("sub", ""))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    result = await db.execute(
        select(User).where(User.id == user_id, User.is_active == True)  # noqa: E712
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_provider() -> PlaidProvider:
    try:
        return PlaidProvider.from_settings()
    except ProviderNotConfiguredError:
        raise HTTPException(status_code=503, detail="Plaid not configured")


def get_sync_driver(provider: PlaidProvider = Depends(get_provider)) -> SyncDriver:
    return SyncDriver(async_session, provider, get_sync_lease())
