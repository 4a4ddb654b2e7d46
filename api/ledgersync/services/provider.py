"""Plaid client wrapper.

The Plaid SDK is blocking, so every call runs in a worker thread and is bounded by
``sync_page_timeout_seconds``. Responses are normalized into the schemas in
``ledgersync.schemas.sync`` with all money converted to integer cents. Provider
failures are classified into auth errors (need re-authentication, never retried)
and transient errors (safe to retry with the same cursor).
"""

import asyncio
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from urllib3.exceptions import HTTPError as TransportError

from ledgersync.core.config import settings
from ledgersync.schemas.sync import AccountDescriptor, ProviderTransaction, SyncPage

logger = logging.getLogger(__name__)

# Item states that only the user can fix by re-linking through Plaid Link
AUTH_ERROR_CODES = {
    "ACCESS_NOT_GRANTED",
    "INSUFFICIENT_CREDENTIALS",
    "INVALID_ACCESS_TOKEN",
    "INVALID_CREDENTIALS",
    "INVALID_MFA",
    "ITEM_LOCKED",
    "ITEM_LOGIN_REQUIRED",
    "ITEM_NOT_FOUND",
    "ITEM_NOT_SUPPORTED",
    "NO_ACCOUNTS",
    "USER_PERMISSION_REVOKED",
    "USER_SETUP_REQUIRED",
}


class ProviderError(Exception):
    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class ProviderAuthError(ProviderError):
    """Credential problem; requires out-of-band re-authentication."""


class ProviderTransientError(ProviderError):
    """Network, rate-limit or provider-side failure; retry on the next trigger."""


class ProviderNotConfiguredError(ProviderError):
    pass


class FeedProvider(Protocol):
    async def get_accounts(self, access_token: str) -> list[AccountDescriptor]: ...

    async def sync_transactions(self, access_token: str, cursor: str | None) -> SyncPage: ...

    async def get_balances(self, access_token: str) -> list[AccountDescriptor]: ...


def to_cents(value: float | int | None) -> int | None:
    if value is None:
        return None
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def category_label(txn: dict[str, Any]) -> str | None:
    """Prefer the personal-finance category, fall back to the legacy hierarchy."""
    pfc = txn.get("personal_finance_category") or {}
    if pfc.get("primary"):
        return pfc["primary"]
    legacy = txn.get("category") or []
    return legacy[0] if legacy else None


def parse_account(raw: dict[str, Any]) -> AccountDescriptor:
    balances = raw.get("balances") or {}
    return AccountDescriptor(
        provider_account_id=raw["account_id"],
        name=raw.get("name") or "Account",
        official_name=raw.get("official_name"),
        type=str(raw.get("type") or "other"),
        subtype=str(raw["subtype"]) if raw.get("subtype") else None,
        mask=raw.get("mask"),
        current_balance=to_cents(balances.get("current")),
        available_balance=to_cents(balances.get("available")),
        credit_limit=to_cents(balances.get("limit")),
        currency_code=balances.get("iso_currency_code"),
    )


def parse_transaction(raw: dict[str, Any]) -> ProviderTransaction:
    return ProviderTransaction(
        provider_transaction_id=raw["transaction_id"],
        provider_account_id=raw["account_id"],
        amount=to_cents(raw["amount"]),
        date=raw["date"],
        name=raw.get("name"),
        merchant_name=raw.get("merchant_name"),
        pending=bool(raw.get("pending")),
        category_label=category_label(raw),
    )


def parse_sync_page(raw: dict[str, Any]) -> SyncPage:
    return SyncPage(
        added=[parse_transaction(t) for t in raw.get("added") or []],
        modified=[parse_transaction(t) for t in raw.get("modified") or []],
        removed=[r["transaction_id"] for r in raw.get("removed") or []],
        next_cursor=raw["next_cursor"],
        has_more=bool(raw.get("has_more")),
    )


def classify_api_exception(exc: Exception) -> ProviderError:
    """Turn a ``plaid.ApiException`` into a ProviderAuthError or ProviderTransientError."""
    status = getattr(exc, "status", None)
    try:
        body = json.loads(getattr(exc, "body", None) or "{}")
    except (TypeError, ValueError):
        body = {}
    code = body.get("error_code")
    message = body.get("display_message") or body.get("error_message") or f"Plaid API error ({status})"

    if code in AUTH_ERROR_CODES:
        return ProviderAuthError(message, code=code)
    return ProviderTransientError(message, code=code or (str(status) if status else None))


class PlaidProvider:
    def __init__(self, client, page_size: int, timeout_seconds: float):
        self.client = client
        self.page_size = page_size
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls) -> "PlaidProvider":
        if not settings.plaid_client_id or not settings.plaid_secret:
            raise ProviderNotConfiguredError("Plaid not configured")

        import plaid
        from plaid.api import plaid_api

        configuration = plaid.Configuration(
            host=getattr(plaid.Environment, settings.plaid_env.capitalize()),
            api_key={
                "clientId": settings.plaid_client_id,
                "secret": settings.plaid_secret,
            },
        )
        return cls(
            plaid_api.PlaidApi(plaid.ApiClient(configuration)),
            page_size=settings.plaid_page_size,
            timeout_seconds=settings.sync_page_timeout_seconds,
        )

    async def _call(self, operation: str, fn, request) -> dict[str, Any]:
        import plaid

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(fn, request), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            raise ProviderTransientError(
                f"Plaid {operation} timed out after {self.timeout_seconds}s", code="TIMEOUT"
            )
        except plaid.ApiException as exc:
            error = classify_api_exception(exc)
            logger.warning("Plaid %s failed: %s (%s)", operation, error, error.code)
            raise error from exc
        except (TransportError, OSError) as exc:
            raise ProviderTransientError(f"Plaid {operation} network error: {exc}") from exc
        return response.to_dict()

    async def create_link_token(self, client_user_id: str) -> str:
        from plaid.model.country_code import CountryCode
        from plaid.model.link_token_create_request import LinkTokenCreateRequest
        from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
        from plaid.model.products import Products

        kwargs: dict[str, Any] = dict(
            user=LinkTokenCreateRequestUser(client_user_id=client_user_id),
            client_name="Ledger Sync",
            products=[Products("transactions")],
            country_codes=[CountryCode("US")],
            language="en",
        )
        if settings.plaid_webhook_url:
            kwargs["webhook"] = settings.plaid_webhook_url
        data = await self._call(
            "link_token_create", self.client.link_token_create, LinkTokenCreateRequest(**kwargs)
        )
        return data["link_token"]

    async def exchange_public_token(self, public_token: str) -> tuple[str, str]:
        """Returns ``(access_token, item_id)``."""
        from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest

        data = await self._call(
            "item_public_token_exchange",
            self.client.item_public_token_exchange,
            ItemPublicTokenExchangeRequest(public_token=public_token),
        )
        return data["access_token"], data["item_id"]

    async def get_accounts(self, access_token: str) -> list[AccountDescriptor]:
        from plaid.model.accounts_get_request import AccountsGetRequest

        data = await self._call(
            "accounts_get", self.client.accounts_get, AccountsGetRequest(access_token=access_token)
        )
        return [parse_account(a) for a in data.get("accounts") or []]

    async def sync_transactions(self, access_token: str, cursor: str | None) -> SyncPage:
        from plaid.model.transactions_sync_request import TransactionsSyncRequest

        if cursor:
            request = TransactionsSyncRequest(access_token=access_token, cursor=cursor, count=self.page_size)
        else:
            request = TransactionsSyncRequest(access_token=access_token, count=self.page_size)
        data = await self._call("transactions_sync", self.client.transactions_sync, request)
        return parse_sync_page(data)

    async def get_balances(self, access_token: str) -> list[AccountDescriptor]:
        from plaid.model.accounts_balance_get_request import AccountsBalanceGetRequest

        data = await self._call(
            "accounts_balance_get",
            self.client.accounts_balance_get,
            AccountsBalanceGetRequest(access_token=access_token),
        )
        return [parse_account(a) for a in data.get("accounts") or []]
