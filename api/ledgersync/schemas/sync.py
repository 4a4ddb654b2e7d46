import uuid
import datetime as dt

from pydantic import BaseModel, Field


# ─── Provider feed (normalized, amounts in cents) ──────────────────────────

class AccountDescriptor(BaseModel):
    provider_account_id: str
    name: str
    official_name: str | None = None
    type: str
    subtype: str | None = None
    mask: str | None = None
    current_balance: int | None = None
    available_balance: int | None = None
    credit_limit: int | None = None
    currency_code: str | None = None


class ProviderTransaction(BaseModel):
    provider_transaction_id: str
    provider_account_id: str
    amount: int  # positive = outflow, negative = inflow
    date: dt.date
    name: str | None = None
    merchant_name: str | None = None
    pending: bool = False
    category_label: str | None = None


class SyncPage(BaseModel):
    added: list[ProviderTransaction] = Field(default_factory=list)
    modified: list[ProviderTransaction] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    next_cursor: str
    has_more: bool = False


# ─── Triggers ──────────────────────────────────────────────────────────────

class LinkTokenResponse(BaseModel):
    link_token: str


class PublicTokenExchange(BaseModel):
    public_token: str
    institution_id: str | None = None
    institution_name: str | None = None


class ProviderWebhook(BaseModel):
    webhook_type: str | None = None
    webhook_code: str | None = None
    item_id: str | None = None

    model_config = {"extra": "ignore"}


class WebhookAck(BaseModel):
    ok: bool = True
    queued: bool = False


class SyncStatusUpdate(BaseModel):
    account_id: uuid.UUID
    status: str = "ok"
    last_sync_at: dt.datetime | None = None
    error: str | None = None


# ─── Responses ─────────────────────────────────────────────────────────────

class ConnectionResponse(BaseModel):
    id: uuid.UUID
    item_id: str
    institution_name: str | None
    status: str
    error_code: str | None
    last_synced_at: dt.datetime | None = None
    account_count: int = 0


class SyncResultResponse(BaseModel):
    connection_id: uuid.UUID
    state: str
    pages: int
    added: int
    modified: int
    removed: int
    deferred: int
    accounts_reconciled: int
    error: str | None = None
