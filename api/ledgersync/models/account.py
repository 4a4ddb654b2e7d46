import datetime as dt
import uuid

from sqlalchemy import (
    BigInteger, Boolean, Date, DateTime, ForeignKey, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgersync.core.database import Base


class Account(Base):
    """A ledger account. Balances are integer minor currency units (cents)."""
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(50))  # checking | savings | credit | loan | investment | other
    institution: Mapped[str | None] = mapped_column(String(255))
    mask: Mapped[str | None] = mapped_column(String(10))  # last 4 digits
    current_balance: Mapped[int] = mapped_column(BigInteger, default=0)
    available_balance: Mapped[int | None] = mapped_column(BigInteger)
    credit_limit: Mapped[int | None] = mapped_column(BigInteger)
    available_credit: Mapped[int | None] = mapped_column(BigInteger)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD")

    # Sync health, read by the alerting engine
    sync_status: Mapped[str] = mapped_column(String(20), default="ok")  # ok | error
    last_sync_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_error: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    transactions: Mapped[list["Transaction"]] = relationship(back_populates="account")


class Category(Base):
    __tablename__ = "categories"
    __table_args__ = (
        UniqueConstraint("user_id", "name_key", "kind", name="uq_categories_user_name_kind"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(100))
    name_key: Mapped[str] = mapped_column(String(100))  # lowercased name, dedup key
    kind: Mapped[str] = mapped_column(String(10))  # income | expense
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Transaction(Base):
    """Ledger transaction. Positive amounts are outflows, negative are inflows."""
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), index=True
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    description: Mapped[str] = mapped_column(String(500))
    merchant_name: Mapped[str | None] = mapped_column(String(255))
    pending: Mapped[bool] = mapped_column(Boolean, default=False)

    # Categorization
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("categories.id")
    )
    is_manual_category: Mapped[bool] = mapped_column(Boolean, default=False)

    # Provider id stamped at insert; lets a lost mapping row be re-derived
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), index=True)

    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    account: Mapped["Account"] = relationship(back_populates="transactions")
    category: Mapped["Category | None"] = relationship()


class TransactionMapping(Base):
    """Provider transaction id → internal Transaction id. The idempotency ledger."""
    __tablename__ = "transaction_mappings"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_transaction_id", name="uq_transaction_mappings_provider_txn"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), index=True
    )
    provider_transaction_id: Mapped[str] = mapped_column(String(255))
    provider_account_id: Mapped[str] = mapped_column(String(255))
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), unique=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
