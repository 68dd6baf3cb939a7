import datetime as dt
import uuid
from decimal import Decimal

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base

# Local-only terminal status: the record is no longer present remotely.
REMOVED = "REMOVED"

# JSONB on Postgres so line items can be compared in the upsert's WHERE clause
LineItems = JSON().with_variant(JSONB(), "postgresql")


class SyncedRecordMixin:
    """Columns every locally mirrored remote entity carries."""

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    remote_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    remote_updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    sync_version: Mapped[int] = mapped_column(Integer, default=1)  # 1 on insert, +1 per applied change
    last_synced_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class LedgerAccount(SyncedRecordMixin, Base):
    """A chart-of-accounts entry."""
    __tablename__ = "ledger_accounts"

    code: Mapped[str | None] = mapped_column(String(20))
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str | None] = mapped_column(String(40))       # REVENUE, EXPENSE, BANK, ...
    account_class: Mapped[str | None] = mapped_column(String(20))
    tax_type: Mapped[str | None] = mapped_column(String(40))
    description: Mapped[str | None] = mapped_column(Text)
    currency_code: Mapped[str | None] = mapped_column(String(3))


class BankAccount(SyncedRecordMixin, Base):
    """A bank account (the BANK-typed subset of the chart of accounts)."""
    __tablename__ = "bank_accounts"

    code: Mapped[str | None] = mapped_column(String(20))
    name: Mapped[str] = mapped_column(String(255))
    account_number: Mapped[str | None] = mapped_column(String(50))
    bank_account_type: Mapped[str | None] = mapped_column(String(20))
    currency_code: Mapped[str | None] = mapped_column(String(3))

    transactions: Mapped[list["BankTransaction"]] = relationship(back_populates="bank_account")


class BankTransaction(SyncedRecordMixin, Base):
    __tablename__ = "bank_transactions"

    bank_account_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.id"), index=True, nullable=True
    )
    bank_account_remote_id: Mapped[str | None] = mapped_column(String(64), index=True)
    type: Mapped[str | None] = mapped_column(String(20))       # RECEIVE, SPEND, ...
    date: Mapped[dt.date | None] = mapped_column(Date, index=True)
    reference: Mapped[str | None] = mapped_column(String(255))
    contact_name: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(String(500))
    currency_code: Mapped[str | None] = mapped_column(String(3))
    total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False)
    line_items: Mapped[list | None] = mapped_column(LineItems)

    bank_account: Mapped["BankAccount | None"] = relationship(back_populates="transactions")


class Invoice(SyncedRecordMixin, Base):
    """Sales invoices (ACCREC) and bills (ACCPAY) share one table."""
    __tablename__ = "invoices"

    invoice_number: Mapped[str | None] = mapped_column(String(100))
    type: Mapped[str | None] = mapped_column(String(10), index=True)
    contact_remote_id: Mapped[str | None] = mapped_column(String(64))
    contact_name: Mapped[str | None] = mapped_column(String(255))
    date: Mapped[dt.date | None] = mapped_column(Date, index=True)
    due_date: Mapped[dt.date | None] = mapped_column(Date)
    reference: Mapped[str | None] = mapped_column(String(255))
    currency_code: Mapped[str | None] = mapped_column(String(3))
    total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    amount_due: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    amount_paid: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    line_items: Mapped[list | None] = mapped_column(LineItems)
