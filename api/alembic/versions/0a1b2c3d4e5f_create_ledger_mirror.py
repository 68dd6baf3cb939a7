"""create_ledger_mirror

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "0a1b2c3d4e5f"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _synced_columns() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("remote_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("remote_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_version", sa.Integer, server_default="1", nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def _synced_indexes(table: str) -> None:
    op.create_index(f"ix_{table}_remote_id", table, ["remote_id"], unique=True)
    op.create_index(f"ix_{table}_status", table, ["status"])


def upgrade() -> None:
    # ── ledger_accounts ────────────────────────────────────────────────────────
    op.create_table(
        "ledger_accounts",
        *_synced_columns(),
        sa.Column("code", sa.String(20), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(40), nullable=True),
        sa.Column("account_class", sa.String(20), nullable=True),
        sa.Column("tax_type", sa.String(40), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("currency_code", sa.String(3), nullable=True),
    )
    _synced_indexes("ledger_accounts")

    # ── bank_accounts ──────────────────────────────────────────────────────────
    op.create_table(
        "bank_accounts",
        *_synced_columns(),
        sa.Column("code", sa.String(20), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("account_number", sa.String(50), nullable=True),
        sa.Column("bank_account_type", sa.String(20), nullable=True),
        sa.Column("currency_code", sa.String(3), nullable=True),
    )
    _synced_indexes("bank_accounts")

    # ── bank_transactions ──────────────────────────────────────────────────────
    op.create_table(
        "bank_transactions",
        *_synced_columns(),
        sa.Column(
            "bank_account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("bank_accounts.id"),
            nullable=True,
        ),
        sa.Column("bank_account_remote_id", sa.String(64), nullable=True),
        sa.Column("type", sa.String(20), nullable=True),
        sa.Column("date", sa.Date, nullable=True),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("contact_name", sa.String(255), nullable=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("currency_code", sa.String(3), nullable=True),
        sa.Column("total", sa.Numeric(14, 2), nullable=True),
        sa.Column("is_reconciled", sa.Boolean, server_default=sa.text("false"), nullable=False),
        sa.Column("line_items", JSONB, nullable=True),
    )
    _synced_indexes("bank_transactions")
    op.create_index("ix_bank_transactions_bank_account_id", "bank_transactions", ["bank_account_id"])
    op.create_index(
        "ix_bank_transactions_bank_account_remote_id", "bank_transactions", ["bank_account_remote_id"]
    )
    op.create_index("ix_bank_transactions_date", "bank_transactions", ["date"])

    # ── invoices ───────────────────────────────────────────────────────────────
    op.create_table(
        "invoices",
        *_synced_columns(),
        sa.Column("invoice_number", sa.String(100), nullable=True),
        sa.Column("type", sa.String(10), nullable=True),
        sa.Column("contact_remote_id", sa.String(64), nullable=True),
        sa.Column("contact_name", sa.String(255), nullable=True),
        sa.Column("date", sa.Date, nullable=True),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("currency_code", sa.String(3), nullable=True),
        sa.Column("total", sa.Numeric(14, 2), nullable=True),
        sa.Column("amount_due", sa.Numeric(14, 2), nullable=True),
        sa.Column("amount_paid", sa.Numeric(14, 2), nullable=True),
        sa.Column("line_items", JSONB, nullable=True),
    )
    _synced_indexes("invoices")
    op.create_index("ix_invoices_type", "invoices", ["type"])
    op.create_index("ix_invoices_date", "invoices", ["date"])

    # ── sync_jobs ──────────────────────────────────────────────────────────────
    op.create_table(
        "sync_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("sync_type", sa.String(20), nullable=False),
        sa.Column("kinds", sa.JSON, nullable=False),
        sa.Column("scope_since", sa.Date, nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("cancel_requested", sa.Boolean, server_default=sa.text("false"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_created", sa.Integer, server_default="0", nullable=False),
        sa.Column("records_updated", sa.Integer, server_default="0", nullable=False),
        sa.Column("records_removed", sa.Integer, server_default="0", nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_sync_jobs_status", "sync_jobs", ["status"])
    op.create_index("ix_sync_jobs_created_at", "sync_jobs", ["created_at"])


def downgrade() -> None:
    op.drop_table("sync_jobs")
    op.drop_table("invoices")
    op.drop_table("bank_transactions")
    op.drop_table("bank_accounts")
    op.drop_table("ledger_accounts")
