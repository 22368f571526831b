"""Receivables reconciliation tables

Revision ID: 20261017_receivables
Revises: None
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_receivables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "portal_customers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("debtor_postingaccount_number", sa.Integer(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("email_contact", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("contact_person_name", sa.Text()),
        sa.Column("street", sa.Text()),
        sa.Column("additional_addressline", sa.Text()),
        sa.Column("zip", sa.Text()),
        sa.Column("city", sa.Text()),
        sa.Column("country", sa.Text()),
        sa.Column("sales_tax_id_eu", sa.Text()),
        sa.Column("uid_ch", sa.Text()),
        sa.Column("iban", sa.Text()),
        sa.Column("bic", sa.Text()),
        sa.Column("bhb_raw_json", sa.JSON()),
        sa.Column("bhb_data_hash", sa.String(64)),
        sa.Column("last_bhb_sync", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("debtor_postingaccount_number", name="uq_portal_customers_debtor_postingaccount_number"),
    )

    op.create_table(
        "bhb_receipts_cache",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("id_by_customer", sa.Text(), nullable=False),
        sa.Column("debtor_postingaccount_number", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.Text()),
        sa.Column("receipt_date", sa.Date()),
        sa.Column("due_date", sa.Date()),
        sa.Column("amount_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_open", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_status", sa.String(16), nullable=False),
        sa.Column("counterparty", sa.Text()),
        sa.Column("raw_json", sa.JSON()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("id_by_customer", name="uq_bhb_receipts_cache_id_by_customer"),
    )
    op.create_index(
        "ix_bhb_receipts_cache_debtor_postingaccount_number",
        "bhb_receipts_cache",
        ["debtor_postingaccount_number"],
    )
    op.create_index("ix_bhb_receipts_cache_due_date", "bhb_receipts_cache", ["due_date"])
    op.create_index("ix_bhb_receipts_cache_payment_status", "bhb_receipts_cache", ["payment_status"])

    op.create_table(
        "manual_mappings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("counterparty_name", sa.Text(), nullable=False),
        sa.Column("debtor_postingaccount_number", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("counterparty_name", name="uq_manual_mappings_counterparty_name"),
    )

    op.create_table(
        "counterparty_exceptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("counterparty_name", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("created_by", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("counterparty_name", name="uq_counterparty_exceptions_counterparty_name"),
    )

    op.create_table(
        "sync_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("mode", sa.String(16), nullable=False),
        sa.Column("direction", sa.String(16), nullable=False, server_default="pull"),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("triggered_by", sa.Text()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("pulled_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unchanged_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("details", sa.JSON()),
        sa.Column("errors", sa.JSON()),
    )
    op.create_index("ix_sync_log_started_at", "sync_log", ["started_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_log_started_at", table_name="sync_log")
    op.drop_table("sync_log")
    op.drop_table("counterparty_exceptions")
    op.drop_table("manual_mappings")
    op.drop_index("ix_bhb_receipts_cache_payment_status", table_name="bhb_receipts_cache")
    op.drop_index("ix_bhb_receipts_cache_due_date", table_name="bhb_receipts_cache")
    op.drop_index("ix_bhb_receipts_cache_debtor_postingaccount_number", table_name="bhb_receipts_cache")
    op.drop_table("bhb_receipts_cache")
    op.drop_table("portal_customers")
