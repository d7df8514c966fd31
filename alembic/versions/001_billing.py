"""Platform-fee billing ledger.

Revision ID: 001
Revises:
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "app_fees",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("store_id", sa.String(64), nullable=False, index=True),
        sa.Column("order_id", sa.String(64), nullable=True),
        sa.Column("value", sa.Numeric(12, 2), nullable=True),
        sa.Column("percentage", sa.Float(), nullable=True),
        sa.Column("order_total_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("order_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("is_premium_rate", sa.Boolean(), nullable=True),
        sa.Column("customer_id", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("settled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_app_fees_store_settled_date", "app_fees", ["store_id", "settled", "order_date"]
    )

    op.create_table(
        "billing_control",
        sa.Column("store_id", sa.String(64), primary_key=True),
        sa.Column("last_billing_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("total_last_invoice", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.String(36), primary_key=True),
        sa.Column("store_id", sa.String(64), nullable=False, index=True),
        sa.Column("total_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("cycle_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cycle_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fee_ids_json", sa.Text(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("store_id", "cycle_end", name="uq_invoices_store_cycle_end"),
    )

    op.create_table(
        "invoice_notifications",
        sa.Column("notification_id", sa.String(36), primary_key=True),
        sa.Column("store_id", sa.String(64), nullable=False, index=True),
        sa.Column("invoice_id", sa.String(36), nullable=False, unique=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("total_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("invoice_notifications")
    op.drop_table("invoices")
    op.drop_table("billing_control")
    op.drop_index("ix_app_fees_store_settled_date", table_name="app_fees")
    op.drop_table("app_fees")
