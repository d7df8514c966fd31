"""SQLAlchemy ORM models for the billing ledger.

Tables:
- app_fees: platform commission per completed order (written upstream)
- billing_control: per-store cycle pointer
- invoices: one row per closed billing cycle
- invoice_notifications: store inbox entries for new invoices
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)

from marketbill.db.base import Base


class AppFeeRecord(Base):
    """Commission charged to a store on one order."""

    __tablename__ = "app_fees"

    id = Column(String(64), primary_key=True)
    store_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(64))
    value = Column(Numeric(12, 2))  # NULL on legacy imports; never billed
    percentage = Column(Float, default=0.0)
    order_total_price = Column(Numeric(12, 2), default=0)
    order_date = Column(DateTime(timezone=True), nullable=False)
    payment_method = Column(String(32), default="unknown")
    is_premium_rate = Column(Boolean, default=False)
    customer_id = Column(String(64))
    description = Column(Text)
    settled = Column(Boolean, nullable=False, default=False)
    settled_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_app_fees_store_settled_date", "store_id", "settled", "order_date"),
    )


class BillingControlRecord(Base):
    """Cycle pointer: where the last invoice ended and when the next is due."""

    __tablename__ = "billing_control"

    store_id = Column(String(64), primary_key=True)
    last_billing_date = Column(DateTime(timezone=True), nullable=False)
    next_billing_date = Column(DateTime(timezone=True), nullable=False, index=True)
    total_last_invoice = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class InvoiceRecord(Base):
    """Aggregated platform fees of one closed cycle."""

    __tablename__ = "invoices"

    invoice_id = Column(String(36), primary_key=True)
    store_id = Column(String(64), nullable=False, index=True)
    total_fee = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    cycle_start = Column(DateTime(timezone=True), nullable=False)
    cycle_end = Column(DateTime(timezone=True), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    fee_ids_json = Column(Text, nullable=False, default="[]")
    details_json = Column(Text, nullable=False, default="[]")
    created_at = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("store_id", "cycle_end", name="uq_invoices_store_cycle_end"),
    )


class InvoiceNotificationRecord(Base):
    """Store inbox entry announcing an invoice."""

    __tablename__ = "invoice_notifications"

    notification_id = Column(String(36), primary_key=True)
    store_id = Column(String(64), nullable=False, index=True)
    invoice_id = Column(String(36), nullable=False, unique=True)
    type = Column(String(32), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    total_fee = Column(Numeric(12, 2), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
