"""Database package for the billing ledger."""

from marketbill.db.base import Base
from marketbill.db.engine import (
    create_all,
    get_async_engine,
    get_async_session_factory,
)
from marketbill.db.models import (
    AppFeeRecord,
    BillingControlRecord,
    InvoiceNotificationRecord,
    InvoiceRecord,
)

__all__ = [
    "Base",
    "create_all",
    "get_async_engine",
    "get_async_session_factory",
    "AppFeeRecord",
    "BillingControlRecord",
    "InvoiceNotificationRecord",
    "InvoiceRecord",
]
