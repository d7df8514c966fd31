"""Recurring platform-fee billing.

Closes each store's billing cycle: resolves the open cycle, reads its
unsettled fees, aggregates them into an invoice, settles the fees
atomically with the invoice and pointer update, and notifies the store.
"""

from .config import (
    BillingConfig,
    InvoiceStatus,
    NotificationType,
    OutcomeStatus,
    SkipReason,
    DEFAULT_BILLING_CONFIG,
)
from .errors import (
    BillingError,
    ConcurrentSettlementError,
    InvalidTimestampError,
    MalformedFeeError,
    SettlementError,
    StoreNotFoundError,
    StoreTimeoutError,
)
from .models import (
    AggregationResult,
    BillingControl,
    BillingCycle,
    BillingRunSummary,
    FanOutResult,
    FeeDetail,
    FeeRecord,
    Invoice,
    InvoiceNotification,
    MalformedFee,
    SettlementBatch,
    StoreOutcome,
)
from .store import LedgerStore, InMemoryLedgerStore
from .sql_store import SqlLedgerStore
from .ledger import FeeLedgerReader, parse_fee
from .resolver import CycleResolver
from .aggregator import InvoiceAggregator
from .settlement import SettlementCommitter
from .notifier import NotificationEmitter
from .scheduler import BillingScheduler
from .admin import BillingAdmin, FeeReport

__all__ = [
    # Config
    "BillingConfig",
    "InvoiceStatus",
    "NotificationType",
    "OutcomeStatus",
    "SkipReason",
    "DEFAULT_BILLING_CONFIG",
    # Errors
    "BillingError",
    "ConcurrentSettlementError",
    "InvalidTimestampError",
    "MalformedFeeError",
    "SettlementError",
    "StoreNotFoundError",
    "StoreTimeoutError",
    # Models
    "AggregationResult",
    "BillingControl",
    "BillingCycle",
    "BillingRunSummary",
    "FanOutResult",
    "FeeDetail",
    "FeeRecord",
    "Invoice",
    "InvoiceNotification",
    "MalformedFee",
    "SettlementBatch",
    "StoreOutcome",
    # Stores
    "LedgerStore",
    "InMemoryLedgerStore",
    "SqlLedgerStore",
    # Pipeline
    "FeeLedgerReader",
    "parse_fee",
    "CycleResolver",
    "InvoiceAggregator",
    "SettlementCommitter",
    "NotificationEmitter",
    "BillingScheduler",
    # Admin
    "BillingAdmin",
    "FeeReport",
]
