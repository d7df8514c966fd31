"""Billing domain records: fees, cycles, invoices and run outcomes."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional, Union
import math
import uuid

from .config import CENTS, InvoiceStatus, NotificationType, OutcomeStatus, SkipReason
from .timestamps import utcnow


def to_money(value) -> Decimal:
    """Convert a stored amount to a two-place Decimal.

    Raises:
        ValueError: the amount is missing, not numeric, not finite or negative.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"not finite: {value!r}")
    try:
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"not finite: {value!r}")
    if amount < 0:
        raise ValueError(f"negative amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def new_id() -> str:
    return uuid.uuid4().hex


# ── Fees ──────────────────────────────────────────────────────────────


@dataclass
class FeeRecord:
    """Platform commission charged on one completed order."""

    fee_id: str
    store_id: str
    order_id: str
    value: Decimal
    order_date: datetime
    percentage: float = 0.0
    order_total_price: Decimal = Decimal("0.00")
    payment_method: str = "unknown"
    settled: bool = False
    is_premium_rate: bool = False
    customer_id: Optional[str] = None
    description: Optional[str] = None
    settled_at: Optional[datetime] = None


@dataclass
class MalformedFee:
    """A stored fee whose amount cannot be billed. Never settled."""

    fee_id: str
    store_id: str
    raw_value: object
    reason: str
    order_date: Optional[datetime] = None


FeeEntry = Union[FeeRecord, MalformedFee]


@dataclass
class FeeDetail:
    """Snapshot of one fee as it was billed on an invoice."""

    fee_id: str
    value: Decimal
    order_date: datetime
    order_total_price: Decimal
    percentage: float
    payment_method: str

    @classmethod
    def from_fee(cls, fee: FeeRecord) -> "FeeDetail":
        return cls(
            fee_id=fee.fee_id,
            value=fee.value,
            order_date=fee.order_date,
            order_total_price=fee.order_total_price,
            percentage=fee.percentage,
            payment_method=fee.payment_method,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.fee_id,
            "value": str(self.value),
            "orderDate": self.order_date.isoformat(),
            "orderTotalPrice": str(self.order_total_price),
            "percentage": self.percentage,
            "paymentMethod": self.payment_method,
        }


# ── Cycles ────────────────────────────────────────────────────────────


@dataclass
class BillingCycle:
    """Billing window for one store.

    A first cycle starts at the store's earliest unsettled fee and
    includes it; later cycles start strictly after the previous cycle's
    end. The end is always inclusive.
    """

    store_id: str
    start: datetime
    end: datetime
    include_start: bool = True
    previous_invoice_id: Optional[str] = None

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError("cycle end must be after cycle start")

    def contains(self, ts: datetime) -> bool:
        after_start = ts >= self.start if self.include_start else ts > self.start
        return after_start and ts <= self.end

    def is_due(self, now: datetime) -> bool:
        return now >= self.end

    @property
    def length(self) -> timedelta:
        return self.end - self.start


@dataclass
class BillingControl:
    """Per-store cycle pointer."""

    store_id: str
    last_billing_date: datetime
    next_billing_date: datetime
    total_last_invoice: Decimal = Decimal("0.00")
    updated_at: datetime = field(default_factory=utcnow)


# ── Invoices ──────────────────────────────────────────────────────────


@dataclass
class AggregationResult:
    """Fees of one cycle reduced to an invoice candidate."""

    total: Decimal = Decimal("0.00")
    fee_ids: List[str] = field(default_factory=list)
    details: List[FeeDetail] = field(default_factory=list)
    skipped: List[MalformedFee] = field(default_factory=list)

    @property
    def is_billable(self) -> bool:
        return self.total > 0


@dataclass
class Invoice:
    """Aggregated commission owed by a store for one closed cycle."""

    invoice_id: str
    store_id: str
    total_fee: Decimal
    cycle_start: datetime
    cycle_end: datetime
    due_date: datetime
    fee_ids: List[str] = field(default_factory=list)
    details: List[FeeDetail] = field(default_factory=list)
    status: InvoiceStatus = InvoiceStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SettlementBatch:
    """Every write that closes one cycle. Stores apply it atomically."""

    invoice: Invoice
    fee_ids: List[str]
    settled_at: datetime
    control: BillingControl

    @property
    def store_id(self) -> str:
        return self.invoice.store_id


# ── Notifications ─────────────────────────────────────────────────────


@dataclass
class InvoiceNotification:
    """Inbox entry telling a store a new invoice is available."""

    notification_id: str
    store_id: str
    invoice_id: str
    title: str
    message: str
    total_fee: Decimal
    due_date: datetime
    type: NotificationType = NotificationType.INVOICE_CREATED
    read: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class FanOutResult:
    """Outcome of a bounded-concurrency notification batch."""

    delivered: List[InvoiceNotification] = field(default_factory=list)
    failed: List[tuple] = field(default_factory=list)  # (invoice_id, error)

    @property
    def all_delivered(self) -> bool:
        return not self.failed


# ── Runs ──────────────────────────────────────────────────────────────


@dataclass
class StoreOutcome:
    """Result of one store's pass through the pipeline."""

    store_id: str
    status: OutcomeStatus
    reason: Optional[SkipReason] = None
    invoice: Optional[Invoice] = None
    error: Optional[str] = None
    skipped_fees: int = 0


@dataclass
class BillingRunSummary:
    """Totals for one scheduled billing run."""

    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[StoreOutcome] = field(default_factory=list)

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def stores_processed(self) -> int:
        return len(self.outcomes)

    @property
    def invoices_created(self) -> int:
        return self._count(OutcomeStatus.INVOICED)

    @property
    def stores_skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def stores_failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    @property
    def total_invoiced(self) -> Decimal:
        return sum(
            (o.invoice.total_fee for o in self.outcomes if o.invoice is not None),
            Decimal("0.00"),
        )

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stores_processed": self.stores_processed,
            "invoices_created": self.invoices_created,
            "stores_skipped": self.stores_skipped,
            "stores_failed": self.stores_failed,
            "total_invoiced": str(self.total_invoiced),
            "failed_stores": [o.store_id for o in self.outcomes if o.status == OutcomeStatus.FAILED],
        }
