"""Platform-fee billing configuration."""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from marketbill.settings import Settings, get_settings


class InvoiceStatus(Enum):
    """Invoice lifecycle states.

    The billing run only creates PENDING invoices; PAID and OVERDUE are
    set by payment reconciliation.
    """

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class NotificationType(Enum):
    """Inbox notification tags."""

    INVOICE_CREATED = "INVOICE_CREATED"


class OutcomeStatus(Enum):
    """Result of one store's pass through the billing pipeline."""

    INVOICED = "invoiced"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(Enum):
    """Why a store produced no invoice. Skips are not errors."""

    NO_OPEN_CYCLE = "no_open_cycle"
    CYCLE_NOT_DUE = "cycle_not_due"
    NOTHING_TO_BILL = "nothing_to_bill"


CENTS = Decimal("0.01")


@dataclass
class BillingConfig:
    """Billing cycle configuration."""

    cycle_period_days: int = 30
    grace_period_days: int = 7
    currency: str = "BRL"
    timezone: str = "America/Sao_Paulo"
    store_timeout_seconds: Optional[float] = 60.0
    max_concurrent_stores: int = 1
    notification_concurrency: int = 10
    notification_title: str = "Nova Fatura Disponível"

    def __post_init__(self):
        if self.cycle_period_days <= 0:
            raise ValueError("cycle_period_days must be positive")
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days must be non-negative")
        if self.max_concurrent_stores < 1:
            raise ValueError("max_concurrent_stores must be at least 1")
        if self.notification_concurrency < 1:
            raise ValueError("notification_concurrency must be at least 1")

    @property
    def cycle_period(self) -> timedelta:
        return timedelta(days=self.cycle_period_days)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BillingConfig":
        """Build the billing config from environment-backed settings."""
        settings = settings or get_settings()
        return cls(
            cycle_period_days=settings.cycle_period_days,
            grace_period_days=settings.grace_period_days,
            currency=settings.currency,
            timezone=settings.billing_timezone,
            store_timeout_seconds=settings.store_timeout_seconds or None,
            max_concurrent_stores=settings.max_concurrent_stores,
            notification_concurrency=settings.notification_concurrency,
        )


DEFAULT_BILLING_CONFIG = BillingConfig()
