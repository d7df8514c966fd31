"""Administrative billing operations.

Manual entry points used by back-office staff: initialize a store's
billing pointer, inspect its fees and invoices, close a cycle on demand
and re-send missing invoice notifications. They reuse the reader and
resolver of the automated pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
import logging

import pandas as pd

from .config import CENTS, BillingConfig, DEFAULT_BILLING_CONFIG
from .errors import StoreNotFoundError
from .ledger import FeeLedgerReader
from .models import (
    BillingControl,
    BillingCycle,
    FanOutResult,
    FeeRecord,
    Invoice,
    MalformedFee,
    StoreOutcome,
)
from .scheduler import BillingScheduler
from .store import LedgerStore
from .timestamps import to_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class FeeReport:
    """Snapshot of a store's fee ledger."""

    store_id: str
    total_fees: int = 0
    settled_count: int = 0
    unsettled_count: int = 0
    malformed_count: int = 0
    settled_total: Decimal = Decimal("0.00")
    unsettled_total: Decimal = Decimal("0.00")
    by_payment_method: Dict[str, Dict[str, object]] = field(default_factory=dict)
    stranded_fee_ids: List[str] = field(default_factory=list)
    open_cycle: Optional[BillingCycle] = None

    def summary_lines(self) -> List[str]:
        lines = [
            f"Store {self.store_id}: {self.total_fees} fees",
            f"  settled:   {self.settled_count} (R$ {self.settled_total})",
            f"  unsettled: {self.unsettled_count} (R$ {self.unsettled_total})",
        ]
        if self.malformed_count:
            lines.append(f"  malformed: {self.malformed_count}")
        for method, stats in sorted(self.by_payment_method.items()):
            lines.append(f"  {method}: {stats['count']} unsettled, R$ {stats['total']}")
        if self.stranded_fee_ids:
            lines.append(f"  stranded before current cycle: {', '.join(self.stranded_fee_ids)}")
        if self.open_cycle is not None:
            lines.append(
                f"  open cycle: {self.open_cycle.start.isoformat()} -> {self.open_cycle.end.isoformat()}"
            )
        return lines


def _money_sum(values) -> Decimal:
    return sum(values, Decimal("0.00")).quantize(CENTS)


class BillingAdmin:
    """Back-office billing operations for a single store."""

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[BillingConfig] = None,
        scheduler: Optional[BillingScheduler] = None,
    ) -> None:
        self._store = store
        self._config = config or DEFAULT_BILLING_CONFIG
        self._scheduler = scheduler or BillingScheduler(store, self._config)
        self._reader = FeeLedgerReader(store)

    # ── Billing control ───────────────────────────────────────────────

    async def initialize_billing_control(
        self,
        store_id: str,
        now: Optional[datetime] = None,
        require_store: bool = True,
    ) -> BillingControl:
        """Create the store's cycle pointer if it is missing.

        An existing pointer is returned unchanged.

        Raises:
            ValueError: empty store id.
            StoreNotFoundError: ``require_store`` is set and the store has
                neither fees nor invoices.
        """
        if not store_id:
            raise ValueError("store_id is required")

        existing = await self._store.get_billing_control(store_id)
        if existing is not None:
            logger.info("Billing control already exists for store %s", store_id)
            return existing

        if require_store:
            has_fees = bool(await self._store.query_fees(store_id, limit=1))
            has_invoices = await self._store.get_latest_invoice(store_id) is not None
            if not (has_fees or has_invoices):
                raise StoreNotFoundError(store_id)

        now = to_utc(now) if now is not None else utcnow()
        control = BillingControl(
            store_id=store_id,
            last_billing_date=now,
            next_billing_date=now + self._config.cycle_period,
            total_last_invoice=Decimal("0.00"),
            updated_at=now,
        )
        if not await self._store.create_billing_control(control):
            # Lost a race with another initializer.
            return await self._store.get_billing_control(store_id)
        logger.info(
            "Billing control initialized for store %s, next billing %s",
            store_id, control.next_billing_date.isoformat(),
        )
        return control

    async def check_billing_control(self, store_id: str) -> bool:
        return await self._store.get_billing_control(store_id) is not None

    async def get_billing_control(self, store_id: str) -> Optional[BillingControl]:
        return await self._store.get_billing_control(store_id)

    # ── Diagnostics ───────────────────────────────────────────────────

    async def check_existing_fees(self, store_id: str, now: Optional[datetime] = None) -> FeeReport:
        """Count settled, unsettled and malformed fees of a store."""
        entries = await self._reader.read_all_fees(store_id)
        report = FeeReport(store_id=store_id, total_fees=len(entries))
        if not entries:
            logger.info("No fees found for store %s", store_id)
            return report

        records = [e for e in entries if isinstance(e, FeeRecord)]
        report.malformed_count = sum(1 for e in entries if isinstance(e, MalformedFee))

        if records:
            df = pd.DataFrame(
                {
                    "fee_id": [r.fee_id for r in records],
                    "value": pd.Series([r.value for r in records], dtype=object),
                    "settled": [r.settled for r in records],
                    "payment_method": [r.payment_method for r in records],
                    "order_date": [r.order_date for r in records],
                }
            )
            settled = df[df["settled"]]
            unsettled = df[~df["settled"]]
            report.settled_count = int(len(settled))
            report.unsettled_count = int(len(unsettled))
            report.settled_total = _money_sum(settled["value"])
            report.unsettled_total = _money_sum(unsettled["value"])

            grouped = unsettled.groupby("payment_method")["value"].agg(count="count", total=_money_sum)
            report.by_payment_method = {
                str(method): {"count": int(row["count"]), "total": row["total"]}
                for method, row in grouped.iterrows()
            }

            latest = await self._store.get_latest_invoice(store_id)
            if latest is not None:
                stranded = unsettled[unsettled["order_date"] <= latest.cycle_end]
                report.stranded_fee_ids = sorted(stranded["fee_id"].tolist())

        # Malformed fees are unsettled by definition
        report.unsettled_count += report.malformed_count
        report.open_cycle = await self._scheduler.resolver.resolve(
            store_id, to_utc(now) if now is not None else utcnow()
        )

        logger.info(
            "Store %s: %d fees, %d settled, %d unsettled (R$ %s)",
            store_id, report.total_fees, report.settled_count,
            report.unsettled_count, report.unsettled_total,
        )
        if report.stranded_fee_ids:
            logger.warning(
                "Store %s has %d unsettled fee(s) dated before its current cycle",
                store_id, len(report.stranded_fee_ids),
            )
        return report

    async def list_store_invoices(self, store_id: str) -> List[Invoice]:
        return await self._store.list_invoices(store_id)

    # ── Manual actions ────────────────────────────────────────────────

    async def generate_invoice_now(self, store_id: str, now: Optional[datetime] = None) -> StoreOutcome:
        """Run the billing pipeline for one store outside the daily job."""
        return await self._scheduler.process_store(store_id, now)

    async def resend_missing_notifications(self, store_id: str) -> FanOutResult:
        """Notify the store of every invoice that has no notification yet."""
        missing = []
        for invoice in await self._store.list_invoices(store_id):
            if await self._store.find_notification(invoice.invoice_id) is None:
                missing.append(invoice)
        if not missing:
            return FanOutResult()
        return await self._scheduler.notifier.emit_many(missing)
