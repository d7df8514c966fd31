"""Settlement Committer.

Closing a cycle writes three things: the new invoice, the settled flag
on every billed fee, and the store's cycle pointer. They go to the store
as one ``SettlementBatch`` and land together or not at all.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .config import BillingConfig, DEFAULT_BILLING_CONFIG, InvoiceStatus
from .errors import SettlementError
from .models import (
    AggregationResult,
    BillingControl,
    BillingCycle,
    Invoice,
    SettlementBatch,
    new_id,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)


class SettlementCommitter:
    """Atomically turns an aggregation into a pending invoice."""

    def __init__(self, store: LedgerStore, config: Optional[BillingConfig] = None) -> None:
        self._store = store
        self._config = config or DEFAULT_BILLING_CONFIG

    def build_batch(
        self,
        store_id: str,
        cycle: BillingCycle,
        aggregation: AggregationResult,
        now: datetime,
    ) -> SettlementBatch:
        """Assemble every write of a cycle close without touching the store."""
        if not aggregation.is_billable:
            raise SettlementError(store_id, "refusing to invoice a zero total")

        detail_sum = sum((d.value for d in aggregation.details), Decimal("0.00"))
        if detail_sum != aggregation.total:
            raise SettlementError(
                store_id, f"details sum to {detail_sum}, total is {aggregation.total}"
            )
        if [d.fee_id for d in aggregation.details] != aggregation.fee_ids:
            raise SettlementError(store_id, "fee ids do not match fee details")

        invoice = Invoice(
            invoice_id=new_id(),
            store_id=store_id,
            total_fee=aggregation.total,
            cycle_start=cycle.start,
            cycle_end=cycle.end,
            due_date=now + self._config.grace_period,
            fee_ids=list(aggregation.fee_ids),
            details=list(aggregation.details),
            status=InvoiceStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        control = BillingControl(
            store_id=store_id,
            last_billing_date=cycle.end,
            next_billing_date=cycle.end + self._config.cycle_period,
            total_last_invoice=aggregation.total,
            updated_at=now,
        )
        return SettlementBatch(
            invoice=invoice,
            fee_ids=list(aggregation.fee_ids),
            settled_at=now,
            control=control,
        )

    async def commit(
        self,
        store_id: str,
        cycle: BillingCycle,
        aggregation: AggregationResult,
        now: datetime,
    ) -> Invoice:
        """Persist the invoice, settle its fees and advance the pointer.

        Raises:
            SettlementError: nothing was written.
        """
        batch = self.build_batch(store_id, cycle, aggregation, now)
        try:
            invoice = await self._store.commit_settlement(batch)
        except SettlementError:
            raise
        except Exception as exc:
            raise SettlementError(store_id, f"{type(exc).__name__}: {exc}") from exc

        logger.info(
            "Invoice %s created for store %s: R$ %s, %d fees settled",
            invoice.invoice_id, store_id, invoice.total_fee, len(batch.fee_ids),
            extra={
                "invoice_id": invoice.invoice_id,
                "total_fee": str(invoice.total_fee),
                "fee_count": len(batch.fee_ids),
            },
        )
        return invoice
