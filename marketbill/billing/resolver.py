"""Cycle Resolver."""

import logging
import math
from datetime import datetime
from typing import Optional

from .config import BillingConfig, DEFAULT_BILLING_CONFIG
from .ledger import FeeLedgerReader
from .models import BillingCycle
from .store import LedgerStore

logger = logging.getLogger(__name__)


class CycleResolver:
    """Finds the open billing cycle of a store from its invoice history.

    The cycle after an invoice starts where that invoice's cycle ended. A
    store that was never invoiced starts at its oldest fee with a positive
    amount, or at its oldest unsettled fee when none has one. When ``now``
    is given and the open cycle has already elapsed with no billable fee
    inside it, the cycle end is pushed out by whole periods until it
    covers the next billable fee, so invoices stay contiguous and no fee
    is left behind a period holding only zero or unreadable fees.
    """

    def __init__(
        self,
        store: LedgerStore,
        reader: Optional[FeeLedgerReader] = None,
        config: Optional[BillingConfig] = None,
    ) -> None:
        self._store = store
        self._reader = reader or FeeLedgerReader(store)
        self._config = config or DEFAULT_BILLING_CONFIG

    async def _first_cycle_start(self, store_id: str) -> Optional[datetime]:
        first_fee = await self._reader.earliest_billable_fee_date(store_id)
        if first_fee is None:
            first_fee = await self._reader.earliest_unsettled_fee_date(store_id)
        return first_fee

    async def resolve(self, store_id: str, now: Optional[datetime] = None) -> Optional[BillingCycle]:
        """Open cycle of a store, or None when there is nothing to bill."""
        period = self._config.cycle_period
        previous = await self._store.get_latest_invoice(store_id)

        if previous is not None:
            start = previous.cycle_end
            include_start = False
            previous_id = previous.invoice_id
        else:
            start = await self._first_cycle_start(store_id)
            if start is None:
                logger.debug("Store %s has no invoices and no unsettled fees", store_id)
                return None
            include_start = True
            previous_id = None

        end = start + period
        if now is not None and now >= end and not include_start:
            earliest = await self._reader.earliest_billable_fee_date(store_id, after=start)
            if earliest is not None and earliest > end:
                periods = math.ceil((earliest - start) / period)
                end = start + periods * period
                logger.info(
                    "Store %s had %d period(s) with nothing to bill; cycle extended to %s",
                    store_id, periods - 1, end.isoformat(),
                )

        return BillingCycle(
            store_id=store_id,
            start=start,
            end=end,
            include_start=include_start,
            previous_invoice_id=previous_id,
        )
