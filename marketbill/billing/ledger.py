"""Fee Ledger Reader.

Reads a store's fee documents and validates them into typed records at
the storage boundary. A document whose amount cannot be billed becomes a
``MalformedFee`` instead of leaking ``None`` or NaN into the totals.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Mapping, Optional

from .errors import InvalidTimestampError, MalformedFeeError
from .models import BillingCycle, FeeEntry, FeeRecord, MalformedFee, to_money
from .store import LedgerStore
from .timestamps import to_utc

logger = logging.getLogger(__name__)


def parse_fee(document: Mapping) -> FeeEntry:
    """Validate one fee document.

    Raises:
        MalformedFeeError: the document lacks an id, store or order date.
            These fees cannot be placed in any cycle.
    """
    fee_id = document.get("id")
    if not fee_id:
        raise MalformedFeeError("<unknown>", "missing id")
    store_id = document.get("store_id")
    if not store_id:
        raise MalformedFeeError(fee_id, "missing store_id")
    try:
        order_date = to_utc(document.get("order_date"))
    except InvalidTimestampError as exc:
        raise MalformedFeeError(fee_id, f"bad order_date: {exc}") from exc

    raw_value = document.get("value")
    try:
        value = to_money(raw_value)
    except ValueError as exc:
        return MalformedFee(
            fee_id=fee_id,
            store_id=store_id,
            raw_value=raw_value,
            reason=str(exc),
            order_date=order_date,
        )

    try:
        order_total = to_money(document.get("order_total_price") or 0)
    except ValueError:
        order_total = Decimal("0.00")

    settled_at = document.get("settled_at")
    return FeeRecord(
        fee_id=fee_id,
        store_id=store_id,
        order_id=str(document.get("order_id") or ""),
        value=value,
        order_date=order_date,
        percentage=float(document.get("percentage") or 0.0),
        order_total_price=order_total,
        payment_method=document.get("payment_method") or "unknown",
        settled=bool(document.get("settled")),
        is_premium_rate=bool(document.get("is_premium_rate")),
        customer_id=document.get("customer_id"),
        description=document.get("description"),
        settled_at=to_utc(settled_at) if settled_at is not None else None,
    )


class FeeLedgerReader:
    """Reads unsettled fees for billing and full ledgers for diagnostics."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def read_cycle_fees(self, store_id: str, cycle: BillingCycle) -> List[FeeEntry]:
        """Unsettled fees whose order date falls inside the cycle."""
        documents = await self._store.query_fees(
            store_id,
            settled=False,
            start=cycle.start,
            start_inclusive=cycle.include_start,
            end=cycle.end,
        )
        entries: List[FeeEntry] = []
        for document in documents:
            try:
                entry = parse_fee(document)
            except MalformedFeeError as exc:
                logger.warning("Skipping unreadable fee for store %s: %s", store_id, exc)
                continue
            if isinstance(entry, FeeRecord) and entry.settled:
                logger.warning(
                    "Store %s returned settled fee %s for an unsettled query; ignoring",
                    store_id, entry.fee_id,
                )
                continue
            if not cycle.contains(entry.order_date):
                logger.warning("Fee %s lies outside cycle for store %s; ignoring", entry.fee_id, store_id)
                continue
            entries.append(entry)

        logger.debug("Read %d unsettled fees for store %s", len(entries), store_id)
        return entries

    async def earliest_unsettled_fee_date(
        self,
        store_id: str,
        after: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Order date of the oldest unsettled fee, optionally strictly after a point."""
        documents = await self._store.query_fees(
            store_id,
            settled=False,
            start=after,
            start_inclusive=False,
            limit=1,
        )
        for document in documents:
            try:
                return parse_fee(document).order_date
            except MalformedFeeError as exc:
                logger.warning("Earliest fee for store %s is unreadable: %s", store_id, exc)
        return None

    async def earliest_billable_fee_date(
        self,
        store_id: str,
        after: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Order date of the oldest unsettled fee that carries a positive amount.

        Malformed and zero-value fees never open or extend a cycle on their
        own; they are swept up by the first cycle that covers them.
        """
        documents = await self._store.query_fees(
            store_id,
            settled=False,
            start=after,
            start_inclusive=False,
        )
        for document in documents:
            try:
                entry = parse_fee(document)
            except MalformedFeeError as exc:
                logger.warning("Skipping unreadable fee for store %s: %s", store_id, exc)
                continue
            if isinstance(entry, FeeRecord) and entry.value > 0:
                return entry.order_date
        return None

    async def read_all_fees(self, store_id: str) -> List[FeeEntry]:
        """Every fee of a store, settled or not. Unreadable documents are dropped."""
        entries: List[FeeEntry] = []
        for document in await self._store.query_fees(store_id):
            try:
                entries.append(parse_fee(document))
            except MalformedFeeError as exc:
                logger.warning("Skipping unreadable fee for store %s: %s", store_id, exc)
        return entries
