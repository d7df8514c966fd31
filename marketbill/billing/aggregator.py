"""Invoice Aggregator."""

import logging
from decimal import Decimal
from typing import Iterable

from .models import AggregationResult, FeeDetail, FeeEntry, FeeRecord, MalformedFee

logger = logging.getLogger(__name__)


class InvoiceAggregator:
    """Reduces a cycle's fees to an invoice total.

    Entries that cannot be billed are logged and left out; one corrupt
    record never blocks billing of the rest.
    """

    def aggregate(self, entries: Iterable[FeeEntry]) -> AggregationResult:
        result = AggregationResult()
        total = Decimal("0.00")
        seen = set()

        for entry in entries:
            if isinstance(entry, MalformedFee):
                logger.error(
                    "Skipping fee %s of store %s: %s (value=%r)",
                    entry.fee_id, entry.store_id, entry.reason, entry.raw_value,
                )
                result.skipped.append(entry)
                continue
            if not isinstance(entry, FeeRecord):
                raise TypeError(f"Unexpected fee entry: {entry!r}")
            if entry.fee_id in seen:
                logger.warning("Fee %s listed twice; counted once", entry.fee_id)
                continue
            if not entry.value.is_finite() or entry.value < 0:
                logger.error("Skipping fee %s: invalid value %s", entry.fee_id, entry.value)
                result.skipped.append(
                    MalformedFee(
                        fee_id=entry.fee_id,
                        store_id=entry.store_id,
                        raw_value=entry.value,
                        reason="value must be a finite non-negative amount",
                        order_date=entry.order_date,
                    )
                )
                continue

            seen.add(entry.fee_id)
            total += entry.value
            result.fee_ids.append(entry.fee_id)
            result.details.append(FeeDetail.from_fee(entry))

        result.total = total
        logger.debug(
            "Aggregated %d fees (total %s, %d skipped)",
            len(result.fee_ids), total, len(result.skipped),
        )
        return result
