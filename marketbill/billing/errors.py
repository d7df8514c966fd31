"""Billing error hierarchy.

Skip conditions (no open cycle, cycle not due, nothing to bill) are not
errors and never raise.
"""


class BillingError(Exception):
    """Base class for billing failures."""


class MalformedFeeError(BillingError):
    """A stored fee document cannot be read as a fee record."""

    def __init__(self, fee_id: str, reason: str):
        self.fee_id = fee_id
        self.reason = reason
        super().__init__(f"Malformed fee {fee_id}: {reason}")


class InvalidTimestampError(BillingError, ValueError):
    """A stored timestamp has no recognizable representation."""


class SettlementError(BillingError):
    """Closing a cycle failed; none of its writes were applied."""

    def __init__(self, store_id: str, message: str):
        self.store_id = store_id
        super().__init__(f"Settlement failed for store {store_id}: {message}")


class ConcurrentSettlementError(SettlementError):
    """Another run settled some of the fees or closed the same cycle first."""

    def __init__(self, store_id: str, fee_ids: list[str] | None = None, message: str = ""):
        self.fee_ids = list(fee_ids or [])
        if not message:
            message = f"{len(self.fee_ids)} fee(s) already settled: {', '.join(self.fee_ids)}"
        super().__init__(store_id, message)


class StoreNotFoundError(BillingError):
    """The store has no billing history at all."""

    def __init__(self, store_id: str):
        self.store_id = store_id
        super().__init__(f"Store not found: {store_id}")


class StoreTimeoutError(BillingError):
    """A store pipeline exceeded its time budget."""

    def __init__(self, store_id: str, timeout: float):
        self.store_id = store_id
        self.timeout = timeout
        super().__init__(f"Store {store_id} timed out after {timeout:.1f}s")
