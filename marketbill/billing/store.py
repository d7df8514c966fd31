"""Ledger storage interface and the in-memory implementation.

The billing pipeline talks to its backing store only through
``LedgerStore``. A store must support point lookups, ordered range
queries with a limit, and one atomic write that closes a cycle
(``commit_settlement``).

Fee documents cross this interface as plain mappings with snake_case
keys (``id``, ``store_id``, ``order_id``, ``value``, ``percentage``,
``order_total_price``, ``order_date``, ``settled``, ``payment_method``,
``is_premium_rate``, ``customer_id``, ``description``, ``settled_at``);
the fee ledger reader validates them into typed records.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConcurrentSettlementError, InvalidTimestampError, SettlementError
from .models import BillingControl, Invoice, InvoiceNotification, SettlementBatch
from .timestamps import to_utc

logger = logging.getLogger(__name__)

FeeDocument = Dict[str, Any]


class LedgerStore(ABC):
    """Storage operations the billing pipeline depends on."""

    # ── Fees ──────────────────────────────────────────────────────────

    @abstractmethod
    async def add_fee(self, document: FeeDocument) -> str:
        """Record a fee written by order processing. Returns its id."""

    @abstractmethod
    async def query_fees(
        self,
        store_id: str,
        *,
        settled: Optional[bool] = None,
        start: Optional[datetime] = None,
        start_inclusive: bool = True,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[FeeDocument]:
        """Fees of a store ordered by order date ascending.

        ``start`` is compared with ``>=`` or ``>`` depending on
        ``start_inclusive``; ``end`` is always inclusive.
        """

    @abstractmethod
    async def list_unbilled_store_ids(self) -> List[str]:
        """Stores holding unsettled fees but no billing control yet."""

    # ── Billing control ───────────────────────────────────────────────

    @abstractmethod
    async def get_billing_control(self, store_id: str) -> Optional[BillingControl]:
        """Cycle pointer of a store, if any."""

    @abstractmethod
    async def create_billing_control(self, control: BillingControl) -> bool:
        """Insert a cycle pointer unless one exists. Returns True if created."""

    @abstractmethod
    async def list_due_store_ids(self, now: datetime) -> List[str]:
        """Stores whose ``next_billing_date <= now``."""

    # ── Invoices ──────────────────────────────────────────────────────

    @abstractmethod
    async def get_latest_invoice(self, store_id: str) -> Optional[Invoice]:
        """Invoice with the greatest cycle end for a store."""

    @abstractmethod
    async def list_invoices(self, store_id: str) -> List[Invoice]:
        """Invoices of a store, newest cycle first."""

    @abstractmethod
    async def commit_settlement(self, batch: SettlementBatch) -> Invoice:
        """Atomically insert the invoice, settle its fees and move the pointer.

        Raises:
            ConcurrentSettlementError: a fee was already settled or the
                cycle already has an invoice. Nothing is written.
            SettlementError: any other write failure. Nothing is written.
        """

    # ── Notifications ─────────────────────────────────────────────────

    @abstractmethod
    async def add_notification(self, notification: InvoiceNotification) -> InvoiceNotification:
        """Append a notification to the store's inbox."""

    @abstractmethod
    async def find_notification(self, invoice_id: str) -> Optional[InvoiceNotification]:
        """Notification already written for an invoice, if any."""

    @abstractmethod
    async def list_notifications(self, store_id: str) -> List[InvoiceNotification]:
        """Inbox of a store, newest first."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed ledger for tests and dry runs.

    Settlement applies its writes one by one under a lock and restores a
    snapshot of every touched record if any write fails, so readers never
    observe a partially closed cycle.
    """

    def __init__(self) -> None:
        self._fees: Dict[str, FeeDocument] = {}
        self._controls: Dict[str, BillingControl] = {}
        self._invoices: Dict[str, Invoice] = {}
        self._notifications: Dict[str, InvoiceNotification] = {}
        self._lock = asyncio.Lock()
        self._fee_seq = 0

    # ── Fees ──────────────────────────────────────────────────────────

    async def add_fee(self, document: FeeDocument) -> str:
        doc = dict(document)
        if not doc.get("id"):
            self._fee_seq += 1
            doc["id"] = f"fee-{self._fee_seq:06d}"
        doc.setdefault("settled", False)
        self._fees[doc["id"]] = doc
        return doc["id"]

    def get_fee(self, fee_id: str) -> Optional[FeeDocument]:
        doc = self._fees.get(fee_id)
        return dict(doc) if doc is not None else None

    async def query_fees(
        self,
        store_id: str,
        *,
        settled: Optional[bool] = None,
        start: Optional[datetime] = None,
        start_inclusive: bool = True,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[FeeDocument]:
        ranged = start is not None or end is not None
        matches: List[Tuple[Optional[datetime], FeeDocument]] = []
        for doc in self._fees.values():
            if doc.get("store_id") != store_id:
                continue
            if settled is not None and bool(doc.get("settled")) != settled:
                continue
            try:
                order_date = to_utc(doc.get("order_date"))
            except InvalidTimestampError:
                if ranged:
                    continue
                order_date = None
            if start is not None:
                if order_date < start or (order_date == start and not start_inclusive):
                    continue
            if end is not None and order_date > end:
                continue
            matches.append((order_date, dict(doc)))

        matches.sort(key=lambda m: (m[0] is None, m[0] or datetime.min, m[1]["id"]))
        docs = [doc for _, doc in matches]
        return docs[:limit] if limit is not None else docs

    async def list_unbilled_store_ids(self) -> List[str]:
        stores = {
            doc.get("store_id")
            for doc in self._fees.values()
            if not doc.get("settled") and doc.get("store_id")
        }
        return sorted(s for s in stores if s not in self._controls)

    # ── Billing control ───────────────────────────────────────────────

    async def get_billing_control(self, store_id: str) -> Optional[BillingControl]:
        control = self._controls.get(store_id)
        return copy.copy(control) if control is not None else None

    async def create_billing_control(self, control: BillingControl) -> bool:
        async with self._lock:
            if control.store_id in self._controls:
                return False
            self._controls[control.store_id] = copy.copy(control)
            return True

    async def list_due_store_ids(self, now: datetime) -> List[str]:
        return sorted(
            store_id
            for store_id, control in self._controls.items()
            if control.next_billing_date <= now
        )

    # ── Invoices ──────────────────────────────────────────────────────

    async def get_latest_invoice(self, store_id: str) -> Optional[Invoice]:
        invoices = await self.list_invoices(store_id)
        return invoices[0] if invoices else None

    async def list_invoices(self, store_id: str) -> List[Invoice]:
        invoices = [i for i in self._invoices.values() if i.store_id == store_id]
        return [copy.deepcopy(i) for i in sorted(invoices, key=lambda i: i.cycle_end, reverse=True)]

    async def commit_settlement(self, batch: SettlementBatch) -> Invoice:
        async with self._lock:
            store_id = batch.store_id
            invoice = batch.invoice

            duplicate = any(
                i.store_id == store_id and i.cycle_end == invoice.cycle_end
                for i in self._invoices.values()
            )
            if duplicate:
                raise ConcurrentSettlementError(
                    store_id, message=f"cycle ending {invoice.cycle_end.isoformat()} already invoiced"
                )
            missing = [fid for fid in batch.fee_ids if fid not in self._fees]
            if missing:
                raise SettlementError(store_id, f"unknown fee(s): {', '.join(missing)}")
            already = [fid for fid in batch.fee_ids if self._fees[fid].get("settled")]
            if already:
                raise ConcurrentSettlementError(store_id, already)

            fee_snapshot = {fid: dict(self._fees[fid]) for fid in batch.fee_ids}
            control_snapshot = self._controls.get(store_id)
            try:
                for fee_id in batch.fee_ids:
                    self._settle_fee(fee_id, batch.settled_at)
                self._put_invoice(invoice)
                self._put_control(batch.control)
            except Exception as exc:
                self._fees.update(fee_snapshot)
                self._invoices.pop(invoice.invoice_id, None)
                if control_snapshot is None:
                    self._controls.pop(store_id, None)
                else:
                    self._controls[store_id] = control_snapshot
                logger.error("Settlement for store %s rolled back: %s", store_id, exc)
                raise SettlementError(store_id, str(exc)) from exc
            return copy.deepcopy(invoice)

    def _settle_fee(self, fee_id: str, settled_at: datetime) -> None:
        doc = dict(self._fees[fee_id])
        doc["settled"] = True
        doc["settled_at"] = settled_at
        self._fees[fee_id] = doc

    def _put_invoice(self, invoice: Invoice) -> None:
        self._invoices[invoice.invoice_id] = copy.deepcopy(invoice)

    def _put_control(self, control: BillingControl) -> None:
        self._controls[control.store_id] = copy.copy(control)

    # ── Notifications ─────────────────────────────────────────────────

    async def add_notification(self, notification: InvoiceNotification) -> InvoiceNotification:
        self._notifications[notification.notification_id] = copy.copy(notification)
        return notification

    async def find_notification(self, invoice_id: str) -> Optional[InvoiceNotification]:
        for notification in self._notifications.values():
            if notification.invoice_id == invoice_id:
                return copy.copy(notification)
        return None

    async def list_notifications(self, store_id: str) -> List[InvoiceNotification]:
        notes = [n for n in self._notifications.values() if n.store_id == store_id]
        return sorted(notes, key=lambda n: n.created_at, reverse=True)
