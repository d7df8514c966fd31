"""Notification Emitter.

Inbox notifications are a side effect of a committed invoice, outside its
atomicity boundary: a failed write is logged and the invoice stands.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Iterable, Optional

from .config import BillingConfig, DEFAULT_BILLING_CONFIG, NotificationType
from .models import FanOutResult, Invoice, InvoiceNotification, new_id
from .store import LedgerStore
from .timestamps import utcnow

logger = logging.getLogger(__name__)


def format_brl(amount: Decimal) -> str:
    """R$ amount with pt-BR separators, e.g. ``R$ 1.234,50``."""
    text = f"{amount:,.2f}"
    return "R$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


class NotificationEmitter:
    """Writes one "invoice created" notification per invoice."""

    def __init__(self, store: LedgerStore, config: Optional[BillingConfig] = None) -> None:
        self._store = store
        self._config = config or DEFAULT_BILLING_CONFIG

    def build(self, invoice: Invoice) -> InvoiceNotification:
        due_local = invoice.due_date.astimezone(self._config.tzinfo)
        message = (
            f"Uma nova fatura no valor de {format_brl(invoice.total_fee)} foi gerada. "
            f"Vencimento em {due_local.strftime('%d/%m/%Y')}."
        )
        return InvoiceNotification(
            notification_id=new_id(),
            store_id=invoice.store_id,
            invoice_id=invoice.invoice_id,
            title=self._config.notification_title,
            message=message,
            total_fee=invoice.total_fee,
            due_date=invoice.due_date,
            type=NotificationType.INVOICE_CREATED,
            read=False,
            created_at=utcnow(),
        )

    async def _deliver(self, invoice: Invoice) -> InvoiceNotification:
        existing = await self._store.find_notification(invoice.invoice_id)
        if existing is not None:
            logger.debug("Invoice %s already notified", invoice.invoice_id)
            return existing
        notification = await self._store.add_notification(self.build(invoice))
        logger.info("Invoice notification sent to store %s", invoice.store_id)
        return notification

    async def emit(self, invoice: Invoice) -> Optional[InvoiceNotification]:
        """Best-effort notification. Returns None if it could not be written."""
        try:
            return await self._deliver(invoice)
        except Exception:
            logger.exception(
                "Failed to notify store %s of invoice %s", invoice.store_id, invoice.invoice_id
            )
            return None

    async def emit_many(self, invoices: Iterable[Invoice]) -> FanOutResult:
        """Notify many stores with bounded concurrency.

        Each failure is collected; the remaining deliveries still run.
        """
        semaphore = asyncio.Semaphore(self._config.notification_concurrency)
        result = FanOutResult()

        async def deliver_one(invoice: Invoice) -> None:
            async with semaphore:
                try:
                    result.delivered.append(await self._deliver(invoice))
                except Exception as exc:
                    logger.warning("Notification for invoice %s failed: %s", invoice.invoice_id, exc)
                    result.failed.append((invoice.invoice_id, exc))

        await asyncio.gather(*(deliver_one(inv) for inv in invoices))
        if result.failed:
            logger.error(
                "%d of %d invoice notifications failed",
                len(result.failed), len(result.failed) + len(result.delivered),
            )
        return result
