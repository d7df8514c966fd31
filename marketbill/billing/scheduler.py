"""Scheduler Trigger.

Entry point of the daily billing job. Picks every store with a due cycle
and runs the billing pipeline once per store:

    resolve cycle -> read fees -> aggregate -> commit -> notify

A store that fails is logged and recorded; the run always continues to
the next store.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from marketbill.logging_config import PerformanceTimer, RunContext, log_performance

from .aggregator import InvoiceAggregator
from .config import BillingConfig, DEFAULT_BILLING_CONFIG, OutcomeStatus, SkipReason
from .errors import StoreTimeoutError
from .ledger import FeeLedgerReader
from .models import BillingRunSummary, Invoice, StoreOutcome
from .notifier import NotificationEmitter
from .resolver import CycleResolver
from .settlement import SettlementCommitter
from .store import LedgerStore
from .timestamps import to_utc, utcnow

logger = logging.getLogger(__name__)


class BillingScheduler:
    """Runs the billing pipeline over every store with a due cycle."""

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[BillingConfig] = None,
        reader: Optional[FeeLedgerReader] = None,
        resolver: Optional[CycleResolver] = None,
        aggregator: Optional[InvoiceAggregator] = None,
        committer: Optional[SettlementCommitter] = None,
        notifier: Optional[NotificationEmitter] = None,
    ) -> None:
        self._store = store
        self._config = config or DEFAULT_BILLING_CONFIG
        self._reader = reader or FeeLedgerReader(store)
        self._resolver = resolver or CycleResolver(store, self._reader, self._config)
        self._aggregator = aggregator or InvoiceAggregator()
        self._committer = committer or SettlementCommitter(store, self._config)
        self._notifier = notifier or NotificationEmitter(store, self._config)

    @property
    def config(self) -> BillingConfig:
        return self._config

    @property
    def notifier(self) -> NotificationEmitter:
        return self._notifier

    @property
    def resolver(self) -> CycleResolver:
        return self._resolver

    async def candidate_store_ids(self, now: datetime) -> List[str]:
        """Stores whose pointer is due, plus stores never billed that hold fees."""
        due = await self._store.list_due_store_ids(now)
        unbilled = await self._store.list_unbilled_store_ids()
        return sorted(set(due) | set(unbilled))

    # ── Per-store pipeline ────────────────────────────────────────────

    async def close_cycle(self, store_id: str, now: datetime) -> StoreOutcome:
        """Resolve, read, aggregate and commit one store's due cycle."""
        cycle = await self._resolver.resolve(store_id, now)
        if cycle is None:
            return StoreOutcome(store_id, OutcomeStatus.SKIPPED, SkipReason.NO_OPEN_CYCLE)
        if not cycle.is_due(now):
            logger.debug("Cycle of store %s ends %s; not due", store_id, cycle.end.isoformat())
            return StoreOutcome(store_id, OutcomeStatus.SKIPPED, SkipReason.CYCLE_NOT_DUE)

        entries = await self._reader.read_cycle_fees(store_id, cycle)
        aggregation = self._aggregator.aggregate(entries)
        if not aggregation.is_billable:
            logger.info("Nothing to bill for store %s in cycle ending %s", store_id, cycle.end.isoformat())
            return StoreOutcome(
                store_id,
                OutcomeStatus.SKIPPED,
                SkipReason.NOTHING_TO_BILL,
                skipped_fees=len(aggregation.skipped),
            )

        invoice = await self._committer.commit(store_id, cycle, aggregation, now)
        return StoreOutcome(
            store_id,
            OutcomeStatus.INVOICED,
            invoice=invoice,
            skipped_fees=len(aggregation.skipped),
        )

    @log_performance()
    async def process_store(self, store_id: str, now: Optional[datetime] = None) -> StoreOutcome:
        """Close a store's cycle within the store timeout, then notify.

        Raises whatever the pipeline raises; ``StoreTimeoutError`` when the
        timeout expires. A timed-out commit is rolled back by the store.
        """
        now = to_utc(now) if now is not None else utcnow()
        timeout = self._config.store_timeout_seconds
        try:
            outcome = await asyncio.wait_for(self.close_cycle(store_id, now), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StoreTimeoutError(store_id, timeout) from exc

        if outcome.invoice is not None:
            await self._notifier.emit(outcome.invoice)
        return outcome

    async def _run_store(
        self,
        store_id: str,
        now: datetime,
        semaphore: asyncio.Semaphore,
    ) -> StoreOutcome:
        async with semaphore:
            with RunContext(store_id=store_id):
                try:
                    return await self.process_store(store_id, now)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception("Billing failed for store %s", store_id)
                    return StoreOutcome(
                        store_id,
                        OutcomeStatus.FAILED,
                        error=f"{type(exc).__name__}: {exc}",
                    )

    # ── Run ───────────────────────────────────────────────────────────

    async def run(self, now: Optional[datetime] = None) -> BillingRunSummary:
        """Bill every due store once.

        Re-running with nothing newly due writes nothing.
        """
        now = to_utc(now) if now is not None else utcnow()
        with RunContext() as ctx, PerformanceTimer("billing_run"):
            summary = BillingRunSummary(run_id=ctx.run_id, started_at=utcnow())
            store_ids = await self.candidate_store_ids(now)
            if not store_ids:
                logger.info("No stores to bill at %s", now.isoformat())
            else:
                logger.info("Billing %d store(s) at %s", len(store_ids), now.isoformat())

            semaphore = asyncio.Semaphore(self._config.max_concurrent_stores)
            summary.outcomes = list(
                await asyncio.gather(*(self._run_store(s, now, semaphore) for s in store_ids))
            )

            await self._retry_notifications(summary)
            summary.finished_at = utcnow()
            logger.info(
                "Billing run finished: %d invoiced, %d skipped, %d failed, total %s %s",
                summary.invoices_created, summary.stores_skipped,
                summary.stores_failed, self._config.currency, summary.total_invoiced,
            )
        return summary

    async def _retry_notifications(self, summary: BillingRunSummary) -> None:
        """Second chance for invoices of this run whose notification did not land."""
        invoices: List[Invoice] = [o.invoice for o in summary.outcomes if o.invoice is not None]
        missing = []
        for invoice in invoices:
            try:
                if await self._store.find_notification(invoice.invoice_id) is None:
                    missing.append(invoice)
            except Exception as exc:
                logger.warning("Cannot check notification of invoice %s: %s", invoice.invoice_id, exc)
        if missing:
            result = await self._notifier.emit_many(missing)
            logger.info("Notification retry: %d delivered, %d failed", len(result.delivered), len(result.failed))
