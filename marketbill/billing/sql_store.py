"""SQLAlchemy-backed ledger store.

Every settlement runs in a single database transaction. Fees are flipped
with ``UPDATE ... WHERE settled = false``; if fewer rows change than were
billed, another run got there first and the whole transaction is rolled
back. A unique ``(store_id, cycle_end)`` index stops two runs from
invoicing the same cycle.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from marketbill.db.engine import get_async_session_factory
from marketbill.db.models import (
    AppFeeRecord,
    BillingControlRecord,
    InvoiceNotificationRecord,
    InvoiceRecord,
)

from .config import InvoiceStatus, NotificationType
from .errors import ConcurrentSettlementError, SettlementError
from .models import (
    BillingControl,
    FeeDetail,
    Invoice,
    InvoiceNotification,
    SettlementBatch,
    new_id,
    to_money,
)
from .store import FeeDocument, LedgerStore
from .timestamps import to_utc

logger = logging.getLogger(__name__)

_FEE_COLUMNS = (
    "store_id",
    "order_id",
    "value",
    "percentage",
    "order_total_price",
    "payment_method",
    "is_premium_rate",
    "customer_id",
    "description",
    "settled",
)


def _ts(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way in and out; always bind and read UTC.
    return to_utc(value) if value is not None else None


def _fee_to_document(row: AppFeeRecord) -> FeeDocument:
    doc = {"id": row.id}
    for column in _FEE_COLUMNS:
        doc[column] = getattr(row, column)
    doc["order_date"] = _ts(row.order_date)
    doc["settled_at"] = _ts(row.settled_at)
    return doc


def _control_from_row(row: BillingControlRecord) -> BillingControl:
    return BillingControl(
        store_id=row.store_id,
        last_billing_date=_ts(row.last_billing_date),
        next_billing_date=_ts(row.next_billing_date),
        total_last_invoice=to_money(row.total_last_invoice or 0),
        updated_at=_ts(row.updated_at) or _ts(row.last_billing_date),
    )


def _details_from_json(text: str) -> List[FeeDetail]:
    return [
        FeeDetail(
            fee_id=item["id"],
            value=Decimal(item["value"]),
            order_date=to_utc(item["orderDate"]),
            order_total_price=Decimal(item["orderTotalPrice"]),
            percentage=float(item["percentage"]),
            payment_method=item["paymentMethod"],
        )
        for item in json.loads(text or "[]")
    ]


def _invoice_from_row(row: InvoiceRecord) -> Invoice:
    return Invoice(
        invoice_id=row.invoice_id,
        store_id=row.store_id,
        total_fee=to_money(row.total_fee),
        cycle_start=_ts(row.cycle_start),
        cycle_end=_ts(row.cycle_end),
        due_date=_ts(row.due_date),
        fee_ids=json.loads(row.fee_ids_json or "[]"),
        details=_details_from_json(row.details_json),
        status=InvoiceStatus(row.status),
        created_at=_ts(row.created_at),
        paid_at=_ts(row.paid_at),
        updated_at=_ts(row.updated_at) or _ts(row.created_at),
    )


def _notification_from_row(row: InvoiceNotificationRecord) -> InvoiceNotification:
    return InvoiceNotification(
        notification_id=row.notification_id,
        store_id=row.store_id,
        invoice_id=row.invoice_id,
        title=row.title,
        message=row.message,
        total_fee=to_money(row.total_fee),
        due_date=_ts(row.due_date),
        type=NotificationType(row.type),
        read=bool(row.read),
        created_at=_ts(row.created_at),
    )


class SqlLedgerStore(LedgerStore):
    """Ledger store on a SQLAlchemy async engine."""

    def __init__(self, session_factory: async_sessionmaker, engine: Optional[AsyncEngine] = None) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> "SqlLedgerStore":
        return cls(get_async_session_factory(engine), engine)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # ── Fees ──────────────────────────────────────────────────────────

    async def add_fee(self, document: FeeDocument) -> str:
        fee_id = document.get("id") or new_id()
        row = AppFeeRecord(id=fee_id, order_date=_ts(document["order_date"]))
        for column in _FEE_COLUMNS:
            if column in document:
                setattr(row, column, document[column])
        row.settled = bool(document.get("settled", False))
        if document.get("settled_at") is not None:
            row.settled_at = _ts(document["settled_at"])
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)
        return fee_id

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
        stmt = select(AppFeeRecord).where(AppFeeRecord.store_id == store_id)
        if settled is not None:
            stmt = stmt.where(AppFeeRecord.settled.is_(settled))
        if start is not None:
            start = _ts(start)
            stmt = stmt.where(
                AppFeeRecord.order_date >= start if start_inclusive else AppFeeRecord.order_date > start
            )
        if end is not None:
            stmt = stmt.where(AppFeeRecord.order_date <= _ts(end))
        stmt = stmt.order_by(AppFeeRecord.order_date.asc(), AppFeeRecord.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_fee_to_document(row) for row in rows]

    async def list_unbilled_store_ids(self) -> List[str]:
        controlled = select(BillingControlRecord.store_id)
        stmt = (
            select(AppFeeRecord.store_id)
            .where(AppFeeRecord.settled.is_(False))
            .where(AppFeeRecord.store_id.not_in(controlled))
            .distinct()
            .order_by(AppFeeRecord.store_id)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    # ── Billing control ───────────────────────────────────────────────

    async def get_billing_control(self, store_id: str) -> Optional[BillingControl]:
        async with self._session_factory() as session:
            row = await session.get(BillingControlRecord, store_id)
            return _control_from_row(row) if row is not None else None

    async def create_billing_control(self, control: BillingControl) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if await session.get(BillingControlRecord, control.store_id) is not None:
                        return False
                    session.add(
                        BillingControlRecord(
                            store_id=control.store_id,
                            last_billing_date=_ts(control.last_billing_date),
                            next_billing_date=_ts(control.next_billing_date),
                            total_last_invoice=control.total_last_invoice,
                            updated_at=_ts(control.updated_at),
                        )
                    )
        except IntegrityError:
            return False
        return True

    async def list_due_store_ids(self, now: datetime) -> List[str]:
        stmt = (
            select(BillingControlRecord.store_id)
            .where(BillingControlRecord.next_billing_date <= _ts(now))
            .order_by(BillingControlRecord.store_id)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    # ── Invoices ──────────────────────────────────────────────────────

    async def get_latest_invoice(self, store_id: str) -> Optional[Invoice]:
        stmt = (
            select(InvoiceRecord)
            .where(InvoiceRecord.store_id == store_id)
            .order_by(InvoiceRecord.cycle_end.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _invoice_from_row(row) if row is not None else None

    async def list_invoices(self, store_id: str) -> List[Invoice]:
        stmt = (
            select(InvoiceRecord)
            .where(InvoiceRecord.store_id == store_id)
            .order_by(InvoiceRecord.cycle_end.desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_invoice_from_row(row) for row in rows]

    async def commit_settlement(self, batch: SettlementBatch) -> Invoice:
        store_id = batch.store_id
        invoice = batch.invoice
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        InvoiceRecord(
                            invoice_id=invoice.invoice_id,
                            store_id=store_id,
                            total_fee=invoice.total_fee,
                            status=invoice.status.value,
                            cycle_start=_ts(invoice.cycle_start),
                            cycle_end=_ts(invoice.cycle_end),
                            due_date=_ts(invoice.due_date),
                            fee_ids_json=json.dumps(invoice.fee_ids),
                            details_json=json.dumps([d.to_dict() for d in invoice.details]),
                            created_at=_ts(invoice.created_at),
                            paid_at=_ts(invoice.paid_at),
                            updated_at=_ts(invoice.updated_at),
                        )
                    )
                    try:
                        await session.flush()
                    except IntegrityError as exc:
                        raise ConcurrentSettlementError(
                            store_id,
                            message=f"cycle ending {invoice.cycle_end.isoformat()} already invoiced",
                        ) from exc

                    already = await session.execute(
                        select(AppFeeRecord.id)
                        .where(AppFeeRecord.id.in_(batch.fee_ids))
                        .where(AppFeeRecord.settled.is_(True))
                    )
                    already_settled = sorted(already.scalars().all())
                    if already_settled:
                        raise ConcurrentSettlementError(store_id, already_settled)

                    result = await session.execute(
                        update(AppFeeRecord)
                        .where(AppFeeRecord.id.in_(batch.fee_ids))
                        .where(AppFeeRecord.store_id == store_id)
                        .where(AppFeeRecord.settled.is_(False))
                        .values(settled=True, settled_at=_ts(batch.settled_at))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != len(batch.fee_ids):
                        raise ConcurrentSettlementError(
                            store_id,
                            message=(
                                f"{len(batch.fee_ids) - result.rowcount} fee(s) settled "
                                "or removed while the cycle was closing"
                            ),
                        )

                    control = batch.control
                    row = await session.get(BillingControlRecord, store_id)
                    if row is None:
                        row = BillingControlRecord(store_id=store_id)
                        session.add(row)
                    row.last_billing_date = _ts(control.last_billing_date)
                    row.next_billing_date = _ts(control.next_billing_date)
                    row.total_last_invoice = control.total_last_invoice
                    row.updated_at = _ts(control.updated_at)
        except SettlementError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Settlement transaction for store %s rolled back: %s", store_id, exc)
            raise SettlementError(store_id, str(exc)) from exc
        return invoice

    # ── Notifications ─────────────────────────────────────────────────

    async def add_notification(self, notification: InvoiceNotification) -> InvoiceNotification:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    InvoiceNotificationRecord(
                        notification_id=notification.notification_id,
                        store_id=notification.store_id,
                        invoice_id=notification.invoice_id,
                        type=notification.type.value,
                        title=notification.title,
                        message=notification.message,
                        total_fee=notification.total_fee,
                        due_date=_ts(notification.due_date),
                        read=notification.read,
                        created_at=_ts(notification.created_at),
                    )
                )
        return notification

    async def find_notification(self, invoice_id: str) -> Optional[InvoiceNotification]:
        stmt = select(InvoiceNotificationRecord).where(InvoiceNotificationRecord.invoice_id == invoice_id)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _notification_from_row(row) if row is not None else None

    async def list_notifications(self, store_id: str) -> List[InvoiceNotification]:
        stmt = (
            select(InvoiceNotificationRecord)
            .where(InvoiceNotificationRecord.store_id == store_id)
            .order_by(InvoiceNotificationRecord.created_at.desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_notification_from_row(row) for row in rows]
