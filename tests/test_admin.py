"""Tests for back-office billing operations."""

from decimal import Decimal

import pytest

from marketbill.billing.admin import BillingAdmin
from marketbill.billing.config import OutcomeStatus
from marketbill.billing.errors import StoreNotFoundError
from marketbill.billing.scheduler import BillingScheduler


class TestBillingControlAdmin:
    @pytest.mark.asyncio
    async def test_initialize_creates_pointer(self, store, add_fee, day):
        await add_fee("S1", "10.00", day(1))
        admin = BillingAdmin(store)

        control = await admin.initialize_billing_control("S1", now=day(5))
        assert control.last_billing_date == day(5)
        assert control.next_billing_date == day(35)
        assert control.total_last_invoice == Decimal("0.00")
        assert await admin.check_billing_control("S1")

    @pytest.mark.asyncio
    async def test_initialize_keeps_existing_pointer(self, store, add_fee, day):
        await add_fee("S1", "10.00", day(1))
        admin = BillingAdmin(store)
        first = await admin.initialize_billing_control("S1", now=day(5))
        again = await admin.initialize_billing_control("S1", now=day(20))
        assert again.next_billing_date == first.next_billing_date

    @pytest.mark.asyncio
    async def test_unknown_store(self, store, day):
        admin = BillingAdmin(store)
        with pytest.raises(StoreNotFoundError):
            await admin.initialize_billing_control("ghost", now=day(1))
        assert not await admin.check_billing_control("ghost")
        assert await admin.get_billing_control("ghost") is None

    @pytest.mark.asyncio
    async def test_unknown_store_forced(self, store, day):
        control = await BillingAdmin(store).initialize_billing_control(
            "new-store", now=day(1), require_store=False
        )
        assert control.next_billing_date == day(31)

    @pytest.mark.asyncio
    async def test_empty_store_id(self, store):
        with pytest.raises(ValueError):
            await BillingAdmin(store).initialize_billing_control("")


class TestFeeReport:
    @pytest.mark.asyncio
    async def test_counts_and_breakdown(self, store, add_fee, day):
        await add_fee("S1", "10.00", day(1))
        await add_fee("S1", "15.00", day(2), payment_method="credit_card")
        await add_fee("S1", "5.00", day(1), settled=True)
        await add_fee("S1", None, day(3))

        report = await BillingAdmin(store).check_existing_fees("S1", now=day(10))

        assert report.total_fees == 4
        assert report.settled_count == 1
        assert report.settled_total == Decimal("5.00")
        assert report.unsettled_count == 3
        assert report.malformed_count == 1
        assert report.unsettled_total == Decimal("25.00")
        assert report.by_payment_method == {
            "pix": {"count": 1, "total": Decimal("10.00")},
            "credit_card": {"count": 1, "total": Decimal("15.00")},
        }
        assert report.stranded_fee_ids == []
        assert report.open_cycle.start == day(1)
        assert report.open_cycle.end == day(31)

        lines = report.summary_lines()
        assert lines[0] == "Store S1: 4 fees"
        assert "  malformed: 1" in lines

    @pytest.mark.asyncio
    async def test_totals_stay_exact_decimals(self, store, add_fee, day):
        for value in ("0.10", "0.20", "0.70"):
            await add_fee("S1", value, day(2))
        await add_fee("S1", "90000000000000000.00", day(3), payment_method="boleto")
        await add_fee("S1", "90000000000000000.00", day(4), payment_method="boleto")

        report = await BillingAdmin(store).check_existing_fees("S1", now=day(10))

        assert report.unsettled_total == Decimal("180000000000000001.00")
        pix = report.by_payment_method["pix"]
        assert pix == {"count": 3, "total": Decimal("1.00")}
        assert isinstance(pix["total"], Decimal)
        assert report.by_payment_method["boleto"]["total"] == Decimal("180000000000000000.00")

    @pytest.mark.asyncio
    async def test_reports_stranded_fees(self, store, add_fee, day):
        await add_fee("S1", "10.00", day(1))
        await BillingScheduler(store).run(day(31))
        backdated = await add_fee("S1", "3.00", day(10))
        await add_fee("S1", "4.00", day(40))

        report = await BillingAdmin(store).check_existing_fees("S1", now=day(41))
        assert report.stranded_fee_ids == [backdated]
        assert report.unsettled_total == Decimal("7.00")

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        report = await BillingAdmin(store).check_existing_fees("S1")
        assert report.total_fees == 0
        assert report.open_cycle is None


class TestManualActions:
    @pytest.mark.asyncio
    async def test_generate_invoice_now(self, store, add_fee, day):
        await add_fee("S1", "10.00", day(1))
        admin = BillingAdmin(store)
        outcome = await admin.generate_invoice_now("S1", now=day(31))

        assert outcome.status == OutcomeStatus.INVOICED
        invoices = await admin.list_store_invoices("S1")
        assert [i.invoice_id for i in invoices] == [outcome.invoice.invoice_id]

    @pytest.mark.asyncio
    async def test_resend_missing_notifications(self, store, add_fee, day):
        await add_fee("S1", "10.00", day(1))
        scheduler = BillingScheduler(store)
        await scheduler.close_cycle("S1", day(31))  # commits without notifying
        admin = BillingAdmin(store, scheduler=scheduler)

        result = await admin.resend_missing_notifications("S1")
        assert len(result.delivered) == 1
        assert len(await store.list_notifications("S1")) == 1

        again = await admin.resend_missing_notifications("S1")
        assert again.delivered == []
        assert again.all_delivered
