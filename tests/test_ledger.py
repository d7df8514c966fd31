"""Tests for fee document parsing and the fee ledger reader."""

from datetime import timedelta
from decimal import Decimal

import pytest

from marketbill.billing.errors import MalformedFeeError
from marketbill.billing.ledger import FeeLedgerReader, parse_fee
from marketbill.billing.models import BillingCycle, FeeRecord, MalformedFee
from marketbill.billing.store import InMemoryLedgerStore


class TestParseFee:
    def _doc(self, **overrides):
        doc = {
            "id": "f1",
            "store_id": "s1",
            "order_id": "o1",
            "value": "12.345",
            "order_date": "2025-01-05T10:00:00Z",
            "percentage": 0.1,
            "order_total_price": 123.45,
            "payment_method": "credit_card",
        }
        doc.update(overrides)
        return doc

    def test_valid_document(self):
        fee = parse_fee(self._doc())
        assert isinstance(fee, FeeRecord)
        assert fee.value == Decimal("12.35")
        assert fee.order_total_price == Decimal("123.45")
        assert fee.order_date.tzinfo is not None
        assert fee.settled is False

    def test_defaults_for_optional_fields(self):
        fee = parse_fee({"id": "f1", "store_id": "s1", "value": 1, "order_date": 1735700400})
        assert fee.payment_method == "unknown"
        assert fee.percentage == 0.0
        assert fee.order_total_price == Decimal("0.00")

    @pytest.mark.parametrize("value", [None, "abc", float("nan"), -5])
    def test_unbillable_value_becomes_malformed(self, value):
        entry = parse_fee(self._doc(value=value))
        assert isinstance(entry, MalformedFee)
        assert entry.fee_id == "f1"
        assert entry.order_date is not None

    def test_missing_id_raises(self):
        with pytest.raises(MalformedFeeError):
            parse_fee(self._doc(id=None))

    def test_missing_store_raises(self):
        with pytest.raises(MalformedFeeError):
            parse_fee(self._doc(store_id=""))

    def test_bad_order_date_raises(self):
        with pytest.raises(MalformedFeeError) as exc_info:
            parse_fee(self._doc(order_date="not a date"))
        assert exc_info.value.fee_id == "f1"


class TestFeeLedgerReader:
    @pytest.mark.asyncio
    async def test_later_cycle_boundaries(self, store, add_fee, day):
        await add_fee("s1", 1, day(1))  # on the previous cycle end
        inside = await add_fee("s1", 2, day(1, hours=1))
        on_end = await add_fee("s1", 3, day(31))
        await add_fee("s1", 4, day(31, hours=1))

        cycle = BillingCycle("s1", day(1), day(31), include_start=False)
        entries = await FeeLedgerReader(store).read_cycle_fees("s1", cycle)
        assert [e.fee_id for e in entries] == [inside, on_end]

    @pytest.mark.asyncio
    async def test_first_cycle_includes_start(self, store, add_fee, day):
        first = await add_fee("s1", 1, day(1))
        cycle = BillingCycle("s1", day(1), day(31))
        entries = await FeeLedgerReader(store).read_cycle_fees("s1", cycle)
        assert [e.fee_id for e in entries] == [first]

    @pytest.mark.asyncio
    async def test_excludes_settled_and_other_stores(self, store, add_fee, day):
        keep = await add_fee("s1", 1, day(2))
        await add_fee("s1", 2, day(3), settled=True)
        await add_fee("s2", 3, day(3))

        cycle = BillingCycle("s1", day(1), day(31))
        entries = await FeeLedgerReader(store).read_cycle_fees("s1", cycle)
        assert [e.fee_id for e in entries] == [keep]

    @pytest.mark.asyncio
    async def test_keeps_malformed_entries(self, store, add_fee, day):
        await add_fee("s1", 5, day(2))
        await add_fee("s1", None, day(3))
        cycle = BillingCycle("s1", day(1), day(31))
        entries = await FeeLedgerReader(store).read_cycle_fees("s1", cycle)
        assert [type(e) for e in entries] == [FeeRecord, MalformedFee]

    @pytest.mark.asyncio
    async def test_drops_settled_fee_returned_by_store(self, day):
        class LeakyStore(InMemoryLedgerStore):
            async def query_fees(self, store_id, **kwargs):
                kwargs["settled"] = None
                return await super().query_fees(store_id, **kwargs)

        store = LeakyStore()
        await store.add_fee({"id": "a", "store_id": "s1", "value": 1, "order_date": day(2), "settled": True})
        await store.add_fee({"id": "b", "store_id": "s1", "value": 1, "order_date": day(3)})

        cycle = BillingCycle("s1", day(1), day(31))
        entries = await FeeLedgerReader(store).read_cycle_fees("s1", cycle)
        assert [e.fee_id for e in entries] == ["b"]

    @pytest.mark.asyncio
    async def test_earliest_unsettled_fee_date(self, store, add_fee, day):
        await add_fee("s1", 1, day(10))
        await add_fee("s1", 1, day(3), settled=True)
        await add_fee("s1", 1, day(5))
        reader = FeeLedgerReader(store)

        assert await reader.earliest_unsettled_fee_date("s1") == day(5)
        assert await reader.earliest_unsettled_fee_date("s1", after=day(5)) == day(10)
        assert await reader.earliest_unsettled_fee_date("s1", after=day(10)) is None
        assert await reader.earliest_unsettled_fee_date("nobody") is None

    @pytest.mark.asyncio
    async def test_earliest_billable_fee_date_skips_zero_and_malformed(self, store, add_fee, day):
        await add_fee("s1", "abc", day(1))
        await add_fee("s1", "0.00", day(2))
        await store.add_fee({"id": "no-date", "store_id": "s1", "value": 5, "order_date": "soon"})
        await add_fee("s1", "3.50", day(9))
        await add_fee("s1", "7.00", day(4), settled=True)
        reader = FeeLedgerReader(store)

        assert await reader.earliest_billable_fee_date("s1") == day(9)
        assert await reader.earliest_billable_fee_date("s1", after=day(9)) is None
        assert await reader.earliest_unsettled_fee_date("s1") == day(1)

    @pytest.mark.asyncio
    async def test_read_all_fees_skips_unreadable(self, store, add_fee, day):
        await add_fee("s1", 1, day(2))
        await add_fee("s1", 2, day(3), settled=True)
        await add_fee("s1", 3, "garbage")

        entries = await FeeLedgerReader(store).read_all_fees("s1")
        assert len(entries) == 2
        assert entries[0].order_date + timedelta(days=1) == entries[1].order_date
