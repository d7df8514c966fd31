"""Tests for billing cycle resolution."""

import pytest

from marketbill.billing.config import BillingConfig
from marketbill.billing.resolver import CycleResolver
from marketbill.billing.scheduler import BillingScheduler


class TestCycleResolver:
    @pytest.mark.asyncio
    async def test_nothing_to_resolve(self, store):
        assert await CycleResolver(store).resolve("s1") is None

    @pytest.mark.asyncio
    async def test_first_cycle_starts_at_earliest_unsettled_fee(self, store, add_fee, day):
        await add_fee("s1", 15, day(2))
        await add_fee("s1", 10, day(1))
        await add_fee("s1", 99, day(1, hours=-5), settled=True)

        cycle = await CycleResolver(store).resolve("s1")
        assert cycle.start == day(1)
        assert cycle.end == day(31)
        assert cycle.include_start is True
        assert cycle.previous_invoice_id is None

    @pytest.mark.asyncio
    async def test_next_cycle_starts_at_previous_end(self, store, add_fee, day):
        await add_fee("s1", 10, day(1))
        outcome = await BillingScheduler(store).process_store("s1", day(31))

        cycle = await CycleResolver(store).resolve("s1", day(32))
        assert cycle.start == day(31)
        assert cycle.end == day(61)
        assert cycle.include_start is False
        assert cycle.previous_invoice_id == outcome.invoice.invoice_id

    @pytest.mark.asyncio
    async def test_resolves_after_invoice_even_without_fees(self, store, add_fee, day):
        await add_fee("s1", 10, day(1))
        await BillingScheduler(store).process_store("s1", day(31))
        cycle = await CycleResolver(store).resolve("s1", day(70))
        assert cycle.end == day(61)

    @pytest.mark.asyncio
    async def test_empty_periods_fold_forward(self, store, add_fee, day):
        await add_fee("s1", 10, day(1))
        await BillingScheduler(store).process_store("s1", day(31))
        await add_fee("s1", 20, day(75))

        cycle = await CycleResolver(store).resolve("s1", day(80))
        assert cycle.start == day(31)
        assert cycle.end == day(91)
        assert cycle.contains(day(75))

    @pytest.mark.asyncio
    async def test_no_fold_before_cycle_elapses(self, store, add_fee, day):
        await add_fee("s1", 10, day(1))
        await BillingScheduler(store).process_store("s1", day(31))
        await add_fee("s1", 20, day(75))

        cycle = await CycleResolver(store).resolve("s1", day(40))
        assert cycle.end == day(61)

    @pytest.mark.asyncio
    async def test_configurable_period(self, store, add_fee, day):
        await add_fee("s1", 10, day(1))
        cycle = await CycleResolver(store, config=BillingConfig(cycle_period_days=7)).resolve("s1")
        assert cycle.end == day(8)

    @pytest.mark.asyncio
    async def test_first_cycle_skips_fees_without_amount(self, store, add_fee, day):
        await add_fee("s1", "abc", day(1))
        await add_fee("s1", "0.00", day(5))
        await add_fee("s1", "10.00", day(40))

        cycle = await CycleResolver(store).resolve("s1", day(80))
        assert cycle.start == day(40)
        assert cycle.end == day(70)
        assert cycle.include_start is True

    @pytest.mark.asyncio
    async def test_first_cycle_without_billable_fee_starts_at_oldest_fee(self, store, add_fee, day):
        await add_fee("s1", "0.00", day(3))
        await add_fee("s1", None, day(2))

        cycle = await CycleResolver(store).resolve("s1")
        assert cycle.start == day(2)
        assert cycle.end == day(32)

    @pytest.mark.asyncio
    async def test_zero_fee_period_folds_forward(self, store, add_fee, day):
        await add_fee("s1", 10, day(1))
        await BillingScheduler(store).process_store("s1", day(31))
        await add_fee("s1", "0.00", day(40))
        await add_fee("s1", "10.00", day(70))

        cycle = await CycleResolver(store).resolve("s1", day(61))
        assert cycle.start == day(31)
        assert cycle.end == day(91)
