"""Pytest configuration and shared fixtures."""

import logging
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from marketbill.billing import BillingConfig, InMemoryLedgerStore, SqlLedgerStore  # noqa: E402
from marketbill.db.engine import create_all, get_async_engine  # noqa: E402

DAY1 = datetime(2025, 1, 1, 3, 0, tzinfo=timezone.utc)


def _fee_doc(store_id: str, value, order_date, **extra) -> dict:
    if isinstance(value, (int, float, str)):
        try:
            value = Decimal(str(value))
        except InvalidOperation:
            pass  # stored as-is, read back as a malformed fee
    doc = {
        "store_id": store_id,
        "order_id": f"order-{store_id}",
        "value": value,
        "percentage": 0.08,
        "order_total_price": Decimal("100.00"),
        "order_date": order_date,
        "payment_method": "pix",
        "settled": False,
    }
    doc.update(extra)
    return doc


@pytest.fixture
def day():
    """day(1) is DAY1 (2025-01-01 03:00 UTC, midnight in Sao Paulo)."""
    def _day(n: int, hours: float = 0) -> datetime:
        return DAY1 + timedelta(days=n - 1, hours=hours)

    return _day


@pytest.fixture
def config():
    return BillingConfig()


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def add_fee(store):
    async def _add(store_id, value, order_date, **extra):
        return await store.add_fee(_fee_doc(store_id, value, order_date, **extra))

    return _add


@pytest_asyncio.fixture
async def sql_store():
    engine = get_async_engine(url="sqlite+aiosqlite:///:memory:")
    await create_all(engine)
    sql = SqlLedgerStore.from_engine(engine)
    yield sql
    await sql.close()


@pytest.fixture
def add_sql_fee(sql_store):
    async def _add(store_id, value, order_date, **extra):
        return await sql_store.add_fee(_fee_doc(store_id, value, order_date, **extra))

    return _add


@pytest.fixture
def fee_doc():
    """Builder for raw fee documents, for stores built inside a test."""
    return _fee_doc


@pytest.fixture
def restore_logging():
    """Undo configure_logging() so later tests keep pytest's handlers."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
