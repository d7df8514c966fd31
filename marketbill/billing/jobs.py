"""Scheduled billing job.

The external scheduler (cron, Cloud Scheduler, ...) calls
``run_daily_billing`` once a day at 00:00 America/Sao_Paulo. The job takes
no input, builds its own engine and store, and never raises: failures end
up in the logs.
"""

import asyncio
from datetime import datetime
from typing import Optional

from marketbill.db.engine import get_async_engine
from marketbill.logging_config import configure_logging, get_logger
from marketbill.settings import Settings, get_settings

from .config import BillingConfig
from .models import BillingRunSummary
from .scheduler import BillingScheduler
from .sql_store import SqlLedgerStore
from .store import LedgerStore

logger = get_logger(__name__)


async def _release(store: LedgerStore) -> None:
    try:
        await store.close()
    except Exception:
        logger.exception("Failed to release ledger store")


async def run_daily_billing(
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    store: Optional[LedgerStore] = None,
) -> Optional[BillingRunSummary]:
    """Bill every due store once. Returns None if the run itself could not start."""
    owns_store = store is None
    try:
        settings = settings or get_settings()
        config = BillingConfig.from_settings(settings)
        if store is None:
            store = SqlLedgerStore.from_engine(get_async_engine(settings))
        summary = await BillingScheduler(store, config).run(now)
    except Exception:
        logger.exception("Daily billing run aborted")
        return None
    finally:
        if owns_store and store is not None:
            await _release(store)

    if summary.stores_failed:
        logger.warning(
            "Stores that failed billing: %s",
            ", ".join(o.store_id for o in summary.outcomes if o.error),
        )
    return summary


def main() -> None:
    configure_logging()
    asyncio.run(run_daily_billing())


if __name__ == "__main__":
    main()
