"""Billing command line.

Runs the daily billing job by hand and exposes the back-office
operations on a single store.

Usage:
    python -m scripts.run_billing run [--now 2025-02-01T03:00:00Z]
    python -m scripts.run_billing check-fees STORE_ID
    python -m scripts.run_billing init-control STORE_ID [--force]
    python -m scripts.run_billing invoices STORE_ID
    python -m scripts.run_billing notify-missing STORE_ID
"""

import argparse
import asyncio
import json
import sys

from marketbill.billing import BillingAdmin, BillingConfig, SqlLedgerStore, StoreNotFoundError
from marketbill.billing.jobs import run_daily_billing
from marketbill.billing.timestamps import to_utc
from marketbill.db.engine import create_all, get_async_engine
from marketbill.logging_config import LogFormat, LoggingConfig, configure_logging, get_logger
from marketbill.settings import get_settings

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Marketplace platform-fee billing")
    parser.add_argument(
        "--database-url", default=None,
        help="Override MARKETBILL_DATABASE_URL",
    )
    parser.add_argument(
        "--format", choices=[f.value for f in LogFormat], default=LogFormat.CONSOLE.value,
        help="Log output format (default: console)",
    )
    parser.add_argument(
        "--create-tables", action="store_true",
        help="Create billing tables before running (development databases only)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Bill every store with a due cycle")
    run.add_argument("--now", default=None, help="Evaluate cycles at this ISO timestamp")

    for name, help_text in (
        ("check-fees", "Summarize a store's fee ledger"),
        ("invoices", "List a store's invoices"),
        ("notify-missing", "Re-send missing invoice notifications"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("store_id")

    init = sub.add_parser("init-control", help="Initialize a store's billing pointer")
    init.add_argument("store_id")
    init.add_argument(
        "--force", action="store_true",
        help="Create the pointer even if the store has no fees yet",
    )
    return parser


async def _run_command(args: argparse.Namespace) -> int:
    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})

    engine = get_async_engine(settings)
    logger.info("Running %s against %s", args.command, engine.url.render_as_string(hide_password=True))
    store = SqlLedgerStore.from_engine(engine)
    try:
        if args.create_tables:
            await create_all(engine)
        return await _dispatch(args, settings, store)
    finally:
        await store.close()


async def _dispatch(args: argparse.Namespace, settings, store: SqlLedgerStore) -> int:
    if args.command == "run":
        now = to_utc(args.now) if args.now else None
        summary = await run_daily_billing(settings, now=now, store=store)
        if summary is None:
            return 1
        print(json.dumps(summary.to_dict(), indent=2))
        return 0 if not summary.stores_failed else 2

    admin = BillingAdmin(store, BillingConfig.from_settings(settings))
    try:
        if args.command == "check-fees":
            report = await admin.check_existing_fees(args.store_id)
            print("\n".join(report.summary_lines()))
        elif args.command == "invoices":
            invoices = await admin.list_store_invoices(args.store_id)
            if not invoices:
                print(f"No invoices for store {args.store_id}")
            for inv in invoices:
                print(
                    f"{inv.invoice_id}  {inv.status.value:8s}  R$ {inv.total_fee:>10}  "
                    f"{inv.cycle_start:%Y-%m-%d} -> {inv.cycle_end:%Y-%m-%d}  due {inv.due_date:%Y-%m-%d}"
                )
        elif args.command == "init-control":
            control = await admin.initialize_billing_control(args.store_id, require_store=not args.force)
            print(f"Next billing for {control.store_id}: {control.next_billing_date.isoformat()}")
        elif args.command == "notify-missing":
            result = await admin.resend_missing_notifications(args.store_id)
            print(f"{len(result.delivered)} delivered, {len(result.failed)} failed")
            return 0 if result.all_delivered else 2
    except StoreNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(LoggingConfig(format=LogFormat(args.format)))
    return asyncio.run(_run_command(args))


if __name__ == "__main__":
    sys.exit(main())
