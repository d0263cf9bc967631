"""Orderflow ledger management CLI.

Creates or drops the ledger tables at LEDGER_DATABASE_URI (or --database-uri),
and runs the scheduled pending-order expiry sweep.

Usage:
    python src/manage.py setup-db        # Create all tables
    python src/manage.py drop-db         # Drop all tables
    python src/manage.py expire-orders   # Cancel unpaid orders past PENDING_ORDER_TTL_HOURS
"""

import argparse
import sys

from orderflow.ledger.store import RECORD_TABLES, LedgerStore


def _store(database_uri=None):
    from orderflow.config import get_settings

    return LedgerStore(database_uri or get_settings().ledger_database_uri)


def setup_database(database_uri=None):
    """Create the record tables and the processed-events table."""
    store = _store(database_uri)
    print(f"Creating ledger schema at {store.database_uri}...")
    store.create_schema()
    store.dispose()
    print(f"  {len(RECORD_TABLES)} record tables and processed_events ready.")
    print("Done.")


def drop_database(database_uri=None):
    store = _store(database_uri)
    print(f"Dropping ledger schema at {store.database_uri}...")
    store.drop_schema()
    store.dispose()
    print("Done.")


def expire_orders(database_uri=None):
    """Cancel pending online orders whose checkout window has passed."""
    from orderflow.ledger import configure_ledger, get_ledger
    from orderflow.order.state_machine import OrderStateMachine

    ledger = configure_ledger(database_uri) if database_uri else get_ledger()
    print(f"Expiring pending orders in {ledger.database_uri}...")
    expired = OrderStateMachine(ledger).expire_pending()
    print(f"  {len(expired)} orders cancelled.")
    print("Done.")
    return expired


def _run_in_domain(func, *args):
    from orderflow.domain import orderflow
    from orderflow.utils.logging import configure_logging

    configure_logging()
    orderflow.init()
    with orderflow.domain_context():
        return func(*args)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Orderflow ledger management")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("setup-db", "Create all ledger tables"),
        ("drop-db", "Drop all ledger tables"),
        ("expire-orders", "Cancel unpaid orders past their checkout window"),
    ):
        subparser = subparsers.add_parser(name, help=help_text)
        subparser.add_argument("--database-uri", help="Override LEDGER_DATABASE_URI")

    args = parser.parse_args(argv)

    if args.command == "setup-db":
        setup_database(args.database_uri)
    elif args.command == "drop-db":
        drop_database(args.database_uri)
    elif args.command == "expire-orders":
        _run_in_domain(expire_orders, args.database_uri)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
