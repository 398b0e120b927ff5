# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Command-Line Interface (CLI) for Estate Ledger.

This module wires together the main building blocks of Estate Ledger:

- global configuration (policy, database, logging, display options),
- snapshot import (CSV directory) and database access,
- the reconciliation engine (balances, ledgers, KPIs, checks),
- the payout writers (owner payouts, broker commission batches),
- view helpers (tabular rendering).

The CLI is intentionally thin: it does not implement accounting logic
itself. It loads the records, builds a ReconciliationEngine and prints the
DataFrames produced by views.py.


High-level pipeline
-------------------

1) Load the main TOML configuration (estate_ledger_config.toml by default)
   using ``load_app_config()`` and configure structured logging.

2) Open the record store:
   - from the SQLite database (default), persisting every write, or
   - from a CSV directory (``--snapshot-dir``), read-only.

3) Run the requested subcommand:

   import DIR
       Read a CSV snapshot directory and save it into the database.
   balances BUCKET
       Per-entity balances of one bucket (rental_income, security_deposit,
       broker_commission, project_funds, building_funds).
   ledger BUCKET ENTITY_ID
       Ledger rows of one entity with running balance.
   kpi [KPI_ID ...]
       Dashboard KPIs (all of them when no id is given).
   check
       Data-quality report: missing system categories, dangling references,
       inconsistent bill / invoice statuses.
   commissions BROKER_ID
       Outstanding commissions of a broker, per agreement.
   pay-owner
       Record an owner payout.
   pay-broker
       Record a batch of broker commission payments.

Errors raised by the engine (invalid amount, missing category, unknown
record, ...) are reported as a one-line message and a non-zero exit code.
"""

import argparse
import datetime as dt
import sys
from pathlib import Path
from typing import Optional

import pandas as pd

from . import __version__
from .balances import BucketKind, CommissionContext
from .config import AppConfig, load_app_config
from .db import SqliteBackend, has_records, load_snapshot, save_snapshot
from .engine import ReconciliationEngine
from .exceptions import EstateLedgerError
from .io import read_snapshot
from .kpi import KPI_IDS
from .ledger import SORT_DIRS, SORT_KEYS, ledger_total
from .logging_config import configure_logging
from .store import RecordStore
from .views import balances_frame, commissions_frame, kpi_frame, ledger_frame

_BUCKETS = [b.value for b in BucketKind]
_CONTEXTS = [c.value for c in CommissionContext]


def _build_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    ap = argparse.ArgumentParser(
        prog="estate-ledger",
        description=(
            "Estate Ledger - Reconciliation engine for property & project "
            "accounting. Computes owner, broker, project and building "
            "balances, ledgers and KPIs from transactions, and records "
            "payouts."
        ),
    )

    # Generic options
    ap.add_argument(
        "--version",
        action="store_true",
        help="Show the installed version of estate_ledger and exit.",
    )
    ap.add_argument(
        "--config",
        dest="config_path",
        help=(
            "Path to the main TOML configuration file. "
            "If omitted, 'estate_ledger_config.toml' in the current directory "
            "is used."
        ),
    )
    ap.add_argument(
        "--snapshot-dir",
        dest="snapshot_dir",
        help=(
            "Read records from this CSV directory instead of the database. "
            "Payout commands are not available in this mode."
        ),
    )
    ap.add_argument(
        "--log-level",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override the logging.level setting from the configuration file.",
    )

    subparsers = ap.add_subparsers(dest="command", metavar="command")

    # import
    p_import = subparsers.add_parser(
        "import", help="Import a CSV snapshot directory into the database."
    )
    p_import.add_argument(
        "directory",
        nargs="?",
        help="Directory holding <kind>.csv files (defaults to data.snapshot_dir).",
    )
    p_import.add_argument("--notes", help="Free text stored with the import batch.")

    # balances
    p_balances = subparsers.add_parser(
        "balances", help="Show per-entity balances of one bucket."
    )
    p_balances.add_argument("bucket", choices=_BUCKETS)
    p_balances.add_argument(
        "--building-id",
        dest="building_id",
        help="Restrict owner balances to properties of this building.",
    )
    p_balances.add_argument(
        "--context",
        choices=_CONTEXTS,
        help="Restrict broker commissions to rental or project agreements.",
    )

    # ledger
    p_ledger = subparsers.add_parser("ledger", help="Show the ledger of one entity.")
    p_ledger.add_argument("bucket", choices=_BUCKETS)
    p_ledger.add_argument("entity_id", help="Owner, broker, project or building id.")
    p_ledger.add_argument("--building-id", dest="building_id")
    p_ledger.add_argument("--context", choices=_CONTEXTS)
    p_ledger.add_argument(
        "--sort-key",
        dest="sort_key",
        choices=list(SORT_KEYS),
        help="Ledger ordering key (defaults to display.sort_key).",
    )
    p_ledger.add_argument(
        "--sort-dir",
        dest="sort_dir",
        choices=list(SORT_DIRS),
        help="Ledger ordering direction (defaults to display.sort_dir).",
    )

    # kpi
    p_kpi = subparsers.add_parser("kpi", help="Compute dashboard KPIs.")
    p_kpi.add_argument(
        "kpi_ids",
        nargs="*",
        metavar="KPI_ID",
        help=f"KPI ids to compute (default: all). One of: {', '.join(KPI_IDS)}.",
    )
    p_kpi.add_argument(
        "--as-of",
        dest="as_of",
        help="Reference date for date-windowed KPIs (YYYY-MM-DD, default: today).",
    )

    # check
    subparsers.add_parser("check", help="Run the data-quality checks.")

    # commissions
    p_comm = subparsers.add_parser(
        "commissions", help="List the outstanding commissions of a broker."
    )
    p_comm.add_argument("broker_id")
    p_comm.add_argument("--context", choices=_CONTEXTS)

    # pay-owner
    p_owner = subparsers.add_parser("pay-owner", help="Record an owner payout.")
    p_owner.add_argument("--contact", dest="contact_id", required=True)
    p_owner.add_argument(
        "--bucket",
        choices=[BucketKind.RENTAL_INCOME.value, BucketKind.SECURITY_DEPOSIT.value],
        default=BucketKind.RENTAL_INCOME.value,
    )
    p_owner.add_argument("--amount", required=True)
    p_owner.add_argument("--account", dest="account_id", required=True)
    p_owner.add_argument("--date", dest="payout_date", help="YYYY-MM-DD, default: today.")
    p_owner.add_argument("--building-id", dest="building_id")
    p_owner.add_argument("--notes")
    p_owner.add_argument("--reference")
    p_owner.add_argument(
        "--no-balance-check",
        dest="enforce_balance",
        action="store_false",
        help="Allow paying more than the balance due.",
    )

    # pay-broker
    p_broker = subparsers.add_parser(
        "pay-broker", help="Record a batch of broker commission payments."
    )
    p_broker.add_argument("--broker", dest="broker_id", required=True)
    p_broker.add_argument("--account", dest="account_id", required=True)
    p_broker.add_argument(
        "--date", dest="payout_date", help="YYYY-MM-DD, default: today."
    )
    p_broker.add_argument("--context", choices=_CONTEXTS)
    p_broker.add_argument(
        "--allocate",
        dest="allocations",
        action="append",
        required=True,
        metavar="AGREEMENT_ID=AMOUNT",
        help="Amount to pay against one agreement. Repeat for each agreement.",
    )

    return ap


def _parse_optional_date(value: Optional[str]) -> Optional[dt.date]:
    """
    Parse an optional CLI date argument (YYYY-MM-DD).

    Raises
    ------
    SystemExit
        If the date format is invalid.
    """
    if value is None:
        return None

    try:
        return dt.date.fromisoformat(value)
    except ValueError as exc:
        msg = f"Invalid date format: {value!r}. Expected YYYY-MM-DD."
        raise SystemExit(msg) from exc


def _parse_allocations(values: list[str]) -> list[tuple[str, str]]:
    """Split ``AGREEMENT_ID=AMOUNT`` arguments into pairs."""
    pairs = []
    for value in values:
        agreement_id, sep, amount = value.partition("=")
        if not sep or not agreement_id.strip() or not amount.strip():
            raise SystemExit(
                f"Invalid allocation: {value!r}. Expected AGREEMENT_ID=AMOUNT."
            )
        pairs.append((agreement_id.strip(), amount.strip()))
    return pairs


def _print_frame(df: pd.DataFrame, empty_message: str) -> None:
    if df.empty:
        print(empty_message)
        return
    print()
    print(df.to_string(index=False))


# ---------------------------------------------------------------------------
# Store and command handlers
# ---------------------------------------------------------------------------


def _open_store(args: argparse.Namespace, config: AppConfig) -> RecordStore:
    """Open the record store from the CSV directory or the database."""
    if args.snapshot_dir:
        snapshot = read_snapshot(args.snapshot_dir)
        return RecordStore(snapshot, epsilon=config.policy.epsilon)

    if not has_records(config.database):
        print("Warning: database is empty. Use 'import' to load a CSV snapshot.")
    return RecordStore(
        load_snapshot(config.database),
        backend=SqliteBackend(config.database),
        epsilon=config.policy.epsilon,
    )


def _handle_import(args: argparse.Namespace, config: AppConfig) -> None:
    if args.directory:
        directory = Path(args.directory)
    elif config.snapshot_dir is not None:
        directory = config.snapshot_dir
    else:
        raise SystemExit(
            "No snapshot directory given and none configured in [data].snapshot_dir."
        )
    print(f"Importing records from {directory} into the database...")
    snapshot = read_snapshot(directory)
    stats = save_snapshot(
        config.database,
        snapshot,
        source_type="csv",
        source_label=str(directory),
        notes=args.notes,
    )
    print(f"Imported batch #{stats.batch_id}: {stats.rows_inserted} records.")
    for kind, count in stats.per_kind.items():
        if count:
            print(f"  {kind:<20} {count}")


def _handle_balances(engine: ReconciliationEngine, args, config: AppConfig) -> None:
    balances = engine.balances(
        args.bucket, building_id=args.building_id, context=args.context
    )
    df = balances_frame(balances, config.amount_decimals)
    _print_frame(df, "No balances found for the given criteria.")
    if not df.empty:
        total = sum(b.balance for b in balances.values())
        print()
        print(f"Total balance: {total:.{config.amount_decimals}f} {config.currency}")


def _handle_ledger(engine: ReconciliationEngine, args, config: AppConfig) -> None:
    rows = engine.ledger(
        args.entity_id,
        args.bucket,
        building_id=args.building_id,
        context=args.context,
        sort_key=args.sort_key or config.default_sort_key,
        sort_dir=args.sort_dir or config.default_sort_dir,
    )
    _print_frame(
        ledger_frame(rows, config.amount_decimals),
        "No ledger entries found for the given entity.",
    )
    if rows:
        print()
        print(
            f"Entries: {len(rows)} | Balance: "
            f"{ledger_total(rows):.{config.amount_decimals}f} {config.currency}"
        )


def _handle_kpi(engine: ReconciliationEngine, args, config: AppConfig) -> None:
    as_of = _parse_optional_date(args.as_of)
    results = engine.kpis(args.kpi_ids or None, as_of=as_of)
    _print_frame(kpi_frame(results, config.amount_decimals), "No KPI computed.")


def _handle_check(engine: ReconciliationEngine) -> int:
    report = engine.check()
    if report.ok:
        print("No data-quality issue found.")
        return 0

    if report.missing_categories:
        print("Missing system categories:")
        for name in report.missing_categories:
            print(f"  - {name}")
    if report.dangling_references:
        print("Dangling references:")
        for finding in report.dangling_references:
            print(f"  - {finding}")
    if report.inconsistent_documents:
        print("Inconsistent bill / invoice statuses:")
        for finding in report.inconsistent_documents:
            print(f"  - {finding}")
    return 1


def _handle_commissions(engine: ReconciliationEngine, args, config: AppConfig) -> None:
    items = engine.outstanding_commissions(args.broker_id, context=args.context)
    _print_frame(
        commissions_frame(items, config.amount_decimals),
        "No commission agreements found for this broker.",
    )


def _handle_pay_owner(engine: ReconciliationEngine, args) -> None:
    tx = engine.pay_owner(
        contact_id=args.contact_id,
        bucket=args.bucket,
        amount=args.amount,
        account_id=args.account_id,
        payout_date=_parse_optional_date(args.payout_date) or dt.date.today(),
        building_id=args.building_id,
        notes=args.notes,
        reference=args.reference,
        enforce_balance=args.enforce_balance,
    )
    print(f"Recorded payout {tx.id}: {tx.description} ({tx.amount:.2f})")


def _handle_pay_broker(engine: ReconciliationEngine, args) -> None:
    txs = engine.pay_broker(
        broker_id=args.broker_id,
        allocations=_parse_allocations(args.allocations),
        account_id=args.account_id,
        payout_date=_parse_optional_date(args.payout_date) or dt.date.today(),
        context=args.context,
    )
    for tx in txs:
        print(f"Recorded payment {tx.id}: {tx.description} ({tx.amount:.2f})")
    print(f"Total paid: {sum(tx.amount for tx in txs):.2f}")


def _run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    # 1) Configuration and logging
    config = load_app_config(args.config_path)
    configure_logging(args.log_level or config.logging.level, config.logging.format)

    if args.command == "import":
        _handle_import(args, config)
        return 0

    if args.command in ("pay-owner", "pay-broker") and args.snapshot_dir:
        parser.error("Payout commands write to the database; drop --snapshot-dir.")

    # 2) Record store and engine
    store = _open_store(args, config)
    engine = ReconciliationEngine(store, config.policy)

    # 3) Dispatch
    if args.command == "balances":
        _handle_balances(engine, args, config)
    elif args.command == "ledger":
        _handle_ledger(engine, args, config)
    elif args.command == "kpi":
        _handle_kpi(engine, args, config)
    elif args.command == "check":
        return _handle_check(engine)
    elif args.command == "commissions":
        _handle_commissions(engine, args, config)
    elif args.command == "pay-owner":
        _handle_pay_owner(engine, args)
    elif args.command == "pay-broker":
        _handle_pay_broker(engine, args)
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the Estate Ledger CLI.

    Parses command-line arguments, loads the configuration, opens the record
    store and runs the requested subcommand. Engine errors are converted into
    a ``SystemExit`` carrying a one-line message.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # --version: short-circuit and exit early.
    if args.version:
        print(f"estate_ledger version {__version__}")
        return

    if args.command is None:
        parser.print_help()
        return

    try:
        code = _run(args, parser)
    except (EstateLedgerError, ValueError, FileNotFoundError) as exc:
        raise SystemExit(f"Error: {exc}") from exc

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
