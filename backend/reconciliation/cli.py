"""
Run a ledger reconciliation from the command line.

Usage:
    recon-run --app-file app.json --gateway-file gateway.csv [options]

Examples:
    # Reconcile, record the run and export its items
    recon-run --app-file app.json --gateway-file gateway.json --period-start 2025-01-01 --period-end 2025-01-31 --output items.csv

    # Preview the outcome without touching the database
    recon-run --app-file app.csv --gateway-file gateway.csv --dry-run --output preview.csv

Transaction files are JSON (a list, or an object with a "transactions" list)
or CSV with a header row.
"""

import argparse
import asyncio
import csv
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import get_settings
from logging_config import setup_logging
from reconciliation.engine import ReconciliationEngine, ReconciliationOutcome, determine_status
from reconciliation.errors import InvalidTransactionError
from reconciliation.tolerance import TolerancePolicy

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="recon-run",
        description="Reconcile an app ledger against a payment gateway ledger.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--app-file", required=True, type=Path, help="Application ledger (JSON or CSV).")
    parser.add_argument("--gateway-file", required=True, type=Path, help="Gateway ledger (JSON or CSV).")
    parser.add_argument(
        "--period-start",
        type=lambda s: date.fromisoformat(s),
        default=None,
        help="Start of the reconciled period (YYYY-MM-DD).",
    )
    parser.add_argument(
        "--period-end",
        type=lambda s: date.fromisoformat(s),
        default=None,
        help="End of the reconciled period (YYYY-MM-DD).",
    )
    parser.add_argument("--county", default=None, help="Scope of the run.")
    parser.add_argument("--created-by", default="cli", help="Operator recorded on the run (default: cli).")
    parser.add_argument("--notes", default=None, help="Free text stored on the run.")
    parser.add_argument(
        "--shard-key",
        choices=["county", "day"],
        default=None,
        help="Reconcile in parallel shards by county or by day.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the engine only; do not write to the database.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write the run items as CSV to this path.",
    )
    parser.add_argument("--amount-percentage-tolerance", type=float, default=None)
    parser.add_argument("--amount-absolute-tolerance", default=None)
    parser.add_argument("--date-tolerance-days", type=int, default=None)
    parser.add_argument("--fuzzy-match-threshold", type=int, default=None)
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    return parser.parse_args(argv)


def load_transactions(path: Path) -> List[Dict[str, Any]]:
    """
    Read transactions from a JSON or CSV file.

    Raises:
        ValueError: unsupported layout
        OSError: file cannot be read
    """
    if path.suffix.lower() == ".csv":
        with path.open(newline="", encoding="utf-8-sig") as handle:
            return [dict(row) for row in csv.DictReader(handle)]

    with path.open(encoding="utf-8-sig") as handle:
        data = json.load(handle)
    if isinstance(data, dict):
        data = data.get("transactions")
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of transactions")
    return data


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    values = {
        "amount_percentage_tolerance": args.amount_percentage_tolerance,
        "amount_absolute_tolerance": args.amount_absolute_tolerance,
        "date_tolerance_days": args.date_tolerance_days,
        "fuzzy_match_threshold": args.fuzzy_match_threshold,
    }
    return {key: value for key, value in values.items() if value is not None}


def _summary(outcome: ReconciliationOutcome, status: str) -> Dict[str, Any]:
    return {"status": status, **outcome.totals.to_dict(), "tolerance": outcome.policy.to_dict()}


def dry_run(args: argparse.Namespace, app: List[Dict[str, Any]], gateway: List[Dict[str, Any]]) -> int:
    from reconciliation.services.export_service import render_csv

    settings = get_settings()
    policy = TolerancePolicy.from_settings(settings).apply_overrides(_overrides(args))
    engine = ReconciliationEngine(policy)
    try:
        if args.shard_key:
            outcome = engine.reconcile_sharded(app, gateway, args.shard_key)
        else:
            outcome = engine.reconcile(app, gateway)
    except InvalidTransactionError as e:
        print(f"Invalid transaction: {e}", file=sys.stderr)
        return 1

    status = determine_status(outcome.totals, settings.RECON_PARTIAL_DISCREPANCY_THRESHOLD)
    print(json.dumps({"dry_run": True, **_summary(outcome, status.value)}, indent=2))

    if args.output:
        args.output.write_text(render_csv(None, outcome.items), encoding="utf-8")
        print(f"Items written to {args.output}")
    return 0


async def record_run(args: argparse.Namespace, app: List[Dict[str, Any]], gateway: List[Dict[str, Any]]) -> int:
    from database.connection import get_engine, get_session_factory
    from reconciliation.services.export_service import ReconciliationExportService
    from reconciliation.services.reconciliation_service import ReconciliationService
    from reconciliation.strategy_registry import RunStatus

    try:
        async with get_session_factory()() as session:
            run = await ReconciliationService(session).run(
                app,
                gateway,
                _overrides(args),
                period_start=args.period_start,
                period_end=args.period_end,
                county=args.county,
                created_by=args.created_by,
                notes=args.notes,
                shard_key=args.shard_key
            )
            print(json.dumps(run.to_dict(), indent=2, default=str))
            if run.status == RunStatus.FAILED.value:
                return 1

            if args.output:
                csv_text = await ReconciliationExportService(session).export_csv(run.run_id)
                args.output.write_text(csv_text, encoding="utf-8")
                print(f"Items written to {args.output}")
            return 0
    finally:
        await get_engine().dispose()


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    setup_logging(
        level=args.log_level or settings.LOG_LEVEL,
        json_format=settings.json_logs,
        service_name="ledger-reconciliation-cli"
    )

    try:
        app = load_transactions(args.app_file)
        gateway = load_transactions(args.gateway_file)
    except (OSError, ValueError) as e:
        print(f"Cannot read transactions: {e}", file=sys.stderr)
        return 2

    logger.info(f"Loaded {len(app)} app and {len(gateway)} gateway transactions")
    if args.dry_run:
        return dry_run(args, app, gateway)
    return asyncio.run(record_run(args, app, gateway))


if __name__ == "__main__":
    sys.exit(main())
