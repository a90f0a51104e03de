from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from rsm.application.container import AppContainer, build_container
from rsm.config import get_app_paths, load_settings
from rsm.domain.errors import AppError
from rsm.logging_config import setup_logging
from rsm.services.metrics_service import compute_metrics

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rsm", description="Retail store order/sale maintenance tools.")
    parser.add_argument("--db", type=Path, default=None, help="SQLite database (defaults to the app data dir).")
    sub = parser.add_subparsers(dest="command", required=True, title="commands")

    sub.add_parser("auto-cancel", help="Cancel RECEIVED orders older than the staleness threshold.")

    rate = sub.add_parser("rate", help="Show or record the exchange rate.")
    rate.add_argument("value", nargs="?", type=float, default=None, help="New rate (local units per USD).")
    rate.add_argument("--notes", default=None)

    sub.add_parser("refresh-rate", help="Fetch the USD rate from the remote sources and record it.")

    metrics = sub.add_parser("metrics", help="Print revenue/cost/profit for a date window.")
    metrics.add_argument("--from", dest="date_from", default=None, help="YYYY-MM-DD (inclusive)")
    metrics.add_argument("--to", dest="date_to", default=None, help="YYYY-MM-DD (inclusive)")

    report = sub.add_parser("export-report", help="Write the sales/metrics workbook.")
    report.add_argument("path", type=Path)
    report.add_argument("--from", dest="date_from", required=True)
    report.add_argument("--to", dest="date_to", required=True)
    return parser


def run_command(app: AppContainer, args: argparse.Namespace) -> int:
    if args.command == "auto-cancel":
        count = app.orders.auto_cancel_stale_orders()
        print(f"Canceled {count} stale order(s).")
        return 0

    if args.command == "rate":
        if args.value is None:
            current = app.fx.current_rate()
            print(f"{current.rate:.4f} (recorded {current.recorded_at})")
            return 0
        snap = app.fx.record_rate(args.value, args.notes)
        print("Rate unchanged." if snap is None else f"Recorded {snap.rate:.4f}.")
        return 0

    if args.command == "refresh-rate":
        snap = app.fx.refresh_from_remote()
        print("Rate unchanged." if snap is None else f"Recorded {snap.rate:.4f}.")
        return 0

    if args.command == "metrics":
        sales = app.sales.search_sales(args.date_from, args.date_to, voided=False)
        result = compute_metrics(sales, app.expenses.list_active_expenses(), app.fx.current_rate().rate)
        print(json.dumps(result.as_dict(), indent=2))
        return 0

    if args.command == "export-report":
        app.reporting.export_sales_report_excel(str(args.path), args.date_from, args.date_to)
        print(f"Report written to {args.path}")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=settings.log_level)

    db_path = args.db or settings.db_path or paths.db_path
    app = build_container(db_path, settings=settings)
    try:
        return run_command(app, args)
    except AppError as e:
        log.error("command_failed command=%s error=%s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
