from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from iom.application.container import build_container
from iom.config import get_app_paths
from iom.domain.errors import AppError
from iom.logging_config import setup_logging

log = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="iom", description="Inventory and order manager")
    parser.add_argument("--db", type=Path, default=None, help="Database file (defaults to the app data dir)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create or migrate the database")
    sub.add_parser("verify", help="Check database integrity and that stock matches history")

    summary = sub.add_parser("summary", help="Financial summary of completed sales")
    summary.add_argument("--start", required=True, help="First day, YYYY-MM-DD")
    summary.add_argument("--end", required=True, help="Last day, YYYY-MM-DD")
    summary.add_argument("--export", type=Path, default=None, help="Write the summary to an .xlsx file")
    return parser


def _verify(container) -> int:
    integrity = container.repo.integrity_check()
    checks = container.ledger.verify_all()
    broken = [c for c in checks if not c.consistent]
    print(f"Database integrity: {integrity}")
    print(f"Products checked:   {len(checks)}")
    for c in broken:
        print(f"MISMATCH {c.sku}: stock={c.current_stock} history={c.history_sum}")
    if integrity != "ok" or broken:
        log.error("verify_failed integrity=%s broken=%s", integrity, len(broken))
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=logging.INFO)
    db_path = args.db or paths.db_path

    try:
        container = build_container(db_path)
        if args.command == "init":
            print(f"Database ready: {db_path}")
            return 0
        if args.command == "verify":
            return _verify(container)

        if args.export:
            s = container.reporting.export_financial_summary_excel(str(args.export), args.start, args.end)
        else:
            s = container.reporting.summarize_completed_sales(args.start, args.end)
    except AppError as exc:
        log.error("cli_failed command=%s error=%s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1

    print(f"Orders:       {s.order_count}")
    print(f"Total sales:  {s.total_sales}")
    print(f"Total cost:   {s.total_cost}")
    print(f"Gross profit: {s.gross_profit}")
    print(f"Gross margin: {s.gross_margin}%")
    if args.export:
        print(f"Exported to {args.export}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
