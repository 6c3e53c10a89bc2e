#!/usr/bin/env python3
"""
SIGRISK -- MAGERIT v3.0 risk analysis from the command line.

Works directly against the registry database named by DATABASE_URL (default
sqlite:///sigrisk.db); the API does not need to be running.

Usage:
  python main.py matrix
  python main.py top --limit 20
  python main.py recalculate
  python main.py retire-orphans
  python main.py sync-cves --days 3 --severity CRITICAL
  python main.py import-magerit --overwrite
  python main.py export > risks.csv
  python main.py matrix --json
  python main.py top --no-color

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the registry database.
  NVD_API_KEY   Optional NVD API key. Raises rate limit from 5 to 50 requests per 30 seconds.
"""

import argparse
import logging
import sys

from cache.store import ReportCache
from core.calculator import RiskPolicy
from core.config import get_settings
from core.formatter import disable_color, print_matrix, print_result, print_top_risks, to_csv, to_json
from core.models import CVESeverity
from registry.ingest import import_magerit_threats, sync_recent_cves
from registry.reports import get_risk_matrix, get_top_risks
from registry.risks import RiskService
from registry.store import RegistryStore


def _names(store: RegistryStore) -> tuple[dict[int, str], dict[int, str]]:
    """Asset and threat display names keyed by id, for terminal and CSV output."""
    assets = {a.id: f"{a.code} {a.name}" for a in store.list_assets()}
    threats = {t.id: f"{t.code} {t.name}" for t in store.list_threats()}
    return assets, threats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sigrisk",
        description="MAGERIT v3.0 risk quantification and risk register maintenance.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py matrix
  python main.py top --limit 5 --json
  python main.py sync-cves --days 7
  python main.py export > risks.csv
        """,
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output structured JSON instead of terminal tables",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable ANSI color codes in terminal output",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Compute reports from the registry, bypassing the report cache",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("matrix", help="Active risks grouped by level")

    top = sub.add_parser("top", help="Active risks with the highest value at risk")
    top.add_argument("--limit", type=int, default=None, metavar="N", help="Number of risks (default: TOP_RISKS_DEFAULT)")

    sub.add_parser("recalculate", help="Recalculate every active risk from current inputs")
    sub.add_parser("retire-orphans", help="Deactivate risks whose asset, threat or vulnerability is gone")

    sync = sub.add_parser("sync-cves", help="Import recently modified CVEs from NVD as threats")
    sync.add_argument("--days", type=int, default=7, metavar="N", help="Look-back window in days (max 120)")
    sync.add_argument(
        "--severity",
        choices=[s.value for s in CVESeverity],
        default=None,
        help="Only CVEs with this CVSS v3 severity",
    )

    magerit = sub.add_parser("import-magerit", help="Load the MAGERIT threat catalog excerpt")
    magerit.add_argument("--overwrite", action="store_true", help="Replace catalog threats that already exist")

    sub.add_parser("export", help="Write the active risk register as CSV to stdout")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    # Apply color preference before any output
    if args.no_color:
        disable_color()

    store = RegistryStore(settings.database_url)
    cache = None if args.no_cache or not settings.cache_enabled else ReportCache(settings.cache_path)
    service = RiskService(store, RiskPolicy.from_settings(settings), cache)

    try:
        if args.command == "matrix":
            matrix = get_risk_matrix(store, cache)
            if args.json:
                print(to_json(matrix))
            else:
                print_matrix(matrix, *_names(store))

        elif args.command == "top":
            risks = get_top_risks(store, limit=args.limit or settings.top_risks_default, cache=cache)
            if args.json:
                print(to_json(risks))
            else:
                print_top_risks(risks, *_names(store))

        elif args.command == "recalculate":
            result = service.recalculate_all_risks()
            if args.json:
                print(to_json(result))
            else:
                print_result("Recalculation", result)

        elif args.command == "retire-orphans":
            retired = service.retire_orphaned_risks()
            print(to_json({"retired": retired}) if args.json else f"  Retired {retired} orphaned risk(s).")

        elif args.command == "sync-cves":
            result = sync_recent_cves(store, days=args.days, severity=args.severity, service=service)
            if args.json:
                print(to_json(result))
            else:
                print_result("NVD synchronization", result)

        elif args.command == "import-magerit":
            result = import_magerit_threats(store, overwrite=args.overwrite)
            if args.json:
                print(to_json(result))
            else:
                print_result("MAGERIT catalog import", result)

        elif args.command == "export":
            print(to_csv(store.list_risks(active_only=True, order_by_value=True), *_names(store)), end="")
    finally:
        if cache is not None:
            cache.close()
        store.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
