"""
main.py - Command-line entry point for the T&E dashboard.

Commands:
    serve     run the HTTP API (uvicorn)
    refresh   fetch from the provider and write the local cache file
    summary   print summary cards and department/month rollups
    export    write the filtered, sorted view as CSV
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Union

import uvicorn

from cache_store import FileCacheStore
from config import Settings
from csv_export import export_filename, to_csv
from dashboard import DashboardService, DashboardState
from logging_config import get_logger, parse_level, setup_logging
from models import ALL, DashboardView, FilterSpec, SortSpec
from provider_client import ProviderClient

logger = get_logger("te-dashboard")

RULE = "=" * 60


def build_service(settings: Settings, mock: bool = False) -> DashboardService:
    return DashboardService(
        ProviderClient(settings),
        FileCacheStore(settings.cache_file),
        mock_when_unconfigured=mock,
    )


def _selector(values: Optional[list[str]]) -> Union[str, set[str]]:
    values = [value for value in values or [] if value]
    if not values:
        return ALL
    if len(values) == 1:
        return values[0]
    return set(values)


def filters_from_args(args: argparse.Namespace) -> FilterSpec:
    return FilterSpec(
        department=_selector(args.department),
        employee=_selector(args.employee),
        type=_selector(args.type),
        merchant=_selector(args.merchant),
        category=_selector(args.category),
        spend_program=_selector(args.spend_program),
        month=args.month or ALL,
        date_from=args.date_from,
        date_to=args.date_to,
        memo_query=args.memo or "",
    )


def sort_from_args(args: argparse.Namespace) -> SortSpec:
    return SortSpec(column=args.sort, direction=args.direction)


def load_state(service: DashboardService, live: bool = False) -> DashboardState:
    """Cached snapshot first; provider fetch when absent, stale or --live."""
    if not live:
        state = service.load_cached()
        if service.loaded:
            return state
    return asyncio.run(service.refresh())


def format_summary(view: DashboardView, state: DashboardState) -> str:
    summary = view.summary
    lines = [
        RULE,
        f"  T&E SUMMARY  (source={state.source}, updated={state.last_updated or '-'})",
        RULE,
        f"  Year to date      {summary.ytd_total:>14,.2f}",
        f"  This month        {summary.month_total:>14,.2f}",
        f"  Transactions      {summary.total_count:>14}",
        f"  Reimbursements    {summary.reimbursement_count:>14}",
        f"  Receipts          {summary.receipt_count:>14}",
        "",
        "  Top departments",
    ]
    for item in view.departments:
        bar = "#" * int(round(item.bar_width / 5))
        lines.append(f"  {item.department[:22]:<22} {item.amount:>12,.2f}  {bar}")
    lines.append("")
    lines.append("  Monthly spend")
    for month in view.months:
        lines.append(f"  {month.label:<4} {month.amount:>12,.2f}")
    for warning in state.warnings:
        lines.append(f"  ! {warning}")
    if state.error:
        lines.append(f"  ! error: {state.error}")
    lines.append(RULE)
    return "\n".join(lines)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    logger.info("cli_mode | mode=serve | host=%s | port=%s", args.host, args.port)
    uvicorn.run("api:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def cmd_refresh(args: argparse.Namespace, settings: Settings) -> int:
    service = build_service(settings, mock=args.mock)
    state = asyncio.run(service.refresh())
    print(f"source={state.source} rows={len(state.rows)} warnings={len(state.warnings)}")
    for warning in state.warnings:
        print(f"  ! {warning}")
    if state.source == "none":
        print(f"Error: {state.error}")
        return 1
    return 0


def cmd_summary(args: argparse.Namespace, settings: Settings) -> int:
    service = build_service(settings, mock=args.mock)
    state = load_state(service, live=args.live)
    view = service.view(filters_from_args(args), sort_from_args(args))
    print(format_summary(view, state))
    return 1 if state.source == "none" else 0


def cmd_export(args: argparse.Namespace, settings: Settings) -> int:
    service = build_service(settings, mock=args.mock)
    state = load_state(service, live=args.live)
    if state.source == "none":
        print(f"Error: {state.error}")
        return 1

    view = service.view(filters_from_args(args), sort_from_args(args))
    output = Path(args.output or export_filename())
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(to_csv(view.rows), encoding="utf-8")

    logger.info("cli_export | path=%s | rows=%d", output, len(view.rows))
    print(f"Wrote {len(view.rows)} row(s) to {output}")
    return 0


def _add_view_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--live", action="store_true", help="Skip the cache and fetch from the provider")
    parser.add_argument("--mock", action="store_true", help="Use sample data when provider credentials are missing")
    parser.add_argument("--department", action="append", help="Department filter (repeat for multi-select)")
    parser.add_argument("--employee", action="append", help="Employee filter (repeat for multi-select)")
    parser.add_argument("--type", action="append", help="card_transaction or reimbursement")
    parser.add_argument("--merchant", action="append", help="Merchant filter (repeat for multi-select)")
    parser.add_argument("--category", action="append", help="Accounting category filter")
    parser.add_argument("--spend-program", action="append", dest="spend_program", help="Spend program filter")
    parser.add_argument("--month", help="YYYY-MM; overrides --from/--to")
    parser.add_argument("--from", dest="date_from", help="Start date (YYYY-MM-DD, inclusive)")
    parser.add_argument("--to", dest="date_to", help="End date (YYYY-MM-DD, inclusive)")
    parser.add_argument("--memo", help="Case-insensitive memo substring")
    parser.add_argument("--sort", default="date", help="Sort column (default: date)")
    parser.add_argument("--direction", default="desc", choices=["asc", "desc"])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="te-dashboard",
        description="Travel & expense dashboard over the provider's card and reimbursement data.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s serve --port 8000\n"
            "  %(prog)s refresh\n"
            "  %(prog)s summary --department Engineering --department Sales\n"
            "  %(prog)s export --month 2025-03 --sort amount --output march.csv\n"
        ),
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG-level) logging")
    parser.add_argument("--log-json", action="store_true", help="Output logs as JSON lines")

    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(handler=cmd_serve)

    refresh = commands.add_parser("refresh", help="Fetch provider data into the local cache")
    refresh.add_argument("--mock", action="store_true", help="Use sample data when provider credentials are missing")
    refresh.set_defaults(handler=cmd_refresh)

    summary = commands.add_parser("summary", help="Print summary cards and rollups")
    _add_view_arguments(summary)
    summary.set_defaults(handler=cmd_summary)

    export = commands.add_parser("export", help="Write the filtered view as CSV")
    _add_view_arguments(export)
    export.add_argument("--output", "-o", help="Output path (default: te-transactions-YYYY-MM-DD.csv)")
    export.set_defaults(handler=cmd_export)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()

    level = logging.DEBUG if args.verbose else parse_level(settings.log_level)
    setup_logging(level=level, json_format=args.log_json or settings.log_json)

    try:
        return args.handler(args, settings)
    except ValueError as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc)
        print(f"\nError: {exc}")
        return 2
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
