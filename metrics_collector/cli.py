#!/usr/bin/env python3
"""
Metrics Collector CLI

Usage:
    # Automatic mode (yesterday, or the service's configured offset):
    metrics-collector run

    # One service, explicit range:
    metrics-collector run topvisor --start-date 2025-09-15 --end-date 2025-09-15

    # Overwrite rows that already exist:
    metrics-collector run topvisor --force

    # Connectivity only:
    metrics-collector check gsc

    # What is stored:
    metrics-collector stats topvisor --start-date 2025-09-01 --end-date 2025-09-30

    # One-time Google authorization:
    metrics-collector authorize

Environment switches kept for scheduled jobs:
    MANUAL_MODE=true, MANUAL_START_DATE, MANUAL_END_DATE, FORCE_OVERRIDE=true
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from metrics_collector.auth import RefreshTokenStore, build_consent_url, exchange_code
from metrics_collector.collector import CollectorRuntime, RunOptions, RunStats
from metrics_collector.database import PersistenceGateway
from metrics_collector.database.models import CORE_TABLES
from metrics_collector.delivery import create_notifier, format_duration
from metrics_collector.errors import CollectorError, ConfigError
from metrics_collector.services import ADAPTERS, create_adapter
from metrics_collector.utils import ServiceConfig, Settings, get_settings, load_services_config

logger = logging.getLogger(__name__)


@dataclass
class ServiceResult:
    name: str
    success: bool
    stats: Optional[RunStats] = None
    error: Optional[str] = None
    duration: int = 0


# =============================================================================
# DATES AND SERVICE SELECTION
# =============================================================================

def resolve_dates(
    start_date: Optional[str],
    end_date: Optional[str],
    manual_mode: bool,
    service_config: ServiceConfig,
    today: Optional[date] = None,
) -> Tuple[str, str, bool]:
    """
    Work out the (start, end, manual) triple for one service.

    Any explicit date switches to manual mode. Without one, the service's
    date_offset is applied to today. The end date defaults to the start date.
    """
    if start_date or end_date:
        manual_mode = True

    if not start_date:
        if end_date:
            start_date = end_date
        else:
            today = today or date.today()
            start_date = (today + timedelta(days=service_config.date_offset)).isoformat()

    end_date = end_date or start_date

    for value in (start_date, end_date):
        try:
            date.fromisoformat(value)
        except ValueError:
            raise ConfigError(f"Invalid date {value!r}, expected YYYY-MM-DD")
    if end_date < start_date:
        raise ConfigError(f"End date {end_date} is before start date {start_date}")

    return start_date, end_date, manual_mode


def select_services(
    requested: List[str],
    services_config: Dict[str, ServiceConfig],
) -> List[str]:
    """Requested names as given, or every enabled service by priority."""
    if requested:
        unknown = [name for name in requested if name not in ADAPTERS]
        if unknown:
            raise ConfigError(
                f"Unknown service(s): {', '.join(unknown)}. Available: {', '.join(sorted(ADAPTERS))}"
            )
        return list(requested)

    enabled = [
        (config.priority, name)
        for name, config in services_config.items()
        if config.enabled and name in ADAPTERS
    ]
    return [name for _, name in sorted(enabled)]


def apply_env_switches(args: argparse.Namespace, settings: Settings) -> None:
    """Legacy environment variables fill in options not given on the command line."""
    if settings.MANUAL_MODE:
        args.manual = True
    if settings.MANUAL_START_DATE and not args.start_date:
        args.start_date = settings.MANUAL_START_DATE
    if settings.MANUAL_END_DATE and not args.end_date:
        args.end_date = settings.MANUAL_END_DATE
    if settings.FORCE_OVERRIDE:
        args.force = True


# =============================================================================
# COMMANDS
# =============================================================================

async def run_service(
    name: str,
    settings: Settings,
    options: RunOptions,
    notifier=None,
) -> RunStats:
    """Run one service end to end."""
    adapter = create_adapter(name, settings)
    try:
        gateway = PersistenceGateway(settings.DATABASE_URL, echo=settings.SQL_DEBUG)
        runtime = CollectorRuntime(adapter, gateway, notifier)
        return await runtime.run(options)
    finally:
        await adapter.close()


async def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    apply_env_switches(args, settings)
    services_config = load_services_config(settings.SERVICES_CONFIG_PATH)
    services = select_services(args.services, services_config)

    if not services:
        print("No enabled services to run")
        return 0

    notifier = create_notifier(settings)
    results: List[ServiceResult] = []

    for index, name in enumerate(services):
        service_config = services_config.get(name, ServiceConfig())
        started = datetime.now()
        try:
            start_date, end_date, manual = resolve_dates(
                args.start_date, args.end_date, args.manual, service_config,
            )
            stats = await run_service(name, settings, RunOptions(
                start_date=start_date,
                end_date=end_date,
                manual_mode=manual,
                force_override=args.force,
            ), notifier)
            results.append(ServiceResult(
                name=name,
                success=True,
                stats=stats,
                duration=int((datetime.now() - started).total_seconds()),
            ))
        except CollectorError as e:
            logger.error(f"Service {name} failed: {e}")
            results.append(ServiceResult(
                name=name,
                success=False,
                error=str(e),
                duration=int((datetime.now() - started).total_seconds()),
            ))

        if index < len(services) - 1 and settings.SERVICE_PAUSE_SECONDS > 0:
            await asyncio.sleep(settings.SERVICE_PAUSE_SECONDS)

    print_summary(results)
    return 0 if all(r.success for r in results) else 1


def print_summary(results: List[ServiceResult]) -> None:
    succeeded = [r for r in results if r.success]
    failed = [r for r in results if not r.success]

    print(f"\n{'='*70}")
    print("COLLECTION SUMMARY")
    print(f"{'='*70}")
    print(f"Succeeded: {len(succeeded)}")
    print(f"Failed:    {len(failed)}")

    for r in succeeded:
        s = r.stats
        print(
            f"  ✓ {r.name} ({format_duration(r.duration)}): processed={s.processed} "
            f"inserted={s.inserted} updated={s.updated} errors={s.errors}"
        )
        for warning in s.warnings:
            print(f"      ⚠ {warning}")
    for r in failed:
        print(f"  ✗ {r.name} ({format_duration(r.duration)}): {r.error}")
    print(f"{'='*70}\n")


async def cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    services = select_services(args.services, load_services_config(settings.SERVICES_CONFIG_PATH))
    failures = 0

    gateway = PersistenceGateway(settings.DATABASE_URL)
    try:
        gateway.connect()
        print(f"✓ database ({gateway.dialect})")
    except CollectorError as e:
        failures += 1
        print(f"✗ database: {e}")
    finally:
        gateway.disconnect()

    for name in services:
        adapter = None
        try:
            adapter = create_adapter(name, settings)
            await adapter.check_connection()
            print(f"✓ {name}")
        except CollectorError as e:
            failures += 1
            print(f"✗ {name}: {e}")
        finally:
            if adapter is not None:
                await adapter.close()

    return 1 if failures else 0


async def cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    services = select_services(args.services, load_services_config(settings.SERVICES_CONFIG_PATH))
    end = date.fromisoformat(args.end_date) if args.end_date else date.today()
    start = date.fromisoformat(args.start_date) if args.start_date else end - timedelta(days=args.days)

    gateway = PersistenceGateway(settings.DATABASE_URL)
    gateway.connect()
    try:
        for name in services:
            adapter = create_adapter(name, settings)
            try:
                gateway.ensure_tables(list(CORE_TABLES) + list(adapter.tables))
                summary = adapter.summarize(gateway, start, end)
            finally:
                await adapter.close()

            print(f"\n{name}: {start} - {end}")
            for key, value in summary.items():
                if key in ("service", "period"):
                    continue
                print(f"  {key:<18} {value}")
    finally:
        gateway.disconnect()
    return 0


async def cmd_authorize(args: argparse.Namespace, settings: Settings) -> int:
    settings.require("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET")
    store = RefreshTokenStore(settings.GOOGLE_REFRESH_TOKEN_PATH)

    if store.exists() and not args.overwrite:
        print(f"A refresh token already exists at {store.path}")
        print("Pass --overwrite to replace it.")
        return 1

    scopes = [s.strip() for s in settings.GOOGLE_SCOPES.replace(",", " ").split()]
    url = build_consent_url(settings.GOOGLE_CLIENT_ID, settings.GOOGLE_REDIRECT_URI, scopes)

    print("\nOpen this URL in a browser and approve access:\n")
    print(f"  {url}\n")

    code = args.code or input("Paste the authorization code: ").strip()
    if not code:
        print("No code entered")
        return 1

    record = await exchange_code(
        code,
        settings.GOOGLE_CLIENT_ID,
        settings.GOOGLE_CLIENT_SECRET,
        settings.GOOGLE_REDIRECT_URI,
        store,
    )
    print(f"✓ Refresh token saved to {store.path} ({record.created_at:%Y-%m-%d %H:%M})")
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================

COMMANDS = {
    "run": cmd_run,
    "check": cmd_check,
    "stats": cmd_stats,
    "authorize": cmd_authorize,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="metrics-collector",
        description="Collect SEO metrics from external APIs into the database",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run collectors")
    run.add_argument("services", nargs="*", help=f"Services to run ({', '.join(sorted(ADAPTERS))})")
    run.add_argument("--start-date", help="Start date (YYYY-MM-DD)")
    run.add_argument("--end-date", help="End date (YYYY-MM-DD)")
    run.add_argument("-m", "--manual", action="store_true", help="Manual mode")
    run.add_argument("-f", "--force", action="store_true", help="Overwrite existing rows")

    check = subparsers.add_parser("check", help="Check database and API connectivity")
    check.add_argument("services", nargs="*")

    stats = subparsers.add_parser("stats", help="Summarize stored data")
    stats.add_argument("services", nargs="*")
    stats.add_argument("--start-date", help="Start date (YYYY-MM-DD)")
    stats.add_argument("--end-date", help="End date (YYYY-MM-DD), defaults to today")
    stats.add_argument("--days", type=int, default=7, help="Range length when --start-date is omitted")

    authorize = subparsers.add_parser("authorize", help="One-time Google OAuth authorization")
    authorize.add_argument("--code", help="Authorization code (prompted when omitted)")
    authorize.add_argument("--overwrite", action="store_true", help="Replace an existing refresh token")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()

    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        exit_code = asyncio.run(COMMANDS[args.command](args, settings))
    except ConfigError as e:
        print(f"ERROR: {e}")
        exit_code = 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
