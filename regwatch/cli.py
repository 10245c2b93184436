"""
CLI for regulatory alert ingestion.

Usage:
    # Run one batch over all active sources
    regwatch run

    # Only FDA sources, ignoring polling intervals
    regwatch run --agency FDA --force

    # Fetch and classify without touching the database
    regwatch run --dry-run --output report.json

    # Check source freshness
    regwatch health

    # List configured sources
    regwatch sources

    # Run the scheduler (continuous)
    regwatch serve --interval 30
"""

import argparse
import asyncio
import json
import sys

import structlog

from regwatch.config import get_settings
from regwatch.jobs.ingestion import IngestionJob
from regwatch.logging import configure_logging
from regwatch.services.ingestion.catalog import filter_sources, get_sources
from regwatch.services.ingestion.errors import StorageError
from regwatch.services.ingestion.scheduler import IngestionScheduler

logger = structlog.get_logger(__name__)


async def cmd_run(args):
    """Run one ingestion batch."""
    job = IngestionJob(dry_run=args.dry_run)

    try:
        await job.initialize()
        print("Running ingestion" + (" (dry run)" if args.dry_run else "") + "...")
        report = await job.run(
            region=args.region,
            agency=args.agency,
            force_refresh=args.force,
            deadline_seconds=args.deadline,
        )
    finally:
        await job.close()

    print("\n" + "=" * 60)
    print("INGESTION RESULTS")
    print("=" * 60)

    if report.environment_error:
        print(f"✗ Environment failure: {report.environment_error}")

    for result in report.results.values():
        print(result)

    totals = report.totals
    print("-" * 60)
    print(
        f"Sources: {totals['sources_succeeded']} ok, "
        f"{totals['sources_failed']} failed, {totals['sources_skipped']} skipped"
    )
    print(
        f"Alerts: {totals['alerts_new']} new, {totals['alerts_updated']} updated, "
        f"{totals['alerts_duplicate']} duplicate"
    )
    if report.deadline_reached:
        print("Batch deadline reached before all sources started")

    if args.output:
        with open(args.output, "w") as f:
            json.dump(report.to_dict(), f, indent=2, default=str)
        print(f"\nReport saved to: {args.output}")

    return 0 if report.ok else 1


async def cmd_health(args):
    """Show per-source freshness."""
    job = IngestionJob()

    try:
        report = await job.health()
    except StorageError as e:
        print(f"✗ Environment failure: {e}")
        return 1
    finally:
        await job.close()

    print("\n" + "=" * 40)
    print(f"SOURCE HEALTH: {report['overall_status'].upper()}")
    print("=" * 40)

    for entry in report["sources"]:
        marker = "✓" if entry["status"] == "healthy" else "✗"
        print(f"  {marker} {entry['name']}: {entry['status']}")
        if entry["last_success_at"]:
            print(f"      last success: {entry['last_success_at']}")
        if entry["last_error"]:
            print(f"      last error: {entry['last_error']}")

    return 0 if report["overall_status"] == "healthy" else 1


async def cmd_sources(args):
    """List configured sources."""
    settings = get_settings()
    sources = filter_sources(
        get_sources(settings.sources_file),
        region=args.region,
        agency=args.agency,
        include_inactive=args.all,
    )

    print("\n" + "=" * 50)
    print("SOURCE CONFIGURATION")
    print("=" * 50)
    print(f"Total sources: {len(sources)}")
    print()

    for source in sources:
        state = "" if source.is_active else " (inactive)"
        print(f"  {source.name}{state}")
        print(f"    Id: {source.id}")
        print(f"    Agency: {source.agency} / {source.region}")
        print(f"    Type: {source.kind.value}")
        print(f"    Priority: {source.priority}")
        print(f"    Interval: {source.polling_interval_minutes} min")
        print()

    return 0


async def cmd_serve(args):
    """Run continuous scheduler."""
    job = IngestionJob()
    await job.initialize()

    scheduler = IngestionScheduler(job.run, interval_minutes=args.interval)

    print(f"Starting scheduler (batch every {args.interval} minutes)")
    print("Press Ctrl+C to stop")

    try:
        scheduler.start()
        while scheduler.is_running:
            await asyncio.sleep(60)
            status = scheduler.get_status()
            if status["last_run"]:
                logger.debug("Scheduler heartbeat", last_run=status["last_run"], next_run=status["next_run"])
    finally:
        scheduler.stop()
        await job.close()

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="RegWatch - Regulatory Alert Ingestion CLI")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run one ingestion batch")
    run_parser.add_argument("--region", "-r", help="Only sources in this region (e.g. US)")
    run_parser.add_argument("--agency", "-a", help="Only sources of this agency (e.g. FDA)")
    run_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Ignore per-source polling intervals",
    )
    run_parser.add_argument(
        "--deadline", "-d",
        type=float,
        help="Skip sources not started within this many seconds",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use an in-memory store instead of the database",
    )
    run_parser.add_argument("--output", "-o", help="Output file for the run report (JSON)")

    # Health command
    subparsers.add_parser("health", help="Show source freshness")

    # Sources command
    sources_parser = subparsers.add_parser("sources", help="List configured sources")
    sources_parser.add_argument("--region", "-r")
    sources_parser.add_argument("--agency", "-a")
    sources_parser.add_argument("--all", action="store_true", help="Include inactive sources")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run continuous scheduler")
    serve_parser.add_argument(
        "--interval", "-i",
        type=int,
        default=None,
        help="Minutes between batches (default: SCHEDULE_INTERVAL_MINUTES or 30)",
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)

    if args.command == "serve" and args.interval is None:
        args.interval = settings.schedule_interval_minutes

    commands = {
        "run": cmd_run,
        "health": cmd_health,
        "sources": cmd_sources,
        "serve": cmd_serve,
    }

    try:
        return asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
