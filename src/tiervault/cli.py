"""
tiervault command line.

Commands:
- status: tier distribution, compression summary and backup health
- run-tiering: one tiering cycle (--dry-run prints the plan only)
- run-backup: one backup cycle (--incremental for a WAL archive)
- verify-backups: verify and re-check catalogued backups
- serve: run the scheduler until SIGINT/SIGTERM

Exit codes:
    0   success
    1   unexpected error
    2   configuration error
    3   database unreachable
    4   some actions failed, the run was cancelled, or an incremental
        backup failed with a verified full backup to fall back on
    5   backup verification failed
    6   backup failed (dump error or out of space)
    7   the run finished but raised a critical alert (tier exhaustion)
    75  another run of the job is in progress
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta
from typing import Any

from tiervault import __version__
from tiervault.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from tiervault.exceptions import CollectionError, ConfigurationError, TierVaultError
from tiervault.models import RunReport
from tiervault.orchestrator import (
    BACKUP_JOB,
    INCREMENTAL_JOB,
    TIERING_JOB,
    VERIFY_JOB,
    Orchestrator,
    run_lock,
)
from tiervault.scheduler import JobFunc, ScheduledJob
from tiervault.types import RunStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_UNREACHABLE = 3
EXIT_PARTIAL = 4
EXIT_VERIFICATION = 5
EXIT_BACKUP = 6
EXIT_CRITICAL = 7
EXIT_ALREADY_RUNNING = 75

_ERROR_EXIT_CODES = {
    "ConfigurationError": EXIT_CONFIG,
    "CollectionError": EXIT_UNREACHABLE,
    "VerificationError": EXIT_VERIFICATION,
    "DumpError": EXIT_BACKUP,
    "ExhaustionError": EXIT_BACKUP,
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def exit_code_for(report: RunReport) -> int:
    """
    Map a finished run report to the process exit code.

    A critical alert outranks partial failures, so cron callers can alert
    on the exit code alone.
    """
    if report.status is RunStatus.ALREADY_RUNNING:
        return EXIT_ALREADY_RUNNING
    if report.status is RunStatus.FAILED:
        return _ERROR_EXIT_CODES.get(report.error_type or "", EXIT_ERROR)
    if report.has_critical:
        return EXIT_CRITICAL
    if report.status in (RunStatus.PARTIAL, RunStatus.CANCELLED):
        return EXIT_PARTIAL
    return EXIT_OK


async def build_orchestrator(settings: Settings) -> Orchestrator:
    return await Orchestrator.from_settings(settings)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr)


# =============================================================================
# Output
# =============================================================================


def _format_bytes(value: int | None) -> str:
    if value is None:
        return "-"
    if value < 1024:
        return f"{value} B"
    size = value / 1024
    for unit in ("KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


def print_report(report: RunReport, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return

    print(f"{report.job} run {report.run_id}: {report.status.value}")
    if report.results:
        print(
            f"  actions: {report.succeeded} succeeded, {report.failed} failed, "
            f"{report.skipped} skipped"
        )
        for result in report.results:
            if result.failed:
                print(f"  FAILED {result.action.describe()}: {result.error}")
    if report.unmanaged_chunks:
        print(f"  unmanaged chunks: {len(report.unmanaged_chunks)}")
    for record in report.backups:
        print(
            f"  backup {record.backup_id} ({record.kind.value}): {record.status.value}, "
            f"{_format_bytes(record.size_bytes)}"
        )
    for alert in report.alerts:
        print(f"  {alert.severity.value.upper()} {alert.key}: {alert.message}")
    if report.error:
        print(f"  error: {report.error}")


def print_status(document: dict[str, Any], as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(document, indent=2, default=str))
        return

    print(f"Status at {document['generated_at']}")
    print("Tiers:")
    for tier in document["tiers"]:
        line = f"  {tier['tier']:<5} {tier['chunks'] or 0:>6} chunks  {_format_bytes(tier['used_bytes']):>12}"
        if tier["percent_used"] is not None:
            line += f"  {tier['percent_used']:.1f}% of {_format_bytes(tier['capacity_bytes'])}"
        print(line)
    if document["compression"]:
        print("Compression:")
        for summary in document["compression"]:
            print(
                f"  {summary['table_name']}: {summary['compressed_chunks']}/{summary['total_chunks']} "
                f"chunks compressed ({summary['compression_percent']:.0f}%)"
            )
    backups = document["backups"]
    latest = backups["latest_full"]
    if latest is None:
        print("Backups: no verified full backup")
    else:
        health = "healthy" if backups["healthy"] else "STALE"
        print(
            f"Backups: latest full {latest['backup_id']} "
            f"({backups['full_backup_age_hours']}h old, {health})"
        )


# =============================================================================
# Commands
# =============================================================================


async def _run_once(
    settings: Settings,
    job_name: str,
    func: JobFunc,
    interval: timedelta,
) -> RunReport:
    """Run one job under its run-lock; SIGINT/SIGTERM cancel dispatch."""
    job = ScheduledJob(job_name, interval, func, run_lock(settings, job_name))
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    registered = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
            registered.append(sig)
        except NotImplementedError:
            logger.debug("Signal handling not supported on this platform for %s", sig.name)
    try:
        return await job.trigger(cancel_event)
    finally:
        for sig in registered:
            loop.remove_signal_handler(sig)


async def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    """Show tier usage, compression and backup health."""
    orchestrator = await build_orchestrator(settings)
    try:
        document = await orchestrator.status()
        if args.output:
            orchestrator.reporter.write_status(args.output, document)
        elif settings.reporting.status_file:
            orchestrator.reporter.write_status(settings.reporting.status_file, document)
    finally:
        await orchestrator.close()
    print_status(document, args.json)
    return EXIT_OK


async def cmd_run_tiering(args: argparse.Namespace, settings: Settings) -> int:
    """Run one tiering cycle."""
    orchestrator = await build_orchestrator(settings)
    try:
        if args.dry_run:
            inventory, evaluation = await orchestrator.plan()
            if args.json:
                print(
                    json.dumps(
                        {
                            "chunks": len(inventory.chunks),
                            "actions": [
                                {
                                    "kind": a.kind.value,
                                    "chunk_id": a.chunk_id,
                                    "table_name": a.table_name,
                                    "rule": a.rule_name,
                                    "target_tier": a.target_tier.value if a.target_tier else None,
                                }
                                for a in evaluation.actions
                            ],
                            "unmanaged_chunks": [c.chunk_id for c in evaluation.unmanaged],
                        },
                        indent=2,
                    )
                )
            else:
                print(f"{len(inventory.chunks)} chunks, {len(evaluation.actions)} planned actions")
                for action in evaluation.actions:
                    print(f"  {action.describe()} (rule {action.rule_name})")
                for chunk in evaluation.unmanaged:
                    print(f"  unmanaged {chunk.chunk_id}")
            return EXIT_OK

        report = await _run_once(settings, TIERING_JOB, orchestrator.run_tiering, settings.tiering.interval)
    finally:
        await orchestrator.close()
    print_report(report, args.json)
    return exit_code_for(report)


async def cmd_run_backup(args: argparse.Namespace, settings: Settings) -> int:
    """Run one backup cycle."""
    orchestrator = await build_orchestrator(settings)
    try:
        if args.incremental:
            interval = settings.backup.incremental_interval or settings.backup.interval
            report = await _run_once(settings, INCREMENTAL_JOB, orchestrator.run_incremental_backup, interval)
        else:
            report = await _run_once(settings, BACKUP_JOB, orchestrator.run_backup, settings.backup.interval)
    finally:
        await orchestrator.close()
    print_report(report, args.json)
    return exit_code_for(report)


async def cmd_verify_backups(args: argparse.Namespace, settings: Settings) -> int:
    """Verify and re-check every catalogued backup."""
    orchestrator = await build_orchestrator(settings)
    try:
        report = await _run_once(settings, VERIFY_JOB, orchestrator.verify_backups, settings.backup.interval)
    finally:
        await orchestrator.close()
    print_report(report, args.json)
    return exit_code_for(report)


async def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    """Run the scheduler until SIGINT/SIGTERM."""
    orchestrator = await build_orchestrator(settings)
    try:
        await orchestrator.scheduler(settings).run_forever()
    finally:
        await orchestrator.close()
    return EXIT_OK


COMMANDS: dict[str, Callable[[argparse.Namespace, Settings], Awaitable[int]]] = {
    "status": cmd_status,
    "run-tiering": cmd_run_tiering,
    "run-backup": cmd_run_backup,
    "verify-backups": cmd_verify_backups,
    "serve": cmd_serve,
}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="tiervault",
        description="Tiered storage and backup orchestrator for TimescaleDB",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tiervault status
  tiervault run-tiering --dry-run
  tiervault run-backup --incremental
  tiervault --config /etc/tiervault.yaml serve
        """,
    )
    parser.add_argument("--version", action="version", version=f"tiervault {__version__}")
    parser.add_argument(
        "--config",
        "-c",
        default=DEFAULT_CONFIG_PATH,
        help=f"YAML configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--env-file", help="Load environment variables from this .env file")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")

    subparsers = parser.add_subparsers(dest="command", required=True, metavar="command")

    status_parser = subparsers.add_parser("status", help="Show storage and backup status")
    status_parser.add_argument("--output", "-o", help="Also write the status document to this file")

    tiering_parser = subparsers.add_parser("run-tiering", help="Run one tiering cycle")
    tiering_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the planned actions without applying them",
    )

    backup_parser = subparsers.add_parser("run-backup", help="Run one backup cycle")
    backup_parser.add_argument(
        "--incremental",
        action="store_true",
        help="Archive WAL since the last full backup instead of a full dump",
    )

    subparsers.add_parser("verify-backups", help="Verify catalogued backups")
    subparsers.add_parser("serve", help="Run the scheduler until stopped")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = load_settings(args.config, env_file=args.env_file)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG

    handler = COMMANDS[args.command]
    try:
        return asyncio.run(handler(args, settings))
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG
    except CollectionError as e:
        logger.error("Database unreachable: %s", e)
        return EXIT_UNREACHABLE
    except TierVaultError as e:
        logger.error("%s", e)
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
