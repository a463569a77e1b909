"""
Orchestrator: wires the components together and runs one cycle of each job.

- run_tiering: collect inventory, evaluate policy, execute actions, report
- run_backup: backup, verify, replicate, retention, report
- verify_backups: re-check every catalogued backup
- status: point-in-time status document

Components are injected, so tests build an Orchestrator over an
InMemoryEngine and an in-memory catalog. from_settings() builds the
production wiring (PostgreSQL, pg_dump, SQLite catalog, NAS target).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from tiervault.backup import (
    ArtifactEncryptor,
    BackupCoordinator,
    BackupPolicy,
    LocalStorageTarget,
    PgDumpDumper,
    RemoteStorageTarget,
    SQLiteBackupCatalog,
)
from tiervault.config import Settings
from tiervault.engine import DatabaseEngine, PostgreSQLEngine
from tiervault.exceptions import (
    CollectionError,
    DumpError,
    ExhaustionError,
    VerificationError,
)
from tiervault.locks import RunLock
from tiervault.models import Alert, RunReport
from tiervault.observability import ATTR_JOB_NAME, ATTR_RUN_ID, Tracer, create_tracer
from tiervault.reporting import LoggingNotifier, Notifier, Reporter, Thresholds, WebhookNotifier
from tiervault.retry import RetryConfig
from tiervault.scheduler import ScheduledJob, Scheduler
from tiervault.tiering import (
    CANCELLED,
    ActionExecutor,
    EvaluationResult,
    Inventory,
    InventoryCollector,
    PolicyEvaluator,
    default_retry_policy,
)
from tiervault.types import AlertSeverity, BackupKind, RunStatus, VerificationStatus

logger = logging.getLogger(__name__)

TIERING_JOB = "tiering"
BACKUP_JOB = "backup"
INCREMENTAL_JOB = "backup-incremental"
VERIFY_JOB = "verify"

_VERIFICATION_ALERT_PREFIXES = ("backup_verification:", "backup_drift:")


class Orchestrator:
    """
    Runs tiering, backup and status cycles over injected components.

    Example:
        >>> orchestrator = await Orchestrator.from_settings(load_settings("tiervault.yaml"))
        >>> try:
        ...     report = await orchestrator.run_tiering()
        ... finally:
        ...     await orchestrator.close()
    """

    def __init__(
        self,
        engine: DatabaseEngine,
        evaluator: PolicyEvaluator,
        *,
        collector: InventoryCollector | None = None,
        executor: ActionExecutor | None = None,
        reporter: Reporter | None = None,
        coordinator: BackupCoordinator | None = None,
        status_file: str | Path | None = None,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._engine = engine
        self._evaluator = evaluator
        self._collector = collector or InventoryCollector(engine, tracer=self._tracer)
        self._executor = executor or ActionExecutor(engine, tracer=self._tracer)
        self._reporter = reporter or Reporter()
        self._coordinator = coordinator
        self._status_file = Path(status_file) if status_file else None
        self._clock = clock or (lambda: datetime.now(UTC))
        self._closers: list[Callable[[], Any]] = []

    @classmethod
    async def from_settings(cls, settings: Settings) -> Orchestrator:
        """
        Build the production wiring.

        Opens the database pool and the SQLite backup catalog; call close()
        when done.
        """
        enable_tracing = settings.scheduler.enable_tracing
        tracer = create_tracer(__name__, enable_tracing)
        database = settings.database
        tiering = settings.tiering
        backup = settings.backup
        reporting = settings.reporting

        engine = PostgreSQLEngine.from_url(
            database.url,
            pool_size=database.pool_size,
            max_overflow=database.max_overflow,
            statement_timeout=database.statement_timeout,
            tablespaces=database.tablespaces,
            tier_capacity_bytes=database.tier_capacity_bytes,
            tracer=tracer,
        )

        notifiers: list[Notifier] = [LoggingNotifier()]
        webhook = None
        if reporting.webhook_url:
            webhook = WebhookNotifier(reporting.webhook_url, timeout=reporting.webhook_timeout)
            notifiers.append(webhook)
        reporter = Reporter(
            Thresholds(
                usage_warning_percent=reporting.usage_warning_percent,
                usage_critical_percent=reporting.usage_critical_percent,
                backup_max_age=reporting.backup_max_age,
            ),
            notifiers,
            history_size=reporting.history_size,
            cooldown=reporting.alert_cooldown,
        )

        collector = InventoryCollector(
            engine,
            retry_config=RetryConfig(
                max_retries=tiering.collection_attempts - 1,
                initial_delay=tiering.retry_initial_delay,
                max_delay=max(60.0, tiering.retry_initial_delay),
                jitter=0.0,
            ),
            timeout=tiering.collection_timeout,
            tracer=tracer,
        )
        executor = ActionExecutor(
            engine,
            retry_policy=default_retry_policy(tiering.max_retries, tiering.retry_initial_delay),
            timeout=tiering.action_timeout,
            max_workers=tiering.max_workers,
            tracer=tracer,
        )

        encryptor = None
        if backup.encryption_key_file:
            encryptor = ArtifactEncryptor.from_key_file(backup.encryption_key_file)

        Path(backup.catalog_path).parent.mkdir(parents=True, exist_ok=True)
        connection = await aiosqlite.connect(backup.catalog_path)
        catalog = SQLiteBackupCatalog(connection, tracer=tracer)
        await catalog.initialize()

        remote = None
        if backup.remote.enabled:
            remote = RemoteStorageTarget(
                backup.remote.mount_point,
                host=backup.remote.host,
                share=backup.remote.share,
                username=backup.remote.username,
                password=backup.remote.password,
                credentials_file=backup.remote.credentials_file,
                mount=backup.remote.mount,
                low_space_bytes=backup.remote.low_space_bytes,
                mount_timeout=backup.remote.mount_timeout,
                copy_timeout=backup.remote.copy_timeout,
            )
        coordinator = BackupCoordinator(
            PgDumpDumper(
                database.url,
                pg_dump_path=backup.pg_dump_path,
                pg_restore_path=backup.pg_restore_path,
                wal_dir=backup.wal_dir,
                timeout=backup.dump_timeout,
            ),
            catalog,
            LocalStorageTarget(backup.local_dir),
            remote,
            policy=BackupPolicy(
                local_retention=backup.local_retention,
                remote_retention=backup.remote_retention,
                min_free_bytes=backup.min_free_bytes,
                min_backup_size=backup.min_backup_size,
                restore_check=backup.restore_check,
                wal_retention=backup.wal_retention,
            ),
            reporter=reporter,
            encryptor=encryptor,
            tracer=tracer,
        )

        orchestrator = cls(
            engine,
            PolicyEvaluator(settings.policy_rules()),
            collector=collector,
            executor=executor,
            reporter=reporter,
            coordinator=coordinator,
            status_file=reporting.status_file,
            tracer=tracer,
        )
        orchestrator._closers.append(connection.close)
        if webhook is not None:
            orchestrator._closers.append(webhook.close)
        return orchestrator

    @property
    def engine(self) -> DatabaseEngine:
        return self._engine

    @property
    def reporter(self) -> Reporter:
        return self._reporter

    @property
    def coordinator(self) -> BackupCoordinator | None:
        return self._coordinator

    def _require_coordinator(self) -> BackupCoordinator:
        if self._coordinator is None:
            raise RuntimeError("backups are not configured for this orchestrator")
        return self._coordinator

    async def _finish(self, report: RunReport) -> RunReport:
        report.finalize(self._clock())
        await self._reporter.record_run(report)
        if self._status_file is not None:
            try:
                await self.write_status()
            except (CollectionError, OSError) as e:
                logger.warning("Could not refresh status file %s: %s", self._status_file, e)
        return report

    # =========================================================================
    # Tiering
    # =========================================================================

    async def plan(self) -> tuple[Inventory, EvaluationResult]:
        """Collect and evaluate without applying anything."""
        inventory = await self._collector.collect()
        return inventory, self._evaluator.evaluate(inventory.chunks, self._clock())

    async def run_tiering(self, cancel_event: asyncio.Event | None = None) -> RunReport:
        """
        Run one tiering cycle.

        A collection failure aborts the run (status failed, no actions).
        Individual action failures only make the run partial. If the cancel
        event is set mid-run, actions not yet dispatched are skipped and the
        run is recorded as cancelled.
        """
        report = RunReport(job=TIERING_JOB, started_at=self._clock())
        with self._tracer.span(
            "tiervault.orchestrator.run_tiering",
            {ATTR_JOB_NAME: TIERING_JOB, ATTR_RUN_ID: report.run_id},
        ):
            try:
                inventory = await self._collector.collect()
            except CollectionError as e:
                logger.error("Tiering run %s aborted: %s", report.run_id, e)
                report.fail(e)
                await self._reporter.raise_alert(
                    Alert(
                        severity=AlertSeverity.CRITICAL,
                        key="database_unreachable",
                        message=f"inventory collection failed after {e.attempts} attempt(s): {e}",
                        raised_at=self._clock(),
                    ),
                    report,
                )
                return await self._finish(report)

            await self._reporter.evaluate_usage(inventory.usage, report)
            exhausted = self._reporter.exhausted_tiers(inventory.usage)

            evaluation = self._evaluator.evaluate(inventory.chunks, self._clock())
            report.unmanaged_chunks = [chunk.chunk_id for chunk in evaluation.unmanaged]

            report.results = await self._executor.execute_all(
                evaluation.actions,
                cancel_event=cancel_event,
                skip_tiers=exhausted,
            )
            if any(result.error == CANCELLED for result in report.results):
                logger.warning("Tiering run %s cancelled before all actions were dispatched", report.run_id)
                report.status = RunStatus.CANCELLED

        return await self._finish(report)

    # =========================================================================
    # Backups
    # =========================================================================

    async def run_backup(
        self,
        kind: BackupKind = BackupKind.FULL,
        cancel_event: asyncio.Event | None = None,
    ) -> RunReport:
        """
        Run one backup cycle.

        A failed incremental backup makes the run partial as long as a
        verified full backup remains to recover from; any other dump
        failure fails the run. A backup in progress is never interrupted;
        the cancel event is only part of the job signature.
        """
        coordinator = self._require_coordinator()
        report = RunReport(job=BACKUP_JOB, started_at=self._clock())
        with self._tracer.span(
            "tiervault.orchestrator.run_backup",
            {ATTR_JOB_NAME: BACKUP_JOB, ATTR_RUN_ID: report.run_id},
        ):
            try:
                record = await coordinator.run_backup_cycle(kind, report)
            except (DumpError, ExhaustionError) as e:
                fallback = None
                if kind is BackupKind.INCREMENTAL and isinstance(e, DumpError):
                    fallback = await coordinator.latest_verified_full()
                if fallback is not None:
                    logger.warning(
                        "Backup run %s: incremental failed, relying on full backup %s: %s",
                        report.run_id,
                        fallback.backup_id,
                        e,
                    )
                    report.degrade(e)
                else:
                    logger.error("Backup run %s failed: %s", report.run_id, e)
                    report.fail(e)
            else:
                if record.status is VerificationStatus.FAILED:
                    report.fail(VerificationError(record.error or "verification failed", record.backup_id))

            await self._reporter.evaluate_backup_age(
                await coordinator.latest_verified_full(), self._clock(), report
            )
        return await self._finish(report)

    async def run_incremental_backup(self, cancel_event: asyncio.Event | None = None) -> RunReport:
        return await self.run_backup(BackupKind.INCREMENTAL, cancel_event)

    async def verify_backups(self, cancel_event: asyncio.Event | None = None) -> RunReport:
        """Verify unverified backups and re-check verified ones."""
        coordinator = self._require_coordinator()
        report = RunReport(job=VERIFY_JOB, started_at=self._clock())
        with self._tracer.span(
            "tiervault.orchestrator.verify_backups",
            {ATTR_JOB_NAME: VERIFY_JOB, ATTR_RUN_ID: report.run_id},
        ):
            report.backups = await coordinator.verify_all(report)
            problems = [
                alert for alert in report.alerts if alert.key.startswith(_VERIFICATION_ALERT_PREFIXES)
            ]
            if problems:
                report.fail(VerificationError(f"{len(problems)} backup(s) failed verification"))
            await self._reporter.evaluate_backup_age(
                await coordinator.latest_verified_full(), self._clock(), report
            )
        return await self._finish(report)

    # =========================================================================
    # Status
    # =========================================================================

    async def status(self) -> dict[str, Any]:
        """
        Build the status document.

        Raises:
            CollectionError: If the database cannot be read
        """
        inventory = await self._collector.collect()
        compression = await self._engine.compression_summary()

        latest_full = latest_incremental = None
        if self._coordinator is not None:
            catalog = self._coordinator.catalog
            latest_full = await catalog.latest(BackupKind.FULL, VerificationStatus.VERIFIED)
            latest_incremental = await catalog.latest(BackupKind.INCREMENTAL)

        return self._reporter.status_document(
            usage=inventory.usage,
            chunks_by_tier=inventory.chunks_by_tier(),
            compression=compression,
            latest_full=latest_full,
            latest_incremental=latest_incremental,
            now=self._clock(),
        )

    async def write_status(self, path: str | Path | None = None) -> Path | None:
        """Write the status document to `path` or the configured status file."""
        target = Path(path) if path else self._status_file
        if target is None:
            return None
        return self._reporter.write_status(target, await self.status())

    # =========================================================================
    # Scheduling
    # =========================================================================

    def jobs(self, settings: Settings) -> list[ScheduledJob]:
        """Scheduled jobs for `serve`, each guarded by its run-lock."""
        jobs = [
            ScheduledJob(
                TIERING_JOB,
                settings.tiering.interval,
                self.run_tiering,
                run_lock(settings, TIERING_JOB),
                tracer=self._tracer,
            )
        ]
        if self._coordinator is not None:
            backup_lock = run_lock(settings, BACKUP_JOB)
            jobs.append(
                ScheduledJob(
                    BACKUP_JOB,
                    settings.backup.interval,
                    self.run_backup,
                    backup_lock,
                    tracer=self._tracer,
                )
            )
            if settings.backup.incremental_interval is not None:
                # Shares the backup lock: full and incremental never overlap
                jobs.append(
                    ScheduledJob(
                        INCREMENTAL_JOB,
                        settings.backup.incremental_interval,
                        self.run_incremental_backup,
                        backup_lock,
                        run_on_start=False,
                        tracer=self._tracer,
                    )
                )
        return jobs

    def scheduler(self, settings: Settings) -> Scheduler:
        return Scheduler(self.jobs(settings))

    async def close(self) -> None:
        """Release the database pool and any other resources opened by from_settings()."""
        for closer in reversed(self._closers):
            try:
                await closer()
            except Exception:
                logger.exception("Error while closing %r", closer)
        self._closers.clear()
        await self._engine.close()


def run_lock(settings: Settings, job: str) -> RunLock:
    """
    RunLock shared by the CLI and the scheduler for one job.

    Every backup job (full, incremental, verify) shares one lock.
    """
    name = BACKUP_JOB if job in (BACKUP_JOB, INCREMENTAL_JOB, VERIFY_JOB) else job
    return RunLock(name, settings.scheduler.lock_dir)


__all__ = [
    "TIERING_JOB",
    "BACKUP_JOB",
    "INCREMENTAL_JOB",
    "VERIFY_JOB",
    "Orchestrator",
    "run_lock",
]
