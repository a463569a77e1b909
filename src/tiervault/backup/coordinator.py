"""
Backup Coordinator.

Produces, verifies, replicates and prunes backups:

- Full backups are custom-format dumps; incremental backups archive the WAL
  segments written since the latest full backup
- Every artifact gets a SHA-256 checksum and ``.sha256`` sidecar, and a
  BackupRecord in the catalog with status ``unverified``
- Artifacts are optionally encrypted (AES-256-GCM) before they are
  checksummed, so the checksum and every copy cover the ciphertext
- Verification recomputes the checksum and, for full backups, lists the
  dump with ``pg_restore --list``. Records only ever move
  unverified -> verified or unverified -> failed; a failed artifact is kept
  for inspection
- Only verified backups are replicated to remote storage. An unreachable
  remote puts the coordinator in degraded mode (warning alert, local copy
  only) instead of failing the backup
- Retention deletes artifacts strictly older than the per-target window,
  drops records with no artifact left and prunes archived WAL segments no
  longer needed by the latest verified full backup

Operations touching the same storage target are serialized by one lock per
target, so retention never deletes a file that is being written or copied.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from tiervault.backup.catalog import BackupCatalog
from tiervault.backup.checksum import compute_checksum, read_sidecar, write_sidecar
from tiervault.backup.dumper import Dumper
from tiervault.backup.encryption import ENCRYPTED_SUFFIX, ArtifactEncryptor, is_encrypted
from tiervault.backup.storage import LocalStorageTarget, RemoteStorageTarget
from tiervault.exceptions import (
    DumpError,
    EncryptionError,
    ExhaustionError,
    InvalidTransitionError,
    ReplicationError,
)
from tiervault.models import Alert, BackupRecord, RunReport
from tiervault.observability import (
    ATTR_BACKUP_ID,
    ATTR_BACKUP_KIND,
    ATTR_STORAGE_TARGET,
    Tracer,
    create_tracer,
)
from tiervault.reporting.reporter import Reporter
from tiervault.types import AlertSeverity, BackupKind, VerificationStatus

logger = logging.getLogger(__name__)

_EXTENSIONS = {BackupKind.FULL: "dump", BackupKind.INCREMENTAL: "tar.gz"}


@dataclass(frozen=True)
class BackupPolicy:
    """
    Backup settings used by the coordinator.

    Attributes:
        local_retention: Local artifacts older than this are deleted
        remote_retention: Remote artifacts older than this are deleted
        min_free_bytes: Free space required on the local target before a backup
        min_backup_size: Full backups smaller than this fail verification
        restore_check: List full dumps with pg_restore during verification
        wal_retention: Archived WAL segments older than this are pruned, but
            never those written after the latest verified full backup; None
            keeps every segment
    """

    local_retention: timedelta = timedelta(days=30)
    remote_retention: timedelta = timedelta(days=90)
    min_free_bytes: int = 5 * 1024**3
    min_backup_size: int = 1_000_000
    restore_check: bool = True
    wal_retention: timedelta | None = timedelta(days=7)

    def __post_init__(self) -> None:
        if self.local_retention <= timedelta(0) or self.remote_retention <= timedelta(0):
            raise ValueError("retention windows must be positive")
        if self.wal_retention is not None and self.wal_retention <= timedelta(0):
            raise ValueError("retention windows must be positive")
        if self.min_free_bytes < 0 or self.min_backup_size < 0:
            raise ValueError("size limits must be >= 0")


@dataclass
class RetentionReport:
    """What one retention pass deleted."""

    local_deleted: list[str] = field(default_factory=list)
    remote_deleted: list[str] = field(default_factory=list)
    records_removed: list[str] = field(default_factory=list)
    wal_deleted: list[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return len(self.local_deleted) + len(self.remote_deleted)


class BackupCoordinator:
    """
    Coordinates backup production, verification, replication and retention.

    Example:
        >>> coordinator = BackupCoordinator(
        ...     PgDumpDumper(settings.database.url),
        ...     catalog,
        ...     LocalStorageTarget("/var/backups/tiervault"),
        ...     RemoteStorageTarget("/mnt/nas-backup", host="nas.local"),
        ...     reporter=reporter,
        ... )
        >>> record = await coordinator.run_backup_cycle(BackupKind.FULL)
        >>> record.status
        <VerificationStatus.VERIFIED: 'verified'>
    """

    def __init__(
        self,
        dumper: Dumper,
        catalog: BackupCatalog,
        local: LocalStorageTarget,
        remote: RemoteStorageTarget | None = None,
        *,
        policy: BackupPolicy | None = None,
        reporter: Reporter | None = None,
        clock: Callable[[], datetime] | None = None,
        encryptor: ArtifactEncryptor | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._dumper = dumper
        self._catalog = catalog
        self._local = local
        self._remote = remote
        self._policy = policy or BackupPolicy()
        self._reporter = reporter or Reporter()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._encryptor = encryptor
        self._target_locks = {
            LocalStorageTarget.name: asyncio.Lock(),
            RemoteStorageTarget.name: asyncio.Lock(),
        }

    @property
    def catalog(self) -> BackupCatalog:
        return self._catalog

    @property
    def policy(self) -> BackupPolicy:
        return self._policy

    def _lock(self, target: str) -> asyncio.Lock:
        return self._target_locks[target]

    async def _alert(
        self,
        severity: AlertSeverity,
        key: str,
        message: str,
        report: RunReport | None,
        **context: object,
    ) -> None:
        await self._reporter.raise_alert(
            Alert(severity=severity, key=key, message=message, raised_at=self._clock(), context=context),
            report,
        )

    def _artifact_path(self, kind: BackupKind, when: datetime) -> Path:
        filename = f"{self._dumper.source}_{kind.value}_{when:%Y%m%d_%H%M%S}.{_EXTENSIONS[kind]}"
        return self._local.path_for(kind, filename)

    async def _check_free_space(self, report: RunReport | None) -> None:
        free = self._local.free_bytes()
        if free >= self._policy.min_free_bytes:
            return
        error = ExhaustionError(
            LocalStorageTarget.name,
            detail=f"{free} bytes free, {self._policy.min_free_bytes} required",
        )
        await self._alert(
            AlertSeverity.CRITICAL,
            "backup_space:local",
            f"not enough space for a backup: {error}",
            report,
            free_bytes=free,
        )
        raise error

    async def _seal(self, path: Path) -> Path:
        """
        Encrypt a finished artifact when an encryptor is configured.

        Raises:
            DumpError: If encryption failed; the plaintext is left at `path`
        """
        if self._encryptor is None:
            return path
        try:
            return await self._encryptor.encrypt(path)
        except EncryptionError as e:
            raise DumpError(f"cannot encrypt artifact: {e}") from e

    async def _record_artifact(self, kind: BackupKind, path: Path, created_at: datetime) -> BackupRecord:
        checksum = await compute_checksum(path)
        write_sidecar(path, checksum)
        record = BackupRecord(
            kind=kind,
            source=self._dumper.source,
            local_path=str(path),
            checksum=checksum,
            size_bytes=path.stat().st_size,
            created_at=created_at,
        )
        await self._catalog.add(record)
        logger.info(
            "%s backup %s created: %s (%d bytes)",
            kind.value.capitalize(),
            record.backup_id,
            path,
            record.size_bytes,
        )
        return record

    # -------------------------------------------------------------------------
    # Production
    # -------------------------------------------------------------------------

    async def run_full_backup(self, report: RunReport | None = None) -> BackupRecord:
        """
        Produce a full backup.

        Returns:
            The new record, status unverified

        Raises:
            ExhaustionError: If the local target is below its free-space floor
            DumpError: If the dump failed (the partial file is removed)
        """
        with self._tracer.span("tiervault.backup.full", {ATTR_BACKUP_KIND: BackupKind.FULL.value}):
            await self._local.ensure_available()
            await self._check_free_space(report)

            now = self._clock()
            path = self._artifact_path(BackupKind.FULL, now)
            async with self._lock(LocalStorageTarget.name):
                try:
                    await self._dumper.dump_full(path)
                    sealed = await self._seal(path)
                except DumpError as e:
                    await self._local.delete(path)
                    await self._alert(
                        AlertSeverity.CRITICAL,
                        "backup_failed:full",
                        f"full backup failed: {e}",
                        report,
                    )
                    raise
                return await self._record_artifact(BackupKind.FULL, sealed, now)

    async def _base_backup(self) -> BackupRecord | None:
        fulls = await self._catalog.list_records(BackupKind.FULL)
        usable = [r for r in fulls if r.status is not VerificationStatus.FAILED]
        return usable[-1] if usable else None

    async def run_incremental_backup(self, report: RunReport | None = None) -> BackupRecord:
        """
        Archive WAL segments written since the latest full backup.

        With no full backup to build on, a full backup is taken instead.

        Raises:
            DumpError: If the archive failed; the last full backup remains
                the recovery point
        """
        base = await self._base_backup()
        if base is None:
            logger.info("No full backup found, running full backup first")
            return await self.run_full_backup(report)

        with self._tracer.span(
            "tiervault.backup.incremental",
            {ATTR_BACKUP_KIND: BackupKind.INCREMENTAL.value},
        ):
            await self._local.ensure_available()
            now = self._clock()
            path = self._artifact_path(BackupKind.INCREMENTAL, now)
            async with self._lock(LocalStorageTarget.name):
                try:
                    await self._dumper.archive_wal(path, since=base.created_at)
                    sealed = await self._seal(path)
                except DumpError as e:
                    await self._local.delete(path)
                    await self._alert(
                        AlertSeverity.WARNING,
                        "backup_failed:incremental",
                        f"incremental backup failed, relying on last full backup {base.backup_id}: {e}",
                        report,
                    )
                    raise
                return await self._record_artifact(BackupKind.INCREMENTAL, sealed, now)

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    async def _problem(self, record: BackupRecord) -> str | None:
        """Why the local artifact does not check out, or None if it does."""
        if record.local_path is None:
            return "no local artifact"
        path = Path(record.local_path)
        if not path.is_file():
            return f"artifact {path} is missing"
        if record.checksum is None:
            return "no checksum recorded"

        size = path.stat().st_size
        if record.kind is BackupKind.FULL and size < self._policy.min_backup_size:
            return f"artifact is {size} bytes, below the {self._policy.min_backup_size} byte minimum"

        actual = await compute_checksum(path)
        if actual != record.checksum:
            return f"checksum mismatch: expected {record.checksum}, got {actual}"
        sidecar = read_sidecar(path)
        if sidecar is not None and sidecar != record.checksum:
            return "sidecar checksum does not match the catalog"

        if record.kind is BackupKind.FULL and self._policy.restore_check:
            return await self._structure_problem(path)
        return None

    async def _structure_problem(self, path: Path) -> str | None:
        """Why pg_restore cannot list the dump, or None if it can."""
        try:
            if is_encrypted(path):
                if self._encryptor is None:
                    return "artifact is encrypted and no encryption key is configured"
                with tempfile.TemporaryDirectory(prefix=".verify-", dir=path.parent) as scratch:
                    plain = Path(scratch) / path.name.removesuffix(ENCRYPTED_SUFFIX)
                    await self._encryptor.decrypt(path, plain)
                    entries = await self._dumper.inspect_dump(plain)
            else:
                entries = await self._dumper.inspect_dump(path)
        except (DumpError, EncryptionError, OSError) as e:
            return f"structural check failed: {e}"
        if entries == 0:
            return "structural check failed: dump lists no entries"
        return None

    async def verify(self, record: BackupRecord, report: RunReport | None = None) -> BackupRecord:
        """
        Verify an unverified record and store the outcome.

        A failed verification raises a critical alert; the artifact is kept.

        Raises:
            InvalidTransitionError: If the record was already verified or failed
        """
        if record.status is not VerificationStatus.UNVERIFIED:
            raise InvalidTransitionError(record.backup_id, record.status.value, "verified")

        with self._tracer.span(
            "tiervault.backup.verify",
            {ATTR_BACKUP_ID: record.backup_id, ATTR_BACKUP_KIND: record.kind.value},
        ):
            problem = await self._problem(record)
            now = self._clock()
            if problem is None:
                record.mark_verified(now)
                logger.info("Backup %s verified", record.backup_id)
            else:
                record.mark_failed(problem, now)
                logger.error("Backup %s failed verification: %s", record.backup_id, problem)
                await self._alert(
                    AlertSeverity.CRITICAL,
                    f"backup_verification:{record.backup_id}",
                    f"backup {record.backup_id} failed verification: {problem}",
                    report,
                    local_path=record.local_path,
                )
            await self._catalog.update(record)
            return record

    async def audit(self, record: BackupRecord, report: RunReport | None = None) -> bool:
        """
        Re-check a record without changing its status.

        A verified artifact that no longer checks out raises a critical alert.

        Returns:
            True if the artifact still checks out
        """
        problem = await self._problem(record)
        if problem is None:
            return True
        if record.status is VerificationStatus.VERIFIED:
            await self._alert(
                AlertSeverity.CRITICAL,
                f"backup_drift:{record.backup_id}",
                f"verified backup {record.backup_id} no longer checks out: {problem}",
                report,
            )
        else:
            logger.info("Backup %s (%s): %s", record.backup_id, record.status.value, problem)
        return False

    async def verify_all(self, report: RunReport | None = None) -> list[BackupRecord]:
        """Verify every unverified record and audit the rest."""
        records = await self._catalog.list_records()
        for record in records:
            if record.status is VerificationStatus.UNVERIFIED:
                await self.verify(record, report)
            elif record.local_path is not None:
                await self.audit(record, report)
        return records

    # -------------------------------------------------------------------------
    # Replication
    # -------------------------------------------------------------------------

    async def replicate(self, record: BackupRecord, report: RunReport | None = None) -> BackupRecord:
        """
        Copy a verified backup to remote storage.

        An unreachable remote is degraded mode: a warning alert is raised and
        the record is returned without a remote path.

        Raises:
            ReplicationError: If the record is not verified
        """
        if self._remote is None:
            return record
        if record.status is not VerificationStatus.VERIFIED:
            raise ReplicationError(
                f"backup {record.backup_id} is {record.status.value}; only verified backups are replicated",
                backup_id=record.backup_id,
            )
        if record.remote_path is not None and Path(record.remote_path).is_file():
            return record
        assert record.local_path is not None

        with self._tracer.span(
            "tiervault.backup.replicate",
            {ATTR_BACKUP_ID: record.backup_id, ATTR_STORAGE_TARGET: RemoteStorageTarget.name},
        ):
            async with self._lock(RemoteStorageTarget.name):
                try:
                    await self._remote.ensure_available()
                except ReplicationError as e:
                    await self._alert(
                        AlertSeverity.WARNING,
                        "remote_unavailable",
                        f"remote storage unavailable, degraded mode (local copy only): {e}",
                        report,
                    )
                    return record

                free = self._remote.free_bytes()
                if free < self._remote.low_space_bytes:
                    await self._alert(
                        AlertSeverity.WARNING,
                        "backup_space:remote",
                        f"remote storage low on space: {free} bytes free",
                        report,
                        free_bytes=free,
                    )

                try:
                    destination = await self._remote.copy_in(Path(record.local_path), record.kind)
                except ReplicationError as e:
                    await self._alert(
                        AlertSeverity.WARNING,
                        f"replication_failed:{record.backup_id}",
                        f"replication of {record.backup_id} failed, degraded mode: {e}",
                        report,
                    )
                    return record

            record.remote_path = str(destination)
            await self._catalog.update(record)
            logger.info("Backup %s replicated to %s", record.backup_id, destination)
            return record

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def enforce_retention(self, now: datetime | None = None) -> RetentionReport:
        """
        Delete artifacts strictly older than each target's retention window.

        Records with no artifact left on any target are removed from the
        catalog. Applies to every record whatever its status.
        """
        now = now or self._clock()
        result = RetentionReport()
        remote_ready: bool | None = None

        with self._tracer.span("tiervault.backup.retention"):
            for record in await self._catalog.list_records():
                age = record.age(now)
                changed = False

                if record.local_path is not None and age > self._policy.local_retention:
                    async with self._lock(LocalStorageTarget.name):
                        await self._local.delete(record.local_path)
                    result.local_deleted.append(record.local_path)
                    record.local_path = None
                    changed = True

                if (
                    record.remote_path is not None
                    and self._remote is not None
                    and age > self._policy.remote_retention
                ):
                    if remote_ready is None:
                        remote_ready = await self._remote_available()
                    if remote_ready:
                        async with self._lock(RemoteStorageTarget.name):
                            await self._remote.delete(record.remote_path)
                        result.remote_deleted.append(record.remote_path)
                        record.remote_path = None
                        changed = True

                if record.local_path is None and record.remote_path is None:
                    await self._catalog.remove(record.backup_id)
                    result.records_removed.append(record.backup_id)
                elif changed:
                    await self._catalog.update(record)

            if self._policy.wal_retention is not None:
                result.wal_deleted = await self._prune_wal(now, self._policy.wal_retention)

        if result.total_deleted or result.records_removed or result.wal_deleted:
            logger.info(
                "Retention removed %d local and %d remote artifact(s), %d record(s), %d WAL segment(s)",
                len(result.local_deleted),
                len(result.remote_deleted),
                len(result.records_removed),
                len(result.wal_deleted),
            )
        return result

    async def _prune_wal(self, now: datetime, retention: timedelta) -> list[str]:
        base = await self.latest_verified_full()
        if base is None:
            logger.debug("No verified full backup, keeping every WAL segment")
            return []
        # Segments after the latest verified full are its only way forward
        cutoff = min(now - retention, base.created_at)
        try:
            deleted = await self._dumper.prune_wal(cutoff)
        except OSError as e:
            logger.warning("Cannot prune WAL segments: %s", e)
            return []
        return [str(p) for p in deleted]

    async def _remote_available(self) -> bool:
        assert self._remote is not None
        try:
            await self._remote.ensure_available()
        except ReplicationError as e:
            logger.warning("Skipping remote retention, remote storage unavailable: %s", e)
            return False
        return True

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def latest_verified_full(self) -> BackupRecord | None:
        return await self._catalog.latest(BackupKind.FULL, VerificationStatus.VERIFIED)

    async def run_backup_cycle(
        self,
        kind: BackupKind = BackupKind.FULL,
        report: RunReport | None = None,
    ) -> BackupRecord:
        """
        Backup, verify, replicate, then apply retention.

        Returns:
            The record produced by this cycle

        Raises:
            DumpError: If the backup could not be produced
            ExhaustionError: If the local target is out of space
        """
        try:
            if kind is BackupKind.FULL:
                record = await self.run_full_backup(report)
            else:
                record = await self.run_incremental_backup(report)
            if report is not None:
                report.backups.append(record)

            await self.verify(record, report)
            if record.status is VerificationStatus.VERIFIED:
                await self.replicate(record, report)
            await self.enforce_retention()
            return record
        finally:
            if self._remote is not None:
                await self._remote.unmount()


__all__ = [
    "BackupPolicy",
    "RetentionReport",
    "BackupCoordinator",
]
