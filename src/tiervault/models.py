"""
Data model for the tiering and backup orchestrator.

- ChunkRecord: one database partition (TimescaleDB chunk) and where it lives
- TierUsage: storage usage of one tier
- PolicyRule / TierStage: declarative lifecycle rule for a class of tables
- PendingAction / ActionResult: unit of tiering work and its outcome
- BackupRecord: one backup artifact, the durable audit trail
- Alert / RunReport: what the Reporter aggregates and sends
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from tiervault.exceptions import ConfigurationError, InvalidTransitionError
from tiervault.types import (
    ActionKind,
    ActionOutcome,
    AlertSeverity,
    BackupKind,
    RunStatus,
    StorageTier,
    VerificationStatus,
)


@dataclass(frozen=True)
class ChunkRecord:
    """
    One storage unit known to the orchestrator.

    Attributes:
        chunk_id: Fully qualified chunk name (e.g. "_timescaledb_internal._hyper_1_4_chunk")
        table_name: Owning hypertable
        range_start: Inclusive start of the chunk's time range
        range_end: Exclusive end of the chunk's time range
        tier: Storage tier the chunk currently lives on
        compressed: Whether the chunk is compressed
        size_bytes: On-disk size
        created_at: When the database engine created the chunk
        schema_name: Schema of the owning hypertable
    """

    chunk_id: str
    table_name: str
    range_start: datetime
    range_end: datetime
    tier: StorageTier = StorageTier.HOT
    compressed: bool = False
    size_bytes: int = 0
    created_at: datetime | None = None
    schema_name: str = "public"

    def __post_init__(self) -> None:
        if not self.range_start < self.range_end:
            raise ValueError(
                f"Chunk {self.chunk_id}: range_start ({self.range_start.isoformat()}) "
                f"must be before range_end ({self.range_end.isoformat()})"
            )
        if self.size_bytes < 0:
            raise ValueError(f"Chunk {self.chunk_id}: size_bytes must be >= 0")

    def age(self, now: datetime) -> timedelta:
        """Age of the newest data in the chunk."""
        return now - self.range_end

    def with_tier(self, tier: StorageTier) -> ChunkRecord:
        return replace(self, tier=tier)

    def with_compressed(self, compressed: bool = True) -> ChunkRecord:
        return replace(self, compressed=compressed)


def is_forward_transition(previous: StorageTier, current: StorageTier) -> bool:
    """True if moving from previous to current never goes backward (hot -> warm -> cold)."""
    return current.rank >= previous.rank


@dataclass(frozen=True)
class TierUsage:
    """Storage usage of one tier."""

    tier: StorageTier
    used_bytes: int
    capacity_bytes: int | None = None
    location: str | None = None

    @property
    def percent_used(self) -> float | None:
        if not self.capacity_bytes:
            return None
        return self.used_bytes / self.capacity_bytes * 100.0

    @property
    def free_bytes(self) -> int | None:
        if self.capacity_bytes is None:
            return None
        return max(0, self.capacity_bytes - self.used_bytes)


@dataclass(frozen=True)
class TierStage:
    """Move chunks to `tier` once they are at least `after` old."""

    tier: StorageTier
    after: timedelta


@dataclass(frozen=True)
class PolicyRule:
    """
    Declarative lifecycle rule for a class of tables.

    Thresholds must satisfy compress_after <= every stage <= retain_for.
    Violating rules are rejected with ConfigurationError, never reordered.

    Attributes:
        name: Rule name used in logs and reports
        table_pattern: Shell-style glob matched against the table name
        compress_after: Compress chunks older than this (None disables compression)
        tiers: Ordered migration stages, shallow to deep
        retain_for: Drop chunks older than this (None keeps data forever)

    Example:
        >>> PolicyRule(
        ...     name="audit",
        ...     table_pattern="audit_*",
        ...     compress_after=timedelta(days=7),
        ...     tiers=(TierStage(StorageTier.WARM, timedelta(days=30)),),
        ...     retain_for=timedelta(days=730),
        ... )
    """

    name: str
    table_pattern: str
    compress_after: timedelta | None = None
    tiers: tuple[TierStage, ...] = ()
    retain_for: timedelta | None = None

    def __post_init__(self) -> None:
        if not self.table_pattern:
            raise ConfigurationError("table_pattern must not be empty", field=self.name)

        for label, value in (
            ("compress_after", self.compress_after),
            ("retain_for", self.retain_for),
        ):
            if value is not None and value < timedelta(0):
                raise ConfigurationError(f"{label} must not be negative", field=self.name)

        previous: TierStage | None = None
        for stage in self.tiers:
            if stage.tier is StorageTier.HOT:
                raise ConfigurationError("hot is the entry tier, not a migration target", field=self.name)
            if self.compress_after is not None and stage.after < self.compress_after:
                raise ConfigurationError(
                    f"{stage.tier.value} stage ({stage.after}) is earlier than "
                    f"compress_after ({self.compress_after})",
                    field=self.name,
                )
            if self.retain_for is not None and stage.after > self.retain_for:
                raise ConfigurationError(
                    f"{stage.tier.value} stage ({stage.after}) is later than "
                    f"retain_for ({self.retain_for})",
                    field=self.name,
                )
            if previous is not None:
                if stage.after <= previous.after or not stage.tier.is_after(previous.tier):
                    raise ConfigurationError(
                        "tier stages must be strictly increasing in age and depth",
                        field=self.name,
                    )
            previous = stage

        if (
            self.compress_after is not None
            and self.retain_for is not None
            and self.compress_after > self.retain_for
        ):
            raise ConfigurationError(
                f"compress_after ({self.compress_after}) is later than retain_for ({self.retain_for})",
                field=self.name,
            )

    @property
    def migrate_after(self) -> timedelta | None:
        """Age at which the first migration stage applies."""
        return self.tiers[0].after if self.tiers else None

    def matches(self, table_name: str) -> bool:
        return fnmatch.fnmatchcase(table_name, self.table_pattern)

    def target_tier(self, age: timedelta) -> StorageTier | None:
        """Deepest tier whose stage threshold the given age has reached."""
        target = None
        for stage in self.tiers:
            if age >= stage.after:
                target = stage.tier
        return target


@dataclass(frozen=True)
class PendingAction:
    """One unit of tiering work produced by the Policy Evaluator."""

    chunk_id: str
    table_name: str
    kind: ActionKind
    rule_name: str
    target_tier: StorageTier | None = None
    retain_for: timedelta | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if self.kind is ActionKind.MIGRATE and self.target_tier is None:
            raise ValueError(f"migrate action for {self.chunk_id} needs a target tier")
        if self.kind is ActionKind.EXPIRE and self.retain_for is None:
            raise ValueError(f"expire action for {self.chunk_id} needs the retention window")

    def describe(self) -> str:
        if self.kind is ActionKind.MIGRATE and self.target_tier is not None:
            return f"{self.kind.value} {self.chunk_id} -> {self.target_tier.value}"
        return f"{self.kind.value} {self.chunk_id}"


@dataclass(frozen=True)
class ActionResult:
    """Outcome of applying one PendingAction."""

    action: PendingAction
    outcome: ActionOutcome
    error: str | None = None
    attempts: int = 1
    noop: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is ActionOutcome.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.outcome is ActionOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.action.chunk_id,
            "table_name": self.action.table_name,
            "kind": self.action.kind.value,
            "target_tier": self.action.target_tier.value if self.action.target_tier else None,
            "outcome": self.outcome.value,
            "error": self.error,
            "attempts": self.attempts,
            "noop": self.noop,
        }


@dataclass
class BackupRecord:
    """
    One completed or attempted backup artifact.

    Status only ever leaves `unverified`: unverified -> verified or
    unverified -> failed.
    """

    kind: BackupKind
    source: str
    local_path: str | None
    backup_id: str = field(default_factory=lambda: uuid4().hex)
    remote_path: str | None = None
    checksum: str | None = None
    size_bytes: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: VerificationStatus = VerificationStatus.UNVERIFIED
    verified_at: datetime | None = None
    error: str | None = None

    def mark_verified(self, when: datetime | None = None) -> None:
        self._leave_unverified(VerificationStatus.VERIFIED)
        self.verified_at = when or datetime.now(UTC)

    def mark_failed(self, error: str, when: datetime | None = None) -> None:
        self._leave_unverified(VerificationStatus.FAILED)
        self.error = error
        self.verified_at = when or datetime.now(UTC)

    def _leave_unverified(self, requested: VerificationStatus) -> None:
        if self.status is not VerificationStatus.UNVERIFIED:
            raise InvalidTransitionError(self.backup_id, self.status.value, requested.value)
        self.status = requested

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "kind": self.kind.value,
            "source": self.source,
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class Alert:
    """
    An alert condition raised by any component.

    Alerts with the same key and severity are de-duplicated by the Reporter.
    """

    severity: AlertSeverity
    key: str
    message: str
    raised_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "key": self.key,
            "message": self.message,
            "raised_at": self.raised_at.isoformat(),
            "context": self.context,
        }


@dataclass
class RunReport:
    """Summary of one orchestrator cycle."""

    job: str
    run_id: str = field(default_factory=lambda: uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    results: list[ActionResult] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    unmanaged_chunks: list[str] = field(default_factory=list)
    backups: list[BackupRecord] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None

    @property
    def attempted(self) -> int:
        return sum(1 for r in self.results if r.outcome is not ActionOutcome.SKIPPED)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.outcome is ActionOutcome.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.outcome is ActionOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.outcome is ActionOutcome.SKIPPED)

    @property
    def has_critical(self) -> bool:
        return any(a.severity is AlertSeverity.CRITICAL for a in self.alerts)

    def fail(self, error: str | BaseException) -> None:
        """Mark the run failed; an exception also records its class name."""
        self.status = RunStatus.FAILED
        if isinstance(error, BaseException):
            self.error_type = type(error).__name__
            self.error = str(error)
        else:
            self.error = error

    def degrade(self, error: str | BaseException) -> None:
        """Record an error that left a fallback in place; the run is partial."""
        self.fail(error)
        self.status = RunStatus.PARTIAL

    def finalize(self, when: datetime | None = None) -> RunReport:
        """Close the report; derive status from counts unless already terminal."""
        self.finished_at = when or datetime.now(UTC)
        if self.status is RunStatus.RUNNING:
            self.status = RunStatus.PARTIAL if self.failed else RunStatus.SUCCEEDED
        return self

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job": self.job,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "unmanaged_chunks": list(self.unmanaged_chunks),
            "alerts": [a.to_dict() for a in self.alerts],
            "backups": [b.to_dict() for b in self.backups],
            "error": self.error,
            "error_type": self.error_type,
        }


__all__ = [
    "ChunkRecord",
    "TierUsage",
    "TierStage",
    "PolicyRule",
    "PendingAction",
    "ActionResult",
    "BackupRecord",
    "Alert",
    "RunReport",
    "is_forward_transition",
]
