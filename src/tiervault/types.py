"""Enumerations shared across tiervault components."""

from enum import Enum


class StorageTier(Enum):
    """
    Storage tier of a chunk.

    Tiers are ordered: hot (SSD) < warm (HDD) < cold (NAS / archive).
    Chunks only ever move forward through this order.
    """

    HOT = "hot"
    WARM = "warm"
    COLD = "cold"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def is_after(self, other: "StorageTier") -> bool:
        return self.rank > other.rank


_TIER_RANK = {StorageTier.HOT: 0, StorageTier.WARM: 1, StorageTier.COLD: 2}


class ActionKind(Enum):
    COMPRESS = "compress"
    MIGRATE = "migrate"
    EXPIRE = "expire"


class ActionOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class BackupKind(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class VerificationStatus(Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RunStatus(Enum):
    """
    Status of one orchestrator run.

    Attributes:
        RUNNING: Run in progress
        SUCCEEDED: Every action succeeded (or nothing to do)
        PARTIAL: Run completed but some actions failed
        FAILED: Run aborted (collection error, dump failure, ...)
        CANCELLED: Shutdown requested; pending actions were not dispatched
        ALREADY_RUNNING: Rejected because another run held the run-lock
    """

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ALREADY_RUNNING = "already_running"


class JobState(Enum):
    """Scheduler job state machine: idle -> running -> succeeded|failed -> idle."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


__all__ = [
    "StorageTier",
    "ActionKind",
    "ActionOutcome",
    "BackupKind",
    "VerificationStatus",
    "AlertSeverity",
    "RunStatus",
    "JobState",
]
