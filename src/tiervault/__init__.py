"""
tiervault - Tiered storage and backup orchestrator for TimescaleDB.

This library provides:
- Chunk inventory, declarative lifecycle policy and a bounded action executor
  (compress, migrate between tablespaces, expire)
- Full and WAL-incremental backups with checksum verification, NAS
  replication and retention
- Alerting with thresholds and de-duplication, run history and a status document
- A scheduler running tiering and backups as independent, non-overlapping jobs
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tiervault")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Exceptions
from tiervault.exceptions import (
    ActionError,
    AlreadyRunningError,
    BackupError,
    ChunkNotFoundError,
    CollectionError,
    ConfigurationError,
    DumpError,
    EncryptionError,
    ExhaustionError,
    InvalidTransitionError,
    PermanentActionError,
    ReplicationError,
    TierVaultError,
    TransientActionError,
    VerificationError,
)

# Types and models
from tiervault.types import (
    ActionKind,
    ActionOutcome,
    AlertSeverity,
    BackupKind,
    JobState,
    RunStatus,
    StorageTier,
    VerificationStatus,
)
from tiervault.models import (
    ActionResult,
    Alert,
    BackupRecord,
    ChunkRecord,
    PendingAction,
    PolicyRule,
    RunReport,
    TierStage,
    TierUsage,
)

# Configuration
from tiervault.config import Settings, load_settings, parse_duration

# Engines
from tiervault.engine import DatabaseEngine, InMemoryEngine, PostgreSQLEngine

# Tiering
from tiervault.tiering import ActionExecutor, Inventory, InventoryCollector, PolicyEvaluator

# Backups
from tiervault.backup import (
    BackupCatalog,
    BackupCoordinator,
    BackupPolicy,
    InMemoryBackupCatalog,
    LocalStorageTarget,
    PgDumpDumper,
    RemoteStorageTarget,
    SQLiteBackupCatalog,
)

# Reporting
from tiervault.reporting import (
    InMemoryNotifier,
    LoggingNotifier,
    Notifier,
    Reporter,
    Thresholds,
    WebhookNotifier,
)

# Scheduling and wiring
from tiervault.locks import RunLock
from tiervault.scheduler import ScheduledJob, Scheduler
from tiervault.orchestrator import Orchestrator

__all__ = [
    # Version
    "__version__",
    # Exceptions
    "TierVaultError",
    "ConfigurationError",
    "CollectionError",
    "ActionError",
    "TransientActionError",
    "PermanentActionError",
    "ChunkNotFoundError",
    "BackupError",
    "DumpError",
    "ReplicationError",
    "VerificationError",
    "EncryptionError",
    "ExhaustionError",
    "InvalidTransitionError",
    "AlreadyRunningError",
    # Types
    "StorageTier",
    "ActionKind",
    "ActionOutcome",
    "BackupKind",
    "VerificationStatus",
    "AlertSeverity",
    "RunStatus",
    "JobState",
    # Models
    "ChunkRecord",
    "TierUsage",
    "TierStage",
    "PolicyRule",
    "PendingAction",
    "ActionResult",
    "BackupRecord",
    "Alert",
    "RunReport",
    # Configuration
    "Settings",
    "load_settings",
    "parse_duration",
    # Engines
    "DatabaseEngine",
    "InMemoryEngine",
    "PostgreSQLEngine",
    # Tiering
    "Inventory",
    "InventoryCollector",
    "PolicyEvaluator",
    "ActionExecutor",
    # Backups
    "BackupCatalog",
    "InMemoryBackupCatalog",
    "SQLiteBackupCatalog",
    "BackupCoordinator",
    "BackupPolicy",
    "PgDumpDumper",
    "LocalStorageTarget",
    "RemoteStorageTarget",
    # Reporting
    "Reporter",
    "Thresholds",
    "Notifier",
    "LoggingNotifier",
    "WebhookNotifier",
    "InMemoryNotifier",
    # Scheduling
    "RunLock",
    "ScheduledJob",
    "Scheduler",
    "Orchestrator",
]
