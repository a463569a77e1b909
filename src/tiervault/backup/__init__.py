"""
Backups for tiervault.

Provides:
- BackupCoordinator: produce, verify, replicate and prune backups
- Dumper protocol and PgDumpDumper
- ArtifactEncryptor for optional AES-256-GCM encryption of artifacts
- Local and remote storage targets
- BackupCatalog protocol with in-memory and SQLite implementations
"""

from tiervault.backup.catalog import (
    BackupCatalog,
    InMemoryBackupCatalog,
    SQLiteBackupCatalog,
)
from tiervault.backup.checksum import compute_checksum, read_sidecar, sidecar_path, write_sidecar
from tiervault.backup.coordinator import BackupCoordinator, BackupPolicy, RetentionReport
from tiervault.backup.dumper import Dumper, PgDumpDumper
from tiervault.backup.encryption import ArtifactEncryptor, generate_key, is_encrypted, load_key
from tiervault.backup.storage import LocalStorageTarget, RemoteStorageTarget, StorageTarget

__all__ = [
    "BackupCoordinator",
    "BackupPolicy",
    "RetentionReport",
    "Dumper",
    "PgDumpDumper",
    "ArtifactEncryptor",
    "generate_key",
    "is_encrypted",
    "load_key",
    "StorageTarget",
    "LocalStorageTarget",
    "RemoteStorageTarget",
    "BackupCatalog",
    "InMemoryBackupCatalog",
    "SQLiteBackupCatalog",
    "compute_checksum",
    "read_sidecar",
    "sidecar_path",
    "write_sidecar",
]
