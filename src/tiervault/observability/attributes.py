"""
Standard span attributes for tiervault.

Attribute names follow OpenTelemetry semantic conventions where one exists
(database attributes) and use the `tiervault.` namespace otherwise.

Example:
    >>> from tiervault.observability.attributes import ATTR_CHUNK_ID, ATTR_ACTION_KIND
    >>>
    >>> with tracer.span(
    ...     "tiervault.executor.execute",
    ...     {ATTR_CHUNK_ID: action.chunk_id, ATTR_ACTION_KIND: action.kind.value},
    ... ):
    ...     pass
"""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql')."""

ATTR_DB_NAME = "db.name"
"""Name of the database being accessed."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'compress_chunk', 'move_chunk')."""

# =============================================================================
# Tiering Attributes
# =============================================================================

ATTR_CHUNK_ID = "tiervault.chunk.id"
"""Fully qualified chunk name (string)."""

ATTR_TABLE_NAME = "tiervault.table.name"
"""Owning hypertable name (string)."""

ATTR_TIER = "tiervault.tier"
"""Storage tier value: hot, warm or cold (string)."""

ATTR_ACTION_KIND = "tiervault.action.kind"
"""Tiering action: compress, migrate or expire (string)."""

ATTR_ACTION_COUNT = "tiervault.action.count"
"""Number of actions in a batch (integer)."""

ATTR_CHUNK_COUNT = "tiervault.chunk.count"
"""Number of chunks in an inventory snapshot (integer)."""

ATTR_ATTEMPT = "tiervault.attempt"
"""Attempt number, 1-based (integer)."""

# =============================================================================
# Backup Attributes
# =============================================================================

ATTR_BACKUP_ID = "tiervault.backup.id"
"""Backup record identifier (string)."""

ATTR_BACKUP_KIND = "tiervault.backup.kind"
"""Backup kind: full or incremental (string)."""

ATTR_STORAGE_TARGET = "tiervault.storage.target"
"""Backup storage target name: local or remote (string)."""

# =============================================================================
# Run Attributes
# =============================================================================

ATTR_RUN_ID = "tiervault.run.id"
"""Orchestrator run identifier (string)."""

ATTR_JOB_NAME = "tiervault.job.name"
"""Scheduler job name: tiering or backup (string)."""

ATTR_LOCK_KEY = "tiervault.lock.key"
"""Run-lock name (string)."""


__all__ = [
    "ATTR_DB_SYSTEM",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_CHUNK_ID",
    "ATTR_TABLE_NAME",
    "ATTR_TIER",
    "ATTR_ACTION_KIND",
    "ATTR_ACTION_COUNT",
    "ATTR_CHUNK_COUNT",
    "ATTR_ATTEMPT",
    "ATTR_BACKUP_ID",
    "ATTR_BACKUP_KIND",
    "ATTR_STORAGE_TARGET",
    "ATTR_RUN_ID",
    "ATTR_JOB_NAME",
    "ATTR_LOCK_KEY",
]
