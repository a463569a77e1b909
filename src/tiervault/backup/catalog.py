"""
Backup catalog: the durable audit trail of backup records.

Only the Backup Coordinator writes to the catalog. Two implementations:
- InMemoryBackupCatalog: for tests and dry runs
- SQLiteBackupCatalog: aiosqlite-backed, table ``backup_records``
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from tiervault.models import BackupRecord
from tiervault.observability import ATTR_BACKUP_ID, ATTR_BACKUP_KIND, Tracer, create_tracer
from tiervault.types import BackupKind, VerificationStatus

if TYPE_CHECKING:
    import aiosqlite


@runtime_checkable
class BackupCatalog(Protocol):
    """Protocol for backup record storage."""

    async def add(self, record: BackupRecord) -> None:
        """
        Store a new record.

        Raises:
            ValueError: If a record with the same backup_id exists
        """
        ...

    async def update(self, record: BackupRecord) -> None:
        """
        Replace a stored record.

        Raises:
            KeyError: If the record is unknown
        """
        ...

    async def get(self, backup_id: str) -> BackupRecord | None:
        """Get a record by id, or None."""
        ...

    async def list_records(
        self,
        kind: BackupKind | None = None,
        status: VerificationStatus | None = None,
    ) -> list[BackupRecord]:
        """Records, oldest first, optionally filtered by kind and status."""
        ...

    async def latest(
        self,
        kind: BackupKind | None = None,
        status: VerificationStatus | None = None,
    ) -> BackupRecord | None:
        """Newest record matching the filters, or None."""
        ...

    async def remove(self, backup_id: str) -> None:
        """Delete a record. Unknown ids are ignored."""
        ...


class InMemoryBackupCatalog:
    """
    In-memory implementation of BackupCatalog.

    Records are copied on the way in and out, so callers cannot change
    stored state without calling update().
    """

    def __init__(self) -> None:
        self._records: dict[str, BackupRecord] = {}
        self._lock = asyncio.Lock()

    async def add(self, record: BackupRecord) -> None:
        async with self._lock:
            if record.backup_id in self._records:
                raise ValueError(f"backup {record.backup_id} already exists")
            self._records[record.backup_id] = replace(record)

    async def update(self, record: BackupRecord) -> None:
        async with self._lock:
            if record.backup_id not in self._records:
                raise KeyError(record.backup_id)
            self._records[record.backup_id] = replace(record)

    async def get(self, backup_id: str) -> BackupRecord | None:
        async with self._lock:
            record = self._records.get(backup_id)
            return replace(record) if record else None

    async def list_records(
        self,
        kind: BackupKind | None = None,
        status: VerificationStatus | None = None,
    ) -> list[BackupRecord]:
        async with self._lock:
            records = [
                replace(r)
                for r in self._records.values()
                if (kind is None or r.kind is kind) and (status is None or r.status is status)
            ]
        return sorted(records, key=lambda r: r.created_at)

    async def latest(
        self,
        kind: BackupKind | None = None,
        status: VerificationStatus | None = None,
    ) -> BackupRecord | None:
        records = await self.list_records(kind, status)
        return records[-1] if records else None

    async def remove(self, backup_id: str) -> None:
        async with self._lock:
            self._records.pop(backup_id, None)

    def __len__(self) -> int:
        return len(self._records)


_COLUMNS = (
    "backup_id, kind, source, local_path, remote_path, checksum, size_bytes, "
    "created_at, status, verified_at, error"
)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS backup_records (
    backup_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    source TEXT NOT NULL,
    local_path TEXT,
    remote_path TEXT,
    checksum TEXT,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    status TEXT NOT NULL,
    verified_at TEXT,
    error TEXT
)
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_backup_records_kind_created
ON backup_records (kind, created_at)
"""


class SQLiteBackupCatalog:
    """
    SQLite implementation of BackupCatalog.

    SQLite-specific adaptations:
    - Enums stored as their TEXT values
    - Timestamps stored as TEXT in ISO 8601 format (UTC), which sorts
      chronologically

    Example:
        >>> async with aiosqlite.connect("tiervault-catalog.db") as db:
        ...     catalog = SQLiteBackupCatalog(db)
        ...     await catalog.initialize()
        ...     latest = await catalog.latest(BackupKind.FULL, VerificationStatus.VERIFIED)
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the catalog.

        Args:
            connection: aiosqlite database connection
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._connection = connection

    async def initialize(self) -> None:
        """Create the backup_records table if it does not exist."""
        await self._connection.execute(CREATE_TABLE_SQL)
        await self._connection.execute(CREATE_INDEX_SQL)
        await self._connection.commit()

    @staticmethod
    def _to_row(record: BackupRecord) -> tuple[Any, ...]:
        return (
            record.backup_id,
            record.kind.value,
            record.source,
            record.local_path,
            record.remote_path,
            record.checksum,
            record.size_bytes,
            record.created_at.isoformat(),
            record.status.value,
            record.verified_at.isoformat() if record.verified_at else None,
            record.error,
        )

    @staticmethod
    def _from_row(row: Any) -> BackupRecord:
        return BackupRecord(
            backup_id=row[0],
            kind=BackupKind(row[1]),
            source=row[2],
            local_path=row[3],
            remote_path=row[4],
            checksum=row[5],
            size_bytes=int(row[6] or 0),
            created_at=datetime.fromisoformat(row[7]),
            status=VerificationStatus(row[8]),
            verified_at=datetime.fromisoformat(row[9]) if row[9] else None,
            error=row[10],
        )

    async def add(self, record: BackupRecord) -> None:
        with self._tracer.span(
            "tiervault.catalog.add",
            {ATTR_BACKUP_ID: record.backup_id, ATTR_BACKUP_KIND: record.kind.value},
        ):
            try:
                await self._connection.execute(
                    f"INSERT INTO backup_records ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._to_row(record),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"backup {record.backup_id} already exists") from e
            await self._connection.commit()

    async def update(self, record: BackupRecord) -> None:
        with self._tracer.span("tiervault.catalog.update", {ATTR_BACKUP_ID: record.backup_id}):
            row = self._to_row(record)
            cursor = await self._connection.execute(
                """
                UPDATE backup_records
                SET kind = ?, source = ?, local_path = ?, remote_path = ?, checksum = ?,
                    size_bytes = ?, created_at = ?, status = ?, verified_at = ?, error = ?
                WHERE backup_id = ?
                """,
                (*row[1:], row[0]),
            )
            if cursor.rowcount == 0:
                raise KeyError(record.backup_id)
            await self._connection.commit()

    async def get(self, backup_id: str) -> BackupRecord | None:
        cursor = await self._connection.execute(
            f"SELECT {_COLUMNS} FROM backup_records WHERE backup_id = ?",
            (backup_id,),
        )
        row = await cursor.fetchone()
        return self._from_row(row) if row else None

    async def list_records(
        self,
        kind: BackupKind | None = None,
        status: VerificationStatus | None = None,
    ) -> list[BackupRecord]:
        clauses = []
        params: list[Any] = []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = await self._connection.execute(
            f"SELECT {_COLUMNS} FROM backup_records {where} ORDER BY created_at, backup_id",
            tuple(params),
        )
        rows = await cursor.fetchall()
        return [self._from_row(row) for row in rows]

    async def latest(
        self,
        kind: BackupKind | None = None,
        status: VerificationStatus | None = None,
    ) -> BackupRecord | None:
        records = await self.list_records(kind, status)
        return records[-1] if records else None

    async def remove(self, backup_id: str) -> None:
        with self._tracer.span("tiervault.catalog.remove", {ATTR_BACKUP_ID: backup_id}):
            await self._connection.execute(
                "DELETE FROM backup_records WHERE backup_id = ?",
                (backup_id,),
            )
            await self._connection.commit()


__all__ = [
    "BackupCatalog",
    "InMemoryBackupCatalog",
    "SQLiteBackupCatalog",
    "CREATE_TABLE_SQL",
]
