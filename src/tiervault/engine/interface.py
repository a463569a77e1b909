"""
Database engine interface.

The orchestrator never talks SQL directly. Everything it needs from the
time-series database goes through the DatabaseEngine protocol, so the
tiering components can run against PostgreSQL/TimescaleDB in production and
an in-memory engine in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from tiervault.models import ChunkRecord, TierUsage
from tiervault.types import StorageTier


@dataclass(frozen=True)
class CompressionSummary:
    """
    Compression state of one table.

    Attributes:
        table_name: Hypertable name
        total_chunks: Number of chunks
        compressed_chunks: Number of compressed chunks
        total_bytes: Combined on-disk size of all chunks
    """

    table_name: str
    total_chunks: int
    compressed_chunks: int
    total_bytes: int = 0

    @property
    def compression_percent(self) -> float:
        if not self.total_chunks:
            return 0.0
        return round(self.compressed_chunks / self.total_chunks * 100.0, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "total_chunks": self.total_chunks,
            "compressed_chunks": self.compressed_chunks,
            "compression_percent": self.compression_percent,
            "total_bytes": self.total_bytes,
        }


@runtime_checkable
class DatabaseEngine(Protocol):
    """
    Protocol for the database engine holding the chunks.

    Mutating calls raise TransientActionError for failures worth retrying
    (timeouts, lock contention, dropped connections), PermanentActionError
    for everything else, and ChunkNotFoundError when the chunk is gone.
    """

    async def list_chunks(self) -> list[ChunkRecord]:
        """
        List every chunk of every table.

        Returns:
            Chunk records in a stable order (table, then range_start)
        """
        ...

    async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
        """
        Re-read a single chunk.

        Returns:
            The current record, or None if the chunk no longer exists
        """
        ...

    async def compress_chunk(self, chunk_id: str) -> None:
        """Compress one chunk in place."""
        ...

    async def move_chunk(self, chunk_id: str, tier: StorageTier) -> None:
        """Move one chunk (and its indexes) to the storage backing `tier`."""
        ...

    async def drop_chunk(self, chunk_id: str) -> None:
        """Drop one chunk and the data it holds."""
        ...

    async def tier_usage(self) -> list[TierUsage]:
        """Storage usage per tier."""
        ...

    async def compression_summary(self) -> list[CompressionSummary]:
        """Per-table chunk and compression counts."""
        ...

    async def ping(self) -> None:
        """Raise if the database cannot be reached."""
        ...

    async def close(self) -> None:
        """Release connections held by the engine."""
        ...


__all__ = [
    "CompressionSummary",
    "DatabaseEngine",
]
