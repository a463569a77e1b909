"""
In-memory database engine.

Useful for testing and dry runs. Chunks live in a dictionary and every
operation can be made to fail or stall on demand, which is how the
executor's retry, isolation and timeout behaviour is exercised without a
database.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass

from tiervault.engine.interface import CompressionSummary
from tiervault.exceptions import ChunkNotFoundError
from tiervault.models import ChunkRecord, TierUsage
from tiervault.observability import (
    ATTR_CHUNK_ID,
    ATTR_DB_OPERATION,
    ATTR_TIER,
    Tracer,
    create_tracer,
)
from tiervault.types import StorageTier


@dataclass
class _InjectedFailure:
    error: BaseException
    chunk_id: str | None
    remaining: int | None


class InMemoryEngine:
    """
    In-memory implementation of the DatabaseEngine protocol.

    Example:
        >>> engine = InMemoryEngine([chunk])
        >>> engine.fail("compress_chunk", TransientActionError(chunk.chunk_id, "lock timeout"))
        >>> await engine.compress_chunk(chunk.chunk_id)  # raises once
        >>> await engine.compress_chunk(chunk.chunk_id)  # succeeds

    Attributes:
        calls: Every operation performed, as (operation, chunk_id) tuples
        max_in_flight: Highest number of concurrent mutating operations seen
    """

    def __init__(
        self,
        chunks: list[ChunkRecord] | None = None,
        *,
        capacity: dict[StorageTier, int] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._chunks: dict[str, ChunkRecord] = {}
        self._capacity = dict(capacity or {})
        self._failures: dict[str, list[_InjectedFailure]] = defaultdict(list)
        self._delays: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._in_flight = 0
        self.max_in_flight = 0
        self.calls: list[tuple[str, str | None]] = []
        self.closed = False
        for chunk in chunks or []:
            self.add_chunk(chunk)

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def add_chunk(self, chunk: ChunkRecord) -> None:
        self._chunks[chunk.chunk_id] = chunk

    def remove_chunk(self, chunk_id: str) -> None:
        self._chunks.pop(chunk_id, None)

    def chunk(self, chunk_id: str) -> ChunkRecord | None:
        return self._chunks.get(chunk_id)

    @property
    def chunk_ids(self) -> list[str]:
        return list(self._chunks)

    def set_capacity(self, tier: StorageTier, capacity_bytes: int) -> None:
        self._capacity[tier] = capacity_bytes

    def fail(
        self,
        operation: str,
        error: BaseException,
        *,
        chunk_id: str | None = None,
        times: int | None = 1,
    ) -> None:
        """
        Make an operation raise.

        Args:
            operation: Method name (e.g. "compress_chunk", "list_chunks")
            error: Exception to raise
            chunk_id: Only fail for this chunk (None = any chunk)
            times: Number of failures before the operation recovers
                (None = fail forever)
        """
        self._failures[operation].append(_InjectedFailure(error, chunk_id, times))

    def delay(self, operation: str, seconds: float) -> None:
        """Make an operation sleep before doing its work."""
        self._delays[operation] = seconds

    def clear_failures(self) -> None:
        self._failures.clear()
        self._delays.clear()

    def operations(self, operation: str) -> list[str | None]:
        """Chunk ids passed to one operation, in call order."""
        return [chunk_id for op, chunk_id in self.calls if op == operation]

    async def _enter(self, operation: str, chunk_id: str | None = None) -> None:
        self.calls.append((operation, chunk_id))
        seconds = self._delays.get(operation)
        if seconds:
            await asyncio.sleep(seconds)
        for failure in self._failures.get(operation, []):
            if failure.chunk_id is not None and failure.chunk_id != chunk_id:
                continue
            if failure.remaining is None:
                raise failure.error
            if failure.remaining > 0:
                failure.remaining -= 1
                raise failure.error

    def _require(self, chunk_id: str) -> ChunkRecord:
        chunk = self._chunks.get(chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(chunk_id)
        return chunk

    async def _mutate(self, operation: str, chunk_id: str, tier: StorageTier | None = None) -> None:
        attributes = {ATTR_DB_OPERATION: operation, ATTR_CHUNK_ID: chunk_id}
        if tier is not None:
            attributes[ATTR_TIER] = tier.value
        with self._tracer.span(f"tiervault.engine.{operation}", attributes):
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            try:
                await self._enter(operation, chunk_id)
                async with self._lock:
                    chunk = self._require(chunk_id)
                    if operation == "compress_chunk":
                        self._chunks[chunk_id] = chunk.with_compressed()
                    elif operation == "move_chunk" and tier is not None:
                        self._chunks[chunk_id] = chunk.with_tier(tier)
                    elif operation == "drop_chunk":
                        del self._chunks[chunk_id]
            finally:
                self._in_flight -= 1

    # -------------------------------------------------------------------------
    # DatabaseEngine protocol
    # -------------------------------------------------------------------------

    async def list_chunks(self) -> list[ChunkRecord]:
        with self._tracer.span("tiervault.engine.list_chunks", {ATTR_DB_OPERATION: "list_chunks"}):
            await self._enter("list_chunks")
            async with self._lock:
                return sorted(
                    self._chunks.values(),
                    key=lambda c: (c.table_name, c.range_start, c.chunk_id),
                )

    async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
        await self._enter("get_chunk", chunk_id)
        async with self._lock:
            return self._chunks.get(chunk_id)

    async def compress_chunk(self, chunk_id: str) -> None:
        await self._mutate("compress_chunk", chunk_id)

    async def move_chunk(self, chunk_id: str, tier: StorageTier) -> None:
        await self._mutate("move_chunk", chunk_id, tier)

    async def drop_chunk(self, chunk_id: str) -> None:
        await self._mutate("drop_chunk", chunk_id)

    async def tier_usage(self) -> list[TierUsage]:
        await self._enter("tier_usage")
        async with self._lock:
            used: dict[StorageTier, int] = {tier: 0 for tier in StorageTier}
            for chunk in self._chunks.values():
                used[chunk.tier] += chunk.size_bytes
        return [
            TierUsage(tier=tier, used_bytes=used[tier], capacity_bytes=self._capacity.get(tier))
            for tier in StorageTier
        ]

    async def compression_summary(self) -> list[CompressionSummary]:
        await self._enter("compression_summary")
        totals: dict[str, list[int]] = {}
        async with self._lock:
            for chunk in self._chunks.values():
                entry = totals.setdefault(chunk.table_name, [0, 0, 0])
                entry[0] += 1
                entry[1] += int(chunk.compressed)
                entry[2] += chunk.size_bytes
        return [
            CompressionSummary(table, total, compressed, size)
            for table, (total, compressed, size) in sorted(totals.items())
        ]

    async def ping(self) -> None:
        await self._enter("ping")

    async def close(self) -> None:
        self.closed = True


__all__ = ["InMemoryEngine"]
