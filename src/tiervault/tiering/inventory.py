"""
Inventory Collector.

Builds a point-in-time snapshot of every chunk and of storage usage per
tier. Collection is read-only and all-or-nothing: it retries with bounded
exponential backoff and either returns a complete snapshot or raises
CollectionError.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from tiervault.engine.interface import DatabaseEngine
from tiervault.exceptions import CollectionError
from tiervault.models import ChunkRecord, TierUsage
from tiervault.observability import ATTR_CHUNK_COUNT, Tracer, create_tracer
from tiervault.retry import RetryConfig, RetryError, retry_async
from tiervault.types import StorageTier

logger = logging.getLogger(__name__)

# Three attempts, waiting 2s then 4s
DEFAULT_COLLECTION_RETRY = RetryConfig(max_retries=2, initial_delay=2.0, jitter=0.0)


@dataclass(frozen=True)
class Inventory:
    """
    Point-in-time snapshot of the database's chunks.

    Attributes:
        chunks: Every chunk known to the engine
        usage: Storage usage per tier
        collected_at: When the snapshot was taken
    """

    chunks: tuple[ChunkRecord, ...]
    usage: tuple[TierUsage, ...] = ()
    collected_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def usage_for(self, tier: StorageTier) -> TierUsage | None:
        for usage in self.usage:
            if usage.tier is tier:
                return usage
        return None

    def chunks_by_tier(self) -> dict[StorageTier, int]:
        counts = {tier: 0 for tier in StorageTier}
        for chunk in self.chunks:
            counts[chunk.tier] += 1
        return counts


class InventoryCollector:
    """
    Collects the chunk inventory from a DatabaseEngine.

    Example:
        >>> collector = InventoryCollector(engine)
        >>> inventory = await collector.collect()
        >>> len(inventory.chunks)
        42
    """

    def __init__(
        self,
        engine: DatabaseEngine,
        *,
        retry_config: RetryConfig | None = None,
        timeout: timedelta | None = timedelta(seconds=60),
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the collector.

        Args:
            engine: Database engine to read from
            retry_config: Backoff between attempts (default 3 attempts, 2s base)
            timeout: Limit for one collection attempt (None = no limit)
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing.
                Ignored if tracer is explicitly provided.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._engine = engine
        self._retry_config = retry_config or DEFAULT_COLLECTION_RETRY
        self._timeout = timeout

    async def _collect_once(self) -> Inventory:
        async def _read() -> Inventory:
            chunks = await self._engine.list_chunks()
            usage = await self._engine.tier_usage()
            return Inventory(chunks=tuple(chunks), usage=tuple(usage))

        if self._timeout is None:
            return await _read()
        return await asyncio.wait_for(_read(), timeout=self._timeout.total_seconds())

    async def collect(self) -> Inventory:
        """
        Take a complete snapshot.

        Returns:
            Inventory with every chunk and per-tier usage

        Raises:
            CollectionError: If every attempt failed; no partial snapshot
                is returned
        """
        with self._tracer.span("tiervault.inventory.collect") as span:
            try:
                inventory = await retry_async(
                    self._collect_once,
                    config=self._retry_config,
                    retryable_exceptions=(Exception,),
                    operation_name="inventory collection",
                )
            except RetryError as e:
                raise CollectionError(str(e.last_error), attempts=e.attempts) from e.last_error

            if span is not None:
                span.set_attribute(ATTR_CHUNK_COUNT, len(inventory.chunks))

        logger.info(
            "Collected inventory: %d chunks (%s)",
            len(inventory.chunks),
            ", ".join(f"{tier.value}={count}" for tier, count in inventory.chunks_by_tier().items()),
        )
        return inventory


__all__ = [
    "DEFAULT_COLLECTION_RETRY",
    "Inventory",
    "InventoryCollector",
]
