"""
Chunk and policy builders for tests.

Chunks are described by their age at the reference time NOW, which keeps
scenario tests readable: ``make_chunk("c1", age=timedelta(days=10))``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from tiervault.models import ChunkRecord, PolicyRule, TierStage
from tiervault.types import StorageTier

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

CHUNK_SPAN = timedelta(days=1)


def make_chunk(
    chunk_id: str,
    *,
    table: str = "metrics",
    age: timedelta = timedelta(0),
    tier: StorageTier = StorageTier.HOT,
    compressed: bool = False,
    size_bytes: int = 1024,
    now: datetime = NOW,
) -> ChunkRecord:
    """Chunk whose newest data is `age` old at `now`."""
    range_end = now - age
    return ChunkRecord(
        chunk_id=chunk_id,
        table_name=table,
        range_start=range_end - CHUNK_SPAN,
        range_end=range_end,
        tier=tier,
        compressed=compressed,
        size_bytes=size_bytes,
    )


def days(n: float) -> timedelta:
    return timedelta(days=n)


def metrics_rule(
    *,
    name: str = "metrics",
    table_pattern: str = "metrics*",
    compress_after: timedelta | None = timedelta(days=7),
    warm_after: timedelta | None = timedelta(days=30),
    cold_after: timedelta | None = None,
    retain_for: timedelta | None = timedelta(days=730),
) -> PolicyRule:
    """compress 7d, warm 30d, retain 2y unless overridden."""
    tiers = []
    if warm_after is not None:
        tiers.append(TierStage(StorageTier.WARM, warm_after))
    if cold_after is not None:
        tiers.append(TierStage(StorageTier.COLD, cold_after))
    return PolicyRule(
        name=name,
        table_pattern=table_pattern,
        compress_after=compress_after,
        tiers=tuple(tiers),
        retain_for=retain_for,
    )


class FakeClock:
    """Settable clock for components that take a `clock` callable."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now
