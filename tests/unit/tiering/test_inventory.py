"""
Unit tests for the InventoryCollector.
"""

import asyncio
from datetime import timedelta

import pytest

from tests.fixtures import days, make_chunk
from tiervault.exceptions import CollectionError
from tiervault.tiering import Inventory, InventoryCollector
from tiervault.types import StorageTier


@pytest.fixture
def collector(engine, fast_collection_retry) -> InventoryCollector:
    return InventoryCollector(engine, retry_config=fast_collection_retry, enable_tracing=False)


class TestInventory:
    """Tests for the Inventory snapshot."""

    def test_chunks_by_tier_lists_every_tier(self):
        """Test counts include empty tiers."""
        inventory = Inventory(
            chunks=(
                make_chunk("a"),
                make_chunk("b", tier=StorageTier.WARM),
                make_chunk("c", tier=StorageTier.WARM),
            )
        )

        assert inventory.chunks_by_tier() == {
            StorageTier.HOT: 1,
            StorageTier.WARM: 2,
            StorageTier.COLD: 0,
        }

    def test_usage_for_missing_tier(self):
        """Test usage_for returns None for unknown tiers."""
        assert Inventory(chunks=()).usage_for(StorageTier.COLD) is None


class TestInventoryCollector:
    """Tests for InventoryCollector.collect."""

    async def test_collects_chunks_and_usage(self, engine, collector):
        """Test a snapshot holds every chunk and per-tier usage."""
        engine.add_chunk(make_chunk("a", size_bytes=100))
        engine.add_chunk(make_chunk("b", tier=StorageTier.WARM, size_bytes=300))
        engine.set_capacity(StorageTier.HOT, 1000)

        inventory = await collector.collect()

        assert {c.chunk_id for c in inventory.chunks} == {"a", "b"}
        hot = inventory.usage_for(StorageTier.HOT)
        assert hot.used_bytes == 100
        assert hot.percent_used == pytest.approx(10.0)
        assert inventory.usage_for(StorageTier.WARM).used_bytes == 300

    async def test_empty_database(self, collector):
        """Test an empty database gives an empty snapshot."""
        inventory = await collector.collect()

        assert inventory.chunks == ()
        assert len(inventory.usage) == 3

    async def test_retries_transient_failures(self, engine, collector):
        """Test collection recovers after failed attempts."""
        engine.add_chunk(make_chunk("a", age=days(3)))
        engine.fail("list_chunks", ConnectionError("connection refused"), times=2)

        inventory = await collector.collect()

        assert len(inventory.chunks) == 1
        assert len(engine.operations("list_chunks")) == 3

    async def test_all_attempts_fail(self, engine, collector):
        """Test CollectionError after three failed attempts, no partial snapshot."""
        engine.fail("tier_usage", ConnectionError("connection refused"), times=None)

        with pytest.raises(CollectionError) as exc_info:
            await collector.collect()

        assert exc_info.value.attempts == 3
        assert "connection refused" in str(exc_info.value)
        assert len(engine.operations("list_chunks")) == 3

    async def test_attempt_timeout(self, engine, fast_collection_retry):
        """Test a stalled attempt counts as a failure."""
        engine.delay("list_chunks", 0.5)
        collector = InventoryCollector(
            engine,
            retry_config=fast_collection_retry,
            timeout=timedelta(milliseconds=10),
            enable_tracing=False,
        )

        with pytest.raises(CollectionError) as exc_info:
            await collector.collect()

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)
