"""
Shared pytest fixtures for integration tests.

These tests need a PostgreSQL server with the TimescaleDB extension. Point
TIERVAULT_TEST_DATABASE_URL at one (asyncpg URL); otherwise every test in
this package is skipped.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tiervault.engine import PostgreSQLEngine

DATABASE_URL = os.environ.get("TIERVAULT_TEST_DATABASE_URL")

TABLE = "tv_test_metrics"

# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_database = pytest.mark.skipif(
    not DATABASE_URL,
    reason="TIERVAULT_TEST_DATABASE_URL is not set",
)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sa_engine() -> AsyncGenerator[AsyncEngine, None]:
    """SQLAlchemy engine with a fresh hypertable holding ten daily chunks."""
    engine = create_async_engine(DATABASE_URL)
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS timescaledb"))
        await conn.execute(text(f"DROP TABLE IF EXISTS {TABLE}"))
        await conn.execute(
            text(f"CREATE TABLE {TABLE} (time TIMESTAMPTZ NOT NULL, device INT, value DOUBLE PRECISION)")
        )
        await conn.execute(
            text(f"SELECT create_hypertable('{TABLE}', 'time', chunk_time_interval => INTERVAL '1 day')")
        )
        await conn.execute(
            text(f"ALTER TABLE {TABLE} SET (timescaledb.compress, timescaledb.compress_segmentby = 'device')")
        )
        await conn.execute(
            text(
                f"""
                INSERT INTO {TABLE}
                SELECT t, 1, random()
                FROM generate_series(now() - INTERVAL '10 days', now(), INTERVAL '1 hour') AS t
                """
            )
        )
    try:
        yield engine
    finally:
        async with engine.begin() as conn:
            await conn.execute(text(f"DROP TABLE IF EXISTS {TABLE}"))
        await engine.dispose()


@pytest_asyncio.fixture
async def pg_engine(sa_engine: AsyncEngine) -> AsyncGenerator[PostgreSQLEngine, None]:
    engine = PostgreSQLEngine(sa_engine, enable_tracing=False)
    yield engine
    await engine.close()
