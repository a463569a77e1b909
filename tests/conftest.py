"""
Shared pytest fixtures for the tiervault tests.

This module provides:
- Time fixtures (now, clock)
- Engine fixtures (engine: empty InMemoryEngine)
- Reporting fixtures (notifier, reporter)
- Backup fixtures (catalog, local/remote targets, dumper, coordinator)
- Orchestrator fixtures (orchestrator over in-memory components, settings)
- SQLite fixtures (sqlite_connection)

Database access is always replaced by InMemoryEngine and pg_dump by
FakeDumper; PostgreSQL tests live in tests/integration.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from tests.fixtures import NOW, FakeClock, FakeDumper, metrics_rule
from tiervault.backup import (
    BackupCoordinator,
    BackupPolicy,
    InMemoryBackupCatalog,
    LocalStorageTarget,
    RemoteStorageTarget,
)
from tiervault.config import Settings
from tiervault.engine import InMemoryEngine
from tiervault.orchestrator import Orchestrator
from tiervault.reporting import InMemoryNotifier, Reporter, Thresholds
from tiervault.retry import RetryConfig
from tiervault.tiering import (
    ActionExecutor,
    InventoryCollector,
    PolicyEvaluator,
    default_retry_policy,
)

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "postgres: marks tests that require PostgreSQL")


# =============================================================================
# Time Fixtures
# =============================================================================


@pytest.fixture
def now() -> datetime:
    """Fixed reference time used by chunk and backup builders."""
    return NOW


@pytest.fixture
def clock() -> FakeClock:
    """Settable clock starting at NOW."""
    return FakeClock(NOW)


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def engine() -> InMemoryEngine:
    """Empty in-memory engine with tracing disabled."""
    return InMemoryEngine(enable_tracing=False)


@pytest.fixture
def fast_retry_policy():
    """Transient-only retry policy with millisecond backoff."""
    return default_retry_policy(max_retries=2, initial_delay=0.001)


@pytest.fixture
def fast_collection_retry() -> RetryConfig:
    """Three collection attempts with millisecond backoff."""
    return RetryConfig(max_retries=2, initial_delay=0.001, max_delay=0.01, jitter=0.0)


# =============================================================================
# Reporting Fixtures
# =============================================================================


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def reporter(notifier: InMemoryNotifier, clock: FakeClock) -> Reporter:
    """Reporter with default thresholds that records alerts in memory."""
    return Reporter(Thresholds(), [notifier], cooldown=timedelta(hours=1), clock=clock)


# =============================================================================
# Backup Fixtures
# =============================================================================


@pytest.fixture
def catalog() -> InMemoryBackupCatalog:
    return InMemoryBackupCatalog()


@pytest.fixture
def dumper() -> FakeDumper:
    return FakeDumper()


@pytest.fixture
def local_target(tmp_path: Path) -> LocalStorageTarget:
    return LocalStorageTarget(tmp_path / "local")


@pytest.fixture
def remote_target(tmp_path: Path) -> RemoteStorageTarget:
    """Remote target on a pre-existing directory (no mount command)."""
    root = tmp_path / "nas"
    root.mkdir()
    return RemoteStorageTarget(root, mount=False, low_space_bytes=0)


@pytest.fixture
def backup_policy() -> BackupPolicy:
    """Small size limits so test artifacts pass verification."""
    return BackupPolicy(
        local_retention=timedelta(days=30),
        remote_retention=timedelta(days=90),
        min_free_bytes=0,
        min_backup_size=1024,
    )


@pytest.fixture
def coordinator(
    dumper: FakeDumper,
    catalog: InMemoryBackupCatalog,
    local_target: LocalStorageTarget,
    remote_target: RemoteStorageTarget,
    backup_policy: BackupPolicy,
    reporter: Reporter,
    clock: FakeClock,
) -> BackupCoordinator:
    return BackupCoordinator(
        dumper,
        catalog,
        local_target,
        remote_target,
        policy=backup_policy,
        reporter=reporter,
        clock=clock,
        enable_tracing=False,
    )


# =============================================================================
# Orchestrator Fixtures
# =============================================================================


@pytest.fixture
def orchestrator(
    engine: InMemoryEngine,
    fast_collection_retry: RetryConfig,
    fast_retry_policy,
    reporter: Reporter,
    coordinator: BackupCoordinator,
    clock: FakeClock,
    tmp_path: Path,
) -> Orchestrator:
    """
    Orchestrator over in-memory components with the default metrics rule.

    The status file is written to tmp_path/status.json after every run.
    """
    return Orchestrator(
        engine,
        PolicyEvaluator([metrics_rule()]),
        collector=InventoryCollector(
            engine, retry_config=fast_collection_retry, enable_tracing=False
        ),
        executor=ActionExecutor(
            engine, retry_policy=fast_retry_policy, clock=clock, enable_tracing=False
        ),
        reporter=reporter,
        coordinator=coordinator,
        status_file=tmp_path / "status.json",
        clock=clock,
        enable_tracing=False,
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings whose run-locks live in tmp_path."""
    return Settings.model_validate(
        {
            "scheduler": {"lock_dir": str(tmp_path / "locks")},
            "backup": {"incremental_interval": "6h"},
        }
    )


# =============================================================================
# SQLite Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """
    Provide a raw aiosqlite connection to an in-memory database.

    Yields:
        aiosqlite.Connection: Fresh connection, closed after the test
    """
    conn = await aiosqlite.connect(":memory:")
    yield conn
    await conn.close()
