"""
Database engines for tiervault.

Provides:
- DatabaseEngine: Protocol used by the tiering components
- PostgreSQLEngine: TimescaleDB implementation
- InMemoryEngine: In-memory implementation for tests and dry runs
"""

from tiervault.engine.in_memory import InMemoryEngine
from tiervault.engine.interface import CompressionSummary, DatabaseEngine
from tiervault.engine.postgresql import (
    DEFAULT_TABLESPACES,
    TRANSIENT_SQLSTATES,
    PostgreSQLEngine,
    classify_error,
)

__all__ = [
    "DatabaseEngine",
    "CompressionSummary",
    "InMemoryEngine",
    "PostgreSQLEngine",
    "DEFAULT_TABLESPACES",
    "TRANSIENT_SQLSTATES",
    "classify_error",
]
