"""
Shared test helpers for tiervault.

Usage:
    from tests.fixtures import NOW, FakeClock, FakeDumper, days, make_chunk, metrics_rule
"""

from tests.fixtures.backups import FakeDumper
from tests.fixtures.chunks import (
    CHUNK_SPAN,
    NOW,
    FakeClock,
    days,
    make_chunk,
    metrics_rule,
)

__all__ = [
    "NOW",
    "CHUNK_SPAN",
    "FakeClock",
    "FakeDumper",
    "days",
    "make_chunk",
    "metrics_rule",
]
