"""
Observability utilities for tiervault.

Provides the injectable Tracer abstraction and the standard span attribute
names used by every component.

Example:
    >>> from tiervault.observability import create_tracer
    >>>
    >>> class MyExecutor:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from tiervault.observability.attributes import (
    ATTR_ACTION_COUNT,
    ATTR_ACTION_KIND,
    ATTR_ATTEMPT,
    ATTR_BACKUP_ID,
    ATTR_BACKUP_KIND,
    ATTR_CHUNK_COUNT,
    ATTR_CHUNK_ID,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_JOB_NAME,
    ATTR_LOCK_KEY,
    ATTR_RUN_ID,
    ATTR_STORAGE_TARGET,
    ATTR_TABLE_NAME,
    ATTR_TIER,
)
from tiervault.observability.tracer import (
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    RecordingTracer,
    Tracer,
    clean_attributes,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordingTracer",
    "RecordedSpan",
    "clean_attributes",
    "create_tracer",
    # Attributes
    "ATTR_DB_SYSTEM",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_CHUNK_ID",
    "ATTR_TABLE_NAME",
    "ATTR_TIER",
    "ATTR_ACTION_KIND",
    "ATTR_ACTION_COUNT",
    "ATTR_CHUNK_COUNT",
    "ATTR_ATTEMPT",
    "ATTR_BACKUP_ID",
    "ATTR_BACKUP_KIND",
    "ATTR_STORAGE_TARGET",
    "ATTR_RUN_ID",
    "ATTR_JOB_NAME",
    "ATTR_LOCK_KEY",
]
