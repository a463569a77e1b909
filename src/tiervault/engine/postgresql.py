"""
PostgreSQL/TimescaleDB database engine.

Chunks are read from ``timescaledb_information.chunks``. Each storage tier is
backed by a tablespace (hot: ``pg_default``, warm and cold configurable);
migrating a chunk is a TimescaleDB ``move_chunk()`` between tablespaces.

The engine uses its own small connection pool so maintenance work never
starves the application of connections, and applies ``statement_timeout``
to every session so a stuck operation fails instead of hanging.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tiervault.engine.interface import CompressionSummary
from tiervault.exceptions import (
    ActionError,
    ChunkNotFoundError,
    PermanentActionError,
    TransientActionError,
)
from tiervault.models import ChunkRecord, TierUsage
from tiervault.observability import (
    ATTR_CHUNK_ID,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_TIER,
    Tracer,
    create_tracer,
)
from tiervault.types import StorageTier

logger = logging.getLogger(__name__)

DEFAULT_TABLESPACES: dict[StorageTier, str] = {
    StorageTier.HOT: "pg_default",
    StorageTier.WARM: "warm_storage",
    StorageTier.COLD: "cold_storage",
}

# SQLSTATE codes worth retrying
TRANSIENT_SQLSTATES = frozenset(
    {
        "55P03",  # lock_not_available
        "40P01",  # deadlock_detected
        "40001",  # serialization_failure
        "57014",  # query_canceled (statement_timeout)
        "57P01",  # admin_shutdown
        "57P03",  # cannot_connect_now
        "53300",  # too_many_connections
    }
)
UNDEFINED_TABLE = "42P01"

_CHUNK_COLUMNS = """
    c.chunk_schema,
    c.chunk_name,
    c.hypertable_schema,
    c.hypertable_name,
    c.range_start,
    c.range_end,
    c.is_compressed,
    c.chunk_tablespace,
    pg_total_relation_size(format('%I.%I', c.chunk_schema, c.chunk_name)::regclass) AS size_bytes
"""


def _sqlstate(error: BaseException) -> str | None:
    """Extract the SQLSTATE from a driver error, however it was wrapped."""
    candidates: list[Any] = [error]
    orig = getattr(error, "orig", None)
    if orig is not None:
        candidates.append(orig)
        if orig.__cause__ is not None:
            candidates.append(orig.__cause__)
    for candidate in candidates:
        for attr in ("sqlstate", "pgcode"):
            code = getattr(candidate, attr, None)
            if isinstance(code, str) and code:
                return code
    return None


def classify_error(chunk_id: str, error: BaseException) -> ActionError:
    """
    Map a database error to the action error taxonomy.

    Lock contention, deadlocks, statement timeouts and connection failures
    are transient; an unknown relation means the chunk is gone; everything
    else is permanent.
    """
    if isinstance(error, ActionError):
        return error

    code = _sqlstate(error)
    if code == UNDEFINED_TABLE:
        return ChunkNotFoundError(chunk_id)
    if code is not None and (code in TRANSIENT_SQLSTATES or code.startswith("08")):
        return TransientActionError(chunk_id, f"[{code}] {error}")
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return TransientActionError(chunk_id, f"connection lost: {error}")
    if isinstance(error, OperationalError) and code is None:
        return TransientActionError(chunk_id, str(error))
    if isinstance(error, ConnectionError | TimeoutError | OSError):
        return TransientActionError(chunk_id, f"{type(error).__name__}: {error}")
    return PermanentActionError(chunk_id, f"[{code}] {error}" if code else str(error))


class PostgreSQLEngine:
    """
    TimescaleDB implementation of the DatabaseEngine protocol.

    Example:
        >>> engine = PostgreSQLEngine.from_url(
        ...     "postgresql+asyncpg://postgres@localhost/metrics",
        ...     tablespaces={StorageTier.WARM: "hdd", StorageTier.COLD: "nas"},
        ... )
        >>> chunks = await engine.list_chunks()
        >>> await engine.move_chunk(chunks[0].chunk_id, StorageTier.WARM)
        >>> await engine.close()
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        tablespaces: dict[StorageTier, str] | None = None,
        tier_capacity_bytes: dict[StorageTier, int] | None = None,
        owns_engine: bool = False,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the engine.

        Args:
            engine: SQLAlchemy async engine for the target database
            tablespaces: Tablespace per tier (missing tiers use the defaults)
            tier_capacity_bytes: Capacity per tier for usage percentages
            owns_engine: Dispose of the SQLAlchemy engine on close()
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing.
                Ignored if tracer is explicitly provided.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._engine = engine
        self._owns_engine = owns_engine
        self._tablespaces = {**DEFAULT_TABLESPACES, **(tablespaces or {})}
        self._tiers_by_tablespace = {name: tier for tier, name in self._tablespaces.items()}
        self._capacity = dict(tier_capacity_bytes or {})
        self._db_name = engine.url.database or ""

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        pool_size: int = 2,
        max_overflow: int = 3,
        statement_timeout: timedelta | None = timedelta(minutes=5),
        **kwargs: Any,
    ) -> PostgreSQLEngine:
        """Create an engine with its own small pool and a statement timeout."""
        connect_args: dict[str, Any] = {}
        if statement_timeout is not None:
            timeout_ms = int(statement_timeout.total_seconds() * 1000)
            connect_args["server_settings"] = {"statement_timeout": str(timeout_ms)}
        engine = create_async_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        return cls(engine, owns_engine=True, **kwargs)

    @property
    def tablespaces(self) -> dict[StorageTier, str]:
        return dict(self._tablespaces)

    def _span_attributes(self, operation: str, **extra: Any) -> dict[str, Any]:
        attributes = {
            ATTR_DB_SYSTEM: "postgresql",
            ATTR_DB_NAME: self._db_name,
            ATTR_DB_OPERATION: operation,
        }
        attributes.update(extra)
        return attributes

    def _tier_for(self, tablespace: str | None) -> StorageTier:
        if tablespace is None:
            return StorageTier.HOT
        tier = self._tiers_by_tablespace.get(tablespace)
        if tier is None:
            logger.warning("Chunk on unmapped tablespace %s, treating as hot", tablespace)
            return StorageTier.HOT
        return tier

    def _row_to_chunk(self, row: Any) -> ChunkRecord | None:
        if row.range_start is None or row.range_end is None:
            # Integer-partitioned hypertable; ages are not time based
            return None
        return ChunkRecord(
            chunk_id=f"{row.chunk_schema}.{row.chunk_name}",
            table_name=row.hypertable_name,
            schema_name=row.hypertable_schema,
            range_start=row.range_start,
            range_end=row.range_end,
            tier=self._tier_for(row.chunk_tablespace),
            compressed=bool(row.is_compressed),
            size_bytes=int(row.size_bytes or 0),
        )

    def _quote_chunk(self, chunk_id: str) -> str:
        preparer = self._engine.dialect.identifier_preparer
        schema, _, name = chunk_id.rpartition(".")
        if not schema:
            return preparer.quote(name)
        return f"{preparer.quote(schema)}.{preparer.quote(name)}"

    async def list_chunks(self) -> list[ChunkRecord]:
        with self._tracer.span("tiervault.engine.list_chunks", self._span_attributes("list_chunks")):
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    text(
                        f"""
                        SELECT {_CHUNK_COLUMNS}
                        FROM timescaledb_information.chunks c
                        ORDER BY c.hypertable_name, c.range_start, c.chunk_name
                        """
                    )
                )
                rows = result.fetchall()

        chunks = []
        for row in rows:
            chunk = self._row_to_chunk(row)
            if chunk is None:
                logger.debug(
                    "Skipping %s.%s: no time range", row.chunk_schema, row.chunk_name
                )
                continue
            chunks.append(chunk)
        return chunks

    async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
        with self._tracer.span(
            "tiervault.engine.get_chunk",
            self._span_attributes("get_chunk", **{ATTR_CHUNK_ID: chunk_id}),
        ):
            try:
                async with self._engine.connect() as conn:
                    result = await conn.execute(
                        text(
                            f"""
                            SELECT {_CHUNK_COLUMNS}
                            FROM timescaledb_information.chunks c
                            WHERE format('%I.%I', c.chunk_schema, c.chunk_name) = :chunk_id
                               OR c.chunk_schema || '.' || c.chunk_name = :chunk_id
                            """
                        ),
                        {"chunk_id": chunk_id},
                    )
                    row = result.fetchone()
            except Exception as e:
                raise classify_error(chunk_id, e) from e

        if row is None:
            return None
        return self._row_to_chunk(row)

    async def _execute_action(
        self,
        operation: str,
        chunk_id: str,
        statement: str,
        params: dict[str, Any],
        **attributes: Any,
    ) -> None:
        with self._tracer.span(
            f"tiervault.engine.{operation}",
            self._span_attributes(operation, **{ATTR_CHUNK_ID: chunk_id}, **attributes),
        ):
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(text(statement), params)
            except Exception as e:
                raise classify_error(chunk_id, e) from e
        logger.debug("%s completed for %s", operation, chunk_id)

    async def compress_chunk(self, chunk_id: str) -> None:
        await self._execute_action(
            "compress_chunk",
            chunk_id,
            "SELECT compress_chunk(CAST(:chunk AS regclass), if_not_compressed => true)",
            {"chunk": self._quote_chunk(chunk_id)},
        )

    async def move_chunk(self, chunk_id: str, tier: StorageTier) -> None:
        tablespace = self._tablespaces[tier]
        await self._execute_action(
            "move_chunk",
            chunk_id,
            """
            SELECT move_chunk(
                chunk => CAST(:chunk AS regclass),
                destination_tablespace => CAST(:tablespace AS name),
                index_destination_tablespace => CAST(:tablespace AS name)
            )
            """,
            {"chunk": self._quote_chunk(chunk_id), "tablespace": tablespace},
            **{ATTR_TIER: tier.value},
        )

    async def drop_chunk(self, chunk_id: str) -> None:
        # Identifier is quoted by the dialect; DDL cannot take bind parameters
        await self._execute_action(
            "drop_chunk",
            chunk_id,
            f"DROP TABLE {self._quote_chunk(chunk_id)}",
            {},
        )

    async def tier_usage(self) -> list[TierUsage]:
        usage = []
        with self._tracer.span("tiervault.engine.tier_usage", self._span_attributes("tier_usage")):
            async with self._engine.connect() as conn:
                for tier, tablespace in self._tablespaces.items():
                    result = await conn.execute(
                        text(
                            """
                            SELECT pg_tablespace_size(spcname)
                            FROM pg_tablespace
                            WHERE spcname = :tablespace
                            """
                        ),
                        {"tablespace": tablespace},
                    )
                    used = result.scalar()
                    if used is None:
                        logger.warning("Tablespace %s for tier %s does not exist", tablespace, tier.value)
                        continue
                    usage.append(
                        TierUsage(
                            tier=tier,
                            used_bytes=int(used),
                            capacity_bytes=self._capacity.get(tier),
                            location=tablespace,
                        )
                    )
        return usage

    async def compression_summary(self) -> list[CompressionSummary]:
        with self._tracer.span(
            "tiervault.engine.compression_summary",
            self._span_attributes("compression_summary"),
        ):
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    text(
                        """
                        SELECT
                            c.hypertable_name,
                            count(*) AS total_chunks,
                            count(*) FILTER (WHERE c.is_compressed) AS compressed_chunks,
                            COALESCE(sum(pg_total_relation_size(
                                format('%I.%I', c.chunk_schema, c.chunk_name)::regclass
                            )), 0) AS total_bytes
                        FROM timescaledb_information.chunks c
                        GROUP BY c.hypertable_name
                        ORDER BY c.hypertable_name
                        """
                    )
                )
                rows = result.fetchall()
        return [
            CompressionSummary(
                table_name=row.hypertable_name,
                total_chunks=int(row.total_chunks),
                compressed_chunks=int(row.compressed_chunks),
                total_bytes=int(row.total_bytes),
            )
            for row in rows
        ]

    async def ping(self) -> None:
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()


__all__ = [
    "DEFAULT_TABLESPACES",
    "TRANSIENT_SQLSTATES",
    "PostgreSQLEngine",
    "classify_error",
]
