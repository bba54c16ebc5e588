"""
SQLAlchemyDatabaseTarget - DatabaseTarget backed by a SQLAlchemy async engine.

Migration statements run verbatim through ``exec_driver_sql`` inside a
single transaction, except statements PostgreSQL refuses in a transaction
block, which run in autocommit mode. Snapshots use table reflection: the
captured ``MetaData`` recreates the schema on restore, and rows are taken
from the snapshot (data snapshots) or carried over from the live tables
(schema-only snapshots).

Example:
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/app_blue")
    >>> target = SQLAlchemyDatabaseTarget(engine, statement_timeout=300)
    >>> await target.ping()
    >>> await target.apply(["ALTER TABLE users ADD COLUMN nickname TEXT"])
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import MetaData, insert, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from schemaswitch.exceptions import ApplyError
from schemaswitch.observability import Tracer, create_tracer
from schemaswitch.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_INCLUDES_DATA,
    ATTR_STATEMENT_COUNT,
)
from schemaswitch.targets._connection import ConnectionMode, open_connection
from schemaswitch.targets.base import SchemaSnapshot

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_TABLES = frozenset({"schemaswitch_runs", "schemaswitch_router_state"})
"""Bookkeeping tables never captured or dropped by snapshots."""

# Comments and whitespace before the first keyword
_LEADING_NOISE = re.compile(r"^(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/)*", re.DOTALL)

_NO_TRANSACTION = re.compile(
    r"^(?:"
    r"CREATE\s+(?:UNIQUE\s+)?INDEX\s+CONCURRENTLY\b"
    r"|DROP\s+INDEX\s+CONCURRENTLY\b"
    r"|REINDEX\b.*\bCONCURRENTLY\b"
    r"|ALTER\s+TABLE\b.*\bDETACH\s+PARTITION\b.*\bCONCURRENTLY\b"
    r"|VACUUM\b"
    r")",
    re.IGNORECASE | re.DOTALL,
)


def requires_autocommit(statement: str) -> bool:
    """
    True for statements PostgreSQL refuses inside a transaction block.

    ``CREATE INDEX CONCURRENTLY``, ``DROP INDEX CONCURRENTLY``,
    ``REINDEX ... CONCURRENTLY``, ``DETACH PARTITION ... CONCURRENTLY``
    and ``VACUUM``.
    """
    body = _LEADING_NOISE.sub("", statement, count=1)
    return _NO_TRANSACTION.match(body) is not None


async def _execute(conn: AsyncConnection, index: int, statement: str) -> None:
    try:
        await conn.exec_driver_sql(statement)
    except SQLAlchemyError as e:
        raise ApplyError(
            f"Statement {index + 1} failed: {e}",
            statement=statement,
            statement_index=index,
        ) from e


@dataclass(frozen=True)
class _ReflectedState:
    metadata: MetaData
    rows: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


class SQLAlchemyDatabaseTarget:
    """
    DatabaseTarget over an ``AsyncEngine``.

    Args:
        engine: Async engine for the environment's database
        statement_timeout: Per-statement limit in seconds (PostgreSQL only)
        exclude_tables: Tables ignored by snapshot and restore
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        statement_timeout: float | None = None,
        exclude_tables: Iterable[str] = DEFAULT_EXCLUDED_TABLES,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._engine = engine
        self._statement_timeout = statement_timeout
        self._excluded = frozenset(exclude_tables)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> SQLAlchemyDatabaseTarget:
        """Create a target with its own engine (pre-ping enabled)."""
        return cls(create_async_engine(url, pool_pre_ping=True), **kwargs)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    async def ping(self) -> None:
        with self._tracer.span(
            "schemaswitch.target.ping",
            {ATTR_DB_SYSTEM: self.dialect, ATTR_DB_OPERATION: "ping"},
        ):
            async with open_connection(self._engine, ConnectionMode.READ) as conn:
                result = await conn.execute(text("SELECT 1"))
                value = result.scalar()
            if value != 1:
                raise RuntimeError(f"Unexpected ping result: {value!r}")

    async def apply(self, statements: Sequence[str]) -> None:
        """
        Execute statements in order.

        Consecutive ordinary statements run in one transaction; a failing
        statement aborts it, and on databases with transactional DDL nothing
        from that transaction remains. Statements that cannot run inside a
        transaction block (see ``requires_autocommit``) run on their own
        autocommit connection at their position in the batch. The
        transaction before such a statement is committed first, so a later
        failure does not undo it.

        Raises:
            ApplyError: With the index of the failing statement.
        """
        with self._tracer.span(
            "schemaswitch.target.apply",
            {
                ATTR_DB_SYSTEM: self.dialect,
                ATTR_DB_OPERATION: "apply",
                ATTR_STATEMENT_COUNT: len(statements),
            },
        ):
            pending: list[tuple[int, str]] = []
            for index, statement in enumerate(statements):
                if requires_autocommit(statement):
                    await self._apply_in_transaction(pending, len(statements))
                    pending = []
                    await self._apply_autocommit(index, statement, len(statements))
                else:
                    pending.append((index, statement))
            await self._apply_in_transaction(pending, len(statements))

    async def _apply_in_transaction(self, batch: list[tuple[int, str]], total: int) -> None:
        if not batch:
            return
        async with open_connection(self._engine, ConnectionMode.TRANSACTION) as conn:
            if self._timeout_ms is not None:
                await conn.exec_driver_sql(f"SET LOCAL statement_timeout = {self._timeout_ms}")
            for index, statement in batch:
                await _execute(conn, index, statement)
                logger.debug("Applied statement %d/%d", index + 1, total)

    async def _apply_autocommit(self, index: int, statement: str, total: int) -> None:
        async with open_connection(self._engine, ConnectionMode.AUTOCOMMIT) as conn:
            if self._timeout_ms is None:
                await _execute(conn, index, statement)
            else:
                await conn.exec_driver_sql(f"SET statement_timeout = {self._timeout_ms}")
                try:
                    await _execute(conn, index, statement)
                finally:
                    await conn.exec_driver_sql("RESET statement_timeout")
        logger.debug("Applied statement %d/%d outside a transaction", index + 1, total)

    async def capture_snapshot(self, include_data: bool = False) -> SchemaSnapshot:
        with self._tracer.span(
            "schemaswitch.target.capture_snapshot",
            {ATTR_DB_SYSTEM: self.dialect, ATTR_INCLUDES_DATA: include_data},
        ):
            async with open_connection(self._engine, ConnectionMode.READ) as conn:
                metadata = await self._reflect(conn)
                rows: dict[str, list[dict[str, Any]]] = {}
                if include_data:
                    for table in metadata.sorted_tables:
                        result = await conn.execute(select(table))
                        rows[table.key] = [dict(row._mapping) for row in result]

            logger.info(
                "Captured %s snapshot of %d tables",
                "schema+data" if include_data else "schema",
                len(metadata.tables),
            )
            return SchemaSnapshot(
                captured_at=datetime.now(UTC),
                tables=tuple(sorted(metadata.tables)),
                includes_data=include_data,
                payload=_ReflectedState(metadata=metadata, rows=rows),
            )

    async def restore_snapshot(self, snapshot: SchemaSnapshot) -> None:
        """
        Recreate the captured schema and reload rows.

        Tables created after the snapshot are dropped. For schema-only
        snapshots the live rows are carried over, restricted to the
        columns the snapshot knows about.
        """
        state = snapshot.payload
        if not isinstance(state, _ReflectedState):
            raise TypeError("Snapshot was not produced by a SQLAlchemy target")

        with self._tracer.span(
            "schemaswitch.target.restore_snapshot",
            {ATTR_DB_SYSTEM: self.dialect, ATTR_INCLUDES_DATA: snapshot.includes_data},
        ):
            async with open_connection(self._engine, ConnectionMode.TRANSACTION) as conn:
                live = await self._reflect(conn)

                if snapshot.includes_data:
                    rows = state.rows
                else:
                    rows = await self._carry_over_rows(conn, state.metadata, live)

                await conn.run_sync(lambda sync_conn: live.drop_all(bind=sync_conn))
                await conn.run_sync(lambda sync_conn: state.metadata.create_all(bind=sync_conn))

                for table in state.metadata.sorted_tables:
                    table_rows = rows.get(table.key)
                    if table_rows:
                        await conn.execute(insert(table), table_rows)

            logger.info("Restored snapshot taken at %s", snapshot.captured_at.isoformat())

    async def dispose(self) -> None:
        with self._tracer.span("schemaswitch.target.dispose", {ATTR_DB_SYSTEM: self.dialect}):
            await self._engine.dispose()

    async def _reflect(self, conn: AsyncConnection) -> MetaData:
        metadata = MetaData()
        await conn.run_sync(
            lambda sync_conn: metadata.reflect(
                bind=sync_conn,
                only=lambda name, _meta: name not in self._excluded,
            )
        )
        return metadata

    async def _carry_over_rows(
        self,
        conn: AsyncConnection,
        snapshot_metadata: MetaData,
        live: MetaData,
    ) -> dict[str, list[dict[str, Any]]]:
        rows: dict[str, list[dict[str, Any]]] = {}
        for table in snapshot_metadata.sorted_tables:
            live_table = live.tables.get(table.key)
            if live_table is None:
                continue
            columns = [live_table.c[col.name] for col in table.columns if col.name in live_table.c]
            if not columns:
                continue
            result = await conn.execute(select(*columns))
            rows[table.key] = [dict(row._mapping) for row in result]
        return rows

    @property
    def _timeout_ms(self) -> int | None:
        if self._statement_timeout and self.dialect == "postgresql":
            return int(self._statement_timeout * 1000)
        return None


__all__ = ["DEFAULT_EXCLUDED_TABLES", "SQLAlchemyDatabaseTarget", "requires_autocommit"]
