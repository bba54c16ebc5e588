"""
Unit tests for the database targets.

Tests cover:
- InMemoryDatabaseTarget batching and fault injection
- SQLAlchemyDatabaseTarget against SQLite: ping, apply, snapshots, restore
- Statements applied in autocommit mode
- The connection scope helper
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import event, inspect, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from schemaswitch.exceptions import ApplyError
from schemaswitch.observability import MockTracer
from schemaswitch.targets import (
    DatabaseTarget,
    InMemoryDatabaseTarget,
    SQLAlchemyDatabaseTarget,
    requires_autocommit,
)
from schemaswitch.targets._connection import ConnectionMode, open_connection


async def _table_names(engine: AsyncEngine) -> set[str]:
    async with engine.connect() as conn:
        names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    return set(names)


async def _column_names(engine: AsyncEngine, table: str) -> list[str]:
    async with engine.connect() as conn:
        columns = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_columns(table))
    return [column["name"] for column in columns]


class TestInMemoryDatabaseTarget:
    """Tests for the in-memory target."""

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryDatabaseTarget(), DatabaseTarget)

    @pytest.mark.asyncio
    async def test_apply_appends_statements(self):
        target = InMemoryDatabaseTarget()

        await target.apply(["CREATE TABLE a (id INT)", "CREATE TABLE b (id INT)"])

        assert target.statements == ["CREATE TABLE a (id INT)", "CREATE TABLE b (id INT)"]

    @pytest.mark.asyncio
    async def test_failed_batch_leaves_no_statements(self):
        target = InMemoryDatabaseTarget()
        target.fail_statements_containing("drop column")

        with pytest.raises(ApplyError) as exc_info:
            await target.apply(["ALTER TABLE u ADD COLUMN x TEXT", "ALTER TABLE u DROP COLUMN y"])

        assert exc_info.value.statement_index == 1
        assert target.statements == []
        assert target.executed == [
            "ALTER TABLE u ADD COLUMN x TEXT",
            "ALTER TABLE u DROP COLUMN y",
        ]

    @pytest.mark.asyncio
    async def test_snapshot_and_restore(self):
        target = InMemoryDatabaseTarget()
        await target.apply(["CREATE TABLE a (id INT)"])
        snapshot = await target.capture_snapshot(include_data=True)

        await target.apply(["ALTER TABLE a ADD COLUMN x TEXT"])
        await target.restore_snapshot(snapshot)
        await target.restore_snapshot(snapshot)

        assert snapshot.includes_data is True
        assert target.statements == ["CREATE TABLE a (id INT)"]
        assert target.restore_count == 2

    @pytest.mark.asyncio
    async def test_fault_injection_and_recover(self):
        target = InMemoryDatabaseTarget("green")
        target.fail_pings()
        target.fail_snapshots()
        target.fail_restores()

        with pytest.raises(ConnectionError, match="green is unreachable"):
            await target.ping()
        with pytest.raises(OSError):
            await target.capture_snapshot()

        target.recover()
        await target.ping()
        snapshot = await target.capture_snapshot()
        await target.restore_snapshot(snapshot)

    @pytest.mark.asyncio
    async def test_dispose(self):
        target = InMemoryDatabaseTarget()

        await target.dispose()

        assert target.disposed


@pytest.mark.sqlite
class TestSQLAlchemyDatabaseTarget:
    """Tests for the SQLAlchemy target on SQLite."""

    @pytest.mark.asyncio
    async def test_ping(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)

        await target.ping()

        assert target.dialect == "sqlite"

    @pytest.mark.asyncio
    async def test_apply(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)

        await target.apply(
            [
                "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)",
                "ALTER TABLE users ADD COLUMN nickname TEXT",
            ]
        )

        assert await _column_names(sqlite_engine, "users") == ["id", "name", "nickname"]

    @pytest.mark.asyncio
    async def test_apply_failure_names_statement(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)

        with pytest.raises(ApplyError) as exc_info:
            await target.apply(["CREATE TABLE t (id INTEGER)", "ALTER TABLE missing ADD x TEXT"])

        assert exc_info.value.statement_index == 1
        assert exc_info.value.statement == "ALTER TABLE missing ADD x TEXT"
        assert exc_info.value.message.startswith("Statement 2 failed")

    @pytest.mark.asyncio
    async def test_schema_only_restore_keeps_rows(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)
        await target.apply(
            [
                "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)",
                "INSERT INTO users (id, name) VALUES (1, 'ada'), (2, 'grace')",
            ]
        )
        snapshot = await target.capture_snapshot()

        await target.apply(
            [
                "ALTER TABLE users ADD COLUMN nickname TEXT",
                "CREATE TABLE audit (id INTEGER PRIMARY KEY)",
                "INSERT INTO users (id, name) VALUES (3, 'linus')",
            ]
        )
        await target.restore_snapshot(snapshot)

        assert snapshot.tables == ("users",)
        assert snapshot.includes_data is False
        assert await _table_names(sqlite_engine) == {"users"}
        assert await _column_names(sqlite_engine, "users") == ["id", "name"]
        async with sqlite_engine.connect() as conn:
            count = (await conn.execute(text("SELECT COUNT(*) FROM users"))).scalar()
        assert count == 3

    @pytest.mark.asyncio
    async def test_data_restore_brings_rows_back(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)
        await target.apply(
            [
                "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)",
                "INSERT INTO users (id, name) VALUES (1, 'ada')",
            ]
        )
        snapshot = await target.capture_snapshot(include_data=True)

        await target.apply(["DELETE FROM users"])
        await target.restore_snapshot(snapshot)

        async with sqlite_engine.connect() as conn:
            rows = (await conn.execute(text("SELECT id, name FROM users"))).all()
        assert [tuple(row) for row in rows] == [(1, "ada")]

    @pytest.mark.asyncio
    async def test_excluded_tables_are_untouched(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)
        await target.apply(["CREATE TABLE schemaswitch_runs (id TEXT PRIMARY KEY)"])

        snapshot = await target.capture_snapshot()
        await target.restore_snapshot(snapshot)

        assert snapshot.tables == ()
        assert await _table_names(sqlite_engine) == {"schemaswitch_runs"}

    @pytest.mark.asyncio
    async def test_restore_rejects_foreign_snapshot(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)
        snapshot = await InMemoryDatabaseTarget().capture_snapshot()

        with pytest.raises(TypeError):
            await target.restore_snapshot(snapshot)

    @pytest.mark.asyncio
    async def test_spans(self, sqlite_engine: AsyncEngine):
        tracer = MockTracer()
        target = SQLAlchemyDatabaseTarget(sqlite_engine, tracer=tracer)

        await target.ping()
        await target.apply(["CREATE TABLE t (id INTEGER)"])
        await target.dispose()

        assert tracer.span_names == [
            "schemaswitch.target.ping",
            "schemaswitch.target.apply",
            "schemaswitch.target.dispose",
        ]


class TestRequiresAutocommit:
    """Tests for detecting statements that cannot run in a transaction block."""

    @pytest.mark.parametrize(
        "statement",
        [
            "CREATE INDEX CONCURRENTLY idx_users_email ON users (email)",
            "create unique index concurrently idx_u ON users (email)",
            "DROP INDEX CONCURRENTLY IF EXISTS idx_users_email",
            "REINDEX (VERBOSE) INDEX CONCURRENTLY idx_users_email",
            "ALTER TABLE events DETACH PARTITION events_2025 CONCURRENTLY",
            "VACUUM ANALYZE users",
            "-- build online\nCREATE INDEX CONCURRENTLY idx ON users (email)",
            "/* online */ DROP INDEX CONCURRENTLY idx",
        ],
    )
    def test_detected(self, statement: str):
        assert requires_autocommit(statement)

    @pytest.mark.parametrize(
        "statement",
        [
            "CREATE INDEX idx_users_email ON users (email)",
            "DROP INDEX idx_users_email",
            "ALTER TABLE users ADD COLUMN concurrently_seen BOOLEAN",
            "CREATE TABLE vacuum_log (id INTEGER)",
        ],
    )
    def test_not_detected(self, statement: str):
        assert not requires_autocommit(statement)


@pytest.mark.sqlite
class TestAutocommitStatements:
    """Tests for statements applied outside the batch transaction."""

    @pytest.mark.asyncio
    async def test_each_statement_runs_in_the_right_mode(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)
        statements = [
            "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT)",
            "VACUUM",
            "CREATE INDEX idx_users_email ON users (email)",
        ]
        await target.ping()
        isolation: dict[str, str | None] = {}

        @event.listens_for(sqlite_engine.sync_engine, "before_cursor_execute")
        def record(conn, cursor, statement, parameters, context, executemany):
            if statement in statements:
                isolation[statement] = conn.get_execution_options().get("isolation_level")

        try:
            await target.apply(statements)
        finally:
            event.remove(sqlite_engine.sync_engine, "before_cursor_execute", record)

        assert isolation == {
            "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT)": None,
            "VACUUM": "AUTOCOMMIT",
            "CREATE INDEX idx_users_email ON users (email)": None,
        }
        assert await _table_names(sqlite_engine) == {"users"}

    @pytest.mark.asyncio
    async def test_earlier_statements_are_committed_first(self, sqlite_engine: AsyncEngine):
        target = SQLAlchemyDatabaseTarget(sqlite_engine, enable_tracing=False)

        with pytest.raises(ApplyError) as exc_info:
            await target.apply(
                [
                    "CREATE TABLE users (id INTEGER PRIMARY KEY)",
                    "VACUUM",
                    "ALTER TABLE missing ADD COLUMN x TEXT",
                ]
            )

        assert exc_info.value.statement_index == 2
        assert await _table_names(sqlite_engine) == {"users"}


class TestOpenConnection:
    """Tests for open_connection."""

    @pytest.mark.asyncio
    async def test_transaction_uses_begin(self):
        mock_connection = AsyncMock()
        mock_engine = MagicMock()
        mock_begin = AsyncMock()
        mock_begin.__aenter__.return_value = mock_connection
        mock_engine.begin.return_value = mock_begin

        async with open_connection(mock_engine, ConnectionMode.TRANSACTION) as conn:
            assert conn is mock_connection

        mock_engine.begin.assert_called_once()
        mock_engine.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_read_uses_connect(self):
        mock_connection = AsyncMock()
        mock_engine = MagicMock()
        mock_connect = AsyncMock()
        mock_connect.__aenter__.return_value = mock_connection
        mock_engine.connect.return_value = mock_connect

        async with open_connection(mock_engine, ConnectionMode.READ) as conn:
            assert conn is mock_connection

        mock_engine.connect.assert_called_once()
        mock_engine.begin.assert_not_called()
        mock_connection.execution_options.assert_not_called()

    @pytest.mark.asyncio
    async def test_autocommit_switches_isolation_level(self):
        mock_connection = AsyncMock()
        autocommit_connection = AsyncMock()
        mock_connection.execution_options.return_value = autocommit_connection
        mock_engine = MagicMock()
        mock_connect = AsyncMock()
        mock_connect.__aenter__.return_value = mock_connection
        mock_engine.connect.return_value = mock_connect

        async with open_connection(mock_engine, ConnectionMode.AUTOCOMMIT) as conn:
            assert conn is autocommit_connection

        mock_connection.execution_options.assert_awaited_once_with(isolation_level="AUTOCOMMIT")
        mock_engine.begin.assert_not_called()

    @pytest.mark.asyncio
    async def test_connection_passes_through(self):
        mock_connection = MagicMock(spec=AsyncConnection)

        async with open_connection(mock_connection, ConnectionMode.TRANSACTION) as conn:
            assert conn is mock_connection

        mock_connection.begin.assert_not_called()

    @pytest.mark.asyncio
    async def test_autocommit_needs_an_engine(self):
        with pytest.raises(ValueError, match="AUTOCOMMIT needs an engine"):
            async with open_connection(MagicMock(spec=AsyncConnection), ConnectionMode.AUTOCOMMIT):
                pass
