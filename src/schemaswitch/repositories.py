"""
MigrationRunRepository - Run history persistence.

Every state transition of a MigrationRun is saved, so the run history
survives restarts of the orchestrator and can be listed by operators.
The same repositories keep the router's last committed switch, which is
checked against the routing backend when the orchestrator starts.

Implementations:
    - InMemoryMigrationRunRepository: Process-local, for tests and dry runs
    - SQLAlchemyMigrationRunRepository: ``schemaswitch_runs`` and
      ``schemaswitch_router_state`` tables, works on
      PostgreSQL (asyncpg) and SQLite (aiosqlite)

Usage:
    >>> repo = SQLAlchemyMigrationRunRepository(engine)
    >>> await repo.ensure_schema()
    >>> await repo.save(run)
    >>> recent = await repo.list_recent(limit=20)
"""

from __future__ import annotations

import copy
import json
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from schemaswitch.models import (
    EnvironmentName,
    MigrationRequest,
    MigrationRun,
    MigrationStrategy,
    RiskLevel,
    RouterState,
    RunState,
    StateTransition,
    ValidationResult,
)
from schemaswitch.observability import Tracer, create_tracer
from schemaswitch.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_RUN_ID,
    ATTR_RUN_STATE,
)
from schemaswitch.targets._connection import ConnectionMode, open_connection

RUNS_TABLE = "schemaswitch_runs"
ROUTER_STATE_TABLE = "schemaswitch_router_state"


@runtime_checkable
class MigrationRunRepository(Protocol):
    """Protocol for run history storage."""

    async def save(self, run: MigrationRun) -> None:
        """Insert or update a run."""
        ...

    async def get(self, run_id: UUID) -> MigrationRun | None:
        """Get a run by id, or None if unknown."""
        ...

    async def list_recent(self, limit: int = 50) -> list[MigrationRun]:
        """List runs, most recently created first."""
        ...


@runtime_checkable
class RouterStateRepository(Protocol):
    """Protocol for storing the router's last committed state."""

    async def load_router_state(self) -> RouterState | None:
        """Return the saved state, or None if no switch was ever recorded."""
        ...

    async def save_router_state(self, state: RouterState) -> None:
        """Replace the saved state."""
        ...


class InMemoryMigrationRunRepository:
    """
    In-memory run history.

    Stores copies so that later mutation of a live run is only visible
    after the next ``save``.
    """

    def __init__(self) -> None:
        self._runs: dict[UUID, MigrationRun] = {}
        self._router_state: RouterState | None = None

    async def save(self, run: MigrationRun) -> None:
        self._runs[run.id] = copy.deepcopy(run)

    async def get(self, run_id: UUID) -> MigrationRun | None:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run is not None else None

    async def list_recent(self, limit: int = 50) -> list[MigrationRun]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(run) for run in runs[:limit]]

    async def load_router_state(self) -> RouterState | None:
        return self._router_state

    async def save_router_state(self, state: RouterState) -> None:
        # Only the committed switch is kept, as in the SQL table.
        self._router_state = RouterState(
            active_environment=state.active_environment,
            last_switch_at=state.last_switch_at,
        )

    def clear(self) -> None:
        self._runs.clear()
        self._router_state = None


class SQLAlchemyMigrationRunRepository:
    """
    SQLAlchemy implementation of MigrationRunRepository.

    Timestamps are stored as ISO-8601 text and structured fields as JSON
    text so the same table works on every supported dialect.

    Args:
        conn: Database connection or engine
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn

    @property
    def _dialect(self) -> str:
        return self._conn.dialect.name

    async def ensure_schema(self) -> None:
        """Create the runs table, its index and the router state table if missing."""
        async with open_connection(self._conn, ConnectionMode.TRANSACTION) as conn:
            await conn.execute(
                text(f"""
                    CREATE TABLE IF NOT EXISTS {RUNS_TABLE} (
                        id VARCHAR(36) PRIMARY KEY,
                        request_id VARCHAR(36) NOT NULL,
                        state VARCHAR(32) NOT NULL,
                        strategy VARCHAR(16),
                        risk_level VARCHAR(16),
                        source_environment VARCHAR(8),
                        target_environment VARCHAR(8),
                        rollback_point_id VARCHAR(36),
                        failure_reason TEXT,
                        request TEXT NOT NULL,
                        validation TEXT,
                        transitions TEXT NOT NULL,
                        created_at VARCHAR(40) NOT NULL,
                        updated_at VARCHAR(40) NOT NULL
                    )
                """)
            )
            await conn.execute(
                text(
                    f"CREATE INDEX IF NOT EXISTS idx_{RUNS_TABLE}_created_at "
                    f"ON {RUNS_TABLE} (created_at)"
                )
            )
            await conn.execute(
                text(f"""
                    CREATE TABLE IF NOT EXISTS {ROUTER_STATE_TABLE} (
                        id INTEGER PRIMARY KEY,
                        active_environment VARCHAR(8) NOT NULL,
                        last_switch_at VARCHAR(40),
                        updated_at VARCHAR(40) NOT NULL
                    )
                """)
            )

    async def save(self, run: MigrationRun) -> None:
        with self._tracer.span(
            "schemaswitch.run_repo.save",
            {
                ATTR_RUN_ID: str(run.id),
                ATTR_RUN_STATE: run.state.value,
                ATTR_DB_SYSTEM: self._dialect,
                ATTR_DB_OPERATION: "save",
            },
        ):
            params = self._run_to_params(run)

            update = text(f"""
                UPDATE {RUNS_TABLE} SET
                    state = :state,
                    strategy = :strategy,
                    risk_level = :risk_level,
                    source_environment = :source_environment,
                    target_environment = :target_environment,
                    rollback_point_id = :rollback_point_id,
                    failure_reason = :failure_reason,
                    validation = :validation,
                    transitions = :transitions,
                    updated_at = :updated_at
                WHERE id = :id
            """)
            insert = text(f"""
                INSERT INTO {RUNS_TABLE} (
                    id, request_id, state, strategy, risk_level,
                    source_environment, target_environment, rollback_point_id,
                    failure_reason, request, validation, transitions,
                    created_at, updated_at
                ) VALUES (
                    :id, :request_id, :state, :strategy, :risk_level,
                    :source_environment, :target_environment, :rollback_point_id,
                    :failure_reason, :request, :validation, :transitions,
                    :created_at, :updated_at
                )
            """)

            async with open_connection(self._conn, ConnectionMode.TRANSACTION) as conn:
                result = await conn.execute(update, params)
                if result.rowcount == 0:
                    await conn.execute(insert, params)

    async def get(self, run_id: UUID) -> MigrationRun | None:
        with self._tracer.span(
            "schemaswitch.run_repo.get",
            {ATTR_RUN_ID: str(run_id), ATTR_DB_SYSTEM: self._dialect, ATTR_DB_OPERATION: "get"},
        ):
            query = text(f"""
                SELECT
                    id, state, strategy, risk_level,
                    source_environment, target_environment, rollback_point_id,
                    failure_reason, request, validation, transitions
                FROM {RUNS_TABLE}
                WHERE id = :id
            """)

            async with open_connection(self._conn, ConnectionMode.READ) as conn:
                result = await conn.execute(query, {"id": str(run_id)})
                row = result.fetchone()

            if row is None:
                return None
            return self._row_to_run(row)

    async def list_recent(self, limit: int = 50) -> list[MigrationRun]:
        with self._tracer.span(
            "schemaswitch.run_repo.list_recent",
            {ATTR_DB_SYSTEM: self._dialect, ATTR_DB_OPERATION: "list_recent"},
        ):
            query = text(f"""
                SELECT
                    id, state, strategy, risk_level,
                    source_environment, target_environment, rollback_point_id,
                    failure_reason, request, validation, transitions
                FROM {RUNS_TABLE}
                ORDER BY created_at DESC
                LIMIT :limit
            """)

            async with open_connection(self._conn, ConnectionMode.READ) as conn:
                result = await conn.execute(query, {"limit": limit})
                rows = result.fetchall()

            return [self._row_to_run(row) for row in rows]

    # =========================================================================
    # Router state (a single row, id 1)
    # =========================================================================

    async def load_router_state(self) -> RouterState | None:
        with self._tracer.span(
            "schemaswitch.run_repo.load_router_state",
            {ATTR_DB_SYSTEM: self._dialect, ATTR_DB_OPERATION: "load_router_state"},
        ):
            query = text(
                f"SELECT active_environment, last_switch_at FROM {ROUTER_STATE_TABLE} WHERE id = 1"
            )
            async with open_connection(self._conn, ConnectionMode.READ) as conn:
                result = await conn.execute(query)
                row = result.fetchone()

            if row is None:
                return None
            return RouterState(
                active_environment=EnvironmentName(row[0]),
                last_switch_at=datetime.fromisoformat(row[1]) if row[1] else None,
            )

    async def save_router_state(self, state: RouterState) -> None:
        with self._tracer.span(
            "schemaswitch.run_repo.save_router_state",
            {ATTR_DB_SYSTEM: self._dialect, ATTR_DB_OPERATION: "save_router_state"},
        ):
            params = {
                "active_environment": state.active_environment.value,
                "last_switch_at": (
                    state.last_switch_at.isoformat() if state.last_switch_at else None
                ),
                "updated_at": datetime.now(UTC).isoformat(),
            }
            update = text(f"""
                UPDATE {ROUTER_STATE_TABLE} SET
                    active_environment = :active_environment,
                    last_switch_at = :last_switch_at,
                    updated_at = :updated_at
                WHERE id = 1
            """)
            insert = text(f"""
                INSERT INTO {ROUTER_STATE_TABLE} (
                    id, active_environment, last_switch_at, updated_at
                ) VALUES (
                    1, :active_environment, :last_switch_at, :updated_at
                )
            """)

            async with open_connection(self._conn, ConnectionMode.TRANSACTION) as conn:
                result = await conn.execute(update, params)
                if result.rowcount == 0:
                    await conn.execute(insert, params)

    # =========================================================================
    # Helper methods
    # =========================================================================

    @staticmethod
    def _run_to_params(run: MigrationRun) -> dict[str, Any]:
        return {
            "id": str(run.id),
            "request_id": str(run.request.id),
            "state": run.state.value,
            "strategy": run.strategy.value if run.strategy else None,
            "risk_level": run.risk_level.value if run.risk_level else None,
            "source_environment": (
                run.source_environment.value if run.source_environment else None
            ),
            "target_environment": (
                run.target_environment.value if run.target_environment else None
            ),
            "rollback_point_id": str(run.rollback_point_id) if run.rollback_point_id else None,
            "failure_reason": run.failure_reason,
            "request": run.request.model_dump_json(),
            "validation": json.dumps(run.validation.to_dict()) if run.validation else None,
            "transitions": json.dumps([t.to_dict() for t in run.transitions]),
            "created_at": run.created_at.isoformat(),
            "updated_at": run.updated_at.isoformat(),
        }

    @staticmethod
    def _row_to_run(row: Sequence[Any]) -> MigrationRun:
        """
        Convert a database row to a MigrationRun.

        Args:
            row: Database row tuple

        Returns:
            MigrationRun instance
        """
        transitions = [StateTransition.from_dict(t) for t in json.loads(row[10])]
        return MigrationRun(
            request=MigrationRequest.model_validate_json(row[8]),
            id=UUID(row[0]),
            state=RunState(row[1]),
            transitions=transitions,
            strategy=MigrationStrategy(row[2]) if row[2] else None,
            risk_level=RiskLevel(row[3]) if row[3] else None,
            source_environment=EnvironmentName(row[4]) if row[4] else None,
            target_environment=EnvironmentName(row[5]) if row[5] else None,
            rollback_point_id=UUID(row[6]) if row[6] else None,
            failure_reason=row[7],
            validation=ValidationResult.from_dict(json.loads(row[9])) if row[9] else None,
        )


__all__ = [
    "RUNS_TABLE",
    "ROUTER_STATE_TABLE",
    "MigrationRunRepository",
    "RouterStateRepository",
    "InMemoryMigrationRunRepository",
    "SQLAlchemyMigrationRunRepository",
]
