"""
DatabaseTarget protocol and snapshot record.

A target is one physical database behind a logical environment (blue or
green). The orchestrator needs only five things from it: a cheap liveness
query, transactional DDL application, and a way to capture and restore a
snapshot for rollback points.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class SchemaSnapshot:
    """
    Captured state of a target.

    Attributes:
        captured_at: When the snapshot was taken (UTC)
        tables: Names of the tables covered
        includes_data: Whether row data was captured
        payload: Target-specific content; only the producing target type
            can restore it
    """

    captured_at: datetime
    tables: tuple[str, ...]
    includes_data: bool
    payload: Any


@runtime_checkable
class DatabaseTarget(Protocol):
    """
    Protocol for a database the orchestrator can probe, migrate and restore.

    Implementations:
    - SQLAlchemyDatabaseTarget: Any SQLAlchemy async engine (PostgreSQL, SQLite)
    - InMemoryDatabaseTarget: Statement log with fault injection, for dry runs and tests
    """

    @property
    def dialect(self) -> str:
        """Database dialect name (e.g. 'postgresql')."""
        ...

    async def ping(self) -> None:
        """
        Run a lightweight round-trip query.

        Raises:
            Exception: Any connectivity or query error.
        """
        ...

    async def apply(self, statements: Sequence[str]) -> None:
        """
        Execute statements in order inside one transaction.

        Raises:
            ApplyError: When a statement fails; carries its index.
        """
        ...

    async def capture_snapshot(self, include_data: bool = False) -> SchemaSnapshot:
        """Capture the schema, and row data when ``include_data`` is True."""
        ...

    async def restore_snapshot(self, snapshot: SchemaSnapshot) -> None:
        """
        Put the target back into the captured state.

        Must be idempotent: restoring the same snapshot twice leaves the
        same end state.
        """
        ...

    async def dispose(self) -> None:
        """Release connections held by the target."""
        ...


__all__ = ["DatabaseTarget", "SchemaSnapshot"]
