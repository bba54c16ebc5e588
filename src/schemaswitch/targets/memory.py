"""
InMemoryDatabaseTarget - DatabaseTarget that keeps an applied-statement log.

Used for dry runs and tests. Faults can be injected for every operation
so that the orchestrator's failure paths can be exercised without a
database.

Example:
    >>> target = InMemoryDatabaseTarget()
    >>> await target.apply(["CREATE TABLE users (id int)"])
    >>> target.statements
    ['CREATE TABLE users (id int)']
    >>> target.fail_statements_containing("DROP COLUMN")
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime

from schemaswitch.exceptions import ApplyError
from schemaswitch.targets.base import SchemaSnapshot


class InMemoryDatabaseTarget:
    """
    In-memory DatabaseTarget with fault injection.

    The "schema" is the ordered list of statements that were applied
    successfully. A batch is all-or-nothing.

    Attributes:
        statements: Successfully applied statements (current schema state)
        executed: Every statement attempted, including failed batches
        restore_count: Number of completed restores
    """

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self.statements: list[str] = []
        self.executed: list[str] = []
        self.restore_count = 0
        self.disposed = False
        self._failing_fragments: dict[str, str] = {}
        self._ping_error: Exception | None = None
        self._ping_delay = 0.0
        self._snapshot_error: Exception | None = None
        self._restore_error: Exception | None = None
        self._restore_delay = 0.0

    @property
    def dialect(self) -> str:
        return "memory"

    # =========================================================================
    # Fault injection
    # =========================================================================

    def fail_pings(self, error: Exception | None = None) -> None:
        """Make every ping raise ``error`` (a ConnectionError by default)."""
        self._ping_error = error or ConnectionError(f"{self.name} is unreachable")

    def set_ping_delay(self, seconds: float) -> None:
        self._ping_delay = seconds

    def fail_statements_containing(self, fragment: str, message: str | None = None) -> None:
        """Make any statement containing ``fragment`` (case-insensitive) fail."""
        self._failing_fragments[fragment.lower()] = message or f"statement rejected: {fragment}"

    def fail_snapshots(self, error: Exception | None = None) -> None:
        self._snapshot_error = error or OSError("snapshot storage unavailable")

    def fail_restores(self, error: Exception | None = None) -> None:
        self._restore_error = error or OSError("restore failed")

    def set_restore_delay(self, seconds: float) -> None:
        self._restore_delay = seconds

    def recover(self) -> None:
        """Clear every injected fault and delay."""
        self._failing_fragments.clear()
        self._ping_error = None
        self._ping_delay = 0.0
        self._snapshot_error = None
        self._restore_error = None
        self._restore_delay = 0.0

    # =========================================================================
    # DatabaseTarget
    # =========================================================================

    async def ping(self) -> None:
        if self._ping_delay:
            await asyncio.sleep(self._ping_delay)
        if self._ping_error is not None:
            raise self._ping_error

    async def apply(self, statements: Sequence[str]) -> None:
        staged = list(self.statements)
        for index, statement in enumerate(statements):
            self.executed.append(statement)
            lowered = statement.lower()
            for fragment, message in self._failing_fragments.items():
                if fragment in lowered:
                    raise ApplyError(
                        f"Statement {index + 1} failed: {message}",
                        statement=statement,
                        statement_index=index,
                    )
            staged.append(statement)
        self.statements = staged

    async def capture_snapshot(self, include_data: bool = False) -> SchemaSnapshot:
        if self._snapshot_error is not None:
            raise self._snapshot_error
        return SchemaSnapshot(
            captured_at=datetime.now(UTC),
            tables=(),
            includes_data=include_data,
            payload=tuple(self.statements),
        )

    async def restore_snapshot(self, snapshot: SchemaSnapshot) -> None:
        if self._restore_delay:
            await asyncio.sleep(self._restore_delay)
        if self._restore_error is not None:
            raise self._restore_error
        self.statements = list(snapshot.payload)
        self.restore_count += 1

    async def dispose(self) -> None:
        self.disposed = True


__all__ = ["InMemoryDatabaseTarget"]
