"""
Data models for the schema migration orchestrator.

This module defines the records exchanged between the validator, the
rollback manager, the health monitor, the traffic router and the
migration controller.

Models in this module:

Enums:
    - EnvironmentName: The two logical database targets (blue, green)
    - EnvironmentRole: ACTIVE or STANDBY
    - RiskLevel: LOW, MEDIUM, HIGH with ordering
    - OperationKind: Classified kind of a single statement
    - MigrationStrategy: SAFE, RISKY or MAINTENANCE execution path
    - RunState: Migration run state machine

Core Models:
    - MigrationRequest: Immutable submitted request (pydantic)
    - Operation: One classified statement
    - ValidationResult: Validator output for one request
    - Environment: Read-only snapshot of one environment
    - ProbeResult: Outcome of a single health probe
    - RollbackPoint: Handle to a captured pre-migration snapshot
    - RouterState: Router's live-environment record
    - SwitchResult: Outcome of a router switch
    - StateTransition: One entry in a run's transition history
    - MigrationRun: Live execution record owned by the controller
    - SubmissionResult: Synchronous answer to a submission
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EnvironmentName(Enum):
    """
    The two logical database environments.

    The pair is fixed; exactly one of them is active at any time.
    """

    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> EnvironmentName:
        """Return the opposite environment of the pair."""
        return EnvironmentName.GREEN if self is EnvironmentName.BLUE else EnvironmentName.BLUE


class EnvironmentRole(Enum):
    """Role of an environment as decided by the router."""

    ACTIVE = "active"
    """Currently serving application traffic."""

    STANDBY = "standby"
    """Idle copy that receives risky changes before a switch."""


class RiskLevel(Enum):
    """
    Risk tier of a schema operation.

    Levels are ordered: LOW < MEDIUM < HIGH. The aggregate risk of a
    request is the maximum over its operations.
    """

    LOW = "low"
    """Non-blocking, additive change."""

    MEDIUM = "medium"
    """Change that takes locks or breaks name-based clients."""

    HIGH = "high"
    """Destructive or rewriting change, or one that cannot be classified."""

    @property
    def rank(self) -> int:
        """Numeric rank used for ordering."""
        return _RISK_RANK[self]

    @classmethod
    def highest(cls, levels: Iterable[RiskLevel]) -> RiskLevel:
        """
        Return the highest risk level in ``levels``.

        An empty iterable yields LOW.
        """
        result = cls.LOW
        for level in levels:
            if level.rank > result.rank:
                result = level
        return result


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class OperationKind(Enum):
    """Kind of a parsed statement."""

    ADD_COLUMN = "add_column"
    DROP_COLUMN = "drop_column"
    ALTER_TYPE = "alter_type"
    ADD_CONSTRAINT = "add_constraint"
    CREATE_INDEX = "create_index"
    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    RENAME = "rename"
    OTHER = "other"

    @property
    def is_destructive(self) -> bool:
        """
        Check if the operation removes data.

        Returns:
            True for DROP_COLUMN and DROP_TABLE.
        """
        return self in (OperationKind.DROP_COLUMN, OperationKind.DROP_TABLE)


class MigrationStrategy(Enum):
    """
    Execution path for a migration.

    Also used as the caller's optional hint on a request.
    """

    SAFE = "safe"
    """Apply directly to the active environment."""

    RISKY = "risky"
    """Full blue-green cycle through the standby environment."""

    MAINTENANCE = "maintenance"
    """Drain traffic, apply directly to the active environment, resume."""


class RunState(Enum):
    """
    Migration run lifecycle states.

    State machine transitions:
        RECEIVED -> VALIDATING -> FAILED (invalid)
        VALIDATING -> APPLYING_DIRECT -> COMPLETED | FAILED (safe)
        VALIDATING -> BACKING_UP -> APPLYING_STANDBY -> HEALTH_CHECKING
            -> SWITCHING -> POST_SWITCH_VERIFY -> COMPLETED (risky)
        VALIDATING -> BACKING_UP -> DRAINING -> APPLYING_DIRECT
            -> RESUMING -> COMPLETED (maintenance)
        APPLYING_STANDBY | HEALTH_CHECKING | POST_SWITCH_VERIFY
            | DRAINING | APPLYING_DIRECT -> ROLLING_BACK -> ROLLED_BACK

    Any non-terminal state may move to FAILED.
    """

    RECEIVED = "received"
    VALIDATING = "validating"
    BACKING_UP = "backing_up"
    APPLYING_DIRECT = "applying_direct"
    APPLYING_STANDBY = "applying_standby"
    HEALTH_CHECKING = "health_checking"
    SWITCHING = "switching"
    POST_SWITCH_VERIFY = "post_switch_verify"
    DRAINING = "draining"
    RESUMING = "resuming"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """
        Check if this is a terminal state.

        Returns:
            True for COMPLETED, ROLLED_BACK and FAILED.
        """
        return self in (RunState.COMPLETED, RunState.ROLLED_BACK, RunState.FAILED)

    def can_transition_to(self, target: RunState) -> bool:
        """
        Check if transition to target state is valid.

        Args:
            target: The target state to transition to.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False

        if target is RunState.FAILED:
            return True

        return target in _RUN_TRANSITIONS.get(self, ())


_RUN_TRANSITIONS: dict[RunState, tuple[RunState, ...]] = {
    RunState.RECEIVED: (RunState.VALIDATING,),
    RunState.VALIDATING: (RunState.APPLYING_DIRECT, RunState.BACKING_UP),
    RunState.BACKING_UP: (RunState.APPLYING_STANDBY, RunState.DRAINING),
    RunState.APPLYING_STANDBY: (RunState.HEALTH_CHECKING, RunState.ROLLING_BACK),
    RunState.HEALTH_CHECKING: (RunState.SWITCHING, RunState.ROLLING_BACK),
    RunState.SWITCHING: (RunState.POST_SWITCH_VERIFY, RunState.ROLLING_BACK),
    RunState.POST_SWITCH_VERIFY: (RunState.COMPLETED, RunState.ROLLING_BACK),
    RunState.DRAINING: (RunState.APPLYING_DIRECT, RunState.ROLLING_BACK),
    RunState.APPLYING_DIRECT: (
        RunState.COMPLETED,
        RunState.RESUMING,
        RunState.ROLLING_BACK,
    ),
    RunState.RESUMING: (RunState.COMPLETED,),
    RunState.ROLLING_BACK: (RunState.ROLLED_BACK,),
}


class MigrationRequest(BaseModel):
    """
    A submitted schema migration.

    Immutable once accepted. Statements keep their submission order.

    Attributes:
        id: Unique request identifier
        statements: Ordered raw SQL statements, one per entry
        risk_hint: Optional caller hint for the execution path
        submitted_at: When the request was submitted (UTC)
        description: Free-form operator note
        submitted_by: Operator or system that submitted the request

    Example:
        >>> request = MigrationRequest(
        ...     statements=["ALTER TABLE users ADD COLUMN nickname TEXT"],
        ... )
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique request identifier",
    )
    statements: tuple[str, ...] = Field(
        default=(),
        description="Ordered raw SQL statements",
    )
    risk_hint: MigrationStrategy | None = Field(
        default=None,
        description="Optional caller hint for the execution path",
    )
    submitted_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the request was submitted (UTC)",
    )
    description: str | None = Field(
        default=None,
        description="Free-form operator note",
    )
    submitted_by: str | None = Field(
        default=None,
        description="Operator or system that submitted the request",
    )

    @field_validator("submitted_at")
    @classmethod
    def ensure_timezone_aware(cls, value: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


@dataclass(frozen=True)
class Operation:
    """
    One parsed statement.

    Attributes:
        kind: Classified operation kind
        statement: Original statement text
        risk_level: Risk tier of the statement
        table: Table the statement targets, when known
    """

    kind: OperationKind
    statement: str
    risk_level: RiskLevel
    table: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "statement": self.statement,
            "risk_level": self.risk_level.value,
            "table": self.table,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Operation:
        return cls(
            kind=OperationKind(data["kind"]),
            statement=data["statement"],
            risk_level=RiskLevel(data["risk_level"]),
            table=data.get("table"),
        )


@dataclass
class ValidationResult:
    """
    Validator output for one request.

    Attributes:
        operations: Classified statements in submission order
        warnings: Advisory messages that do not block execution
        errors: Fatal messages; any error blocks execution
        strategy: Execution path resolved from risk and hint (None when invalid)
    """

    operations: list[Operation] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    strategy: MigrationStrategy | None = None

    @property
    def risk_level(self) -> RiskLevel:
        """Aggregate risk: the maximum over all operations."""
        return RiskLevel.highest(op.risk_level for op in self.operations)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def requires_data_snapshot(self) -> bool:
        """
        Check if a rollback point must include table data.

        True when a HIGH operation discards or rewrites stored values.
        """
        return any(
            op.risk_level is RiskLevel.HIGH
            and (op.kind.is_destructive or op.kind is OperationKind.ALTER_TYPE)
            for op in self.operations
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "risk_level": self.risk_level.value,
            "strategy": self.strategy.value if self.strategy else None,
            "operations": [op.to_dict() for op in self.operations],
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationResult:
        strategy = data.get("strategy")
        return cls(
            operations=[Operation.from_dict(op) for op in data.get("operations", [])],
            warnings=list(data.get("warnings", [])),
            errors=list(data.get("errors", [])),
            strategy=MigrationStrategy(strategy) if strategy else None,
        )


@dataclass(frozen=True)
class Environment:
    """
    Read-only snapshot of one environment.

    Role comes from the router; health fields come from the health monitor.
    """

    name: EnvironmentName
    role: EnvironmentRole
    healthy: bool
    last_checked: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name.value,
            "role": self.role.value,
            "healthy": self.healthy,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
        }


@dataclass(frozen=True)
class ProbeResult:
    """
    Outcome of a single health probe.

    Attributes:
        environment: Environment that was probed
        healthy: Whether every check passed
        latency_ms: Round-trip time of the probe
        detail: Human-readable explanation
        checked_at: When the probe finished (UTC)
        scheduled: True if the probe came from the periodic loop
    """

    environment: EnvironmentName
    healthy: bool
    latency_ms: float
    detail: str
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    scheduled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment.value,
            "healthy": self.healthy,
            "latency_ms": round(self.latency_ms, 3),
            "detail": self.detail,
            "checked_at": self.checked_at.isoformat(),
            "scheduled": self.scheduled,
        }


@dataclass(frozen=True)
class RollbackPoint:
    """
    Handle to a captured pre-migration snapshot.

    Never mutated after creation.

    Attributes:
        id: Rollback point identifier
        migration_id: Run that requested the point
        created_at: Capture time (UTC)
        location: Storage handle understood by the snapshot store
        environment: Environment the snapshot was taken from
        includes_data: Whether row data was captured alongside the schema
    """

    id: UUID
    migration_id: UUID
    created_at: datetime
    location: str
    environment: EnvironmentName
    includes_data: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "migration_id": str(self.migration_id),
            "created_at": self.created_at.isoformat(),
            "location": self.location,
            "environment": self.environment.value,
            "includes_data": self.includes_data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackPoint:
        return cls(
            id=UUID(data["id"]),
            migration_id=UUID(data["migration_id"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            location=data["location"],
            environment=EnvironmentName(data["environment"]),
            includes_data=bool(data.get("includes_data", False)),
        )


@dataclass(frozen=True)
class RouterState:
    """
    The router's record of which environment is live.

    Replaced as a whole on every change so readers never see a torn value.

    Attributes:
        active_environment: Environment serving traffic
        switching: True only inside the switch window
        last_switch_at: When the last successful switch committed
        paused: True while new connection leases are held back
    """

    active_environment: EnvironmentName
    switching: bool = False
    last_switch_at: datetime | None = None
    paused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_environment": self.active_environment.value,
            "switching": self.switching,
            "last_switch_at": self.last_switch_at.isoformat() if self.last_switch_at else None,
            "paused": self.paused,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RouterState:
        last_switch_at = data.get("last_switch_at")
        return cls(
            active_environment=EnvironmentName(data["active_environment"]),
            switching=bool(data.get("switching", False)),
            last_switch_at=datetime.fromisoformat(last_switch_at) if last_switch_at else None,
            paused=bool(data.get("paused", False)),
        )


@dataclass(frozen=True)
class SwitchResult:
    """
    Result of a router switch.

    Attributes:
        success: Whether the active environment changed
        previous: Active environment before the call
        current: Active environment after the call
        duration_ms: Time spent inside the switch
        drain_timed_out: True if in-flight work was still running at max_wait
        error_message: Reason for a failed switch
    """

    success: bool
    previous: EnvironmentName
    current: EnvironmentName
    duration_ms: float = 0.0
    drain_timed_out: bool = False
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "previous": self.previous.value,
            "current": self.current.value,
            "duration_ms": self.duration_ms,
            "drain_timed_out": self.drain_timed_out,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class StateTransition:
    """One entry in a run's transition history."""

    state: RunState
    at: datetime
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "at": self.at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateTransition:
        return cls(
            state=RunState(data["state"]),
            at=datetime.fromisoformat(data["at"]),
            reason=data.get("reason"),
        )


@dataclass
class MigrationRun:
    """
    Live execution record for one accepted request.

    This is a mutable dataclass because the controller advances it through
    the state machine. Created in RECEIVED; terminated in COMPLETED,
    ROLLED_BACK or FAILED.

    Attributes:
        id: Run identifier returned to the caller
        request: The accepted request
        state: Current state
        transitions: Every state entered, with timestamps
        strategy: Resolved execution path, once validated
        risk_level: Aggregate risk, once validated
        source_environment: Active environment when the run started
        target_environment: Environment the statements were applied to
        rollback_point_id: Rollback point taken for this run, if any
        failure_reason: Cause of FAILED or ROLLED_BACK
        validation: Validator output
    """

    request: MigrationRequest
    id: UUID = field(default_factory=uuid4)
    state: RunState = RunState.RECEIVED
    transitions: list[StateTransition] = field(default_factory=list)
    strategy: MigrationStrategy | None = None
    risk_level: RiskLevel | None = None
    source_environment: EnvironmentName | None = None
    target_environment: EnvironmentName | None = None
    rollback_point_id: UUID | None = None
    failure_reason: str | None = None
    validation: ValidationResult | None = None

    def __post_init__(self) -> None:
        if not self.transitions:
            self.transitions.append(StateTransition(state=self.state, at=datetime.now(UTC)))

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def created_at(self) -> datetime:
        return self.transitions[0].at

    @property
    def updated_at(self) -> datetime:
        return self.transitions[-1].at

    @property
    def finished_at(self) -> datetime | None:
        """Timestamp of the terminal transition, if reached."""
        return self.transitions[-1].at if self.is_terminal else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "request_id": str(self.request.id),
            "state": self.state.value,
            "strategy": self.strategy.value if self.strategy else None,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "source_environment": (
                self.source_environment.value if self.source_environment else None
            ),
            "target_environment": (
                self.target_environment.value if self.target_environment else None
            ),
            "rollback_point_id": str(self.rollback_point_id) if self.rollback_point_id else None,
            "failure_reason": self.failure_reason,
            "is_terminal": self.is_terminal,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "transitions": [t.to_dict() for t in self.transitions],
            "statements": list(self.request.statements),
            "validation": self.validation.to_dict() if self.validation else None,
        }


@dataclass(frozen=True)
class SubmissionResult:
    """Synchronous answer to a submission: run id plus validation."""

    run_id: UUID
    validation: ValidationResult
    state: RunState

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "state": self.state.value,
            "validation": self.validation.to_dict(),
        }


__all__ = [
    "EnvironmentName",
    "EnvironmentRole",
    "RiskLevel",
    "OperationKind",
    "MigrationStrategy",
    "RunState",
    "MigrationRequest",
    "Operation",
    "ValidationResult",
    "Environment",
    "ProbeResult",
    "RollbackPoint",
    "RouterState",
    "SwitchResult",
    "StateTransition",
    "MigrationRun",
    "SubmissionResult",
]
