"""
Exceptions for the schema migration orchestrator.

Exception Hierarchy:
    OrchestrationError (base)
    +-- ValidationError
    +-- MigrationConflictError
    +-- RunNotFoundError
    +-- InvalidStateTransitionError
    +-- BackupError
    +-- RollbackPointNotFoundError
    +-- RestoreError
    +-- RollbackDisabledError
    +-- ApplyError
    +-- HealthCheckTimeoutError
    +-- SwitchError
    |   +-- RoutingBackendError
    +-- RouterStateConflictError
    +-- ConnectionsPausedError

Error Classification:
    Every exception carries an ErrorClassification with severity,
    recoverability, an error code and operator guidance. Transient errors
    also carry the RetryConfig the controller uses to retry them.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from schemaswitch.models import EnvironmentName, RunState


class ErrorSeverity(Enum):
    """How loudly an orchestration error is reported."""

    CRITICAL = "critical"
    """Rollback integrity is at stake, an operator must look now."""

    ERROR = "error"
    """A run failed or a switch was abandoned."""

    WARNING = "warning"
    """Rejected or retried, the system state is unchanged."""

    INFO = "info"
    """An expected refusal, such as a lookup for an unknown run."""

    @property
    def log_level(self) -> int:
        """The ``logging`` level errors of this severity are logged at."""
        return _LOG_LEVELS[self]


_LOG_LEVELS = {
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.INFO: logging.INFO,
}


class ErrorRecoverability(Enum):
    """
    What it takes to get past an error.

    Attributes:
        RECOVERABLE: An operator action clears it (wait for the active run, re-enable rollback).
        TRANSIENT: Retrying may succeed (probe timeout, refused switch).
        FATAL: The run cannot continue (invalid request, missing rollback point).
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        return self is ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class ErrorClassification:
    """
    Static metadata attached to each exception type.

    ``error_code`` is what API clients match on; ``category`` groups codes
    by the component that raises them (validation, backup, routing, ...).
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config is not None:
            result["retry_config"] = self.retry_config.to_dict()
        return result


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff for transient failures.

    Attempt ``n`` (0-indexed) waits ``base_delay_ms * exponential_base**n``
    plus up to ``jitter_factor`` of that again, capped at ``max_delay_ms``.

    Example:
        >>> RetryConfig(base_delay_ms=100, jitter_factor=0.0).get_delay_ms(2)
        400.0
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """Milliseconds to wait after failed attempt ``attempt`` (0-indexed)."""
        delay = self.base_delay_ms * self.exponential_base**attempt
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311
        return min(delay, self.max_delay_ms)

    def with_max_attempts(self, max_attempts: int) -> RetryConfig:
        """Return a copy with a different attempt budget."""
        return replace(self, max_attempts=max_attempts)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# Refused or failed traffic switches: 0.5s, 1s, 2s (+jitter)
SWITCH_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=500.0,
    max_delay_ms=5000.0,
)

# Waiting for a freshly migrated environment to pass its probes
PROBE_RETRY_CONFIG = RetryConfig(
    max_attempts=10,
    base_delay_ms=250.0,
    max_delay_ms=2000.0,
    exponential_base=1.5,
)


class OrchestrationError(Exception):
    """
    Base exception for all orchestration errors.

    Attributes:
        message: Human-readable error description.
        run_id: The migration run involved, if applicable.
        environment: The environment involved, if applicable.
        recoverable: Whether the caller can recover from this error.
        suggested_action: Suggested action for recovery.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ORCHESTRATION_ERROR",
        category="general",
        suggested_action="Review orchestrator logs for the failing run",
    )

    def __init__(
        self,
        message: str,
        *,
        run_id: UUID | None = None,
        environment: EnvironmentName | None = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.run_id = run_id
        self.environment = environment
        self.recoverable = recoverable
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.run_id:
            parts.append(f"run_id={self.run_id}")
        if self.environment:
            parts.append(f"environment={self.environment.value}")
        if self.recoverable:
            parts.append("(recoverable)")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for API responses.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "run_id": str(self.run_id) if self.run_id else None,
            "environment": self.environment.value if self.environment else None,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class ValidationError(OrchestrationError):
    """
    Raised when a request fails validation and will never execute.

    Attributes:
        errors: The fatal validation messages.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="VALIDATION_FAILED",
        category="validation",
        suggested_action="Fix the reported statements and submit a new request",
    )

    def __init__(self, errors: Sequence[str], run_id: UUID | None = None) -> None:
        self.errors = list(errors)
        super().__init__(
            message="Validation failed: " + "; ".join(self.errors),
            run_id=run_id,
        )


class MigrationConflictError(OrchestrationError):
    """
    Raised when a request arrives while another run or restore is in flight.

    Only one run may be non-terminal at a time; extra requests are rejected
    rather than queued.

    Attributes:
        active_run_id: The run that holds the slot, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_CONFLICT",
        category="state",
        suggested_action="Wait for the active run to finish, then resubmit",
    )

    def __init__(self, active_run_id: UUID | None, reason: str | None = None) -> None:
        self.active_run_id = active_run_id
        message = reason or f"Migration run {active_run_id} is still in progress"
        super().__init__(
            message=message,
            run_id=active_run_id,
            recoverable=True,
            suggested_action="Wait for the active run to finish",
        )


class RunNotFoundError(OrchestrationError):
    """Raised when a run id is unknown."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RUN_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the run identifier",
    )

    def __init__(self, run_id: UUID) -> None:
        super().__init__(message=f"Migration run not found: {run_id}", run_id=run_id)


class InvalidStateTransitionError(OrchestrationError):
    """
    Raised when the controller attempts a transition the state machine forbids.

    Attributes:
        current_state: State the run was in.
        target_state: State that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATE_TRANSITION",
        category="state",
        suggested_action="Report this run; the controller reached an impossible state",
    )

    def __init__(self, run_id: UUID, current_state: RunState, target_state: RunState) -> None:
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            message=f"Invalid state transition: {current_state.value} -> {target_state.value}",
            run_id=run_id,
        )


class BackupError(OrchestrationError):
    """
    Raised when a rollback point cannot be created.

    Always fatal to the run: no DDL is applied without a rollback point.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKUP_FAILED",
        category="backup",
        suggested_action="Check snapshot storage and database permissions, then resubmit",
    )

    def __init__(
        self,
        message: str,
        environment: EnvironmentName | None = None,
        migration_id: UUID | None = None,
    ) -> None:
        super().__init__(message=message, run_id=migration_id, environment=environment)


class RollbackPointNotFoundError(OrchestrationError):
    """Raised when a rollback point id or its stored snapshot is missing."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_POINT_NOT_FOUND",
        category="backup",
        suggested_action="The rollback point was pruned or never created",
    )

    def __init__(self, point_id: UUID | str) -> None:
        self.point_id = point_id
        super().__init__(message=f"Rollback point not found: {point_id}")


class RestoreError(OrchestrationError):
    """Raised when restoring a rollback point fails."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RESTORE_FAILED",
        category="backup",
        suggested_action="Restore is idempotent; retry the manual restore for this run",
    )

    def __init__(
        self,
        message: str,
        environment: EnvironmentName | None = None,
        point_id: UUID | None = None,
    ) -> None:
        self.point_id = point_id
        super().__init__(message=message, environment=environment, recoverable=True)


class RollbackDisabledError(OrchestrationError):
    """Raised when a manual restore is requested but rollback is disabled."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_DISABLED",
        category="configuration",
        suggested_action="Enable ROLLBACK_ENABLED to allow manual restores",
    )

    def __init__(self) -> None:
        super().__init__(message="Manual rollback is disabled")


class ApplyError(OrchestrationError):
    """
    Raised when a statement fails against an environment.

    There is no partial undo; recovery goes through the rollback point.

    Attributes:
        statement: The failing statement.
        statement_index: Zero-based position of the statement in the request.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="APPLY_FAILED",
        category="apply",
        suggested_action="Inspect the failing statement; risky runs are rolled back automatically",
    )

    def __init__(
        self,
        message: str,
        environment: EnvironmentName | None = None,
        statement: str | None = None,
        statement_index: int | None = None,
    ) -> None:
        self.statement = statement
        self.statement_index = statement_index
        super().__init__(message=message, environment=environment)


class HealthCheckTimeoutError(OrchestrationError):
    """
    Raised when an environment does not report healthy within a deadline.

    Treated as unhealthy: it blocks a switch.

    Attributes:
        timeout_seconds: The deadline that expired.
        last_detail: Detail of the last failed probe.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="HEALTH_CHECK_TIMEOUT",
        category="health",
        suggested_action="Check connectivity to the environment",
        retry_config=PROBE_RETRY_CONFIG,
    )

    def __init__(
        self,
        environment: EnvironmentName,
        timeout_seconds: float,
        last_detail: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.last_detail = last_detail
        message = f"Environment not healthy within {timeout_seconds:.1f}s"
        if last_detail:
            message = f"{message}: {last_detail}"
        super().__init__(message=message, environment=environment, recoverable=True)


class SwitchError(OrchestrationError):
    """
    Raised when the router refuses or fails a switch.

    Attributes:
        target: Environment the switch was directed at.
        reason: Detailed reason for the failure.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="SWITCH_FAILED",
        category="routing",
        suggested_action="The controller retries; check target health if it persists",
        retry_config=SWITCH_RETRY_CONFIG,
    )

    def __init__(self, message: str, target: EnvironmentName, reason: str | None = None) -> None:
        self.target = target
        self.reason = reason
        super().__init__(message=message, environment=target, recoverable=True)


class RoutingBackendError(SwitchError):
    """Raised when the proxy layer refuses a routing change."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="ROUTING_BACKEND_FAILED",
        category="routing",
        suggested_action="Check the proxy configuration and reload command",
        retry_config=SWITCH_RETRY_CONFIG,
    )


class RouterStateConflictError(OrchestrationError):
    """
    Raised at startup when the routing backend and the saved router state
    disagree on which environment is live.

    Attributes:
        reported: Environment the routing backend points at.
        persisted: Environment recorded by the last committed switch.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROUTER_STATE_CONFLICT",
        category="routing",
        suggested_action=(
            "Check which environment the proxy serves, then fix the proxy or the saved state"
        ),
    )

    def __init__(self, reported: EnvironmentName, persisted: EnvironmentName) -> None:
        self.reported = reported
        self.persisted = persisted
        super().__init__(
            message=(
                f"Routing backend points at {reported.value} but the last committed "
                f"switch made {persisted.value} active"
            ),
            environment=reported,
        )


class ConnectionsPausedError(OrchestrationError):
    """
    Raised when a connection lease times out waiting for the router to resume.

    Attributes:
        timeout_seconds: How long the caller waited.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CONNECTIONS_PAUSED",
        category="routing",
        suggested_action="A maintenance migration is running; retry shortly",
    )

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            message=f"Connections paused for maintenance; waited {timeout_seconds:.1f}s",
            recoverable=True,
        )


__all__ = [
    # Classification
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "SWITCH_RETRY_CONFIG",
    "PROBE_RETRY_CONFIG",
    # Exceptions
    "OrchestrationError",
    "ValidationError",
    "MigrationConflictError",
    "RunNotFoundError",
    "InvalidStateTransitionError",
    "BackupError",
    "RollbackPointNotFoundError",
    "RestoreError",
    "RollbackDisabledError",
    "ApplyError",
    "HealthCheckTimeoutError",
    "SwitchError",
    "RoutingBackendError",
    "RouterStateConflictError",
    "ConnectionsPausedError",
]
