"""
schemaswitch - Zero-downtime blue/green schema migration orchestrator.

This library provides:
- Schema Validator classifying DDL by risk and choosing an execution path
- Migration Controller driving each run through its state machine
- Traffic Router with health-gated blue/green switching and connection drain
- Backup/Rollback Manager with in-memory and file snapshot stores
- Health Monitor with scheduled probes and router consistency checks
- Run history on SQLAlchemy (PostgreSQL, SQLite) or in memory
- FastAPI application (``schemaswitch.api``)
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("schemaswitch")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from schemaswitch.backup import (
    FileSnapshotStore,
    InMemorySnapshotStore,
    RollbackManager,
    SnapshotStore,
)
from schemaswitch.config import OrchestratorConfig
from schemaswitch.controller import MigrationController
from schemaswitch.exceptions import (
    PROBE_RETRY_CONFIG,
    SWITCH_RETRY_CONFIG,
    ApplyError,
    BackupError,
    ConnectionsPausedError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    HealthCheckTimeoutError,
    InvalidStateTransitionError,
    MigrationConflictError,
    OrchestrationError,
    RestoreError,
    RetryConfig,
    RollbackDisabledError,
    RollbackPointNotFoundError,
    RouterStateConflictError,
    RoutingBackendError,
    RunNotFoundError,
    SwitchError,
    ValidationError,
)
from schemaswitch.health import HealthMonitor
from schemaswitch.models import (
    Environment,
    EnvironmentName,
    EnvironmentRole,
    MigrationRequest,
    MigrationRun,
    MigrationStrategy,
    Operation,
    OperationKind,
    ProbeResult,
    RiskLevel,
    RollbackPoint,
    RouterState,
    RunState,
    StateTransition,
    SubmissionResult,
    SwitchResult,
    ValidationResult,
)
from schemaswitch.repositories import (
    InMemoryMigrationRunRepository,
    MigrationRunRepository,
    SQLAlchemyMigrationRunRepository,
)
from schemaswitch.router import TrafficRouter
from schemaswitch.routing import RoutingBackend, UpstreamFileBackend
from schemaswitch.service import MigrationService
from schemaswitch.targets import (
    DatabaseTarget,
    InMemoryDatabaseTarget,
    SchemaSnapshot,
    SQLAlchemyDatabaseTarget,
)
from schemaswitch.validator import SchemaValidator

__all__ = [
    "__version__",
    # Models
    "EnvironmentName",
    "EnvironmentRole",
    "Environment",
    "RiskLevel",
    "OperationKind",
    "Operation",
    "MigrationStrategy",
    "MigrationRequest",
    "ValidationResult",
    "RunState",
    "StateTransition",
    "MigrationRun",
    "SubmissionResult",
    "ProbeResult",
    "RollbackPoint",
    "RouterState",
    "SwitchResult",
    # Configuration
    "OrchestratorConfig",
    # Exceptions
    "OrchestrationError",
    "ErrorClassification",
    "ErrorSeverity",
    "ErrorRecoverability",
    "RetryConfig",
    "SWITCH_RETRY_CONFIG",
    "PROBE_RETRY_CONFIG",
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
    # Components
    "SchemaValidator",
    "RollbackManager",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "FileSnapshotStore",
    "HealthMonitor",
    "TrafficRouter",
    "RoutingBackend",
    "UpstreamFileBackend",
    "MigrationController",
    "MigrationRunRepository",
    "InMemoryMigrationRunRepository",
    "SQLAlchemyMigrationRunRepository",
    "MigrationService",
    # Targets
    "DatabaseTarget",
    "SchemaSnapshot",
    "SQLAlchemyDatabaseTarget",
    "InMemoryDatabaseTarget",
]
