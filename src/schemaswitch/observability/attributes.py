"""
Standard span attributes for schemaswitch.

Attribute constants shared by every orchestration component so spans can be
filtered consistently. Database keys follow OpenTelemetry semantic conventions.

Example:
    >>> from schemaswitch.observability.attributes import ATTR_RUN_ID, ATTR_ENVIRONMENT
    >>>
    >>> with tracer.span(
    ...     "schemaswitch.controller.submit",
    ...     {ATTR_RUN_ID: str(run.id), ATTR_ENVIRONMENT: "green"},
    ... ):
    ...     pass
"""

# =============================================================================
# Run Attributes
# =============================================================================

ATTR_RUN_ID = "schemaswitch.run.id"
"""Identifier of the migration run (UUID string)."""

ATTR_REQUEST_ID = "schemaswitch.request.id"
"""Identifier of the submitted migration request (UUID string)."""

ATTR_RUN_STATE = "schemaswitch.run.state"
"""State the run is entering or currently in (string)."""

ATTR_STRATEGY = "schemaswitch.strategy"
"""Execution strategy chosen for the run: safe, risky or maintenance."""

ATTR_RISK_LEVEL = "schemaswitch.risk_level"
"""Aggregate risk level of the request (low, medium, high)."""

ATTR_STATEMENT_COUNT = "schemaswitch.statement.count"
"""Number of statements in a request or apply call (integer)."""

# =============================================================================
# Environment and Routing Attributes
# =============================================================================

ATTR_ENVIRONMENT = "schemaswitch.environment"
"""Environment an operation targets (blue or green)."""

ATTR_SOURCE_ENVIRONMENT = "schemaswitch.environment.source"
"""Environment that was active before a switch."""

ATTR_TARGET_ENVIRONMENT = "schemaswitch.environment.target"
"""Environment a switch is directed at."""

ATTR_PROBE_SCHEDULED = "schemaswitch.probe.scheduled"
"""Whether a health probe came from the periodic loop (boolean)."""

ATTR_MAX_WAIT_SECONDS = "schemaswitch.switch.max_wait_seconds"
"""Drain budget allowed for a switch (float seconds)."""

# =============================================================================
# Rollback Attributes
# =============================================================================

ATTR_ROLLBACK_POINT_ID = "schemaswitch.rollback_point.id"
"""Identifier of a rollback point (UUID string)."""

ATTR_INCLUDES_DATA = "schemaswitch.rollback_point.includes_data"
"""Whether a rollback point carries a data snapshot (boolean)."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'postgresql')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation being performed (e.g., 'ping', 'apply')."""

__all__ = [
    "ATTR_RUN_ID",
    "ATTR_REQUEST_ID",
    "ATTR_RUN_STATE",
    "ATTR_STRATEGY",
    "ATTR_RISK_LEVEL",
    "ATTR_STATEMENT_COUNT",
    "ATTR_ENVIRONMENT",
    "ATTR_SOURCE_ENVIRONMENT",
    "ATTR_TARGET_ENVIRONMENT",
    "ATTR_PROBE_SCHEDULED",
    "ATTR_MAX_WAIT_SECONDS",
    "ATTR_ROLLBACK_POINT_ID",
    "ATTR_INCLUDES_DATA",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
