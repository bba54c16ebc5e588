"""
Observability utilities for schemaswitch.

Provides the composition-based tracer used by every orchestration component
and the span attribute names they share.

Note:
    OpenTelemetry is optional at runtime. When it cannot be imported,
    ``create_tracer`` hands out a ``NullTracer``.
"""

from schemaswitch.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ENVIRONMENT,
    ATTR_INCLUDES_DATA,
    ATTR_MAX_WAIT_SECONDS,
    ATTR_PROBE_SCHEDULED,
    ATTR_REQUEST_ID,
    ATTR_RISK_LEVEL,
    ATTR_ROLLBACK_POINT_ID,
    ATTR_RUN_ID,
    ATTR_RUN_STATE,
    ATTR_SOURCE_ENVIRONMENT,
    ATTR_STATEMENT_COUNT,
    ATTR_STRATEGY,
    ATTR_TARGET_ENVIRONMENT,
)
from schemaswitch.observability.tracer import (
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanAttributes,
    Tracer,
    clean_attributes,
    create_tracer,
    should_trace,
)

__all__ = [
    # Availability
    "OTEL_AVAILABLE",
    "should_trace",
    "clean_attributes",
    # Tracers
    "SpanAttributes",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
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
