"""
Tracers handed to orchestration components.

Components never import OpenTelemetry themselves. They take an optional
``tracer`` argument and fall back to ``create_tracer(__name__, enable_tracing)``,
which returns an ``OpenTelemetryTracer`` when the API package is importable
and a ``NullTracer`` otherwise. Tests pass a ``MockTracer`` and assert on the
spans it recorded.

Span attribute values may be ``None`` (a run without a rollback point, a
probe without an environment). Those keys are dropped before they reach
OpenTelemetry, which rejects ``None`` values.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from opentelemetry.trace import Span

try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]

SpanAttributes = Mapping[str, Any]


def should_trace(enable_tracing: bool) -> bool:
    """True when the component asked for tracing and OpenTelemetry is importable."""
    return enable_tracing and OTEL_AVAILABLE


def clean_attributes(attributes: SpanAttributes | None) -> dict[str, Any]:
    """
    Drop unset values and stringify the ones OpenTelemetry cannot carry.

    UUIDs, enums and paths become strings; bool, int, float and str pass through.
    """
    cleaned: dict[str, Any] = {}
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        if isinstance(value, bool | int | float | str):
            cleaned[key] = value
        else:
            cleaned[key] = str(getattr(value, "value", value))
    return cleaned


@runtime_checkable
class Tracer(Protocol):
    """Creates spans around orchestration steps."""

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span named ``name`` (``schemaswitch.<component>.<operation>``).

        The context manager yields the live span, or None when nothing is
        being recorded.
        """
        ...

    @property
    def enabled(self) -> bool:
        """Whether spans are actually recorded."""
        ...


class NullTracer:
    """Tracer used when tracing is off or OpenTelemetry is missing."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the global OpenTelemetry tracer provider.

    Exceptions escaping a span are recorded on it and mark it as an error,
    which is the OpenTelemetry default for ``start_as_current_span``.

    Args:
        tracer_name: Instrumentation scope, usually the component's ``__name__``
    """

    def __init__(self, tracer_name: str) -> None:
        if trace is None:
            raise ImportError("opentelemetry-api is required for OpenTelemetryTracer")
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=clean_attributes(attributes))

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Tracer that records every span it opens.

    Example:
        >>> tracer = MockTracer()
        >>> router = TrafficRouter(EnvironmentName.BLUE, tracer=tracer)
        >>> await router.switch_to(EnvironmentName.GREEN, require_healthy=False)
        >>> tracer.span_names
        ['schemaswitch.router.switch']
        >>> tracer.attributes_of("schemaswitch.router.switch")["schemaswitch.environment.target"]
        'green'
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any]]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Iterator[None]:
        self.spans.append((name, clean_attributes(attributes)))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def attributes_of(self, name: str) -> dict[str, Any]:
        """
        Attributes of the most recent span called ``name``.

        Raises:
            KeyError: If no such span was recorded
        """
        for span_name, attributes in reversed(self.spans):
            if span_name == name:
                return attributes
        raise KeyError(name)


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """Return an ``OpenTelemetryTracer`` when tracing is possible, else a ``NullTracer``."""
    if should_trace(enable_tracing):
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "OTEL_AVAILABLE",
    "SpanAttributes",
    "clean_attributes",
    "should_trace",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
]
