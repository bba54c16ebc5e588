"""
Unit tests for the tracers.
"""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4

import pytest

from schemaswitch.models import EnvironmentName
from schemaswitch.observability import (
    MockTracer,
    NullTracer,
    Tracer,
    clean_attributes,
    create_tracer,
)


class TestCleanAttributes:
    """Tests for span attribute normalisation."""

    def test_drops_none_and_stringifies(self):
        point_id = uuid4()

        cleaned = clean_attributes(
            {
                "schemaswitch.rollback_point.id": point_id,
                "schemaswitch.run.id": None,
                "schemaswitch.environment": EnvironmentName.GREEN,
                "schemaswitch.statement.count": 2,
                "schemaswitch.rollback_point.includes_data": False,
                "path": Path("/tmp/upstream.conf"),
            }
        )

        assert cleaned == {
            "schemaswitch.rollback_point.id": str(point_id),
            "schemaswitch.environment": "green",
            "schemaswitch.statement.count": 2,
            "schemaswitch.rollback_point.includes_data": False,
            "path": "/tmp/upstream.conf",
        }

    def test_none_attributes(self):
        assert clean_attributes(None) == {}


class TestTracers:
    """Tests for NullTracer, MockTracer and create_tracer."""

    def test_disabled_tracing_gives_null_tracer(self):
        tracer = create_tracer(__name__, enable_tracing=False)

        assert isinstance(tracer, NullTracer)
        assert isinstance(tracer, Tracer)
        assert not tracer.enabled
        with tracer.span("schemaswitch.test", {"key": "value"}) as span:
            assert span is None

    def test_mock_tracer_records_spans(self):
        tracer = MockTracer()

        with tracer.span("schemaswitch.first", {"schemaswitch.environment": EnvironmentName.BLUE}):
            pass
        with tracer.span("schemaswitch.second"):
            pass
        with tracer.span("schemaswitch.first", {"schemaswitch.environment": "green"}):
            pass

        assert tracer.enabled
        assert tracer.span_names == [
            "schemaswitch.first",
            "schemaswitch.second",
            "schemaswitch.first",
        ]
        assert tracer.attributes_of("schemaswitch.first") == {"schemaswitch.environment": "green"}
        assert tracer.attributes_of("schemaswitch.second") == {}

    def test_attributes_of_unknown_span(self):
        with pytest.raises(KeyError):
            MockTracer().attributes_of("schemaswitch.missing")
