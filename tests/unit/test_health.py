"""
Unit tests for the HealthMonitor.

Tests cover:
- Initial status and scheduled probe cycles
- Failure thresholds and on-demand probes
- Probe timeouts and error details
- wait_until_healthy
- Router consistency checks
- Starting and stopping the periodic task
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from schemaswitch.exceptions import HealthCheckTimeoutError
from schemaswitch.health import HealthMonitor
from schemaswitch.models import EnvironmentName, EnvironmentRole
from schemaswitch.observability import MockTracer
from schemaswitch.router import TrafficRouter


class TestInitialization:
    """Tests for HealthMonitor construction."""

    def test_environments_start_unhealthy(self, monitor: HealthMonitor):
        for env in EnvironmentName:
            snapshot = monitor.snapshot(env)
            assert snapshot.healthy is False
            assert snapshot.last_checked is None
            assert monitor.last_result(env) is None

    @pytest.mark.parametrize(
        "kwargs",
        [{"interval": 0}, {"probe_timeout": -1.0}, {"unhealthy_threshold": 0}],
    )
    def test_rejects_invalid_settings(self, targets, kwargs: dict):
        with pytest.raises(ValueError):
            HealthMonitor(targets, **kwargs)


class TestScheduledProbes:
    """Tests for run_once and thresholds."""

    @pytest.mark.asyncio
    async def test_run_once_marks_both_healthy(self, monitor: HealthMonitor):
        results = await monitor.run_once()

        assert {r.environment for r in results} == set(EnvironmentName)
        assert all(r.healthy and r.scheduled for r in results)
        assert monitor.is_healthy(EnvironmentName.BLUE)
        assert monitor.is_healthy(EnvironmentName.GREEN)
        assert monitor.snapshot(EnvironmentName.GREEN).last_checked is not None
        assert monitor.cycles == 1

    @pytest.mark.asyncio
    async def test_threshold_failures_mark_unhealthy(self, monitor: HealthMonitor, green):
        await monitor.run_once()
        green.fail_pings()

        await monitor.run_once()
        assert monitor.is_healthy(EnvironmentName.GREEN)
        assert not monitor.is_fresh(EnvironmentName.GREEN, window=60.0)

        await monitor.run_once()
        assert not monitor.is_healthy(EnvironmentName.GREEN)
        assert monitor.is_healthy(EnvironmentName.BLUE)

    @pytest.mark.asyncio
    async def test_one_success_clears_failures(self, monitor: HealthMonitor, green):
        green.fail_pings()
        await monitor.run_once()
        await monitor.run_once()
        assert not monitor.is_healthy(EnvironmentName.GREEN)

        green.recover()
        await monitor.run_once()

        assert monitor.is_healthy(EnvironmentName.GREEN)
        assert monitor.is_fresh(EnvironmentName.GREEN, window=60.0)


class TestOnDemandProbes:
    """Tests for probe()."""

    @pytest.mark.asyncio
    async def test_failure_does_not_change_status(self, monitor: HealthMonitor, blue):
        await monitor.run_once()
        blue.fail_pings()

        result = await monitor.probe(EnvironmentName.BLUE)

        assert not result.healthy
        assert not result.scheduled
        assert result.detail == "probe failed: blue is unreachable"
        assert monitor.is_healthy(EnvironmentName.BLUE)

    @pytest.mark.asyncio
    async def test_success_marks_healthy(self, monitor: HealthMonitor):
        result = await monitor.probe(EnvironmentName.GREEN)

        assert result.healthy
        assert result.detail == "ok"
        assert monitor.is_healthy(EnvironmentName.GREEN)
        assert monitor.last_result(EnvironmentName.GREEN) == result

    @pytest.mark.asyncio
    async def test_slow_ping_times_out(self, monitor: HealthMonitor, green):
        green.set_ping_delay(1.0)

        result = await monitor.probe(EnvironmentName.GREEN)

        assert not result.healthy
        assert result.detail.startswith("probe timed out after")

    @pytest.mark.asyncio
    async def test_missing_target(self, blue):
        monitor = HealthMonitor({EnvironmentName.BLUE: blue}, enable_tracing=False)

        result = await monitor.probe(EnvironmentName.GREEN)

        assert not result.healthy
        assert "no database target configured" in result.detail

    @pytest.mark.asyncio
    async def test_expect_active_checks_router(
        self, monitor: HealthMonitor, router: TrafficRouter
    ):
        standby = await monitor.probe(EnvironmentName.GREEN, expect_active=True)
        active = await monitor.probe(EnvironmentName.BLUE, expect_active=True)

        assert not standby.healthy
        assert standby.detail == "router reports blue as active"
        assert active.healthy

    @pytest.mark.asyncio
    async def test_probe_span(self, targets):
        tracer = MockTracer()
        monitor = HealthMonitor(targets, tracer=tracer)

        await monitor.probe(EnvironmentName.BLUE)

        assert tracer.span_names == ["schemaswitch.health.probe"]


class TestWaitUntilHealthy:
    """Tests for wait_until_healthy."""

    @pytest.mark.asyncio
    async def test_returns_once_healthy(self, monitor: HealthMonitor, green):
        green.fail_pings()
        asyncio.get_running_loop().call_later(0.05, green.recover)

        result = await monitor.wait_until_healthy(EnvironmentName.GREEN, timeout=2.0)

        assert result.healthy
        assert monitor.is_healthy(EnvironmentName.GREEN)

    @pytest.mark.asyncio
    async def test_times_out_with_last_detail(self, monitor: HealthMonitor, green):
        green.fail_pings()

        with pytest.raises(HealthCheckTimeoutError) as exc_info:
            await monitor.wait_until_healthy(EnvironmentName.GREEN, timeout=0.1)

        assert exc_info.value.environment is EnvironmentName.GREEN
        assert exc_info.value.timeout_seconds == 0.1
        assert exc_info.value.last_detail == "probe failed: green is unreachable"


class TestRouterCheck:
    """Tests for check_router and environment roles."""

    @pytest.mark.asyncio
    async def test_consistent_router(self, monitor: HealthMonitor, router: TrafficRouter):
        result = await monitor.check_router()

        assert result.healthy
        assert result.detail == "ok"
        assert monitor.last_router_check is result

    @pytest.mark.asyncio
    async def test_backend_disagrees(self, targets):
        monitor = HealthMonitor(targets, enable_tracing=False)
        backend = AsyncMock()
        backend.current.return_value = EnvironmentName.GREEN
        router = TrafficRouter(
            EnvironmentName.BLUE, monitor=monitor, backend=backend, enable_tracing=False
        )
        monitor.attach_router(router)

        result = await monitor.check_router()

        assert not result.healthy
        assert result.detail == "routing layer reports green, router state is blue"

    @pytest.mark.asyncio
    async def test_backend_error(self, targets):
        monitor = HealthMonitor(targets, enable_tracing=False)
        backend = AsyncMock()
        backend.current.side_effect = OSError("no such file")
        monitor.attach_router(TrafficRouter(monitor=monitor, backend=backend, enable_tracing=False))

        result = await monitor.check_router()

        assert not result.healthy
        assert result.detail == "routing layer check failed: no such file"

    @pytest.mark.asyncio
    async def test_requires_router(self, monitor: HealthMonitor):
        with pytest.raises(RuntimeError):
            await monitor.check_router()

    @pytest.mark.asyncio
    async def test_run_once_includes_router_check(
        self, monitor: HealthMonitor, router: TrafficRouter
    ):
        await monitor.run_once()

        assert monitor.last_router_check is not None

    def test_roles_follow_router(self, monitor: HealthMonitor, router: TrafficRouter):
        snapshots = monitor.snapshots()

        assert snapshots[EnvironmentName.BLUE].role is EnvironmentRole.ACTIVE
        assert snapshots[EnvironmentName.GREEN].role is EnvironmentRole.STANDBY


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitor: HealthMonitor):
        await monitor.start()
        await monitor.start()
        assert monitor.is_running

        await asyncio.sleep(0.12)
        await monitor.stop()

        assert not monitor.is_running
        assert monitor.cycles >= 1
        assert monitor.is_healthy(EnvironmentName.BLUE)

    @pytest.mark.asyncio
    async def test_stop_without_start(self, monitor: HealthMonitor):
        await monitor.stop()

        assert not monitor.is_running
