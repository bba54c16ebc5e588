"""
HealthMonitor - Periodic and on-demand health probes for both environments.

A probe checks connectivity plus a lightweight query round-trip (the
target's ``ping``) within a bounded timeout. After a switch the probe can
also confirm that the router reports the probed environment as live.

Status rules:
    - Environments start unhealthy with no ``last_checked`` until first probed
    - ``unhealthy_threshold`` consecutive failed scheduled probes mark an
      environment unhealthy
    - A single successful probe, scheduled or on demand, marks it healthy
    - On-demand failures are reported to the caller only

Usage:
    >>> monitor = HealthMonitor(targets, interval=5.0, probe_timeout=2.0)
    >>> monitor.attach_router(router)
    >>> await monitor.start()
    >>> result = await monitor.probe(EnvironmentName.GREEN)
    >>> await monitor.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING

from schemaswitch.exceptions import PROBE_RETRY_CONFIG, HealthCheckTimeoutError
from schemaswitch.models import Environment, EnvironmentName, EnvironmentRole, ProbeResult
from schemaswitch.observability import Tracer, create_tracer
from schemaswitch.observability.attributes import ATTR_ENVIRONMENT, ATTR_PROBE_SCHEDULED
from schemaswitch.targets.base import DatabaseTarget

if TYPE_CHECKING:
    from schemaswitch.router import TrafficRouter

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Owns the last-known health of the blue and green environments.

    Args:
        targets: Database target per environment
        interval: Seconds between scheduled probe cycles
        probe_timeout: Deadline for a single probe; exceeding it is a failure
        unhealthy_threshold: Consecutive scheduled failures before unhealthy
        router: Router consulted for roles and consistency checks
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        targets: Mapping[EnvironmentName, DatabaseTarget],
        *,
        interval: float = 5.0,
        probe_timeout: float = 2.0,
        unhealthy_threshold: int = 3,
        router: TrafficRouter | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        if probe_timeout <= 0:
            raise ValueError(f"probe_timeout must be > 0, got {probe_timeout}")
        if unhealthy_threshold < 1:
            raise ValueError(f"unhealthy_threshold must be >= 1, got {unhealthy_threshold}")

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._targets = dict(targets)
        self._interval = interval
        self._probe_timeout = probe_timeout
        self._threshold = unhealthy_threshold
        self._router = router

        self._healthy: dict[EnvironmentName, bool] = {env: False for env in self._targets}
        self._last_checked: dict[EnvironmentName, datetime | None] = {
            env: None for env in self._targets
        }
        self._last_success: dict[EnvironmentName, float | None] = {
            env: None for env in self._targets
        }
        self._failures: dict[EnvironmentName, int] = {env: 0 for env in self._targets}
        self._last_results: dict[EnvironmentName, ProbeResult] = {}
        self._router_check: ProbeResult | None = None

        self._task: asyncio.Task[None] | None = None
        self._cycles = 0

    def attach_router(self, router: TrafficRouter) -> None:
        """Attach the router after construction (router and monitor reference each other)."""
        self._router = router

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def probe_timeout(self) -> float:
        return self._probe_timeout

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycles(self) -> int:
        """Number of completed scheduled cycles."""
        return self._cycles

    @property
    def last_router_check(self) -> ProbeResult | None:
        return self._router_check

    # =========================================================================
    # Probing
    # =========================================================================

    async def probe(self, environment: EnvironmentName, expect_active: bool = False) -> ProbeResult:
        """
        Probe an environment on demand.

        A healthy result clears any unhealthy status immediately. A failed
        result is returned but does not change the recorded status.

        Args:
            environment: Environment to probe
            expect_active: Also require the router to report this environment as live

        Returns:
            The probe result
        """
        result = await self._execute_probe(environment, expect_active, scheduled=False)
        if result.healthy:
            self._record_success(result)
        return result

    async def run_once(self) -> list[ProbeResult]:
        """
        Run one scheduled cycle: probe both environments and check the router.

        Returns:
            Probe results for each environment
        """
        results = await asyncio.gather(
            *(self._execute_probe(env, False, scheduled=True) for env in self._targets)
        )
        for result in results:
            self._record_scheduled(result)

        if self._router is not None:
            await self.check_router()

        self._cycles += 1
        return list(results)

    async def wait_until_healthy(
        self,
        environment: EnvironmentName,
        timeout: float,
        expect_active: bool = False,
    ) -> ProbeResult:
        """
        Probe repeatedly until the environment is healthy.

        Retries back off using PROBE_RETRY_CONFIG, bounded by ``timeout``.

        Raises:
            HealthCheckTimeoutError: If no probe succeeds before the deadline
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempt = 0
        last: ProbeResult | None = None

        while True:
            if loop.time() >= deadline:
                raise HealthCheckTimeoutError(
                    environment,
                    timeout,
                    last_detail=last.detail if last else None,
                )

            result = await self.probe(environment, expect_active=expect_active)
            if result.healthy:
                return result
            last = result

            delay = PROBE_RETRY_CONFIG.get_delay_ms(attempt) / 1000.0
            attempt += 1
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(delay, remaining))

    async def check_router(self) -> ProbeResult:
        """
        Compare the routing layer's reported target with the router state.

        The check passes trivially while a switch is in progress.
        """
        if self._router is None:
            raise RuntimeError("No router attached to the health monitor")

        state = self._router.status()
        start = time.perf_counter()
        if state.switching:
            healthy, detail = True, "switch in progress"
        else:
            try:
                reported = await asyncio.wait_for(
                    self._router.reported_active(), timeout=self._probe_timeout
                )
            except TimeoutError:
                healthy, detail = False, "routing layer did not answer in time"
            except Exception as e:
                healthy, detail = False, f"routing layer check failed: {e}"
            else:
                if reported is state.active_environment:
                    healthy, detail = True, "ok"
                else:
                    reported_name = reported.value if reported else "unknown"
                    healthy = False
                    detail = (
                        f"routing layer reports {reported_name}, "
                        f"router state is {state.active_environment.value}"
                    )

        result = ProbeResult(
            environment=state.active_environment,
            healthy=healthy,
            latency_ms=(time.perf_counter() - start) * 1000,
            detail=detail,
        )
        if not healthy:
            logger.warning("Router consistency check failed: %s", detail)
        self._router_check = result
        return result

    # =========================================================================
    # Status
    # =========================================================================

    def is_healthy(self, environment: EnvironmentName) -> bool:
        return self._healthy.get(environment, False)

    def is_fresh(self, environment: EnvironmentName, window: float) -> bool:
        """
        Check if the environment is healthy as of a recent passing probe.

        False when the last passing probe is older than ``window`` seconds
        or a failure has been recorded since.
        """
        last = self._last_success.get(environment)
        if not self._healthy.get(environment) or last is None:
            return False
        if self._failures.get(environment, 0) > 0:
            return False
        return (time.monotonic() - last) <= window

    def last_result(self, environment: EnvironmentName) -> ProbeResult | None:
        return self._last_results.get(environment)

    def snapshot(self, environment: EnvironmentName) -> Environment:
        """Return a read-only view of one environment."""
        if self._router is not None and self._router.status().active_environment is environment:
            role = EnvironmentRole.ACTIVE
        else:
            role = EnvironmentRole.STANDBY
        return Environment(
            name=environment,
            role=role,
            healthy=self._healthy.get(environment, False),
            last_checked=self._last_checked.get(environment),
        )

    def snapshots(self) -> dict[EnvironmentName, Environment]:
        return {env: self.snapshot(env) for env in EnvironmentName}

    # =========================================================================
    # Scheduled loop
    # =========================================================================

    async def start(self) -> None:
        """Start the periodic probe task. Idempotent."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._probe_loop(), name="schemaswitch-health-monitor")
        logger.info(
            "Health monitor started",
            extra={"interval_seconds": self._interval, "threshold": self._threshold},
        )

    async def stop(self) -> None:
        """Cancel the periodic probe task and wait for it to finish."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("Health monitor stopped")

    async def _probe_loop(self) -> None:
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                logger.debug("Health probe loop cancelled")
                break
            except Exception as e:
                logger.warning(
                    "Error in health probe loop",
                    extra={"error": str(e)},
                )
                await asyncio.sleep(self._interval)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _execute_probe(
        self,
        environment: EnvironmentName,
        expect_active: bool,
        scheduled: bool,
    ) -> ProbeResult:
        target = self._targets.get(environment)
        if target is None:
            return ProbeResult(
                environment=environment,
                healthy=False,
                latency_ms=0.0,
                detail=f"no database target configured for {environment.value}",
                scheduled=scheduled,
            )

        with self._tracer.span(
            "schemaswitch.health.probe",
            {ATTR_ENVIRONMENT: environment.value, ATTR_PROBE_SCHEDULED: scheduled},
        ):
            start = time.perf_counter()
            try:
                await asyncio.wait_for(target.ping(), timeout=self._probe_timeout)
            except TimeoutError:
                healthy, detail = False, f"probe timed out after {self._probe_timeout:.1f}s"
            except Exception as e:
                healthy, detail = False, f"probe failed: {e}"
            else:
                healthy, detail = True, "ok"
                if expect_active:
                    mismatch = await self._router_mismatch(environment)
                    if mismatch is not None:
                        healthy, detail = False, mismatch

            result = ProbeResult(
                environment=environment,
                healthy=healthy,
                latency_ms=(time.perf_counter() - start) * 1000,
                detail=detail,
                scheduled=scheduled,
            )

        if healthy:
            logger.debug(
                "Probe of %s passed in %.1fms", environment.value, result.latency_ms
            )
        else:
            logger.warning(
                "Probe of %s failed: %s",
                environment.value,
                detail,
                extra={"environment": environment.value, "scheduled": scheduled},
            )
        self._last_results[environment] = result
        return result

    async def _router_mismatch(self, environment: EnvironmentName) -> str | None:
        if self._router is None:
            return "no router attached"
        active = self._router.status().active_environment
        if active is not environment:
            return f"router reports {active.value} as active"
        try:
            reported = await asyncio.wait_for(
                self._router.reported_active(), timeout=self._probe_timeout
            )
        except TimeoutError:
            return "routing layer did not answer in time"
        except Exception as e:
            return f"routing layer check failed: {e}"
        if reported is not environment:
            reported_name = reported.value if reported else "unknown"
            return f"routing layer reports {reported_name} as active"
        return None

    def _record_success(self, result: ProbeResult) -> None:
        environment = result.environment
        if not self._healthy.get(environment, False):
            logger.info("Environment %s is healthy", environment.value)
        self._healthy[environment] = True
        self._failures[environment] = 0
        self._last_checked[environment] = result.checked_at
        self._last_success[environment] = time.monotonic()

    def _record_scheduled(self, result: ProbeResult) -> None:
        if result.healthy:
            self._record_success(result)
            return

        environment = result.environment
        self._failures[environment] = self._failures.get(environment, 0) + 1
        self._last_checked[environment] = result.checked_at
        if self._failures[environment] >= self._threshold and self._healthy.get(environment):
            self._healthy[environment] = False
            logger.warning(
                "Environment %s marked unhealthy after %d consecutive failed probes",
                environment.value,
                self._failures[environment],
                extra={"environment": environment.value, "detail": result.detail},
            )


__all__ = ["HealthMonitor"]
