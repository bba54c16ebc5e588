"""
TrafficRouter - Single source of truth for which environment is live.

The router is the only writer of ``RouterState``. Every change replaces
the state object as a whole, so lock-free readers always see either the
value before or the value after a change.

Responsibilities:
    - Answer "where should new connections go" for the application layer
    - Count in-flight work per environment through connection leases
    - Pause and drain connections for maintenance migrations
    - Perform the health-gated, serialized blue/green switch
    - Drive an optional RoutingBackend (proxy upstream) on each switch
    - Save each committed switch and recover the active environment at startup

Switch sequence:
    1. ``switching`` is set
    2. Target health is confirmed (re-probed when stale)
    3. New connections are directed to the target
    4. In-flight work on the previous environment drains up to ``max_wait``
    5. The routing backend is applied
    6. ``active_environment`` is committed and ``switching`` cleared

A failure at step 2 or 5 leaves the active environment unchanged.
``switching`` is always cleared, including on cancellation.

Usage:
    >>> router = TrafficRouter(EnvironmentName.BLUE, monitor=monitor)
    >>> async with router.lease() as env:
    ...     ...  # run a query against env
    >>> result = await router.switch_to(EnvironmentName.GREEN, max_wait=30.0)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from schemaswitch.exceptions import (
    ConnectionsPausedError,
    RouterStateConflictError,
    RoutingBackendError,
)
from schemaswitch.models import (
    Environment,
    EnvironmentName,
    EnvironmentRole,
    RouterState,
    SwitchResult,
)
from schemaswitch.observability import Tracer, create_tracer
from schemaswitch.observability.attributes import (
    ATTR_MAX_WAIT_SECONDS,
    ATTR_SOURCE_ENVIRONMENT,
    ATTR_TARGET_ENVIRONMENT,
)

if TYPE_CHECKING:
    from schemaswitch.health import HealthMonitor
    from schemaswitch.repositories import RouterStateRepository
    from schemaswitch.routing import RoutingBackend

logger = logging.getLogger(__name__)

_DRAIN_POLL_INTERVAL = 0.01


class TrafficRouter:
    """
    Owns RouterState and every Environment's role.

    Args:
        initial_active: Environment that is live at startup
        monitor: Health monitor used to gate switches
        backend: Optional external routing layer
        freshness_window: Maximum age in seconds of trusted health data
        backend_timeout: Deadline in seconds for applying the backend
        drain_timeout: Default drain budget for switches and leases
        state_repository: Optional store for the last committed switch
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        initial_active: EnvironmentName = EnvironmentName.BLUE,
        monitor: HealthMonitor | None = None,
        backend: RoutingBackend | None = None,
        freshness_window: float = 10.0,
        backend_timeout: float = 10.0,
        drain_timeout: float = 30.0,
        state_repository: RouterStateRepository | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._monitor = monitor
        self._backend = backend
        self._freshness_window = freshness_window
        self._backend_timeout = backend_timeout
        self._drain_timeout = drain_timeout
        self._state_repository = state_repository

        self._state = RouterState(active_environment=initial_active)
        self._switch_lock = asyncio.Lock()
        self._pending_target: EnvironmentName | None = None
        self._in_flight: dict[EnvironmentName, int] = {env: 0 for env in EnvironmentName}
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._paused_at: float | None = None

    @property
    def backend(self) -> RoutingBackend | None:
        return self._backend

    @property
    def drain_timeout(self) -> float:
        return self._drain_timeout

    # =========================================================================
    # Reads (lock-free)
    # =========================================================================

    def status(self) -> RouterState:
        """Return the current RouterState."""
        return self._state

    def current_active(self) -> Environment:
        """
        Return the active environment.

        Health fields come from the attached monitor; without one the
        environment is reported unhealthy and never checked.
        """
        active = self._state.active_environment
        if self._monitor is not None:
            return self._monitor.snapshot(active)
        return Environment(name=active, role=EnvironmentRole.ACTIVE, healthy=False)

    def connection_target(self) -> EnvironmentName:
        """
        Return the environment new connections should use.

        Inside a switch window this is already the switch target; callers
        must re-resolve on every reconnect.
        """
        return self._pending_target or self._state.active_environment

    def in_flight(self, environment: EnvironmentName) -> int:
        return self._in_flight[environment]

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    async def reported_active(self) -> EnvironmentName | None:
        """Return the environment the routing backend reports, or the router's own state."""
        if self._backend is None:
            return self._state.active_environment
        return await self._backend.current()

    # =========================================================================
    # Startup recovery
    # =========================================================================

    async def recover(self) -> RouterState:
        """
        Seed the active environment from the routing backend and the saved state.

        Called once at startup, before any switch. The backend's report wins
        over the saved state, which wins over ``initial_active``. A backend
        without a marker (None) counts as no report.

        Returns:
            The RouterState after recovery

        Raises:
            RouterStateConflictError: If the backend and the saved state disagree
            TimeoutError: If the backend does not answer within ``backend_timeout``
        """
        async with self._switch_lock:
            reported: EnvironmentName | None = None
            if self._backend is not None:
                reported = await asyncio.wait_for(
                    self._backend.current(), timeout=self._backend_timeout
                )

            saved: RouterState | None = None
            if self._state_repository is not None:
                saved = await self._state_repository.load_router_state()

            if reported is not None and saved is not None:
                if reported is not saved.active_environment:
                    raise RouterStateConflictError(reported, saved.active_environment)

            recovered = reported or (saved.active_environment if saved else None)
            if recovered is not None and recovered is not self._state.active_environment:
                logger.warning(
                    "Recovered active environment %s (configured %s)",
                    recovered.value,
                    self._state.active_environment.value,
                    extra={
                        "reported": reported.value if reported else None,
                        "saved": saved.active_environment.value if saved else None,
                    },
                )
                self._state = replace(self._state, active_environment=recovered)

            if saved is not None and self._state.last_switch_at is None:
                self._state = replace(self._state, last_switch_at=saved.last_switch_at)

            logger.info("Router starting with %s active", self._state.active_environment.value)
            return self._state

    async def _save_state(self) -> None:
        if self._state_repository is None:
            return
        try:
            await self._state_repository.save_router_state(self._state)
        except Exception as e:
            # The switch is already committed in the routing layer; the next
            # startup reports the mismatch.
            logger.error(
                "Failed to save router state (%s active): %s",
                self._state.active_environment.value,
                e,
                exc_info=True,
            )

    # =========================================================================
    # Connection leases, pause and drain
    # =========================================================================

    @asynccontextmanager
    async def lease(self, timeout: float | None = None) -> AsyncIterator[EnvironmentName]:
        """
        Hold a connection slot on the current connection target.

        Waits while connections are paused.

        Raises:
            ConnectionsPausedError: If the pause outlasts ``timeout``
        """
        if not self._resumed.is_set():
            wait = self._drain_timeout if timeout is None else timeout
            try:
                await asyncio.wait_for(self._resumed.wait(), timeout=wait)
            except TimeoutError:
                raise ConnectionsPausedError(wait) from None

        environment = self.connection_target()
        self._in_flight[environment] += 1
        try:
            yield environment
        finally:
            self._in_flight[environment] -= 1

    async def pause_connections(self) -> bool:
        """
        Hold back new connection leases.

        Idempotent.

        Returns:
            True if a new pause was started, False if already paused.
        """
        if not self._resumed.is_set():
            logger.debug("Connections already paused (idempotent call)")
            return False
        self._resumed.clear()
        self._paused_at = time.perf_counter()
        self._state = replace(self._state, paused=True)
        logger.info("Paused new connections on %s", self._state.active_environment.value)
        return True

    async def resume_connections(self) -> bool:
        """
        Release every lease waiting on a pause.

        Idempotent.

        Returns:
            True if a pause was lifted, False if not paused.
        """
        if self._resumed.is_set():
            logger.debug("Connections not paused (idempotent resume)")
            return False
        duration_ms = (time.perf_counter() - (self._paused_at or time.perf_counter())) * 1000
        self._paused_at = None
        self._state = replace(self._state, paused=False)
        self._resumed.set()
        logger.info("Resumed connections (paused for %.2fms)", duration_ms)
        return True

    async def drain(
        self,
        environment: EnvironmentName | None = None,
        max_wait: float | None = None,
    ) -> bool:
        """
        Wait until no lease is held on ``environment`` (default: the active one).

        Returns:
            True if drained, False if work was still in flight at ``max_wait``.
        """
        environment = environment or self._state.active_environment
        max_wait = self._drain_timeout if max_wait is None else max_wait
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait

        while self._in_flight[environment] > 0:
            if loop.time() >= deadline:
                logger.warning(
                    "Drain of %s timed out after %.1fs with %d operations in flight",
                    environment.value,
                    max_wait,
                    self._in_flight[environment],
                )
                return False
            await asyncio.sleep(_DRAIN_POLL_INTERVAL)
        return True

    # =========================================================================
    # Switch
    # =========================================================================

    async def switch_to(
        self,
        target: EnvironmentName,
        max_wait: float | None = None,
        require_healthy: bool = True,
        wait: bool = True,
    ) -> SwitchResult:
        """
        Make ``target`` the active environment.

        Calls are serialized. With ``wait=False`` a call made while another
        switch holds the lock is rejected instead of queued.

        Args:
            target: Environment to activate
            max_wait: Drain budget for the previous environment
            require_healthy: Gate on target health (False only for emergency reversal)
            wait: Queue behind a running switch instead of failing fast

        Returns:
            SwitchResult; ``success`` is False and state is unchanged on rejection
        """
        if not wait and self._switch_lock.locked():
            current = self._state.active_environment
            return SwitchResult(
                success=False,
                previous=current,
                current=current,
                error_message="Another switch is in progress",
            )

        async with self._switch_lock:
            return await self._switch(target, max_wait, require_healthy)

    async def _switch(
        self,
        target: EnvironmentName,
        max_wait: float | None,
        require_healthy: bool,
    ) -> SwitchResult:
        previous = self._state.active_environment
        if target is previous:
            return SwitchResult(
                success=False,
                previous=previous,
                current=previous,
                error_message=f"{target.value} is already active",
            )

        max_wait = self._drain_timeout if max_wait is None else max_wait
        start = time.perf_counter()

        with self._tracer.span(
            "schemaswitch.router.switch",
            {
                ATTR_SOURCE_ENVIRONMENT: previous.value,
                ATTR_TARGET_ENVIRONMENT: target.value,
                ATTR_MAX_WAIT_SECONDS: max_wait,
            },
        ):
            self._state = replace(self._state, switching=True)
            try:
                if require_healthy:
                    reason = await self._confirm_healthy(target)
                    if reason is not None:
                        return self._rejected(previous, start, reason)

                self._pending_target = target
                drained = await self.drain(previous, max_wait)

                if self._backend is not None:
                    try:
                        await asyncio.wait_for(
                            self._backend.apply(target), timeout=self._backend_timeout
                        )
                    except TimeoutError:
                        return self._rejected(
                            previous,
                            start,
                            f"Routing backend did not apply within {self._backend_timeout:.1f}s",
                        )
                    except RoutingBackendError as e:
                        return self._rejected(previous, start, str(e))

                self._state = RouterState(
                    active_environment=target,
                    switching=False,
                    last_switch_at=datetime.now(UTC),
                    paused=self._state.paused,
                )
                await self._save_state()
                duration_ms = (time.perf_counter() - start) * 1000
                logger.info(
                    "Switched active environment %s -> %s in %.2fms",
                    previous.value,
                    target.value,
                    duration_ms,
                    extra={
                        "previous": previous.value,
                        "current": target.value,
                        "drain_timed_out": not drained,
                        "health_gated": require_healthy,
                    },
                )
                return SwitchResult(
                    success=True,
                    previous=previous,
                    current=target,
                    duration_ms=duration_ms,
                    drain_timed_out=not drained,
                )
            finally:
                self._pending_target = None
                if self._state.switching:
                    self._state = replace(self._state, switching=False)

    async def _confirm_healthy(self, target: EnvironmentName) -> str | None:
        if self._monitor is None:
            return "No health monitor attached; cannot confirm target health"
        if self._monitor.is_fresh(target, self._freshness_window):
            return None

        result = await self._monitor.probe(target)
        if result.healthy:
            return None
        return f"Target {target.value} failed health re-probe: {result.detail}"

    def _rejected(self, previous: EnvironmentName, start: float, reason: str) -> SwitchResult:
        logger.warning("Switch to %s rejected: %s", previous.other.value, reason)
        return SwitchResult(
            success=False,
            previous=previous,
            current=previous,
            duration_ms=(time.perf_counter() - start) * 1000,
            error_message=reason,
        )


__all__ = ["TrafficRouter"]
