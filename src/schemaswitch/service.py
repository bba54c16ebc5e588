"""
MigrationService - Composition root for the orchestrator.

Builds every component from an OrchestratorConfig, wires the health
monitor and the traffic router to each other, and owns the lifecycle of
the database engines it creates.

Example:
    >>> config = OrchestratorConfig.from_env()
    >>> async with MigrationService.from_config(config) as service:
    ...     submission = await service.submit(MigrationRequest(statements=[...]))
    ...     run = await service.wait_for_run(submission.run_id, timeout=300)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from schemaswitch.backup import (
    FileSnapshotStore,
    InMemorySnapshotStore,
    RollbackManager,
    SnapshotStore,
)
from schemaswitch.config import OrchestratorConfig
from schemaswitch.controller import MigrationController
from schemaswitch.health import HealthMonitor
from schemaswitch.models import (
    EnvironmentName,
    MigrationRequest,
    MigrationRun,
    RollbackPoint,
    SubmissionResult,
    SwitchResult,
    ValidationResult,
)
from schemaswitch.observability import Tracer
from schemaswitch.repositories import (
    InMemoryMigrationRunRepository,
    MigrationRunRepository,
    RouterStateRepository,
    SQLAlchemyMigrationRunRepository,
)
from schemaswitch.router import TrafficRouter
from schemaswitch.routing import RoutingBackend, UpstreamFileBackend
from schemaswitch.targets.base import DatabaseTarget
from schemaswitch.targets.sql import SQLAlchemyDatabaseTarget
from schemaswitch.validator import SchemaValidator

logger = logging.getLogger(__name__)


class MigrationService:
    """
    Holds the wired components and exposes the operator-facing operations.

    Use ``from_config`` rather than the constructor unless components are
    being assembled by hand.

    Args:
        config: Orchestrator configuration
        targets: Database target per environment
        monitor: Health monitor (already attached to the router)
        router: Traffic router
        rollback_manager: Rollback point manager
        controller: Migration controller
        repository: Run history storage
        owned_engines: Engines disposed by ``stop()`` beyond the targets' own
        owns_targets: Whether ``stop()`` disposes the targets
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        targets: Mapping[EnvironmentName, DatabaseTarget],
        monitor: HealthMonitor,
        router: TrafficRouter,
        rollback_manager: RollbackManager,
        controller: MigrationController,
        repository: MigrationRunRepository,
        owned_engines: list[AsyncEngine] | None = None,
        owns_targets: bool = False,
    ) -> None:
        self._config = config
        self._targets = dict(targets)
        self._monitor = monitor
        self._router = router
        self._rollback_manager = rollback_manager
        self._controller = controller
        self._repository = repository
        self._owned_engines = list(owned_engines or [])
        self._owns_targets = owns_targets
        self._running = False

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        targets: Mapping[EnvironmentName, DatabaseTarget] | None = None,
        store: SnapshotStore | None = None,
        repository: MigrationRunRepository | None = None,
        backend: RoutingBackend | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> MigrationService:
        """
        Build a service from configuration.

        Args:
            config: Orchestrator configuration
            targets: Pre-built targets; built from the database URLs when omitted
            store: Snapshot storage; defaults from ``backup_dir``
            repository: Run history; defaults from ``history_database_url``
            backend: Routing backend; defaults from ``upstream_file``
            tracer: Optional custom Tracer instance shared by all components
            enable_tracing: Whether to enable OpenTelemetry tracing

        Raises:
            ValueError: If targets are omitted and a database URL is missing
        """
        owns_targets = targets is None
        if targets is None:
            built: dict[EnvironmentName, DatabaseTarget] = {}
            for env in EnvironmentName:
                url = config.database_url(env)
                if not url:
                    raise ValueError(f"No database URL configured for {env.value}")
                built[env] = SQLAlchemyDatabaseTarget.from_url(
                    url,
                    statement_timeout=config.statement_timeout_seconds,
                    tracer=tracer,
                    enable_tracing=enable_tracing,
                )
            targets = built

        if store is None:
            store = (
                FileSnapshotStore(config.backup_dir)
                if config.backup_dir
                else InMemorySnapshotStore()
            )

        owned_engines: list[AsyncEngine] = []
        if repository is None:
            if config.history_database_url:
                engine = create_async_engine(config.history_database_url, pool_pre_ping=True)
                owned_engines.append(engine)
                repository = SQLAlchemyMigrationRunRepository(
                    engine, tracer=tracer, enable_tracing=enable_tracing
                )
            else:
                repository = InMemoryMigrationRunRepository()

        if backend is None and config.upstream_file:
            backend = UpstreamFileBackend(
                config.upstream_file,
                validate_command=config.proxy_validate_command,
                reload_command=config.proxy_reload_command,
            )

        validator = SchemaValidator(
            strict_mode=config.strict_mode,
            allowed_operations=config.allowed_operations,
        )
        monitor = HealthMonitor(
            targets,
            interval=config.health_check_interval_seconds,
            probe_timeout=config.probe_timeout_seconds,
            unhealthy_threshold=config.unhealthy_threshold,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        router = TrafficRouter(
            config.initial_active,
            monitor=monitor,
            backend=backend,
            freshness_window=config.health_freshness_seconds,
            drain_timeout=config.drain_timeout_seconds,
            state_repository=(
                repository if isinstance(repository, RouterStateRepository) else None
            ),
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        monitor.attach_router(router)

        rollback_manager = RollbackManager(
            targets,
            store=store,
            retain=config.retain_rollback_points,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        controller = MigrationController(
            validator,
            targets,
            rollback_manager,
            monitor,
            router,
            repository=repository,
            config=config,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        return cls(
            config,
            targets,
            monitor,
            router,
            rollback_manager,
            controller,
            repository,
            owned_engines=owned_engines,
            owns_targets=owns_targets,
        )

    # =========================================================================
    # Components
    # =========================================================================

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def controller(self) -> MigrationController:
        return self._controller

    @property
    def router(self) -> TrafficRouter:
        return self._router

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    @property
    def rollback_manager(self) -> RollbackManager:
        return self._rollback_manager

    @property
    def repository(self) -> MigrationRunRepository:
        return self._repository

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Prepare run history, recover router state and rollback points, take a
        first health reading and start the probe loop.

        Idempotent.

        Raises:
            RouterStateConflictError: If the routing backend and the saved
                router state disagree on the active environment
        """
        if self._running:
            logger.warning("Migration service already running")
            return

        if isinstance(self._repository, SQLAlchemyMigrationRunRepository):
            await self._repository.ensure_schema()

        await self._router.recover()
        await self._rollback_manager.load()
        await self._monitor.run_once()
        await self._monitor.start()
        self._running = True

        logger.info(
            "Migration service started",
            extra={
                "active_environment": self._router.status().active_environment.value,
                "rollback_enabled": self._config.rollback_enabled,
            },
        )

    async def stop(self, timeout: float | None = None) -> None:
        """
        Wait for the active run, stop the probe loop and dispose owned engines.

        Args:
            timeout: Seconds to let the active run finish before cancelling it
                (defaults to the drain timeout)
        """
        wait = self._config.drain_timeout_seconds if timeout is None else timeout
        await self._controller.shutdown(timeout=wait)
        await self._monitor.stop()

        if self._owns_targets:
            for target in self._targets.values():
                await target.dispose()
        for engine in self._owned_engines:
            await engine.dispose()

        self._running = False
        logger.info("Migration service stopped")

    async def __aenter__(self) -> MigrationService:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.stop()

    # =========================================================================
    # Reports
    # =========================================================================

    def health_report(self) -> dict[str, Any]:
        """
        Get health of both environments and the router.

        ``status`` is "unhealthy" when the active environment is unhealthy.
        """
        state = self._router.status()
        active = self._router.current_active()
        router_check = self._monitor.last_router_check

        if not active.healthy:
            overall = "unhealthy"
        elif router_check is not None and not router_check.healthy:
            overall = "degraded"
        else:
            overall = "healthy"

        return {
            "status": overall,
            "active_environment": state.active_environment.value,
            "switching": state.switching,
            "paused": state.paused,
            "monitor_running": self._monitor.is_running,
            "environments": {
                env.name.value: env.to_dict() for env in self._monitor.snapshots().values()
            },
            "router_check": router_check.to_dict() if router_check else None,
        }

    def status_report(self) -> dict[str, Any]:
        """Get router state, the active run and rollback settings."""
        active_run = self._controller.active_run
        return {
            "running": self._running,
            "router": self._router.status().to_dict(),
            "active_run": active_run.to_dict() if active_run else None,
            "rollback": {
                "enabled": self._config.rollback_enabled,
                "retained": self._config.retain_rollback_points,
                "points": len(self._rollback_manager.list_points()),
                "restore_in_progress": self._controller.restore_in_progress,
            },
        }

    # =========================================================================
    # Controller operations
    # =========================================================================

    def preview(self, request: MigrationRequest) -> ValidationResult:
        return self._controller.preview(request)

    async def submit(self, request: MigrationRequest) -> SubmissionResult:
        return await self._controller.submit(request)

    async def get_run(self, run_id: UUID) -> MigrationRun:
        return await self._controller.get_run(run_id)

    async def list_runs(self, limit: int = 50) -> list[MigrationRun]:
        return await self._controller.list_runs(limit)

    async def wait_for_run(self, run_id: UUID, timeout: float | None = None) -> MigrationRun:
        return await self._controller.wait_for_run(run_id, timeout)

    async def restore(self, run_id: UUID) -> RollbackPoint:
        return await self._controller.restore(run_id)

    async def switch(self, target: EnvironmentName) -> SwitchResult:
        return await self._controller.switch(target)


__all__ = ["MigrationService"]
