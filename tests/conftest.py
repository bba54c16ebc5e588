"""
Shared pytest fixtures for the schemaswitch tests.

This module provides:
- In-memory database targets for both environments
- SQLite-backed SQLAlchemy engines (aiosqlite, file databases under tmp_path)
- A configuration with short timeouts for orchestration tests
- Fully wired components (monitor, router, rollback manager, controller)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from schemaswitch.backup import InMemorySnapshotStore, RollbackManager
from schemaswitch.config import OrchestratorConfig
from schemaswitch.controller import MigrationController
from schemaswitch.exceptions import RetryConfig
from schemaswitch.health import HealthMonitor
from schemaswitch.models import EnvironmentName, MigrationRequest
from schemaswitch.repositories import InMemoryMigrationRunRepository
from schemaswitch.router import TrafficRouter
from schemaswitch.targets.memory import InMemoryDatabaseTarget
from schemaswitch.validator import SchemaValidator

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# ============================================================================
# Targets
# ============================================================================


@pytest.fixture
def blue() -> InMemoryDatabaseTarget:
    return InMemoryDatabaseTarget("blue")


@pytest.fixture
def green() -> InMemoryDatabaseTarget:
    return InMemoryDatabaseTarget("green")


@pytest.fixture
def targets(
    blue: InMemoryDatabaseTarget, green: InMemoryDatabaseTarget
) -> dict[EnvironmentName, InMemoryDatabaseTarget]:
    """Blue and green in-memory targets."""
    return {EnvironmentName.BLUE: blue, EnvironmentName.GREEN: green}


# ============================================================================
# SQLite
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_engine_factory(
    tmp_path: Path,
) -> AsyncGenerator[Callable[[str], AsyncEngine], None]:
    """
    Provide a factory for file-backed SQLite engines.

    Every engine created through the factory is disposed after the test.
    Skips the test when aiosqlite is not installed.
    """
    pytest.importorskip("aiosqlite")
    engines: list[AsyncEngine] = []

    def factory(name: str) -> AsyncEngine:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / name}.db")
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.dispose()


@pytest_asyncio.fixture
async def sqlite_engine(
    sqlite_engine_factory: Callable[[str], AsyncEngine],
) -> AsyncEngine:
    return sqlite_engine_factory("app")


# ============================================================================
# Orchestration
# ============================================================================


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    """Configuration with timeouts short enough for unit tests."""
    return OrchestratorConfig(
        drain_timeout_seconds=0.2,
        health_check_interval_seconds=0.05,
        probe_timeout_seconds=0.05,
        unhealthy_threshold=2,
        health_freshness_seconds=10.0,
        health_check_timeout_seconds=0.3,
        post_switch_verify_timeout_seconds=0.3,
        switch_max_attempts=3,
    )


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Switch retry backoff measured in milliseconds."""
    return RetryConfig(max_attempts=3, base_delay_ms=1.0, max_delay_ms=5.0, jitter_factor=0.0)


@pytest.fixture
def monitor(
    targets: dict[EnvironmentName, InMemoryDatabaseTarget],
    fast_config: OrchestratorConfig,
) -> HealthMonitor:
    return HealthMonitor(
        targets,
        interval=fast_config.health_check_interval_seconds,
        probe_timeout=fast_config.probe_timeout_seconds,
        unhealthy_threshold=fast_config.unhealthy_threshold,
        enable_tracing=False,
    )


@pytest.fixture
def router(monitor: HealthMonitor, fast_config: OrchestratorConfig) -> TrafficRouter:
    router = TrafficRouter(
        EnvironmentName.BLUE,
        monitor=monitor,
        freshness_window=fast_config.health_freshness_seconds,
        drain_timeout=fast_config.drain_timeout_seconds,
        enable_tracing=False,
    )
    monitor.attach_router(router)
    return router


@pytest.fixture
def snapshot_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def rollback_manager(
    targets: dict[EnvironmentName, InMemoryDatabaseTarget],
    snapshot_store: InMemorySnapshotStore,
    fast_config: OrchestratorConfig,
) -> RollbackManager:
    return RollbackManager(
        targets,
        store=snapshot_store,
        retain=fast_config.retain_rollback_points,
        enable_tracing=False,
    )


@pytest.fixture
def run_repository() -> InMemoryMigrationRunRepository:
    return InMemoryMigrationRunRepository()


@pytest_asyncio.fixture
async def controller(
    targets: dict[EnvironmentName, InMemoryDatabaseTarget],
    rollback_manager: RollbackManager,
    monitor: HealthMonitor,
    router: TrafficRouter,
    run_repository: InMemoryMigrationRunRepository,
    fast_config: OrchestratorConfig,
    fast_retry: RetryConfig,
) -> AsyncGenerator[MigrationController, None]:
    """
    Controller over in-memory targets with both environments probed healthy.

    The active run (if any) is shut down after the test.
    """
    controller = MigrationController(
        SchemaValidator(),
        targets,
        rollback_manager,
        monitor,
        router,
        repository=run_repository,
        config=fast_config,
        switch_retry=fast_retry,
        enable_tracing=False,
    )
    await monitor.run_once()
    yield controller
    await controller.shutdown(timeout=1.0)


@pytest.fixture
def make_request() -> Callable[..., MigrationRequest]:
    """Factory for migration requests."""

    def factory(*statements: str, **kwargs: object) -> MigrationRequest:
        return MigrationRequest(statements=statements, **kwargs)

    return factory
