"""
Unit tests for the HTTP interface.

Requests go through httpx's ASGI transport against a service running on
in-memory targets.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from schemaswitch.config import OrchestratorConfig
from schemaswitch.models import EnvironmentName, RunState
from schemaswitch.service import MigrationService

httpx = pytest.importorskip("httpx")

from schemaswitch.api import create_app  # noqa: E402

DROP_COLUMN = "ALTER TABLE users DROP COLUMN legacy_flag"


@pytest_asyncio.fixture
async def service(
    targets, fast_config: OrchestratorConfig
) -> AsyncGenerator[MigrationService, None]:
    service = MigrationService.from_config(fast_config, targets=targets, enable_tracing=False)
    await service.start()
    yield service
    await service.stop(timeout=1.0)


@pytest_asyncio.fixture
async def client(service: MigrationService) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(service, manage_lifecycle=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHealthAndStatus:
    """Tests for GET /health and GET /status."""

    @pytest.mark.asyncio
    async def test_healthy(self, client: httpx.AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["active_environment"] == "blue"
        assert set(body["environments"]) == {"blue", "green"}

    @pytest.mark.asyncio
    async def test_unhealthy_active_is_503(
        self, client: httpx.AsyncClient, service: MigrationService, blue
    ):
        await service.monitor.stop()
        blue.fail_pings()
        await service.monitor.run_once()
        await service.monitor.run_once()

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_status(self, client: httpx.AsyncClient):
        response = await client.get("/status")

        assert response.status_code == 200
        body = response.json()
        assert body["running"] is True
        assert body["router"]["active_environment"] == "blue"
        assert body["active_run"] is None
        assert body["rollback"]["enabled"] is True


class TestMigrations:
    """Tests for the /migrations endpoints."""

    @pytest.mark.asyncio
    async def test_validate_only(self, client: httpx.AsyncClient, service: MigrationService):
        response = await client.post("/migrations/validate", json={"statements": [DROP_COLUMN]})

        assert response.status_code == 200
        body = response.json()
        assert body["strategy"] == "risky"
        assert body["risk_level"] == "high"
        assert await service.list_runs() == []

    @pytest.mark.asyncio
    async def test_submit_and_fetch(self, client: httpx.AsyncClient, service: MigrationService):
        response = await client.post(
            "/migrations",
            json={"statements": ["CREATE TABLE audit (id INT)"], "submitted_by": "ops"},
        )

        assert response.status_code == 202
        run_id = UUID(response.json()["run_id"])
        await service.wait_for_run(run_id, timeout=2.0)

        fetched = await client.get(f"/migrations/{run_id}")
        listed = await client.get("/migrations", params={"limit": 5})

        assert fetched.status_code == 200
        assert fetched.json()["state"] == "completed"
        assert listed.json()["count"] == 1
        assert listed.json()["runs"][0]["id"] == str(run_id)

    @pytest.mark.asyncio
    async def test_invalid_submission_is_422(self, client: httpx.AsyncClient):
        response = await client.post(
            "/migrations", json={"statements": ["DROP TABLE legacy"], "risk_hint": "safe"}
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "VALIDATION_FAILED"
        assert body["state"] == "failed"
        assert body["validation"]["is_valid"] is False

    @pytest.mark.asyncio
    async def test_malformed_body(self, client: httpx.AsyncClient):
        response = await client.post(
            "/migrations", json={"statements": [DROP_COLUMN], "risk_hint": "yolo"}
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_limit_is_bounded(self, client: httpx.AsyncClient):
        response = await client.get("/migrations", params={"limit": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_run_is_404(self, client: httpx.AsyncClient):
        response = await client.get(f"/migrations/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error_code"] == "RUN_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_concurrent_submission_is_409(
        self, client: httpx.AsyncClient, service: MigrationService, green
    ):
        green.set_ping_delay(0.02)
        first = await client.post("/migrations", json={"statements": [DROP_COLUMN]})

        second = await client.post(
            "/migrations", json={"statements": ["CREATE TABLE audit (id INT)"]}
        )

        assert first.status_code == 202
        assert second.status_code == 409
        assert second.json()["error_code"] == "MIGRATION_CONFLICT"
        await service.wait_for_run(UUID(first.json()["run_id"]), timeout=3.0)


class TestRestore:
    """Tests for POST /migrations/{run_id}/restore."""

    @pytest.mark.asyncio
    async def test_restore_after_switch(
        self, client: httpx.AsyncClient, service: MigrationService
    ):
        submitted = await client.post("/migrations", json={"statements": [DROP_COLUMN]})
        run_id = UUID(submitted.json()["run_id"])
        run = await service.wait_for_run(run_id, timeout=3.0)
        assert run.state is RunState.COMPLETED
        assert service.router.status().active_environment is EnvironmentName.GREEN

        response = await client.post(f"/migrations/{run_id}/restore")

        assert response.status_code == 200
        body = response.json()
        assert body["rollback_point"]["id"] == str(run.rollback_point_id)
        assert body["router"]["active_environment"] == "blue"

    @pytest.mark.asyncio
    async def test_run_without_point_is_404(
        self, client: httpx.AsyncClient, service: MigrationService
    ):
        submitted = await client.post(
            "/migrations", json={"statements": ["CREATE TABLE audit (id INT)"]}
        )
        run_id = UUID(submitted.json()["run_id"])
        await service.wait_for_run(run_id, timeout=2.0)

        response = await client.post(f"/migrations/{run_id}/restore")

        assert response.status_code == 404
        assert response.json()["error_code"] == "ROLLBACK_POINT_NOT_FOUND"


class TestSwitch:
    """Tests for POST /switch."""

    @pytest.mark.asyncio
    async def test_switch_to_standby(self, client: httpx.AsyncClient, service: MigrationService):
        response = await client.post("/switch", json={"target": "green"})

        assert response.status_code == 200
        body = response.json()
        assert body["switch"]["success"] is True
        assert body["switch"]["previous"] == "blue"
        assert body["router"]["active_environment"] == "green"
        assert service.router.status().active_environment is EnvironmentName.GREEN

    @pytest.mark.asyncio
    async def test_refused_switch_is_409(
        self, client: httpx.AsyncClient, service: MigrationService, green
    ):
        green.fail_pings()
        await service.monitor.run_once()

        response = await client.post("/switch", json={"target": "green"})

        assert response.status_code == 409
        assert response.json()["error_code"] == "SWITCH_FAILED"
        assert service.router.status().active_environment is EnvironmentName.BLUE

    @pytest.mark.asyncio
    async def test_switch_during_run_is_409(
        self, client: httpx.AsyncClient, service: MigrationService, green
    ):
        green.set_ping_delay(0.02)
        submitted = await client.post("/migrations", json={"statements": [DROP_COLUMN]})

        response = await client.post("/switch", json={"target": "green"})

        assert response.status_code == 409
        assert response.json()["error_code"] == "MIGRATION_CONFLICT"
        await service.wait_for_run(UUID(submitted.json()["run_id"]), timeout=3.0)

    @pytest.mark.asyncio
    async def test_unknown_target_is_422(self, client: httpx.AsyncClient):
        response = await client.post("/switch", json={"target": "purple"})

        assert response.status_code == 422
