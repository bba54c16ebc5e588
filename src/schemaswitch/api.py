"""
HTTP interface for the orchestrator.

Endpoints:
    GET  /health                         - Environment health and router flags
    GET  /status                         - Router state, active run, rollback settings
    POST /migrations                     - Submit a migration (202)
    POST /migrations/validate            - Validate statements without running them
    GET  /migrations                     - Recent runs
    GET  /migrations/{run_id}            - One run
    POST /migrations/{run_id}/restore    - Manually restore a run's rollback point
    POST /switch                         - Manually switch traffic (409 on conflict or refusal)

The application's lifespan starts and stops the MigrationService.

Example:
    >>> service = MigrationService.from_config(OrchestratorConfig.from_env())
    >>> app = create_app(service)
    >>> # uvicorn.run(app, host="0.0.0.0", port=8080)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from schemaswitch.exceptions import (
    ConnectionsPausedError,
    MigrationConflictError,
    OrchestrationError,
    RestoreError,
    RollbackDisabledError,
    RollbackPointNotFoundError,
    RunNotFoundError,
    SwitchError,
    ValidationError,
)
from schemaswitch.models import EnvironmentName, MigrationRequest, MigrationStrategy
from schemaswitch.service import MigrationService

logger = logging.getLogger(__name__)

# Named locally; Starlette renamed its 422 constant between releases.
HTTP_422_UNPROCESSABLE = 422

# First match wins, so subclasses come before their bases.
_ERROR_STATUS: tuple[tuple[type[OrchestrationError], int], ...] = (
    (RollbackDisabledError, status.HTTP_403_FORBIDDEN),
    (RunNotFoundError, status.HTTP_404_NOT_FOUND),
    (RollbackPointNotFoundError, status.HTTP_404_NOT_FOUND),
    (MigrationConflictError, status.HTTP_409_CONFLICT),
    (SwitchError, status.HTTP_409_CONFLICT),
    (ValidationError, HTTP_422_UNPROCESSABLE),
    (ConnectionsPausedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RestoreError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


# =============================================================================
# Request bodies
# =============================================================================


class MigrationBody(BaseModel):
    """Request body for submitting or validating a migration."""

    statements: list[str] = Field(..., description="Ordered SQL statements, one per entry")
    risk_hint: MigrationStrategy | None = Field(
        None, description="Requested execution path (safe, risky, maintenance)"
    )
    description: str | None = Field(None, description="Free-form operator note")
    submitted_by: str | None = Field(None, description="Operator or system submitting")

    def to_request(self) -> MigrationRequest:
        return MigrationRequest(
            statements=tuple(self.statements),
            risk_hint=self.risk_hint,
            description=self.description,
            submitted_by=self.submitted_by,
        )


class SwitchBody(BaseModel):
    """Request body for a manual traffic switch."""

    target: EnvironmentName = Field(..., description="Environment to make active (blue, green)")


# =============================================================================
# Routes
# =============================================================================


def get_service(request: Request) -> MigrationService:
    return request.app.state.service


router = APIRouter()


@router.get("/health")
async def health(service: MigrationService = Depends(get_service)) -> JSONResponse:
    report = service.health_report()
    code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if report["status"] == "unhealthy"
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=code, content=report)


@router.get("/status")
async def get_status(service: MigrationService = Depends(get_service)) -> dict[str, Any]:
    return service.status_report()


@router.post("/migrations/validate")
async def validate_migration(
    body: MigrationBody,
    service: MigrationService = Depends(get_service),
) -> dict[str, Any]:
    return service.preview(body.to_request()).to_dict()


@router.post("/migrations", status_code=status.HTTP_202_ACCEPTED)
async def submit_migration(
    body: MigrationBody,
    service: MigrationService = Depends(get_service),
) -> JSONResponse:
    submission = await service.submit(body.to_request())
    if not submission.validation.is_valid:
        error = ValidationError(submission.validation.errors, run_id=submission.run_id)
        return JSONResponse(
            status_code=HTTP_422_UNPROCESSABLE,
            content={**error.to_dict(), **submission.to_dict()},
        )
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=submission.to_dict())


@router.get("/migrations")
async def list_migrations(
    limit: int = Query(50, ge=1, le=500),
    service: MigrationService = Depends(get_service),
) -> dict[str, Any]:
    runs = await service.list_runs(limit)
    return {"runs": [run.to_dict() for run in runs], "count": len(runs)}


@router.get("/migrations/{run_id}")
async def get_migration(
    run_id: UUID,
    service: MigrationService = Depends(get_service),
) -> dict[str, Any]:
    run = await service.get_run(run_id)
    return run.to_dict()


@router.post("/migrations/{run_id}/restore")
async def restore_migration(
    run_id: UUID,
    service: MigrationService = Depends(get_service),
) -> dict[str, Any]:
    point = await service.restore(run_id)
    return {
        "run_id": str(run_id),
        "rollback_point": point.to_dict(),
        "router": service.router.status().to_dict(),
    }


@router.post("/switch")
async def switch_traffic(
    body: SwitchBody,
    service: MigrationService = Depends(get_service),
) -> dict[str, Any]:
    result = await service.switch(body.target)
    return {"switch": result.to_dict(), "router": service.router.status().to_dict()}


# =============================================================================
# Application factory
# =============================================================================


async def _orchestration_error_handler(
    request: Request, exc: OrchestrationError
) -> JSONResponse:
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _ERROR_STATUS:
        if isinstance(exc, error_type):
            code = mapped
            break
    logger.log(
        exc.severity.log_level,
        "%s %s -> %d %s: %s",
        request.method,
        request.url.path,
        code,
        exc.error_code,
        exc.message,
    )
    return JSONResponse(status_code=code, content=exc.to_dict())


def create_app(service: MigrationService, manage_lifecycle: bool = True) -> FastAPI:
    """
    Create the FastAPI application for a service.

    Args:
        service: The wired MigrationService
        manage_lifecycle: Start and stop the service with the application

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.stop()

    app = FastAPI(title="schemaswitch", lifespan=lifespan)
    app.state.service = service
    app.add_exception_handler(OrchestrationError, _orchestration_error_handler)
    app.include_router(router)
    return app


__all__ = ["MigrationBody", "SwitchBody", "create_app", "get_service", "router"]
