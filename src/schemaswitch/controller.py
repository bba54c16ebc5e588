"""
MigrationController - Sequences a migration run through its state machine.

The controller accepts one MigrationRequest at a time, validates it, and
drives it through the path chosen by the validator:

    SAFE:        VALIDATING -> APPLYING_DIRECT -> COMPLETED
    RISKY:       VALIDATING -> BACKING_UP -> APPLYING_STANDBY -> HEALTH_CHECKING
                 -> SWITCHING -> POST_SWITCH_VERIFY -> COMPLETED
    MAINTENANCE: VALIDATING -> BACKING_UP -> DRAINING -> APPLYING_DIRECT
                 -> RESUMING -> COMPLETED

Failures after a rollback point exists go through ROLLING_BACK. A run
never reaches BACKING_UP without a rollback point, so no statement is
applied on the risky or maintenance paths without one.

Responsibilities:
    - Reject concurrent submissions with MigrationConflictError
    - Execute each accepted run in a background task
    - Persist every transition through the run repository
    - Retry refused switches with SWITCH_RETRY_CONFIG backoff
    - Return the router to the original environment on every rollback
    - Offer manual restore of a run's rollback point and a manual switch
    - Keep only unfinished runs in memory; finished ones are read back from
      the repository

Usage:
    >>> controller = MigrationController(validator, targets, rollback_manager, monitor, router)
    >>> submission = await controller.submit(MigrationRequest(statements=[...]))
    >>> run = await controller.wait_for_run(submission.run_id, timeout=120)
    >>> run.state
    <RunState.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from uuid import UUID

from schemaswitch.backup import RollbackManager
from schemaswitch.config import OrchestratorConfig
from schemaswitch.exceptions import (
    SWITCH_RETRY_CONFIG,
    ApplyError,
    BackupError,
    HealthCheckTimeoutError,
    InvalidStateTransitionError,
    MigrationConflictError,
    RestoreError,
    RetryConfig,
    RollbackDisabledError,
    RollbackPointNotFoundError,
    RunNotFoundError,
    SwitchError,
    ValidationError,
)
from schemaswitch.health import HealthMonitor
from schemaswitch.models import (
    EnvironmentName,
    MigrationRequest,
    MigrationRun,
    MigrationStrategy,
    RollbackPoint,
    RunState,
    StateTransition,
    SubmissionResult,
    SwitchResult,
    ValidationResult,
)
from schemaswitch.observability import Tracer, create_tracer
from schemaswitch.observability.attributes import (
    ATTR_ENVIRONMENT,
    ATTR_REQUEST_ID,
    ATTR_RISK_LEVEL,
    ATTR_ROLLBACK_POINT_ID,
    ATTR_RUN_ID,
    ATTR_STATEMENT_COUNT,
    ATTR_STRATEGY,
)
from schemaswitch.repositories import InMemoryMigrationRunRepository, MigrationRunRepository
from schemaswitch.router import TrafficRouter
from schemaswitch.targets.base import DatabaseTarget
from schemaswitch.validator import SchemaValidator

logger = logging.getLogger(__name__)


class MigrationController:
    """
    Owns MigrationRun records and orchestrates every other component.

    Args:
        validator: Statement classifier
        targets: Database target per environment
        rollback_manager: Rollback point creation and restore
        monitor: Health monitor used at checkpoints
        router: Traffic router (mutated only by this controller)
        repository: Run history storage (defaults to in-memory)
        config: Timeouts, retry budget and rollback settings
        switch_retry: Backoff for refused switches (attempt budget comes from config)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        validator: SchemaValidator,
        targets: Mapping[EnvironmentName, DatabaseTarget],
        rollback_manager: RollbackManager,
        monitor: HealthMonitor,
        router: TrafficRouter,
        repository: MigrationRunRepository | None = None,
        config: OrchestratorConfig | None = None,
        switch_retry: RetryConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._validator = validator
        self._targets = dict(targets)
        self._rollback_manager = rollback_manager
        self._monitor = monitor
        self._router = router
        self._repository: MigrationRunRepository = repository or InMemoryMigrationRunRepository()
        self._config = config or OrchestratorConfig()
        self._switch_retry = (switch_retry or SWITCH_RETRY_CONFIG).with_max_attempts(
            self._config.switch_max_attempts
        )

        self._runs: dict[UUID, MigrationRun] = {}
        self._finished: dict[UUID, asyncio.Event] = {}
        self._active_run_id: UUID | None = None
        self._active_task: asyncio.Task[None] | None = None
        self._manual_restore_run_id: UUID | None = None
        self._manual_switch_target: EnvironmentName | None = None
        self._slot_lock = asyncio.Lock()

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def active_run(self) -> MigrationRun | None:
        """The run currently in a non-terminal state, if any."""
        if self._active_run_id is None:
            return None
        return self._runs.get(self._active_run_id)

    @property
    def restore_in_progress(self) -> bool:
        return self._manual_restore_run_id is not None or self._rollback_manager.restoring

    # =========================================================================
    # Submission and queries
    # =========================================================================

    def preview(self, request: MigrationRequest) -> ValidationResult:
        """Validate a request without creating a run."""
        return self._validator.validate(request.statements, hint=request.risk_hint)

    async def submit(self, request: MigrationRequest) -> SubmissionResult:
        """
        Accept a request, validate it and start its run in the background.

        Args:
            request: The migration request

        Returns:
            SubmissionResult with the run id, the validation result and the
            run state at the time of return (FAILED when validation failed)

        Raises:
            MigrationConflictError: If another run, a restore or a manual switch is in progress
        """
        with self._tracer.span(
            "schemaswitch.controller.submit",
            {
                ATTR_REQUEST_ID: str(request.id),
                ATTR_STATEMENT_COUNT: len(request.statements),
            },
        ):
            async with self._slot_lock:
                self._check_slot()
                run = MigrationRun(request=request)
                self._runs[run.id] = run
                self._finished[run.id] = asyncio.Event()
                self._active_run_id = run.id

            logger.info(
                "Accepted migration run %s (%d statements)",
                run.id,
                len(request.statements),
                extra={"run_id": str(run.id), "submitted_by": request.submitted_by},
            )
            await self._persist(run)
            try:
                await self._transition(run, RunState.VALIDATING)
                validation = self.preview(request)
            except Exception as e:
                if not run.is_terminal:
                    await self._transition(run, RunState.FAILED, f"Validation error: {e}")
                self._release(run)
                raise

            run.validation = validation
            run.risk_level = validation.risk_level
            run.strategy = validation.strategy

            if not validation.is_valid:
                await self._transition(
                    run,
                    RunState.FAILED,
                    ValidationError(validation.errors, run_id=run.id).message,
                )
                self._release(run)
                return SubmissionResult(run_id=run.id, validation=validation, state=run.state)

            run.source_environment = self._router.status().active_environment
            self._active_task = asyncio.create_task(
                self._execute(run),
                name=f"migration-run-{run.id}",
            )
            return SubmissionResult(run_id=run.id, validation=validation, state=run.state)

    async def get_run(self, run_id: UUID) -> MigrationRun:
        """
        Get a run by id.

        Raises:
            RunNotFoundError: If the run is unknown
        """
        run = self._runs.get(run_id)
        if run is not None:
            return run
        stored = await self._repository.get(run_id)
        if stored is None:
            raise RunNotFoundError(run_id)
        return stored

    async def list_runs(self, limit: int = 50) -> list[MigrationRun]:
        """List runs, most recently created first."""
        return await self._repository.list_recent(limit)

    async def wait_for_run(self, run_id: UUID, timeout: float | None = None) -> MigrationRun:
        """
        Wait for a run to reach a terminal state.

        Raises:
            RunNotFoundError: If the run is unknown
            TimeoutError: If the run is still in progress after ``timeout``
        """
        run = await self.get_run(run_id)
        if run.is_terminal:
            return run
        event = self._finished.get(run_id)
        if event is None:
            return run
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except TimeoutError:
            raise TimeoutError(
                f"Run {run_id} still in {run.state.value} after {timeout}s"
            ) from None
        return run

    async def shutdown(self, timeout: float | None = None) -> None:
        """
        Stop accepting work and wait for the active run and restores.

        The active run is cancelled only if it is still running after
        ``timeout`` seconds; a statement batch in flight still completes.
        """
        task = self._active_task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                logger.warning("Cancelling migration run %s at shutdown", self._active_run_id)
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self._rollback_manager.wait_for_restores()

    # =========================================================================
    # Manual operations
    # =========================================================================

    async def restore(self, run_id: UUID) -> RollbackPoint:
        """
        Restore a finished run's rollback point (operator-triggered).

        When the run switched traffic to the environment being restored,
        traffic is first returned to the run's source environment.
        Restoring the live environment otherwise happens with new
        connections paused.

        Returns:
            The restored rollback point

        Raises:
            RollbackDisabledError: If manual rollback is disabled
            RunNotFoundError: If the run is unknown
            MigrationConflictError: If a run or another restore is in progress
            RollbackPointNotFoundError: If the run has no rollback point
            SwitchError: If traffic could not be returned to the source environment
            RestoreError: If the restore failed
        """
        if not self._config.rollback_enabled:
            raise RollbackDisabledError()

        run = await self.get_run(run_id)
        async with self._slot_lock:
            self._check_slot()
            if run.rollback_point_id is None:
                raise RollbackPointNotFoundError(f"none recorded for run {run_id}")
            point = await self._rollback_manager.get_point(run.rollback_point_id)
            self._manual_restore_run_id = run_id

        with self._tracer.span(
            "schemaswitch.controller.manual_restore",
            {
                ATTR_RUN_ID: str(run_id),
                ATTR_ROLLBACK_POINT_ID: str(point.id),
                ATTR_ENVIRONMENT: point.environment.value,
            },
        ):
            logger.warning(
                "Manual restore of run %s from rollback point %s on %s",
                run_id,
                point.id,
                point.environment.value,
            )
            try:
                active = self._router.status().active_environment
                if (
                    active is point.environment
                    and run.source_environment is not None
                    and run.source_environment is not point.environment
                ):
                    result = await self._router.switch_to(
                        run.source_environment,
                        max_wait=self._config.drain_timeout_seconds,
                        require_healthy=False,
                    )
                    if not result.success:
                        raise SwitchError(
                            f"Could not return traffic to {run.source_environment.value}: "
                            f"{result.error_message}",
                            target=run.source_environment,
                            reason=result.error_message,
                        )

                if self._router.status().active_environment is point.environment:
                    await self._router.pause_connections()
                    try:
                        await self._router.drain(
                            point.environment, self._config.drain_timeout_seconds
                        )
                        await self._rollback_manager.restore(point)
                    finally:
                        await self._router.resume_connections()
                else:
                    await self._rollback_manager.restore(point)
            finally:
                self._manual_restore_run_id = None

            logger.info("Manual restore of run %s completed", run_id)
            return point

    async def switch(self, target: EnvironmentName) -> SwitchResult:
        """
        Switch traffic to ``target`` outside of a run (operator-triggered).

        Holds the run slot for the duration, so it conflicts with runs and
        restores the same way they conflict with each other. The switch is
        health-gated and made once; refusals are not retried.

        Raises:
            MigrationConflictError: If a run, a restore or another switch is in progress
            SwitchError: If the router refused the switch
        """
        async with self._slot_lock:
            self._check_slot()
            self._manual_switch_target = target

        try:
            with self._tracer.span(
                "schemaswitch.controller.manual_switch",
                {ATTR_ENVIRONMENT: target.value},
            ):
                logger.warning("Manual switch to %s requested", target.value)
                result = await self._router.switch_to(
                    target, max_wait=self._config.drain_timeout_seconds
                )
                if not result.success:
                    raise SwitchError(
                        f"Switch to {target.value} refused: {result.error_message}",
                        target=target,
                        reason=result.error_message,
                    )
        finally:
            self._manual_switch_target = None

        logger.info(
            "Manual switch %s -> %s completed in %.1fms",
            result.previous.value,
            result.current.value,
            result.duration_ms,
        )
        return result

    # =========================================================================
    # Run execution
    # =========================================================================

    async def _execute(self, run: MigrationRun) -> None:
        with self._tracer.span(
            "schemaswitch.controller.execute",
            {
                ATTR_RUN_ID: str(run.id),
                ATTR_STRATEGY: run.strategy.value if run.strategy else "",
                ATTR_RISK_LEVEL: run.risk_level.value if run.risk_level else "",
            },
        ):
            try:
                if run.strategy is MigrationStrategy.SAFE:
                    await self._run_safe(run)
                elif run.strategy is MigrationStrategy.RISKY:
                    await self._run_risky(run)
                else:
                    await self._run_maintenance(run)
            except asyncio.CancelledError:
                logger.warning("Migration run %s cancelled in %s", run.id, run.state.value)
                if not run.is_terminal:
                    await self._transition(
                        run, RunState.FAILED, f"Run cancelled during {run.state.value}"
                    )
                raise
            except Exception as e:
                logger.error(
                    "Migration run %s failed unexpectedly in %s: %s",
                    run.id,
                    run.state.value,
                    e,
                    exc_info=True,
                )
                if not run.is_terminal:
                    await self._transition(
                        run, RunState.FAILED, f"Unexpected error during {run.state.value}: {e}"
                    )
            finally:
                self._release(run)

    async def _run_safe(self, run: MigrationRun) -> None:
        environment = self._source(run)
        run.target_environment = environment

        await self._transition(run, RunState.APPLYING_DIRECT)
        try:
            await self._apply(run, environment)
        except ApplyError as e:
            await self._transition(run, RunState.FAILED, e.message)
            return

        await self._transition(run, RunState.COMPLETED)

    async def _run_risky(self, run: MigrationRun) -> None:
        source = self._source(run)
        standby = source.other
        run.target_environment = standby

        point = await self._acquire_rollback_point(run, standby)
        if point is None:
            return

        await self._transition(run, RunState.APPLYING_STANDBY)
        try:
            await self._apply(run, standby)
        except ApplyError as e:
            await self._rollback(run, point, source, e.message)
            return

        await self._transition(run, RunState.HEALTH_CHECKING)
        try:
            await self._monitor.wait_until_healthy(
                standby, timeout=self._config.health_check_timeout_seconds
            )
        except HealthCheckTimeoutError as e:
            await self._rollback(run, point, source, f"Standby health check failed: {e.message}")
            return

        await self._transition(run, RunState.SWITCHING)
        try:
            await self._switch_with_retry(run, standby)
        except SwitchError as e:
            await self._transition(
                run,
                RunState.FAILED,
                f"{e.message}; {source.value} remains active and {standby.value} keeps the change "
                f"(rollback point {point.id})",
            )
            return

        await self._transition(run, RunState.POST_SWITCH_VERIFY)
        try:
            await self._monitor.wait_until_healthy(
                standby,
                timeout=self._config.post_switch_verify_timeout_seconds,
                expect_active=True,
            )
        except HealthCheckTimeoutError as e:
            reason = f"Post-switch verification failed: {e.message}"
            await self._rollback(run, point, source, reason)
            return

        await self._transition(run, RunState.COMPLETED)
        await self._prune_rollback_points()

    async def _run_maintenance(self, run: MigrationRun) -> None:
        active = self._source(run)
        run.target_environment = active

        point = await self._acquire_rollback_point(run, active)
        if point is None:
            return

        await self._transition(run, RunState.DRAINING)
        await self._router.pause_connections()
        try:
            drained = await self._router.drain(active, self._config.drain_timeout_seconds)
            if not drained:
                await self._transition(
                    run,
                    RunState.FAILED,
                    f"Drain of {active.value} timed out after "
                    f"{self._config.drain_timeout_seconds:.1f}s; no statements were applied",
                )
                return

            await self._transition(run, RunState.APPLYING_DIRECT)
            try:
                await self._apply(run, active)
            except ApplyError as e:
                await self._rollback(run, point, active, e.message)
                return

            await self._transition(run, RunState.RESUMING)
            await self._router.resume_connections()
        finally:
            await self._router.resume_connections()

        await self._transition(run, RunState.COMPLETED)
        await self._prune_rollback_points()

    # =========================================================================
    # Checkpoints
    # =========================================================================

    async def _acquire_rollback_point(
        self,
        run: MigrationRun,
        environment: EnvironmentName,
    ) -> RollbackPoint | None:
        """Create the run's rollback point; on failure the run ends FAILED."""
        include_data = run.validation.requires_data_snapshot if run.validation else True
        try:
            point = await self._rollback_manager.create_rollback_point(
                environment, run.id, include_data=include_data
            )
        except BackupError as e:
            await self._transition(run, RunState.FAILED, e.message)
            return None

        run.rollback_point_id = point.id
        await self._transition(
            run, RunState.BACKING_UP, f"Rollback point {point.id} on {environment.value}"
        )
        return point

    async def _apply(self, run: MigrationRun, environment: EnvironmentName) -> None:
        """
        Apply the run's statements to one environment.

        The batch runs in its own task so that cancelling the run does not
        interrupt statements already sent to the database.

        Raises:
            ApplyError: With the environment set
        """
        target = self._targets[environment]
        with self._tracer.span(
            "schemaswitch.controller.apply",
            {
                ATTR_RUN_ID: str(run.id),
                ATTR_ENVIRONMENT: environment.value,
                ATTR_STATEMENT_COUNT: len(run.request.statements),
            },
        ):
            task = asyncio.create_task(
                target.apply(list(run.request.statements)),
                name=f"apply-{run.id}-{environment.value}",
            )
            task.add_done_callback(_log_detached_apply)
            try:
                await asyncio.shield(task)
            except ApplyError as e:
                raise ApplyError(
                    f"Apply failed on {environment.value}: {e.message}",
                    environment=environment,
                    statement=e.statement,
                    statement_index=e.statement_index,
                ) from e
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise ApplyError(
                    f"Apply failed on {environment.value}: {e}",
                    environment=environment,
                ) from e

            logger.info(
                "Applied %d statements to %s for run %s",
                len(run.request.statements),
                environment.value,
                run.id,
            )

    async def _switch_with_retry(
        self,
        run: MigrationRun,
        target: EnvironmentName,
    ) -> SwitchResult:
        """
        Switch traffic to ``target``, retrying refused switches.

        Raises:
            SwitchError: When every attempt was refused
        """
        retry = self._switch_retry
        last_error: str | None = None

        for attempt in range(retry.max_attempts):
            result = await self._router.switch_to(
                target, max_wait=self._config.drain_timeout_seconds
            )
            if result.success:
                if result.drain_timed_out:
                    logger.warning(
                        "Run %s switched to %s before in-flight work drained",
                        run.id,
                        target.value,
                    )
                return result

            last_error = result.error_message
            if attempt + 1 < retry.max_attempts:
                delay = retry.get_delay_ms(attempt) / 1000.0
                logger.warning(
                    "Switch attempt %d/%d for run %s failed: %s; retrying in %.2fs",
                    attempt + 1,
                    retry.max_attempts,
                    run.id,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        raise SwitchError(
            f"Switch to {target.value} failed after {retry.max_attempts} attempts: {last_error}",
            target=target,
            reason=last_error,
        )

    async def _rollback(
        self,
        run: MigrationRun,
        point: RollbackPoint,
        original_active: EnvironmentName,
        reason: str,
    ) -> None:
        """
        Return traffic to ``original_active``, restore ``point`` and resume connections.

        Ends the run ROLLED_BACK, or FAILED if any step of the rollback failed.
        """
        logger.warning("Rolling back run %s: %s", run.id, reason)
        await self._transition(run, RunState.ROLLING_BACK, reason)

        problems: list[str] = []
        with self._tracer.span(
            "schemaswitch.controller.rollback",
            {
                ATTR_RUN_ID: str(run.id),
                ATTR_ROLLBACK_POINT_ID: str(point.id),
                ATTR_ENVIRONMENT: point.environment.value,
            },
        ):
            try:
                if self._router.status().active_environment is not original_active:
                    result = await self._router.switch_to(
                        original_active,
                        max_wait=self._config.drain_timeout_seconds,
                        require_healthy=False,
                    )
                    if not result.success:
                        problems.append(
                            f"router could not return to {original_active.value}: "
                            f"{result.error_message}"
                        )

                try:
                    await self._rollback_manager.restore(point)
                except (RestoreError, RollbackPointNotFoundError) as e:
                    problems.append(f"restore failed: {e.message}")
            finally:
                await self._router.resume_connections()

        if problems:
            await self._transition(run, RunState.FAILED, f"{reason}; " + "; ".join(problems))
        else:
            await self._transition(run, RunState.ROLLED_BACK, reason)

    async def _prune_rollback_points(self) -> None:
        try:
            await self._rollback_manager.prune(keep=self._config.retain_rollback_points)
        except OSError as e:
            logger.warning("Pruning rollback points failed: %s", e)

    # =========================================================================
    # State bookkeeping
    # =========================================================================

    async def _transition(
        self,
        run: MigrationRun,
        state: RunState,
        reason: str | None = None,
    ) -> None:
        """
        Move a run to ``state`` and persist it.

        Raises:
            InvalidStateTransitionError: If the state machine forbids the move
        """
        if not run.state.can_transition_to(state):
            raise InvalidStateTransitionError(run.id, run.state, state)

        previous = run.state
        run.state = state
        run.transitions.append(StateTransition(state=state, at=datetime.now(UTC), reason=reason))
        if state in (RunState.FAILED, RunState.ROLLED_BACK):
            run.failure_reason = reason

        log = logger.error if state is RunState.FAILED else logger.info
        log(
            "Run %s: %s -> %s%s",
            run.id,
            previous.value,
            state.value,
            f" ({reason})" if reason else "",
            extra={
                "run_id": str(run.id),
                "from_state": previous.value,
                "to_state": state.value,
                "reason": reason,
            },
        )

        persisted = await self._persist(run)
        if run.is_terminal:
            self._finished.pop(run.id).set()
            # Finished runs are served from the repository from here on.
            if persisted:
                self._runs.pop(run.id, None)

    async def _persist(self, run: MigrationRun) -> bool:
        # A history write failure must not abandon a run halfway through.
        try:
            await self._repository.save(run)
        except Exception as e:
            logger.error(
                "Failed to persist run %s in state %s: %s",
                run.id,
                run.state.value,
                e,
                exc_info=True,
            )
            return False
        return True

    def _check_slot(self) -> None:
        if self._active_run_id is not None:
            raise MigrationConflictError(self._active_run_id)
        if self.restore_in_progress:
            raise MigrationConflictError(
                self._manual_restore_run_id,
                reason="A rollback point restore is in progress",
            )
        if self._manual_switch_target is not None:
            raise MigrationConflictError(
                None,
                reason=f"A manual switch to {self._manual_switch_target.value} is in progress",
            )

    def _release(self, run: MigrationRun) -> None:
        if self._active_run_id == run.id:
            self._active_run_id = None
            self._active_task = None

    @staticmethod
    def _source(run: MigrationRun) -> EnvironmentName:
        if run.source_environment is None:
            raise RuntimeError(f"Run {run.id} has no source environment")
        return run.source_environment


def _log_detached_apply(task: asyncio.Task[None]) -> None:
    # Retrieves the outcome of a batch whose run was cancelled mid-apply.
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Statement batch %s ended with %s", task.get_name(), error)


__all__ = ["MigrationController"]
