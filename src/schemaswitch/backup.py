"""
RollbackManager - Rollback point creation, restore and retention.

A rollback point is taken before any risky or maintenance migration
touches a database. Creation is fail-closed: any error becomes a
``BackupError`` and the migration must not proceed.

Responsibilities:
    - Capture a snapshot of one environment and persist it in a SnapshotStore
    - Restore a point idempotently; restores run to completion even when
      the caller is cancelled
    - Serialize restores per environment
    - Prune old points down to a retention count
    - Reload the points an earlier process recorded in the store

Usage:
    >>> manager = RollbackManager(targets, store=InMemorySnapshotStore(), retain=10)
    >>> point = await manager.create_rollback_point(EnvironmentName.GREEN, run.id)
    >>> await manager.restore(point)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import pickle
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable
from uuid import UUID, uuid4

from schemaswitch.exceptions import BackupError, RestoreError, RollbackPointNotFoundError
from schemaswitch.models import EnvironmentName, RollbackPoint
from schemaswitch.observability import Tracer, create_tracer
from schemaswitch.observability.attributes import (
    ATTR_ENVIRONMENT,
    ATTR_INCLUDES_DATA,
    ATTR_ROLLBACK_POINT_ID,
    ATTR_RUN_ID,
)
from schemaswitch.targets.base import DatabaseTarget, SchemaSnapshot

logger = logging.getLogger(__name__)


# =============================================================================
# Snapshot storage
# =============================================================================


@runtime_checkable
class SnapshotStore(Protocol):
    """Persistence for captured snapshots, addressed by a location string."""

    async def save(self, point_id: UUID, migration_id: UUID, snapshot: SchemaSnapshot) -> str:
        """Persist a snapshot and return its location."""
        ...

    async def load(self, location: str) -> SchemaSnapshot:
        """
        Load a snapshot.

        Raises:
            RollbackPointNotFoundError: If nothing is stored at ``location``.
        """
        ...

    async def delete(self, location: str) -> None:
        """Delete a snapshot and its point record; missing locations are ignored."""
        ...

    async def record_point(self, point: RollbackPoint) -> None:
        """Persist the metadata of a point whose snapshot is at ``point.location``."""
        ...

    async def load_points(self) -> list[RollbackPoint]:
        """Return every recorded point still in the store, oldest first."""
        ...


class InMemorySnapshotStore:
    """Keeps snapshots in process memory. Lost when the process exits."""

    def __init__(self) -> None:
        self._snapshots: dict[str, SchemaSnapshot] = {}
        self._points: dict[str, RollbackPoint] = {}

    async def save(self, point_id: UUID, migration_id: UUID, snapshot: SchemaSnapshot) -> str:
        location = f"memory://{migration_id}/{point_id}"
        self._snapshots[location] = snapshot
        return location

    async def load(self, location: str) -> SchemaSnapshot:
        try:
            return self._snapshots[location]
        except KeyError:
            raise RollbackPointNotFoundError(location) from None

    async def delete(self, location: str) -> None:
        self._snapshots.pop(location, None)
        self._points.pop(location, None)

    async def record_point(self, point: RollbackPoint) -> None:
        self._points[point.location] = point

    async def load_points(self) -> list[RollbackPoint]:
        return sorted(self._points.values(), key=lambda point: point.created_at)

    def __len__(self) -> int:
        return len(self._snapshots)


class FileSnapshotStore:
    """
    Writes each snapshot to ``rollback-<migration>-<timestamp>.snapshot``.

    The point's metadata goes next to it in ``<same name>.point.json`` so a
    restarted process can find its rollback points again. Files are written
    to a temporary name and renamed into place so a crash never leaves a
    truncated snapshot or record behind.

    Args:
        backup_dir: Directory for snapshot files (created if missing)
    """

    POINT_SUFFIX = ".point.json"

    def __init__(self, backup_dir: str | Path) -> None:
        self._dir = Path(backup_dir)

    @property
    def backup_dir(self) -> Path:
        return self._dir

    async def save(self, point_id: UUID, migration_id: UUID, snapshot: SchemaSnapshot) -> str:
        timestamp = snapshot.captured_at.strftime("%Y%m%dT%H%M%S%fZ")
        path = self._dir / f"rollback-{migration_id}-{timestamp}.snapshot"
        await asyncio.to_thread(self._write, path, snapshot)
        return str(path)

    async def load(self, location: str) -> SchemaSnapshot:
        path = Path(location)
        try:
            return await asyncio.to_thread(self._read, path)
        except FileNotFoundError:
            raise RollbackPointNotFoundError(location) from None

    async def delete(self, location: str) -> None:
        path = Path(location)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        await asyncio.to_thread(self._point_path(path).unlink, missing_ok=True)

    async def record_point(self, point: RollbackPoint) -> None:
        body = json.dumps(point.to_dict(), indent=2).encode("utf-8")
        await asyncio.to_thread(self._write_bytes, self._point_path(Path(point.location)), body)

    async def load_points(self) -> list[RollbackPoint]:
        return await asyncio.to_thread(self._read_points)

    def _point_path(self, snapshot_path: Path) -> Path:
        return snapshot_path.with_suffix(self.POINT_SUFFIX)

    def _write(self, path: Path, snapshot: SchemaSnapshot) -> None:
        self._write_bytes(path, pickle.dumps(snapshot, protocol=pickle.HIGHEST_PROTOCOL))

    def _write_bytes(self, path: Path, body: bytes) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with tmp.open("wb") as fh:
            fh.write(body)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)

    def _read_points(self) -> list[RollbackPoint]:
        if not self._dir.is_dir():
            return []
        points = []
        for path in self._dir.glob(f"rollback-*{self.POINT_SUFFIX}"):
            try:
                point = RollbackPoint.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Ignoring unreadable rollback point record %s: %s", path, e)
                continue
            if not Path(point.location).exists():
                logger.warning(
                    "Ignoring rollback point %s, snapshot %s is missing",
                    point.id,
                    point.location,
                )
                continue
            points.append(point)
        return sorted(points, key=lambda point: point.created_at)

    @staticmethod
    def _read(path: Path) -> SchemaSnapshot:
        with path.open("rb") as fh:
            snapshot = pickle.load(fh)  # nosec B301 - files are written by this store only
        if not isinstance(snapshot, SchemaSnapshot):
            raise TypeError(f"{path} does not contain a snapshot")
        return snapshot


# =============================================================================
# Rollback manager
# =============================================================================


class RollbackManager:
    """
    Owns RollbackPoint records and the snapshots behind them.

    Args:
        targets: Database target per environment
        store: Snapshot storage (defaults to InMemorySnapshotStore)
        retain: Number of points kept by ``prune()`` when no count is given
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        targets: Mapping[EnvironmentName, DatabaseTarget],
        store: SnapshotStore | None = None,
        retain: int = 10,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if retain < 1:
            raise ValueError(f"retain must be >= 1, got {retain}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._targets = dict(targets)
        self._store: SnapshotStore = store or InMemorySnapshotStore()
        self._retain = retain
        self._points: dict[UUID, RollbackPoint] = {}
        self._restore_tasks: dict[UUID, asyncio.Task[None]] = {}
        self._env_locks = {env: asyncio.Lock() for env in EnvironmentName}

    @property
    def restoring(self) -> bool:
        """True while any restore task is still running."""
        return any(not task.done() for task in self._restore_tasks.values())

    async def create_rollback_point(
        self,
        environment: EnvironmentName,
        migration_id: UUID,
        include_data: bool = False,
    ) -> RollbackPoint:
        """
        Capture and store a rollback point.

        Cancellation propagates to the caller; nothing is recorded for a
        cancelled capture.

        Args:
            environment: Environment to snapshot
            migration_id: Run requesting the point
            include_data: Capture row data as well as the schema

        Returns:
            The new RollbackPoint

        Raises:
            BackupError: On any failure to capture or store the snapshot
        """
        target = self._targets.get(environment)
        if target is None:
            raise BackupError(
                f"No database target configured for {environment.value}",
                environment=environment,
                migration_id=migration_id,
            )

        point_id = uuid4()
        with self._tracer.span(
            "schemaswitch.backup.create_rollback_point",
            {
                ATTR_ROLLBACK_POINT_ID: str(point_id),
                ATTR_RUN_ID: str(migration_id),
                ATTR_ENVIRONMENT: environment.value,
                ATTR_INCLUDES_DATA: include_data,
            },
        ):
            try:
                snapshot = await target.capture_snapshot(include_data=include_data)
                location = await self._store.save(point_id, migration_id, snapshot)
                point = RollbackPoint(
                    id=point_id,
                    migration_id=migration_id,
                    created_at=datetime.now(UTC),
                    location=location,
                    environment=environment,
                    includes_data=include_data,
                )
                await self._store.record_point(point)
            except Exception as e:
                logger.error(
                    "Failed to create rollback point on %s for run %s: %s",
                    environment.value,
                    migration_id,
                    e,
                    exc_info=True,
                )
                raise BackupError(
                    f"Failed to create rollback point on {environment.value}: {e}",
                    environment=environment,
                    migration_id=migration_id,
                ) from e

            self._points[point.id] = point

            logger.info(
                "Created rollback point %s on %s for run %s",
                point.id,
                environment.value,
                migration_id,
                extra={"location": location, "includes_data": include_data},
            )
            return point

    async def restore(self, point: RollbackPoint) -> None:
        """
        Restore a rollback point.

        Idempotent. The restore runs in its own task: cancelling the caller
        does not abort it, and concurrent calls for the same point wait on
        the same task.

        Raises:
            RollbackPointNotFoundError: If the snapshot is gone
            RestoreError: If the target rejects the restore
        """
        task = self._restore_tasks.get(point.id)
        if task is None or task.done():
            task = asyncio.create_task(self._restore(point), name=f"restore-{point.id}")
            self._restore_tasks[point.id] = task
            task.add_done_callback(self._restore_finished)
        await asyncio.shield(task)

    async def wait_for_restores(self) -> None:
        """Block until every running restore task has finished."""
        pending = [task for task in self._restore_tasks.values() if not task.done()]
        if pending:
            await asyncio.wait(pending)

    async def load(self) -> list[RollbackPoint]:
        """
        Pick up the points recorded in the snapshot store.

        Called at startup so points taken by an earlier process can still be
        restored and pruned. Points already known are left as they are.

        Returns:
            The points that were not known before.
        """
        loaded = [
            point for point in await self._store.load_points() if point.id not in self._points
        ]
        if loaded:
            merged = sorted(
                [*self._points.values(), *loaded], key=lambda point: point.created_at
            )
            self._points = {point.id: point for point in merged}
            logger.info(
                "Loaded %d rollback points from the snapshot store",
                len(loaded),
                extra={"total_points": len(self._points)},
            )
        return loaded

    async def get_point(self, point_id: UUID) -> RollbackPoint:
        """
        Look up a rollback point, consulting the snapshot store on a miss.

        Raises:
            RollbackPointNotFoundError: If the point is unknown or was pruned
        """
        if point_id not in self._points:
            await self.load()
        try:
            return self._points[point_id]
        except KeyError:
            raise RollbackPointNotFoundError(point_id) from None

    def list_points(self, environment: EnvironmentName | None = None) -> list[RollbackPoint]:
        """Return rollback points oldest first, optionally for one environment."""
        return [
            point
            for point in self._points.values()
            if environment is None or point.environment is environment
        ]

    async def prune(
        self,
        keep: int | None = None,
        protect: Iterable[UUID] = (),
    ) -> list[RollbackPoint]:
        """
        Delete the oldest rollback points beyond ``keep``.

        Points listed in ``protect`` and points being restored are kept
        regardless of age.

        Returns:
            The points that were removed.
        """
        keep = self._retain if keep is None else keep
        await self.load()
        protected = set(protect) | {
            point_id for point_id, task in self._restore_tasks.items() if not task.done()
        }

        excess = len(self._points) - keep
        removed: list[RollbackPoint] = []
        for point in list(self._points.values()):
            if excess <= 0:
                break
            if point.id in protected:
                continue
            await self._store.delete(point.location)
            del self._points[point.id]
            removed.append(point)
            excess -= 1

        if removed:
            logger.info(
                "Pruned %d rollback points, %d retained",
                len(removed),
                len(self._points),
            )
        return removed

    async def _restore(self, point: RollbackPoint) -> None:
        target = self._targets.get(point.environment)
        if target is None:
            raise RestoreError(
                f"No database target configured for {point.environment.value}",
                environment=point.environment,
                point_id=point.id,
            )

        async with self._env_locks[point.environment]:
            with self._tracer.span(
                "schemaswitch.backup.restore",
                {
                    ATTR_ROLLBACK_POINT_ID: str(point.id),
                    ATTR_RUN_ID: str(point.migration_id),
                    ATTR_ENVIRONMENT: point.environment.value,
                },
            ):
                logger.info(
                    "Restoring rollback point %s onto %s",
                    point.id,
                    point.environment.value,
                )
                try:
                    snapshot = await self._store.load(point.location)
                except RollbackPointNotFoundError:
                    raise
                except Exception as e:
                    logger.error(
                        "Snapshot for rollback point %s at %s is unreadable: %s",
                        point.id,
                        point.location,
                        e,
                        exc_info=True,
                    )
                    raise RestoreError(
                        f"Snapshot for rollback point {point.id} is unreadable: {e}",
                        environment=point.environment,
                        point_id=point.id,
                    ) from e

                try:
                    await target.restore_snapshot(snapshot)
                except Exception as e:
                    logger.error(
                        "Restore of rollback point %s onto %s failed: %s",
                        point.id,
                        point.environment.value,
                        e,
                        exc_info=True,
                    )
                    raise RestoreError(
                        f"Restore of rollback point {point.id} failed: {e}",
                        environment=point.environment,
                        point_id=point.id,
                    ) from e

                logger.info("Restored rollback point %s", point.id)

    def _restore_finished(self, task: asyncio.Task[None]) -> None:
        # Failures were logged in _restore; retrieve them so an abandoned
        # (shielded) task does not warn at garbage collection.
        if not task.cancelled():
            task.exception()


__all__ = [
    "SnapshotStore",
    "InMemorySnapshotStore",
    "FileSnapshotStore",
    "RollbackManager",
]
