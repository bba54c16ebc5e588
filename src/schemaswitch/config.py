"""
Configuration for the schema migration orchestrator.

``OrchestratorConfig`` is immutable (frozen) so that a running controller,
router and monitor all see the same settings for their whole lifetime.
It can be built directly, from a dictionary, or from environment
variables.

Example:
    >>> config = OrchestratorConfig.from_env()
    >>> config.drain_timeout_seconds
    30.0
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from schemaswitch.models import EnvironmentName, OperationKind

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class OrchestratorConfig:
    """
    Settings for the orchestrator.

    Attributes:
        blue_database_url: SQLAlchemy URL of the blue environment.
        green_database_url: SQLAlchemy URL of the green environment.
        initial_active: Environment treated as active at startup (default blue).
        rollback_enabled: Whether operators may trigger manual restores (default True).
        retain_rollback_points: Rollback points kept after pruning (default 10).
        backup_dir: Directory for snapshot files; None keeps snapshots in memory.
        drain_timeout_seconds: Drain budget for switches and maintenance (default 30).
        health_check_interval_seconds: Period of the scheduled probe loop (default 5).
        probe_timeout_seconds: Deadline for one probe (default 2).
        unhealthy_threshold: Consecutive scheduled failures before unhealthy (default 3).
        health_freshness_seconds: Maximum age of health data trusted by a switch (default 10).
        health_check_timeout_seconds: Deadline for the standby to turn healthy (default 30).
        post_switch_verify_timeout_seconds: Deadline for the post-switch probe (default 10).
        switch_max_attempts: Router switch attempts before a run fails (default 3).
        statement_timeout_seconds: Per-statement limit applied to DDL (default 300).
        strict_mode: Reject destructive operations outright (default False).
        allowed_operations: Operation kinds permitted; None allows all.
        history_database_url: SQLAlchemy URL for run history; None keeps history in memory.
        upstream_file: Proxy upstream file rewritten on each switch; None disables it.
        proxy_validate_command: Command validating the proxy configuration (e.g. nginx -t).
        proxy_reload_command: Command reloading the proxy after a switch.
    """

    blue_database_url: str | None = None
    green_database_url: str | None = None
    initial_active: EnvironmentName = EnvironmentName.BLUE
    rollback_enabled: bool = True
    retain_rollback_points: int = 10
    backup_dir: str | None = None
    drain_timeout_seconds: float = 30.0
    health_check_interval_seconds: float = 5.0
    probe_timeout_seconds: float = 2.0
    unhealthy_threshold: int = 3
    health_freshness_seconds: float = 10.0
    health_check_timeout_seconds: float = 30.0
    post_switch_verify_timeout_seconds: float = 10.0
    switch_max_attempts: int = 3
    statement_timeout_seconds: float = 300.0
    strict_mode: bool = False
    allowed_operations: frozenset[OperationKind] | None = None
    history_database_url: str | None = None
    upstream_file: str | None = None
    proxy_validate_command: tuple[str, ...] | None = None
    proxy_reload_command: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.retain_rollback_points < 1:
            raise ValueError(
                f"retain_rollback_points must be >= 1, got {self.retain_rollback_points}"
            )

        for name in (
            "drain_timeout_seconds",
            "health_check_interval_seconds",
            "probe_timeout_seconds",
            "health_freshness_seconds",
            "health_check_timeout_seconds",
            "post_switch_verify_timeout_seconds",
            "statement_timeout_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")

        if self.unhealthy_threshold < 1:
            raise ValueError(f"unhealthy_threshold must be >= 1, got {self.unhealthy_threshold}")

        if self.switch_max_attempts < 1:
            raise ValueError(f"switch_max_attempts must be >= 1, got {self.switch_max_attempts}")

        if self.probe_timeout_seconds > self.health_check_interval_seconds:
            raise ValueError(
                f"probe_timeout_seconds ({self.probe_timeout_seconds}) must not exceed "
                f"health_check_interval_seconds ({self.health_check_interval_seconds})"
            )

    def database_url(self, environment: EnvironmentName) -> str | None:
        """Return the configured URL for ``environment``."""
        if environment is EnvironmentName.BLUE:
            return self.blue_database_url
        return self.green_database_url

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary.

        Database URLs are omitted because they usually embed credentials.
        """
        return {
            "initial_active": self.initial_active.value,
            "rollback_enabled": self.rollback_enabled,
            "retain_rollback_points": self.retain_rollback_points,
            "backup_dir": self.backup_dir,
            "drain_timeout_seconds": self.drain_timeout_seconds,
            "health_check_interval_seconds": self.health_check_interval_seconds,
            "probe_timeout_seconds": self.probe_timeout_seconds,
            "unhealthy_threshold": self.unhealthy_threshold,
            "health_freshness_seconds": self.health_freshness_seconds,
            "health_check_timeout_seconds": self.health_check_timeout_seconds,
            "post_switch_verify_timeout_seconds": self.post_switch_verify_timeout_seconds,
            "switch_max_attempts": self.switch_max_attempts,
            "statement_timeout_seconds": self.statement_timeout_seconds,
            "strict_mode": self.strict_mode,
            "allowed_operations": (
                sorted(kind.value for kind in self.allowed_operations)
                if self.allowed_operations is not None
                else None
            ),
            "upstream_file": self.upstream_file,
            "proxy_validate_command": (
                list(self.proxy_validate_command) if self.proxy_validate_command else None
            ),
            "proxy_reload_command": (
                list(self.proxy_reload_command) if self.proxy_reload_command else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OrchestratorConfig:
        """
        Create from dictionary.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            OrchestratorConfig instance.
        """
        allowed = data.get("allowed_operations")
        return cls(
            blue_database_url=data.get("blue_database_url"),
            green_database_url=data.get("green_database_url"),
            initial_active=EnvironmentName(data.get("initial_active", "blue")),
            rollback_enabled=data.get("rollback_enabled", True),
            retain_rollback_points=data.get("retain_rollback_points", 10),
            backup_dir=data.get("backup_dir"),
            drain_timeout_seconds=data.get("drain_timeout_seconds", 30.0),
            health_check_interval_seconds=data.get("health_check_interval_seconds", 5.0),
            probe_timeout_seconds=data.get("probe_timeout_seconds", 2.0),
            unhealthy_threshold=data.get("unhealthy_threshold", 3),
            health_freshness_seconds=data.get("health_freshness_seconds", 10.0),
            health_check_timeout_seconds=data.get("health_check_timeout_seconds", 30.0),
            post_switch_verify_timeout_seconds=data.get(
                "post_switch_verify_timeout_seconds", 10.0
            ),
            switch_max_attempts=data.get("switch_max_attempts", 3),
            statement_timeout_seconds=data.get("statement_timeout_seconds", 300.0),
            strict_mode=data.get("strict_mode", False),
            allowed_operations=(
                frozenset(OperationKind(kind) for kind in allowed) if allowed is not None else None
            ),
            history_database_url=data.get("history_database_url"),
            upstream_file=data.get("upstream_file"),
            proxy_validate_command=_command(data.get("proxy_validate_command")),
            proxy_reload_command=_command(data.get("proxy_reload_command")),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> OrchestratorConfig:
        """
        Create from environment variables.

        Unset variables fall back to the defaults.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).

        Returns:
            OrchestratorConfig instance.

        Raises:
            ValueError: If a variable holds a value of the wrong type.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}

        for key, var in (
            ("blue_database_url", "BLUE_DATABASE_URL"),
            ("green_database_url", "GREEN_DATABASE_URL"),
            ("backup_dir", "BACKUP_DIR"),
            ("history_database_url", "HISTORY_DATABASE_URL"),
            ("upstream_file", "UPSTREAM_CONFIG_PATH"),
        ):
            if env.get(var):
                data[key] = env[var]

        for key, var in (
            ("proxy_validate_command", "PROXY_VALIDATE_COMMAND"),
            ("proxy_reload_command", "PROXY_RELOAD_COMMAND"),
        ):
            if env.get(var):
                data[key] = shlex.split(env[var])

        if env.get("ACTIVE_ENVIRONMENT"):
            data["initial_active"] = env["ACTIVE_ENVIRONMENT"].strip().lower()

        for key, var in (("rollback_enabled", "ROLLBACK_ENABLED"), ("strict_mode", "STRICT_MODE")):
            if env.get(var):
                data[key] = _parse_bool(var, env[var])

        for key, var in (
            ("retain_rollback_points", "MAX_ROLLBACKS"),
            ("unhealthy_threshold", "UNHEALTHY_THRESHOLD"),
            ("switch_max_attempts", "SWITCH_MAX_ATTEMPTS"),
        ):
            if env.get(var):
                data[key] = _parse_number(var, env[var], int)

        for key, var in (
            ("drain_timeout_seconds", "MAX_DOWNTIME_SECONDS"),
            ("health_check_interval_seconds", "HEALTH_CHECK_INTERVAL_SECONDS"),
            ("probe_timeout_seconds", "PROBE_TIMEOUT_SECONDS"),
            ("health_freshness_seconds", "HEALTH_FRESHNESS_SECONDS"),
            ("health_check_timeout_seconds", "VALIDATION_TIMEOUT_SECONDS"),
            ("post_switch_verify_timeout_seconds", "POST_SWITCH_VERIFY_TIMEOUT_SECONDS"),
            ("statement_timeout_seconds", "STATEMENT_TIMEOUT_SECONDS"),
        ):
            if env.get(var):
                data[key] = _parse_number(var, env[var], float)

        return cls.from_dict(data)


def _command(value: Any) -> tuple[str, ...] | None:
    if not value:
        return None
    if isinstance(value, str):
        return tuple(shlex.split(value))
    return tuple(value)


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _parse_number(name: str, raw: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


__all__ = ["OrchestratorConfig"]
