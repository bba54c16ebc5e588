"""
Unit tests for OrchestratorConfig.

Tests cover:
- Defaults and validation in __post_init__
- Dictionary round trips
- Loading from environment variables
"""

import pytest

from schemaswitch.config import OrchestratorConfig
from schemaswitch.models import EnvironmentName, OperationKind


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self):
        config = OrchestratorConfig()

        assert config.initial_active is EnvironmentName.BLUE
        assert config.rollback_enabled is True
        assert config.retain_rollback_points == 10
        assert config.drain_timeout_seconds == 30.0
        assert config.switch_max_attempts == 3
        assert config.backup_dir is None
        assert config.upstream_file is None

    def test_database_url_per_environment(self):
        config = OrchestratorConfig(
            blue_database_url="sqlite+aiosqlite:///blue.db",
            green_database_url="sqlite+aiosqlite:///green.db",
        )

        assert config.database_url(EnvironmentName.BLUE) == "sqlite+aiosqlite:///blue.db"
        assert config.database_url(EnvironmentName.GREEN) == "sqlite+aiosqlite:///green.db"


class TestValidation:
    """Tests for invalid configuration values."""

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("retain_rollback_points", 0),
            ("drain_timeout_seconds", 0),
            ("health_check_interval_seconds", -1.0),
            ("unhealthy_threshold", 0),
            ("switch_max_attempts", 0),
            ("statement_timeout_seconds", 0),
        ],
    )
    def test_rejects_out_of_range(self, field: str, value: float):
        with pytest.raises(ValueError, match=field):
            OrchestratorConfig(**{field: value})

    def test_probe_timeout_must_fit_interval(self):
        with pytest.raises(ValueError, match="must not exceed"):
            OrchestratorConfig(health_check_interval_seconds=1.0, probe_timeout_seconds=2.0)


class TestSerialization:
    """Tests for to_dict and from_dict."""

    def test_round_trip(self):
        config = OrchestratorConfig(
            initial_active=EnvironmentName.GREEN,
            rollback_enabled=False,
            strict_mode=True,
            allowed_operations=frozenset({OperationKind.ADD_COLUMN, OperationKind.CREATE_TABLE}),
            proxy_reload_command=("nginx", "-s", "reload"),
        )

        data = config.to_dict()
        restored = OrchestratorConfig.from_dict(data)

        assert data["initial_active"] == "green"
        assert data["allowed_operations"] == ["add_column", "create_table"]
        assert data["proxy_reload_command"] == ["nginx", "-s", "reload"]
        assert restored == config

    def test_to_dict_omits_database_urls(self):
        data = OrchestratorConfig(blue_database_url="postgresql+asyncpg://u:p@h/db").to_dict()

        assert "blue_database_url" not in data
        assert "green_database_url" not in data


class TestFromEnv:
    """Tests for from_env."""

    def test_empty_environment_gives_defaults(self):
        assert OrchestratorConfig.from_env({}) == OrchestratorConfig()

    def test_reads_variables(self):
        config = OrchestratorConfig.from_env(
            {
                "BLUE_DATABASE_URL": "postgresql+asyncpg://blue/app",
                "GREEN_DATABASE_URL": "postgresql+asyncpg://green/app",
                "ACTIVE_ENVIRONMENT": " Green ",
                "ROLLBACK_ENABLED": "no",
                "MAX_ROLLBACKS": "4",
                "MAX_DOWNTIME_SECONDS": "12.5",
                "VALIDATION_TIMEOUT_SECONDS": "60",
                "STRICT_MODE": "TRUE",
                "BACKUP_DIR": "/var/backups/schemaswitch",
                "UPSTREAM_CONFIG_PATH": "/etc/nginx/upstream.conf",
                "PROXY_RELOAD_COMMAND": "nginx -s reload",
            }
        )

        assert config.blue_database_url == "postgresql+asyncpg://blue/app"
        assert config.initial_active is EnvironmentName.GREEN
        assert config.rollback_enabled is False
        assert config.retain_rollback_points == 4
        assert config.drain_timeout_seconds == 12.5
        assert config.health_check_timeout_seconds == 60.0
        assert config.strict_mode is True
        assert config.backup_dir == "/var/backups/schemaswitch"
        assert config.upstream_file == "/etc/nginx/upstream.conf"
        assert config.proxy_reload_command == ("nginx", "-s", "reload")

    def test_bad_boolean(self):
        with pytest.raises(ValueError, match="ROLLBACK_ENABLED must be a boolean"):
            OrchestratorConfig.from_env({"ROLLBACK_ENABLED": "maybe"})

    def test_bad_number(self):
        with pytest.raises(ValueError, match="MAX_ROLLBACKS must be a number"):
            OrchestratorConfig.from_env({"MAX_ROLLBACKS": "ten"})

    def test_unknown_environment_name(self):
        with pytest.raises(ValueError):
            OrchestratorConfig.from_env({"ACTIVE_ENVIRONMENT": "purple"})
