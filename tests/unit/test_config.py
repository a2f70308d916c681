"""
Unit tests for configuration loading.
"""

import json
from pathlib import Path

import pytest

from tasker.utils.config import ConfigLoader, TaskerConfig, load_config
from tasker.utils.errors import ConfigurationError


class TestConfigDefaults:
    """Test default configuration values."""

    def test_defaults(self):
        config = TaskerConfig()

        assert config.database.driver == "sqlite"
        assert config.reporter.collection_interval == 10.0
        assert config.reporter.sampler_timeout == 5.0
        assert config.reporter.include_children is True
        assert config.reporter.scale_cpu_by_cores is False
        assert config.reporter.max_heartbeat_age == 60.0
        assert config.reporter.auto_start is True
        assert config.reporter.concurrency == 1
        assert config.retention.retention_days == 30
        assert config.retention.cleanup_interval_hours == 24.0


class TestConfigLoader:
    """Test ConfigLoader sources and overrides."""

    def test_yaml_source(self, tmp_path: Path):
        path = tmp_path / "tasker.yaml"
        path.write_text(
            "database:\n"
            "  driver: postgresql\n"
            "  host: db.internal\n"
            "reporter:\n"
            "  collection_interval: 30\n"
        )
        loader = ConfigLoader(environ={})
        loader.add_source(path)

        config = loader.load()

        assert config.database.driver == "postgresql"
        assert config.database.host == "db.internal"
        assert config.reporter.collection_interval == 30.0

    def test_toml_source(self, tmp_path: Path):
        path = tmp_path / "tasker.toml"
        path.write_text("[retention]\nretention_days = 7\n")
        loader = ConfigLoader(environ={})
        loader.add_source(path)

        assert loader.load().retention.retention_days == 7

    def test_higher_priority_wins(self, tmp_path: Path):
        path = tmp_path / "tasker.json"
        path.write_text(json.dumps({"reporter": {"concurrency": 2, "auto_start": False}}))
        loader = ConfigLoader(environ={})
        loader.add_source({"reporter": {"concurrency": 8}}, priority=50)
        loader.add_source(path, priority=10)

        config = loader.load()

        assert config.reporter.concurrency == 8
        # Merged, not replaced
        assert config.reporter.auto_start is False

    def test_environment_overrides(self):
        loader = ConfigLoader(environ={
            "TASKER_REPORTER_AUTO_START": "0",
            "TASKER_DATABASE_DRIVER": "postgres",
            "TASKER_DATABASE_SCHEMA_NAME": "pipeline",
            "TASKER_RETENTION_RETENTION_DAYS": "14",
            "OTHER_VARIABLE": "ignored",
        })
        loader.add_source({"reporter": {"auto_start": True}}, priority=100)

        config = loader.load()

        assert config.reporter.auto_start is False
        assert config.database.driver == "postgresql"
        assert config.database.schema_name == "pipeline"
        assert config.retention.retention_days == 14

    def test_environment_values_keep_field_types(self):
        loader = ConfigLoader(environ={
            "TASKER_DATABASE_PASSWORD": "123456",
            "TASKER_DATABASE_USER": "true",
            "TASKER_DATABASE_PORT": "6432",
            "TASKER_REPORTER_COLLECTION_INTERVAL": "2.5",
            "TASKER_REPORTER_INCLUDE_CHILDREN": "off",
            "TASKER_LOGGING_DIRECTORY": "~/tasker-logs",
        })

        config = loader.load()

        assert config.database.password == "123456"
        assert config.database.user == "true"
        assert config.database.port == 6432
        assert config.reporter.collection_interval == 2.5
        assert config.reporter.include_children is False
        assert config.logging.directory == Path.home() / "tasker-logs"

    def test_validation_errors_listed(self):
        loader = ConfigLoader(environ={})
        loader.add_source({
            "database": {"driver": "mysql"},
            "logging": {"level": "LOUD"},
        })

        with pytest.raises(ConfigurationError) as exc_info:
            loader.load()

        message = str(exc_info.value)
        assert "database.driver" in message
        assert "logging.level" in message

    def test_unparseable_file(self, tmp_path: Path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        loader = ConfigLoader(environ={})
        loader.add_source(path)

        with pytest.raises(ConfigurationError, match="broken.json"):
            loader.load()

    def test_unknown_file_type(self, tmp_path: Path):
        loader = ConfigLoader(environ={})
        with pytest.raises(ConfigurationError):
            loader.add_source(tmp_path / "tasker.ini")

    def test_missing_file_is_skipped(self, tmp_path: Path):
        loader = ConfigLoader(environ={})
        loader.add_source(tmp_path / "absent.yaml")

        assert loader.load().database.driver == "sqlite"

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader(environ={}).get_config()


class TestLoadConfig:
    """Test load_config."""

    def test_explicit_paths_and_extra(self, tmp_path: Path):
        path = tmp_path / "tasker.yaml"
        path.write_text("reporter:\n  collection_interval: 20\n  concurrency: 3\n")

        config = load_config(
            config_paths=[path],
            extra_config={"reporter": {"collection_interval": 5}},
            environ={}
        )

        assert config.reporter.collection_interval == 5.0
        assert config.reporter.concurrency == 3
