"""
Configuration loader for tasker.

This module provides configuration management with:
- Multiple configuration sources (YAML, JSON, TOML files and dicts)
- TASKER_* environment variable overrides
- Schema validation and type coercion
"""

import os
import json
import yaml
import toml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("tasker.config")

ENV_PREFIX = "TASKER_"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    driver: str = "sqlite"
    path: Path = Field(default_factory=lambda: Path.home() / ".tasker" / "tasker.db")
    host: str = "localhost"
    port: int = 5432
    dbname: str = "tasker"
    user: Optional[str] = None
    password: Optional[str] = None
    schema_name: Optional[str] = None
    timeout: float = 30.0

    @field_validator('driver')
    @classmethod
    def validate_driver(cls, v):
        """Only sqlite and postgresql backends are supported."""
        v = v.lower()
        if v == "postgres":
            v = "postgresql"
        if v not in ("sqlite", "postgresql"):
            raise ValueError(f"Unsupported database driver: {v}")
        return v

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        """Ensure path is absolute."""
        return Path(v).expanduser().absolute()


class ReporterConfig(BaseModel):
    """Reporter daemon configuration."""
    collection_interval: float = Field(default=10.0, gt=0)
    sampler_timeout: float = Field(default=5.0, gt=0)
    include_children: bool = True
    scale_cpu_by_cores: bool = False
    max_heartbeat_age: float = Field(default=60.0, gt=0)
    auto_start: bool = True
    concurrency: int = Field(default=1, ge=1)
    stop_timeout: float = 30.0


class RetentionConfig(BaseModel):
    """Metrics retention configuration."""
    retention_days: int = Field(default=30, ge=0)
    cleanup_interval_hours: float = Field(default=24.0, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: Path.home() / ".tasker" / "logs")
    enable_files: bool = True
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('directory')
    @classmethod
    def validate_directory(cls, v):
        return Path(v).expanduser()

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class TaskerConfig(BaseModel):
    """Main tasker configuration."""
    app_name: str = "tasker"
    version: str = "0.3.0"

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    reporter: ReporterConfig = Field(default_factory=ReporterConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration loader.

        Args:
            environ: Environment mapping to read overrides from (defaults to os.environ)
        """
        self._sources: List[ConfigSource] = []
        self._config: Optional[TaskerConfig] = None
        self._environ = environ

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Lowest priority first so later merges win
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> TaskerConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration
        """
        merged_data: Dict[str, Any] = {}

        for source in self._sources:
            data = self._load_source(source)
            merged_data = self._deep_merge(merged_data, data)

        env_data = self._load_env_vars()
        merged_data = self._deep_merge(merged_data, env_data)

        try:
            self._config = TaskerConfig(**merged_data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"])
                errors.append(f"{field}: {error['msg']}")

            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}"
            ) from e

        logger.info(
            "configuration_loaded",
            sources=len(self._sources),
            driver=self._config.database.driver
        )
        return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        try:
            if source.source_type == "json":
                return json.loads(content)
            elif source.source_type == "yaml":
                return yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                return toml.loads(content)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to parse {source.path}: {e}", cause=e
            ) from e

        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _load_env_vars(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        ``TASKER_REPORTER_AUTO_START=0`` maps to ``reporter.auto_start``:
        the first segment names the section, the rest is the field name.
        Values stay strings; the models coerce them to their field types.
        """
        environ = self._environ if self._environ is not None else os.environ
        result: Dict[str, Any] = {}

        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            key = key[len(ENV_PREFIX):].lower()
            section, _, name = key.partition("_")

            if name and section in TaskerConfig.model_fields:
                result.setdefault(section, {})[name] = value
            elif key in TaskerConfig.model_fields:
                result[key] = value

        return result

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> TaskerConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> TaskerConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader(environ=environ)

    default_paths = [
        Path.home() / ".tasker" / "config.yaml",
        Path.home() / ".tasker" / "config.json",
        Path("./tasker.yaml"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'TaskerConfig',
    'DatabaseConfig',
    'ReporterConfig',
    'RetentionConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
]
