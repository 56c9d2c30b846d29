"""Configuration loading and settings for Fleet Reconciler."""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fleet_reconciler.models import (
    DefaultsConfig,
    FeedSource,
    FleetFileConfig,
    PollerConfig,
    SourceConfig,
    SourceKind,
)

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute_env_vars(value: str) -> str:
    """Replace ``${NAME}`` references with environment variable values.

    Args:
        value: String possibly containing ``${NAME}`` references.

    Returns:
        The string with every reference substituted.

    Raises:
        ValueError: If a referenced environment variable is not set.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        env_value = os.environ.get(name)
        if env_value is None:
            raise ValueError(f"Environment variable '{name}' is not set")
        return env_value

    return _ENV_VAR_PATTERN.sub(_replace, value)


def substitute_env_vars_in_tree(node: Any) -> Any:
    """Apply substitute_env_vars to every string inside a parsed YAML tree."""
    if isinstance(node, str):
        return substitute_env_vars(node)
    if isinstance(node, dict):
        return {key: substitute_env_vars_in_tree(value) for key, value in node.items()}
    if isinstance(node, list):
        return [substitute_env_vars_in_tree(item) for item in node]
    return node


def load_fleet_file(path: Path) -> FleetFileConfig:
    """Load and parse a fleet.yaml configuration file.

    Args:
        path: Path to the fleet.yaml file.

    Returns:
        Parsed FleetFileConfig.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If a referenced environment variable is not set.
        pydantic.ValidationError: If the configuration is invalid.
    """
    with path.open() as f:
        raw_config = yaml.safe_load(f)

    return FleetFileConfig.model_validate(substitute_env_vars_in_tree(raw_config))


def resolve_source(
    source: SourceConfig,
    kind: SourceKind,
    defaults: DefaultsConfig,
) -> FeedSource:
    """Apply defaults to a single source (source > defaults)."""
    timeout = source.timeout_seconds
    if timeout is None:
        timeout = defaults.timeout_seconds

    return FeedSource(
        kind=kind,
        url=source.url,
        timeout_seconds=timeout,
        retry=source.retry or defaults.retry,
        auth=source.auth,
    )


def build_poller_config(config: FleetFileConfig) -> PollerConfig:
    """Flatten a parsed fleet file into the runtime PollerConfig.

    Args:
        config: The parsed fleet configuration.

    Returns:
        PollerConfig with defaults applied to both sources.
    """
    return PollerConfig(
        poll_interval_seconds=config.poll_interval_seconds,
        vehicle_feed=resolve_source(config.vehicle_feed, SourceKind.VEHICLE_FEED, config.defaults),
        route_table=resolve_source(config.route_table, SourceKind.ROUTE_TABLE, config.defaults),
        reconciler=config.reconciler,
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=True,
    )

    config_path: Path = Field(
        default=Path("./fleet.yaml"),
        validation_alias="CONFIG_PATH",
        description="Path to fleet.yaml configuration file",
    )

    # Runtime settings
    max_connections: int = Field(
        default=10,
        ge=2,
        le=100,
        validation_alias="MAX_CONNECTIONS",
        description="Maximum number of pooled HTTP connections",
    )

    # Server settings
    health_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        validation_alias="HEALTH_PORT",
        description="Port for health, metrics and fleet API server",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: str = Field(
        default="json",
        validation_alias="LOG_FORMAT",
        description="Log output format (json or text)",
    )
