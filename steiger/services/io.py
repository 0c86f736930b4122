"""Configuration file loading.

This module reads steiger.yml and produces the validated in-memory
service graph consumed by the build orchestrator.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from steiger.services.models import ProjectConfig
from steiger.services.schema import ProjectSchema

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration is malformed or unsatisfiable."""

    def __init__(self, message: str, code: str = "config_error") -> None:
        super().__init__(message)
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        ConfigError: If the file is missing, not valid YAML or not a mapping.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}", code="not_found") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", code="invalid_yaml") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def parse_config(data: dict[str, Any]) -> ProjectConfig:
    """Validate configuration data and build the service graph.

    Args:
        data: Dictionary containing configuration data.

    Returns:
        Validated ProjectConfig.

    Raises:
        ConfigError: If data does not match the schema.
    """
    try:
        schema = ProjectSchema.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration:\n{e}", code="validation") from e
    return schema.to_config()


def load_config(path: Path) -> ProjectConfig:
    """Load and validate a configuration file.

    Args:
        path: Path to steiger.yml.

    Returns:
        Validated ProjectConfig.

    Raises:
        ConfigError: If the file cannot be read or validated.
    """
    config = parse_config(load_yaml(path))
    logger.debug("Loaded %d service(s) from %s", len(config.services), path)
    return config


__all__ = ["ConfigError", "load_config", "load_yaml", "parse_config"]
