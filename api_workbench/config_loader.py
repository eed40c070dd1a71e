"""Config Loader - Loads runtime configuration, request and environment files.

Handles loading YAML files with environment variable substitution for the
runtime config. Request and environment files are plain YAML: their
{{placeholders}} are resolved at execution time, not here.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from api_workbench.models import ApiRequest, Environment, RuntimeConfig


class ConfigError(Exception):
    """Raised when configuration loading fails."""


_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_runtime_config(config_path: Path | None) -> RuntimeConfig:
    """Load runtime configuration from YAML with ${ENV_VAR} substitution.

    A None path returns the defaults.
    """
    if config_path is None:
        return RuntimeConfig()

    raw_config = _load_yaml_mapping(config_path, "Config")
    raw_config = _substitute_env_vars(raw_config)
    return _validate(RuntimeConfig, raw_config, "config")


def load_request_definition(request_path: Path) -> ApiRequest:
    """Load one request definition from YAML.

    Headers and query params may be written as a list of
    {key, value, enabled} rows or as a simple mapping.
    """
    raw_request = _load_yaml_mapping(request_path, "Request file")
    raw_request.setdefault("name", request_path.stem)
    return _validate(ApiRequest, raw_request, "request definition")


def load_environment(environment_path: Path) -> Environment:
    """Load one environment from YAML. Variables may be rows or a mapping."""
    raw_environment = _load_yaml_mapping(environment_path, "Environment file")
    raw_environment.setdefault("name", environment_path.stem)
    return _validate(Environment, raw_environment, "environment")


def _load_yaml_mapping(path: Path, label: str) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"{label} not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{label} must be a YAML mapping: {path}")
    return data


def _validate(model: type[BaseModel], data: dict[str, Any], label: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid {label} structure: {e}") from e


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_VAR_PATTERN.sub(replacer, s)
