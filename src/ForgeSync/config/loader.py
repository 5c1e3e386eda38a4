# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.config.loader",
#   "purpose": "Configuration loading with file/env/CLI precedence.",
#   "sections": [
#     {"id": "read-file", "name": "_read_file", "anchor": "function-read-file", "kind": "function"},
#     {"id": "assign-nested", "name": "_assign_nested", "anchor": "function-assign-nested", "kind": "function"},
#     {"id": "coerce-env-value", "name": "_coerce_env_value", "anchor": "function-coerce-env-value", "kind": "function"},
#     {"id": "merge-env-overrides", "name": "_merge_env_overrides", "anchor": "function-merge-env-overrides", "kind": "function"},
#     {"id": "merge-cli-overrides", "name": "_merge_cli_overrides", "anchor": "function-merge-cli-overrides", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"},
#     {"id": "export-config-schema", "name": "export_config_schema", "anchor": "function-export-config-schema", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Configuration Loading with File/Env/CLI Precedence

Composes a :class:`ForgeSyncConfig` from three layers:
1. **File level** (YAML/JSON) provides the base configuration
2. **Environment level**: FORGESYNC_* variables override the file
3. **CLI level**: programmatic overrides win

Environment variables use double-underscore notation:
  FORGESYNC_CATALOG__API_KEY="..."        →  catalog.api_key="..."
  FORGESYNC_DOWNLOAD__RETRIES=5           →  download.retries=5
  FORGESYNC_MATCHING__FUZZY_THRESHOLD=75  →  matching.fuzzy_threshold=75
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .models import ForgeSyncConfig

_LOGGER = logging.getLogger(__name__)

DEFAULT_ENV_PREFIX = "FORGESYNC_"

# ============================================================================
# Helpers
# ============================================================================


def _read_file(path: str) -> dict[str, Any]:
    """
    Read a YAML or JSON config file.

    Args:
        path: File path (suffix determines format: .yaml/.yml or .json)

    Returns:
        Parsed config dictionary

    Raises:
        ConfigError: If the file is missing, unreadable, or malformed
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    suffix = p.suffix.lower()

    if suffix in (".yaml", ".yml"):
        try:
            loaded = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    elif suffix == ".json":
        try:
            loaded = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    else:
        raise ConfigError(f"Unsupported file format: {suffix}. Use .yaml or .json")

    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return loaded


def _assign_nested(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    """Assign ``value`` into ``data`` following a dot-separated path."""
    keys = dotted_key.split(".")
    current = data

    for key in keys[:-1]:
        existing = current.get(key)
        if not isinstance(existing, dict):
            existing = {}
            current[key] = existing
        current = existing

    current[keys[-1]] = value


def _coerce_env_value(value: str) -> Any:
    """
    Coerce an environment variable string to a JSON scalar or container.

    Falls back to the raw string when JSON parsing fails, so secrets and
    free-form strings pass through untouched.
    """
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        pass

    if value.lower() in ("true", "false"):
        return value.lower() == "true"

    return value


def _merge_env_overrides(
    data: dict[str, Any],
    env_prefix: str = DEFAULT_ENV_PREFIX,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """
    Overlay prefixed environment variables onto the config dict.

    Args:
        data: Base config dict (modified in place)
        env_prefix: Environment variable prefix
        environ: Mapping to read instead of ``os.environ`` (tests)

    Returns:
        The modified dict
    """
    source = os.environ if environ is None else environ
    for env_key, env_value in source.items():
        if not env_key.startswith(env_prefix):
            continue

        relative_key = env_key[len(env_prefix) :].lower()
        # Only SECTION__FIELD keys; FORGESYNC_CONFIG names the file itself.
        if "__" not in relative_key:
            continue
        dotted_key = relative_key.replace("__", ".")

        coerced_value = _coerce_env_value(env_value)
        _assign_nested(data, dotted_key, coerced_value)
        # Values may be credentials; log the key only.
        _LOGGER.debug("Environment override: %s -> %s", env_key, dotted_key)

    return data


def _merge_cli_overrides(
    data: dict[str, Any], cli_overrides: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Recursively merge CLI overrides into the base config dict."""
    if not cli_overrides:
        return data

    for key, value in cli_overrides.items():
        if isinstance(value, Mapping) and isinstance(data.get(key), dict):
            data[key] = _merge_cli_overrides(data[key], value)
        else:
            data[key] = dict(value) if isinstance(value, Mapping) else value
        _LOGGER.debug("CLI override: %s", key)

    return data


# ============================================================================
# Public API
# ============================================================================


def load_config(
    path: str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_overrides: Mapping[str, Any] | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> ForgeSyncConfig:
    """
    Load ForgeSyncConfig from file, environment, and CLI with proper precedence.

    **Precedence:** file < environment < CLI

    Args:
        path: Path to YAML/JSON config file (optional)
        env_prefix: Environment variable prefix (default: FORGESYNC_)
        cli_overrides: Nested override dict (optional)
        environ: Environment mapping override, defaults to ``os.environ``

    Returns:
        Validated ForgeSyncConfig instance

    Raises:
        ConfigError: If the file cannot be read or the merged config is invalid
    """
    data: dict[str, Any] = {}

    if path:
        data = _read_file(path)
        _LOGGER.info("Loaded config from %s", path, extra={"stage": "config"})

    data = _merge_env_overrides(data, env_prefix, environ)
    data = _merge_cli_overrides(data, cli_overrides)

    try:
        config = ForgeSyncConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e

    _LOGGER.debug(
        "Configuration validated. Config hash: %s...",
        config.config_hash()[:8],
        extra={"stage": "config"},
    )
    return config


def export_config_schema() -> dict[str, Any]:
    """Export the JSON Schema for ForgeSyncConfig."""
    return ForgeSyncConfig.model_json_schema()
