"""
ForgeSync Configuration Package

Example:
    from ForgeSync.config import load_config

    config = load_config(
        path="forgesync.yaml",
        cli_overrides={"download": {"retries": 5}},
    )
    config_id = config.config_hash()
"""

from .loader import DEFAULT_ENV_PREFIX, export_config_schema, load_config
from .models import (
    CatalogConfig,
    DownloadConfig,
    ForgeSyncConfig,
    LoggingConfig,
    MatchingConfig,
    OverridesConfig,
    ScanConfig,
)

__all__ = [
    "ForgeSyncConfig",
    "CatalogConfig",
    "MatchingConfig",
    "DownloadConfig",
    "ScanConfig",
    "OverridesConfig",
    "LoggingConfig",
    "DEFAULT_ENV_PREFIX",
    "load_config",
    "export_config_schema",
]
