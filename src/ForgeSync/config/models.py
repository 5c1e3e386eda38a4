"""
Pydantic v2 Configuration Models for ForgeSync

Provides strict, typed configuration for every ForgeSync subsystem:
- Catalog client settings (endpoint, credentials, retry behaviour)
- Matching thresholds and the generic-identifier deny-list
- Download policy (attempts, timeouts, backoff, resume)
- Install scanning bounds
- Override store location and logging
- Top-level ForgeSyncConfig as single source of truth

All models use extra="forbid" for strict validation. Environment variables
and CLI overrides follow: file < env < CLI precedence.
"""

from __future__ import annotations

import hashlib
import json
from typing import ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

# ============================================================================
# Catalog
# ============================================================================


class CatalogConfig(BaseModel):
    """Configuration for the remote catalog client."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    base_url: str = Field(
        default="https://forge.sp-tarkov.com/api/v0",
        description="Catalog API root",
    )
    api_key: Optional[SecretStr] = Field(default=None, description="Bearer token for the catalog")
    target_platform_version: Optional[str] = Field(
        default=None, description="Platform version used for update compatibility checks"
    )
    search_max_results: int = Field(default=100, description="Results requested per search term")
    timeout_s: float = Field(default=30.0, description="Request timeout in seconds")
    max_attempts: int = Field(default=3, description="Attempts per catalog request")
    backoff_base_s: float = Field(default=0.5, description="Base backoff between catalog retries")
    user_agent: str = Field(default="ForgeSync/0.1", description="User-Agent header")

    @field_validator("search_max_results", "max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("timeout_s")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_s must be > 0")
        return v


# ============================================================================
# Matching
# ============================================================================


class MatchingConfig(BaseModel):
    """Confidence tiers and heuristics for the candidate matcher.

    The defaults were tuned empirically against real install folders and are
    kept for behavioural parity; adjust them here rather than in code.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    override_confidence: int = Field(default=100, description="Confidence of an override hit")
    identifier_confidence: int = Field(
        default=100, description="Confidence of a direct identifier lookup"
    )
    exact_name_confidence: int = Field(default=95, description="Normalized name equality")
    suffix_stripped_confidence: int = Field(
        default=93, description="Name equality after removing Server/Client suffixes"
    )
    slug_confidence: int = Field(default=92, description="Slug or guid-derived name equality")
    owner_name_confidence: int = Field(default=90, description="Owner plus exact name match")
    stop_confidence: int = Field(default=95, description="Stop scanning terms at this confidence")
    fuzzy_threshold: int = Field(default=70, description="Minimum fuzzy similarity accepted")
    fuzzy_weight: float = Field(default=0.85, description="Fuzzy score to confidence factor")
    version_boost: int = Field(default=25, description="Bonus when candidate text carries the version")
    min_identifier_length: int = Field(
        default=8, description="Identifiers shorter than this are treated as generic"
    )
    generic_identifier_patterns: List[str] = Field(
        default_factory=lambda: [
            r"^com\.spt(\.|$)",
            r"^com\.spt_core(\.|$)",
            r"^com\.sptcore(\.|$)",
            r"^unity\.",
            r"^com\.unity(\.|$)",
            r"^com\..*core",
        ],
        description="Regexes for shared runtime identifiers that never identify a package",
    )
    component_suffixes: List[str] = Field(
        default_factory=lambda: ["Server", "Client"],
        description="Trailing component suffixes stripped from names",
    )

    @field_validator(
        "override_confidence",
        "identifier_confidence",
        "exact_name_confidence",
        "suffix_stripped_confidence",
        "slug_confidence",
        "owner_name_confidence",
        "stop_confidence",
        "fuzzy_threshold",
    )
    @classmethod
    def validate_percent(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("confidence values must be within [0, 100]")
        return v

    @field_validator("fuzzy_weight")
    @classmethod
    def validate_weight(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("fuzzy_weight must be in (0, 1]")
        return v


# ============================================================================
# Downloads
# ============================================================================


class DownloadConfig(BaseModel):
    """Download retry, resume, and concurrency policy."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    retries: int = Field(default=3, description="Total attempts per download, including the first")
    timeout_ms: int = Field(default=60_000, description="Per-attempt timeout in ms")
    backoff_base_ms: int = Field(default=500, description="Base backoff delay in ms")
    jitter_factor: float = Field(default=0.2, description="Relative jitter applied to backoff")
    resume_enabled: bool = Field(default=True, description="Resume partial files with Range requests")
    chunk_size_bytes: int = Field(default=1 << 16, description="Stream chunk size")
    download_dir: str = Field(default="downloads", description="Directory for fetched archives")
    import_dir: str = Field(default="imports", description="Directory used by the copy importer")
    lock_dir: Optional[str] = Field(default=None, description="Directory for destination lock files")
    max_workers: int = Field(default=4, description="Concurrent downloads in a batch")

    @field_validator("retries", "max_workers", "chunk_size_bytes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("timeout_ms", "backoff_base_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("jitter_factor")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("jitter_factor must be in [0, 1)")
        return v


# ============================================================================
# Scanning, overrides, logging
# ============================================================================


class ScanConfig(BaseModel):
    """Bounds for walking install folders."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    install_root: Optional[str] = Field(default=None, description="Managed install root")
    module_max_depth: int = Field(default=10, description="Maximum depth when locating modules")
    module_max_files: int = Field(default=120, description="Maximum modules inspected per install")
    module_suffixes: List[str] = Field(default_factory=lambda: [".dll"])
    module_max_bytes: int = Field(default=64 << 20, description="Skip modules larger than this")
    manifest_max_depth: int = Field(default=6)
    manifest_max_files: int = Field(default=10)
    manifest_names: List[str] = Field(default_factory=lambda: ["package.json"])


class OverridesConfig(BaseModel):
    """Location of the persisted override table."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    path: str = Field(default="forge_overrides.json", description="Override store path")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    level: str = Field(default="INFO")
    log_dir: Optional[str] = Field(default=None, description="Directory for JSONL logs")
    retention_days: int = Field(default=30)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return upper


# ============================================================================
# Top-Level Configuration
# ============================================================================


class ForgeSyncConfig(BaseModel):
    """Root configuration object."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    overrides: OverridesConfig = Field(default_factory=OverridesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def config_hash(self) -> str:
        """Return a stable hash of the configuration (secrets excluded)."""
        payload = self.model_dump(mode="json", exclude={"catalog": {"api_key"}})
        encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()
