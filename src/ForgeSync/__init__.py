# === NAVMAP v1 ===
# {
#   "module": "ForgeSync",
#   "purpose": "Package initialization for ForgeSync",
#   "sections": [
#     {"id": "getattr", "name": "__getattr__", "anchor": "function-getattr", "kind": "function"},
#     {"id": "dir", "name": "__dir__", "anchor": "function-dir", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Public API for ForgeSync.

ForgeSync reconciles locally installed packages with the Forge catalog: it
extracts identity evidence from installed binaries, matches each install to a
catalog entry with an explainable confidence, and acquires updates with
resumable, verified downloads.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, Dict, Tuple

__version__ = "0.1.0"

_EXPORTS: Dict[str, Tuple[str, str]] = {
    "AcquisitionOrchestrator": ("ForgeSync.acquisition", "AcquisitionOrchestrator"),
    "CandidateMatcher": ("ForgeSync.matching", "CandidateMatcher"),
    "CatalogEntry": ("ForgeSync.catalog", "CatalogEntry"),
    "EnrichmentPass": ("ForgeSync.enrich", "EnrichmentPass"),
    "ForgeCatalogClient": ("ForgeSync.catalog", "ForgeCatalogClient"),
    "ForgeSyncConfig": ("ForgeSync.config", "ForgeSyncConfig"),
    "MatchResult": ("ForgeSync.matching", "MatchResult"),
    "OverrideTable": ("ForgeSync.overrides", "OverrideTable"),
    "ResilientDownloader": ("ForgeSync.downloader", "ResilientDownloader"),
    "collect_install_evidence": ("ForgeSync.evidence", "collect_install_evidence"),
    "load_config": ("ForgeSync.config", "load_config"),
    "similarity_score": ("ForgeSync.similarity", "similarity_score"),
}

__all__ = [*sorted(_EXPORTS), "__version__"]


def __getattr__(name: str) -> Any:
    """Lazily import public exports so the CLI stays cheap to start."""

    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
    module_name, attribute = target
    value = getattr(import_module(module_name), attribute)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
