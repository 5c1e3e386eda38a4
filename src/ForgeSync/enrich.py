# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.enrich",
#   "purpose": "Enrichment pass: evidence -> match -> catalog attributes for every install",
#   "sections": [
#     {"id": "folders", "name": "resolve_install_folder", "anchor": "FLD", "kind": "helpers"},
#     {"id": "attributes", "name": "build_match_attributes", "anchor": "ATT", "kind": "helpers"},
#     {"id": "pass", "name": "EnrichmentPass", "anchor": "PAS", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Enrichment pass over the host's install records.

Installs are processed sequentially. For each record the on-disk folder is
located, evidence is collected, the :class:`~ForgeSync.matching.CandidateMatcher`
resolves a catalog entry and the resulting attributes are written to the
attribute sink. A failure on one install leaves it unmatched; the pass goes on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config.models import ScanConfig
from .evidence import LocalInstallEvidence, collect_install_evidence
from .folder_names import extract_folder_version, folder_base_name, guess_identifiers_from_folder
from .matching import CandidateMatcher, MatchResult, build_search_terms
from .naming import normalize_name
from .overrides import OverrideEntry
from .registry import AttributeSink, InstallRecord
from .scanner import InstallScanner

__all__ = [
    "Diagnosis",
    "EnrichmentOutcome",
    "EnrichmentPass",
    "EnrichmentReport",
    "build_match_attributes",
    "resolve_install_folder",
]

LOGGER = logging.getLogger(__name__)

_MIN_SUBSTRING_LENGTH = 3


def resolve_install_folder(record: InstallRecord, folder_names: Sequence[str]) -> Optional[str]:
    """Find the on-disk folder for ``record``.

    Tries exact, case-insensitive, version-stripped and finally substring
    comparisons of the record's folder name, name and id against the folders.
    """
    if not folder_names:
        return None
    candidates: List[str] = []
    for value in (record.folder_name, record.name, record.install_id):
        if value and value not in candidates:
            candidates.append(value)
    for value in list(candidates):
        base = folder_base_name(value)
        if base and base not in candidates:
            candidates.append(base)

    for candidate in candidates:
        if candidate in folder_names:
            return candidate
    lowered = {name.lower(): name for name in folder_names}
    for candidate in candidates:
        hit = lowered.get(candidate.lower())
        if hit is not None:
            return hit
    bases = {folder_base_name(name).lower(): name for name in folder_names}
    for candidate in candidates:
        hit = bases.get(folder_base_name(candidate).lower())
        if hit is not None:
            return hit
    for candidate in candidates:
        needle = normalize_name(candidate)
        if len(needle) < _MIN_SUBSTRING_LENGTH:
            continue
        for name in folder_names:
            hay = normalize_name(name)
            if len(hay) >= _MIN_SUBSTRING_LENGTH and (needle in hay or hay in needle):
                return name
    return None


def _catalog_id(value: Optional[str]) -> Any:
    if value is None:
        return None
    return int(value) if value.isdigit() else value


def build_match_attributes(
    match: MatchResult,
    evidence_version: Optional[str] = None,
    record: Optional[InstallRecord] = None,
) -> Dict[str, Any]:
    """Attributes written to the sink for a matched install; empty values are dropped."""
    entry = match.entry
    version = evidence_version or (record.version if record is not None else None)
    attributes: Dict[str, Any] = {
        "catalog_guid": entry.guid,
        "catalog_id": _catalog_id(entry.id),
        "catalog_slug": entry.slug,
        "catalog_name": entry.name,
        "catalog_owner": entry.owner,
        "catalog_detail_url": entry.detail_url,
        "catalog_thumbnail": entry.thumbnail_url,
        "version": version,
        "source": f"forge:{entry.guid}" if entry.guid else None,
    }
    return {key: value for key, value in attributes.items() if value not in (None, "")}


@dataclass
class EnrichmentOutcome:
    install_id: str
    folder_name: Optional[str]
    match: Optional[MatchResult] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.match is not None


@dataclass
class EnrichmentReport:
    outcomes: List[EnrichmentOutcome] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return sum(1 for o in self.outcomes if o.matched)

    @property
    def skipped(self) -> int:
        return len(self.outcomes) - self.matched


@dataclass
class Diagnosis:
    """Everything the matcher sees for one folder, for troubleshooting."""

    folder_name: str
    evidence: LocalInstallEvidence
    terms: List[str]
    override: Optional[OverrideEntry]
    match: Optional[MatchResult]


class EnrichmentPass:
    """Run matching over install records and write catalog attributes."""

    def __init__(
        self,
        matcher: CandidateMatcher,
        scanner: InstallScanner,
        sink: Optional[AttributeSink] = None,
        *,
        scan_config: Optional[ScanConfig] = None,
    ) -> None:
        self.matcher = matcher
        self.scanner = scanner
        self.sink = sink
        self.scan_config = scan_config or ScanConfig()

    def _evidence_for(self, folder_name: Optional[str], fallback_name: Optional[str]) -> LocalInstallEvidence:
        if folder_name is None:
            return LocalInstallEvidence(guesses=guess_identifiers_from_folder(fallback_name))
        return collect_install_evidence(
            self.scanner.install_path(folder_name),
            folder_name,
            scanner=self.scanner,
            scan_config=self.scan_config,
        )

    def _enrich_one(self, record: InstallRecord, folder_names: Sequence[str]) -> EnrichmentOutcome:
        folder = resolve_install_folder(record, folder_names)
        outcome = EnrichmentOutcome(install_id=record.install_id, folder_name=folder)
        evidence = self._evidence_for(folder, record.folder_name or record.name)
        match = self.matcher.match(
            evidence,
            folder or record.folder_name,
            declared_name=record.name,
            author=record.author,
            version=record.version,
        )
        if match is None:
            return outcome
        outcome.match = match
        outcome.attributes = build_match_attributes(match, evidence.version, record)
        record.attributes.update(outcome.attributes)
        if self.sink is not None:
            self.sink.set_attributes(record.install_id, outcome.attributes)
        return outcome

    def run(self, records: Iterable[InstallRecord]) -> EnrichmentReport:
        """Enrich ``records`` one at a time with a fresh per-pass cache."""
        self.matcher.reset_cache()
        folder_names = self.scanner.list_install_folders()
        report = EnrichmentReport()
        for record in records:
            try:
                outcome = self._enrich_one(record, folder_names)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.warning(
                    "enrichment failed",
                    extra={
                        "stage": "enrich",
                        "install_id": record.install_id,
                        "extra_fields": {"error": str(exc), "error_type": type(exc).__name__},
                    },
                )
                outcome = EnrichmentOutcome(
                    install_id=record.install_id, folder_name=record.folder_name, error=str(exc)
                )
            report.outcomes.append(outcome)
        LOGGER.info(
            "enrichment finished",
            extra={
                "stage": "enrich",
                "extra_fields": {"matched": report.matched, "skipped": report.skipped},
            },
        )
        return report

    def diagnose(self, folder_name: str) -> Diagnosis:
        """Collect evidence, terms, override and match for one folder without writing attributes."""
        evidence = self._evidence_for(folder_name, folder_name)
        version = evidence.version or extract_folder_version(folder_name)
        terms = build_search_terms(
            None, evidence, folder_name, version=version, config=self.matcher.config
        )
        override = self.matcher.overrides.find_for_evidence(evidence, folder_name)
        match = self.matcher.match(evidence, folder_name)
        return Diagnosis(
            folder_name=folder_name,
            evidence=evidence,
            terms=terms,
            override=override,
            match=match,
        )
